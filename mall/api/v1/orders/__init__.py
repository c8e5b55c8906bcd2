"""Orders API."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from mall.core.dependencies import get_current_user_id
from mall.database import get_db
from mall.models.order import Order
from mall.services.order_service import OrderService

router = APIRouter()


class OrderItemRequest(BaseModel):
    """Элемент заказа в запросе."""

    product_id: uuid.UUID
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(BaseModel):
    """Запрос на создание заказа."""

    address_id: uuid.UUID
    items: List[OrderItemRequest] = Field(..., min_length=1)
    remark: str | None = None


class UpdateOrderRequest(BaseModel):
    """Запрос на изменение заказа."""

    address_id: uuid.UUID | None = None
    remark: str | None = None


class OrderItemResponse(BaseModel):
    """Элемент заказа в ответе."""

    id: uuid.UUID
    product_id: uuid.UUID
    product_name: str
    product_image: str | None
    unit_price: Decimal
    quantity: int
    total_price: Decimal


class OrderResponse(BaseModel):
    """Ответ с информацией о заказе."""

    id: uuid.UUID
    order_number: str
    status: str
    total_amount: Decimal
    address_id: uuid.UUID
    remark: str | None
    expired_at: datetime
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse]


def to_order_response(order: Order) -> OrderResponse:
    return OrderResponse(
        id=order.id,
        order_number=order.order_number,
        status=order.status,
        total_amount=order.total_amount,
        address_id=order.address_id,
        remark=order.remark,
        expired_at=order.expired_at,
        created_at=order.created_at,
        updated_at=order.updated_at,
        items=[
            OrderItemResponse(
                id=item.id,
                product_id=item.product_id,
                product_name=item.product_name,
                product_image=item.product_image,
                unit_price=item.unit_price,
                quantity=item.quantity,
                total_price=item.total_price,
            )
            for item in order.items
        ],
    )


@router.post("", response_model=OrderResponse, status_code=201)
async def create_order(
    request: CreateOrderRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Создать заказ.

    Остатки списываются сразу и держатся, пока заказ не оплачен или не истек резерв.
    """
    service = OrderService(db)
    order = await service.create_order(
        user_id=user_id,
        address_id=request.address_id,
        items=[{"product_id": item.product_id, "quantity": item.quantity} for item in request.items],
        remark=request.remark,
    )
    return to_order_response(order)


@router.get("", response_model=List[OrderResponse])
async def list_orders(
    status: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Получить заказы текущего пользователя."""
    service = OrderService(db)
    orders = await service.list_orders(user_id=user_id, status=status, page=page, limit=limit)
    return [to_order_response(order) for order in orders]


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Получить заказ по ID."""
    service = OrderService(db)
    order = await service.get_order(order_id, user_id)
    return to_order_response(order)


@router.patch("/{order_id}", response_model=OrderResponse)
async def update_order(
    order_id: uuid.UUID,
    request: UpdateOrderRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Изменить адрес или комментарий заказа, пока он не оплачен."""
    service = OrderService(db)
    order = await service.update_order(
        order_id=order_id,
        user_id=user_id,
        address_id=request.address_id,
        remark=request.remark,
    )
    return to_order_response(order)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Отменить заказ.

    Заказ можно отменить только в статусе 'pending'; товар возвращается на склад.
    """
    service = OrderService(db)
    order = await service.cancel_order(order_id, user_id)
    return to_order_response(order)
