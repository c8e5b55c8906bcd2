"""Payments API."""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from mall.core.dependencies import get_current_user_id
from mall.core.exceptions import (
    InvalidSignatureError,
    MalformedNotificationError,
    MallError,
    NotFoundError,
)
from mall.core.payment_providers import PaymentProvider
from mall.database import get_db
from mall.models.payment import PaymentMethod
from mall.services.payment_service import PaymentService, get_payment_providers

logger = logging.getLogger(__name__)

router = APIRouter()


class ChargeRequest(BaseModel):
    """Запрос на оплату заказа."""

    order_id: uuid.UUID
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    payment_method: str  # alipay / wechat


class ChargeResponse(BaseModel):
    """Ответ с данными для оплаты."""

    payment_number: str
    status: str
    amount: Decimal
    payment_method: str
    redirect_url: str | None = None  # alipay: ссылка на страницу оплаты
    qr_code: str | None = None  # wechat: содержимое QR-кода


class PaymentResponse(BaseModel):
    """Платеж."""

    id: uuid.UUID
    payment_number: str
    order_id: uuid.UUID
    amount: Decimal
    payment_method: str
    status: str
    paid_at: datetime | None
    created_at: datetime
    updated_at: datetime


@router.post("/charge", response_model=ChargeResponse)
async def charge(
    request: ChargeRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_payment_providers),
):
    """
    Оплатить заказ.

    Повторный вызов, пока платеж не завершен, возвращает тот же платеж.
    """
    service = PaymentService(db, providers)
    payment, result = await service.charge(
        order_id=request.order_id,
        user_id=user_id,
        amount=request.amount,
        method=request.payment_method,
    )
    return ChargeResponse(
        payment_number=payment.payment_number,
        status=payment.status,
        amount=payment.amount,
        payment_method=payment.payment_method,
        redirect_url=result.redirect_url,
        qr_code=result.qr_code,
    )


@router.get("", response_model=List[PaymentResponse])
async def get_payments(
    status: str | None = None,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Платежи текущего пользователя."""
    service = PaymentService(db, providers={})
    payments = await service.get_payments(user_id, status)
    return [
        PaymentResponse(
            id=payment.id,
            payment_number=payment.payment_number,
            order_id=payment.order_id,
            amount=payment.amount,
            payment_method=payment.payment_method,
            status=payment.status,
            paid_at=payment.paid_at,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )
        for payment in payments
    ]


async def _handle_notification(
    method: str,
    request: Request,
    db: AsyncSession,
    providers: dict[str, PaymentProvider],
) -> Response:
    """Обработать уведомление и ответить провайдеру в его формате."""
    body = await request.body()
    logger.info(f"{method} notification received: {len(body)} bytes")

    provider = providers[method]
    service = PaymentService(db, providers)
    try:
        outcome = await service.reconcile(method, body)
    except (InvalidSignatureError, MalformedNotificationError) as e:
        logger.warning(f"Rejected {method} notification: {e.message}")
        ack = provider.failure_response(e.message, status_code=400)
    except NotFoundError as e:
        logger.warning(f"{method} notification for unknown payment: {e.message}")
        ack = provider.failure_response(e.message, status_code=404)
    except MallError as e:
        logger.error(f"Failed to process {method} notification: {e.message}", exc_info=True)
        ack = provider.failure_response(e.message, status_code=e.status_code)
    else:
        logger.info(f"{method} notification processed: {outcome}")
        ack = provider.success_response()

    return Response(content=ack.body, media_type=ack.media_type, status_code=ack.status_code)


@router.post("/notify/alipay")
async def alipay_notify(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_payment_providers),
):
    """Уведомление Alipay (form-urlencoded), ответ 'success' / 'failure'."""
    return await _handle_notification(PaymentMethod.ALIPAY, request, db, providers)


@router.post("/notify/wechat")
async def wechat_notify(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_payment_providers),
):
    """Уведомление WeChat Pay (XML), ответ XML с return_code."""
    return await _handle_notification(PaymentMethod.WECHAT, request, db, providers)
