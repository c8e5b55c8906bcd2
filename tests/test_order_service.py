"""Тесты заказов: создание, изменение, отмена, переходы статусов."""
import uuid
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from mall.core.exceptions import (
    ForbiddenError,
    InsufficientStockError,
    InvalidAddressError,
    InvalidStateError,
    OrderCreationFailedError,
    OrderNotFoundError,
    ProductNotFoundError,
    ProductUnavailableError,
    ValidationError,
)
from mall.models import Order, OrderStatus, Product
from mall.services.order_service import OrderService, generate_order_number


async def stock_of(session, product_id):
    result = await session.execute(select(Product.stock).where(Product.id == product_id))
    return result.scalar_one()


async def orders_count(session):
    return (await session.execute(select(func.count()).select_from(Order))).scalar_one()


async def create_basic_order(db, seed, remark=None):
    return await OrderService(db).create_order(
        user_id=seed["user"].id,
        address_id=seed["address"].id,
        items=[
            {"product_id": seed["tea"].id, "quantity": 2},
            {"product_id": seed["cup"].id, "quantity": 1},
        ],
        remark=remark,
    )


def test_generate_order_number():
    user_id = uuid.UUID("12345678123456781234567812345678")
    number = generate_order_number(user_id, datetime(2026, 5, 1, 12, 30, 45, 123456))
    assert number == "20260501123045123456" + "12345678123456781234567812345678"


async def test_create_order_snapshots_items_and_reserves_stock(db, seed):
    order = await create_basic_order(db, seed, remark="Позвонить заранее")

    assert order.status == OrderStatus.PENDING
    assert order.total_amount == Decimal("25.00")
    assert order.remark == "Позвонить заранее"
    assert order.order_number.endswith(seed["user"].id.hex)
    assert order.expired_at > order.created_at

    assert [item.product_name for item in order.items] == ["Зеленый чай", "Чашка"]
    tea_item = order.items[0]
    assert tea_item.unit_price == Decimal("10.00")
    assert tea_item.quantity == 2
    assert tea_item.total_price == Decimal("20.00")
    assert tea_item.product_image == "/img/tea.png"

    assert await stock_of(db, seed["tea"].id) == 8
    assert await stock_of(db, seed["cup"].id) == 4


async def test_create_order_is_atomic_on_insufficient_stock(db, seed):
    with pytest.raises(InsufficientStockError) as exc_info:
        await OrderService(db).create_order(
            user_id=seed["user"].id,
            address_id=seed["address"].id,
            items=[
                {"product_id": seed["tea"].id, "quantity": 2},
                {"product_id": seed["cup"].id, "quantity": 6},
            ],
        )

    assert "Чашка" in exc_info.value.message
    # Первая позиция уже была списана и должна откатиться вместе с заказом
    assert await stock_of(db, seed["tea"].id) == 10
    assert await stock_of(db, seed["cup"].id) == 5
    assert await orders_count(db) == 0


async def test_create_order_number_collision_fails(db, seed, monkeypatch):
    monkeypatch.setattr("mall.services.order_service.generate_order_number", lambda user_id, now: "ORD-FIXED")
    await create_basic_order(db, seed)

    with pytest.raises(OrderCreationFailedError):
        await create_basic_order(db, seed)

    # Второй заказ не создан и остатки списаны только один раз
    assert await orders_count(db) == 1
    assert await stock_of(db, seed["tea"].id) == 8
    assert await stock_of(db, seed["cup"].id) == 4


async def test_create_order_with_product_not_on_sale(db, seed):
    with pytest.raises(ProductUnavailableError):
        await OrderService(db).create_order(
            user_id=seed["user"].id,
            address_id=seed["address"].id,
            items=[
                {"product_id": seed["tea"].id, "quantity": 1},
                {"product_id": seed["retired"].id, "quantity": 1},
            ],
        )

    assert await stock_of(db, seed["tea"].id) == 10
    assert await orders_count(db) == 0


async def test_create_order_with_unknown_product(db, seed):
    with pytest.raises(ProductNotFoundError):
        await OrderService(db).create_order(
            user_id=seed["user"].id,
            address_id=seed["address"].id,
            items=[{"product_id": uuid.uuid4(), "quantity": 1}],
        )
    assert await orders_count(db) == 0


async def test_create_order_validates_input(db, seed):
    service = OrderService(db)

    with pytest.raises(ValidationError):
        await service.create_order(seed["user"].id, seed["address"].id, items=[])
    with pytest.raises(ValidationError):
        await service.create_order(
            seed["user"].id, seed["address"].id, items=[{"product_id": seed["tea"].id, "quantity": 0}]
        )
    with pytest.raises(InvalidAddressError):
        await service.create_order(
            seed["user"].id, uuid.uuid4(), items=[{"product_id": seed["tea"].id, "quantity": 1}]
        )
    with pytest.raises(ForbiddenError):
        await service.create_order(
            seed["user"].id, seed["other_address"].id, items=[{"product_id": seed["tea"].id, "quantity": 1}]
        )

    assert await stock_of(db, seed["tea"].id) == 10


async def test_get_order_checks_owner(db, seed):
    order = await create_basic_order(db, seed)
    service = OrderService(db)

    loaded = await service.get_order(order.id, seed["user"].id)
    assert loaded.order_number == order.order_number

    with pytest.raises(ForbiddenError):
        await service.get_order(order.id, seed["other"].id)
    with pytest.raises(OrderNotFoundError):
        await service.get_order(uuid.uuid4(), seed["user"].id)


async def test_list_orders_filters_by_status(db, seed):
    first = await create_basic_order(db, seed)
    second = await create_basic_order(db, seed)
    service = OrderService(db)
    await service.cancel_order(first.id, seed["user"].id)

    all_orders = await service.list_orders(seed["user"].id)
    assert {order.id for order in all_orders} == {first.id, second.id}

    pending = await service.list_orders(seed["user"].id, status=OrderStatus.PENDING)
    assert [order.id for order in pending] == [second.id]

    assert await service.list_orders(seed["other"].id) == []

    with pytest.raises(ValidationError):
        await service.list_orders(seed["user"].id, status="lost")


async def test_update_order_only_while_pending(db, seed):
    order = await create_basic_order(db, seed)
    service = OrderService(db)

    updated = await service.update_order(order.id, seed["user"].id, remark="Оставить у двери")
    assert updated.remark == "Оставить у двери"
    assert updated.address_id == seed["address"].id

    await service.cancel_order(order.id, seed["user"].id)
    with pytest.raises(InvalidStateError):
        await service.update_order(order.id, seed["user"].id, remark="Поздно")


async def test_cancel_order_releases_stock(db, seed):
    order = await create_basic_order(db, seed)

    cancelled = await OrderService(db).cancel_order(order.id, seed["user"].id)

    assert cancelled.status == OrderStatus.CANCELLED
    assert await stock_of(db, seed["tea"].id) == 10
    assert await stock_of(db, seed["cup"].id) == 5


async def test_cancel_order_twice_fails_and_releases_once(db, seed):
    order = await create_basic_order(db, seed)
    service = OrderService(db)
    await service.cancel_order(order.id, seed["user"].id)

    with pytest.raises(InvalidStateError):
        await service.cancel_order(order.id, seed["user"].id)

    assert await stock_of(db, seed["tea"].id) == 10


async def test_cancel_order_of_another_user(db, seed):
    order = await create_basic_order(db, seed)

    with pytest.raises(ForbiddenError):
        await OrderService(db).cancel_order(order.id, seed["other"].id)

    assert await stock_of(db, seed["tea"].id) == 8


async def test_cancel_paid_order_is_rejected(db, seed):
    order = await create_basic_order(db, seed)
    service = OrderService(db)
    assert await service.change_status(order.id, OrderStatus.PENDING, OrderStatus.PAID)
    await db.commit()

    with pytest.raises(InvalidStateError):
        await service.cancel_order(order.id, seed["user"].id)
    assert await stock_of(db, seed["tea"].id) == 8


async def test_change_status_is_conditional(db, seed):
    order = await create_basic_order(db, seed)
    service = OrderService(db)

    assert await service.change_status(order.id, OrderStatus.PENDING, OrderStatus.PAID) is True
    assert await service.change_status(order.id, OrderStatus.PENDING, OrderStatus.CANCELLED) is False
    await db.commit()

    assert (await service.get_by_id(order.id)).status == OrderStatus.PAID


async def test_change_status_rejects_unknown_transition(db, seed):
    order = await create_basic_order(db, seed)

    with pytest.raises(InvalidStateError):
        await OrderService(db).change_status(order.id, OrderStatus.PENDING, OrderStatus.SHIPPED)
    with pytest.raises(InvalidStateError):
        await OrderService(db).change_status(order.id, OrderStatus.CANCELLED, OrderStatus.PAID)
