"""Тесты фоновых задач: отмена просроченных заказов и платежей."""
from datetime import timedelta

from sqlalchemy import select, update

from mall.main import reap_expired_payments, sweep_expired_orders
from mall.models import Order, OrderStatus, PaymentStatus, PaymentTimeout, Product
from mall.models.payment import PaymentMethod
from mall.services.order_service import OrderService
from mall.services.payment_service import PaymentService


async def stock_of(session, product_id):
    result = await session.execute(select(Product.stock).where(Product.id == product_id))
    return result.scalar_one()


async def create_order(db, seed, quantity=2):
    return await OrderService(db).create_order(
        user_id=seed["user"].id,
        address_id=seed["address"].id,
        items=[{"product_id": seed["tea"].id, "quantity": quantity}],
    )


async def test_sweeper_cancels_only_expired_orders(db, seed):
    order = await create_order(db, seed)
    service = OrderService(db)

    assert await service.cancel_expired_orders(now=order.expired_at - timedelta(minutes=1)) == 0
    assert (await service.get_by_id(order.id)).status == OrderStatus.PENDING

    assert await service.cancel_expired_orders(now=order.expired_at + timedelta(seconds=1)) == 1
    assert (await service.get_by_id(order.id)).status == OrderStatus.CANCELLED
    assert await stock_of(db, seed["tea"].id) == 10

    # Повторный проход ничего не возвращает на склад второй раз
    assert await service.cancel_expired_orders(now=order.expired_at + timedelta(hours=1)) == 0
    assert await stock_of(db, seed["tea"].id) == 10


async def test_sweeper_skips_paid_orders(db, seed):
    order = await create_order(db, seed)
    service = OrderService(db)
    await service.change_status(order.id, OrderStatus.PENDING, OrderStatus.PAID)
    await db.commit()

    assert await service.cancel_expired_orders(now=order.expired_at + timedelta(hours=1)) == 0
    assert (await service.get_by_id(order.id)).status == OrderStatus.PAID
    assert await stock_of(db, seed["tea"].id) == 8


async def test_sweeper_handles_several_orders(db, seed):
    first = await create_order(db, seed, quantity=1)
    second = await create_order(db, seed, quantity=3)
    later = max(first.expired_at, second.expired_at) + timedelta(minutes=1)

    assert await OrderService(db).cancel_expired_orders(now=later) == 2
    assert await stock_of(db, seed["tea"].id) == 10


async def test_reaper_cancels_unpaid_payment_after_timeout(db, seed, fake_providers):
    order = await create_order(db, seed)
    service = PaymentService(db, fake_providers)
    payment, _ = await service.charge(order.id, seed["user"].id, order.total_amount, PaymentMethod.ALIPAY)

    timeout = (await db.execute(select(PaymentTimeout).where(PaymentTimeout.payment_id == payment.id))).scalar_one()
    assert timeout.fired_at is None

    assert await service.cancel_expired_payments(now=timeout.fire_at - timedelta(seconds=1)) == 0
    assert (await service.get_by_number(payment.payment_number)).status == PaymentStatus.PENDING

    assert await service.cancel_expired_payments(now=timeout.fire_at + timedelta(seconds=1)) == 1
    assert (await service.get_by_number(payment.payment_number)).status == PaymentStatus.CANCELLED

    # Каждая проверка срабатывает один раз
    assert await service.cancel_expired_payments(now=timeout.fire_at + timedelta(hours=1)) == 0

    # Заказ и остатки остаются за свипером заказов
    assert (await OrderService(db).get_by_id(order.id)).status == OrderStatus.PENDING
    assert await stock_of(db, seed["tea"].id) == 8


async def test_reaper_leaves_paid_payment_alone(db, seed, fake_providers):
    order = await create_order(db, seed)
    service = PaymentService(db, fake_providers)
    payment, _ = await service.charge(order.id, seed["user"].id, order.total_amount, PaymentMethod.ALIPAY)
    await service._change_status(payment.id, PaymentStatus.PENDING, PaymentStatus.PAID)
    await db.commit()

    timeout = (await db.execute(select(PaymentTimeout).where(PaymentTimeout.payment_id == payment.id))).scalar_one()
    assert await service.cancel_expired_payments(now=timeout.fire_at + timedelta(minutes=1)) == 0
    assert (await service.get_by_number(payment.payment_number)).status == PaymentStatus.PAID


async def test_scheduled_jobs_use_their_own_sessions(monkeypatch, session_factory, seed):
    monkeypatch.setattr("mall.main.AsyncSessionLocal", session_factory)

    async with session_factory() as session:
        order = await create_order(session, seed)
        await session.execute(
            update(Order)
            .where(Order.id == order.id)
            .values(expired_at=order.created_at - timedelta(minutes=1))
        )
        await session.commit()

    await sweep_expired_orders()
    await reap_expired_payments()

    async with session_factory() as session:
        assert (await OrderService(session).get_by_id(order.id)).status == OrderStatus.CANCELLED
        assert await stock_of(session, seed["tea"].id) == 10
