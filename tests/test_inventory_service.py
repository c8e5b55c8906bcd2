"""Тесты остатков: условное списание и возврат."""
import asyncio
import uuid

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from mall.core.exceptions import OutOfStockError, ProductNotFoundError, ValidationError
from mall.models import Product
from mall.services.inventory_service import InventoryService


async def stock_of(session, product_id):
    result = await session.execute(select(Product.stock).where(Product.id == product_id))
    return result.scalar_one()


async def test_reserve_decrements_stock(db, seed):
    tea_id = seed["tea"].id

    await InventoryService(db).reserve(tea_id, 3)
    await db.commit()

    assert await stock_of(db, tea_id) == 7


async def test_reserve_exact_stock_leaves_zero(db, seed):
    cup_id = seed["cup"].id

    await InventoryService(db).reserve(cup_id, 5)
    await db.commit()

    assert await stock_of(db, cup_id) == 0


async def test_reserve_more_than_stock_fails_without_change(db, seed):
    cup_id = seed["cup"].id

    with pytest.raises(OutOfStockError):
        await InventoryService(db).reserve(cup_id, 6)
    await db.rollback()

    assert await stock_of(db, cup_id) == 5


async def test_reserve_product_not_on_sale_fails(db, seed):
    with pytest.raises(OutOfStockError):
        await InventoryService(db).reserve(seed["retired"].id, 1)


@pytest.mark.parametrize("quantity", [0, -1])
async def test_reserve_rejects_non_positive_quantity(db, seed, quantity):
    with pytest.raises(ValidationError):
        await InventoryService(db).reserve(seed["tea"].id, quantity)


async def test_reserve_ignores_stale_read(session_factory, seed):
    """Решение принимает UPDATE, а не прочитанное ранее значение."""
    cup_id = seed["cup"].id

    async with session_factory() as first, session_factory() as second:
        stale = await first.get(Product, cup_id)
        assert stale.stock == 5

        await InventoryService(second).reserve(cup_id, 5)
        await second.commit()

        # first все еще "видит" 5 штук, но списать их уже нельзя
        assert stale.stock == 5
        with pytest.raises(OutOfStockError):
            await InventoryService(first).reserve(cup_id, 1)
        await first.rollback()

    async with session_factory() as session:
        assert await stock_of(session, cup_id) == 0


async def test_repeated_reservations_never_oversell(session_factory, seed):
    cup_id = seed["cup"].id
    succeeded = 0

    for _ in range(8):
        async with session_factory() as session:
            try:
                await InventoryService(session).reserve(cup_id, 1)
                await session.commit()
                succeeded += 1
            except OutOfStockError:
                await session.rollback()

    assert succeeded == 5
    async with session_factory() as session:
        assert await stock_of(session, cup_id) == 0


async def test_parallel_reservations_never_oversell(session_factory, seed):
    """Одновременные списания в разных сессиях не уводят остаток в минус."""
    cup_id = seed["cup"].id

    async def buy_one():
        async with session_factory() as session:
            try:
                await InventoryService(session).reserve(cup_id, 1)
                await session.commit()
                return True
            except (OutOfStockError, OperationalError):
                # SQLite может ответить "database is locked" вместо ожидания
                await session.rollback()
                return False

    results = await asyncio.gather(*(buy_one() for _ in range(8)))

    succeeded = sum(results)
    assert 1 <= succeeded <= 5
    async with session_factory() as session:
        assert await stock_of(session, cup_id) == 5 - succeeded


async def test_release_restores_stock(db, seed):
    tea_id = seed["tea"].id
    inventory = InventoryService(db)

    await inventory.reserve(tea_id, 4)
    await inventory.release(tea_id, 4)
    await db.commit()

    assert await stock_of(db, tea_id) == 10


async def test_release_unknown_product(db, seed):
    with pytest.raises(ProductNotFoundError):
        await InventoryService(db).release(uuid.uuid4(), 1)
