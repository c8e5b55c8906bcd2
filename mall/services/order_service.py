"""Сервис для работы с заказами."""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from mall.config import settings
from mall.core.exceptions import (
    ForbiddenError,
    InsufficientStockError,
    InvalidAddressError,
    InvalidStateError,
    MallError,
    OrderCreationFailedError,
    OrderNotFoundError,
    OutOfStockError,
    PersistenceError,
    ProductNotFoundError,
    ProductUnavailableError,
    ValidationError,
)
from mall.models.address import Address
from mall.models.order import Order, OrderItem, OrderStatus
from mall.models.product import Product
from mall.services.inventory_service import InventoryService

logger = logging.getLogger(__name__)

# Допустимые переходы статусов заказа
ORDER_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.SHIPPED, OrderStatus.REFUNDED},
    OrderStatus.SHIPPED: {OrderStatus.COMPLETED},
}


def generate_order_number(user_id: UUID, now: datetime) -> str:
    """Номер заказа: время создания до микросекунд + ID владельца."""
    return f"{now.strftime('%Y%m%d%H%M%S%f')}{user_id.hex}"


class OrderService:
    """Сервис для работы с заказами."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.inventory = InventoryService(db)

    async def create_order(
        self,
        user_id: UUID,
        address_id: UUID,
        items: list[dict],
        remark: str | None = None,
    ) -> Order:
        """
        Создать заказ.

        Заголовок заказа, списание остатков и позиции создаются в одной
        транзакции. Позиции обрабатываются в порядке запроса, первая же
        ошибка откатывает весь заказ.

        Args:
            user_id: ID владельца заказа
            address_id: ID адреса доставки
            items: [{"product_id": UUID, "quantity": int}, ...]
            remark: Комментарий к заказу
        """
        if not items:
            raise ValidationError("Заказ должен содержать хотя бы один товар")
        for item in items:
            if int(item["quantity"]) <= 0:
                raise ValidationError(f"Количество товара '{item['product_id']}' должно быть положительным")

        await self._check_address(address_id, user_id)

        try:
            order = await self._create_order_with_items(user_id, address_id, items, remark)
            await self.db.commit()
        except MallError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to create order for user {user_id}: {e}", exc_info=True)
            raise PersistenceError("Не удалось создать заказ, повторите попытку") from e

        logger.info(
            f"Order {order.order_number} created: user={user_id}, items={len(order.items)}, "
            f"total={order.total_amount}, expires_at={order.expired_at.isoformat()}"
        )
        return order

    async def _create_order_with_items(
        self,
        user_id: UUID,
        address_id: UUID,
        items: list[dict],
        remark: str | None,
    ) -> Order:
        now = datetime.utcnow()
        order = Order(
            order_number=generate_order_number(user_id, now),
            user_id=user_id,
            address_id=address_id,
            status=OrderStatus.PENDING,
            total_amount=Decimal("0"),
            remark=remark,
            expired_at=now + timedelta(minutes=settings.order_reservation_minutes),
            created_at=now,
            updated_at=now,
            items=[],
        )
        self.db.add(order)

        # Коллизия номера - ошибка, без повторной генерации
        try:
            await self.db.flush()
        except IntegrityError as e:
            logger.warning(f"Order number collision: {order.order_number}")
            raise OrderCreationFailedError(f"Номер заказа {order.order_number} уже занят") from e

        total_amount = Decimal("0")
        for position, item in enumerate(items):
            product_id = item["product_id"]
            quantity = int(item["quantity"])

            product = await self.db.get(Product, product_id, populate_existing=True)
            if not product:
                raise ProductNotFoundError(product_id)
            if not product.is_on_sale:
                raise ProductUnavailableError(product.name)
            if product.stock < quantity:
                raise InsufficientStockError(product.id, quantity, product.name, available=product.stock)

            try:
                await self.inventory.reserve(product.id, quantity)
            except OutOfStockError as e:
                # Остаток успели забрать параллельным заказом
                raise InsufficientStockError(product.id, quantity, product.name) from e

            item_total = (product.price * quantity).quantize(Decimal("0.01"))
            order.items.append(
                OrderItem(
                    product_id=product.id,
                    position=position,
                    product_name=product.name,
                    product_image=product.image_url,
                    unit_price=product.price,
                    quantity=quantity,
                    total_price=item_total,
                )
            )
            total_amount += item_total

        order.total_amount = total_amount
        await self.db.flush()
        return order

    async def _check_address(self, address_id: UUID, user_id: UUID) -> None:
        address = await self.db.get(Address, address_id)
        if not address:
            raise InvalidAddressError(f"Адрес '{address_id}' не найден")
        if address.user_id != user_id:
            raise ForbiddenError("Нет доступа к этому адресу")

    async def get_by_id(self, order_id: UUID) -> Order | None:
        """Получить заказ по ID."""
        stmt = (
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_order(self, order_id: UUID, user_id: UUID) -> Order:
        """Получить заказ владельца."""
        order = await self.get_by_id(order_id)
        if not order:
            raise OrderNotFoundError(order_id)
        if order.user_id != user_id:
            raise ForbiddenError("Нет доступа к этому заказу")
        return order

    async def list_orders(
        self,
        user_id: UUID,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> list[Order]:
        """Получить заказы пользователя, новые первыми."""
        stmt = (
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.user_id == user_id)
        )

        if status:
            if status not in OrderStatus.ALL:
                raise ValidationError(
                    f"Недопустимый статус: {status}. Допустимые: {', '.join(OrderStatus.ALL)}"
                )
            stmt = stmt.where(Order.status == status)

        # Пагинация
        offset = (page - 1) * limit
        stmt = stmt.order_by(Order.created_at.desc()).offset(offset).limit(limit)

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def update_order(
        self,
        order_id: UUID,
        user_id: UUID,
        address_id: UUID | None = None,
        remark: str | None = None,
    ) -> Order:
        """
        Изменить адрес и/или комментарий заказа.

        Менять можно только заказ в статусе 'pending'.
        """
        order = await self.get_order(order_id, user_id)
        if order.status != OrderStatus.PENDING:
            raise InvalidStateError(
                f"Изменить можно только заказ в статусе 'pending'. Текущий статус: {order.status}"
            )

        values: dict = {"updated_at": datetime.utcnow()}
        if address_id is not None:
            await self._check_address(address_id, user_id)
            values["address_id"] = address_id
        if remark is not None:
            values["remark"] = remark

        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            if result.rowcount != 1:
                raise InvalidStateError("Заказ уже не в статусе 'pending'")
            await self.db.commit()
        except MallError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError("Не удалось обновить заказ") from e

        return await self.get_by_id(order_id)

    async def change_status(self, order_id: UUID, expected: str, new: str) -> bool:
        """
        Условный переход статуса: expected -> new.

        Не коммитит. Возвращает False, если заказ уже не в статусе expected.
        """
        if new not in ORDER_TRANSITIONS.get(expected, set()):
            raise InvalidStateError(f"Переход статуса заказа {expected} -> {new} недопустим")

        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status == expected)
            .values(status=new, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def cancel_order(self, order_id: UUID, user_id: UUID) -> Order:
        """
        Отменить заказ и вернуть товар на склад.

        Отменить можно только заказ в статусе 'pending'.
        """
        order = await self.get_order(order_id, user_id)
        if order.status != OrderStatus.PENDING:
            raise InvalidStateError(
                f"Отменить можно только заказ в статусе 'pending'. Текущий статус: {order.status}"
            )

        items = [(item.product_id, item.quantity) for item in order.items]
        try:
            await self._cancel_and_release(order.id, items)
            await self.db.commit()
        except MallError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to cancel order {order_id}: {e}", exc_info=True)
            raise PersistenceError("Не удалось отменить заказ") from e

        logger.info(f"Order {order.order_number} cancelled by user {user_id}")
        return await self.get_by_id(order_id)

    async def _cancel_and_release(self, order_id: UUID, items: list[tuple[UUID, int]]) -> None:
        if not await self.change_status(order_id, OrderStatus.PENDING, OrderStatus.CANCELLED):
            raise InvalidStateError("Заказ уже не в статусе 'pending'")

        for product_id, quantity in items:
            await self.inventory.release(product_id, quantity)

    async def cancel_expired_orders(self, now: datetime | None = None) -> int:
        """
        Отменить неоплаченные заказы с истекшим резервом.

        Каждый заказ отменяется в своей транзакции; ошибка одного заказа
        логируется и не мешает остальным.

        Returns:
            Количество отмененных заказов
        """
        now = now or datetime.utcnow()

        stmt = (
            select(Order)
            .options(selectinload(Order.items))
            .where(
                Order.status == OrderStatus.PENDING,
                Order.expired_at < now,
            )
            .order_by(Order.expired_at)
        )
        result = await self.db.execute(stmt)

        # После rollback объекты сессии протухают, поэтому забираем данные заранее
        expired = [
            (order.id, order.order_number, [(item.product_id, item.quantity) for item in order.items])
            for order in result.scalars().all()
        ]

        cancelled_count = 0
        for order_id, order_number, items in expired:
            try:
                await self._cancel_and_release(order_id, items)
                await self.db.commit()
            except InvalidStateError:
                await self.db.rollback()
                logger.info(f"Order {order_number} left 'pending' before sweep, skipping")
                continue
            except Exception as e:
                await self.db.rollback()
                logger.error(f"Failed to cancel expired order {order_number}: {e}", exc_info=True)
                continue

            cancelled_count += 1
            logger.info(f"Expired order {order_number} cancelled, stock restored")

        return cancelled_count
