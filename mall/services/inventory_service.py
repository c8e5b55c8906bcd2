"""Сервис остатков товаров."""
import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from mall.core.exceptions import OutOfStockError, ProductNotFoundError, ValidationError
from mall.models.product import Product

logger = logging.getLogger(__name__)


class InventoryService:
    """
    Сервис остатков товаров.

    Остаток меняется только одним UPDATE с проверкой в WHERE, без чтения
    перед записью. Методы не коммитят: изменения попадают в транзакцию
    вызывающего кода.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def reserve(self, product_id: UUID, quantity: int) -> None:
        """
        Списать quantity единиц товара.

        Raises:
            OutOfStockError: товара меньше, чем нужно, или он снят с продажи
        """
        if quantity <= 0:
            raise ValidationError(f"Количество должно быть положительным, получено: {quantity}")

        stmt = (
            update(Product)
            .where(
                Product.id == product_id,
                Product.is_on_sale == True,  # noqa: E712
                Product.stock >= quantity,
            )
            .values(stock=Product.stock - quantity, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)

        if result.rowcount != 1:
            raise OutOfStockError(product_id, quantity)

        logger.info(f"Reserved {quantity} of product {product_id}")

    async def release(self, product_id: UUID, quantity: int) -> None:
        """Вернуть quantity единиц товара на склад."""
        if quantity <= 0:
            raise ValidationError(f"Количество должно быть положительным, получено: {quantity}")

        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)

        if result.rowcount != 1:
            raise ProductNotFoundError(product_id)

        logger.info(f"Released {quantity} of product {product_id}")
