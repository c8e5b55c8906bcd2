"""Скрипт для ручного (или cron) запуска отмены просроченных заказов и платежей.

Нужен, когда встроенный планировщик отключен (SCHEDULER_ENABLED=false).
"""
import argparse
import asyncio
import logging

from mall.config import settings
from mall.database import AsyncSessionLocal
from mall.services.order_service import OrderService
from mall.services.payment_service import PaymentService

logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main(payments: bool = True):
    """Отменить заказы с истекшим резервом и, опционально, просроченные платежи."""
    try:
        async with AsyncSessionLocal() as db:
            order_service = OrderService(db)
            cancelled_orders = await order_service.cancel_expired_orders()
            logger.info(f"Отменено {cancelled_orders} заказов с истекшим резервом")

            if payments:
                payment_service = PaymentService(db, providers={})
                cancelled_payments = await payment_service.cancel_expired_payments()
                logger.info(f"Отменено {cancelled_payments} платежей по таймауту")
    except Exception as e:
        logger.error(f"Ошибка при отмене просроченных заказов: {e}", exc_info=True)
        raise


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Отмена просроченных заказов и платежей")
    parser.add_argument("--orders-only", action="store_true", help="не трогать платежи")
    args = parser.parse_args()
    asyncio.run(main(payments=not args.orders_only))
