"""Сервис для работы с платежами."""
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mall.config import settings
from mall.core.alipay import AlipayClient
from mall.core.exceptions import (
    AmountMismatchError,
    ForbiddenError,
    InvalidPaymentStateError,
    InvalidStateError,
    MalformedNotificationError,
    MallError,
    OrderNotFoundError,
    PaymentNotFoundError,
    PersistenceError,
    ProviderError,
    UnsupportedPaymentMethodError,
    ValidationError,
)
from mall.core.payment_providers import ChargeResult, PaymentProvider
from mall.core.wechat_pay import WechatPayClient
from mall.models.order import Order, OrderStatus
from mall.models.payment import Payment, PaymentMethod, PaymentStatus, PaymentTimeout
from mall.services.order_service import OrderService

logger = logging.getLogger(__name__)


class ReconcileOutcome:
    """Результат обработки уведомления провайдера."""

    PAID = "paid"  # Платеж переведен в paid
    DUPLICATE = "duplicate"  # Повторное уведомление по уже оплаченному платежу
    IGNORED = "ignored"  # Неуспешный статус или платеж уже отменен


def get_payment_providers() -> dict[str, PaymentProvider]:
    """Провайдеры, настроенные из settings."""
    return {
        PaymentMethod.ALIPAY: AlipayClient.from_settings(),
        PaymentMethod.WECHAT: WechatPayClient.from_settings(),
    }


class PaymentService:
    """Сервис для работы с платежами."""

    def __init__(self, db: AsyncSession, providers: dict[str, PaymentProvider] | None = None):
        self.db = db
        self.providers = providers if providers is not None else get_payment_providers()

    def get_provider(self, method: str) -> PaymentProvider:
        provider = self.providers.get(method)
        if provider is None:
            raise UnsupportedPaymentMethodError(method)
        return provider

    async def charge(
        self,
        order_id: uuid.UUID,
        user_id: uuid.UUID,
        amount: Decimal,
        method: str,
    ) -> tuple[Payment, ChargeResult]:
        """
        Запросить оплату заказа.

        Если у заказа уже есть платеж в статусе 'pending', он переиспользуется,
        иначе создается новый вместе с отложенной проверкой таймаута.
        Новый платеж фиксируется только после успешного ответа провайдера.

        Returns:
            (платеж, ссылка или данные QR-кода от провайдера)
        """
        self.get_provider(method)

        order = await self.db.get(Order, order_id, populate_existing=True)
        if not order:
            raise OrderNotFoundError(order_id)
        if order.user_id != user_id:
            raise ForbiddenError("Нет доступа к этому заказу")

        payment = await self.get_latest_for_order(order_id)
        if payment is not None and payment.status != PaymentStatus.PENDING:
            raise InvalidPaymentStateError(
                f"Текущий статус платежа '{payment.status}' не позволяет оплату"
            )

        if order.status != OrderStatus.PENDING:
            raise InvalidStateError(f"Заказ в статусе '{order.status}' нельзя оплатить")
        if Decimal(amount).quantize(Decimal("0.01")) != order.total_amount:
            raise AmountMismatchError(
                f"Сумма платежа {amount} не совпадает с суммой заказа {order.total_amount}"
            )

        created = False
        if payment is None:
            payment, created = await self._create_pending_payment(order, method)

        provider = self.get_provider(payment.payment_method)
        try:
            result = await provider.create_charge(payment, settings.payment_subject)
        except ProviderError:
            if created:
                await self.db.rollback()
            raise

        if created:
            await self._commit()
            logger.info(
                f"Payment {payment.payment_number} created for order {order_id}: "
                f"amount={payment.amount}, method={payment.payment_method}"
            )
        return payment, result

    async def _create_pending_payment(self, order: Order, method: str) -> tuple[Payment, bool]:
        order_id = order.id
        now = datetime.utcnow()
        payment = Payment(
            payment_number=uuid.uuid4().hex,
            order_id=order_id,
            user_id=order.user_id,
            amount=order.total_amount,
            payment_method=method,
            status=PaymentStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.db.add(payment)

        try:
            await self.db.flush()
        except IntegrityError as e:
            # Параллельный запрос успел создать pending-платеж
            await self.db.rollback()
            existing = await self.get_latest_for_order(order_id)
            if existing is not None and existing.status == PaymentStatus.PENDING:
                logger.info(f"Reusing concurrently created payment {existing.payment_number} for order {order_id}")
                return existing, False
            raise PersistenceError("Не удалось создать платеж, повторите попытку") from e

        self.db.add(
            PaymentTimeout(
                payment_id=payment.id,
                fire_at=now + timedelta(minutes=settings.payment_timeout_minutes),
                created_at=now,
            )
        )
        await self.db.flush()
        return payment, True

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Commit failed: {e}", exc_info=True)
            raise PersistenceError() from e

    async def get_latest_for_order(self, order_id: uuid.UUID) -> Payment | None:
        """Последний платеж по заказу."""
        stmt = (
            select(Payment)
            .where(Payment.order_id == order_id)
            .order_by(Payment.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_number(self, payment_number: str) -> Payment | None:
        """Получить платеж по номеру."""
        stmt = (
            select(Payment)
            .where(Payment.payment_number == payment_number)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_payments(self, user_id: uuid.UUID, status: str | None = None) -> list[Payment]:
        """Платежи пользователя, опционально с фильтром по статусу."""
        stmt = select(Payment).where(Payment.user_id == user_id)
        if status:
            if status not in PaymentStatus.ALL:
                raise ValidationError(
                    f"Недопустимый статус оплаты: {status}. Допустимые: {', '.join(PaymentStatus.ALL)}"
                )
            stmt = stmt.where(Payment.status == status)

        result = await self.db.execute(stmt.order_by(Payment.created_at.desc()))
        return list(result.scalars().all())

    async def _change_status(self, payment_id: uuid.UUID, expected: str, new: str, **values) -> bool:
        """Условный переход статуса платежа. Не коммитит."""
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == expected)
            .values(status=new, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def cancel_expired_payments(self, now: datetime | None = None) -> int:
        """
        Отменить платежи, которые остались 'pending' после таймаута.

        Проходит по наступившим отложенным проверкам; уже оплаченные или
        отмененные платежи не трогает. Остатки товара здесь не возвращаются,
        это делает отмена заказа.

        Returns:
            Количество отмененных платежей
        """
        now = now or datetime.utcnow()

        stmt = (
            select(PaymentTimeout.id, PaymentTimeout.payment_id)
            .where(
                PaymentTimeout.fired_at.is_(None),
                PaymentTimeout.fire_at <= now,
            )
            .order_by(PaymentTimeout.fire_at)
        )
        due = (await self.db.execute(stmt)).all()

        cancelled_count = 0
        for timeout_id, payment_id in due:
            try:
                cancelled = await self._change_status(payment_id, PaymentStatus.PENDING, PaymentStatus.CANCELLED)
                await self.db.execute(
                    update(PaymentTimeout)
                    .where(PaymentTimeout.id == timeout_id, PaymentTimeout.fired_at.is_(None))
                    .values(fired_at=now)
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                logger.error(f"Failed to process payment timeout for payment {payment_id}: {e}", exc_info=True)
                continue

            if cancelled:
                cancelled_count += 1
                logger.info(f"Payment {payment_id} timed out and was cancelled")

        return cancelled_count

    async def reconcile(self, method: str, body: bytes) -> str:
        """
        Обработать уведомление провайдера об оплате.

        Повторная доставка уведомления по оплаченному платежу не ошибка:
        состояние не меняется, paid_at остается прежним.

        Returns:
            ReconcileOutcome.PAID / DUPLICATE / IGNORED
        """
        provider = self.get_provider(method)
        notification = provider.parse_notification(body)

        payment = await self.get_by_number(notification.payment_number)
        if not payment:
            raise PaymentNotFoundError(notification.payment_number)

        if not notification.is_paid:
            logger.info(
                f"{method} notification for payment {payment.payment_number} "
                f"has non-terminal status '{notification.status}', skipping"
            )
            return ReconcileOutcome.IGNORED

        if notification.amount is not None and notification.amount != payment.amount:
            raise MalformedNotificationError(
                f"Сумма в уведомлении {notification.amount} не совпадает с суммой платежа {payment.amount}"
            )

        if payment.status == PaymentStatus.PAID:
            logger.info(f"Duplicate paid notification for payment {payment.payment_number}")
            return ReconcileOutcome.DUPLICATE
        if payment.status != PaymentStatus.PENDING:
            logger.warning(
                f"Paid notification for payment {payment.payment_number} in status '{payment.status}', ignored"
            )
            return ReconcileOutcome.IGNORED

        payment_id = payment.id
        order_id = payment.order_id
        payment_number = payment.payment_number
        try:
            paid = await self._change_status(
                payment_id,
                PaymentStatus.PENDING,
                PaymentStatus.PAID,
                paid_at=datetime.utcnow(),
                provider_trade_no=notification.trade_no,
                raw_payload=notification.payload,
            )
            if not paid:
                # Платеж успели изменить между чтением и записью
                await self.db.rollback()
                current = await self.get_by_number(payment_number)
                if current is not None and current.status == PaymentStatus.PAID:
                    return ReconcileOutcome.DUPLICATE
                logger.warning(f"Payment {payment_number} left 'pending' concurrently, paid notification ignored")
                return ReconcileOutcome.IGNORED

            order_paid = await OrderService(self.db).change_status(order_id, OrderStatus.PENDING, OrderStatus.PAID)
            if not order_paid:
                # Деньги получены, а заказ уже отменен: возврат делается вручную
                logger.error(
                    f"Payment {payment_number} is paid but order {order_id} is no longer 'pending', manual refund required"
                )

            await self.db.commit()
        except MallError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to reconcile payment {payment_number}: {e}", exc_info=True)
            raise PersistenceError() from e

        logger.info(f"Payment {payment_number} marked as paid (trade_no={notification.trade_no})")
        return ReconcileOutcome.PAID
