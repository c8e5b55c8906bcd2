"""Модели платежей."""
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Numeric, ForeignKey, JSON, Index, text
from sqlalchemy.orm import Mapped, mapped_column

from mall.database import Base


class PaymentMethod:
    """Способы оплаты."""

    ALIPAY = "alipay"
    WECHAT = "wechat"

    ALL = (ALIPAY, WECHAT)


class PaymentStatus:
    """Статусы платежа."""

    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    ALL = (PENDING, PAID, CANCELLED, REFUNDED)


class Payment(Base):
    """Модель платежа.

    Платежи не удаляются. На один заказ допускается не больше одного
    платежа в статусе pending (частичный уникальный индекс).
    """

    __tablename__ = "payments"
    __table_args__ = (
        Index(
            "uq_payments_order_pending",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    payment_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    order_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)  # alipay / wechat
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING)
    provider_trade_no: Mapped[str | None] = mapped_column(String(64), nullable=True)
    raw_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)


class PaymentTimeout(Base):
    """Отложенная проверка платежа.

    Строка создается вместе с платежом и переживает рестарт процесса,
    в отличие от таймера в памяти.
    """

    __tablename__ = "payment_timeouts"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("payments.id"), unique=True, nullable=False)
    fire_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    fired_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
