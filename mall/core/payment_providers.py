"""Общий интерфейс платежных провайдеров."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal

from mall.models.payment import Payment


@dataclass
class ChargeResult:
    """Результат создания платежа у провайдера: ссылка для перехода или данные для QR-кода."""

    method: str
    redirect_url: str | None = None
    qr_code: str | None = None


@dataclass
class Notification:
    """Проверенное уведомление провайдера."""

    payment_number: str
    is_paid: bool
    status: str
    trade_no: str | None = None
    amount: Decimal | None = None
    payload: dict = field(default_factory=dict)


@dataclass
class Acknowledgement:
    """Ответ провайдеру в его собственном формате."""

    body: str
    media_type: str
    status_code: int = 200


class PaymentProvider(ABC):
    """Платежный провайдер."""

    method: str

    @abstractmethod
    async def create_charge(self, payment: Payment, subject: str) -> ChargeResult:
        """Создать платеж у провайдера."""

    @abstractmethod
    def parse_notification(self, body: bytes) -> Notification:
        """
        Разобрать и проверить входящее уведомление.

        Raises:
            InvalidSignatureError: подпись не сошлась
            MalformedNotificationError: уведомление не удалось разобрать
        """

    @abstractmethod
    def success_response(self) -> Acknowledgement:
        """Подтверждение получения уведомления."""

    @abstractmethod
    def failure_response(self, message: str = "", status_code: int = 400) -> Acknowledgement:
        """Отказ в приеме уведомления."""
