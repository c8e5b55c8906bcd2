"""Клиент Alipay: оплата через веб-страницу и проверка уведомлений.

Запросы и уведомления подписываются RSA2 (SHA256withRSA) по строке
вида k1=v1&k2=v2, ключи отсортированы, пустые значения пропускаются.
"""
import base64
import binascii
import json
import logging
import textwrap
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from urllib.parse import parse_qsl, urlencode

from jose import jwk
from jose.exceptions import JOSEError

from mall.config import settings
from mall.core.exceptions import (
    InvalidSignatureError,
    MalformedNotificationError,
    ProviderError,
)
from mall.core.payment_providers import (
    Acknowledgement,
    ChargeResult,
    Notification,
    PaymentProvider,
)
from mall.models.payment import Payment, PaymentMethod

logger = logging.getLogger(__name__)

# Статусы сделки, которые считаем оплатой
PAID_TRADE_STATUSES = ("TRADE_SUCCESS", "TRADE_FINISHED")

# Alipay ждет timestamp по пекинскому времени
BEIJING_TZ = timezone(timedelta(hours=8), "Asia/Shanghai")

# PKCS#1 (RSA PRIVATE KEY) или PKCS#8 (PRIVATE KEY), оба выдает генератор ключей Alipay
PRIVATE_KEY_LABELS = ("RSA PRIVATE KEY", "PRIVATE KEY")


def to_pem(key: str, label: str) -> str:
    """Обернуть ключ в PEM, если он передан голым base64 (как в кабинете Alipay)."""
    key = key.strip()
    if key.startswith("-----BEGIN"):
        return key
    body = "\n".join(textwrap.wrap(key, 64))
    return f"-----BEGIN {label}-----\n{body}\n-----END {label}-----\n"


def beijing_now() -> datetime:
    return datetime.now(BEIJING_TZ)


def build_sign_content(params: dict, exclude: tuple[str, ...] = ("sign",)) -> str:
    """Строка для подписи: отсортированные непустые k=v через &."""
    return "&".join(
        f"{key}={value}"
        for key, value in sorted(params.items())
        if key not in exclude and value not in (None, "")
    )


class AlipayClient(PaymentProvider):
    """Клиент Alipay."""

    method = PaymentMethod.ALIPAY

    def __init__(
        self,
        app_id: str,
        private_key: str,
        alipay_public_key: str,
        gateway_url: str,
        notify_url: str = "",
        return_url: str = "",
    ):
        self.app_id = app_id
        self.private_key = private_key
        self.alipay_public_key = alipay_public_key
        self.gateway_url = gateway_url
        self.notify_url = notify_url
        self.return_url = return_url

    @classmethod
    def from_settings(cls) -> "AlipayClient":
        return cls(
            app_id=settings.alipay_app_id,
            private_key=settings.alipay_private_key,
            alipay_public_key=settings.alipay_public_key,
            gateway_url=settings.alipay_gateway_url,
            notify_url=settings.alipay_notify_url,
            return_url=settings.alipay_return_url,
        )

    def sign(self, content: str) -> str:
        """Подписать строку приватным ключом приложения."""
        if not self.app_id or not self.private_key:
            raise ProviderError("Alipay не настроен: нет app_id или приватного ключа")
        key = self._private_key()
        try:
            signature = key.sign(content.encode("utf-8"))
        except (JOSEError, ValueError) as e:
            raise ProviderError(f"Не удалось подписать запрос Alipay: {e}") from e
        return base64.b64encode(signature).decode("ascii")

    def _private_key(self):
        """Ключ приложения; голый base64 пробуем как PKCS#1, затем как PKCS#8."""
        error = None
        for label in PRIVATE_KEY_LABELS:
            try:
                return jwk.construct(to_pem(self.private_key, label), algorithm="RS256")
            except (JOSEError, ValueError) as e:
                error = e
        raise ProviderError(f"Некорректный приватный ключ Alipay: {error}") from error

    def verify(self, content: str, signature: str) -> bool:
        """Проверить подпись Alipay."""
        if not self.alipay_public_key:
            raise ProviderError("Alipay не настроен: нет публичного ключа Alipay")
        try:
            raw_signature = base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError):
            return False
        try:
            key = jwk.construct(to_pem(self.alipay_public_key, "PUBLIC KEY"), algorithm="RS256")
        except (JOSEError, ValueError) as e:
            raise ProviderError(f"Некорректный публичный ключ Alipay: {e}") from e
        return key.verify(content.encode("utf-8"), raw_signature)

    async def create_charge(self, payment: Payment, subject: str) -> ChargeResult:
        """Сформировать подписанную ссылку на страницу оплаты (alipay.trade.page.pay)."""
        biz_content = {
            "out_trade_no": payment.payment_number,
            "product_code": "FAST_INSTANT_TRADE_PAY",
            "total_amount": f"{payment.amount:.2f}",
            "subject": subject,
        }
        params = {
            "app_id": self.app_id,
            "method": "alipay.trade.page.pay",
            "format": "JSON",
            "charset": "utf-8",
            "sign_type": "RSA2",
            "timestamp": beijing_now().strftime("%Y-%m-%d %H:%M:%S"),
            "version": "1.0",
            "notify_url": self.notify_url,
            "return_url": self.return_url,
            "biz_content": json.dumps(biz_content, ensure_ascii=False, separators=(",", ":")),
        }
        params = {key: value for key, value in params.items() if value}
        params["sign"] = self.sign(build_sign_content(params))

        logger.info(f"Alipay page pay URL built for payment {payment.payment_number}: amount={biz_content['total_amount']}")
        return ChargeResult(method=self.method, redirect_url=f"{self.gateway_url}?{urlencode(params)}")

    def parse_notification(self, body: bytes) -> Notification:
        """Разобрать form-urlencoded уведомление Alipay."""
        try:
            params = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError as e:
            raise MalformedNotificationError("Уведомление Alipay не в UTF-8") from e

        signature = params.get("sign")
        if not signature:
            raise InvalidSignatureError("В уведомлении Alipay нет подписи")
        if not self.verify(build_sign_content(params, exclude=("sign", "sign_type")), signature):
            raise InvalidSignatureError("Неверная подпись уведомления Alipay")

        if params.get("app_id") and params["app_id"] != self.app_id:
            raise MalformedNotificationError(f"Уведомление для чужого app_id: {params['app_id']}")

        out_trade_no = params.get("out_trade_no")
        if not out_trade_no:
            raise MalformedNotificationError("В уведомлении Alipay нет out_trade_no")

        amount = None
        if params.get("total_amount"):
            try:
                amount = Decimal(params["total_amount"])
            except InvalidOperation as e:
                raise MalformedNotificationError(f"Некорректная сумма: {params['total_amount']}") from e

        trade_status = params.get("trade_status", "")
        return Notification(
            payment_number=out_trade_no,
            is_paid=trade_status in PAID_TRADE_STATUSES,
            status=trade_status,
            trade_no=params.get("trade_no"),
            amount=amount,
            payload=params,
        )

    def success_response(self) -> Acknowledgement:
        # Alipay ждет ровно строку "success", иначе повторяет уведомление
        return Acknowledgement(body="success", media_type="text/plain")

    def failure_response(self, message: str = "", status_code: int = 400) -> Acknowledgement:
        return Acknowledgement(body="failure", media_type="text/plain", status_code=status_code)
