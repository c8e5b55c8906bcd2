"""Клиент WeChat Pay (API v2): оплата по QR-коду (NATIVE) и проверка уведомлений."""
import hashlib
import hmac
import logging
import uuid
import xml.etree.ElementTree as ET
from decimal import Decimal

import httpx

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


def to_xml(params: dict) -> str:
    """Сериализовать плоский словарь в XML формата WeChat Pay."""
    fields = "".join(f"<{key}><![CDATA[{value}]]></{key}>" for key, value in params.items())
    return f"<xml>{fields}</xml>"


def from_xml(body: bytes | str) -> dict[str, str]:
    """Разобрать плоский XML WeChat Pay в словарь."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise MalformedNotificationError(f"Некорректный XML: {e}") from e
    return {child.tag: (child.text or "") for child in root}


class WechatPayClient(PaymentProvider):
    """Клиент WeChat Pay."""

    method = PaymentMethod.WECHAT

    def __init__(
        self,
        app_id: str,
        mch_id: str,
        api_key: str,
        notify_url: str,
        unifiedorder_url: str,
        client_ip: str = "127.0.0.1",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.app_id = app_id
        self.mch_id = mch_id
        self.api_key = api_key
        self.notify_url = notify_url
        self.unifiedorder_url = unifiedorder_url
        self.client_ip = client_ip
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "WechatPayClient":
        return cls(
            app_id=settings.wechat_app_id,
            mch_id=settings.wechat_mch_id,
            api_key=settings.wechat_api_key,
            notify_url=settings.wechat_notify_url,
            unifiedorder_url=settings.wechat_unifiedorder_url,
            client_ip=settings.wechat_client_ip,
        )

    def sign(self, params: dict, sign_type: str = "MD5") -> str:
        """Подпись: отсортированные непустые k=v через &, затем &key=<API ключ>."""
        if not self.api_key:
            raise ProviderError("WeChat Pay не настроен: нет API ключа")

        content = "&".join(
            f"{key}={value}"
            for key, value in sorted(params.items())
            if key != "sign" and value not in (None, "")
        )
        content = f"{content}&key={self.api_key}"

        if sign_type == "HMAC-SHA256":
            return hmac.new(self.api_key.encode(), content.encode("utf-8"), hashlib.sha256).hexdigest().upper()
        return hashlib.md5(content.encode("utf-8")).hexdigest().upper()

    def verify(self, params: dict) -> bool:
        signature = params.get("sign")
        if not signature:
            return False
        expected = self.sign(params, params.get("sign_type") or "MD5")
        return hmac.compare_digest(expected, signature.upper())

    async def create_charge(self, payment: Payment, subject: str) -> ChargeResult:
        """Создать NATIVE-платеж и вернуть code_url для QR-кода."""
        if not self.app_id or not self.mch_id:
            raise ProviderError("WeChat Pay не настроен: нет app_id или mch_id")

        total_fee = int((payment.amount * 100).to_integral_value())  # В фэнях
        params = {
            "appid": self.app_id,
            "mch_id": self.mch_id,
            "nonce_str": uuid.uuid4().hex,
            "body": subject,
            "out_trade_no": payment.payment_number,
            "total_fee": str(total_fee),
            "spbill_create_ip": self.client_ip,
            "notify_url": self.notify_url,
            "trade_type": "NATIVE",
            "product_id": payment.order_id.hex,
        }
        params["sign"] = self.sign(params)

        logger.info(f"Creating WeChat Pay NATIVE order for payment {payment.payment_number}: total_fee={total_fee}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.unifiedorder_url,
                    content=to_xml(params).encode("utf-8"),
                    headers={"Content-Type": "application/xml"},
                )
        except httpx.HTTPError as e:
            logger.error(f"WeChat Pay request failed for payment {payment.payment_number}: {e}")
            raise ProviderError(f"WeChat Pay недоступен: {e}") from e

        if response.status_code != 200:
            raise ProviderError(f"WeChat Pay API error: HTTP {response.status_code}")

        try:
            data = from_xml(response.content)
        except MalformedNotificationError as e:
            raise ProviderError(f"WeChat Pay вернул некорректный ответ: {e}") from e

        if data.get("return_code") != "SUCCESS":
            raise ProviderError(f"WeChat Pay API error: {data.get('return_msg', '')}")
        if not self.verify(data):
            raise ProviderError("Неверная подпись ответа WeChat Pay")
        if data.get("result_code") != "SUCCESS":
            raise ProviderError(f"WeChat Pay отказал: {data.get('err_code_des') or data.get('err_code', '')}")

        code_url = data.get("code_url")
        if not code_url:
            logger.error(f"WeChat Pay response has no code_url: {data}")
            raise ProviderError("WeChat Pay не вернул code_url")

        return ChargeResult(method=self.method, qr_code=code_url)

    def parse_notification(self, body: bytes) -> Notification:
        """Разобрать XML уведомление WeChat Pay."""
        params = from_xml(body)

        if params.get("return_code") != "SUCCESS":
            raise MalformedNotificationError(f"return_code={params.get('return_code')}: {params.get('return_msg', '')}")
        if not self.verify(params):
            raise InvalidSignatureError("Неверная подпись уведомления WeChat Pay")

        out_trade_no = params.get("out_trade_no")
        if not out_trade_no:
            raise MalformedNotificationError("В уведомлении WeChat Pay нет out_trade_no")

        amount = None
        if params.get("total_fee"):
            try:
                amount = Decimal(int(params["total_fee"])) / 100
            except ValueError as e:
                raise MalformedNotificationError(f"Некорректная сумма: {params['total_fee']}") from e

        result_code = params.get("result_code", "")
        return Notification(
            payment_number=out_trade_no,
            is_paid=result_code == "SUCCESS",
            status=result_code,
            trade_no=params.get("transaction_id"),
            amount=amount,
            payload=params,
        )

    def success_response(self) -> Acknowledgement:
        return Acknowledgement(
            body=to_xml({"return_code": "SUCCESS", "return_msg": "OK"}),
            media_type="application/xml",
        )

    def failure_response(self, message: str = "", status_code: int = 400) -> Acknowledgement:
        return Acknowledgement(
            body=to_xml({"return_code": "FAIL", "return_msg": message or "ERROR"}),
            media_type="application/xml",
            status_code=status_code,
        )
