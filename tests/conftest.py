"""Общие фикстуры тестов: временная SQLite база, тестовые данные, ключи провайдеров."""
import os

# До импорта mall.*: глобальный движок и планировщик не должны смотреть на боевые настройки
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./mall_import_only.db")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from decimal import Decimal

import httpx
import pytest
import rsa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from mall.core.alipay import AlipayClient
from mall.core.payment_providers import Acknowledgement, ChargeResult, PaymentProvider
from mall.core.security import create_user_token
from mall.core.wechat_pay import WechatPayClient
from mall.database import Base, get_db
from mall.main import app
from mall.models import Address, Product, User
from mall.models.payment import PaymentMethod
from mall.services.payment_service import get_payment_providers

ALIPAY_APP_ID = "2021000000000001"
WECHAT_API_KEY = "0123456789abcdef0123456789abcdef"


class FakeProvider(PaymentProvider):
    """Провайдер без сети: запоминает вызовы, может падать по требованию."""

    def __init__(self, method: str):
        self.method = method
        self.charges = []
        self.error = None

    async def create_charge(self, payment, subject):
        if self.error is not None:
            raise self.error
        self.charges.append(payment.payment_number)
        return ChargeResult(method=self.method, redirect_url=f"https://pay.test/{payment.payment_number}")

    def parse_notification(self, body):
        raise NotImplementedError

    def success_response(self):
        return Acknowledgement(body="ok", media_type="text/plain")

    def failure_response(self, message="", status_code=400):
        return Acknowledgement(body="fail", media_type="text/plain", status_code=status_code)


@pytest.fixture(scope="session")
def app_keys():
    """Ключевая пара приложения (подпись запросов в Alipay)."""
    return rsa.newkeys(1024)


@pytest.fixture(scope="session")
def alipay_keys():
    """Ключевая пара "Alipay" (подпись уведомлений)."""
    return rsa.newkeys(1024)


@pytest.fixture
def alipay_client(app_keys, alipay_keys):
    app_public, app_private = app_keys
    alipay_public, _ = alipay_keys
    return AlipayClient(
        app_id=ALIPAY_APP_ID,
        private_key=app_private.save_pkcs1().decode("ascii"),
        alipay_public_key=alipay_public.save_pkcs1().decode("ascii"),
        gateway_url="https://openapi.alipay.test/gateway.do",
        notify_url="https://mall.test/api/v1/payments/notify/alipay",
    )


@pytest.fixture
def wechat_client():
    return WechatPayClient(
        app_id="wx0000000000000001",
        mch_id="1900000001",
        api_key=WECHAT_API_KEY,
        notify_url="https://mall.test/api/v1/payments/notify/wechat",
        unifiedorder_url="https://api.mch.weixin.test/pay/unifiedorder",
    )


@pytest.fixture
def fake_providers():
    return {
        PaymentMethod.ALIPAY: FakeProvider(PaymentMethod.ALIPAY),
        PaymentMethod.WECHAT: FakeProvider(PaymentMethod.WECHAT),
    }


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'mall.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def seed(session_factory):
    """Покупатель с адресом, второй покупатель и три товара."""
    async with session_factory() as session:
        user = User(username="buyer", email="buyer@example.com")
        other = User(username="other", email="other@example.com")
        session.add_all([user, other])
        await session.flush()

        address = Address(user_id=user.id, recipient_name="Ли Мин", phone="13800000000", full_address="Шанхай, ул. Нанкин, 1")
        other_address = Address(user_id=other.id, recipient_name="Ван", phone="13900000000", full_address="Пекин, ул. Чанъань, 2")
        tea = Product(name="Зеленый чай", price=Decimal("10.00"), stock=10, image_url="/img/tea.png")
        cup = Product(name="Чашка", price=Decimal("5.00"), stock=5)
        retired = Product(name="Старый сервиз", price=Decimal("99.00"), stock=3, is_on_sale=False)
        session.add_all([address, other_address, tea, cup, retired])
        await session.commit()

        return {
            "user": user,
            "other": other,
            "address": address,
            "other_address": other_address,
            "tea": tea,
            "cup": cup,
            "retired": retired,
        }


@pytest.fixture
def auth_headers(seed):
    return {"Authorization": f"Bearer {create_user_token(seed['user'].id)}"}


@pytest.fixture
def api_providers(fake_providers):
    """Провайдеры, которые видят эндпоинты; тест может подменить любой."""
    return dict(fake_providers)


@pytest.fixture
async def client(session_factory, api_providers):
    """HTTP клиент к приложению поверх тестовой базы."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_providers] = lambda: api_providers

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()
