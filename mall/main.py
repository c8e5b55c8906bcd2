"""Главный файл приложения."""
import logging
import time
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mall.api.v1 import router as api_v1_router
from mall.config import settings
from mall.core.exceptions import MallError
from mall.database import AsyncSessionLocal
from mall.services.order_service import OrderService
from mall.services.payment_service import PaymentService

# Настройка логирования
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Глобальный планировщик задач
scheduler = AsyncIOScheduler()


async def sweep_expired_orders():
    """Периодическая задача: отмена неоплаченных заказов с истекшим резервом."""
    try:
        async with AsyncSessionLocal() as db:
            order_service = OrderService(db)
            cancelled_count = await order_service.cancel_expired_orders()
            if cancelled_count > 0:
                logger.info(f"Отменено {cancelled_count} заказов с истекшим резервом")
    except Exception as e:
        logger.error(f"Ошибка при отмене просроченных заказов: {e}", exc_info=True)


async def reap_expired_payments():
    """Периодическая задача: отмена платежей, не оплаченных за отведенное время."""
    try:
        async with AsyncSessionLocal() as db:
            payment_service = PaymentService(db, providers={})
            cancelled_count = await payment_service.cancel_expired_payments()
            if cancelled_count > 0:
                logger.info(f"Отменено {cancelled_count} платежей по таймауту")
    except Exception as e:
        logger.error(f"Ошибка при отмене просроченных платежей: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения."""
    # Startup
    if settings.scheduler_enabled:
        scheduler.add_job(
            sweep_expired_orders,
            trigger=IntervalTrigger(seconds=settings.order_sweep_interval_seconds),
            id="sweep_expired_orders",
            name="Отмена заказов с истекшим резервом",
            replace_existing=True,
            max_instances=1,
        )
        scheduler.add_job(
            reap_expired_payments,
            trigger=IntervalTrigger(seconds=settings.payment_reap_interval_seconds),
            id="reap_expired_payments",
            name="Отмена просроченных платежей",
            replace_existing=True,
            max_instances=1,
        )
        scheduler.start()
        logger.info(
            f"Планировщик задач запущен: заказы каждые {settings.order_sweep_interval_seconds} с, "
            f"платежи каждые {settings.payment_reap_interval_seconds} с"
        )
    else:
        logger.info("Планировщик задач отключен (scheduler_enabled=False)")

    yield

    # Shutdown
    if scheduler.running:
        scheduler.shutdown(wait=False)


app = FastAPI(
    title="Mall Order & Payment API",
    description="Заказы, резервирование остатков и оплата через Alipay / WeChat Pay",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS - в development режиме разрешаем все origins
if settings.is_development:
    cors_origins = ["*"]
    # Нельзя использовать allow_credentials=True с allow_origins=["*"]
    allow_creds = False
else:
    cors_origins = list(set(settings.cors_origins))
    allow_creds = True

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=allow_creds,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)


@app.middleware("http")
async def access_log(request: Request, call_next):
    """Лог запросов: метод, путь, статус, время и пользователь."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    user_id = getattr(request.state, "user_id", None) or "anonymous"
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code} "
        f"({elapsed_ms:.1f} ms, user={user_id})"
    )
    return response


@app.exception_handler(MallError)
async def mall_error_handler(request: Request, exc: MallError):
    """Доменные ошибки -> HTTP статус по виду ошибки."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.kind}: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path}: {exc.kind}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "kind": exc.kind},
    )


# Подключаем роутеры
app.include_router(api_v1_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Корневой endpoint."""
    return {
        "message": "Mall Order & Payment API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok"}
