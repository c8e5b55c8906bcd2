"""API v1 роутеры."""
from fastapi import APIRouter

from mall.api.v1 import orders, payments

router = APIRouter()

# Подключаем все роутеры
router.include_router(orders.router, prefix="/orders", tags=["orders"])
router.include_router(payments.router, prefix="/payments", tags=["payments"])
