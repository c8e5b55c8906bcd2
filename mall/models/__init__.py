"""Модели базы данных."""
from mall.models.user import User
from mall.models.address import Address
from mall.models.product import Product
from mall.models.order import Order, OrderItem, OrderStatus
from mall.models.payment import Payment, PaymentTimeout, PaymentMethod, PaymentStatus

__all__ = [
    "User",
    "Address",
    "Product",
    "Order",
    "OrderItem",
    "OrderStatus",
    "Payment",
    "PaymentTimeout",
    "PaymentMethod",
    "PaymentStatus",
]
