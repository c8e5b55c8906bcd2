"""Исключения предметной области.

Каждое исключение несет стабильный kind и HTTP статус; обработчик в
mall.main превращает их в ответ {"detail": ..., "kind": ...}.
"""


class MallError(Exception):
    """Базовое исключение для всех ошибок приложения."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__doc__ or self.kind
        super().__init__(self.message)


# Ошибки валидации


class ValidationError(MallError):
    """Некорректный запрос."""

    kind = "validation_error"
    status_code = 400


class InvalidAddressError(ValidationError):
    """Адрес доставки не найден."""

    kind = "invalid_address"


class UnsupportedPaymentMethodError(ValidationError):
    """Способ оплаты не поддерживается."""

    kind = "unsupported_payment_method"

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Способ оплаты '{method}' не поддерживается")


class AmountMismatchError(ValidationError):
    """Сумма платежа не совпадает с суммой заказа."""

    kind = "amount_mismatch"


# Авторизация


class ForbiddenError(MallError):
    """Недостаточно прав."""

    kind = "forbidden"
    status_code = 403


# Не найдено


class NotFoundError(MallError):
    """Объект не найден."""

    kind = "not_found"
    status_code = 404


class OrderNotFoundError(NotFoundError):
    kind = "order_not_found"

    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Заказ '{order_id}' не найден")


class ProductNotFoundError(NotFoundError):
    kind = "product_not_found"

    def __init__(self, product_id):
        self.product_id = product_id
        super().__init__(f"Продукт '{product_id}' не найден")


class PaymentNotFoundError(NotFoundError):
    kind = "payment_not_found"

    def __init__(self, payment_number: str):
        self.payment_number = payment_number
        super().__init__(f"Платеж '{payment_number}' не найден")


# Конфликты состояния


class ConflictError(MallError):
    """Конфликт состояния."""

    kind = "conflict"
    status_code = 409


class InvalidStateError(ConflictError):
    """Недопустимый переход статуса заказа."""

    kind = "invalid_state"


class InvalidPaymentStateError(ConflictError):
    """Текущий статус платежа не позволяет оплату."""

    kind = "invalid_payment_state"


class ProductUnavailableError(ConflictError):
    kind = "product_unavailable"

    def __init__(self, product_name: str):
        self.product_name = product_name
        super().__init__(f"Товар '{product_name}' снят с продажи")


class OrderCreationFailedError(ConflictError):
    """Не удалось создать заказ."""

    kind = "order_creation_failed"


class OutOfStockError(ConflictError):
    kind = "out_of_stock"

    def __init__(self, product_id, quantity: int):
        self.product_id = product_id
        self.quantity = quantity
        super().__init__(f"Недостаточно остатка продукта '{product_id}' для списания {quantity} шт.")


class InsufficientStockError(OutOfStockError):
    kind = "insufficient_stock"

    def __init__(self, product_id, quantity: int, product_name: str, available: int | None = None):
        super().__init__(product_id, quantity)
        self.product_name = product_name
        self.available = available
        message = f"Недостаточно товара '{product_name}' на складе. Запрошено: {quantity}"
        if available is not None:
            message += f", доступно: {available}"
        self.message = message
        self.args = (message,)


# Внешние зависимости


class ProviderError(MallError):
    """Ошибка платежного провайдера."""

    kind = "provider_error"
    status_code = 502


class InvalidSignatureError(MallError):
    """Неверная подпись уведомления."""

    kind = "invalid_signature"
    status_code = 400


class MalformedNotificationError(MallError):
    """Некорректное уведомление провайдера."""

    kind = "malformed_notification"
    status_code = 400


# Хранилище


class PersistenceError(MallError):
    """Ошибка сохранения данных, повторите запрос позже."""

    kind = "persistence_error"
    status_code = 500
