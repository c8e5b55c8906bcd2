"""Безопасность и аутентификация.

Токены выпускает внешний сервис сессий; здесь только их проверка
(и выпуск для служебных скриптов и тестов).
"""
import uuid
from datetime import datetime, timedelta
from typing import Any

from jose import jwt

from mall.config import settings


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Создание JWT токена."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(hours=24)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)
    return encoded_jwt


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Декодирование JWT токена."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        return payload
    except jwt.JWTError:
        return None


def create_user_token(user_id: uuid.UUID, expires_delta: timedelta | None = None) -> str:
    """Токен пользователя с user_id в claim 'sub'."""
    return create_access_token({"sub": str(user_id)}, expires_delta)
