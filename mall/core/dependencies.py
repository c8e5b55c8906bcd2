"""Dependencies для FastAPI."""
import uuid

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from mall.core.security import decode_access_token

security = HTTPBearer()


async def get_current_user_id(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> uuid.UUID:
    """
    ID текущего пользователя из JWT токена.

    Токену доверяем полностью: выдачей сессий занимается отдельный сервис.
    """
    payload = decode_access_token(credentials.credentials)

    if payload is None or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Неверный или истекший токен",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user_id = uuid.UUID(payload["sub"])
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Неверный идентификатор пользователя в токене",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Для access-лога
    request.state.user_id = user_id
    return user_id
