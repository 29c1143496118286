from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from . import repository

# Идентичность пользователя проставляет auth-шлюз перед сервисом


async def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    if x_user_id is None:
        return None
    x_user_id = x_user_id.strip()
    return x_user_id or None


async def require_user(
    user_id: Optional[str] = Depends(get_current_user_id),
    x_user_email: Optional[str] = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")
    await repository.ensure_user(session, user_id, x_user_email)
    return user_id
