
from typing import AsyncIterator

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from .config import settings

# Lazy initialization - engine создается только при первом использовании
_engine: AsyncEngine | None = None
_SessionLocal: async_sessionmaker[AsyncSession] | None = None

def get_engine() -> AsyncEngine:
    """Получить engine, создавая его при необходимости (lazy initialization)"""
    global _engine
    if _engine is None:
        _engine = create_async_engine(settings.database_url, echo=False, pool_pre_ping=True)
    return _engine

def get_session_local() -> async_sessionmaker[AsyncSession]:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _SessionLocal

def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return get_session_local()

async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request."""
    try:
        SessionLocal = get_session_local()
    except Exception as e:
        raise HTTPException(503, "Database connection is not available.") from e
    async with SessionLocal() as session:
        yield session

async def init_models() -> None:
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _SessionLocal = None

class Base(DeclarativeBase):
    pass
