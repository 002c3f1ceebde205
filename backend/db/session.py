"""
BasketSync Database Session Management

Async SQLAlchemy engine and session factory. PostgreSQL (asyncpg) in
deployment; a SQLite URL (aiosqlite) works for local runs, where the
connection pool options do not apply.
"""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import Settings, get_settings


def engine_options(settings: Settings) -> dict:
    options = {"echo": settings.database_echo, "pool_pre_ping": True}
    if make_url(settings.database_url).get_backend_name() != "sqlite":
        options.update(pool_size=settings.database_pool_size, max_overflow=settings.database_max_overflow)
    return options


settings = get_settings()

engine = create_async_engine(settings.database_url, **engine_options(settings))

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for all BasketSync models."""
    pass
