from functools import lru_cache
from typing import Optional
import logging

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text

from config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def normalize_database_url(url: str) -> str:
    """Ensure an async driver is used for PostgreSQL URLs."""
    if url.startswith('postgresql://'):
        return url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    if url.startswith('postgres://'):
        return url.replace('postgres://', 'postgresql+asyncpg://', 1)
    return url


def engine_options(url: str, ssl_mode: Optional[str] = "require", **kwargs) -> dict:
    """
    Engine keyword arguments for ``url``. PostgreSQL gets a pool and the
    asyncpg ``ssl`` mode (``disable`` or empty turns SSL off).
    """
    if url.startswith('postgresql+asyncpg://'):
        kwargs.setdefault('pool_pre_ping', True)
        kwargs.setdefault('pool_size', 5)
        kwargs.setdefault('max_overflow', 10)
        if ssl_mode and ssl_mode != 'disable':
            kwargs.setdefault('connect_args', {"ssl": ssl_mode})
    return kwargs


def build_engine(url: str, ssl_mode: Optional[str] = "require", **kwargs) -> AsyncEngine:
    url = normalize_database_url(url)
    return create_async_engine(url, echo=False, **engine_options(url, ssl_mode, **kwargs))


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


@lru_cache()
def get_engine() -> AsyncEngine:
    """Primary identity database engine, created on first use."""
    settings = get_settings()
    return build_engine(settings.get_database_url(), ssl_mode=settings.POSTGRES_SSLMODE)


@lru_cache()
def get_legacy_engine() -> AsyncEngine:
    """Legacy customer database engine; shares the primary engine unless configured."""
    settings = get_settings()
    if not settings.LEGACY_DATABASE_URL:
        return get_engine()
    return build_engine(settings.LEGACY_DATABASE_URL, ssl_mode=settings.POSTGRES_SSLMODE)


@lru_cache()
def get_session_factory() -> async_sessionmaker:
    return build_session_factory(get_engine())


@lru_cache()
def get_legacy_session_factory() -> async_sessionmaker:
    return build_session_factory(get_legacy_engine())


async def init_db(engine: Optional[AsyncEngine] = None, create_tables: bool = False):
    """Verify the database connection, optionally creating missing tables."""
    engine = engine or get_engine()
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")

            if create_tables:
                # Registers identity tables on Base.metadata
                import identity.models  # noqa: F401
                from . import booking_models  # noqa: F401

                await conn.run_sync(Base.metadata.create_all)
                logger.info(f"Ensured tables: {sorted(Base.metadata.tables)}")

            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise
