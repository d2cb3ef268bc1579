from typing import Optional

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
import logging

from soa_recon.config import get_settings

logger = logging.getLogger(__name__)

# Engine and session factory are created on first use so importing the
# package never needs a reachable database.
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"echo": False}
    return {
        "echo": False,
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
    }


def configure_engine(url: Optional[str] = None, **kwargs) -> AsyncEngine:
    """Create (or replace) the engine and session factory."""
    global _engine, _session_factory

    database_url = url or get_settings().get_database_url()
    options = _engine_kwargs(database_url)
    options.update(kwargs)

    _engine = create_async_engine(database_url, **options)
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        configure_engine()
    return _engine


def get_session_factory() -> async_sessionmaker:
    if _session_factory is None:
        configure_engine()
    return _session_factory


async def dispose_engine():
    """Close pooled connections and forget the engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_db():
    """Dependency to get database session"""
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """Verify the connection and create any missing SOA tables"""
    # Register models with Base.metadata
    from soa_recon.database import soa_models  # noqa: F401

    try:
        async with get_engine().begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")

            await conn.run_sync(Base.metadata.create_all)
            logger.info(f"SOA tables ready: {sorted(Base.metadata.tables)}")
            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise
