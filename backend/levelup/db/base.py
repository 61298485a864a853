"""Shared SQLAlchemy base and database initialization.

Purchases, leases and reservations all rely on conditional writes racing
between workers. On Postgres that is row locking under a sized connection
pool; on SQLite (local runs, tests) every connection is switched to WAL with
a busy timeout so a second writer waits instead of failing with
``database is locked``.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from levelup.core.config import get_settings


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _sqlite_pragmas(busy_timeout_ms: int):
    def on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.close()

    return on_connect


def build_engine(url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """Create the async engine with the per-dialect connection settings."""
    settings = get_settings()
    db_url = url or settings.database_url
    echo = settings.debug if echo is None else echo

    if db_url.startswith("sqlite"):
        engine = create_async_engine(db_url, echo=echo)
        event.listen(engine.sync_engine, "connect", _sqlite_pragmas(settings.sqlite_busy_timeout_ms))
        return engine

    return create_async_engine(
        db_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )


async def init_db(url: str | None = None) -> None:
    """Initialize the async database engine and session factory.

    Creates all tables defined via Base.metadata.
    """
    global _engine, _session_factory

    if _engine is not None:
        return

    _engine = build_engine(url)
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    # Import all models so metadata is populated before create_all
    import levelup.db.models  # noqa: F401

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and release all connections."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the configured session factory.

    Raises RuntimeError if init_db() has not been called.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
