from __future__ import annotations

from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from clusterstate.config import settings


def _make_async_url(url: str) -> str:
    """Convert a sync database URL to its async equivalent.

    Handles psycopg3 (``+psycopg://`` → ``+psycopg_async://``), bare
    ``postgresql://`` (→ ``+psycopg_async://``) and bare ``sqlite://``
    (→ ``sqlite+aiosqlite://``). URLs that already name an async driver
    pass through unchanged.
    """
    if url.startswith("sqlite+"):
        return url
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if "+psycopg://" in url:
        return url.replace("+psycopg://", "+psycopg_async://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg_async://", 1)
    return url


def create_engine_from_url(url: str | None = None, **overrides) -> AsyncEngine:
    """Build an AsyncEngine for ``url`` (defaults to ``settings.database_url``).

    Pool tuning is only applied to server databases; SQLite does not accept
    pool_size / max_overflow options.
    """
    url = _make_async_url(url or settings.database_url)
    engine_kwargs: dict = dict(pool_pre_ping=True, echo=settings.db_echo)
    if not url.startswith("sqlite"):
        engine_kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_recycle=300,
            pool_timeout=settings.db_pool_timeout,
        )
    engine_kwargs.update(overrides)
    return create_async_engine(url, **engine_kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory handed to repositories as their connection handle."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet.

    Schema migrations are owned by the deployment; this only bootstraps an
    empty database.
    """
    from clusterstate.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_async_session(session_factory: async_sessionmaker[AsyncSession]):
    """Async context manager for one unit of work.

    Usage::

        async with get_async_session(factory) as session:
            result = await session.execute(select(Model))
            await session.commit()

    Any uncommitted transaction is rolled back before the session closes so
    no connection is returned to the pool mid-transaction.
    """
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()
