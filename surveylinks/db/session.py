from __future__ import annotations

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from surveylinks.core.config import Settings, settings as default_settings
from surveylinks.db.base import Base


def build_engine(url: str | None = None, settings: Settings | None = None) -> AsyncEngine:
    settings = settings or default_settings
    url = url or settings.DATABASE_URL
    kwargs: dict = {"pool_pre_ping": True}
    if make_url(url).get_backend_name() == "sqlite":
        # sqlite serializes writers; let concurrent batch workers wait for the lock
        kwargs["connect_args"] = {"timeout": 30}
    else:
        kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_recycle=3600,
            pool_timeout=30,
        )
    return create_async_engine(url, **kwargs)


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def create_db_and_tables(bind: AsyncEngine) -> None:
    # Import models to populate SQLAlchemy metadata
    import surveylinks.db.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
