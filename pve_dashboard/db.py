from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from pve_dashboard.config import get_settings


Base = declarative_base()


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _build_engine():
    settings = get_settings()
    if not _is_sqlite(settings.database_url):
        return create_async_engine(settings.database_url, pool_pre_ping=True)

    async_engine = create_async_engine(
        settings.database_url,
        connect_args={"timeout": 30},
        poolclass=NullPool,
    )

    @event.listens_for(async_engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute("PRAGMA busy_timeout=30000;")
        cursor.close()

    return async_engine


engine = _build_engine()
SessionLocal = async_sessionmaker(
    bind=engine,
    autoflush=False,
    expire_on_commit=False,
)


async def configure_sqlite_runtime() -> None:
    settings = get_settings()
    if not _is_sqlite(settings.database_url):
        return
    async with engine.begin() as conn:
        await conn.execute(text("PRAGMA journal_mode=WAL;"))


async def create_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    session = SessionLocal()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
