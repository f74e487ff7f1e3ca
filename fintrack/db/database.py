"""
Database Connection and Session Management
"""
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from fintrack.core.config import settings


def _connect_args(database_url: str) -> dict:
    """Driver-level timeouts; a timed-out statement surfaces as a transient processing failure"""
    if database_url.startswith("postgresql+asyncpg"):
        return {"command_timeout": settings.DATABASE_COMMAND_TIMEOUT_SECONDS}
    if database_url.startswith("sqlite+aiosqlite"):
        return {"timeout": settings.DATABASE_COMMAND_TIMEOUT_SECONDS}
    return {}


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.DATABASE_URL),
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


async def get_db() -> AsyncSession:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_task_session():
    """
    Create a fresh database session for Celery tasks.

    Each Celery task runs on its own event loop, so the module-level engine
    (bound to the web process loop) cannot be reused there.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        connect_args=_connect_args(settings.DATABASE_URL),
    )
    task_session_maker = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    try:
        async with task_session_maker() as session:
            yield session
    finally:
        await task_engine.dispose()


@asynccontextmanager
async def task_session_factory():
    """
    Yield a session factory bound to a task-local engine.

    The retry scan opens one session per event, so Celery tasks need a factory
    rather than the single session ``get_task_session`` provides.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        connect_args=_connect_args(settings.DATABASE_URL),
    )
    try:
        yield async_sessionmaker(
            bind=task_engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
    finally:
        await task_engine.dispose()
