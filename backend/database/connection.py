from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
import logging

from config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def build_engine(database_url: str, **overrides) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    PostgreSQL goes through asyncpg with a connection pool; SQLite (local
    development and tests) goes through aiosqlite.
    """
    settings = get_settings()

    if database_url.startswith("sqlite"):
        options = {
            "echo": False,
            "connect_args": {"check_same_thread": False},
        }
    else:
        options = {
            "echo": False,
            "pool_pre_ping": True,
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
        }
        if settings.DB_SSL:
            options["connect_args"] = {"ssl": "require"}

    options.update(overrides)
    return create_async_engine(database_url, **options)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


engine = build_engine(get_settings().get_database_url())

AsyncSessionLocal = build_session_factory(engine)


async def get_db():
    """Dependency to get database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def create_tables(bind: AsyncEngine = None):
    """Create every table registered on Base (idempotent)"""
    # Import models so they are registered on Base.metadata
    from database import deadline_models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db():
    """Initialize database connection and make sure the schema exists"""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")

        await create_tables()
        logger.info(f"Schema ready: {sorted(Base.metadata.tables)}")
        return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise
