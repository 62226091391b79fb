from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from sqlalchemy import text
from typing import Optional
import logging
from config.settings import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """
    Create the async engine for a database URL.

    PostgreSQL (asyncpg) connections are tagged with an application name and
    not pooled; other drivers (aiosqlite in tests) use their defaults.
    """
    url = database_url or settings.DATABASE_URL
    kwargs = {
        "echo": settings.DEBUG if echo is None else echo,  # Log SQL queries in debug mode
    }
    if url.startswith("postgresql+asyncpg"):
        kwargs.update(
            poolclass=NullPool,
            pool_pre_ping=True,
            connect_args={
                "server_settings": {
                    "application_name": "pipeline_orchestrator",
                }
            }
        )
    return create_async_engine(url, **kwargs)


engine = build_engine()

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=True
)


async def get_db_session() -> AsyncSession:
    """
    Dependency to get database session.

    Returns:
        AsyncSession: Database session
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception as e:
            await session.rollback()
            logger.error(f"Database session error: {e}")
            raise


async def create_tables(bind: Optional[AsyncEngine] = None):
    """Create all database tables."""
    from .models import Base

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")


async def check_database_connection(bind: Optional[AsyncEngine] = None) -> bool:
    """Check if database connection is working."""
    try:
        async with (bind or engine).begin() as conn:
            result = await conn.execute(text("SELECT 1"))
            row = result.fetchone()
            if row and row[0] == 1:
                return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
    return False
