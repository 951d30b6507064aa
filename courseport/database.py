import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from courseport.config import settings

logger = logging.getLogger(__name__)


def create_engine_for(database_url: str, environment: str = "development"):
    """Create an async engine, sizing the pool for the environment."""
    if database_url.startswith("sqlite"):
        # SQLite waits on locks rather than pooling connections
        return create_async_engine(database_url, connect_args={"timeout": 30})
    if environment == "production":
        return create_async_engine(
            database_url,
            pool_size=20,
            max_overflow=50,
            pool_timeout=60,
            pool_recycle=1800,
        )
    return create_async_engine(
        database_url,
        echo=settings.debug,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
    )


engine = create_engine_for(settings.database_url, settings.environment)

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def init_models(bind=None) -> None:
    """Create all tables on the given engine (defaults to the app engine)."""
    # Registers every model on Base.metadata
    import courseport.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created (if not existing).")
