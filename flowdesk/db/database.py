"""Async SQLAlchemy engine and session factory."""

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from flowdesk.config import config

engine = create_async_engine(config.database_url, echo=config.debug)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    """Create all tables on startup; there are no migrations."""
    from flowdesk.db.models import Base
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
