from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import os
import logging
import atexit

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./recurtask.db")

# Use NullPool to avoid connection-pool objects being bound to a specific
# event loop (which can cause 'bound to a different event loop' errors
# when tests run each case on a fresh loop).
engine = create_async_engine(DATABASE_URL, echo=False, future=True, poolclass=NullPool)

async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    # models must be imported so their tables are registered on the metadata
    from . import models  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info('database initialised url=%s', DATABASE_URL)


async def reset_db():
    """Drop and recreate every table. Intended for tests and local tooling."""
    from . import models  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)


# Ensure engine sync pool is disposed at interpreter exit to avoid pool
# finalizer warnings about non-checked-in connections during pytest
# teardown or interpreter shutdown.
def _dispose_sync_engine():
    try:
        engine.sync_engine.dispose()
    except Exception:
        logger.debug('engine dispose at exit failed', exc_info=True)


atexit.register(_dispose_sync_engine)
