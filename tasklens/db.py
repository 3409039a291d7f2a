from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy import text
from sqlalchemy.pool import NullPool

import logging
import atexit

from . import config
# register table metadata before create_all
from . import models  # noqa: F401

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL

# Use NullPool to avoid connection-pool objects being bound to a specific
# event loop (which can cause 'bound to a different event loop' errors
# during heavy concurrency in tests).
engine = create_async_engine(DATABASE_URL, echo=config.SQL_ECHO, future=True, poolclass=NullPool)

async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        # Index backing the order invariant read path; create_all only adds
        # single-column indexes declared on the model.
        await conn.execute(text('CREATE INDEX IF NOT EXISTS ix_task_owner_order ON task(owner_id, "order", created_at)'))


async def reset_db():
    """Drop and recreate every table. Used by the test suite."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
    await init_db()


# Ensure engine sync pool is disposed at interpreter exit to avoid pool
# finalizer warnings about non-checked-in connections during pytest
# teardown or interpreter shutdown.
def _dispose_sync_engine():
    if getattr(engine, 'sync_engine', None) is not None:
        engine.sync_engine.dispose()


atexit.register(_dispose_sync_engine)
