"""Worker-safe database access for Celery tasks.

Creates a fresh async engine per call to avoid the 'Future attached
to a different loop' error when pooled connections are shared
across event loops in forked Celery workers.
"""

from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from db.database import close_db, create_db_engine, create_session_factory, init_db


@asynccontextmanager
async def worker_session_factory():
    """Provide a session factory bound to a short-lived engine.

    Usage:
        async with worker_session_factory() as session_factory:
            instances = SqlInstanceRepository(session_factory)
            ...
    """
    engine = create_db_engine()
    try:
        factory: async_sessionmaker = create_session_factory(engine)
        yield factory
    finally:
        await close_db(engine)


async def ensure_schema(database_url: Optional[str] = None) -> None:
    """Create the workflow tables once, before the worker takes tasks."""
    engine = create_db_engine(database_url)
    try:
        await init_db(engine)
    finally:
        await close_db(engine)
