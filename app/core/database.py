"""
Database configuration and session management.

Sessions are synchronous. Async code hands store work to run_in_db_executor(),
which runs it on a small thread pool so the event loop stays free while a
sync writes.
"""
import asyncio
import contextvars
import functools
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from app.core.config import settings

DATABASE_URL = settings.DATABASE_URL

T = TypeVar("T")

IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def _engine_options(url: str) -> Dict[str, Any]:
    """Pool options for the configured backend."""
    if url.startswith("sqlite"):
        options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in IN_MEMORY_URLS:
            # One shared connection so every session sees the same in-memory database
            options["poolclass"] = StaticPool
        return options
    return {
        "poolclass": QueuePool,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,  # Verify connections before using
    }


def create_db_engine(url: str):
    """Create an engine, enabling foreign keys on SQLite so ON DELETE rules apply."""
    engine = create_engine(
        url,
        echo=os.getenv("SQL_ECHO", "false").lower() == "true",
        **_engine_options(url)
    )
    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    return engine


engine = create_db_engine(DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    """Initialize database tables."""
    from app.models.models import Base
    # checkfirst=True will only create tables that don't exist
    Base.metadata.create_all(bind=bind or engine, checkfirst=True)


# ============================================================================
# Store executor
# ============================================================================

_executor: Optional[ThreadPoolExecutor] = None


def db_executor_workers(url: str = DATABASE_URL, configured: Optional[int] = None) -> int:
    """
    Thread count for store work.

    An in-memory SQLite database lives on a single shared connection, so its
    units of work must run one at a time.
    """
    if url in IN_MEMORY_URLS:
        return 1
    return max(1, configured if configured is not None else settings.DB_EXECUTOR_WORKERS)


def get_db_executor() -> ThreadPoolExecutor:
    """Shared thread pool for blocking store work, created on first use."""
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(
            max_workers=db_executor_workers(),
            thread_name_prefix="store",
        )
    return _executor


async def run_in_db_executor(func: Callable[..., T], *args: Any) -> T:
    """
    Run a blocking store call on the store executor.

    The caller's context is copied into the worker so log lines keep their
    correlation and sync run ids. func should open and close its own session.
    """
    loop = asyncio.get_running_loop()
    context = contextvars.copy_context()
    return await loop.run_in_executor(
        get_db_executor(), functools.partial(context.run, func, *args)
    )


def shutdown_db_executor() -> None:
    """Stop the store executor after in-flight work finishes."""
    global _executor
    if _executor is not None:
        _executor.shutdown(wait=True)
        _executor = None
