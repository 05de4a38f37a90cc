import os
import asyncio
import logging
from typing import AsyncIterator, Optional
from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
)
from contextlib import asynccontextmanager

from ..errors import StoreUnavailable

logger = logging.getLogger(__name__)


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB-GATE!!!!!!!!!!!
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@asynccontextmanager
async def store_errors(what: str) -> AsyncIterator[None]:
    """
    Translate driver failures into StoreUnavailable. IntegrityError passes
    through untouched: callers need it to tell a uniqueness conflict apart.
    """
    try:
        yield
    except IntegrityError:
        raise
    except (DBAPIError, OSError, asyncio.TimeoutError) as e:
        logger.error("store unavailable during %s: %s", what, e)
        raise StoreUnavailable(f"store unavailable ({what})") from e


class Database:
    """
    Process-wide SQL store handle with an explicit lifecycle.

        db = Database(url)
        await db.start()
        async with db.gated(), db.session() as s:
            ...
        await db.stop()

    Nothing connects lazily: session() before start() is a programming error.
    """

    def __init__(self, database_url: str,
                 gate_limit: Optional[int] = None) -> None:
        self.url = _normalize_async_url(database_url)
        self._gate_limit = gate_limit
        self.engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None
        self._gate: Optional[asyncio.Semaphore] = None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite+aiosqlite://")

    async def start(self) -> None:
        if self.engine is not None:
            return
        kw = dict(future=True, pool_pre_ping=True)

        pool_size = None
        if self.url.startswith("postgresql+asyncpg://"):
            pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
            kw.update(
                pool_size=pool_size,
                max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
                pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            )

        engine = create_async_engine(self.url, **kw)

        if self.is_sqlite:
            @event.listens_for(engine.sync_engine, "connect")
            def _sqlite_pragmas(dbapi_connection, _):
                cur = dbapi_connection.cursor()
                cur.execute("PRAGMA journal_mode=WAL;")
                cur.execute("PRAGMA busy_timeout=5000;")
                cur.execute("PRAGMA synchronous=NORMAL;")
                cur.close()

        self._sessions = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

        # DB-GATE!!!!!!!!!!!
        # Create a per-engine gate. Default to pool_size
        gate_limit = self._gate_limit
        if gate_limit is None:
            gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size or 10))
        self._gate = asyncio.Semaphore(max(1, gate_limit))
        self.engine = engine
        logger.info("store started: %s (gate=%d)",
                    engine.url.render_as_string(hide_password=True),
                    gate_limit)

    async def stop(self) -> None:
        if self.engine is None:
            return
        await self.engine.dispose()
        self.engine = None
        self._sessions = None
        self._gate = None
        logger.info("store stopped")

    async def create_all(self, metadata) -> None:
        async with store_errors("create_schema"):
            async with self._require_engine().begin() as conn:
                await conn.run_sync(metadata.create_all)

    def session(self) -> AsyncSession:
        if self._sessions is None:
            raise RuntimeError("Database not started")
        return self._sessions()

    def gated(self):
        if self._gate is None:
            raise RuntimeError("Database not started")
        return _gated(self._gate)

    def _require_engine(self) -> AsyncEngine:
        if self.engine is None:
            raise RuntimeError("Database not started")
        return self.engine
