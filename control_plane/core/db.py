from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import Depends, Request
from sqlalchemy import Table, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from control_plane.core.config import Settings
from control_plane.models.base import Base

logger = logging.getLogger(__name__)

EngineFactory = Callable[[str], AsyncEngine]


class StoreClient:
    """Registry of engines for the control plane and every data-plane database.

    One client is built at process start and handed to each component; engines
    are created on first use per database name and disposed together.
    """

    def __init__(self, settings: Settings, engine_factory: EngineFactory | None = None) -> None:
        self.settings = settings
        self._base_url = make_url(settings.database_url)
        self.control_database = self._base_url.database or "rmap_control"
        self.shared_database = settings.shared_database_name
        self._engine_factory = engine_factory or self._default_engine
        self._engines: dict[str, AsyncEngine] = {}
        self._sessionmakers: dict[str, async_sessionmaker[AsyncSession]] = {}

    def _default_engine(self, database: str) -> AsyncEngine:
        return create_async_engine(
            self._base_url.set(database=database),
            future=True,
            pool_pre_ping=self.settings.database_pool_pre_ping,
        )

    def engine_for(self, database: str) -> AsyncEngine:
        engine = self._engines.get(database)
        if engine is None:
            engine = self._engine_factory(database)
            self._engines[database] = engine
            self._sessionmakers[database] = async_sessionmaker(
                bind=engine,
                expire_on_commit=False,
                class_=AsyncSession,
            )
        return engine

    @property
    def control_engine(self) -> AsyncEngine:
        return self.engine_for(self.control_database)

    def session(self, database: str | None = None) -> AsyncSession:
        name = database or self.control_database
        self.engine_for(name)
        return self._sessionmakers[name]()

    async def ensure_database(self, database: str) -> None:
        """Create ``database`` on the server when the backend supports it."""
        if self.control_engine.dialect.name != "postgresql":
            return

        autocommit = self.control_engine.execution_options(isolation_level="AUTOCOMMIT")
        async with autocommit.connect() as conn:
            exists = await conn.scalar(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": database},
            )
            if exists:
                return
            quoted = self.control_engine.dialect.identifier_preparer.quote(database)
            await conn.execute(text(f"CREATE DATABASE {quoted}"))
            logger.info("Created database %s", database)

    async def create_control_schema(self) -> None:
        async with self.control_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self, database: str | None = None) -> bool:
        try:
            async with self.engine_for(database or self.control_database).connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("Database ping failed for %s", database or self.control_database)
            return False
        return True

    async def dispose(self) -> None:
        for name, engine in list(self._engines.items()):
            await engine.dispose()
            logger.debug("Disposed engine for %s", name)
        self._engines.clear()
        self._sessionmakers.clear()


@asynccontextmanager
async def open_store(
    settings: Settings,
    engine_factory: EngineFactory | None = None,
) -> AsyncIterator[StoreClient]:
    store = StoreClient(settings, engine_factory=engine_factory)
    try:
        yield store
    finally:
        await store.dispose()


def dialect_insert(dialect_name: str, table: Table):  # noqa: ANN201
    """Dialect-specific INSERT supporting ``on_conflict_do_update``/``do_nothing``."""
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upserts are not supported on dialect {dialect_name!r}")


def session_dialect(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


def get_store(request: Request) -> StoreClient:
    return request.app.state.store


async def get_db_session(store: StoreClient = Depends(get_store)) -> AsyncGenerator[AsyncSession, None]:
    async with store.session() as session:
        yield session
