"""Async database connection for a project's memory database."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import inspect
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .errors import SchemaNotInitializedError, is_schema_missing_error, schema_not_initialized_message
from .models import Base


class MemoryDatabase:
    """Engine and session factory bound to one memory database."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        self.engine = create_async_engine(url, echo=echo)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)
        self._schema_ready = False

    @classmethod
    def for_project(cls, project_path: str | Path) -> MemoryDatabase:
        return cls(settings.memory_db_url_for(project_path))

    @property
    def path(self) -> Path | None:
        """Filesystem location for file-backed SQLite URLs, else None."""
        url = make_url(self.url)
        if url.get_backend_name() != "sqlite":
            return None
        database = url.database
        if not database or database == ":memory:":
            return None
        return Path(database)

    def exists(self) -> bool:
        path = self.path
        return path is None or path.exists()

    async def init(self) -> None:
        """Create all tables (for development/testing)."""
        path = self.path
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._schema_ready = True

    async def ensure_schema(self) -> None:
        if not self._schema_ready:
            await self.init()

    async def missing_tables(self) -> list[str]:
        """Tables declared by the models but absent from the database."""
        async with self.engine.connect() as conn:
            existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        return sorted(set(Base.metadata.tables) - existing)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Async context manager for database sessions."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                await session.rollback()
                if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                    raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
                raise

    async def dispose(self) -> None:
        await self.engine.dispose()
