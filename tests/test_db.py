import logging

import pytest
from rich.logging import RichHandler
from sqlalchemy import select

from beads_console.config import Settings
from beads_console.db import MemoryDatabase
from beads_console.errors import SchemaNotInitializedError, missing_table_name
from beads_console.log import configure_logging, run_id_ctx
from beads_console.models import MemoryEntry


@pytest.mark.asyncio
async def test_schema_missing_is_reported_clearly(tmp_path) -> None:
    db = MemoryDatabase(f"sqlite+aiosqlite:///{tmp_path / 'memory.db'}")
    try:
        assert await db.missing_tables() == ["memory_entries"]
        with pytest.raises(SchemaNotInitializedError) as excinfo:
            async with db.session() as session:
                await session.execute(select(MemoryEntry))
        assert "missing table `memory_entries`" in excinfo.value.message

        await db.init()
        assert await db.missing_tables() == []
    finally:
        await db.dispose()


@pytest.mark.asyncio
async def test_timestamps_come_back_timezone_aware(memory_db, now) -> None:
    async with memory_db.session() as session:
        session.add(MemoryEntry(id="m1", project_id="demo", kind="decision", title="t", content="c", created_at=now))

    async with memory_db.session() as session:
        entry = await session.get(MemoryEntry, "m1")
    assert entry.created_at == now
    assert entry.created_at.tzinfo is not None


def test_memory_db_path_and_urls(tmp_path) -> None:
    settings = Settings()
    assert settings.memory_db_path(tmp_path) == tmp_path / ".beads" / "memory.db"
    assert settings.beads_db_url_for(tmp_path).endswith("/.beads/beads.db")
    assert MemoryDatabase("sqlite+aiosqlite:///:memory:").path is None
    assert MemoryDatabase.for_project(tmp_path).exists() is False


def test_missing_table_name_follows_exception_chain() -> None:
    try:
        try:
            raise RuntimeError("no such table: memory_entries")
        except RuntimeError as inner:
            raise ValueError("query failed") from inner
    except ValueError as exc:
        assert missing_table_name(exc) == "memory_entries"
    assert missing_table_name(ValueError("other")) is None


def test_configure_logging_is_idempotent() -> None:
    logger = configure_logging("debug")
    configure_logging("info")

    rich_handlers = [handler for handler in logger.handlers if isinstance(handler, RichHandler)]
    assert len(rich_handlers) == 1
    assert logger.level == logging.INFO

    token = run_id_ctx.set("run-42")
    try:
        record = logging.LogRecord("beads_console.runner", logging.INFO, __file__, 1, "msg", None, None)
        assert rich_handlers[0].filter(record)
        assert record.run_id == "run-42"
    finally:
        run_id_ctx.reset(token)
        logger.removeHandler(rich_handlers[0])
        logger.propagate = True
