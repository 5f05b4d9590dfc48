from datetime import timedelta

import pytest

from beads_console.errors import MemoryErrorCode, MemoryStoreError
from beads_console.memory.actions import (
    REDACTED,
    action_stats,
    build_action_record,
    format_action_for_chat,
    format_action_summary,
    mark_action_sent_to_chat,
    persist_action_report,
    recent_action_reports,
)
from beads_console.memory.store import clamp_limit


@pytest.mark.asyncio
async def test_create_entry_applies_kind_retention(memory_store, now) -> None:
    decision = await memory_store.create_entry(
        project_id="demo", kind="decision", title="Use SQLite", content="Local file", now=now
    )
    constraint = await memory_store.create_entry(
        project_id="demo", kind="constraint", title="No network", content="Offline only", now=now
    )
    kept = await memory_store.create_entry(
        project_id="demo", kind="next_step", title="Write docs", content="Later", apply_retention=False, now=now
    )

    assert decision.expires_at == now + timedelta(days=90)
    assert constraint.expires_at is None
    assert kept.expires_at is None
    assert decision.relevance_score == 1.0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "fields",
    [
        {"kind": "rumour", "title": "t", "content": "c"},
        {"kind": "decision", "title": "  ", "content": "c"},
        {"kind": "decision", "title": "t", "content": ""},
        {"kind": "decision", "title": "t", "content": "c", "relevance_score": 1.5},
    ],
)
async def test_create_entry_rejects_invalid_input(memory_store, fields) -> None:
    with pytest.raises(MemoryStoreError) as excinfo:
        await memory_store.create_entry(project_id="demo", **fields)
    assert excinfo.value.code == MemoryErrorCode.INVALID_ENTRY


@pytest.mark.asyncio
async def test_list_entries_orders_by_relevance_then_recency(memory_store, now) -> None:
    low = await memory_store.create_entry(
        project_id="demo", kind="decision", title="Low", content="c", relevance_score=0.2, now=now
    )
    older = await memory_store.create_entry(
        project_id="demo", kind="decision", title="Older", content="c", now=now - timedelta(hours=1)
    )
    newer = await memory_store.create_entry(project_id="demo", kind="decision", title="Newer", content="c", now=now)

    entries = await memory_store.list_entries("demo", now=now)
    assert [entry.id for entry in entries] == [newer.id, older.id, low.id]


@pytest.mark.asyncio
async def test_list_entries_filters(memory_store, now) -> None:
    await memory_store.create_entry(
        project_id="demo", kind="decision", title="Bead", content="c", bead_id="b1", now=now
    )
    await memory_store.create_entry(project_id="demo", kind="constraint", title="Project", content="c", now=now)
    await memory_store.create_entry(project_id="other", kind="decision", title="Other", content="c", now=now)

    assert [e.title for e in await memory_store.list_entries("demo", bead_id="b1", now=now)] == ["Bead"]
    assert [e.title for e in await memory_store.list_entries("demo", kinds=["constraint"], now=now)] == ["Project"]
    assert len(await memory_store.list_entries("demo", now=now)) == 2


def test_clamp_limit() -> None:
    assert clamp_limit(None) == 50
    assert clamp_limit(0) == 50
    assert clamp_limit(10) == 10
    assert clamp_limit(500) == 100


@pytest.mark.asyncio
async def test_soft_delete_only_once(memory_store, now) -> None:
    entry = await memory_store.create_entry(project_id="demo", kind="decision", title="t", content="c", now=now)

    assert await memory_store.soft_delete_entry(entry.id, now=now) is True
    assert await memory_store.soft_delete_entry(entry.id, now=now) is False
    assert await memory_store.soft_delete_entry("missing") is False
    assert await memory_store.list_entries("demo", now=now) == []
    assert len(await memory_store.list_entries("demo", include_deleted=True, now=now)) == 1


@pytest.mark.asyncio
async def test_update_relevance_score_validates_range(memory_store, now) -> None:
    entry = await memory_store.create_entry(project_id="demo", kind="decision", title="t", content="c", now=now)

    assert await memory_store.update_relevance_score(entry.id, 0.3) is True
    assert (await memory_store.get_entry(entry.id)).relevance_score == 0.3
    with pytest.raises(MemoryStoreError):
        await memory_store.update_relevance_score(entry.id, -0.1)


@pytest.mark.asyncio
async def test_expire_and_purge(memory_store, now) -> None:
    stale = await memory_store.create_entry(
        project_id="demo", kind="next_step", title="Stale", content="c", now=now - timedelta(days=8)
    )
    await memory_store.create_entry(project_id="demo", kind="next_step", title="Fresh", content="c", now=now)

    assert await memory_store.expire_old_entries(now=now) == 1
    assert await memory_store.expire_old_entries(now=now) == 0
    assert (await memory_store.get_entry(stale.id)).deleted_at == now

    assert await memory_store.purge_deleted_entries(now=now + timedelta(days=29)) == 0
    assert await memory_store.purge_deleted_entries(now=now + timedelta(days=31)) == 1
    assert await memory_store.get_entry(stale.id) is None


@pytest.mark.asyncio
async def test_stats_and_search(memory_store, now) -> None:
    await memory_store.create_entry(
        project_id="demo", kind="decision", title="Adopt Redis", content="For fan-out", now=now
    )
    gone = await memory_store.create_entry(
        project_id="demo", kind="constraint", title="Keep it small", content="No Redis", now=now
    )
    await memory_store.soft_delete_entry(gone.id, now=now)

    stats = await memory_store.get_stats("demo")
    assert stats == {"total": 2, "active": 1, "deleted": 1, "by_kind": {"decision": 1}}

    results = await memory_store.search_entries("demo", "redis", now=now)
    assert [entry.title for entry in results] == ["Adopt Redis"]


@pytest.mark.asyncio
async def test_reads_on_missing_database_are_empty(tmp_path) -> None:
    from beads_console.db import MemoryDatabase
    from beads_console.memory.store import MemoryStore

    db = MemoryDatabase(f"sqlite+aiosqlite:///{tmp_path / 'memory.db'}")
    store = MemoryStore(db)
    try:
        assert await store.list_entries("demo") == []
        assert await store.get_entry("x") is None
        assert (await store.get_stats("demo"))["total"] == 0
        with pytest.raises(MemoryStoreError) as excinfo:
            await store.require_entry("x")
        assert excinfo.value.code == MemoryErrorCode.ENTRY_NOT_FOUND
    finally:
        await db.dispose()


def _record(now, **overrides):
    params = dict(
        action_id="act-1",
        label="Run tests",
        command="pytest",
        resolved_command="uv run pytest -q",
        working_directory="/work/demo",
        profile_used="default",
        started_at=now,
        completed_at=now + timedelta(seconds=2),
        exit_code=0,
        stdout="3 passed",
        environment={"PATH": "/usr/bin", "GITHUB_TOKEN": "ghp_secret", "DB_PASSWORD": "hunter2"},
        bead_id="b1",
    )
    params.update(overrides)
    return build_action_record(**params)


def test_build_action_record_redacts_secrets(now) -> None:
    record = _record(now)
    assert record.environment == {"PATH": "/usr/bin", "GITHUB_TOKEN": REDACTED, "DB_PASSWORD": REDACTED}
    assert record.duration_ms == 2000
    assert record.succeeded


@pytest.mark.asyncio
async def test_action_reports_round_trip(memory_store, now) -> None:
    ok = await persist_action_report(memory_store, "demo", _record(now))
    await persist_action_report(memory_store, "demo", _record(now, action_id="act-2", exit_code=1, stderr="boom"))

    assert ok.title == "Action: Run tests"
    assert ok.kind == "action_report"
    assert "**Status:** SUCCESS (exit code 0)" in ok.content
    assert "environment" not in ok.data

    reports = await recent_action_reports(memory_store, "demo", bead_id="b1")
    assert len(reports) == 2

    stats = await action_stats(memory_store, "demo")
    assert stats == {"total_actions": 2, "success_count": 1, "failure_count": 1, "average_duration_ms": 2000}

    assert format_action_summary(ok) == "[Action SUCCESS] `uv run pytest -q`\nExit code: 0"
    assert format_action_for_chat(ok).startswith("**Action Result: Action: Run tests**")


@pytest.mark.asyncio
async def test_mark_action_sent_to_chat_keeps_other_data(memory_store, now) -> None:
    entry = await persist_action_report(memory_store, "demo", _record(now))
    updated = await mark_action_sent_to_chat(memory_store, entry.id, method="summary", now=now)

    assert updated.data["sentToChat"] == {"method": "summary", "sentAt": now.isoformat()}
    assert updated.data["exit_code"] == 0
    assert updated.content == entry.content
