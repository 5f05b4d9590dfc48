import asyncio
import json

import pytest

from beads_console.errors import InvalidTransitionError, NotFoundError
from beads_console.sessions import (
    CheckpointTrigger,
    MessageRole,
    MessageUsage,
    SessionManager,
    SessionStatus,
    can_transition,
    format_checkpoint_content,
)


@pytest.fixture
def manager(project_dir) -> SessionManager:
    return SessionManager(project_dir)


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        ("draft", "active", True),
        ("draft", "closed", True),
        ("draft", "paused", False),
        ("active", "paused", True),
        ("paused", "active", True),
        ("paused", "closed", True),
        ("closed", "active", False),
    ],
)
def test_can_transition(current: str, target: str, allowed: bool) -> None:
    assert can_transition(current, target) is allowed


@pytest.mark.asyncio
async def test_create_persists_draft(manager, project_dir) -> None:
    session = await manager.create("demo", title="Explore")

    assert session.status == SessionStatus.DRAFT
    meta = json.loads((project_dir / ".beads" / "sessions" / session.id / "meta.json").read_text())
    assert meta["status"] == "draft"
    assert meta["title"] == "Explore"


@pytest.mark.asyncio
async def test_first_message_activates_and_counts(manager) -> None:
    session = await manager.create("demo")
    await manager.append_message(session.id, MessageRole.USER, "Hi")
    await manager.append_message(
        session.id,
        MessageRole.ASSISTANT,
        "Hello",
        tool_calls=[{"name": "Read"}, {"name": "Edit"}],
        usage=MessageUsage(input_tokens=10, output_tokens=5, cost_usd=0.01),
    )

    session = manager.require(session.id)
    assert session.status == SessionStatus.ACTIVE
    assert session.started_at is not None
    assert session.metrics.message_count == 2
    assert session.metrics.tool_call_count == 2
    assert session.metrics.total_input_tokens == 10
    assert [m.content for m in manager.load_messages(session.id)] == ["Hi", "Hello"]
    assert [m.content for m in manager.load_messages(session.id, limit=1)] == ["Hello"]


@pytest.mark.asyncio
async def test_invalid_transitions_name_both_states(manager) -> None:
    session = await manager.create("demo")
    with pytest.raises(InvalidTransitionError) as excinfo:
        await manager.pause(session.id)
    assert excinfo.value.current == "draft"
    assert excinfo.value.attempted == "paused"


@pytest.mark.asyncio
async def test_pause_resume_cycle(manager) -> None:
    session = await manager.create("demo")
    await manager.append_message(session.id, "user", "start")

    paused = await manager.pause(session.id)
    assert paused.paused_at is not None
    resumed = await manager.resume(session.id)
    assert resumed.status == SessionStatus.ACTIVE
    assert resumed.paused_at is None


@pytest.mark.asyncio
async def test_closed_session_rejects_messages(manager) -> None:
    session = await manager.create("demo")
    await manager.close(session.id, summary="nothing done")

    with pytest.raises(InvalidTransitionError):
        await manager.append_message(session.id, "user", "too late")
    with pytest.raises(InvalidTransitionError):
        await manager.close(session.id)


@pytest.mark.asyncio
async def test_unknown_session_is_not_found(manager) -> None:
    with pytest.raises(NotFoundError):
        await manager.append_message("nope", "user", "hello")


@pytest.mark.asyncio
async def test_sessions_reload_from_disk(manager, project_dir) -> None:
    session = await manager.create("demo", bead_id="b1")
    await manager.append_message(session.id, "user", "persist me")
    await manager.add_tags(session.id, "infra", " ", "infra", "db")

    reloaded = SessionManager(project_dir).require(session.id)
    assert reloaded.status == SessionStatus.ACTIVE
    assert reloaded.metrics.message_count == 1
    assert reloaded.tags == ["infra", "db"]


@pytest.mark.asyncio
async def test_corrupt_message_lines_are_skipped(manager, project_dir) -> None:
    session = await manager.create("demo")
    await manager.append_message(session.id, "user", "good")
    with (project_dir / ".beads" / "sessions" / session.id / "messages.jsonl").open("a") as handle:
        handle.write("{not json\n")

    assert [m.content for m in manager.load_messages(session.id)] == ["good"]


@pytest.mark.asyncio
async def test_concurrent_appends_are_all_counted(manager) -> None:
    session = await manager.create("demo")
    await asyncio.gather(*(manager.append_message(session.id, "user", f"m{i}") for i in range(20)))

    assert manager.require(session.id).metrics.message_count == 20
    assert len(manager.load_messages(session.id)) == 20


@pytest.mark.asyncio
async def test_list_and_active_session(manager) -> None:
    first = await manager.create("demo")
    second = await manager.create("demo")
    await manager.append_message(second.id, "user", "go")

    assert [s.id for s in manager.list_sessions()][0] == second.id
    assert manager.get_active_session("demo").id == second.id
    assert [s.id for s in manager.list_sessions(status="draft")] == [first.id]

    assert await manager.delete_session(first.id) is True
    assert manager.get(first.id) is None


@pytest.mark.asyncio
async def test_close_with_messages_captures_checkpoint(project_dir, memory_store) -> None:
    manager = SessionManager(project_dir, memory_store=memory_store)
    session = await manager.create("demo", bead_id="b1", agent_name="builder")
    await manager.append_message(session.id, "user", "Please add retries")
    await manager.append_message(session.id, "assistant", "x" * 800)

    closed = await manager.close(session.id)

    assert closed.status == SessionStatus.CLOSED
    checkpoints = await memory_store.list_entries("demo", kinds=["checkpoint"])
    assert len(checkpoints) == 1
    checkpoint = checkpoints[0]
    assert checkpoint.bead_id == "b1"
    assert checkpoint.session_id == session.id
    assert "## Session Checkpoint" in checkpoint.content
    assert "**User:** Please add retries" in checkpoint.content
    assert "x" * 500 + "..." in checkpoint.content
    assert checkpoint.data["trigger"] == "session_end"


@pytest.mark.asyncio
async def test_close_without_messages_skips_checkpoint(project_dir, memory_store) -> None:
    manager = SessionManager(project_dir, memory_store=memory_store)
    session = await manager.create("demo", bead_id="b1")
    await manager.close(session.id)

    assert await memory_store.list_entries("demo") == []


@pytest.mark.asyncio
async def test_checkpoint_failure_does_not_block_close(project_dir, memory_store, monkeypatch) -> None:
    async def broken(**kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(memory_store, "create_entry", broken)
    manager = SessionManager(project_dir, memory_store=memory_store)
    session = await manager.create("demo", bead_id="b1")
    await manager.append_message(session.id, "user", "hello")

    result = await manager.capture_checkpoint(session.id, CheckpointTrigger.MANUAL)
    assert not result.ok
    assert "disk full" in result.reason

    closed = await manager.close(session.id)
    assert closed.status == SessionStatus.CLOSED


@pytest.mark.asyncio
async def test_create_attaches_memory_brief(project_dir, memory_store, bead_store) -> None:
    bead_store.add("e1", "Epic", issue_type="epic")
    bead_store.add("b1", "Task", parent="e1")
    await memory_store.create_entry(
        project_id="demo", kind="decision", title="Epic choice", content="Use queues", epic_id="e1"
    )
    manager = SessionManager(project_dir, memory_store=memory_store, bead_store=bead_store)

    session = await manager.create("demo", bead_id="b1")

    assert "Epic choice" in session.memory_brief
    assert session.memory_brief_tokens > 0


def test_checkpoint_content_prefers_summary() -> None:
    from beads_console.sessions import Session

    session = Session(id="s1", project_id="demo", bead_id="b1")
    content = format_checkpoint_content(session, CheckpointTrigger.MANUAL, summary="Did the thing")

    assert "**Trigger:** manual" in content
    assert "**Duration:** N/A" in content
    assert "### Summary\n\nDid the thing" in content
    assert "Last Exchange" not in content


@pytest.mark.asyncio
async def test_concurrent_tag_additions_are_all_kept(manager) -> None:
    session = await manager.create("demo")
    lock = manager._lock(session.id)

    await lock.acquire()
    pending = [asyncio.create_task(manager.add_tags(session.id, tag)) for tag in ("alpha", "beta", "gamma")]
    await asyncio.sleep(0)
    lock.release()
    await asyncio.gather(*pending)

    assert sorted(manager.require(session.id).tags) == ["alpha", "beta", "gamma"]
