import pytest
import pytest_asyncio
from sqlalchemy import text

from beads_console.beads import SqliteBeadStore, WorkItem, sort_topologically


def _items(*specs: tuple[str, int]) -> list[WorkItem]:
    return [WorkItem(id=item_id, title=item_id, priority=priority) for item_id, priority in specs]


def _ids(items: list[WorkItem]) -> list[str]:
    return [item.id for item in items]


def test_blockers_come_first() -> None:
    children = _items(("t1", 2), ("t2", 0), ("t3", 1))
    ordered = sort_topologically(children, [("t1", "t2"), ("t2", "t3")])
    assert _ids(ordered) == ["t1", "t2", "t3"]


def test_ready_items_ordered_by_priority_then_id() -> None:
    children = _items(("b", 2), ("a", 2), ("c", 0))
    assert _ids(sort_topologically(children, [])) == ["c", "a", "b"]


def test_relations_outside_the_children_are_ignored() -> None:
    children = _items(("t1", 1), ("t2", 1))
    assert _ids(sort_topologically(children, [("outside", "t1"), ("t2", "elsewhere")])) == ["t1", "t2"]


def test_cycle_members_appended_in_priority_order(caplog: pytest.LogCaptureFixture) -> None:
    children = _items(("free", 3), ("x", 2), ("y", 1))
    ordered = sort_topologically(children, [("x", "y"), ("y", "x")])
    assert _ids(ordered) == ["free", "y", "x"]
    assert "cycle" in caplog.text.lower()


@pytest.mark.asyncio
async def test_change_listeners_survive_failures(bead_store) -> None:
    seen: list[tuple[str, str]] = []

    def broken(item_id: str, status: str) -> None:
        raise RuntimeError("listener bug")

    async def record(item_id: str, status: str) -> None:
        seen.append((item_id, status))

    bead_store.on_change(broken)
    remove = bead_store.on_change(record)
    bead_store.add("t1")

    await bead_store.update_status("t1", "closed")
    remove()
    await bead_store.update_status("t1", "open")

    assert seen == [("t1", "closed")]


@pytest_asyncio.fixture
async def sqlite_beads(tmp_path):
    store = SqliteBeadStore(f"sqlite+aiosqlite:///{tmp_path / 'beads.db'}")
    async with store.engine.begin() as conn:
        await conn.execute(
            text(
                "CREATE TABLE issues (id TEXT PRIMARY KEY, title TEXT, description TEXT, status TEXT, "
                "priority INTEGER, issue_type TEXT, assignee TEXT, updated_at TEXT, closed_at TEXT, "
                "deleted_at TEXT)"
            )
        )
        await conn.execute(text("CREATE TABLE dependencies (issue_id TEXT, depends_on_id TEXT, type TEXT)"))
        for issue_id, title, status, priority, issue_type in [
            ("e1", "Epic", "open", 1, "epic"),
            ("t1", "Schema", "open", 2, "task"),
            ("t2", "API", "open", 0, "task"),
            ("t3", "Old", "closed", 1, "task"),
        ]:
            await conn.execute(
                text(
                    "INSERT INTO issues (id, title, description, status, priority, issue_type) "
                    "VALUES (:id, :title, '', :status, :priority, :issue_type)"
                ),
                {"id": issue_id, "title": title, "status": status, "priority": priority, "issue_type": issue_type},
            )
        for issue_id, depends_on_id, dep_type in [
            ("t1", "e1", "parent-child"),
            ("t2", "e1", "parent-child"),
            ("t3", "e1", "parent-child"),
            ("t2", "t1", "blocks"),
        ]:
            await conn.execute(
                text("INSERT INTO dependencies VALUES (:issue_id, :depends_on_id, :type)"),
                {"issue_id": issue_id, "depends_on_id": depends_on_id, "type": dep_type},
            )
    yield store
    await store.dispose()


@pytest.mark.asyncio
async def test_sqlite_store_reads_relations(sqlite_beads) -> None:
    children = await sqlite_beads.get_children_sorted("e1")
    # t2 has the highest priority but waits on t1
    assert _ids(children) == ["t3", "t1", "t2"]

    item = await sqlite_beads.get_work_item("t2")
    assert item.parent.id == "e1"
    assert _ids(item.blockers) == ["t1"]
    assert (await sqlite_beads.get_work_item("t1")).blocks[0].id == "t2"
    assert await sqlite_beads.get_work_item("missing") is None


@pytest.mark.asyncio
async def test_sqlite_store_updates_status_and_notifies(sqlite_beads) -> None:
    seen: list[tuple[str, str]] = []
    sqlite_beads.on_change(lambda item_id, status: seen.append((item_id, status)))

    assert await sqlite_beads.update_status("t1", "closed") is True
    assert await sqlite_beads.update_status("missing", "closed") is False

    assert (await sqlite_beads.get_work_item("t1")).is_closed
    assert seen == [("t1", "closed")]
