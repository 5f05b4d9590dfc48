"""Shared test fixtures and configuration for pytest."""

import asyncio
from collections.abc import AsyncIterator
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import pytest
import pytest_asyncio

from beads_console.agent import AgentChunk
from beads_console.beads import ChangeNotifier, WorkItem, sort_topologically
from beads_console.config import Settings
from beads_console.db import MemoryDatabase
from beads_console.events import LiveUpdateHub
from beads_console.memory.store import MemoryStore


class FakeBeadStore(ChangeNotifier):
    """In-memory bead store with the same change notifications as the real one."""

    def __init__(self) -> None:
        super().__init__()
        self.items: dict[str, WorkItem] = {}
        self.parents: dict[str, str] = {}
        self.blocking: list[tuple[str, str]] = []
        self.status_updates: list[tuple[str, str]] = []
        self.fail_updates = False
        self.reads: dict[str, int] = {}
        self.read_limits: dict[str, int] = {}

    def add(self, item_id: str, title: str = "", *, parent: str | None = None, **fields) -> WorkItem:
        item = WorkItem(id=item_id, title=title or f"Item {item_id}", **fields)
        self.items[item_id] = item
        if parent:
            self.parents[item_id] = parent
        return item

    def block(self, blocker_id: str, blocked_id: str) -> None:
        self.blocking.append((blocker_id, blocked_id))

    async def get_work_item(self, item_id: str) -> WorkItem | None:
        self.reads[item_id] = self.reads.get(item_id, 0) + 1
        limit = self.read_limits.get(item_id)
        if limit is not None and self.reads[item_id] > limit:
            raise OSError("database is locked")
        item = self.items.get(item_id)
        if item is None:
            return None
        return replace(
            item,
            parent=await self.get_parent(item_id),
            children=await self.get_children_sorted(item_id),
        )

    async def get_children_sorted(self, epic_id: str) -> list[WorkItem]:
        children = [replace(self.items[i]) for i, parent in self.parents.items() if parent == epic_id]
        return sort_topologically(children, self.blocking)

    async def get_parent(self, item_id: str) -> WorkItem | None:
        parent_id = self.parents.get(item_id)
        return replace(self.items[parent_id]) if parent_id else None

    async def update_status(self, item_id: str, status: str) -> bool:
        if self.fail_updates:
            raise OSError("bead store is read-only")
        if item_id not in self.items:
            return False
        self.items[item_id].status = status
        self.status_updates.append((item_id, status))
        await self.notify(item_id, status)
        return True


class FakeConversation:
    """Agent transport that replays scripted responses.

    Each script entry is ``(chunks, returncode)``. Once the script runs out a
    response streams nothing and waits until it is interrupted or cancelled.
    """

    def __init__(self, script: list[tuple[list[AgentChunk], int]] | None = None) -> None:
        self.script = list(script or [])
        self.prompts: list[str] = []
        self.returncode: int | None = None
        self.interrupts = 0
        self.cancels = 0
        self._stopped = asyncio.Event()

    async def send(self, prompt: str) -> AsyncIterator[AgentChunk]:
        self.prompts.append(prompt)
        self.returncode = None
        self._stopped = asyncio.Event()
        if not self.script:
            await self._stopped.wait()
            return
        chunks, returncode = self.script.pop(0)
        for chunk in chunks:
            await asyncio.sleep(0)
            if self._stopped.is_set():
                return
            yield chunk
        self.returncode = returncode

    async def interrupt(self) -> None:
        self.interrupts += 1
        self.returncode = 130
        self._stopped.set()

    async def cancel(self) -> None:
        self.cancels += 1
        self.returncode = -9
        self._stopped.set()


class FakeAgentFactory:
    def __init__(self) -> None:
        self.scripts: list[list[tuple[list[AgentChunk], int]]] = []
        self.conversations: list[FakeConversation] = []

    def queue(self, *responses: tuple[list[AgentChunk], int]) -> None:
        self.scripts.append(list(responses))

    def __call__(self, project_path: str) -> FakeConversation:
        conversation = FakeConversation(self.scripts.pop(0) if self.scripts else None)
        self.conversations.append(conversation)
        return conversation


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "demo-project"
    (project / ".beads").mkdir(parents=True)
    return project


@pytest.fixture
def fast_settings() -> Settings:
    return Settings(
        status_poll_interval=0.01,
        epic_advance_delay=0,
        agent_exit_grace_seconds=0.05,
        run_retention_seconds=3600,
        memory_brief_tokens=2000,
    )


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest_asyncio.fixture
async def memory_db(project_dir: Path) -> AsyncIterator[MemoryDatabase]:
    db = MemoryDatabase(f"sqlite+aiosqlite:///{project_dir / '.beads' / 'memory.db'}")
    await db.init()
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def memory_store(memory_db: MemoryDatabase) -> MemoryStore:
    return MemoryStore(memory_db)


@pytest.fixture
def bead_store() -> FakeBeadStore:
    return FakeBeadStore()


@pytest.fixture
def agents() -> FakeAgentFactory:
    return FakeAgentFactory()


@pytest.fixture
def hub() -> LiveUpdateHub:
    return LiveUpdateHub()
