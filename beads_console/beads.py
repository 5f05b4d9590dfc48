"""Bead Store: the issue tracker the core reads work items from.

The core only needs a narrow contract (``BeadStore``): fetch one work item,
fetch an epic's children in dependency order, update a status, and be told
when statuses change. ``SqliteBeadStore`` implements it over the tracker's
own SQLite database (``.beads/beads.db``).
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .config import settings

logger = logging.getLogger(__name__)


class WorkItemStatus(StrEnum):
    OPEN = "open"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    CLOSED = "closed"
    BLOCKED = "blocked"
    DEFERRED = "deferred"


@dataclass
class WorkItem:
    """A bead, with whatever relations the store chose to load."""

    id: str
    title: str
    status: str = WorkItemStatus.OPEN.value
    priority: int = 2
    issue_type: str = "task"
    description: str = ""
    assignee: str | None = None
    parent: WorkItem | None = None
    children: list[WorkItem] = field(default_factory=list)
    blockers: list[WorkItem] = field(default_factory=list)
    blocks: list[WorkItem] = field(default_factory=list)

    @property
    def is_closed(self) -> bool:
        return self.status == WorkItemStatus.CLOSED

    @property
    def is_epic(self) -> bool:
        return self.issue_type == "epic"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "priority": self.priority,
            "issue_type": self.issue_type,
        }


ChangeListener = Callable[[str, str], Any]


class BeadStore(Protocol):
    """What the core needs from the issue tracker."""

    async def get_work_item(self, item_id: str) -> WorkItem | None: ...

    async def get_children_sorted(self, epic_id: str) -> list[WorkItem]: ...

    async def get_parent(self, item_id: str) -> WorkItem | None: ...

    async def update_status(self, item_id: str, status: str) -> bool: ...

    def on_change(self, listener: ChangeListener) -> Callable[[], None]: ...


def sort_topologically(children: list[WorkItem], blocking: Iterable[tuple[str, str]]) -> list[WorkItem]:
    """Order children so blockers come before the items they block.

    ``blocking`` holds ``(blocker_id, blocked_id)`` pairs. Among items that
    are ready at the same time, lower priority numbers go first. Items caught
    in a cycle are appended at the end in priority order.
    """
    by_id = {child.id: child for child in children}
    blocks_map: dict[str, list[str]] = {child.id: [] for child in children}
    in_degree: dict[str, int] = {child.id: 0 for child in children}

    for blocker_id, blocked_id in blocking:
        if blocker_id not in by_id or blocked_id not in by_id:
            continue
        blocks_map[blocker_id].append(blocked_id)
        in_degree[blocked_id] += 1

    def priority_key(item_id: str) -> tuple[int, str]:
        return (by_id[item_id].priority, item_id)

    ready = sorted((item_id for item_id, degree in in_degree.items() if degree == 0), key=priority_key)
    ordered: list[WorkItem] = []
    while ready:
        current = ready.pop(0)
        ordered.append(by_id[current])
        for blocked_id in blocks_map[current]:
            in_degree[blocked_id] -= 1
            if in_degree[blocked_id] == 0:
                ready.append(blocked_id)
        ready.sort(key=priority_key)

    if len(ordered) < len(children):
        placed = {item.id for item in ordered}
        leftovers = sorted((item_id for item_id in by_id if item_id not in placed), key=priority_key)
        logger.warning("Dependency cycle among children: %s", ", ".join(leftovers))
        ordered.extend(by_id[item_id] for item_id in leftovers)

    return ordered


class ChangeNotifier:
    """Listener registry shared by store implementations."""

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def notify(self, item_id: str, status: str) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(item_id, status)
                if isinstance(result, Awaitable):
                    await result
            except Exception:
                logger.exception("Bead change listener failed for %s", item_id)


_ISSUE_COLUMNS = "i.id, i.title, i.description, i.status, i.priority, i.issue_type, i.assignee"


def _row_to_item(row: Any) -> WorkItem:
    return WorkItem(
        id=row.id,
        title=row.title,
        description=row.description or "",
        status=row.status,
        priority=row.priority if row.priority is not None else 2,
        issue_type=row.issue_type or "task",
        assignee=row.assignee,
    )


class SqliteBeadStore(ChangeNotifier):
    """Reads and writes the tracker's ``issues``/``dependencies`` tables."""

    def __init__(self, url: str, *, engine: AsyncEngine | None = None) -> None:
        super().__init__()
        self.engine = engine or create_async_engine(url)

    @classmethod
    def for_project(cls, project_path: str | Path) -> SqliteBeadStore:
        return cls(settings.beads_db_url_for(project_path))

    async def _fetch(self, sql: str, **params: Any) -> list[Any]:
        stmt = text(sql)
        expanding = [name for name, value in params.items() if isinstance(value, (list, tuple))]
        if expanding:
            stmt = stmt.bindparams(*(bindparam(name, expanding=True) for name in expanding))
        async with self.engine.connect() as conn:
            return list((await conn.execute(stmt, params)).all())

    async def _issue(self, item_id: str) -> WorkItem | None:
        rows = await self._fetch(
            f"SELECT {_ISSUE_COLUMNS} FROM issues i WHERE i.id = :id AND i.deleted_at IS NULL",
            id=item_id,
        )
        return _row_to_item(rows[0]) if rows else None

    async def get_work_item(self, item_id: str) -> WorkItem | None:
        item = await self._issue(item_id)
        if item is None:
            return None
        item.parent = await self.get_parent(item_id)
        item.children = await self.get_children_sorted(item_id)
        item.blockers = [
            _row_to_item(row)
            for row in await self._fetch(
                f"SELECT {_ISSUE_COLUMNS} FROM issues i JOIN dependencies d ON i.id = d.depends_on_id "
                "WHERE d.issue_id = :id AND d.type = 'blocks' AND i.deleted_at IS NULL",
                id=item_id,
            )
        ]
        item.blocks = [
            _row_to_item(row)
            for row in await self._fetch(
                f"SELECT {_ISSUE_COLUMNS} FROM issues i JOIN dependencies d ON i.id = d.issue_id "
                "WHERE d.depends_on_id = :id AND d.type = 'blocks' AND i.deleted_at IS NULL",
                id=item_id,
            )
        ]
        return item

    async def get_children_sorted(self, epic_id: str) -> list[WorkItem]:
        children = [
            _row_to_item(row)
            for row in await self._fetch(
                f"SELECT {_ISSUE_COLUMNS} FROM issues i JOIN dependencies d ON i.id = d.issue_id "
                "WHERE d.depends_on_id = :id AND d.type = 'parent-child' AND i.deleted_at IS NULL",
                id=epic_id,
            )
        ]
        if not children:
            return []
        ids = [child.id for child in children]
        relations = await self._fetch(
            "SELECT depends_on_id AS blocker_id, issue_id AS blocked_id FROM dependencies "
            "WHERE type = 'blocks' AND issue_id IN :ids AND depends_on_id IN :ids",
            ids=ids,
        )
        return sort_topologically(children, [(row.blocker_id, row.blocked_id) for row in relations])

    async def get_parent(self, item_id: str) -> WorkItem | None:
        rows = await self._fetch(
            f"SELECT {_ISSUE_COLUMNS} FROM issues i JOIN dependencies d ON i.id = d.depends_on_id "
            "WHERE d.issue_id = :id AND d.type = 'parent-child' AND i.deleted_at IS NULL LIMIT 1",
            id=item_id,
        )
        return _row_to_item(rows[0]) if rows else None

    async def update_status(self, item_id: str, status: str) -> bool:
        now = datetime.now(UTC).isoformat()
        closed_at = now if status == WorkItemStatus.CLOSED else None
        async with self.engine.begin() as conn:
            result = await conn.execute(
                text(
                    "UPDATE issues SET status = :status, updated_at = :now, closed_at = :closed_at "
                    "WHERE id = :id AND deleted_at IS NULL"
                ),
                {"status": status, "now": now, "closed_at": closed_at, "id": item_id},
            )
        if result.rowcount == 0:
            return False
        await self.notify(item_id, status)
        return True

    async def dispose(self) -> None:
        await self.engine.dispose()
