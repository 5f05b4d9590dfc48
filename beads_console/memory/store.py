"""CRUD and housekeeping over the append-only memory entry log."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..db import MemoryDatabase
from ..errors import MemoryErrorCode, MemoryStoreError
from ..models import (
    DEFAULT_MEMORY_LIMIT,
    DEFAULT_RELEVANCE_SCORE,
    DEFAULT_RETENTION_DAYS,
    MAX_MEMORY_LIMIT,
    SOFT_DELETE_RETENTION_DAYS,
    MemoryEntry,
    MemoryKind,
)

logger = logging.getLogger(__name__)


def _require_text(value: str | None, field_name: str) -> str:
    if value is None or not value.strip():
        raise MemoryStoreError(f"{field_name} is required", MemoryErrorCode.INVALID_ENTRY)
    return value


def _validate_score(score: float) -> float:
    if not 0.0 <= score <= 1.0:
        raise MemoryStoreError(
            f"Relevance score must be between 0 and 1, got {score}", MemoryErrorCode.INVALID_ENTRY
        )
    return score


def default_expiry(kind: MemoryKind | str, now: datetime) -> datetime | None:
    days = DEFAULT_RETENTION_DAYS[MemoryKind(kind)]
    if days is None:
        return None
    return now + timedelta(days=days)


def clamp_limit(limit: int | None) -> int:
    if limit is None or limit <= 0:
        return DEFAULT_MEMORY_LIMIT
    return min(limit, MAX_MEMORY_LIMIT)


def live_filter(now: datetime, *, include_expired: bool = False) -> list[Any]:
    """WHERE clauses shared by every read of non-deleted, non-expired entries."""
    clauses: list[Any] = [MemoryEntry.deleted_at.is_(None)]
    if not include_expired:
        clauses.append(or_(MemoryEntry.expires_at.is_(None), MemoryEntry.expires_at > now))
    return clauses


class MemoryStore:
    """Memory entries for one project database.

    Reads against a database file that does not exist yet return empty
    results; the first write creates the file and schema.
    """

    def __init__(self, db: MemoryDatabase) -> None:
        self.db = db

    def available(self) -> bool:
        return self.db.exists()

    async def _run(self, description: str, operation: Any) -> Any:
        try:
            async with self.db.session() as session:
                return await operation(session)
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"{description} failed: {exc}", MemoryErrorCode.QUERY_FAILED) from exc

    async def create_entry(
        self,
        *,
        project_id: str,
        kind: MemoryKind | str,
        title: str,
        content: str,
        bead_id: str | None = None,
        epic_id: str | None = None,
        session_id: str | None = None,
        chat_id: str | None = None,
        agent_name: str | None = None,
        data: dict[str, Any] | None = None,
        intent_anchors: list[str] | None = None,
        relevance_score: float | None = None,
        expires_at: datetime | None = None,
        apply_retention: bool = True,
        now: datetime | None = None,
    ) -> MemoryEntry:
        """Validate and append a new entry.

        When no explicit expiry is given the kind's default retention applies,
        unless ``apply_retention`` is False.
        """
        try:
            kind = MemoryKind(kind)
        except ValueError as exc:
            raise MemoryStoreError(f"Invalid memory kind: {kind}", MemoryErrorCode.INVALID_ENTRY) from exc
        _require_text(project_id, "project_id")
        _require_text(title, "title")
        _require_text(content, "content")
        score = _validate_score(DEFAULT_RELEVANCE_SCORE if relevance_score is None else relevance_score)

        now = now or datetime.now(UTC)
        if expires_at is None and apply_retention:
            expires_at = default_expiry(kind, now)

        entry = MemoryEntry(
            project_id=project_id,
            bead_id=bead_id,
            epic_id=epic_id,
            session_id=session_id,
            chat_id=chat_id,
            agent_name=agent_name,
            kind=kind.value,
            title=title,
            content=content,
            data=data,
            intent_anchors=intent_anchors,
            relevance_score=score,
            expires_at=expires_at,
            created_at=now,
        )

        try:
            await self.db.ensure_schema()
        except (SQLAlchemyError, OSError) as exc:
            raise MemoryStoreError(
                f"Could not open memory database: {exc}", MemoryErrorCode.DB_CONNECTION_FAILED
            ) from exc

        async def _insert(session: Any) -> MemoryEntry:
            session.add(entry)
            await session.flush()
            return entry

        created = await self._run("Create memory entry", _insert)
        logger.debug("Created %s memory %s for project %s", kind.value, created.id, project_id)
        return created

    async def get_entry(self, entry_id: str) -> MemoryEntry | None:
        if not self.available():
            return None

        async def _get(session: Any) -> MemoryEntry | None:
            return await session.get(MemoryEntry, entry_id)

        return await self._run("Get memory entry", _get)

    async def require_entry(self, entry_id: str) -> MemoryEntry:
        entry = await self.get_entry(entry_id)
        if entry is None:
            raise MemoryStoreError(f"Memory entry not found: {entry_id}", MemoryErrorCode.ENTRY_NOT_FOUND)
        return entry

    async def list_entries(
        self,
        project_id: str,
        *,
        bead_id: str | None = None,
        epic_id: str | None = None,
        session_id: str | None = None,
        kinds: Sequence[MemoryKind | str] | None = None,
        limit: int | None = None,
        include_deleted: bool = False,
        include_expired: bool = False,
        now: datetime | None = None,
    ) -> list[MemoryEntry]:
        """Entries for a project, most relevant first, then newest first."""
        if not self.available():
            return []
        now = now or datetime.now(UTC)

        stmt = select(MemoryEntry).where(MemoryEntry.project_id == project_id)
        if bead_id:
            stmt = stmt.where(MemoryEntry.bead_id == bead_id)
        if epic_id:
            stmt = stmt.where(MemoryEntry.epic_id == epic_id)
        if session_id:
            stmt = stmt.where(MemoryEntry.session_id == session_id)
        if kinds:
            stmt = stmt.where(MemoryEntry.kind.in_([MemoryKind(k).value for k in kinds]))
        if not include_deleted:
            stmt = stmt.where(MemoryEntry.deleted_at.is_(None))
        if not include_expired:
            stmt = stmt.where(or_(MemoryEntry.expires_at.is_(None), MemoryEntry.expires_at > now))
        stmt = stmt.order_by(MemoryEntry.relevance_score.desc(), MemoryEntry.created_at.desc()).limit(
            clamp_limit(limit)
        )

        async def _list(session: Any) -> list[MemoryEntry]:
            return list((await session.execute(stmt)).scalars().all())

        return await self._run("List memory entries", _list)

    async def search_entries(
        self,
        project_id: str,
        query: str,
        *,
        bead_id: str | None = None,
        kinds: Sequence[MemoryKind | str] | None = None,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> list[MemoryEntry]:
        """Live entries whose title or content contains ``query``."""
        if not self.available() or not query.strip():
            return []
        now = now or datetime.now(UTC)
        pattern = f"%{query.strip()}%"
        stmt = (
            select(MemoryEntry)
            .where(MemoryEntry.project_id == project_id, *live_filter(now))
            .where(or_(MemoryEntry.title.ilike(pattern), MemoryEntry.content.ilike(pattern)))
        )
        if bead_id is not None:
            stmt = stmt.where(MemoryEntry.bead_id == bead_id)
        if kinds:
            stmt = stmt.where(MemoryEntry.kind.in_([MemoryKind(k).value for k in kinds]))
        stmt = stmt.order_by(MemoryEntry.relevance_score.desc(), MemoryEntry.created_at.desc()).limit(
            clamp_limit(limit)
        )

        async def _search(session: Any) -> list[MemoryEntry]:
            return list((await session.execute(stmt)).scalars().all())

        return await self._run("Search memory entries", _search)

    async def soft_delete_entry(self, entry_id: str, *, now: datetime | None = None) -> bool:
        """Mark an entry deleted. Returns False if it was missing or already deleted."""
        if not self.available():
            return False
        now = now or datetime.now(UTC)
        stmt = (
            update(MemoryEntry)
            .where(MemoryEntry.id == entry_id, MemoryEntry.deleted_at.is_(None))
            .values(deleted_at=now)
        )

        async def _delete(session: Any) -> bool:
            return (await session.execute(stmt)).rowcount > 0

        return await self._run("Delete memory entry", _delete)

    async def update_relevance_score(self, entry_id: str, score: float) -> bool:
        _validate_score(score)
        if not self.available():
            return False
        stmt = update(MemoryEntry).where(MemoryEntry.id == entry_id).values(relevance_score=score)

        async def _update(session: Any) -> bool:
            return (await session.execute(stmt)).rowcount > 0

        return await self._run("Update relevance score", _update)

    async def append_tracking_data(self, entry_id: str, tracking: dict[str, Any]) -> MemoryEntry:
        """Merge audit keys into an entry's ``data``; other fields are untouched."""

        async def _append(session: Any) -> MemoryEntry:
            entry = await session.get(MemoryEntry, entry_id)
            if entry is None:
                raise MemoryStoreError(f"Memory entry not found: {entry_id}", MemoryErrorCode.ENTRY_NOT_FOUND)
            entry.data = {**(entry.data or {}), **tracking}
            return entry

        if not self.available():
            raise MemoryStoreError(f"Memory entry not found: {entry_id}", MemoryErrorCode.ENTRY_NOT_FOUND)
        return await self._run("Append tracking data", _append)

    async def expire_old_entries(self, *, now: datetime | None = None) -> int:
        """Soft-delete every live entry whose expiry has passed."""
        if not self.available():
            return 0
        now = now or datetime.now(UTC)
        stmt = (
            update(MemoryEntry)
            .where(
                MemoryEntry.deleted_at.is_(None),
                MemoryEntry.expires_at.is_not(None),
                MemoryEntry.expires_at <= now,
            )
            .values(deleted_at=now)
        )

        async def _expire(session: Any) -> int:
            return (await session.execute(stmt)).rowcount

        count = await self._run("Expire memory entries", _expire)
        if count:
            logger.info("Expired %d memory entries", count)
        return count

    async def purge_deleted_entries(
        self, *, older_than_days: int = SOFT_DELETE_RETENTION_DAYS, now: datetime | None = None
    ) -> int:
        """Hard-delete entries soft-deleted longer ago than the retention window."""
        if not self.available():
            return 0
        cutoff = (now or datetime.now(UTC)) - timedelta(days=older_than_days)
        stmt = delete(MemoryEntry).where(
            MemoryEntry.deleted_at.is_not(None), MemoryEntry.deleted_at < cutoff
        )

        async def _purge(session: Any) -> int:
            return (await session.execute(stmt)).rowcount

        count = await self._run("Purge memory entries", _purge)
        if count:
            logger.info("Purged %d soft-deleted memory entries", count)
        return count

    async def get_stats(self, project_id: str) -> dict[str, Any]:
        stats: dict[str, Any] = {"total": 0, "active": 0, "deleted": 0, "by_kind": {}}
        if not self.available():
            return stats

        async def _stats(session: Any) -> None:
            total, deleted = (
                await session.execute(
                    select(
                        func.count(MemoryEntry.id),
                        func.count(MemoryEntry.deleted_at),
                    ).where(MemoryEntry.project_id == project_id)
                )
            ).one()
            rows = (
                await session.execute(
                    select(MemoryEntry.kind, func.count(MemoryEntry.id))
                    .where(MemoryEntry.project_id == project_id, MemoryEntry.deleted_at.is_(None))
                    .group_by(MemoryEntry.kind)
                )
            ).all()
            stats["total"] = int(total or 0)
            stats["deleted"] = int(deleted or 0)
            stats["active"] = stats["total"] - stats["deleted"]
            stats["by_kind"] = {kind: int(count) for kind, count in rows}

        await self._run("Memory stats", _stats)
        return stats
