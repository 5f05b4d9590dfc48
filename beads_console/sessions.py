"""Session lifecycle: state machine, message log, metrics and checkpoints.

A session is one continuous unit of agent engagement. Its metadata lives in
``<project>/.beads/sessions/<id>/meta.json`` and its messages in an
append-only ``messages.jsonl`` next to it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import Any
from uuid import uuid4

from .beads import BeadStore
from .config import settings
from .errors import InvalidTransitionError, NotFoundError, SideEffectResult
from .memory.retrieval import generate_memory_brief
from .memory.store import MemoryStore
from .models import DEFAULT_RETENTION_DAYS, MemoryKind

logger = logging.getLogger(__name__)

CHECKPOINT_EXCERPT_CHARS = 500
CHECKPOINT_MESSAGE_WINDOW = 10


class SessionStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


VALID_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.DRAFT: frozenset({SessionStatus.ACTIVE, SessionStatus.CLOSED}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.PAUSED, SessionStatus.CLOSED}),
    SessionStatus.PAUSED: frozenset({SessionStatus.ACTIVE, SessionStatus.CLOSED}),
    SessionStatus.CLOSED: frozenset(),
}


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class CheckpointTrigger(StrEnum):
    SESSION_END = "session_end"
    COMPACTION = "compaction"
    MANUAL = "manual"


def can_transition(current: SessionStatus | str, target: SessionStatus | str) -> bool:
    return SessionStatus(target) in VALID_TRANSITIONS[SessionStatus(current)]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class SessionMetrics:
    message_count: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: float = 0.0
    duration_ms: int = 0
    tool_call_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMetrics:
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass
class MessageUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


@dataclass
class SessionMessage:
    id: str
    session_id: str
    role: MessageRole
    content: str
    timestamp: datetime
    tool_calls: list[dict[str, Any]] | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cost_usd: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "tool_calls": self.tool_calls,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost_usd": self.cost_usd,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMessage:
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            role=MessageRole(data["role"]),
            content=data["content"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            tool_calls=data.get("tool_calls"),
            input_tokens=data.get("input_tokens"),
            output_tokens=data.get("output_tokens"),
            cost_usd=data.get("cost_usd"),
        )


@dataclass
class Session:
    id: str
    project_id: str
    status: SessionStatus = SessionStatus.DRAFT
    bead_id: str | None = None
    agent_id: str | None = None
    agent_name: str | None = None
    title: str | None = None
    summary: str | None = None
    tags: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    paused_at: datetime | None = None
    closed_at: datetime | None = None
    last_activity_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    memory_brief: str | None = None
    memory_brief_tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "status": self.status.value,
            "bead_id": self.bead_id,
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "title": self.title,
            "summary": self.summary,
            "tags": list(self.tags),
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "paused_at": _iso(self.paused_at),
            "closed_at": _iso(self.closed_at),
            "last_activity_at": _iso(self.last_activity_at),
            "metrics": self.metrics.to_dict(),
            "memory_brief": self.memory_brief,
            "memory_brief_tokens": self.memory_brief_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            status=SessionStatus(data["status"]),
            bead_id=data.get("bead_id"),
            agent_id=data.get("agent_id"),
            agent_name=data.get("agent_name"),
            title=data.get("title"),
            summary=data.get("summary"),
            tags=list(data.get("tags") or []),
            created_at=_parse(data.get("created_at")) or datetime.now(UTC),
            started_at=_parse(data.get("started_at")),
            paused_at=_parse(data.get("paused_at")),
            closed_at=_parse(data.get("closed_at")),
            last_activity_at=_parse(data.get("last_activity_at")) or datetime.now(UTC),
            metrics=SessionMetrics.from_dict(data.get("metrics") or {}),
            memory_brief=data.get("memory_brief"),
            memory_brief_tokens=data.get("memory_brief_tokens"),
        )


class SessionFiles:
    """File layout of the sessions directory of one project."""

    META_FILE = "meta.json"
    MESSAGES_FILE = "messages.jsonl"

    def __init__(self, root: Path) -> None:
        self.root = root

    def session_dir(self, session_id: str) -> Path:
        return self.root / session_id

    def save_meta(self, session: Session) -> None:
        directory = self.session_dir(session.id)
        directory.mkdir(parents=True, exist_ok=True)
        tmp_path = directory / f"{self.META_FILE}.tmp"
        tmp_path.write_text(json.dumps(session.to_dict(), indent=2))
        tmp_path.replace(directory / self.META_FILE)

    def load_meta(self, session_id: str) -> Session | None:
        meta_path = self.session_dir(session_id) / self.META_FILE
        if not meta_path.exists():
            return None
        return Session.from_dict(json.loads(meta_path.read_text()))

    def append_message(self, message: SessionMessage) -> None:
        directory = self.session_dir(message.session_id)
        directory.mkdir(parents=True, exist_ok=True)
        with (directory / self.MESSAGES_FILE).open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(message.to_dict()) + "\n")

    def load_messages(self, session_id: str, limit: int | None = None) -> list[SessionMessage]:
        path = self.session_dir(session_id) / self.MESSAGES_FILE
        if not path.exists():
            return []
        messages: list[SessionMessage] = []
        for line_number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                messages.append(SessionMessage.from_dict(json.loads(line)))
            except (ValueError, KeyError) as exc:
                logger.warning("Skipping corrupt message line %d in session %s: %s", line_number, session_id, exc)
        if limit is not None:
            return messages[-limit:] if limit > 0 else []
        return messages

    def session_ids(self) -> list[str]:
        if not self.root.exists():
            return []
        return [path.name for path in self.root.iterdir() if (path / self.META_FILE).exists()]

    def delete(self, session_id: str) -> bool:
        directory = self.session_dir(session_id)
        if not directory.exists():
            return False
        shutil.rmtree(directory)
        return True


def _excerpt(text: str, limit: int = CHECKPOINT_EXCERPT_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def format_checkpoint_content(
    session: Session,
    trigger: CheckpointTrigger,
    *,
    summary: str | None = None,
    recent_messages: list[SessionMessage] | None = None,
) -> str:
    duration = f"{round(session.metrics.duration_ms / 1000)}s" if session.started_at else "N/A"
    lines = [
        "## Session Checkpoint",
        "",
        f"**Trigger:** {trigger.value}",
        f"**Session:** {session.id}",
        f"**Bead:** {session.bead_id}",
        f"**Duration:** {duration}",
        f"**Messages:** {session.metrics.message_count}",
    ]

    if summary:
        lines += ["", "### Summary", "", summary]
    else:
        messages = recent_messages or []
        last_user = next((m for m in reversed(messages) if m.role == MessageRole.USER), None)
        last_assistant = next((m for m in reversed(messages) if m.role == MessageRole.ASSISTANT), None)
        if last_user or last_assistant:
            lines += ["", "### Last Exchange"]
            if last_user:
                lines += ["", f"**User:** {_excerpt(last_user.content)}"]
            if last_assistant:
                lines += ["", f"**Assistant:** {_excerpt(last_assistant.content)}"]

    return "\n".join(lines)


class SessionManager:
    """Owns the sessions of one project.

    Loaded sessions are cached by id. Mutations take a per-session lock, so
    unrelated sessions never wait on each other.
    """

    def __init__(
        self,
        project_path: str | Path,
        *,
        memory_store: MemoryStore | None = None,
        bead_store: BeadStore | None = None,
        brief_tokens: int | None = None,
    ) -> None:
        self.project_path = Path(project_path)
        self.files = SessionFiles(settings.sessions_dir(self.project_path))
        self.memory_store = memory_store
        self.bead_store = bead_store
        self.brief_tokens = brief_tokens or settings.memory_brief_tokens
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    def get(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            session = self.files.load_meta(session_id)
            if session is not None:
                self._sessions[session_id] = session
        return session

    def require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise NotFoundError("Session", session_id)
        return session

    async def create(
        self,
        project_id: str,
        *,
        bead_id: str | None = None,
        agent_id: str | None = None,
        agent_name: str | None = None,
        title: str | None = None,
    ) -> Session:
        now = datetime.now(UTC)
        session = Session(
            id=str(uuid4()),
            project_id=project_id,
            bead_id=bead_id,
            agent_id=agent_id,
            agent_name=agent_name,
            title=title,
            created_at=now,
            last_activity_at=now,
        )
        if bead_id:
            await self._attach_memory_brief(session)

        self._sessions[session.id] = session
        self.files.save_meta(session)
        logger.info("Created session %s (bead=%s)", session.id, bead_id)
        return session

    async def _attach_memory_brief(self, session: Session) -> None:
        if self.memory_store is None:
            return
        try:
            epic_id = None
            if self.bead_store is not None:
                parent = await self.bead_store.get_parent(session.bead_id)
                if parent is not None and parent.is_epic:
                    epic_id = parent.id
            brief = await generate_memory_brief(
                self.memory_store,
                project_id=session.project_id,
                bead_id=session.bead_id,
                epic_id=epic_id,
                max_tokens=self.brief_tokens,
            )
        except Exception as exc:
            logger.warning("Memory brief unavailable for session %s: %s", session.id, exc)
            return
        if brief.included_count:
            session.memory_brief = brief.text
            session.memory_brief_tokens = brief.token_estimate

    def _apply_transition(self, session: Session, target: SessionStatus, now: datetime) -> None:
        if not can_transition(session.status, target):
            raise InvalidTransitionError("session", session.status.value, target.value)

        if session.status == SessionStatus.PAUSED:
            session.paused_at = None
        if target == SessionStatus.ACTIVE and session.started_at is None:
            session.started_at = now
        elif target == SessionStatus.PAUSED:
            session.paused_at = now
        elif target == SessionStatus.CLOSED:
            session.closed_at = now
            if session.started_at is not None:
                session.metrics.duration_ms = int((now - session.started_at).total_seconds() * 1000)

        logger.debug("Session %s: %s -> %s", session.id, session.status.value, target.value)
        session.status = target
        session.last_activity_at = now

    async def transition(self, session_id: str, status: SessionStatus | str) -> Session:
        target = SessionStatus(status)
        async with self._lock(session_id):
            session = self.require(session_id)
            self._apply_transition(session, target, datetime.now(UTC))
            self.files.save_meta(session)
            return session

    async def pause(self, session_id: str) -> Session:
        return await self.transition(session_id, SessionStatus.PAUSED)

    async def resume(self, session_id: str) -> Session:
        return await self.transition(session_id, SessionStatus.ACTIVE)

    async def append_message(
        self,
        session_id: str,
        role: MessageRole | str,
        content: str,
        *,
        tool_calls: list[dict[str, Any]] | None = None,
        usage: MessageUsage | None = None,
    ) -> SessionMessage:
        async with self._lock(session_id):
            session = self.require(session_id)
            if session.status == SessionStatus.CLOSED:
                raise InvalidTransitionError("session", session.status.value, "append_message")

            now = datetime.now(UTC)
            message = SessionMessage(
                id=str(uuid4()),
                session_id=session_id,
                role=MessageRole(role),
                content=content,
                timestamp=now,
                tool_calls=tool_calls,
                input_tokens=usage.input_tokens if usage else None,
                output_tokens=usage.output_tokens if usage else None,
                cost_usd=usage.cost_usd if usage else None,
            )
            self.files.append_message(message)

            metrics = session.metrics
            metrics.message_count += 1
            metrics.tool_call_count += len(tool_calls or [])
            if usage:
                metrics.total_input_tokens += usage.input_tokens
                metrics.total_output_tokens += usage.output_tokens
                metrics.total_cost_usd += usage.cost_usd

            if session.status == SessionStatus.DRAFT:
                self._apply_transition(session, SessionStatus.ACTIVE, now)
            if session.started_at is not None:
                metrics.duration_ms = int((now - session.started_at).total_seconds() * 1000)
            session.last_activity_at = now
            self.files.save_meta(session)
            return message

    def load_messages(self, session_id: str, limit: int | None = None) -> list[SessionMessage]:
        self.require(session_id)
        return self.files.load_messages(session_id, limit)

    async def _capture_checkpoint(
        self, session: Session, trigger: CheckpointTrigger, summary: str | None
    ) -> SideEffectResult:
        if self.memory_store is None:
            return SideEffectResult.failed("no memory store configured")
        if not session.bead_id:
            return SideEffectResult.failed("session has no bead")
        try:
            recent = self.files.load_messages(session.id, CHECKPOINT_MESSAGE_WINDOW)
            now = datetime.now(UTC)
            entry = await self.memory_store.create_entry(
                project_id=session.project_id,
                kind=MemoryKind.CHECKPOINT,
                title=f"Session checkpoint ({trigger.value})",
                content=format_checkpoint_content(session, trigger, summary=summary, recent_messages=recent),
                bead_id=session.bead_id,
                session_id=session.id,
                agent_name=session.agent_name,
                data={"trigger": trigger.value, "metrics": session.metrics.to_dict()},
                expires_at=now + timedelta(days=DEFAULT_RETENTION_DAYS[MemoryKind.CHECKPOINT]),
                now=now,
            )
        except Exception as exc:
            return SideEffectResult.failed(str(exc)).log_failure(logger, f"Checkpoint for session {session.id}")
        logger.info("Captured %s checkpoint %s for session %s", trigger.value, entry.id, session.id)
        return SideEffectResult.succeeded(entry.id)

    async def capture_checkpoint(
        self,
        session_id: str,
        trigger: CheckpointTrigger | str = CheckpointTrigger.MANUAL,
        *,
        summary: str | None = None,
    ) -> SideEffectResult:
        async with self._lock(session_id):
            session = self.require(session_id)
            return await self._capture_checkpoint(session, CheckpointTrigger(trigger), summary)

    async def close(self, session_id: str, summary: str | None = None) -> Session:
        """Checkpoint (when there is something to keep), then close."""
        async with self._lock(session_id):
            session = self.require(session_id)
            if not can_transition(session.status, SessionStatus.CLOSED):
                raise InvalidTransitionError("session", session.status.value, SessionStatus.CLOSED.value)

            if session.bead_id and session.metrics.message_count > 0:
                await self._capture_checkpoint(session, CheckpointTrigger.SESSION_END, summary)

            if summary is not None:
                session.summary = summary
            self._apply_transition(session, SessionStatus.CLOSED, datetime.now(UTC))
            self.files.save_meta(session)
            logger.info("Closed session %s after %d messages", session.id, session.metrics.message_count)
            return session

    def list_sessions(self, *, status: SessionStatus | str | None = None) -> list[Session]:
        sessions = [session for session_id in self.files.session_ids() if (session := self.get(session_id))]
        if status is not None:
            sessions = [session for session in sessions if session.status == SessionStatus(status)]
        return sorted(sessions, key=lambda session: session.last_activity_at, reverse=True)

    def get_active_session(self, project_id: str | None = None) -> Session | None:
        for session in self.list_sessions(status=SessionStatus.ACTIVE):
            if project_id is None or session.project_id == project_id:
                return session
        return None

    async def _update(self, session_id: str, **changes: Any) -> Session:
        async with self._lock(session_id):
            session = self.require(session_id)
            for key, value in changes.items():
                setattr(session, key, value)
            self.files.save_meta(session)
            return session

    async def update_title(self, session_id: str, title: str) -> Session:
        return await self._update(session_id, title=title)

    async def update_summary(self, session_id: str, summary: str) -> Session:
        return await self._update(session_id, summary=summary)

    async def add_tags(self, session_id: str, *tags: str) -> Session:
        async with self._lock(session_id):
            session = self.require(session_id)
            session.tags = list(dict.fromkeys([*session.tags, *(tag.strip() for tag in tags if tag.strip())]))
            self.files.save_meta(session)
            return session

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock(session_id):
            self._sessions.pop(session_id, None)
            deleted = self.files.delete(session_id)
        self._locks.pop(session_id, None)
        return deleted
