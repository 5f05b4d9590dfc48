"""SQLAlchemy models for the project memory database."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Float, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class MemoryKind(StrEnum):
    """Kinds of durable context an agent or the system can record."""

    CONSTRAINT = "constraint"
    DECISION = "decision"
    CHECKPOINT = "checkpoint"
    NEXT_STEP = "next_step"
    ACTION_REPORT = "action_report"
    CI_NOTE = "ci_note"


# Days an entry stays live after creation; None never expires
DEFAULT_RETENTION_DAYS: dict[MemoryKind, int | None] = {
    MemoryKind.CONSTRAINT: None,
    MemoryKind.DECISION: 90,
    MemoryKind.CHECKPOINT: 30,
    MemoryKind.NEXT_STEP: 7,
    MemoryKind.ACTION_REPORT: 14,
    MemoryKind.CI_NOTE: 30,
}

DEFAULT_RELEVANCE_SCORE = 1.0
DEFAULT_MEMORY_LIMIT = 50
MAX_MEMORY_LIMIT = 100
SOFT_DELETE_RETENTION_DAYS = 30


class UTCDateTime(TypeDecorator):
    """Stores datetimes as naive UTC and hands them back timezone-aware.

    SQLite has no timezone support, so values would otherwise come back naive.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
        list[str]: JSON,
        datetime: UTCDateTime(),
    }


class MemoryEntry(Base):
    """Append-only scoped memory record."""

    __tablename__ = "memory_entries"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    project_id: Mapped[str] = mapped_column(String, nullable=False)
    bead_id: Mapped[str | None] = mapped_column(String, nullable=True)
    epic_id: Mapped[str | None] = mapped_column(String, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    chat_id: Mapped[str | None] = mapped_column(String, nullable=True)
    agent_name: Mapped[str | None] = mapped_column(String, nullable=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    intent_anchors: Mapped[list[str] | None] = mapped_column(nullable=True)
    relevance_score: Mapped[float] = mapped_column(Float, default=DEFAULT_RELEVANCE_SCORE)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))

    __table_args__ = (
        Index("idx_memory_project", "project_id"),
        Index("idx_memory_bead", "bead_id"),
        Index("idx_memory_epic", "epic_id"),
        Index("idx_memory_constraints", "project_id", "kind"),
        Index("idx_memory_created", "created_at"),
        Index("idx_memory_expires", "expires_at"),
        Index("idx_memory_session_chat", "session_id", "chat_id"),
    )

    @property
    def scope_label(self) -> str:
        if self.bead_id:
            return f"[bead:{self.bead_id}]"
        if self.epic_id:
            return f"[epic:{self.epic_id}]"
        return "[project]"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "bead_id": self.bead_id,
            "epic_id": self.epic_id,
            "session_id": self.session_id,
            "chat_id": self.chat_id,
            "agent_name": self.agent_name,
            "kind": self.kind,
            "title": self.title,
            "content": self.content,
            "data": self.data,
            "intent_anchors": self.intent_anchors,
            "relevance_score": self.relevance_score,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
