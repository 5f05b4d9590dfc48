"""Error types and helpers for the Beads Console core."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import click


class BeadsConsoleError(RuntimeError):
    """Base class for errors reported synchronously by the core."""


class InvalidTransitionError(BeadsConsoleError):
    """A state change not permitted by a session or run state machine."""

    def __init__(self, entity: str, current: str, attempted: str) -> None:
        self.entity = entity
        self.current = current
        self.attempted = attempted
        super().__init__(f"Invalid {entity} transition: {current} -> {attempted}")


class NotFoundError(BeadsConsoleError, LookupError):
    """An operation referenced an unknown session, run or work item."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class DuplicateRunError(BeadsConsoleError):
    """A non-terminal run already exists for the work item."""

    def __init__(self, work_item_id: str, run_id: str) -> None:
        self.work_item_id = work_item_id
        self.run_id = run_id
        super().__init__(f"Work item {work_item_id} already has an active run ({run_id})")


class AgentSpawnError(BeadsConsoleError):
    """The agent process could not be started."""


class MemoryErrorCode(StrEnum):
    DB_NOT_FOUND = "DB_NOT_FOUND"
    DB_CONNECTION_FAILED = "DB_CONNECTION_FAILED"
    INVALID_ENTRY = "INVALID_ENTRY"
    ENTRY_NOT_FOUND = "ENTRY_NOT_FOUND"
    QUERY_FAILED = "QUERY_FAILED"


class MemoryStoreError(BeadsConsoleError):
    """Raised by the memory store with a machine-readable code."""

    def __init__(self, message: str, code: MemoryErrorCode) -> None:
        self.code = code
        super().__init__(message)


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        match = _SQLITE_MISSING_TABLE_RE.search(str(e))
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table error."""
    return missing_table_name(exc) is not None


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Memory database schema is not initialized{table_hint}.",
        "Run: `alembic upgrade head`",
        "Or validate with: `beads-console memory schema-check`",
    ]
    return "\n".join(lines)


@dataclass(frozen=True)
class SideEffectResult:
    """Outcome of a best-effort side effect.

    Callers log failures and carry on; a failed side effect never aborts the
    operation that triggered it.
    """

    ok: bool
    value: Any = None
    reason: str | None = None

    @classmethod
    def succeeded(cls, value: Any = None) -> "SideEffectResult":
        return cls(ok=True, value=value)

    @classmethod
    def failed(cls, reason: str) -> "SideEffectResult":
        return cls(ok=False, reason=reason)

    def log_failure(self, logger: logging.Logger, what: str) -> "SideEffectResult":
        if not self.ok:
            logger.warning("%s failed: %s", what, self.reason)
        return self
