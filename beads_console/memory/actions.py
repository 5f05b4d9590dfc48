"""Action execution reports persisted as memory entries.

Project actions (test runs, builds, scripts) are recorded with their output
so they can be audited later and forwarded into an agent chat.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from ..models import MemoryEntry, MemoryKind
from .store import MemoryStore

SENSITIVE_ENV_PATTERNS = (
    "key",
    "secret",
    "token",
    "password",
    "credential",
    "auth",
    "private",
    "bearer",
    "jwt",
    "session",
    "cookie",
)

REDACTED = "[REDACTED]"


@dataclass
class ActionRecord:
    """One finished action execution."""

    action_id: str
    label: str
    command: str
    resolved_command: str
    working_directory: str
    profile_used: str
    started_at: datetime
    completed_at: datetime
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    environment: dict[str, str] = field(default_factory=dict)
    session_id: str | None = None
    chat_id: str | None = None
    bead_id: str | None = None

    @property
    def duration_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


def is_sensitive_env_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in SENSITIVE_ENV_PATTERNS)


def sanitize_environment(env: dict[str, str]) -> dict[str, str]:
    """Copy of ``env`` with likely secrets redacted."""
    return {key: REDACTED if is_sensitive_env_key(key) else value for key, value in env.items()}


def build_action_record(**params: Any) -> ActionRecord:
    """Create an ``ActionRecord`` with its environment already sanitized."""
    params["environment"] = sanitize_environment(params.get("environment") or {})
    return ActionRecord(**params)


def format_action_report(record: ActionRecord) -> str:
    status = "SUCCESS" if record.succeeded else "FAILED"
    content = (
        f"## Action Report: {record.label}\n\n"
        f"**Status:** {status} (exit code {record.exit_code})\n"
        f"**Duration:** {record.duration_ms}ms\n"
        f"**Profile:** {record.profile_used}\n"
        f"**Working Directory:** {record.working_directory}\n\n"
        f"### Command\n```\n{record.resolved_command}\n```\n\n"
        f"### Output\n```\n{record.stdout or '(no output)'}\n```"
    )
    if record.stderr:
        content += f"\n\n### Errors\n```\n{record.stderr}\n```"
    return content


async def persist_action_report(store: MemoryStore, project_id: str, record: ActionRecord) -> MemoryEntry:
    data = asdict(record)
    for key in ("stdout", "stderr", "environment", "session_id", "chat_id", "bead_id"):
        data.pop(key)
    data["started_at"] = record.started_at.isoformat()
    data["completed_at"] = record.completed_at.isoformat()
    data["duration_ms"] = record.duration_ms

    return await store.create_entry(
        project_id=project_id,
        kind=MemoryKind.ACTION_REPORT,
        title=f"Action: {record.label}",
        content=format_action_report(record),
        bead_id=record.bead_id,
        session_id=record.session_id,
        chat_id=record.chat_id,
        data=data,
    )


async def run_action(
    store: MemoryStore,
    project_id: str,
    *,
    label: str,
    command: str,
    working_directory: str | Path,
    profile: str = "default",
    environment: dict[str, str] | None = None,
    bead_id: str | None = None,
    session_id: str | None = None,
) -> MemoryEntry:
    """Run a shell command in the project and persist its report.

    Only the ``environment`` overrides are recorded, never the inherited
    process environment.
    """
    overrides = environment or {}
    started_at = datetime.now(UTC)
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=str(working_directory),
        env={**os.environ, **overrides},
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    record = build_action_record(
        action_id=str(uuid4()),
        label=label,
        command=command,
        resolved_command=command,
        working_directory=str(working_directory),
        profile_used=profile,
        started_at=started_at,
        completed_at=datetime.now(UTC),
        exit_code=proc.returncode,
        stdout=stdout.decode(errors="replace").strip(),
        stderr=stderr.decode(errors="replace").strip(),
        environment=overrides,
        bead_id=bead_id,
        session_id=session_id,
    )
    return await persist_action_report(store, project_id, record)


async def recent_action_reports(
    store: MemoryStore,
    project_id: str,
    *,
    bead_id: str | None = None,
    session_id: str | None = None,
    limit: int = 20,
) -> list[MemoryEntry]:
    return await store.list_entries(
        project_id,
        bead_id=bead_id,
        session_id=session_id,
        kinds=[MemoryKind.ACTION_REPORT],
        limit=limit,
    )


async def mark_action_sent_to_chat(
    store: MemoryStore, entry_id: str, *, method: str = "full", now: datetime | None = None
) -> MemoryEntry:
    sent_at = (now or datetime.now(UTC)).isoformat()
    return await store.append_tracking_data(entry_id, {"sentToChat": {"method": method, "sentAt": sent_at}})


def format_action_for_chat(entry: MemoryEntry) -> str:
    data = entry.data or {}
    exit_code = data.get("exit_code", "unknown")
    status = "completed successfully" if exit_code == 0 else f"failed with exit code {exit_code}"
    return (
        f"**Action Result: {entry.title}**\n\n"
        f"The action {status}.\n\n"
        f"{entry.content}\n\n"
        "---\n"
        f"*Action ID: {data.get('action_id') or 'unknown'} | Duration: {data.get('duration_ms', 0)}ms*"
    )


def format_action_summary(entry: MemoryEntry) -> str:
    data = entry.data or {}
    exit_code = data.get("exit_code", "unknown")
    status = "SUCCESS" if exit_code == 0 else "FAILED"
    command = data.get("resolved_command") or "(unknown command)"
    return f"[Action {status}] `{command}`\nExit code: {exit_code}"


async def action_stats(
    store: MemoryStore, project_id: str, *, bead_id: str | None = None, session_id: str | None = None
) -> dict[str, Any]:
    reports = await recent_action_reports(store, project_id, bead_id=bead_id, session_id=session_id, limit=100)
    if not reports:
        return {"total_actions": 0, "success_count": 0, "failure_count": 0, "average_duration_ms": 0}

    successes = sum(1 for report in reports if (report.data or {}).get("exit_code") == 0)
    total_duration = sum((report.data or {}).get("duration_ms", 0) for report in reports)
    return {
        "total_actions": len(reports),
        "success_count": successes,
        "failure_count": len(reports) - successes,
        "average_duration_ms": round(total_duration / len(reports)),
    }
