"""Task runs: the in-memory model of agent executions and their registry."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any
from uuid import uuid4

from .errors import DuplicateRunError, InvalidTransitionError, NotFoundError


class RunMode(StrEnum):
    """How much the agent decides on its own."""

    AUTONOMOUS = "autonomous"
    GUIDED = "guided"


class RunStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})

# running -> running happens when an epic moves to its next task
RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.QUEUED: frozenset({RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset(
        {RunStatus.RUNNING, RunStatus.PAUSED, RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
    ),
    RunStatus.PAUSED: frozenset({RunStatus.RUNNING, RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


class RunEventType(StrEnum):
    STATUS_CHANGE = "status_change"
    OUTPUT = "output"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    ERROR = "error"
    COMPLETION_SIGNAL = "completion_signal"


@dataclass
class RunEvent:
    type: RunEventType
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


@dataclass
class EpicSequence:
    """Children of an epic executed one after another.

    ``current_index`` only moves forward. Ids before it are in exactly one
    of ``completed_task_ids`` / ``failed_task_ids``.
    """

    epic_id: str
    epic_title: str
    task_ids: list[str]
    current_index: int = 0
    completed_task_ids: list[str] = field(default_factory=list)
    failed_task_ids: list[str] = field(default_factory=list)

    @property
    def total_tasks(self) -> int:
        return len(self.task_ids)

    @property
    def current_task_id(self) -> str | None:
        if self.current_index < len(self.task_ids):
            return self.task_ids[self.current_index]
        return None

    @property
    def exhausted(self) -> bool:
        return self.current_index >= len(self.task_ids)

    def record(self, succeeded: bool) -> str | None:
        """Classify the current task and move past it."""
        task_id = self.current_task_id
        if task_id is None:
            return None
        (self.completed_task_ids if succeeded else self.failed_task_ids).append(task_id)
        self.current_index += 1
        return task_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "epic_id": self.epic_id,
            "epic_title": self.epic_title,
            "task_ids": list(self.task_ids),
            "current_index": self.current_index,
            "completed_task_ids": list(self.completed_task_ids),
            "failed_task_ids": list(self.failed_task_ids),
            "total_tasks": self.total_tasks,
        }


@dataclass
class TaskRun:
    id: str
    project_id: str
    project_path: str
    issue_id: str
    issue_title: str
    issue_type: str
    mode: RunMode
    status: RunStatus = RunStatus.QUEUED
    epic: EpicSequence | None = None
    events: list[RunEvent] = field(default_factory=list)
    awaiting_user_input: bool = False
    completion_reason: str | None = None
    agent_profile: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_item_id(self) -> str:
        """Work item the agent is on: the epic's current child, else the run's item."""
        if self.epic is not None and self.epic.current_task_id is not None:
            return self.epic.current_task_id
        return self.issue_id

    def add_event(self, event_type: RunEventType, **data: Any) -> RunEvent:
        event = RunEvent(type=event_type, data=data)
        self.events.append(event)
        return event

    def set_status(self, status: RunStatus, reason: str | None = None) -> RunEvent:
        """Apply a state machine transition and log it as an event."""
        if status not in RUN_TRANSITIONS[self.status]:
            raise InvalidTransitionError("run", self.status.value, status.value)
        previous = self.status
        self.status = status
        now = datetime.now(UTC)
        if status == RunStatus.RUNNING and self.started_at is None:
            self.started_at = now
        if status in TERMINAL_STATUSES:
            self.completed_at = now
            self.awaiting_user_input = False
            if reason:
                self.completion_reason = reason
        return self.add_event(
            RunEventType.STATUS_CHANGE, previous=previous.value, status=status.value, reason=reason
        )

    def to_dict(self, *, include_events: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "project_id": self.project_id,
            "project_path": self.project_path,
            "issue_id": self.issue_id,
            "issue_title": self.issue_title,
            "issue_type": self.issue_type,
            "mode": self.mode.value,
            "status": self.status.value,
            "epic": self.epic.to_dict() if self.epic else None,
            "awaiting_user_input": self.awaiting_user_input,
            "completion_reason": self.completion_reason,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
        if include_events:
            data["events"] = [event.to_dict() for event in self.events]
        return data


class RunRegistry:
    """Process-wide store of task runs.

    Runs are kept in an id-keyed arena with secondary indexes by project and
    by work item; at most one non-terminal run exists per work item. Each run
    gets its own lock for callers that need to serialize work on it.
    """

    def __init__(self) -> None:
        self._runs: dict[str, TaskRun] = {}
        self._by_project: dict[str, set[str]] = {}
        self._by_issue: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._runs)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._runs

    def create(
        self,
        *,
        project_id: str,
        project_path: str,
        issue_id: str,
        issue_title: str,
        issue_type: str,
        mode: RunMode,
        agent_profile: str | None = None,
    ) -> TaskRun:
        existing = self.get_by_work_item(issue_id)
        if existing is not None:
            if not existing.is_terminal:
                raise DuplicateRunError(issue_id, existing.id)
            self.evict(existing.id)

        run = TaskRun(
            id=str(uuid4()),
            project_id=project_id,
            project_path=project_path,
            issue_id=issue_id,
            issue_title=issue_title,
            issue_type=issue_type,
            mode=RunMode(mode),
            agent_profile=agent_profile,
        )
        self._runs[run.id] = run
        self._by_project.setdefault(project_id, set()).add(run.id)
        self._by_issue[issue_id] = run.id
        self._locks[run.id] = asyncio.Lock()
        return run

    def get(self, run_id: str) -> TaskRun | None:
        return self._runs.get(run_id)

    def require(self, run_id: str) -> TaskRun:
        run = self._runs.get(run_id)
        if run is None:
            raise NotFoundError("Task run", run_id)
        return run

    def lock(self, run_id: str) -> asyncio.Lock:
        self.require(run_id)
        return self._locks[run_id]

    def get_by_work_item(self, issue_id: str) -> TaskRun | None:
        run_id = self._by_issue.get(issue_id)
        return self._runs.get(run_id) if run_id else None

    def list_for_project(self, project_id: str) -> list[TaskRun]:
        runs = [self._runs[run_id] for run_id in self._by_project.get(project_id, ())]
        return sorted(runs, key=lambda run: run.created_at)

    def list_active(self) -> list[TaskRun]:
        runs = [run for run in self._runs.values() if not run.is_terminal]
        return sorted(runs, key=lambda run: run.created_at)

    def all(self) -> list[TaskRun]:
        return sorted(self._runs.values(), key=lambda run: run.created_at)

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in RunStatus}
        for run in self._runs.values():
            counts[run.status.value] += 1
        counts["total"] = len(self._runs)
        return counts

    def evict(self, run_id: str) -> TaskRun | None:
        run = self._runs.pop(run_id, None)
        if run is None:
            return None
        project_runs = self._by_project.get(run.project_id)
        if project_runs is not None:
            project_runs.discard(run_id)
            if not project_runs:
                del self._by_project[run.project_id]
        if self._by_issue.get(run.issue_id) == run_id:
            del self._by_issue[run.issue_id]
        self._locks.pop(run_id, None)
        return run

    def evict_expired(self, max_age_seconds: float, *, now: datetime | None = None) -> list[str]:
        """Drop terminal runs that finished more than ``max_age_seconds`` ago."""
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(seconds=max_age_seconds)
        expired = [
            run.id
            for run in self._runs.values()
            if run.is_terminal and run.completed_at is not None and run.completed_at <= cutoff
        ]
        for run_id in expired:
            self.evict(run_id)
        return expired
