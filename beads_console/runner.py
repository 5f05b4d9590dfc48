"""Task run engine.

Drives one agent conversation per run against a project's Bead Store:
builds the task prompt, consumes the agent's output stream, reacts to
completion signals and status changes, steps through epic sequences and
keeps live-update subscribers informed at every transition.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .agent import AgentChunk, AgentConversation, AgentFactory, ChunkType, claude_cli_factory
from .auth import CredentialStore
from .beads import BeadStore, WorkItem, WorkItemStatus
from .config import Settings, settings
from .errors import AgentSpawnError, DuplicateRunError, InvalidTransitionError, NotFoundError, SideEffectResult
from .events import (
    GLOBAL_CHANNEL,
    LiveUpdate,
    LiveUpdateHub,
    NotificationType,
    Subscriber,
    UpdateType,
    notification_update,
    run_channel,
)
from .log import run_id_ctx
from .memory.retrieval import generate_memory_brief
from .memory.store import MemoryStore
from .prompts import EpicProgress, build_message_prompt, build_resume_prompt, build_task_prompt
from .runs import EpicSequence, RunEventType, RunMode, RunRegistry, RunStatus, TaskRun
from .signals import CompletionSignal, SignalScanner, SignalType

logger = logging.getLogger(__name__)


@dataclass
class _RunDriver:
    """Runtime state the engine keeps next to each run."""

    conversation: AgentConversation
    items: dict[str, WorkItem] = field(default_factory=dict)
    scanner: SignalScanner = field(default_factory=SignalScanner)
    generation: int = 0
    handled_generation: int = -1
    response_task: asyncio.Task[None] | None = None
    poll_task: asyncio.Task[None] | None = None
    advance_task: asyncio.Task[None] | None = None
    eviction: asyncio.TimerHandle | None = None
    pause_reason: str | None = None


def _cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel a helper task unless it is the one running this code."""
    if task is not None and not task.done() and task is not asyncio.current_task():
        task.cancel()


class TaskRunner:
    """Runs agents against the work items of one project.

    The registry is injectable so several runners can share one process-wide
    store; at most one non-terminal run exists per work item either way.
    """

    def __init__(
        self,
        project_path: str | Path,
        bead_store: BeadStore,
        *,
        project_id: str | None = None,
        agent_factory: AgentFactory | None = None,
        hub: LiveUpdateHub | None = None,
        registry: RunRegistry | None = None,
        memory_store: MemoryStore | None = None,
        credentials: CredentialStore | None = None,
        config: Settings | None = None,
    ) -> None:
        self.project_path = str(project_path)
        self.project_id = project_id or Path(project_path).name
        self.bead_store = bead_store
        self.credentials = credentials or CredentialStore()
        self.agent_factory = agent_factory or claude_cli_factory(self.credentials)
        self.hub = hub or LiveUpdateHub()
        self.registry = registry or RunRegistry()
        self.memory_store = memory_store
        self.config = config or settings
        self._drivers: dict[str, _RunDriver] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._remove_bead_listener = bead_store.on_change(self._on_bead_change)

    # =========================================================================
    # Public surface
    # =========================================================================

    def get_run(self, run_id: str) -> TaskRun:
        return self.registry.require(run_id)

    async def start(
        self,
        work_item_id: str,
        mode: RunMode | str = RunMode.AUTONOMOUS,
        *,
        agent_profile: str | None = None,
    ) -> TaskRun:
        """Start a run for a work item, or for each open child of an epic."""
        existing = self.registry.get_by_work_item(work_item_id)
        if existing is not None and not existing.is_terminal:
            raise DuplicateRunError(work_item_id, existing.id)

        item = await self.bead_store.get_work_item(work_item_id)
        if item is None:
            raise NotFoundError("Work item", work_item_id)

        children = await self.bead_store.get_children_sorted(item.id)
        pending = [child for child in children if not child.is_closed]

        run = self.registry.create(
            project_id=self.project_id,
            project_path=self.project_path,
            issue_id=item.id,
            issue_title=item.title,
            issue_type=item.issue_type,
            mode=RunMode(mode),
            agent_profile=agent_profile,
        )
        driver = _RunDriver(conversation=self.agent_factory(self.project_path))
        driver.items[item.id] = item
        if pending:
            run.epic = EpicSequence(epic_id=item.id, epic_title=item.title, task_ids=[c.id for c in pending])
            driver.items.update({child.id: child for child in pending})
        self._drivers[run.id] = driver

        logger.info(
            "Starting %s run %s for %s%s",
            run.mode.value,
            run.id,
            item.id,
            f" ({len(pending)} epic tasks)" if pending else "",
        )
        self._publish_global(UpdateType.TASK_ADDED, run)
        async with self.registry.lock(run.id):
            await self._execute_current(run)
        return run

    async def send_message(self, run_id: str, text: str) -> TaskRun:
        """Forward a human message to the run's agent as a continuation."""
        run = self.registry.require(run_id)
        async with self.registry.lock(run_id):
            if run.is_terminal:
                raise InvalidTransitionError("run", run.status.value, RunStatus.RUNNING.value)
            driver = self._drivers[run_id]

            if run.awaiting_user_input or run.status != RunStatus.RUNNING:
                run.awaiting_user_input = False
                driver.pause_reason = None
                self._set_status(run, RunStatus.RUNNING, "User input received")

            run.add_event(RunEventType.OUTPUT, text=f"[User] {text}", role="user")
            self._publish_run(run, UpdateType.EVENT, event=run.events[-1].to_dict())

            item = driver.items.get(run.current_item_id)
            if driver.response_task is not None and not driver.response_task.done():
                await driver.conversation.interrupt()
            self._send(run, build_message_prompt(text, item))
            self._start_polling(run)
        return run

    async def resume(self, run_id: str, message: str | None = None) -> TaskRun:
        """Continue a paused run, optionally with a message from the human."""
        run = self.registry.require(run_id)
        if run.status != RunStatus.PAUSED:
            raise InvalidTransitionError("run", run.status.value, RunStatus.RUNNING.value)
        if message:
            return await self.send_message(run_id, message)

        async with self.registry.lock(run_id):
            driver = self._drivers[run_id]
            previous = driver.pause_reason
            run.awaiting_user_input = False
            driver.pause_reason = None
            self._set_status(run, RunStatus.RUNNING, "Resumed")
            item = driver.items.get(run.current_item_id) or WorkItem(id=run.current_item_id, title=run.issue_title)
            self._send(run, build_resume_prompt(item, previous))
            self._start_polling(run)
        return run

    async def stop(self, run_id: str) -> TaskRun:
        """Cancel a run. Stopping a finished run changes nothing."""
        run = self.registry.require(run_id)
        if run.is_terminal:
            return run
        async with self.registry.lock(run_id):
            if run.is_terminal:
                return run
            driver = self._drivers[run_id]
            driver.generation += 1
            self._stop_polling(driver)
            _cancel_task(driver.advance_task)
            try:
                await driver.conversation.cancel()
            except (OSError, ProcessLookupError) as exc:
                logger.warning("Cancelling agent for run %s failed: %s", run_id, exc)
            self._finish(run, RunStatus.CANCELLED, "Stopped by user", notify=None, reap=False)
        logger.info("Stopped run %s", run_id)
        return run

    def subscribe_run(self, run_id: str) -> Subscriber:
        run = self.registry.require(run_id)
        snapshot = LiveUpdate(
            type=UpdateType.FULL_SYNC, channel=run_channel(run_id), run_id=run_id, data={"run": run.to_dict()}
        )
        return self.hub.subscribe(run_channel(run_id), snapshot=snapshot)

    def subscribe_global(self) -> Subscriber:
        snapshot = LiveUpdate(
            type=UpdateType.FULL_SYNC,
            channel=GLOBAL_CHANNEL,
            data={"tasks": [run.to_dict(include_events=False) for run in self.registry.list_active()]},
        )
        return self.hub.subscribe(GLOBAL_CHANNEL, snapshot=snapshot)

    def evict_expired(self) -> list[str]:
        evicted = self.registry.evict_expired(self.config.run_retention_seconds)
        for run_id in evicted:
            self._drop_driver(run_id)
        return evicted

    async def shutdown(self) -> None:
        """Stop every active run and release background work."""
        self._remove_bead_listener()
        for run in self.registry.list_active():
            if run.id in self._drivers:
                await self.stop(run.id)
        for driver in self._drivers.values():
            if driver.eviction is not None:
                driver.eviction.cancel()
        pending = [task for task in self._background if task is not asyncio.current_task()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    # =========================================================================
    # Execution
    # =========================================================================

    async def _execute_current(self, run: TaskRun) -> None:
        """Send the task prompt for the run's current work item."""
        driver = self._drivers[run.id]
        item_id = run.current_item_id
        try:
            item = await self.bead_store.get_work_item(item_id)
        except Exception as exc:
            result = SideEffectResult.failed(str(exc)).log_failure(logger, f"Reading {item_id}")
            self._skip_current(run, f"Could not read work item {item_id}: {result.reason}")
            return
        if item is None:
            self._skip_current(run, f"Work item not found: {item_id}")
            return
        driver.items[item_id] = item

        self._set_status(run, RunStatus.RUNNING, f"Starting {item_id}")
        if item.status in (WorkItemStatus.OPEN, WorkItemStatus.READY):
            await self._mark_in_progress(item)

        progress = self._epic_progress(run)
        if progress is not None:
            self._publish_run(run, UpdateType.EPIC_PROGRESS, epic=run.epic.to_dict(), current_task_id=item_id)

        prompt = build_task_prompt(
            item,
            run.mode,
            agent_profile=run.agent_profile,
            memory_brief=await self._memory_brief(run, item),
            epic=progress,
        )
        self._send(run, prompt)
        self._start_polling(run, baseline=item.status)

    def _skip_current(self, run: TaskRun, reason: str) -> None:
        """Fail the current work item without sending it to the agent."""
        event = run.add_event(RunEventType.ERROR, message=reason, work_item_id=run.current_item_id)
        self._publish_run(run, UpdateType.EVENT, event=event.to_dict())
        self._set_status(run, RunStatus.RUNNING, f"Starting {run.current_item_id}")
        self._complete_current(run, succeeded=False, reason=reason)

    def _epic_progress(self, run: TaskRun) -> EpicProgress | None:
        if run.epic is None:
            return None
        driver = self._drivers[run.id]
        epic = run.epic

        def _items(ids: list[str]) -> list[WorkItem]:
            return [driver.items.get(task_id) or WorkItem(id=task_id, title=task_id) for task_id in ids]

        return EpicProgress(
            epic_id=epic.epic_id,
            epic_title=epic.epic_title,
            current_index=epic.current_index,
            total_tasks=epic.total_tasks,
            completed=_items(epic.completed_task_ids),
            remaining=_items(epic.task_ids[epic.current_index + 1 :]),
        )

    async def _memory_brief(self, run: TaskRun, item: WorkItem) -> str | None:
        if self.memory_store is None:
            return None
        if run.epic is not None:
            epic_id = run.epic.epic_id
        elif item.parent is not None and item.parent.is_epic:
            epic_id = item.parent.id
        else:
            epic_id = None
        brief = await generate_memory_brief(
            self.memory_store,
            project_id=run.project_id,
            bead_id=item.id,
            epic_id=epic_id,
            max_tokens=self.config.memory_brief_tokens,
        )
        return brief.text or None

    async def _mark_in_progress(self, item: WorkItem) -> SideEffectResult:
        try:
            updated = await self.bead_store.update_status(item.id, WorkItemStatus.IN_PROGRESS.value)
        except Exception as exc:
            return SideEffectResult.failed(str(exc)).log_failure(logger, f"Marking {item.id} in progress")
        if not updated:
            return SideEffectResult.failed("work item not updated").log_failure(logger, f"Marking {item.id} in progress")
        item.status = WorkItemStatus.IN_PROGRESS.value
        return SideEffectResult.succeeded()

    def _send(self, run: TaskRun, prompt: str) -> None:
        driver = self._drivers[run.id]
        driver.generation += 1
        driver.scanner.reset()
        driver.response_task = self._spawn(self._consume(run, driver.generation, prompt), run)

    def _spawn(self, coro: Coroutine[Any, Any, Any], run: TaskRun) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._background.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error("Background work for run %s failed", run.id, exc_info=finished.exception())

        task.add_done_callback(_done)
        return task

    async def _consume(self, run: TaskRun, generation: int, prompt: str) -> None:
        """Feed one agent response into the run, then handle the process exit."""
        run_id_ctx.set(run.id)
        driver = self._drivers[run.id]
        try:
            async with aclosing(driver.conversation.send(prompt)) as stream:
                async for chunk in stream:
                    if generation != driver.generation:
                        return
                    await self._handle_chunk(run, generation, chunk)
        except AgentSpawnError as exc:
            await self._handle_transport_failure(run, generation, str(exc))
            return
        except (OSError, ValueError) as exc:
            await self._handle_transport_failure(run, generation, f"Agent transport error: {exc}")
            return

        if generation != driver.generation:
            return
        signal = driver.scanner.finish()
        if signal is not None:
            await self._handle_signal(run, generation, signal)
        if driver.handled_generation != generation:
            await self._handle_exit(run, generation, driver.conversation.returncode)

    async def _handle_chunk(self, run: TaskRun, generation: int, chunk: AgentChunk) -> None:
        driver = self._drivers[run.id]
        if chunk.type == ChunkType.TEXT:
            event = run.add_event(RunEventType.OUTPUT, text=chunk.content)
            self._publish_run(run, UpdateType.EVENT, event=event.to_dict())
            signal = driver.scanner.feed(chunk.content)
            if signal is not None:
                await self._handle_signal(run, generation, signal)
        elif chunk.type == ChunkType.TOOL_USE:
            event = run.add_event(RunEventType.TOOL_USE, tool=chunk.tool_name, input=chunk.tool_input)
            self._publish_run(run, UpdateType.EVENT, event=event.to_dict())
        elif chunk.type == ChunkType.TOOL_RESULT:
            event = run.add_event(RunEventType.TOOL_RESULT, result=chunk.tool_result)
            self._publish_run(run, UpdateType.EVENT, event=event.to_dict())
        elif chunk.type == ChunkType.ERROR:
            event = run.add_event(RunEventType.ERROR, message=chunk.content)
            self._publish_run(run, UpdateType.EVENT, event=event.to_dict())
        elif chunk.type == ChunkType.AUTH_EXPIRED:
            await self._handle_auth_expired(run, generation, chunk.content)
        elif chunk.type == ChunkType.DONE and chunk.usage is not None:
            logger.debug(
                "Run %s response done: %d in / %d out tokens",
                run.id,
                chunk.usage.input_tokens,
                chunk.usage.output_tokens,
            )

    # =========================================================================
    # Outcomes
    # =========================================================================

    async def _handle_signal(self, run: TaskRun, generation: int, signal: CompletionSignal) -> None:
        async with self.registry.lock(run.id):
            driver = self._drivers[run.id]
            if run.is_terminal or generation != driver.generation or driver.handled_generation == generation:
                return
            driver.handled_generation = generation
            event = run.add_event(
                RunEventType.COMPLETION_SIGNAL,
                signal=signal.type.value,
                message=signal.message,
                work_item_id=run.current_item_id,
            )
            self._publish_run(run, UpdateType.EVENT, event=event.to_dict())

            if signal.type == SignalType.AWAITING_INPUT:
                self._await_input(run, signal.message)
            else:
                self._complete_current(run, succeeded=signal.type == SignalType.COMPLETED, reason=signal.message)

    async def _handle_exit(self, run: TaskRun, generation: int, returncode: int | None) -> None:
        """The agent process ended without reporting an outcome."""
        async with self.registry.lock(run.id):
            driver = self._drivers[run.id]
            if run.status != RunStatus.RUNNING or generation != driver.generation:
                return
            driver.handled_generation = generation
            if returncode == 0:
                if run.mode == RunMode.GUIDED:
                    self._await_input(run, "Agent finished responding")
                    return
                self._complete_current(run, succeeded=True, reason="Session ended normally")
                return
            message = f"Session ended with code {returncode}"
            event = run.add_event(RunEventType.ERROR, message=message, exit_code=returncode)
            self._publish_run(run, UpdateType.EVENT, event=event.to_dict())
            self._complete_current(run, succeeded=False, reason=message)

    async def _handle_transport_failure(self, run: TaskRun, generation: int, message: str) -> None:
        async with self.registry.lock(run.id):
            driver = self._drivers[run.id]
            if run.is_terminal or generation != driver.generation:
                return
            driver.handled_generation = generation
            logger.error("Run %s: %s", run.id, message)
            event = run.add_event(RunEventType.ERROR, message=message)
            self._publish_run(run, UpdateType.EVENT, event=event.to_dict())
            self._stop_polling(driver)
            _cancel_task(driver.advance_task)
            self._finish(run, RunStatus.FAILED, message, notify=NotificationType.FAILED)

    async def _handle_auth_expired(self, run: TaskRun, generation: int, message: str) -> None:
        async with self.registry.lock(run.id):
            driver = self._drivers[run.id]
            if run.is_terminal or generation != driver.generation:
                return
            driver.handled_generation = generation
            try:
                self.credentials.clear()
            except OSError as exc:
                SideEffectResult.failed(str(exc)).log_failure(logger, "Clearing credentials")
            event = run.add_event(RunEventType.ERROR, message=message, auth_expired=True)
            self._publish_run(run, UpdateType.EVENT, event=event.to_dict())
            self._publish_run(run, UpdateType.AUTH_EXPIRED, message=message)
            self.hub.publish(
                LiveUpdate(type=UpdateType.AUTH_EXPIRED, channel=GLOBAL_CHANNEL, run_id=run.id, data={"message": message})
            )
            self._stop_polling(driver)
            _cancel_task(driver.advance_task)
            self._finish(run, RunStatus.FAILED, "Authentication expired", notify=NotificationType.AUTH_EXPIRED)

    def _await_input(self, run: TaskRun, message: str) -> None:
        driver = self._drivers[run.id]
        self._stop_polling(driver)
        driver.pause_reason = message
        self._set_status(run, RunStatus.PAUSED, message)
        run.awaiting_user_input = True
        self._publish_run(run, UpdateType.AWAITING_INPUT, message=message)
        self._publish_global(UpdateType.TASK_UPDATED, run)
        self._notify(NotificationType.AWAITING_INPUT, run, f"Input needed: {run.issue_title}", message)

    def _complete_current(self, run: TaskRun, *, succeeded: bool, reason: str) -> None:
        """Close out the current work item: finish the run or move the epic on."""
        driver = self._drivers[run.id]
        self._stop_polling(driver)

        if run.epic is None:
            if succeeded:
                self._finish(run, RunStatus.COMPLETED, reason, notify=NotificationType.COMPLETED)
            else:
                self._finish(run, RunStatus.FAILED, reason, notify=NotificationType.FAILED)
            return

        task_id = run.epic.record(succeeded)
        logger.info("Epic %s: %s %s", run.epic.epic_id, task_id, "completed" if succeeded else "failed")
        self._publish_run(run, UpdateType.EPIC_PROGRESS, epic=run.epic.to_dict(), finished_task_id=task_id)
        self._publish_global(UpdateType.TASK_UPDATED, run)

        if run.epic.exhausted:
            epic = run.epic
            summary = (
                f"Epic complete: {len(epic.completed_task_ids)} completed, {len(epic.failed_task_ids)} failed"
            )
            self._finish(run, RunStatus.COMPLETED, summary, notify=NotificationType.COMPLETED)
            return

        driver.advance_task = self._spawn(self._advance_epic(run, driver.response_task), run)

    async def _advance_epic(self, run: TaskRun, previous: asyncio.Task[None] | None) -> None:
        run_id_ctx.set(run.id)
        driver = self._drivers[run.id]
        await self._wait_for_response(driver, previous)
        await asyncio.sleep(self.config.epic_advance_delay)
        async with self.registry.lock(run.id):
            if run.status != RunStatus.RUNNING:
                return
            await self._execute_current(run)

    async def _wait_for_response(self, driver: _RunDriver, task: asyncio.Task[None] | None) -> None:
        """Give a finished response time to exit on its own, then kill it."""
        if task is None or task.done() or task is asyncio.current_task():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.config.agent_exit_grace_seconds)
        except TimeoutError:
            logger.warning("Agent did not exit after finishing; killing it")
            await driver.conversation.cancel()
        except asyncio.CancelledError:
            if task.cancelled():
                return
            raise

    def _finish(
        self,
        run: TaskRun,
        status: RunStatus,
        reason: str,
        *,
        notify: NotificationType | None,
        reap: bool = True,
    ) -> None:
        driver = self._drivers[run.id]
        self._set_status(run, status, reason)
        self._publish_global(UpdateType.TASK_REMOVED, run)
        if notify == NotificationType.COMPLETED:
            self._notify(notify, run, f"Task completed: {run.issue_title}", reason)
        elif notify == NotificationType.FAILED:
            self._notify(notify, run, f"Task failed: {run.issue_title}", reason)
        elif notify == NotificationType.AUTH_EXPIRED:
            self._notify(notify, run, "Authentication expired", "Log in again to continue running tasks.")
        logger.info("Run %s %s: %s", run.id, status.value, reason)

        if reap:
            self._spawn(self._wait_for_response(driver, driver.response_task), run)
        loop = asyncio.get_running_loop()
        driver.eviction = loop.call_later(self.config.run_retention_seconds, self._evict, run.id)

    def _evict(self, run_id: str) -> None:
        self.registry.evict(run_id)
        self._drop_driver(run_id)

    def _drop_driver(self, run_id: str) -> None:
        driver = self._drivers.pop(run_id, None)
        if driver is not None and driver.eviction is not None:
            driver.eviction.cancel()
        self.hub.close_channel(run_channel(run_id))

    # =========================================================================
    # Status polling
    # =========================================================================

    def _start_polling(self, run: TaskRun, baseline: str | None = None) -> None:
        driver = self._drivers[run.id]
        self._stop_polling(driver)
        item_id = run.current_item_id
        if baseline is None:
            item = driver.items.get(item_id)
            baseline = item.status if item else None
        driver.poll_task = self._spawn(self._poll_status(run, item_id, baseline), run)

    def _stop_polling(self, driver: _RunDriver) -> None:
        _cancel_task(driver.poll_task)
        driver.poll_task = None

    async def _poll_status(self, run: TaskRun, item_id: str, baseline: str | None) -> None:
        """Treat an externally closed work item like a completion signal."""
        run_id_ctx.set(run.id)
        while True:
            await asyncio.sleep(self.config.status_poll_interval)
            if run.status != RunStatus.RUNNING or run.current_item_id != item_id:
                return
            try:
                item = await self.bead_store.get_work_item(item_id)
            except Exception as exc:
                SideEffectResult.failed(str(exc)).log_failure(logger, f"Polling status of {item_id}")
                continue
            if item is not None and item.is_closed and item.status != baseline:
                await self._on_external_close(run, item_id)
                return

    async def _on_bead_change(self, item_id: str, status: str) -> None:
        if status != WorkItemStatus.CLOSED:
            return
        for run in self.registry.list_active():
            if run.id in self._drivers and run.status == RunStatus.RUNNING and run.current_item_id == item_id:
                await self._on_external_close(run, item_id)

    async def _on_external_close(self, run: TaskRun, item_id: str) -> None:
        async with self.registry.lock(run.id):
            driver = self._drivers[run.id]
            if run.status != RunStatus.RUNNING or run.current_item_id != item_id:
                return
            driver.handled_generation = driver.generation
            event = run.add_event(
                RunEventType.COMPLETION_SIGNAL,
                signal=SignalType.COMPLETED.value,
                message="Issue status changed to closed",
                work_item_id=item_id,
                source="status",
            )
            self._publish_run(run, UpdateType.EVENT, event=event.to_dict())
            self._complete_current(run, succeeded=True, reason="Issue status changed to closed")

    # =========================================================================
    # Fan-out helpers
    # =========================================================================

    def _set_status(self, run: TaskRun, status: RunStatus, reason: str | None = None) -> None:
        event = run.set_status(status, reason)
        self._publish_run(run, UpdateType.STATUS, status=status.value, reason=reason, event=event.to_dict())
        if not run.is_terminal:
            self._publish_global(UpdateType.TASK_UPDATED, run)

    def _publish_run(self, run: TaskRun, update_type: UpdateType, **data: Any) -> None:
        self.hub.publish(LiveUpdate(type=update_type, channel=run_channel(run.id), run_id=run.id, data=data))

    def _publish_global(self, update_type: UpdateType, run: TaskRun) -> None:
        self.hub.publish(
            LiveUpdate(
                type=update_type,
                channel=GLOBAL_CHANNEL,
                run_id=run.id,
                data={"task": run.to_dict(include_events=False)},
            )
        )

    def _notify(self, kind: NotificationType, run: TaskRun, title: str, body: str) -> None:
        self.hub.publish(
            notification_update(
                kind,
                run_id=run.id,
                title=title,
                body=body,
                data={"project_id": run.project_id, "issue_id": run.issue_id},
            )
        )
