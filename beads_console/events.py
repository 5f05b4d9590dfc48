"""Live update fan-out for task runs.

Updates are JSON messages pushed to subscribers of a channel: one channel per
run, a global ``runs`` channel for the active-task list and a
``notifications`` channel. Delivery is best-effort: a subscriber that cannot
take a message is dropped without affecting anyone else.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from .config import settings

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "runs"
NOTIFICATIONS_CHANNEL = "notifications"


def run_channel(run_id: str) -> str:
    return f"run:{run_id}"


class UpdateType(str, Enum):
    STATUS = "status"
    EVENT = "event"
    AWAITING_INPUT = "awaiting_input"
    EPIC_PROGRESS = "epic_progress"
    AUTH_EXPIRED = "auth_expired"

    TASK_ADDED = "task_added"
    TASK_UPDATED = "task_updated"
    TASK_REMOVED = "task_removed"
    FULL_SYNC = "full_sync"

    NOTIFICATION = "notification"
    HEARTBEAT = "heartbeat"


class NotificationType(str, Enum):
    AWAITING_INPUT = "awaiting_input"
    COMPLETED = "completed"
    FAILED = "failed"
    AUTH_EXPIRED = "auth_expired"


@dataclass
class LiveUpdate:
    """One message on a fan-out channel."""

    type: UpdateType
    channel: str
    data: dict[str, Any] = field(default_factory=dict)
    run_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "channel": self.channel,
            "run_id": self.run_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class SubscriberClosed(Exception):
    """The subscriber was dropped or closed."""


class Subscriber:
    """A bounded queue of JSON messages for one listener on one channel."""

    def __init__(self, channel: str, maxsize: int | None = None) -> None:
        self.id = str(uuid4())
        self.channel = channel
        self.closed = False
        self.last_read = time.monotonic()
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize or settings.subscriber_queue_size)

    def deliver(self, payload: str) -> None:
        if self.closed:
            raise SubscriberClosed(self.id)
        self._queue.put_nowait(payload)

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Reader sees ``closed`` once it drains the queue
            pass

    async def get(self) -> str:
        if self.closed and self._queue.empty():
            raise SubscriberClosed(self.id)
        payload = await self._queue.get()
        self.last_read = time.monotonic()
        if payload is None:
            raise SubscriberClosed(self.id)
        return payload

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Decoded messages until the subscriber is closed."""
        while True:
            try:
                payload = await self.get()
            except SubscriberClosed:
                return
            yield json.loads(payload)


UpdateHandler = Callable[[LiveUpdate], Any]


class LiveUpdateHub:
    """Channel registry with synchronous, ordered, best-effort delivery.

    ``publish`` never awaits, so messages for one channel reach each
    subscriber in the order they were published. Extra handlers (e.g. the
    Redis mirror) run after local delivery; async ones are scheduled as
    tasks so they cannot stall it.
    """

    def __init__(self, *, stale_after: float | None = None) -> None:
        self._channels: dict[str, dict[str, Subscriber]] = {}
        self._handlers: list[UpdateHandler] = []
        self._pending: set[asyncio.Task[Any]] = set()
        self._heartbeat_task: asyncio.Task[None] | None = None
        self.stale_after = stale_after if stale_after is not None else settings.stale_subscriber_seconds

    def on_update(self, handler: UpdateHandler) -> None:
        self._handlers.append(handler)

    def subscribe(self, channel: str, *, snapshot: LiveUpdate | None = None) -> Subscriber:
        subscriber = Subscriber(channel)
        if snapshot is not None:
            subscriber.deliver(snapshot.to_json())
        self._channels.setdefault(channel, {})[subscriber.id] = subscriber
        logger.debug("Subscriber %s joined %s", subscriber.id, channel)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        members = self._channels.get(subscriber.channel)
        if members is not None:
            members.pop(subscriber.id, None)
            if not members:
                del self._channels[subscriber.channel]
        subscriber.close()

    def subscriber_count(self, channel: str | None = None) -> int:
        if channel is not None:
            return len(self._channels.get(channel, {}))
        return sum(len(members) for members in self._channels.values())

    def close_channel(self, channel: str) -> None:
        for subscriber in list(self._channels.get(channel, {}).values()):
            self.unsubscribe(subscriber)

    def publish(self, update: LiveUpdate) -> int:
        """Deliver to every subscriber of the update's channel. Returns the count reached."""
        payload = update.to_json()
        delivered = 0
        for subscriber in list(self._channels.get(update.channel, {}).values()):
            try:
                subscriber.deliver(payload)
                delivered += 1
            except (asyncio.QueueFull, SubscriberClosed):
                logger.info("Dropping subscriber %s on %s", subscriber.id, update.channel)
                self.unsubscribe(subscriber)

        for handler in self._handlers:
            try:
                result = handler(update)
                if isinstance(result, Awaitable):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._handler_done)
            except Exception:
                logger.exception("Live update handler failed")
        return delivered

    def _handler_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Live update handler failed: %s", task.exception())

    def send_heartbeats(self) -> int:
        """Heartbeat every channel and drop subscribers that stopped reading."""
        now = time.monotonic()
        for channel, members in list(self._channels.items()):
            for subscriber in list(members.values()):
                if subscriber.pending() and now - subscriber.last_read > self.stale_after:
                    logger.info("Dropping stale subscriber %s on %s", subscriber.id, channel)
                    self.unsubscribe(subscriber)
            self.publish(LiveUpdate(type=UpdateType.HEARTBEAT, channel=channel))
        return self.subscriber_count()

    async def run_heartbeats(self, interval: float | None = None) -> None:
        interval = interval or settings.heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            self.send_heartbeats()

    def start(self, interval: float | None = None) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self.run_heartbeats(interval))

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        for channel in list(self._channels):
            self.close_channel(channel)


def notification_update(
    kind: NotificationType, *, run_id: str, title: str, body: str, data: dict[str, Any] | None = None
) -> LiveUpdate:
    return LiveUpdate(
        type=UpdateType.NOTIFICATION,
        channel=NOTIFICATIONS_CHANNEL,
        run_id=run_id,
        data={"kind": kind.value, "title": title, "body": body, **(data or {})},
    )
