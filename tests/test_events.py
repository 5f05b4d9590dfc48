import asyncio
import json

import fakeredis
import pytest

from beads_console.events import (
    GLOBAL_CHANNEL,
    LiveUpdate,
    LiveUpdateHub,
    NotificationType,
    Subscriber,
    SubscriberClosed,
    UpdateType,
    notification_update,
    run_channel,
)
from beads_console.redis_client import RedisMirror, redis_channel


def _update(channel: str, update_type: UpdateType = UpdateType.EVENT, **data) -> LiveUpdate:
    return LiveUpdate(type=update_type, channel=channel, data=data)


@pytest.mark.asyncio
async def test_snapshot_is_delivered_first() -> None:
    hub = LiveUpdateHub()
    subscriber = hub.subscribe(GLOBAL_CHANNEL, snapshot=_update(GLOBAL_CHANNEL, UpdateType.FULL_SYNC, tasks=[]))
    hub.publish(_update(GLOBAL_CHANNEL, UpdateType.TASK_ADDED))

    first = json.loads(await subscriber.get())
    second = json.loads(await subscriber.get())
    assert [first["type"], second["type"]] == ["full_sync", "task_added"]


@pytest.mark.asyncio
async def test_publish_only_reaches_the_channel() -> None:
    hub = LiveUpdateHub()
    mine = hub.subscribe(run_channel("r1"))
    other = hub.subscribe(run_channel("r2"))

    assert hub.publish(_update(run_channel("r1"), text="hello")) == 1
    assert mine.pending() == 1
    assert other.pending() == 0


@pytest.mark.asyncio
async def test_messages_keep_publish_order() -> None:
    hub = LiveUpdateHub()
    subscriber = hub.subscribe("run:r1")
    for index in range(5):
        hub.publish(_update("run:r1", index=index))
    hub.close_channel("run:r1")

    received = [message["data"]["index"] async for message in subscriber.messages()]
    assert received == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_full_subscriber_is_dropped_without_affecting_others() -> None:
    hub = LiveUpdateHub()
    slow = Subscriber("run:r1", maxsize=1)
    hub._channels.setdefault("run:r1", {})[slow.id] = slow
    healthy = hub.subscribe("run:r1")

    hub.publish(_update("run:r1", n=1))
    hub.publish(_update("run:r1", n=2))

    assert slow.closed
    assert hub.subscriber_count("run:r1") == 1
    assert healthy.pending() == 2


@pytest.mark.asyncio
async def test_closed_subscriber_raises() -> None:
    hub = LiveUpdateHub()
    subscriber = hub.subscribe("runs")
    hub.unsubscribe(subscriber)

    with pytest.raises(SubscriberClosed):
        await subscriber.get()
    assert hub.subscriber_count() == 0


@pytest.mark.asyncio
async def test_heartbeat_drops_stale_subscribers() -> None:
    hub = LiveUpdateHub(stale_after=0)
    stale = hub.subscribe("runs")
    hub.publish(_update("runs"))
    reading = hub.subscribe("runs")

    await asyncio.sleep(0.01)
    assert hub.send_heartbeats() == 1
    assert stale.closed
    assert json.loads(await reading.get())["type"] == "heartbeat"


@pytest.mark.asyncio
async def test_failing_handler_does_not_break_delivery() -> None:
    hub = LiveUpdateHub()
    seen: list[str] = []

    def broken(update: LiveUpdate) -> None:
        raise RuntimeError("boom")

    hub.on_update(broken)
    hub.on_update(lambda update: seen.append(update.type.value))
    subscriber = hub.subscribe("runs")

    assert hub.publish(_update("runs", UpdateType.TASK_UPDATED)) == 1
    assert seen == ["task_updated"]
    assert subscriber.pending() == 1


def test_notification_update_shape() -> None:
    update = notification_update(
        NotificationType.AWAITING_INPUT, run_id="r1", title="Input needed: Add retries", body="Which API?"
    )
    payload = update.to_dict()
    assert payload["channel"] == "notifications"
    assert payload["data"] == {"kind": "awaiting_input", "title": "Input needed: Add retries", "body": "Which API?"}


@pytest.mark.asyncio
async def test_redis_mirror_publishes_updates() -> None:
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    pubsub = client.pubsub()
    await pubsub.subscribe(redis_channel("run:r1"))
    await pubsub.get_message(timeout=1)  # subscribe confirmation

    hub = LiveUpdateHub()
    hub.on_update(RedisMirror(client))
    hub.publish(_update("run:r1", text="mirrored"))
    await hub.stop()

    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1)
    assert json.loads(message["data"])["data"] == {"text": "mirrored"}
    await pubsub.aclose()
    await client.aclose()


@pytest.mark.asyncio
async def test_redis_mirror_swallows_publish_errors(caplog: pytest.LogCaptureFixture) -> None:
    class DownRedis:
        async def publish(self, channel: str, message: str) -> int:
            raise ConnectionError("redis down")

    await RedisMirror(DownRedis())(_update("runs"))
    assert "Redis publish failed" in caplog.text


def test_redis_channel_names() -> None:
    assert redis_channel("runs") == "channel:runs"
    assert redis_channel("run:r1") == "channel:run:r1"
