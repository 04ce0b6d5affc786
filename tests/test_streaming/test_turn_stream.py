import asyncio

import pytest

from recall_chat.streaming import (
    EVENT_COMPLETE,
    EVENT_ERROR,
    EVENT_TEXT,
    EVENT_TOOL_START,
    ChannelHub,
    CitedMemory,
    TurnStream,
    turn_channel,
    user_channel,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _events(subscription):
    return [subscription.queue.get_nowait() for _ in range(subscription.queue.qsize())]


@pytest.mark.asyncio
async def test_text_deltas_are_coalesced_per_interval():
    hub = ChannelHub()
    clock = FakeClock()
    stream = TurnStream(hub, "m1", min_interval_ms=100, clock=clock)

    with hub.subscribe(turn_channel("m1")) as subscription:
        await stream.publish_text_delta("He")  # first delta goes out at once
        clock.now = 0.05
        await stream.publish_text_delta("ll")
        clock.now = 0.08
        await stream.publish_text_delta("o")
        clock.now = 0.12
        await stream.publish_text_delta(" wor")
        clock.now = 0.15
        await stream.publish_text_delta("ld")
        await stream.publish_complete("Hello world", [])
        events = _events(subscription)

    assert [(e.name, e.data.get("text")) for e in events] == [
        (EVENT_TEXT, "He"),
        (EVENT_TEXT, "llo wor"),
        (EVENT_TEXT, "ld"),
        (EVENT_COMPLETE, None),
    ]
    assert all(e.data["messageId"] == "m1" for e in events)
    assert events[-1].data["finalResponse"] == "Hello world"


@pytest.mark.asyncio
async def test_pending_text_is_flushed_before_tool_and_error_events():
    hub = ChannelHub()
    clock = FakeClock()
    stream = TurnStream(hub, "m1", min_interval_ms=1000, clock=clock)

    with hub.subscribe(turn_channel("m1")) as subscription:
        await stream.publish_text_delta("a")
        await stream.publish_text_delta("b")
        await stream.publish_tool_started("echo")
        await stream.publish_text_delta("c")
        await stream.publish_error("boom")
        events = _events(subscription)

    assert [(e.name, e.data.get("text")) for e in events] == [
        (EVENT_TEXT, "a"),
        (EVENT_TEXT, "b"),
        (EVENT_TOOL_START, None),
        (EVENT_TEXT, "c"),
        (EVENT_ERROR, None),
    ]
    assert events[-1].data["error"] == "boom"


@pytest.mark.asyncio
async def test_completion_carries_cited_memories():
    hub = ChannelHub()
    stream = TurnStream(hub, "m1")

    with hub.subscribe(turn_channel("m1")) as subscription:
        await stream.publish_complete("Done", [CitedMemory(id="x", content="likes tea", deleted=True)])
        [event] = _events(subscription)

    assert event.data["memoriesUsed"] == [{"id": "x", "content": "likes tea", "deleted": True}]
    assert event.to_dict()["channel"] == "chat:m1"


@pytest.mark.asyncio
async def test_events_fan_out_only_to_their_channel():
    hub = ChannelHub()
    first = hub.subscribe(user_channel("u1"))
    second = hub.subscribe(user_channel("u1"))
    other = hub.subscribe(user_channel("u2"))

    delivered = await hub.publish(user_channel("u1"), "memory:update", {"userId": "u1"})

    assert delivered == 2
    assert first.queue.qsize() == 1
    assert second.queue.qsize() == 1
    assert other.queue.qsize() == 0
    assert await hub.publish("chat:nobody", EVENT_TEXT, {"text": "lost"}) == 0


@pytest.mark.asyncio
async def test_closed_subscription_stops_receiving():
    hub = ChannelHub()
    with hub.subscribe("chat:m1") as subscription:
        assert hub.subscriber_count("chat:m1") == 1

    assert hub.subscriber_count("chat:m1") == 0
    await hub.publish("chat:m1", EVENT_TEXT, {"text": "late"})
    assert subscription.queue.empty()


@pytest.mark.asyncio
async def test_full_subscriber_drops_the_oldest_event():
    hub = ChannelHub(subscriber_queue_size=2)
    subscription = hub.subscribe("chat:m1")

    for index in range(3):
        await hub.publish("chat:m1", EVENT_TEXT, {"text": str(index)})

    assert subscription.dropped == 1
    assert [e.data["text"] for e in _events(subscription)] == ["1", "2"]


@pytest.mark.asyncio
async def test_subscription_waits_for_events():
    hub = ChannelHub()
    subscription = hub.subscribe("chat:m1")

    with pytest.raises(asyncio.TimeoutError):
        await subscription.get(timeout=0.01)

    await hub.publish("chat:m1", EVENT_TEXT, {"text": "hi"})
    event = await subscription.get(timeout=1)
    assert event.data == {"text": "hi"}
