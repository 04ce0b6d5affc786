"""In-process pub/sub for live turn output and per-user notifications.

Channels:
  ``chat:<correlation_id>``  one assistant turn (text deltas, tool events, completion)
  ``user:<user_id>``         user-wide notices (memory set changed, conversation renamed)
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable

from recall_chat.logging import get_logger
from recall_chat.store import utcnow

log = get_logger(__name__)

EVENT_TEXT = "stream:text"
EVENT_COMPLETE = "stream:complete"
EVENT_ERROR = "stream:error"
EVENT_TOOL_START = "tool:start"
EVENT_TOOL_COMPLETE = "tool:complete"
EVENT_MEMORY_UPDATE = "memory:update"
EVENT_THREAD_UPDATE = "thread:update"


def turn_channel(correlation_id: str) -> str:
    return f"chat:{correlation_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


@dataclass
class ChannelEvent:
    """One published event."""

    channel: str
    name: str
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "name": self.name,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class CitedMemory:
    """A memory the assistant cited, as shown to the client."""

    id: str
    content: str
    deleted: bool = False


class Subscription:
    """Bounded event queue for one subscriber of one channel."""

    def __init__(self, hub: "ChannelHub", channel: str, maxsize: int):
        self.hub = hub
        self.channel = channel
        self.queue: asyncio.Queue[ChannelEvent] = asyncio.Queue(maxsize=max(1, maxsize))
        self.dropped = 0

    def offer(self, event: ChannelEvent) -> None:
        """Enqueue without blocking; the oldest event is dropped when full."""
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            log.warning("Subscriber queue full, dropping oldest event", channel=self.channel)
        self.queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> ChannelEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChannelEvent:
        return await self.queue.get()

    def close(self) -> None:
        self.hub.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class ChannelHub:
    """Fan-out of events to every subscriber of a channel."""

    def __init__(self, subscriber_queue_size: int = 1000):
        self.subscriber_queue_size = subscriber_queue_size
        self._subscribers: dict[str, set[Subscription]] = {}

    def subscribe(self, channel: str) -> Subscription:
        subscription = Subscription(self, channel, self.subscriber_queue_size)
        self._subscribers.setdefault(channel, set()).add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.channel)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            self._subscribers.pop(subscription.channel, None)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def publish(self, channel: str, name: str, data: dict[str, Any]) -> int:
        """Deliver an event to current subscribers. Returns the delivery count."""
        event = ChannelEvent(channel=channel, name=name, data=data)
        subscribers = list(self._subscribers.get(channel, ()))
        for subscription in subscribers:
            subscription.offer(event)
        return len(subscribers)

    async def publish_memories_changed(self, user_id: str) -> None:
        await self.publish(user_channel(user_id), EVENT_MEMORY_UPDATE, {"userId": user_id})

    async def publish_conversation_updated(self, user_id: str, conversation_id: str, title: str) -> None:
        await self.publish(
            user_channel(user_id),
            EVENT_THREAD_UPDATE,
            {"threadId": conversation_id, "title": title},
        )


class TurnStream:
    """Publisher for one assistant turn.

    Text deltas are coalesced so that at most one ``stream:text`` event goes
    out per ``min_interval_ms``; any pending text is flushed before every
    other event, so the concatenated deltas always equal the streamed text.
    """

    def __init__(
        self,
        hub: ChannelHub,
        correlation_id: str,
        min_interval_ms: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.hub = hub
        self.correlation_id = correlation_id
        self.channel = turn_channel(correlation_id)
        self.min_interval = max(0, min_interval_ms) / 1000.0
        self._clock = clock
        self._pending = ""
        self._last_flush: float | None = None

    async def _publish(self, name: str, data: dict[str, Any]) -> None:
        await self.hub.publish(self.channel, name, {"messageId": self.correlation_id, **data})

    async def publish_text_delta(self, text: str) -> None:
        if not text:
            return
        self._pending += text
        now = self._clock()
        if self._last_flush is None or now - self._last_flush >= self.min_interval:
            await self.flush()

    async def flush(self) -> None:
        if not self._pending:
            return
        text, self._pending = self._pending, ""
        self._last_flush = self._clock()
        await self._publish(EVENT_TEXT, {"text": text})

    async def publish_tool_started(self, capability: str) -> None:
        await self.flush()
        await self._publish(EVENT_TOOL_START, {"toolName": capability})

    async def publish_tool_completed(self, capability: str) -> None:
        await self.flush()
        await self._publish(EVENT_TOOL_COMPLETE, {"toolName": capability})

    async def publish_complete(self, text: str, cited_memories: list[CitedMemory]) -> None:
        await self.flush()
        await self._publish(
            EVENT_COMPLETE,
            {
                "finalResponse": text,
                "memoriesUsed": [asdict(memory) for memory in cited_memories],
            },
        )

    async def publish_error(self, message: str) -> None:
        await self.flush()
        await self._publish(EVENT_ERROR, {"error": message})


# Global hub
_hub: ChannelHub | None = None


def get_hub() -> ChannelHub:
    """Get the global channel hub."""
    global _hub
    if _hub is None:
        from recall_chat.config import get_config
        _hub = ChannelHub(subscriber_queue_size=get_config().streaming.subscriber_queue_size)
    return _hub


def set_hub(hub: ChannelHub) -> None:
    """Set the global channel hub."""
    global _hub
    _hub = hub
