"""Broadcast channel shared by workers and live connection servers.

One topic carries every event; consumers filter by ``conversation_id``.
Delivery is at-most-once with no replay: a subscriber sees only events
published after it subscribed.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator

from pydantic import ValidationError
from redis.asyncio import Redis

from chatstream.core.logging import get_logger
from chatstream.models.events import BroadcastEvent, encode_event, parse_event

logger = get_logger(__name__)


def _decode(raw: str | bytes) -> BroadcastEvent | None:
    try:
        return parse_event(raw)
    except ValidationError as e:
        logger.warning("Dropping malformed broadcast event", error=str(e))
        return None


class Subscription(ABC):
    """Live feed of events; iterate it, then close it."""

    def __aiter__(self) -> AsyncIterator[BroadcastEvent]:
        return self.events()

    @abstractmethod
    def events(self) -> AsyncIterator[BroadcastEvent]:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class BroadcastChannel(ABC):
    @abstractmethod
    async def publish(self, event: BroadcastEvent) -> None:
        """Send an event to every current subscriber; no listeners is fine."""

    @abstractmethod
    async def subscribe(self) -> Subscription:
        """Start receiving events published from now on."""

    async def close(self) -> None:
        pass


class RedisSubscription(Subscription):
    def __init__(self, pubsub):
        self.pubsub = pubsub

    async def events(self) -> AsyncIterator[BroadcastEvent]:
        async for message in self.pubsub.listen():
            if message.get("type") != "message":
                continue
            event = _decode(message["data"])
            if event is not None:
                yield event

    async def close(self) -> None:
        await self.pubsub.unsubscribe()
        await self.pubsub.aclose()


class RedisBroadcastChannel(BroadcastChannel):
    """Redis pub/sub on a single channel name."""

    def __init__(self, redis: Redis, channel: str = "chat:messages"):
        self.redis = redis
        self.channel = channel

    async def publish(self, event: BroadcastEvent) -> None:
        receivers = await self.redis.publish(self.channel, encode_event(event))
        logger.debug(
            f"Published {event.type} event",
            conversation_id=event.conversation_id,
            receivers=receivers,
        )

    async def subscribe(self) -> RedisSubscription:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)
        logger.info(f"Subscribed to broadcast channel {self.channel}")
        return RedisSubscription(pubsub)


class InMemorySubscription(Subscription):
    def __init__(self, channel: "InMemoryBroadcastChannel"):
        self.channel = channel
        self.inbox: asyncio.Queue[str | None] = asyncio.Queue()

    async def events(self) -> AsyncIterator[BroadcastEvent]:
        while True:
            raw = await self.inbox.get()
            if raw is None:
                return
            event = _decode(raw)
            if event is not None:
                yield event

    async def close(self) -> None:
        self.channel.subscribers.discard(self)
        self.inbox.put_nowait(None)


class InMemoryBroadcastChannel(BroadcastChannel):
    """Single-process channel; events are encoded so subscribers see wire data."""

    def __init__(self):
        self.subscribers: set[InMemorySubscription] = set()
        self.published: list[BroadcastEvent] = []

    async def publish(self, event: BroadcastEvent) -> None:
        self.published.append(event)
        raw = encode_event(event)
        for subscription in list(self.subscribers):
            subscription.inbox.put_nowait(raw)

    async def subscribe(self) -> InMemorySubscription:
        subscription = InMemorySubscription(self)
        self.subscribers.add(subscription)
        return subscription

    async def close(self) -> None:
        for subscription in list(self.subscribers):
            await subscription.close()
