"""In-process stand-ins for the Kafka producer/consumer pair.

Messages are delivered synchronously to subscribers of the same process.
Each message carries a partition key so consumers can keep per-tenant
ordering the way a keyed Kafka topic would.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Sequence

_LOGGER = logging.getLogger(__name__)

Handler = Callable[[str | None, dict[str, Any]], Awaitable[None]]


class _TopicBroker:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._offsets: dict[str, int] = defaultdict(int)

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._subscribers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                self._subscribers.pop(topic, None)

    def offset(self, topic: str) -> int:
        return self._offsets[topic]

    async def publish(self, topic: str, key: str | None, message: dict[str, Any]) -> int:
        self._offsets[topic] += 1
        # Copy: handlers may unsubscribe while being called.
        for handler in list(self._subscribers.get(topic, [])):
            await handler(key, message)
        return self._offsets[topic]


_BROKER = _TopicBroker()


def topic_offset(topic: str) -> int:
    """Number of messages published on ``topic`` in this process."""

    return _BROKER.offset(topic)


class KafkaProducerStub:
    """Producer with the connect/send/close surface of an async Kafka client."""

    def __init__(self, *, bootstrap_servers: str | None = None, client_id: str = "medtracker") -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self.bootstrap_servers:
            _LOGGER.info("Event stream producer %s using in-process broker", self.client_id)
        self._connected = True

    async def send(self, topic: str, value: dict[str, Any], *, key: str | None = None) -> int:
        if not self._connected:
            raise RuntimeError("Producer not connected")
        return await _BROKER.publish(topic, key, value)

    async def close(self) -> None:
        self._connected = False


class KafkaConsumerStub:
    """Consumer delivering every message of its topics to one handler."""

    def __init__(
        self,
        topics: Sequence[str],
        handler: Callable[[str, str | None, dict[str, Any]], Awaitable[None]],
    ) -> None:
        self._topics = list(topics)
        self._handler = handler
        self._registrations: list[tuple[str, Handler]] = []

    @property
    def started(self) -> bool:
        return bool(self._registrations)

    async def start(self) -> None:
        if self.started:
            return
        for topic in self._topics:
            async def _callback(key: str | None, message: dict[str, Any], current_topic: str = topic) -> None:
                await self._handler(current_topic, key, message)

            _BROKER.subscribe(topic, _callback)
            self._registrations.append((topic, _callback))

    async def stop(self) -> None:
        for topic, callback in self._registrations:
            _BROKER.unsubscribe(topic, callback)
        self._registrations.clear()
