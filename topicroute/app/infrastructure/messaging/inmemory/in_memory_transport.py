"""In-memory topic transport for tests and local mode.

Publishing delivers to every subscribed queue whose binding pattern matches the
routing key (AMQP topic rules: `*` is exactly one word, `#` is zero or more words).
Consumers sharing a queue name are served round-robin. Each delivery runs as its own
task; `join()` waits until every delivery published so far has been dispatched.
"""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Mapping

from loguru import logger

from topicroute.app.domain.message import Message
from topicroute.app.ports.transport import DeliveryCallback


def topic_matches(pattern: str, routing_key: str) -> bool:
    return _match_words(pattern.split("."), routing_key.split("."))


def _match_words(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match_words(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match_words(rest, words[1:])
    return False


class InMemoryDelivery:
    """Implements topicroute.app.ports.incoming_message.IncomingMessage; records the outcome."""

    def __init__(
        self,
        body: bytes,
        *,
        routing_key: str,
        content_type: str | None = None,
        headers: Mapping[str, Any] | None = None,
    ) -> None:
        self._body = body
        self._routing_key = routing_key
        self._content_type = content_type
        self._headers = dict(headers or {})
        self.acked = False
        self.nacked = False
        self.rejected = False
        self.requeue: bool | None = None

    @property
    def body(self) -> bytes:
        return self._body

    @property
    def content_type(self) -> str | None:
        return self._content_type

    @property
    def headers(self) -> Mapping[str, Any]:
        return self._headers

    @property
    def routing_key(self) -> str:
        return self._routing_key

    @property
    def processed(self) -> bool:
        return self.acked or self.nacked or self.rejected

    def _check_unprocessed(self) -> None:
        if self.processed:
            raise RuntimeError("message already processed")

    async def ack(self) -> None:
        self._check_unprocessed()
        self.acked = True

    async def nack(self, *, requeue: bool = True) -> None:
        self._check_unprocessed()
        self.nacked = True
        self.requeue = requeue

    async def reject(self, *, requeue: bool = False) -> None:
        self._check_unprocessed()
        self.rejected = True
        self.requeue = requeue


@dataclass
class _Binding:
    queue: str
    pattern: str
    consumers: dict[str, DeliveryCallback] = field(default_factory=dict)
    cursor: int = 0

    def next_consumer(self) -> DeliveryCallback | None:
        if not self.consumers:
            return None
        callbacks = list(self.consumers.values())
        callback = callbacks[self.cursor % len(callbacks)]
        self.cursor += 1
        return callback


class InMemoryTransport:
    def __init__(self) -> None:
        self._bindings: dict[str, _Binding] = {}
        self._tag_to_queue: dict[str, str] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._counter = itertools.count(1)
        self._ready = False
        self.deliveries: list[InMemoryDelivery] = []

    async def connect(self) -> None:
        self._ready = True

    @property
    def ready(self) -> bool:
        return self._ready

    async def subscribe(
        self,
        pattern: str,
        callback: DeliveryCallback,
        *,
        queue: str | None = None,
    ) -> str:
        if not self._ready:
            raise RuntimeError("transport not connected")
        n = next(self._counter)
        queue_name = queue or f"inmemory.gen-{n}"
        binding = self._bindings.get(queue_name)
        if binding is None:
            binding = self._bindings[queue_name] = _Binding(queue=queue_name, pattern=pattern)
        elif binding.pattern != pattern:
            raise ValueError(f"queue {queue_name!r} is already bound to {binding.pattern!r}")
        consumer_tag = f"inmemory.ctag-{n}"
        binding.consumers[consumer_tag] = callback
        self._tag_to_queue[consumer_tag] = queue_name
        return consumer_tag

    async def cancel(self, consumer_tag: str) -> None:
        queue_name = self._tag_to_queue.pop(consumer_tag, None)
        if queue_name is None:
            return
        binding = self._bindings[queue_name]
        binding.consumers.pop(consumer_tag, None)
        if not binding.consumers:
            del self._bindings[queue_name]

    async def publish(
        self,
        routing_key: str,
        payload: bytes,
        *,
        content_type: str | None = None,
        headers: Mapping[str, Any] | None = None,
    ) -> None:
        if not self._ready:
            raise RuntimeError("transport not connected")
        for binding in list(self._bindings.values()):
            if not topic_matches(binding.pattern, routing_key):
                continue
            callback = binding.next_consumer()
            if callback is None:
                continue
            delivery = InMemoryDelivery(
                payload,
                routing_key=routing_key,
                content_type=content_type,
                headers=headers,
            )
            self.deliveries.append(delivery)
            task = asyncio.create_task(self._deliver(callback, delivery))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, callback: DeliveryCallback, delivery: InMemoryDelivery) -> None:
        try:
            await callback(Message.from_delivery(delivery))
        except Exception as e:
            logger.exception("message dispatch failed: {}", e)
            if not delivery.processed:
                await delivery.reject(requeue=False)

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def close(self) -> None:
        await self.join()
        self._bindings.clear()
        self._tag_to_queue.clear()
        self._ready = False
