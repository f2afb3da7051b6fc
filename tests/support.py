"""Test doubles shared by unit and integration tests."""
from __future__ import annotations

from typing import Any

from topicroute.app.domain.message import Message, MessageProperties
from topicroute.app.infrastructure.messaging.inmemory.in_memory_transport import InMemoryDelivery


def make_message(
    payload: bytes,
    content_type: str | None = "application/json",
    *,
    routing_key: str = "test.key",
    bound: bool = False,
) -> Message:
    """Build a Message; bound=True attaches an InMemoryDelivery so ack/reject work."""
    if bound:
        delivery = InMemoryDelivery(payload, routing_key=routing_key, content_type=content_type)
        return Message.from_delivery(delivery)
    return Message(payload, MessageProperties(content_type=content_type), routing_key=routing_key)


class RecordingStage:
    """Stage that records the messages it sees and the shared call order."""

    def __init__(self, name: str, calls: list[str], *, raise_on_call: Exception | None = None) -> None:
        self.name = name
        self.calls = calls
        self.seen: list[Message] = []
        self._raise_on_call = raise_on_call

    async def __call__(self, message: Message) -> Message:
        self.calls.append(self.name)
        self.seen.append(message)
        if self._raise_on_call is not None:
            raise self._raise_on_call
        return message


class Recorder:
    """Collects handler / error handler invocations."""

    def __init__(self) -> None:
        self.messages: list[Message] = []
        self.errors: list[tuple[Exception, Message]] = []

    async def handler(self, message: Message) -> None:
        self.messages.append(message)
        await message.ack()

    def error_handler(self, error: Exception, message: Message) -> Any:
        self.errors.append((error, message))
