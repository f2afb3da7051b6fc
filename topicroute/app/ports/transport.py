"""Port: topic transport (consume and publish). Implementations live in infrastructure."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Protocol

from topicroute.app.domain.message import Message

DeliveryCallback = Callable[[Message], Awaitable[None]]


class MessageTransport(Protocol):
    async def connect(self) -> None: ...

    @property
    def ready(self) -> bool: ...

    async def subscribe(
        self,
        pattern: str,
        callback: DeliveryCallback,
        *,
        queue: str | None = None,
    ) -> str:
        """Bind a queue to pattern and consume it; callback gets one Message per delivery.

        Returns the consumer tag used for cancellation.
        """
        ...

    async def cancel(self, consumer_tag: str) -> None: ...

    async def publish(
        self,
        routing_key: str,
        payload: bytes,
        *,
        content_type: str | None = None,
        headers: Mapping[str, Any] | None = None,
    ) -> None: ...

    async def close(self) -> None: ...
