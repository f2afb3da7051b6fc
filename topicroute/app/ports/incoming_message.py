"""Port: abstraction for a broker delivery. Implementations live in infrastructure."""
from __future__ import annotations

from typing import Any, Mapping, Protocol


class IncomingMessage(Protocol):
    """Transport-agnostic delivery handle. Message wraps it; broker adapters implement it."""

    @property
    def body(self) -> bytes: ...

    @property
    def content_type(self) -> str | None: ...

    @property
    def headers(self) -> Mapping[str, Any]: ...

    @property
    def routing_key(self) -> str: ...

    @property
    def processed(self) -> bool: ...

    async def ack(self) -> None: ...

    async def nack(self, *, requeue: bool = True) -> None: ...

    async def reject(self, *, requeue: bool = False) -> None: ...
