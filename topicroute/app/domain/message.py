"""Message passed through the stage chain to route handlers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from topicroute.app.ports.incoming_message import IncomingMessage

_ABSENT: Any = object()


@dataclass(frozen=True)
class MessageProperties:
    """Broker properties the pipeline cares about (value object)."""

    content_type: str | None = None
    content_encoding: str | None = None
    headers: dict[str, Any] = field(default_factory=dict)
    message_id: str | None = None
    correlation_id: str | None = None


class Message:
    """Inbound message: raw payload, properties and, once decoded, a structured body.

    `body` is absent until a decode stage attaches one with `with_body()`; reading it
    before that raises AttributeError, so `hasattr(msg, "body")` tells decoded and
    undecoded messages apart even when the decoded value is falsy.
    """

    __slots__ = ("_payload", "_properties", "_routing_key", "_delivery", "_body")

    def __init__(
        self,
        payload: bytes,
        properties: MessageProperties | None = None,
        *,
        routing_key: str = "",
        delivery: IncomingMessage | None = None,
        body: Any = _ABSENT,
    ) -> None:
        self._payload = bytes(payload)
        self._properties = properties or MessageProperties()
        self._routing_key = routing_key
        self._delivery = delivery
        self._body = body

    @classmethod
    def from_delivery(cls, delivery: IncomingMessage, **properties: Any) -> Message:
        return cls(
            delivery.body,
            MessageProperties(
                content_type=delivery.content_type,
                headers=dict(delivery.headers or {}),
                **properties,
            ),
            routing_key=delivery.routing_key,
            delivery=delivery,
        )

    @property
    def payload(self) -> bytes:
        return self._payload

    @property
    def properties(self) -> MessageProperties:
        return self._properties

    @property
    def routing_key(self) -> str:
        return self._routing_key

    @property
    def delivery(self) -> IncomingMessage | None:
        return self._delivery

    @property
    def body(self) -> Any:
        if self._body is _ABSENT:
            raise AttributeError("message has no decoded body")
        return self._body

    @property
    def has_body(self) -> bool:
        return self._body is not _ABSENT

    def with_body(self, value: Any) -> Message:
        """Return a copy carrying `value` as body; payload, properties and delivery are shared."""
        return Message(
            self._payload,
            self._properties,
            routing_key=self._routing_key,
            delivery=self._delivery,
            body=value,
        )

    @property
    def processed(self) -> bool:
        return self._delivery is not None and self._delivery.processed

    async def ack(self) -> None:
        await self._require_delivery().ack()

    async def nack(self, *, requeue: bool = True) -> None:
        await self._require_delivery().nack(requeue=requeue)

    async def reject(self, *, requeue: bool = False) -> None:
        await self._require_delivery().reject(requeue=requeue)

    def _require_delivery(self) -> IncomingMessage:
        if self._delivery is None:
            raise RuntimeError("message is not bound to a broker delivery")
        return self._delivery

    def __repr__(self) -> str:
        return (
            f"<Message routing_key={self._routing_key!r} "
            f"content_type={self._properties.content_type!r} "
            f"size={len(self._payload)} decoded={self.has_body}>"
        )
