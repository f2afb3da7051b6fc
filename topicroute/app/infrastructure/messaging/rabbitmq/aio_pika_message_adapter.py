"""Adapter: wrap aio_pika.IncomingMessage to implement ports.IncomingMessage."""
from __future__ import annotations

from typing import Any, Mapping

from aio_pika import IncomingMessage as AioPikaIncomingMessage

from topicroute.app.domain.message import Message


class AioPikaMessageAdapter:
    """Implements topicroute.app.ports.incoming_message.IncomingMessage for aio_pika."""

    def __init__(self, message: AioPikaIncomingMessage) -> None:
        self._message = message

    @property
    def body(self) -> bytes:
        return self._message.body

    @property
    def content_type(self) -> str | None:
        return self._message.content_type

    @property
    def headers(self) -> Mapping[str, Any]:
        return self._message.headers or {}

    @property
    def routing_key(self) -> str:
        return self._message.routing_key or ""

    @property
    def processed(self) -> bool:
        return bool(self._message.processed)

    async def ack(self) -> None:
        await self._message.ack()

    async def nack(self, *, requeue: bool = True) -> None:
        await self._message.nack(requeue=requeue)

    async def reject(self, *, requeue: bool = False) -> None:
        await self._message.reject(requeue=requeue)

    def to_message(self) -> Message:
        return Message.from_delivery(
            self,
            content_encoding=self._message.content_encoding,
            message_id=self._message.message_id,
            correlation_id=self._message.correlation_id,
        )
