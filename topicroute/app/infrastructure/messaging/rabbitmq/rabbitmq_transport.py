"""
RabbitMQ transport: connection lifecycle, topic bindings, consume and publish.

Lifecycle:
  DISCONNECTED -> CONNECTING (backoff) -> CONNECTED -> CHANNEL_OPEN ->
  EXCHANGE_READY -> READY.
  On broker disconnect: READY -> RECONNECTING (backoff) -> CONNECTED -> ... -> READY
  (re-declares, re-binds and re-consumes every live subscription).
  On shutdown: READY/RECONNECTING -> CLOSING -> cancel consumers, close channel/connection -> CLOSED.

Subscriptions are identified by a tag owned by this transport, so the tag handed to
callers stays valid across reconnects even though the broker consumer tag changes.

Concurrency:
  - Connection close callback may run from another thread; we schedule _reconnect_loop
    on the event loop via call_soon_threadsafe(create_task(...)).
  - close(), subscribe(), cancel() and _reconnect_loop serialize on _lock.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Mapping

import aio_pika
from aio_pika import DeliveryMode
from loguru import logger

from topicroute.app.config.settings import Settings
from topicroute.app.core import SERVICE_NAME
from topicroute.app.core.backoff import exponential_backoff
from topicroute.app.infrastructure.messaging.rabbitmq.aio_pika_message_adapter import AioPikaMessageAdapter
from topicroute.app.infrastructure.messaging.rabbitmq.constants import TransportState
from topicroute.app.ports.transport import DeliveryCallback


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


@dataclass
class _Subscription:
    tag: str
    pattern: str
    queue_name: str | None
    callback: DeliveryCallback
    queue: Any = None
    broker_tag: str | None = None


class RabbitMQTransport:
    """MessageTransport implementation over a RabbitMQ topic exchange."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._state = TransportState.DISCONNECTED
        self._connection: aio_pika.RobustConnection | None = None
        self._channel: aio_pika.Channel | None = None
        self._exchange: aio_pika.Exchange | None = None
        self._lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closing = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._subscriptions: dict[str, _Subscription] = {}

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state == TransportState.READY

    def _set_state(self, state: TransportState) -> None:
        self._state = state

    def _build_amqp_url(self) -> str:
        vhost = self._settings.broker_vhost.lstrip("/")
        return (
            f"amqp://{self._settings.broker_user}:{self._settings.broker_password}"
            f"@{self._settings.broker_host}:{self._settings.broker_port}/{vhost}"
        )

    def _register_close_callback(self, connection: aio_pika.RobustConnection) -> None:
        conn = getattr(connection, "connection", connection)
        if callable(getattr(conn, "add_close_callback", None)):
            conn.add_close_callback(self._on_connection_closed)

    def _on_connection_closed(self, *args: Any, **kwargs: Any) -> None:
        if self._closing:
            return
        self._set_state(TransportState.RECONNECTING)
        _log("broker_disconnect_detected")
        if (self._reconnect_task is None or self._reconnect_task.done()) and self._loop:
            def schedule() -> None:
                self._reconnect_task = asyncio.create_task(self._reconnect_loop())
            self._loop.call_soon_threadsafe(schedule)

    async def _open_channel(self) -> None:
        if not self._connection:
            return
        self._set_state(TransportState.CHANNEL_OPEN)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self._settings.prefetch_count)
        self._exchange = await self._channel.get_exchange(self._settings.exchange_name)
        self._set_state(TransportState.EXCHANGE_READY)
        self._set_state(TransportState.READY)

    async def _close_channel_and_connection(self) -> None:
        self._exchange = None
        for subscription in self._subscriptions.values():
            subscription.queue = None
            subscription.broker_tag = None
        if self._channel:
            try:
                await self._channel.close()
            except Exception as e:
                logger.warning("channel close failed (continuing to close connection): {}", e)
            self._channel = None
        if self._connection:
            try:
                await self._connection.close()
            except Exception as e:
                logger.warning("connection close failed: {}", e)
            self._connection = None

    async def connect(self) -> None:
        self._closing = False
        self._set_state(TransportState.CONNECTING)
        _log("rmq_connecting")
        attempt = 0
        async for delay in exponential_backoff(
            self._settings.initial_backoff_seconds,
            self._settings.max_backoff_seconds,
            self._settings.backoff_multiplier,
            self._settings.max_connection_attempts,
        ):
            attempt += 1
            _log("rmq_connect_attempt", attempt=attempt, delay=delay)
            try:
                self._connection = await aio_pika.connect_robust(self._build_amqp_url())
                self._loop = asyncio.get_running_loop()
                self._register_close_callback(self._connection)
                break
            except Exception as e:
                logger.warning("rmq connect failed: {}", e)
                if attempt >= self._settings.max_connection_attempts:
                    _log("rmq_connect_failed", attempt=attempt)
                    self._set_state(TransportState.DISCONNECTED)
                    raise
        self._set_state(TransportState.CONNECTED)
        _log("rmq_connected")
        await self._open_channel()

    async def _consume(self, subscription: _Subscription) -> None:
        if self._channel is None or self._exchange is None:
            raise RuntimeError("transport not connected")
        if subscription.queue_name:
            queue = await self._channel.declare_queue(subscription.queue_name, durable=True)
        else:
            queue = await self._channel.declare_queue(exclusive=True, auto_delete=True)
        await queue.bind(self._exchange, routing_key=subscription.pattern)

        callback = subscription.callback

        async def on_message(raw_message: aio_pika.IncomingMessage) -> None:
            try:
                await callback(AioPikaMessageAdapter(raw_message).to_message())
            except Exception as e:
                logger.exception("message dispatch failed: {}", e)
                if not raw_message.processed:
                    await raw_message.reject(requeue=False)

        subscription.queue = queue
        subscription.broker_tag = await queue.consume(on_message, no_ack=False)

    async def subscribe(
        self,
        pattern: str,
        callback: DeliveryCallback,
        *,
        queue: str | None = None,
    ) -> str:
        if self._channel is None:
            raise RuntimeError("transport not connected")
        async with self._lock:
            subscription = _Subscription(
                tag=f"topicroute-{uuid.uuid4().hex}",
                pattern=pattern,
                queue_name=queue,
                callback=callback,
            )
            await self._consume(subscription)
            self._subscriptions[subscription.tag] = subscription
            _log("rmq_subscribed", pattern=pattern, queue=getattr(subscription.queue, "name", queue))
            return subscription.tag

    async def cancel(self, consumer_tag: str) -> None:
        async with self._lock:
            subscription = self._subscriptions.pop(consumer_tag, None)
            if subscription is None:
                return
            if subscription.queue is not None and subscription.broker_tag is not None:
                await subscription.queue.cancel(subscription.broker_tag)

    async def publish(
        self,
        routing_key: str,
        payload: bytes,
        *,
        content_type: str | None = None,
        headers: Mapping[str, Any] | None = None,
    ) -> None:
        if self._exchange is None or not self.ready:
            raise RuntimeError("transport not connected")
        message = aio_pika.Message(
            body=payload,
            content_type=content_type,
            headers=dict(headers) if headers else None,
            delivery_mode=DeliveryMode.PERSISTENT,
        )
        await self._exchange.publish(message, routing_key=routing_key)

    async def _reconnect_loop(self) -> None:
        self._set_state(TransportState.RECONNECTING)
        attempt = 0
        async for delay in exponential_backoff(
            self._settings.initial_backoff_seconds,
            self._settings.max_backoff_seconds,
            self._settings.backoff_multiplier,
            self._settings.max_connection_attempts,
        ):
            if self._closing:
                return
            attempt += 1
            _log("rmq_reconnect_attempt", attempt=attempt)
            try:
                self._connection = await aio_pika.connect_robust(self._build_amqp_url())
                if self._loop is None:
                    self._loop = asyncio.get_running_loop()
                self._register_close_callback(self._connection)
                self._set_state(TransportState.CONNECTED)
                await self._open_channel()
                async with self._lock:
                    if self._closing:
                        return
                    for subscription in self._subscriptions.values():
                        await self._consume(subscription)
                _log("rmq_reconnected", subscriptions=len(self._subscriptions))
                return
            except Exception as e:
                logger.warning("reconnect failed: {}", e)
        _log("rmq_reconnect_exhausted", max_attempts=self._settings.max_connection_attempts)
        self._set_state(TransportState.DISCONNECTED)

    async def close(self) -> None:
        self._closing = True
        self._set_state(TransportState.CLOSING)
        _log("transport_shutdown")
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        async with self._lock:
            for subscription in self._subscriptions.values():
                if subscription.queue is not None and subscription.broker_tag is not None:
                    try:
                        await subscription.queue.cancel(subscription.broker_tag)
                    except Exception as e:
                        logger.warning("consumer cancel failed: {}", e)
            await self._close_channel_and_connection()
            self._subscriptions.clear()
        self._set_state(TransportState.CLOSED)
