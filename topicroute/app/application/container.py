"""
Container: stage registry, route declaration and per-message dispatch.

Dispatch of one message on a route:
  stage 1 -> stage 2 -> ... -> handler
  Stages run strictly in order; each receives the message the previous one resolved
  with. The first stage that raises ends the chain: the route's error_handler gets
  (error, message) and the handler is not called. Without an error_handler the
  message is logged and rejected without requeue.

Global stages registered with use() are snapshotted when a route is declared, so a
stage registered later only applies to routes declared after it. Route-scoped stages
run after the global ones.
"""
from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Mapping

from loguru import logger

from topicroute.app.constants import CONTENT_TYPE_JSON
from topicroute.app.core import SERVICE_NAME
from topicroute.app.domain.message import Message
from topicroute.app.ports.stage import Stage
from topicroute.app.ports.transport import MessageTransport

Handler = Callable[[Message], Any]
ErrorHandler = Callable[[Exception, Message], Any]


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class StageError(Exception):
    """Raised when a stage resolves with something other than a Message."""


@dataclass(frozen=True)
class RouteOptions:
    queue: str | None = None
    error_handler: ErrorHandler | None = None
    stages: tuple[Stage, ...] = ()


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


def _stage_name(stage: Stage) -> str:
    return getattr(stage, "__qualname__", None) or type(stage).__name__


def _dedupe(stages: Iterable[Stage]) -> tuple[Stage, ...]:
    seen: list[Stage] = []
    for stage in stages:
        if not any(stage is known for known in seen):
            seen.append(stage)
    return tuple(seen)


class Route:
    """Handle for a declared route; runs the stage chain and the handler for each message."""

    def __init__(
        self,
        pattern: str,
        handler: Handler,
        *,
        stages: Iterable[Stage] = (),
        options: RouteOptions | None = None,
    ) -> None:
        self.pattern = pattern
        self.handler = handler
        self.options = options or RouteOptions()
        self.stages = _dedupe(stages)
        self.consumer_tag: str | None = None
        self._transport: MessageTransport | None = None

    @property
    def queue(self) -> str | None:
        return self.options.queue

    async def run_stage(self, stage: Stage, message: Message) -> Message:
        result = await stage(message)
        if not isinstance(result, Message):
            raise StageError(
                f"stage {_stage_name(stage)} resolved with {type(result).__name__}, expected Message"
            )
        return result

    async def run_stages(self, message: Message) -> Message:
        for stage in self.stages:
            message = await self.run_stage(stage, message)
        return message

    async def dispatch(self, message: Message) -> None:
        """Run the stages, then the handler.

        On a stage failure the error handler gets the message the last successful
        stage resolved with (the inbound message if the first stage failed).
        """
        for stage in self.stages:
            try:
                message = await self.run_stage(stage, message)
            except Exception as exc:
                await self._on_stage_error(exc, message)
                return

        try:
            await _maybe_await(self.handler(message))
        except Exception as exc:
            logger.exception("route handler failed on {}: {}", self.pattern, exc)
            _log("handler_failed", pattern=self.pattern, routing_key=message.routing_key)
            await self._reject_unprocessed(message)

    async def _on_stage_error(self, exc: Exception, message: Message) -> None:
        _log(
            "stage_rejected",
            pattern=self.pattern,
            routing_key=message.routing_key,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        error_handler = self.options.error_handler
        if error_handler is None:
            logger.warning("no error handler on route {}, dropping message: {}", self.pattern, exc)
            _log("message_dropped", pattern=self.pattern, routing_key=message.routing_key)
            await self._reject_unprocessed(message)
            return
        try:
            await _maybe_await(error_handler(exc, message))
        except Exception as handler_exc:
            logger.exception("error handler failed on {}: {}", self.pattern, handler_exc)
        await self._reject_unprocessed(message)

    async def _reject_unprocessed(self, message: Message) -> None:
        if message.delivery is None or message.processed:
            return
        try:
            await message.reject(requeue=False)
        except Exception as exc:
            logger.warning("reject failed on {}: {}", self.pattern, exc)

    async def open(self, transport: MessageTransport) -> Route:
        self._transport = transport
        self.consumer_tag = await transport.subscribe(self.pattern, self.dispatch, queue=self.queue)
        return self

    async def cancel(self) -> None:
        if self._transport is not None and self.consumer_tag is not None:
            await self._transport.cancel(self.consumer_tag)
            self.consumer_tag = None

    def __repr__(self) -> str:
        return f"<Route {self.pattern!r} queue={self.queue!r} stages={len(self.stages)}>"


class Container:
    """Owns the transport, the global stage chain and the declared routes."""

    def __init__(self, transport: MessageTransport) -> None:
        self._transport = transport
        self._stages: list[Stage] = []
        self._routes: list[Route] = []
        self._started = False

    @property
    def transport(self) -> MessageTransport:
        return self._transport

    @property
    def stages(self) -> tuple[Stage, ...]:
        return tuple(self._stages)

    @property
    def routes(self) -> tuple[Route, ...]:
        return tuple(self._routes)

    async def init(self) -> None:
        if self._started:
            return
        await self._transport.connect()
        self._started = True
        _log("container_started")

    async def shutdown(self) -> None:
        for route in self._routes:
            try:
                await route.cancel()
            except Exception as exc:
                logger.warning("route cancel failed on {}: {}", route.pattern, exc)
        self._routes.clear()
        try:
            await self._transport.close()
        finally:
            self._started = False
            _log("container_stopped")

    async def __aenter__(self) -> Container:
        await self.init()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    def use(self, stage: Stage) -> Container:
        """Register a stage applied to every route declared afterwards."""
        if not callable(stage):
            raise TypeError(f"stage must be callable, got {type(stage).__name__}")
        if any(stage is known for known in self._stages):
            _log("stage_already_registered", stage=_stage_name(stage))
            return self
        self._stages.append(stage)
        _log("stage_registered", stage=_stage_name(stage), position=len(self._stages))
        return self

    async def route(
        self,
        pattern: str,
        handler: Handler,
        options: RouteOptions | None = None,
        *,
        queue: str | None = None,
        error_handler: ErrorHandler | None = None,
        stages: Iterable[Stage] = (),
    ) -> Route:
        """Declare a route and start consuming; returns once the transport is subscribed.

        Keyword options are merged over `options`; keyword stages run after its stages.
        """
        overrides: dict[str, Any] = {}
        if queue is not None:
            overrides["queue"] = queue
        if error_handler is not None:
            overrides["error_handler"] = error_handler
        options = options or RouteOptions()
        extra_stages = tuple(stages)
        if extra_stages:
            overrides["stages"] = (*options.stages, *extra_stages)
        options = replace(options, **overrides)
        if not self._started:
            await self.init()
        route = Route(
            pattern,
            handler,
            stages=[*self._stages, *options.stages],
            options=options,
        )
        await route.open(self._transport)
        self._routes.append(route)
        _log(
            "route_declared",
            pattern=pattern,
            queue=options.queue,
            stages=len(route.stages),
            consumer_tag=route.consumer_tag,
        )
        return route

    async def publish(
        self,
        routing_key: str,
        payload: bytes | str | Mapping[str, Any] | list[Any],
        *,
        content_type: str | None = None,
        headers: Mapping[str, Any] | None = None,
    ) -> None:
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload).encode()
            content_type = content_type or CONTENT_TYPE_JSON
        elif isinstance(payload, str):
            payload = payload.encode()
        await self._transport.publish(
            routing_key,
            bytes(payload),
            content_type=content_type,
            headers=headers,
        )
