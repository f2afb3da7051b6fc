"""Unit tests for Container dispatch: stage order, short-circuit, error handler routing."""
from __future__ import annotations

import json

import pytest

from tests.support import Recorder, RecordingStage, make_message
from topicroute.app.application.container import Container, Route, RouteOptions, StageError
from topicroute.app.domain.message import Message
from topicroute.app.middleware.json import DecodeError, create_json_decoder


@pytest.mark.asyncio
async def test_route_handler_receives_decoded_body(container, transport, recorder):
    container.use(create_json_decoder())
    await container.route("$jsontest.*.events", recorder.handler, queue="test_events_json")

    await container.publish(
        "$jsontest.123456.events",
        json.dumps({"msg": "some message"}).encode(),
        content_type="application/json",
    )
    await transport.join()

    assert len(recorder.messages) == 1
    assert recorder.messages[0].body == {"msg": "some message"}
    assert transport.deliveries[0].acked is True
    assert recorder.errors == []


@pytest.mark.asyncio
async def test_bad_json_goes_to_error_handler_not_handler(container, transport, recorder):
    container.use(create_json_decoder())
    await container.route(
        "$jsontest.*.events.err",
        recorder.handler,
        queue="test_events_json_err",
        error_handler=recorder.error_handler,
    )

    await container.publish(
        "$jsontest.123456.events.err",
        b'{msg: "some message"}',
        content_type="application/json",
    )
    await transport.join()

    assert recorder.messages == []
    assert len(recorder.errors) == 1
    error, message = recorder.errors[0]
    assert isinstance(error, DecodeError)
    assert not hasattr(message, "body")
    # nobody acked it in the error handler, so the container rejects it
    assert transport.deliveries[0].rejected is True
    assert transport.deliveries[0].requeue is False


@pytest.mark.asyncio
async def test_non_json_message_reaches_handler_without_body(container, transport, recorder):
    container.use(create_json_decoder())
    await container.route("text.#", recorder.handler)

    await container.publish("text.greeting", "Hello world!", content_type="text/plain")
    await transport.join()

    assert len(recorder.messages) == 1
    assert not hasattr(recorder.messages[0], "body")
    assert recorder.messages[0].payload == b"Hello world!"


@pytest.mark.asyncio
async def test_publish_dict_is_encoded_as_json(container, transport, recorder):
    container.use(create_json_decoder())
    await container.route("orders.created", recorder.handler)

    await container.publish("orders.created", {"id": 7})
    await transport.join()

    assert recorder.messages[0].properties.content_type == "application/json"
    assert recorder.messages[0].body == {"id": 7}


@pytest.mark.asyncio
async def test_stages_run_in_registration_order(container, recorder):
    calls: list[str] = []
    first, second, third = (RecordingStage(n, calls) for n in ("first", "second", "third"))
    container.use(first).use(second)
    route = await container.route("a.b", recorder.handler, stages=[third])

    await route.dispatch(make_message(b"{}", bound=True))

    assert calls == ["first", "second", "third"]
    assert len(recorder.messages) == 1


@pytest.mark.asyncio
async def test_first_rejecting_stage_short_circuits_chain(container, recorder):
    calls: list[str] = []
    boom = RuntimeError("boom")
    container.use(RecordingStage("ok", calls))
    container.use(RecordingStage("fails", calls, raise_on_call=boom))
    container.use(RecordingStage("never", calls))
    route = await container.route("a.b", recorder.handler, error_handler=recorder.error_handler)

    await route.dispatch(make_message(b"{}", bound=True))

    assert calls == ["ok", "fails"]
    assert recorder.messages == []
    assert recorder.errors[0][0] is boom


@pytest.mark.asyncio
async def test_each_stage_sees_previous_stage_result(container, recorder):
    calls: list[str] = []
    after = RecordingStage("after", calls)
    container.use(create_json_decoder())
    container.use(after)
    route = await container.route("a.b", recorder.handler)

    await route.dispatch(make_message(b'{"k": "v"}', bound=True))

    assert after.seen[0].body == {"k": "v"}
    assert recorder.messages[0].body == {"k": "v"}


@pytest.mark.asyncio
async def test_stage_registered_after_route_does_not_apply(container, recorder):
    calls: list[str] = []
    route = await container.route("a.b", recorder.handler)
    container.use(RecordingStage("late", calls))

    await route.dispatch(make_message(b"{}", bound=True))

    assert calls == []
    assert len(recorder.messages) == 1


@pytest.mark.asyncio
async def test_duplicate_use_registers_stage_once(container, recorder):
    calls: list[str] = []
    stage = RecordingStage("once", calls)
    container.use(stage)
    container.use(stage)
    route = await container.route("a.b", recorder.handler, stages=[stage])

    await route.dispatch(make_message(b"{}", bound=True))

    assert container.stages == (stage,)
    assert calls == ["once"]


@pytest.mark.asyncio
async def test_rejection_without_error_handler_is_dropped(container, transport, recorder):
    container.use(create_json_decoder())
    await container.route("bad.json", recorder.handler)

    await container.publish("bad.json", b"", content_type="application/json")
    await transport.join()

    assert recorder.messages == []
    assert transport.deliveries[0].rejected is True
    assert transport.deliveries[0].requeue is False


@pytest.mark.asyncio
async def test_async_error_handler_can_settle_message(container, transport):
    handled: list[Exception] = []

    async def on_error(error: Exception, message: Message) -> None:
        handled.append(error)
        await message.nack(requeue=False)

    async def handler(message: Message) -> None:
        raise AssertionError("handler must not run")

    container.use(create_json_decoder())
    await container.route("bad.json", handler, RouteOptions(error_handler=on_error))

    await container.publish("bad.json", b"not json", content_type="application/json")
    await transport.join()

    assert isinstance(handled[0], DecodeError)
    assert transport.deliveries[0].nacked is True
    assert transport.deliveries[0].rejected is False


@pytest.mark.asyncio
async def test_failing_error_handler_does_not_crash_pipeline(container, transport):
    def on_error(error: Exception, message: Message) -> None:
        raise RuntimeError("error handler broke")

    async def handler(message: Message) -> None:
        return None

    container.use(create_json_decoder())
    await container.route("bad.json", handler, error_handler=on_error)

    await container.publish("bad.json", b"{", content_type="application/json")
    await transport.join()

    assert transport.deliveries[0].rejected is True


@pytest.mark.asyncio
async def test_handler_exception_rejects_message(container, transport):
    async def handler(message: Message) -> None:
        raise RuntimeError("handler broke")

    await container.route("work.item", handler)

    await container.publish("work.item", {"n": 1})
    await transport.join()

    assert transport.deliveries[0].rejected is True


@pytest.mark.asyncio
async def test_stage_returning_non_message_is_stage_error(container, recorder):
    async def bad_stage(message: Message) -> None:
        return None

    container.use(bad_stage)
    route = await container.route("a.b", recorder.handler, error_handler=recorder.error_handler)

    await route.dispatch(make_message(b"{}", bound=True))

    assert isinstance(recorder.errors[0][0], StageError)
    assert recorder.messages == []


@pytest.mark.asyncio
async def test_sync_handler_is_supported(container, transport):
    seen: list[Message] = []
    container.use(create_json_decoder())
    await container.route("sync.handler", seen.append)

    await container.publish("sync.handler", {"ok": True})
    await transport.join()

    assert seen[0].body == {"ok": True}


@pytest.mark.asyncio
async def test_routes_get_only_matching_messages(container, transport):
    events: list[Message] = []
    errors: list[Message] = []
    await container.route("$jsontest.*.events", events.append, queue="events")
    await container.route("$jsontest.*.events.err", errors.append, queue="errors")

    await container.publish("$jsontest.1.events", {"a": 1})
    await container.publish("$jsontest.1.events.err", {"b": 2})
    await transport.join()

    assert [m.routing_key for m in events] == ["$jsontest.1.events"]
    assert [m.routing_key for m in errors] == ["$jsontest.1.events.err"]


@pytest.mark.asyncio
async def test_route_declares_and_initializes_transport(container, transport, recorder):
    route = await container.route("a.b", recorder.handler, queue="q")

    assert isinstance(route, Route)
    assert transport.ready is True
    assert route.consumer_tag is not None
    assert route.queue == "q"
    assert container.routes == (route,)


@pytest.mark.asyncio
async def test_shutdown_cancels_routes_and_closes_transport(transport, recorder):
    async with Container(transport) as container:
        await container.route("a.b", recorder.handler)
        await container.publish("a.b", {"x": 1})

    assert transport.ready is False
    assert container.routes == ()
    assert len(recorder.messages) == 1


def test_use_rejects_non_callable(container):
    with pytest.raises(TypeError):
        container.use("not a stage")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_keyword_options_merge_over_route_options(container, transport, recorder):
    calls: list[str] = []
    base_stage = RecordingStage("base", calls)
    extra_stage = RecordingStage("extra", calls)
    container.use(create_json_decoder())
    route = await container.route(
        "bad.json",
        recorder.handler,
        RouteOptions(queue="q", stages=(base_stage,)),
        error_handler=recorder.error_handler,
        stages=[extra_stage],
    )

    await container.publish("bad.json", b"{", content_type="application/json")
    await transport.join()

    assert route.queue == "q"
    assert route.options.error_handler == recorder.error_handler
    assert isinstance(recorder.errors[0][0], DecodeError)
    assert recorder.messages == []
    assert calls == []

    await route.dispatch(make_message(b"{}", bound=True))
    assert calls == ["base", "extra"]


@pytest.mark.asyncio
async def test_error_handler_gets_message_from_last_successful_stage(container, recorder):
    calls: list[str] = []
    container.use(create_json_decoder())
    container.use(RecordingStage("fails", calls, raise_on_call=RuntimeError("boom")))
    route = await container.route("a.b", recorder.handler, error_handler=recorder.error_handler)

    await route.dispatch(make_message(b'{"k": "v"}', bound=True))

    error, message = recorder.errors[0]
    assert str(error) == "boom"
    assert message.body == {"k": "v"}
