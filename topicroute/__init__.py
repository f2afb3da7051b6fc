"""Topic-routed message consumption with a chainable middleware pipeline."""
from topicroute.app.application.container import Container, Route, RouteOptions, StageError
from topicroute.app.composition import create_container
from topicroute.app.domain.content_type import content_type_matches
from topicroute.app.domain.message import Message, MessageProperties
from topicroute.app.middleware.json import (
    DecodeError,
    Decoded,
    DecoderConfig,
    Failed,
    JsonDecoder,
    Skipped,
    create_json_decoder,
)

__all__ = [
    "Container",
    "DecodeError",
    "Decoded",
    "DecoderConfig",
    "Failed",
    "JsonDecoder",
    "Message",
    "MessageProperties",
    "Route",
    "RouteOptions",
    "Skipped",
    "StageError",
    "content_type_matches",
    "create_container",
    "create_json_decoder",
]
