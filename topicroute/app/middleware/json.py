"""JSON body decoder stage.

The decoder parses `message.payload` as JSON and attaches the result as `body` when
the message's content type matches (or when told to ignore the content type).
Three outcomes are possible for every message:

  Skipped   content type did not match; the message is passed on unchanged.
  Decoded   the payload parsed; the message is passed on with `body` set.
  Failed    decoding was attempted and the payload is not valid JSON (an empty
            payload included); the stage raises DecodeError.

The stage holds no mutable state and does no I/O, so one instance can serve any
number of routes and concurrent messages.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Union

from topicroute.app.constants import CONTENT_TYPE_JSON
from topicroute.app.domain.content_type import content_type_matches, normalize_accepted
from topicroute.app.domain.message import Message


class DecodeError(Exception):
    """Raised when a payload that had to be decoded is not valid structured data."""

    def __init__(self, reason: str, *, content_type: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.content_type = content_type


@dataclass(frozen=True)
class Skipped:
    pass


@dataclass(frozen=True)
class Decoded:
    value: Any


@dataclass(frozen=True)
class Failed:
    error: DecodeError


DecodeOutcome = Union[Skipped, Decoded, Failed]

_SKIPPED = Skipped()


@dataclass(frozen=True)
class DecoderConfig:
    """Decoder options (value object)."""

    content_type_match: str | tuple[str, ...] = CONTENT_TYPE_JSON
    ignore_content_type: bool = False
    accepted: frozenset[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        match = self.content_type_match
        if not isinstance(match, str):
            match = tuple(match)
            object.__setattr__(self, "content_type_match", match)
        object.__setattr__(self, "accepted", normalize_accepted(match))

    def accepts(self, content_type: str | None) -> bool:
        return content_type_matches(content_type, self.accepted)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant: {name}")


def parse_json(payload: bytes) -> Any:
    """Strict parse: whole payload, standard JSON only (no NaN/Infinity)."""
    if not payload:
        raise ValueError("empty payload")
    return json.loads(payload, parse_constant=_reject_constant)


class JsonDecoder:
    """Pipeline stage that decodes JSON payloads into `message.body`."""

    def __init__(self, config: DecoderConfig | None = None) -> None:
        self._config = config or DecoderConfig()

    @property
    def config(self) -> DecoderConfig:
        return self._config

    def decode(self, message: Message) -> DecodeOutcome:
        content_type = message.properties.content_type
        if not self._config.ignore_content_type and not self._config.accepts(content_type):
            return _SKIPPED
        try:
            return Decoded(parse_json(message.payload))
        except (ValueError, RecursionError) as exc:
            error = DecodeError(f"invalid JSON payload: {exc}", content_type=content_type)
            error.__cause__ = exc
            return Failed(error)

    async def __call__(self, message: Message) -> Message:
        outcome = self.decode(message)
        if isinstance(outcome, Failed):
            raise outcome.error
        if isinstance(outcome, Decoded):
            return message.with_body(outcome.value)
        return message

    def __repr__(self) -> str:
        return f"<JsonDecoder {self._config!r}>"


def create_json_decoder(
    config: DecoderConfig | None = None,
    *,
    content_type_match: str | Iterable[str] | None = None,
    ignore_content_type: bool | None = None,
) -> JsonDecoder:
    """Build a JSON decoder stage.

    With no arguments the decoder accepts `application/json` and skips everything
    else. Keyword options override the matching fields of `config`.
    """
    config = config or DecoderConfig()
    if content_type_match is not None or ignore_content_type is not None:
        config = DecoderConfig(
            content_type_match=(
                config.content_type_match if content_type_match is None else content_type_match
            ),
            ignore_content_type=(
                config.ignore_content_type if ignore_content_type is None else ignore_content_type
            ),
        )
    return JsonDecoder(config)
