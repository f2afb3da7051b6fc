"""Port: a pipeline stage is an async transform from Message to Message."""
from __future__ import annotations

from typing import Awaitable, Callable

from topicroute.app.domain.message import Message

Stage = Callable[[Message], Awaitable[Message]]
