"""Constants shared across modules."""
from __future__ import annotations

CONTENT_TYPE_JSON = "application/json"
DEFAULT_EXCHANGE = "amq.topic"
