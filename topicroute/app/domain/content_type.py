"""Content-type comparison used by decode stages.

A missing content type and a non-matching one are treated the same way: no match.
Only the media type is compared; parameters such as ``charset`` are dropped and the
comparison is case-insensitive.
"""
from __future__ import annotations

from typing import Iterable


def normalize_media_type(content_type: str | None) -> str | None:
    """Return the bare lower-cased media type, or None when there is none."""
    if content_type is None:
        return None
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type or None


def normalize_accepted(accepted: str | Iterable[str]) -> frozenset[str]:
    if isinstance(accepted, str):
        accepted = (accepted,)
    normalized = frozenset(
        media_type for media_type in map(normalize_media_type, accepted) if media_type
    )
    if not normalized:
        raise ValueError("at least one content type must be accepted")
    return normalized


def content_type_matches(content_type: str | None, accepted: str | Iterable[str]) -> bool:
    media_type = normalize_media_type(content_type)
    if media_type is None:
        return False
    return media_type in normalize_accepted(accepted)
