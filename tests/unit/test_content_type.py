from __future__ import annotations

import pytest

from topicroute.app.domain.content_type import (
    content_type_matches,
    normalize_accepted,
    normalize_media_type,
)


@pytest.mark.parametrize(
    "content_type, accepted, expected",
    [
        ("application/json", "application/json", True),
        ("APPLICATION/JSON", "application/json", True),
        ("application/json; charset=utf-8", "application/json", True),
        (" application/json ", "application/json", True),
        ("application/text", "application/json", False),
        ("application/json-seq", "application/json", False),
        (None, "application/json", False),
        ("", "application/json", False),
        (";charset=utf-8", "application/json", False),
        ("text/json", ["application/json", "text/json"], True),
    ],
)
def test_content_type_matches(content_type, accepted, expected):
    assert content_type_matches(content_type, accepted) is expected


def test_missing_and_non_matching_content_type_are_treated_alike():
    assert content_type_matches(None, "application/json") == content_type_matches(
        "text/plain", "application/json"
    )


def test_normalize_media_type_drops_parameters():
    assert normalize_media_type("Text/Plain; charset=UTF-8") == "text/plain"
    assert normalize_media_type(None) is None


def test_normalize_accepted_requires_a_media_type():
    assert normalize_accepted(["application/json", "Application/JSON"]) == frozenset({"application/json"})
    with pytest.raises(ValueError):
        normalize_accepted(["", "  "])
