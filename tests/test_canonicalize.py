from datetime import datetime, timezone

import pytest

from activity_ledger.config import Settings
from activity_ledger.security.identity import IdentitySnapshot
from activity_ledger.validation.events import (
    REASON_INVALID_KIND,
    REASON_INVALID_METADATA,
    REASON_MISSING_FIELD,
    REASON_NO_IDENTITY,
    REASON_PAYLOAD_TOO_LARGE,
    canonicalize_event,
    grimoire_entity_id,
    normalize_path,
)

ANON = IdentitySnapshot(anonymous_id="a1")


@pytest.mark.parametrize("raw,expected", [
    ("/horoscope/", "/horoscope"),
    ("/horoscope///", "/horoscope"),
    ("/", "/"),
    ("///", "/"),
    ("/grimoire/houses?ref=nav#top", "/grimoire/houses"),
    ("https://example.com/app/?utm_source=x", "/app"),
    ("https://example.com", "/"),
    ("tarot", "/tarot"),
    ("   ", None),
    (42, None),
    (None, None),
])
def test_normalize_path(raw, expected):
    assert normalize_path(raw) == expected


def test_no_identity_is_a_skip_not_an_error():
    result = canonicalize_event("app_opened", IdentitySnapshot(), source_channel="server_middleware")
    assert not result.ok
    assert result.reason == REASON_NO_IDENTITY
    assert result.status == "skip"


def test_unknown_kind_is_skipped():
    result = canonicalize_event("mystery_event", ANON, source_channel="client")
    assert result.reason == REASON_INVALID_KIND
    assert result.status == "skip"


def test_required_path_missing_is_a_validation_failure():
    result = canonicalize_event("page_viewed", ANON, source_channel="server_pageview", page_path="  ", require_path=True)
    assert result.reason == REASON_MISSING_FIELD
    assert result.status == "invalid"


def test_malformed_optional_path_is_dropped():
    result = canonicalize_event("app_opened", ANON, source_channel="server_middleware", page_path={"not": "a path"})
    assert result.ok
    assert result.event.page_path is None


def test_legacy_kind_is_mapped_and_recorded():
    result = canonicalize_event("birth_chart_viewed", ANON, source_channel="client")
    assert result.ok
    assert result.event.kind == "chart_viewed"
    assert result.event.metadata["legacy_event_type"] == "birth_chart_viewed"
    assert result.event.metadata["canonical_event_type"] == "chart_viewed"


def test_metadata_keeps_primitives_and_drops_free_text_and_nested_values():
    result = canonicalize_event(
        "cta_clicked",
        ANON,
        source_channel="client",
        metadata={
            "utm_source": "newsletter",
            "count": 3,
            "ratio": 0.5,
            "flag": True,
            "missing": None,
            "prompt": "tell me my future",
            "nested": {"a": 1},
            "items": [1, 2],
        },
    )
    assert result.ok
    assert result.event.metadata == {
        "utm_source": "newsletter",
        "count": 3,
        "ratio": 0.5,
        "flag": True,
        "missing": None,
        "canonical_event_type": "cta_clicked",
    }


def test_oversized_metadata_is_rejected():
    settings = Settings(METADATA_MAX_BYTES=128)
    result = canonicalize_event("cta_clicked", ANON, source_channel="client", metadata={"blob": "x" * 500}, settings=settings)
    assert result.reason == REASON_PAYLOAD_TOO_LARGE
    assert result.status == "invalid"


def test_too_many_metadata_keys_is_rejected():
    settings = Settings(METADATA_MAX_KEYS=3)
    metadata = {f"k{i}": i for i in range(5)}
    result = canonicalize_event("cta_clicked", ANON, source_channel="client", metadata=metadata, settings=settings)
    assert result.reason == REASON_PAYLOAD_TOO_LARGE


def test_aware_timestamp_is_stored_as_naive_utc():
    ts = datetime(2026, 2, 19, 23, 30, tzinfo=timezone.utc)
    result = canonicalize_event("page_viewed", ANON, source_channel="client", page_path="/", occurred_at=ts)
    assert result.event.occurred_at == datetime(2026, 2, 19, 23, 30)
    assert result.event.occurred_at.tzinfo is None


def test_identity_and_email_are_carried_through():
    identity = IdentitySnapshot(user_id="u1", anonymous_id="a1", user_email="  Someone@Example.COM ")
    result = canonicalize_event("signup_completed", identity, source_channel="client")
    assert result.event.user_id == "u1"
    assert result.event.anonymous_id == "a1"
    assert result.event.user_email == "someone@example.com"


@pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_metadata_numbers_are_invalid(value):
    result = canonicalize_event("cta_clicked", ANON, source_channel="client", metadata={"score": value})
    assert result.reason == REASON_INVALID_METADATA
    assert result.status == "invalid"


def test_grimoire_view_carries_entity_slug():
    result = canonicalize_event("grimoire_viewed", ANON, source_channel="server_pageview", page_path="/grimoire/houses/mars/")
    assert result.event.metadata["entity_type"] == "grimoire"
    assert result.event.metadata["entity_id"] == "houses/mars"


def test_grimoire_index_has_no_entity_id_and_producer_values_win():
    index = canonicalize_event("grimoire_viewed", ANON, source_channel="client", page_path="/grimoire")
    assert "entity_id" not in index.event.metadata
    explicit = canonicalize_event("grimoire_viewed", ANON, source_channel="client", page_path="/grimoire/tarot",
                                  metadata={"entity_type": "card", "entity_id": "the-moon"})
    assert explicit.event.metadata["entity_type"] == "card"
    assert explicit.event.metadata["entity_id"] == "the-moon"


@pytest.mark.parametrize("path", ["/grimoires/x", "/horoscope", None])
def test_grimoire_entity_id_outside_grimoire(path):
    assert grimoire_entity_id(path) is None
