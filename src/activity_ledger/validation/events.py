"""Canonicalization of raw ingestion requests.

``canonicalize_event`` is a pure function: it turns one producer request plus a resolved
identity snapshot into either a draft canonical event or a machine-readable skip/invalid
reason. No storage access happens here.
"""
from __future__ import annotations
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Annotated, Any, Dict, Optional, Union
from urllib.parse import urlsplit
from pydantic import AllowInfNan, RootModel, Strict, StrictBool, StrictInt, StrictStr, ValidationError
from activity_ledger.config import Settings, get_settings
from activity_ledger.infrastructure.idempotency import to_utc_naive, utcnow
from activity_ledger.security.identity import IdentitySnapshot

CANONICAL_KINDS = frozenset({
    "app_opened",
    "product_opened",
    "page_viewed",
    "cta_clicked",
    "user_signed_up",
    "user_logged_in",
    "nav_tab_clicked",
    "dashboard_widget_cta_clicked",
    "dashboard_widget_expanded",
    "horoscope_viewed",
    "journal_mode_activated",
    "reflection_started",
    "reflection_saved",
    "collection_page_viewed",
    "collection_item_opened",
    "guide_message_sent",
    "grimoire_viewed",
    "chart_viewed",
    "daily_dashboard_viewed",
    "astral_chat_used",
    "tarot_drawn",
    "ritual_started",
    "signup_completed",
    "subscription_started",
    "subscription_cancelled",
    "trial_started",
})

# Names emitted by older producers; the original name is kept in metadata for auditability.
LEGACY_KIND_ALIASES = {
    "birth_chart_viewed": "chart_viewed",
    "dashboard_viewed": "daily_dashboard_viewed",
    "ai_chat": "astral_chat_used",
    "tarot_viewed": "tarot_drawn",
    "ritual_view": "ritual_started",
    "signup": "signup_completed",
    "trial_converted": "subscription_started",
}

# Free-text payload keys that must never be stored.
BLOCKED_METADATA_KEYS = frozenset({
    "message", "messages", "prompt", "completion", "input", "output", "text",
    "content", "conversation", "thread", "assistant", "response",
})

MAX_METADATA_KEY_LENGTH = 64
MAX_PATH_LENGTH = 512

REASON_NO_IDENTITY = "no_identity"
REASON_INVALID_KIND = "invalid_kind"
REASON_MISSING_FIELD = "missing_required_field"
REASON_PAYLOAD_TOO_LARGE = "payload_too_large"
REASON_INVALID_METADATA = "invalid_metadata"
REASON_DUPLICATE = "duplicate"

# Reasons the caller must fix; everything else is an expected, success-shaped skip.
VALIDATION_REASONS = frozenset({REASON_MISSING_FIELD, REASON_PAYLOAD_TOO_LARGE, REASON_INVALID_METADATA})

# NaN and Infinity parse from JSON bodies but cannot be stored in a JSON column.
FiniteFloat = Annotated[float, Strict(), AllowInfNan(False)]
MetadataValue = Union[StrictBool, StrictInt, FiniteFloat, StrictStr, None]


class EventMetadata(RootModel[Dict[str, MetadataValue]]):
    """Flat map of primitive producer attributes."""

    def encoded_size(self) -> int:
        return len(json.dumps(self.root, separators=(",", ":"), sort_keys=True).encode())


@dataclass(frozen=True)
class CanonicalEventDraft:
    kind: str
    occurred_at: datetime
    source_channel: str
    user_id: Optional[str] = None
    anonymous_id: Optional[str] = None
    user_email: Optional[str] = None
    page_path: Optional[str] = None
    metadata: Optional[dict] = None
    raw_event_id: Optional[str] = None
    id: Optional[str] = None

    def with_id(self, event_id: str) -> "CanonicalEventDraft":
        return replace(self, id=event_id)


@dataclass(frozen=True)
class CanonicalResult:
    ok: bool
    event: Optional[CanonicalEventDraft] = None
    reason: Optional[str] = None
    details: dict = field(default_factory=dict)

    @property
    def status(self) -> str:
        if self.ok:
            return "ok"
        return "invalid" if self.reason in VALIDATION_REASONS else "skip"


def _skip(reason: str, **details: Any) -> CanonicalResult:
    return CanonicalResult(ok=False, reason=reason, details=details)


def canonical_kind(raw: object) -> tuple[Optional[str], Optional[str]]:
    """Return (canonical kind, legacy name) or (None, None) for unknown kinds."""
    if not isinstance(raw, str):
        return None, None
    value = raw.strip()
    if value in CANONICAL_KINDS:
        return value, None
    if value in LEGACY_KIND_ALIASES:
        return LEGACY_KIND_ALIASES[value], value
    return None, None


def normalize_path(value: object) -> Optional[str]:
    """Strip scheme/host, query, fragment and trailing slashes; keep root as ``/``."""
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value:
        return None
    parts = urlsplit(value)
    path = parts.path if (parts.scheme or parts.netloc) else value.split("?", 1)[0].split("#", 1)[0]
    path = path.rstrip("/")
    if not path:
        return "/"
    if not path.startswith("/"):
        path = "/" + path
    return path[:MAX_PATH_LENGTH]


def grimoire_entity_id(path: Optional[str]) -> Optional[str]:
    """Slug under /grimoire (``/grimoire/houses/mars`` -> ``houses/mars``); None for the index page."""
    if not path or not (path == "/grimoire" or path.startswith("/grimoire/")):
        return None
    return path[len("/grimoire"):].strip("/") or None


def normalize_email(value: object) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip().lower()
    return value or None


def sanitize_metadata(kind: str, raw: object, legacy_kind: Optional[str] = None) -> dict:
    """Keep only primitive top-level values; drop free-text and nested payloads."""
    result: dict = {}
    if isinstance(raw, dict):
        for key, value in raw.items():
            if not isinstance(key, str) or not key or len(key) > MAX_METADATA_KEY_LENGTH:
                continue
            if key in BLOCKED_METADATA_KEYS:
                continue
            if value is None or isinstance(value, (str, bool, int, float)):
                result[key] = value
    if legacy_kind:
        result["legacy_event_type"] = legacy_kind
    result["canonical_event_type"] = kind
    return result


def bound_metadata(values: dict, settings: Settings) -> tuple[Optional[EventMetadata], Optional[str]]:
    try:
        metadata = EventMetadata.model_validate(values)
    except ValidationError:
        return None, REASON_INVALID_METADATA
    if len(metadata.root) > settings.metadata_max_keys:
        return None, REASON_PAYLOAD_TOO_LARGE
    if metadata.encoded_size() > settings.metadata_max_bytes:
        return None, REASON_PAYLOAD_TOO_LARGE
    return metadata, None


def canonicalize_event(
    kind: object,
    identity: IdentitySnapshot,
    source_channel: str,
    page_path: object = None,
    metadata: object = None,
    occurred_at: Optional[datetime] = None,
    event_id: object = None,
    require_path: bool = False,
    settings: Optional[Settings] = None,
) -> CanonicalResult:
    settings = settings or get_settings()
    canonical, legacy = canonical_kind(kind)
    if canonical is None:
        return _skip(REASON_INVALID_KIND, kind=str(kind)[:64])
    if identity.is_empty:
        return _skip(REASON_NO_IDENTITY)
    path = normalize_path(page_path)
    if require_path and path is None:
        return _skip(REASON_MISSING_FIELD, field="path")
    values = sanitize_metadata(canonical, metadata, legacy)
    if canonical == "grimoire_viewed":
        values.setdefault("entity_type", "grimoire")
        entity_id = grimoire_entity_id(path)
        if entity_id:
            values.setdefault("entity_id", entity_id)
    bounded, reason = bound_metadata(values, settings)
    if reason:
        return _skip(reason, field="metadata")
    raw_event_id = event_id.strip()[:128] if isinstance(event_id, str) and event_id.strip() else None
    draft = CanonicalEventDraft(
        kind=canonical,
        occurred_at=to_utc_naive(occurred_at) if occurred_at else utcnow(),
        source_channel=source_channel,
        user_id=identity.user_id,
        anonymous_id=identity.anonymous_id,
        user_email=normalize_email(identity.user_email),
        page_path=path,
        metadata=bounded.root if bounded else None,
        raw_event_id=raw_event_id,
    )
    return CanonicalResult(ok=True, event=draft)
