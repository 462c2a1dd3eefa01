"""Request identity resolution.

Both identity spaces are read exactly once at the start of a request and frozen into an
``IdentitySnapshot``. The canonicalizer, writer and stitcher all receive that same snapshot,
so a login completing mid-request can never be observed half-applied.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional
from starlette.requests import Request
from activity_ledger.config import get_settings
from activity_ledger.infrastructure.idempotency import resolved_identity
from activity_ledger.security.hmac import verify_session_token

MAX_IDENTITY_LENGTH = 128


class SessionUser(NamedTuple):
    user_id: str
    email: Optional[str] = None


SessionLookup = Callable[[Request], Optional[SessionUser]]


@dataclass(frozen=True)
class IdentitySnapshot:
    user_id: Optional[str] = None
    anonymous_id: Optional[str] = None
    user_email: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.user_id and not self.anonymous_id

    @property
    def has_both(self) -> bool:
        return bool(self.user_id and self.anonymous_id)

    @property
    def resolved_id(self) -> str:
        return resolved_identity(self.user_id, self.anonymous_id)


def _clean_identity(value: object) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or len(value) > MAX_IDENTITY_LENGTH:
        return None
    return value


def signed_cookie_session_lookup(request: Request) -> Optional[SessionUser]:
    """Default authenticated-session lookup: a signed ``<user_id>.<hmac>`` cookie."""
    settings = get_settings()
    user_id = verify_session_token(request.cookies.get(settings.session_cookie), settings.session_secret)
    user_id = _clean_identity(user_id)
    return SessionUser(user_id) if user_id else None


def get_session_lookup() -> SessionLookup:
    """FastAPI dependency; override in the host application to plug in its session store."""
    return signed_cookie_session_lookup


def resolve_identity(request: Request, session_lookup: Optional[SessionLookup] = None) -> IdentitySnapshot:
    """Read anonymous and authenticated identities for one request.

    Never fabricates an identity: an empty snapshot is a normal outcome (first visit,
    blocked cookies) and callers decide what to do with it.
    """
    settings = get_settings()
    anonymous_id = _clean_identity(request.headers.get(settings.anonymous_id_header))
    if anonymous_id is None:
        anonymous_id = _clean_identity(request.cookies.get(settings.anonymous_id_cookie))
    user = (session_lookup or signed_cookie_session_lookup)(request)
    user_id = _clean_identity(user.user_id) if user else None
    email = user.email if user and user_id else None
    return IdentitySnapshot(user_id=user_id, anonymous_id=anonymous_id, user_email=email)
