from starlette.requests import Request

from activity_ledger.security.hmac import sign_session, verify_session_token
from activity_ledger.security.identity import SessionUser, resolve_identity

SECRET = "test-session-secret"


def make_request(headers=None, cookies=None):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    if cookies:
        raw.append((b"cookie", "; ".join(f"{k}={v}" for k, v in cookies.items()).encode()))
    return Request({"type": "http", "method": "POST", "path": "/events/app-opened", "headers": raw})


def test_empty_request_resolves_to_empty_snapshot():
    identity = resolve_identity(make_request())
    assert identity.is_empty
    assert not identity.has_both


def test_anonymous_id_from_header_wins_over_cookie():
    identity = resolve_identity(make_request(headers={"X-Anonymous-Id": "hdr-1"}, cookies={"anon_id": "ck-1"}))
    assert identity.anonymous_id == "hdr-1"


def test_anonymous_id_falls_back_to_cookie():
    assert resolve_identity(make_request(cookies={"anon_id": "ck-1"})).anonymous_id == "ck-1"


def test_blank_or_oversized_anonymous_id_is_ignored():
    assert resolve_identity(make_request(headers={"X-Anonymous-Id": "   "})).anonymous_id is None
    assert resolve_identity(make_request(headers={"X-Anonymous-Id": "x" * 500})).anonymous_id is None


def test_signed_session_cookie_gives_user_id():
    request = make_request(headers={"X-Anonymous-Id": "a1"}, cookies={"session": sign_session("u1", SECRET)})
    identity = resolve_identity(request)
    assert identity.user_id == "u1"
    assert identity.has_both
    assert identity.resolved_id == "u1"


def test_tampered_session_cookie_is_ignored():
    token = sign_session("u1", SECRET).replace("u1.", "u2.")
    assert resolve_identity(make_request(cookies={"session": token})).user_id is None


def test_custom_session_lookup_supplies_email():
    identity = resolve_identity(make_request(), lambda request: SessionUser("u9", "u9@example.com"))
    assert identity.user_id == "u9"
    assert identity.user_email == "u9@example.com"


def test_verify_session_token_rejects_malformed_tokens():
    assert verify_session_token(None, SECRET) is None
    assert verify_session_token("no-signature", SECRET) is None
    assert verify_session_token(sign_session("u1", SECRET), None) is None
    assert verify_session_token(sign_session("u.with.dots", SECRET), SECRET) == "u.with.dots"
