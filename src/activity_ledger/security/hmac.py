from __future__ import annotations
import hmac
import hashlib


def _signature(value: str, secret: str) -> str:
    return hmac.new(secret.encode(), msg=value.encode(), digestmod=hashlib.sha256).hexdigest()


def sign_session(user_id: str, secret: str) -> str:
    """Build a session token of the form ``<user_id>.<hex signature>``."""
    return f"{user_id}.{_signature(user_id, secret)}"


def verify_session_token(token: str | None, secret: str | None) -> str | None:
    """Return the user id carried by a signed session token, or None when it does not verify."""
    if not token or not secret:
        return None
    user_id, sep, sig = token.rpartition(".")
    if not sep or not user_id or not sig:
        return None
    if not hmac.compare_digest(_signature(user_id, secret), sig):
        return None
    return user_id
