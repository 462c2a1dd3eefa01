"""Shared fixtures: in-memory SQLite bound through override_engine, API client, row helpers."""
import os

# Must be set before activity_ledger.infrastructure.db builds its engine.
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SESSION_SECRET"] = "test-session-secret"
os.environ.pop("ADMIN_API_KEY", None)

from datetime import datetime  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from activity_ledger.config import reset_settings  # noqa: E402

reset_settings()

from activity_ledger.infrastructure import db  # noqa: E402
from activity_ledger.infrastructure.idempotency import random_event_id  # noqa: E402
from activity_ledger.models.tables import CanonicalEvent, IdentityLink  # noqa: E402


@pytest.fixture(autouse=True)
def engine():
    e = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    db.override_engine(e)
    db.Base.metadata.create_all(e)
    yield e
    db.Base.metadata.drop_all(e)
    e.dispose()


@pytest.fixture
def session():
    s = db.SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from activity_ledger.api.main import app
    from activity_ledger.tasks.identity import StitchDispatcher
    app.state.stitch_dispatcher = StitchDispatcher(inline=True)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def add_event():
    """Insert a canonical row directly, bypassing the writer (historical data)."""
    def _add(kind: str, occurred_at: datetime, user_id=None, anonymous_id=None, event_id=None,
             source_channel="server_pageview", page_path=None):
        event_id = event_id or random_event_id()
        with db.SessionLocal() as s:
            s.add(CanonicalEvent(
                id=event_id,
                kind=kind,
                occurred_at=occurred_at,
                user_id=user_id,
                anonymous_id=anonymous_id,
                source_channel=source_channel,
                page_path=page_path,
            ))
            s.commit()
        return event_id
    return _add


@pytest.fixture
def fetch_events():
    def _fetch(kind=None):
        with db.SessionLocal() as s:
            q = s.query(CanonicalEvent)
            if kind:
                q = q.filter(CanonicalEvent.kind == kind)
            return q.order_by(CanonicalEvent.occurred_at, CanonicalEvent.id).all()
    return _fetch


@pytest.fixture
def fetch_links():
    def _fetch():
        with db.SessionLocal() as s:
            return s.query(IdentityLink).order_by(IdentityLink.user_id, IdentityLink.anonymous_id).all()
    return _fetch
