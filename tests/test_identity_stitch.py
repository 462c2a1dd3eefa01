import itertools
import logging
import warnings
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import SAWarning

from activity_ledger.config import Settings
from activity_ledger.infrastructure.idempotency import utcnow
from activity_ledger.security.identity import IdentitySnapshot
from activity_ledger.tasks import identity as identity_tasks
from activity_ledger.tasks.identity import StitchDispatcher, identity_link_report, stitch_identity

T1 = datetime(2026, 2, 17, 8, 0)
T2 = datetime(2026, 2, 18, 9, 30)
T3 = datetime(2026, 2, 19, 21, 15)
BOTH = IdentitySnapshot(user_id="u1", anonymous_id="a1")


def test_first_observation_creates_link(fetch_links):
    stitch_identity("u1", "a1", T2)
    (link,) = fetch_links()
    assert (link.user_id, link.anonymous_id) == ("u1", "a1")
    assert link.first_seen_at == link.last_seen_at == T2


@pytest.mark.parametrize("order", list(itertools.permutations([T1, T2, T3])))
def test_link_converges_regardless_of_order(order, fetch_links):
    for ts in order:
        stitch_identity("u1", "a1", ts)
    stitch_identity("u1", "a1", order[0])
    (link,) = fetch_links()
    assert link.first_seen_at == T1
    assert link.last_seen_at == T3


def test_one_anonymous_id_can_link_to_several_users(fetch_links):
    stitch_identity("u1", "shared-device", T1)
    stitch_identity("u2", "shared-device", T2)
    assert [(l.user_id, l.anonymous_id) for l in fetch_links()] == [("u1", "shared-device"), ("u2", "shared-device")]


def test_both_identities_are_required():
    with pytest.raises(ValueError):
        stitch_identity("u1", "", T1)


def test_dispatch_without_both_identities_does_nothing(fetch_links):
    dispatcher = StitchDispatcher(inline=True)
    assert dispatcher.dispatch(IdentitySnapshot(anonymous_id="a1"), T1) is False
    assert fetch_links() == []
    assert dispatcher.stats()["dispatched"] == 0


def test_inline_dispatch_stitches(fetch_links):
    dispatcher = StitchDispatcher(inline=True)
    assert dispatcher.dispatch(BOTH, T1)
    assert len(fetch_links()) == 1
    assert dispatcher.stats() == {"dispatched": 1, "failures": 0, "failure_streak": 0}


def test_queued_dispatch_hands_off_to_worker(monkeypatch):
    queued = []
    monkeypatch.setattr(identity_tasks, "stitch_identity_task", SimpleNamespace(delay=lambda *args: queued.append(args)))
    dispatcher = StitchDispatcher(inline=False)
    assert dispatcher.dispatch(BOTH, T2)
    assert queued == [("u1", "a1", T2.isoformat())]


def test_failures_never_raise_and_alert_at_threshold(monkeypatch, caplog):
    def down(*args):
        raise RuntimeError("queue down")

    monkeypatch.setattr(identity_tasks, "stitch_identity", down)
    dispatcher = StitchDispatcher(settings=Settings(STITCH_FAILURE_ALERT_THRESHOLD=3), inline=True)
    with caplog.at_level(logging.WARNING, logger=identity_tasks.__name__):
        results = [dispatcher.dispatch(BOTH, T1) for _ in range(3)]
    assert results == [False, False, False]
    assert dispatcher.failure_streak == 3
    levels = [r.levelno for r in caplog.records if "identity_stitch_failed" in r.getMessage()]
    assert levels == [logging.WARNING, logging.WARNING, logging.ERROR]
    assert '"alert": true' in caplog.records[-1].getMessage()


def test_success_resets_failure_streak(monkeypatch):
    def down(*args):
        raise RuntimeError("boom")

    dispatcher = StitchDispatcher(inline=True)
    monkeypatch.setattr(identity_tasks, "stitch_identity", down)
    dispatcher.dispatch(BOTH, T1)
    dispatcher.dispatch(BOTH, T1)
    monkeypatch.undo()
    assert dispatcher.dispatch(BOTH, T1)
    assert dispatcher.stats() == {"dispatched": 1, "failures": 2, "failure_streak": 0}


def test_link_report_counts_coverage_and_shared_devices(add_event):
    recent = utcnow() - timedelta(days=1)
    add_event("page_viewed", recent, anonymous_id="a1")
    add_event("page_viewed", recent, anonymous_id="a2")
    add_event("page_viewed", recent, anonymous_id="a3")
    add_event("page_viewed", recent, anonymous_id="a4")
    stitch_identity("u1", "a1", recent)
    stitch_identity("u2", "a1", recent)
    report = identity_link_report(lookback_days=7)
    assert report["anonymous_ids"] == 4
    assert report["linked_anonymous_ids"] == 1
    assert report["link_coverage_pct"] == 25.0
    assert report["multi_user_anonymous_ids"] == [{"anonymous_id": "a1", "user_count": 2}]


def test_link_report_with_no_traffic():
    assert identity_link_report()["link_coverage_pct"] is None


def test_link_report_query_is_warning_free(add_event):
    add_event("page_viewed", utcnow() - timedelta(hours=1), anonymous_id="a1")
    with warnings.catch_warnings():
        warnings.simplefilter("error", SAWarning)
        assert identity_link_report()["anonymous_ids"] == 1
