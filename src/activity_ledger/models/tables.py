from __future__ import annotations
from datetime import datetime, date
from sqlalchemy import String, Integer, DateTime, Date, JSON, Index, CheckConstraint, PrimaryKeyConstraint
from sqlalchemy.orm import Mapped, mapped_column
from activity_ledger.infrastructure.db import Base
from activity_ledger.infrastructure.idempotency import utcnow


SOURCE_CHANNELS = ("client", "server_middleware", "server_pageview", "backfill")


class CanonicalEvent(Base):
    """One row per logical activity occurrence.

    ``id`` is either derived from (kind, identity, UTC day) for daily-deduplicated kinds or
    random; the primary key is the only thing that collapses concurrent duplicate writes.
    ``occurred_at`` is stored as naive UTC and never updated after insert.
    """
    __tablename__ = "canonical_events"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(64), index=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    user_id: Mapped[str | None] = mapped_column(String(128), index=True, default=None)
    anonymous_id: Mapped[str | None] = mapped_column(String(128), index=True, default=None)
    user_email: Mapped[str | None] = mapped_column(String(256), default=None)  # test-account filters only
    page_path: Mapped[str | None] = mapped_column(String(512), default=None)
    source_channel: Mapped[str] = mapped_column(String(32), index=True)
    event_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("user_id IS NOT NULL OR anonymous_id IS NOT NULL", name="ck_canonical_events_identity"),
        Index("ix_canonical_kind_user_ts", "kind", "user_id", "occurred_at"),
        Index("ix_canonical_kind_anon_ts", "kind", "anonymous_id", "occurred_at"),
    )


class IdentityLink(Base):
    """Observed co-occurrence window of an authenticated and an anonymous identity."""
    __tablename__ = "identity_links"
    user_id: Mapped[str] = mapped_column(String(128))
    anonymous_id: Mapped[str] = mapped_column(String(128), index=True)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, index=True)

    __table_args__ = (
        PrimaryKeyConstraint("user_id", "anonymous_id", name="pk_identity_links"),
        CheckConstraint("first_seen_at <= last_seen_at", name="ck_identity_links_window"),
    )


class JobRun(Base):
    """Tracks live gap backfill and duplicate repair runs.

    ``checkpoint_day`` is the last day whose mutations are fully committed, so a truncated or
    failed run can resume from the following day instead of rescanning the whole window.
    """
    __tablename__ = "job_runs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_type: Mapped[str] = mapped_column(String(32), index=True)  # gap_backfill|duplicate_repair
    status: Mapped[str] = mapped_column(String(16), index=True, default="running")  # running|completed|truncated|failed
    dry_run: Mapped[int] = mapped_column(Integer, default=1, index=True)
    window_start: Mapped[date] = mapped_column(Date)
    window_end: Mapped[date] = mapped_column(Date)
    checkpoint_day: Mapped[date | None] = mapped_column(Date, default=None)
    params: Mapped[dict | None] = mapped_column(JSON, default=None)
    result: Mapped[dict | None] = mapped_column(JSON, default=None)
    error: Mapped[str | None] = mapped_column(String(512), default=None)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)

    __table_args__ = (
        Index("ix_job_runs_type_status", "job_type", "status"),
    )
