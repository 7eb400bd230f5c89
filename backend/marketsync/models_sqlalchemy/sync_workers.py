from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, Integer, Text, Index

from marketsync.models_sqlalchemy import Base
from marketsync.models_sqlalchemy.models import JsonType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncRun(Base):
    """Single sync pass of one integration over one window.

    A queue-driven run spans several jobs (one per page); they all share the
    same SyncRun row, which carries the cursor and the accumulated per-record
    errors until the last page finishes the run.
    """

    __tablename__ = "sync_runs"

    id = Column(String(36), primary_key=True)
    integration_id = Column(String(36), nullable=False, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    marketplace = Column(String(32), nullable=False)
    # cron, manual, oauth, webhook
    trigger = Column(String(32), nullable=False)

    status = Column(String(32), nullable=False, index=True)  # running, completed, error

    window_from = Column(DateTime(timezone=True), nullable=False)
    window_to = Column(DateTime(timezone=True), nullable=False)
    cursor = Column(Text, nullable=True)

    pages_processed = Column(Integer, nullable=False, default=0)
    cursor_advances = Column(Integer, nullable=False, default=0)
    orders_reconciled = Column(Integer, nullable=False, default=0)
    errors = Column(JsonType, nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    heartbeat_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)


class Job(Base):
    """Durable queue message with retry/backoff and a visibility timeout."""

    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True)
    queue = Column(String(64), nullable=False)
    name = Column(String(64), nullable=False)
    payload = Column(JsonType, nullable=False, default=dict)

    status = Column(String(32), nullable=False, default="waiting")  # waiting, active, completed, failed
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=1)
    backoff_type = Column(String(16), nullable=False, default="exponential")  # exponential, fixed
    backoff_delay_ms = Column(Integer, nullable=False, default=0)

    run_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    progress = Column(Integer, nullable=False, default=0)

    dedupe_key = Column(String(255), nullable=True)
    last_error = Column(Text, nullable=True)
    result = Column(JsonType, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_jobs_queue_status_run_at", "queue", "status", "run_at"),
        Index("idx_jobs_dedupe_key", "dedupe_key"),
    )
