"""Durable job queue on top of the primary database.

Delivery is at-least-once: a claimed job whose worker dies is redelivered
once its visibility timeout (``locked_until``) lapses, so handlers must be
idempotent. Failed jobs are retried with backoff until ``max_attempts``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from marketsync.models_sqlalchemy.sync_workers import Job
from marketsync.utils.logger import logger


SYNC_QUEUE = "order-sync"
WEBHOOK_QUEUE = "webhook-processing"

STATUS_WAITING = "waiting"
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def backoff_delay_ms(job: Job) -> int:
    base = int(job.backoff_delay_ms or 0)
    if job.backoff_type == "fixed":
        return base
    return base * (2 ** max(int(job.attempts_made or 1) - 1, 0))


def enqueue(
    db: Session,
    queue: str,
    name: str,
    payload: Dict[str, Any],
    *,
    attempts: int = 1,
    backoff_delay_ms: int = 0,
    backoff_type: str = "exponential",
    delay_ms: int = 0,
    dedupe_key: Optional[str] = None,
    dedupe_window_seconds: Optional[int] = None,
) -> Job:
    """Add a job, or return the pending twin when ``dedupe_key`` matches one
    created inside the dedupe window."""

    now = _now_utc()

    if dedupe_key:
        q = db.query(Job).filter(
            Job.queue == queue,
            Job.dedupe_key == dedupe_key,
            Job.status.in_([STATUS_WAITING, STATUS_ACTIVE]),
        )
        if dedupe_window_seconds:
            q = q.filter(Job.created_at >= now - timedelta(seconds=dedupe_window_seconds))
        existing = q.order_by(Job.created_at.desc()).first()
        if existing:
            logger.info(
                "[job_queue] deduplicated job queue=%s name=%s dedupe_key=%s job_id=%s",
                queue, name, dedupe_key, existing.id,
            )
            return existing

    job = Job(
        id=str(uuid4()),
        queue=queue,
        name=name,
        payload=payload,
        status=STATUS_WAITING,
        attempts_made=0,
        max_attempts=max(int(attempts), 1),
        backoff_type=backoff_type,
        backoff_delay_ms=int(backoff_delay_ms),
        run_at=now + timedelta(milliseconds=int(delay_ms)),
        progress=0,
        dedupe_key=dedupe_key,
        created_at=now,
    )
    db.add(job)
    db.commit()
    logger.info(
        "[job_queue] enqueued job_id=%s queue=%s name=%s delay_ms=%s", job.id, queue, name, delay_ms,
    )
    return job


def claim_next(
    db: Session,
    queue: str,
    *,
    visibility_timeout_seconds: int,
) -> Optional[Job]:
    now = _now_utc()
    job = (
        db.query(Job)
        .filter(
            Job.queue == queue,
            or_(
                and_(Job.status == STATUS_WAITING, Job.run_at <= now),
                # Claimed by a worker that never acknowledged it.
                and_(Job.status == STATUS_ACTIVE, Job.locked_until < now),
            ),
        )
        .order_by(Job.run_at.asc(), Job.created_at.asc())
        .with_for_update(skip_locked=True)
        .first()
    )
    if job is None:
        return None

    if job.status == STATUS_ACTIVE:
        logger.warning(
            "[job_queue] visibility timeout expired, redelivering job_id=%s attempts_made=%s",
            job.id, job.attempts_made,
        )

    job.status = STATUS_ACTIVE
    job.attempts_made = int(job.attempts_made or 0) + 1
    job.locked_until = now + timedelta(seconds=visibility_timeout_seconds)
    db.commit()
    return job


def complete(db: Session, job: Job, result: Optional[Dict[str, Any]] = None) -> None:
    job.status = STATUS_COMPLETED
    job.result = result
    job.progress = 100
    job.locked_until = None
    job.finished_at = _now_utc()
    db.commit()
    logger.info("[job_queue] completed job_id=%s queue=%s", job.id, job.queue)


def fail(db: Session, job: Job, error: str, *, retryable: bool) -> bool:
    """Record a failed attempt. Returns True when the job is dead (no retry left)."""

    job.last_error = error
    job.locked_until = None

    if retryable and int(job.attempts_made or 0) < int(job.max_attempts or 1):
        delay = backoff_delay_ms(job)
        job.status = STATUS_WAITING
        job.run_at = _now_utc() + timedelta(milliseconds=delay)
        db.commit()
        logger.warning(
            "[job_queue] job_id=%s attempt %s/%s failed, retrying in %sms: %s",
            job.id, job.attempts_made, job.max_attempts, delay, error,
        )
        return False

    job.status = STATUS_FAILED
    job.finished_at = _now_utc()
    db.commit()
    logger.error(
        "[job_queue] job_id=%s failed permanently after %s attempt(s): %s",
        job.id, job.attempts_made, error,
    )
    return True


def is_final_attempt(job: Job) -> bool:
    return int(job.attempts_made or 0) >= int(job.max_attempts or 1)


def update_progress(db: Session, job_id: str, percent: int) -> None:
    job = db.get(Job, job_id)
    if job is None:
        return
    job.progress = max(0, min(100, int(percent)))
    db.commit()
