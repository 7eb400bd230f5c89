"""Job queue worker pool.

Claims jobs from the order-sync and webhook-processing queues and runs up
to ``WORKER_CONCURRENCY`` of them at once, each with its own session. Jobs
for different integrations are independent; two sync jobs for the same
integration are serialized by the SYNCING marker, not by this loop.

Used two ways:
- :func:`run_job_worker_loop` and :func:`run_cron_sweep_loop` are started by
  the FastAPI app on startup (see marketsync.main).
- Standalone via ``python -m marketsync.workers.job_worker_loop``.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from sqlalchemy.orm import Session

from marketsync.config import settings
from marketsync.models_sqlalchemy import SessionLocal
from marketsync.models_sqlalchemy.sync_workers import Job
from marketsync.services import job_queue
from marketsync.services.errors import TransientUpstreamError
from marketsync.services.sync_orchestrator import JOB_SYNC_ORDERS, run_sync_job, sweep_active_integrations
from marketsync.services.webhook_ingestor import JOB_PROCESS_WEBHOOK
from marketsync.services.webhook_processor import process_webhook_event, record_final_failure
from marketsync.utils.logger import logger


QUEUES = (job_queue.SYNC_QUEUE, job_queue.WEBHOOK_QUEUE)


async def _process_webhook_job(db: Session, job: Job) -> Dict[str, Any]:
    return await process_webhook_event(db, job.payload["event_id"])


HANDLERS: Dict[str, Callable[[Session, Job], Awaitable[Dict[str, Any]]]] = {
    JOB_SYNC_ORDERS: run_sync_job,
    JOB_PROCESS_WEBHOOK: _process_webhook_job,
}


async def execute_job(db: Session, job: Job) -> Optional[Dict[str, Any]]:
    """Run one claimed job and acknowledge it. Never raises."""

    handler = HANDLERS.get(job.name)
    if handler is None:
        job_queue.fail(db, job, f"no handler for job name {job.name!r}", retryable=False)
        return None

    try:
        result = await handler(db, job)
    except Exception as exc:
        db.rollback()
        retryable = isinstance(exc, TransientUpstreamError)
        if not retryable:
            logger.error("[worker] job_id=%s name=%s failed", job.id, job.name, exc_info=True)
        dead = job_queue.fail(db, job, str(exc), retryable=retryable)
        if dead and job.name == JOB_PROCESS_WEBHOOK:
            record_final_failure(db, (job.payload or {}).get("event_id"), str(exc))
        return None

    job_queue.complete(db, job, result)
    return result


async def _run_claimed(job_id: str) -> None:
    db = SessionLocal()
    try:
        job = db.get(Job, job_id)
        if job is not None:
            await execute_job(db, job)
    except Exception:
        # Bookkeeping itself failed (database down); the visibility timeout redelivers.
        logger.error("[worker] job bookkeeping failed job_id=%s", job_id, exc_info=True)
    finally:
        db.close()


def claim_batch(limit: int) -> list[str]:
    """Claim up to ``limit`` due jobs across all queues."""

    claimed: list[str] = []
    db = SessionLocal()
    try:
        for queue in QUEUES:
            while len(claimed) < limit:
                job = job_queue.claim_next(
                    db, queue, visibility_timeout_seconds=settings.JOB_VISIBILITY_TIMEOUT_SECONDS,
                )
                if job is None:
                    break
                claimed.append(job.id)
    finally:
        db.close()
    return claimed


async def run_job_worker_loop(concurrency: Optional[int] = None) -> None:
    concurrency = concurrency or settings.WORKER_CONCURRENCY
    in_flight: Set[asyncio.Task] = set()
    logger.info(
        "[worker] job worker loop started concurrency=%s poll_interval=%ss",
        concurrency, settings.WORKER_POLL_INTERVAL_SECONDS,
    )

    while True:
        job_ids: list[str] = []
        try:
            free = concurrency - len(in_flight)
            if free > 0:
                job_ids = claim_batch(free)
            for job_id in job_ids:
                task = asyncio.create_task(_run_claimed(job_id))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        except Exception as e:
            logger.error(f"[worker] job worker loop error: {str(e)}", exc_info=True)

        await asyncio.sleep(0 if job_ids else settings.WORKER_POLL_INTERVAL_SECONDS)


async def run_cron_sweep_loop(interval_seconds: Optional[int] = None) -> None:
    """Queue a sync for every ACTIVE integration on a fixed interval."""

    interval = interval_seconds or settings.CRON_SWEEP_INTERVAL_SECONDS
    logger.info("[worker] cron sweep loop started interval=%ss", interval)

    while True:
        db = SessionLocal()
        try:
            result = sweep_active_integrations(db, trigger="cron")
            logger.info(f"[worker] cron sweep completed: queued={result['queued']}")
        except Exception as e:
            logger.error(f"[worker] cron sweep error: {str(e)}", exc_info=True)
        finally:
            db.close()

        await asyncio.sleep(interval)


async def _main() -> None:
    await asyncio.gather(run_job_worker_loop(), run_cron_sweep_loop())


if __name__ == "__main__":
    asyncio.run(_main())
