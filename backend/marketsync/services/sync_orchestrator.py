"""Drives one marketplace adapter through a paginated order sync.

Integration status during a pass: ACTIVE -> SYNCING -> {ACTIVE, ERROR}.

Two execution modes share the same page loop:

- ``full`` (cron sweeps): every page is fetched inside one execution.
- ``paged`` (manual / OAuth-triggered): one page per job; when more pages
  remain a continuation job carrying the run id and cursor is enqueued
  with a fixed delay, as a courtesy to upstream rate limits.

Per-record failures are collected on the SyncRun and joined into
``Integration.sync_error`` at the end; they never abort a page. Failures of
the adapter call itself are classified by type:

- TransientUpstreamError: the SYNCING marker is kept and the error is
  re-raised so the queue retries the job; on the final attempt the
  integration moves to ERROR.
- any other MarketplaceError (auth, unsupported, bad request): ERROR at once.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from marketsync.config import settings
from marketsync.models_sqlalchemy.models import Integration, IntegrationStatus
from marketsync.models_sqlalchemy.sync_workers import Job, SyncRun
from marketsync.services import job_queue
from marketsync.services.errors import MarketplaceError, RecordError, TransientUpstreamError
from marketsync.services.marketplaces import MarketplaceAdapter, get_adapter
from marketsync.services.marketplaces.base import OrdersPage, SyncWindow
from marketsync.services.order_reconciler import reconcile, tax_config_for_tenant
from marketsync.services.profit_calculator import TaxConfig
from marketsync.services.sync_runs import (
    begin_sync,
    fail_sync,
    finish_sync,
    heartbeat,
    record_page,
    resume_sync,
)
from marketsync.services.token_lifecycle import ensure_valid_token
from marketsync.utils.logger import logger


MODE_FULL = "full"
MODE_PAGED = "paged"
JOB_SYNC_ORDERS = "sync-orders"


@dataclass
class SyncOutcome:
    status: str  # completed, continued, skipped
    integration_id: str
    run_id: Optional[str] = None
    pages_processed: int = 0
    cursor_advances: int = 0
    orders_reconciled: int = 0
    errors: List[str] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _outcome(status: str, integration_id: str, run: SyncRun) -> SyncOutcome:
    return SyncOutcome(
        status=status,
        integration_id=integration_id,
        run_id=run.id,
        pages_processed=int(run.pages_processed or 0),
        cursor_advances=int(run.cursor_advances or 0),
        orders_reconciled=int(run.orders_reconciled or 0),
        errors=list(run.errors or []),
    )


def _progress_percent(run: SyncRun, page: OrdersPage) -> int:
    if page.total:
        return int(run.orders_reconciled * 100 / page.total)
    # No total from the marketplace; measure pages against the page cap.
    return min(99, int(run.pages_processed or 0) * 100 // max(1, settings.SYNC_MAX_PAGES))


def _run_window(run: SyncRun) -> SyncWindow:
    start, end = run.window_from, run.window_to
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    return SyncWindow(start=start, end=end)


def enqueue_sync(
    db: Session,
    integration: Integration,
    *,
    trigger: str,
    mode: str = MODE_PAGED,
    window: Optional[SyncWindow] = None,
    run_id: Optional[str] = None,
    delay_ms: int = 0,
) -> Job:
    """Queue a sync job. Fresh requests are deduplicated per integration;
    continuations (``run_id`` set) never are."""

    window = window or SyncWindow.last_days(settings.DEFAULT_SYNC_WINDOW_DAYS)
    payload: Dict[str, Any] = {
        "integration_id": integration.id,
        "tenant_id": integration.tenant_id,
        "marketplace": integration.marketplace.value,
        "window": window.to_dict(),
        "trigger": trigger,
        "mode": mode,
    }
    if run_id:
        payload["run_id"] = run_id

    return job_queue.enqueue(
        db,
        job_queue.SYNC_QUEUE,
        JOB_SYNC_ORDERS,
        payload,
        attempts=settings.SYNC_JOB_ATTEMPTS,
        backoff_delay_ms=settings.SYNC_JOB_BACKOFF_MS,
        delay_ms=delay_ms,
        dedupe_key=None if run_id else f"sync:{integration.id}",
        dedupe_window_seconds=None if run_id else settings.SYNC_DEDUPE_WINDOW_SECONDS,
    )


def process_page(
    db: Session,
    integration: Integration,
    adapter: MarketplaceAdapter,
    page: OrdersPage,
    *,
    tax: TaxConfig,
) -> Tuple[int, List[str]]:
    """Reconcile every record of one page in upstream order.

    Returns (reconciled count, collected error messages).
    """

    reconciled = 0
    errors: List[str] = []
    for raw in page.records:
        try:
            normalized = adapter.normalize_order(raw)
            reconcile(
                db,
                integration.tenant_id,
                integration.marketplace,
                normalized.external_order_id,
                normalized,
                integration_id=integration.id,
                tax=tax,
            )
            reconciled += 1
        except RecordError as exc:
            logger.warning(
                "[sync] record skipped integration_id=%s error=%s", integration.id, exc,
            )
            errors.append(str(exc))
    return reconciled, errors


async def execute_sync(
    db: Session,
    integration_id: str,
    *,
    trigger: str,
    mode: str = MODE_FULL,
    window: Optional[SyncWindow] = None,
    run_id: Optional[str] = None,
    adapter: Optional[MarketplaceAdapter] = None,
    job: Optional[Job] = None,
) -> SyncOutcome:
    window = window or SyncWindow.last_days(settings.DEFAULT_SYNC_WINDOW_DAYS)

    if run_id:
        run = resume_sync(db, integration_id, run_id)
    else:
        run = begin_sync(db, integration_id, window=window, trigger=trigger)
    if run is None:
        return SyncOutcome(status="skipped", integration_id=integration_id, run_id=run_id, reason="not_claimable")

    if job is not None and job.payload.get("run_id") != run.id:
        # Retries of this job must resume the run, not start a new one.
        job.payload = {**job.payload, "run_id": run.id}
        db.commit()

    integration = db.get(Integration, integration_id)
    window = _run_window(run)

    try:
        adapter = adapter or get_adapter(integration.marketplace)
        access_token = await ensure_valid_token(db, integration, adapter=adapter)
        tax = tax_config_for_tenant(db, integration.tenant_id)

        while True:
            page_no = int(run.pages_processed or 0) + 1
            page = await adapter.fetch_orders_page(access_token, integration.seller_id, window, run.cursor)
            reconciled, errors = process_page(db, integration, adapter, page, tax=tax)

            has_more = page.has_more and bool(page.next_cursor)
            if page.has_more and not page.next_cursor:
                logger.warning(
                    "[sync] adapter reported more pages without a cursor integration_id=%s page=%s",
                    integration.id, page_no,
                )
            record_page(
                db, integration, run,
                next_cursor=page.next_cursor if has_more else None,
                reconciled=reconciled,
                errors=errors,
            )
            logger.info(
                "[sync] page done integration_id=%s run_id=%s page=%s fetched=%s reconciled=%s errors=%s has_more=%s",
                integration.id, run.id, page_no, len(page.records), reconciled, len(errors), has_more,
            )

            if job is not None:
                job_queue.update_progress(db, job.id, _progress_percent(run, page))

            if not has_more:
                finish_sync(db, integration, run)
                return _outcome("completed", integration_id, run)

            if int(run.pages_processed) >= settings.SYNC_MAX_PAGES:
                logger.warning(
                    "[sync] page cap reached integration_id=%s run_id=%s pages=%s",
                    integration.id, run.id, run.pages_processed,
                )
                run.errors = list(run.errors or []) + [
                    f"stopped after {settings.SYNC_MAX_PAGES} pages; remaining orders sync on the next run"
                ]
                finish_sync(db, integration, run)
                return _outcome("completed", integration_id, run)

            if mode == MODE_PAGED:
                enqueue_sync(
                    db,
                    integration,
                    trigger=run.trigger,
                    mode=MODE_PAGED,
                    window=window,
                    run_id=run.id,
                    delay_ms=settings.SYNC_PAGE_DELAY_MS,
                )
                return _outcome("continued", integration_id, run)

    except TransientUpstreamError as exc:
        db.rollback()
        if job is not None and not job_queue.is_final_attempt(job):
            # Keep the SYNCING marker: the queue retry resumes this run.
            integration.sync_error = str(exc)
            heartbeat(db, integration, run)
            logger.warning(
                "[sync] transient failure, job will retry integration_id=%s attempt=%s/%s error=%s",
                integration.id, job.attempts_made, job.max_attempts, exc,
            )
        else:
            fail_sync(db, integration, run, error_message=str(exc), terminal=job is not None)
        raise
    except MarketplaceError as exc:
        db.rollback()
        fail_sync(db, integration, run, error_message=str(exc), terminal=True)
        raise
    except Exception as exc:
        logger.error("[sync] unexpected failure integration_id=%s", integration_id, exc_info=True)
        db.rollback()
        fail_sync(db, integration, run, error_message=f"unexpected error: {exc}", terminal=True)
        raise


async def run_full_sync(
    db: Session,
    integration_id: str,
    *,
    window: Optional[SyncWindow] = None,
    trigger: str = "cron",
    adapter: Optional[MarketplaceAdapter] = None,
) -> SyncOutcome:
    """Sync every page of ``window`` in this call (no queue involved)."""

    return await execute_sync(
        db, integration_id, trigger=trigger, mode=MODE_FULL, window=window, adapter=adapter,
    )


async def run_sync_job(
    db: Session,
    job: Job,
    *,
    adapter: Optional[MarketplaceAdapter] = None,
) -> Dict[str, Any]:
    payload = job.payload or {}
    window = SyncWindow.from_dict(payload["window"]) if payload.get("window") else None
    outcome = await execute_sync(
        db,
        payload["integration_id"],
        trigger=payload.get("trigger", "manual"),
        mode=payload.get("mode", MODE_PAGED),
        window=window,
        run_id=payload.get("run_id"),
        adapter=adapter,
        job=job,
    )
    return outcome.to_dict()


def sweep_active_integrations(
    db: Session,
    *,
    trigger: str = "cron",
    mode: str = MODE_FULL,
    window: Optional[SyncWindow] = None,
) -> Dict[str, Any]:
    """Queue a sync for every ACTIVE integration across all tenants."""

    integrations = (
        db.query(Integration)
        .filter(Integration.status == IntegrationStatus.ACTIVE)
        .order_by(Integration.last_sync_at.asc())
        .all()
    )
    job_ids: List[str] = []
    for integration in integrations:
        job = enqueue_sync(db, integration, trigger=trigger, mode=mode, window=window)
        job_ids.append(job.id)

    logger.info("[sync] sweep queued=%s trigger=%s", len(job_ids), trigger)
    return {"queued": len(job_ids), "job_ids": job_ids}
