from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from marketsync.config import settings
from marketsync.models_sqlalchemy.models import Integration, IntegrationStatus
from marketsync.models_sqlalchemy.sync_workers import SyncRun
from marketsync.services.marketplaces.base import SyncWindow
from marketsync.utils.logger import logger


RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_ERROR = "error"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _lock_integration(db: Session, integration_id: str) -> Optional[Integration]:
    return (
        db.query(Integration)
        .filter(Integration.id == integration_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def is_sync_fresh(integration: Integration, *, now: Optional[datetime] = None) -> bool:
    """True while a SYNCING marker is backed by a recent heartbeat."""

    if integration.status != IntegrationStatus.SYNCING:
        return False
    heartbeat = _as_utc(integration.sync_heartbeat_at)
    if heartbeat is None:
        return False
    cutoff = (now or _now_utc()) - timedelta(minutes=settings.SYNC_STALE_MINUTES)
    return heartbeat >= cutoff


def begin_sync(
    db: Session,
    integration_id: str,
    *,
    window: SyncWindow,
    trigger: str,
) -> Optional[SyncRun]:
    """Claim the integration for a new sync pass.

    The Integration row lock serializes concurrent claimers; SYNCING with a
    fresh heartbeat means another pass is in flight and the claim is
    rejected (None). ERROR/INACTIVE integrations are never claimed.
    """

    integration = _lock_integration(db, integration_id)
    if integration is None:
        logger.warning("[sync] integration not found integration_id=%s", integration_id)
        db.rollback()
        return None

    if integration.status in (IntegrationStatus.INACTIVE, IntegrationStatus.ERROR):
        logger.info(
            "[sync] integration not syncable integration_id=%s status=%s",
            integration_id, integration.status.value,
        )
        db.rollback()
        return None

    if integration.status == IntegrationStatus.SYNCING:
        if is_sync_fresh(integration):
            logger.info(
                "[sync] sync already in progress integration_id=%s run_id=%s",
                integration_id, integration.current_run_id,
            )
            db.rollback()
            return None
        logger.warning(
            "[sync] taking over stale SYNCING marker integration_id=%s run_id=%s heartbeat=%s",
            integration_id, integration.current_run_id, integration.sync_heartbeat_at,
        )
        stale = db.get(SyncRun, integration.current_run_id) if integration.current_run_id else None
        if stale is not None and stale.status == RUN_RUNNING:
            stale.status = RUN_ERROR
            stale.finished_at = _now_utc()

    now = _now_utc()
    run = SyncRun(
        id=str(uuid4()),
        integration_id=integration.id,
        tenant_id=integration.tenant_id,
        marketplace=integration.marketplace.value,
        trigger=trigger,
        status=RUN_RUNNING,
        window_from=window.start,
        window_to=window.end,
        cursor=None,
        pages_processed=0,
        cursor_advances=0,
        orders_reconciled=0,
        errors=[],
        started_at=now,
        heartbeat_at=now,
    )
    db.add(run)
    integration.status = IntegrationStatus.SYNCING
    integration.current_run_id = run.id
    integration.sync_heartbeat_at = now
    db.commit()
    logger.info(
        "[sync] started run_id=%s integration_id=%s marketplace=%s trigger=%s",
        run.id, integration.id, integration.marketplace.value, trigger,
    )
    return run


def resume_sync(db: Session, integration_id: str, run_id: str) -> Optional[SyncRun]:
    """Re-enter a queue-driven run for its next page.

    Only the job carrying the run id that holds the SYNCING marker may
    continue; anything else is a duplicate delivery and is dropped.
    """

    integration = _lock_integration(db, integration_id)
    run = db.get(SyncRun, run_id)
    if (
        integration is None
        or run is None
        or run.status != RUN_RUNNING
        or integration.status != IntegrationStatus.SYNCING
        or integration.current_run_id != run_id
    ):
        logger.info(
            "[sync] continuation dropped integration_id=%s run_id=%s", integration_id, run_id,
        )
        db.rollback()
        return None

    heartbeat(db, integration, run)
    return run


def heartbeat(db: Session, integration: Integration, run: SyncRun) -> None:
    now = _now_utc()
    run.heartbeat_at = now
    integration.sync_heartbeat_at = now
    db.commit()


def record_page(
    db: Session,
    integration: Integration,
    run: SyncRun,
    *,
    next_cursor: Optional[str],
    reconciled: int,
    errors: List[str],
) -> None:
    run.cursor = next_cursor
    run.pages_processed = int(run.pages_processed or 0) + 1
    run.cursor_advances = int(run.cursor_advances or 0) + 1
    run.orders_reconciled = int(run.orders_reconciled or 0) + reconciled
    if errors:
        # Reassign so the JSON column is flagged dirty.
        run.errors = list(run.errors or []) + list(errors)
    heartbeat(db, integration, run)


def finish_sync(db: Session, integration: Integration, run: SyncRun) -> None:
    """SYNCING -> ACTIVE. Partial record failures still count as progress."""

    now = _now_utc()
    errors = list(run.errors or [])
    run.status = RUN_COMPLETED
    run.finished_at = now
    run.heartbeat_at = now
    integration.status = IntegrationStatus.ACTIVE
    integration.last_sync_at = now
    integration.sync_error = "; ".join(errors) if errors else None
    integration.current_run_id = None
    integration.sync_heartbeat_at = None
    db.commit()
    logger.info(
        "[sync] completed run_id=%s integration_id=%s pages=%s orders=%s errors=%s",
        run.id, integration.id, run.pages_processed, run.orders_reconciled, len(errors),
    )


def fail_sync(
    db: Session,
    integration: Integration,
    run: Optional[SyncRun],
    *,
    error_message: str,
    terminal: bool,
) -> None:
    """Release the SYNCING marker after a failed pass.

    Terminal failures move the integration to ERROR. Non-terminal ones put
    it back to ACTIVE so the next sweep can claim it again.
    """

    now = _now_utc()
    if run is not None:
        run.status = RUN_ERROR
        run.finished_at = now
        run.heartbeat_at = now
        run.errors = list(run.errors or []) + [error_message]
    integration.status = IntegrationStatus.ERROR if terminal else IntegrationStatus.ACTIVE
    integration.sync_error = error_message
    integration.current_run_id = None
    integration.sync_heartbeat_at = None
    db.commit()
    log = logger.error if terminal else logger.warning
    log(
        "[sync] run failed run_id=%s integration_id=%s terminal=%s error=%s",
        run.id if run is not None else None, integration.id, terminal, error_message,
    )
