"""Turns stored webhook events into order reconciliations.

Runs on the webhook-processing queue, one event per job. An event is marked
processed once its outcome is known, including outcomes that need no work
(unknown seller, unhandled topic). Transient upstream failures propagate so
the queue retries the job; the event stays unprocessed until then, and a job
that runs out of attempts closes the event with its last error.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from marketsync.models_sqlalchemy.models import Integration, IntegrationStatus, WebhookEvent
from marketsync.services.errors import MarketplaceAuthError, MarketplaceError, RecordError, TransientUpstreamError
from marketsync.services.marketplaces import get_adapter
from marketsync.services.marketplaces.base import (
    KIND_ORDER,
    KIND_ORDER_STATUS,
    KIND_PAYMENT,
    KIND_SHIPMENT,
    KIND_SUBSCRIPTION,
    MarketplaceAdapter,
)
from marketsync.services.order_reconciler import reconcile, update_order_status
from marketsync.services.token_lifecycle import ensure_valid_token
from marketsync.utils.logger import logger


def _mark(db: Session, event: WebhookEvent, *, error: Optional[str] = None) -> None:
    event.processed = True
    event.processed_at = datetime.now(timezone.utc)
    event.error = error
    db.commit()


def _find_integration(db: Session, event: WebhookEvent, seller_id: Optional[str]) -> Optional[Integration]:
    if not seller_id:
        return None
    return (
        db.query(Integration)
        .filter(
            Integration.marketplace == event.marketplace,
            Integration.seller_id == str(seller_id),
            Integration.status != IntegrationStatus.INACTIVE,
        )
        .first()
    )


async def _fetch_and_reconcile(
    db: Session,
    integration: Integration,
    adapter: MarketplaceAdapter,
    access_token: str,
    external_order_id: str,
) -> str:
    raw = await adapter.fetch_order(access_token, integration.seller_id, external_order_id)
    normalized = adapter.normalize_order(raw)
    reconcile(
        db,
        integration.tenant_id,
        integration.marketplace,
        normalized.external_order_id,
        normalized,
        integration_id=integration.id,
    )
    db.commit()
    return "reconciled"


async def process_webhook_event(
    db: Session,
    event_id: str,
    *,
    adapter: Optional[MarketplaceAdapter] = None,
) -> Dict[str, Any]:
    event = db.get(WebhookEvent, event_id)
    if event is None:
        logger.warning("[webhooks] event not found event_id=%s", event_id)
        return {"event_id": event_id, "outcome": "missing"}
    if event.processed:
        return {"event_id": event_id, "outcome": "already_processed"}

    adapter = adapter or get_adapter(event.marketplace)
    notification = adapter.decode_webhook(event.payload or {}, event.headers or {})

    if notification.kind == KIND_SUBSCRIPTION:
        await adapter.confirm_subscription(notification)
        _mark(db, event)
        logger.info("[webhooks] subscription confirmed event_id=%s", event.id)
        return {"event_id": event_id, "outcome": "subscription_confirmed"}

    if notification.kind not in (KIND_ORDER, KIND_ORDER_STATUS, KIND_SHIPMENT, KIND_PAYMENT):
        _mark(db, event, error=f"unhandled event type {notification.event_type!r}")
        return {"event_id": event_id, "outcome": "ignored"}

    integration = _find_integration(db, event, notification.seller_id)
    if integration is None:
        logger.warning(
            "[webhooks] no integration for seller event_id=%s marketplace=%s seller_id=%s",
            event.id, event.marketplace.value, notification.seller_id,
        )
        _mark(db, event, error=f"no integration for seller {notification.seller_id}")
        return {"event_id": event_id, "outcome": "unknown_seller"}

    try:
        if notification.kind == KIND_ORDER_STATUS and notification.external_order_id:
            changed = update_order_status(
                db,
                integration.tenant_id,
                integration.marketplace,
                notification.external_order_id,
                adapter.map_status(notification.native_status),
            )
            if changed is not None:
                db.commit()
                _mark(db, event)
                return {"event_id": event_id, "outcome": "status_updated" if changed else "unchanged"}

        access_token = await ensure_valid_token(db, integration, adapter=adapter)
        external_order_id = notification.external_order_id
        if notification.kind in (KIND_SHIPMENT, KIND_PAYMENT):
            external_order_id = await adapter.resolve_order_id(access_token, notification)
        if not external_order_id:
            _mark(db, event, error="could not resolve order id")
            return {"event_id": event_id, "outcome": "ignored"}

        outcome = await _fetch_and_reconcile(db, integration, adapter, access_token, external_order_id)
    except TransientUpstreamError:
        db.rollback()
        raise
    except MarketplaceAuthError as exc:
        db.rollback()
        # The grant is unusable; surface it on the integration so a human reconnects.
        if integration.status != IntegrationStatus.SYNCING:
            integration.status = IntegrationStatus.ERROR
        integration.sync_error = str(exc)
        logger.error("[webhooks] auth failure event_id=%s integration_id=%s error=%s", event.id, integration.id, exc)
        _mark(db, event, error=str(exc))
        return {"event_id": event_id, "outcome": "failed", "error": str(exc)}
    except (RecordError, MarketplaceError) as exc:
        db.rollback()
        logger.error("[webhooks] processing failed event_id=%s error=%s", event.id, exc)
        _mark(db, event, error=str(exc))
        return {"event_id": event_id, "outcome": "failed", "error": str(exc)}

    _mark(db, event)
    logger.info(
        "[webhooks] processed event_id=%s kind=%s outcome=%s", event.id, notification.kind, outcome,
    )
    return {"event_id": event_id, "outcome": outcome}


def record_final_failure(db: Session, event_id: Optional[str], error: str) -> None:
    """Close out an event whose processing job has no attempts left."""

    event = db.get(WebhookEvent, event_id) if event_id else None
    if event is None or event.processed:
        return
    logger.error("[webhooks] giving up on event event_id=%s error=%s", event.id, error)
    _mark(db, event, error=f"processing failed: {error}")
