"""Operations exposed to the API layer for one (tenant, marketplace) pair.

Every function takes the tenant id explicitly; nothing here reads a
process-wide "current tenant".
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from sqlalchemy.orm import Session

from marketsync.config import settings
from marketsync.models_sqlalchemy.models import Integration, IntegrationStatus, Marketplace, OAuthState
from marketsync.models_sqlalchemy.sync_workers import Job
from marketsync.services.errors import (
    IntegrationNotFoundError,
    InvalidOAuthStateError,
    MarketplaceError,
)
from marketsync.services.marketplaces import get_adapter, parse_marketplace
from marketsync.services.marketplaces.base import MarketplaceAdapter, SyncWindow
from marketsync.services.sync_orchestrator import MODE_PAGED, enqueue_sync
from marketsync.services.sync_runs import is_sync_fresh
from marketsync.utils.logger import logger, token_fingerprint


class SyncRequestRejected(Exception):
    """A sync request that cannot be accepted in the integration's current state."""

    def __init__(self, reason: str, status: IntegrationStatus):
        self.reason = reason
        self.status = status
        super().__init__(f"{reason} (status={status.value})")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def find_integration(db: Session, tenant_id: str, marketplace: Union[str, Marketplace]) -> Optional[Integration]:
    marketplace = parse_marketplace(marketplace)
    return (
        db.query(Integration)
        .filter(Integration.tenant_id == tenant_id, Integration.marketplace == marketplace)
        .one_or_none()
    )


def serialize_integration(integration: Integration) -> Dict[str, Any]:
    """Public view of an integration. Tokens are never included."""

    return {
        "id": integration.id,
        "tenant_id": integration.tenant_id,
        "marketplace": integration.marketplace.value,
        "status": integration.status.value,
        "seller_id": integration.seller_id,
        "connected": bool(integration._access_token),
        "token_expires_at": integration.token_expires_at.isoformat() if integration.token_expires_at else None,
        "last_sync_at": integration.last_sync_at.isoformat() if integration.last_sync_at else None,
        "sync_error": integration.sync_error,
        "current_run_id": integration.current_run_id,
        "updated_at": integration.updated_at.isoformat() if integration.updated_at else None,
    }


def connect(
    db: Session,
    tenant_id: str,
    marketplace: Union[str, Marketplace],
    *,
    adapter: Optional[MarketplaceAdapter] = None,
) -> Dict[str, str]:
    """Start the OAuth dance: persist a single-use state and build the consent URL."""

    marketplace = parse_marketplace(marketplace)
    adapter = adapter or get_adapter(marketplace)

    state = secrets.token_urlsafe(32)
    now = _now_utc()
    db.add(
        OAuthState(
            state=state,
            tenant_id=tenant_id,
            marketplace=marketplace,
            created_at=now,
            expires_at=now + timedelta(seconds=settings.OAUTH_STATE_TTL_SECONDS),
        )
    )
    db.commit()

    auth_url = adapter.get_auth_url(state)
    logger.info("[integrations] connect started tenant_id=%s marketplace=%s", tenant_id, marketplace.value)
    return {"auth_url": auth_url, "state": state}


def _consume_state(db: Session, state: str, marketplace: Optional[Marketplace] = None) -> OAuthState:
    row = (
        db.query(OAuthState)
        .filter(OAuthState.state == state)
        .with_for_update()
        .one_or_none()
    )
    if row is None:
        raise InvalidOAuthStateError("unknown oauth state")
    if marketplace is not None and row.marketplace != marketplace:
        raise InvalidOAuthStateError(f"oauth state was issued for {row.marketplace.value}")
    if row.consumed_at is not None:
        raise InvalidOAuthStateError("oauth state already used")
    if _as_utc(row.expires_at) < _now_utc():
        raise InvalidOAuthStateError("oauth state expired")
    row.consumed_at = _now_utc()
    return row


async def handle_oauth_callback(
    db: Session,
    state: str,
    code: str,
    params: Optional[Mapping[str, str]] = None,
    *,
    adapter: Optional[MarketplaceAdapter] = None,
    expected_marketplace: Optional[Marketplace] = None,
) -> Integration:
    """Exchange the authorization code and upsert the integration as ACTIVE.

    The state row is consumed before the exchange so a replayed callback
    cannot mint a second grant. An initial sync over the default window is
    queued once the tokens are stored.
    """

    if not state or not code:
        raise InvalidOAuthStateError("state and code are required")

    oauth_state = _consume_state(db, state, expected_marketplace)
    tenant_id = oauth_state.tenant_id
    marketplace = oauth_state.marketplace
    db.commit()

    adapter = adapter or get_adapter(marketplace)
    tokens = await adapter.exchange_code(code, params or {})

    now = _now_utc()
    integration = find_integration(db, tenant_id, marketplace)
    if integration is None:
        integration = Integration(tenant_id=tenant_id, marketplace=marketplace)
        db.add(integration)

    integration.access_token = tokens.access_token
    integration.refresh_token = tokens.refresh_token
    integration.token_expires_at = tokens.expires_at(now)
    integration.last_refreshed_at = now
    if tokens.seller_id:
        integration.seller_id = tokens.seller_id
    integration.status = IntegrationStatus.ACTIVE
    integration.sync_error = None
    integration.current_run_id = None
    integration.sync_heartbeat_at = None
    db.commit()
    db.refresh(integration)

    logger.info(
        "[integrations] connected tenant_id=%s marketplace=%s seller_id=%s token_hash=%s",
        tenant_id, marketplace.value, integration.seller_id, token_fingerprint(tokens.access_token),
    )

    enqueue_sync(db, integration, trigger="oauth", mode=MODE_PAGED)
    return integration


async def disconnect(
    db: Session,
    tenant_id: str,
    marketplace: Union[str, Marketplace],
    *,
    adapter: Optional[MarketplaceAdapter] = None,
) -> bool:
    """Revoke (best effort), clear tokens and set INACTIVE. Returns False when
    there was nothing to disconnect."""

    integration = find_integration(db, tenant_id, marketplace)
    if integration is None:
        return False

    access_token = integration.access_token
    if access_token:
        adapter = adapter or get_adapter(integration.marketplace)
        try:
            await adapter.revoke_token(access_token)
        except MarketplaceError as exc:
            logger.warning(
                "[integrations] token revocation failed integration_id=%s error=%s", integration.id, exc,
            )

    integration.access_token = None
    integration.refresh_token = None
    integration.token_expires_at = None
    integration.status = IntegrationStatus.INACTIVE
    integration.current_run_id = None
    integration.sync_heartbeat_at = None
    db.commit()

    logger.info(
        "[integrations] disconnected tenant_id=%s marketplace=%s integration_id=%s",
        tenant_id, integration.marketplace.value, integration.id,
    )
    return True


def request_sync(
    db: Session,
    tenant_id: str,
    marketplace: Union[str, Marketplace],
    window: Optional[SyncWindow] = None,
) -> Job:
    """Accept a manual sync request and queue it.

    Raises IntegrationNotFoundError or SyncRequestRejected. Repeated requests
    inside the dedupe window return the already queued job.
    """

    integration = find_integration(db, tenant_id, marketplace)
    if integration is None:
        raise IntegrationNotFoundError(f"no {parse_marketplace(marketplace).value} integration for tenant")

    if integration.status == IntegrationStatus.SYNCING and is_sync_fresh(integration):
        raise SyncRequestRejected("sync_in_progress", integration.status)
    if integration.status not in (IntegrationStatus.ACTIVE, IntegrationStatus.SYNCING):
        raise SyncRequestRejected("integration_not_active", integration.status)

    return enqueue_sync(db, integration, trigger="manual", mode=MODE_PAGED, window=window)


def get_status(db: Session, tenant_id: str, marketplace: Union[str, Marketplace]) -> Optional[Integration]:
    return find_integration(db, tenant_id, marketplace)


def list_integrations(db: Session, tenant_id: str) -> List[Integration]:
    return (
        db.query(Integration)
        .filter(Integration.tenant_id == tenant_id)
        .order_by(Integration.marketplace)
        .all()
    )
