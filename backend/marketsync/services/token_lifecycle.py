"""Access-token renewal for marketplace integrations.

Single entry point for every caller that needs to talk to a marketplace on
behalf of an integration (sync jobs, webhook processing, disconnect).

Usage:
    from marketsync.services.token_lifecycle import ensure_valid_token

    access_token = await ensure_valid_token(db, integration)

Policy:
- A token valid for longer than the safety margin is returned unchanged,
  with no writes and no network calls.
- Otherwise the adapter's refresh operation runs once. The new token pair
  and expiry are persisted before the new access token is returned.
- A failed refresh is not retried here. ``TokenRefreshError`` propagates
  and the caller moves the integration to ERROR; transient upstream
  failures propagate as ``TransientUpstreamError`` for job-level retry.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from marketsync.config import settings
from marketsync.models_sqlalchemy.models import Integration
from marketsync.services.errors import MarketplaceAuthError, TokenRefreshError, TransientUpstreamError
from marketsync.services.marketplaces import MarketplaceAdapter, get_adapter
from marketsync.utils.logger import logger, token_fingerprint


def _normalize_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def needs_refresh(integration: Integration, *, now: Optional[datetime] = None) -> bool:
    if not integration.access_token:
        return True
    expires_at = _normalize_datetime(integration.token_expires_at)
    if expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    margin = timedelta(minutes=settings.TOKEN_REFRESH_MARGIN_MINUTES)
    return expires_at - now <= margin


async def ensure_valid_token(
    db: Session,
    integration: Integration,
    *,
    adapter: Optional[MarketplaceAdapter] = None,
    now: Optional[datetime] = None,
) -> str:
    now = now or datetime.now(timezone.utc)

    if not needs_refresh(integration, now=now):
        return integration.access_token

    refresh_token = integration.refresh_token
    if not refresh_token:
        raise TokenRefreshError(
            integration.marketplace,
            "no refresh token stored; the integration must be reconnected",
        )

    adapter = adapter or get_adapter(integration.marketplace)
    logger.info(
        "[token_lifecycle] refreshing token integration_id=%s marketplace=%s expires_at=%s",
        integration.id, integration.marketplace.value, integration.token_expires_at,
    )

    try:
        tokens = await adapter.refresh_token(refresh_token, seller_id=integration.seller_id)
    except TransientUpstreamError:
        logger.warning(
            "[token_lifecycle] transient failure refreshing integration_id=%s", integration.id,
        )
        raise
    except MarketplaceAuthError as exc:
        logger.error(
            "[token_lifecycle] refresh rejected integration_id=%s error=%s", integration.id, exc,
        )
        raise TokenRefreshError(integration.marketplace, exc.message, status_code=exc.status_code) from exc

    integration.access_token = tokens.access_token
    integration.refresh_token = tokens.refresh_token or refresh_token
    integration.token_expires_at = tokens.expires_at(now)
    integration.last_refreshed_at = now
    if tokens.seller_id and not integration.seller_id:
        integration.seller_id = tokens.seller_id
    db.commit()

    logger.info(
        "[token_lifecycle] token refreshed integration_id=%s token_hash=%s expires_at=%s",
        integration.id, token_fingerprint(tokens.access_token), integration.token_expires_at,
    )
    return tokens.access_token
