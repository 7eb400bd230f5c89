from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from marketsync.models_sqlalchemy import get_db
from marketsync.models_sqlalchemy.models import Marketplace
from marketsync.services import integration_service
from marketsync.services.errors import (
    IntegrationNotFoundError,
    InvalidOAuthStateError,
    MarketplaceAuthError,
    MarketplaceError,
    UnsupportedMarketplaceError,
)
from marketsync.services.integration_service import SyncRequestRejected
from marketsync.services.marketplaces import parse_marketplace
from marketsync.services.marketplaces.base import SyncWindow
from marketsync.utils.logger import logger


router = APIRouter(prefix="/integrations", tags=["integrations"])


class SyncRequestPayload(BaseModel):
    days: Optional[int] = Field(None, ge=1, le=365, description="Sync the last N days; defaults to the configured window")


def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-ID")) -> str:
    tenant_id = x_tenant_id.strip()
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing_tenant_id")
    return tenant_id


def _marketplace_or_404(value: str) -> Marketplace:
    try:
        return parse_marketplace(value)
    except UnsupportedMarketplaceError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unsupported_marketplace") from exc


# ---------------------------------------------------------------------------
# Listing / status
# ---------------------------------------------------------------------------


@router.get("/")
async def list_integrations(
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    rows = integration_service.list_integrations(db, tenant_id)
    integrations = [integration_service.serialize_integration(row) for row in rows]
    return {"integrations": integrations, "count": len(integrations)}


@router.get("/{marketplace}")
async def get_integration_status(
    marketplace: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    integration = integration_service.get_status(db, tenant_id, _marketplace_or_404(marketplace))
    if integration is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="integration_not_found")
    return integration_service.serialize_integration(integration)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.post("/{marketplace}/connect")
async def connect_marketplace(
    marketplace: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Return the marketplace consent URL for the tenant to open."""

    return integration_service.connect(db, tenant_id, _marketplace_or_404(marketplace))


@router.get("/{marketplace}/callback")
async def oauth_callback(
    marketplace: str,
    request: Request,
    db: Session = Depends(get_db),
):
    """OAuth redirect target. The tenant comes from the stored state, not a header."""

    expected = _marketplace_or_404(marketplace)
    params = dict(request.query_params)
    state = params.pop("state", None)
    code = params.pop("code", None)

    try:
        integration = await integration_service.handle_oauth_callback(
            db, state or "", code or "", params, expected_marketplace=expected,
        )
    except InvalidOAuthStateError as exc:
        logger.warning("[integrations] oauth callback rejected marketplace=%s: %s", marketplace, exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except MarketplaceAuthError as exc:
        logger.error("[integrations] code exchange rejected marketplace=%s: %s", marketplace, exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="code_exchange_failed") from exc
    except MarketplaceError as exc:
        logger.error("[integrations] code exchange failed marketplace=%s: %s", marketplace, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="marketplace_unavailable") from exc

    return integration_service.serialize_integration(integration)


@router.delete("/{marketplace}")
async def disconnect_marketplace(
    marketplace: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    disconnected = await integration_service.disconnect(db, tenant_id, _marketplace_or_404(marketplace))
    if not disconnected:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="integration_not_found")
    return {"disconnected": True}


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@router.post("/{marketplace}/sync", status_code=status.HTTP_202_ACCEPTED)
async def request_sync(
    marketplace: str,
    payload: Optional[SyncRequestPayload] = None,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    window = SyncWindow.last_days(payload.days) if payload and payload.days else None
    try:
        job = integration_service.request_sync(db, tenant_id, _marketplace_or_404(marketplace), window)
    except IntegrationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="integration_not_found") from exc
    except SyncRequestRejected as exc:
        return JSONResponse(
            {"accepted": False, "reason": exc.reason, "status": exc.status.value},
            status_code=status.HTTP_409_CONFLICT,
        )

    return {"accepted": True, "job_id": job.id, "job_status": job.status}
