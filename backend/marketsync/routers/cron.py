from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from marketsync.config import settings
from marketsync.models_sqlalchemy import get_db
from marketsync.services.sync_orchestrator import sweep_active_integrations
from marketsync.utils.logger import logger


router = APIRouter(prefix="/cron", tags=["cron"])


@router.post("/sync-orders")
async def cron_sync_orders(
    x_cron_secret: Optional[str] = Header(None, alias="x-cron-secret"),
    db: Session = Depends(get_db),
):
    """Queue a full sync for every ACTIVE integration (external scheduler hook)."""

    if not settings.CRON_SECRET:
        logger.error("[cron] CRON_SECRET is not configured; refusing sweep")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="cron_not_configured")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, settings.CRON_SECRET):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_cron_secret")

    return sweep_active_integrations(db, trigger="cron")
