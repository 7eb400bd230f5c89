from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from marketsync.models_sqlalchemy import get_db
from marketsync.models_sqlalchemy.models import Marketplace
from marketsync.services.errors import UnsupportedMarketplaceError, WebhookSignatureError
from marketsync.services.marketplaces import parse_marketplace
from marketsync.services.webhook_ingestor import ingest_webhook
from marketsync.utils.logger import logger


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _receive(request: Request, marketplace: Marketplace, db: Session) -> JSONResponse:
    """Verify, persist and queue. Downstream processing never affects the response."""

    raw_body = await request.body()
    try:
        ingest_webhook(db, marketplace, raw_body, dict(request.headers))
    except WebhookSignatureError as exc:
        logger.warning(
            "[webhooks] rejected marketplace=%s rid=%s: %s",
            marketplace.value, getattr(request.state, "rid", None), exc,
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_signature") from exc
    return JSONResponse({"received": True})


@router.post("/mercado-livre")
async def mercado_livre_webhook(request: Request, db: Session = Depends(get_db)):
    return await _receive(request, Marketplace.MERCADO_LIVRE, db)


@router.post("/amazon")
async def amazon_webhook(request: Request, db: Session = Depends(get_db)):
    return await _receive(request, Marketplace.AMAZON, db)


@router.post("/shopee")
async def shopee_webhook(request: Request, db: Session = Depends(get_db)):
    return await _receive(request, Marketplace.SHOPEE, db)


@router.post("/{marketplace}")
async def marketplace_webhook(marketplace: str, request: Request, db: Session = Depends(get_db)):
    try:
        resolved = parse_marketplace(marketplace)
    except UnsupportedMarketplaceError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unsupported_marketplace") from exc
    return await _receive(request, resolved, db)
