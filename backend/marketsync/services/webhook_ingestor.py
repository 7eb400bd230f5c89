from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from marketsync.config import settings
from marketsync.models_sqlalchemy.models import Marketplace, WebhookEvent
from marketsync.services import job_queue
from marketsync.services.errors import WebhookSignatureError
from marketsync.services.marketplaces import get_adapter
from marketsync.services.marketplaces.base import MarketplaceAdapter
from marketsync.utils.logger import logger


JOB_PROCESS_WEBHOOK = "process-webhook"


def redact_headers(headers: Mapping[str, Any]) -> Dict[str, Any]:
    """Lower-case header names and hide anything that looks like a credential."""

    redacted: Dict[str, Any] = {}
    for k, v in headers.items():
        lk = k.lower()
        if lk == "authorization" or "token" in lk or "secret" in lk or "signature" in lk:
            redacted[lk] = "***REDACTED***"
        else:
            redacted[lk] = v
    return redacted


def compute_signature(secret: str, raw_body: bytes, *, encoding: str = "hex") -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256)
    if encoding == "base64":
        return base64.b64encode(digest.digest()).decode("ascii")
    return digest.hexdigest()


def verify_signature(
    marketplace: Marketplace,
    raw_body: bytes,
    signature: Optional[str],
    *,
    adapter: Optional[MarketplaceAdapter] = None,
) -> Optional[bool]:
    """HMAC-SHA256 over the raw body with the marketplace's shared secret.

    Returns None when no secret is configured and strict mode is off
    (verification skipped). Raises WebhookSignatureError on mismatch.
    """

    adapter = adapter or get_adapter(marketplace)
    secret = settings.webhook_secret_for(marketplace)
    if not secret:
        if settings.WEBHOOK_SIGNATURE_STRICT:
            raise WebhookSignatureError(f"no webhook secret configured for {marketplace.value}")
        return None

    if not signature:
        raise WebhookSignatureError(f"missing {adapter.signature_header} header")

    expected = compute_signature(secret, raw_body, encoding=adapter.signature_encoding)
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    if not hmac.compare_digest(expected, provided):
        raise WebhookSignatureError("signature mismatch")
    return True


def _parse_body(raw_body: bytes) -> Tuple[Dict[str, Any], Optional[str]]:
    if not raw_body:
        return {}, None
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        return {"_raw": raw_body.decode("utf-8", errors="replace")}, f"invalid_json_body: {exc}"
    if not isinstance(payload, dict):
        return {"_raw": payload}, "payload is not a JSON object"
    return payload, None


def ingest_webhook(
    db: Session,
    marketplace: Marketplace,
    raw_body: bytes,
    headers: Mapping[str, Any],
    *,
    adapter: Optional[MarketplaceAdapter] = None,
) -> WebhookEvent:
    """Verify, store and queue one inbound notification.

    Every accepted delivery becomes its own WebhookEvent row, replays
    included; idempotency is the reconciler's job. Raises
    WebhookSignatureError before anything is stored.
    """

    adapter = adapter or get_adapter(marketplace)
    lowered = {k.lower(): v for k, v in headers.items()}
    signature = lowered.get(adapter.signature_header)
    signature_valid = verify_signature(marketplace, raw_body, signature, adapter=adapter)

    payload, parse_error = _parse_body(raw_body)
    event_type = seller_id = resource_id = None
    if parse_error is None:
        try:
            notification = adapter.decode_webhook(payload, lowered)
        except (AttributeError, TypeError, ValueError) as exc:
            parse_error = f"undecodable payload: {exc}"
        else:
            event_type = notification.event_type
            seller_id = notification.seller_id
            resource_id = notification.resource_id

    event = WebhookEvent(
        marketplace=marketplace,
        event_type=event_type,
        seller_id=seller_id,
        resource_id=resource_id,
        payload=payload,
        headers=redact_headers(headers),
        signature=signature,
        signature_valid=signature_valid,
        processed=parse_error is not None,
        error=parse_error,
    )
    db.add(event)
    db.commit()

    logger.info(
        "[webhooks] received event_id=%s marketplace=%s event_type=%s seller_id=%s resource_id=%s",
        event.id, marketplace.value, event_type, seller_id, resource_id,
    )

    if parse_error is None:
        job_queue.enqueue(
            db,
            job_queue.WEBHOOK_QUEUE,
            JOB_PROCESS_WEBHOOK,
            {"event_id": event.id},
            attempts=settings.WEBHOOK_JOB_ATTEMPTS,
            backoff_delay_ms=settings.WEBHOOK_JOB_BACKOFF_MS,
        )
    else:
        logger.warning("[webhooks] unparseable body stored event_id=%s error=%s", event.id, parse_error)
    return event
