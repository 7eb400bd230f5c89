"""Typed errors for the integration and sync pipeline.

The orchestrator decides between retry and terminal failure from the
exception class alone:

- ``TransientUpstreamError``: rate limits, timeouts, 5xx. Retried by the
  job queue with backoff; ERROR only once attempts are exhausted.
- ``MarketplaceAuthError``: revoked or expired grants. Never retried; the
  integration goes to ERROR so a human reconnects.
- ``RecordError``: one malformed order. Collected per page, never aborts it.
"""

from __future__ import annotations

from typing import Optional

import httpx


class MarketsyncError(Exception):
    """Base class for every error raised by marketsync services."""


class MarketplaceError(MarketsyncError):
    def __init__(self, marketplace: str, message: str, *, status_code: Optional[int] = None):
        self.marketplace = getattr(marketplace, "value", marketplace)
        self.status_code = status_code
        self.message = message
        super().__init__(f"{self.marketplace}: {message}")


class TransientUpstreamError(MarketplaceError):
    pass


class MarketplaceAuthError(MarketplaceError):
    pass


class TokenRefreshError(MarketplaceAuthError):
    pass


class UnsupportedMarketplaceError(MarketplaceError):
    def __init__(self, marketplace: str):
        super().__init__(marketplace, "marketplace is not supported")


class RecordError(MarketsyncError):
    def __init__(self, external_order_id: Optional[str], message: str):
        self.external_order_id = external_order_id
        self.message = message
        label = external_order_id or "<unknown>"
        super().__init__(f"order {label}: {message}")


class WebhookSignatureError(MarketsyncError):
    pass


class InvalidOAuthStateError(MarketsyncError):
    pass


class IntegrationNotFoundError(MarketsyncError):
    pass


def raise_for_marketplace_status(marketplace: str, response: httpx.Response, *, action: str) -> None:
    """Translate a non-2xx marketplace response into the typed hierarchy."""

    if response.is_success:
        return

    status = response.status_code
    body = response.text[:500]
    message = f"{action} failed with HTTP {status}: {body}"

    if status in (401, 403):
        raise MarketplaceAuthError(marketplace, message, status_code=status)
    if status == 400 and "invalid_grant" in body:
        # OAuth token endpoints report revoked/expired refresh tokens as 400.
        raise MarketplaceAuthError(marketplace, message, status_code=status)
    if status == 429 or status >= 500:
        raise TransientUpstreamError(marketplace, message, status_code=status)
    raise MarketplaceError(marketplace, message, status_code=status)
