"""Adapter contract shared by every marketplace integration.

An adapter is a pure translation layer: it knows one marketplace's OAuth
dialect, request signing, pagination shape and status vocabulary, and
turns all of them into the types below. Adapters never touch the database.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

import httpx
from dateutil import parser as date_parser

from marketsync.config import settings
from marketsync.models_sqlalchemy.models import Marketplace, OrderStatus
from marketsync.services.errors import (
    MarketplaceError,
    RecordError,
    TransientUpstreamError,
    raise_for_marketplace_status,
)
from marketsync.utils.logger import logger, marketplace_logger


@dataclass(frozen=True)
class SyncWindow:
    """Half-open [start, end) date range covered by one sync."""

    start: datetime
    end: datetime

    @classmethod
    def last_days(cls, days: int, *, now: Optional[datetime] = None) -> "SyncWindow":
        end = now or datetime.now(timezone.utc)
        return cls(start=end - timedelta(days=days), end=end)

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SyncWindow":
        return cls(start=parse_datetime(data["start"]), end=parse_datetime(data["end"]))


@dataclass
class TokenSet:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    seller_id: Optional[str] = None

    def expires_at(self, now: Optional[datetime] = None) -> datetime:
        return (now or datetime.now(timezone.utc)) + timedelta(seconds=int(self.expires_in or 0))


@dataclass
class OrdersPage:
    """One page of raw upstream records plus the continuation triple."""

    records: List[Dict[str, Any]]
    next_cursor: Optional[str]
    has_more: bool
    total: Optional[int] = None


@dataclass
class NormalizedItem:
    sku: Optional[str]
    name: Optional[str]
    quantity: int
    unit_price: Decimal
    external_product_id: Optional[str] = None


@dataclass
class NormalizedRefund:
    external_refund_id: str
    amount: Decimal
    reason: Optional[str] = None
    refunded_at: Optional[datetime] = None


@dataclass
class NormalizedOrder:
    external_order_id: str
    status: OrderStatus
    order_date: Optional[datetime]
    gross_amount: Decimal
    fees: List[Decimal] = field(default_factory=list)
    shipping_cost: Decimal = Decimal("0")
    shipping_paid_by_buyer: Decimal = Decimal("0")
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    items: List[NormalizedItem] = field(default_factory=list)
    refunds: List[NormalizedRefund] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)


# Kinds of webhook notification the processor knows how to act on.
KIND_ORDER = "order"
KIND_ORDER_STATUS = "order_status"
KIND_SHIPMENT = "shipment"
KIND_PAYMENT = "payment"
KIND_SUBSCRIPTION = "subscription"
KIND_UNKNOWN = "unknown"


@dataclass
class WebhookNotification:
    """Marketplace-neutral shape every webhook payload is decoded into."""

    marketplace: Marketplace
    event_type: Optional[str]
    kind: str
    seller_id: Optional[str] = None
    resource_id: Optional[str] = None
    external_order_id: Optional[str] = None
    native_status: Optional[str] = None
    subscribe_url: Optional[str] = None


def parse_money(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, dict):
        value = value.get("Amount", value.get("amount", value.get("value")))
        if value is None:
            return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"invalid money value {value!r}") from exc


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        dt = date_parser.isoparse(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def isoformat_z(value: datetime) -> str:
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def scalar_text(value: Any) -> Optional[str]:
    """Webhook identifiers as text; containers and empty values become None."""

    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    return str(value) or None


class MarketplaceAdapter(ABC):
    marketplace: Marketplace
    status_map: Dict[str, OrderStatus] = {}

    # Webhook signature transport for this marketplace.
    signature_header: str = "x-signature"
    signature_encoding: str = "hex"  # hex | base64

    def __init__(self, client: Optional[httpx.AsyncClient] = None, *, timeout: float = 30.0):
        self._client = client
        self.timeout = timeout

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------
    @abstractmethod
    def get_auth_url(self, state: str) -> str:
        raise NotImplementedError

    @abstractmethod
    async def exchange_code(self, code: str, params: Optional[Mapping[str, str]] = None) -> TokenSet:
        """Exchange an authorization code; ``params`` holds the other callback query args."""
        raise NotImplementedError

    @abstractmethod
    async def refresh_token(self, refresh_token: str, *, seller_id: Optional[str] = None) -> TokenSet:
        raise NotImplementedError

    async def revoke_token(self, access_token: str) -> None:
        logger.info("[%s] token revocation is not supported upstream; skipping", self.marketplace.value)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    @abstractmethod
    async def fetch_orders_page(
        self,
        access_token: str,
        seller_id: Optional[str],
        window: SyncWindow,
        cursor: Optional[str] = None,
    ) -> OrdersPage:
        raise NotImplementedError

    @abstractmethod
    async def fetch_order(self, access_token: str, seller_id: Optional[str], external_order_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def normalize_order(self, raw: Dict[str, Any]) -> NormalizedOrder:
        raise NotImplementedError

    def map_status(self, native_status: Optional[str]) -> OrderStatus:
        if native_status is None:
            return OrderStatus.PENDING
        return self.status_map.get(str(native_status), OrderStatus.PENDING)

    def default_fees(self, gross_amount: Decimal) -> List[Decimal]:
        return [gross_amount * Decimal(str(settings.DEFAULT_COMMISSION_RATE))]

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    @abstractmethod
    def decode_webhook(self, payload: Dict[str, Any], headers: Optional[Mapping[str, str]] = None) -> WebhookNotification:
        raise NotImplementedError

    async def resolve_order_id(
        self,
        access_token: str,
        notification: WebhookNotification,
    ) -> Optional[str]:
        """Find the order a shipment/payment notification refers to."""
        return notification.external_order_id

    async def confirm_subscription(self, notification: WebhookNotification) -> None:
        return None

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------
    async def _request(
        self, method: str, url: str, *, action: str, expect_json: bool = True, **kwargs: Any
    ) -> Any:
        request_data = dict(kwargs.get("params") or {})
        if isinstance(kwargs.get("data"), dict):
            request_data.update(kwargs["data"])

        try:
            if self._client is not None:
                response = await self._client.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            marketplace_logger.log_call(self.marketplace.value, action, f"{method} {url}", request_data, error=str(exc))
            raise TransientUpstreamError(self.marketplace, f"{action} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            marketplace_logger.log_call(self.marketplace.value, action, f"{method} {url}", request_data, error=str(exc))
            raise TransientUpstreamError(self.marketplace, f"{action} transport error: {exc}") from exc

        marketplace_logger.log_call(
            self.marketplace.value,
            action,
            f"{method} {url} -> {response.status_code}",
            request_data,
            {"status_code": response.status_code},
        )
        raise_for_marketplace_status(self.marketplace, response, action=action)
        if not expect_json:
            return response.text

        try:
            return response.json()
        except ValueError as exc:
            raise MarketplaceError(
                self.marketplace, f"{action} returned a non-JSON body", status_code=response.status_code
            ) from exc

    def _require(self, raw: Dict[str, Any], key: str, order_id: Optional[str] = None) -> Any:
        value = raw.get(key)
        if value is None or value == "":
            raise RecordError(order_id, f"missing required field '{key}'")
        return value
