from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

from marketsync.config import settings
from marketsync.models_sqlalchemy.models import Marketplace, OrderStatus
from marketsync.services.errors import MarketplaceAuthError, RecordError
from marketsync.services.marketplaces.base import (
    KIND_ORDER,
    KIND_ORDER_STATUS,
    KIND_SUBSCRIPTION,
    KIND_UNKNOWN,
    MarketplaceAdapter,
    NormalizedItem,
    NormalizedOrder,
    OrdersPage,
    SyncWindow,
    TokenSet,
    WebhookNotification,
    isoformat_z,
    parse_datetime,
    parse_money,
    scalar_text,
)


SELLER_CENTRAL_URL = "https://sellercentral.amazon.com.br"
LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"
SP_API_BASE_URL = "https://sellingpartnerapi-na.amazon.com"


class AmazonAdapter(MarketplaceAdapter):
    """Amazon SP-API: opaque NextToken pagination over /orders/v0/orders."""

    marketplace = Marketplace.AMAZON
    signature_header = "x-amz-signature"
    signature_encoding = "base64"

    status_map = {
        "Pending": OrderStatus.PENDING,
        "PendingAvailability": OrderStatus.PENDING,
        "Unshipped": OrderStatus.PAID,
        "PartiallyShipped": OrderStatus.SHIPPED,
        "Shipped": OrderStatus.SHIPPED,
        "Delivered": OrderStatus.DELIVERED,
        "Canceled": OrderStatus.CANCELLED,
        "Unfulfillable": OrderStatus.CANCELLED,
    }

    def get_auth_url(self, state: str) -> str:
        params = {
            "application_id": settings.AMAZON_CLIENT_ID or "",
            "redirect_uri": settings.AMAZON_REDIRECT_URI or "",
            "state": state,
            "version": "beta",
        }
        return f"{SELLER_CENTRAL_URL}/apps/authorize/consent?{urlencode(params)}"

    async def _lwa_token(self, form: Dict[str, str], *, action: str) -> Dict[str, Any]:
        form = dict(form)
        form["client_id"] = settings.AMAZON_CLIENT_ID or ""
        form["client_secret"] = settings.AMAZON_CLIENT_SECRET or ""
        data = await self._request("POST", LWA_TOKEN_URL, action=action, data=form)
        if not data.get("access_token"):
            raise MarketplaceAuthError(self.marketplace, f"{action}: LWA response did not include an access_token")
        return data

    async def exchange_code(self, code: str, params: Optional[Mapping[str, str]] = None) -> TokenSet:
        data = await self._lwa_token(
            {"grant_type": "authorization_code", "code": code},
            action="exchange_code",
        )
        # The seller id is not part of the LWA response; SP-API passes it to
        # the redirect URI as selling_partner_id.
        seller_id = (params or {}).get("selling_partner_id")
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(data.get("expires_in") or 0),
            seller_id=seller_id,
        )

    async def refresh_token(self, refresh_token: str, *, seller_id: Optional[str] = None) -> TokenSet:
        data = await self._lwa_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            action="refresh_token",
        )
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or refresh_token,
            expires_in=int(data.get("expires_in") or 0),
            seller_id=seller_id,
        )

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {"x-amz-access-token": access_token, "Content-Type": "application/json"}

    async def fetch_orders_page(
        self,
        access_token: str,
        seller_id: Optional[str],
        window: SyncWindow,
        cursor: Optional[str] = None,
    ) -> OrdersPage:
        if cursor:
            # SP-API rejects date filters alongside a NextToken.
            params = {"MarketplaceIds": settings.AMAZON_MARKETPLACE_ID, "NextToken": cursor}
        else:
            params = {
                "MarketplaceIds": settings.AMAZON_MARKETPLACE_ID,
                "CreatedAfter": isoformat_z(window.start),
                "CreatedBefore": isoformat_z(window.end),
            }
        data = await self._request(
            "GET",
            f"{SP_API_BASE_URL}/orders/v0/orders",
            action="fetch_orders",
            headers=self._headers(access_token),
            params=params,
        )
        payload = data.get("payload") or {}
        next_token = payload.get("NextToken")
        return OrdersPage(
            records=payload.get("Orders") or [],
            next_cursor=next_token,
            has_more=bool(next_token),
        )

    async def fetch_order(self, access_token: str, seller_id: Optional[str], external_order_id: str) -> Dict[str, Any]:
        data = await self._request(
            "GET",
            f"{SP_API_BASE_URL}/orders/v0/orders/{external_order_id}",
            action="fetch_order",
            headers=self._headers(access_token),
        )
        return data.get("payload") or {}

    def normalize_order(self, raw: Dict[str, Any]) -> NormalizedOrder:
        order_id = raw.get("AmazonOrderId")
        if not order_id:
            raise RecordError(None, "missing required field 'AmazonOrderId'")

        try:
            gross = parse_money(raw.get("OrderTotal"))
            items = [
                NormalizedItem(
                    sku=line.get("SellerSKU"),
                    name=line.get("Title"),
                    quantity=int(line.get("QuantityOrdered") or 1),
                    unit_price=parse_money(line.get("ItemPrice")) / max(int(line.get("QuantityOrdered") or 1), 1),
                    external_product_id=line.get("ASIN"),
                )
                for line in raw.get("OrderItems") or []
            ]
            buyer = raw.get("BuyerInfo") or {}
            return NormalizedOrder(
                external_order_id=str(order_id),
                status=self.map_status(raw.get("OrderStatus")),
                order_date=parse_datetime(raw.get("PurchaseDate")),
                gross_amount=gross,
                # Fees are not part of the order listing (they live in the
                # Finances API), so the configured commission rate applies.
                fees=self.default_fees(gross),
                customer_name=buyer.get("BuyerName"),
                customer_email=buyer.get("BuyerEmail"),
                items=items,
                raw=raw,
            )
        except (ValueError, TypeError, AttributeError) as exc:
            raise RecordError(str(order_id), str(exc)) from exc

    def decode_webhook(self, payload: Dict[str, Any], headers: Optional[Mapping[str, str]] = None) -> WebhookNotification:
        headers = headers or {}
        message_type = headers.get("x-amz-sns-message-type") or payload.get("Type")

        if message_type == "SubscriptionConfirmation":
            return WebhookNotification(
                marketplace=self.marketplace,
                event_type="SubscriptionConfirmation",
                kind=KIND_SUBSCRIPTION,
                subscribe_url=payload.get("SubscribeURL"),
            )

        message: Any = payload
        if message_type == "Notification" and isinstance(payload.get("Message"), str):
            try:
                message = json.loads(payload["Message"])
            except json.JSONDecodeError:
                message = {}
        if not isinstance(message, dict):
            message = {}

        notification_type = scalar_text(message.get("notificationType") or message.get("NotificationType"))
        inner = message.get("payload")
        if not isinstance(inner, dict):
            inner = {}
        body = inner.get("OrderChangeNotification") or inner or message
        if not isinstance(body, dict):
            body = {}
        seller_id = scalar_text(body.get("SellerId") or message.get("sellerId") or body.get("sellerId"))
        order_id = scalar_text(body.get("AmazonOrderId"))
        summary = body.get("Summary")
        if not isinstance(summary, dict):
            summary = {}
        native_status = scalar_text(body.get("OrderStatus") or summary.get("OrderStatus"))

        if notification_type in ("ORDER_CHANGE", "FULFILLMENT_ORDER_STATUS") and order_id:
            kind = KIND_ORDER_STATUS if native_status else KIND_ORDER
        else:
            kind = KIND_UNKNOWN

        return WebhookNotification(
            marketplace=self.marketplace,
            event_type=notification_type,
            kind=kind,
            seller_id=seller_id,
            resource_id=order_id,
            external_order_id=order_id,
            native_status=native_status,
        )

    async def confirm_subscription(self, notification: WebhookNotification) -> None:
        if not notification.subscribe_url:
            return
        await self._request(
            "GET", notification.subscribe_url, action="confirm_subscription", expect_json=False
        )
