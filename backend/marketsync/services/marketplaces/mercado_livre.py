from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from marketsync.config import settings
from marketsync.models_sqlalchemy.models import Marketplace, OrderStatus
from marketsync.services.errors import MarketplaceAuthError, RecordError
from marketsync.services.marketplaces.base import (
    KIND_ORDER,
    KIND_PAYMENT,
    KIND_SHIPMENT,
    KIND_UNKNOWN,
    MarketplaceAdapter,
    NormalizedItem,
    NormalizedOrder,
    NormalizedRefund,
    OrdersPage,
    SyncWindow,
    TokenSet,
    isoformat_z,
    parse_datetime,
    parse_money,
    scalar_text,
    WebhookNotification,
)


API_BASE_URL = "https://api.mercadolibre.com"
AUTH_BASE_URL = "https://auth.mercadolivre.com.br"
ORDERS_PAGE_LIMIT = 50


class MercadoLivreAdapter(MarketplaceAdapter):
    """Mercado Livre: offset/limit pagination over /orders/search."""

    marketplace = Marketplace.MERCADO_LIVRE
    signature_header = "x-signature"
    signature_encoding = "hex"

    status_map = {
        "confirmed": OrderStatus.PENDING,
        "payment_required": OrderStatus.PENDING,
        "payment_in_process": OrderStatus.PENDING,
        "paid": OrderStatus.PAID,
        "partially_paid": OrderStatus.PAID,
        "shipped": OrderStatus.SHIPPED,
        "delivered": OrderStatus.DELIVERED,
        "cancelled": OrderStatus.CANCELLED,
    }

    def get_auth_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": settings.MERCADO_LIVRE_CLIENT_ID or "",
            "redirect_uri": settings.MERCADO_LIVRE_REDIRECT_URI or "",
            "state": state,
        }
        return f"{AUTH_BASE_URL}/authorization?{urlencode(params)}"

    def _token_set(self, data: Dict[str, Any], fallback_refresh: Optional[str] = None) -> TokenSet:
        if not data.get("access_token"):
            raise MarketplaceAuthError(self.marketplace, "token response did not include an access_token")
        user_id = data.get("user_id")
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or fallback_refresh,
            expires_in=int(data.get("expires_in") or 0),
            seller_id=str(user_id) if user_id is not None else None,
        )

    async def exchange_code(self, code: str, params: Optional[Mapping[str, str]] = None) -> TokenSet:
        data = await self._request(
            "POST",
            f"{API_BASE_URL}/oauth/token",
            action="exchange_code",
            headers={"Accept": "application/json"},
            data={
                "grant_type": "authorization_code",
                "client_id": settings.MERCADO_LIVRE_CLIENT_ID or "",
                "client_secret": settings.MERCADO_LIVRE_CLIENT_SECRET or "",
                "code": code,
                "redirect_uri": settings.MERCADO_LIVRE_REDIRECT_URI or "",
            },
        )
        return self._token_set(data)

    async def refresh_token(self, refresh_token: str, *, seller_id: Optional[str] = None) -> TokenSet:
        data = await self._request(
            "POST",
            f"{API_BASE_URL}/oauth/token",
            action="refresh_token",
            headers={"Accept": "application/json"},
            data={
                "grant_type": "refresh_token",
                "client_id": settings.MERCADO_LIVRE_CLIENT_ID or "",
                "client_secret": settings.MERCADO_LIVRE_CLIENT_SECRET or "",
                "refresh_token": refresh_token,
            },
        )
        return self._token_set(data, fallback_refresh=refresh_token)

    # Mercado Livre has no revocation endpoint; tokens expire on their own,
    # so the base no-op revoke_token is kept.

    async def fetch_orders_page(
        self,
        access_token: str,
        seller_id: Optional[str],
        window: SyncWindow,
        cursor: Optional[str] = None,
    ) -> OrdersPage:
        offset = int(cursor or 0)
        data = await self._request(
            "GET",
            f"{API_BASE_URL}/orders/search",
            action="fetch_orders",
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            params={
                "seller": seller_id or "",
                "order.date_created.from": isoformat_z(window.start),
                "order.date_created.to": isoformat_z(window.end),
                "offset": offset,
                "limit": ORDERS_PAGE_LIMIT,
                "sort": "date_desc",
            },
        )
        records: List[Dict[str, Any]] = data.get("results") or []
        total = int((data.get("paging") or {}).get("total") or 0)
        next_offset = offset + len(records)
        has_more = bool(records) and next_offset < total
        return OrdersPage(
            records=records,
            next_cursor=str(next_offset) if has_more else None,
            has_more=has_more,
            total=total,
        )

    async def fetch_order(self, access_token: str, seller_id: Optional[str], external_order_id: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"{API_BASE_URL}/orders/{external_order_id}",
            action="fetch_order",
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )

    def normalize_order(self, raw: Dict[str, Any]) -> NormalizedOrder:
        order_id = raw.get("id")
        order_id = str(order_id) if order_id is not None else None
        if not order_id:
            raise RecordError(None, "missing required field 'id'")

        try:
            gross = parse_money(self._require(raw, "total_amount", order_id))
            fee_details = raw.get("fee_details") or []
            if fee_details:
                fees = [parse_money(fee.get("amount")) for fee in fee_details]
            else:
                fees = self.default_fees(gross)

            items = []
            for line in raw.get("order_items") or []:
                item = line.get("item") or {}
                items.append(
                    NormalizedItem(
                        sku=item.get("seller_sku"),
                        name=item.get("title"),
                        quantity=int(line.get("quantity") or 1),
                        unit_price=parse_money(line.get("unit_price")),
                        external_product_id=item.get("id"),
                    )
                )

            refunds = []
            for payment in raw.get("payments") or []:
                refunded = parse_money(payment.get("transaction_amount_refunded"))
                if refunded > 0:
                    refunds.append(
                        NormalizedRefund(
                            external_refund_id=str(payment.get("id")),
                            amount=refunded,
                            reason=payment.get("status_detail"),
                            refunded_at=parse_datetime(payment.get("date_last_modified")),
                        )
                    )

            shipping = raw.get("shipping") or {}
            buyer = raw.get("buyer") or {}
            buyer_name = " ".join(
                part for part in (buyer.get("first_name"), buyer.get("last_name")) if part
            ) or buyer.get("nickname")

            return NormalizedOrder(
                external_order_id=order_id,
                status=self.map_status(raw.get("status")),
                order_date=parse_datetime(raw.get("date_created")),
                gross_amount=gross,
                fees=fees,
                shipping_cost=parse_money(raw.get("shipping_cost") or shipping.get("cost")),
                shipping_paid_by_buyer=Decimal("0"),
                customer_name=buyer_name,
                customer_email=buyer.get("email"),
                items=items,
                refunds=refunds,
                raw=raw,
            )
        except (ValueError, TypeError, AttributeError) as exc:
            raise RecordError(order_id, str(exc)) from exc

    def decode_webhook(self, payload: Dict[str, Any], headers: Optional[Mapping[str, str]] = None) -> WebhookNotification:
        resource = scalar_text(payload.get("resource")) or ""
        resource_id = resource.rstrip("/").split("/")[-1] or None
        topic = payload.get("topic") or (resource.strip("/").split("/")[0] if resource else None)
        if not isinstance(topic, str):
            topic = None
        user_id = scalar_text(payload.get("user_id"))

        kind = {
            "orders_v2": KIND_ORDER,
            "orders": KIND_ORDER,
            "shipments": KIND_SHIPMENT,
            "payments": KIND_PAYMENT,
        }.get(topic or "", KIND_UNKNOWN)

        return WebhookNotification(
            marketplace=self.marketplace,
            event_type=topic,
            kind=kind,
            seller_id=user_id,
            resource_id=resource_id,
            external_order_id=resource_id if kind == KIND_ORDER else None,
        )

    async def resolve_order_id(self, access_token: str, notification: WebhookNotification) -> Optional[str]:
        if notification.kind == KIND_ORDER:
            return notification.external_order_id
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        if notification.kind == KIND_SHIPMENT and notification.resource_id:
            shipment = await self._request(
                "GET",
                f"{API_BASE_URL}/shipments/{notification.resource_id}",
                action="fetch_shipment",
                headers=headers,
            )
            order_id = shipment.get("order_id")
            return str(order_id) if order_id is not None else None
        if notification.kind == KIND_PAYMENT and notification.resource_id:
            payment = await self._request(
                "GET",
                f"{API_BASE_URL}/v1/payments/{notification.resource_id}",
                action="fetch_payment",
                headers=headers,
            )
            order_id = (payment.get("order") or {}).get("id")
            return str(order_id) if order_id is not None else None
        return None
