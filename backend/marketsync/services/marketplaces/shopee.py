from __future__ import annotations

import hashlib
import hmac
import time
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from marketsync.config import settings
from marketsync.models_sqlalchemy.models import Marketplace, OrderStatus
from marketsync.services.errors import MarketplaceAuthError, MarketplaceError, RecordError
from marketsync.services.marketplaces.base import (
    KIND_ORDER,
    KIND_ORDER_STATUS,
    KIND_UNKNOWN,
    MarketplaceAdapter,
    NormalizedItem,
    NormalizedOrder,
    OrdersPage,
    SyncWindow,
    TokenSet,
    WebhookNotification,
    parse_datetime,
    parse_money,
    scalar_text,
)


BASE_URL = "https://partner.shopeemobile.com"
AUTH_PATH = "/api/v2/shop/auth_partner"
TOKEN_GET_PATH = "/api/v2/auth/token/get"
TOKEN_REFRESH_PATH = "/api/v2/auth/access_token/get"
ORDER_LIST_PATH = "/api/v2/order/get_order_list"
ORDER_DETAIL_PATH = "/api/v2/order/get_order_detail"

# get_order_detail accepts at most 50 order_sn per call, so pages are sized
# to be hydrated with a single detail request.
ORDERS_PAGE_SIZE = 50
ORDER_DETAIL_FIELDS = "buyer_username,item_list,total_amount,actual_shipping_fee,estimated_shipping_fee,commission_fee,recipient_address"

WEBHOOK_CODES = {
    3: "order_status_update",
    4: "order_tracking_update",
}

# Shopee reports auth failures in the JSON body with HTTP 200/403.
AUTH_ERROR_CODES = {"error_auth", "error_permission", "invalid_access_token", "invalid_acceess_token", "error_param_shop_id"}


def sign(path: str, timestamp: int, *, access_token: str = "", shop_id: str = "") -> str:
    partner_id = settings.SHOPEE_PARTNER_ID or ""
    partner_key = settings.SHOPEE_PARTNER_KEY or ""
    base_string = f"{partner_id}{path}{timestamp}{access_token}{shop_id}"
    return hmac.new(partner_key.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha256).hexdigest()


class ShopeeAdapter(MarketplaceAdapter):
    """Shopee Open Platform v2: cursor + `more` flag pagination."""

    marketplace = Marketplace.SHOPEE
    signature_header = "authorization"
    signature_encoding = "hex"

    status_map = {
        "UNPAID": OrderStatus.PENDING,
        "READY_TO_SHIP": OrderStatus.PAID,
        "PROCESSED": OrderStatus.PAID,
        "RETRY_SHIP": OrderStatus.PAID,
        "SHIPPED": OrderStatus.SHIPPED,
        "TO_CONFIRM_RECEIVE": OrderStatus.SHIPPED,
        "COMPLETED": OrderStatus.DELIVERED,
        "IN_CANCEL": OrderStatus.CANCELLED,
        "CANCELLED": OrderStatus.CANCELLED,
    }

    def _now(self) -> int:
        return int(time.time())

    def _common_params(self, path: str, *, access_token: str = "", shop_id: str = "") -> Dict[str, Any]:
        timestamp = self._now()
        params: Dict[str, Any] = {
            "partner_id": settings.SHOPEE_PARTNER_ID or "",
            "timestamp": timestamp,
            "sign": sign(path, timestamp, access_token=access_token, shop_id=shop_id),
        }
        if access_token:
            params["access_token"] = access_token
        if shop_id:
            params["shop_id"] = shop_id
        return params

    def _check_body(self, data: Dict[str, Any], *, action: str) -> Dict[str, Any]:
        error = data.get("error")
        if not error:
            return data
        message = f"{action}: {error} {data.get('message') or ''}".strip()
        if error in AUTH_ERROR_CODES:
            raise MarketplaceAuthError(self.marketplace, message)
        raise MarketplaceError(self.marketplace, message)

    def get_auth_url(self, state: str) -> str:
        # Shopee has no state parameter; it is carried on the redirect URL.
        redirect = settings.SHOPEE_REDIRECT_URI or ""
        separator = "&" if "?" in redirect else "?"
        params = self._common_params(AUTH_PATH)
        params["redirect"] = f"{redirect}{separator}{urlencode({'state': state})}"
        return f"{BASE_URL}{AUTH_PATH}?{urlencode(params)}"

    def _token_set(self, data: Dict[str, Any], shop_id: Optional[str], fallback_refresh: Optional[str] = None) -> TokenSet:
        if not data.get("access_token"):
            raise MarketplaceAuthError(self.marketplace, "token response did not include an access_token")
        resolved_shop = data.get("shop_id") or shop_id
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or fallback_refresh,
            expires_in=int(data.get("expire_in") or 0),
            seller_id=str(resolved_shop) if resolved_shop is not None else None,
        )

    async def exchange_code(self, code: str, params: Optional[Mapping[str, str]] = None) -> TokenSet:
        shop_id = (params or {}).get("shop_id")
        body: Dict[str, Any] = {"code": code, "partner_id": int(settings.SHOPEE_PARTNER_ID or 0)}
        if shop_id:
            body["shop_id"] = int(shop_id)
        data = await self._request(
            "POST",
            f"{BASE_URL}{TOKEN_GET_PATH}",
            action="exchange_code",
            params=self._common_params(TOKEN_GET_PATH),
            json=body,
        )
        return self._token_set(self._check_body(data, action="exchange_code"), shop_id)

    async def refresh_token(self, refresh_token: str, *, seller_id: Optional[str] = None) -> TokenSet:
        body: Dict[str, Any] = {"refresh_token": refresh_token, "partner_id": int(settings.SHOPEE_PARTNER_ID or 0)}
        if seller_id:
            body["shop_id"] = int(seller_id)
        data = await self._request(
            "POST",
            f"{BASE_URL}{TOKEN_REFRESH_PATH}",
            action="refresh_token",
            params=self._common_params(TOKEN_REFRESH_PATH),
            json=body,
        )
        return self._token_set(self._check_body(data, action="refresh_token"), seller_id, fallback_refresh=refresh_token)

    async def _order_details(self, access_token: str, shop_id: str, order_sns: List[str]) -> List[Dict[str, Any]]:
        if not order_sns:
            return []
        params = self._common_params(ORDER_DETAIL_PATH, access_token=access_token, shop_id=shop_id)
        params["order_sn_list"] = ",".join(order_sns)
        params["response_optional_fields"] = ORDER_DETAIL_FIELDS
        data = await self._request("GET", f"{BASE_URL}{ORDER_DETAIL_PATH}", action="fetch_order_detail", params=params)
        data = self._check_body(data, action="fetch_order_detail")
        return (data.get("response") or {}).get("order_list") or []

    async def fetch_orders_page(
        self,
        access_token: str,
        seller_id: Optional[str],
        window: SyncWindow,
        cursor: Optional[str] = None,
    ) -> OrdersPage:
        shop_id = seller_id or ""
        params = self._common_params(ORDER_LIST_PATH, access_token=access_token, shop_id=shop_id)
        params.update({
            "time_range_field": "create_time",
            "time_from": int(window.start.timestamp()),
            "time_to": int(window.end.timestamp()),
            "page_size": ORDERS_PAGE_SIZE,
            "cursor": cursor or "",
        })
        data = await self._request("GET", f"{BASE_URL}{ORDER_LIST_PATH}", action="fetch_orders", params=params)
        response = self._check_body(data, action="fetch_orders").get("response") or {}

        listed = response.get("order_list") or []
        records = await self._order_details(
            access_token, shop_id, [row["order_sn"] for row in listed if row.get("order_sn")]
        )
        more = bool(response.get("more"))
        return OrdersPage(
            records=records,
            next_cursor=response.get("next_cursor") if more else None,
            has_more=more,
        )

    async def fetch_order(self, access_token: str, seller_id: Optional[str], external_order_id: str) -> Dict[str, Any]:
        details = await self._order_details(access_token, seller_id or "", [external_order_id])
        if not details:
            raise MarketplaceError(self.marketplace, f"order {external_order_id} not found", status_code=404)
        return details[0]

    def normalize_order(self, raw: Dict[str, Any]) -> NormalizedOrder:
        order_sn = raw.get("order_sn")
        if not order_sn:
            raise RecordError(None, "missing required field 'order_sn'")

        try:
            gross = parse_money(self._require(raw, "total_amount", order_sn))
            commission = raw.get("commission_fee")
            fees = [parse_money(commission)] if commission is not None else self.default_fees(gross)

            items = []
            for line in raw.get("item_list") or []:
                quantity = int(line.get("model_quantity_purchased") or line.get("quantity") or 1)
                items.append(
                    NormalizedItem(
                        sku=line.get("model_sku") or line.get("item_sku"),
                        name=line.get("item_name"),
                        quantity=quantity,
                        unit_price=parse_money(line.get("model_discounted_price") or line.get("model_original_price")),
                        external_product_id=str(line.get("item_id")) if line.get("item_id") is not None else None,
                    )
                )

            estimated_shipping = parse_money(raw.get("estimated_shipping_fee"))
            actual_shipping = parse_money(raw.get("actual_shipping_fee"))
            address = raw.get("recipient_address") or {}

            return NormalizedOrder(
                external_order_id=str(order_sn),
                status=self.map_status(raw.get("order_status")),
                order_date=parse_datetime(raw.get("create_time")),
                gross_amount=gross,
                fees=fees,
                shipping_cost=actual_shipping,
                shipping_paid_by_buyer=estimated_shipping,
                customer_name=address.get("name") or raw.get("buyer_username"),
                items=items,
                raw=raw,
            )
        except (ValueError, TypeError, AttributeError) as exc:
            raise RecordError(str(order_sn), str(exc)) from exc

    def decode_webhook(self, payload: Dict[str, Any], headers: Optional[Mapping[str, str]] = None) -> WebhookNotification:
        code = payload.get("code")
        try:
            code = int(code) if code is not None else None
        except (TypeError, ValueError):
            code = str(code)
        event_type = WEBHOOK_CODES.get(code, str(code) if code is not None else None)
        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        order_sn = scalar_text(data.get("ordersn") or data.get("order_sn"))
        native_status = scalar_text(data.get("status"))
        shop_id = scalar_text(payload.get("shop_id"))

        if event_type == "order_status_update" and order_sn:
            kind = KIND_ORDER_STATUS if native_status else KIND_ORDER
        elif event_type == "order_tracking_update" and order_sn:
            kind = KIND_ORDER
        else:
            kind = KIND_UNKNOWN

        return WebhookNotification(
            marketplace=self.marketplace,
            event_type=event_type,
            kind=kind,
            seller_id=shop_id,
            resource_id=order_sn,
            external_order_id=order_sn,
            native_status=native_status,
        )
