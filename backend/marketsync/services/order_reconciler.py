from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from marketsync.config import settings
from marketsync.models_sqlalchemy.models import (
    Marketplace,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    Refund,
    TaxRegime,
    TaxSettings,
)
from marketsync.services.errors import RecordError
from marketsync.services.marketplaces.base import NormalizedItem, NormalizedOrder
from marketsync.services.profit_calculator import (
    ProfitBreakdown,
    ProfitInput,
    TaxConfig,
    calculate_profit,
    to_decimal,
)
from marketsync.utils.logger import logger


UPSERT_ATTEMPTS = 2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_tax_config() -> TaxConfig:
    return TaxConfig(
        regime=TaxRegime(settings.DEFAULT_TAX_REGIME),
        simples_rate=settings.DEFAULT_SIMPLES_RATE,
        icms_rate=settings.DEFAULT_ICMS_RATE,
        pis_cofins_rate=settings.DEFAULT_PIS_COFINS_RATE,
        iss_rate=settings.DEFAULT_ISS_RATE,
    )


def tax_config_for_tenant(db: Session, tenant_id: str) -> TaxConfig:
    row = db.query(TaxSettings).filter(TaxSettings.tenant_id == tenant_id).first()
    if row is None:
        return default_tax_config()
    return TaxConfig(
        regime=row.tax_regime,
        simples_rate=row.simples_rate,
        icms_rate=row.icms_rate,
        pis_cofins_rate=row.pis_cofins_rate,
        iss_rate=row.iss_rate,
    )


def _catalog_costs(db: Session, tenant_id: str, items: List[NormalizedItem]) -> Dict[str, Decimal]:
    skus = {item.sku for item in items if item.sku}
    if not skus:
        return {}
    rows = (
        db.query(Product.sku, Product.cost_price)
        .filter(Product.tenant_id == tenant_id, Product.sku.in_(skus))
        .all()
    )
    return {sku: to_decimal(cost) for sku, cost in rows}


def _cost_items(db: Session, tenant_id: str, items: List[NormalizedItem]) -> tuple[List[tuple], Decimal]:
    """Resolve a unit cost for every line and return (costed lines, total product cost).

    Lines without a catalog match are costed at PRODUCT_COST_ESTIMATE_RATIO
    of their unit price and flagged ``cost_source="estimated"``.
    """

    catalog = _catalog_costs(db, tenant_id, items)
    ratio = to_decimal(settings.PRODUCT_COST_ESTIMATE_RATIO)

    costed: List[tuple] = []
    total = Decimal("0")
    for item in items:
        if item.sku and item.sku in catalog:
            unit_cost = catalog[item.sku]
            source = "catalog"
        else:
            unit_cost = to_decimal(item.unit_price) * ratio
            source = "estimated"
        total += unit_cost * item.quantity
        costed.append((item, unit_cost, source))
    return costed, total


def _item_rows(costed: List[tuple]) -> List[OrderItem]:
    return [
        OrderItem(
            sku=item.sku,
            name=item.name,
            quantity=item.quantity,
            unit_price=item.unit_price,
            unit_cost=unit_cost,
            cost_source=source,
            external_product_id=item.external_product_id,
        )
        for item, unit_cost, source in costed
    ]


def _apply(order: Order, data: NormalizedOrder, breakdown: ProfitBreakdown, items: List[OrderItem]) -> None:
    order.order_date = data.order_date
    order.gross_amount = breakdown.gross
    order.total_fees = breakdown.total_fees
    order.shipping_cost = to_decimal(data.shipping_cost)
    order.shipping_paid_by_buyer = to_decimal(data.shipping_paid_by_buyer)
    order.net_shipping = breakdown.net_shipping
    order.product_cost = breakdown.product_cost
    order.taxes = breakdown.taxes
    order.tax_breakdown = breakdown.tax_components()
    order.net_profit = breakdown.net_profit
    order.profit_margin = breakdown.profit_margin
    order.customer_name = data.customer_name
    order.customer_email = data.customer_email
    order.raw_data = data.raw
    order.items = items

    known = {refund.external_refund_id for refund in order.refunds}
    for refund in data.refunds:
        if refund.external_refund_id in known:
            continue
        order.refunds.append(
            Refund(
                external_refund_id=refund.external_refund_id,
                amount=refund.amount,
                reason=refund.reason,
                refunded_at=refund.refunded_at,
            )
        )
        known.add(refund.external_refund_id)

    order.status = resolve_status(order, data.status)


def resolve_status(order: Order, upstream: OrderStatus) -> OrderStatus:
    """REFUNDED is terminal once refunds cover the gross amount."""

    refunded = sum((to_decimal(r.amount) for r in order.refunds), Decimal("0"))
    gross = to_decimal(order.gross_amount)
    if order.refunds and gross > 0 and refunded >= gross:
        return OrderStatus.REFUNDED
    return upstream


def reconcile(
    db: Session,
    tenant_id: str,
    marketplace: Marketplace,
    external_order_id: str,
    data: NormalizedOrder,
    *,
    integration_id: Optional[str] = None,
    tax: Optional[TaxConfig] = None,
) -> Order:
    """Upsert one external order and its profit breakdown.

    Runs inside a savepoint so that a failure only discards this record; the
    caller controls the outer commit. Any failure is raised as RecordError.
    """

    if not external_order_id:
        raise RecordError(None, "missing external order id")

    try:
        tax = tax or tax_config_for_tenant(db, tenant_id)
        costed, product_cost = _cost_items(db, tenant_id, data.items)
        breakdown = calculate_profit(
            ProfitInput(
                gross=data.gross_amount,
                fees=data.fees,
                shipping_cost=data.shipping_cost,
                shipping_paid_by_buyer=data.shipping_paid_by_buyer,
                product_cost=product_cost,
            ),
            tax,
        )
    except (ArithmeticError, ValueError, TypeError, SQLAlchemyError) as exc:
        raise RecordError(external_order_id, f"profit computation failed: {exc}") from exc

    for attempt in range(1, UPSERT_ATTEMPTS + 1):
        try:
            with db.begin_nested():
                order = (
                    db.query(Order)
                    .filter(
                        Order.tenant_id == tenant_id,
                        Order.marketplace == marketplace,
                        Order.external_order_id == external_order_id,
                    )
                    .with_for_update()
                    .first()
                )
                created = order is None
                if created:
                    order = Order(
                        tenant_id=tenant_id,
                        marketplace=marketplace,
                        external_order_id=external_order_id,
                    )
                    db.add(order)
                if integration_id:
                    order.integration_id = integration_id
                _apply(order, data, breakdown, _item_rows(costed))
                order.last_reconciled_at = _utcnow()
                db.flush()
            logger.debug(
                "[reconciler] %s order tenant_id=%s marketplace=%s external_order_id=%s net_profit=%s",
                "created" if created else "updated", tenant_id, marketplace.value, external_order_id,
                breakdown.net_profit,
            )
            return order
        except IntegrityError as exc:
            # Concurrent insert of the same natural key; the retry takes the update path.
            if attempt == UPSERT_ATTEMPTS:
                raise RecordError(external_order_id, f"upsert conflict: {exc.orig}") from exc
            logger.info(
                "[reconciler] upsert race on external_order_id=%s, retrying", external_order_id,
            )
        except SQLAlchemyError as exc:
            logger.error(
                "[reconciler] upsert failed external_order_id=%s", external_order_id, exc_info=True,
            )
            raise RecordError(external_order_id, f"upsert failed: {exc}") from exc

    raise RecordError(external_order_id, "upsert did not complete")


def update_order_status(
    db: Session,
    tenant_id: str,
    marketplace: Marketplace,
    external_order_id: str,
    status: OrderStatus,
) -> Optional[bool]:
    """Apply a status-only update.

    Returns None when the order is unknown, otherwise whether the row
    changed. Replaying the same update is a no-op.
    """

    order = (
        db.query(Order)
        .filter(
            Order.tenant_id == tenant_id,
            Order.marketplace == marketplace,
            Order.external_order_id == external_order_id,
        )
        .with_for_update()
        .first()
    )
    if order is None:
        return None

    new_status = resolve_status(order, status)
    if order.status == new_status:
        return False
    order.status = new_status
    db.flush()
    return True
