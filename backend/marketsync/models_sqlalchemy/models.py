import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from . import Base


JsonType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Marketplace(str, enum.Enum):
    MERCADO_LIVRE = "MERCADO_LIVRE"
    AMAZON = "AMAZON"
    SHOPEE = "SHOPEE"


class IntegrationStatus(str, enum.Enum):
    INACTIVE = "INACTIVE"
    ACTIVE = "ACTIVE"
    SYNCING = "SYNCING"
    ERROR = "ERROR"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class TaxRegime(str, enum.Enum):
    SIMPLES_NACIONAL = "SIMPLES_NACIONAL"
    LUCRO_PRESUMIDO = "LUCRO_PRESUMIDO"
    LUCRO_REAL = "LUCRO_REAL"


class Integration(Base):
    """A tenant's connection to one marketplace.

    Never deleted on disconnect: tokens are cleared and status goes to
    INACTIVE so that sync history (last_sync_at, orders) is preserved.
    """

    __tablename__ = "integrations"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False)
    marketplace = Column(Enum(Marketplace, name="marketplace"), nullable=False)
    status = Column(
        Enum(IntegrationStatus, name="integration_status"),
        nullable=False,
        default=IntegrationStatus.INACTIVE,
    )
    seller_id = Column(String(100), nullable=True)

    # Physical columns holding encrypted blobs when written via properties.
    _access_token = Column("access_token", Text, nullable=True)
    _refresh_token = Column("refresh_token", Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)

    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    sync_error = Column(Text, nullable=True)
    # Single-flight marker: id of the SyncRun holding the SYNCING status.
    current_run_id = Column(String(36), nullable=True)
    sync_heartbeat_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    orders = relationship("Order", back_populates="integration")

    __table_args__ = (
        UniqueConstraint("tenant_id", "marketplace", name="uq_integrations_tenant_marketplace"),
        Index("idx_integrations_marketplace_seller", "marketplace", "seller_id"),
        Index("idx_integrations_status", "status"),
    )

    @property
    def access_token(self) -> str | None:
        from marketsync.utils.crypto import open_token

        return open_token(self._access_token, column="access_token")

    @access_token.setter
    def access_token(self, value: str | None) -> None:
        from marketsync.utils.crypto import seal_token

        self._access_token = seal_token(value, column="access_token") if value else None

    @property
    def refresh_token(self) -> str | None:
        from marketsync.utils.crypto import open_token

        return open_token(self._refresh_token, column="refresh_token")

    @refresh_token.setter
    def refresh_token(self, value: str | None) -> None:
        from marketsync.utils.crypto import seal_token

        self._refresh_token = seal_token(value, column="refresh_token") if value else None


class OAuthState(Base):
    __tablename__ = "oauth_states"

    state = Column(String(128), primary_key=True)
    tenant_id = Column(String(36), nullable=False)
    marketplace = Column(Enum(Marketplace, name="marketplace"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False)
    sku = Column(String(100), nullable=False)
    name = Column(Text, nullable=True)
    cost_price = Column(Numeric(14, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "sku", name="uq_products_tenant_sku"),
    )


class TaxSettings(Base):
    __tablename__ = "tax_settings"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, unique=True)
    tax_regime = Column(Enum(TaxRegime, name="tax_regime"), nullable=False, default=TaxRegime.SIMPLES_NACIONAL)
    simples_rate = Column(Numeric(8, 5), nullable=True)
    icms_rate = Column(Numeric(8, 5), nullable=True)
    pis_cofins_rate = Column(Numeric(8, 5), nullable=True)
    iss_rate = Column(Numeric(8, 5), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class Order(Base):
    """Reconciled view of one marketplace order.

    Keyed on (tenant_id, marketplace, external_order_id); every
    reconciliation overwrites the derived money fields in place.
    """

    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False)
    integration_id = Column(String(36), ForeignKey("integrations.id", ondelete="SET NULL"), nullable=True)
    marketplace = Column(Enum(Marketplace, name="marketplace"), nullable=False)
    external_order_id = Column(String(100), nullable=False)
    status = Column(Enum(OrderStatus, name="order_status"), nullable=False, default=OrderStatus.PENDING)
    order_date = Column(DateTime(timezone=True), nullable=True)

    gross_amount = Column(Numeric(14, 2), nullable=False, default=0)
    total_fees = Column(Numeric(14, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(14, 2), nullable=False, default=0)
    shipping_paid_by_buyer = Column(Numeric(14, 2), nullable=False, default=0)
    net_shipping = Column(Numeric(14, 2), nullable=False, default=0)
    product_cost = Column(Numeric(14, 2), nullable=False, default=0)
    taxes = Column(Numeric(14, 2), nullable=False, default=0)
    tax_breakdown = Column(JsonType, nullable=True)
    net_profit = Column(Numeric(14, 2), nullable=False, default=0)
    profit_margin = Column(Numeric(8, 2), nullable=False, default=0)

    customer_name = Column(Text, nullable=True)
    customer_email = Column(Text, nullable=True)
    raw_data = Column(JsonType, nullable=True)

    last_reconciled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    integration = relationship("Integration", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    refunds = relationship("Refund", back_populates="order", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "marketplace", "external_order_id",
            name="uq_orders_tenant_marketplace_external_id",
        ),
        Index("idx_orders_tenant_order_date", "tenant_id", "order_date"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    sku = Column(String(100), nullable=True)
    name = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(14, 2), nullable=False, default=0)
    unit_cost = Column(Numeric(14, 2), nullable=False, default=0)
    cost_source = Column(String(20), nullable=False, default="estimated")  # catalog | estimated
    external_product_id = Column(String(100), nullable=True)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        Index("idx_order_items_order_id", "order_id"),
    )


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    external_refund_id = Column(String(100), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    order = relationship("Order", back_populates="refunds")

    __table_args__ = (
        UniqueConstraint("order_id", "external_refund_id", name="uq_refunds_order_external_id"),
    )


class WebhookEvent(Base):
    """Append-only inbox of every inbound marketplace notification."""

    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    marketplace = Column(Enum(Marketplace, name="marketplace"), nullable=False)
    event_type = Column(String(100), nullable=True)
    seller_id = Column(String(100), nullable=True)
    resource_id = Column(String(100), nullable=True)
    payload = Column(JsonType, nullable=False, default=dict)
    headers = Column(JsonType, nullable=True)
    signature = Column(Text, nullable=True)
    signature_valid = Column(Boolean, nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_webhook_events_processed", "processed"),
        Index("idx_webhook_events_marketplace_type", "marketplace", "event_type"),
    )
