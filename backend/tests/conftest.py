import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

# The engine is created at import time, so the database must be chosen
# before anything from marketsync is imported.
_DB_DIR = tempfile.mkdtemp(prefix="marketsync-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'marketsync.db')}"

from sqlalchemy import event  # noqa: E402

from marketsync.config import settings  # noqa: E402
from marketsync.models_sqlalchemy import Base, SessionLocal, engine  # noqa: E402
from marketsync.models_sqlalchemy import models, sync_workers  # noqa: E402,F401
from marketsync.models_sqlalchemy.models import Integration, IntegrationStatus, Marketplace  # noqa: E402
from marketsync.services.errors import TransientUpstreamError  # noqa: E402
from marketsync.services.marketplaces.base import OrdersPage, SyncWindow, TokenSet  # noqa: E402
from marketsync.services.marketplaces.mercado_livre import MercadoLivreAdapter  # noqa: E402


# pysqlite opens transactions lazily and breaks SAVEPOINT; take over BEGIN
# so begin_nested() behaves as it does on Postgres.
@event.listens_for(engine, "connect")
def _sqlite_connect(dbapi_conn, connection_record):
    dbapi_conn.isolation_level = None
    # WAL lets a reader's open transaction coexist with another writer's
    # commit, as Postgres MVCC does.
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


@event.listens_for(engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


@pytest.fixture(autouse=True)
def _fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(autouse=True)
def _fast_pipeline(monkeypatch):
    monkeypatch.setattr(settings, "SYNC_PAGE_DELAY_MS", 0)
    monkeypatch.setattr(settings, "WEBHOOK_SIGNATURE_STRICT", False)
    monkeypatch.setattr(settings, "MERCADO_LIVRE_WEBHOOK_SECRET", None)
    monkeypatch.setattr(settings, "AMAZON_WEBHOOK_SECRET", None)
    monkeypatch.setattr(settings, "SHOPEE_WEBHOOK_SECRET", None)
    monkeypatch.setattr(settings, "PRODUCT_COST_ESTIMATE_RATIO", 0.6)
    monkeypatch.setattr(settings, "DEFAULT_COMMISSION_RATE", 0.16)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_integration(db):
    def _make(
        *,
        tenant_id: str = "tenant-1",
        marketplace: Marketplace = Marketplace.MERCADO_LIVRE,
        status: IntegrationStatus = IntegrationStatus.ACTIVE,
        seller_id: str = "seller-1",
        access_token: Optional[str] = "access-0",
        refresh_token: Optional[str] = "refresh-0",
        expires_in: timedelta = timedelta(hours=6),
    ) -> Integration:
        integration = Integration(
            tenant_id=tenant_id,
            marketplace=marketplace,
            status=status,
            seller_id=seller_id,
        )
        integration.access_token = access_token
        integration.refresh_token = refresh_token
        integration.token_expires_at = datetime.now(timezone.utc) + expires_in
        db.add(integration)
        db.commit()
        db.refresh(integration)
        return integration

    return _make


def ml_order(
    order_id: str,
    *,
    total: Any = "100.00",
    status: str = "paid",
    sku: Optional[str] = None,
    unit_price: str = "50.00",
    quantity: int = 2,
    shipping_cost: str = "0",
    refunded: Optional[str] = None,
) -> Dict[str, Any]:
    """A Mercado Livre shaped order record."""

    raw: Dict[str, Any] = {
        "id": order_id,
        "status": status,
        "date_created": "2026-10-01T12:00:00.000-03:00",
        "fee_details": [{"type": "sale_fee", "amount": "10.00"}],
        "order_items": [
            {
                "item": {"id": f"MLB{order_id}", "title": "Widget", "seller_sku": sku},
                "quantity": quantity,
                "unit_price": unit_price,
            }
        ],
        "shipping_cost": shipping_cost,
        "buyer": {"first_name": "Ana", "last_name": "Souza", "nickname": "ANASOUZA"},
        "payments": [],
    }
    if total is not None:
        raw["total_amount"] = total
    if refunded is not None:
        raw["payments"] = [
            {"id": f"pay-{order_id}", "transaction_amount_refunded": refunded, "status_detail": "refunded"}
        ]
    return raw


class FakeAdapter(MercadoLivreAdapter):
    """Mercado Livre adapter with the network replaced by canned pages.

    ``pages`` is a list of record lists; the cursor is the next page index.
    ``failures`` maps a page index to an exception raised when it is fetched.
    """

    def __init__(
        self,
        pages: Optional[List[List[Dict[str, Any]]]] = None,
        *,
        orders: Optional[Dict[str, Dict[str, Any]]] = None,
        failures: Optional[Dict[int, Exception]] = None,
        refresh_error: Optional[Exception] = None,
        total: Optional[int] = None,
    ):
        super().__init__()
        self.pages = pages or []
        self.orders = orders or {}
        self.failures = dict(failures or {})
        self.refresh_error = refresh_error
        self.total = total
        self.fetched_cursors: List[Optional[str]] = []
        self.refresh_calls = 0
        self.fetch_order_calls: List[str] = []
        self.revoked: List[str] = []

    def get_auth_url(self, state: str) -> str:
        return f"https://auth.fake.test/authorize?state={state}"

    async def exchange_code(self, code, params=None) -> TokenSet:
        return TokenSet(access_token=f"access-{code}", refresh_token=f"refresh-{code}", expires_in=21600, seller_id="seller-1")

    async def refresh_token(self, refresh_token, *, seller_id=None) -> TokenSet:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenSet(access_token="access-refreshed", refresh_token="refresh-refreshed", expires_in=21600)

    async def revoke_token(self, access_token: str) -> None:
        self.revoked.append(access_token)

    async def fetch_orders_page(self, access_token, seller_id, window: SyncWindow, cursor=None) -> OrdersPage:
        index = int(cursor or 0)
        self.fetched_cursors.append(cursor)
        failure = self.failures.pop(index, None)
        if failure is not None:
            raise failure
        records = self.pages[index] if index < len(self.pages) else []
        has_more = index + 1 < len(self.pages)
        return OrdersPage(
            records=records,
            next_cursor=str(index + 1) if has_more else None,
            has_more=has_more,
            total=self.total,
        )

    async def fetch_order(self, access_token, seller_id, external_order_id) -> Dict[str, Any]:
        self.fetch_order_calls.append(external_order_id)
        if external_order_id not in self.orders:
            raise TransientUpstreamError(self.marketplace, f"order {external_order_id} not visible yet")
        return self.orders[external_order_id]


@pytest.fixture
def fake_adapter():
    return FakeAdapter


@pytest.fixture
def order_record():
    return ml_order
