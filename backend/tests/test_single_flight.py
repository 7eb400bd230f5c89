import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from marketsync.models_sqlalchemy import SessionLocal
from marketsync.models_sqlalchemy.models import Integration, IntegrationStatus
from marketsync.models_sqlalchemy.sync_workers import SyncRun
from marketsync.services.marketplaces.base import SyncWindow
from marketsync.services.sync_orchestrator import run_full_sync
from marketsync.services.sync_runs import begin_sync, is_sync_fresh


@pytest.fixture
def other_db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _window():
    return SyncWindow.last_days(30)


@pytest.mark.asyncio
async def test_second_sync_is_skipped_while_first_is_in_flight(db, other_db, make_integration, fake_adapter, order_record):
    integration = make_integration()

    class BlockingAdapter(fake_adapter):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self.entered = asyncio.Event()
            self.release = asyncio.Event()

        async def fetch_orders_page(self, *args, **kwargs):
            self.entered.set()
            await self.release.wait()
            return await super().fetch_orders_page(*args, **kwargs)

    first_adapter = BlockingAdapter([[order_record("a1")]])
    second_adapter = fake_adapter([[order_record("b1")]])

    first = asyncio.create_task(run_full_sync(db, integration.id, adapter=first_adapter))
    await asyncio.wait_for(first_adapter.entered.wait(), timeout=5)

    second = await run_full_sync(other_db, integration.id, adapter=second_adapter)

    assert second.status == "skipped"
    assert second_adapter.fetched_cursors == []

    first_adapter.release.set()
    outcome = await asyncio.wait_for(first, timeout=5)

    assert outcome.status == "completed"
    assert other_db.query(SyncRun).count() == 1


def test_fresh_marker_rejects_a_second_claim(db, other_db, make_integration):
    integration = make_integration()

    run = begin_sync(db, integration.id, window=_window(), trigger="manual")
    again = begin_sync(other_db, integration.id, window=_window(), trigger="cron")

    assert run is not None
    assert again is None
    stored = other_db.get(Integration, integration.id)
    assert stored.status == IntegrationStatus.SYNCING
    assert stored.current_run_id == run.id


def test_stale_marker_is_taken_over(db, other_db, make_integration):
    integration = make_integration()
    stale = begin_sync(db, integration.id, window=_window(), trigger="manual")

    # Simulate a worker that died eleven minutes ago.
    integration = db.get(Integration, integration.id)
    integration.sync_heartbeat_at = datetime.now(timezone.utc) - timedelta(minutes=11)
    assert not is_sync_fresh(integration)
    db.commit()

    fresh = begin_sync(other_db, integration.id, window=_window(), trigger="cron")

    assert fresh is not None
    assert fresh.id != stale.id
    assert other_db.get(SyncRun, stale.id).status == "error"
    assert other_db.get(Integration, integration.id).current_run_id == fresh.id


def test_marker_without_heartbeat_is_stale(make_integration):
    integration = make_integration(status=IntegrationStatus.SYNCING)

    assert integration.sync_heartbeat_at is None
    assert not is_sync_fresh(integration)
