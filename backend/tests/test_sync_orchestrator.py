from datetime import timedelta

import pytest

from marketsync.config import settings
from marketsync.models_sqlalchemy.models import Integration, IntegrationStatus, Order
from marketsync.models_sqlalchemy.sync_workers import Job, SyncRun
from marketsync.services import job_queue
from marketsync.services.errors import MarketplaceAuthError, TransientUpstreamError
from marketsync.services.sync_orchestrator import (
    MODE_PAGED,
    enqueue_sync,
    run_full_sync,
    run_sync_job,
    sweep_active_integrations,
)


def _pages(order_record, *sizes, prefix="o"):
    pages, n = [], 0
    for size in sizes:
        page = []
        for _ in range(size):
            n += 1
            page.append(order_record(f"{prefix}{n}"))
        pages.append(page)
    return pages


def _claim(db):
    return job_queue.claim_next(db, job_queue.SYNC_QUEUE, visibility_timeout_seconds=300)


def _reload(db, integration_id):
    db.expire_all()
    return db.get(Integration, integration_id)


@pytest.mark.asyncio
async def test_full_sync_walks_every_page(db, make_integration, fake_adapter, order_record):
    integration = make_integration()
    adapter = fake_adapter(_pages(order_record, 50, 50, 1))

    outcome = await run_full_sync(db, integration.id, adapter=adapter)

    assert outcome.status == "completed"
    assert outcome.orders_reconciled == 101
    assert outcome.cursor_advances == 3
    assert outcome.pages_processed == 3
    assert outcome.errors == []
    assert adapter.fetched_cursors == [None, "1", "2"]
    assert db.query(Order).count() == 101

    stored = _reload(db, integration.id)
    assert stored.status == IntegrationStatus.ACTIVE
    assert stored.last_sync_at is not None
    assert stored.sync_error is None
    assert stored.current_run_id is None


@pytest.mark.asyncio
async def test_resyncing_the_same_window_does_not_duplicate_orders(db, make_integration, fake_adapter, order_record):
    integration = make_integration()
    pages = _pages(order_record, 3, 2)

    await run_full_sync(db, integration.id, adapter=fake_adapter(pages))
    await run_full_sync(db, integration.id, adapter=fake_adapter(pages))

    assert db.query(Order).count() == 5
    assert db.query(SyncRun).count() == 2


@pytest.mark.asyncio
async def test_record_failures_are_collected_not_fatal(db, make_integration, fake_adapter, order_record):
    integration = make_integration()
    page = [order_record(f"ok{i}") for i in range(9)] + [order_record("broken", total=None)]

    outcome = await run_full_sync(db, integration.id, adapter=fake_adapter([page]))

    assert outcome.status == "completed"
    assert outcome.orders_reconciled == 9
    assert len(outcome.errors) == 1
    assert db.query(Order).count() == 9

    stored = _reload(db, integration.id)
    assert stored.status == IntegrationStatus.ACTIVE
    assert "broken" in stored.sync_error
    assert "total_amount" in stored.sync_error


@pytest.mark.asyncio
async def test_auth_failure_moves_integration_to_error(db, make_integration, fake_adapter, order_record):
    integration = make_integration()
    adapter = fake_adapter(
        _pages(order_record, 1),
        failures={0: MarketplaceAuthError("MERCADO_LIVRE", "invalid access token", status_code=401)},
    )

    with pytest.raises(MarketplaceAuthError):
        await run_full_sync(db, integration.id, adapter=adapter)

    stored = _reload(db, integration.id)
    assert stored.status == IntegrationStatus.ERROR
    assert "invalid access token" in stored.sync_error
    assert stored.current_run_id is None
    assert db.query(SyncRun).one().status == "error"


@pytest.mark.asyncio
async def test_failed_token_refresh_moves_integration_to_error(db, make_integration, fake_adapter, order_record):
    integration = make_integration(expires_in=timedelta(minutes=1))
    adapter = fake_adapter(
        _pages(order_record, 1),
        refresh_error=MarketplaceAuthError("MERCADO_LIVRE", "invalid_grant", status_code=400),
    )

    with pytest.raises(MarketplaceAuthError):
        await run_full_sync(db, integration.id, adapter=adapter)

    assert _reload(db, integration.id).status == IntegrationStatus.ERROR
    assert adapter.fetched_cursors == []


@pytest.mark.asyncio
async def test_unexpected_failure_moves_integration_to_error(db, make_integration, fake_adapter, order_record):
    integration = make_integration()
    adapter = fake_adapter(_pages(order_record, 1), failures={0: RuntimeError("boom")})

    with pytest.raises(RuntimeError):
        await run_full_sync(db, integration.id, adapter=adapter)

    stored = _reload(db, integration.id)
    assert stored.status == IntegrationStatus.ERROR
    assert stored.sync_error == "unexpected error: boom"


@pytest.mark.asyncio
async def test_transient_failure_outside_a_job_releases_the_marker(db, make_integration, fake_adapter, order_record):
    integration = make_integration()
    adapter = fake_adapter(
        _pages(order_record, 1),
        failures={0: TransientUpstreamError("MERCADO_LIVRE", "HTTP 503")},
    )

    with pytest.raises(TransientUpstreamError):
        await run_full_sync(db, integration.id, adapter=adapter)

    stored = _reload(db, integration.id)
    assert stored.status == IntegrationStatus.ACTIVE
    assert "HTTP 503" in stored.sync_error


@pytest.mark.asyncio
async def test_transient_failure_keeps_marker_and_retry_resumes_the_run(db, make_integration, fake_adapter, order_record):
    integration = make_integration()
    adapter = fake_adapter(
        _pages(order_record, 2),
        failures={0: TransientUpstreamError("MERCADO_LIVRE", "HTTP 429", status_code=429)},
    )
    enqueue_sync(db, integration, trigger="manual")
    job = _claim(db)

    with pytest.raises(TransientUpstreamError):
        await run_sync_job(db, job, adapter=adapter)

    stored = _reload(db, integration.id)
    assert stored.status == IntegrationStatus.SYNCING
    assert "HTTP 429" in stored.sync_error
    run_id = db.get(Job, job.id).payload["run_id"]
    assert stored.current_run_id == run_id

    result = await run_sync_job(db, db.get(Job, job.id), adapter=adapter)

    assert result["status"] == "completed"
    assert result["run_id"] == run_id
    assert result["orders_reconciled"] == 2
    assert db.query(SyncRun).count() == 1
    stored = _reload(db, integration.id)
    assert stored.status == IntegrationStatus.ACTIVE
    assert stored.sync_error is None


@pytest.mark.asyncio
async def test_transient_failure_on_final_attempt_is_terminal(db, make_integration, fake_adapter, order_record, monkeypatch):
    monkeypatch.setattr(settings, "SYNC_JOB_ATTEMPTS", 1)
    integration = make_integration()
    adapter = fake_adapter(
        _pages(order_record, 1),
        failures={0: TransientUpstreamError("MERCADO_LIVRE", "HTTP 502")},
    )
    enqueue_sync(db, integration, trigger="manual")
    job = _claim(db)

    with pytest.raises(TransientUpstreamError):
        await run_sync_job(db, job, adapter=adapter)

    stored = _reload(db, integration.id)
    assert stored.status == IntegrationStatus.ERROR
    assert stored.current_run_id is None


@pytest.mark.asyncio
async def test_paged_mode_processes_one_page_per_job(db, make_integration, fake_adapter, order_record):
    integration = make_integration()
    adapter = fake_adapter(_pages(order_record, 1, 1), total=2)
    enqueue_sync(db, integration, trigger="manual", mode=MODE_PAGED)
    first = _claim(db)

    result = await run_sync_job(db, first, adapter=adapter)

    assert result["status"] == "continued"
    assert result["pages_processed"] == 1
    assert first.progress == 50
    assert _reload(db, integration.id).status == IntegrationStatus.SYNCING
    job_queue.complete(db, first, result)

    continuation = _claim(db)
    assert continuation is not None
    assert continuation.id != first.id
    assert continuation.payload["run_id"] == result["run_id"]
    assert continuation.payload["mode"] == MODE_PAGED

    final = await run_sync_job(db, continuation, adapter=adapter)

    assert final["status"] == "completed"
    assert final["orders_reconciled"] == 2
    assert final["cursor_advances"] == 2
    assert adapter.fetched_cursors == [None, "1"]
    assert _reload(db, integration.id).status == IntegrationStatus.ACTIVE


@pytest.mark.asyncio
async def test_paged_progress_without_a_total_counts_pages(db, make_integration, fake_adapter, order_record, monkeypatch):
    monkeypatch.setattr(settings, "SYNC_MAX_PAGES", 4)
    integration = make_integration()
    adapter = fake_adapter(_pages(order_record, 1, 1, 1))
    enqueue_sync(db, integration, trigger="manual", mode=MODE_PAGED)
    first = _claim(db)

    await run_sync_job(db, first, adapter=adapter)

    assert first.progress == 25


@pytest.mark.asyncio
async def test_duplicate_continuation_is_dropped(db, make_integration, fake_adapter, order_record):
    integration = make_integration()
    adapter = fake_adapter(_pages(order_record, 1))
    outcome = await run_full_sync(db, integration.id, adapter=adapter)

    stale = enqueue_sync(db, integration, trigger="manual", run_id=outcome.run_id)
    result = await run_sync_job(db, stale, adapter=adapter)

    assert result["status"] == "skipped"
    assert adapter.fetched_cursors == [None]


@pytest.mark.asyncio
async def test_page_cap_finishes_the_run_with_a_note(db, make_integration, fake_adapter, order_record, monkeypatch):
    monkeypatch.setattr(settings, "SYNC_MAX_PAGES", 2)
    integration = make_integration()
    adapter = fake_adapter(_pages(order_record, 1, 1, 1))

    outcome = await run_full_sync(db, integration.id, adapter=adapter)

    assert outcome.status == "completed"
    assert outcome.pages_processed == 2
    assert "stopped after 2 pages" in outcome.errors[-1]
    stored = _reload(db, integration.id)
    assert stored.status == IntegrationStatus.ACTIVE
    assert "stopped after 2 pages" in stored.sync_error


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [IntegrationStatus.INACTIVE, IntegrationStatus.ERROR])
async def test_unsyncable_integrations_are_skipped(db, make_integration, fake_adapter, order_record, status):
    integration = make_integration(status=status)
    adapter = fake_adapter(_pages(order_record, 1))

    outcome = await run_full_sync(db, integration.id, adapter=adapter)

    assert outcome.status == "skipped"
    assert adapter.fetched_cursors == []


def test_sweep_queues_only_active_integrations(db, make_integration):
    make_integration(tenant_id="t-1")
    make_integration(tenant_id="t-2")
    make_integration(tenant_id="t-3", status=IntegrationStatus.ERROR)
    make_integration(tenant_id="t-4", status=IntegrationStatus.INACTIVE)

    first = sweep_active_integrations(db)
    second = sweep_active_integrations(db)

    assert first["queued"] == 2
    # A second sweep inside the dedupe window returns the pending jobs.
    assert sorted(second["job_ids"]) == sorted(first["job_ids"])
    assert db.query(Job).count() == 2
    assert {job.payload["trigger"] for job in db.query(Job)} == {"cron"}
