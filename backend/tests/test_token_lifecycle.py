from datetime import timedelta

import pytest

from marketsync.models_sqlalchemy.models import Integration
from marketsync.services.errors import MarketplaceAuthError, TokenRefreshError, TransientUpstreamError
from marketsync.services.token_lifecycle import ensure_valid_token, needs_refresh


@pytest.mark.asyncio
async def test_token_expiring_inside_margin_is_refreshed_and_persisted(db, make_integration, fake_adapter):
    integration = make_integration(expires_in=timedelta(minutes=4))
    adapter = fake_adapter()

    token = await ensure_valid_token(db, integration, adapter=adapter)

    assert token == "access-refreshed"
    assert adapter.refresh_calls == 1

    db.expire_all()
    stored = db.get(Integration, integration.id)
    assert stored.access_token == "access-refreshed"
    assert stored.refresh_token == "refresh-refreshed"
    assert stored.last_refreshed_at is not None
    assert not needs_refresh(stored)


@pytest.mark.asyncio
async def test_token_outside_margin_is_returned_without_refresh(db, make_integration, fake_adapter):
    integration = make_integration(expires_in=timedelta(minutes=6))
    adapter = fake_adapter()

    token = await ensure_valid_token(db, integration, adapter=adapter)

    assert token == "access-0"
    assert adapter.refresh_calls == 0


@pytest.mark.asyncio
async def test_missing_refresh_token_raises(db, make_integration, fake_adapter):
    integration = make_integration(refresh_token=None, expires_in=timedelta(minutes=-1))
    adapter = fake_adapter()

    with pytest.raises(TokenRefreshError):
        await ensure_valid_token(db, integration, adapter=adapter)
    assert adapter.refresh_calls == 0


@pytest.mark.asyncio
async def test_rejected_refresh_becomes_token_refresh_error(db, make_integration, fake_adapter):
    integration = make_integration(expires_in=timedelta(minutes=1))
    adapter = fake_adapter(refresh_error=MarketplaceAuthError("MERCADO_LIVRE", "invalid_grant", status_code=400))

    with pytest.raises(TokenRefreshError) as excinfo:
        await ensure_valid_token(db, integration, adapter=adapter)

    assert excinfo.value.status_code == 400
    db.expire_all()
    assert db.get(Integration, integration.id).access_token == "access-0"


@pytest.mark.asyncio
async def test_transient_refresh_failure_propagates_unchanged(db, make_integration, fake_adapter):
    integration = make_integration(expires_in=timedelta(minutes=1))
    adapter = fake_adapter(refresh_error=TransientUpstreamError("MERCADO_LIVRE", "timeout"))

    with pytest.raises(TransientUpstreamError):
        await ensure_valid_token(db, integration, adapter=adapter)


def test_missing_access_token_always_needs_refresh(make_integration):
    integration = make_integration(access_token=None)

    assert needs_refresh(integration)


def test_tokens_are_encrypted_at_rest(make_integration):
    integration = make_integration(access_token="plain-access")

    assert integration._access_token.startswith("ENC:v1:")
    assert "plain-access" not in integration._access_token
    assert integration.access_token == "plain-access"


def test_sealed_token_only_opens_in_its_own_column(make_integration):
    integration = make_integration(access_token="plain-access")

    integration._refresh_token = integration._access_token

    assert integration.refresh_token is None
    assert integration.access_token == "plain-access"


def test_tampered_access_token_reads_as_missing(make_integration):
    integration = make_integration()
    integration._access_token = integration._access_token[:-4] + "AAAA"

    assert integration.access_token is None
    assert needs_refresh(integration)


def test_rows_written_before_sealing_still_read(make_integration):
    integration = make_integration()
    integration._access_token = "legacy-plain"

    assert integration.access_token == "legacy-plain"
