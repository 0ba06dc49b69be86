"""Tests for token refresh and invalid marks."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import add_accounts, make_account
from marketplace_sync.api.meli_client import TokenGrant
from marketplace_sync.core.errors import AuthenticationError, TokenRefreshError
from marketplace_sync.db.base import to_storage
from marketplace_sync.db.models import Account
from marketplace_sync.services.account_service import AccountService

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


async def load(session_factory, account_id="acc-1"):
    async with session_factory() as session:
        return await session.get(Account, account_id)


def service(session_factory, refresher):
    return AccountService(session_factory, {"meli": refresher}, buffer_seconds=300, clock=lambda: NOW)


def test_needs_refresh_inside_buffer(session_factory):
    accounts = service(session_factory, None)

    assert accounts.needs_refresh(make_account(expires_at=to_storage(NOW + timedelta(minutes=4))))
    assert not accounts.needs_refresh(make_account(expires_at=to_storage(NOW + timedelta(hours=1))))


@pytest.mark.asyncio
async def test_fresh_token_is_left_alone(session_factory):
    calls = []

    async def refresher(account):
        calls.append(account.id)

    account = make_account(expires_at=to_storage(NOW + timedelta(hours=1)))
    await service(session_factory, refresher).ensure_fresh_token(account)

    assert calls == []


@pytest.mark.asyncio
async def test_refresh_persists_new_tokens(session_factory):
    await add_accounts(
        session_factory,
        make_account(
            expires_at=to_storage(NOW - timedelta(minutes=1)),
            refresh_token_invalid_until=to_storage(NOW - timedelta(days=1)),
        ),
    )
    account = await load(session_factory)

    async def refresher(acc):
        assert acc.refresh_token == "refresh"
        return TokenGrant("new-access", "new-refresh", NOW + timedelta(hours=6))

    await service(session_factory, refresher).ensure_fresh_token(account)

    assert account.access_token == "new-access"
    stored = await load(session_factory)
    assert stored.access_token == "new-access"
    assert stored.refresh_token == "new-refresh"
    assert stored.expires_at == datetime(2024, 5, 10, 18, 0)
    assert stored.refresh_token_invalid_until is None


@pytest.mark.asyncio
async def test_refresh_keeps_old_refresh_token_when_none_returned(session_factory):
    await add_accounts(session_factory, make_account(expires_at=to_storage(NOW)))
    account = await load(session_factory)

    async def refresher(acc):
        return TokenGrant("new-access", None, NOW + timedelta(hours=4))

    await service(session_factory, refresher).ensure_fresh_token(account, force=True)

    assert (await load(session_factory)).refresh_token == "refresh"


@pytest.mark.asyncio
async def test_failed_refresh_marks_account_invalid(session_factory):
    await add_accounts(session_factory, make_account(expires_at=to_storage(NOW)))
    account = await load(session_factory)

    async def refresher(acc):
        raise AuthenticationError("invalid_grant", status=400, error_code="invalid_grant")

    with pytest.raises(TokenRefreshError) as exc_info:
        await service(session_factory, refresher).ensure_fresh_token(account)

    assert exc_info.value.account_id == "acc-1"
    assert (await load(session_factory)).refresh_token_invalid_until == datetime(2024, 5, 10, 12, 0)


@pytest.mark.asyncio
async def test_missing_refresher_raises(session_factory):
    account = make_account(platform="shopee", expires_at=to_storage(NOW))

    with pytest.raises(TokenRefreshError):
        await AccountService(session_factory, {}, clock=lambda: NOW).ensure_fresh_token(account)


@pytest.mark.asyncio
async def test_clear_invalid_mark(session_factory):
    await add_accounts(
        session_factory,
        make_account(refresh_token_invalid_until=to_storage(NOW)),
    )
    accounts = service(session_factory, None)

    assert await accounts.clear_invalid_mark("acc-1") is True
    assert (await load(session_factory)).refresh_token_invalid_until is None
    assert await accounts.clear_invalid_mark("missing") is False


@pytest.mark.asyncio
async def test_rejected_token_refreshes_once_for_concurrent_callers(session_factory):
    await add_accounts(session_factory, make_account(expires_at=to_storage(NOW + timedelta(hours=1))))
    account = await load(session_factory)
    grants = iter(["second-access", "third-access"])
    calls = []

    async def refresher(acc):
        calls.append(acc.access_token)
        await asyncio.sleep(0)
        return TokenGrant(next(grants), None, NOW + timedelta(hours=4))

    accounts = service(session_factory, refresher)

    await asyncio.gather(*(accounts.refresh_rejected_token(account, "token") for _ in range(20)))

    assert calls == ["token"]
    assert account.access_token == "second-access"

    # A later rejection of the new token refreshes again
    await accounts.refresh_rejected_token(account, "second-access")
    assert calls == ["token", "second-access"]
    assert (await load(session_factory)).access_token == "third-access"
