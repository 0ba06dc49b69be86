"""Tests for the Shopee strategy: fixed windows, caps and token retry."""

import asyncio
import functools
from datetime import datetime, timedelta, timezone

import pytest

from conftest import add_accounts, fetch_context, make_account, plain_account
from marketplace_sync.api.meli_client import TokenGrant
from marketplace_sync.api.shopee_client import OrderListPage
from marketplace_sync.core.errors import AuthenticationError, RemoteCallError
from marketplace_sync.db.base import to_storage
from marketplace_sync.db.models import Account
from marketplace_sync.services.account_service import AccountService
from marketplace_sync.services.platform import SyncRequest
from marketplace_sync.services.shopee_sync import ShopeeSync, epoch_seconds

NOW = datetime(2024, 2, 10, tzinfo=timezone.utc)


def ts(*args):
    return epoch_seconds(datetime(*args, tzinfo=timezone.utc))


ORDER_TIMES = {
    "A": ts(2024, 1, 5),
    "B": ts(2024, 1, 6),
    "C": ts(2024, 1, 7),
    "D": ts(2024, 1, 20),
    "E": ts(2024, 2, 5),
}


class FakeShopeeClient:
    """Pages order numbers two at a time through a numeric cursor."""

    def __init__(self, invalid_token_calls=0, failing_from=None, on_list=None):
        self.invalid_token_calls = invalid_token_calls
        self.failing_from = failing_from
        self.on_list = on_list
        self.list_calls = []
        self.detail_batches = []
        self.escrows = []

    async def get_order_list(self, account, time_from, time_to, cursor="", page_size=100, warn=None):
        self.list_calls.append((time_from, time_to, cursor))
        if self.on_list is not None:
            self.on_list()
        if self.invalid_token_calls:
            self.invalid_token_calls -= 1
            raise AuthenticationError("token expired", status=403, error_code="invalid_access_token")
        if self.failing_from is not None and time_from == self.failing_from:
            raise RemoteCallError("Shopee order list failed: HTTP 500", status=500)

        matching = sorted(sn for sn, created in ORDER_TIMES.items() if time_from <= created <= time_to)
        start = int(cursor or 0)
        chunk = matching[start:start + 2]
        more = start + 2 < len(matching)
        return OrderListPage(order_sns=chunk, more=more, next_cursor=str(start + 2) if more else "")

    async def get_order_detail(self, account, order_sns, warn=None):
        self.detail_batches.append(list(order_sns))
        return [{"order_sn": sn, "create_time": ORDER_TIMES[sn]} for sn in order_sns]

    async def get_escrow_detail(self, account, order_sn, warn=None):
        self.escrows.append(order_sn)
        return {"order_sn": order_sn, "order_income": {"escrow_amount": 10}}

    async def close(self):
        pass


def strategy(client):
    return ShopeeSync(client, clock=lambda: NOW)


def shopee_context(channel, **overrides):
    account = overrides.pop("account", None) or plain_account(platform="shopee", external_id="777")
    request = overrides.pop("request", None) or SyncRequest(platform="shopee", owner_id="owner-1", full_sync=True)
    return fetch_context(channel, account=account, request=request, **overrides)


def sns(outcome):
    return [item.order["order_sn"] for item in outcome.items]


def test_start_date():
    sync = strategy(FakeShopeeClient())
    channel = None  # start_date never publishes
    newest = datetime(2024, 2, 1, tzinfo=timezone.utc)
    incremental = SyncRequest(platform="shopee", owner_id="owner-1")

    assert sync.start_date(shopee_context(channel)) == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert sync.start_date(
        shopee_context(channel, request=incremental, newest_persisted=newest)
    ) == newest - timedelta(days=1)
    assert sync.start_date(
        shopee_context(channel, request=incremental, newest_persisted=newest, cursor=NOW)
    ) == NOW


@pytest.mark.asyncio
async def test_fetches_every_window_with_cursor_pagination(channel):
    client = FakeShopeeClient()

    outcome = await strategy(client).fetch(shopee_context(channel))

    assert sns(outcome) == ["A", "B", "C", "D", "E"]
    assert outcome.history_complete
    assert outcome.expected == 5
    # First window pages twice: A,B then C
    assert [cursor for _, _, cursor in client.list_calls][:2] == ["", "2"]
    assert sorted(client.escrows) == ["A", "B", "C", "D", "E"]
    assert outcome.items[0].detail["order_income"]["escrow_amount"] == 10


@pytest.mark.asyncio
async def test_order_cap_stops_with_resume_point(channel):
    client = FakeShopeeClient()

    outcome = await strategy(client).fetch(shopee_context(channel, order_budget=2))

    assert sns(outcome) == ["A", "B"]
    assert outcome.forced_stop
    assert outcome.next_cursor == datetime(2024, 1, 7, tzinfo=timezone.utc)
    assert "MAX_VENDAS_REACHED" in channel.codes()


@pytest.mark.asyncio
async def test_invalid_token_forces_one_refresh_and_retries(channel):
    client = FakeShopeeClient(invalid_token_calls=1)
    refreshes = []

    async def refresh(rejected_token):
        refreshes.append(rejected_token)

    outcome = await strategy(client).fetch(shopee_context(channel, refresh_token=refresh))

    assert refreshes == ["token"]
    assert sns(outcome) == ["A", "B", "C", "D", "E"]


@pytest.mark.asyncio
async def test_token_still_rejected_after_refresh_raises(channel):
    client = FakeShopeeClient(invalid_token_calls=2)

    async def refresh(rejected_token):
        return None

    with pytest.raises(AuthenticationError):
        await strategy(client).fetch(shopee_context(channel, refresh_token=refresh))


@pytest.mark.asyncio
async def test_failed_window_is_skipped_with_warning(channel):
    client = FakeShopeeClient(failing_from=ts(2024, 1, 1))

    outcome = await strategy(client).fetch(shopee_context(channel))

    assert sns(outcome) == ["D", "E"]
    assert "WINDOW_FETCH_ERROR" in channel.codes()


@pytest.mark.asyncio
async def test_spent_budget_defers_from_window_start(channel, clock):
    client = FakeShopeeClient()
    ctx = shopee_context(channel, clock=clock, budget_seconds=30)
    clock.advance(100)

    outcome = await strategy(client).fetch(ctx)

    assert outcome.items == []
    assert outcome.forced_stop
    assert outcome.next_cursor == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert client.list_calls == []


@pytest.mark.asyncio
async def test_budget_spent_before_escrow_resumes_from_window_start(channel, clock):
    client = FakeShopeeClient(on_list=lambda: clock.advance(31))
    ctx = shopee_context(channel, clock=clock, budget_seconds=30)

    outcome = await strategy(client).fetch(ctx)

    assert client.escrows == []
    assert sns(outcome) == ["A", "B", "C"]
    assert all(item.skipped for item in outcome.items)
    assert outcome.forced_stop
    assert outcome.next_cursor == datetime(2024, 1, 1, tzinfo=timezone.utc)


class StaleTokenShopeeClient(FakeShopeeClient):
    """Rejects escrow lookups made with the original access token."""

    async def get_escrow_detail(self, account, order_sn, warn=None):
        if account.access_token == "token":
            await asyncio.sleep(0)
            raise AuthenticationError("token expired", status=403, error_code="invalid_access_token")
        return await super().get_escrow_detail(account, order_sn, warn=warn)


@pytest.mark.asyncio
async def test_concurrent_token_rejections_share_one_refresh(channel, session_factory):
    await add_accounts(session_factory, make_account(platform="shopee", external_id="777"))
    async with session_factory() as session:
        account = await session.get(Account, "acc-1")

    refreshes = []

    async def refresher(acc):
        refreshes.append(acc.access_token)
        await asyncio.sleep(0)
        return TokenGrant("new-token", "new-refresh", NOW + timedelta(hours=4))

    accounts = AccountService(session_factory, {"shopee": refresher})
    client = StaleTokenShopeeClient()
    ctx = shopee_context(
        channel,
        account=account,
        refresh_token=functools.partial(accounts.refresh_rejected_token, account),
    )

    outcome = await strategy(client).fetch(ctx)

    # A, B and C fail together in the first window
    assert refreshes == ["token"]
    assert account.access_token == "new-token"
    assert sorted(client.escrows) == ["A", "B", "C", "D", "E"]
    assert all(item.detail["order_income"]["escrow_amount"] == 10 for item in outcome.items)

    async with session_factory() as session:
        stored = await session.get(Account, "acc-1")
    assert stored.access_token == "new-token"
    assert stored.expires_at == to_storage(NOW + timedelta(hours=4))
