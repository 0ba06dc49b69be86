"""Tests for the Mercado Livre strategy: recent batch and history walk."""

from datetime import datetime, timezone

import httpx
import pytest

from conftest import fetch_context
from marketplace_sync.api.meli_client import OrdersPage
from marketplace_sync.core.errors import AuthenticationError
from marketplace_sync.core.retry import CallOutcome, classify_status
from marketplace_sync.services.meli_sync import MeliSync, oldest_order_date, previous_month_start
from marketplace_sync.services.platform import AccountState, SyncRequest
from marketplace_sync.services.transformer import parse_datetime

NOW = datetime(2024, 5, 20, tzinfo=timezone.utc)


def order(order_id, created):
    return {
        "id": order_id,
        "date_created": created,
        "order_items": [{"item": {"title": "Item", "seller_sku": "SKU"}, "quantity": 1, "unit_price": 10}],
        "shipping": {"id": 900 + order_id},
    }


ORDERS = [
    order(1, "2024-05-15T10:00:00.000Z"),
    order(2, "2024-05-10T10:00:00.000Z"),
    order(3, "2024-04-20T10:00:00.000Z"),
    order(4, "2024-03-05T10:00:00.000Z"),
]


class FakeMeliClient:
    """Serves ``orders`` newest first, filtered like /orders/search."""

    def __init__(self, orders, status=200, on_search=None):
        self.orders = sorted(orders, key=lambda o: o["date_created"], reverse=True)
        self.status = status
        self.on_search = on_search
        self.searches = []
        self.counts = []
        self.shipments = []

    def _matching(self, date_from, date_to):
        matching = []
        for entry in self.orders:
            created = parse_datetime(entry["date_created"])
            if date_from is not None and created < date_from:
                continue
            if date_to is not None and created > date_to:
                continue
            matching.append(entry)
        return matching

    async def search_orders(self, account, offset=0, limit=50, date_from=None, date_to=None, warn=None):
        self.searches.append((offset, limit, date_from, date_to))
        if self.on_search is not None:
            self.on_search(date_from, date_to)
        if self.status != 200:
            outcome = CallOutcome(
                response=httpx.Response(self.status),
                kind=classify_status(self.status),
                attempts=1,
            )
            return OrdersPage(offset=offset, outcome=outcome)
        matching = self._matching(date_from, date_to)
        return OrdersPage(
            offset=offset,
            results=[dict(entry) for entry in matching[offset:offset + limit]],
            total=len(matching),
            outcome=CallOutcome(response=httpx.Response(200), attempts=1),
        )

    async def fetch_count(self, account, date_from, date_to, warn=None):
        self.counts.append((date_from, date_to))
        return len(self._matching(date_from, date_to))

    async def get_order(self, account, order_id, warn=None):
        return {}

    async def get_shipment(self, account, shipment_id, warn=None):
        self.shipments.append(shipment_id)
        return {"id": int(shipment_id), "logistic_type": "fulfillment"}

    async def refresh_token(self, refresh_token):
        raise AssertionError("not used")

    async def close(self):
        pass


def strategy(client, recent_batch=2):
    return MeliSync(client, recent_batch=recent_batch, clock=lambda: NOW)


def ids(outcome):
    return [item.order["id"] for item in outcome.items]


def test_month_helpers():
    assert previous_month_start(datetime(2024, 3, 15, tzinfo=timezone.utc)) == datetime(
        2024, 2, 1, tzinfo=timezone.utc
    )
    assert previous_month_start(datetime(2024, 1, 1, tzinfo=timezone.utc)) == datetime(
        2023, 12, 1, tzinfo=timezone.utc
    )
    assert oldest_order_date(ORDERS) == datetime(2024, 3, 5, 10, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_recent_batch_covering_total_completes_history(channel):
    client = FakeMeliClient(ORDERS)
    states = []
    ctx = fetch_context(channel, on_state=states.append)

    outcome = await strategy(client, recent_batch=100).fetch(ctx)

    assert ids(outcome) == [1, 2, 3, 4]
    assert outcome.expected == 4
    assert outcome.history_complete
    assert client.counts == []
    assert states == [AccountState.FETCHING_RECENT]
    assert sorted(client.shipments) == ["901", "902", "903", "904"]
    assert outcome.items[0].detail["logistic_type"] == "fulfillment"


@pytest.mark.asyncio
async def test_history_walks_back_month_by_month(channel):
    client = FakeMeliClient(ORDERS)
    states = []
    ctx = fetch_context(channel, on_state=states.append)

    outcome = await strategy(client).fetch(ctx)

    # Recent batch, then May (overlapping), April, March; February is empty
    assert ids(outcome) == [1, 2, 2, 3, 4]
    assert outcome.expected == 4
    assert outcome.history_complete
    assert not outcome.forced_stop
    assert states == [AccountState.FETCHING_RECENT, AccountState.FETCHING_HISTORY]
    assert [start.month for start, _ in client.counts] == [5, 4, 3, 2]


@pytest.mark.asyncio
async def test_explicit_cursor_resumes_below_checkpoint(channel):
    client = FakeMeliClient(ORDERS)
    cursor = datetime(2024, 4, 25, tzinfo=timezone.utc)
    ctx = fetch_context(channel, cursor=cursor, persisted_count=4)

    outcome = await strategy(client).fetch(ctx)

    assert ids(outcome) == [1, 2, 3, 4]
    assert client.counts[0] == (datetime(2024, 4, 1, tzinfo=timezone.utc), cursor)


@pytest.mark.asyncio
async def test_fully_persisted_account_skips_history(channel):
    client = FakeMeliClient(ORDERS)
    ctx = fetch_context(channel, persisted_count=4)

    outcome = await strategy(client).fetch(ctx)

    assert ids(outcome) == [1, 2]
    assert outcome.history_complete
    assert client.counts == []


@pytest.mark.asyncio
async def test_order_budget_stops_history_with_checkpoint(channel):
    client = FakeMeliClient(ORDERS)
    ctx = fetch_context(channel, order_budget=3)

    outcome = await strategy(client).fetch(ctx)

    assert ids(outcome) == [1, 2, 2]
    assert outcome.forced_stop
    assert outcome.next_cursor == datetime(2024, 4, 30, 23, 59, 59, 999000, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_little_time_left_defers_history(channel):
    client = FakeMeliClient(ORDERS)
    ctx = fetch_context(channel, budget_seconds=8)

    outcome = await strategy(client).fetch(ctx)

    assert ids(outcome) == [1, 2]
    assert outcome.forced_stop
    assert outcome.next_cursor == datetime(2024, 5, 10, 10, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_first_page_failure_returns_empty_outcome(channel):
    client = FakeMeliClient(ORDERS, status=503)

    outcome = await strategy(client).fetch(fetch_context(channel))

    assert outcome.items == []
    assert not outcome.history_complete
    assert len(client.searches) == 1


@pytest.mark.asyncio
async def test_rejected_credentials_raise(channel):
    client = FakeMeliClient(ORDERS, status=401)

    with pytest.raises(AuthenticationError):
        await strategy(client).fetch(fetch_context(channel))


@pytest.mark.asyncio
async def test_full_sync_request_uses_same_walk(channel):
    client = FakeMeliClient(ORDERS)
    request = SyncRequest(platform="meli", owner_id="owner-1", full_sync=True)

    outcome = await strategy(client).fetch(fetch_context(channel, request=request))

    assert outcome.history_complete
    assert ids(outcome)[-1] == 4


@pytest.mark.asyncio
async def test_budget_spent_before_shipments_resumes_from_that_window(channel, clock):
    def slow_april_page(date_from, date_to):
        if date_from is not None and date_from.month == 4:
            clock.advance(31)

    client = FakeMeliClient(ORDERS, on_search=slow_april_page)
    ctx = fetch_context(channel, clock=clock, budget_seconds=30)

    outcome = await strategy(client).fetch(ctx)

    april = [item for item in outcome.items if item.order["id"] == 3]
    assert april and april[0].skipped
    assert "903" not in client.shipments
    assert outcome.forced_stop
    # Resume at the end of April so order 3 is fetched and enriched again
    assert outcome.next_cursor == datetime(2024, 4, 30, 23, 59, 59, 999000, tzinfo=timezone.utc)
    assert outcome.next_cursor > parse_datetime(ORDERS[2]["date_created"])
