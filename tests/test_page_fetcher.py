"""Tests for the bounded-concurrency page fetcher."""

import asyncio

import httpx
import pytest

from conftest import FakeClock
from marketplace_sync.api.meli_client import OrdersPage
from marketplace_sync.core.budget import TimeBudget
from marketplace_sync.core.retry import CallOutcome, FailureKind
from marketplace_sync.services.page_fetcher import STOP_FATAL, STOP_FIRST_PAGE, PageFetcher


def ok_page(offset, limit, total):
    results = [{"id": i} for i in range(offset, min(offset + limit, total))]
    return OrdersPage(
        offset=offset,
        results=results,
        total=total,
        outcome=CallOutcome(response=httpx.Response(200), attempts=1),
    )


def failed_page(offset, status, kind):
    return OrdersPage(
        offset=offset,
        outcome=CallOutcome(response=httpx.Response(status), kind=kind, attempts=3, error=f"HTTP {status}"),
    )


class FakeRemote:
    def __init__(self, total, failures=None, delays=None, clock=None, step=0.0):
        self.total = total
        self.failures = failures or {}
        self.delays = delays or {}
        self.clock = clock
        self.step = step
        self.requested = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, offset, limit):
        self.requested.append((offset, limit))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(offset, 0))
            if self.clock is not None:
                self.clock.advance(self.step)
            if offset in self.failures:
                status, kind = self.failures[offset]
                return failed_page(offset, status, kind)
            return ok_page(offset, limit, self.total)
        finally:
            self.in_flight -= 1


@pytest.mark.asyncio
async def test_fetches_all_pages_in_offset_order():
    # Later pages complete first
    remote = FakeRemote(230, delays={50: 0.02, 100: 0.0, 150: 0.01})
    fetcher = PageFetcher(remote, concurrency=2, page_size=50)

    result = await fetcher.fetch()

    assert [order["id"] for order in result.orders] == list(range(230))
    assert result.total == 230
    assert result.pages_fetched == 5
    assert result.complete
    assert remote.max_in_flight <= 2


@pytest.mark.asyncio
async def test_pages_are_issued_in_increasing_offset_order():
    remote = FakeRemote(230)

    await PageFetcher(remote, concurrency=3, page_size=50).fetch()

    offsets = [offset for offset, _ in remote.requested]
    assert offsets == sorted(offsets)


@pytest.mark.asyncio
async def test_max_orders_caps_collection():
    remote = FakeRemote(500)

    result = await PageFetcher(remote, page_size=50).fetch(max_orders=100)

    assert len(result.orders) == 100
    assert result.target == 100
    assert result.total == 500


@pytest.mark.asyncio
async def test_ceiling_caps_target_and_last_page_limit():
    remote = FakeRemote(20000)

    result = await PageFetcher(remote, page_size=50, ceiling=120).fetch()

    assert len(result.orders) == 120
    assert remote.requested[-1] == (100, 20)


@pytest.mark.asyncio
async def test_failed_middle_page_is_skipped_with_warning(channel):
    remote = FakeRemote(200, failures={100: (503, FailureKind.RETRYABLE)})
    fetcher = PageFetcher(remote, page_size=50, channel=channel, account_id="acc-1")

    result = await fetcher.fetch()

    assert len(result.orders) == 150
    assert result.failed_pages == 1
    assert result.stopped_reason is None
    assert not result.complete
    assert "PAGE_FETCH_ERROR" in channel.codes()


@pytest.mark.asyncio
async def test_first_page_failure_stops_window(channel):
    remote = FakeRemote(200, failures={0: (503, FailureKind.RETRYABLE)})

    result = await PageFetcher(remote, page_size=50, channel=channel).fetch()

    assert result.stopped_reason == STOP_FIRST_PAGE
    assert result.orders == []
    assert remote.requested == [(0, 50)]


@pytest.mark.asyncio
async def test_auth_failure_stops_issuing_pages():
    remote = FakeRemote(1000, failures={50: (401, FailureKind.AUTH)})

    result = await PageFetcher(remote, concurrency=1, page_size=50).fetch()

    assert result.auth_failed
    assert result.stopped_reason == STOP_FATAL
    assert [offset for offset, _ in remote.requested] == [0, 50]


@pytest.mark.asyncio
async def test_time_budget_stops_new_pages():
    clock = FakeClock()
    budget = TimeBudget(10, clock=clock)
    remote = FakeRemote(1000, clock=clock, step=4)

    result = await PageFetcher(remote, concurrency=2, page_size=50, budget=budget).fetch()

    assert result.time_exhausted
    assert len(result.orders) == 150
    assert len(remote.requested) == 3


@pytest.mark.asyncio
async def test_no_requests_when_budget_already_spent():
    clock = FakeClock()
    budget = TimeBudget(5, clock=clock)
    clock.advance(6)
    remote = FakeRemote(100)

    result = await PageFetcher(remote, budget=budget).fetch()

    assert result.time_exhausted
    assert remote.requested == []
