"""Tests for window planning and splitting."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeClock
from marketplace_sync.core.budget import TimeBudget
from marketplace_sync.services.window_planner import (
    MILLISECOND,
    WindowPlanner,
    fixed_windows,
    split_range,
    split_span_for,
)

START = datetime(2024, 3, 1, tzinfo=timezone.utc)
END = datetime(2024, 3, 31, 23, 59, 59, 999000, tzinfo=timezone.utc)


def per_minute_count(calls=None):
    """One order per minute of range."""

    async def count_orders(start, end):
        if calls is not None:
            calls.append((start, end))
        return int((end - start).total_seconds() // 60)

    return count_orders


def assert_contiguous(windows, start, end):
    assert windows[0].start == start
    assert windows[-1].end == end
    for previous, current in zip(windows, windows[1:]):
        assert current.start == previous.end + MILLISECOND


def test_split_span_depends_on_density():
    assert split_span_for(60000) == timedelta(days=7)
    assert split_span_for(20000) == timedelta(days=14)


def test_split_range_children_are_contiguous():
    children = split_range(START, END, timedelta(days=7))

    assert children[0][0] == START
    assert children[-1][1] == END
    for (_, previous_end), (next_start, _) in zip(children, children[1:]):
        assert next_start == previous_end + MILLISECOND
    assert all(child_end - child_start < timedelta(days=7) for child_start, child_end in children)


def test_split_range_halves_narrow_ranges():
    end = START + timedelta(days=2)

    children = split_range(START, end, timedelta(days=14))

    assert children == [
        (START, START + timedelta(days=1)),
        (START + timedelta(days=1) + MILLISECOND, end),
    ]


def test_fixed_windows_cover_range_at_second_resolution():
    second = timedelta(seconds=1)
    end = START + timedelta(days=30)

    windows = fixed_windows(START, end, timedelta(days=15), resolution=second)

    assert windows[0] == (START, START + timedelta(days=15) - second)
    assert windows[1][0] == START + timedelta(days=15)
    assert windows[-1][1] == end


def test_fixed_windows_empty_when_reversed():
    assert fixed_windows(END, START, timedelta(days=15)) == []


@pytest.mark.asyncio
async def test_plan_covers_range_without_gaps_and_respects_ceiling():
    planner = WindowPlanner(per_minute_count(), ceiling=9950)

    plan = await planner.plan(START, END)

    assert plan.windows
    assert_contiguous(plan.windows, START, END)
    assert all(window.estimated_count <= 9950 for window in plan.windows)
    assert not plan.exhausted
    assert not plan.truncated
    assert plan.estimated_total == sum(w.estimated_count for w in plan.windows)


@pytest.mark.asyncio
async def test_plan_single_window_when_under_ceiling():
    planner = WindowPlanner(per_minute_count(), ceiling=9950)
    end = START + timedelta(days=1)

    plan = await planner.plan(START, end)

    assert len(plan.windows) == 1
    assert plan.windows[0].start == START
    assert plan.windows[0].end == end
    assert plan.count_queries == 1


@pytest.mark.asyncio
async def test_zero_count_windows_are_dropped():
    quiet_from = START + timedelta(days=14)

    async def count_orders(start, end):
        if start >= quiet_from:
            return 0
        if end - start > timedelta(days=14):
            return 20000
        return 500

    plan = await WindowPlanner(count_orders).plan(START, END)

    assert plan.windows
    assert all(window.start < quiet_from for window in plan.windows)
    assert plan.windows[0].start == START


@pytest.mark.asyncio
async def test_failed_count_keeps_uncounted_window_at_ceiling():
    async def count_orders(start, end):
        return None

    plan = await WindowPlanner(count_orders, ceiling=9950).plan(START, END)

    assert len(plan.windows) == 1
    assert plan.windows[0].counted is False
    assert plan.windows[0].estimated_count == 9950


@pytest.mark.asyncio
async def test_narrow_dense_window_is_truncated():
    async def count_orders(start, end):
        return 20000

    end = START + timedelta(hours=4)
    plan = await WindowPlanner(count_orders, ceiling=9950).plan(START, end)

    assert plan.truncated
    assert_contiguous(plan.windows, START, end)
    assert all(window.span <= timedelta(hours=1) for window in plan.windows)
    assert all(window.estimated_count == 9950 for window in plan.windows)


@pytest.mark.asyncio
async def test_budget_stops_planning_between_count_queries():
    clock = FakeClock()
    budget = TimeBudget(10, clock=clock)

    async def count_orders(start, end):
        clock.advance(4)
        return int((end - start).total_seconds() // 60)

    plan = await WindowPlanner(count_orders, budget=budget).plan(START, END)

    assert plan.exhausted
    assert plan.count_queries == 3
    assert plan.remaining == sorted(plan.remaining)
