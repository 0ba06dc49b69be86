"""
Window Planner

Turns a date range into windows whose result count stays under the remote
API's offset ceiling. Dense ranges are split into fixed-span children and
re-counted. Pending ranges live on an explicit stack so the time budget can
interrupt planning between any two count queries.

Windows are closed intervals. Consecutive children touch at one resolution
unit: ``next.start == previous.end + resolution``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Tuple

from marketplace_sync.config.constants import (
    DEFAULT_SPLIT_DAYS,
    DENSE_SPLIT_DAYS,
    DENSE_WINDOW_THRESHOLD,
    MAX_OFFSET,
    MIN_SPLIT_SPAN_SECONDS,
)
from marketplace_sync.core.budget import TimeBudget
from marketplace_sync.core.logger import setup_logger

logger = setup_logger(__name__)

MILLISECOND = timedelta(milliseconds=1)

# (start, end) -> remote count, None when the count query failed
CountFn = Callable[[datetime, datetime], Awaitable[Optional[int]]]


@dataclass
class SyncWindow:
    """A date range handed to the page fetcher as one unit."""

    start: datetime
    end: datetime
    estimated_count: int
    depth: int = 0
    counted: bool = True

    @property
    def span(self) -> timedelta:
        return self.end - self.start


@dataclass
class WindowPlan:
    """Planner output, in chronological order."""

    windows: List[SyncWindow] = field(default_factory=list)
    # Ranges left unplanned because the time budget ran out
    remaining: List[Tuple[datetime, datetime]] = field(default_factory=list)
    count_queries: int = 0
    truncated: bool = False

    @property
    def exhausted(self) -> bool:
        return bool(self.remaining)

    @property
    def estimated_total(self) -> int:
        return sum(window.estimated_count for window in self.windows)


def split_span_for(count: int) -> timedelta:
    """Child span for a window holding ``count`` results."""
    if count > DENSE_WINDOW_THRESHOLD:
        return timedelta(days=DENSE_SPLIT_DAYS)
    return timedelta(days=DEFAULT_SPLIT_DAYS)


def split_range(
    start: datetime,
    end: datetime,
    span: timedelta,
    resolution: timedelta = MILLISECOND,
) -> List[Tuple[datetime, datetime]]:
    """
    Partition ``[start, end]`` into contiguous closed children of at most ``span``.

    A range no wider than ``span`` is halved instead, so every split makes
    progress.
    """
    if end <= start:
        return [(start, end)]

    if end - start <= span:
        middle = start + (end - start) / 2
        return [(start, middle), (middle + resolution, end)]

    children = []
    cursor = start
    while cursor <= end:
        child_end = min(cursor + span - resolution, end)
        children.append((cursor, child_end))
        cursor = child_end + resolution
    return children


def fixed_windows(
    start: datetime,
    end: datetime,
    span: timedelta,
    resolution: timedelta = MILLISECOND,
) -> List[Tuple[datetime, datetime]]:
    """Chronological fixed-span windows covering ``[start, end]``, no probing."""
    if end < start:
        return []
    windows = []
    cursor = start
    while cursor <= end:
        window_end = min(cursor + span - resolution, end)
        windows.append((cursor, window_end))
        cursor = window_end + resolution
    return windows


class WindowPlanner:
    """Count-and-split planner bounded by the API ceiling."""

    def __init__(
        self,
        count_orders: CountFn,
        ceiling: int = MAX_OFFSET,
        budget: Optional[TimeBudget] = None,
        stop_margin: float = 0.0,
        min_span: timedelta = timedelta(seconds=MIN_SPLIT_SPAN_SECONDS),
    ):
        self.count_orders = count_orders
        self.ceiling = ceiling
        self.budget = budget
        self.stop_margin = stop_margin
        self.min_span = min_span

    async def plan(self, start: datetime, end: datetime) -> WindowPlan:
        """
        Plan windows covering ``[start, end]``.

        Zero-count ranges are dropped. A failed count query yields an uncounted
        window estimated at the ceiling, so fetching can still be attempted.

        Args:
            start: Lower bound (inclusive)
            end: Upper bound (inclusive)

        Returns:
            WindowPlan with chronological windows and any unplanned ranges
        """
        plan = WindowPlan()
        stack: List[Tuple[datetime, datetime, int]] = [(start, end, 0)]

        while stack:
            if self.budget is not None and self.budget.exhausted(self.stop_margin):
                plan.remaining = sorted((s, e) for s, e, _ in stack)
                logger.warning(
                    f"[Planner] Time budget exhausted with {len(stack)} range(s) unplanned"
                )
                break

            window_start, window_end, depth = stack.pop()
            count = await self.count_orders(window_start, window_end)
            plan.count_queries += 1

            if count is None:
                logger.warning(
                    f"[Planner] Count query failed for {window_start.isoformat()} -> "
                    f"{window_end.isoformat()}, keeping window uncounted"
                )
                plan.windows.append(
                    SyncWindow(window_start, window_end, self.ceiling, depth, counted=False)
                )
                continue

            if count == 0:
                continue

            if count <= self.ceiling:
                plan.windows.append(SyncWindow(window_start, window_end, count, depth))
                continue

            if window_end - window_start <= self.min_span:
                logger.warning(
                    f"[Planner] Window {window_start.isoformat()} holds {count} orders "
                    f"but is too narrow to split, truncating at {self.ceiling}"
                )
                plan.windows.append(SyncWindow(window_start, window_end, self.ceiling, depth))
                plan.truncated = True
                continue

            children = split_range(window_start, window_end, split_span_for(count))
            logger.info(
                f"[Planner] {count} orders exceed ceiling {self.ceiling}, "
                f"splitting into {len(children)} sub-windows (depth {depth + 1})"
            )
            # Earliest child on top of the stack
            for child_start, child_end in reversed(children):
                stack.append((child_start, child_end, depth + 1))

        plan.windows.sort(key=lambda window: window.start)
        return plan
