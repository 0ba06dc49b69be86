"""
Page Fetcher

Lists the orders of one window with a sliding pool of in-flight page
requests. Pages are issued in increasing offset order and may complete in
any order; results are reassembled by offset.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from marketplace_sync.api.meli_client import OrdersPage
from marketplace_sync.config.constants import API_OFFSET_LIMIT, MAX_OFFSET, PAGE_LIMIT
from marketplace_sync.core.budget import TimeBudget
from marketplace_sync.core.logger import setup_logger
from marketplace_sync.core.retry import FailureKind

logger = setup_logger(__name__)

# (offset, limit) -> page
FetchPageFn = Callable[[int, int], Awaitable[OrdersPage]]

STOP_TIME = "time"
STOP_FATAL = "fatal_error"
STOP_FIRST_PAGE = "first_page_failed"


@dataclass
class PageFetchResult:
    """Orders collected from one window."""

    orders: List[dict] = field(default_factory=list)
    total: Optional[int] = None
    target: int = 0
    pages_fetched: int = 0
    failed_pages: int = 0
    stopped_reason: Optional[str] = None
    auth_failed: bool = False

    @property
    def time_exhausted(self) -> bool:
        return self.stopped_reason == STOP_TIME

    @property
    def complete(self) -> bool:
        return self.stopped_reason is None and self.failed_pages == 0


class PageFetcher:
    """Bounded-concurrency page loop for one window."""

    def __init__(
        self,
        fetch_page: FetchPageFn,
        concurrency: int = 2,
        page_size: int = PAGE_LIMIT,
        ceiling: int = MAX_OFFSET,
        budget: Optional[TimeBudget] = None,
        stop_margin: float = 0.0,
        channel=None,
        account_id: Optional[str] = None,
    ):
        self.fetch_page = fetch_page
        self.concurrency = max(1, concurrency)
        self.page_size = page_size
        self.ceiling = min(ceiling, API_OFFSET_LIMIT)
        self.budget = budget
        self.stop_margin = stop_margin
        self.channel = channel
        self.account_id = account_id

    def _out_of_time(self) -> bool:
        return self.budget is not None and self.budget.exhausted(self.stop_margin)

    def _warn(self, message: str, error_code: str) -> None:
        if self.channel is not None:
            self.channel.warn(message, error_code=error_code, account_id=self.account_id)

    def _report(self, result: PageFetchResult, fetched: int, label: str) -> None:
        if self.channel is not None:
            self.channel.progress(
                f"{label}: {fetched}/{result.target} orders",
                current=fetched,
                total=result.target,
                fetched=fetched,
                expected=result.target,
                account_id=self.account_id,
            )

    async def _safe_fetch(self, offset: int, limit: int) -> OrdersPage:
        try:
            return await self.fetch_page(offset, limit)
        except Exception as e:
            logger.error(f"[Pages] Unexpected error on page offset={offset}: {e}", exc_info=True)
            return OrdersPage(offset=offset)

    def _record_failure(self, result: PageFetchResult, page: OrdersPage) -> bool:
        """Count a failed page. Returns True when no further pages should be issued."""
        result.failed_pages += 1
        outcome = page.outcome
        page_number = page.offset // self.page_size + 1
        code = outcome.error_code() if outcome is not None else "UNKNOWN_ERROR"
        self._warn(f"Could not fetch page {page_number}: {code}", "PAGE_FETCH_ERROR")
        if outcome is not None and outcome.kind in (FailureKind.AUTH, FailureKind.CLIENT):
            result.auth_failed = outcome.kind == FailureKind.AUTH
            return True
        return False

    async def fetch(self, max_orders: Optional[int] = None, label: str = "Fetching orders") -> PageFetchResult:
        """
        Fetch every page of the window, bounded by total, ceiling and ``max_orders``.

        Stops issuing new pages when time runs out or a non-retryable error
        occurs. Pages already in flight always complete.

        Args:
            max_orders: Optional cap on orders collected
            label: Prefix for progress messages

        Returns:
            PageFetchResult with orders in offset order
        """
        result = PageFetchResult()
        cap = self.ceiling if max_orders is None else min(self.ceiling, max_orders)
        if cap <= 0:
            return result

        if self._out_of_time():
            result.stopped_reason = STOP_TIME
            return result

        first = await self._safe_fetch(0, min(self.page_size, cap))
        if not first.ok:
            self._record_failure(result, first)
            result.stopped_reason = STOP_FIRST_PAGE
            return result

        result.pages_fetched = 1
        result.total = first.total
        total = first.total if first.total is not None else len(first.results)
        result.target = min(total, cap)

        pages: Dict[int, List[dict]] = {0: first.results}
        fetched = len(first.results)
        self._report(result, min(fetched, result.target), label)

        offsets = list(range(self.page_size, result.target, self.page_size))
        if len(first.results) < min(self.page_size, cap):
            offsets = []

        in_flight: Dict[asyncio.Task, int] = {}
        next_index = 0
        stop_issuing = False

        while True:
            while not stop_issuing and next_index < len(offsets) and len(in_flight) < self.concurrency:
                if self._out_of_time():
                    result.stopped_reason = STOP_TIME
                    logger.warning(
                        f"[Pages] Time budget reached, {len(offsets) - next_index} page(s) not issued"
                    )
                    stop_issuing = True
                    break
                offset = offsets[next_index]
                limit = min(self.page_size, result.target - offset)
                task = asyncio.ensure_future(self._safe_fetch(offset, limit))
                in_flight[task] = offset
                next_index += 1

            if not in_flight:
                break

            done, _ = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                offset = in_flight.pop(task)
                page = task.result()
                if not page.ok:
                    if self._record_failure(result, page):
                        stop_issuing = True
                        result.stopped_reason = result.stopped_reason or STOP_FATAL
                    continue

                result.pages_fetched += 1
                pages[offset] = page.results
                fetched += len(page.results)
                self._report(result, min(fetched, result.target), label)

                if not page.results:
                    # Remote total shrank; nothing past this offset
                    offsets = [o for o in offsets if o < offset]
                    next_index = min(next_index, len(offsets))

        for offset in sorted(pages):
            result.orders.extend(pages[offset])
        if len(result.orders) > cap:
            result.orders = result.orders[:cap]

        logger.info(
            f"[Pages] {len(result.orders)}/{result.target} orders in {result.pages_fetched} page(s), "
            f"{result.failed_pages} failed"
            + (f", stopped: {result.stopped_reason}" if result.stopped_reason else "")
        )
        return result
