"""
Mercado Livre sync strategy.

Fetches the most recent orders first, then walks history backward one
calendar month at a time from the checkpoint. Each month is planned by the
window planner so no window exceeds the search offset ceiling.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from marketplace_sync.api.meli_client import MeliClient
from marketplace_sync.config.constants import (
    FULL_SYNC_LOWER_BOUND,
    HISTORY_MIN_REMAINING_SECONDS,
    HISTORY_STOP_MARGIN_SECONDS,
    INCREMENTAL_LOWER_BOUND,
    MAX_OFFSET,
    PAGE_LIMIT,
    PLATFORM_MELI,
    SAFE_BATCH_SIZE,
    SHIPMENT_BATCH_SIZE,
)
from marketplace_sync.core.errors import AuthenticationError
from marketplace_sync.core.logger import setup_logger
from marketplace_sync.services.order_enricher import EnrichedOrder, OrderEnricher, skipped_for_time
from marketplace_sync.services.page_fetcher import STOP_FIRST_PAGE, PageFetcher, PageFetchResult
from marketplace_sync.services.platform import AccountState, FetchContext, FetchOutcome, PlatformSync
from marketplace_sync.services.transformer import (
    SkuCosts,
    build_meli_record,
    extract_order_date,
    meli_order_skus,
    parse_datetime,
)
from marketplace_sync.services.window_planner import MILLISECOND, SyncWindow, WindowPlanner

logger = setup_logger(__name__)


def month_start(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def previous_month_start(value: datetime) -> datetime:
    first = month_start(value)
    return month_start(first - timedelta(days=1))


def order_created_at(order: dict) -> Optional[datetime]:
    return parse_datetime(order.get("date_created")) or extract_order_date(order)


def oldest_order_date(orders: List[dict]) -> Optional[datetime]:
    """Earliest creation date among ``orders``, the search filter field."""
    dates = [d for d in (order_created_at(order) for order in orders) if d is not None]
    return min(dates) if dates else None


class MeliSync(PlatformSync):
    """Recent-first fetch with month-by-month history backfill."""

    platform = PLATFORM_MELI

    def __init__(
        self,
        client: MeliClient,
        page_concurrency: int = 2,
        recent_batch: int = SAFE_BATCH_SIZE,
        ceiling: int = MAX_OFFSET,
        page_size: int = PAGE_LIMIT,
        clock=lambda: datetime.now(timezone.utc),
    ):
        self.client = client
        self.page_concurrency = page_concurrency
        self.recent_batch = recent_batch
        self.ceiling = ceiling
        self.page_size = page_size
        self._clock = clock

    async def refresh(self, account: Any):
        return await self.client.refresh_token(account.refresh_token)

    async def close(self) -> None:
        await self.client.close()

    def order_skus(self, item: EnrichedOrder) -> List[str]:
        return meli_order_skus(item.order)

    def build_record(self, item: EnrichedOrder, account: Any, owner_id: str, sku_costs: SkuCosts) -> dict:
        return build_meli_record(item.order, item.detail, account, owner_id, sku_costs)

    def _page_fetcher(self, ctx: FetchContext, date_from=None, date_to=None, stop_margin: float = 0.0) -> PageFetcher:
        async def fetch_page(offset: int, limit: int):
            return await self.client.search_orders(
                ctx.account,
                offset=offset,
                limit=limit,
                date_from=date_from,
                date_to=date_to,
                warn=ctx.warning_sink,
            )

        return PageFetcher(
            fetch_page,
            concurrency=self.page_concurrency,
            page_size=self.page_size,
            ceiling=self.ceiling,
            budget=ctx.budget,
            stop_margin=stop_margin,
            channel=ctx.channel,
            account_id=ctx.account.id,
        )

    def _enricher(self, ctx: FetchContext) -> OrderEnricher:
        async def fetch_shipment(order: dict) -> dict:
            if not order.get("order_items") and order.get("id") is not None:
                order.update(await self.client.get_order(ctx.account, str(order["id"]), warn=ctx.warning_sink))
            shipping = order.get("shipping") or {}
            shipment_id = shipping.get("id")
            if not shipment_id:
                return shipping
            return await self.client.get_shipment(ctx.account, str(shipment_id), warn=ctx.warning_sink)

        return OrderEnricher(
            fetch_shipment,
            batch_size=SHIPMENT_BATCH_SIZE,
            fallback=lambda order: order.get("shipping") or {},
            label="shipment",
            channel=ctx.channel,
            account_id=ctx.account.id,
            budget=ctx.budget,
        )

    @staticmethod
    def _check_auth(result: PageFetchResult) -> None:
        if result.auth_failed:
            raise AuthenticationError("Marketplace rejected the account credentials", status=401)

    async def fetch(self, ctx: FetchContext) -> FetchOutcome:
        outcome = FetchOutcome()
        account = ctx.account
        enricher = self._enricher(ctx)

        # Recent orders
        ctx.enter(AccountState.FETCHING_RECENT)
        recent_cap = min(self.recent_batch, ctx.order_budget)
        recent = await self._page_fetcher(ctx).fetch(max_orders=recent_cap, label="Recent orders")
        self._check_auth(recent)
        if recent.stopped_reason == STOP_FIRST_PAGE:
            logger.warning(f"[MeLi] Could not list orders for account {account.id}, skipping")
            outcome.next_cursor = ctx.cursor
            return outcome
        outcome.expected = recent.total
        recent_items = await enricher.enrich(recent.orders)
        outcome.items.extend(recent_items)
        if recent.time_exhausted or skipped_for_time(recent_items):
            outcome.forced_stop = True
            outcome.next_cursor = ctx.cursor
            return outcome

        if outcome.expected is not None and outcome.expected <= len(recent.orders):
            outcome.history_complete = True
            return outcome

        checkpoint = ctx.cursor
        explicit_cursor = checkpoint is not None
        if checkpoint is None:
            checkpoint = ctx.oldest_persisted
        recent_oldest = oldest_order_date(recent.orders)
        if checkpoint is None or (recent_oldest is not None and not explicit_cursor and recent_oldest < checkpoint):
            checkpoint = recent_oldest if checkpoint is None else min(checkpoint, recent_oldest)
        if checkpoint is None:
            outcome.history_complete = True
            return outcome

        missing = outcome.expected is None or outcome.expected > ctx.persisted_count
        if not missing and not explicit_cursor:
            logger.info(f"[MeLi] Account {account.id} history already complete")
            outcome.history_complete = True
            return outcome

        if ctx.budget.remaining() <= HISTORY_MIN_REMAINING_SECONDS:
            logger.info(f"[MeLi] Not enough time left for history on account {account.id}")
            outcome.forced_stop = True
            outcome.next_cursor = checkpoint
            return outcome

        if len(outcome.items) >= ctx.order_budget:
            outcome.forced_stop = True
            outcome.next_cursor = checkpoint
            return outcome

        ctx.enter(AccountState.FETCHING_HISTORY)
        await self._walk_history(ctx, outcome, enricher, checkpoint, explicit_cursor)
        return outcome

    async def _walk_history(
        self,
        ctx: FetchContext,
        outcome: FetchOutcome,
        enricher: OrderEnricher,
        checkpoint: datetime,
        explicit_cursor: bool,
    ) -> None:
        """Walk backward month by month from ``checkpoint``."""
        account = ctx.account
        lower_bound = FULL_SYNC_LOWER_BOUND if ctx.request.full_sync else INCREMENTAL_LOWER_BOUND
        window_end = checkpoint if explicit_cursor else checkpoint + timedelta(days=1)
        window_end = min(window_end, self._clock())
        window_start = max(month_start(checkpoint), lower_bound)

        async def count_orders(start: datetime, end: datetime) -> Optional[int]:
            return await self.client.fetch_count(account, start, end, warn=ctx.warning_sink)

        planner = WindowPlanner(
            count_orders,
            ceiling=self.ceiling,
            budget=ctx.budget,
            stop_margin=HISTORY_STOP_MARGIN_SECONDS,
        )

        while True:
            if window_end < lower_bound:
                logger.info(f"[MeLi] Account {account.id} reached history lower bound")
                outcome.history_complete = True
                return

            if ctx.budget.exhausted(HISTORY_STOP_MARGIN_SECONDS):
                logger.warning(f"[MeLi] Time budget reached during history of account {account.id}")
                outcome.forced_stop = True
                outcome.next_cursor = window_end
                return

            ctx.channel.progress(
                f"Fetching history: {window_start.strftime('%Y-%m')}",
                fetched=outcome.fetched,
                expected=outcome.expected,
                account_id=account.id,
            )
            plan = await planner.plan(window_start, window_end)
            if plan.exhausted:
                outcome.forced_stop = True
                outcome.next_cursor = window_end
                return

            if not plan.windows:
                logger.info(
                    f"[MeLi] No orders in {window_start.strftime('%Y-%m')} for account {account.id}, "
                    f"history exhausted"
                )
                outcome.history_complete = True
                return

            stopped_at = await self._fetch_windows(ctx, outcome, enricher, plan.windows)
            if stopped_at is not None:
                outcome.forced_stop = True
                outcome.next_cursor = stopped_at
                return

            window_end = window_start - MILLISECOND
            window_start = max(previous_month_start(window_start), lower_bound)

    async def _fetch_windows(
        self,
        ctx: FetchContext,
        outcome: FetchOutcome,
        enricher: OrderEnricher,
        windows: List[SyncWindow],
    ) -> Optional[datetime]:
        """
        Fetch planned windows newest first.

        Returns:
            The checkpoint to resume from when stopped early, otherwise None
        """
        for window in reversed(windows):
            remaining_orders = ctx.order_budget - outcome.fetched
            if remaining_orders <= 0:
                return window.end
            if ctx.budget.exhausted(HISTORY_STOP_MARGIN_SECONDS):
                return window.end

            fetcher = self._page_fetcher(
                ctx,
                date_from=window.start,
                date_to=window.end,
                stop_margin=HISTORY_STOP_MARGIN_SECONDS,
            )
            result = await fetcher.fetch(
                max_orders=remaining_orders,
                label=f"History {window.start.date().isoformat()}",
            )
            self._check_auth(result)
            items = await enricher.enrich(result.orders)
            outcome.items.extend(items)

            if result.time_exhausted or skipped_for_time(items):
                # Skipped orders carry fallback data; refetch the whole window
                return window.end
            if result.total is not None and result.total > len(result.orders) >= remaining_orders:
                # Order budget cut the window short; results are newest first
                oldest = oldest_order_date(result.orders)
                return oldest if oldest is not None else window.end
        return None
