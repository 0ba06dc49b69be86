"""
Shopee sync strategy.

Shopee reports no result totals, so orders are listed forward from the
last synced date in fixed 15-day windows with cursor pagination, then
enriched with order detail and escrow breakdown.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, TypeVar

from marketplace_sync.api.shopee_client import ShopeeClient
from marketplace_sync.config.constants import (
    HISTORY_STOP_MARGIN_SECONDS,
    PLATFORM_SHOPEE,
    SHOPEE_DETAIL_BATCH_SIZE,
    SHOPEE_ESCROW_BATCH_SIZE,
    SHOPEE_FIRST_SYNC_START,
    SHOPEE_MAX_ORDERS_PER_ACCOUNT,
    SHOPEE_PAGE_SIZE,
    SHOPEE_WINDOW_DAYS,
)
from marketplace_sync.core.errors import AuthenticationError, RemoteCallError
from marketplace_sync.core.logger import setup_logger
from marketplace_sync.services.order_enricher import EnrichedOrder, OrderEnricher, skipped_for_time
from marketplace_sync.services.platform import AccountState, FetchContext, FetchOutcome, PlatformSync
from marketplace_sync.services.transformer import SkuCosts, build_shopee_record, shopee_order_skus
from marketplace_sync.services.window_planner import fixed_windows

logger = setup_logger(__name__)

T = TypeVar("T")

SECOND = timedelta(seconds=1)


def epoch_seconds(value: datetime) -> int:
    return int(value.timestamp())


class ShopeeSync(PlatformSync):
    """Forward incremental sync in fixed windows."""

    platform = PLATFORM_SHOPEE

    def __init__(
        self,
        client: ShopeeClient,
        window_days: int = SHOPEE_WINDOW_DAYS,
        max_orders_per_account: int = SHOPEE_MAX_ORDERS_PER_ACCOUNT,
        clock=lambda: datetime.now(timezone.utc),
    ):
        self.client = client
        self.window = timedelta(days=window_days)
        self.max_orders_per_account = max_orders_per_account
        self._clock = clock

    async def refresh(self, account: Any):
        return await self.client.refresh_access_token(account.refresh_token, account.external_id)

    async def close(self) -> None:
        await self.client.close()

    def order_skus(self, item: EnrichedOrder) -> List[str]:
        return shopee_order_skus(item.order)

    def build_record(self, item: EnrichedOrder, account: Any, owner_id: str, sku_costs: SkuCosts) -> dict:
        return build_shopee_record(item.order, item.detail, account, owner_id, sku_costs)

    async def execute_with_token_retry(self, ctx: FetchContext, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation``; on an invalid-token payload force one refresh and retry once.

        Raises:
            AuthenticationError: If the token is still rejected after refreshing
        """
        rejected_token = ctx.account.access_token
        try:
            return await operation()
        except AuthenticationError as e:
            if e.error_code != "invalid_access_token" or ctx.refresh_token is None:
                raise
            logger.info(f"[Shopee] Invalid token for account {ctx.account.id}, forcing refresh")
            # Concurrent callers rejected with the same token share one refresh
            await ctx.refresh_token(rejected_token)
            return await operation()

    def start_date(self, ctx: FetchContext) -> datetime:
        if ctx.cursor is not None:
            return ctx.cursor
        if ctx.request.full_sync or ctx.newest_persisted is None:
            return SHOPEE_FIRST_SYNC_START
        return ctx.newest_persisted - timedelta(days=1)

    async def fetch(self, ctx: FetchContext) -> FetchOutcome:
        outcome = FetchOutcome()
        account = ctx.account
        cap = min(self.max_orders_per_account, ctx.order_budget)

        ctx.enter(AccountState.FETCHING_RECENT)
        start = self.start_date(ctx)
        windows = fixed_windows(start, self._clock(), self.window, resolution=SECOND)
        logger.info(
            f"[Shopee] Account {account.id}: {len(windows)} window(s) from {start.date().isoformat()}"
        )

        for index, (window_start, window_end) in enumerate(windows):
            if ctx.budget.exhausted(HISTORY_STOP_MARGIN_SECONDS):
                logger.warning(f"[Shopee] Time budget reached for account {account.id}")
                outcome.forced_stop = True
                outcome.next_cursor = window_start
                return outcome

            if outcome.fetched >= cap:
                ctx.warn(
                    f"Order limit of {cap} reached for this run",
                    "MAX_VENDAS_REACHED",
                )
                outcome.forced_stop = True
                outcome.next_cursor = window_start
                return outcome

            ctx.channel.progress(
                f"Fetching window {index + 1}/{len(windows)}",
                current=index + 1,
                total=len(windows),
                fetched=outcome.fetched,
                account_id=account.id,
            )
            try:
                items = await self._fetch_window(ctx, window_start, window_end)
            except AuthenticationError:
                raise
            except RemoteCallError as e:
                logger.error(f"[Shopee] Window {window_start.date()} failed for account {account.id}: {e}")
                ctx.warn(f"Could not fetch orders from {window_start.date().isoformat()}: {e}", "WINDOW_FETCH_ERROR")
                continue

            room = cap - outcome.fetched
            if skipped_for_time(items):
                logger.warning(
                    f"[Shopee] Time budget reached during escrow lookups for account {account.id}"
                )
                outcome.items.extend(items[:room])
                outcome.forced_stop = True
                outcome.next_cursor = window_start
                return outcome
            if len(items) > room:
                items.sort(key=lambda item: item.order.get("create_time") or 0)
                outcome.items.extend(items[:room])
                ctx.warn(f"Order limit of {cap} reached for this run", "MAX_VENDAS_REACHED")
                outcome.forced_stop = True
                resume = items[room].order.get("create_time")
                outcome.next_cursor = (
                    datetime.fromtimestamp(resume, tz=timezone.utc) if resume else window_start
                )
                return outcome
            outcome.items.extend(items)

        outcome.expected = outcome.fetched
        outcome.history_complete = True
        return outcome

    async def _fetch_window(self, ctx: FetchContext, window_start: datetime, window_end: datetime) -> List[EnrichedOrder]:
        account = ctx.account
        warn = ctx.warning_sink

        order_sns: List[str] = []
        cursor = ""
        while True:
            page = await self.execute_with_token_retry(
                ctx,
                lambda: self.client.get_order_list(
                    account,
                    epoch_seconds(window_start),
                    epoch_seconds(window_end),
                    cursor=cursor,
                    page_size=SHOPEE_PAGE_SIZE,
                    warn=warn,
                ),
            )
            order_sns.extend(page.order_sns)
            if not page.more or not page.next_cursor:
                break
            cursor = page.next_cursor

        if not order_sns:
            return []

        details: List[dict] = []
        for index in range(0, len(order_sns), SHOPEE_DETAIL_BATCH_SIZE):
            batch = order_sns[index:index + SHOPEE_DETAIL_BATCH_SIZE]
            details.extend(
                await self.execute_with_token_retry(
                    ctx, lambda: self.client.get_order_detail(account, batch, warn=warn)
                )
            )

        async def fetch_escrow(order: dict) -> dict:
            return await self.execute_with_token_retry(
                ctx, lambda: self.client.get_escrow_detail(account, order["order_sn"], warn=warn)
            )

        enricher = OrderEnricher(
            fetch_escrow,
            batch_size=SHOPEE_ESCROW_BATCH_SIZE,
            label="escrow",
            channel=ctx.channel,
            account_id=account.id,
            budget=ctx.budget,
        )
        logger.info(
            f"[Shopee] Window {window_start.date()} -> {window_end.date()}: {len(details)} order(s)"
        )
        return await enricher.enrich(details)
