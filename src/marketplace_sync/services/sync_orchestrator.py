"""
Sync Orchestrator

Drives one sync invocation for one owner on one platform:

1. Load the owner's accounts (optionally a subset).
2. For each account, sequentially: refresh the token, fetch recent orders and
   history through the platform strategy, transform and persist.
3. Decide whether work remains; if so enqueue a continuation job carrying
   each account's history checkpoint, otherwise close the progress stream.

Every account is isolated: a failure is recorded in the error list and the
loop moves on.
"""

import asyncio
import functools
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from marketplace_sync.config.constants import PROGRESS_CLOSE_DELAY_SECONDS
from marketplace_sync.core.budget import TimeBudget
from marketplace_sync.core.errors import AuthenticationError, TokenRefreshError
from marketplace_sync.core.logger import log_context, setup_logger
from marketplace_sync.core.monitoring import capture_exception, set_sync_context
from marketplace_sync.db.repository import AccountRepository, SaleRepository, SkuCostRepository
from marketplace_sync.services.account_service import AccountService
from marketplace_sync.services.persister import SalePersister, SaveResult
from marketplace_sync.services.platform import (
    AccountState,
    FetchContext,
    FetchOutcome,
    PlatformSync,
    SyncRequest,
)
from marketplace_sync.services.progress import (
    SYNC_COMPLETE,
    SYNC_CONTINUE,
    SYNC_ERROR,
    SYNC_START,
    OwnerChannel,
    ProgressReporter,
)

logger = setup_logger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class AccountResult:
    """Per-account outcome of one invocation."""

    account_id: str
    nickname: str
    state: AccountState = AccountState.PENDING
    expected: int = 0
    fetched: int = 0
    saved: int = 0
    errors: int = 0
    duplicates: int = 0
    has_more: bool = False
    forced_stop: bool = False
    cursor: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.account_id,
            "nickname": self.nickname,
            "state": self.state.value,
            "expected": self.expected,
            "fetched": self.fetched,
            "saved": self.saved,
            "errors": self.errors,
            "duplicates": self.duplicates,
            "hasMoreToSync": self.has_more,
        }


@dataclass
class SyncReport:
    """Result of one invocation, serialized as the trigger endpoint's response."""

    request: SyncRequest
    accounts: List[AccountResult] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    has_more: bool = False
    auto_sync_triggered: bool = False
    synced_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def totals(self) -> Dict[str, int]:
        return {
            "expected": sum(a.expected for a in self.accounts),
            "fetched": sum(a.fetched for a in self.accounts),
            "saved": sum(a.saved for a in self.accounts),
        }

    def to_response(self) -> Dict[str, Any]:
        return {
            "syncedAt": _iso(self.synced_at),
            "accounts": [account.to_dict() for account in self.accounts],
            "errors": list(self.errors),
            "totals": self.totals,
            "hasMoreToSync": self.has_more,
            "quickMode": self.request.quick_mode,
            "autoSyncTriggered": self.auto_sync_triggered,
        }


class SyncOrchestrator:
    """Runs sync invocations for one platform."""

    def __init__(
        self,
        platform_sync: PlatformSync,
        session_factory,
        reporter: ProgressReporter,
        account_service: AccountService,
        continuation_queue=None,
        budget_seconds: float = 30.0,
        max_orders: int = 3000,
        max_continuations: int = 200,
        close_delay: float = PROGRESS_CLOSE_DELAY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.platform_sync = platform_sync
        self.platform = platform_sync.platform
        self.session_factory = session_factory
        self.reporter = reporter
        self.account_service = account_service
        self.continuation_queue = continuation_queue
        self.budget_seconds = budget_seconds
        self.max_orders = max_orders
        self.max_continuations = max_continuations
        self.close_delay = close_delay
        self._clock = clock

    async def run(self, request: SyncRequest) -> SyncReport:
        """
        Execute one invocation.

        Never raises for per-account failures; they are listed in
        ``report.errors``. The progress stream is closed afterwards unless a
        continuation was enqueued or another sync for the owner is running.
        """
        channel = self.reporter.channel(request.owner_id)
        channel.begin_sync()
        close = True
        try:
            report = await self._run(request, channel)
            close = not report.auto_sync_triggered
            return report
        finally:
            self._schedule_close(channel, close)

    async def _run(self, request: SyncRequest, channel: OwnerChannel) -> SyncReport:
        budget = TimeBudget(self.budget_seconds, clock=self._clock)
        report = SyncReport(request=request)

        logger.info("=" * 60)
        logger.info(
            f"Sync {request.request_id} started: platform={self.platform} owner={request.owner_id} "
            f"full_sync={request.full_sync} quick_mode={request.quick_mode} "
            f"continuation={request.continuation}"
        )
        logger.info("=" * 60)

        async with self.session_factory() as session:
            accounts = await AccountRepository(session).list_for_owner(
                request.owner_id, self.platform, request.account_ids
            )

        if not accounts:
            logger.warning(f"No accounts found for owner {request.owner_id} on {self.platform}")
            channel.publish(SYNC_ERROR, "No valid account found", error_code="NO_VALID_ACCOUNTS")
            report.errors.append({"accountId": "", "message": "No valid account found"})
            return report

        channel.publish(
            SYNC_START,
            f"Starting sync of {len(accounts)} account(s)",
            current=0,
            total=len(accounts),
        )

        orders_left = self.max_orders
        for index, account in enumerate(accounts):
            result = AccountResult(account_id=account.id, nickname=account.display_name)
            report.accounts.append(result)

            if budget.exhausted() or orders_left <= 0:
                logger.warning(f"Invocation budget spent before account {account.id}, deferring")
                result.state = AccountState.CONTINUE
                result.has_more = True
                result.forced_stop = True
                result.cursor = request.cursors.get(account.id)
                continue

            channel.progress(
                f"Syncing account {result.nickname} ({index + 1}/{len(accounts)})",
                current=index + 1,
                total=len(accounts),
                account_id=account.id,
                account_nickname=result.nickname,
            )

            try:
                await self._sync_account(account, request, budget, channel, orders_left, result)
            except TokenRefreshError as e:
                self._fail(result, report, f"Token refresh failed: {e}")
                channel.publish(
                    SYNC_ERROR,
                    f"Account {result.nickname} needs to be reconnected",
                    error_code="TOKEN_REFRESH_FAILED",
                    account_id=account.id,
                    account_nickname=result.nickname,
                )
            except AuthenticationError as e:
                self._fail(result, report, str(e))
                await self.account_service.mark_invalid(account.id)
                channel.warn(
                    f"Account {result.nickname} credentials were rejected",
                    error_code="ACCOUNT_PROCESSING_ERROR",
                    account_id=account.id,
                )
            except Exception as e:
                logger.error(
                    f"Unexpected error syncing account {account.id}: {e}",
                    exc_info=True,
                    extra=self._log_context(request, account.id),
                )
                capture_exception(
                    e,
                    context={**self._log_context(request, account.id), "state": result.state.value},
                )
                self._fail(result, report, str(e))
                channel.warn(
                    f"Error processing account {result.nickname}: {e}",
                    error_code="ACCOUNT_PROCESSING_ERROR",
                    account_id=account.id,
                )

            orders_left -= result.fetched

        await self._finish(request, report, channel)
        return report

    def _log_context(self, request: SyncRequest, account_id: str) -> Dict[str, str]:
        return log_context(self.platform, request.owner_id, account_id, request.request_id)

    def _fail(self, result: AccountResult, report: SyncReport, message: str) -> None:
        logger.error(
            f"Account {result.account_id} failed in state {result.state.value}: {message}",
            extra=self._log_context(report.request, result.account_id),
        )
        result.state = AccountState.ERROR
        result.error = message
        report.errors.append({
            "accountId": result.account_id,
            "nickname": result.nickname,
            "message": message,
        })

    def _enter(self, result: AccountResult, state: AccountState) -> None:
        logger.info(f"Account {result.account_id}: {result.state.value} -> {state.value}")
        result.state = state

    async def _sync_account(
        self,
        account: Any,
        request: SyncRequest,
        budget: TimeBudget,
        channel: OwnerChannel,
        orders_left: int,
        result: AccountResult,
    ) -> None:
        set_sync_context(self.platform, request.owner_id, account.id)

        self._enter(result, AccountState.REFRESHING_TOKEN)
        await self.account_service.ensure_fresh_token(account)

        async with self.session_factory() as session:
            sales = SaleRepository(session)
            persisted_before = await sales.count_for_account(account.id)
            oldest = await sales.oldest_sale_date(account.id)
            newest = await sales.newest_sale_date(account.id)

        ctx = FetchContext(
            account=account,
            request=request,
            budget=budget,
            channel=channel,
            order_budget=orders_left,
            cursor=request.cursor_for(account.id),
            persisted_count=persisted_before,
            oldest_persisted=oldest,
            newest_persisted=newest,
            refresh_token=functools.partial(self.account_service.refresh_rejected_token, account),
            on_state=lambda state: self._enter(result, state),
        )
        outcome = await self.platform_sync.fetch(ctx)
        result.fetched = outcome.fetched
        result.expected = outcome.expected if outcome.expected is not None else outcome.fetched

        self._enter(result, AccountState.SAVING)
        saved = await self._persist(account, request.owner_id, outcome, channel)
        result.saved = saved.saved
        result.errors = saved.errors
        result.duplicates = saved.duplicates

        async with self.session_factory() as session:
            persisted_after = await SaleRepository(session).count_for_account(account.id)

        result.forced_stop = outcome.forced_stop
        result.has_more = outcome.forced_stop or (
            not outcome.history_complete
            and outcome.expected is not None
            and persisted_after < outcome.expected
        )
        if result.has_more:
            result.cursor = _iso(outcome.next_cursor) or request.cursors.get(account.id)
        self._enter(result, AccountState.CONTINUE if result.has_more else AccountState.COMPLETE)
        logger.info(
            f"Account {account.id} synced: fetched={result.fetched} saved={result.saved} "
            f"errors={result.errors} has_more={result.has_more}",
            extra=self._log_context(request, account.id),
        )

        channel.progress(
            f"Account {result.nickname}: {result.saved} order(s) saved",
            fetched=result.fetched,
            expected=result.expected,
            account_id=account.id,
            account_nickname=result.nickname,
        )

    async def _persist(self, account: Any, owner_id: str, outcome: FetchOutcome, channel: OwnerChannel) -> SaveResult:
        items = outcome.items
        if not items:
            return SaveResult()

        skus = {sku for item in items for sku in self.platform_sync.order_skus(item)}
        async with self.session_factory() as session:
            sku_costs = await SkuCostRepository(session).unit_costs(owner_id, skus)

        records = []
        transform_errors = 0
        for item in items:
            try:
                records.append(self.platform_sync.build_record(item, account, owner_id, sku_costs))
            except Exception as e:
                transform_errors += 1
                logger.warning(f"Could not transform order for account {account.id}: {e}")

        persister = SalePersister(self.session_factory, channel=channel)
        result = await persister.save(self.platform, records, account_id=account.id)
        if transform_errors:
            result.errors += transform_errors
            channel.warn(
                f"{transform_errors} order(s) could not be processed",
                error_code="SAVE_BATCH_ERROR",
                account_id=account.id,
            )
        return result

    async def _finish(self, request: SyncRequest, report: SyncReport, channel: OwnerChannel) -> None:
        forced = any(account.forced_stop for account in report.accounts)
        pending = any(account.has_more for account in report.accounts)
        report.has_more = forced or ((request.full_sync or request.quick_mode) and pending)

        totals = report.totals
        logger.info("=" * 60)
        logger.info(
            f"Sync {request.request_id} finished: expected={totals['expected']} "
            f"fetched={totals['fetched']} saved={totals['saved']} "
            f"errors={len(report.errors)} has_more={report.has_more}"
        )
        logger.info("=" * 60)

        channel.publish(
            SYNC_COMPLETE,
            f"Sync finished: {totals['saved']} order(s) saved",
            current=totals["saved"],
            total=totals["expected"],
            has_more_to_sync=report.has_more,
        )

        if not report.has_more:
            return

        report.auto_sync_triggered = await self._enqueue_continuation(request, report)
        if report.auto_sync_triggered:
            channel.publish(SYNC_CONTINUE, "More orders to sync, continuing automatically")

    async def _enqueue_continuation(self, request: SyncRequest, report: SyncReport) -> bool:
        if self.continuation_queue is None:
            logger.info("No continuation queue configured, remaining work left for the next trigger")
            return False
        if request.continuation >= self.max_continuations:
            logger.warning(
                f"Continuation limit {self.max_continuations} reached for owner {request.owner_id}"
            )
            return False

        pending = [account for account in report.accounts if account.has_more]
        cursors = {account.account_id: account.cursor for account in pending if account.cursor}
        next_request = request.next_invocation(
            cursors,
            account_ids=[account.account_id for account in pending],
        )
        try:
            return await self.continuation_queue.enqueue(next_request)
        except Exception as e:
            logger.error(f"Failed to enqueue continuation: {e}", exc_info=True)
            return False

    def _schedule_close(self, channel: OwnerChannel, close: bool = True) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            channel.end_sync(close)
            return
        loop.call_later(self.close_delay, channel.end_sync, close)
