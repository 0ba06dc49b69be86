"""
Platform strategy contract shared by the marketplace sync implementations.

The orchestrator owns accounts, budgets, persistence and progress; a
strategy only knows how to pull enriched orders out of one marketplace and
turn them into sale records.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from marketplace_sync.core.budget import TimeBudget
from marketplace_sync.services.order_enricher import EnrichedOrder
from marketplace_sync.services.progress import OwnerChannel
from marketplace_sync.services.transformer import SkuCosts, parse_datetime


class AccountState(str, Enum):
    """Per-account sync state machine."""

    PENDING = "pending"
    REFRESHING_TOKEN = "refreshing_token"
    FETCHING_RECENT = "fetching_recent"
    FETCHING_HISTORY = "fetching_history"
    SAVING = "saving"
    COMPLETE = "complete"
    CONTINUE = "continue"
    ERROR = "error"


@dataclass
class SyncRequest:
    """Parameters of one sync invocation, also the continuation job payload."""

    platform: str
    owner_id: str
    account_ids: Optional[List[str]] = None
    full_sync: bool = False
    quick_mode: bool = True
    # account id -> ISO history checkpoint
    cursors: Dict[str, str] = field(default_factory=dict)
    continuation: int = 0
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def cursor_for(self, account_id: str) -> Optional[datetime]:
        return parse_datetime(self.cursors.get(account_id))

    def next_invocation(self, cursors: Dict[str, str], account_ids: Optional[List[str]] = None) -> "SyncRequest":
        return SyncRequest(
            platform=self.platform,
            owner_id=self.owner_id,
            account_ids=account_ids if account_ids is not None else self.account_ids,
            full_sync=self.full_sync,
            quick_mode=self.quick_mode,
            cursors=cursors,
            continuation=self.continuation + 1,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "owner_id": self.owner_id,
            "account_ids": self.account_ids,
            "full_sync": self.full_sync,
            "quick_mode": self.quick_mode,
            "cursors": dict(self.cursors),
            "continuation": self.continuation,
            "request_id": self.request_id,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SyncRequest":
        """
        Rebuild a request from a queued job payload.

        Raises:
            KeyError: If platform or owner_id is missing
        """
        return cls(
            platform=payload["platform"],
            owner_id=payload["owner_id"],
            account_ids=payload.get("account_ids") or None,
            full_sync=bool(payload.get("full_sync", False)),
            quick_mode=bool(payload.get("quick_mode", True)),
            cursors=dict(payload.get("cursors") or {}),
            continuation=int(payload.get("continuation", 0)),
            request_id=payload.get("request_id") or uuid.uuid4().hex[:12],
        )


@dataclass
class FetchContext:
    """Everything a strategy needs to fetch one account."""

    account: Any
    request: SyncRequest
    budget: TimeBudget
    channel: OwnerChannel
    # Orders this account may still fetch in this invocation
    order_budget: int
    cursor: Optional[datetime] = None
    persisted_count: int = 0
    oldest_persisted: Optional[datetime] = None
    newest_persisted: Optional[datetime] = None
    # Forces a token refresh for the rejected access token passed in
    refresh_token: Optional[Callable[[Optional[str]], Awaitable[Any]]] = None
    on_state: Optional[Callable[[AccountState], None]] = None

    def enter(self, state: AccountState) -> None:
        if self.on_state is not None:
            self.on_state(state)

    def warn(self, message: str, error_code: str) -> None:
        self.channel.warn(message, error_code=error_code, account_id=self.account.id)

    @property
    def warning_sink(self):
        return self.channel.warning_sink(self.account.id)


@dataclass
class FetchOutcome:
    """What a strategy collected for one account."""

    items: List[EnrichedOrder] = field(default_factory=list)
    # Remote-reported total, None when the platform reports none
    expected: Optional[int] = None
    history_complete: bool = False
    forced_stop: bool = False
    # Where the next invocation should resume, when work remains
    next_cursor: Optional[datetime] = None

    @property
    def fetched(self) -> int:
        return len(self.items)


class PlatformSync(ABC):
    """One marketplace's fetch and transform logic."""

    platform: str = ""

    @abstractmethod
    async def fetch(self, ctx: FetchContext) -> FetchOutcome:
        """Collect enriched orders for ``ctx.account`` within the context's budgets."""

    @abstractmethod
    def order_skus(self, item: EnrichedOrder) -> List[str]:
        """SKUs referenced by an order, for cost-of-goods lookup."""

    @abstractmethod
    def build_record(self, item: EnrichedOrder, account: Any, owner_id: str, sku_costs: SkuCosts) -> dict:
        """Transform one enriched order into SaleRecord column values."""

    @abstractmethod
    async def refresh(self, account: Any):
        """Exchange the account's refresh token for a new ``TokenGrant``."""

    async def close(self) -> None:
        """Release remote clients."""
