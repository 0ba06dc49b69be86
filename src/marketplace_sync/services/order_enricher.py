"""Order Enricher: fetches per-order sub-resources in small concurrent batches."""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from marketplace_sync.config.constants import SHIPMENT_BATCH_SIZE
from marketplace_sync.core.budget import TimeBudget
from marketplace_sync.core.logger import setup_logger

logger = setup_logger(__name__)


def _empty(_order: dict) -> dict:
    return {}


@dataclass
class EnrichedOrder:
    """A raw order paired with its sub-resource."""

    order: dict
    detail: dict = field(default_factory=dict)
    failed: bool = False
    # Never looked up because the time budget ran out
    skipped: bool = False


def skipped_for_time(items: List[EnrichedOrder]) -> bool:
    return any(item.skipped for item in items)


class OrderEnricher:
    """
    Pairs each order with one sub-resource (shipment, escrow, ...).

    Failed lookups fall back to ``fallback(order)`` and never abort the batch.
    """

    def __init__(
        self,
        fetch_detail: Callable[[dict], Awaitable[Optional[dict]]],
        batch_size: int = SHIPMENT_BATCH_SIZE,
        fallback: Callable[[dict], dict] = _empty,
        label: str = "shipment",
        channel=None,
        account_id: Optional[str] = None,
        budget: Optional[TimeBudget] = None,
    ):
        self.fetch_detail = fetch_detail
        self.batch_size = max(1, batch_size)
        self.fallback = fallback
        self.label = label
        self.channel = channel
        self.account_id = account_id
        self.budget = budget

    async def enrich(self, orders: List[dict]) -> List[EnrichedOrder]:
        """
        Enrich ``orders`` in batches of ``batch_size``, preserving order.

        Once the time budget is spent, the remaining orders receive their
        fallback without any remote call and are flagged ``skipped``. Callers
        must resume from before them.
        """
        enriched: List[EnrichedOrder] = []
        failures = 0
        skipped = 0

        for index in range(0, len(orders), self.batch_size):
            batch = orders[index:index + self.batch_size]

            if self.budget is not None and self.budget.exhausted():
                skipped += len(batch)
                enriched.extend(
                    EnrichedOrder(order, self.fallback(order), failed=True, skipped=True) for order in batch
                )
                continue

            results = await asyncio.gather(
                *(self.fetch_detail(order) for order in batch),
                return_exceptions=True,
            )
            for order, result in zip(batch, results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, Exception):
                    failures += 1
                    logger.warning(f"[Enricher] {self.label} lookup failed: {result}")
                    enriched.append(EnrichedOrder(order, self.fallback(order), failed=True))
                else:
                    enriched.append(EnrichedOrder(order, result or {}))

        if failures and self.channel is not None:
            self.channel.warn(
                f"{failures} {self.label} lookup(s) failed, orders saved with partial data",
                error_code=f"{self.label.upper()}_FETCH_ERROR",
                account_id=self.account_id,
            )
        if skipped:
            logger.warning(f"[Enricher] Time budget reached, {skipped} {self.label} lookup(s) skipped")
        logger.info(
            f"[Enricher] {len(orders)} order(s) enriched with {self.label}, "
            f"{failures} failure(s)"
        )
        return enriched
