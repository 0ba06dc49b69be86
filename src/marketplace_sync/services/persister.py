"""
Deduplicator & Batch Persister

Persists transformed sale records idempotently by ``(platform, order_id)``:
duplicates inside a batch are collapsed, one lookup splits the rest into new
and known orders, new orders are bulk inserted with conflicts skipped, and
known orders are updated in place, one atomic unit per sub-batch.
"""

from dataclasses import dataclass
from typing import List, Set, Tuple

from marketplace_sync.config.constants import SAVE_BATCH_SIZE
from marketplace_sync.core.logger import setup_logger
from marketplace_sync.db.repository import SaleRepository

logger = setup_logger(__name__)

# Columns never rewritten when an order is re-synced
IMMUTABLE_COLUMNS = frozenset({"platform", "order_id", "created_at"})


def deduplicate(records: List[dict], key: str = "order_id") -> Tuple[List[dict], int]:
    """
    Keep the first occurrence of each ``key``.

    Returns:
        Tuple of (unique records in original order, number of collisions)
    """
    seen = set()
    unique = []
    collisions = 0
    for record in records:
        identifier = record.get(key)
        if identifier in seen:
            collisions += 1
            continue
        seen.add(identifier)
        unique.append(record)
    return unique, collisions


@dataclass
class SaveResult:
    """Outcome of persisting one fetch cycle."""

    created: int = 0
    updated: int = 0
    errors: int = 0
    duplicates: int = 0

    @property
    def saved(self) -> int:
        return self.created + self.updated


class SalePersister:
    """Writes sale records in bounded sub-batches."""

    def __init__(self, session_factory, batch_size: int = SAVE_BATCH_SIZE, channel=None):
        self.session_factory = session_factory
        self.batch_size = max(1, batch_size)
        self.channel = channel

    async def save(self, platform: str, records: List[dict], account_id: str = None) -> SaveResult:
        """
        Persist ``records`` for ``platform``.

        Per-record failures are counted and reported, never raised.

        Args:
            platform: Platform key, part of the natural key
            records: SaleRecord column dicts
            account_id: Account being saved, for progress events

        Returns:
            SaveResult with created/updated/error/duplicate counts
        """
        result = SaveResult()
        unique, result.duplicates = deduplicate(records)
        if result.duplicates:
            logger.warning(
                f"[Persist] {result.duplicates} duplicate order id(s) removed from batch"
            )

        total = len(unique)
        try:
            existing = await self._existing_ids(platform, unique)
        except Exception as e:
            logger.error(f"[Persist] Existence lookup failed: {e}", exc_info=True)
            result.errors += total
            unique, existing = [], set()

        processed = 0
        for index in range(0, len(unique), self.batch_size):
            batch = unique[index:index + self.batch_size]
            await self._save_batch(platform, batch, existing, result)
            processed += len(batch)

            if self.channel is not None:
                self.channel.progress(
                    f"Saving orders: {processed}/{total}",
                    current=processed,
                    total=total,
                    account_id=account_id,
                )

        if result.errors:
            logger.error(f"[Persist] {result.errors} record(s) failed to save")
            if self.channel is not None:
                self.channel.warn(
                    f"{result.errors} order(s) could not be saved",
                    error_code="SAVE_ERRORS",
                    account_id=account_id,
                )

        logger.info(
            f"[Persist] {platform}: {result.created} created, {result.updated} updated, "
            f"{result.errors} errors, {result.duplicates} duplicates"
        )
        return result

    async def _existing_ids(self, platform: str, records: List[dict]) -> Set[str]:
        """One lookup for the whole deduplicated set."""
        async with self.session_factory() as session:
            return await SaleRepository(session).existing_order_ids(
                platform, [record["order_id"] for record in records]
            )

    async def _save_batch(self, platform: str, batch: List[dict], existing: Set[str], result: SaveResult) -> None:
        to_create = [record for record in batch if record["order_id"] not in existing]
        to_update = [record for record in batch if record["order_id"] in existing]

        async with self.session_factory() as session:
            repo = SaleRepository(session)

            if to_create:
                inserted, failed = await self._insert(session, repo, to_create, result)
                raced = [
                    record for record in to_create
                    if record["order_id"] not in inserted and record["order_id"] not in failed
                ]
                if raced:
                    # Created by a concurrent sync since the lookup: update in place
                    logger.info(f"[Persist] {len(raced)} order(s) inserted concurrently, updating")
                    await self._update(session, repo, platform, raced, result)

            if to_update:
                await self._update(session, repo, platform, to_update, result)

    async def _insert(
        self,
        session,
        repo: SaleRepository,
        rows: List[dict],
        result: SaveResult,
    ) -> Tuple[Set[str], Set[str]]:
        """Bulk insert, falling back to one row at a time. Returns (inserted ids, failed ids)."""
        try:
            inserted = await repo.insert_skip_duplicates(rows)
            await session.commit()
            result.created += len(inserted)
            return inserted, set()
        except Exception as e:
            await session.rollback()
            logger.warning(f"[Persist] Bulk insert failed, retrying one by one: {e}")

        inserted: Set[str] = set()
        failed: Set[str] = set()
        for row in rows:
            try:
                inserted |= await repo.insert_skip_duplicates([row])
                await session.commit()
            except Exception as e:
                await session.rollback()
                failed.add(row["order_id"])
                result.errors += 1
                logger.error(f"[Persist] Insert failed for order {row.get('order_id')}: {e}")
        result.created += len(inserted)
        return inserted, failed

    async def _update(
        self,
        session,
        repo: SaleRepository,
        platform: str,
        rows: List[dict],
        result: SaveResult,
    ) -> None:
        try:
            for row in rows:
                await repo.update_by_order_id(platform, row["order_id"], _mutable(row))
            await session.commit()
            result.updated += len(rows)
            return
        except Exception as e:
            await session.rollback()
            logger.warning(f"[Persist] Update unit failed, isolating bad record(s): {e}")

        for row in rows:
            try:
                await repo.update_by_order_id(platform, row["order_id"], _mutable(row))
                await session.commit()
                result.updated += 1
            except Exception as e:
                await session.rollback()
                result.errors += 1
                logger.error(f"[Persist] Update failed for order {row.get('order_id')}: {e}")


def _mutable(row: dict) -> dict:
    return {key: value for key, value in row.items() if key not in IMMUTABLE_COLUMNS}
