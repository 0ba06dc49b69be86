"""Repositories for accounts, sales and SKU costs."""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .base import from_storage, to_storage, utcnow
from .models import Account, SaleRecord, SkuCost

NATURAL_KEY = ["platform", "order_id"]


class AccountRepository:
    """Data access layer for Account model."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with async session."""
        self.session = session

    async def get(self, account_id: str) -> Optional[Account]:
        return await self.session.get(Account, account_id)

    async def list_for_owner(
        self,
        owner_id: str,
        platform: str,
        account_ids: Optional[List[str]] = None,
    ) -> List[Account]:
        """Accounts of one owner on one platform, newest first."""
        query = select(Account).where(
            Account.owner_id == owner_id,
            Account.platform == platform,
        )
        if account_ids:
            query = query.where(Account.id.in_(account_ids))
        query = query.order_by(Account.created_at.desc())
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def owners_with_accounts(self, platform: str) -> List[str]:
        query = select(Account.owner_id).where(Account.platform == platform).distinct()
        result = await self.session.execute(query)
        return [row[0] for row in result.all()]

    async def update_tokens(
        self,
        account_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
    ) -> bool:
        """Persist a refreshed token pair and clear any invalid mark."""
        values = {
            "access_token": access_token,
            "expires_at": to_storage(expires_at),
            "refresh_token_invalid_until": None,
            "updated_at": utcnow(),
        }
        if refresh_token:
            values["refresh_token"] = refresh_token
        stmt = update(Account).where(Account.id == account_id).values(**values)
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount > 0

    async def set_invalid_until(self, account_id: str, value: Optional[datetime]) -> bool:
        """Set or clear the invalid marker. Returns False when the account is unknown."""
        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .values(refresh_token_invalid_until=to_storage(value), updated_at=utcnow())
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount > 0


class SaleRepository:
    """Data access layer for SaleRecord model."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with async session."""
        self.session = session

    def _dialect(self) -> str:
        return self.session.get_bind().dialect.name

    async def existing_order_ids(self, platform: str, order_ids: Iterable[str]) -> Set[str]:
        """One bulk lookup of which order ids are already persisted."""
        ids = list(order_ids)
        if not ids:
            return set()
        query = select(SaleRecord.order_id).where(
            SaleRecord.platform == platform,
            SaleRecord.order_id.in_(ids),
        )
        result = await self.session.execute(query)
        return {row[0] for row in result.all()}

    async def insert_skip_duplicates(self, rows: List[dict]) -> Set[str]:
        """
        Bulk insert rows, silently skipping natural-key conflicts.

        Args:
            rows: Column dicts, all with the same keys

        Returns:
            Order ids of the rows actually inserted
        """
        if not rows:
            return set()

        dialect = self._dialect()
        if dialect in ("postgresql", "sqlite"):
            builder = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = (
                builder(SaleRecord)
                .values(rows)
                .on_conflict_do_nothing(index_elements=NATURAL_KEY)
                .returning(SaleRecord.order_id)
            )
            result = await self.session.execute(stmt)
            return {row[0] for row in result.all()}

        # Generic fallback: one savepoint per row
        inserted: Set[str] = set()
        for row in rows:
            try:
                async with self.session.begin_nested():
                    self.session.add(SaleRecord(**row))
                inserted.add(row["order_id"])
            except IntegrityError:
                continue
        return inserted

    async def update_by_order_id(self, platform: str, order_id: str, values: dict) -> int:
        stmt = (
            update(SaleRecord)
            .where(SaleRecord.platform == platform, SaleRecord.order_id == order_id)
            .values(**values)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def get_by_order_id(self, platform: str, order_id: str) -> Optional[SaleRecord]:
        query = select(SaleRecord).where(
            SaleRecord.platform == platform,
            SaleRecord.order_id == order_id,
        )
        result = await self.session.execute(query)
        return result.scalars().first()

    async def oldest_sale_date(self, account_id: str) -> Optional[datetime]:
        """Earliest persisted sale for an account: the implicit history checkpoint."""
        query = select(func.min(SaleRecord.sale_date)).where(SaleRecord.account_id == account_id)
        result = await self.session.execute(query)
        return from_storage(result.scalar())

    async def newest_sale_date(self, account_id: str) -> Optional[datetime]:
        query = select(func.max(SaleRecord.sale_date)).where(SaleRecord.account_id == account_id)
        result = await self.session.execute(query)
        return from_storage(result.scalar())

    async def count_for_account(self, account_id: str) -> int:
        query = select(func.count(SaleRecord.id)).where(SaleRecord.account_id == account_id)
        result = await self.session.execute(query)
        return int(result.scalar() or 0)

    async def count_for_owner(
        self,
        owner_id: str,
        platform: str,
        since: Optional[datetime] = None,
    ) -> int:
        query = select(func.count(SaleRecord.id)).where(
            SaleRecord.owner_id == owner_id,
            SaleRecord.platform == platform,
        )
        if since is not None:
            query = query.where(SaleRecord.sale_date >= to_storage(since))
        result = await self.session.execute(query)
        return int(result.scalar() or 0)


class SkuCostRepository:
    """Data access layer for SkuCost model."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with async session."""
        self.session = session

    async def unit_costs(self, owner_id: str, skus: Iterable[str]) -> Dict[str, SkuCost]:
        """Map of SKU to cost entry for the SKUs the owner has registered."""
        sku_list = sorted(set(skus))
        if not sku_list:
            return {}
        query = select(SkuCost).where(
            SkuCost.owner_id == owner_id,
            SkuCost.sku.in_(sku_list),
        )
        result = await self.session.execute(query)
        return {entry.sku: entry for entry in result.scalars().all()}
