"""Account credential upkeep: token refresh and invalid marks."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from marketplace_sync.api.meli_client import TokenGrant
from marketplace_sync.config.constants import TOKEN_REFRESH_BUFFER_SECONDS
from marketplace_sync.core.errors import TokenRefreshError
from marketplace_sync.core.logger import setup_logger
from marketplace_sync.db.base import from_storage, to_storage
from marketplace_sync.db.repository import AccountRepository

logger = setup_logger(__name__)

# account -> fresh credentials
Refresher = Callable[[Any], Awaitable[TokenGrant]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountService:
    """Keeps account tokens usable and tracks accounts needing reconnection."""

    def __init__(
        self,
        session_factory,
        refreshers: Dict[str, Refresher],
        buffer_seconds: int = TOKEN_REFRESH_BUFFER_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.refreshers = refreshers
        self.buffer = timedelta(seconds=buffer_seconds)
        self._clock = clock
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    def needs_refresh(self, account: Any) -> bool:
        expires_at = from_storage(account.expires_at)
        if expires_at is None:
            return True
        return expires_at - self.buffer <= self._clock()

    async def ensure_fresh_token(self, account: Any, force: bool = False) -> Any:
        """
        Refresh ``account``'s access token when it is near expiry.

        On success the new tokens are persisted, the invalid mark is cleared
        and ``account`` is updated in place. On failure the account is
        marked invalid.

        Raises:
            TokenRefreshError: If the refresh failed
        """
        if not force and not self.needs_refresh(account):
            return account

        refresher = self.refreshers.get(account.platform)
        if refresher is None:
            raise TokenRefreshError(account.id, f"No token refresher for platform {account.platform}")

        logger.info(f"Refreshing access token for account {account.id} ({account.platform})")
        try:
            grant = await refresher(account)
        except Exception as e:
            logger.error(f"Token refresh failed for account {account.id}: {e}")
            await self.mark_invalid(account.id)
            raise TokenRefreshError(account.id, str(e)) from e

        async with self.session_factory() as session:
            await AccountRepository(session).update_tokens(
                account.id, grant.access_token, grant.refresh_token, grant.expires_at
            )

        account.access_token = grant.access_token
        if grant.refresh_token:
            account.refresh_token = grant.refresh_token
        account.expires_at = to_storage(grant.expires_at)
        account.refresh_token_invalid_until = None
        logger.info(f"Access token refreshed for account {account.id}")
        return account

    async def refresh_rejected_token(self, account: Any, rejected_token: Optional[str] = None) -> Any:
        """
        Force a refresh after the marketplace rejected ``rejected_token``.

        Refreshes for one account run one at a time. A caller whose rejected
        token was already replaced by another caller's refresh returns
        without refreshing again.
        """
        lock = self._refresh_locks.setdefault(account.id, asyncio.Lock())
        async with lock:
            if rejected_token is not None and account.access_token != rejected_token:
                logger.info(f"Access token for account {account.id} already refreshed")
                return account
            return await self.ensure_fresh_token(account, force=True)

    async def mark_invalid(self, account_id: str) -> bool:
        return await self._set_invalid(account_id, self._clock())

    async def clear_invalid_mark(self, account_id: str) -> bool:
        return await self._set_invalid(account_id, None)

    async def _set_invalid(self, account_id: str, value: Optional[datetime]) -> bool:
        """Update the marker. Storage failures are logged, never raised."""
        try:
            async with self.session_factory() as session:
                updated = await AccountRepository(session).set_invalid_until(account_id, value)
        except Exception as e:
            logger.error(f"Failed to update invalid mark for account {account_id}: {e}")
            return False

        if updated:
            state = "marked invalid" if value else "invalid mark cleared"
            logger.info(f"Account {account_id} {state}")
        else:
            logger.warning(f"Account {account_id} not found while updating invalid mark")
        return updated
