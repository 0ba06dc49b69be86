"""Mercado Livre API client."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import httpx

from marketplace_sync.config.constants import HTTP_TIMEOUT_SECONDS, PAGE_LIMIT
from marketplace_sync.core.errors import AuthenticationError, RemoteCallError
from marketplace_sync.core.logger import setup_logger
from marketplace_sync.core.retry import CallOutcome, RetryPolicy, WarningSink

logger = setup_logger(__name__)

OAUTH_PATH = "/oauth/token"


@dataclass
class OrdersPage:
    """One page of ``/orders/search`` results."""

    offset: int
    results: List[dict] = field(default_factory=list)
    total: Optional[int] = None
    outcome: Optional[CallOutcome] = None

    @property
    def ok(self) -> bool:
        return self.outcome is not None and self.outcome.ok


@dataclass
class TokenGrant:
    """Fresh credentials returned by a refresh grant."""

    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class MeliClient:
    """Async HTTP client for the Mercado Livre REST API."""

    def __init__(
        self,
        base_url: str = "https://api.mercadolibre.com",
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize API client with OAuth app credentials."""
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.retry_policy = retry_policy or RetryPolicy()
        self.client = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

    def _headers(self, account: Any) -> dict:
        return {"Authorization": f"Bearer {account.access_token}"}

    async def _get(
        self,
        account: Any,
        path: str,
        params: Optional[dict] = None,
        label: str = "meli request",
        warn: Optional[WarningSink] = None,
        extra_headers: Optional[dict] = None,
    ) -> CallOutcome:
        url = f"{self.base_url}{path}"
        headers = self._headers(account)
        if extra_headers:
            headers.update(extra_headers)

        async def call() -> httpx.Response:
            return await self.client.get(url, params=params, headers=headers)

        return await self.retry_policy.execute(call, label=label, warn=warn)

    async def search_orders(
        self,
        account: Any,
        offset: int = 0,
        limit: int = PAGE_LIMIT,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        warn: Optional[WarningSink] = None,
    ) -> OrdersPage:
        """
        List seller orders, newest first.

        Never raises for HTTP or network failures; inspect ``page.ok``.

        Args:
            account: Account with ``external_id`` (seller id) and ``access_token``
            offset: Result offset, ``offset + limit`` must stay within the API limit
            limit: Page size
            date_from: Optional lower bound on order creation date
            date_to: Optional upper bound on order creation date
            warn: Progress warning sink

        Returns:
            OrdersPage with results and the remote-reported total
        """
        params = {
            "seller": str(account.external_id),
            "sort": "date_desc",
            "limit": str(limit),
            "offset": str(offset),
        }
        if date_from is not None:
            params["order.date_created.from"] = _iso(date_from)
        if date_to is not None:
            params["order.date_created.to"] = _iso(date_to)

        outcome = await self._get(
            account,
            "/orders/search",
            params=params,
            label=f"orders search offset={offset}",
            warn=warn,
        )
        page = OrdersPage(offset=offset, outcome=outcome)
        if not outcome.ok:
            return page

        payload = outcome.json(default={}) or {}
        results = payload.get("results")
        page.results = [entry for entry in results if isinstance(entry, dict)] if isinstance(results, list) else []
        total = (payload.get("paging") or {}).get("total")
        if isinstance(total, (int, float)) and not isinstance(total, bool):
            page.total = int(total)
        return page

    async def fetch_count(
        self,
        account: Any,
        date_from: Optional[datetime],
        date_to: Optional[datetime],
        warn: Optional[WarningSink] = None,
    ) -> Optional[int]:
        """Remote total for a date range via a one-result query, None on failure."""
        page = await self.search_orders(
            account, offset=0, limit=1, date_from=date_from, date_to=date_to, warn=warn
        )
        if not page.ok:
            return None
        return page.total if page.total is not None else len(page.results)

    async def get_order(self, account: Any, order_id: str, warn: Optional[WarningSink] = None) -> dict:
        """
        Fetch full order detail.

        Raises:
            RemoteCallError: If the call failed after retries
        """
        outcome = await self._get(account, f"/orders/{order_id}", label=f"order {order_id}", warn=warn)
        outcome.raise_for_failure(f"Order {order_id}")
        return outcome.json(default={}) or {}

    async def get_shipment(self, account: Any, shipment_id: str, warn: Optional[WarningSink] = None) -> dict:
        """
        Fetch a shipment, including costs and logistic type.

        Raises:
            RemoteCallError: If the call failed after retries
        """
        outcome = await self._get(
            account,
            f"/shipments/{shipment_id}",
            label=f"shipment {shipment_id}",
            warn=warn,
            extra_headers={"x-format-new": "true"},
        )
        outcome.raise_for_failure(f"Shipment {shipment_id}")
        return outcome.json(default={}) or {}

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for a new token pair.

        Raises:
            AuthenticationError: If the grant was rejected
            RemoteCallError: If the OAuth endpoint could not be reached
        """
        if not refresh_token:
            raise AuthenticationError("Missing refresh token")

        data = {
            "grant_type": "refresh_token",
            "client_id": self.client_id or "",
            "client_secret": self.client_secret or "",
            "refresh_token": refresh_token,
        }

        async def call() -> httpx.Response:
            return await self.client.post(
                f"{self.base_url}{OAUTH_PATH}",
                data=data,
                headers={"Accept": "application/json"},
            )

        outcome = await self.retry_policy.execute(call, label="oauth refresh")
        if not outcome.ok:
            payload = outcome.json(default={}) or {}
            if payload.get("error") == "invalid_grant":
                raise AuthenticationError(
                    f"Refresh token rejected: {payload.get('message') or payload.get('error')}",
                    status=outcome.status,
                    error_code="invalid_grant",
                )
            outcome.raise_for_failure("Token refresh")

        payload = outcome.json(default={}) or {}
        access_token = payload.get("access_token")
        if not access_token:
            raise RemoteCallError("Token refresh response without access_token", status=outcome.status)

        expires_in = int(payload.get("expires_in") or 21600)
        logger.info("Mercado Livre access token refreshed")
        return TokenGrant(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
