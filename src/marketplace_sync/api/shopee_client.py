"""Shopee Open Platform API client."""

import hashlib
import hmac
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import httpx

from marketplace_sync.api.meli_client import TokenGrant
from marketplace_sync.config.constants import (
    HTTP_TIMEOUT_SECONDS,
    SHOPEE_DETAIL_BATCH_SIZE,
    SHOPEE_INVALID_TOKEN_ERRORS,
    SHOPEE_PAGE_SIZE,
    TOKEN_REFRESH_BUFFER_SECONDS,
)
from marketplace_sync.core.errors import AuthenticationError, RemoteCallError
from marketplace_sync.core.logger import setup_logger
from marketplace_sync.core.retry import CallOutcome, RetryPolicy, WarningSink

logger = setup_logger(__name__)

GET_ORDER_LIST = "/api/v2/order/get_order_list"
GET_ORDER_DETAIL = "/api/v2/order/get_order_detail"
GET_ESCROW_DETAIL = "/api/v2/payment/get_escrow_detail"
REFRESH_ACCESS_TOKEN = "/api/v2/auth/access_token/get"

ORDER_DETAIL_FIELDS = ",".join([
    "buyer_username",
    "item_list",
    "package_list",
    "total_amount",
    "shipping_carrier",
    "payment_method",
    "pay_time",
])


@dataclass
class OrderListPage:
    """One cursor page of order numbers."""

    order_sns: List[str] = field(default_factory=list)
    more: bool = False
    next_cursor: str = ""


class ShopeeClient:
    """Async HTTP client for Shopee Open Platform API v2."""

    def __init__(
        self,
        partner_id: Optional[int],
        partner_key: Optional[str],
        host_api: str = "https://partner.shopeemobile.com",
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock=time.time,
    ):
        """Initialize API client with partner credentials."""
        self.partner_id = partner_id
        self.partner_key = partner_key or ""
        self.host_api = host_api.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy()
        self.client = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
        self._clock = clock

    def sign(
        self,
        path: str,
        timestamp: int,
        access_token: Optional[str] = None,
        shop_id: Optional[Any] = None,
    ) -> str:
        """
        Generate HMAC-SHA256 signature for a request.

        Shop-level calls sign ``partner_id + path + timestamp + access_token + shop_id``;
        auth calls sign ``partner_id + path + timestamp`` only.
        """
        base_string = f"{self.partner_id}{path}{timestamp}"
        if access_token is not None and shop_id is not None:
            base_string += f"{access_token}{shop_id}"

        return hmac.new(
            self.partner_key.encode("utf-8"),
            base_string.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _check_payload(self, outcome: CallOutcome, label: str) -> dict:
        """Raise for payload-level errors, then for HTTP failures."""
        payload = outcome.json(default={}) or {}
        error = payload.get("error") if isinstance(payload, dict) else None
        if error:
            message = payload.get("message") or error
            if error in SHOPEE_INVALID_TOKEN_ERRORS:
                raise AuthenticationError(
                    f"{label} failed: {error}",
                    status=outcome.status,
                    error_code="invalid_access_token",
                )
            raise RemoteCallError(f"{label} failed: {message}", status=outcome.status, error_code=str(error))
        outcome.raise_for_failure(label)
        return payload

    async def _shop_get(
        self,
        account: Any,
        path: str,
        params: dict,
        label: str,
        warn: Optional[WarningSink] = None,
    ) -> dict:
        shop_id = account.external_id

        async def call() -> httpx.Response:
            timestamp = int(self._clock())
            query = {
                "partner_id": self.partner_id,
                "timestamp": timestamp,
                "access_token": account.access_token,
                "shop_id": shop_id,
                "sign": self.sign(path, timestamp, account.access_token, shop_id),
            }
            query.update(params)
            return await self.client.get(f"{self.host_api}{path}", params=query)

        outcome = await self.retry_policy.execute(call, label=label, warn=warn)
        return self._check_payload(outcome, label)

    async def get_order_list(
        self,
        account: Any,
        time_from: int,
        time_to: int,
        cursor: str = "",
        page_size: int = SHOPEE_PAGE_SIZE,
        warn: Optional[WarningSink] = None,
    ) -> OrderListPage:
        """
        List order numbers created within ``[time_from, time_to]`` (epoch seconds).

        Raises:
            AuthenticationError: If the access token is invalid
            RemoteCallError: If the call failed after retries
        """
        payload = await self._shop_get(
            account,
            GET_ORDER_LIST,
            {
                "time_range_field": "create_time",
                "time_from": time_from,
                "time_to": time_to,
                "page_size": page_size,
                "cursor": cursor,
            },
            label="Shopee order list",
            warn=warn,
        )
        response = payload.get("response") or {}
        order_list = response.get("order_list") or []
        return OrderListPage(
            order_sns=[entry["order_sn"] for entry in order_list if entry.get("order_sn")],
            more=bool(response.get("more")),
            next_cursor=response.get("next_cursor") or "",
        )

    async def get_order_detail(
        self,
        account: Any,
        order_sns: List[str],
        warn: Optional[WarningSink] = None,
    ) -> List[dict]:
        """
        Fetch order details for up to 50 order numbers.

        Raises:
            ValueError: If more than 50 order numbers are requested
            AuthenticationError: If the access token is invalid
            RemoteCallError: If the call failed after retries
        """
        if len(order_sns) > SHOPEE_DETAIL_BATCH_SIZE:
            raise ValueError(f"At most {SHOPEE_DETAIL_BATCH_SIZE} orders per detail request")
        if not order_sns:
            return []

        payload = await self._shop_get(
            account,
            GET_ORDER_DETAIL,
            {
                "order_sn_list": ",".join(order_sns),
                "response_optional_fields": ORDER_DETAIL_FIELDS,
            },
            label="Shopee order detail",
            warn=warn,
        )
        return list((payload.get("response") or {}).get("order_list") or [])

    async def get_escrow_detail(
        self,
        account: Any,
        order_sn: str,
        warn: Optional[WarningSink] = None,
    ) -> dict:
        """
        Fetch the escrow (payment) breakdown of one order.

        Raises:
            AuthenticationError: If the access token is invalid
            RemoteCallError: If the call failed after retries
        """
        payload = await self._shop_get(
            account,
            GET_ESCROW_DETAIL,
            {"order_sn": order_sn},
            label=f"Shopee escrow {order_sn}",
            warn=warn,
        )
        return payload.get("response") or {}

    async def refresh_access_token(self, refresh_token: str, shop_id: Any) -> TokenGrant:
        """
        Refresh a shop's access token.

        The new expiry keeps a five-minute margin before Shopee's own.

        Raises:
            AuthenticationError: If the refresh token was rejected
            RemoteCallError: If the auth endpoint could not be reached
        """
        if not refresh_token:
            raise AuthenticationError("Missing refresh token")

        async def call() -> httpx.Response:
            timestamp = int(self._clock())
            url = (
                f"{self.host_api}{REFRESH_ACCESS_TOKEN}?"
                f"partner_id={self.partner_id}&timestamp={timestamp}"
                f"&sign={self.sign(REFRESH_ACCESS_TOKEN, timestamp)}"
            )
            body = {
                "refresh_token": refresh_token,
                "partner_id": self.partner_id,
                "shop_id": int(shop_id),
            }
            return await self.client.post(url, json=body)

        outcome = await self.retry_policy.execute(call, label="Shopee token refresh")
        payload = outcome.json(default={}) or {}
        if payload.get("error"):
            raise AuthenticationError(
                f"Shopee refresh error: {payload.get('message') or payload.get('error')}",
                status=outcome.status,
                error_code=str(payload.get("error")),
            )
        outcome.raise_for_failure("Shopee token refresh")

        data = payload.get("response") or payload
        access_token = data.get("access_token")
        if not access_token:
            raise RemoteCallError("Shopee refresh response without access_token", status=outcome.status)

        expire_in = int(data.get("expire_in") or 14400)
        logger.info(f"Shopee access token refreshed for shop {shop_id}")
        return TokenGrant(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or refresh_token,
            expires_at=datetime.now(timezone.utc)
            + timedelta(seconds=expire_in - TOKEN_REFRESH_BUFFER_SECONDS),
        )

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
