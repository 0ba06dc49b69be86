"""Retry policy shared by every marketplace call site.

A call is any zero-argument coroutine factory returning an ``httpx.Response``.
The policy classifies each response (or network exception) and either returns
it, retries it with exponential backoff, or gives up. It never raises for HTTP
or network failures: callers always receive a ``CallOutcome``.
"""

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from marketplace_sync.config.constants import (
    AUTH_STATUSES,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_JITTER_SECONDS,
    RETRYABLE_STATUSES,
)
from marketplace_sync.core.errors import AuthenticationError, RemoteCallError
from marketplace_sync.core.logger import setup_logger

logger = setup_logger(__name__)

# (message, error_code) -> None
WarningSink = Callable[[str, str], None]


class FailureKind(str, Enum):
    """Classification of a remote call result."""

    NONE = "none"
    AUTH = "auth"
    RETRYABLE = "retryable"
    CLIENT = "client"
    NETWORK = "network"


def classify_status(status: int) -> FailureKind:
    """Default classifier for HTTP status codes."""
    if status < 400:
        return FailureKind.NONE
    if status in AUTH_STATUSES:
        return FailureKind.AUTH
    if status in RETRYABLE_STATUSES:
        return FailureKind.RETRYABLE
    return FailureKind.CLIENT


@dataclass
class CallOutcome:
    """Structured result of a call executed under a retry policy."""

    response: Optional[httpx.Response] = None
    kind: FailureKind = FailureKind.NONE
    attempts: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind == FailureKind.NONE and self.response is not None

    @property
    def status(self) -> Optional[int]:
        return self.response.status_code if self.response is not None else None

    def json(self, default: Any = None) -> Any:
        """Decode the response body, returning ``default`` when impossible."""
        if self.response is None:
            return default
        try:
            return self.response.json()
        except ValueError:
            return default

    def error_code(self) -> str:
        if self.kind == FailureKind.NETWORK:
            return "NETWORK_ERROR"
        return str(self.status) if self.status else "UNKNOWN_ERROR"

    def raise_for_failure(self, label: str) -> None:
        """Convert a failed outcome into the matching exception."""
        if self.ok:
            return
        message = f"{label} failed: {self.error or f'HTTP {self.status}'}"
        if self.kind == FailureKind.AUTH:
            raise AuthenticationError(message, status=self.status, kind=self.kind.value)
        raise RemoteCallError(
            message,
            status=self.status,
            error_code=self.error_code(),
            kind=self.kind.value,
        )


def _safe_warn(warn: Optional[WarningSink], message: str, error_code: str) -> None:
    if warn is None:
        return
    try:
        warn(message, error_code)
    except Exception as e:
        logger.warning(f"Failed to publish retry warning: {e}")


class RetryPolicy:
    """Bounded retries with exponential backoff and jitter.

    Delay before retry ``n`` (0-based) is ``base_delay * 2**n + U(0, max_jitter)``.
    """

    def __init__(
        self,
        max_attempts: int = RETRY_MAX_ATTEMPTS,
        base_delay: float = RETRY_BASE_DELAY_SECONDS,
        max_jitter: float = RETRY_MAX_JITTER_SECONDS,
        classifier: Callable[[int], FailureKind] = classify_status,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_jitter = max_jitter
        self.classifier = classifier
        self._sleep = sleep
        self._jitter = jitter

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt) + self._jitter() * self.max_jitter

    async def execute(
        self,
        call: Callable[[], Awaitable[httpx.Response]],
        label: str = "remote call",
        warn: Optional[WarningSink] = None,
    ) -> CallOutcome:
        """
        Run ``call`` until it succeeds, fails fatally, or attempts run out.

        Args:
            call: Coroutine factory performing one HTTP request
            label: Short description used in logs
            warn: Progress sink notified on the first retry and on fatal failures

        Returns:
            CallOutcome describing the final response or failure
        """
        outcome = CallOutcome()

        for attempt in range(self.max_attempts):
            is_last = attempt == self.max_attempts - 1

            try:
                response = await call()
            except httpx.RequestError as e:
                outcome = CallOutcome(
                    kind=FailureKind.NETWORK,
                    attempts=attempt + 1,
                    error=str(e) or e.__class__.__name__,
                )
                logger.error(
                    f"[Retry] Network error on {label} "
                    f"(attempt {attempt + 1}/{self.max_attempts}): {outcome.error}"
                )
                if is_last:
                    _safe_warn(
                        warn,
                        f"Connection error after {self.max_attempts} attempts: {outcome.error}",
                        "NETWORK_ERROR",
                    )
                    return outcome
                if attempt == 0:
                    _safe_warn(warn, "Connection error. Retrying...", "NETWORK_ERROR")
                await self._sleep(self.backoff_delay(attempt))
                continue

            kind = self.classifier(response.status_code)
            outcome = CallOutcome(
                response=response,
                kind=kind,
                attempts=attempt + 1,
                error=None if kind == FailureKind.NONE else f"HTTP {response.status_code}",
            )

            if kind == FailureKind.NONE:
                return outcome

            if kind == FailureKind.AUTH:
                logger.error(
                    f"[Retry] Authentication error {response.status_code} on {label}, "
                    f"token may be invalid"
                )
                _safe_warn(
                    warn,
                    f"Authentication error {response.status_code}. "
                    f"Check that the account is still connected.",
                    str(response.status_code),
                )
                return outcome

            if kind == FailureKind.CLIENT:
                logger.warning(
                    f"[Retry] HTTP {response.status_code} (non-retryable) on {label}"
                )
                return outcome

            if is_last:
                break

            delay = self.backoff_delay(attempt)
            logger.warning(
                f"[Retry] HTTP {response.status_code} on {label}. "
                f"Attempt {attempt + 1}/{self.max_attempts}, waiting {delay:.2f}s"
            )
            if attempt == 0:
                _safe_warn(
                    warn,
                    f"Temporary error {response.status_code} from marketplace API. Retrying...",
                    str(response.status_code),
                )
            await self._sleep(delay)

        logger.error(
            f"[Retry] Giving up on {label} after {outcome.attempts} attempts: {outcome.error}"
        )
        return outcome
