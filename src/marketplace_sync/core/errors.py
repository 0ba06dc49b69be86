"""Exception taxonomy for the sync engine."""

from typing import Optional


class SyncEngineError(Exception):
    """Base class for every error raised by the sync engine."""


class RemoteCallError(SyncEngineError):
    """A marketplace call failed after the retry policy gave up.

    Attributes:
        status: HTTP status code, None for network-level failures
        error_code: Short code published on the progress channel
        kind: Failure classification (see core.retry.FailureKind)
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        error_code: Optional[str] = None,
        kind: Optional[str] = None,
    ):
        super().__init__(message)
        self.status = status
        self.error_code = error_code or (str(status) if status else None)
        self.kind = kind


class AuthenticationError(RemoteCallError):
    """Remote API rejected the account credentials (401/403 or invalid token payload)."""


class TokenRefreshError(SyncEngineError):
    """Account token could not be refreshed; the account needs reconnection."""

    def __init__(self, account_id: str, message: str):
        super().__init__(message)
        self.account_id = account_id


class PersistenceError(SyncEngineError):
    """Storage layer failed for a whole unit of records."""
