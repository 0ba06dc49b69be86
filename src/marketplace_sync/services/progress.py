"""
Progress Reporter

Per-owner publish/subscribe channel for live sync progress. Each attached
subscriber owns a bounded asyncio queue; the SSE route drains it. Delivery is
best effort: with nobody attached, events are dropped.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from marketplace_sync.config.constants import PROGRESS_QUEUE_SIZE
from marketplace_sync.core.logger import setup_logger
from marketplace_sync.core.retry import WarningSink

logger = setup_logger(__name__)

# Event types
SYNC_START = "sync_start"
SYNC_PROGRESS = "sync_progress"
SYNC_WARNING = "sync_warning"
SYNC_ERROR = "sync_error"
SYNC_COMPLETE = "sync_complete"
SYNC_CONTINUE = "sync_continue"

_CLOSED = object()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ProgressEvent:
    """One progress message sent to the UI."""

    type: str
    message: str = ""
    current: Optional[int] = None
    total: Optional[int] = None
    fetched: Optional[int] = None
    expected: Optional[int] = None
    account_id: Optional[str] = None
    account_nickname: Optional[str] = None
    error_code: Optional[str] = None
    has_more_to_sync: Optional[bool] = None
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        """Wire format: camelCase keys, unset fields omitted."""
        data = {
            "type": self.type,
            "message": self.message,
            "current": self.current,
            "total": self.total,
            "fetched": self.fetched,
            "expected": self.expected,
            "accountId": self.account_id,
            "accountNickname": self.account_nickname,
            "errorCode": self.error_code,
            "hasMoreToSync": self.has_more_to_sync,
            "timestamp": self.timestamp,
        }
        return {key: value for key, value in data.items() if value is not None}


def format_sse(event: ProgressEvent) -> str:
    """Serialize an event as one Server-Sent Events frame."""
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"


class Subscription:
    """A live receiver attached to one owner's channel."""

    def __init__(self, reporter: "ProgressReporter", owner_id: str, maxsize: int = PROGRESS_QUEUE_SIZE):
        self.reporter = reporter
        self.owner_id = owner_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def deliver(self, event: ProgressEvent) -> None:
        if self.closed:
            raise RuntimeError("subscription closed")
        self.queue.put_nowait(event)

    def close(self) -> None:
        """Signal end of stream to the consumer."""
        if self.closed:
            return
        self.closed = True
        while True:
            try:
                self.queue.put_nowait(_CLOSED)
                return
            except asyncio.QueueFull:
                self.queue.get_nowait()

    def detach(self) -> None:
        self.reporter.detach(self)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events until the subscription is closed."""
        while True:
            item = await self.queue.get()
            if item is _CLOSED:
                return
            yield item

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self.events()


class ProgressReporter:
    """Registry of live subscribers, keyed by account owner."""

    def __init__(self, queue_size: int = PROGRESS_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Dict[str, List[Subscription]] = {}
        # Running syncs per owner; streams close only when none is left
        self._active: Dict[str, int] = {}

    def attach(self, owner_id: str) -> Subscription:
        subscription = Subscription(self, owner_id, self.queue_size)
        self._subscribers.setdefault(owner_id, []).append(subscription)
        logger.info(
            f"Progress subscriber attached for owner {owner_id} "
            f"(total: {len(self._subscribers[owner_id])})"
        )
        return subscription

    def detach(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.owner_id)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            del self._subscribers[subscription.owner_id]
        subscription.close()

    def publish(self, owner_id: str, event: ProgressEvent) -> int:
        """
        Deliver an event to every subscriber of ``owner_id``.

        Returns:
            Number of subscribers that received the event
        """
        subscribers = list(self._subscribers.get(owner_id, ()))
        if not subscribers:
            return 0

        delivered = 0
        for subscription in subscribers:
            try:
                subscription.deliver(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Progress queue full for owner {owner_id}, dropping {event.type}")
            except Exception as e:
                logger.warning(f"Removing broken progress subscriber for owner {owner_id}: {e}")
                self.detach(subscription)
        return delivered

    def detach_all(self, owner_id: str) -> None:
        """Close every subscriber of ``owner_id``."""
        subscribers = self._subscribers.pop(owner_id, [])
        for subscription in subscribers:
            subscription.close()
        if subscribers:
            logger.info(f"Closed {len(subscribers)} progress subscriber(s) for owner {owner_id}")

    def begin_sync(self, owner_id: str) -> None:
        self._active[owner_id] = self._active.get(owner_id, 0) + 1

    def end_sync(self, owner_id: str, close: bool = True) -> bool:
        """
        Record the end of one sync for ``owner_id``.

        Returns:
            True if the owner's subscribers were closed
        """
        remaining = max(self._active.get(owner_id, 0) - 1, 0)
        if remaining:
            self._active[owner_id] = remaining
        else:
            self._active.pop(owner_id, None)

        if not close:
            return False
        if remaining:
            logger.info(f"{remaining} other sync(s) still running for owner {owner_id}, keeping stream open")
            return False
        self.detach_all(owner_id)
        return True

    def active_syncs(self, owner_id: str) -> int:
        return self._active.get(owner_id, 0)

    def subscriber_count(self, owner_id: str) -> int:
        return len(self._subscribers.get(owner_id, ()))

    def channel(self, owner_id: str) -> "OwnerChannel":
        return OwnerChannel(self, owner_id)


class OwnerChannel:
    """Publishing handle bound to one owner, injected into the sync engine."""

    def __init__(self, reporter: ProgressReporter, owner_id: str):
        self.reporter = reporter
        self.owner_id = owner_id

    def publish(self, event_type: str, message: str = "", **fields) -> None:
        self.reporter.publish(self.owner_id, ProgressEvent(type=event_type, message=message, **fields))

    def progress(self, message: str, **fields) -> None:
        self.publish(SYNC_PROGRESS, message, **fields)

    def warn(self, message: str, error_code: Optional[str] = None, account_id: Optional[str] = None) -> None:
        self.publish(SYNC_WARNING, message, error_code=error_code, account_id=account_id)

    def warning_sink(self, account_id: Optional[str] = None) -> WarningSink:
        """Adapter for the retry policy's ``warn`` callback."""

        def sink(message: str, error_code: str) -> None:
            self.warn(message, error_code=error_code, account_id=account_id)

        return sink

    def detach_all(self) -> None:
        self.reporter.detach_all(self.owner_id)

    def begin_sync(self) -> None:
        self.reporter.begin_sync(self.owner_id)

    def end_sync(self, close: bool = True) -> bool:
        return self.reporter.end_sync(self.owner_id, close)
