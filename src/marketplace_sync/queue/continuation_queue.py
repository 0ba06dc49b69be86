"""Redis job queue for sync continuations.

Producer side: the orchestrator (and the auto-sync scheduler) publish sync
jobs here; consumer workers in ``sync_consumer`` pick them up.
"""

import json
import time
import uuid
from typing import Any, Dict, Optional

import redis.asyncio as redis

from marketplace_sync.config.settings import settings
from marketplace_sync.core.logger import setup_logger
from marketplace_sync.services.platform import SyncRequest

logger = setup_logger(__name__)

# Queue names
QUEUE_MAIN = "marketplace_sync:jobs:main"
QUEUE_DLQ = "marketplace_sync:jobs:dead_letter"
QUEUE_STATS = "marketplace_sync:jobs:stats"

# One pending job per owner and platform
PENDING_KEY_PREFIX = "marketplace_sync:pending"
PENDING_TTL_SECONDS = 15 * 60


def pending_key(platform: str, owner_id: str) -> str:
    return f"{PENDING_KEY_PREFIX}:{platform}:{owner_id}"


def build_job(request: SyncRequest, max_retries: int) -> Dict[str, Any]:
    """Wrap a sync request into the queued message format."""
    return {
        "id": f"sync_{int(time.time())}_{uuid.uuid4().hex[:8]}",
        "payload": request.to_payload(),
        "metadata": {
            "enqueued_at": time.time(),
            "retry_count": 0,
            "max_retries": max_retries,
        },
    }


class ContinuationQueue:
    """Redis list client for publishing sync jobs.

    Features:
    - Message format with metadata
    - At most one pending job per owner and platform
    - Statistics tracking
    """

    def __init__(
        self,
        redis_pool: Optional[redis.ConnectionPool] = None,
        client=None,
        max_retries: Optional[int] = None,
        pending_ttl: int = PENDING_TTL_SECONDS,
    ):
        """Initialize the queue client.

        Args:
            redis_pool: Shared connection pool, ignored when ``client`` is given
            client: Ready Redis client
            max_retries: Attempts allowed per job (default from settings)
            pending_ttl: Lifetime of the pending-job marker in seconds
        """
        self.pool = redis_pool
        self.redis = client if client is not None else redis.Redis(connection_pool=redis_pool)
        self.max_retries = settings.redis_max_retries if max_retries is None else max_retries
        self.pending_ttl = pending_ttl

    async def enqueue(self, request: SyncRequest) -> bool:
        """Publish a sync job.

        Returns:
            True if the job was queued, False if one is already pending for the
            same owner and platform or Redis failed
        """
        key = pending_key(request.platform, request.owner_id)
        try:
            claimed = await self.redis.set(key, request.request_id, nx=True, ex=self.pending_ttl)
            if not claimed:
                logger.info(
                    f"Sync job already pending for owner {request.owner_id} on {request.platform}, skipping"
                )
                await self._update_stats("total_deduplicated", 1)
                return False

            message = build_job(request, self.max_retries)
            await self.redis.lpush(QUEUE_MAIN, json.dumps(message))
            await self._update_stats("total_enqueued", 1)

            logger.info(
                f"Enqueued sync job: id={message['id']} platform={request.platform} "
                f"owner={request.owner_id} continuation={request.continuation}"
            )
            return True

        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.error(f"Redis unavailable while enqueuing sync job: {e}")
            return False

    async def release(self, platform: str, owner_id: str) -> None:
        """Clear the pending marker once a job starts running."""
        try:
            await self.redis.delete(pending_key(platform, owner_id))
        except Exception as e:
            logger.warning(f"Failed to release pending marker for owner {owner_id}: {e}")

    async def health_check(self) -> bool:
        try:
            await self.redis.ping()
            return True
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def get_stats(self) -> Dict[str, Any]:
        """Get queue statistics.

        Returns:
            Dict with queue_depth, dlq_depth, total_enqueued,
            total_deduplicated, total_processed and total_failed
        """
        try:
            queue_depth = await self.redis.llen(QUEUE_MAIN)
            dlq_depth = await self.redis.llen(QUEUE_DLQ)
            stats_hash = await self.redis.hgetall(QUEUE_STATS)

            return {
                "queue_depth": queue_depth,
                "dlq_depth": dlq_depth,
                "total_enqueued": int(stats_hash.get("total_enqueued", 0)),
                "total_deduplicated": int(stats_hash.get("total_deduplicated", 0)),
                "total_processed": int(stats_hash.get("total_processed", 0)),
                "total_failed": int(stats_hash.get("total_failed", 0)),
            }

        except Exception as e:
            logger.error(f"Error getting queue stats: {e}")
            return {"error": str(e)}

    async def _update_stats(self, field: str, increment: int = 1):
        try:
            await self.redis.hincrby(QUEUE_STATS, field, increment)
        except Exception as e:
            logger.warning(f"Failed to update stats {field}: {e}")

    async def close(self):
        """Close Redis connection."""
        try:
            await self.redis.close()
            if self.pool is not None:
                await self.pool.disconnect()
            logger.info("Redis queue connection closed")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")
