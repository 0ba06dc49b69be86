"""Redis consumer worker for sync jobs.

Consumer side of the continuation queue. Polls with BRPOP, runs the
orchestrator for the job's platform with retry logic, and handles the DLQ.
"""

import asyncio
import json
import time
from typing import Any, Dict, Mapping, Optional

import redis.asyncio as redis

from marketplace_sync.config.settings import settings
from marketplace_sync.core.logger import setup_logger
from marketplace_sync.queue.continuation_queue import QUEUE_DLQ, QUEUE_MAIN, QUEUE_STATS, pending_key
from marketplace_sync.services.platform import SyncRequest
from marketplace_sync.services.sync_orchestrator import SyncOrchestrator

logger = setup_logger(__name__)


class SyncJobConsumer:
    """Consumes sync jobs from the Redis queue and runs them.

    Features:
    - BRPOP polling with timeout for graceful shutdown
    - Exponential backoff retry logic
    - Dead letter queue for failed jobs
    - Statistics tracking
    """

    def __init__(
        self,
        redis_pool: Optional[redis.ConnectionPool],
        orchestrators: Mapping[str, SyncOrchestrator],
        worker_id: int,
        client=None,
        sleep=asyncio.sleep,
    ):
        """Initialize consumer worker.

        Args:
            redis_pool: Shared Redis connection pool
            orchestrators: Orchestrator per platform key
            worker_id: Unique worker identifier (1-N)
            client: Ready Redis client, used instead of the pool when given
            sleep: Backoff sleep coroutine
        """
        self.redis = client if client is not None else redis.Redis(connection_pool=redis_pool)
        self.orchestrators = orchestrators
        self.worker_id = worker_id
        self.is_running = False
        self.current_message = None
        self.redis_brpop_timeout = settings.redis_brpop_timeout
        self._sleep = sleep
        self.stats = {
            "messages_processed": 0,
            "messages_failed": 0,
            "avg_processing_time": 0.0,
            "last_message_at": None,
        }

        logger.info(f"Worker-{self.worker_id} initialized")

    async def start(self):
        """Start consuming jobs until ``stop`` is called."""
        self.is_running = True
        logger.info(f"Worker-{self.worker_id} started, polling queue...")

        while self.is_running:
            try:
                result = await self.redis.brpop(QUEUE_MAIN, timeout=self.redis_brpop_timeout)

                if result:
                    _, raw_message = result
                    message = json.loads(raw_message)
                    await self.process_message(message)

            except asyncio.CancelledError:
                logger.info(f"Worker-{self.worker_id} cancelled")
                break

            except json.JSONDecodeError as e:
                logger.error(f"Worker-{self.worker_id} invalid JSON: {e}")
                continue

            except Exception as e:
                logger.error(f"Worker-{self.worker_id} error in main loop: {e}", exc_info=True)
                await asyncio.sleep(1)

        logger.info(f"Worker-{self.worker_id} stopped")

    async def process_message(self, message: Dict[str, Any]) -> bool:
        """Run one queued job.

        Args:
            message: Job with format:
                {
                    "id": "sync_timestamp_suffix",
                    "payload": {"platform": ..., "owner_id": ..., "cursors": {...}, ...},
                    "metadata": {"enqueued_at": ..., "retry_count": ..., "max_retries": ...}
                }

        Returns:
            True if the job ran to completion
        """
        queue_id = message.get("id", "unknown")
        payload = message.get("payload", {})
        metadata = message.get("metadata", {})

        try:
            request = SyncRequest.from_payload(payload)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Worker-{self.worker_id} malformed job {queue_id}: {e}")
            await self._move_to_dead_letter(payload, metadata, str(e))
            await self._update_stats("total_failed", 1)
            self.stats["messages_failed"] += 1
            return False

        logger.info(
            f"Worker-{self.worker_id} processing: {queue_id} "
            f"(platform={request.platform}, owner={request.owner_id}, "
            f"continuation={request.continuation})"
        )

        # The running job no longer blocks its own continuation
        await self._release_pending(request)

        self.current_message = queue_id
        start_time = time.time()

        success = await self._process_with_retry(request, payload, metadata)

        duration = time.time() - start_time
        self.stats["last_message_at"] = time.time()

        if success:
            self.stats["messages_processed"] += 1
            logger.info(f"Worker-{self.worker_id} completed: {queue_id} ({duration:.2f}s)")
            await self._update_stats("total_processed", 1)
        else:
            self.stats["messages_failed"] += 1
            logger.error(f"Worker-{self.worker_id} failed: {queue_id} after retries")
            await self._update_stats("total_failed", 1)

        total_processed = self.stats["messages_processed"]
        if success and total_processed > 0:
            current_avg = self.stats["avg_processing_time"]
            self.stats["avg_processing_time"] = (
                (current_avg * (total_processed - 1) + duration) / total_processed
            )

        self.current_message = None
        return success

    async def _process_with_retry(
        self,
        request: SyncRequest,
        payload: Dict[str, Any],
        metadata: Dict[str, Any],
    ) -> bool:
        """Run the job with exponential backoff retry.

        Returns:
            True if the invocation succeeded, False if all retries exhausted
        """
        orchestrator = self.orchestrators.get(request.platform)
        if orchestrator is None:
            logger.error(f"Worker-{self.worker_id} no orchestrator for platform {request.platform}")
            await self._move_to_dead_letter(payload, metadata, f"unknown platform {request.platform}")
            return False

        retry_count = metadata.get("retry_count", 0)
        max_retries = metadata.get("max_retries", 3)

        for attempt in range(retry_count, max_retries + 1):
            try:
                report = await orchestrator.run(request)
                logger.info(
                    f"Worker-{self.worker_id} sync {request.request_id}: totals={report.totals} "
                    f"has_more={report.has_more}"
                )
                return True

            except Exception as e:
                logger.error(
                    f"Worker-{self.worker_id} attempt {attempt + 1} exception: {e}",
                    exc_info=True,
                )

                if attempt < max_retries:
                    wait_time = 2 ** attempt
                    logger.warning(
                        f"Worker-{self.worker_id} retry {attempt + 1}/{max_retries} in {wait_time}s"
                    )
                    await self._sleep(wait_time)

        await self._move_to_dead_letter(payload, metadata, "retries exhausted")
        return False

    async def _release_pending(self, request: SyncRequest) -> None:
        try:
            current = await self.redis.get(pending_key(request.platform, request.owner_id))
            if current is None or current == request.request_id:
                await self.redis.delete(pending_key(request.platform, request.owner_id))
        except Exception as e:
            logger.warning(f"Worker-{self.worker_id} failed to release pending marker: {e}")

    async def _move_to_dead_letter(self, payload: Dict[str, Any], metadata: Dict[str, Any], reason: str):
        try:
            dlq_message = {
                "payload": payload,
                "metadata": {
                    **metadata,
                    "moved_to_dlq_at": time.time(),
                    "worker_id": self.worker_id,
                    "reason": reason,
                },
            }

            await self.redis.lpush(QUEUE_DLQ, json.dumps(dlq_message))
            logger.error(
                f"Worker-{self.worker_id} moved to DLQ: owner={payload.get('owner_id', 'unknown')} ({reason})"
            )

        except Exception as e:
            logger.error(f"Worker-{self.worker_id} failed to move to DLQ: {e}", exc_info=True)

    async def _update_stats(self, field: str, increment: int = 1):
        try:
            await self.redis.hincrby(QUEUE_STATS, field, increment)
        except Exception as e:
            logger.warning(f"Worker-{self.worker_id} failed to update stats {field}: {e}")

    async def stop(self):
        """Graceful shutdown: finish current job, stop loop."""
        logger.info(f"Worker-{self.worker_id} stopping...")
        self.is_running = False

        if self.current_message:
            logger.info(
                f"Worker-{self.worker_id} waiting for current job: {self.current_message}"
            )

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics."""
        return {
            "worker_id": self.worker_id,
            "is_running": self.is_running,
            "current_message": self.current_message,
            **self.stats,
        }
