"""Worker management interface for the sync job queue.

Orchestrates multiple concurrent workers consuming continuation jobs.
"""

import asyncio
from typing import List, Mapping, Tuple

import redis.asyncio as redis

from marketplace_sync.config.settings import settings
from marketplace_sync.core.logger import setup_logger
from marketplace_sync.queue.continuation_queue import ContinuationQueue
from marketplace_sync.queue.sync_consumer import SyncJobConsumer
from marketplace_sync.services.sync_orchestrator import SyncOrchestrator

logger = setup_logger(__name__)

__all__ = [
    "ContinuationQueue",
    "SyncJobConsumer",
    "create_redis_pool",
    "start_consumer_workers",
    "stop_consumer_workers",
    "get_workers_stats",
]


def create_redis_pool() -> redis.ConnectionPool:
    """Create Redis connection pool shared by the producer and the workers."""
    pool = redis.ConnectionPool(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        decode_responses=True,
        max_connections=10,
        # BRPOP blocks up to redis_brpop_timeout, the socket must outlive it
        socket_timeout=settings.redis_brpop_timeout + 5,
        socket_connect_timeout=5.0,
        retry_on_timeout=True,
    )

    logger.info(f"Redis connection pool created: {settings.redis_host}:{settings.redis_port}/{settings.redis_db}")
    return pool


async def start_consumer_workers(
    orchestrators: Mapping[str, SyncOrchestrator],
    redis_pool: redis.ConnectionPool,
    num_workers: int = 2,
) -> List[Tuple[SyncJobConsumer, asyncio.Task]]:
    """Start N concurrent consumer workers.

    Args:
        orchestrators: Orchestrator per platform key
        redis_pool: Shared Redis connection pool
        num_workers: Number of concurrent workers to start

    Returns:
        List of (consumer, task) tuples for graceful shutdown
    """
    logger.info("=" * 60)
    logger.info(f"Starting {num_workers} sync job workers...")
    logger.info("=" * 60)

    workers = []

    for i in range(num_workers):
        consumer = SyncJobConsumer(
            redis_pool=redis_pool,
            orchestrators=orchestrators,
            worker_id=i + 1,
        )

        task = asyncio.create_task(consumer.start())
        workers.append((consumer, task))

        logger.info(f"✓ Worker-{i + 1} launched")

    logger.info("=" * 60)
    logger.info(f"All {num_workers} workers started successfully")
    logger.info("=" * 60)

    return workers


async def stop_consumer_workers(workers: List[Tuple[SyncJobConsumer, asyncio.Task]]):
    """Gracefully stop all consumer workers.

    Signals every worker, waits for in-flight jobs and cancels whatever is
    still stuck after 30 seconds.
    """
    if not workers:
        logger.info("No workers to stop")
        return

    logger.info("=" * 60)
    logger.info(f"Stopping {len(workers)} sync job workers...")
    logger.info("=" * 60)

    for consumer, _ in workers:
        await consumer.stop()

    logger.info("All workers signaled to stop, waiting for completion...")

    tasks = [task for _, task in workers]

    try:
        await asyncio.wait_for(
            asyncio.gather(*tasks, return_exceptions=True),
            timeout=30.0,
        )
        logger.info("✓ All workers stopped gracefully")

    except asyncio.TimeoutError:
        logger.warning("Timeout waiting for workers, cancelling tasks...")

        for task in tasks:
            if not task.done():
                task.cancel()

        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("✓ All workers cancelled")

    for consumer, _ in workers:
        stats = consumer.get_stats()
        logger.info(
            f"Worker-{stats['worker_id']} stats: "
            f"processed={stats['messages_processed']}, "
            f"failed={stats['messages_failed']}, "
            f"avg_time={stats['avg_processing_time']:.2f}s"
        )

    logger.info("=" * 60)
    logger.info("All workers stopped")
    logger.info("=" * 60)


async def get_workers_stats(workers: List[Tuple[SyncJobConsumer, asyncio.Task]]) -> List[dict]:
    """Get statistics from all workers."""
    return [consumer.get_stats() for consumer, _ in workers]
