"""Sync service FastAPI application."""

from fastapi import FastAPI

from marketplace_sync import __version__
from marketplace_sync.api.meli_client import MeliClient
from marketplace_sync.api.shopee_client import ShopeeClient
from marketplace_sync.config.constants import PLATFORM_MELI, PLATFORM_SHOPEE
from marketplace_sync.config.settings import settings
from marketplace_sync.core.logger import setup_logger
from marketplace_sync.core.monitoring import init_monitoring
from marketplace_sync.db.base import get_engine, get_session_factory, init_db
from marketplace_sync.server import routes
from marketplace_sync.services.account_service import AccountService
from marketplace_sync.services.meli_sync import MeliSync
from marketplace_sync.services.progress import ProgressReporter
from marketplace_sync.services.shopee_sync import ShopeeSync
from marketplace_sync.services.sync_orchestrator import SyncOrchestrator

logger = setup_logger(__name__)


def build_strategies() -> dict:
    """Platform strategies for every configured marketplace."""
    strategies = {
        PLATFORM_MELI: MeliSync(
            MeliClient(
                base_url=settings.meli_base_url,
                client_id=settings.meli_client_id,
                client_secret=settings.meli_client_secret,
            ),
            page_concurrency=settings.page_fetch_concurrency,
        ),
    }

    if settings.shopee_partner_id and settings.shopee_partner_key:
        strategies[PLATFORM_SHOPEE] = ShopeeSync(
            ShopeeClient(
                partner_id=settings.shopee_partner_id,
                partner_key=settings.shopee_partner_key,
                host_api=settings.shopee_host_api,
            )
        )
    else:
        logger.warning("Shopee partner credentials not set, Shopee sync disabled")

    return strategies


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI app instance
    """
    app = FastAPI(
        title="Marketplace Order Sync",
        description="Synchronizes marketplace order history into the sales store",
        version=__version__,
    )

    init_monitoring(settings.glitchtip_dsn, settings.environment)

    @app.on_event("startup")
    async def startup():
        """Initialize database, clients, sync engine, queue and scheduler.

        Steps:
        1. Create the database engine and tables
        2. Build platform strategies and the account service
        3. Build one orchestrator per platform
        4. Start the continuation queue and workers (if Redis is enabled)
        5. Start the auto-sync scheduler (if enabled)
        """
        try:
            logger.info("=" * 60)
            logger.info("Starting Marketplace Order Sync...")
            logger.info("=" * 60)

            logger.info("Initializing database...")
            engine = get_engine(settings.database_url)
            await init_db(engine)
            session_factory = get_session_factory(engine)
            app.state.engine = engine
            logger.info("✓ Database initialized")

            reporter = ProgressReporter()

            logger.info("Initializing marketplace clients...")
            strategies = build_strategies()
            app.state.strategies = strategies
            logger.info(f"✓ Platforms enabled: {', '.join(sorted(strategies))}")

            account_service = AccountService(
                session_factory,
                refreshers={platform: strategy.refresh for platform, strategy in strategies.items()},
            )

            queue = None
            redis_pool = None
            if settings.redis_enabled:
                from marketplace_sync.queue import ContinuationQueue, create_redis_pool

                redis_pool = create_redis_pool()
                queue = ContinuationQueue(redis_pool=redis_pool)
                logger.info("✓ Continuation queue initialized")
            else:
                logger.info("Redis disabled, continuations wait for the next trigger")
            app.state.queue = queue

            orchestrators = {
                platform: SyncOrchestrator(
                    strategy,
                    session_factory,
                    reporter,
                    account_service,
                    continuation_queue=queue,
                    budget_seconds=settings.sync_time_budget_seconds,
                    max_orders=settings.max_orders_per_invocation,
                    max_continuations=settings.max_continuations,
                )
                for platform, strategy in strategies.items()
            }
            logger.info("✓ Sync orchestrators initialized")

            routes.set_orchestrators(orchestrators)
            routes.set_progress_reporter(reporter)
            routes.set_account_service(account_service)
            routes.set_session_factory(session_factory)
            routes.set_continuation_queue(queue)

            if queue is not None:
                from marketplace_sync.queue import start_consumer_workers

                app.state.worker_tasks = await start_consumer_workers(
                    orchestrators=orchestrators,
                    redis_pool=redis_pool,
                    num_workers=settings.redis_num_workers,
                )
                logger.info(f"✓ Started {settings.redis_num_workers} sync job workers")
            else:
                app.state.worker_tasks = None

            app.state.scheduler = None
            if settings.auto_sync_enabled and queue is not None:
                from marketplace_sync.services.sync_scheduler import SyncScheduler

                scheduler = SyncScheduler(
                    session_factory,
                    queue,
                    interval_hours=settings.auto_sync_interval_hours,
                    platforms=orchestrators.keys(),
                )
                await scheduler.start()
                app.state.scheduler = scheduler
                logger.info("✓ Auto-sync scheduler started")
            elif settings.auto_sync_enabled:
                logger.warning("Auto-sync requires Redis, scheduler not started")

            logger.info("=" * 60)
            logger.info("Marketplace Order Sync started successfully!")
            logger.info(f"Time budget per invocation: {settings.sync_time_budget_seconds}s")
            logger.info(f"Order budget per invocation: {settings.max_orders_per_invocation}")
            if queue is not None:
                logger.info(f"Continuation Mode: Redis Queue ({settings.redis_num_workers} workers)")
            else:
                logger.info("Continuation Mode: manual trigger only")
            logger.info("=" * 60)

        except Exception as e:
            logger.error(f"Failed to start sync service: {e}", exc_info=True)
            raise

    @app.on_event("shutdown")
    async def shutdown():
        """Graceful shutdown: stop scheduler and workers, close clients."""
        logger.info("=" * 60)
        logger.info("Shutting down Marketplace Order Sync...")
        logger.info("=" * 60)

        scheduler = getattr(app.state, "scheduler", None)
        if scheduler is not None:
            await scheduler.stop()
            logger.info("✓ Scheduler stopped")

        worker_tasks = getattr(app.state, "worker_tasks", None)
        if worker_tasks:
            from marketplace_sync.queue import stop_consumer_workers

            logger.info("Waiting for workers to finish current jobs...")
            await stop_consumer_workers(worker_tasks)
            logger.info("✓ All workers stopped")

        queue = getattr(app.state, "queue", None)
        if queue is not None:
            await queue.close()

        for strategy in getattr(app.state, "strategies", {}).values():
            await strategy.close()

        engine = getattr(app.state, "engine", None)
        if engine is not None:
            await engine.dispose()

        logger.info("=" * 60)
        logger.info("Shutdown completed")
        logger.info("=" * 60)

    app.include_router(routes.router)

    return app


# Create app instance
app = create_app()
