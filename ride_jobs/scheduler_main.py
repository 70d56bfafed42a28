"""CLI entrypoint for the reconciliation and maintenance scheduler."""

import argparse
import asyncio
import logging
import sys
import signal
from typing import Optional

from ride_jobs.config import RideJobsConfig
from ride_jobs.domain import Collaborators
from ride_jobs.engine import RideJobsEngine
from ride_jobs.store import PostgresJobStore
from ride_jobs.worker_main import create_db_pool, load_collaborators, setup_logging


async def run_scheduler(
    config: Optional[RideJobsConfig] = None,
    db_pool=None,
    collaborators: Optional[Collaborators] = None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    reconcile: bool = True,
    maintain: bool = True,
):
    """
    Run the reconciliation loop and queue maintenance until shutdown.

    Args:
        config: RideJobsConfig instance. If None, will load from environment.
        db_pool: Database connection pool. If None, will create from config.
        collaborators: External collaborators. If None, loaded from RIDE_JOBS_COLLABORATORS.
        logger: Logger instance. If None, will create default logger.
        shutdown_event: Optional asyncio.Event for graceful shutdown.
        reconcile: Run payment reconciliation passes.
        maintain: Run stalled-job recovery and retention purge.
    """
    if config is None:
        config = RideJobsConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    if collaborators is None:
        collaborators = await load_collaborators(config)

    db_pool_provided = db_pool is not None
    if db_pool is None:
        db_pool = await create_db_pool(config)

    engine = RideJobsEngine(config, PostgresJobStore(db_pool), collaborators, logger=logger)
    loops = []
    if reconcile:
        loops.append(engine.reconciliation_scheduler.run_forever(shutdown_event))
    if maintain:
        loops.append(
            engine.maintenance.run_forever(shutdown_event, config.maintenance_interval_seconds)
        )

    try:
        await asyncio.gather(*loops)
    finally:
        if not db_pool_provided and db_pool:
            logger.info("Closing database connection pool...")
            await db_pool.close()


def main():
    """Main entrypoint for scheduler."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Ride Jobs Scheduler")
    parser.add_argument(
        "--no-reconcile",
        action="store_true",
        help="Skip payment reconciliation passes",
    )
    parser.add_argument(
        "--no-maintenance",
        action="store_true",
        help="Skip stalled-job recovery and retention purge",
    )
    args = parser.parse_args()

    try:
        config = RideJobsConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    # Setup shutdown event
    shutdown_event = asyncio.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    async def run():
        """Async main function."""
        try:
            logger.info("Starting scheduler...")
            await run_scheduler(
                config=config,
                logger=logger,
                shutdown_event=shutdown_event,
                reconcile=not args.no_reconcile,
                maintain=not args.no_maintenance,
            )
        except Exception as e:
            logger.error(f"Fatal error in scheduler: {e}", exc_info=True)
            sys.exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
