"""CLI entrypoint and programmatic interface for workers."""

import argparse
import asyncio
import importlib
import inspect
import logging
import os
import signal
import sys
from typing import List, Optional

import asyncpg

from ride_jobs.config import QUEUE_NAMES, RideJobsConfig
from ride_jobs.domain import Collaborators
from ride_jobs.engine import RideJobsEngine
from ride_jobs.store import PostgresJobStore


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def create_db_pool(config: RideJobsConfig):
    """Create database connection pool."""
    return await asyncpg.create_pool(config.db_dsn, min_size=2, max_size=10)


async def load_collaborators(config: RideJobsConfig) -> Collaborators:
    """
    Build the external collaborators from ``RIDE_JOBS_COLLABORATORS``.

    The setting names a ``module:callable`` taking the config and returning
    (or resolving to) a ``Collaborators`` bundle.
    """
    path = config.collaborators_factory
    if not path or ":" not in path:
        raise ValueError(
            "RIDE_JOBS_COLLABORATORS must name a factory as 'module:callable'"
        )
    module_name, attr = path.split(":", 1)
    factory = getattr(importlib.import_module(module_name), attr)
    collaborators = factory(config)
    if inspect.isawaitable(collaborators):
        collaborators = await collaborators
    return collaborators


async def run_workers(
    queue_names: List[str],
    config: Optional[RideJobsConfig] = None,
    db_pool=None,
    collaborators: Optional[Collaborators] = None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    drain_timeout: Optional[float] = None,
):
    """
    Run worker pools programmatically until ``shutdown_event`` is set.

    Args:
        queue_names: Queues to process (e.g., ['payout-processing'])
        config: RideJobsConfig instance. If None, will load from environment.
        db_pool: Database connection pool. If None, will create from config.
        collaborators: External collaborators. If None, loaded from RIDE_JOBS_COLLABORATORS.
        logger: Logger instance. If None, will create default logger.
        shutdown_event: Optional asyncio.Event for graceful shutdown.
        drain_timeout: Seconds to let running jobs finish on shutdown (None waits).
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
    try:
        for queue_name in queue_names:
            engine.start_queue(queue_name)

        await shutdown_event.wait()
        logger.info("Draining running jobs...")
        await engine.pool.stop_all(drain=True, timeout=drain_timeout)
    finally:
        await engine.pool.stop_all(drain=False)
        if not db_pool_provided and db_pool:
            await db_pool.close()


def main():
    """Main entrypoint for worker."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Ride Jobs Worker")
    parser.add_argument(
        "--queue",
        action="append",
        choices=QUEUE_NAMES,
        help="Queue to process; repeat for several (default: all queues)",
    )
    parser.add_argument(
        "--drain-timeout",
        type=float,
        default=30.0,
        help="Seconds to let running jobs finish on shutdown (default: 30)",
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

    queue_names = args.queue or list(QUEUE_NAMES)

    async def run():
        """Async main function."""
        try:
            logger.info(f"Starting workers for queues: {', '.join(queue_names)}...")
            await run_workers(
                queue_names=queue_names,
                config=config,
                logger=logger,
                shutdown_event=shutdown_event,
                drain_timeout=args.drain_timeout,
            )
        except Exception as e:
            logger.error(f"Fatal error in worker: {e}", exc_info=True)
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
