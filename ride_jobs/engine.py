"""Assembly of queues, workers and payment guards from configuration."""

import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from ride_jobs.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from ride_jobs.config import RideJobsConfig
from ride_jobs.domain import Collaborators
from ride_jobs.escalation import FailureEscalation
from ride_jobs.gateway import GuardedGateway
from ride_jobs.handlers import build_registry
from ride_jobs.maintenance import QueueMaintenance
from ride_jobs.models import utcnow
from ride_jobs.queue import Queue
from ride_jobs.reconciliation import ReconciliationScheduler, Reconciler
from ride_jobs.service import JobService, build_queues
from ride_jobs.store import JobStore
from ride_jobs.worker import WorkerPool

GATEWAY_BREAKER = "cashfree"


class RideJobsEngine:
    """
    Everything one process needs, wired from a config, a store and the
    external collaborators.

    The payment gateway is only reachable through ``self.gateway``, which
    shares one breaker between handlers and the reconciler.
    """

    def __init__(
        self,
        config: RideJobsConfig,
        store: JobStore,
        collaborators: Collaborators,
        clock: Callable[[], datetime] = utcnow,
        breakers: Optional[CircuitBreakerRegistry] = None,
        poll_interval: float = 1.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.store = store
        self.collaborators = collaborators
        self.logger = logger or logging.getLogger(__name__)

        self.breakers = breakers or CircuitBreakerRegistry(
            failure_threshold=config.breaker_failure_threshold,
            cooldown_seconds=config.breaker_cooldown_seconds,
            max_cooldown_seconds=config.breaker_max_cooldown_seconds,
        )
        self.breaker: CircuitBreaker = self.breakers.get(GATEWAY_BREAKER)
        self.gateway = GuardedGateway(
            collaborators.gateway, self.breaker, config.gateway_timeout_seconds
        )

        self.queues: Dict[str, Queue] = build_queues(config, store, clock)
        self.service = JobService(self.queues, clock)
        self.escalation = FailureEscalation(
            collaborators.transactions,
            collaborators.documents,
            collaborators.operators,
            collaborators.notifier,
            clock,
        )
        self.pool = WorkerPool(
            self.queues,
            build_registry(collaborators, self.gateway, clock),
            observers=[self.escalation],
            poll_interval=poll_interval,
            logger=self.logger,
        )
        self.maintenance = QueueMaintenance(self.queues, observers=[self.escalation])
        self.reconciler = Reconciler(
            collaborators.transactions,
            self.gateway,
            grace_seconds=config.reconciliation_grace_seconds,
            batch_size=config.reconciliation_batch_size,
        )
        self.reconciliation_scheduler = ReconciliationScheduler(
            self.reconciler, config.reconciliation_interval_seconds, clock
        )

    def start_queue(self, queue_name: str) -> None:
        """Start the worker pool for a queue with its configured limits."""
        settings = self.config.get_queue_settings(queue_name)
        self.pool.start(
            queue_name,
            settings.concurrency,
            (settings.rate_limit_max, settings.rate_limit_duration_seconds),
        )
