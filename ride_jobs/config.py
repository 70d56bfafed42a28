"""Configuration for the ride jobs engine."""

import json
import os
from typing import Any, Dict, Optional

from ride_jobs.retry import RetentionPolicy, RetryPolicy

DOCUMENT_QUEUE = "document-processing"
PAYOUT_QUEUE = "payout-processing"
PAYMENT_CONFIRMATION_QUEUE = "payment-confirmation"

QUEUE_NAMES = (DOCUMENT_QUEUE, PAYOUT_QUEUE, PAYMENT_CONFIRMATION_QUEUE)

CASHFREE_BASE_URLS = {
    "sandbox": "https://sandbox.cashfree.com",
    "production": "https://api.cashfree.com",
}


class QueueSettings:
    """Concurrency, rate limit, retry and retention settings for one queue."""

    def __init__(
        self,
        concurrency: int,
        rate_limit_max: int,
        rate_limit_duration_seconds: float,
        max_attempts: int,
        backoff_base_seconds: float,
        backoff_max_seconds: float,
        keep_completed_seconds: int,
        keep_failed_seconds: int,
    ):
        self.concurrency = concurrency
        self.rate_limit_max = rate_limit_max
        self.rate_limit_duration_seconds = rate_limit_duration_seconds
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.keep_completed_seconds = keep_completed_seconds
        self.keep_failed_seconds = keep_failed_seconds

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_seconds=self.backoff_base_seconds,
            max_delay_seconds=self.backoff_max_seconds,
        )

    @property
    def retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy(
            keep_completed_seconds=self.keep_completed_seconds,
            keep_failed_seconds=self.keep_failed_seconds,
        )

    def updated(self, overrides: Dict[str, Any]) -> "QueueSettings":
        """Return a copy with the given fields replaced."""
        values = dict(vars(self))
        unknown = set(overrides) - set(values)
        if unknown:
            raise ValueError(f"Unknown queue setting(s): {', '.join(sorted(unknown))}")
        values.update(overrides)
        return QueueSettings(**values)


def default_queue_settings() -> Dict[str, QueueSettings]:
    """Defaults per queue: documents fail fast, payments retry long."""
    return {
        DOCUMENT_QUEUE: QueueSettings(
            concurrency=10,
            rate_limit_max=100,
            rate_limit_duration_seconds=60,
            max_attempts=3,
            backoff_base_seconds=2,
            backoff_max_seconds=60,
            keep_completed_seconds=24 * 3600,
            keep_failed_seconds=7 * 24 * 3600,
        ),
        PAYOUT_QUEUE: QueueSettings(
            concurrency=5,
            rate_limit_max=10,
            rate_limit_duration_seconds=1,
            max_attempts=5,
            backoff_base_seconds=5,
            backoff_max_seconds=300,
            keep_completed_seconds=7 * 24 * 3600,
            keep_failed_seconds=30 * 24 * 3600,
        ),
        PAYMENT_CONFIRMATION_QUEUE: QueueSettings(
            concurrency=5,
            rate_limit_max=10,
            rate_limit_duration_seconds=1,
            max_attempts=5,
            backoff_base_seconds=10,
            backoff_max_seconds=600,
            keep_completed_seconds=7 * 24 * 3600,
            keep_failed_seconds=30 * 24 * 3600,
        ),
    }


class RideJobsConfig:
    """Configuration object for the ride jobs engine."""

    def __init__(
        self,
        db_dsn: str,
        queue_settings: Optional[Dict[str, QueueSettings]] = None,
        breaker_failure_threshold: int = 5,
        breaker_cooldown_seconds: float = 60,
        breaker_max_cooldown_seconds: float = 600,
        reconciliation_interval_seconds: float = 60,
        reconciliation_grace_seconds: float = 300,
        reconciliation_batch_size: int = 20,
        maintenance_interval_seconds: float = 60,
        lease_seconds: float = 300,
        cashfree_environment: str = "sandbox",
        cashfree_app_id: Optional[str] = None,
        cashfree_secret_key: Optional[str] = None,
        cashfree_api_version: str = "2023-08-01",
        cashfree_payout_api_version: str = "2024-01-01",
        gateway_timeout_seconds: float = 15,
        auth_token: Optional[str] = None,
        collaborators_factory: Optional[str] = None,
    ):
        if cashfree_environment not in CASHFREE_BASE_URLS:
            raise ValueError(
                f"Invalid CASHFREE_ENVIRONMENT: {cashfree_environment}. "
                f"Must be one of {', '.join(CASHFREE_BASE_URLS)}"
            )
        self.db_dsn = db_dsn
        self.queue_settings = queue_settings or default_queue_settings()
        self.breaker_failure_threshold = breaker_failure_threshold
        self.breaker_cooldown_seconds = breaker_cooldown_seconds
        self.breaker_max_cooldown_seconds = breaker_max_cooldown_seconds
        self.reconciliation_interval_seconds = reconciliation_interval_seconds
        self.reconciliation_grace_seconds = reconciliation_grace_seconds
        self.reconciliation_batch_size = reconciliation_batch_size
        self.maintenance_interval_seconds = maintenance_interval_seconds
        self.lease_seconds = lease_seconds
        self.cashfree_environment = cashfree_environment
        self.cashfree_app_id = cashfree_app_id
        self.cashfree_secret_key = cashfree_secret_key
        self.cashfree_api_version = cashfree_api_version
        self.cashfree_payout_api_version = cashfree_payout_api_version
        self.gateway_timeout_seconds = gateway_timeout_seconds
        self.auth_token = auth_token
        self.collaborators_factory = collaborators_factory

    @classmethod
    def from_env(cls) -> "RideJobsConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("RIDE_JOBS_DB_DSN")
        if not db_dsn:
            raise ValueError("RIDE_JOBS_DB_DSN environment variable is required")

        queue_settings = default_queue_settings()
        overrides_str = os.getenv("RIDE_JOBS_QUEUE_OVERRIDES")
        if overrides_str:
            try:
                overrides = json.loads(overrides_str)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in RIDE_JOBS_QUEUE_OVERRIDES: {e}") from e
            for queue_name, queue_overrides in overrides.items():
                if queue_name not in queue_settings:
                    raise ValueError(
                        f"Unknown queue in RIDE_JOBS_QUEUE_OVERRIDES: {queue_name}"
                    )
                queue_settings[queue_name] = queue_settings[queue_name].updated(
                    queue_overrides
                )

        return cls(
            db_dsn=db_dsn,
            queue_settings=queue_settings,
            breaker_failure_threshold=_int_env("RIDE_JOBS_BREAKER_FAILURE_THRESHOLD", 5),
            breaker_cooldown_seconds=_float_env("RIDE_JOBS_BREAKER_COOLDOWN_SECONDS", 60),
            breaker_max_cooldown_seconds=_float_env(
                "RIDE_JOBS_BREAKER_MAX_COOLDOWN_SECONDS", 600
            ),
            reconciliation_interval_seconds=_float_env(
                "RIDE_JOBS_RECONCILIATION_INTERVAL_SECONDS", 60
            ),
            reconciliation_grace_seconds=_float_env(
                "RIDE_JOBS_RECONCILIATION_GRACE_SECONDS", 300
            ),
            reconciliation_batch_size=_int_env("RIDE_JOBS_RECONCILIATION_BATCH_SIZE", 20),
            maintenance_interval_seconds=_float_env(
                "RIDE_JOBS_MAINTENANCE_INTERVAL_SECONDS", 60
            ),
            lease_seconds=_float_env("RIDE_JOBS_LEASE_SECONDS", 300),
            cashfree_environment=os.getenv("CASHFREE_ENVIRONMENT", "sandbox"),
            cashfree_app_id=os.getenv("CASHFREE_APP_ID"),
            cashfree_secret_key=os.getenv("CASHFREE_SECRET_KEY"),
            cashfree_api_version=os.getenv("CASHFREE_API_VERSION", "2023-08-01"),
            cashfree_payout_api_version=os.getenv(
                "CASHFREE_PAYOUT_API_VERSION", "2024-01-01"
            ),
            gateway_timeout_seconds=_float_env("RIDE_JOBS_GATEWAY_TIMEOUT_SECONDS", 15),
            auth_token=os.getenv("RIDE_JOBS_AUTH_TOKEN"),
            collaborators_factory=os.getenv("RIDE_JOBS_COLLABORATORS"),
        )

    @property
    def cashfree_base_url(self) -> str:
        return CASHFREE_BASE_URLS[self.cashfree_environment]

    def get_queue_settings(self, queue_name: str) -> QueueSettings:
        """Get settings for a queue."""
        try:
            return self.queue_settings[queue_name]
        except KeyError:
            raise ValueError(f"Unknown queue: {queue_name}") from None


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"Invalid integer in {name}: {value!r}") from e


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"Invalid number in {name}: {value!r}") from e
