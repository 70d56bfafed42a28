"""Escalation of terminally failed jobs to operators."""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ride_jobs.config import PAYOUT_QUEUE
from ride_jobs.domain import (
    DocumentRepository,
    Notification,
    Notifier,
    OperatorDirectory,
    TransactionRepository,
)
from ride_jobs.errors import JobError, ValidationError
from ride_jobs.models import Job, utcnow
from ride_jobs.payloads import DocumentJob, PayoutJob, business_id, parse_payload
from ride_jobs.worker import JobObserver

PAYOUT_FAILURE_TEMPLATE = "payout_failure_admin"
JOB_FAILURE_TEMPLATE = "job_failure_admin"


class FailureEscalation(JobObserver):
    """
    Leave an audit trail on the domain record and notify every active operator.

    Runs after the job is already stored as failed, so nothing here may raise:
    errors are logged and swallowed.
    """

    def __init__(
        self,
        transactions: TransactionRepository,
        documents: DocumentRepository,
        operators: OperatorDirectory,
        notifier: Notifier,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        self.transactions = transactions
        self.documents = documents
        self.operators = operators
        self.notifier = notifier
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

    async def on_failed(self, job: Job, error: BaseException) -> None:
        failed_at = self.clock()
        failure_reason = _failure_reason(job, error)

        try:
            payload = parse_payload(job.kind, job.payload)
        except ValidationError:
            payload = None

        try:
            await self._record_failure(job, payload, failure_reason, failed_at)
        except Exception as e:
            self.logger.error(
                f"Failed to record terminal failure of job {job.id}: {e}", exc_info=True
            )

        await self._notify_operators(job, payload, failure_reason, failed_at)

    async def _record_failure(
        self, job: Job, payload: Any, failure_reason: str, failed_at: datetime
    ) -> None:
        if isinstance(payload, DocumentJob):
            await self.documents.update_document(
                payload.driver_id,
                payload.document_id,
                {"processing_error": failure_reason, "processing_failed_at": failed_at},
            )
            return

        transaction_id = getattr(payload, "transaction_id", None)
        if not transaction_id:
            return

        final_failure = {
            "error": failure_reason,
            "timestamp": failed_at,
            "total_attempts": job.attempts,
            "job_id": job.id,
        }
        if isinstance(payload, PayoutJob):
            await self.transactions.mark_failed(transaction_id, final_failure)
        else:
            # A confirmation we could not complete says nothing about the
            # payment itself; reconciliation still owns its status.
            await self.transactions.update(
                transaction_id, metadata={"final_failure": final_failure}
            )

    async def _notify_operators(
        self, job: Job, payload: Any, failure_reason: str, failed_at: datetime
    ) -> None:
        try:
            operators = await self.operators.list_active_operators()
        except Exception as e:
            self.logger.error(f"Failed to load operators for job {job.id}: {e}", exc_info=True)
            return

        template = PAYOUT_FAILURE_TEMPLATE if job.queue_name == PAYOUT_QUEUE else JOB_FAILURE_TEMPLATE
        data = _notification_data(job, payload, failure_reason, failed_at)
        entity_id = business_id(payload) if payload is not None else job.id

        sent = 0
        for operator in operators:
            if not operator.email:
                continue
            try:
                await self.notifier.send_notification(
                    Notification(
                        channel="email",
                        recipient=operator.email,
                        template=template,
                        data=data,
                        user_id=operator.id,
                        related_entity={"type": job.kind, "id": entity_id},
                    )
                )
                sent += 1
            except Exception as e:
                self.logger.error(
                    f"Failed to notify operator {operator.id} about job {job.id}: {e}"
                )

        self.logger.info(f"Escalated failed job {job.id} to {sent} operator(s)")


def _failure_reason(job: Job, error: BaseException) -> str:
    message = str(error) or type(error).__name__
    if isinstance(error, JobError) and not error.retryable:
        return f"Non-retryable failure: {message}"
    return f"Final failure after {job.attempts} attempt(s): {message}"


def _notification_data(
    job: Job, payload: Any, failure_reason: str, failed_at: datetime
) -> Dict[str, Any]:
    data = {
        "job_id": job.id,
        "queue": job.queue_name,
        "kind": job.kind,
        "failure_reason": failure_reason,
        "failed_at": failed_at.isoformat(),
        "retry_count": job.attempts,
    }
    for field in ("trip_id", "driver_id", "transaction_id", "amount", "order_id", "document_id"):
        value = getattr(payload, field, None)
        if value is not None:
            data[field] = value
    return data
