"""Driver document validation handler."""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ride_jobs.domain import DocumentRepository
from ride_jobs.errors import ValidationError
from ride_jobs.models import utcnow
from ride_jobs.payloads import DocumentJob
from ride_jobs.storage import ObjectInfo, ObjectStorage

MAX_DOCUMENT_BYTES = 10 * 1024 * 1024
ALLOWED_CONTENT_TYPES = frozenset(
    ["image/jpeg", "image/png", "image/jpg", "application/pdf"]
)


def validation_failure(info: ObjectInfo) -> Optional[str]:
    """Reason the stored object is unacceptable, or None if it passes."""
    if not info.exists:
        return "Document not found in storage"
    if info.content_length is not None and info.content_length > MAX_DOCUMENT_BYTES:
        return f"File too large: {info.content_length} bytes (max {MAX_DOCUMENT_BYTES})"
    if info.content_type not in ALLOWED_CONTENT_TYPES:
        return f"Invalid content type: {info.content_type}"
    return None


class DocumentHandler:
    """
    Check an uploaded document and record its metadata.

    A document that fails validation is marked ``rejected`` with the reason and
    the job fails without retries. A valid one keeps its ``pending`` review
    status; only content type, size and processing time are recorded.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        documents: DocumentRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.documents = documents
        self.clock = clock

    async def __call__(self, ctx: Dict[str, Any], payload: DocumentJob) -> Dict[str, Any]:
        logger = ctx["logger"]
        logger.info(
            f"Processing document {payload.document_id} (type: {payload.document_type})"
        )

        info = await self.storage.head_object(payload.s3_key)
        reason = validation_failure(info)
        if reason:
            await self.documents.update_document(
                payload.driver_id,
                payload.document_id,
                {
                    "status": "rejected",
                    "rejection_reason": f"Validation failed: {reason}",
                    "reviewed_at": self.clock(),
                },
            )
            raise ValidationError(f"Document validation failed: {reason}")

        processed_at = self.clock()
        await self.documents.update_document(
            payload.driver_id,
            payload.document_id,
            {
                "content_type": info.content_type,
                "file_size": info.content_length,
                "processed_at": processed_at,
            },
        )

        logger.info(f"Document {payload.document_id} processed successfully")
        return {
            "success": True,
            "document_id": payload.document_id,
            "document_type": payload.document_type,
            "metadata": {
                "s3_key": payload.s3_key,
                "content_type": info.content_type,
                "content_length": info.content_length,
            },
            "processed_at": processed_at.isoformat(),
        }
