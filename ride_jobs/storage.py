"""Object storage boundary used by document validation."""

import asyncio
from datetime import datetime
from typing import Any, Optional, Protocol

import boto3
from botocore.exceptions import ClientError
from pydantic import BaseModel

from ride_jobs.errors import TransientError


class ObjectInfo(BaseModel):
    """Existence and metadata of one stored object."""

    exists: bool
    content_type: Optional[str] = None
    content_length: Optional[int] = None
    last_modified: Optional[datetime] = None


class ObjectStorage(Protocol):
    async def head_object(self, key: str) -> ObjectInfo:
        ...


class S3ObjectStorage:
    """
    ``ObjectStorage`` on S3.

    boto3 is synchronous, so ``head_object`` runs on a worker thread and one
    slow lookup only holds its own job slot.
    """

    def __init__(self, s3_client: Any, bucket: str):
        self.s3_client = s3_client
        self.bucket = bucket

    @classmethod
    def for_bucket(cls, bucket: str, region_name: Optional[str] = None) -> "S3ObjectStorage":
        """Create storage with a default boto3 S3 client."""
        return cls(boto3.client("s3", region_name=region_name), bucket)

    async def head_object(self, key: str) -> ObjectInfo:
        """
        Look up an object's metadata.

        Returns:
            ObjectInfo with ``exists=False`` when S3 answers 404

        Raises:
            TransientError: For any other S3 failure
        """
        if not key:
            raise ValueError("key is required")
        try:
            response = await asyncio.to_thread(
                self.s3_client.head_object, Bucket=self.bucket, Key=key
            )
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if code in ("404", "NotFound", "NoSuchKey") or status == 404:
                return ObjectInfo(exists=False)
            raise TransientError(f"S3 head_object failed for {key}: {e}") from e

        return ObjectInfo(
            exists=True,
            content_type=response.get("ContentType"),
            content_length=response.get("ContentLength"),
            last_modified=response.get("LastModified"),
        )
