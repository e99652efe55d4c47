"""Chunk blob storage backed by MinIO / S3."""

import asyncio
import io
import logging
from abc import ABC, abstractmethod

from minio import Minio

from chunked_uploads.exceptions import BackendUnavailableError, BlobStoreError
from chunked_uploads.services.retry import (
    DEFAULT_PROFILE,
    HEALTH_PROFILE,
    RetryProfile,
    is_retriable_storage_error,
    retry_async,
)

logger = logging.getLogger(__name__)


def chunk_key(upload_id: str, chunk_index: int) -> str:
    """Deterministic object key for one chunk of an upload."""
    return f"uploads/{upload_id}/chunk_{chunk_index}"


class BlobStore(ABC):
    """Durable, overwrite-safe storage for chunk bytes."""

    name: str = "blob_store"

    @abstractmethod
    async def put_chunk(self, key: str, data: bytes) -> None:
        """Write ``data`` under ``key``, replacing any previous object."""

    @abstractmethod
    async def is_ready(self) -> None:
        """Raise :class:`BackendUnavailableError` if the store is unreachable."""

    async def prepare(self) -> bool:
        """Create whatever the backend needs before the first write."""
        return True


class MinioBlobStore(BlobStore):
    """Blob store on a single MinIO bucket.

    The MinIO client is synchronous; calls run in worker threads so the event
    loop is never blocked.
    """

    name = "minio"

    def __init__(
        self,
        client: Minio,
        bucket: str,
        profile: RetryProfile = DEFAULT_PROFILE,
        health_profile: RetryProfile = HEALTH_PROFILE,
    ):
        self.client = client
        self.bucket = bucket
        self._profile = profile
        self._health_profile = health_profile
        self._bucket_ensured = False

    def _ensure_bucket(self) -> None:
        if self._bucket_ensured:
            return
        if not self.client.bucket_exists(self.bucket):
            logger.info(f"Creating MinIO bucket {self.bucket}")
            self.client.make_bucket(self.bucket)
        self._bucket_ensured = True

    def _put(self, key: str, data: bytes) -> None:
        self._ensure_bucket()
        # Fresh stream per attempt so a retry never resumes mid-buffer
        self.client.put_object(
            self.bucket,
            key,
            io.BytesIO(data),
            len(data),
            content_type="application/octet-stream",
        )

    async def prepare(self) -> bool:
        """Ensure the bucket exists; MinIO being down at startup is not fatal."""
        try:
            await retry_async(
                lambda: asyncio.to_thread(self._ensure_bucket),
                profile=self._health_profile,
                is_retriable=is_retriable_storage_error,
                description="MinIO ensure_bucket",
            )
            return True
        except Exception as e:
            logger.warning(
                f"Could not verify MinIO bucket {self.bucket}: {e}. "
                "Chunk writes will retry bucket creation."
            )
            return False

    async def put_chunk(self, key: str, data: bytes) -> None:
        try:
            await retry_async(
                lambda: asyncio.to_thread(self._put, key, data),
                profile=self._profile,
                is_retriable=is_retriable_storage_error,
                description=f"MinIO put_chunk {key}",
            )
        except Exception as e:
            raise BlobStoreError(f"failed to upload chunk: {e}", stage="storing_blob") from e

    async def is_ready(self) -> None:
        try:
            exists = await retry_async(
                lambda: asyncio.to_thread(self.client.bucket_exists, self.bucket),
                profile=self._health_profile,
                is_retriable=is_retriable_storage_error,
                description="MinIO readiness check",
            )
        except Exception as e:
            raise BackendUnavailableError(f"MinIO not reachable: {e}") from e
        if not exists:
            raise BackendUnavailableError(f"MinIO bucket {self.bucket} does not exist")
