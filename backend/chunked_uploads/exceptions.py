"""Error taxonomy for chunk uploads.

Every error raised by the coordinator carries the upload id, chunk index and
the stage that failed, so an operator can tell "data not stored" apart from
"data stored, completion signal lost" without retrying blindly.
"""

from typing import Any, Optional


class UploadError(Exception):
    """Base class for all chunk upload failures."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        upload_id: Optional[str] = None,
        chunk_index: Optional[int] = None,
        stage: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.upload_id = upload_id
        self.chunk_index = chunk_index
        self.stage = stage

    @property
    def context(self) -> dict[str, Any]:
        return {
            "upload_id": self.upload_id,
            "chunk_index": self.chunk_index,
            "stage": self.stage,
        }

    def with_context(
        self,
        *,
        upload_id: Optional[str] = None,
        chunk_index: Optional[int] = None,
        stage: Optional[str] = None,
    ) -> "UploadError":
        """Fill in request context that the raising layer did not know."""
        if self.upload_id is None:
            self.upload_id = upload_id
        if self.chunk_index is None:
            self.chunk_index = chunk_index
        if self.stage is None:
            self.stage = stage
        return self

    def __str__(self) -> str:
        parts = [f"{k}={v}" for k, v in self.context.items() if v is not None]
        if not parts:
            return self.message
        return f"{self.message} ({', '.join(parts)})"


# ─── Input errors (400 / 413) ───────────────────────────────────────────────


class InvalidChunkError(UploadError):
    """Malformed upload id, chunk index, hash or body."""

    status_code = 400


class ChunkIntegrityError(UploadError):
    """Declared hash does not match the digest of the received bytes."""

    status_code = 400


class ChunkTooLargeError(UploadError):
    status_code = 413


# ─── Authorization-class errors ─────────────────────────────────────────────


class SessionNotFoundError(UploadError):
    """No session was registered for the upload id."""

    status_code = 403


# ─── Backend errors (500) ───────────────────────────────────────────────────


class BackendError(UploadError):
    """A backing store failed with a non-transient error or exhausted its retries."""

    status_code = 500


class BlobStoreError(BackendError):
    pass


class SessionStoreError(BackendError):
    pass


class BackendUnavailableError(BackendError):
    """A readiness check failed."""


class NotificationError(UploadError):
    """The chunk was stored and accounted for, but the completion signal failed."""

    status_code = 502
    chunk_committed = True


class DeadlineExceededError(UploadError):
    """The request deadline expired; already committed effects are kept."""

    status_code = 504
