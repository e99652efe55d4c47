"""Upload session schemas and API payloads."""

import json
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class UploadStatus(str, Enum):
    """Lifecycle of an upload session. Only moves forward."""
    PENDING = "pending"            # Registered, no chunk received yet
    IN_PROGRESS = "in_progress"    # At least one chunk accounted for
    COMPLETED = "completed"        # Every chunk received, completion emitted


class UploadSession(BaseModel):
    """Per-upload metadata record."""
    upload_id: str
    total_chunks: int = Field(gt=0)
    uploaded_chunks: set[int] = Field(default_factory=set)
    status: UploadStatus = UploadStatus.PENDING

    @property
    def is_complete(self) -> bool:
        return len(self.uploaded_chunks) == self.total_chunks

    @property
    def missing_chunks(self) -> list[int]:
        return [i for i in range(self.total_chunks) if i not in self.uploaded_chunks]

    @property
    def progress(self) -> float:
        """Percentage of chunks received (0-100)."""
        return round(100.0 * len(self.uploaded_chunks) / self.total_chunks, 2)


class ChunkReceipt(BaseModel):
    """Result of an accepted chunk upload."""
    upload_id: str
    chunk_index: int
    key: str
    completed: bool = False  # True only for the request that finalized the upload


class CompletionMessage(BaseModel):
    """Message delivered to downstream processors once an upload completes."""
    upload_id: str

    @property
    def group_id(self) -> str:
        return self.upload_id

    @property
    def dedup_id(self) -> str:
        return f"dedup-{self.upload_id}"

    def body(self) -> str:
        return json.dumps({"upload_id": self.upload_id})


# ─── API responses ──────────────────────────────────────────────────────────


class ChunkUploadResponse(BaseModel):
    upload_id: str
    chunk_id: int
    key: str
    completed: bool


class SessionProgressResponse(BaseModel):
    upload_id: str
    total_chunks: int
    uploaded_chunks: list[int]
    missing_chunks: list[int]
    status: UploadStatus
    progress: float

    @classmethod
    def from_session(cls, session: UploadSession) -> "SessionProgressResponse":
        return cls(
            upload_id=session.upload_id,
            total_chunks=session.total_chunks,
            uploaded_chunks=sorted(session.uploaded_chunks),
            missing_chunks=session.missing_chunks,
            status=session.status,
            progress=session.progress,
        )


class ErrorResponse(BaseModel):
    detail: str
    upload_id: Optional[str] = None
    chunk_index: Optional[int] = None
    stage: Optional[str] = None
    chunk_committed: bool = False
