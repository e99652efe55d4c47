"""In-memory backends for tests and local development.

``InMemorySessionStore`` reproduces the conditional-write semantics of the
Redis store with version-stamped records and an explicit compare-and-swap:
every mutation reads a snapshot, computes the new record, and commits only if
the version is unchanged. On a conflict the mutation re-reads and re-evaluates
its condition, so a finalizer that lost the race sees ``completed`` and
returns False.
"""

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from chunked_uploads.exceptions import BackendUnavailableError, SessionNotFoundError
from chunked_uploads.schemas.upload import CompletionMessage, UploadSession, UploadStatus
from chunked_uploads.services.blob_store import BlobStore
from chunked_uploads.services.notifier import CompletionNotifier
from chunked_uploads.services.session_store import SessionStore

logger = logging.getLogger(__name__)


class InMemoryBlobStore(BlobStore):
    name = "memory_blobs"

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.put_count = 0
        self._available = True

    async def put_chunk(self, key: str, data: bytes) -> None:
        self.put_count += 1
        self.objects[key] = bytes(data)

    async def is_ready(self) -> None:
        if not self._available:
            raise BackendUnavailableError("in-memory blob store marked unavailable")

    def set_available(self, available: bool) -> None:
        self._available = available


@dataclass(frozen=True)
class _VersionedRecord:
    version: int
    upload_id: str
    total_chunks: int
    uploaded_chunks: frozenset = field(default_factory=frozenset)
    status: UploadStatus = UploadStatus.PENDING
    finalized_by: Optional[str] = None

    def to_session(self) -> UploadSession:
        return UploadSession(
            upload_id=self.upload_id,
            total_chunks=self.total_chunks,
            uploaded_chunks=set(self.uploaded_chunks),
            status=self.status,
        )


class InMemorySessionStore(SessionStore):
    """Session store with optimistic concurrency over versioned records."""

    name = "memory_sessions"

    def __init__(self):
        self._records: dict[str, _VersionedRecord] = {}
        # Guards only the compare-and-swap itself; never held across an await
        self._lock = threading.Lock()
        self._available = True
        self.conflicts = 0

    def _snapshot(self, upload_id: str) -> Optional[_VersionedRecord]:
        with self._lock:
            return self._records.get(upload_id)

    def _compare_and_swap(
        self,
        upload_id: str,
        expected_version: Optional[int],
        record: _VersionedRecord,
    ) -> bool:
        """Replace the record only if its version is still ``expected_version``.

        ``expected_version=None`` means the record must not exist yet.
        """
        with self._lock:
            current = self._records.get(upload_id)
            current_version = current.version if current is not None else None
            if current_version != expected_version:
                self.conflicts += 1
                return False
            self._records[upload_id] = record
            return True

    async def _conditional_update(
        self,
        upload_id: str,
        mutate: Callable[[_VersionedRecord], Optional[_VersionedRecord]],
    ) -> bool:
        """Apply ``mutate`` atomically; it returns None when its condition fails."""
        while True:
            current = self._snapshot(upload_id)
            if current is None:
                return False
            updated = mutate(current)
            if updated is None:
                return False
            # Let competing tasks interleave between read and commit
            await asyncio.sleep(0)
            committed = self._compare_and_swap(
                upload_id,
                current.version,
                replace(updated, version=current.version + 1),
            )
            if committed:
                return True

    async def get_session(self, upload_id: str) -> UploadSession:
        record = self._snapshot(upload_id)
        if record is None:
            raise SessionNotFoundError("upload session not found", upload_id=upload_id)
        return record.to_session()

    async def add_chunk(self, upload_id: str, chunk_index: int) -> bool:
        def mutate(record: _VersionedRecord) -> Optional[_VersionedRecord]:
            if record.status == UploadStatus.COMPLETED:
                return None
            return replace(
                record,
                uploaded_chunks=record.uploaded_chunks | {chunk_index},
                status=UploadStatus.IN_PROGRESS,
            )

        return await self._conditional_update(upload_id, mutate)

    async def try_finalize(
        self, upload_id: str, total_chunks: int, token: Optional[str] = None
    ) -> bool:
        token = token or uuid.uuid4().hex

        def mutate(record: _VersionedRecord) -> Optional[_VersionedRecord]:
            if record.status == UploadStatus.COMPLETED:
                return None
            if len(record.uploaded_chunks) != total_chunks:
                return None
            return replace(record, status=UploadStatus.COMPLETED, finalized_by=token)

        if await self._conditional_update(upload_id, mutate):
            return True
        record = self._snapshot(upload_id)
        # The caller already won on an earlier attempt
        return record is not None and record.finalized_by == token

    async def register_session(self, upload_id: str, total_chunks: int) -> UploadSession:
        if total_chunks <= 0:
            raise ValueError("total_chunks must be positive")
        record = _VersionedRecord(version=1, upload_id=upload_id, total_chunks=total_chunks)
        self._compare_and_swap(upload_id, None, record)
        return await self.get_session(upload_id)

    async def is_ready(self) -> None:
        if not self._available:
            raise BackendUnavailableError("in-memory session store marked unavailable")

    def set_available(self, available: bool) -> None:
        self._available = available


class InMemoryNotifier(CompletionNotifier):
    """Collects messages in a list, collapsing repeats inside the dedup window."""

    name = "memory_notifications"

    def __init__(self, dedup_window_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.messages: list[CompletionMessage] = []
        self.send_attempts = 0
        self._window = dedup_window_seconds
        self._clock = clock
        self._seen: dict[str, float] = {}
        self._available = True

    async def notify_upload_complete(self, upload_id: str) -> None:
        self.send_attempts += 1
        message = CompletionMessage(upload_id=upload_id)
        now = self._clock()
        expires_at = self._seen.get(message.dedup_id)
        if expires_at is not None and now < expires_at:
            logger.info(f"Duplicate completion for {upload_id} suppressed ({message.dedup_id})")
            return
        self._seen[message.dedup_id] = now + self._window
        self.messages.append(message)

    def messages_for(self, upload_id: str) -> list[CompletionMessage]:
        return [m for m in self.messages if m.group_id == upload_id]

    async def is_ready(self) -> None:
        if not self._available:
            raise BackendUnavailableError("in-memory notifier marked unavailable")

    def set_available(self, available: bool) -> None:
        self._available = available
