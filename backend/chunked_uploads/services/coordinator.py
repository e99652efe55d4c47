"""Chunk upload orchestration.

A chunk request moves through these stages:

    validating -> storing_blob -> updating_session -> finalizing -> notifying -> done

Every side effect after validation is either idempotent (blob overwrite,
set-add) or guarded by the single-winner ``try_finalize`` gate, so a client or
proxy retrying the same request never produces a second completion
notification and never corrupts chunk accounting. Nothing is rolled back on
failure: a stored blob or an added index stays in place for the next retry.
"""

import asyncio
import hashlib
import hmac
import logging
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from chunked_uploads.exceptions import (
    ChunkIntegrityError,
    DeadlineExceededError,
    InvalidChunkError,
    UploadError,
)
from chunked_uploads.schemas.upload import ChunkReceipt, UploadSession
from chunked_uploads.services.blob_store import BlobStore, chunk_key
from chunked_uploads.services.notifier import CompletionNotifier
from chunked_uploads.services.session_store import SessionStore

logger = logging.getLogger(__name__)

_SHA256_HEX = re.compile(r"^[0-9a-fA-F]{64}$")
# ASCII digits only
_CHUNK_INDEX = re.compile(r"[0-9]+")


class Stage(str, Enum):
    VALIDATING = "validating"
    STORING_BLOB = "storing_blob"
    UPDATING_SESSION = "updating_session"
    FINALIZING = "finalizing"
    NOTIFYING = "notifying"
    DONE = "done"


@dataclass
class _ChunkRequest:
    upload_id: str
    chunk_index: Optional[int] = None
    stage: Stage = Stage.VALIDATING
    # Identifies this request to the finalize gate across backend retries
    finalize_token: str = field(default_factory=lambda: uuid.uuid4().hex)


def parse_chunk_index(raw: Union[int, str, None]) -> int:
    """Parse a chunk index from a path parameter; must be a non-negative integer."""
    if isinstance(raw, bool):
        raise InvalidChunkError("invalid chunk ID")
    if isinstance(raw, int):
        index = raw
    elif isinstance(raw, str) and _CHUNK_INDEX.fullmatch(raw.strip()):
        index = int(raw.strip())
    else:
        raise InvalidChunkError("invalid chunk ID")
    if index < 0:
        raise InvalidChunkError("invalid chunk ID")
    return index


def verify_chunk_hash(data: bytes, declared_hash: str) -> None:
    """Compare the SHA-256 of ``data`` with the hex digest the client declared."""
    calculated = hashlib.sha256(data).hexdigest()
    if not hmac.compare_digest(calculated, declared_hash.lower()):
        raise ChunkIntegrityError("integrity error")


class UploadCoordinator:
    """Accepts chunks and emits one completion notification per upload.

    Holds no mutable state of its own; all coordination between concurrent
    requests happens in the session store's conditional writes.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        session_store: SessionStore,
        notifier: CompletionNotifier,
        deadline_seconds: Optional[float] = None,
    ):
        self.blob_store = blob_store
        self.session_store = session_store
        self.notifier = notifier
        self.deadline_seconds = deadline_seconds

    async def handle_chunk(
        self,
        upload_id: str,
        chunk_index: Union[int, str, None],
        data: bytes,
        declared_hash: Optional[str],
    ) -> ChunkReceipt:
        """Store one chunk and account for it in its upload session.

        Raises:
            InvalidChunkError: Malformed input or index outside the session
            ChunkIntegrityError: Body does not match ``declared_hash``
            SessionNotFoundError: No session registered for ``upload_id``
            BlobStoreError: Chunk bytes were not stored
            SessionStoreError: Chunk stored but not accounted for
            NotificationError: Chunk stored and accounted, completion signal failed
            DeadlineExceededError: Request deadline expired
        """
        request = _ChunkRequest(upload_id=upload_id)
        try:
            async with asyncio.timeout(self.deadline_seconds):
                return await self._process(request, chunk_index, data, declared_hash)
        except TimeoutError as e:
            raise DeadlineExceededError(
                "request deadline exceeded",
                upload_id=upload_id,
                chunk_index=request.chunk_index,
                stage=request.stage.value,
            ) from e
        except UploadError as e:
            e.with_context(
                upload_id=upload_id,
                chunk_index=request.chunk_index,
                stage=request.stage.value,
            )
            raise

    async def _process(
        self,
        request: _ChunkRequest,
        raw_index: Union[int, str, None],
        data: bytes,
        declared_hash: Optional[str],
    ) -> ChunkReceipt:
        upload_id = request.upload_id

        # Validation: no side effects before this passes
        if not upload_id or not upload_id.strip():
            raise InvalidChunkError("invalid fields")
        request.chunk_index = parse_chunk_index(raw_index)
        if not declared_hash or not _SHA256_HEX.match(declared_hash):
            raise InvalidChunkError("invalid fields")
        if not data:
            raise InvalidChunkError("no binary data")
        verify_chunk_hash(data, declared_hash)

        # Unknown sessions never reach the blob store
        session = await self.session_store.get_session(upload_id)
        if request.chunk_index >= session.total_chunks:
            raise InvalidChunkError(
                f"chunk index out of range (total_chunks={session.total_chunks})"
            )

        request.stage = Stage.STORING_BLOB
        key = chunk_key(upload_id, request.chunk_index)
        await self.blob_store.put_chunk(key, data)

        request.stage = Stage.UPDATING_SESSION
        applied = await self.session_store.add_chunk(upload_id, request.chunk_index)
        if not applied:
            logger.debug(
                f"Chunk {request.chunk_index} of {upload_id} not added: session already completed"
            )

        request.stage = Stage.FINALIZING
        won = await self.session_store.try_finalize(
            upload_id, session.total_chunks, token=request.finalize_token
        )

        if won:
            request.stage = Stage.NOTIFYING
            logger.info(f"Upload {upload_id} complete ({session.total_chunks} chunks)")
            await self.notifier.notify_upload_complete(upload_id)

        request.stage = Stage.DONE
        return ChunkReceipt(
            upload_id=upload_id,
            chunk_index=request.chunk_index,
            key=key,
            completed=won,
        )

    async def get_progress(self, upload_id: str) -> UploadSession:
        """Current state of an upload session."""
        return await self.session_store.get_session(upload_id)
