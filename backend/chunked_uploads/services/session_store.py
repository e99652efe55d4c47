"""Upload session records with atomic conditional updates.

Two operations carry the correctness of the whole service:

- ``add_chunk`` adds an index to the session's chunk set. Set semantics make it
  idempotent, and concurrent adds for different indices never lose updates.
- ``try_finalize`` flips the session to ``completed`` only if every chunk is
  present and the session is not completed yet. The check and the write are a
  single atomic step on the server, so when the last two chunks land at the
  same time exactly one caller wins and sends the completion notification.

Never implement either as read-check-then-write in application code.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, TypeVar

import redis.asyncio as aioredis

from chunked_uploads.exceptions import (
    BackendUnavailableError,
    SessionNotFoundError,
    SessionStoreError,
)
from chunked_uploads.schemas.upload import UploadSession, UploadStatus
from chunked_uploads.services.retry import (
    DEFAULT_PROFILE,
    HEALTH_PROFILE,
    RetryProfile,
    is_retriable_redis_error,
    retry_async,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionStore(ABC):
    """Per-upload metadata on a backend with conditional writes."""

    name: str = "session_store"

    @abstractmethod
    async def get_session(self, upload_id: str) -> UploadSession:
        """Point read. Raises :class:`SessionNotFoundError` if not registered."""

    @abstractmethod
    async def add_chunk(self, upload_id: str, chunk_index: int) -> bool:
        """Add ``chunk_index`` and mark the session in progress.

        Returns False, without writing, when the record is missing or already
        completed. Callers must have confirmed the session exists before
        treating False as a no-op.
        """

    @abstractmethod
    async def try_finalize(
        self, upload_id: str, total_chunks: int, token: Optional[str] = None
    ) -> bool:
        """Mark the session completed if all chunks are present.

        Returns True for exactly one caller per session; every other caller,
        concurrent or later, gets False. The winner's ``token`` is recorded,
        and a repeated call with that token returns True again, so retrying
        after a lost reply keeps the win. A fresh token is used when omitted.
        """

    @abstractmethod
    async def register_session(self, upload_id: str, total_chunks: int) -> UploadSession:
        """Create a pending session, or return the existing one unchanged."""

    @abstractmethod
    async def is_ready(self) -> None:
        """Raise :class:`BackendUnavailableError` if the store is unreachable."""


# ─── Redis implementation ───────────────────────────────────────────────────

# KEYS[1] = session hash, KEYS[2] = chunk set; ARGV[1] = chunk index, ARGV[2] = ttl
ADD_CHUNK_SCRIPT = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status or status == 'completed' then
    return 0
end
redis.call('SADD', KEYS[2], ARGV[1])
redis.call('HSET', KEYS[1], 'status', 'in_progress')
local ttl = tonumber(ARGV[2])
if ttl > 0 then
    redis.call('EXPIRE', KEYS[1], ttl)
    redis.call('EXPIRE', KEYS[2], ttl)
end
return 1
"""

# KEYS[1] = session hash, KEYS[2] = chunk set; ARGV[1] = total chunks, ARGV[2] = caller token
TRY_FINALIZE_SCRIPT = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
    return 0
end
if status == 'completed' then
    if redis.call('HGET', KEYS[1], 'finalized_by') == ARGV[2] then
        return 1
    end
    return 0
end
if redis.call('SCARD', KEYS[2]) ~= tonumber(ARGV[1]) then
    return 0
end
redis.call('HSET', KEYS[1], 'status', 'completed', 'finalized_by', ARGV[2])
return 1
"""

# KEYS[1] = session hash; ARGV[1] = upload id, ARGV[2] = total chunks, ARGV[3] = ttl
REGISTER_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 0
end
redis.call('HSET', KEYS[1], 'upload_id', ARGV[1], 'total_chunks', ARGV[2], 'status', 'pending')
local ttl = tonumber(ARGV[3])
if ttl > 0 then
    redis.call('EXPIRE', KEYS[1], ttl)
end
return 1
"""

# Hash tag keeps both keys of a session in one cluster slot
SESSION_KEY_PREFIX = "upload_session:"


def session_key(upload_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{{{upload_id}}}"


def chunks_key(upload_id: str) -> str:
    return f"{session_key(upload_id)}:chunks"


class RedisSessionStore(SessionStore):
    """Session store on Redis; conditional writes are server-side Lua scripts."""

    name = "redis_sessions"

    def __init__(
        self,
        client: aioredis.Redis,
        ttl_seconds: int = 0,
        profile: RetryProfile = DEFAULT_PROFILE,
        health_profile: RetryProfile = HEALTH_PROFILE,
    ):
        self.redis = client
        self._ttl = ttl_seconds
        self._profile = profile
        self._health_profile = health_profile
        self._add_chunk = client.register_script(ADD_CHUNK_SCRIPT)
        self._try_finalize = client.register_script(TRY_FINALIZE_SCRIPT)
        self._register = client.register_script(REGISTER_SCRIPT)

    async def _call(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        try:
            return await retry_async(
                operation,
                profile=self._profile,
                is_retriable=is_retriable_redis_error,
                description=f"Redis {description}",
            )
        except Exception as e:
            raise SessionStoreError(f"{description} failed: {e}") from e

    async def _read(self, upload_id: str) -> Optional[UploadSession]:
        async def read():
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hgetall(session_key(upload_id))
                pipe.smembers(chunks_key(upload_id))
                return await pipe.execute()

        record, members = await self._call(read, "get_session")
        if not record:
            return None
        return UploadSession(
            upload_id=record.get("upload_id", upload_id),
            total_chunks=int(record["total_chunks"]),
            uploaded_chunks={int(m) for m in members},
            status=UploadStatus(record.get("status", UploadStatus.PENDING.value)),
        )

    async def get_session(self, upload_id: str) -> UploadSession:
        session = await self._read(upload_id)
        if session is None:
            raise SessionNotFoundError("upload session not found", upload_id=upload_id)
        return session

    async def add_chunk(self, upload_id: str, chunk_index: int) -> bool:
        applied = await self._call(
            lambda: self._add_chunk(
                keys=[session_key(upload_id), chunks_key(upload_id)],
                args=[chunk_index, self._ttl],
            ),
            "add_chunk",
        )
        return bool(applied)

    async def try_finalize(
        self, upload_id: str, total_chunks: int, token: Optional[str] = None
    ) -> bool:
        # Same token on every attempt: a retry after a lost reply sees its own win
        token = token or uuid.uuid4().hex
        won = await self._call(
            lambda: self._try_finalize(
                keys=[session_key(upload_id), chunks_key(upload_id)],
                args=[total_chunks, token],
            ),
            "try_finalize",
        )
        return bool(won)

    async def register_session(self, upload_id: str, total_chunks: int) -> UploadSession:
        if total_chunks <= 0:
            raise ValueError("total_chunks must be positive")
        created = await self._call(
            lambda: self._register(
                keys=[session_key(upload_id)],
                args=[upload_id, total_chunks, self._ttl],
            ),
            "register_session",
        )
        if created:
            logger.info(f"Registered upload session {upload_id} ({total_chunks} chunks)")
        return await self.get_session(upload_id)

    async def is_ready(self) -> None:
        try:
            await retry_async(
                self.redis.ping,
                profile=self._health_profile,
                is_retriable=is_retriable_redis_error,
                description="Redis readiness check",
            )
        except Exception as e:
            raise BackendUnavailableError(f"Redis not reachable: {e}") from e
