"""Tests for upload session stores.

Every behavioral test runs against both the Redis store (Lua scripts on
FakeRedis) and the in-memory store (version-stamped compare-and-swap).
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
import redis.exceptions

from chunked_uploads.exceptions import BackendUnavailableError, SessionNotFoundError, SessionStoreError
from chunked_uploads.schemas.upload import UploadStatus
from chunked_uploads.services.memory import InMemorySessionStore
from chunked_uploads.services.session_store import RedisSessionStore, chunks_key, session_key


@pytest.fixture(params=["memory", "redis"])
def store(request):
    if request.param == "memory":
        return request.getfixturevalue("session_store")
    return request.getfixturevalue("redis_session_store")


class TestRegisterAndGet:
    """Tests for session registration and point reads."""

    @pytest.mark.asyncio
    async def test_register_creates_pending_session(self, store):
        session = await store.register_session("u1", 3)

        assert session.upload_id == "u1"
        assert session.total_chunks == 3
        assert session.uploaded_chunks == set()
        assert session.status == UploadStatus.PENDING

    @pytest.mark.asyncio
    async def test_register_is_idempotent(self, store):
        await store.register_session("u1", 3)
        await store.add_chunk("u1", 0)

        session = await store.register_session("u1", 10)

        assert session.total_chunks == 3
        assert session.uploaded_chunks == {0}

    @pytest.mark.asyncio
    async def test_register_rejects_non_positive_total(self, store):
        with pytest.raises(ValueError):
            await store.register_session("u1", 0)

    @pytest.mark.asyncio
    async def test_get_unknown_session_raises_not_found(self, store):
        with pytest.raises(SessionNotFoundError) as exc_info:
            await store.get_session("missing")

        assert exc_info.value.upload_id == "missing"


class TestAddChunk:
    """Tests for atomic chunk-set updates."""

    @pytest.mark.asyncio
    async def test_add_chunk_marks_in_progress(self, store):
        await store.register_session("u1", 3)

        assert await store.add_chunk("u1", 1) is True

        session = await store.get_session("u1")
        assert session.uploaded_chunks == {1}
        assert session.status == UploadStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_duplicate_chunk_is_counted_once(self, store):
        await store.register_session("u1", 3)

        for _ in range(3):
            await store.add_chunk("u1", 1)

        session = await store.get_session("u1")
        assert session.uploaded_chunks == {1}

    @pytest.mark.asyncio
    async def test_add_chunk_to_missing_session_is_rejected(self, store):
        assert await store.add_chunk("missing", 0) is False

        with pytest.raises(SessionNotFoundError):
            await store.get_session("missing")

    @pytest.mark.asyncio
    async def test_concurrent_adds_lose_no_updates(self, store):
        await store.register_session("u1", 50)

        await asyncio.gather(*(store.add_chunk("u1", i) for i in range(50)))

        session = await store.get_session("u1")
        assert session.uploaded_chunks == set(range(50))

    @pytest.mark.asyncio
    async def test_add_chunk_after_completion_changes_nothing(self, store):
        await store.register_session("u1", 2)
        await store.add_chunk("u1", 0)
        await store.add_chunk("u1", 1)
        assert await store.try_finalize("u1", 2) is True

        assert await store.add_chunk("u1", 1) is False

        session = await store.get_session("u1")
        assert session.uploaded_chunks == {0, 1}
        assert session.status == UploadStatus.COMPLETED


class TestTryFinalize:
    """Tests for the single-winner completion gate."""

    @pytest.mark.asyncio
    async def test_incomplete_session_does_not_finalize(self, store):
        await store.register_session("u1", 3)
        await store.add_chunk("u1", 0)

        assert await store.try_finalize("u1", 3) is False

        session = await store.get_session("u1")
        assert session.status == UploadStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_complete_session_finalizes_once(self, store):
        await store.register_session("u1", 2)
        await store.add_chunk("u1", 0)
        await store.add_chunk("u1", 1)

        assert await store.try_finalize("u1", 2) is True
        assert await store.try_finalize("u1", 2) is False

        session = await store.get_session("u1")
        assert session.status == UploadStatus.COMPLETED
        assert session.is_complete

    @pytest.mark.asyncio
    async def test_concurrent_finalizers_have_exactly_one_winner(self, store):
        await store.register_session("u1", 3)
        for i in range(3):
            await store.add_chunk("u1", i)

        results = await asyncio.gather(*(store.try_finalize("u1", 3) for _ in range(25)))

        assert results.count(True) == 1
        assert results.count(False) == 24

    @pytest.mark.asyncio
    async def test_finalize_missing_session_returns_false(self, store):
        assert await store.try_finalize("missing", 1) is False

    @pytest.mark.asyncio
    async def test_racing_last_chunks_finalize_once(self, store):
        await store.register_session("u1", 4)
        await store.add_chunk("u1", 0)
        await store.add_chunk("u1", 1)

        async def upload_last(index):
            await store.add_chunk("u1", index)
            return await store.try_finalize("u1", 4)

        results = await asyncio.gather(upload_last(2), upload_last(3))

        assert sorted(results) == [False, True]

    @pytest.mark.asyncio
    async def test_winner_token_is_recognised_on_repeat(self, store):
        await store.register_session("u1", 1)
        await store.add_chunk("u1", 0)

        assert await store.try_finalize("u1", 1, token="request-a") is True
        assert await store.try_finalize("u1", 1, token="request-a") is True
        assert await store.try_finalize("u1", 1, token="request-b") is False
        assert await store.try_finalize("u1", 1) is False

    @pytest.mark.asyncio
    async def test_losing_token_stays_losing(self, store):
        await store.register_session("u1", 1)
        await store.add_chunk("u1", 0)

        results = await asyncio.gather(*(
            store.try_finalize("u1", 1, token=f"request-{i}") for i in range(5)
        ))
        winner = f"request-{results.index(True)}"

        for i in range(5):
            token = f"request-{i}"
            assert await store.try_finalize("u1", 1, token=token) is (token == winner)


class TestInMemoryCompareAndSwap:
    """Tests specific to the version-stamped in-memory store."""

    @pytest.mark.asyncio
    async def test_stale_version_is_rejected(self):
        store = InMemorySessionStore()
        await store.register_session("u1", 2)
        record = store._snapshot("u1")

        assert store._compare_and_swap("u1", record.version, record) is True
        assert store._compare_and_swap("u1", record.version, record) is True
        assert store._compare_and_swap("u1", record.version - 1, record) is False
        assert store.conflicts == 1

    @pytest.mark.asyncio
    async def test_concurrent_finalizers_record_conflicts(self):
        store = InMemorySessionStore()
        await store.register_session("u1", 1)
        await store.add_chunk("u1", 0)

        results = await asyncio.gather(*(store.try_finalize("u1", 1) for _ in range(5)))

        assert results.count(True) == 1
        # Losers read "in_progress", then failed their swap and re-read "completed"
        assert store.conflicts == 4


class TestRedisSessionStore:
    """Tests specific to the Redis-backed store."""

    @pytest.mark.asyncio
    async def test_keys_share_cluster_hash_tag(self):
        assert session_key("abc") == "upload_session:{abc}"
        assert chunks_key("abc") == "upload_session:{abc}:chunks"

    @pytest.mark.asyncio
    async def test_record_layout(self, redis_session_store, fake_redis):
        await redis_session_store.register_session("u1", 2)
        await redis_session_store.add_chunk("u1", 1)

        record = await fake_redis.hgetall(session_key("u1"))
        members = await fake_redis.smembers(chunks_key("u1"))

        assert record == {"upload_id": "u1", "total_chunks": "2", "status": "in_progress"}
        assert members == {"1"}

    @pytest.mark.asyncio
    async def test_ttl_applied_when_configured(self, fake_redis):
        store = RedisSessionStore(fake_redis, ttl_seconds=600)
        await store.register_session("u1", 2)
        await store.add_chunk("u1", 0)

        assert 0 < await fake_redis.ttl(session_key("u1")) <= 600
        assert 0 < await fake_redis.ttl(chunks_key("u1")) <= 600

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, redis_session_store):
        script = redis_session_store._add_chunk
        calls = 0

        async def flaky(**kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise redis.exceptions.ConnectionError("reset")
            return await script(**kwargs)

        await redis_session_store.register_session("u1", 2)
        redis_session_store._add_chunk = flaky

        assert await redis_session_store.add_chunk("u1", 0) is True
        assert calls == 2

    @pytest.mark.asyncio
    async def test_lost_reply_after_commit_keeps_win(self, redis_session_store, fake_redis):
        script = redis_session_store._try_finalize
        calls = 0

        async def commit_then_drop_reply(**kwargs):
            nonlocal calls
            calls += 1
            result = await script(**kwargs)
            if calls == 1:
                raise redis.exceptions.ConnectionError("reply lost")
            return result

        await redis_session_store.register_session("u1", 1)
        await redis_session_store.add_chunk("u1", 0)
        redis_session_store._try_finalize = commit_then_drop_reply

        assert await redis_session_store.try_finalize("u1", 1) is True
        assert calls == 2
        assert await fake_redis.hget(session_key("u1"), "status") == "completed"
        # A different caller still loses
        assert await redis_session_store.try_finalize("u1", 1) is False

    @pytest.mark.asyncio
    async def test_persistent_failure_raises_session_store_error(self, redis_session_store):
        redis_session_store._try_finalize = AsyncMock(
            side_effect=redis.exceptions.ConnectionError("down")
        )

        with pytest.raises(SessionStoreError):
            await redis_session_store.try_finalize("u1", 2)

        assert redis_session_store._try_finalize.await_count == 3

    @pytest.mark.asyncio
    async def test_is_ready_pings(self, redis_session_store):
        await redis_session_store.is_ready()

    @pytest.mark.asyncio
    async def test_is_ready_fails_when_unreachable(self, redis_session_store):
        redis_session_store.redis.ping = AsyncMock(
            side_effect=redis.exceptions.ConnectionError("refused")
        )

        with pytest.raises(BackendUnavailableError):
            await redis_session_store.is_ready()
