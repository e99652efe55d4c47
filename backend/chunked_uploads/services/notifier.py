"""Completion notifications for downstream processors."""

import logging
from abc import ABC, abstractmethod

import redis.asyncio as aioredis

from chunked_uploads.exceptions import BackendUnavailableError, NotificationError
from chunked_uploads.schemas.upload import CompletionMessage
from chunked_uploads.services.retry import (
    DEFAULT_PROFILE,
    HEALTH_PROFILE,
    RetryProfile,
    is_retriable_redis_error,
    retry_async,
)

logger = logging.getLogger(__name__)


class CompletionNotifier(ABC):
    """Delivers one completion message per upload.

    Every message carries a dedup id derived from the upload id and is grouped
    by upload id, so the queue collapses repeated sends (e.g. a retry after a
    lost confirmation) and keeps per-upload ordering.
    """

    name: str = "notifier"

    @abstractmethod
    async def notify_upload_complete(self, upload_id: str) -> None:
        """Enqueue the completion message. Duplicates are not an error."""

    @abstractmethod
    async def is_ready(self) -> None:
        """Raise :class:`BackendUnavailableError` if the queue is unreachable."""


# KEYS[1] = dedup key, KEYS[2] = stream
# ARGV = window, maxlen, upload_id, group_id, dedup_id, body
# The marker is written last: a failing XADD aborts the script before it.
ENQUEUE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return false
end
local message_id
local maxlen = tonumber(ARGV[2])
if maxlen > 0 then
    message_id = redis.call('XADD', KEYS[2], 'MAXLEN', '~', maxlen, '*',
        'upload_id', ARGV[3], 'group_id', ARGV[4], 'dedup_id', ARGV[5], 'body', ARGV[6])
else
    message_id = redis.call('XADD', KEYS[2], '*',
        'upload_id', ARGV[3], 'group_id', ARGV[4], 'dedup_id', ARGV[5], 'body', ARGV[6])
end
redis.call('SET', KEYS[1], message_id, 'EX', tonumber(ARGV[1]))
return message_id
"""

DEDUP_KEY_PREFIX = "uploads:dedup:"


class RedisStreamNotifier(CompletionNotifier):
    """Notifier on a Redis stream with a dedup window.

    One script checks the dedup marker, appends to the stream, and sets the
    marker only after the append succeeded. A failed append leaves no marker,
    so the next attempt is not mistaken for a duplicate.
    """

    name = "redis_notifications"

    def __init__(
        self,
        client: aioredis.Redis,
        stream: str,
        dedup_window_seconds: int = 300,
        maxlen: int = 0,
        profile: RetryProfile = DEFAULT_PROFILE,
        health_profile: RetryProfile = HEALTH_PROFILE,
    ):
        self.redis = client
        self.stream = stream
        self._window = dedup_window_seconds
        self._maxlen = maxlen
        self._profile = profile
        self._health_profile = health_profile
        self._enqueue = client.register_script(ENQUEUE_SCRIPT)

    async def notify_upload_complete(self, upload_id: str) -> None:
        message = CompletionMessage(upload_id=upload_id)
        try:
            message_id = await retry_async(
                lambda: self._enqueue(
                    keys=[f"{DEDUP_KEY_PREFIX}{message.dedup_id}", self.stream],
                    args=[
                        self._window,
                        self._maxlen,
                        message.upload_id,
                        message.group_id,
                        message.dedup_id,
                        message.body(),
                    ],
                ),
                profile=self._profile,
                is_retriable=is_retriable_redis_error,
                description=f"Redis notify {upload_id}",
            )
        except Exception as e:
            raise NotificationError(
                f"failed to send message: {e}", upload_id=upload_id, stage="notifying"
            ) from e

        if message_id is None:
            logger.info(f"Duplicate completion for {upload_id} suppressed ({message.dedup_id})")
            return
        logger.info(f"Message sent successfully. Message ID: {message_id}")

    async def is_ready(self) -> None:
        try:
            await retry_async(
                self.redis.ping,
                profile=self._health_profile,
                is_retriable=is_retriable_redis_error,
                description="Redis notifications readiness check",
            )
        except Exception as e:
            raise BackendUnavailableError(f"Redis not reachable: {e}") from e
