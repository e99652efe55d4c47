"""Backend clients and services, built once at startup and shared by reference."""

import logging
from dataclasses import dataclass

from fastapi import Request
from minio import Minio

from chunked_uploads.config import Settings
from chunked_uploads.services.blob_store import BlobStore, MinioBlobStore
from chunked_uploads.services.coordinator import UploadCoordinator
from chunked_uploads.services.memory import (
    InMemoryBlobStore,
    InMemoryNotifier,
    InMemorySessionStore,
)
from chunked_uploads.services.notifier import CompletionNotifier, RedisStreamNotifier
from chunked_uploads.services.redis_manager import get_async_client
from chunked_uploads.services.retry import profiles_from_settings
from chunked_uploads.services.session_store import RedisSessionStore, SessionStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    blob_store: BlobStore
    session_store: SessionStore
    notifier: CompletionNotifier
    coordinator: UploadCoordinator

    @classmethod
    def from_backends(
        cls,
        blob_store: BlobStore,
        session_store: SessionStore,
        notifier: CompletionNotifier,
        deadline_seconds: float | None = None,
    ) -> "ServiceContainer":
        return cls(
            blob_store=blob_store,
            session_store=session_store,
            notifier=notifier,
            coordinator=UploadCoordinator(
                blob_store,
                session_store,
                notifier,
                deadline_seconds=deadline_seconds,
            ),
        )

    def components(self) -> list:
        return [self.session_store, self.blob_store, self.notifier]


def build_services(settings: Settings) -> ServiceContainer:
    """Construct the production (or in-memory) backends from settings."""
    deadline = settings.request_deadline_seconds or None

    if settings.backend == "memory":
        logger.warning("Using in-memory backends; data is lost on restart")
        return ServiceContainer.from_backends(
            InMemoryBlobStore(),
            InMemorySessionStore(),
            InMemoryNotifier(dedup_window_seconds=settings.dedup_window_seconds),
            deadline_seconds=deadline,
        )

    profile, health_profile = profiles_from_settings(settings)
    redis_client = get_async_client(settings)
    minio_client = Minio(
        settings.minio_endpoint,
        access_key=settings.minio_access_key,
        secret_key=settings.minio_secret_key,
        secure=settings.minio_secure,
    )

    services = ServiceContainer.from_backends(
        MinioBlobStore(
            minio_client,
            settings.minio_bucket_chunks,
            profile=profile,
            health_profile=health_profile,
        ),
        RedisSessionStore(
            redis_client,
            ttl_seconds=settings.session_ttl_seconds,
            profile=profile,
            health_profile=health_profile,
        ),
        RedisStreamNotifier(
            redis_client,
            settings.notifications_stream,
            dedup_window_seconds=settings.dedup_window_seconds,
            maxlen=settings.notifications_maxlen,
            profile=profile,
            health_profile=health_profile,
        ),
        deadline_seconds=deadline,
    )
    logger.info("Upload services initialized successfully")
    return services


def get_services(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the container built in the lifespan."""
    return request.app.state.services


def get_coordinator(request: Request) -> UploadCoordinator:
    return get_services(request).coordinator
