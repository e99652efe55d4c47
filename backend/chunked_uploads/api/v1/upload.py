"""Chunk upload endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from chunked_uploads.config import get_settings
from chunked_uploads.exceptions import ChunkTooLargeError, SessionNotFoundError
from chunked_uploads.rate_limit import limiter
from chunked_uploads.schemas.upload import (
    ChunkUploadResponse,
    ErrorResponse,
    SessionProgressResponse,
)
from chunked_uploads.services.container import get_coordinator
from chunked_uploads.services.coordinator import UploadCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/upload", tags=["upload"])
settings = get_settings()

_error_responses = {
    400: {"model": ErrorResponse, "description": "Invalid request or integrity error"},
    403: {"model": ErrorResponse, "description": "Upload session not found"},
    413: {"model": ErrorResponse, "description": "Chunk too large"},
    500: {"model": ErrorResponse, "description": "Blob or session backend failure"},
    502: {"model": ErrorResponse, "description": "Chunk stored, completion notification failed"},
    504: {"model": ErrorResponse, "description": "Request deadline exceeded"},
}


@router.put(
    "/{upload_id}/chunk/{chunk_id}",
    response_model=ChunkUploadResponse,
    status_code=status.HTTP_200_OK,
    responses=_error_responses,
)
@limiter.limit(settings.upload_rate_limit)
async def upload_chunk(
    request: Request,
    upload_id: str,
    chunk_id: str,
    x_chunk_hash: Optional[str] = Header(default=None, alias="X-Chunk-Hash"),
    coordinator: UploadCoordinator = Depends(get_coordinator),
) -> ChunkUploadResponse:
    """
    Upload one chunk of a file with integrity verification.

    The raw request body is the chunk; ``X-Chunk-Hash`` carries its hex SHA-256.
    Chunks may arrive in any order and may be re-sent; the request that
    delivers the last missing chunk triggers the completion notification.
    """
    data = await request.body()
    if len(data) > settings.max_chunk_size_bytes:
        raise ChunkTooLargeError(
            f"chunk size ({len(data)} bytes) exceeds maximum ({settings.max_chunk_size_mb} MB)",
            upload_id=upload_id,
            stage="validating",
        )

    receipt = await coordinator.handle_chunk(upload_id, chunk_id, data, x_chunk_hash)
    logger.debug(f"Accepted chunk {receipt.chunk_index} of {upload_id} ({len(data)} bytes)")

    return ChunkUploadResponse(
        upload_id=receipt.upload_id,
        chunk_id=receipt.chunk_index,
        key=receipt.key,
        completed=receipt.completed,
    )


@router.get(
    "/{upload_id}",
    response_model=SessionProgressResponse,
    responses={404: {"model": ErrorResponse, "description": "Upload session not found"}},
)
async def get_upload_progress(
    upload_id: str,
    coordinator: UploadCoordinator = Depends(get_coordinator),
) -> SessionProgressResponse:
    """Get which chunks of an upload have arrived so far."""
    try:
        session = await coordinator.get_progress(upload_id)
    except SessionNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Upload session {upload_id} not found",
        )
    return SessionProgressResponse.from_session(session)
