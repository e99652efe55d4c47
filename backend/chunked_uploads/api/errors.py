"""Translate upload errors into HTTP responses."""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from chunked_uploads.exceptions import NotificationError, UploadError
from chunked_uploads.schemas.upload import ErrorResponse

logger = logging.getLogger(__name__)


async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
    """Map an :class:`UploadError` to its status code with diagnostic context."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc}")

    body = ErrorResponse(
        detail=exc.message,
        upload_id=exc.upload_id,
        chunk_index=exc.chunk_index,
        stage=exc.stage,
        chunk_committed=isinstance(exc, NotificationError),
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())
