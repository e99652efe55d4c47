"""API v1 router aggregating all endpoint routers."""

from fastapi import APIRouter

from chunked_uploads.api.v1.health import router as health_router
from chunked_uploads.api.v1.upload import router as upload_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(upload_router)
