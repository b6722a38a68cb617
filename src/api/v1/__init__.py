"""
API v1 Router Module - Media Ingest Service

All v1 endpoints are prefixed with /api/v1/

Primary endpoints: /api/v1/media/*
- sign -> direct transfer -> complete upload protocol
- manifest read and delete

Supporting endpoints:
- /api/v1/metrics - Prometheus scraping
"""

from fastapi import APIRouter

from src.api.v1.media import router as media_router
from src.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(media_router, prefix="/media", tags=["media"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
