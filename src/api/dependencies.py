"""
FastAPI Dependencies for the Media Service

Provides dependency injection for:
- Settings, storage, session store and image processor (process-wide,
  built once in the application lifespan and kept on app.state)
- Asset repository (per-request with session)
- Upload orchestrator (per-request)
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import Settings
from src.core.database import get_session
from src.core.storage import IStorage
from src.engines.media.processor import ImageProcessor
from src.engines.media.repositories import AssetRepository, UploadSessionRepository
from src.engines.media.services import UploadOrchestrator


# =============================================================================
# Process-wide Singletons
# =============================================================================

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> IStorage:
    """Returns the storage variant selected at startup."""
    return request.app.state.storage


def get_session_repository(request: Request) -> UploadSessionRepository:
    return request.app.state.upload_sessions


def get_processor(request: Request) -> ImageProcessor:
    return request.app.state.processor


# =============================================================================
# Database Repositories
# =============================================================================

def get_asset_repo(session: AsyncSession = Depends(get_session)) -> AssetRepository:
    """Returns asset repository with async session."""
    return AssetRepository(session)


# =============================================================================
# Orchestrator
# =============================================================================

def get_orchestrator(
    config: Settings = Depends(get_settings),
    storage: IStorage = Depends(get_storage),
    sessions: UploadSessionRepository = Depends(get_session_repository),
    processor: ImageProcessor = Depends(get_processor),
    assets: AssetRepository = Depends(get_asset_repo),
) -> UploadOrchestrator:
    """Returns an UploadOrchestrator wired to the shared collaborators and a per-request asset repo."""
    return UploadOrchestrator(
        storage=storage,
        sessions=sessions,
        processor=processor,
        config=config,
        assets=assets,
    )
