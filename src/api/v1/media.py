"""
Media Endpoints - Two-Phase Image Upload

POST   /api/v1/media/sign               - Validate declared metadata, issue upload target
PUT    /api/v1/media/direct/{key}       - Direct transfer target (local storage only)
POST   /api/v1/media/complete           - Process uploaded bytes, persist manifest
DELETE /api/v1/media/uploads/{uploadId} - Cancel an upload that was never completed
GET    /api/v1/media/{assetId}          - Read a manifest
DELETE /api/v1/media/{assetId}          - Delete every artifact, then the manifest
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from src.api.dependencies import get_orchestrator, get_settings, get_storage
from src.core.config import Settings
from src.core.exceptions import ValidationError
from src.core.logging import get_logger
from src.core.storage import IStorage, LocalStorage
from src.engines.media.schemas import (
    CancelUploadResponseDTO,
    CompleteUploadRequestDTO,
    CompleteUploadResponseDTO,
    DeleteAssetResponseDTO,
    ImageAssetDTO,
    SignUploadRequestDTO,
    SignUploadResponseDTO,
)
from src.engines.media.services import UploadOrchestrator

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Upload Protocol
# =============================================================================

@router.post(
    "/sign",
    status_code=201,
    response_model=SignUploadResponseDTO,
    response_model_exclude_none=True,
)
async def sign_upload(
    body: SignUploadRequestDTO,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """
    Request a direct upload target.

    Declared content type, size and filename are validated here, before any
    bytes exist. The returned target is a pre-signed PUT (S3) or the local
    direct endpoint with an HMAC signature.
    """
    return await orchestrator.sign(
        filename=body.filename,
        content_type=body.content_type,
        size_bytes=body.size_bytes,
        kind=body.kind,
        entity_slug=body.entity_slug,
    )


@router.put("/direct/{key:path}")
async def direct_upload(
    key: str,
    request: Request,
    expires: int = Query(...),
    signature: str = Query(...),
    storage: IStorage = Depends(get_storage),
    config: Settings = Depends(get_settings),
):
    """Accept raw bytes for a key signed by /sign. Local storage only."""
    if not isinstance(storage, LocalStorage):
        raise HTTPException(status_code=404, detail="Direct upload is not served by this storage backend")

    content_type = request.headers.get("content-type", "").split(";")[0].strip()
    if not storage.verify_upload_signature(key, expires, content_type, signature):
        raise HTTPException(status_code=403, detail="Invalid or expired upload signature")

    max_bytes = config.MAX_IMAGE_SIZE_BYTES
    declared_length = request.headers.get("content-length")
    if declared_length and declared_length.isdigit() and int(declared_length) > max_bytes:
        raise ValidationError("Upload exceeds maximum size", field="body", reason_code="FILE_TOO_LARGE")

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise ValidationError("Upload exceeds maximum size", field="body", reason_code="FILE_TOO_LARGE")

    url = await storage.upload(key, bytes(body), content_type)
    logger.info("direct_upload_received", key=key, size_bytes=len(body))
    return {"key": key, "url": url, "sizeBytes": len(body)}


@router.post(
    "/complete",
    status_code=201,
    response_model=CompleteUploadResponseDTO,
    response_model_exclude_none=True,
)
async def complete_upload(
    body: CompleteUploadRequestDTO,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """
    Finish an upload: fetch the raw bytes, produce the original and every
    derivative in the requested format, store them and persist the manifest.

    A session can be completed once; a second call returns 404.
    """
    return await orchestrator.complete(body.upload_id, body.alt, body.format)


@router.delete("/uploads/{upload_id}", response_model=CancelUploadResponseDTO)
async def cancel_upload(
    upload_id: str,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    session = await orchestrator.cancel(upload_id)
    return CancelUploadResponseDTO(upload_id=session.id, state=session.state.value)


# =============================================================================
# Assets
# =============================================================================

@router.get("/{asset_id}", response_model=ImageAssetDTO, response_model_exclude_none=True)
async def get_asset(
    asset_id: str,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_asset(asset_id)


@router.delete("/{asset_id}", response_model=DeleteAssetResponseDTO)
async def delete_asset(
    asset_id: str,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Delete all artifact keys via bulk delete, then the manifest row."""
    return await orchestrator.delete_asset(asset_id)
