from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Dict, Optional
from datetime import datetime

from src.modules.media.models import ImageFormat, MediaKind


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Sign
# =============================================================================

class SignUploadRequestDTO(CamelModel):
    """Request for a direct upload target.

    content_type and size_bytes are deliberately unconstrained here; the
    upload validator owns those rules and reports them with reason codes.
    """
    filename: str = Field(..., min_length=1, max_length=255)
    content_type: str
    size_bytes: int
    kind: MediaKind
    entity_slug: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9_-]*$")


class UploadTargetDTO(CamelModel):
    method: str = "PUT"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    expires_in: int


class SignUploadResponseDTO(CamelModel):
    upload_id: str
    upload_target: UploadTargetDTO
    key: str
    expires_at: datetime
    warnings: Optional[List[str]] = None


# =============================================================================
# Complete
# =============================================================================

class CompleteUploadRequestDTO(CamelModel):
    upload_id: str = Field(..., min_length=1, max_length=64)
    alt: str = Field(..., max_length=1000)  # length rule enforced by the alt text validator
    format: ImageFormat = ImageFormat.WEBP


class OriginalDTO(CamelModel):
    key: str
    width: int
    height: int
    size_bytes: int
    url: Optional[str] = None


class DerivativeDTO(OriginalDTO):
    suffix: str


class DerivativesDTO(CamelModel):
    original: OriginalDTO
    sizes: List[DerivativeDTO] = Field(default_factory=list)


class ImageAssetDTO(CamelModel):
    """Persisted manifest as returned to clients."""
    id: str
    width: int
    height: int
    bytes: int
    format: str
    blurhash: str
    avg_color: str
    alt: str
    derivatives: DerivativesDTO

    bucket: Optional[str] = None
    key: Optional[str] = None
    mime: Optional[str] = None
    kind: Optional[str] = None
    entity_slug: Optional[str] = None
    content_hash: Optional[str] = None
    created_at: Optional[datetime] = None


class CompleteUploadResponseDTO(CamelModel):
    image_asset: ImageAssetDTO
    warnings: Optional[List[str]] = None


# =============================================================================
# Delete / Cancel
# =============================================================================

class DeleteAssetResponseDTO(CamelModel):
    success: bool
    deleted_keys: List[str] = Field(default_factory=list)


class CancelUploadResponseDTO(CamelModel):
    upload_id: str
    state: str
