"""
Media Models - Image Assets and Upload Sessions

ImageAsset is the immutable manifest row written once per completed upload.
UploadSession is the transient record binding a signed upload target to
what was declared at sign time; it never reaches the database.
"""

import uuid
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

import pydantic
from pydantic import BaseModel
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field, Column, JSON

from src.core.exceptions import SessionStateError


def utcnow() -> datetime:
    """Timezone-aware UTC clock used for every stored timestamp."""
    return datetime.now(timezone.utc)


class MediaKind(str, Enum):
    """Where an asset is used; scopes its storage keys."""
    COVER = "cover"
    GALLERY = "gallery"
    PROMO = "promo"
    DEVICE = "device"


class ImageFormat(str, Enum):
    """Target codec for every artifact of one asset."""
    WEBP = "WEBP"
    AVIF = "AVIF"
    JPEG = "JPEG"
    PNG = "PNG"


class UploadState(str, Enum):
    """Upload session lifecycle."""
    SIGNED = "SIGNED"          # Target issued, no bytes yet
    UPLOADED = "UPLOADED"      # Bytes observed at the destination key
    PROCESSING = "PROCESSING"  # Derivatives being produced and stored
    COMPLETED = "COMPLETED"    # Manifest persisted
    FAILED = "FAILED"          # Processing or storage error, nothing persisted
    ABANDONED = "ABANDONED"    # Expired or cancelled before completion


ALLOWED_TRANSITIONS: Dict[UploadState, frozenset] = {
    UploadState.SIGNED: frozenset({UploadState.UPLOADED, UploadState.PROCESSING, UploadState.ABANDONED}),
    UploadState.UPLOADED: frozenset({UploadState.PROCESSING, UploadState.ABANDONED}),
    UploadState.PROCESSING: frozenset({UploadState.COMPLETED, UploadState.FAILED}),
    UploadState.COMPLETED: frozenset(),
    UploadState.FAILED: frozenset(),
    UploadState.ABANDONED: frozenset(),
}


class UploadSession(BaseModel):
    """One-time binding between a signed upload target and its declaration."""

    id: str = pydantic.Field(default_factory=lambda: uuid.uuid4().hex)
    filename: str
    content_type: str
    size_bytes: int
    kind: MediaKind
    entity_slug: str
    destination_key: str
    artifact_prefix: str
    state: UploadState = UploadState.SIGNED
    created_at: datetime = pydantic.Field(default_factory=utcnow)
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def transition(self, target: UploadState) -> "UploadSession":
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise SessionStateError(self.state.value, target.value, upload_id=self.id)
        self.state = target
        return self


class ImageAsset(SQLModel, table=True):
    """
    Immutable manifest for a processed image.

    Stores:
    - Canonical key of the transcoded original and its dimensions
    - Perceptual summaries (blurhash, average color)
    - Derivative manifest: {"original": {...}, "sizes": [{...}, ...]}

    Edits create a new asset; there are no update helpers on purpose.
    """
    __tablename__ = "image_assets"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )

    # Storage
    bucket: str
    key: str = Field(index=True)  # canonical key of the original artifact
    kind: str = Field(default=MediaKind.GALLERY.value, index=True)
    entity_slug: str = Field(default="", index=True)

    # Source declaration
    mime: str
    content_hash: Optional[str] = None

    # Original artifact
    width: int
    height: int
    bytes: int
    format: str = Field(default=ImageFormat.WEBP.value)

    # Perceptual summaries
    blurhash: str
    avg_color: str
    alt: str

    # Structure: {"original": {key, width, height, sizeBytes}, "sizes": [{..., suffix}]}
    derivatives: Dict[str, Any] = Field(default={}, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    def storage_keys(self) -> List[str]:
        """Every object key owned by this asset, original first."""
        keys: List[str] = []
        manifest = self.derivatives or {}
        original = manifest.get("original")
        if original and original.get("key"):
            keys.append(original["key"])
        elif self.key:
            keys.append(self.key)
        keys.extend(size["key"] for size in manifest.get("sizes", []) if size.get("key"))
        return keys
