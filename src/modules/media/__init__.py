"""
Media Module - Image Ingest Pipeline

Contains the persisted image asset manifest and the transient upload session.
"""

from src.modules.media.models import (
    ImageAsset,
    ImageFormat,
    MediaKind,
    UploadSession,
    UploadState,
)

__all__ = ["ImageAsset", "ImageFormat", "MediaKind", "UploadSession", "UploadState"]
