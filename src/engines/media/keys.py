"""
Helpers to generate standardized storage keys for media artifacts.

Conventions (all rooted under a kind/entity scope):
    - Raw upload:    {kind}/{entity}/uploads/{upload_id}.{ext}
    - Original:      {kind}/{entity}/{prefix}.{ext}
    - Derivative:    {kind}/{entity}/{prefix}__{bound}w.{ext}

The prefix is fresh per upload session, so no two sessions ever write the
same key.

Sanitization removes characters outside [a-z0-9._-] from segments.
"""

import re
import unicodedata
import uuid

from src.engines.media.validators import file_extension

ORIGINAL_SUFFIX = "original"

_SEGMENT_RE = re.compile(r"[^a-z0-9._-]+")


def _sanitize_segment(value: str, *, fallback: str = "x") -> str:
    normalized = unicodedata.normalize("NFKD", value or "")
    ascii_value = normalized.encode("ascii", "ignore").decode("ascii").lower()
    sanitized = _SEGMENT_RE.sub("-", ascii_value).strip("-_.")
    return sanitized or fallback


def new_artifact_prefix() -> str:
    return uuid.uuid4().hex[:12]


def make_scope(kind: str, entity_slug: str) -> str:
    return f"{_sanitize_segment(kind, fallback='media')}/{_sanitize_segment(entity_slug, fallback='unassigned')}"


def make_upload_key(*, kind: str, entity_slug: str, upload_id: str, filename: str) -> str:
    """Destination of the raw client upload.

    Returns: {kind}/{entity}/uploads/{upload_id}.{ext}
    """
    ext = _sanitize_segment(file_extension(filename) or "bin", fallback="bin")
    return f"{make_scope(kind, entity_slug)}/uploads/{_sanitize_segment(upload_id, fallback='upload')}.{ext}"


def make_artifact_key(*, kind: str, entity_slug: str, prefix: str, suffix: str, extension: str) -> str:
    """Key of one encoded artifact.

    Returns: {scope}/{prefix}.{ext} for the original, {scope}/{prefix}__{suffix}.{ext} otherwise
    """
    scope = make_scope(kind, entity_slug)
    if suffix == ORIGINAL_SUFFIX:
        return f"{scope}/{prefix}.{extension}"
    return f"{scope}/{prefix}__{suffix}.{extension}"


__all__ = ["ORIGINAL_SUFFIX", "new_artifact_prefix", "make_scope", "make_upload_key", "make_artifact_key"]
