"""
Upload Validation

Pure checks over declared upload metadata, run at sign time before any bytes
exist and again at completion against the received byte length. No side
effects; callers decide how to surface a failure.
"""

import colorsys
from dataclasses import dataclass
from typing import List, Optional, Tuple

from src.modules.media.models import MediaKind

# Exactly these four, case-sensitive
ALLOWED_IMAGE_MIMES: Tuple[str, ...] = (
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/avif",
)

ALLOWED_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "webp", "avif"})

MAX_FILE_SIZE_BYTES = 10_485_760  # 10MB hard limit
PREFERRED_FILE_SIZE_BYTES = 4_194_304  # 4MB

# Pillow container format -> MIME
FORMAT_MIMES = {
    "JPEG": "image/jpeg",
    "MPO": "image/jpeg",  # multi-picture JPEG from phone cameras
    "PNG": "image/png",
    "WEBP": "image/webp",
    "AVIF": "image/avif",
}


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    field: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, reason: str, code: str, field: str) -> "ValidationResult":
        return cls(valid=False, reason=reason, code=code, field=field)


@dataclass(frozen=True)
class AspectRule:
    ratio: float
    tolerance: float
    min_width: int
    min_height: int
    label: str


ASPECT_RULES = {
    MediaKind.COVER: [
        AspectRule(0.8, 0.05, 1200, 1500, "4:5"),
        AspectRule(0.75, 0.05, 1200, 1600, "3:4"),
    ],
    MediaKind.GALLERY: [
        AspectRule(1.78, 0.05, 1920, 1080, "16:9"),
        AspectRule(1.5, 0.05, 1800, 1200, "3:2"),
    ],
    MediaKind.PROMO: [AspectRule(1.78, 0.03, 1920, 1080, "16:9")],
    MediaKind.DEVICE: [AspectRule(1.0, 0.03, 1200, 1200, "1:1")],
}

# Brand palette, hue in degrees
BRAND_HUES = (270, 300)  # violet
YELLOW_HUES = (45, 65)
NEUTRAL_SATURATION = 0.2  # below this a color counts as graphite/neutral


def file_extension(filename: str) -> Optional[str]:
    """Lower-cased extension after the last dot, or None when there is none."""
    name = (filename or "").strip().rsplit("/", 1)[-1]
    if "." not in name:
        return None
    ext = name.rsplit(".", 1)[1].lower()
    return ext or None


def validate_upload(
    filename: str,
    content_type: str,
    size_bytes: int,
    max_size_bytes: int = MAX_FILE_SIZE_BYTES,
) -> ValidationResult:
    """
    Check declared (filename, content_type, size_bytes).

    Rules apply in order and the first failure wins:
    1. content_type is one of the whitelisted raster MIME types
    2. 0 < size_bytes <= max_size_bytes
    3. filename carries an allowed extension
    """
    if content_type not in ALLOWED_IMAGE_MIMES:
        return ValidationResult.fail(
            f"File type {content_type!r} is not supported. Allowed: {', '.join(ALLOWED_IMAGE_MIMES)}",
            code="UNSUPPORTED_MIME_TYPE",
            field="contentType",
        )

    if size_bytes is None or size_bytes <= 0:
        return ValidationResult.fail(
            "File size must be a positive number of bytes",
            code="INVALID_FILE_SIZE",
            field="sizeBytes",
        )

    if size_bytes > max_size_bytes:
        return ValidationResult.fail(
            f"File size {size_bytes / 1024 / 1024:.2f}MB exceeds maximum "
            f"{max_size_bytes / 1024 / 1024:.0f}MB for images",
            code="FILE_TOO_LARGE",
            field="sizeBytes",
        )

    ext = file_extension(filename)
    if ext is None or ext not in ALLOWED_EXTENSIONS:
        return ValidationResult.fail(
            f"File extension must be one of: {', '.join(sorted(ALLOWED_EXTENSIONS))}",
            code="UNSUPPORTED_EXTENSION",
            field="filename",
        )

    return ValidationResult.ok()


def validate_alt_text(alt: Optional[str], max_length: int = 140) -> ValidationResult:
    text = (alt or "").strip()
    if not text:
        return ValidationResult.fail("Alt text is required for accessibility", code="ALT_REQUIRED", field="alt")
    if len(text) > max_length:
        return ValidationResult.fail(
            f"Alt text must be {max_length} characters or less (current: {len(text)})",
            code="ALT_TOO_LONG",
            field="alt",
        )
    return ValidationResult.ok()


def validate_detected_format(detected_format: Optional[str], declared_mime: str) -> ValidationResult:
    """Compare the sniffed container format against the declared MIME type."""
    detected_mime = FORMAT_MIMES.get((detected_format or "").upper())
    if detected_mime != declared_mime:
        return ValidationResult.fail(
            f"File content ({detected_mime or detected_format or 'unknown'}) doesn't match "
            f"declared type {declared_mime}",
            code="MIME_MISMATCH",
            field="file",
        )
    return ValidationResult.ok()


def size_warnings(size_bytes: int, preferred_bytes: int = PREFERRED_FILE_SIZE_BYTES) -> List[str]:
    if size_bytes > preferred_bytes:
        return [
            f"File size {size_bytes / 1024 / 1024:.2f}MB exceeds preferred limit "
            f"{preferred_bytes / 1024 / 1024:.0f}MB. Consider optimizing the image."
        ]
    return []


def aspect_ratio_warnings(width: int, height: int, kind: MediaKind) -> List[str]:
    """Guidance only: dimensions that don't suit the asset kind are reported, never rejected."""
    rules = ASPECT_RULES.get(kind, [])
    if not rules or width <= 0 or height <= 0:
        return []

    actual = width / height
    warnings: List[str] = []
    for rule in rules:
        if rule.ratio * (1 - rule.tolerance) <= actual <= rule.ratio * (1 + rule.tolerance):
            if width >= rule.min_width and height >= rule.min_height:
                return []
            warnings.append(
                f"Image dimensions {width}x{height} are below recommended "
                f"{rule.min_width}x{rule.min_height} for {kind.value} ({rule.label})"
            )
            return warnings

    expected = " or ".join(rule.label for rule in rules)
    warnings.append(f"Image aspect ratio {actual:.2f} doesn't match recommended {expected} for {kind.value}")
    return warnings


def brand_color_warnings(avg_color: str) -> List[str]:
    """
    Compare an image's average color ("#rrggbb") with the brand palette.

    Violet and near-neutral images pass. Saturated yellow is called out on
    its own, every other saturated hue gets a softer note. Guidance only.
    """
    r, g, b = (int(avg_color[i:i + 2], 16) / 255 for i in (1, 3, 5))
    hue, saturation, _ = colorsys.rgb_to_hsv(r, g, b)
    degrees = round(hue * 360)

    if saturation < NEUTRAL_SATURATION:
        return []
    if YELLOW_HUES[0] <= degrees <= YELLOW_HUES[1]:
        return [f"Image contains yellow hues ({degrees}°); brand guideline is no yellow, please adjust colors"]
    if not BRAND_HUES[0] <= degrees <= BRAND_HUES[1]:
        return [
            f"Image hue ({degrees}°) deviates from the brand palette "
            f"(violet {BRAND_HUES[0]}-{BRAND_HUES[1]}° or neutral); consider adjusting for consistency"
        ]
    return []
