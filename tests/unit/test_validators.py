import pytest

from src.engines.media.validators import (
    aspect_ratio_warnings,
    brand_color_warnings,
    file_extension,
    size_warnings,
    validate_alt_text,
    validate_detected_format,
    validate_upload,
)
from src.modules.media.models import MediaKind


def test_accepts_each_whitelisted_type():
    for mime, name in [
        ("image/jpeg", "photo.jpg"),
        ("image/jpeg", "photo.jpeg"),
        ("image/png", "shot.png"),
        ("image/webp", "banner.webp"),
        ("image/avif", "hero.avif"),
    ]:
        assert validate_upload(name, mime, 1024).valid, (mime, name)


def test_rejects_gif_before_anything_else():
    result = validate_upload("anim.gif", "image/gif", 1024)
    assert not result.valid
    assert result.code == "UNSUPPORTED_MIME_TYPE"
    assert result.field == "contentType"
    assert "image/gif" in result.reason


def test_mime_match_is_case_sensitive():
    result = validate_upload("photo.jpg", "IMAGE/JPEG", 1024)
    assert result.code == "UNSUPPORTED_MIME_TYPE"


def test_rejects_size_over_ceiling():
    result = validate_upload("photo.jpg", "image/jpeg", 11_000_000)
    assert not result.valid
    assert result.code == "FILE_TOO_LARGE"
    assert result.field == "sizeBytes"


def test_accepts_size_at_ceiling():
    assert validate_upload("photo.jpg", "image/jpeg", 10_485_760).valid


@pytest.mark.parametrize("size", [0, -1])
def test_rejects_non_positive_size(size):
    result = validate_upload("photo.jpg", "image/jpeg", size)
    assert result.code == "INVALID_FILE_SIZE"


def test_first_failure_wins():
    # Bad type and bad size: the type rule runs first
    result = validate_upload("anim.gif", "image/gif", 11_000_000)
    assert result.code == "UNSUPPORTED_MIME_TYPE"


@pytest.mark.parametrize("filename", ["photo", "photo.", "photo.gif", "archive.tar.gz"])
def test_rejects_missing_or_unknown_extension(filename):
    result = validate_upload(filename, "image/jpeg", 1024)
    assert result.code == "UNSUPPORTED_EXTENSION"
    assert result.field == "filename"


def test_extension_is_case_insensitive():
    assert validate_upload("PHOTO.JPG", "image/jpeg", 1024).valid
    assert file_extension("a/b/Shot.PnG") == "png"


def test_custom_ceiling():
    result = validate_upload("photo.jpg", "image/jpeg", 2048, max_size_bytes=1024)
    assert result.code == "FILE_TOO_LARGE"


def test_alt_text_rules():
    assert validate_alt_text("Gaming PC with RGB lighting").valid
    assert validate_alt_text("   ").code == "ALT_REQUIRED"
    assert validate_alt_text(None).code == "ALT_REQUIRED"
    assert validate_alt_text("x" * 140).valid
    assert validate_alt_text("x" * 141).code == "ALT_TOO_LONG"
    # Trimmed before measuring
    assert validate_alt_text("  " + "x" * 140 + "  ").valid


def test_detected_format_must_match_declared_type():
    assert validate_detected_format("PNG", "image/png").valid
    assert validate_detected_format("MPO", "image/jpeg").valid

    mismatch = validate_detected_format("PNG", "image/jpeg")
    assert mismatch.code == "MIME_MISMATCH"
    assert validate_detected_format(None, "image/png").code == "MIME_MISMATCH"


def test_size_warning_above_preferred_limit():
    assert size_warnings(4 * 1024 * 1024) == []
    warnings = size_warnings(5 * 1024 * 1024)
    assert len(warnings) == 1
    assert "preferred" in warnings[0]


def test_aspect_ratio_guidance():
    # Matching ratio and large enough
    assert aspect_ratio_warnings(1200, 1500, MediaKind.COVER) == []
    assert aspect_ratio_warnings(1920, 1080, MediaKind.GALLERY) == []
    assert aspect_ratio_warnings(1200, 1200, MediaKind.DEVICE) == []

    # Matching ratio, too small
    small = aspect_ratio_warnings(800, 1000, MediaKind.COVER)
    assert len(small) == 1
    assert "below recommended" in small[0]

    # Wrong ratio
    wrong = aspect_ratio_warnings(1000, 1000, MediaKind.PROMO)
    assert len(wrong) == 1
    assert "16:9" in wrong[0]


@pytest.mark.parametrize("color", [
    "#8a2be2",  # violet
    "#808080",  # grey
    "#1a1a1f",  # graphite
    "#f0f0e6",  # warm white, too pale to count as yellow
])
def test_brand_palette_colors_pass(color):
    assert brand_color_warnings(color) == []


def test_yellow_is_called_out():
    warnings = brand_color_warnings("#ffd700")
    assert len(warnings) == 1
    assert "yellow" in warnings[0]
    assert "(51°)" in warnings[0]


def test_off_palette_hue_gets_a_note():
    warnings = brand_color_warnings("#1e90ff")
    assert len(warnings) == 1
    assert "deviates from the brand palette" in warnings[0]
    assert "(210°)" in warnings[0]
