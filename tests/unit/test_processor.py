import io
import re

import pytest
from PIL import Image, features

from src.core.exceptions import DecodeError
from src.engines.media.placeholder import encode_blurhash, sample_to_rows
from src.engines.media.processor import ImageProcessor, PillowCodec
from src.modules.media.models import ImageFormat

HEX_COLOR = re.compile(r"^#[0-9a-f]{6}$")


@pytest.fixture
def processor():
    return ImageProcessor(max_workers=4)


def _open(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def test_large_jpeg_to_webp_produces_every_size(processor, make_image):
    data = make_image(4000, 3000, format="JPEG")

    result = processor.process(data, ImageFormat.WEBP)

    assert (result.original.width, result.original.height) == (4000, 3000)
    assert _open(result.original.data).format == "WEBP"
    assert _open(result.original.data).size == (4000, 3000)
    assert [d.suffix for d in result.derivatives] == ["1920w", "1280w", "640w", "320w"]
    for derivative in result.derivatives:
        decoded = _open(derivative.data)
        assert decoded.format == "WEBP"
        assert decoded.size == (derivative.width, derivative.height)
    assert result.skipped == []


def test_small_png_produces_only_the_original(processor, make_image):
    data = make_image(200, 200, format="PNG")

    result = processor.process(data, ImageFormat.WEBP)

    assert result.derivatives == []
    assert [s.suffix for s in result.skipped] == ["1920w", "1280w", "640w", "320w"]
    assert (result.original.width, result.original.height) == (200, 200)
    assert result.original.mime == "image/webp"
    assert result.original.extension == "webp"


def test_average_color_of_solid_image(processor, make_image):
    result = processor.process(make_image(64, 48, format="PNG", color=(200, 30, 30)), ImageFormat.PNG)
    assert HEX_COLOR.match(result.avg_color)
    assert result.avg_color == "#c81e1e"


def test_average_color_of_transparent_image_is_the_white_backdrop(processor, make_image):
    data = make_image(64, 48, format="PNG", color=(0, 0, 0, 0), mode="RGBA")
    result = processor.process(data, ImageFormat.WEBP)
    assert result.avg_color == "#ffffff"


def test_average_color_format_for_every_codec(processor, make_image):
    data = make_image(700, 500, format="JPEG", color=(12, 200, 99))
    for target in (ImageFormat.WEBP, ImageFormat.JPEG, ImageFormat.PNG):
        result = processor.process(data, target)
        assert HEX_COLOR.match(result.avg_color)
        assert _open(result.original.data).format == target.value


def test_placeholder_sample_is_32x32_rgba(processor, make_image):
    result = processor.process(make_image(300, 100, format="PNG"), ImageFormat.WEBP)
    sample = result.placeholder_sample
    assert (sample.width, sample.height, sample.channels) == (32, 32, 4)
    assert len(sample.data) == 32 * 32 * 4


def test_blurhash_from_sample(processor, make_image):
    result = processor.process(make_image(300, 200, format="PNG"), ImageFormat.WEBP)

    rows = sample_to_rows(result.placeholder_sample)
    assert len(rows) == 32
    assert len(rows[0]) == 32
    assert all(abs(a - b) <= 1 for a, b in zip(rows[0][0], [200, 30, 30]))

    placeholder = encode_blurhash(result.placeholder_sample)
    # 4 + 2 * (4x3 components)
    assert len(placeholder) == 28


def test_resize_is_deterministic(processor, make_image):
    data = make_image(2500, 1700, format="JPEG")
    first = processor.process(data, ImageFormat.WEBP)
    second = processor.process(data, ImageFormat.WEBP)
    assert [(d.width, d.height) for d in first.derivatives] == [(d.width, d.height) for d in second.derivatives]


def test_rgba_source_to_jpeg_is_flattened(processor, make_image):
    data = make_image(400, 300, format="PNG", mode="RGBA", color=(10, 20, 30, 0))
    result = processor.process(data, ImageFormat.JPEG)
    decoded = _open(result.original.data)
    assert decoded.format == "JPEG"
    assert decoded.mode == "RGB"
    # Fully transparent pixels land on white
    assert decoded.getpixel((10, 10)) == pytest.approx((255, 255, 255), abs=3)


def test_rgba_kept_for_webp(processor, make_image):
    data = make_image(400, 300, format="PNG", mode="RGBA", color=(10, 20, 30, 128))
    result = processor.process(data, ImageFormat.WEBP)
    assert _open(result.original.data).mode == "RGBA"


def test_exif_orientation_is_applied(processor, make_image):
    exif = Image.Exif()
    exif[0x0112] = 6  # rotate 90 CW on display
    data = make_image(300, 100, format="JPEG", exif=exif.tobytes())

    result = processor.process(data, ImageFormat.WEBP)

    assert (result.source_width, result.source_height) == (100, 300)
    assert (result.original.width, result.original.height) == (100, 300)


def test_garbage_bytes_raise_decode_error(processor):
    with pytest.raises(DecodeError):
        processor.process(b"definitely not an image", ImageFormat.WEBP)
    with pytest.raises(DecodeError):
        processor.inspect(b"\x89PNG\r\n\x1a\n truncated")


def test_truncated_image_raises_decode_error(processor, make_image):
    data = make_image(500, 500, format="PNG")
    with pytest.raises(DecodeError):
        processor.process(data[: len(data) // 3], ImageFormat.WEBP)


def test_inspect_reads_container_format(make_image):
    info = PillowCodec().inspect(make_image(50, 40, format="JPEG"))
    assert (info.format, info.width, info.height) == ("JPEG", 50, 40)


@pytest.mark.skipif(not features.check("avif"), reason="Pillow built without AVIF")
def test_avif_target(processor, make_image):
    result = processor.process(make_image(800, 600, format="PNG"), ImageFormat.AVIF)
    assert result.original.mime == "image/avif"
    assert [d.suffix for d in result.derivatives] == ["640w", "320w"]
    assert _open(result.original.data).format == "AVIF"
