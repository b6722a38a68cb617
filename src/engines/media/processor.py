"""
Image Processor - One Decode, Many Artifacts

Decodes an input buffer once and produces:
1. The transcoded "original" at source dimensions
2. Policy-driven smaller derivatives (never upscaled)
3. A 32x32 RGBA raw-pixel sample for the perceptual placeholder
4. A single-pixel average color

The derivatives, the placeholder sample and the average color have no data
dependency on one another and are computed concurrently in a thread pool.
Any failure aborts the whole call; partial results are never returned.

Codec work sits behind ImageCodec so the flow can be exercised with a fake
codec in tests.
"""

import io
import concurrent.futures
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from src.core.exceptions import DecodeError, EncodeError
from src.core.logging import get_logger
from src.engines.media.keys import ORIGINAL_SUFFIX
from src.engines.media.policy import DERIVATIVE_SIZES, SizeClass, plan_derivatives
from src.modules.media.models import ImageFormat

logger = get_logger(__name__)

PLACEHOLDER_SIZE = 32


@dataclass(frozen=True)
class CodecSpec:
    pil_format: str
    mime: str
    extension: str
    options: Dict[str, Any]
    supports_alpha: bool = True


# Fixed per-codec settings shared by the original and every derivative
CODEC_SPECS: Dict[ImageFormat, CodecSpec] = {
    ImageFormat.WEBP: CodecSpec("WEBP", "image/webp", "webp", {"quality": 85, "method": 4}),
    ImageFormat.AVIF: CodecSpec("AVIF", "image/avif", "avif", {"quality": 70}),
    ImageFormat.JPEG: CodecSpec(
        "JPEG", "image/jpeg", "jpg", {"quality": 90, "progressive": True, "optimize": True},
        supports_alpha=False,
    ),
    ImageFormat.PNG: CodecSpec("PNG", "image/png", "png", {"compress_level": 9}),
}


# =============================================================================
# Results
# =============================================================================

@dataclass
class ProcessedImage:
    """One encoded artifact."""
    data: bytes
    width: int
    height: int
    suffix: str  # "original" or "{bound}w"
    format: ImageFormat

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def mime(self) -> str:
        return CODEC_SPECS[self.format].mime

    @property
    def extension(self) -> str:
        return CODEC_SPECS[self.format].extension


@dataclass(frozen=True)
class PixelSample:
    width: int
    height: int
    channels: int
    data: bytes


@dataclass
class ProcessingResult:
    source_width: int
    source_height: int
    original: ProcessedImage
    derivatives: List[ProcessedImage]
    skipped: List[SizeClass]
    placeholder_sample: PixelSample
    avg_color: str

    def artifacts(self) -> List[ProcessedImage]:
        return [self.original, *self.derivatives]


@dataclass(frozen=True)
class ImageInfo:
    """Header-level facts read without decoding pixels."""
    format: Optional[str]
    width: int
    height: int


# =============================================================================
# Codec
# =============================================================================

class ImageCodec(ABC):
    """Decode/resize/encode primitives the processor is built from."""

    @abstractmethod
    def inspect(self, data: bytes) -> ImageInfo:
        pass

    @abstractmethod
    def decode(self, data: bytes) -> Any:
        """Return an opaque decoded handle. Raises DecodeError."""
        pass

    @abstractmethod
    def dimensions(self, image: Any) -> Tuple[int, int]:
        pass

    @abstractmethod
    def resize(self, image: Any, width: int, height: int) -> Any:
        pass

    @abstractmethod
    def encode(self, image: Any, target: ImageFormat) -> bytes:
        """Raises EncodeError."""
        pass

    @abstractmethod
    def placeholder_sample(self, image: Any, size: int) -> PixelSample:
        pass

    @abstractmethod
    def average_color(self, image: Any) -> str:
        """Lower-case '#rrggbb'."""
        pass


class PillowCodec(ImageCodec):
    """Pillow-backed codec."""

    def inspect(self, data: bytes) -> ImageInfo:
        try:
            with Image.open(io.BytesIO(data)) as img:
                width, height = img.size
                return ImageInfo(format=img.format, width=width, height=height)
        except (UnidentifiedImageError, OSError, SyntaxError, Image.DecompressionBombError) as e:
            raise DecodeError(f"Unrecognized image data: {e}", stage="decode")

    def decode(self, data: bytes) -> Image.Image:
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
            # Reported dimensions are the displayed ones
            img = ImageOps.exif_transpose(img)
        except (UnidentifiedImageError, OSError, SyntaxError, Image.DecompressionBombError) as e:
            raise DecodeError(f"Image could not be decoded: {e}", stage="decode")

        width, height = img.size
        if width <= 0 or height <= 0:
            raise DecodeError("Image has no dimensions", stage="decode")

        return self._normalize_mode(img)

    @staticmethod
    def _normalize_mode(img: Image.Image) -> Image.Image:
        if img.mode in ("RGB", "RGBA"):
            return img
        has_alpha = img.mode in ("LA", "PA", "La") or (img.mode == "P" and "transparency" in img.info)
        return img.convert("RGBA" if has_alpha else "RGB")

    @staticmethod
    def _flatten(image: Image.Image) -> Image.Image:
        """Composite an RGBA image onto white."""
        background = Image.new("RGB", image.size, (255, 255, 255))
        background.paste(image, mask=image.getchannel("A"))
        return background

    def dimensions(self, image: Image.Image) -> Tuple[int, int]:
        return image.size

    def resize(self, image: Image.Image, width: int, height: int) -> Image.Image:
        return image.resize((width, height), Image.Resampling.LANCZOS)

    def encode(self, image: Image.Image, target: ImageFormat) -> bytes:
        spec = CODEC_SPECS[target]
        if image.mode == "RGBA" and not spec.supports_alpha:
            image = self._flatten(image)

        buffer = io.BytesIO()
        try:
            image.save(buffer, format=spec.pil_format, **spec.options)
        except (OSError, ValueError, KeyError) as e:
            raise EncodeError(f"{spec.pil_format} encode failed: {e}", codec=spec.pil_format, stage="encode")
        return buffer.getvalue()

    def placeholder_sample(self, image: Image.Image, size: int) -> PixelSample:
        sample = ImageOps.fit(image.convert("RGBA"), (size, size), Image.Resampling.LANCZOS)
        return PixelSample(width=size, height=size, channels=4, data=sample.tobytes())

    def average_color(self, image: Image.Image) -> str:
        # Matches what a viewer sees: transparency over white
        flat = self._flatten(image) if image.mode == "RGBA" else image.convert("RGB")
        r, g, b = flat.resize((1, 1), Image.Resampling.BOX).getpixel((0, 0))
        return f"#{r:02x}{g:02x}{b:02x}"


# =============================================================================
# Processor
# =============================================================================

class ImageProcessor:
    """Stateless; one instance is shared across requests."""

    def __init__(
        self,
        codec: Optional[ImageCodec] = None,
        sizes: Sequence[SizeClass] = DERIVATIVE_SIZES,
        max_workers: int = 4,
    ):
        self.codec = codec or PillowCodec()
        self.sizes = tuple(sizes)
        self.max_workers = max(1, max_workers)

    def inspect(self, data: bytes) -> ImageInfo:
        return self.codec.inspect(data)

    def _render(self, source: Any, width: int, height: int, suffix: str, target: ImageFormat) -> ProcessedImage:
        image = source
        if (width, height) != self.codec.dimensions(source):
            image = self.codec.resize(source, width, height)
        data = self.codec.encode(image, target)
        return ProcessedImage(data=data, width=width, height=height, suffix=suffix, format=target)

    def process(self, data: bytes, target: ImageFormat = ImageFormat.WEBP) -> ProcessingResult:
        """
        Decode once and produce every artifact.

        Raises:
            DecodeError: input is not a decodable image
            EncodeError: any artifact failed to encode
        """
        source = self.codec.decode(data)
        width, height = self.codec.dimensions(source)
        planned, skipped = plan_derivatives(width, height, self.sizes)

        logger.info(
            "image_decoded",
            width=width,
            height=height,
            target=target.value,
            planned=[p.suffix for p in planned],
            skipped=[s.suffix for s in skipped],
        )

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            original_future = executor.submit(self._render, source, width, height, ORIGINAL_SUFFIX, target)
            derivative_futures = [
                executor.submit(self._render, source, p.width, p.height, p.suffix, target)
                for p in planned
            ]
            sample_future = executor.submit(self.codec.placeholder_sample, source, PLACEHOLDER_SIZE)
            color_future = executor.submit(self.codec.average_color, source)

            pending = [original_future, *derivative_futures, sample_future, color_future]
            try:
                original = original_future.result()
                derivatives = [f.result() for f in derivative_futures]
                sample = sample_future.result()
                avg_color = color_future.result()
            except BaseException:
                for future in pending:
                    future.cancel()
                raise

        return ProcessingResult(
            source_width=width,
            source_height=height,
            original=original,
            derivatives=derivatives,
            skipped=skipped,
            placeholder_sample=sample,
            avg_color=avg_color,
        )
