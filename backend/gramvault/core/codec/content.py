"""
Content Codec
=============

Image preparation before transmission (Pillow):

- normalize_orientation: bake EXIF orientation into the pixels
- adjust_aspect_ratio: center-crop into one of the accepted ratios
- adaptive_compress: reach the byte ceiling in at most two encode passes
- uniqueify: imperceptible perturbation yielding a different hash
- content_hash: 64-bit rolling hash for local duplicate detection
"""

import io
import math
import random
import secrets
from dataclasses import dataclass
from typing import Optional

import structlog
from PIL import Image, ImageOps, UnidentifiedImageError

from gramvault.core.client.errors import CompressionFailure
from gramvault.core.config import settings

logger = structlog.get_logger()

EXIF_ORIENTATION_TAG = 0x0112
MASK_64 = (1 << 64) - 1


def content_hash(data: bytes) -> str:
    """``h = h * 31 + byte`` with 64-bit wrap, as 16 hex digits."""
    h = 0
    for byte in data:
        h = (h * 31 + byte) & MASK_64
    return f"{h:016x}"


@dataclass(frozen=True)
class AspectTarget:
    name: str
    ratio: float


class ContentCodec:
    """Pillow-backed image pipeline."""

    ACCEPTED_RATIOS = {
        "square": AspectTarget("square", 1.0),
        "portrait": AspectTarget("portrait", 0.8),
        "landscape": AspectTarget("landscape", 1.91),
    }

    def __init__(
        self,
        target_bytes: int = settings.COMPRESSION_TARGET_BYTES,
        min_quality: float = settings.COMPRESSION_MIN_QUALITY,
        max_quality: float = settings.COMPRESSION_MAX_QUALITY,
        fallback_quality: float = settings.COMPRESSION_FALLBACK_QUALITY,
        max_dimension: int = settings.COMPRESSION_MAX_DIMENSION,
        aspect_tolerance: float = settings.ASPECT_TOLERANCE,
        rng: Optional[random.Random] = None,
    ):
        self.target_bytes = target_bytes
        self.min_quality = min_quality
        self.max_quality = max_quality
        self.fallback_quality = fallback_quality
        self.max_dimension = max_dimension
        self.aspect_tolerance = aspect_tolerance
        self._rng = rng or random.Random()

    # ==========================================================================
    # Decode / Encode
    # ==========================================================================

    @staticmethod
    def _open(data: bytes) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError) as exc:
            raise CompressionFailure(f"Cannot decode image: {exc}") from exc
        return image

    @staticmethod
    def _encode(image: Image.Image, quality: float, comment: Optional[bytes] = None) -> bytes:
        if image.mode != "RGB":
            image = image.convert("RGB")
        buffer = io.BytesIO()
        options = {"format": "JPEG", "quality": int(round(quality * 100))}
        if comment:
            options["comment"] = comment
        image.save(buffer, **options)
        return buffer.getvalue()

    @staticmethod
    def _is_upright(image: Image.Image) -> bool:
        return image.getexif().get(EXIF_ORIENTATION_TAG, 1) == 1

    # ==========================================================================
    # Orientation
    # ==========================================================================

    def normalize_orientation(self, data: bytes) -> bytes:
        """Re-render so the stored orientation is upright. Upright input is returned as-is."""
        image = self._open(data)
        if self._is_upright(image):
            return data
        upright = ImageOps.exif_transpose(image)
        return self._encode(upright, 0.95)

    # ==========================================================================
    # Aspect Ratio
    # ==========================================================================

    def classify_ratio(self, ratio: float) -> Optional[AspectTarget]:
        """Accepted target within tolerance, if any."""
        for target in self.ACCEPTED_RATIOS.values():
            if abs(ratio - target.ratio) <= self.aspect_tolerance:
                return target
        return None

    def nearest_target(self, ratio: float) -> AspectTarget:
        if ratio < 0.75:
            return self.ACCEPTED_RATIOS["portrait"]
        if ratio > 2.0:
            return self.ACCEPTED_RATIOS["landscape"]
        if ratio < 0.9:
            return self.ACCEPTED_RATIOS["portrait"]
        if ratio > 1.5:
            return self.ACCEPTED_RATIOS["landscape"]
        return self.ACCEPTED_RATIOS["square"]

    def adjust_aspect_ratio(self, data: bytes) -> bytes:
        """Center-crop to the nearest accepted ratio when outside tolerance."""
        image = self._open(data)
        if not self._is_upright(image):
            image = ImageOps.exif_transpose(image)
            upright_changed = True
        else:
            upright_changed = False

        width, height = image.size
        ratio = width / height
        if self.classify_ratio(ratio) is not None:
            return self._encode(image, 0.95) if upright_changed else data

        target = self.nearest_target(ratio)
        if ratio > target.ratio:
            new_width, new_height = int(round(height * target.ratio)), height
        else:
            new_width, new_height = width, int(round(width / target.ratio))
        left = (width - new_width) // 2
        top = (height - new_height) // 2
        cropped = image.crop((left, top, left + new_width, top + new_height))

        logger.info(
            "aspect_ratio_adjusted",
            source=round(ratio, 3),
            target=target.name,
            size=f"{new_width}x{new_height}",
        )
        return self._encode(cropped, 0.90)

    # ==========================================================================
    # Compression
    # ==========================================================================

    def estimate_quality(self, current_bytes: int, target_bytes: int) -> float:
        quality = math.sqrt(target_bytes / current_bytes)
        return max(self.min_quality, min(self.max_quality, quality))

    def adaptive_compress(self, data: bytes, target_bytes: Optional[int] = None) -> bytes:
        """
        Bring ``data`` under ``target_bytes``.

        Quality is estimated analytically; if the estimate hits the floor or
        the first pass is still too large, the image is downsampled and
        encoded once at the fallback quality. Never more than two passes.

        Raises:
            CompressionFailure: If the input cannot be decoded or both
                passes stay above the target
        """
        target = target_bytes or self.target_bytes
        image = self._open(data)
        upright = self._is_upright(image)
        if len(data) <= target and upright:
            return data
        if not upright:
            image = ImageOps.exif_transpose(image)

        quality = self.estimate_quality(len(data), target)
        overshoot = len(data)
        if quality > self.min_quality:
            first = self._encode(image, quality)
            if len(first) <= target:
                logger.info("image_compressed", quality=round(quality, 2), size_kb=len(first) // 1024)
                return first
            overshoot = len(first)

        # Shrink the pixel count by the byte overshoot, capped by max dimension.
        scale = min(1.0, math.sqrt(target / overshoot) * 0.8)
        width, height = image.size
        longest = max(width, height)
        scale = min(scale, self.max_dimension / longest)
        size = (max(1, int(width * scale)), max(1, int(height * scale)))
        second = self._encode(image.resize(size, Image.Resampling.LANCZOS), self.fallback_quality)
        if len(second) > target:
            raise CompressionFailure(
                f"Image still {len(second) // 1024}KB after downsampling to {size[0]}x{size[1]}"
            )
        logger.info("image_downsampled", size=f"{size[0]}x{size[1]}", size_kb=len(second) // 1024)
        return second

    # ==========================================================================
    # Uniqueify
    # ==========================================================================

    def uniqueify(
        self,
        data: bytes,
        pixel_range: tuple[int, int] = settings.UNIQUEIFY_PIXELS,
        intensity_range: tuple[int, int] = settings.UNIQUEIFY_INTENSITY,
        quality_range: tuple[float, float] = settings.UNIQUEIFY_QUALITY,
    ) -> bytes:
        """
        Nudge a handful of pixels by a few intensity units and re-encode at a
        slightly varied quality. The encoder comment carries a random token so
        two calls never produce identical bytes.
        """
        image = self._open(data)
        if not self._is_upright(image):
            image = ImageOps.exif_transpose(image)
        image = image.convert("RGB")
        pixels = image.load()
        width, height = image.size

        for _ in range(self._rng.randint(*pixel_range)):
            x = self._rng.randrange(width)
            y = self._rng.randrange(height)
            shifted = []
            for channel in pixels[x, y]:
                delta = self._rng.randint(*intensity_range)
                value = channel + delta if channel + delta <= 255 else channel - delta
                shifted.append(value)
            pixels[x, y] = tuple(shifted)

        quality = self._rng.uniform(*quality_range)
        return self._encode(image, quality, comment=secrets.token_hex(8).encode("ascii"))

    # ==========================================================================
    # Pipeline
    # ==========================================================================

    def content_hash(self, data: bytes) -> str:
        return content_hash(data)

    def prepare_for_upload(self, data: bytes) -> bytes:
        """Orientation, aspect ratio, then compression."""
        data = self.normalize_orientation(data)
        data = self.adjust_aspect_ratio(data)
        return self.adaptive_compress(data)
