"""
Artifact Imaging
Validation and derivative generation for provider output.

Both entry points are pure functions over byte buffers: no I/O and no
shared state, so the pipeline calls them through asyncio.to_thread.
"""

import io
import struct
import logging
from dataclasses import dataclass
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from stylize.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArtifactLimits:
    min_dimension: int = 256
    max_dimension: int = 4096
    max_bytes: int = 20 * 1024 * 1024
    max_aspect: float = 3.0

    @classmethod
    def from_settings(cls, s=settings) -> "ArtifactLimits":
        return cls(
            min_dimension=s.ARTIFACT_MIN_DIMENSION,
            max_dimension=s.ARTIFACT_MAX_DIMENSION,
            max_bytes=s.ARTIFACT_MAX_BYTES,
            max_aspect=s.ARTIFACT_MAX_ASPECT,
        )


@dataclass
class ArtifactValidation:
    valid: bool
    cleaned: Optional[bytes] = None
    width: int = 0
    height: int = 0
    format: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def reject(cls, reason: str) -> "ArtifactValidation":
        return cls(valid=False, reason=reason)


def validate_artifact(data: bytes, limits: Optional[ArtifactLimits] = None) -> ArtifactValidation:
    """
    Inspect an untrusted image buffer and return a cleaned copy.

    The cleaned buffer is a PNG with orientation applied and every
    metadata block (EXIF, XMP, text chunks, ICC) dropped.
    """
    limits = limits or ArtifactLimits.from_settings()

    if not data:
        return ArtifactValidation.reject("empty artifact")
    if len(data) > limits.max_bytes:
        return ArtifactValidation.reject(f"artifact too large: {len(data)} bytes")

    try:
        # verify() leaves the image unusable, so decode twice
        with Image.open(io.BytesIO(data)) as probe:
            source_format = probe.format
            # Header dimensions only; no pixel data is touched until these pass
            width, height = probe.size
            if min(width, height) < limits.min_dimension:
                return ArtifactValidation.reject(f"image too small: {width}x{height}")
            if max(width, height) > limits.max_dimension or width * height > limits.max_dimension ** 2:
                return ArtifactValidation.reject(f"image too large: {width}x{height}")
            probe.verify()
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            img = ImageOps.exif_transpose(img)
            width, height = img.size

            aspect = width / height
            if aspect > limits.max_aspect or aspect < 1 / limits.max_aspect:
                return ArtifactValidation.reject(f"aspect ratio out of range: {aspect:.2f}")

            mode = img.mode if img.mode in ("RGB", "RGBA") else "RGB"
            # Copy pixels into a fresh image so no info dict survives
            clean = Image.new(mode, img.size)
            clean.paste(img.convert(mode))
            out = io.BytesIO()
            clean.save(out, format="PNG", optimize=True)
    except (UnidentifiedImageError, Image.DecompressionBombError) as e:
        return ArtifactValidation.reject(f"undecodable image: {e}")
    except (OSError, SyntaxError, ValueError, struct.error) as e:
        # Truncated and corrupt files surface as one of these
        return ArtifactValidation.reject(f"corrupt image: {e}")

    return ArtifactValidation(
        valid=True,
        cleaned=out.getvalue(),
        width=width,
        height=height,
        format=source_format,
    )


def create_thumbnail(data: bytes, width: Optional[int] = None, quality: Optional[int] = None) -> bytes:
    """Fixed-width JPEG preview. Never enlarges."""
    width = width or settings.THUMBNAIL_WIDTH
    quality = quality or settings.THUMBNAIL_QUALITY

    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGB")
        if img.width > width:
            height = max(1, round(img.height * width / img.width))
            img = img.resize((width, height), Image.Resampling.LANCZOS)
        out = io.BytesIO()
        img.save(out, format="JPEG", quality=quality, optimize=True)
    return out.getvalue()


def sniff_mime_type(data: bytes) -> str:
    """MIME type from magic bytes, defaulting to JPEG."""
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:3] == b"GIF":
        return "image/gif"
    return "image/jpeg"
