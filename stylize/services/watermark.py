"""
Watermarking
Two layers on every produced image:

1. A visible mark drawn in the bottom-right corner with a soft shadow.
2. A provenance record (platform, job, version, timestamp, checksum)
   written to PNG text chunks, readable back with extract_provenance.

apply_watermarks returns both the marked image and a clean copy. The clean
copy keeps the provenance record but not the visible mark; it stays in the
private pool for refinement input and archiving.
"""

import hashlib
import io
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from PIL import Image, ImageDraw, ImageFont, PngImagePlugin

logger = logging.getLogger(__name__)

PLATFORM_ID = "stylize"
PROVENANCE_KEY = "stylize:provenance"


@dataclass(frozen=True)
class Provenance:
    platform_id: str
    job_id: str
    version_id: str
    created_at: str
    visibility: str
    checksum: str


@dataclass
class WatermarkResult:
    watermarked: bytes
    clean: bytes


def create_provenance(job_id: str, version_id: str, visibility: str = "private",
                      now: Optional[datetime] = None) -> Provenance:
    created_at = (now or datetime.utcnow()).isoformat()
    checksum = hashlib.sha256(f"{job_id}-{version_id}-{created_at}".encode()).hexdigest()[:16]
    return Provenance(
        platform_id=PLATFORM_ID,
        job_id=job_id,
        version_id=version_id,
        created_at=created_at,
        visibility=visibility,
        checksum=checksum,
    )


def _png_info(provenance: Provenance) -> PngImagePlugin.PngInfo:
    record = {
        "p": provenance.platform_id,
        "j": provenance.job_id,
        "v": provenance.version_id,
        "c": provenance.created_at,
        "vis": provenance.visibility,
        "h": provenance.checksum,
    }
    info = PngImagePlugin.PngInfo()
    info.add_text(PROVENANCE_KEY, json.dumps(record, separators=(",", ":")))
    info.add_text("Copyright", f"{PLATFORM_ID} {provenance.job_id}/{provenance.version_id}")
    return info


def draw_visible_mark(image: Image.Image, text: str, opacity: float = 0.65) -> Image.Image:
    """Bottom-right text mark sized to about 7% of the image width."""
    base = image.convert("RGBA")
    width, height = base.size
    font_size = max(12, int(width * 0.07))
    padding = int(width * 0.05)
    font = ImageFont.load_default(size=font_size)

    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    bbox = draw.textbbox((0, 0), text, font=font)
    text_w = bbox[2] - bbox[0]
    text_h = bbox[3] - bbox[1]
    x = max(0, width - text_w - padding - bbox[0])
    y = max(0, height - text_h - padding - bbox[1])

    alpha = int(255 * max(0.0, min(opacity, 1.0)))
    shadow = max(1, font_size // 16)
    draw.text((x, y + shadow), text, fill=(0, 0, 0, alpha // 2), font=font)
    draw.text((x, y), text, fill=(255, 255, 255, alpha), font=font)

    marked = Image.alpha_composite(base, overlay)
    return marked if image.mode == "RGBA" else marked.convert("RGB")


def apply_watermarks(data: bytes, provenance: Provenance, text: str, opacity: float = 0.65,
                     visible: bool = True) -> WatermarkResult:
    """
    Mark a PNG buffer.

    Both outputs carry the provenance chunks; only the watermarked one
    carries the visible mark (when visible is set).
    """
    info = _png_info(provenance)
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        marked = draw_visible_mark(img, text, opacity) if visible else img.copy()

        clean_out = io.BytesIO()
        img.save(clean_out, format="PNG", pnginfo=info)

    marked_out = io.BytesIO()
    marked.save(marked_out, format="PNG", pnginfo=info)

    logger.debug(
        f"[Watermark] {provenance.job_id}/{provenance.version_id} marked "
        f"(visible={visible}, {len(marked_out.getvalue())} bytes)"
    )
    return WatermarkResult(watermarked=marked_out.getvalue(), clean=clean_out.getvalue())


def extract_provenance(data: bytes) -> Optional[Provenance]:
    """Read the provenance record back, or None when the image has none."""
    with Image.open(io.BytesIO(data)) as img:
        raw = img.info.get(PROVENANCE_KEY)
    if not raw:
        return None
    try:
        record = json.loads(raw)
        return Provenance(
            platform_id=record["p"],
            job_id=record["j"],
            version_id=record["v"],
            created_at=record["c"],
            visibility=record["vis"],
            checksum=record["h"],
        )
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(f"[Watermark] Unreadable provenance record: {e}")
        return None
