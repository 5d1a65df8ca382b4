import asyncio
import io
import logging

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from .errors import PostProcessingError
from .models import Artifact
from .storage import ArtifactStore

logger = logging.getLogger(__name__)

WATERMARK_TEXT = "PREVIEW"
WATERMARK_RGB = (255, 0, 0)
WATERMARK_OPACITY = 0.4
WATERMARK_ANGLE = 30  # degrees, counter-clockwise
FONT_WIDTH_RATIO = 64 / 800
JPEG_QUALITY = 90


def _font(width: int) -> ImageFont.ImageFont:
    size = max(12, int(round(width * FONT_WIDTH_RATIO)))
    return ImageFont.load_default(size=size)


def _stamp(font) -> Image.Image:
    probe = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    left, top, right, bottom = probe.textbbox((0, 0), WATERMARK_TEXT, font=font)
    stamp = Image.new("RGBA", (max(1, right - left), max(1, bottom - top)), (0, 0, 0, 0))
    alpha = int(round(255 * WATERMARK_OPACITY))
    ImageDraw.Draw(stamp).text((-left, -top), WATERMARK_TEXT, font=font, fill=WATERMARK_RGB + (alpha,))
    return stamp.rotate(WATERMARK_ANGLE, resample=Image.Resampling.BICUBIC, expand=True)


def watermark(image_bytes: bytes) -> bytes:
    """Overlay a centred, rotated, translucent PREVIEW mark; output keeps the input's format."""
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise PostProcessingError(f"cannot decode generated image: {exc}") from exc

    fmt = image.format if image.format in ("PNG", "WEBP") else "JPEG"
    has_alpha = image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info)
    base = image.convert("RGBA")
    width, height = base.size

    stamp = _stamp(_font(width))
    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    # Plain paste keeps the stamp's own alpha; a mask would square it.
    overlay.paste(stamp, ((width - stamp.width) // 2, (height - stamp.height) // 2))
    marked = Image.alpha_composite(base, overlay)

    out = io.BytesIO()
    if fmt == "JPEG" or not has_alpha:
        marked = marked.convert("RGB")
    if fmt == "JPEG":
        marked.save(out, format="JPEG", quality=JPEG_QUALITY)
    else:
        marked.save(out, format=fmt)
    return out.getvalue()


def _ext_of(artifact: Artifact) -> str:
    return artifact.path.rsplit(".", 1)[-1]


async def watermark_artifact(store: ArtifactStore, raw: Artifact) -> Artifact:
    raw_bytes = await asyncio.to_thread(store.read, raw.path)
    marked = await asyncio.to_thread(watermark, raw_bytes)
    preview = await asyncio.to_thread(store.put, marked, "watermarked-preview", _ext_of(raw))
    logger.info("Watermarked %s -> %s", raw.path, preview.path)
    return preview
