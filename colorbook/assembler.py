import asyncio
import io
import logging
from pathlib import Path
from typing import Sequence, Tuple

from PIL import Image, UnidentifiedImageError
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas as rl_canvas

from .errors import UpstreamError, ValidationError
from .fetch import Fetcher
from .models import Artifact
from .storage import ArtifactStore

logger = logging.getLogger(__name__)

BOOK_TITLE = "Custom Coloring Book"


def flatten(image: Image.Image) -> Image.Image:
    """Composite any transparency onto white paper so it prints as blank paper."""
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        page = Image.new("RGB", rgba.size, (255, 255, 255))
        page.paste(rgba, mask=rgba.getchannel("A"))
        return page
    return image if image.mode in ("RGB", "L") else image.convert("RGB")


class PdfBook:
    """A PDF written page by page to disk; each page is exactly its image's pixel size (1px = 1pt)."""

    def __init__(self, path: Path):
        self.path = path
        self.page_count = 0
        self._canvas = rl_canvas.Canvas(str(path))
        self._canvas.setTitle(BOOK_TITLE)

    def add_page(self, image_bytes: bytes, source: str = "") -> Tuple[int, int]:
        try:
            image = Image.open(io.BytesIO(image_bytes))
            image.load()
        except (UnidentifiedImageError, OSError) as exc:
            raise UpstreamError(f"page {self.page_count + 1} is not a readable image: {source}") from exc

        image = flatten(image)
        width, height = image.size
        self._canvas.setPageSize((width, height))
        self._canvas.drawImage(ImageReader(image), 0, 0, width=width, height=height)
        self._canvas.showPage()
        self.page_count += 1
        return width, height

    def save(self) -> None:
        self._canvas.save()


async def assemble(urls: Sequence[str], fetcher: Fetcher, store: ArtifactStore) -> Artifact:
    if not urls:
        raise ValidationError("No images provided.")

    tmp = await asyncio.to_thread(store.scratch_path, ".pdf")
    published = False
    try:
        book = PdfBook(tmp)
        for url in urls:
            data = await fetcher.fetch(url)
            await asyncio.to_thread(book.add_page, data, url)
        await asyncio.to_thread(book.save)
        artifact = await asyncio.to_thread(store.put_file, tmp, "assembled-pdf", "pdf")
        published = True
    finally:
        # Nothing partial survives a failed fetch or decode.
        if not published:
            tmp.unlink(missing_ok=True)

    logger.info("Assembled %d pages into %s", book.page_count, artifact.path)
    return artifact
