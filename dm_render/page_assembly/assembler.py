"""
Page Assembler - fit rendered rasters to print pages and serialize PDFs.

Usage:
    assembler = PageAssembler()
    page = assembler.assemble_page(png_bytes, lookup("postcard_4x6"), recipient_index=0)
    documents = assembler.assemble_document([page], OutputMode.MERGED)
    documents[0].data   # PDF bytes

Large merged batches use open_merged(), which streams pages to a file.

Scaling is cover-fit onto the full bleed page: the raster is scaled until
it covers the page, then center-cropped. Aspect ratio is preserved.
"""

import io
import logging
import math
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

from PIL import Image
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas as pdf_canvas

from ..config.settings import settings
from ..errors import EmptyBatch, ImageTooSmall
from ..models import OutputMode
from ..print_formats import PrintFormat

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Page:
    """
    A rendered raster fitted to a print format.

    Attributes:
        recipient_index: Source recipient position
        format: Target print format
        image_bytes: PNG at exactly ``format.pixel_size``
        effective_dpi: Source resolution after scaling
        upscaled: True when the source had to be enlarged past the upscale floor
    """
    recipient_index: int
    format: PrintFormat
    image_bytes: bytes
    pixel_size: Tuple[int, int]
    effective_dpi: float
    upscaled: bool = False


@dataclass(frozen=True)
class AssembledDocument:
    """Serialized output document."""
    data: bytes
    mode: OutputMode
    recipient_indices: Tuple[int, ...]
    page_count: int

    @property
    def size_bytes(self) -> int:
        return len(self.data)


class PageAssembler:
    """Fits rasters to print formats and writes PDFs with reportlab."""

    def __init__(
        self,
        max_upscale: Optional[float] = None,
        allow_upscale: Optional[bool] = None,
        author: Optional[str] = None,
    ):
        self.max_upscale = max_upscale if max_upscale is not None else settings.max_upscale
        if self.max_upscale < 1:
            raise ValueError(f"max_upscale must be >= 1, got {self.max_upscale}")
        self.allow_upscale = settings.allow_upscale if allow_upscale is None else allow_upscale
        self.author = author or settings.pdf_author

    def assemble_page(self, image: bytes, format: PrintFormat, recipient_index: int = 0) -> Page:
        """
        Fit one raster to the full bleed page of ``format``.

        Raises:
            ImageTooSmall: Effective DPI below format.dpi / max_upscale
                (only when upscaling is not allowed)
        """
        target_w, target_h = format.pixel_size

        with Image.open(io.BytesIO(image)) as source:
            source.load()
            src_w, src_h = source.size
            scale = max(target_w / src_w, target_h / src_h)
            effective_dpi = format.dpi / scale
            floor_dpi = format.dpi / self.max_upscale

            upscaled = False
            if effective_dpi < floor_dpi:
                if not self.allow_upscale:
                    raise ImageTooSmall(effective_dpi, floor_dpi, format.name)
                upscaled = True
                logger.warning(
                    f"Recipient {recipient_index}: upscaling to {format.name} "
                    f"at {effective_dpi:.0f} dpi (target {format.dpi})"
                )

            scaled_w = max(target_w, math.ceil(src_w * scale))
            scaled_h = max(target_h, math.ceil(src_h * scale))
            resized = source.convert("RGB").resize((scaled_w, scaled_h), Image.Resampling.LANCZOS)

        left = (scaled_w - target_w) // 2
        top = (scaled_h - target_h) // 2
        fitted = resized.crop((left, top, left + target_w, top + target_h))

        buffer = io.BytesIO()
        fitted.save(buffer, format="PNG", dpi=(format.dpi, format.dpi))

        return Page(
            recipient_index=recipient_index,
            format=format,
            image_bytes=buffer.getvalue(),
            pixel_size=(target_w, target_h),
            effective_dpi=effective_dpi,
            upscaled=upscaled,
        )

    def assemble_document(self, pages: Sequence[Page], mode: OutputMode) -> List[AssembledDocument]:
        """
        Serialize pages.

        ``one_file_per_recipient`` yields one single-page document per page;
        ``merged`` yields one document with pages in the given order.

        Raises:
            EmptyBatch: No pages
        """
        if not pages:
            raise EmptyBatch("No pages to assemble")

        mode = OutputMode(mode)
        if mode == OutputMode.MERGED:
            return [self._write_pdf(pages, mode)]
        return [self._write_pdf([page], mode) for page in pages]

    def open_merged(self, path: Path, spool_dir: Path, title: str) -> "MergedDocumentWriter":
        """Start a merged PDF at ``path`` that is written page by page."""
        return MergedDocumentWriter(path, spool_dir, author=self.author, title=title)

    def _write_pdf(self, pages: Sequence[Page], mode: OutputMode) -> AssembledDocument:
        buffer = io.BytesIO()
        first = pages[0]
        pdf = pdf_canvas.Canvas(buffer, pagesize=first.format.page_size_points)
        pdf.setAuthor(self.author)
        if len(pages) == 1:
            pdf.setTitle(f"{first.format.name} - recipient {first.recipient_index}")
        else:
            pdf.setTitle(f"{first.format.name} - {len(pages)} recipients")

        for page in pages:
            _draw_page(pdf, page)

        pdf.save()
        return AssembledDocument(
            data=buffer.getvalue(),
            mode=mode,
            recipient_indices=tuple(page.recipient_index for page in pages),
            page_count=len(pages),
        )


class MergedDocumentWriter:
    """
    Streams pages into one PDF file in recipient order.

    Pages may arrive in any order. The page for the next expected index is
    drawn immediately; pages that arrive early are spooled to disk as PNG
    files until every index before them is either drawn or skipped. Waiting
    pages live on disk; the canvas keeps only the compressed image streams
    it has already drawn.

    Usage:
        writer = assembler.open_merged(path, spool_dir, title="batch-42")
        writer.add(page)        # any order, thread-safe
        writer.skip(3)          # index 3 failed, do not wait for it
        indices = writer.finish()
    """

    def __init__(self, path: Path, spool_dir: Path, author: str, title: str):
        self.path = Path(path)
        self.spool_dir = Path(spool_dir)
        self.author = author
        self.title = title
        self._tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        self._canvas: Optional[pdf_canvas.Canvas] = None
        self._next_index = 0
        self._skipped: Set[int] = set()
        # index -> page without its image bytes, which live in the spool file
        self._spooled: Dict[int, Page] = {}
        self._written: List[int] = []
        self._closed = False
        self._lock = threading.Lock()

    @property
    def page_count(self) -> int:
        return len(self._written)

    @property
    def spooled_count(self) -> int:
        return len(self._spooled)

    @property
    def is_open(self) -> bool:
        return not self._closed

    def add(self, page: Page) -> None:
        with self._lock:
            self._check_open()
            if page.recipient_index == self._next_index:
                self._draw(page)
                self._next_index += 1
                self._advance()
            else:
                self._spool(page)

    def skip(self, index: int) -> None:
        """Mark an index that will never produce a page."""
        with self._lock:
            self._check_open()
            if index < self._next_index:
                return
            self._skipped.add(index)
            self._advance()

    def finish(self) -> Tuple[int, ...]:
        """
        Draw any remaining spooled pages in index order and move the
        document into place. Returns the recipient indices written, or an
        empty tuple (and no file) when there were no pages.
        """
        with self._lock:
            self._check_open()
            for index in sorted(self._spooled):
                self._draw(self._unspool(index))
            self._closed = True

            if self._canvas is None:
                self._cleanup()
                return ()
            self._canvas.save()
            self._canvas = None
            self._tmp_path.replace(self.path)
            self._cleanup()
            logger.info(f"Merged {len(self._written)} pages into {self.path}")
            return tuple(self._written)

    def discard(self) -> None:
        """Abandon the document and remove partial files."""
        with self._lock:
            self._closed = True
            self._canvas = None
            self._spooled.clear()
            self._tmp_path.unlink(missing_ok=True)
            self._cleanup()

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"Merged document {self.path.name} is already closed")

    def _advance(self) -> None:
        while True:
            if self._next_index in self._skipped:
                self._skipped.discard(self._next_index)
            elif self._next_index in self._spooled:
                self._draw(self._unspool(self._next_index))
            else:
                return
            self._next_index += 1

    def _spool(self, page: Page) -> None:
        self.spool_dir.mkdir(parents=True, exist_ok=True)
        self._spool_path(page.recipient_index).write_bytes(page.image_bytes)
        self._spooled[page.recipient_index] = replace(page, image_bytes=b"")

    def _unspool(self, index: int) -> Page:
        path = self._spool_path(index)
        page = replace(self._spooled.pop(index), image_bytes=path.read_bytes())
        path.unlink()
        return page

    def _spool_path(self, index: int) -> Path:
        return self.spool_dir / f"page-{index}.png"

    def _draw(self, page: Page) -> None:
        if self._canvas is None:
            self._tmp_path.parent.mkdir(parents=True, exist_ok=True)
            self._canvas = pdf_canvas.Canvas(str(self._tmp_path), pagesize=page.format.page_size_points)
            self._canvas.setAuthor(self.author)
            self._canvas.setTitle(self.title)
        _draw_page(self._canvas, page)
        self._written.append(page.recipient_index)

    def _cleanup(self) -> None:
        if self.spool_dir.exists():
            for leftover in self.spool_dir.glob("page-*.png"):
                leftover.unlink()
            try:
                self.spool_dir.rmdir()
            except OSError:
                pass


def _draw_page(pdf: pdf_canvas.Canvas, page: Page) -> None:
    width, height = page.format.page_size_points
    pdf.setPageSize((width, height))
    pdf.drawImage(ImageReader(io.BytesIO(page.image_bytes)), 0, 0, width=width, height=height)
    pdf.showPage()
