"""
rasterize.py - PDF page to bitmap conversion using PyMuPDF.

Page geometry is read once with pikepdf when the source is opened. Each
render opens its own PyMuPDF handle from the source bytes. MuPDF is not
thread-safe, so the render itself is serialized; the numpy and OpenCV work
around it runs on the calling thread.
"""

import io
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np
import pikepdf
try:
    import fitz  # pip install pymupdf
except ImportError:
    import pymupdf as fitz  # apt install python3-pymupdf

from .exceptions import DocumentLoadFailed, RasterizationFailed

logger = logging.getLogger(__name__)

POINTS_PER_INCH = 72.0

# MuPDF keeps one global context per process; renders must not overlap
_MUPDF_LOCK = threading.Lock()


@dataclass(frozen=True)
class PageBounds:
    """Page rectangle (MediaBox) in PDF points."""
    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def width(self) -> float:
        return self.x1 - self.x0

    @property
    def height(self) -> float:
        return self.y1 - self.y0

    def as_array(self) -> pikepdf.Array:
        return pikepdf.Array([self.x0, self.y0, self.x1, self.y1])


@dataclass
class RasterPage:
    """Rendered page. The bitmap is read-only once produced."""
    page_index: int
    bitmap: np.ndarray
    bounds: PageBounds
    dpi: float

    @property
    def pixel_size(self) -> Tuple[int, int]:
        return self.bitmap.shape[1], self.bitmap.shape[0]


@dataclass
class SourceDocument:
    """Parsed source PDF: raw bytes plus per-page geometry."""
    data: bytes
    page_bounds: List[PageBounds]
    page_rotations: List[int] = field(default_factory=list)
    name: Optional[str] = None

    @property
    def page_count(self) -> int:
        return len(self.page_bounds)

    @classmethod
    def open(cls, source: Union[str, Path, bytes]) -> "SourceDocument":
        """
        Parse a PDF from a path or from bytes.

        Raises:
            DocumentLoadFailed: the file is missing, unreadable, not a PDF
                or has no pages
        """
        if isinstance(source, (bytes, bytearray)):
            data = bytes(source)
            name = None
        else:
            name = str(source)
            try:
                data = Path(source).read_bytes()
            except OSError as e:
                raise DocumentLoadFailed(name, str(e)) from e

        bounds = []
        rotations = []
        try:
            with pikepdf.open(io.BytesIO(data)) as pdf:
                for page in pdf.pages:
                    box = [float(v) for v in page.mediabox]
                    bounds.append(PageBounds(
                        min(box[0], box[2]), min(box[1], box[3]),
                        max(box[0], box[2]), max(box[1], box[3]),
                    ))
                    rotations.append(int(page.obj.get("/Rotate", 0)) % 360)
        except (pikepdf.PdfError, ValueError, TypeError) as e:
            raise DocumentLoadFailed(name, str(e)) from e

        if not bounds:
            raise DocumentLoadFailed(name, "document has no pages")

        logger.debug(f"Opened {name or 'document'}: {len(bounds)} pages")
        return cls(data=data, page_bounds=bounds, page_rotations=rotations, name=name)


def target_pixel_size(bounds: PageBounds, dpi: float) -> Tuple[int, int]:
    """
    Pixel size of a page rendered at dpi.

    Height is page height in points * dpi / 72, width follows the aspect ratio.
    """
    if bounds.width <= 0 or bounds.height <= 0:
        raise RasterizationFailed(-1, f"zero-size page geometry {bounds}")
    height = max(1, int(round(bounds.height * dpi / POINTS_PER_INCH)))
    width = max(1, int(round(height * bounds.width / bounds.height)))
    return width, height


def rasterize_page(
    source: SourceDocument,
    page_index: int,
    dpi: float = 200
) -> RasterPage:
    """
    Rasterize a single PDF page to an RGB image.

    Args:
        source: Parsed source document
        page_index: 0-indexed page number
        dpi: Sampling density

    Returns:
        RasterPage with a read-only RGB numpy array

    Raises:
        RasterizationFailed: index out of range, zero-size page or renderer error
    """
    if not 0 <= page_index < source.page_count:
        raise RasterizationFailed(
            page_index, f"page index out of range (0..{source.page_count - 1})"
        )

    bounds = source.page_bounds[page_index]
    try:
        width, height = target_pixel_size(bounds, dpi)
    except RasterizationFailed as e:
        raise RasterizationFailed(page_index, e.reason) from e

    try:
        with _MUPDF_LOCK, fitz.open(stream=source.data, filetype="pdf") as doc:
            page = doc[page_index]

            # Render the whole MediaBox unrotated so the raster maps onto the
            # stored bounds; the output page carries /Rotate itself.
            page.set_rotation(0)
            try:
                page.set_cropbox(page.mediabox)
            except ValueError as e:
                logger.debug(f"Page {page_index}: keeping CropBox ({e})")

            rect = page.rect
            matrix = fitz.Matrix(width / rect.width, height / rect.height)
            pixmap = page.get_pixmap(matrix=matrix, alpha=False, colorspace=fitz.csRGB)

            image = np.frombuffer(pixmap.samples, dtype=np.uint8).reshape(
                pixmap.height, pixmap.width, pixmap.n
            ).copy()  # Copy to own the memory
    except Exception as e:
        raise RasterizationFailed(page_index, str(e)) from e

    # The renderer rounds the page rect to whole pixels
    if image.shape[:2] != (height, width):
        logger.debug(
            f"Page {page_index}: resizing {image.shape[1]}x{image.shape[0]} "
            f"to {width}x{height}"
        )
        image = cv2.resize(image, (width, height), interpolation=cv2.INTER_AREA)

    image.flags.writeable = False

    logger.debug(f"Rasterized page {page_index}: {width}x{height} @ {dpi:g} DPI")

    return RasterPage(page_index=page_index, bitmap=image, bounds=bounds, dpi=dpi)
