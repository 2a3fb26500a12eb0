"""
pdf_writer.py - Output PDF with pages replaced by degraded rasters.

The output starts as a copy of the source. Each finished page swaps out the
page at its index for a single full-page JPEG (DCTDecode) image; pages that
were never replaced keep their previous content.
"""

import io
import logging
import threading

import pikepdf
from pikepdf import Pdf, Stream, Dictionary, Name

from .compression import FinishedPage
from .exceptions import DocumentLoadFailed
from .rasterize import PageBounds, SourceDocument

logger = logging.getLogger(__name__)


class OutputDocument:
    """
    Mutable copy of a source PDF.

    Page replacement (remove at k, insert at k) is serialized by a lock, so
    concurrent writers can never corrupt the page count or shift an index.
    """

    def __init__(self, source: SourceDocument):
        # pikepdf reads lazily; the stream must outlive the Pdf
        self._stream = io.BytesIO(source.data)
        try:
            self.pdf = Pdf.open(self._stream)
        except pikepdf.PdfError as e:
            raise DocumentLoadFailed(source.name, str(e)) from e

        self._lock = threading.Lock()
        self.replaced = set()

        if len(self.pdf.pages) != source.page_count:
            raise DocumentLoadFailed(
                source.name,
                f"copy has {len(self.pdf.pages)} pages, source has {source.page_count}"
            )

    @property
    def page_count(self) -> int:
        return len(self.pdf.pages)

    def page_bounds(self, page_index: int) -> PageBounds:
        box = [float(v) for v in self.pdf.pages[page_index].mediabox]
        return PageBounds(
            min(box[0], box[2]), min(box[1], box[3]),
            max(box[0], box[2]), max(box[1], box[3]),
        )

    def _make_page(self, finished: FinishedPage) -> pikepdf.Page:
        bounds = finished.bounds

        image_dict = Dictionary({
            '/Type': Name.XObject,
            '/Subtype': Name.Image,
            '/Width': finished.width,
            '/Height': finished.height,
            '/ColorSpace': Name.DeviceRGB,
            '/BitsPerComponent': 8,
            '/Filter': Name.DCTDecode,
        })
        img_stream = Stream(self.pdf, finished.image_data, image_dict)

        xobjects = Dictionary({})
        xobjects['/Im0'] = self.pdf.make_indirect(img_stream)

        # Draw the image over the full MediaBox
        content = f"""
q
{bounds.width:.4f} 0 0 {bounds.height:.4f} {bounds.x0:.4f} {bounds.y0:.4f} cm
/Im0 Do
Q
"""
        page_dict = Dictionary({
            '/Type': Name.Page,
            '/MediaBox': bounds.as_array(),
            '/Resources': Dictionary({'/XObject': xobjects}),
            '/Contents': self.pdf.make_indirect(
                Stream(self.pdf, content.strip().encode("ascii"))
            ),
        })
        if finished.rotation:
            page_dict['/Rotate'] = finished.rotation

        return pikepdf.Page(self.pdf.make_indirect(page_dict))

    def replace_page(self, finished: FinishedPage):
        """Swap the page at finished.page_index for the degraded image page."""
        k = finished.page_index
        with self._lock:
            if not 0 <= k < len(self.pdf.pages):
                raise IndexError(f"Page {k} out of range (0..{len(self.pdf.pages) - 1})")

            if k in self.replaced:
                # Already an image page; geometry is fixed by the source
                image = self.pdf.pages[k].obj['/Resources']['/XObject']['/Im0']
                image.write(finished.image_data, filter=Name.DCTDecode)
                image['/Width'] = finished.width
                image['/Height'] = finished.height
            else:
                page = self._make_page(finished)
                del self.pdf.pages[k]
                self.pdf.pages.insert(k, page)
                self.replaced.add(k)

        logger.debug(
            f"Replaced page {k}: {finished.total_size:,} bytes "
            f"{finished.width}x{finished.height}"
        )

    def to_bytes(self) -> bytes:
        """Serialize the current state of the document."""
        buffer = io.BytesIO()
        with self._lock:
            self.pdf.save(
                buffer,
                compress_streams=True,
                object_stream_mode=pikepdf.ObjectStreamMode.generate
            )
        return buffer.getvalue()

    def close(self):
        self.pdf.close()
