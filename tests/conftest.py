"""Pytest configuration and shared fixtures for the scan simulator."""

from __future__ import annotations

import io
import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import pikepdf
import pytest
from PIL import Image

try:
    import fitz
except ImportError:
    import pymupdf as fitz

# Make the repo importable without installing it
REPO_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(REPO_ROOT))

from scansim.settings import BlurType, ColorMode, RotationType, ScanSettings  # noqa: E402

LETTER = (612.0, 792.0)
A4_LANDSCAPE = (842.0, 595.0)


def make_pdf(page_sizes: Sequence[Tuple[float, float]], rotations: Optional[List[int]] = None) -> bytes:
    """Build a PDF with one labelled page per size: text plus a colored box."""
    doc = fitz.open()
    for i, (width, height) in enumerate(page_sizes):
        page = doc.new_page(width=width, height=height)
        page.insert_text((36, 48), f"Page {i + 1}", fontsize=20)
        page.draw_rect(fitz.Rect(36, 80, width / 2, height / 3), color=(1, 0, 0), fill=(0.2, 0.4, 0.9))
        if rotations:
            page.set_rotation(rotations[i])
    data = doc.tobytes()
    doc.close()
    return data


def page_jpeg(pdf_bytes: bytes, page_index: int) -> Optional[bytes]:
    """Raw JPEG of a scanned output page, or None if the page is not an image page."""
    with pikepdf.open(io.BytesIO(pdf_bytes)) as pdf:
        resources = pdf.pages[page_index].obj.get("/Resources")
        if resources is None or "/XObject" not in resources:
            return None
        xobject = resources["/XObject"].get("/Im0")
        if xobject is None:
            return None
        return xobject.read_raw_bytes()


def page_image(pdf_bytes: bytes, page_index: int) -> Optional[Image.Image]:
    data = page_jpeg(pdf_bytes, page_index)
    if data is None:
        return None
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def page_boxes(pdf_bytes: bytes) -> List[Tuple[float, ...]]:
    with pikepdf.open(io.BytesIO(pdf_bytes)) as pdf:
        return [tuple(float(v) for v in page.mediabox) for page in pdf.pages]


def page_text(pdf_bytes: bytes, page_index: int) -> str:
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        return doc[page_index].get_text()


@pytest.fixture
def pdf_factory() -> Callable[..., bytes]:
    """Return the PDF builder."""
    return make_pdf


@pytest.fixture
def letter_pdf() -> bytes:
    """Single US Letter page."""
    return make_pdf([LETTER])


@pytest.fixture
def three_page_pdf() -> bytes:
    """Three pages of different sizes."""
    return make_pdf([LETTER, A4_LANDSCAPE, (300.0, 400.0)])


@pytest.fixture
def plain_settings() -> ScanSettings:
    """Low-resolution settings with no skew, dust, tone or blur."""
    return ScanSettings(
        dpi=72,
        rotation_type=RotationType.FIXED,
        rotation_fixed=0.0,
        quality=90,
        grayscale=False,
        color_mode=ColorMode.NORMAL,
        scratch_amount=1.0,
        dust_amount=0.0,
        blur_type=BlurType.NONE,
    )


@pytest.fixture
def busy_settings(plain_settings: ScanSettings) -> ScanSettings:
    """Every stage active."""
    return plain_settings.with_changes(
        rotation_fixed=1.5,
        dust_amount=0.8,
        scratch_amount=0.4,
        grayscale=True,
        blur_type=BlurType.GAUSSIAN,
        blur_radius=1.0,
    )
