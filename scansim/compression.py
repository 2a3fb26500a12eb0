"""
compression.py - Final JPEG encode of a degraded page.

Output is always 8-bit DeviceRGB JPEG, whatever the tone filter produced.
"""

import io
import logging
from dataclasses import dataclass

import numpy as np
from PIL import Image

from .rasterize import PageBounds

logger = logging.getLogger(__name__)


@dataclass
class FinishedPage:
    """Degraded page ready for PDF embedding."""
    page_index: int
    image_data: bytes
    width: int
    height: int
    bounds: PageBounds  # From the source page, never from the raster size
    rotation: int = 0

    @property
    def total_size(self) -> int:
        return len(self.image_data)


def jpeg_quality(quality: float) -> int:
    """Map a 0-100 quality setting onto the encoder's 1-100 scale."""
    return max(1, min(100, int(round(quality))))


def encode_jpeg(image: np.ndarray, quality: float = 20) -> bytes:
    """
    Compress image as RGB JPEG.

    Args:
        image: RGB or grayscale numpy array
        quality: Quality 0-100 (lower = smaller)

    Returns:
        JPEG bytes
    """
    if image.ndim == 2:
        image = np.stack([image] * 3, axis=-1)
    elif image.shape[2] == 4:
        image = image[:, :, :3]

    img = Image.fromarray(np.ascontiguousarray(image, dtype=np.uint8)).convert("RGB")

    buffer = io.BytesIO()
    img.save(
        buffer,
        format="JPEG",
        quality=jpeg_quality(quality),
        optimize=True,
        subsampling=2  # 4:2:0 chroma subsampling
    )

    data = buffer.getvalue()
    logger.debug(
        f"Encoded {img.width}x{img.height}: {len(data):,} bytes | q={jpeg_quality(quality)}"
    )
    return data
