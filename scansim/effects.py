"""
effects.py - Scan degradation chain.

Stages, in order:
1. Rotation (skew about the center, white corners, no crop)
2. Dust overlay (sparse light specks, "over" blend)
3. Scratch overlay (vertically stretched noise, multiplicative blend)
4. Tone filter (grayscale preset, else color preset)
5. Blur (gaussian / box / disc, radius scaled by dpi)
6. JPEG encode (see compression.py)

Every stage takes an RGB uint8 array and never modifies it, so cached
rasters can be reused across runs. A stage with nothing to do returns its
input unchanged.
"""

import logging
import math
from typing import Callable, Dict, Optional

import cv2
import numpy as np
from PIL import Image, ImageFilter

from .compression import encode_jpeg
from .exceptions import EffectStageFailed
from .settings import BlurType, ColorMode, GrayscaleMode, ScanSettings

logger = logging.getLogger(__name__)

# Canvas color behind a rotated page
FILL_COLOR = (255, 255, 255)

# Noise cell size in pixels per 100 dpi (horizontal, vertical)
DUST_SCALE = (2.0, 2.0)
SCRATCH_SCALE = (2.0, 25.0)

# Maximum dust opacity at dust_amount == 1
DUST_OPACITY = 0.01

# Scratch noise gain at scratch_amount == 1
SCRATCH_GAIN = 6.0

# Errors the imaging libraries raise for bad input
IMAGE_ERRORS = (cv2.error, ValueError, TypeError, OSError, MemoryError)


def rotate(image: np.ndarray, degrees: Optional[float]) -> np.ndarray:
    """
    Rotate image counter-clockwise about its center on a white canvas.

    The canvas keeps the source size, so corners are filled rather than the
    page being cropped or padded.
    """
    if not degrees:
        return image

    height, width = image.shape[:2]
    center = (width / 2.0, height / 2.0)
    matrix = cv2.getRotationMatrix2D(center, degrees, 1.0)
    return cv2.warpAffine(
        image,
        matrix,
        (width, height),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=FILL_COLOR
    )


def noise_field(
    rng: np.random.Generator,
    height: int,
    width: int,
    scale_x: float,
    scale_y: float
) -> np.ndarray:
    """
    Uniform noise in [0, 1] with one random value per scale_x x scale_y cell,
    stretched to height x width with bilinear sampling.
    """
    cells_x = max(1, int(math.ceil(width / scale_x)))
    cells_y = max(1, int(math.ceil(height / scale_y)))
    cells = rng.random((cells_y, cells_x), dtype=np.float32)
    return cv2.resize(cells, (width, height), interpolation=cv2.INTER_LINEAR)


def add_dust(
    image: np.ndarray,
    amount: float,
    dpi: float,
    rng: np.random.Generator
) -> np.ndarray:
    """Composite light specks over the image; opacity grows with amount."""
    if amount <= 0:
        return image

    height, width = image.shape[:2]
    scale = dpi / 100
    luminance = noise_field(rng, height, width, DUST_SCALE[0] * scale, DUST_SCALE[1] * scale)
    alpha = (DUST_OPACITY * amount * luminance)[..., None]

    out = (luminance[..., None] * 255.0) * alpha + image.astype(np.float32) * (1.0 - alpha)
    return np.clip(np.rint(out), 0, 255).astype(np.uint8)


def add_scratches(
    image: np.ndarray,
    amount: float,
    dpi: float,
    rng: np.random.Generator
) -> np.ndarray:
    """
    Multiply the image by vertically stretched noise.

    The noise gain is SCRATCH_GAIN / amount, so cells whose value falls
    below amount / SCRATCH_GAIN darken the page. An amount of 0 disables the
    stage instead of dividing by zero.
    """
    if amount <= 0:
        logger.debug("Scratch amount is 0, skipping scratch overlay")
        return image

    height, width = image.shape[:2]
    scale = dpi / 100
    luminance = noise_field(
        rng, height, width, SCRATCH_SCALE[0] * scale, SCRATCH_SCALE[1] * scale
    )
    multiplier = np.minimum(luminance * (SCRATCH_GAIN / amount), 1.0)[..., None]

    out = image.astype(np.float32) * multiplier
    return np.clip(np.rint(out), 0, 255).astype(np.uint8)


# Tone presets

def _contrast_lut(contrast: float, offset: float = 0.0) -> np.ndarray:
    x = np.arange(256, dtype=np.float32)
    return np.clip(np.rint((x - 128.0) * contrast + 128.0 + offset), 0, 255).astype(np.uint8)


def _monochrome(image: np.ndarray, contrast: float, offset: float = 0.0) -> np.ndarray:
    gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    gray = cv2.LUT(gray, _contrast_lut(contrast, offset))
    return cv2.cvtColor(gray, cv2.COLOR_GRAY2RGB)


def _color_shift(
    image: np.ndarray,
    hue_shift: int,
    saturation: float,
    value_gain: float,
    value_bias: float
) -> np.ndarray:
    hsv = cv2.cvtColor(image, cv2.COLOR_RGB2HSV).astype(np.float32)
    hsv[..., 0] = np.mod(hsv[..., 0] + hue_shift, 180)  # OpenCV hue is 0-179
    hsv[..., 1] = hsv[..., 1] * saturation
    hsv[..., 2] = hsv[..., 2] * value_gain + value_bias
    hsv = np.clip(np.rint(hsv), 0, 255).astype(np.uint8)
    return cv2.cvtColor(hsv, cv2.COLOR_HSV2RGB)


TONE_FILTERS: Dict[object, Callable[[np.ndarray], np.ndarray]] = {
    GrayscaleMode.LOW: lambda img: _monochrome(img, contrast=0.75, offset=12.0),
    GrayscaleMode.MEDIUM: lambda img: _monochrome(img, contrast=1.0),
    GrayscaleMode.HIGH: lambda img: _monochrome(img, contrast=1.5),
    ColorMode.EXAGGERATED: lambda img: _color_shift(
        img, hue_shift=3, saturation=1.4, value_gain=1.05, value_bias=0.0
    ),
    ColorMode.DIMINISHED: lambda img: _color_shift(
        img, hue_shift=-3, saturation=0.55, value_gain=0.9, value_bias=20.0
    ),
}

_uncovered = (set(GrayscaleMode) | (set(ColorMode) - {ColorMode.NORMAL})) - set(TONE_FILTERS)
if _uncovered:
    raise RuntimeError(f"No tone filter for {sorted(m.value for m in _uncovered)}")


def apply_tone(image: np.ndarray, settings: ScanSettings) -> np.ndarray:
    """Apply the grayscale preset if enabled, else the color preset, else nothing."""
    tone = settings.tone_filter()
    if tone is None:
        return image
    logger.debug(f"Tone filter: {type(tone).__name__}.{tone.name}")
    return TONE_FILTERS[tone](image)


def _disc_blur(image: np.ndarray, radius: float) -> np.ndarray:
    r = max(1, int(round(radius)))
    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (2 * r + 1, 2 * r + 1))
    kernel = kernel.astype(np.float32)
    kernel /= kernel.sum()
    return cv2.filter2D(image, -1, kernel, borderType=cv2.BORDER_REFLECT)


def apply_blur(image: np.ndarray, blur_type: BlurType, radius: float) -> np.ndarray:
    """Blur with the selected kernel shape; radius is in pixels."""
    if blur_type == BlurType.NONE or radius <= 0:
        return image

    if blur_type == BlurType.DISC:
        return _disc_blur(image, radius)

    pil_filter = {
        BlurType.GAUSSIAN: ImageFilter.GaussianBlur,
        BlurType.BOX: ImageFilter.BoxBlur,
    }[blur_type]
    blurred = Image.fromarray(image).filter(pil_filter(radius))
    return np.array(blurred)


def _run_stage(name: str, page_index: int, fn: Callable, *args):
    try:
        result = fn(*args)
    except IMAGE_ERRORS as e:
        raise EffectStageFailed(page_index, name, str(e)) from e
    if result is None:
        raise EffectStageFailed(page_index, name, "stage produced no image")
    return result


def apply_effects(
    bitmap: np.ndarray,
    settings: ScanSettings,
    rng: Optional[np.random.Generator] = None,
    page_index: int = 0
) -> bytes:
    """
    Run the full degradation chain on one page bitmap.

    Args:
        bitmap: RGB uint8 page raster (not modified)
        settings: Degradation settings
        rng: Random source for skew and noise (fresh one if None)
        page_index: Page number, for error reporting

    Returns:
        JPEG bytes of the degraded page

    Raises:
        EffectStageFailed: the first stage that failed; later stages are skipped
    """
    if rng is None:
        rng = np.random.default_rng()

    if bitmap is None or bitmap.ndim != 3 or bitmap.shape[2] != 3 or bitmap.size == 0:
        raise EffectStageFailed(page_index, "input", "missing or malformed bitmap")

    angle = settings.rotation_angle(rng)
    if angle is not None:
        logger.debug(f"Page {page_index}: rotating {angle:.2f} degrees")

    image = _run_stage("rotate", page_index, rotate, bitmap, angle)
    image = _run_stage("dust", page_index, add_dust, image, settings.dust_amount, settings.dpi, rng)
    image = _run_stage(
        "scratch", page_index, add_scratches, image, settings.scratch_amount, settings.dpi, rng
    )
    image = _run_stage("tone", page_index, apply_tone, image, settings)
    image = _run_stage(
        "blur", page_index, apply_blur, image, settings.blur_type, settings.blur_radius_px()
    )
    return _run_stage("encode", page_index, encode_jpeg, image, settings.quality)
