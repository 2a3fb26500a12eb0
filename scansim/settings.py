"""
settings.py - Scan degradation settings.

A ScanSettings value is fixed for one run. The orchestrator compares
successive values to decide between a full re-render (dpi changed) and a
re-scan over cached bitmaps.
"""

import json
import logging
import math
from dataclasses import dataclass, asdict, fields, replace
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple, Union

import numpy as np

from .exceptions import DegenerateParameter

logger = logging.getLogger(__name__)

# Ranges offered by interactive front ends
DPI_RANGE = (100.0, 450.0)
ROTATION_LIMITS = (-3.0, 3.0)
BLUR_RADIUS_RANGE = (0.0, 3.0)


class RotationType(str, Enum):
    NONE = "none"
    FIXED = "fixed"
    RANDOM = "random"


class GrayscaleMode(str, Enum):
    """Monochrome presets, by contrast."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ColorMode(str, Enum):
    """Color-shift presets. NORMAL applies no tone filter."""
    NORMAL = "normal"
    EXAGGERATED = "exaggerated"
    DIMINISHED = "diminished"


class BlurType(str, Enum):
    NONE = "none"
    GAUSSIAN = "gaussian"
    BOX = "box"
    DISC = "disc"


ToneFilter = Union[GrayscaleMode, ColorMode]


@dataclass(frozen=True)
class ScanSettings:
    """Degradation and output quality for one scan run."""
    dpi: float = 200.0
    rotation_type: RotationType = RotationType.FIXED
    rotation_fixed: float = 1.5
    rotation_range: Tuple[float, float] = (0.0, 1.5)
    quality: float = 20.0
    grayscale: bool = True
    grayscale_mode: GrayscaleMode = GrayscaleMode.HIGH
    color_mode: ColorMode = ColorMode.NORMAL
    scratch_amount: float = 0.3
    dust_amount: float = 0.5
    blur_type: BlurType = BlurType.NONE
    blur_radius: float = 1.0

    def __post_init__(self):
        # Coerce plain strings / lists (e.g. from JSON) into enums / tuples
        object.__setattr__(self, "rotation_type", RotationType(self.rotation_type))
        object.__setattr__(self, "grayscale_mode", GrayscaleMode(self.grayscale_mode))
        object.__setattr__(self, "color_mode", ColorMode(self.color_mode))
        object.__setattr__(self, "blur_type", BlurType(self.blur_type))
        object.__setattr__(self, "rotation_range", tuple(float(v) for v in self.rotation_range))
        self.validate()

    def validate(self):
        """Reject values that would break an effect stage."""
        numeric = {
            "dpi": self.dpi,
            "rotation_fixed": self.rotation_fixed,
            "quality": self.quality,
            "scratch_amount": self.scratch_amount,
            "dust_amount": self.dust_amount,
            "blur_radius": self.blur_radius,
        }
        numeric.update((f"rotation_range[{i}]", v) for i, v in enumerate(self.rotation_range))
        for name, value in numeric.items():
            if not math.isfinite(value):
                raise DegenerateParameter(f"{name} must be a finite number, got {value}")

        if not self.dpi > 0:
            raise DegenerateParameter(f"dpi must be positive, got {self.dpi}")
        if not 0 <= self.quality <= 100:
            raise DegenerateParameter(f"quality must be in [0, 100], got {self.quality}")
        if not 0 <= self.dust_amount <= 1:
            raise DegenerateParameter(f"dust_amount must be in [0, 1], got {self.dust_amount}")
        if not 0 <= self.scratch_amount <= 1:
            raise DegenerateParameter(
                f"scratch_amount must be in [0, 1], got {self.scratch_amount}"
            )
        if len(self.rotation_range) != 2:
            raise DegenerateParameter(
                f"rotation_range needs two bounds, got {self.rotation_range}"
            )
        low, high = self.rotation_range
        if low > high:
            raise DegenerateParameter(f"rotation_range is inverted: {low} > {high}")
        if self.blur_radius < 0:
            raise DegenerateParameter(f"blur_radius must be >= 0, got {self.blur_radius}")

    def tone_filter(self) -> Optional[ToneFilter]:
        """Effective tone preset. Grayscale wins over any color mode."""
        if self.grayscale:
            return self.grayscale_mode
        if self.color_mode != ColorMode.NORMAL:
            return self.color_mode
        return None

    def rotation_angle(self, rng: np.random.Generator) -> Optional[float]:
        """Skew angle in degrees for one page, or None for no rotation."""
        if self.rotation_type == RotationType.NONE:
            return None
        if self.rotation_type == RotationType.RANDOM:
            low, high = self.rotation_range
            return float(rng.uniform(low, high))
        return float(self.rotation_fixed)

    def blur_radius_px(self) -> float:
        """Blur radius in pixels; scales with dpi so perceived blur is constant."""
        return self.blur_radius * self.dpi / 100

    def outside_front_end_ranges(self) -> List[str]:
        """Valid values that lie outside the ranges interactive front ends offer."""
        checks = [("dpi", self.dpi, DPI_RANGE), ("blur_radius", self.blur_radius, BLUR_RADIUS_RANGE)]
        if self.rotation_type == RotationType.FIXED:
            checks.append(("rotation_fixed", self.rotation_fixed, ROTATION_LIMITS))
        elif self.rotation_type == RotationType.RANDOM:
            checks += [("rotation_range", v, ROTATION_LIMITS) for v in self.rotation_range]

        return [
            f"{name}={value:g} is outside the usual range {low:g}..{high:g}"
            for name, value, (low, high) in checks
            if not low <= value <= high
        ]

    def with_changes(self, **changes) -> "ScanSettings":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Plain JSON-compatible representation."""
        d = asdict(self)
        for key, value in d.items():
            if isinstance(value, Enum):
                d[key] = value.value
            elif isinstance(value, tuple):
                d[key] = list(value)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "ScanSettings":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise DegenerateParameter(f"Unknown settings: {', '.join(sorted(unknown))}")
        try:
            return cls(**data)
        except (TypeError, ValueError) as e:
            if isinstance(e, DegenerateParameter):
                raise
            raise DegenerateParameter(str(e)) from e

    @classmethod
    def from_json_file(cls, path: Path) -> "ScanSettings":
        path = Path(path)
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        logger.debug(f"Loaded settings from {path}")
        return cls.from_dict(data)


DEFAULT_SETTINGS = ScanSettings()
