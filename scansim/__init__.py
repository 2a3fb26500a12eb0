"""
Scan Simulator - make clean PDFs look printed, scanned and re-digitized.

Each page is rasterized, skewed, dusted, scratched, toned, blurred and
JPEG-compressed, then put back into the document at its original page size.
"""

from .exceptions import (
    DegenerateParameter,
    DocumentLoadFailed,
    EffectStageFailed,
    NotReady,
    RasterizationFailed,
    ScanSimError,
)
from .pipeline import ScanOrchestrator, ScanResult, ScanState, simulate_scan
from .settings import BlurType, ColorMode, GrayscaleMode, RotationType, ScanSettings

__version__ = "1.0.0"

__all__ = [
    "BlurType",
    "ColorMode",
    "DegenerateParameter",
    "DocumentLoadFailed",
    "EffectStageFailed",
    "GrayscaleMode",
    "NotReady",
    "RasterizationFailed",
    "RotationType",
    "ScanOrchestrator",
    "ScanResult",
    "ScanSettings",
    "ScanSimError",
    "ScanState",
    "simulate_scan",
]
