"""
exceptions.py - Error types for the scan simulator.

Page-level errors (rasterization, effect stages) are recovered per page by the
pipeline. Load errors abort only the load call that raised them.
"""

from typing import Optional


class ScanSimError(Exception):
    """Base exception for the scan simulator."""
    pass


class RasterizationFailed(ScanSimError):
    """A page could not be rendered to a bitmap."""

    def __init__(self, page_index: int, reason: str = ""):
        self.page_index = page_index
        self.reason = reason
        super().__init__(f"Rasterization failed for page {page_index}: {reason}")


class EffectStageFailed(ScanSimError):
    """A stage of the effect chain produced no image for a page."""

    def __init__(self, page_index: int, stage: str, reason: str = ""):
        self.page_index = page_index
        self.stage = stage
        self.reason = reason
        msg = f"Effect stage '{stage}' failed for page {page_index}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class DegenerateParameter(ScanSimError, ValueError):
    """A setting would feed an invalid value into an effect stage."""
    pass


class DocumentLoadFailed(ScanSimError):
    """The source document could not be parsed or copied."""

    def __init__(self, source: Optional[str], reason: str = ""):
        self.source = source
        self.reason = reason
        super().__init__(f"Could not load {source or 'document'}: {reason}")


class NotReady(ScanSimError):
    """No scan has completed for the current document."""
    pass
