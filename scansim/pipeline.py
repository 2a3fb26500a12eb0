"""
pipeline.py - Scan simulation pipeline.

Pipeline:
1. Load the source PDF and copy it as the output document
2. Rasterize every page in parallel, cache the bitmaps
3. Degrade every cached bitmap in parallel, JPEG encode
4. Replace each output page with its degraded image (original page size)

Settings changes re-run step 3 over the cached bitmaps. Only a dpi change
re-runs step 2 first.
"""

import logging
import math
import multiprocessing
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np

from .compression import FinishedPage
from .effects import apply_effects
from .exceptions import EffectStageFailed, NotReady, ScanSimError
from .pdf_writer import OutputDocument
from .rasterize import RasterPage, SourceDocument, rasterize_page
from .settings import ScanSettings

logger = logging.getLogger(__name__)

Rasterizer = Callable[[SourceDocument, int, float], RasterPage]


class ScanState(Enum):
    EMPTY = "empty"
    LOADED = "loaded"
    RASTERED = "rastered"
    SCANNED = "scanned"


@dataclass
class PageStats:
    """Statistics for a processed page."""
    page_num: int
    success: bool
    stage: str = "scan"
    error: Optional[str] = None
    process_time: float = 0.0
    compressed_size: int = 0


@dataclass
class ScanResult:
    """Result of one rasterize or scan batch."""
    success: bool
    error: Optional[str] = None

    page_count: int = 0
    pages_ok: int = 0
    pages_failed: int = 0

    rasterized: bool = False
    superseded: bool = False
    output_size: int = 0
    total_time: float = 0.0

    input_path: Optional[Path] = None
    output_path: Optional[Path] = None

    page_stats: List[PageStats] = field(default_factory=list)

    @property
    def failed_pages(self) -> List[int]:
        return [s.page_num for s in self.page_stats if not s.success]

    def summary(self) -> str:
        lines = []
        if self.input_path is not None:
            lines.append(f"Input:  {self.input_path.name}")
        if self.output_path is not None:
            lines.append(f"Output: {self.output_path.name} ({self.output_size:,} bytes)")
        lines.append(f"Pages: {self.pages_ok}/{self.page_count}")
        if self.failed_pages:
            lines.append(f"Unchanged pages: {', '.join(str(p) for p in self.failed_pages)}")
        lines.append(f"Time: {self.total_time:.1f}s")
        return "\n".join(lines)


@dataclass
class _RasterCache:
    generation: int
    sequence: int
    dpi: float
    pages: Mapping[int, RasterPage]


def render_page(
    rasterizer: Rasterizer,
    source: SourceDocument,
    page_index: int,
    dpi: float
) -> Tuple[PageStats, Optional[RasterPage]]:
    """Rasterize one page, reporting failure instead of raising."""
    stats = PageStats(page_num=page_index, success=False, stage="rasterize")

    try:
        start = time.time()
        raster = rasterizer(source, page_index, dpi)
        stats.process_time = time.time() - start
        stats.success = True
        return stats, raster

    except Exception as e:
        logger.warning(f"Page {page_index} rasterization failed: {e}")
        stats.error = str(e)
        return stats, None


def process_page(
    raster: Optional[RasterPage],
    source: SourceDocument,
    page_index: int,
    settings: ScanSettings,
    rng: np.random.Generator
) -> Tuple[PageStats, Optional[FinishedPage]]:
    """
    Process a single page: degrade the cached raster and encode it.

    Page geometry comes from the source document, not from the raster.
    """
    stats = PageStats(page_num=page_index, success=False)

    if raster is None:
        stats.stage = "rasterize"
        stats.error = "no raster for page"
        logger.warning(f"Page {page_index}: no raster, keeping previous content")
        return stats, None

    try:
        start = time.time()

        image_data = apply_effects(raster.bitmap, settings, rng, page_index)
        width, height = raster.pixel_size

        finished = FinishedPage(
            page_index=page_index,
            image_data=image_data,
            width=width,
            height=height,
            bounds=source.page_bounds[page_index],
            rotation=source.page_rotations[page_index] if source.page_rotations else 0
        )

        stats.compressed_size = finished.total_size
        stats.process_time = time.time() - start
        stats.success = True

        logger.info(
            f"Page {page_index}: {finished.total_size:,} bytes | "
            f"{width}x{height} | {stats.process_time:.2f}s"
        )
        return stats, finished

    except EffectStageFailed as e:
        logger.warning(f"{e}, keeping previous content")
        stats.stage = e.stage
        stats.error = str(e)
        return stats, None

    except Exception as e:
        logger.error(f"Page {page_index} failed: {e}")
        stats.error = str(e)
        return stats, None


class ScanOrchestrator:
    """
    Owns the source document, the raster cache and the output document.

    States: EMPTY -> LOADED -> RASTERED -> SCANNED. A dpi change sends a
    loaded document back through RASTERED; any other settings change only
    re-scans.

    Batches fan out one task per page and join before touching shared
    state. Each load bumps a generation and each scan takes a sequence
    number; a batch whose generation or sequence has been overtaken by the
    time it joins is discarded rather than applied.
    """

    def __init__(
        self,
        max_workers: int = 0,
        seed: Optional[int] = None,
        page_timeout: Optional[float] = None,
        rasterizer: Rasterizer = rasterize_page,
        progress_callback: Optional[Callable[[int, int], None]] = None
    ):
        """
        Args:
            max_workers: Parallel page workers (0 = CPU count, 1 = sequential)
            seed: Seed for skew angles and noise (None = fresh randomness)
            page_timeout: Seconds each page may take before it counts as failed
            rasterizer: Page renderer, rasterize_page by default
            progress_callback: Optional callback(current, total) per finished page
        """
        if max_workers <= 0:
            max_workers = multiprocessing.cpu_count()

        self.max_workers = max_workers
        self.seed = seed
        self.page_timeout = page_timeout
        self.rasterizer = rasterizer
        self.progress_callback = progress_callback

        self._lock = threading.RLock()
        self._state = ScanState.EMPTY
        self._generation = 0
        self._source: Optional[SourceDocument] = None
        self._output: Optional[OutputDocument] = None
        self._settings: Optional[ScanSettings] = None
        self._cache: Optional[_RasterCache] = None
        self._raster_sequence = 0
        self._raster_generation = 0
        self._scan_sequence = 0
        self._applied_sequence = 0
        self._snapshot: Optional[bytes] = None
        self._last_result: Optional[ScanResult] = None

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def settings(self) -> Optional[ScanSettings]:
        return self._settings

    @property
    def source(self) -> Optional[SourceDocument]:
        return self._source

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def raster_generation(self) -> int:
        """Number of raster caches stored so far."""
        return self._raster_generation

    @property
    def cached_dpi(self) -> Optional[float]:
        cache = self._cache
        return cache.dpi if cache is not None else None

    @property
    def last_result(self) -> Optional[ScanResult]:
        return self._last_result

    def _page_rng(self, page_index: int) -> np.random.Generator:
        if self.seed is None:
            return np.random.default_rng()
        return np.random.default_rng([self.seed, page_index])

    def _fan_out(self, task: Callable, indices: Iterable[int], label: str) -> Dict[int, tuple]:
        """Run task(i) for every index and wait for all of them (or the deadline)."""
        indices = list(indices)
        total = len(indices)
        results = {}

        if not self.page_timeout and (self.max_workers == 1 or total <= 1):
            # Sequential processing; a deadline needs the executor
            for completed, i in enumerate(indices, 1):
                results[i] = task(i)
                if self.progress_callback:
                    self.progress_callback(completed, total)
            return results

        deadline = None
        if self.page_timeout:
            deadline = self.page_timeout * math.ceil(total / self.max_workers)

        # Parallel processing
        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, total))
        try:
            futures = {executor.submit(task, i): i for i in indices}

            completed = 0
            try:
                for future in as_completed(futures, timeout=deadline):
                    results[futures[future]] = future.result()
                    completed += 1
                    if self.progress_callback:
                        self.progress_callback(completed, total)
            except FuturesTimeout:
                late = sorted(i for f, i in futures.items() if not f.done())
                logger.warning(f"{label}: pages {late} did not finish within {deadline:.1f}s")
        finally:
            # Stragglers keep running; their results are never read
            executor.shutdown(wait=False, cancel_futures=True)

        return results

    def load(self, source: Union[str, Path, bytes, SourceDocument], settings: ScanSettings) -> ScanResult:
        """
        Replace all state with a new document, then rasterize and scan it.

        Raises:
            DocumentLoadFailed: the previous document and results stay intact
        """
        if not isinstance(source, SourceDocument):
            source = SourceDocument.open(source)
        output = OutputDocument(source)

        with self._lock:
            previous = self._output
            self._generation += 1
            self._source = source
            self._output = output
            # Stale batches never write once the generation has moved on
            if previous is not None:
                previous.close()
            self._settings = settings
            self._cache = None
            self._snapshot = None
            self._last_result = None
            self._state = ScanState.LOADED

        logger.info(
            f"Loaded {source.name or 'document'}: {source.page_count} pages, "
            f"{len(source.data):,} bytes, {self.max_workers} workers"
        )

        self.rasterize_all()
        return self.scan_all()

    def rasterize_all(self) -> ScanResult:
        """Render every page at the current dpi and replace the cache."""
        with self._lock:
            if self._source is None:
                raise NotReady("No document loaded")
            generation = self._generation
            source = self._source
            dpi = self._settings.dpi
            self._raster_sequence += 1
            sequence = self._raster_sequence

        start_time = time.time()
        logger.info(f"Rasterizing {source.page_count} pages at {dpi:g} DPI")

        outcomes = self._fan_out(
            lambda i: render_page(self.rasterizer, source, i, dpi),
            range(source.page_count),
            "Rasterize"
        )

        result = ScanResult(success=False, page_count=source.page_count, rasterized=True)
        pages = {}
        for i in range(source.page_count):
            if i in outcomes:
                stats, raster = outcomes[i]
            else:
                stats, raster = PageStats(i, False, stage="rasterize", error="timed out"), None
            result.page_stats.append(stats)
            if raster is not None:
                pages[i] = raster

        result.pages_ok = len(pages)
        result.pages_failed = result.page_count - result.pages_ok
        result.total_time = time.time() - start_time

        with self._lock:
            stale = generation != self._generation or (
                self._cache is not None
                and self._cache.generation == generation
                and self._cache.sequence > sequence
            )
            if stale:
                logger.info("Rasterization superseded by a newer run, discarding")
                result.superseded = True
                return result

            self._cache = _RasterCache(generation, sequence, dpi, MappingProxyType(pages))
            self._raster_generation += 1
            self._state = ScanState.RASTERED

        result.success = True
        logger.info(f"Rasterized {result.pages_ok}/{result.page_count} pages in {result.total_time:.1f}s")
        return result

    def scan_all(self) -> ScanResult:
        """
        Degrade every cached page and write the results into the output.

        Re-rasterizes first when the dpi differs from the cached one. Failed
        pages keep whatever the output held for them before.
        """
        with self._lock:
            if self._source is None:
                raise NotReady("No document loaded")
            cache = self._cache
            needs_raster = (
                cache is None
                or cache.generation != self._generation
                or cache.dpi != self._settings.dpi
            )

        rasterized = False
        if needs_raster:
            self.rasterize_all()
            rasterized = True

        with self._lock:
            generation = self._generation
            source = self._source
            settings = self._settings
            cache = self._cache
            self._scan_sequence += 1
            sequence = self._scan_sequence

        start_time = time.time()
        result = ScanResult(success=False, page_count=source.page_count, rasterized=rasterized)

        if cache is None or cache.generation != generation:
            result.superseded = True
            result.error = "document changed during rasterization"
            return result

        outcomes = self._fan_out(
            lambda i: process_page(cache.pages.get(i), source, i, settings, self._page_rng(i)),
            range(source.page_count),
            "Scan"
        )

        finished_pages = []
        for i in range(source.page_count):
            if i in outcomes:
                stats, finished = outcomes[i]
            else:
                stats, finished = PageStats(i, False, error="timed out"), None
            result.page_stats.append(stats)
            if finished is not None:
                finished_pages.append(finished)

        result.pages_ok = len(finished_pages)
        result.pages_failed = result.page_count - result.pages_ok

        with self._lock:
            if generation != self._generation or sequence < self._applied_sequence:
                logger.info("Scan superseded by a newer run, discarding")
                result.superseded = True
                result.total_time = time.time() - start_time
                return result

            for finished in finished_pages:
                self._output.replace_page(finished)
            self._applied_sequence = sequence
            self._snapshot = self._output.to_bytes()
            self._state = ScanState.SCANNED

            result.success = True
            result.output_size = len(self._snapshot)
            result.total_time = time.time() - start_time
            self._last_result = result

        logger.info(
            f"Scanned {result.pages_ok}/{result.page_count} pages in {result.total_time:.1f}s"
        )
        return result

    def notify_settings_changed(self, settings: ScanSettings) -> Optional[ScanResult]:
        """
        Apply new settings. Re-scans, re-rasterizing first if the dpi changed.

        Returns the scan result, or None when no document is loaded.
        """
        with self._lock:
            previous = self._settings
            self._settings = settings
            if self._source is None:
                return None
            if settings == previous and self._last_result is not None:
                logger.debug("Settings unchanged, keeping current result")
                return self._last_result

        if previous is not None and settings.dpi != previous.dpi:
            logger.info(f"DPI changed {previous.dpi:g} -> {settings.dpi:g}")
        return self.scan_all()

    def export_result(self) -> bytes:
        """
        PDF bytes of the output as of the last completed scan.

        Raises:
            NotReady: no scan has completed for the current document
        """
        with self._lock:
            if self._snapshot is None:
                raise NotReady("No completed scan for the current document")
            return self._snapshot

    def save(self, output_path: Path) -> int:
        """Write the last completed scan to a file. Returns its size."""
        output_path = Path(output_path)
        data = self.export_result()
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(data)
        logger.info(f"Saved {output_path} ({len(data):,} bytes)")
        return len(data)


def simulate_scan(
    input_path: Path,
    output_path: Path,
    settings: ScanSettings,
    max_workers: int = 0,
    seed: Optional[int] = None,
    page_timeout: Optional[float] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None
) -> ScanResult:
    """
    Make a scanned-looking copy of a PDF.

    Args:
        input_path: Input PDF
        output_path: Output PDF
        settings: Degradation settings
        max_workers: Parallel workers (0 = auto)
        seed: Seed for reproducible skew and noise
        page_timeout: Per-page time limit in seconds
        progress_callback: Optional callback(current, total)

    Returns:
        ScanResult with statistics; errors are reported, not raised
    """
    input_path = Path(input_path)
    output_path = Path(output_path)

    start_time = time.time()
    orchestrator = ScanOrchestrator(
        max_workers=max_workers,
        seed=seed,
        page_timeout=page_timeout,
        progress_callback=progress_callback
    )

    try:
        result = orchestrator.load(input_path, settings)
        if result.success:
            result.output_size = orchestrator.save(output_path)
    except (ScanSimError, OSError) as e:
        logger.error(f"Scan failed: {e}")
        result = ScanResult(success=False, error=str(e))

    result.input_path = input_path
    result.output_path = output_path
    result.total_time = time.time() - start_time

    if result.success:
        logger.info(f"\n{result.summary()}")

    return result
