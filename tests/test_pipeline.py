"""Tests for the scan orchestrator in scansim.pipeline."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import List, Tuple

import pytest

from conftest import LETTER, page_boxes, page_image, page_jpeg, page_text
from scansim import pipeline
from scansim.effects import apply_effects
from scansim.exceptions import DocumentLoadFailed, EffectStageFailed, NotReady, RasterizationFailed
from scansim.pipeline import ScanOrchestrator, ScanState, simulate_scan
from scansim.rasterize import rasterize_page
from scansim.settings import BlurType, RotationType, ScanSettings


class CountingRasterizer:
    """rasterize_page wrapper that records every call."""

    def __init__(self, fail_pages=()):
        self.calls: List[Tuple[int, float]] = []
        self.fail_pages = set(fail_pages)
        self._lock = threading.Lock()

    def __call__(self, source, page_index, dpi):
        with self._lock:
            self.calls.append((page_index, dpi))
        if page_index in self.fail_pages:
            raise RasterizationFailed(page_index, "forced failure")
        return rasterize_page(source, page_index, dpi)


class TestLifecycle:
    """State machine and readiness."""

    def test_starts_empty(self) -> None:
        orch = ScanOrchestrator()
        assert orch.state is ScanState.EMPTY
        with pytest.raises(NotReady):
            orch.export_result()
        with pytest.raises(NotReady):
            orch.scan_all()
        with pytest.raises(NotReady):
            orch.rasterize_all()

    def test_load_runs_through_to_scanned(self, three_page_pdf: bytes, plain_settings: ScanSettings) -> None:
        orch = ScanOrchestrator(max_workers=3)
        result = orch.load(three_page_pdf, plain_settings)
        assert result.success
        assert result.pages_ok == 3
        assert result.pages_failed == 0
        assert orch.state is ScanState.SCANNED
        assert orch.cached_dpi == 72
        assert orch.export_result()[:5] == b"%PDF-"

    def test_rasterize_all_moves_back_to_rastered(self, letter_pdf: bytes, plain_settings: ScanSettings) -> None:
        orch = ScanOrchestrator(max_workers=1)
        orch.load(letter_pdf, plain_settings)
        orch.rasterize_all()
        assert orch.state is ScanState.RASTERED
        # The last completed scan is still exported
        assert page_jpeg(orch.export_result(), 0) is not None

    def test_notify_before_load(self, plain_settings: ScanSettings) -> None:
        orch = ScanOrchestrator()
        assert orch.notify_settings_changed(plain_settings) is None
        assert orch.settings == plain_settings
        assert orch.state is ScanState.EMPTY

    def test_save(self, tmp_path: Path, letter_pdf: bytes, plain_settings: ScanSettings) -> None:
        orch = ScanOrchestrator(max_workers=1)
        orch.load(letter_pdf, plain_settings)
        path = tmp_path / "nested" / "out.pdf"
        size = orch.save(path)
        assert path.stat().st_size == size
        assert path.read_bytes() == orch.export_result()


class TestInvariants:
    """Page count and geometry never drift."""

    def test_page_count_and_geometry(self, three_page_pdf: bytes, busy_settings: ScanSettings) -> None:
        orch = ScanOrchestrator(max_workers=3)
        orch.load(three_page_pdf, busy_settings)
        expected = page_boxes(three_page_pdf)

        for changes in ({"dust_amount": 0.1}, {"dpi": 50}, {"rotation_fixed": -2.0}, {"dpi": 90}):
            orch.notify_settings_changed(orch.settings.with_changes(**changes))
            out = orch.export_result()
            assert page_boxes(out) == expected
            for i in range(3):
                assert page_jpeg(out, i) is not None

    def test_output_raster_size_follows_dpi(self, three_page_pdf: bytes, plain_settings: ScanSettings) -> None:
        orch = ScanOrchestrator(max_workers=2)
        orch.load(three_page_pdf, plain_settings.with_changes(dpi=144))
        out = orch.export_result()
        assert page_image(out, 0).size == (1224, 1584)
        assert page_image(out, 1).size == (1684, 1190)


class TestRasterCache:
    """Only a dpi change re-rasterizes."""

    def test_dpi_change_triggers_rasterization(self, three_page_pdf: bytes, plain_settings: ScanSettings) -> None:
        rasterizer = CountingRasterizer()
        orch = ScanOrchestrator(max_workers=3, rasterizer=rasterizer)
        orch.load(three_page_pdf, plain_settings)
        assert len(rasterizer.calls) == 3
        assert orch.raster_generation == 1

        result = orch.notify_settings_changed(plain_settings.with_changes(dust_amount=0.7, quality=40))
        assert not result.rasterized
        assert len(rasterizer.calls) == 3
        assert orch.raster_generation == 1

        result = orch.notify_settings_changed(orch.settings.with_changes(dpi=36))
        assert result.rasterized
        assert len(rasterizer.calls) == 6
        assert {dpi for _, dpi in rasterizer.calls[3:]} == {36}
        assert orch.raster_generation == 2
        assert orch.cached_dpi == 36
        assert page_image(orch.export_result(), 0).size == (306, 396)

    def test_unchanged_settings_is_no_op(self, letter_pdf: bytes, plain_settings: ScanSettings) -> None:
        rasterizer = CountingRasterizer()
        orch = ScanOrchestrator(max_workers=1, rasterizer=rasterizer)
        first = orch.load(letter_pdf, plain_settings)
        again = orch.notify_settings_changed(ScanSettings(**plain_settings.to_dict()))
        assert again is first
        assert len(rasterizer.calls) == 1

    def test_scan_all_reuses_cache(self, letter_pdf: bytes, plain_settings: ScanSettings) -> None:
        rasterizer = CountingRasterizer()
        orch = ScanOrchestrator(max_workers=1, rasterizer=rasterizer)
        orch.load(letter_pdf, plain_settings)
        orch.scan_all()
        orch.scan_all()
        assert len(rasterizer.calls) == 1


class TestIdempotence:
    """Same settings, same seed, same bytes."""

    def test_rescan_is_bit_identical(self, three_page_pdf: bytes, busy_settings: ScanSettings) -> None:
        orch = ScanOrchestrator(max_workers=3, seed=1234)
        orch.load(three_page_pdf, busy_settings)
        first = [page_jpeg(orch.export_result(), i) for i in range(3)]

        orch.scan_all()
        second = [page_jpeg(orch.export_result(), i) for i in range(3)]

        assert first == second
        assert all(first)

    def test_unseeded_noise_differs(self, letter_pdf: bytes, busy_settings: ScanSettings) -> None:
        orch = ScanOrchestrator(max_workers=1)
        orch.load(letter_pdf, busy_settings)
        first = page_jpeg(orch.export_result(), 0)
        orch.scan_all()
        assert page_jpeg(orch.export_result(), 0) != first

    def test_random_rotation_drawn_per_page(
        self, monkeypatch: pytest.MonkeyPatch, pdf_factory, plain_settings: ScanSettings
    ) -> None:
        angles = []
        original = ScanSettings.rotation_angle

        def recording(self, rng):
            angle = original(self, rng)
            angles.append(angle)
            return angle

        monkeypatch.setattr(ScanSettings, "rotation_angle", recording)
        settings = plain_settings.with_changes(
            rotation_type=RotationType.RANDOM, rotation_range=(-3.0, 3.0)
        )
        orch = ScanOrchestrator(max_workers=1, seed=5)
        orch.load(pdf_factory([LETTER] * 4), settings)

        assert len(angles) == 4
        assert len(set(angles)) == 4
        assert all(-3.0 <= a <= 3.0 for a in angles)


class TestFailureIsolation:
    """A failed page never blocks the others."""

    def test_rasterization_failure_keeps_source_page(
        self, three_page_pdf: bytes, plain_settings: ScanSettings
    ) -> None:
        orch = ScanOrchestrator(max_workers=3, rasterizer=CountingRasterizer(fail_pages={1}))
        result = orch.load(three_page_pdf, plain_settings)

        assert result.success
        assert orch.state is ScanState.SCANNED
        assert result.pages_ok == 2
        assert result.failed_pages == [1]

        out = orch.export_result()
        assert page_jpeg(out, 0) is not None
        assert page_jpeg(out, 2) is not None
        assert page_jpeg(out, 1) is None
        assert "Page 2" in page_text(out, 1)
        assert page_boxes(out) == page_boxes(three_page_pdf)

    def test_effect_failure_keeps_previous_result(
        self, monkeypatch: pytest.MonkeyPatch, three_page_pdf: bytes, plain_settings: ScanSettings
    ) -> None:
        orch = ScanOrchestrator(max_workers=3, seed=3)
        orch.load(three_page_pdf, plain_settings)
        before = [page_jpeg(orch.export_result(), i) for i in range(3)]

        def failing_on_page_1(bitmap, settings, rng=None, page_index=0):
            if page_index == 1:
                raise EffectStageFailed(page_index, "blur", "filter unavailable")
            return apply_effects(bitmap, settings, rng, page_index)

        monkeypatch.setattr(pipeline, "apply_effects", failing_on_page_1)
        result = orch.notify_settings_changed(
            plain_settings.with_changes(blur_type=BlurType.BOX, blur_radius=2.0)
        )

        assert result.success
        assert result.failed_pages == [1]
        assert result.page_stats[1].stage == "blur"
        after = [page_jpeg(orch.export_result(), i) for i in range(3)]
        assert after[1] == before[1]
        assert after[0] != before[0]
        assert after[2] != before[2]

    def test_all_pages_fail(self, three_page_pdf: bytes, plain_settings: ScanSettings) -> None:
        orch = ScanOrchestrator(max_workers=2, rasterizer=CountingRasterizer(fail_pages={0, 1, 2}))
        result = orch.load(three_page_pdf, plain_settings)
        assert result.success
        assert result.pages_ok == 0
        out = orch.export_result()
        assert [page_jpeg(out, i) for i in range(3)] == [None, None, None]
        assert "Page 3" in page_text(out, 2)

    def test_zero_scratch_amount(self, letter_pdf: bytes, busy_settings: ScanSettings) -> None:
        orch = ScanOrchestrator(max_workers=1)
        result = orch.load(letter_pdf, busy_settings.with_changes(scratch_amount=0.0))
        assert result.pages_ok == 1

    def test_slow_page_times_out(self, three_page_pdf: bytes, plain_settings: ScanSettings) -> None:
        def slow_middle_page(source, page_index, dpi):
            if page_index == 1:
                time.sleep(3.0)
            return rasterize_page(source, page_index, dpi)

        orch = ScanOrchestrator(max_workers=3, page_timeout=1.0, rasterizer=slow_middle_page)
        result = orch.load(three_page_pdf, plain_settings)

        assert result.success
        assert result.failed_pages == [1]
        out = orch.export_result()
        assert page_jpeg(out, 1) is None
        assert page_jpeg(out, 0) is not None

    def test_single_page_times_out(self, letter_pdf: bytes, plain_settings: ScanSettings) -> None:
        def slow_page(source, page_index, dpi):
            time.sleep(2.0)
            return rasterize_page(source, page_index, dpi)

        orch = ScanOrchestrator(max_workers=4, page_timeout=0.5, rasterizer=slow_page)
        start = time.time()
        result = orch.load(letter_pdf, plain_settings)

        assert time.time() - start < 1.8
        assert result.failed_pages == [0]
        assert page_jpeg(orch.export_result(), 0) is None

    def test_one_worker_times_out(self, three_page_pdf: bytes, plain_settings: ScanSettings) -> None:
        def slow_last_page(source, page_index, dpi):
            if page_index == 2:
                time.sleep(4.0)
            return rasterize_page(source, page_index, dpi)

        # Three pages on one worker may take 3 * 1.0s in total
        orch = ScanOrchestrator(max_workers=1, page_timeout=1.0, rasterizer=slow_last_page)
        result = orch.load(three_page_pdf, plain_settings)

        assert result.failed_pages == [2]
        out = orch.export_result()
        assert page_jpeg(out, 0) is not None
        assert page_jpeg(out, 1) is not None
        assert page_jpeg(out, 2) is None


class TestLoad:
    """Loading replaces everything, or nothing on failure."""

    def test_failed_first_load(self, plain_settings: ScanSettings) -> None:
        orch = ScanOrchestrator()
        with pytest.raises(DocumentLoadFailed):
            orch.load(b"not a pdf", plain_settings)
        assert orch.state is ScanState.EMPTY
        assert orch.source is None
        with pytest.raises(NotReady):
            orch.export_result()

    def test_failed_load_keeps_previous_document(
        self, three_page_pdf: bytes, plain_settings: ScanSettings
    ) -> None:
        orch = ScanOrchestrator(max_workers=2)
        orch.load(three_page_pdf, plain_settings)
        before = orch.export_result()
        generation = orch.generation

        with pytest.raises(DocumentLoadFailed):
            orch.load(b"%PDF-1.7 truncated", plain_settings)

        assert orch.state is ScanState.SCANNED
        assert orch.generation == generation
        assert orch.source.page_count == 3
        assert orch.export_result() == before

    def test_reload_replaces_state(self, three_page_pdf: bytes, letter_pdf: bytes, plain_settings: ScanSettings) -> None:
        orch = ScanOrchestrator(max_workers=2)
        orch.load(three_page_pdf, plain_settings)
        orch.load(letter_pdf, plain_settings)
        assert orch.source.page_count == 1
        assert len(page_boxes(orch.export_result())) == 1

    def test_reload_closes_previous_output(
        self, monkeypatch: pytest.MonkeyPatch, three_page_pdf: bytes, letter_pdf: bytes, plain_settings: ScanSettings
    ) -> None:
        closed = []
        real_close = pipeline.OutputDocument.close

        def recording_close(self):
            closed.append(self.page_count)
            real_close(self)

        monkeypatch.setattr(pipeline.OutputDocument, "close", recording_close)
        orch = ScanOrchestrator(max_workers=2)
        orch.load(three_page_pdf, plain_settings)
        assert closed == []

        orch.load(letter_pdf, plain_settings)
        assert closed == [3]
        assert len(page_boxes(orch.export_result())) == 1

    def test_load_from_path(self, tmp_path: Path, letter_pdf: bytes, plain_settings: ScanSettings) -> None:
        path = tmp_path / "in.pdf"
        path.write_bytes(letter_pdf)
        orch = ScanOrchestrator(max_workers=1)
        assert orch.load(path, plain_settings).success

    def test_load_during_scan_discards_stale_results(
        self, monkeypatch: pytest.MonkeyPatch, pdf_factory, plain_settings: ScanSettings
    ) -> None:
        orch = ScanOrchestrator(max_workers=1)
        orch.load(pdf_factory([LETTER] * 3), plain_settings)
        other = pdf_factory([(300.0, 400.0)])
        reloaded = []

        def effects_then_reload(bitmap, settings, rng=None, page_index=0):
            if not reloaded:
                reloaded.append(True)
                orch.load(other, settings)
            return apply_effects(bitmap, settings, rng, page_index)

        monkeypatch.setattr(pipeline, "apply_effects", effects_then_reload)
        result = orch.notify_settings_changed(plain_settings.with_changes(dust_amount=0.2))

        assert result.superseded
        assert not result.success
        out = orch.export_result()
        assert page_boxes(out) == [(0.0, 0.0, 300.0, 400.0)]
        assert orch.source.page_count == 1


class TestEndToEnd:
    """Letter page at 200 dpi with only re-encoding applied."""

    def test_letter_at_200_dpi(self, letter_pdf: bytes) -> None:
        settings = ScanSettings(
            dpi=200,
            rotation_type=RotationType.FIXED,
            rotation_fixed=0.0,
            dust_amount=0.0,
            scratch_amount=1.0,
            blur_type=BlurType.NONE,
            grayscale=False,
            quality=100,
        )
        orch = ScanOrchestrator(seed=0)
        result = orch.load(letter_pdf, settings)

        assert result.pages_ok == 1
        out = orch.export_result()
        assert page_boxes(out) == [(0.0, 0.0, 612.0, 792.0)]
        image = page_image(out, 0)
        assert image.height == 2200
        assert image.width == 1700

    def test_simulate_scan(self, tmp_path: Path, three_page_pdf: bytes, busy_settings: ScanSettings) -> None:
        src = tmp_path / "doc.pdf"
        dst = tmp_path / "doc_scanned.pdf"
        src.write_bytes(three_page_pdf)
        progress = []

        result = simulate_scan(
            src, dst, busy_settings, max_workers=2, seed=1,
            progress_callback=lambda current, total: progress.append((current, total))
        )

        assert result.success
        assert result.output_size == dst.stat().st_size
        assert result.pages_ok == 3
        assert (3, 3) in progress
        assert "Pages: 3/3" in result.summary()

    def test_simulate_scan_reports_errors(self, tmp_path: Path, plain_settings: ScanSettings) -> None:
        result = simulate_scan(tmp_path / "missing.pdf", tmp_path / "out.pdf", plain_settings)
        assert not result.success
        assert result.error
        assert not (tmp_path / "out.pdf").exists()
