"""Tests for volume-weighted region combination."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pytest

from petregions.combine import FALLBACK_VOLUME, RegionCombiner, SegmentationSummarizer, weighted_mean_curve
from petregions.interfaces.entities import parse_attributes
from petregions.interfaces.models import Diagnostics, TimeSeriesFile


def _timeseries(regions: dict[str, list[float]], name: str = "sub-01_seg-gtm_tacs.tsv") -> TimeSeriesFile:
    n = len(next(iter(regions.values()))) if regions else 0
    start = np.arange(n, dtype=float)
    return TimeSeriesFile(
        record=parse_attributes(Path("/d") / name),
        frame_start=start,
        frame_end=start + 1,
        regions={k: np.asarray(v, dtype=float) for k, v in regions.items()},
    )


def test_weighted_mean_curve() -> None:
    """Test the weighted mean of two curves and the summed volume."""
    tac, total = weighted_mean_curve(
        {"L": np.array([10.0, 20.0]), "R": np.array([12.0, 22.0])},
        {"L": 50000.0, "R": 52000.0},
    )

    assert total == 102000.0
    assert list(tac) == pytest.approx([11.0196, 21.0196], abs=1e-4)


def test_weighted_mean_curve_zero_volume_is_nan() -> None:
    """Test that a zero summed volume gives an all-NaN curve."""
    tac, total = weighted_mean_curve({"L": np.array([1.0, 2.0])}, {"L": 0.0})

    assert total == 0.0
    assert np.isnan(tac).all()


class TestRegionCombiner:
    """Tests for combining constituent curves."""

    def test_two_region_combination(self) -> None:
        """Test combining two constituents weighted by their volumes."""
        ts = _timeseries({"L": [10.0, 20.0], "R": [12.0, 22.0], "H": [5.0, 10.0]})

        rows = RegionCombiner().combine(ts, ["L", "R"], {"L": 50000.0, "R": 52000.0, "H": 4000.0}, "Cortex")

        assert list(rows.columns) == list(RegionCombiner.OUTPUT_COLUMNS)
        assert len(rows) == 2
        assert (rows["region"] == "Cortex").all()
        assert (rows["volume_mm3"] == 102000.0).all()
        expected = [(10 * 50000 + 12 * 52000) / 102000, (20 * 50000 + 22 * 52000) / 102000]
        assert list(rows["TAC"]) == pytest.approx(expected)
        assert list(rows["TAC"]) == pytest.approx([11.0196, 21.0196], abs=1e-4)

    def test_frame_timing_is_carried(self) -> None:
        """Test that frame duration and midpoint are derived from the frame grid."""
        ts = _timeseries({"L": [1.0, 2.0]})

        rows = RegionCombiner().combine(ts, ["L"], {"L": 1.0}, "L")

        assert list(rows["frame_dur"]) == [1.0, 1.0]
        assert list(rows["frame_mid"]) == [0.5, 1.5]

    def test_nonexistent_constituent_yields_no_rows(self, caplog) -> None:
        """Test that a region with no constituent in the file yields no rows."""
        ts = _timeseries({"Left-Cerebral-Cortex": [10.0, 20.0]})
        diagnostics = Diagnostics()

        with caplog.at_level(logging.WARNING):
            rows = RegionCombiner(diagnostics).combine(ts, ["NonExistent"], {"Left-Cerebral-Cortex": 50000.0}, "Test")

        assert len(rows) == 0
        assert "No constituent regions found" in caplog.text
        assert diagnostics.count("no_constituents") == 1

    def test_absent_constituents_are_dropped(self) -> None:
        """Test that constituents absent from the file are left out of the weighting."""
        ts = _timeseries({"L": [10.0, 20.0]})

        rows = RegionCombiner().combine(ts, ["L", "Missing"], {"L": 5.0}, "Cortex")

        assert list(rows["TAC"]) == [10.0, 20.0]
        assert (rows["volume_mm3"] == 5.0).all()

    @pytest.mark.parametrize("timeseries", [None, "empty"])
    def test_empty_or_missing_timeseries(self, timeseries, caplog) -> None:
        """Test that an empty or unreadable time-series file yields no rows."""
        ts = _timeseries({}) if timeseries == "empty" else None
        diagnostics = Diagnostics()

        with caplog.at_level(logging.WARNING):
            rows = RegionCombiner(diagnostics).combine(ts, ["L"], {"L": 1.0}, "Test")

        assert len(rows) == 0
        assert "empty" in caplog.text
        assert diagnostics.count("empty_timeseries") == 1

    def test_fallback_uses_unit_volumes(self) -> None:
        """Test that every constituent weighs 1 without a volume file."""
        ts = _timeseries({"L": [10.0, 20.0], "R": [12.0, 22.0]})

        rows = RegionCombiner().combine(ts, ["L", "R"], None, "Cortex")

        assert list(rows["TAC"]) == [11.0, 21.0]
        assert (rows["volume_mm3"] == 2 * FALLBACK_VOLUME).all()

    def test_constituent_without_volume_is_excluded(self) -> None:
        """Test that a constituent missing from the volume file is excluded."""
        ts = _timeseries({"L": [10.0, 20.0], "R": [12.0, 22.0]})
        diagnostics = Diagnostics()

        rows = RegionCombiner(diagnostics).combine(ts, ["L", "R"], {"L": 3.0}, "Cortex")

        assert list(rows["TAC"]) == [10.0, 20.0]
        assert diagnostics.count("missing_volume") == 1

    def test_zero_total_volume_is_flagged(self) -> None:
        """Test that zero total volume keeps the rows with a NaN TAC."""
        ts = _timeseries({"L": [10.0, 20.0], "R": [12.0, 22.0]})
        diagnostics = Diagnostics()

        rows = RegionCombiner(diagnostics).combine(ts, ["L", "R"], {"L": 0.0, "R": 0.0}, "Cortex")

        assert len(rows) == 2
        assert rows["TAC"].isna().all()
        assert diagnostics.count("zero_volume") == 1

    def test_duplicate_constituents_count_once(self) -> None:
        """Test that a repeated constituent is weighted once."""
        ts = _timeseries({"L": [10.0, 20.0], "R": [12.0, 22.0]})

        rows = RegionCombiner().combine(ts, ["L", "L", "R"], {"L": 1.0, "R": 3.0}, "Cortex")

        assert (rows["volume_mm3"] == 4.0).all()
        assert rows["TAC"].iloc[0] == pytest.approx((10 + 36) / 4)


class TestSegmentationSummarizer:
    """Tests for the whole-segmentation mean curve."""

    def test_uses_every_region_with_a_volume(self) -> None:
        """Test that every region with a volume contributes to the segmentation mean."""
        ts = _timeseries({"L": [10.0, 20.0], "R": [12.0, 22.0], "H": [5.0, 10.0]})

        summary = SegmentationSummarizer().summarize(ts, {"L": 50000.0, "R": 52000.0, "H": 4000.0, "X": 9.0})

        expected = (10 * 50000 + 12 * 52000 + 5 * 4000) / 106000
        assert summary["seg_meanTAC"].iloc[0] == pytest.approx(expected)

    def test_fallback_averages_every_region(self) -> None:
        """Test the unweighted segmentation mean without a volume file."""
        ts = _timeseries({"L": [10.0, 20.0], "R": [12.0, 22.0]})

        summary = SegmentationSummarizer().summarize(ts, None)

        assert list(summary["seg_meanTAC"]) == [11.0, 21.0]

    def test_results_are_cached_per_file(self) -> None:
        """Test that each time-series file is summarised once."""
        ts = _timeseries({"L": [10.0, 20.0]})
        summarizer = SegmentationSummarizer()

        first = summarizer.summarize(ts, None)
        second = summarizer.summarize(ts, {"L": 2.0})

        assert first is second

    def test_no_overlapping_regions_is_nan(self, caplog) -> None:
        """Test that a volume file sharing no region with the file gives a flagged NaN mean."""
        ts = _timeseries({"L": [10.0, 20.0]})
        diagnostics = Diagnostics()

        with caplog.at_level(logging.WARNING):
            summary = SegmentationSummarizer(diagnostics).summarize(ts, {"X": 1.0})

        assert summary["seg_meanTAC"].isna().all()
        assert diagnostics.count("empty_segmentation") == 1
        assert "sub-01_seg-gtm_tacs.tsv" in caplog.text

    def test_empty_file_is_not_flagged_twice(self) -> None:
        """Test that an empty file, already reported by the combiner, adds no segmentation warning."""
        diagnostics = Diagnostics()

        summary = SegmentationSummarizer(diagnostics).summarize(_timeseries({}), None)

        assert summary.empty
        assert diagnostics.counts == {}
