"""Volume-weighted combination of regional time-activity curves.

A combined region is the volume-weighted mean of its constituent curves; the
segmentation mean does the same over every region of a time-series file.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

import numpy as np
import pandas as pd

from petregions.interfaces.models import Diagnostics, TimeSeriesFile

logger = logging.getLogger(__name__)

#: Weight given to every region when no volume file could be resolved.
FALLBACK_VOLUME = 1.0


def weighted_mean_curve(
    values: Mapping[str, np.ndarray],
    volumes: Mapping[str, float],
) -> tuple[np.ndarray, float]:
    """Compute the volume-weighted mean of several region curves.

    Parameters
    ----------
    values
        Mapping of region name to per-frame values. All arrays share one frame grid.
    volumes
        Mapping of region name to volume, covering every key of ``values``.

    Returns
    -------
    tuple[np.ndarray, float]
        The per-frame weighted mean and the summed volume. The mean is all-NaN
        when the summed volume is zero.
    """
    names = list(values)
    curves = np.vstack([values[name] for name in names])
    weights = np.asarray([volumes[name] for name in names], dtype=float)
    total = float(weights.sum())
    if total == 0:
        return np.full(curves.shape[1], np.nan), total
    return weights @ curves / total, total


def _resolve_weights(
    regions: Sequence[str],
    volumes: Mapping[str, float] | None,
) -> tuple[dict[str, float], list[str]]:
    """Return weights for *regions* and the regions that have no volume."""
    if volumes is None:
        return {name: FALLBACK_VOLUME for name in regions}, []
    weights = {name: float(volumes[name]) for name in regions if name in volumes}
    missing = [name for name in regions if name not in volumes]
    return weights, missing


class RegionCombiner:
    """Aggregate elementary region curves into a named combined region.

    Each frame of the combined curve is the volume-weighted mean of its
    constituent curves, ``sum(v_i * x_i) / sum(v_i)``. When no volume file was
    resolved every constituent weighs 1.
    """

    OUTPUT_COLUMNS: tuple[str, ...] = (
        "region",
        "volume_mm3",
        "frame_start",
        "frame_end",
        "frame_dur",
        "frame_mid",
        "TAC",
    )

    def __init__(self, diagnostics: Diagnostics | None = None) -> None:
        """
        Initialize a region combiner

        Parameters
        ----------
        diagnostics : Diagnostics | None, optional
            Collector for non-fatal conditions, by default a fresh one
        """
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()

    def _empty(self) -> pd.DataFrame:
        return pd.DataFrame(columns=list(self.OUTPUT_COLUMNS))

    def combine(
        self,
        timeseries: TimeSeriesFile | None,
        constituents: Sequence[str],
        volumes: Mapping[str, float] | None,
        region_name: str,
    ) -> pd.DataFrame:
        """Compute the combined curve of one region for one time-series file.

        Parameters
        ----------
        timeseries
            The time-series file. ``None`` or an empty file yields no rows.
        constituents
            Elementary region names making up the combined region.
        volumes
            Region volumes from the matched volume file, or ``None`` for the
            uniform fallback.
        region_name
            Name written to the ``region`` column.

        Returns
        -------
        pd.DataFrame
            One row per frame with ``region``, ``volume_mm3``, frame timing and
            ``TAC``; empty when nothing could be combined.
        """
        if timeseries is None or timeseries.is_empty:
            self.diagnostics.warn("empty_timeseries", "Time-series data is empty for region %s", region_name)
            return self._empty()

        present = [name for name in dict.fromkeys(constituents) if name in timeseries.regions]
        source = timeseries.record.source_path.name
        if not present:
            self.diagnostics.warn(
                "no_constituents",
                "No constituent regions found for %s in %s",
                region_name,
                source,
            )
            return self._empty()

        weights, missing = _resolve_weights(present, volumes)
        if missing:
            self.diagnostics.warn(
                "missing_volume",
                "Regions %s of %s have no volume in the matched volume file for %s; excluding them",
                ", ".join(missing),
                region_name,
                source,
            )
        if not weights:
            self.diagnostics.warn(
                "no_constituents",
                "No constituent regions found for %s in %s",
                region_name,
                source,
            )
            return self._empty()

        tac, total = weighted_mean_curve({name: timeseries.regions[name] for name in weights}, weights)
        if total == 0:
            self.diagnostics.warn(
                "zero_volume",
                "Total volume of %s is zero in %s; TAC is undefined",
                region_name,
                source,
            )

        rows = timeseries.frame_table()
        rows.insert(0, "region", region_name)
        rows.insert(1, "volume_mm3", total)
        rows["TAC"] = tac
        return rows


class SegmentationSummarizer:
    """Volume-weighted mean curve across every region of a segmentation.

    Results are cached per time-series path, so each file is summarised once
    no matter how many combined regions refer to it.
    """

    def __init__(self, diagnostics: Diagnostics | None = None) -> None:
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()
        self._cache: dict[object, pd.DataFrame] = {}

    def summarize(
        self,
        timeseries: TimeSeriesFile,
        volumes: Mapping[str, float] | None,
    ) -> pd.DataFrame:
        """Return ``frame_start`` and ``seg_meanTAC`` for one time-series file.

        Regions listed in ``volumes`` that are present in the time-series file
        are averaged with their volumes as weights; with ``volumes=None`` every
        region in the file weighs 1.
        """
        key = timeseries.record.source_path
        if key in self._cache:
            return self._cache[key]

        regions = list(timeseries.regions) if volumes is None else [n for n in volumes if n in timeseries.regions]
        if timeseries.is_empty:
            logger.debug("No regions to summarise in %s", key)
            mean = np.full(timeseries.n_frames, np.nan)
        elif not regions:
            self.diagnostics.warn(
                "empty_segmentation",
                "No region of the matched volume file is present in %s; segmentation mean is undefined",
                key.name,
            )
            mean = np.full(timeseries.n_frames, np.nan)
        else:
            weights, _ = _resolve_weights(regions, volumes)
            mean, total = weighted_mean_curve({name: timeseries.regions[name] for name in weights}, weights)
            if total == 0:
                self.diagnostics.warn(
                    "zero_volume",
                    "Total segmentation volume is zero in %s; segmentation mean is undefined",
                    key.name,
                )
        summary = pd.DataFrame({"frame_start": timeseries.frame_start, "seg_meanTAC": mean})
        self._cache[key] = summary
        return summary
