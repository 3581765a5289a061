"""Volume-weighted aggregation of regional time-activity curves."""

from petregions.combine.weighted import (
    FALLBACK_VOLUME,
    RegionCombiner,
    SegmentationSummarizer,
    weighted_mean_curve,
)

__all__ = ["FALLBACK_VOLUME", "RegionCombiner", "SegmentationSummarizer", "weighted_mean_curve"]
