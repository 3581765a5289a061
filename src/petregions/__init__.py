"""Volume-weighted combination of regional PET time-activity curves.

This package resolves which time-activity and morphology files belong
together across pipeline derivatives, merges user-defined groups of regions
into volume-weighted combined regions and attaches injected radioactivity and
participant data. It provides both a Python and a CLI interface.
"""

from petregions.combine import RegionCombiner, SegmentationSummarizer

__all__ = ["RegionCombiner", "SegmentationSummarizer"]
