"""Shared interface utilities and models."""

from petregions.interfaces.models import (
    AttributeRecord,
    CombinationConfig,
    CombinationResult,
    Diagnostics,
    NoRegionsResolvedError,
    OutputWriteError,
    RegionCombinationError,
    RegionDefinition,
    RegionDefinitionError,
    RegionFileMapping,
    SubsetParams,
    TimeSeriesFile,
    VolumeFile,
    VolumeSource,
)
from petregions.interfaces.utils import _parse_log_level

__all__ = [
    "AttributeRecord",
    "CombinationConfig",
    "CombinationResult",
    "Diagnostics",
    "NoRegionsResolvedError",
    "OutputWriteError",
    "RegionCombinationError",
    "RegionDefinition",
    "RegionDefinitionError",
    "RegionFileMapping",
    "SubsetParams",
    "TimeSeriesFile",
    "VolumeFile",
    "VolumeSource",
    "_parse_log_level",
]
