"""Shared structured representations of derivative inputs and outputs."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import ClassVar

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

#: Measurement-identifying attributes, in filename order.
MEASUREMENT_KEYS: tuple[str, ...] = ("sub", "ses", "trc", "rec", "task", "run")

#: Segmentation-identifying attributes, in description order.
DESCRIPTION_KEYS: tuple[str, ...] = ("seg", "label", "pvc", "desc")

CONSOLIDATED_ID_COLUMNS: tuple[str, ...] = (
    *MEASUREMENT_KEYS,
    "segmentation",
    "pet",
    "InjectedRadioactivity",
    "bodyweight",
)
CONSOLIDATED_DATA_COLUMNS: tuple[str, ...] = (
    "region",
    "volume_mm3",
    "frame_start",
    "frame_end",
    "frame_dur",
    "frame_mid",
    "TAC",
    "seg_meanTAC",
)
PER_MEASUREMENT_COLUMNS: tuple[str, ...] = (
    "pet",
    "region",
    "volume_mm3",
    "InjectedRadioactivity",
    "bodyweight",
    "frame_start",
    "frame_end",
    "frame_dur",
    "frame_mid",
    "TAC",
)
MAPPING_COLUMNS: tuple[str, ...] = (
    "RegionName",
    "folder",
    "description",
    *MEASUREMENT_KEYS,
    "pet",
    "tacs_path",
    "morph_path",
    "volume_source",
)


class FileRole(str, Enum):
    """Role of a derivative file, taken from its filename suffix."""

    TIMESERIES = "tacs"
    VOLUME = "morph"
    MEASUREMENT = "pet"


class VolumeSource(str, Enum):
    """How the region volumes of a resolution were obtained."""

    MORPH = "morph"
    FALLBACK = "fallback"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class AttributeRecord:
    """Semantic key/value tokens parsed from a derivative filename.

    Values are opaque strings and absent attributes are ``None``.
    """

    subject: str
    suffix: str
    source_path: Path
    session: str | None = None
    tracer: str | None = None
    reconstruction: str | None = None
    task: str | None = None
    run: str | None = None
    description: str | None = None
    segmentation: str | None = None
    label: str | None = None
    pvc: str | None = None

    #: Filename key for each attribute field.
    FIELD_KEYS: ClassVar[dict[str, str]] = {
        "subject": "sub",
        "session": "ses",
        "tracer": "trc",
        "reconstruction": "rec",
        "task": "task",
        "run": "run",
        "description": "desc",
        "segmentation": "seg",
        "label": "label",
        "pvc": "pvc",
    }

    @property
    def matchable(self) -> bool:
        """Whether the record carries a segmentation or label attribute."""
        return self.segmentation is not None or self.label is not None

    @property
    def entities(self) -> dict[str, str]:
        """Return present attributes keyed by their filename key."""
        return {key: getattr(self, name) for name, key in self.FIELD_KEYS.items() if getattr(self, name) is not None}

    @property
    def measurement_id(self) -> str:
        """Measurement identifier built from the present measurement keys."""
        entities = self.entities
        return "_".join(f"{key}-{entities[key]}" for key in MEASUREMENT_KEYS if key in entities)

    @property
    def file_description(self) -> str:
        """Segmentation-identifying attributes joined in canonical order."""
        entities = self.entities
        return "_".join(f"{key}-{entities[key]}" for key in DESCRIPTION_KEYS if key in entities)

    def with_path(self, path: Path) -> AttributeRecord:
        """Return a copy of the record pointing to another source path."""
        return replace(self, source_path=path)


@dataclass(frozen=True)
class TimeSeriesFile:
    """Per-region activity values over an ordered frame grid."""

    record: AttributeRecord
    frame_start: np.ndarray
    frame_end: np.ndarray
    regions: Mapping[str, np.ndarray]

    @property
    def n_frames(self) -> int:
        return len(self.frame_start)

    @property
    def is_empty(self) -> bool:
        return self.n_frames == 0 or not self.regions

    def frame_table(self) -> pd.DataFrame:
        """Return the frame timing columns shared by every aggregated row."""
        duration = self.frame_end - self.frame_start
        return pd.DataFrame({
            "frame_start": self.frame_start,
            "frame_end": self.frame_end,
            "frame_dur": duration,
            "frame_mid": self.frame_start + duration / 2,
        })


@dataclass(frozen=True)
class VolumeFile:
    """Region volumes derived from a segmentation."""

    record: AttributeRecord
    volumes: Mapping[str, float]


@dataclass(frozen=True)
class RegionDefinition:
    """A user-named combined region made of elementary regions."""

    name: str
    folder: str
    description: str
    constituents: tuple[str, ...]


@dataclass(frozen=True)
class RegionFileMapping:
    """Resolution of one combined region against one time-series file."""

    definition: RegionDefinition
    timeseries: AttributeRecord
    volume_path: Path | None
    volume_source: VolumeSource

    def as_row(self) -> dict[str, object]:
        entities = self.timeseries.entities
        row: dict[str, object] = {
            "RegionName": self.definition.name,
            "folder": self.definition.folder,
            "description": self.definition.description,
        }
        row.update({key: entities.get(key) for key in MEASUREMENT_KEYS})
        row["pet"] = self.timeseries.measurement_id
        row["tacs_path"] = str(self.timeseries.source_path)
        row["morph_path"] = str(self.volume_path) if self.volume_path is not None else None
        row["volume_source"] = self.volume_source.value
        return row


@dataclass
class Diagnostics:
    """Accumulated non-fatal conditions of a combination run."""

    counts: dict[str, int] = field(default_factory=dict)
    messages: list[str] = field(default_factory=list)

    def warn(self, category: str, message: str, *args: object) -> None:
        """Record and log a non-fatal condition."""
        text = message % args if args else message
        self.counts[category] = self.counts.get(category, 0) + 1
        self.messages.append(f"[{category}] {text}")
        logger.warning(text)

    def count(self, category: str) -> int:
        return self.counts.get(category, 0)

    def extend(self, other: Diagnostics) -> None:
        for category, n in other.counts.items():
            self.counts[category] = self.counts.get(category, 0) + n
        self.messages.extend(other.messages)


@dataclass
class SubsetParams:
    """Optional filters applied to the consolidated table."""

    sub: list[str] | None = None
    ses: list[str] | None = None
    trc: list[str] | None = None
    rec: list[str] | None = None
    task: list[str] | None = None
    run: list[str] | None = None
    regions: list[str] | None = None


@dataclass
class CombinationConfig:
    """Configuration parsed from TOML input and CLI overrides."""

    derivatives_dir: Path
    output_dir: Path
    regions_file: Path
    bids_dir: Path | None = None
    pipelines: list[str] | None = None
    subjects: list[str] | None = None
    sessions: list[str] | None = None
    per_measurement: bool = False
    subset: SubsetParams = field(default_factory=SubsetParams)
    log_level: int = logging.INFO


@dataclass(frozen=True)
class CombinationResult:
    """Tables and diagnostics produced by one combination pass."""

    consolidated: pd.DataFrame
    mapping: pd.DataFrame
    diagnostics: Diagnostics
    participant_columns: Sequence[str] = ()


class RegionCombinationError(RuntimeError):
    """Base class for fatal combination errors."""


class NoRegionsResolvedError(RegionCombinationError):
    """Raised when no region definition resolves anywhere in the run."""

    def __init__(self, n_definitions: int):
        super().__init__(f"None of the {n_definitions} region definitions resolved to a time-series file")


class OutputWriteError(RegionCombinationError):
    """Raised when outputs cannot be created or written."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"Cannot write output to {path}: {reason}")


class RegionDefinitionError(RegionCombinationError, ValueError):
    """Raised when the region definitions table is malformed."""
