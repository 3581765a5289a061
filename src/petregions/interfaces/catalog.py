"""IO utilities for discovering and reading pipeline derivative tables."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pandas as pd

from petregions.interfaces.entities import parse_attributes
from petregions.interfaces.models import (
    AttributeRecord,
    Diagnostics,
    FileRole,
    TimeSeriesFile,
    VolumeFile,
)

logger = logging.getLogger(__name__)

#: Columns of a time-series table that carry timing rather than regions.
TIME_COLUMNS: frozenset[str] = frozenset({"frame_start", "frame_end", "frame_dur", "frame_mid", "time"})

VOLUME_NAME_COLUMN = "name"
VOLUME_VALUE_COLUMN = "volume-mm3"


class DerivativeFileError(ValueError):
    """Raised when a derivative table cannot be read into its typed form."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path


@dataclass
class FileCatalog:
    """Parsed time-series and volume files of one pipeline folder."""

    folder: str
    root: Path
    timeseries: list[AttributeRecord] = field(default_factory=list)
    volumes: list[AttributeRecord] = field(default_factory=list)
    n_unparsable: int = 0
    n_unmatchable: int = 0

    def timeseries_table(self) -> pd.DataFrame:
        return records_to_frame(self.timeseries)

    def volume_table(self) -> pd.DataFrame:
        return records_to_frame(self.volumes)

    def with_description(self, description: str) -> list[AttributeRecord]:
        """Return time-series records whose file description equals *description*."""
        return [record for record in self.timeseries if record.file_description == description]


def records_to_frame(records: Iterable[AttributeRecord]) -> pd.DataFrame:
    """Tabulate attribute records, one row per file.

    Absent attributes become ``None``; all values stay strings.
    """
    columns = ["path", *AttributeRecord.FIELD_KEYS]
    rows = [
        {"path": record.source_path, **{name: getattr(record, name) for name in AttributeRecord.FIELD_KEYS}}
        for record in records
    ]
    return pd.DataFrame(rows, columns=columns, dtype=object)


def build_catalog(
    root: Path,
    folder: str | None = None,
    diagnostics: Diagnostics | None = None,
    subjects: Iterable[str] | None = None,
    sessions: Iterable[str] | None = None,
) -> FileCatalog:
    """Scan a pipeline folder once and partition its files by role.

    Parameters
    ----------
    root
        Pipeline folder to scan recursively; flat and nested layouts are both supported.
    folder
        Name used to refer to the pipeline; defaults to ``root.name``.
    diagnostics
        Collector for dropped-file counts.
    subjects, sessions
        Optional identifiers restricting the catalog.

    Returns
    -------
    FileCatalog
        Catalog of matchable time-series and volume files, sorted by path.
    """
    root = Path(root)
    diagnostics = diagnostics if diagnostics is not None else Diagnostics()
    catalog = FileCatalog(folder=folder or root.name, root=root)
    subject_filter = set(subjects) if subjects else None
    session_filter = set(sessions) if sessions else None
    roles = {FileRole.TIMESERIES.value: catalog.timeseries, FileRole.VOLUME.value: catalog.volumes}

    for path in sorted(p for p in root.rglob("*.tsv") if p.is_file()):
        if not path.name.endswith((f"_{FileRole.TIMESERIES.value}.tsv", f"_{FileRole.VOLUME.value}.tsv")):
            continue
        record = parse_attributes(path)
        if record is None:
            catalog.n_unparsable += 1
            diagnostics.warn("unparsable_filename", "Excluding %s: filename has no subject entity", path)
            continue
        if not record.matchable:
            catalog.n_unmatchable += 1
            logger.debug("Excluding %s: no seg or label entity", path)
            continue
        if subject_filter is not None and record.subject not in subject_filter:
            continue
        if session_filter is not None and record.session not in session_filter:
            # session-less volume files apply to every session
            if not (record.suffix == FileRole.VOLUME.value and record.session is None):
                continue
        roles[record.suffix].append(record)

    if catalog.n_unmatchable:
        diagnostics.warn(
            "unmatchable_file",
            "Excluded %d files without seg or label entity in %s",
            catalog.n_unmatchable,
            root,
        )
    logger.info(
        "Catalogued %s: %d time-series files, %d volume files",
        catalog.folder,
        len(catalog.timeseries),
        len(catalog.volumes),
    )
    return catalog


def discover_pipeline_folders(
    derivatives_dir: Path,
    pipelines: Iterable[str] | None = None,
    exclude: Iterable[Path] = (),
) -> list[Path]:
    """Return the pipeline folders to catalog under *derivatives_dir*."""
    derivatives_dir = Path(derivatives_dir)
    excluded = {Path(p).resolve() for p in exclude}
    if pipelines:
        folders = [derivatives_dir / name for name in pipelines]
        missing = [str(f) for f in folders if not f.is_dir()]
        if missing:
            logger.warning("Pipeline folders not found: %s", ", ".join(missing))
        return [f for f in folders if f.is_dir()]
    return sorted(p for p in derivatives_dir.iterdir() if p.is_dir() and p.resolve() not in excluded)


def read_timeseries(record: AttributeRecord) -> TimeSeriesFile:
    """Read a wide time-series table.

    Raises
    ------
    DerivativeFileError
        If frame columns are missing or repeated, a region column is repeated,
        values are not numeric, or frames are not sorted with positive durations.
    """
    path = record.source_path
    # pandas renames repeated headers (A, A.1), so check the raw header row
    header = pd.read_csv(path, sep="\t", header=None, nrows=1, dtype=str).iloc[0].fillna("")
    if header.duplicated().any():
        raise DerivativeFileError(path, f"duplicate regions {sorted(header[header.duplicated()].unique())}")
    df = pd.read_csv(path, sep="\t")
    df.columns = [str(c) for c in df.columns]
    for column in ("frame_start", "frame_end"):
        if column not in df.columns:
            raise DerivativeFileError(path, f"missing column {column!r}")
    try:
        numeric = df.apply(pd.to_numeric, errors="raise").astype(float)
    except (ValueError, TypeError) as exc:
        raise DerivativeFileError(path, f"non-numeric values ({exc})") from exc

    frame_start = numeric["frame_start"].to_numpy()
    frame_end = numeric["frame_end"].to_numpy()
    if np.any(frame_end <= frame_start):
        raise DerivativeFileError(path, "every frame must end after it starts")
    if np.any(np.diff(frame_start) < 0):
        raise DerivativeFileError(path, "frames are not sorted by start time")

    regions = {column: numeric[column].to_numpy() for column in df.columns if column not in TIME_COLUMNS}
    return TimeSeriesFile(record=record, frame_start=frame_start, frame_end=frame_end, regions=regions)


def read_volumes(record: AttributeRecord) -> VolumeFile:
    """Read a region volume table.

    Raises
    ------
    DerivativeFileError
        If the name/volume columns are missing, a volume is negative, or a
        region name is repeated.
    """
    path = record.source_path
    df = pd.read_csv(path, sep="\t", dtype={VOLUME_NAME_COLUMN: str})
    missing = {VOLUME_NAME_COLUMN, VOLUME_VALUE_COLUMN} - set(df.columns)
    if missing:
        raise DerivativeFileError(path, f"missing columns {sorted(missing)}")
    df = df.dropna(subset=[VOLUME_VALUE_COLUMN])
    volumes = pd.to_numeric(df[VOLUME_VALUE_COLUMN], errors="coerce")
    if volumes.isna().any():
        raise DerivativeFileError(path, "non-numeric volumes")
    if (volumes < 0).any():
        raise DerivativeFileError(path, "negative volumes")
    names = df[VOLUME_NAME_COLUMN]
    if names.duplicated().any():
        raise DerivativeFileError(path, f"duplicate regions {sorted(names[names.duplicated()].unique())}")
    return VolumeFile(record=record, volumes=dict(zip(names, volumes.astype(float))))


class DerivativeReader:
    """Read derivative tables once per run and skip unreadable files."""

    def __init__(self, diagnostics: Diagnostics):
        self.diagnostics = diagnostics
        self._timeseries: dict[Path, TimeSeriesFile | None] = {}
        self._volumes: dict[Path, VolumeFile | None] = {}

    def timeseries(self, record: AttributeRecord) -> TimeSeriesFile | None:
        if record.source_path not in self._timeseries:
            self._timeseries[record.source_path] = self._read(read_timeseries, record)
        return self._timeseries[record.source_path]

    def volumes(self, record: AttributeRecord) -> VolumeFile | None:
        if record.source_path not in self._volumes:
            self._volumes[record.source_path] = self._read(read_volumes, record)
        return self._volumes[record.source_path]

    def _read(self, reader, record: AttributeRecord):
        try:
            return reader(record)
        except (OSError, ValueError, pd.errors.ParserError) as exc:
            self.diagnostics.warn("unreadable_file", "Skipping unreadable file %s: %s", record.source_path, exc)
            return None
