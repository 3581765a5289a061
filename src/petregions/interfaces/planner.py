"""Plan which volume file weights each time-series file.

Matching is done as a bulk join over attribute tables rather than by
comparing file pairs one at a time.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

from petregions.interfaces.catalog import FileCatalog, records_to_frame
from petregions.interfaces.models import AttributeRecord, Diagnostics, VolumeSource

logger = logging.getLogger(__name__)

#: Keys that must be equal between a time-series and a volume file.
PRIMARY_KEYS: tuple[str, ...] = ("segmentation", "label")

#: Keys for which an absent value on the volume file matches any value.
HIERARCHICAL_KEYS: tuple[str, ...] = ("session", "run")


@dataclass(frozen=True)
class VolumeMatch:
    """Outcome of matching one time-series file."""

    timeseries: AttributeRecord
    volume: AttributeRecord | None
    source: VolumeSource
    n_candidates: int = 0

    @property
    def volume_path(self) -> Path | None:
        return self.volume.source_path if self.volume is not None else None


def _candidate_pairs(ts: pd.DataFrame, vol: pd.DataFrame) -> pd.DataFrame:
    """Join time-series and volume tables on subject plus either primary key."""
    hier = list(HIERARCHICAL_KEYS)
    frames = []
    for key in PRIMARY_KEYS:
        left = ts.loc[ts[key].notna(), ["ts_idx", "subject", key, *hier]]
        right = vol.loc[vol[key].notna(), ["vol_idx", "subject", key, *hier]]
        if left.empty or right.empty:
            continue
        frames.append(left.merge(right, on=["subject", key], suffixes=("_ts", "_vol")).drop(columns=[key]))
    if not frames:
        return pd.DataFrame(columns=["ts_idx", "subject", "vol_idx", *(f"{k}_{s}" for k in hier for s in ("ts", "vol"))])
    return pd.concat(frames, ignore_index=True).drop_duplicates(subset=["ts_idx", "vol_idx"])


def _score_pairs(pairs: pd.DataFrame) -> pd.DataFrame:
    """Keep pairs satisfying the hierarchical keys and score their specificity."""
    accepted = pd.Series(True, index=pairs.index)
    specificity = pd.Series(0, index=pairs.index)
    for key in HIERARCHICAL_KEYS:
        ts_val = pairs[f"{key}_ts"]
        vol_val = pairs[f"{key}_vol"]
        exact = vol_val.notna() & ts_val.notna() & (vol_val == ts_val)
        accepted &= vol_val.isna() | exact
        specificity += exact.astype(int)
    scored = pairs.loc[accepted, ["ts_idx", "vol_idx"]].copy()
    scored["specificity"] = specificity[accepted]
    return scored


def match_volume_files(
    timeseries: Sequence[AttributeRecord],
    volumes: Sequence[AttributeRecord],
    diagnostics: Diagnostics | None = None,
) -> Mapping[Path, VolumeMatch]:
    """Resolve the volume file for every time-series file of a pipeline folder.

    A volume file is a candidate when ``subject`` is equal and either
    ``segmentation`` or ``label`` is equal, and when each of ``session`` and
    ``run`` is absent on the volume file or equal to the time-series value.
    Other attributes are ignored. Among candidates the one matching the most
    hierarchical keys exactly wins; a tie at the top is ambiguous.

    Parameters
    ----------
    timeseries
        Time-series records of one pipeline folder.
    volumes
        Volume records of the same pipeline folder.
    diagnostics
        Collector for fallback and ambiguity warnings.

    Returns
    -------
    Mapping[Path, VolumeMatch]
        Outcome per time-series source path.
    """
    diagnostics = diagnostics if diagnostics is not None else Diagnostics()
    ts = records_to_frame(timeseries)
    ts["ts_idx"] = range(len(ts))
    vol = records_to_frame(volumes)
    vol["vol_idx"] = range(len(vol))

    scored = _score_pairs(_candidate_pairs(ts, vol))
    scored["top"] = scored.groupby("ts_idx")["specificity"].transform("max")
    best = scored.loc[scored["specificity"] == scored["top"]]
    n_best = best.groupby("ts_idx")["vol_idx"].agg(["first", "size"])
    n_candidates = scored.groupby("ts_idx").size()

    matches: dict[Path, VolumeMatch] = {}
    for idx, record in enumerate(timeseries):
        if idx not in n_best.index:
            diagnostics.warn(
                "volume_fallback",
                "No volume file matches %s; using volume=1 for every region",
                record.source_path.name,
            )
            matches[record.source_path] = VolumeMatch(record, None, VolumeSource.FALLBACK)
            continue
        first, size = n_best.loc[idx, "first"], n_best.loc[idx, "size"]
        if size > 1:
            tied = sorted(volumes[i].source_path.name for i in best.loc[best["ts_idx"] == idx, "vol_idx"])
            diagnostics.warn(
                "ambiguous_match",
                "Excluding %s: %d volume files match equally well (%s)",
                record.source_path.name,
                size,
                ", ".join(tied),
            )
            matches[record.source_path] = VolumeMatch(
                record, None, VolumeSource.AMBIGUOUS, n_candidates=int(n_candidates.loc[idx])
            )
            continue
        volume = volumes[int(first)]
        logger.debug("Matched %s -> %s", record.source_path.name, volume.source_path.name)
        matches[record.source_path] = VolumeMatch(
            record, volume, VolumeSource.MORPH, n_candidates=int(n_candidates.loc[idx])
        )
    return matches


def summarise_descriptions(
    catalogs: Sequence[FileCatalog],
    diagnostics: Diagnostics | None = None,
) -> pd.DataFrame:
    """List the time-series variants available for region definitions.

    Each catalog's time-series files are matched to its volume files and
    counted per ``(folder, description, volume_source)``. The ``folder`` and
    ``description`` values are the ones a region definitions table refers to.

    Parameters
    ----------
    catalogs
        One catalog per pipeline folder.
    diagnostics
        Collector for fallback and ambiguity warnings raised while matching.

    Returns
    -------
    pd.DataFrame
        Columns ``folder``, ``description``, ``volume_source``, ``n_files`` and
        ``n_subjects``, sorted by the first three.
    """
    diagnostics = diagnostics if diagnostics is not None else Diagnostics()
    frames = []
    for catalog in catalogs:
        matches = match_volume_files(catalog.timeseries, catalog.volumes, diagnostics)
        table = catalog.timeseries_table()
        table["folder"] = catalog.folder
        table["description"] = [record.file_description for record in catalog.timeseries]
        table["volume_source"] = [matches[record.source_path].source.value for record in catalog.timeseries]
        frames.append(table)

    keys = ["folder", "description", "volume_source"]
    if not frames or all(frame.empty for frame in frames):
        return pd.DataFrame(columns=[*keys, "n_files", "n_subjects"])
    files = pd.concat(frames, ignore_index=True)
    return (
        files.groupby(keys, sort=True)
        .agg(n_files=("path", "size"), n_subjects=("subject", "nunique"))
        .reset_index()
    )
