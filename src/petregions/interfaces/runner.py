"""Run region combination over catalogued derivatives.

This module holds the pure part of a run: from catalogs, region definitions
and metadata tables to the consolidated table, the mapping table and the
accumulated diagnostics. Reading the filesystem and writing outputs live in
:mod:`petregions.interfaces.shared`.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from pathlib import Path

import pandas as pd

from petregions.combine.weighted import RegionCombiner, SegmentationSummarizer
from petregions.interfaces.catalog import DerivativeReader, FileCatalog
from petregions.interfaces.metadata import merge_metadata
from petregions.interfaces.models import (
    CONSOLIDATED_DATA_COLUMNS,
    CONSOLIDATED_ID_COLUMNS,
    MAPPING_COLUMNS,
    MEASUREMENT_KEYS,
    AttributeRecord,
    CombinationResult,
    Diagnostics,
    NoRegionsResolvedError,
    RegionDefinition,
    RegionFileMapping,
    VolumeSource,
)
from petregions.interfaces.planner import VolumeMatch, match_volume_files

logger = logging.getLogger(__name__)

#: Sort order of the consolidated table.
SORT_COLUMNS: tuple[str, ...] = (*MEASUREMENT_KEYS, "segmentation", "region", "frame_start")


def segmentation_label(folder: str, record: AttributeRecord) -> str:
    """Return the ``segmentation`` value: pipeline folder plus file description.

    Examples
    --------
    >>> from pathlib import Path
    >>> rec = AttributeRecord(subject="01", suffix="tacs", source_path=Path("x"), segmentation="gtm", pvc="none")
    >>> segmentation_label("petprep", rec)
    'petprep_seg-gtm_pvc-none'
    """
    description = record.file_description
    return f"{folder}_{description}" if description else folder


def _resolve_definitions(
    definitions: Sequence[RegionDefinition],
    catalogs: dict[str, FileCatalog],
    diagnostics: Diagnostics,
) -> dict[RegionDefinition, list[AttributeRecord]]:
    """Find the time-series files each definition applies to."""
    resolved: dict[RegionDefinition, list[AttributeRecord]] = {}
    for definition in definitions:
        catalog = catalogs.get(definition.folder)
        if catalog is None:
            diagnostics.warn(
                "unresolved_definition",
                "Region %s refers to unknown pipeline folder %r",
                definition.name,
                definition.folder,
            )
            continue
        records = catalog.with_description(definition.description)
        if not records:
            diagnostics.warn(
                "unresolved_definition",
                "Region %s: no time-series files with description %r in %s",
                definition.name,
                definition.description,
                definition.folder,
            )
            continue
        resolved[definition] = records
    return resolved


def _match_folders(
    resolved: dict[RegionDefinition, list[AttributeRecord]],
    catalogs: dict[str, FileCatalog],
    diagnostics: Diagnostics,
) -> dict[str, dict]:
    """Bulk-match the referenced time-series files of each folder to volume files."""
    referenced: dict[str, dict] = {}
    for definition, records in resolved.items():
        per_folder = referenced.setdefault(definition.folder, {})
        for record in records:
            per_folder[record.source_path] = record
    return {
        folder: match_volume_files(list(records.values()), catalogs[folder].volumes, diagnostics)
        for folder, records in referenced.items()
    }


def _load_weights(
    match: VolumeMatch,
    reader: DerivativeReader,
    diagnostics: Diagnostics,
) -> tuple[Path | None, VolumeSource, Mapping[str, float] | None]:
    """Read the matched volume file, falling back to unit weights when it is unreadable."""
    if match.volume is None:
        return match.volume_path, match.source, None
    volume_file = reader.volumes(match.volume)
    if volume_file is None:
        diagnostics.warn(
            "volume_fallback",
            "Volume file %s is unreadable; using volume=1 for %s",
            match.volume.source_path.name,
            match.timeseries.source_path.name,
        )
        return None, VolumeSource.FALLBACK, None
    return match.volume_path, match.source, volume_file.volumes


def _identifier_columns(folder: str, record: AttributeRecord) -> dict[str, object]:
    entities = record.entities
    ids: dict[str, object] = {key: entities.get(key) for key in MEASUREMENT_KEYS}
    ids["segmentation"] = segmentation_label(folder, record)
    ids["pet"] = record.measurement_id
    return ids


def combine_regions(
    catalogs: Sequence[FileCatalog],
    definitions: Sequence[RegionDefinition],
    measurements: pd.DataFrame | None = None,
    participants: pd.DataFrame | None = None,
    diagnostics: Diagnostics | None = None,
) -> CombinationResult:
    """Compute combined-region curves for every resolvable definition.

    Parameters
    ----------
    catalogs
        One catalog per pipeline folder.
    definitions
        Combined-region definitions.
    measurements
        Measurement metadata (see :func:`~petregions.interfaces.metadata.merge_metadata`).
    participants
        Participant table keyed by ``sub``.
    diagnostics
        Collector for non-fatal conditions; a fresh one is created when omitted.

    Returns
    -------
    CombinationResult
        Consolidated rows in canonical column order, the mapping table and
        diagnostics.

    Raises
    ------
    NoRegionsResolvedError
        If no definition matches any time-series file.
    """
    diagnostics = diagnostics if diagnostics is not None else Diagnostics()
    by_folder = {catalog.folder: catalog for catalog in catalogs}
    resolved = _resolve_definitions(definitions, by_folder, diagnostics)
    if not resolved:
        raise NoRegionsResolvedError(len(definitions))
    logger.info("Resolved %d of %d region definitions", len(resolved), len(definitions))

    matches = _match_folders(resolved, by_folder, diagnostics)
    reader = DerivativeReader(diagnostics)
    combiner = RegionCombiner(diagnostics)
    summarizer = SegmentationSummarizer(diagnostics)

    # one weighting decision per time-series file, shared by every definition
    weighting: dict[Path, tuple[Path | None, VolumeSource, Mapping[str, float] | None]] = {}
    mappings: list[RegionFileMapping] = []
    frames: list[pd.DataFrame] = []
    for definition, records in resolved.items():
        for record in records:
            if record.source_path not in weighting:
                weighting[record.source_path] = _load_weights(
                    matches[definition.folder][record.source_path], reader, diagnostics
                )
            volume_path, source, volumes = weighting[record.source_path]
            mappings.append(RegionFileMapping(definition, record, volume_path, source))
            if source is VolumeSource.AMBIGUOUS:
                continue

            timeseries = reader.timeseries(record)
            rows = combiner.combine(timeseries, definition.constituents, volumes, definition.name)
            if rows.empty:
                continue
            summary = summarizer.summarize(timeseries, volumes)
            rows["seg_meanTAC"] = summary["seg_meanTAC"].to_numpy()
            for column, value in _identifier_columns(definition.folder, record).items():
                rows[column] = value
            frames.append(rows)

    mapping = pd.DataFrame([m.as_row() for m in mappings], columns=list(MAPPING_COLUMNS))
    mapping = mapping.sort_values(
        ["RegionName", "folder", "description", "tacs_path"], kind="mergesort", na_position="first"
    ).reset_index(drop=True)

    if frames:
        combined = pd.concat(frames, ignore_index=True)
    else:
        logger.warning("No combined rows were produced")
        combined = pd.DataFrame(columns=[*MEASUREMENT_KEYS, "segmentation", "pet", *CONSOLIDATED_DATA_COLUMNS])
    combined, participant_columns = merge_metadata(combined, measurements, participants, diagnostics)

    columns = [*CONSOLIDATED_ID_COLUMNS, *participant_columns, *CONSOLIDATED_DATA_COLUMNS]
    consolidated = (
        combined.loc[:, columns]
        .sort_values(list(SORT_COLUMNS), kind="mergesort", na_position="first")
        .reset_index(drop=True)
    )
    logger.info(
        "Combined %d rows across %d regions and %d subjects",
        len(consolidated),
        consolidated["region"].nunique(),
        consolidated["sub"].nunique(),
    )
    return CombinationResult(
        consolidated=consolidated,
        mapping=mapping,
        diagnostics=diagnostics,
        participant_columns=tuple(participant_columns),
    )
