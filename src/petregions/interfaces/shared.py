"""Configuration loading, output writing and the end-to-end combination run.

This module wraps the pure :func:`~petregions.interfaces.runner.combine_regions`
with everything that touches the filesystem: TOML/CLI/environment
configuration, catalog scans, metadata loading and writing the TSV outputs.
"""

from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older environments
    import tomli as tomllib  # type: ignore[import]

from dotenv import find_dotenv, load_dotenv

from petregions.interfaces.catalog import build_catalog, discover_pipeline_folders
from petregions.interfaces.metadata import load_measurement_metadata, load_participant_data
from petregions.interfaces.models import (
    CombinationConfig,
    CombinationResult,
    Diagnostics,
    OutputWriteError,
    SubsetParams,
)
from petregions.interfaces.regions import load_region_definitions
from petregions.interfaces.runner import combine_regions
from petregions.interfaces.subsetting import (
    parse_semicolon_values,
    subset_combined_tacs,
    write_measurement_tables,
)
from petregions.interfaces.utils import _as_list, _as_path, _parse_log_level, write_combination_sidecar

LOGGER = logging.getLogger(__name__)

CONSOLIDATED_FILENAME = "desc-combinedregions_tacs.tsv"
MAPPING_FILENAME = "desc-combinedregions_mapping.tsv"
DEFAULT_OUTPUT_FOLDER = "petfit"
DEFAULT_REGIONS_FILE = Path("code") / "petfit" / "petfit_regions.tsv"

# Environment variable names
ENV_DERIVATIVES_DIR = "PETREGIONS_DERIVATIVES_DIR"
ENV_OUTPUT_DIR = "PETREGIONS_OUTPUT_DIR"
ENV_BIDS_DIR = "PETREGIONS_BIDS_DIR"
ENV_REGIONS_FILE = "PETREGIONS_REGIONS_FILE"
ENV_PIPELINES = "PETREGIONS_PIPELINES"
ENV_LOG_LEVEL = "PETREGIONS_LOG_LEVEL"


@dataclass
class CombinationOutputs:
    """Paths written by a combination run."""

    consolidated: Path
    mapping: Path
    sidecar: Path
    measurement_files: list[Path]


def _subset_from(values: dict[str, object]) -> SubsetParams:
    """Build subset filters from lists or semicolon-separated strings."""
    params = {}
    for param in fields(SubsetParams):
        value = values.get(param.name)
        if isinstance(value, str):
            value = parse_semicolon_values(value)
        params[param.name] = _as_list(value)
    return SubsetParams(**params)


def _resolve_defaults(
    derivatives_dir: Path | None,
    output_dir: Path | None,
    bids_dir: Path | None,
    regions_file: Path | None,
) -> tuple[Path, Path, Path]:
    """Fill in the derived default locations.

    ``output_dir`` defaults to ``<derivatives_dir>/petfit`` and
    ``regions_file`` to ``<bids_dir>/code/petfit/petfit_regions.tsv``.

    Raises
    ------
    ValueError
        If the derivatives directory is unset, or the regions file is unset
        and cannot be derived from a BIDS directory.
    """
    if derivatives_dir is None:
        if bids_dir is None:
            raise ValueError("A derivatives directory (or a BIDS directory containing one) is required")
        derivatives_dir = bids_dir / "derivatives"
    if output_dir is None:
        output_dir = derivatives_dir / DEFAULT_OUTPUT_FOLDER
    if regions_file is None:
        if bids_dir is None:
            raise ValueError("A regions file is required when no BIDS directory is given")
        regions_file = bids_dir / DEFAULT_REGIONS_FILE
    return derivatives_dir, output_dir, regions_file


def load_config(args: argparse.Namespace) -> CombinationConfig:
    """Parse a TOML configuration file and override with CLI arguments.

    The configuration accepts the following keys:
    - ``derivatives_dir``: Root directory holding one folder per pipeline.
    - ``output_dir``: Destination directory for combined outputs.
    - ``bids_dir``: BIDS dataset providing PET sidecars and ``participants.tsv``.
    - ``regions_file``: Region definitions table.
    - ``pipelines``: Optional list of pipeline folders to scan.
    - ``subjects`` / ``sessions``: Optional identifiers to process.
    - ``per_measurement``: Whether to also write one table per measurement.
    - ``[subset]``: Optional ``sub``, ``ses``, ``trc``, ``rec``, ``task``,
      ``run`` and ``regions`` filters for the per-measurement tables.
    - ``log_level``: Logging verbosity (e.g., ``INFO``, ``DEBUG``).
    """
    data: dict[str, object] = {}
    if getattr(args, "config", None):
        with args.config.open("rb") as f:
            data = tomllib.load(f)

    derivatives_dir = _as_path(getattr(args, "derivatives_dir", None) or data.get("derivatives_dir"))
    bids_dir = _as_path(getattr(args, "bids_dir", None) or data.get("bids_dir"))
    output_dir = _as_path(getattr(args, "output_dir", None) or data.get("output_dir"))
    regions_file = _as_path(getattr(args, "regions_file", None) or data.get("regions_file"))
    derivatives_dir, output_dir, regions_file = _resolve_defaults(derivatives_dir, output_dir, bids_dir, regions_file)

    subset_data = dict(data.get("subset", {}))  # type: ignore[arg-type]
    for param in fields(SubsetParams):
        cli_value = getattr(args, f"subset_{param.name}", None)
        if cli_value:
            subset_data[param.name] = cli_value

    return CombinationConfig(
        derivatives_dir=derivatives_dir,
        output_dir=output_dir,
        regions_file=regions_file,
        bids_dir=bids_dir,
        pipelines=getattr(args, "pipelines", None) or _as_list(data.get("pipelines")),
        subjects=getattr(args, "subjects", None) or _as_list(data.get("subjects")),
        sessions=getattr(args, "sessions", None) or _as_list(data.get("sessions")),
        per_measurement=bool(getattr(args, "per_measurement", False) or data.get("per_measurement", False)),
        subset=_subset_from(subset_data),
        log_level=_parse_log_level(getattr(args, "log_level", None) or data.get("log_level")),
    )


def config_from_env() -> CombinationConfig:
    """Create a CombinationConfig from environment variables.

    A ``.env`` file in the working directory is loaded first.

    Environment variables:
    - PETREGIONS_DERIVATIVES_DIR: Root of pipeline derivatives
    - PETREGIONS_OUTPUT_DIR: Output directory for combined tables
    - PETREGIONS_BIDS_DIR: BIDS dataset with PET sidecars and participants.tsv
    - PETREGIONS_REGIONS_FILE: Region definitions table
    - PETREGIONS_PIPELINES: Semicolon-separated pipeline folders to scan
    - PETREGIONS_LOG_LEVEL: Logging level (default: INFO)
    """
    load_dotenv(find_dotenv(usecwd=True))
    derivatives_dir, output_dir, regions_file = _resolve_defaults(
        _as_path(os.getenv(ENV_DERIVATIVES_DIR)),
        _as_path(os.getenv(ENV_OUTPUT_DIR)),
        _as_path(os.getenv(ENV_BIDS_DIR)),
        _as_path(os.getenv(ENV_REGIONS_FILE)),
    )
    return CombinationConfig(
        derivatives_dir=derivatives_dir,
        output_dir=output_dir,
        regions_file=regions_file,
        bids_dir=_as_path(os.getenv(ENV_BIDS_DIR)),
        pipelines=parse_semicolon_values(os.getenv(ENV_PIPELINES)),
        log_level=_parse_log_level(os.getenv(ENV_LOG_LEVEL)),
    )


def write_outputs(
    result: CombinationResult,
    config: CombinationConfig,
    pipelines: list[str],
) -> CombinationOutputs:
    """Write the consolidated table, mapping table, sidecar and optional per-measurement tables.

    Raises
    ------
    OutputWriteError
        If the output directory or any file cannot be written.
    """
    output_dir = config.output_dir
    consolidated_path = output_dir / CONSOLIDATED_FILENAME
    mapping_path = output_dir / MAPPING_FILENAME
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
        result.consolidated.to_csv(consolidated_path, sep="\t", index=False)
        result.mapping.to_csv(mapping_path, sep="\t", index=False)
        sidecar_path = write_combination_sidecar(
            tsv_path=consolidated_path,
            derivatives_dir=config.derivatives_dir,
            regions_file=config.regions_file,
            bids_dir=config.bids_dir,
            pipelines=pipelines,
            diagnostics=result.diagnostics.counts,
        )
    except OSError as exc:
        raise OutputWriteError(output_dir, str(exc)) from exc
    LOGGER.info("Wrote consolidated table to %s", consolidated_path)

    measurement_files: list[Path] = []
    if config.per_measurement:
        subset = subset_combined_tacs(result.consolidated, config.subset)
        measurement_files = write_measurement_tables(subset, output_dir)

    return CombinationOutputs(
        consolidated=consolidated_path,
        mapping=mapping_path,
        sidecar=sidecar_path,
        measurement_files=measurement_files,
    )


def run_combination(config: CombinationConfig) -> tuple[CombinationResult, CombinationOutputs]:
    """Scan derivatives, combine every region definition and write the outputs.

    Parameters
    ----------
    config
        Parsed configuration.

    Returns
    -------
    tuple[CombinationResult, CombinationOutputs]
        The in-memory tables with their diagnostics, and the written paths.
    """
    diagnostics = Diagnostics()
    definitions = load_region_definitions(config.regions_file)

    folders = discover_pipeline_folders(config.derivatives_dir, config.pipelines, exclude=[config.output_dir])
    catalogs = [
        build_catalog(folder, diagnostics=diagnostics, subjects=config.subjects, sessions=config.sessions)
        for folder in folders
    ]
    LOGGER.info("Scanned %d pipeline folders under %s", len(catalogs), config.derivatives_dir)

    measurements = participants = None
    if config.bids_dir is not None:
        measurements = load_measurement_metadata(config.bids_dir)
        participants = load_participant_data(config.bids_dir)
    else:
        LOGGER.warning("No BIDS directory given; injected radioactivity and participant data will be empty")

    result = combine_regions(catalogs, definitions, measurements, participants, diagnostics)
    outputs = write_outputs(result, config, pipelines=[c.folder for c in catalogs])

    if diagnostics.counts:
        LOGGER.warning(
            "Finished with non-fatal issues: %s",
            ", ".join(f"{k}={v}" for k, v in sorted(diagnostics.counts.items())),
        )
    return result, outputs
