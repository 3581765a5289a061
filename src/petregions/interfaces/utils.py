"""Shared utility functions for interfaces.

This module provides shared utility functions for the interfaces.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


def _parse_log_level(value: str | int | None) -> int:
    """Return a logging level from common string/int inputs.

    Parameters
    ----------
    value
        The value to parse.

    Returns
    -------
    int
        The logging level.

    Examples
    --------
    >>> _parse_log_level("INFO")
    20
    >>> _parse_log_level("DEBUG")
    10
    >>> _parse_log_level(logging.WARNING)
    30
    >>> _parse_log_level(None)
    20
    """
    if value is None:
        return logging.INFO
    if isinstance(value, int):
        return value
    return getattr(logging, str(value).upper(), logging.INFO)


def _as_list(value: Iterable[str] | str | None) -> list[str] | None:
    """Normalize configuration values into a list of strings.

    Numbers from TOML are turned into strings so identifiers stay opaque.

    Examples
    --------
    >>> _as_list("01")
    ['01']
    >>> _as_list(["01", 2])
    ['01', '2']
    >>> _as_list(None) is None
    True
    """
    if value is None:
        return None
    if isinstance(value, (str, int)):
        return [str(value)]
    return [str(v) for v in value]


def _as_path(value: str | Path | None) -> Path | None:
    if value is None or value == "":
        return None
    return Path(str(value)).expanduser().resolve()


def write_combination_sidecar(
    tsv_path: Path,
    derivatives_dir: Path,
    regions_file: Path,
    bids_dir: Path | None,
    pipelines: Iterable[str],
    diagnostics: dict[str, int],
) -> Path:
    """Write a JSON sidecar file alongside the consolidated TSV.

    The sidecar captures provenance: which derivatives and region definitions
    were combined, which pipelines were scanned and how many non-fatal
    conditions were met.

    Parameters
    ----------
    tsv_path
        Path to the consolidated TSV file. The JSON will share its stem.
    derivatives_dir
        Root of the scanned derivatives.
    regions_file
        Region definitions table used for the run.
    bids_dir
        BIDS dataset metadata was read from, or None.
    pipelines
        Names of the pipeline folders scanned.
    diagnostics
        Per-category counts of non-fatal conditions.

    Returns
    -------
    Path
        Path to the written JSON sidecar file.
    """
    try:
        from importlib.metadata import version as pkg_version

        software_version = pkg_version("petregions")
    except Exception:
        software_version = "unknown"

    sidecar: dict = {
        "derivatives_dir": str(derivatives_dir),
        "regions_file": str(regions_file),
        "bids_dir": str(bids_dir) if bids_dir is not None else None,
        "pipelines": sorted(pipelines),
        "InjectedRadioactivityUnits": "kBq",
        "diagnostics": dict(sorted(diagnostics.items())),
        "software_version": software_version,
        "timestamp": datetime.now(tz=timezone.utc).isoformat(),
    }

    json_path = tsv_path.with_suffix(".json")
    json_path.write_text(json.dumps(sidecar, indent=2) + "\n")
    logger.debug("Wrote combination sidecar to %s", json_path)
    return json_path
