"""Subset the consolidated table and split it into per-measurement files."""

from __future__ import annotations

import logging
from dataclasses import fields
from pathlib import Path

import pandas as pd

from petregions.interfaces.models import PER_MEASUREMENT_COLUMNS, OutputWriteError, SubsetParams

logger = logging.getLogger(__name__)

PER_MEASUREMENT_SUFFIX = "desc-combinedregions_tacs.tsv"


def parse_semicolon_values(value: str | None) -> list[str] | None:
    """Split a semicolon-separated string into trimmed, non-empty values.

    Examples
    --------
    >>> parse_semicolon_values("01; 02;;03")
    ['01', '02', '03']
    >>> parse_semicolon_values("  ") is None
    True
    """
    if value is None:
        return None
    values = [part.strip() for part in str(value).split(";")]
    values = [part for part in values if part]
    return values or None


def subset_combined_tacs(table: pd.DataFrame, params: SubsetParams) -> pd.DataFrame:
    """Filter the consolidated table; parameters left as ``None`` do not filter."""
    if table.empty:
        return table
    mask = pd.Series(True, index=table.index)
    for param in fields(params):
        allowed = getattr(params, param.name)
        if allowed is None:
            continue
        column = "region" if param.name == "regions" else param.name
        mask &= table[column].isin([str(v) for v in allowed])
    return table.loc[mask]


def measurement_dir(output_dir: Path, subject: str, session: str | None) -> Path:
    """Return ``sub-<s>/[ses-<x>/]pet`` under *output_dir*."""
    path = Path(output_dir) / f"sub-{subject}"
    if session is not None and not pd.isna(session):
        path = path / f"ses-{session}"
    return path / "pet"


def write_measurement_tables(table: pd.DataFrame, output_dir: Path) -> list[Path]:
    """Write one table per ``(sub, ses, pet)`` group.

    Returns
    -------
    list[Path]
        Paths of the written files, in group order.

    Raises
    ------
    OutputWriteError
        If a folder or file cannot be written.
    """
    if table.empty:
        logger.warning("No data to create per-measurement files")
        return []

    written: list[Path] = []
    for (subject, session, pet), group in table.groupby(["sub", "ses", "pet"], sort=True, dropna=False):
        folder = measurement_dir(output_dir, subject, session)
        path = folder / f"{pet}_{PER_MEASUREMENT_SUFFIX}"
        data = group.loc[:, list(PER_MEASUREMENT_COLUMNS)].sort_values(["region", "frame_start"], kind="mergesort")
        try:
            folder.mkdir(parents=True, exist_ok=True)
            data.to_csv(path, sep="\t", index=False)
        except OSError as exc:
            raise OutputWriteError(path, str(exc)) from exc
        logger.debug("Created %s", path)
        written.append(path)
    logger.info("Created %d per-measurement files", len(written))
    return written
