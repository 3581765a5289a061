"""Read and write the region definitions table."""

from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd

from petregions.interfaces.models import RegionDefinition, RegionDefinitionError

logger = logging.getLogger(__name__)

REGION_COLUMNS: tuple[str, ...] = ("RegionName", "folder", "description", "ConstituentRegion")


def definitions_from_frame(df: pd.DataFrame) -> list[RegionDefinition]:
    """Group one-row-per-constituent records into region definitions.

    Rows sharing ``RegionName``, ``folder`` and ``description`` form one
    definition; constituent order follows first appearance and duplicates
    are dropped.

    Raises
    ------
    RegionDefinitionError
        If a required column is missing or a row lacks a region or constituent name.
    """
    missing = [c for c in REGION_COLUMNS if c not in df.columns]
    if missing:
        raise RegionDefinitionError(f"Region definitions are missing columns: {missing}")
    df = df.loc[:, list(REGION_COLUMNS)].fillna({"folder": "", "description": ""})
    incomplete = df["RegionName"].isna() | df["ConstituentRegion"].isna()
    if incomplete.any():
        rows = [int(i) + 2 for i in df.index[incomplete]]
        raise RegionDefinitionError(f"Region definitions lack a region or constituent name on lines {rows}")

    definitions: list[RegionDefinition] = []
    for (name, folder, description), group in df.groupby(
        ["RegionName", "folder", "description"], sort=False, dropna=False
    ):
        constituents = tuple(dict.fromkeys(str(c).strip() for c in group["ConstituentRegion"]))
        definitions.append(
            RegionDefinition(
                name=str(name).strip(),
                folder=str(folder).strip(),
                description=str(description).strip(),
                constituents=constituents,
            )
        )
    return definitions


def load_region_definitions(path: Path) -> list[RegionDefinition]:
    """Load region definitions from a tab-separated file.

    Parameters
    ----------
    path
        Path to a TSV with columns ``RegionName``, ``folder``, ``description``
        and ``ConstituentRegion``.

    Returns
    -------
    list[RegionDefinition]
        Definitions in file order.
    """
    # Read all columns as strings to preserve region names such as "0017"
    df = pd.read_csv(path, sep="\t", dtype=str, keep_default_na=False, na_values=[""])
    definitions = definitions_from_frame(df)
    logger.info("Loaded %d region definitions from %s", len(definitions), path)
    return definitions


def write_region_definitions(definitions: list[RegionDefinition], path: Path) -> Path:
    """Write definitions back to the one-row-per-constituent table format."""
    rows = [
        {
            "RegionName": definition.name,
            "folder": definition.folder,
            "description": definition.description,
            "ConstituentRegion": constituent,
        }
        for definition in definitions
        for constituent in definition.constituents
    ]
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows, columns=list(REGION_COLUMNS)).to_csv(path, sep="\t", index=False)
    logger.debug("Wrote %d region definition rows to %s", len(rows), path)
    return path
