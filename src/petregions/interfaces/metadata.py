"""Measurement and participant metadata.

Two sources are read from a BIDS dataset: PET JSON sidecars (injected
radioactivity, optional body weight) and ``participants.tsv``. The merger
joins both onto aggregated rows without touching the raw formats.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import numpy as np
import pandas as pd

from petregions.interfaces.entities import parse_attributes
from petregions.interfaces.models import Diagnostics, FileRole

logger = logging.getLogger(__name__)

#: Canonical unit of injected radioactivity.
CANONICAL_ACTIVITY_UNIT = "kBq"

#: Multipliers converting each supported unit to kBq.
ACTIVITY_UNIT_FACTORS: dict[str, float] = {
    "bq": 1e-3,
    "kbq": 1.0,
    "mbq": 1e3,
    "gbq": 1e6,
    "uci": 37.0,
    "µci": 37.0,
    "mci": 37e3,
}

#: Participant columns accepted as body weight, by priority.
WEIGHT_COLUMNS: tuple[str, ...] = ("weight", "bodyweight", "BodyWeight", "body_weight")

MEASUREMENT_COLUMNS: tuple[str, ...] = ("pet", "InjectedRadioactivity", "InjectedRadioactivityUnits", "BodyWeight")

_SKIPPED_TOP_LEVEL = frozenset({"derivatives", "code", "sourcedata"})


def activity_factor(unit: str | None) -> float | None:
    """Return the factor converting *unit* to kBq, or ``None`` when unknown.

    Examples
    --------
    >>> activity_factor("MBq")
    1000.0
    >>> activity_factor("mCi")
    37000.0
    >>> activity_factor("furlongs") is None
    True
    """
    if unit is None or (isinstance(unit, float) and np.isnan(unit)):
        return None
    return ACTIVITY_UNIT_FACTORS.get(str(unit).strip().lower())


def load_measurement_metadata(bids_dir: Path) -> pd.DataFrame:
    """Collect injected radioactivity from PET sidecars under *bids_dir*.

    Parameters
    ----------
    bids_dir
        Root of the BIDS dataset. ``derivatives``, ``code`` and ``sourcedata``
        are not searched.

    Returns
    -------
    pd.DataFrame
        One row per measurement id with the columns of ``MEASUREMENT_COLUMNS``.
    """
    bids_dir = Path(bids_dir)
    rows: list[dict[str, object]] = []
    if not bids_dir.is_dir():
        logger.warning("BIDS directory %s does not exist; no measurement metadata loaded", bids_dir)
        return pd.DataFrame(columns=list(MEASUREMENT_COLUMNS))

    for json_path in sorted(bids_dir.rglob(f"*_{FileRole.MEASUREMENT.value}.json")):
        if json_path.relative_to(bids_dir).parts[0] in _SKIPPED_TOP_LEVEL:
            continue
        record = parse_attributes(json_path)
        if record is None or record.suffix != FileRole.MEASUREMENT.value:
            continue
        try:
            sidecar = json.loads(json_path.read_text())
        except (OSError, ValueError):
            logger.warning("Failed to read PET sidecar %s", json_path, exc_info=True)
            continue
        rows.append({
            "pet": record.measurement_id,
            "InjectedRadioactivity": sidecar.get("InjectedRadioactivity"),
            "InjectedRadioactivityUnits": sidecar.get("InjectedRadioactivityUnits"),
            "BodyWeight": sidecar.get("BodyWeight"),
        })

    df = pd.DataFrame(rows, columns=list(MEASUREMENT_COLUMNS))
    df = df.drop_duplicates(subset=["pet"], keep="first")
    logger.info("Loaded metadata for %d PET measurements from %s", len(df), bids_dir)
    return df


def load_participant_data(bids_dir: Path) -> pd.DataFrame:
    """Read ``participants.tsv`` keeping every value as a string.

    Returns
    -------
    pd.DataFrame
        A ``sub`` column (``participant_id`` without ``sub-``) followed by the
        remaining participant columns; empty when the file does not exist.
    """
    path = Path(bids_dir) / "participants.tsv"
    if not path.exists():
        logger.debug("No participants.tsv in %s", bids_dir)
        return pd.DataFrame(columns=["sub"])
    # Read all columns as strings to preserve leading zeros
    df = pd.read_csv(path, sep="\t", dtype=str, keep_default_na=False, na_values=["", "n/a"])
    if "participant_id" not in df.columns:
        logger.warning("participants.tsv at %s has no participant_id column", path)
        return pd.DataFrame(columns=["sub"])
    df.insert(0, "sub", df.pop("participant_id").str.replace(r"^sub-", "", regex=True))
    return df.drop_duplicates(subset=["sub"], keep="first").reset_index(drop=True)


def _normalize_measurements(measurements: pd.DataFrame, diagnostics: Diagnostics) -> pd.DataFrame:
    """Convert injected activity to kBq, one row per measurement id.

    Measurements with an unrecognised unit are flagged in ``_unknown_unit``.
    """
    measurements = measurements.reindex(columns=list(MEASUREMENT_COLUMNS))
    out = pd.DataFrame({"pet": measurements["pet"].astype(str)})
    activity = pd.to_numeric(measurements["InjectedRadioactivity"], errors="coerce")
    units = measurements["InjectedRadioactivityUnits"]
    factors, unknown = [], []
    for pet, unit in zip(out["pet"], units):
        factor = activity_factor(unit)
        is_unknown = factor is None and pd.notna(unit)
        if is_unknown:
            diagnostics.warn("unknown_unit", "Unknown injected radioactivity unit %r for %s", unit, pet)
        unknown.append(is_unknown)
        factors.append(np.nan if factor is None else factor)
    out["InjectedRadioactivity"] = activity.to_numpy(dtype=float) * np.asarray(factors, dtype=float)
    out["_sidecar_weight"] = pd.to_numeric(measurements["BodyWeight"], errors="coerce")
    out["_unknown_unit"] = unknown
    return out


def _participant_weight(participants: pd.DataFrame) -> tuple[pd.Series, list[str]]:
    """Return numeric body weight and the names of the weight columns used."""
    used = [c for c in WEIGHT_COLUMNS if c in participants.columns]
    weight = pd.Series(np.nan, index=participants.index)
    for column in used:
        weight = weight.fillna(pd.to_numeric(participants[column], errors="coerce"))
    return weight, used


def merge_metadata(
    rows: pd.DataFrame,
    measurements: pd.DataFrame | None = None,
    participants: pd.DataFrame | None = None,
    diagnostics: Diagnostics | None = None,
) -> tuple[pd.DataFrame, list[str]]:
    """Attach injected activity, body weight and participant fields to rows.

    Parameters
    ----------
    rows
        Aggregated rows carrying ``sub`` and ``pet`` identifiers.
    measurements
        Measurement metadata with ``pet``, ``InjectedRadioactivity``,
        ``InjectedRadioactivityUnits`` and optionally ``BodyWeight``.
    participants
        Participant table keyed by ``sub``.
    diagnostics
        Collector for missing metadata and unknown units.

    Returns
    -------
    tuple[pd.DataFrame, list[str]]
        The merged rows (original order kept) and the participant columns added
        after ``bodyweight``.
    """
    diagnostics = diagnostics if diagnostics is not None else Diagnostics()
    merged = rows.copy()

    if measurements is not None and not measurements.empty:
        meta = _normalize_measurements(measurements, diagnostics).drop_duplicates(subset=["pet"])
        merged = merged.merge(meta, on="pet", how="left", validate="many_to_one")
    else:
        merged["InjectedRadioactivity"] = np.nan
        merged["_sidecar_weight"] = np.nan
        merged["_unknown_unit"] = False

    # unknown units were already reported
    missing = merged["InjectedRadioactivity"].isna() & ~merged["_unknown_unit"].eq(True)
    for pet in merged.loc[missing, "pet"].unique():
        diagnostics.warn("missing_metadata", "No injected radioactivity for measurement %s", pet)

    participant_columns: list[str] = []
    if participants is not None and not participants.empty:
        people = participants.copy()
        people["sub"] = people["sub"].astype(str)
        weight, used = _participant_weight(people)
        people = people.drop(columns=used)
        people["_participant_weight"] = weight
        participant_columns = [c for c in people.columns if c not in ("sub", "_participant_weight")]
        clashing = [c for c in participant_columns if c in merged.columns]
        if clashing:
            logger.warning("Ignoring participant columns that clash with output columns: %s", clashing)
            people = people.drop(columns=clashing)
            participant_columns = [c for c in participant_columns if c not in clashing]
        merged = merged.merge(people, on="sub", how="left", validate="many_to_one")
    else:
        merged["_participant_weight"] = np.nan

    merged["bodyweight"] = merged["_participant_weight"].fillna(merged["_sidecar_weight"])
    merged = merged.drop(columns=["_participant_weight", "_sidecar_weight", "_unknown_unit"])
    return merged, participant_columns
