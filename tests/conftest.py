from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from pathlib import Path

import pandas as pd
import pytest

FRAME_START = (0.0, 1.0, 2.0)
FRAME_END = (1.0, 2.0, 5.0)

CORTEX_CURVES = {
    "Left-Cortex": (10.0, 20.0, 15.0),
    "Right-Cortex": (12.0, 22.0, 17.0),
    "Hippocampus": (5.0, 10.0, 8.0),
}
CORTEX_VOLUMES = {"Left-Cortex": 50000.0, "Right-Cortex": 52000.0, "Hippocampus": 4000.0}

DESCRIPTION = "seg-gtm_pvc-none_desc-preproc"
PET_01 = "sub-01_ses-baseline_trc-18FFDG_rec-acdyn"
PET_02 = "sub-02_ses-baseline_trc-18FFDG_rec-acdyn"


def write_tacs(
    path: Path,
    curves: Mapping[str, Sequence[float]] = CORTEX_CURVES,
    frame_start: Sequence[float] = FRAME_START,
    frame_end: Sequence[float] = FRAME_END,
) -> Path:
    """Write a wide time-series table."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {"frame_start": list(frame_start), "frame_end": list(frame_end)}
    data.update({name: list(values) for name, values in curves.items()})
    pd.DataFrame(data).to_csv(path, sep="\t", index=False)
    return path


def write_morph(path: Path, volumes: Mapping[str, float] = CORTEX_VOLUMES) -> Path:
    """Write a region volume table."""
    path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame({"name": list(volumes), "volume-mm3": list(volumes.values())}).to_csv(path, sep="\t", index=False)
    return path


def write_regions(path: Path, rows: Sequence[tuple[str, str, str, str]]) -> Path:
    """Write a region definitions table from (RegionName, folder, description, ConstituentRegion) rows."""
    path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows, columns=["RegionName", "folder", "description", "ConstituentRegion"]).to_csv(
        path, sep="\t", index=False
    )
    return path


@pytest.fixture
def derivatives_dir(tmp_path: Path) -> Path:
    """Derivatives with one pipeline: sub-01 has a session-less volume file, sub-02 has none."""
    root = tmp_path / "derivatives"
    pet = root / "petprep" / "sub-01" / "ses-baseline" / "pet"
    write_tacs(pet / f"{PET_01}_seg-gtm_pvc-none_desc-preproc_tacs.tsv")
    write_morph(root / "petprep" / "sub-01" / "anat" / "sub-01_seg-gtm_morph.tsv")
    write_tacs(
        root / "petprep" / "sub-02" / "ses-baseline" / "pet" / f"{PET_02}_seg-gtm_pvc-none_desc-preproc_tacs.tsv"
    )
    return root


@pytest.fixture
def bids_dir(tmp_path: Path) -> Path:
    """BIDS dataset with PET sidecars, participants.tsv and region definitions."""
    root = tmp_path / "bids"
    sidecars = {
        "01": {"InjectedRadioactivity": 400, "InjectedRadioactivityUnits": "MBq"},
        "02": {"InjectedRadioactivity": 450000, "InjectedRadioactivityUnits": "kBq", "BodyWeight": 75},
    }
    for subject, sidecar in sidecars.items():
        pet = root / f"sub-{subject}" / "ses-baseline" / "pet"
        pet.mkdir(parents=True)
        (pet / f"sub-{subject}_ses-baseline_trc-18FFDG_rec-acdyn_pet.json").write_text(json.dumps(sidecar))
    pd.DataFrame({
        "participant_id": ["sub-01", "sub-02"],
        "age": ["034", "41"],
        "weight": ["70", "n/a"],
    }).to_csv(root / "participants.tsv", sep="\t", index=False)
    write_regions(
        root / "code" / "petfit" / "petfit_regions.tsv",
        [
            ("Cortex", "petprep", DESCRIPTION, "Left-Cortex"),
            ("Cortex", "petprep", DESCRIPTION, "Right-Cortex"),
            ("Hippo", "petprep", DESCRIPTION, "Hippocampus"),
        ],
    )
    return root
