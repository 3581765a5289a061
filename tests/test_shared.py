"""Tests for configuration loading and the end-to-end run."""

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path

import pandas as pd
import pytest

from conftest import PET_01
from petregions.interfaces.models import CombinationConfig, OutputWriteError, SubsetParams
from petregions.interfaces.shared import (
    CONSOLIDATED_FILENAME,
    MAPPING_FILENAME,
    _resolve_defaults,
    config_from_env,
    load_config,
    run_combination,
)


def _namespace(**kwargs) -> argparse.Namespace:
    return argparse.Namespace(**kwargs)


class TestResolveDefaults:
    """Tests for derived default locations."""

    def test_defaults_from_bids_dir(self, tmp_path: Path) -> None:
        """Test defaults derived from the BIDS directory."""
        derivatives, output, regions = _resolve_defaults(None, None, tmp_path, None)

        assert derivatives == tmp_path / "derivatives"
        assert output == tmp_path / "derivatives" / "petfit"
        assert regions == tmp_path / "code" / "petfit" / "petfit_regions.tsv"

    def test_explicit_values_win(self, tmp_path: Path) -> None:
        """Test that explicit locations override defaults."""
        derivatives, output, regions = _resolve_defaults(tmp_path / "d", tmp_path / "o", None, tmp_path / "r.tsv")

        assert (derivatives, output, regions) == (tmp_path / "d", tmp_path / "o", tmp_path / "r.tsv")

    def test_regions_file_needs_bids_dir(self, tmp_path: Path) -> None:
        """Test that the regions file needs a BIDS directory to default."""
        with pytest.raises(ValueError, match="regions file"):
            _resolve_defaults(tmp_path, None, None, None)

    def test_derivatives_dir_is_required(self) -> None:
        """Test that a derivatives directory is required."""
        with pytest.raises(ValueError, match="derivatives directory"):
            _resolve_defaults(None, None, None, None)


class TestLoadConfig:
    """Tests for TOML configuration with CLI overrides."""

    def test_reads_toml(self, tmp_path: Path) -> None:
        """Test reading every key from a TOML file."""
        cfg_path = tmp_path / "petregions.toml"
        cfg_path.write_text(
            "\n".join([
                f'derivatives_dir = "{tmp_path / "derivatives"}"',
                f'bids_dir = "{tmp_path / "bids"}"',
                'pipelines = ["petprep"]',
                "subjects = [1, \"02\"]",
                "per_measurement = true",
                'log_level = "DEBUG"',
                "",
                "[subset]",
                'sub = "01;02"',
                'regions = ["Striatum"]',
            ])
        )

        config = load_config(_namespace(config=cfg_path))

        assert config.derivatives_dir == (tmp_path / "derivatives").resolve()
        assert config.output_dir == (tmp_path / "derivatives" / "petfit").resolve()
        assert config.regions_file == (tmp_path / "bids" / "code" / "petfit" / "petfit_regions.tsv").resolve()
        assert config.pipelines == ["petprep"]
        assert config.subjects == ["1", "02"]
        assert config.per_measurement is True
        assert config.log_level == logging.DEBUG
        assert config.subset == SubsetParams(sub=["01", "02"], regions=["Striatum"])

    def test_cli_overrides_toml(self, tmp_path: Path) -> None:
        """Test that CLI values take precedence over TOML."""
        cfg_path = tmp_path / "petregions.toml"
        cfg_path.write_text(
            f'derivatives_dir = "{tmp_path / "a"}"\nregions_file = "{tmp_path / "r.tsv"}"\n[subset]\nsub = ["01"]\n'
        )

        config = load_config(
            _namespace(
                config=cfg_path,
                derivatives_dir=tmp_path / "b",
                output_dir=tmp_path / "out",
                subjects=["03"],
                subset_sub=["02"],
                log_level="WARNING",
            )
        )

        assert config.derivatives_dir == (tmp_path / "b").resolve()
        assert config.output_dir == (tmp_path / "out").resolve()
        assert config.subjects == ["03"]
        assert config.subset.sub == ["02"]
        assert config.log_level == logging.WARNING

    def test_without_toml(self, tmp_path: Path) -> None:
        """Test configuration from CLI values alone."""
        config = load_config(_namespace(derivatives_dir=tmp_path, regions_file=tmp_path / "r.tsv"))

        assert config.bids_dir is None
        assert config.pipelines is None
        assert config.per_measurement is False
        assert config.subset == SubsetParams()
        assert config.log_level == logging.INFO


def test_config_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Test configuration from environment variables and a .env file."""
    monkeypatch.setattr(os, "environ", os.environ.copy())
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text(f"PETREGIONS_BIDS_DIR={tmp_path / 'bids'}\n")
    monkeypatch.delenv("PETREGIONS_BIDS_DIR", raising=False)
    monkeypatch.setenv("PETREGIONS_DERIVATIVES_DIR", str(tmp_path / "derivatives"))
    monkeypatch.setenv("PETREGIONS_PIPELINES", "petprep;petsurfer")
    monkeypatch.setenv("PETREGIONS_LOG_LEVEL", "ERROR")

    config = config_from_env()

    assert config.bids_dir == (tmp_path / "bids").resolve()
    assert config.regions_file == (tmp_path / "bids" / "code" / "petfit" / "petfit_regions.tsv").resolve()
    assert config.pipelines == ["petprep", "petsurfer"]
    assert config.log_level == logging.ERROR


class TestRunCombination:
    """End-to-end runs writing outputs to disk."""

    @staticmethod
    def _config(derivatives_dir: Path, bids_dir: Path, **kwargs) -> CombinationConfig:
        return CombinationConfig(
            derivatives_dir=derivatives_dir,
            output_dir=derivatives_dir / "petfit",
            regions_file=bids_dir / "code" / "petfit" / "petfit_regions.tsv",
            bids_dir=bids_dir,
            **kwargs,
        )

    def test_writes_tables_and_sidecar(self, derivatives_dir: Path, bids_dir: Path) -> None:
        """Test that the consolidated, mapping and sidecar files are written."""
        result, outputs = run_combination(self._config(derivatives_dir, bids_dir))

        assert outputs.consolidated == derivatives_dir / "petfit" / CONSOLIDATED_FILENAME
        assert outputs.mapping == derivatives_dir / "petfit" / MAPPING_FILENAME
        written = pd.read_csv(outputs.consolidated, sep="\t", dtype={"sub": str, "age": str})
        assert len(written) == len(result.consolidated)
        assert list(written.columns) == list(result.consolidated.columns)
        assert list(written["sub"].unique()) == ["01", "02"]
        mapping = pd.read_csv(outputs.mapping, sep="\t")
        assert list(mapping["volume_source"]) == ["morph", "fallback", "morph", "fallback"]
        sidecar = json.loads(outputs.sidecar.read_text())
        assert sidecar["pipelines"] == ["petprep"]
        assert sidecar["diagnostics"]["volume_fallback"] == 1
        assert outputs.measurement_files == []

    def test_second_run_ignores_previous_output(self, derivatives_dir: Path, bids_dir: Path) -> None:
        """Test that previous outputs are not read back as inputs."""
        config = self._config(derivatives_dir, bids_dir, per_measurement=True)
        first, _ = run_combination(config)
        second, _ = run_combination(config)

        pd.testing.assert_frame_equal(first.consolidated, second.consolidated)

    def test_per_measurement_with_subset(self, derivatives_dir: Path, bids_dir: Path) -> None:
        """Test per-measurement tables restricted by a subset."""
        config = self._config(
            derivatives_dir, bids_dir, per_measurement=True, subset=SubsetParams(sub=["01"], regions=["Cortex"])
        )

        _, outputs = run_combination(config)

        expected = (
            derivatives_dir / "petfit" / "sub-01" / "ses-baseline" / "pet" / f"{PET_01}_desc-combinedregions_tacs.tsv"
        )
        assert outputs.measurement_files == [expected]
        table = pd.read_csv(expected, sep="\t")
        assert set(table["region"]) == {"Cortex"}
        assert table["InjectedRadioactivity"].iloc[0] == 400000.0

    def test_without_bids_dir(self, derivatives_dir: Path, bids_dir: Path, caplog) -> None:
        """Test a run without a BIDS directory."""
        config = CombinationConfig(
            derivatives_dir=derivatives_dir,
            output_dir=derivatives_dir / "petfit",
            regions_file=bids_dir / "code" / "petfit" / "petfit_regions.tsv",
        )

        with caplog.at_level(logging.WARNING):
            result, _ = run_combination(config)

        assert "No BIDS directory" in caplog.text
        assert result.consolidated["InjectedRadioactivity"].isna().all()

    def test_unwritable_output_raises(self, derivatives_dir: Path, bids_dir: Path, tmp_path: Path) -> None:
        """Test that an unwritable output location is fatal."""
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        config = self._config(derivatives_dir, bids_dir)
        config.output_dir = blocker / "out"

        with pytest.raises(OutputWriteError):
            run_combination(config)
