"""Command-line entry point for petregions.

Usage::

    petregions <derivatives_dir> [<output_dir>] \\
        [--bids-dir DIR] [--regions-file TSV] \\
        [--pipelines FOLDER [FOLDER ...]] \\
        [--participant-label LABEL [LABEL ...]] \\
        [--session-label ID [ID ...]] \\
        [--per-measurement] [--subset-sub "01;02"] [--subset-regions "Striatum"] \\
        [--config CONFIG.toml] [--log-level LEVEL]
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from petregions.interfaces.subsetting import parse_semicolon_values

#: Subset filters exposed as ``--subset-<name>`` options.
_SUBSET_OPTIONS = ("sub", "ses", "trc", "rec", "task", "run", "regions")


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="petregions",
        description=(
            "Combine regional PET time-activity curves into volume-weighted "
            "combined regions across pipeline derivatives."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "derivatives_dir",
        type=Path,
        nargs="?",
        help="Root directory holding one folder per pipeline (may also be set in --config).",
    )
    parser.add_argument(
        "output_dir",
        type=Path,
        nargs="?",
        help="Output directory for combined tables. Default: <derivatives_dir>/petfit.",
    )

    parser.add_argument(
        "--bids-dir",
        type=Path,
        dest="bids_dir",
        help="BIDS dataset providing PET JSON sidecars and participants.tsv.",
    )
    parser.add_argument(
        "--regions-file",
        type=Path,
        dest="regions_file",
        help="Region definitions table. Default: <bids_dir>/code/petfit/petfit_regions.tsv.",
    )
    parser.add_argument(
        "--pipelines",
        nargs="+",
        metavar="FOLDER",
        help="Pipeline folders to scan. Scans every folder under derivatives_dir if not specified.",
    )
    parser.add_argument(
        "--participant-label",
        nargs="+",
        dest="participant_label",
        metavar="LABEL",
        help=(
            "One or more participant labels to process (without the 'sub-' prefix). "
            "Processes all participants if not specified."
        ),
    )
    parser.add_argument(
        "--session-label",
        nargs="+",
        dest="session_label",
        metavar="ID",
        help=(
            "One or more session labels to process (without the 'ses-' prefix). "
            "Processes all sessions if not specified."
        ),
    )

    parser.add_argument(
        "--per-measurement",
        action="store_true",
        dest="per_measurement",
        help="Also write one table per PET measurement under sub-<label>/[ses-<id>/]pet/.",
    )
    for name in _SUBSET_OPTIONS:
        parser.add_argument(
            f"--subset-{name}",
            dest=f"subset_{name}",
            metavar="VALUES",
            help=f"Semicolon-separated {name} values kept in the per-measurement tables.",
        )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a TOML configuration file.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        dest="log_level",
        help="Logging verbosity. Default: INFO.",
    )
    return parser


def _to_config_namespace(args: argparse.Namespace) -> argparse.Namespace:
    """Translate CLI argument names to the names expected by ``load_config``."""
    namespace = argparse.Namespace(
        derivatives_dir=args.derivatives_dir,
        output_dir=args.output_dir,
        bids_dir=args.bids_dir,
        regions_file=args.regions_file,
        pipelines=args.pipelines,
        subjects=args.participant_label,
        sessions=args.session_label,
        per_measurement=args.per_measurement,
        config=args.config,
        log_level=args.log_level,
    )
    for name in _SUBSET_OPTIONS:
        setattr(namespace, f"subset_{name}", parse_semicolon_values(getattr(args, f"subset_{name}")))
    return namespace


def _run(args: argparse.Namespace) -> int:
    from petregions.interfaces.shared import load_config, run_combination

    config = load_config(_to_config_namespace(args))
    logging.basicConfig(level=config.log_level, format="%(asctime)s [%(levelname)s] %(message)s")
    result, outputs = run_combination(config)
    logging.getLogger(__name__).info(
        "Combined %d regions into %s (%d non-fatal issues)",
        result.consolidated["region"].nunique(),
        outputs.consolidated,
        sum(result.diagnostics.counts.values()),
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for the petregions CLI.

    Returns 0 on success and 1 when the run fails or no arguments are given.
    """
    argv = list(argv) if argv is not None else sys.argv[1:]

    # --- No arguments: print help and exit cleanly ---
    if not argv:
        _build_parser().print_help()
        return 1

    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        return _run(args)
    except Exception:
        logging.getLogger(__name__).exception("Region combination failed")
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
