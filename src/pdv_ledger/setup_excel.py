"""Bootstrap and upgrade the master workbook.

Usable as a library (tests, the ``init`` CLI command) and as the
``pdv-ledger-setup`` script. A fresh workbook gets one sheet per entity with a
bold header row; an existing workbook can be upgraded in place, which only
adds the sheets and columns it lacks.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Sequence

import openpyxl

from . import data_manager, log


def create_master_workbook(destination: Path, *, overwrite: bool = False) -> Path:
    """Create an empty master workbook at ``destination``.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing master workbook: {destination}")

    workbook = openpyxl.Workbook()
    # openpyxl always starts with a default sheet we have no use for.
    if workbook.active is not None and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    data_manager.ensure_schema(workbook)
    data_manager.save_workbook(workbook, destination)
    log.info("Created master workbook '%s'", destination)
    return destination


def upgrade_workbook(data_file: Path) -> Path:
    """Add missing entity sheets or header columns to an existing workbook."""

    workbook = data_manager.open_workbook(data_file)
    data_manager.ensure_schema(workbook)
    data_manager.save_workbook(workbook, data_file)
    log.info("Upgraded master workbook '%s'", data_file)
    return Path(data_file)


def run_from_config(config_path: Path, *, overwrite: bool = False, upgrade: bool = False) -> Path:
    """Create (or upgrade) the workbook configured in ``config_path``."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    if upgrade:
        return upgrade_workbook(settings.data_file)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pdv-ledger-setup",
        description="Initialize the point-of-sale ledger workbook",
    )
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--force", action="store_true", help="Overwrite the target workbook if it already exists.")
    mode.add_argument("--upgrade", action="store_true", help="Add missing sheets to an existing workbook.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- PDV Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force, upgrade=args.upgrade)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite or --upgrade to keep existing records.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Workbook ready at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
