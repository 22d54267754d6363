"""Utility for initializing the MRF ledger master workbook.

The module doubles as a script (``python -m mrf_ledger.setup_excel``) and as a
library used by tests and the CLI.
"""

from __future__ import annotations

import argparse
import configparser
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from .constants import CostCategory, SheetName


def _entry_columns() -> list[str]:
    columns = [
        "VoucherNumber",
        "EntryKind",
        "TransactionDate",
        "CounterpartyID",
        "CommissionAgentID",
        "Quantity",
        "RatePerUnit",
        "TotalAmount",
    ]
    for category in CostCategory:
        label = category.value.title()
        columns.extend([f"{label}Rate", f"{label}Amount"])
    columns.extend(["CommissionAmount", "IsExpense", "Notes"])
    return columns


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.STAFF.value: ["StaffID", "StaffName", "IsActive"],
    SheetName.AGENTS.value: ["AgentID", "AgentName", "CommissionRate", "IsActive"],
    SheetName.ENTRIES.value: _entry_columns(),
    SheetName.ENTRY_ITEMS.value: ["VoucherNumber", "MaterialID", "Quantity", "RatePerUnit", "Amount"],
    SheetName.LABOR_ALLOCATIONS.value: ["AllocationID", "VoucherNumber", "StaffID", "Category", "Amount"],
    SheetName.INVENTORY.value: ["LocationID", "MaterialID", "Quantity", "UpdatedAt"],
    SheetName.INVENTORY_ADJUSTMENTS.value: [
        "AdjustmentID",
        "LocationID",
        "MaterialID",
        "AdjustmentType",
        "Quantity",
        "PreviousQty",
        "NewQty",
        "Reason",
        "Notes",
        "AdjustmentDate",
    ],
    SheetName.STAFF_LEDGER.value: [
        "LedgerID",
        "StaffID",
        "TransactionDate",
        "Amount",
        "IsPaymentToStaff",
        "Reference",
        "Notes",
    ],
    SheetName.LOCATIONS.value: ["LocationID", "LocationName", "LocationType", "IsActive"],
    SheetName.MATERIALS.value: ["MaterialID", "MaterialName", "IsActive"],
}

CONFIG_FILE = "config.ini"


def load_data_file(config_path: Path) -> Path:
    """Read ``[System] DataFile`` from ``config.ini``.

    Relative paths are resolved against the config file's directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")

    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()
    return data_file_path


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create an empty master workbook with bold header rows at ``destination``.

    Raises:
        FileExistsError: If the target exists and ``overwrite`` is ``False``.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    return create_master_workbook(load_data_file(config_path), overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the MRF ledger data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- MRF Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
