"""Data access layer for the MRF ledger.

This module reads from and writes to the master workbook that stands in for
the managed data store. Business rules belong in :mod:`mrf_ledger.core_logic`;
nothing here validates amounts or allocations.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading typed records, appending rows, updating
   inventory rows in place and deleting the rows of a removed entry.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import MONEY_TOLERANCE, CostCategory, SheetName


CONFIG_FILE_NAME = "config.ini"
STAFF_SHEET = SheetName.STAFF.value
AGENTS_SHEET = SheetName.AGENTS.value
ENTRIES_SHEET = SheetName.ENTRIES.value
ENTRY_ITEMS_SHEET = SheetName.ENTRY_ITEMS.value
ALLOCATIONS_SHEET = SheetName.LABOR_ALLOCATIONS.value
INVENTORY_SHEET = SheetName.INVENTORY.value
ADJUSTMENTS_SHEET = SheetName.INVENTORY_ADJUSTMENTS.value
STAFF_LEDGER_SHEET = SheetName.STAFF_LEDGER.value
LOCATIONS_SHEET = SheetName.LOCATIONS.value
MATERIALS_SHEET = SheetName.MATERIALS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    site_name: str
    schema_version: str
    money_tolerance: Decimal = MONEY_TOLERANCE


@dataclass(frozen=True)
class StaffRow:
    """In-memory view of a row from the ``Staff`` sheet."""

    staff_id: str
    staff_name: str
    is_active: bool


@dataclass(frozen=True)
class AgentRow:
    """In-memory view of a row from the ``Agents`` sheet."""

    agent_id: str
    agent_name: str
    commission_rate: Optional[Decimal]
    is_active: bool


@dataclass(frozen=True)
class EntryRow:
    """In-memory view of a row from the ``Entries`` sheet.

    Per-category rates and amounts are stored as one column pair per
    :class:`CostCategory`; categories an entry kind does not use stay zero.
    """

    voucher_number: str
    entry_kind: str
    transaction_date_iso: str
    counterparty_id: Optional[str]
    commission_agent_id: Optional[str]
    quantity: Decimal
    rate_per_unit: Decimal
    total_amount: Decimal
    commission_amount: Decimal
    is_expense: bool
    notes: Optional[str]
    cost_rates: Mapping[CostCategory, Decimal] = field(default_factory=dict)
    cost_amounts: Mapping[CostCategory, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class EntryItemRow:
    """In-memory view of a row from the ``EntryItems`` sheet."""

    voucher_number: str
    material_id: str
    quantity: Decimal
    rate_per_unit: Decimal
    amount: Decimal


@dataclass(frozen=True)
class AllocationRow:
    """In-memory view of a row from the ``LaborAllocations`` sheet."""

    allocation_id: str
    voucher_number: str
    staff_id: str
    category: str
    amount: Decimal


@dataclass(frozen=True)
class InventoryRow:
    """In-memory view of a row from the ``Inventory`` sheet."""

    location_id: str
    material_id: str
    quantity: Decimal
    updated_at_iso: str


@dataclass(frozen=True)
class AdjustmentRow:
    """In-memory view of a row from the ``InventoryAdjustments`` sheet."""

    adjustment_id: str
    location_id: str
    material_id: str
    adjustment_type: str
    quantity: Decimal
    previous_qty: Decimal
    new_qty: Decimal
    reason: str
    notes: Optional[str]
    adjustment_date_iso: str


@dataclass(frozen=True)
class StaffLedgerRow:
    """In-memory view of a row from the ``StaffLedger`` sheet."""

    ledger_id: str
    staff_id: str
    transaction_date_iso: str
    amount: Decimal
    is_payment_to_staff: bool
    reference: Optional[str]
    notes: Optional[str]


@dataclass(frozen=True)
class LocationRow:
    """In-memory view of a row from the ``Locations`` sheet."""

    location_id: str
    location_name: str
    location_type: str
    is_active: bool


@dataclass(frozen=True)
class MaterialRow:
    """In-memory view of a row from the ``Materials`` sheet."""

    material_id: str
    material_name: str
    is_active: bool


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    An explicit path wins without verification. Otherwise the search walks up
    from the current working directory and returns the first
    ``CONFIG_FILE_NAME`` it finds.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Accounting] MoneyTolerance`` is
    optional and defaults to :data:`MONEY_TOLERANCE`. Relative ``DataFile``
    paths are anchored at ``base_path`` (or the working directory).

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``MoneyTolerance`` is not a non-negative number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        site_name = parser.get("System", "SiteName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    tolerance_raw = parser.get("Accounting", "MoneyTolerance", fallback=str(MONEY_TOLERANCE))
    try:
        money_tolerance = Decimal(tolerance_raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid MoneyTolerance: {tolerance_raw!r}") from exc
    if not money_tolerance.is_finite() or money_tolerance < 0:
        raise ValueError(f"Invalid MoneyTolerance: {tolerance_raw!r}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        site_name=site_name,
        schema_version=schema_version,
        money_tolerance=money_tolerance,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)
    log.debug("Saved workbook to '%s'", dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Row iteration
# ---------------------------------------------------------------------------


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_staff(workbook: Workbook) -> Iterable[StaffRow]:
    """Yield typed rows from the ``Staff`` sheet."""

    for raw in _iter_sheet(workbook, STAFF_SHEET):
        yield deserialize_staff(raw)


def iter_agents(workbook: Workbook) -> Iterable[AgentRow]:
    """Yield typed rows from the ``Agents`` sheet."""

    for raw in _iter_sheet(workbook, AGENTS_SHEET):
        yield deserialize_agent(raw)


def iter_entries(workbook: Workbook) -> Iterable[EntryRow]:
    """Yield typed rows from the ``Entries`` sheet."""

    for raw in _iter_sheet(workbook, ENTRIES_SHEET):
        yield deserialize_entry(raw)


def iter_entry_items(workbook: Workbook) -> Iterable[EntryItemRow]:
    """Yield typed rows from the ``EntryItems`` sheet."""

    for raw in _iter_sheet(workbook, ENTRY_ITEMS_SHEET):
        yield deserialize_entry_item(raw)


def iter_allocations(workbook: Workbook) -> Iterable[AllocationRow]:
    """Yield typed rows from the ``LaborAllocations`` sheet."""

    for raw in _iter_sheet(workbook, ALLOCATIONS_SHEET):
        yield deserialize_allocation(raw)


def iter_inventory(workbook: Workbook) -> Iterable[InventoryRow]:
    """Yield typed rows from the ``Inventory`` sheet."""

    for raw in _iter_sheet(workbook, INVENTORY_SHEET):
        yield deserialize_inventory(raw)


def iter_adjustments(workbook: Workbook) -> Iterable[AdjustmentRow]:
    """Yield typed rows from the append-only ``InventoryAdjustments`` sheet."""

    for raw in _iter_sheet(workbook, ADJUSTMENTS_SHEET):
        yield deserialize_adjustment(raw)


def iter_staff_ledger(workbook: Workbook) -> Iterable[StaffLedgerRow]:
    """Yield typed rows from the ``StaffLedger`` sheet."""

    for raw in _iter_sheet(workbook, STAFF_LEDGER_SHEET):
        yield deserialize_staff_ledger(raw)


def iter_locations(workbook: Workbook) -> Iterable[LocationRow]:
    """Yield typed rows from the ``Locations`` sheet."""

    for raw in _iter_sheet(workbook, LOCATIONS_SHEET):
        yield deserialize_location(raw)


def iter_materials(workbook: Workbook) -> Iterable[MaterialRow]:
    """Yield typed rows from the ``Materials`` sheet."""

    for raw in _iter_sheet(workbook, MATERIALS_SHEET):
        yield deserialize_material(raw)


# ---------------------------------------------------------------------------
# Row writes
# ---------------------------------------------------------------------------


def append_staff(workbook: Workbook, record: StaffRow) -> None:
    workbook[STAFF_SHEET].append(serialize_staff(record))


def append_agent(workbook: Workbook, record: AgentRow) -> None:
    workbook[AGENTS_SHEET].append(serialize_agent(record))


def append_entry(workbook: Workbook, record: EntryRow) -> None:
    workbook[ENTRIES_SHEET].append(serialize_entry(record))


def append_entry_item(workbook: Workbook, record: EntryItemRow) -> None:
    workbook[ENTRY_ITEMS_SHEET].append(serialize_entry_item(record))


def append_allocation(workbook: Workbook, record: AllocationRow) -> None:
    workbook[ALLOCATIONS_SHEET].append(serialize_allocation(record))


def append_inventory(workbook: Workbook, record: InventoryRow) -> None:
    workbook[INVENTORY_SHEET].append(serialize_inventory(record))


def append_adjustment(workbook: Workbook, record: AdjustmentRow) -> None:
    workbook[ADJUSTMENTS_SHEET].append(serialize_adjustment(record))


def append_staff_ledger(workbook: Workbook, record: StaffLedgerRow) -> None:
    workbook[STAFF_LEDGER_SHEET].append(serialize_staff_ledger(record))


def append_location(workbook: Workbook, record: LocationRow) -> None:
    workbook[LOCATIONS_SHEET].append(serialize_location(record))


def append_material(workbook: Workbook, record: MaterialRow) -> None:
    workbook[MATERIALS_SHEET].append(serialize_material(record))


def update_inventory(
    workbook: Workbook,
    location_id: str,
    material_id: str,
    *,
    field_values: Dict[str, Any],
) -> None:
    """Update selected columns of the inventory row for a location/material pair.

    Raises:
        KeyError: If no row matches the pair or a column name is unknown.
    """

    row_index = locate_row(
        workbook,
        INVENTORY_SHEET,
        {"LocationID": location_id, "MaterialID": material_id},
    )
    if row_index is None:
        raise KeyError(f"Inventory record not found: {location_id}/{material_id}")

    sheet = workbook[INVENTORY_SHEET]
    header_map = _header_map(workbook, INVENTORY_SHEET)
    for column_name, value in field_values.items():
        if column_name not in header_map:
            raise KeyError(f"Unknown inventory field: {column_name}")
        sheet.cell(row=row_index, column=header_map[column_name], value=value)


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(workbook[sheet_name][1])}


def locate_row(workbook: Workbook, sheet_name: str, keys: Mapping[str, str]) -> Optional[int]:
    """Find the first row whose key columns all equal the requested values.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        keys (Mapping[str, str]): Header title to expected value. Cell values
            are compared as strings so numeric-looking identifiers match.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If a key column is not present in the worksheet header.
    """

    matches = locate_rows(workbook, sheet_name, keys)
    return matches[0] if matches else None


def locate_rows(workbook: Workbook, sheet_name: str, keys: Mapping[str, object]) -> List[int]:
    """Return every 1-based row index whose key columns match, top to bottom.

    Raises:
        KeyError: If a key column is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    for column_name in keys:
        if column_name not in header_map:
            raise KeyError(f"Unknown column: {column_name}")

    sheet = workbook[sheet_name]
    matches: List[int] = []
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if all(
            row[header_map[column_name] - 1] is not None
            and str(row[header_map[column_name] - 1]) == str(expected)
            for column_name, expected in keys.items()
        ):
            matches.append(row_idx)

    return matches


def delete_rows(workbook: Workbook, sheet_name: str, keys: Mapping[str, object]) -> int:
    """Delete every row matching ``keys`` and return how many were removed.

    Rows are removed bottom-up so earlier indices stay valid while deleting.

    Raises:
        KeyError: If a key column is not present in the worksheet header.
    """

    matches = locate_rows(workbook, sheet_name, keys)
    sheet = workbook[sheet_name]
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx)
    if matches:
        log.debug("Deleted %d row(s) from %s matching %s", len(matches), sheet_name, dict(keys))
    return len(matches)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_staff(record: StaffRow) -> list[object]:
    return [record.staff_id, record.staff_name, record.is_active]


def serialize_agent(record: AgentRow) -> list[object]:
    return [record.agent_id, record.agent_name, record.commission_rate, record.is_active]


def serialize_entry(record: EntryRow) -> list[object]:
    """Flatten an entry into the ``Entries`` column order.

    The per-category rate/amount pairs follow ``CostCategory`` declaration
    order between ``TotalAmount`` and ``CommissionAmount``.
    """

    values: list[object] = [
        record.voucher_number,
        record.entry_kind,
        record.transaction_date_iso,
        record.counterparty_id,
        record.commission_agent_id,
        record.quantity,
        record.rate_per_unit,
        record.total_amount,
    ]
    for category in CostCategory:
        values.append(record.cost_rates.get(category, Decimal("0")))
        values.append(record.cost_amounts.get(category, Decimal("0.00")))
    values.extend([record.commission_amount, record.is_expense, record.notes])
    return values


def serialize_entry_item(record: EntryItemRow) -> list[object]:
    return [record.voucher_number, record.material_id, record.quantity, record.rate_per_unit, record.amount]


def serialize_allocation(record: AllocationRow) -> list[object]:
    return [record.allocation_id, record.voucher_number, record.staff_id, record.category, record.amount]


def serialize_inventory(record: InventoryRow) -> list[object]:
    return [record.location_id, record.material_id, record.quantity, record.updated_at_iso]


def serialize_adjustment(record: AdjustmentRow) -> list[object]:
    return [
        record.adjustment_id,
        record.location_id,
        record.material_id,
        record.adjustment_type,
        record.quantity,
        record.previous_qty,
        record.new_qty,
        record.reason,
        record.notes,
        record.adjustment_date_iso,
    ]


def serialize_staff_ledger(record: StaffLedgerRow) -> list[object]:
    return [
        record.ledger_id,
        record.staff_id,
        record.transaction_date_iso,
        record.amount,
        record.is_payment_to_staff,
        record.reference,
        record.notes,
    ]


def serialize_location(record: LocationRow) -> list[object]:
    return [record.location_id, record.location_name, record.location_type, record.is_active]


def serialize_material(record: MaterialRow) -> list[object]:
    return [record.material_id, record.material_name, record.is_active]


# ---------------------------------------------------------------------------
# Deserialization
# ---------------------------------------------------------------------------


def _decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def deserialize_staff(raw_row: Sequence[object]) -> StaffRow:
    staff_id, staff_name, is_active = raw_row[:3]
    return StaffRow(staff_id=str(staff_id), staff_name=str(staff_name), is_active=bool(is_active))


def deserialize_agent(raw_row: Sequence[object]) -> AgentRow:
    """Convert a raw ``Agents`` row; a blank rate cell means no commission."""

    agent_id, agent_name, rate_raw, is_active = raw_row[:4]
    return AgentRow(
        agent_id=str(agent_id),
        agent_name=str(agent_name),
        commission_rate=Decimal(str(rate_raw)) if rate_raw not in (None, "") else None,
        is_active=bool(is_active),
    )


def deserialize_entry(raw_row: Sequence[object]) -> EntryRow:
    """Convert a raw ``Entries`` row into an :class:`EntryRow`.

    Numeric columns become :class:`~decimal.Decimal`; blank numeric cells read
    as zero and blank text cells as ``None``.
    """

    (
        voucher_number,
        entry_kind,
        transaction_date_iso,
        counterparty_id,
        commission_agent_id,
        quantity_raw,
        rate_raw,
        total_raw,
    ) = raw_row[:8]
    cost_rates: Dict[CostCategory, Decimal] = {}
    cost_amounts: Dict[CostCategory, Decimal] = {}
    position = 8
    for category in CostCategory:
        cost_rates[category] = _decimal(raw_row[position])
        cost_amounts[category] = _decimal(raw_row[position + 1], "0.00")
        position += 2
    commission_raw, is_expense, notes = raw_row[position:position + 3]

    return EntryRow(
        voucher_number=str(voucher_number),
        entry_kind=str(entry_kind) if entry_kind is not None else "",
        transaction_date_iso=str(transaction_date_iso) if transaction_date_iso is not None else "",
        counterparty_id=_optional_text(counterparty_id),
        commission_agent_id=_optional_text(commission_agent_id),
        quantity=_decimal(quantity_raw),
        rate_per_unit=_decimal(rate_raw),
        total_amount=_decimal(total_raw, "0.00"),
        commission_amount=_decimal(commission_raw, "0.00"),
        is_expense=bool(is_expense),
        notes=_optional_text(notes),
        cost_rates=cost_rates,
        cost_amounts=cost_amounts,
    )


def deserialize_entry_item(raw_row: Sequence[object]) -> EntryItemRow:
    voucher_number, material_id, quantity_raw, rate_raw, amount_raw = raw_row[:5]
    return EntryItemRow(
        voucher_number=str(voucher_number),
        material_id=str(material_id),
        quantity=_decimal(quantity_raw),
        rate_per_unit=_decimal(rate_raw),
        amount=_decimal(amount_raw, "0.00"),
    )


def deserialize_allocation(raw_row: Sequence[object]) -> AllocationRow:
    allocation_id, voucher_number, staff_id, category, amount_raw = raw_row[:5]
    return AllocationRow(
        allocation_id=str(allocation_id),
        voucher_number=str(voucher_number),
        staff_id=str(staff_id),
        category=str(category),
        amount=_decimal(amount_raw, "0.00"),
    )


def deserialize_inventory(raw_row: Sequence[object]) -> InventoryRow:
    location_id, material_id, quantity_raw, updated_at = raw_row[:4]
    return InventoryRow(
        location_id=str(location_id),
        material_id=str(material_id),
        quantity=_decimal(quantity_raw),
        updated_at_iso=str(updated_at) if updated_at is not None else "",
    )


def deserialize_adjustment(raw_row: Sequence[object]) -> AdjustmentRow:
    (
        adjustment_id,
        location_id,
        material_id,
        adjustment_type,
        quantity_raw,
        previous_raw,
        new_raw,
        reason,
        notes,
        adjustment_date,
    ) = raw_row[:10]
    return AdjustmentRow(
        adjustment_id=str(adjustment_id),
        location_id=str(location_id),
        material_id=str(material_id),
        adjustment_type=str(adjustment_type),
        quantity=_decimal(quantity_raw),
        previous_qty=_decimal(previous_raw),
        new_qty=_decimal(new_raw),
        reason=str(reason) if reason is not None else "",
        notes=_optional_text(notes),
        adjustment_date_iso=str(adjustment_date) if adjustment_date is not None else "",
    )


def deserialize_staff_ledger(raw_row: Sequence[object]) -> StaffLedgerRow:
    ledger_id, staff_id, transaction_date, amount_raw, is_payment, reference, notes = raw_row[:7]
    return StaffLedgerRow(
        ledger_id=str(ledger_id),
        staff_id=str(staff_id),
        transaction_date_iso=str(transaction_date) if transaction_date is not None else "",
        amount=_decimal(amount_raw, "0.00"),
        is_payment_to_staff=bool(is_payment),
        reference=_optional_text(reference),
        notes=_optional_text(notes),
    )


def deserialize_location(raw_row: Sequence[object]) -> LocationRow:
    location_id, location_name, location_type, is_active = raw_row[:4]
    return LocationRow(
        location_id=str(location_id),
        location_name=str(location_name) if location_name is not None else "",
        location_type=str(location_type) if location_type is not None else "",
        is_active=bool(is_active),
    )


def deserialize_material(raw_row: Sequence[object]) -> MaterialRow:
    material_id, material_name, is_active = raw_row[:3]
    return MaterialRow(
        material_id=str(material_id),
        material_name=str(material_name) if material_name is not None else "",
        is_active=bool(is_active),
    )
