"""Enumerations shared across the MRF ledger modules.

The calculation core, the workbook data layer and the CLI all key their
behaviour off these identifiers, so they live in one place.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.1.0"

# Largest drift tolerated between a category target and its allocations.
MONEY_TOLERANCE = Decimal("0.01")


class CostCategory(str, Enum):
    """Cost buckets whose amount is split across staff members."""

    LABOR = "LABOR"
    SEGREGATION = "SEGREGATION"
    BAILING = "BAILING"
    LOADING = "LOADING"


class AdjustmentType(str, Enum):
    """Inventory adjustment kinds recorded in the adjustment ledger."""

    COUNT = "COUNT"
    ADD = "ADD"
    REMOVE = "REMOVE"
    LOSS = "LOSS"


class EntryKind(str, Enum):
    """Transaction entry screens that share the rate/amount computation."""

    INWARD = "INWARD"
    SEGREGATED_OUTWARD = "SEGREGATED_OUTWARD"
    REJECTED_OUTWARD = "REJECTED_OUTWARD"


# Cost categories carried by each entry kind, in display order.
ENTRY_COST_CATEGORIES: dict[EntryKind, tuple[CostCategory, ...]] = {
    EntryKind.INWARD: (CostCategory.LABOR,),
    EntryKind.SEGREGATED_OUTWARD: (CostCategory.SEGREGATION, CostCategory.BAILING),
    EntryKind.REJECTED_OUTWARD: (CostCategory.BAILING, CostCategory.LOADING),
}


class LocationType(str, Enum):
    """Kinds of site a location record can describe."""

    LSGI = "LSGI"
    MRF = "MRF"
    GODOWN = "GODOWN"
    BUYER = "BUYER"
    DISPOSAL = "DISPOSAL"


# Only these sites hold stock that can be adjusted.
STOCK_LOCATION_TYPES: tuple[LocationType, ...] = (LocationType.MRF, LocationType.GODOWN)

VOUCHER_PREFIXES: dict[EntryKind, str] = {
    EntryKind.INWARD: "RW",
    EntryKind.SEGREGATED_OUTWARD: "SW",
    EntryKind.REJECTED_OUTWARD: "RO",
}


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    STAFF = "Staff"
    AGENTS = "Agents"
    ENTRIES = "Entries"
    ENTRY_ITEMS = "EntryItems"
    LABOR_ALLOCATIONS = "LaborAllocations"
    INVENTORY = "Inventory"
    INVENTORY_ADJUSTMENTS = "InventoryAdjustments"
    STAFF_LEDGER = "StaffLedger"
    LOCATIONS = "Locations"
    MATERIALS = "Materials"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_TOLERANCE",
    "CostCategory",
    "AdjustmentType",
    "EntryKind",
    "ENTRY_COST_CATEGORIES",
    "VOUCHER_PREFIXES",
    "SheetName",
    "LocationType",
    "STOCK_LOCATION_TYPES",
]
