"""Validation failures raised by the calculation core and the ledger layer.

Every error here is a local, recoverable condition: the caller renders it as a
field or form message and the user resubmits. Nothing is persisted when one is
raised.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a reference such as a staff member, agent, location, material or entry is unknown."""


class InvalidNumericInput(BusinessRuleViolation):
    """A quantity or rate is missing, non-numeric, or outside its allowed range."""

    def __init__(self, field: str, value: Any, message: str | None = None) -> None:
        self.field = field
        self.value = value
        super().__init__(message or f"Invalid numeric value for '{field}': {value!r}")


class InsufficientInventory(BusinessRuleViolation):
    """A REMOVE or LOSS adjustment asks for more than the stock on hand."""

    def __init__(self, current_quantity: Decimal, requested: Decimal) -> None:
        self.current_quantity = current_quantity
        self.requested = requested
        super().__init__(
            f"Not enough inventory. Current quantity: {current_quantity} (requested {requested})"
        )


class LaborAllocationMismatch(BusinessRuleViolation):
    """Allocations for a category do not add up to the category target."""

    def __init__(self, category: str, target: Decimal, actual: Decimal) -> None:
        self.category = category
        self.target = target
        self.actual = actual
        super().__init__(
            f"Total {category.lower()} allocation ({actual}) must equal the {category.lower()} amount ({target})"
        )


class MissingRequiredSelection(BusinessRuleViolation):
    """A required reference such as a counterparty or a staff member is absent."""

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        super().__init__(message or f"A selection is required for '{field}'")


class DuplicateAllocationError(BusinessRuleViolation):
    """The staff member already holds an allocation in the category."""


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "InvalidNumericInput",
    "InsufficientInventory",
    "LaborAllocationMismatch",
    "MissingRequiredSelection",
    "DuplicateAllocationError",
]
