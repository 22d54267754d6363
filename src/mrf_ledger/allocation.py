"""Staff cost allocation for entry cost categories.

A :class:`LaborAllocationPool` tracks, per cost category, the target amount
derived from ``quantity * rate`` and the staff members sharing it. The pool is
a value: every operation returns a new pool and leaves the original intact, so
the form controller owns the only mutable reference.

Membership changes and retargeting apply the equal-split policy and discard
manual amounts. :meth:`LaborAllocationPool.update_member_amount` is the only
way to record an uneven split, and the sum is checked again by
:meth:`LaborAllocationPool.validate` right before the entry is persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Tuple, Union

from . import log
from .calculations import CENT, MAX_AMOUNT, ZERO, NumericInput, parse_decimal, to_money
from .constants import MONEY_TOLERANCE, CostCategory
from .errors import (
    BusinessRuleViolation,
    DuplicateAllocationError,
    LaborAllocationMismatch,
    MissingReferenceError,
    MissingRequiredSelection,
)


CategoryInput = Union[CostCategory, str]


def normalize_category(value: CategoryInput) -> CostCategory:
    """Convert user input into a :class:`CostCategory` member."""

    if isinstance(value, CostCategory):
        return value
    try:
        return CostCategory(str(value).strip().upper())
    except ValueError as exc:
        log.error("Unsupported cost category provided: %s", value)
        raise BusinessRuleViolation(f"Unsupported cost category: {value}") from exc


def allocation_id_for(staff_id: str, category: CategoryInput) -> str:
    """Identifier of the allocation held by ``staff_id`` in ``category``."""

    return f"{normalize_category(category).value}:{staff_id}"


def equal_split(target: Decimal, member_count: int) -> List[Decimal]:
    """Split ``target`` into ``member_count`` two-decimal shares.

    Every share starts as ``target / n`` rounded half-up. The rounding residue
    is then handed out one cent at a time from the last member backwards, so
    the shares add back to ``target`` exactly and no two differ by more than
    a cent.
    """

    if member_count <= 0:
        return []
    share = to_money(target / member_count)
    shares = [share] * member_count
    residue_cents = int((target - share * member_count) / CENT)
    step = CENT if residue_cents > 0 else -CENT
    for index in range(abs(residue_cents)):
        shares[member_count - 1 - index] += step
    return shares


@dataclass(frozen=True)
class LaborAllocation:
    """One staff member's portion of a category's cost."""

    allocation_id: str
    staff_id: str
    category: CostCategory
    amount: Decimal


@dataclass(frozen=True)
class LaborAllocationPool:
    """Allocations for one entry across one or more cost categories."""

    targets: Mapping[CostCategory, Decimal] = field(default_factory=dict)
    allocations: Tuple[LaborAllocation, ...] = ()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def target_for(self, category: CategoryInput) -> Decimal:
        return self.targets.get(normalize_category(category), to_money(ZERO))

    def members(self, category: CategoryInput) -> Tuple[LaborAllocation, ...]:
        wanted = normalize_category(category)
        return tuple(allocation for allocation in self.allocations if allocation.category is wanted)

    def allocated_total(self, category: CategoryInput) -> Decimal:
        return sum((allocation.amount for allocation in self.members(category)), to_money(ZERO))

    def categories(self) -> Tuple[CostCategory, ...]:
        """Categories with a target or at least one member, in declaration order."""

        present = set(self.targets) | {allocation.category for allocation in self.allocations}
        return tuple(category for category in CostCategory if category in present)

    def get(self, allocation_id: str) -> LaborAllocation:
        for allocation in self.allocations:
            if allocation.allocation_id == allocation_id:
                return allocation
        log.warning("Allocation lookup failed for id '%s'", allocation_id)
        raise MissingReferenceError(f"Unknown allocation id: {allocation_id}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def add_member(self, staff_id: Optional[str], category: CategoryInput) -> "LaborAllocationPool":
        """Add ``staff_id`` to ``category`` and re-split the category equally.

        Raises:
            MissingRequiredSelection: If no staff member is given.
            DuplicateAllocationError: If the staff member is already allocated
                in ``category``.
        """

        wanted = normalize_category(category)
        if not staff_id:
            raise MissingRequiredSelection("staff_id", "Select a staff member to allocate")
        allocation_id = allocation_id_for(staff_id, wanted)
        if any(allocation.allocation_id == allocation_id for allocation in self.allocations):
            log.warning("Staff '%s' already allocated under %s", staff_id, wanted.value)
            raise DuplicateAllocationError("This staff member already has an allocation")

        added = LaborAllocation(
            allocation_id=allocation_id,
            staff_id=staff_id,
            category=wanted,
            amount=to_money(ZERO),
        )
        pool = replace(self, allocations=self.allocations + (added,))
        log.debug("Added staff '%s' to %s", staff_id, wanted.value)
        return pool._resplit(wanted)

    def remove_member(self, allocation_id: str) -> "LaborAllocationPool":
        """Drop an allocation and re-split its category across the rest."""

        removed = self.get(allocation_id)
        remaining = tuple(
            allocation for allocation in self.allocations if allocation.allocation_id != allocation_id
        )
        pool = replace(self, allocations=remaining)
        log.debug("Removed allocation '%s'", allocation_id)
        return pool._resplit(removed.category)

    def update_member_amount(self, allocation_id: str, new_amount: NumericInput) -> "LaborAllocationPool":
        """Set one allocation's amount without touching its siblings.

        The category sum may stop matching its target; that is only reported
        by :meth:`validate`.
        """

        self.get(allocation_id)
        amount = to_money(parse_decimal(new_amount, field="amount", limit=MAX_AMOUNT))
        updated = tuple(
            replace(allocation, amount=amount) if allocation.allocation_id == allocation_id else allocation
            for allocation in self.allocations
        )
        return replace(self, allocations=updated)

    def retarget(self, category: CategoryInput, new_target: NumericInput) -> "LaborAllocationPool":
        """Replace a category's target and re-split it equally.

        Manual amounts recorded through :meth:`update_member_amount` are
        discarded. Calling this twice with the same target yields the same
        allocations.
        """

        wanted = normalize_category(category)
        target = to_money(parse_decimal(new_target, field=f"{wanted.value.lower()}_amount", limit=MAX_AMOUNT))
        targets: Dict[CostCategory, Decimal] = dict(self.targets)
        targets[wanted] = target
        return replace(self, targets=targets)._resplit(wanted)

    def validate(self, tolerance: Decimal = MONEY_TOLERANCE) -> None:
        """Check every category before persistence.

        Only a category with a zero target and no members is exempt. Staff
        holding manual amounts under a zero target are reported as a mismatch.

        Raises:
            MissingRequiredSelection: If a non-zero target has no members.
            LaborAllocationMismatch: If a category's allocations differ from
                its target by more than ``tolerance``.
        """

        for category in self.categories():
            target = self.target_for(category)
            members = self.members(category)
            if not members:
                if target == ZERO:
                    continue
                log.error("No staff allocated for %s amount %s", category.value, target)
                raise MissingRequiredSelection(
                    category.value,
                    f"Add at least one staff member to distribute the {category.value.lower()} amount",
                )
            actual = self.allocated_total(category)
            if abs(actual - target) > tolerance:
                log.error(
                    "Allocation mismatch for %s: target=%s allocated=%s",
                    category.value,
                    target,
                    actual,
                )
                raise LaborAllocationMismatch(category.value, target, actual)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resplit(self, category: CostCategory) -> "LaborAllocationPool":
        members = self.members(category)
        shares = iter(equal_split(self.target_for(category), len(members)))
        updated = tuple(
            replace(allocation, amount=next(shares)) if allocation.category is category else allocation
            for allocation in self.allocations
        )
        return replace(self, allocations=updated)
