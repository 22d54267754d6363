"""Business logic layer for the MRF ledger.

Two halves live here. The first is pure: :class:`TransactionDraft` and the
functions that recompute, edit and finalize it never touch the workbook and
always return new values. The second orchestrates the workbook-backed data
layer: it loads directories, checks references, and writes finalized entries
and inventory adjustments through :mod:`mrf_ledger.data_manager`. Recorded
entries can later be reloaded as drafts, replaced or deleted.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Container, Dict, Hashable, Iterable, List, Mapping, Optional, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .allocation import LaborAllocation, LaborAllocationPool, allocation_id_for, normalize_category
from .calculations import (
    MAX_AMOUNT,
    ZERO,
    NumericInput,
    apply_adjustment,
    coerce_decimal,
    compute_amount,
    compute_commission,
    compute_net,
    normalize_adjustment_type,
    parse_decimal,
    to_money,
)
from .constants import (
    ENTRY_COST_CATEGORIES,
    EXPECTED_SCHEMA_VERSION,
    MONEY_TOLERANCE,
    STOCK_LOCATION_TYPES,
    VOUCHER_PREFIXES,
    AdjustmentType,
    CostCategory,
    EntryKind,
    LocationType,
)
from .errors import (
    BusinessRuleViolation,
    MissingReferenceError,
    MissingRequiredSelection,
)


MONEY_ZERO = to_money(ZERO)

# Fresh random suffixes tried before giving up on a generated voucher number.
VOUCHER_ATTEMPTS = 10

# Field reported when an entry is submitted without its counterparty.
COUNTERPARTY_FIELDS = {
    EntryKind.INWARD: "supplier_id",
    EntryKind.SEGREGATED_OUTWARD: "buyer_id",
    EntryKind.REJECTED_OUTWARD: "recipient_id",
}


# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LineItem:
    """One material line on a segregated outward entry."""

    material_id: str
    quantity: NumericInput = None
    rate_per_unit: NumericInput = None
    amount: Decimal = MONEY_ZERO


@dataclass(frozen=True)
class TransactionDraft:
    """Unsaved entry as held by an entry form.

    Raw inputs (``quantity``, ``rate_per_unit``, ``cost_rates``, line items)
    keep whatever the form produced. Derived fields (``total_quantity``,
    ``total_amount``, ``cost_amounts``, ``commission_amount``, ``pool``
    targets) are only ever written by :func:`recompute_draft`.

    ``agent_directory`` remembers the commission rates the draft was last
    computed with, so later edits keep resolving the same commission.
    """

    kind: EntryKind
    quantity: NumericInput = None
    rate_per_unit: NumericInput = None
    cost_rates: Mapping[CostCategory, NumericInput] = field(default_factory=dict)
    line_items: Tuple[LineItem, ...] = ()
    counterparty_id: Optional[str] = None
    commission_agent_id: Optional[str] = None
    is_expense: bool = False
    voucher_number: Optional[str] = None
    transaction_date: Optional[date] = None
    notes: Optional[str] = None
    total_quantity: Decimal = ZERO
    total_amount: Decimal = MONEY_ZERO
    cost_amounts: Mapping[CostCategory, Decimal] = field(default_factory=dict)
    commission_amount: Decimal = MONEY_ZERO
    pool: LaborAllocationPool = field(default_factory=LaborAllocationPool)
    agent_directory: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class FinalizedEntry:
    """Validated entry ready for the persistence call."""

    entry: data_manager.EntryRow
    items: Tuple[data_manager.EntryItemRow, ...]
    allocations: Tuple[data_manager.AllocationRow, ...]
    net_amount: Decimal


def _entry_kind(kind: Union[EntryKind, str]) -> EntryKind:
    if isinstance(kind, EntryKind):
        return kind
    try:
        return EntryKind(str(kind).strip().upper())
    except ValueError as exc:
        log.error("Unsupported entry kind provided: %s", kind)
        raise BusinessRuleViolation(f"Unsupported entry kind: {kind}") from exc


def _require_kind_category(kind: EntryKind, category: Union[CostCategory, str]) -> CostCategory:
    resolved = normalize_category(category)
    if resolved not in ENTRY_COST_CATEGORIES[kind]:
        log.warning("Category %s is not used by %s entries", resolved.value, kind.value)
        raise BusinessRuleViolation(f"{kind.value} entries do not carry {resolved.value} costs")
    return resolved


def _normalize_cost_rates(
    kind: EntryKind,
    cost_rates: Mapping[Union[CostCategory, str], NumericInput],
) -> Dict[CostCategory, NumericInput]:
    return {_require_kind_category(kind, category): rate for category, rate in cost_rates.items()}


def recompute_draft(
    draft: TransactionDraft,
    *,
    agent_directory: Optional[Mapping[str, Any]] = None,
) -> TransactionDraft:
    """Re-derive every amount on ``draft`` from its raw inputs.

    Line item amounts, the total, each cost amount and the commission are all
    recomputed from scratch. A category's allocations are re-split only when
    its target actually changed, so manual amounts survive edits to unrelated
    fields.

    Args:
        draft (TransactionDraft): Draft to recompute. It is not modified.
        agent_directory (Mapping[str, Any] | None): Agent id to commission
            rate. Defaults to the directory stored on the draft; with neither
            the commission resolves to zero.

    Returns:
        TransactionDraft: Copy carrying the refreshed derived fields.
    """

    directory = agent_directory if agent_directory is not None else draft.agent_directory
    items = tuple(
        replace(item, amount=compute_amount(item.quantity, item.rate_per_unit))
        for item in draft.line_items
    )
    if draft.kind is EntryKind.SEGREGATED_OUTWARD:
        quantity = sum((coerce_decimal(item.quantity) for item in items), ZERO)
        total_amount = to_money(sum((item.amount for item in items), ZERO))
    else:
        quantity = coerce_decimal(draft.quantity)
        total_amount = compute_amount(quantity, draft.rate_per_unit)

    cost_amounts = {
        category: compute_amount(quantity, draft.cost_rates.get(category))
        for category in ENTRY_COST_CATEGORIES[draft.kind]
    }
    if draft.kind is EntryKind.INWARD:
        commission = compute_commission(quantity, draft.commission_agent_id, directory)
    else:
        commission = MONEY_ZERO

    pool = draft.pool
    for category, amount in cost_amounts.items():
        if category not in pool.targets or pool.target_for(category) != amount:
            pool = pool.retarget(category, amount)

    log.debug(
        "Recomputed %s draft: quantity=%s total=%s costs=%s commission=%s",
        draft.kind.value,
        quantity,
        total_amount,
        {category.value: amount for category, amount in cost_amounts.items()},
        commission,
    )
    return replace(
        draft,
        line_items=items,
        total_quantity=quantity,
        total_amount=total_amount,
        cost_amounts=cost_amounts,
        commission_amount=commission,
        pool=pool,
        agent_directory=directory,
    )


def new_draft(
    kind: Union[EntryKind, str],
    *,
    agent_directory: Optional[Mapping[str, Any]] = None,
    **fields: Any,
) -> TransactionDraft:
    """Create a draft of ``kind`` from raw form values and derive its amounts."""

    resolved = _entry_kind(kind)
    if "cost_rates" in fields:
        fields["cost_rates"] = _normalize_cost_rates(resolved, fields["cost_rates"])
    if "line_items" in fields:
        fields["line_items"] = tuple(fields["line_items"])
    return recompute_draft(TransactionDraft(kind=resolved, **fields), agent_directory=agent_directory)


def update_draft(
    draft: TransactionDraft,
    *,
    agent_directory: Optional[Mapping[str, Any]] = None,
    **changes: Any,
) -> TransactionDraft:
    """Apply field edits and recompute.

    ``cost_rates`` is merged into the existing rates rather than replacing
    them, mirroring a form where each rate is its own field.
    """

    if "cost_rates" in changes:
        merged = dict(draft.cost_rates)
        merged.update(_normalize_cost_rates(draft.kind, changes["cost_rates"]))
        changes["cost_rates"] = merged
    if "line_items" in changes:
        changes["line_items"] = tuple(changes["line_items"])
    return recompute_draft(replace(draft, **changes), agent_directory=agent_directory)


def add_line_item(
    draft: TransactionDraft,
    material_id: Optional[str],
    quantity: NumericInput,
    rate_per_unit: NumericInput,
) -> TransactionDraft:
    """Append a material line to a segregated outward draft.

    Raises:
        BusinessRuleViolation: If the draft is not a segregated outward entry.
        MissingRequiredSelection: If no material is selected.
        InvalidNumericInput: If quantity is not positive or the rate is invalid.
    """

    if draft.kind is not EntryKind.SEGREGATED_OUTWARD:
        raise BusinessRuleViolation(f"{draft.kind.value} entries do not carry line items")
    if not material_id:
        raise MissingRequiredSelection("material_id", "Select a material for the line item")
    parse_decimal(quantity, field="quantity", allow_zero=False)
    parse_decimal(rate_per_unit, field="rate_per_unit")
    item = LineItem(material_id=material_id, quantity=quantity, rate_per_unit=rate_per_unit)
    return recompute_draft(replace(draft, line_items=draft.line_items + (item,)))


def remove_line_item(draft: TransactionDraft, index: int) -> TransactionDraft:
    """Drop the line item at ``index`` and recompute."""

    if not 0 <= index < len(draft.line_items):
        raise MissingReferenceError(f"Unknown line item index: {index}")
    items = draft.line_items[:index] + draft.line_items[index + 1:]
    return recompute_draft(replace(draft, line_items=items))


def allocate_staff(
    draft: TransactionDraft,
    staff_id: Optional[str],
    category: Union[CostCategory, str],
    *,
    staff_directory: Optional[Iterable[str]] = None,
) -> TransactionDraft:
    """Add a staff member to one of the draft's cost categories.

    The category is re-split equally across all its members, overwriting any
    manual amounts.

    Raises:
        MissingReferenceError: If ``staff_directory`` is given and does not
            list ``staff_id``.
        BusinessRuleViolation: If the category is not carried by the draft's
            entry kind, or the staff member is already allocated there.
    """

    resolved = _require_kind_category(draft.kind, category)
    if staff_directory is not None and staff_id and staff_id not in set(staff_directory):
        log.warning("Staff lookup failed for id '%s'", staff_id)
        raise MissingReferenceError(f"Unknown staff id: {staff_id}")
    return replace(draft, pool=draft.pool.add_member(staff_id, resolved))


def remove_allocation(draft: TransactionDraft, allocation_id: str) -> TransactionDraft:
    """Remove an allocation and re-split its category across the remaining staff."""

    return replace(draft, pool=draft.pool.remove_member(allocation_id))


def override_allocation(
    draft: TransactionDraft,
    allocation_id: str,
    amount: NumericInput,
) -> TransactionDraft:
    """Record a manual amount for one allocation; siblings are left alone."""

    return replace(draft, pool=draft.pool.update_member_amount(allocation_id, amount))


def net_result(draft: TransactionDraft) -> Decimal:
    """Signed net profit (positive) or expense (negative) of the draft."""

    costs = [*draft.cost_amounts.values(), draft.commission_amount]
    return compute_net(draft.total_amount, costs, draft.is_expense)


def generate_voucher_number(
    kind: Union[EntryKind, str],
    *,
    on: Optional[date] = None,
    suffix: Optional[int] = None,
) -> str:
    """Build a voucher number formatted ``{PREFIX}-{YYYYMMDD}-{NNNN}``.

    ``suffix`` defaults to a random four digit number; supplying it makes the
    result deterministic.
    """

    resolved = _entry_kind(kind)
    on = on or _resolve_timestamp(None).date()
    if suffix is None:
        suffix = random.randint(0, 9999)
    return f"{VOUCHER_PREFIXES[resolved]}-{on.strftime('%Y%m%d')}-{suffix:04d}"


def _validate_inputs(draft: TransactionDraft) -> None:
    if not draft.counterparty_id:
        log.warning("Missing counterparty on %s draft", draft.kind.value)
        raise MissingRequiredSelection(COUNTERPARTY_FIELDS[draft.kind])

    if draft.kind is EntryKind.SEGREGATED_OUTWARD:
        if not draft.line_items:
            raise MissingRequiredSelection("line_items", "Add at least one material line")
        total = ZERO
        for item in draft.line_items:
            total += parse_decimal(item.quantity, field=f"{item.material_id}.quantity", allow_zero=False)
            parse_decimal(item.rate_per_unit, field=f"{item.material_id}.rate_per_unit")
        # the summed quantity is what the cost rates multiply
        parse_decimal(total, field="quantity", allow_zero=False)
    else:
        parse_decimal(draft.quantity, field="quantity", allow_zero=False)
        parse_decimal(draft.rate_per_unit, field="rate_per_unit")

    for category in ENTRY_COST_CATEGORIES[draft.kind]:
        raw_rate = draft.cost_rates.get(category)
        if raw_rate is None or (isinstance(raw_rate, str) and not raw_rate.strip()):
            continue
        parse_decimal(raw_rate, field=f"{category.value.lower()}_rate_per_unit")


def finalize_draft(
    draft: TransactionDraft,
    *,
    agent_directory: Optional[Mapping[str, Any]] = None,
    when: Optional[datetime] = None,
    tolerance: Decimal = MONEY_TOLERANCE,
    voucher_suffix: Optional[int] = None,
) -> FinalizedEntry:
    """Validate a draft and materialize the rows handed to persistence.

    Every derived amount is recomputed from the parsed inputs, so the stored
    amounts always equal ``quantity * rate``. Allocations are then checked
    against their targets.

    Args:
        draft (TransactionDraft): Draft to submit.
        agent_directory (Mapping[str, Any] | None): Agent commission rates.
        when (datetime | None): Submission time; defaults to now (UTC).
        tolerance (Decimal): Allowed drift between allocations and targets.
        voucher_suffix (int | None): Fixed suffix for a generated voucher.

    Returns:
        FinalizedEntry: Entry, line item and allocation rows plus the net.

    Raises:
        MissingRequiredSelection: If the counterparty, line items, or staff
            for a non-zero category are missing.
        InvalidNumericInput: If a quantity or rate is unusable.
        LaborAllocationMismatch: If allocations do not match their target.
    """

    _validate_inputs(draft)
    final = recompute_draft(draft, agent_directory=agent_directory)
    final.pool.validate(tolerance)

    timestamp = _resolve_timestamp(when)
    transaction_date = final.transaction_date or timestamp.date()
    voucher_number = (final.voucher_number or "").strip()
    if not voucher_number:
        voucher_number = generate_voucher_number(final.kind, on=transaction_date, suffix=voucher_suffix)

    categories = ENTRY_COST_CATEGORIES[final.kind]
    entry = data_manager.EntryRow(
        voucher_number=voucher_number,
        entry_kind=final.kind.value,
        transaction_date_iso=transaction_date.isoformat(),
        counterparty_id=final.counterparty_id,
        commission_agent_id=final.commission_agent_id if final.kind is EntryKind.INWARD else None,
        quantity=final.total_quantity,
        rate_per_unit=ZERO if final.kind is EntryKind.SEGREGATED_OUTWARD else coerce_decimal(final.rate_per_unit),
        total_amount=final.total_amount,
        commission_amount=final.commission_amount,
        is_expense=final.is_expense,
        notes=final.notes,
        cost_rates={category: coerce_decimal(final.cost_rates.get(category)) for category in categories},
        cost_amounts=dict(final.cost_amounts),
    )
    items = tuple(
        data_manager.EntryItemRow(
            voucher_number=voucher_number,
            material_id=item.material_id,
            quantity=coerce_decimal(item.quantity),
            rate_per_unit=coerce_decimal(item.rate_per_unit),
            amount=item.amount,
        )
        for item in final.line_items
    )
    allocations = tuple(
        data_manager.AllocationRow(
            allocation_id=f"{voucher_number}/{allocation.allocation_id}",
            voucher_number=voucher_number,
            staff_id=allocation.staff_id,
            category=allocation.category.value,
            amount=allocation.amount,
        )
        for allocation in final.pool.allocations
    )
    return FinalizedEntry(entry=entry, items=items, allocations=allocations, net_amount=net_result(final))


# ---------------------------------------------------------------------------
# Workbook-backed orchestration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class InventoryAdjustmentCommand:
    """User intent for adjusting the stock of one material at one location."""

    location_id: str
    material_id: str
    adjustment_type: Union[AdjustmentType, str]
    quantity: NumericInput
    reason: str
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class StaffPaymentCommand:
    """User intent for recording a payout to a staff member."""

    staff_id: str
    amount: NumericInput
    reference: Optional[str] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def generate_record_id(
    *,
    prefix: str,
    when: Optional[datetime] = None,
    taken: Container[str] = (),
) -> str:
    """Sortable identifier ``{prefix}{YYYYMMDDHHMMSSffffff}`` for ledger rows.

    Two rows written at the same instant would share that identifier, so a
    ``-2``, ``-3`` ... suffix is appended until the id is absent from ``taken``.
    """

    when = when or _resolve_timestamp(None)
    base = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    candidate = base
    counter = 1
    while candidate in taken:
        counter += 1
        candidate = f"{base}-{counter}"
    return candidate


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after a write so later reads rebuild from the workbook."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_cache(
    context: RuntimeContext,
    name: str,
    loader: Callable[[Workbook], Iterable[Any]],
    key: Callable[[Any], Hashable],
) -> Dict[str, Any]:
    """Populate a bucket with ``all`` rows and a ``by_key`` lookup on demand."""

    bucket = _get_cache_bucket(context, name)
    if "all" not in bucket:
        rows = list(loader(context.workbook))
        bucket["all"] = rows
        bucket["by_key"] = {key(row): row for row in rows}
        log.debug("Populated %s cache with %d entries", name, len(rows))
    return bucket


def _staff_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "staff", data_manager.iter_staff, lambda row: row.staff_id)


def _agents_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "agents", data_manager.iter_agents, lambda row: row.agent_id)


def _entries_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "entries", data_manager.iter_entries, lambda row: row.voucher_number)


def _inventory_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(
        context,
        "inventory",
        data_manager.iter_inventory,
        lambda row: (row.location_id, row.material_id),
    )


def _adjustments_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "adjustments", data_manager.iter_adjustments, lambda row: row.adjustment_id)


def _staff_ledger_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "staff_ledger", data_manager.iter_staff_ledger, lambda row: row.ledger_id)


def _locations_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "locations", data_manager.iter_locations, lambda row: row.location_id)


def _materials_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "materials", data_manager.iter_materials, lambda row: row.material_id)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work with a workbook whose declared schema differs from ours.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Save the in-memory workbook to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, dropping unsaved edits and every cache bucket."""
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# Directories ---------------------------------------------------------------


def list_staff(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.StaffRow]:
    rows = _staff_cache(context)["all"]
    return [row for row in rows if include_inactive or row.is_active]


def get_staff(context: RuntimeContext, staff_id: str) -> data_manager.StaffRow:
    """Resolve a staff record by its identifier.

    Raises:
        MissingReferenceError: If ``staff_id`` is absent from the workbook.
    """
    try:
        return _staff_cache(context)["by_key"][staff_id]
    except KeyError as exc:
        log.warning("Staff lookup failed for id '%s'", staff_id)
        raise MissingReferenceError(f"Unknown staff id: {staff_id}") from exc


def staff_directory(context: RuntimeContext) -> Tuple[str, ...]:
    """Identifiers of staff eligible for allocation."""

    return tuple(row.staff_id for row in list_staff(context))


def list_agents(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.AgentRow]:
    rows = _agents_cache(context)["all"]
    return [row for row in rows if include_inactive or row.is_active]


def get_agent(context: RuntimeContext, agent_id: str) -> data_manager.AgentRow:
    """Resolve a collection agent by its identifier.

    Raises:
        MissingReferenceError: If ``agent_id`` is absent from the workbook.
    """
    try:
        return _agents_cache(context)["by_key"][agent_id]
    except KeyError as exc:
        log.warning("Agent lookup failed for id '%s'", agent_id)
        raise MissingReferenceError(f"Unknown agent id: {agent_id}") from exc


def agent_directory(context: RuntimeContext) -> Dict[str, Optional[Decimal]]:
    """Commission rate per active agent, ``None`` where no rate is configured."""

    return {row.agent_id: row.commission_rate for row in list_agents(context)}


def add_staff(
    context: RuntimeContext,
    *,
    staff_id: str,
    staff_name: str,
    is_active: bool = True,
) -> data_manager.StaffRow:
    """Append a staff member; identifiers must be unique."""

    if not staff_id or not staff_name:
        raise MissingRequiredSelection("staff_id", "Staff id and name are required")
    if staff_id in _staff_cache(context)["by_key"]:
        log.warning("Duplicate staff id '%s'", staff_id)
        raise BusinessRuleViolation(f"Staff id already exists: {staff_id}")
    record = data_manager.StaffRow(staff_id=staff_id, staff_name=staff_name, is_active=is_active)
    data_manager.append_staff(context.workbook, record)
    _invalidate_cache(context, "staff")
    log.info("Added staff '%s' (%s)", staff_id, staff_name)
    return record


def add_agent(
    context: RuntimeContext,
    *,
    agent_id: str,
    agent_name: str,
    commission_rate: NumericInput = None,
    is_active: bool = True,
) -> data_manager.AgentRow:
    """Append a collection agent; a blank commission rate means no commission."""

    if not agent_id or not agent_name:
        raise MissingRequiredSelection("agent_id", "Agent id and name are required")
    if agent_id in _agents_cache(context)["by_key"]:
        log.warning("Duplicate agent id '%s'", agent_id)
        raise BusinessRuleViolation(f"Agent id already exists: {agent_id}")
    rate = None
    if commission_rate is not None and str(commission_rate).strip():
        rate = parse_decimal(commission_rate, field="commission_rate")
    record = data_manager.AgentRow(
        agent_id=agent_id,
        agent_name=agent_name,
        commission_rate=rate,
        is_active=is_active,
    )
    data_manager.append_agent(context.workbook, record)
    _invalidate_cache(context, "agents")
    log.info("Added agent '%s' (commission rate=%s)", agent_id, rate)
    return record


def _location_type(value: Union[LocationType, str]) -> LocationType:
    if isinstance(value, LocationType):
        return value
    try:
        return LocationType(str(value).strip().upper())
    except ValueError as exc:
        log.error("Unsupported location type provided: %s", value)
        raise BusinessRuleViolation(f"Unsupported location type: {value}") from exc


def list_locations(
    context: RuntimeContext,
    *,
    include_inactive: bool = False,
    location_type: Union[LocationType, str, None] = None,
) -> List[data_manager.LocationRow]:
    rows = _locations_cache(context)["all"]
    wanted = _location_type(location_type).value if location_type is not None else None
    return [
        row
        for row in rows
        if (include_inactive or row.is_active) and (wanted is None or row.location_type == wanted)
    ]


def get_location(context: RuntimeContext, location_id: str) -> data_manager.LocationRow:
    """Resolve a location by its identifier.

    Raises:
        MissingReferenceError: If ``location_id`` is absent from the workbook.
    """
    try:
        return _locations_cache(context)["by_key"][location_id]
    except KeyError as exc:
        log.warning("Location lookup failed for id '%s'", location_id)
        raise MissingReferenceError(f"Unknown location id: {location_id}") from exc


def add_location(
    context: RuntimeContext,
    *,
    location_id: str,
    location_name: str,
    location_type: Union[LocationType, str] = LocationType.MRF,
    is_active: bool = True,
) -> data_manager.LocationRow:
    """Append a location; identifiers must be unique."""

    if not location_id or not location_name:
        raise MissingRequiredSelection("location_id", "Location id and name are required")
    kind = _location_type(location_type)
    if location_id in _locations_cache(context)["by_key"]:
        log.warning("Duplicate location id '%s'", location_id)
        raise BusinessRuleViolation(f"Location id already exists: {location_id}")
    record = data_manager.LocationRow(
        location_id=location_id,
        location_name=location_name,
        location_type=kind.value,
        is_active=is_active,
    )
    data_manager.append_location(context.workbook, record)
    _invalidate_cache(context, "locations")
    log.info("Added %s location '%s' (%s)", kind.value, location_id, location_name)
    return record


def list_materials(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.MaterialRow]:
    rows = _materials_cache(context)["all"]
    return [row for row in rows if include_inactive or row.is_active]


def get_material(context: RuntimeContext, material_id: str) -> data_manager.MaterialRow:
    """Resolve a material by its identifier.

    Raises:
        MissingReferenceError: If ``material_id`` is absent from the workbook.
    """
    try:
        return _materials_cache(context)["by_key"][material_id]
    except KeyError as exc:
        log.warning("Material lookup failed for id '%s'", material_id)
        raise MissingReferenceError(f"Unknown material id: {material_id}") from exc


def material_directory(context: RuntimeContext) -> Tuple[str, ...]:
    """Identifiers of materials that may appear on entries and in stock."""

    return tuple(row.material_id for row in list_materials(context))


def add_material(
    context: RuntimeContext,
    *,
    material_id: str,
    material_name: str,
    is_active: bool = True,
) -> data_manager.MaterialRow:
    """Append a material; identifiers must be unique."""

    if not material_id or not material_name:
        raise MissingRequiredSelection("material_id", "Material id and name are required")
    if material_id in _materials_cache(context)["by_key"]:
        log.warning("Duplicate material id '%s'", material_id)
        raise BusinessRuleViolation(f"Material id already exists: {material_id}")
    record = data_manager.MaterialRow(material_id=material_id, material_name=material_name, is_active=is_active)
    data_manager.append_material(context.workbook, record)
    _invalidate_cache(context, "materials")
    log.info("Added material '%s' (%s)", material_id, material_name)
    return record


# Entries -------------------------------------------------------------------


def list_entries(context: RuntimeContext, *, kind: Union[EntryKind, str, None] = None) -> List[data_manager.EntryRow]:
    rows = _entries_cache(context)["all"]
    if kind is None:
        return list(rows)
    wanted = _entry_kind(kind).value
    return [row for row in rows if row.entry_kind == wanted]


def get_entry(context: RuntimeContext, voucher_number: str) -> data_manager.EntryRow:
    try:
        return _entries_cache(context)["by_key"][voucher_number]
    except KeyError as exc:
        log.warning("Entry lookup failed for voucher '%s'", voucher_number)
        raise MissingReferenceError(f"Unknown voucher number: {voucher_number}") from exc


def list_entry_allocations(context: RuntimeContext, voucher_number: str) -> List[data_manager.AllocationRow]:
    return [
        row for row in data_manager.iter_allocations(context.workbook) if row.voucher_number == voucher_number
    ]


def list_entry_items(context: RuntimeContext, voucher_number: str) -> List[data_manager.EntryItemRow]:
    return [
        row for row in data_manager.iter_entry_items(context.workbook) if row.voucher_number == voucher_number
    ]


def _check_entry_references(context: RuntimeContext, draft: TransactionDraft) -> Dict[str, Optional[Decimal]]:
    """Verify the staff, agent and materials a draft names; return the agent rates."""

    eligible_staff = set(staff_directory(context))
    for allocation in draft.pool.allocations:
        if allocation.staff_id not in eligible_staff:
            log.warning("Allocation references unknown staff '%s'", allocation.staff_id)
            raise MissingReferenceError(f"Unknown staff id: {allocation.staff_id}")
    agents = agent_directory(context)
    if draft.kind is EntryKind.INWARD and draft.commission_agent_id and draft.commission_agent_id not in agents:
        log.warning("Entry references unknown agent '%s'", draft.commission_agent_id)
        raise MissingReferenceError(f"Unknown agent id: {draft.commission_agent_id}")
    if draft.line_items:
        materials = set(material_directory(context))
        for item in draft.line_items:
            if item.material_id not in materials:
                log.warning("Line item references unknown material '%s'", item.material_id)
                raise MissingReferenceError(f"Unknown material id: {item.material_id}")
    return agents


def _append_entry_rows(context: RuntimeContext, finalized: FinalizedEntry, timestamp: datetime) -> None:
    """Write a finalized entry and credit each allocated staff member's ledger."""

    voucher_number = finalized.entry.voucher_number
    data_manager.append_entry(context.workbook, finalized.entry)
    for item in finalized.items:
        data_manager.append_entry_item(context.workbook, item)
    ledger_ids = set(_staff_ledger_cache(context)["by_key"])
    for allocation in finalized.allocations:
        data_manager.append_allocation(context.workbook, allocation)
        if allocation.amount > ZERO:
            ledger_id = generate_record_id(prefix="L", when=timestamp, taken=ledger_ids)
            ledger_ids.add(ledger_id)
            data_manager.append_staff_ledger(
                context.workbook,
                data_manager.StaffLedgerRow(
                    ledger_id=ledger_id,
                    staff_id=allocation.staff_id,
                    transaction_date_iso=finalized.entry.transaction_date_iso,
                    amount=allocation.amount,
                    is_payment_to_staff=False,
                    reference=voucher_number,
                    notes=f"{allocation.category.title()} charges",
                ),
            )
    _invalidate_cache(context, "entries", "staff_ledger")


def _remove_entry_rows(context: RuntimeContext, voucher_number: str) -> Tuple[int, int, int]:
    """Delete an entry's rows and its staff credits; payments are left alone.

    Returns the number of line item, allocation and ledger rows removed.
    """

    workbook = context.workbook
    voucher_key = {"VoucherNumber": voucher_number}
    data_manager.delete_rows(workbook, data_manager.ENTRIES_SHEET, voucher_key)
    items = data_manager.delete_rows(workbook, data_manager.ENTRY_ITEMS_SHEET, voucher_key)
    allocations = data_manager.delete_rows(workbook, data_manager.ALLOCATIONS_SHEET, voucher_key)
    credits = data_manager.delete_rows(
        workbook,
        data_manager.STAFF_LEDGER_SHEET,
        {"Reference": voucher_number, "IsPaymentToStaff": False},
    )
    _invalidate_cache(context, "entries", "staff_ledger")
    return items, allocations, credits


def record_entry(
    context: RuntimeContext,
    draft: TransactionDraft,
    *,
    when: Optional[datetime] = None,
) -> FinalizedEntry:
    """Finalize ``draft`` and append it, its lines and its allocations.

    Each allocation also credits the staff member's ledger so that
    :func:`calculate_staff_balances` reflects the labor owed. A generated
    voucher number that is already taken is drawn again, up to
    :data:`VOUCHER_ATTEMPTS` times.

    Raises:
        MissingReferenceError: If an allocated staff member, the commission
            agent or a line item material is unknown or inactive.
        BusinessRuleViolation: If a supplied voucher number is already used,
            no free voucher could be generated, or the draft fails validation
            (see :func:`finalize_draft`).
    """

    agents = _check_entry_references(context, draft)
    timestamp = _resolve_timestamp(when)
    used = _entries_cache(context)["by_key"]
    generated = not (draft.voucher_number or "").strip()
    for attempt in range(1, VOUCHER_ATTEMPTS + 1):
        finalized = finalize_draft(
            draft,
            agent_directory=agents,
            when=timestamp,
            tolerance=context.settings.money_tolerance,
        )
        voucher_number = finalized.entry.voucher_number
        if voucher_number not in used:
            break
        if not generated:
            log.warning("Duplicate voucher number '%s'", voucher_number)
            raise BusinessRuleViolation(f"Voucher number already exists: {voucher_number}")
        log.info("Generated voucher '%s' is taken (attempt %d)", voucher_number, attempt)
    else:
        log.error("No free voucher number after %d attempts", VOUCHER_ATTEMPTS)
        raise BusinessRuleViolation("Could not generate an unused voucher number; supply one explicitly")

    _append_entry_rows(context, finalized, timestamp)
    log.info(
        "Recorded %s entry '%s' (quantity=%s, total=%s, net=%s, allocations=%d)",
        finalized.entry.entry_kind,
        voucher_number,
        finalized.entry.quantity,
        finalized.entry.total_amount,
        finalized.net_amount,
        len(finalized.allocations),
    )
    return finalized


def delete_entry(context: RuntimeContext, voucher_number: str) -> data_manager.EntryRow:
    """Remove a recorded entry together with its lines, allocations and credits.

    Payments made to staff are not tied to an entry and stay in the ledger,
    so a staff balance may turn negative once the credit it settled is gone.

    Raises:
        MissingReferenceError: If no entry carries ``voucher_number``.
    """

    entry = get_entry(context, voucher_number)
    items, allocations, credits = _remove_entry_rows(context, voucher_number)
    log.info(
        "Deleted %s entry '%s' (items=%d, allocations=%d, ledger credits=%d)",
        entry.entry_kind,
        voucher_number,
        items,
        allocations,
        credits,
    )
    return entry


def load_draft(context: RuntimeContext, voucher_number: str) -> TransactionDraft:
    """Rebuild an editable draft from a recorded entry.

    Stored cost amounts become the pool targets and stored allocations keep
    their amounts, so manual splits survive until an input changes.

    Raises:
        MissingReferenceError: If no entry carries ``voucher_number``.
    """

    entry = get_entry(context, voucher_number)
    kind = _entry_kind(entry.entry_kind)
    categories = ENTRY_COST_CATEGORIES[kind]
    allocations = tuple(
        LaborAllocation(
            allocation_id=allocation_id_for(row.staff_id, row.category),
            staff_id=row.staff_id,
            category=normalize_category(row.category),
            amount=to_money(row.amount),
        )
        for row in list_entry_allocations(context, voucher_number)
    )
    pool = LaborAllocationPool(
        targets={category: to_money(entry.cost_amounts.get(category, ZERO)) for category in categories},
        allocations=allocations,
    )
    segregated = kind is EntryKind.SEGREGATED_OUTWARD
    draft = TransactionDraft(
        kind=kind,
        quantity=None if segregated else entry.quantity,
        rate_per_unit=None if segregated else entry.rate_per_unit,
        cost_rates={category: entry.cost_rates.get(category, ZERO) for category in categories},
        line_items=tuple(
            LineItem(material_id=row.material_id, quantity=row.quantity, rate_per_unit=row.rate_per_unit)
            for row in list_entry_items(context, voucher_number)
        ),
        counterparty_id=entry.counterparty_id,
        commission_agent_id=entry.commission_agent_id,
        is_expense=entry.is_expense,
        voucher_number=entry.voucher_number,
        transaction_date=date.fromisoformat(entry.transaction_date_iso) if entry.transaction_date_iso else None,
        notes=entry.notes,
        pool=pool,
    )
    return recompute_draft(draft, agent_directory=agent_directory(context))


def update_entry(
    context: RuntimeContext,
    voucher_number: str,
    draft: TransactionDraft,
    *,
    when: Optional[datetime] = None,
) -> FinalizedEntry:
    """Replace a recorded entry with ``draft`` under the same voucher number.

    The draft is validated in full before any row is touched. The old rows and
    staff credits are then removed and the new ones appended. Without a
    transaction date on the draft the original date is kept.

    Raises:
        MissingReferenceError: If no entry carries ``voucher_number`` or the
            draft references unknown staff, agents or materials.
        BusinessRuleViolation: If the draft is of a different entry kind, or
            fails validation (see :func:`finalize_draft`).
    """

    existing = get_entry(context, voucher_number)
    if draft.kind.value != existing.entry_kind:
        log.warning("Cannot replace %s entry '%s' with a %s draft", existing.entry_kind, voucher_number, draft.kind.value)
        raise BusinessRuleViolation(
            f"Entry {voucher_number} is {existing.entry_kind}, not {draft.kind.value}"
        )
    agents = _check_entry_references(context, draft)
    transaction_date = draft.transaction_date
    if transaction_date is None and existing.transaction_date_iso:
        transaction_date = date.fromisoformat(existing.transaction_date_iso)
    timestamp = _resolve_timestamp(when)
    finalized = finalize_draft(
        replace(draft, voucher_number=voucher_number, transaction_date=transaction_date),
        agent_directory=agents,
        when=timestamp,
        tolerance=context.settings.money_tolerance,
    )

    _remove_entry_rows(context, voucher_number)
    _append_entry_rows(context, finalized, timestamp)
    log.info(
        "Updated %s entry '%s' (quantity=%s, total=%s, net=%s)",
        finalized.entry.entry_kind,
        voucher_number,
        finalized.entry.quantity,
        finalized.entry.total_amount,
        finalized.net_amount,
    )
    return finalized


# Inventory -----------------------------------------------------------------


def list_inventory(context: RuntimeContext) -> List[data_manager.InventoryRow]:
    return list(_inventory_cache(context)["all"])


def get_inventory_quantity(context: RuntimeContext, location_id: str, material_id: str) -> Decimal:
    """Stock on hand for a pair; pairs without a record hold zero."""

    record = _inventory_cache(context)["by_key"].get((location_id, material_id))
    return record.quantity if record is not None else ZERO


def list_adjustments(
    context: RuntimeContext,
    *,
    location_id: Optional[str] = None,
    material_id: Optional[str] = None,
) -> List[data_manager.AdjustmentRow]:
    return [
        row
        for row in _adjustments_cache(context)["all"]
        if (location_id is None or row.location_id == location_id)
        and (material_id is None or row.material_id == material_id)
    ]


def record_inventory_adjustment(
    context: RuntimeContext,
    command: InventoryAdjustmentCommand,
) -> data_manager.AdjustmentRow:
    """Apply an adjustment to the stock of one location/material pair.

    The inventory row is created on first use. Every successful adjustment
    appends one immutable audit row holding the previous and new quantities.

    Raises:
        MissingRequiredSelection: If the location, material, or reason is
            missing.
        MissingReferenceError: If the location or material is unknown or
            inactive.
        BusinessRuleViolation: If the location is not a stock-holding site.
        InvalidNumericInput: If the quantity is unusable for the type.
        InsufficientInventory: If REMOVE or LOSS exceeds the stock on hand.
    """

    for field_name in ("location_id", "material_id"):
        if not getattr(command, field_name):
            raise MissingRequiredSelection(field_name)
    if not command.reason or not command.reason.strip():
        raise MissingRequiredSelection("reason", "Reason is required")
    kind = normalize_adjustment_type(command.adjustment_type)

    location = get_location(context, command.location_id)
    if not location.is_active:
        log.warning("Adjustment references inactive location '%s'", command.location_id)
        raise MissingReferenceError(f"Inactive location id: {command.location_id}")
    if location.location_type not in {site.value for site in STOCK_LOCATION_TYPES}:
        log.warning("Location '%s' of type %s holds no stock", command.location_id, location.location_type)
        raise BusinessRuleViolation(
            f"Location {command.location_id} ({location.location_type}) does not hold stock"
        )
    if not get_material(context, command.material_id).is_active:
        log.warning("Adjustment references inactive material '%s'", command.material_id)
        raise MissingReferenceError(f"Inactive material id: {command.material_id}")

    current = get_inventory_quantity(context, command.location_id, command.material_id)
    outcome = apply_adjustment(current, kind, command.quantity)
    if outcome.error is not None:
        raise outcome.error

    timestamp = _resolve_timestamp(command.timestamp)
    adjustment = data_manager.AdjustmentRow(
        adjustment_id=generate_record_id(prefix="ADJ", when=timestamp, taken=_adjustments_cache(context)["by_key"]),
        location_id=command.location_id,
        material_id=command.material_id,
        adjustment_type=kind.value,
        quantity=parse_decimal(command.quantity, field="quantity"),
        previous_qty=outcome.previous_quantity,
        new_qty=outcome.new_quantity,
        reason=command.reason.strip(),
        notes=command.notes,
        adjustment_date_iso=timestamp.isoformat(),
    )
    data_manager.append_adjustment(context.workbook, adjustment)

    key = (command.location_id, command.material_id)
    if key in _inventory_cache(context)["by_key"]:
        data_manager.update_inventory(
            context.workbook,
            command.location_id,
            command.material_id,
            field_values={"Quantity": outcome.new_quantity, "UpdatedAt": timestamp.isoformat()},
        )
    else:
        data_manager.append_inventory(
            context.workbook,
            data_manager.InventoryRow(
                location_id=command.location_id,
                material_id=command.material_id,
                quantity=outcome.new_quantity,
                updated_at_iso=timestamp.isoformat(),
            ),
        )
    _invalidate_cache(context, "inventory", "adjustments")
    log.info(
        "Recorded %s adjustment '%s' for %s/%s (%s -> %s)",
        kind.value,
        adjustment.adjustment_id,
        command.location_id,
        command.material_id,
        outcome.previous_quantity,
        outcome.new_quantity,
    )
    return adjustment


# Staff ledger --------------------------------------------------------------


def list_staff_ledger(context: RuntimeContext, *, staff_id: Optional[str] = None) -> List[data_manager.StaffLedgerRow]:
    rows = _staff_ledger_cache(context)["all"]
    return [row for row in rows if staff_id is None or row.staff_id == staff_id]


def record_staff_payment(context: RuntimeContext, command: StaffPaymentCommand) -> data_manager.StaffLedgerRow:
    """Append a payout to a staff member's ledger.

    Raises:
        MissingReferenceError: If the staff member is unknown.
        InvalidNumericInput: If the amount is not strictly positive.
    """

    get_staff(context, command.staff_id)
    amount = to_money(parse_decimal(command.amount, field="amount", allow_zero=False, limit=MAX_AMOUNT))
    timestamp = _resolve_timestamp(command.timestamp)
    record = data_manager.StaffLedgerRow(
        ledger_id=generate_record_id(prefix="P", when=timestamp, taken=_staff_ledger_cache(context)["by_key"]),
        staff_id=command.staff_id,
        transaction_date_iso=timestamp.date().isoformat(),
        amount=amount,
        is_payment_to_staff=True,
        reference=command.reference,
        notes=command.notes,
    )
    data_manager.append_staff_ledger(context.workbook, record)
    _invalidate_cache(context, "staff_ledger")
    log.info("Recorded payment '%s' to staff '%s' (amount=%s)", record.ledger_id, command.staff_id, amount)
    return record


def calculate_staff_balances(context: RuntimeContext) -> Dict[str, Decimal]:
    """Amount owed to each staff member: credits minus payments."""

    balances: Dict[str, Decimal] = {}
    for row in list_staff_ledger(context):
        signed = -row.amount if row.is_payment_to_staff else row.amount
        balances[row.staff_id] = balances.get(row.staff_id, MONEY_ZERO) + signed
    log.debug("Calculated staff balances for %d staff members", len(balances))
    return balances
