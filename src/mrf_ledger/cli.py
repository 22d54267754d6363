"""Command-line entry points for the MRF ledger.

The module only wires argparse and translates command-line arguments into the
drafts and command objects consumed by :mod:`mrf_ledger.core_logic`. Entry
commands build a draft exactly as an entry form would: they set the raw
fields, allocate staff, apply manual overrides, and hand the draft over for
finalization.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log
from .allocation import allocation_id_for, normalize_category
from .calculations import format_currency
from .constants import ENTRY_COST_CATEGORIES, AdjustmentType, EntryKind, LocationType
from .errors import BusinessRuleViolation


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="mrf-cli",
        description="Command-line tools for the MRF ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as entries and adjustments."""
    specs = {
        "add-staff": register_add_staff_command(subparsers),
        "add-agent": register_add_agent_command(subparsers),
        "add-location": register_add_location_command(subparsers),
        "add-material": register_add_material_command(subparsers),
        "inward": register_entry_command(subparsers, EntryKind.INWARD),
        "segregated-outward": register_entry_command(subparsers, EntryKind.SEGREGATED_OUTWARD),
        "rejected-outward": register_entry_command(subparsers, EntryKind.REJECTED_OUTWARD),
        "adjust-inventory": register_adjust_inventory_command(subparsers),
        "delete-entry": register_delete_entry_command(subparsers),
        "pay-staff": register_pay_staff_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "adjustments": register_adjustments_command(subparsers),
        "entries": register_entries_command(subparsers),
        "staff-balances": register_staff_balances_command(subparsers),
        "locations": register_locations_command(subparsers),
        "materials": register_materials_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_staff_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-staff``."""
    name = "add-staff"
    help_text = "Register a new staff member in the Staff sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--staff-id", required=True)
        parser.add_argument("--staff-name", required=True)
        parser.add_argument("--inactive", action="store_true", help="Mark the staff member as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_staff)


def register_add_agent_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-agent``."""
    name = "add-agent"
    help_text = "Register a collection agent in the Agents sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--agent-id", required=True)
        parser.add_argument("--agent-name", required=True)
        parser.add_argument("--commission-rate", default=None, help="Commission per unit; omit for none.")
        parser.add_argument("--inactive", action="store_true", help="Mark the agent as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_agent)


def register_add_location_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-location``."""
    name = "add-location"
    help_text = "Register a site in the Locations sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location-id", required=True)
        parser.add_argument("--location-name", required=True)
        parser.add_argument(
            "--type",
            dest="location_type",
            choices=[member.value for member in LocationType],
            default=LocationType.MRF.value,
        )
        parser.add_argument("--inactive", action="store_true", help="Mark the location as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_location)


def register_add_material_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-material``."""
    name = "add-material"
    help_text = "Register a material in the Materials sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--material-id", required=True)
        parser.add_argument("--material-name", required=True)
        parser.add_argument("--inactive", action="store_true", help="Mark the material as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_material)


def register_delete_entry_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-entry``."""
    name = "delete-entry"
    help_text = "Delete an entry with its items, allocations and staff credits."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--voucher-number", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_entry)


ENTRY_HELP = {
    EntryKind.INWARD: "Record an inward purchase of raw waste.",
    EntryKind.SEGREGATED_OUTWARD: "Record an outward sale of segregated materials.",
    EntryKind.REJECTED_OUTWARD: "Record an outward dispatch of rejected waste.",
}


def register_entry_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    kind: EntryKind,
) -> CommandSpec:
    """Register the parser and executor for one entry kind.

    The three entry commands share most options. Only segregated outward
    entries take ``--item``; only inward entries take ``--agent-id``. Each
    cost category carried by the kind gets its own ``--<category>-rate``.
    """
    name = kind.value.lower().replace("_", "-")
    help_text = ENTRY_HELP[kind]

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--counterparty-id", required=True)
        if kind is EntryKind.SEGREGATED_OUTWARD:
            parser.add_argument(
                "--item",
                action="append",
                default=[],
                metavar="MATERIAL:QTY:RATE",
                help="Material line; repeat for each material sold.",
            )
        else:
            parser.add_argument("--quantity", required=True)
            parser.add_argument("--rate", required=True, help="Rate per unit.")
        if kind is EntryKind.INWARD:
            parser.add_argument("--agent-id", default=None, help="Collection agent earning commission.")
        for category in ENTRY_COST_CATEGORIES[kind]:
            parser.add_argument(f"--{category.value.lower()}-rate", default=None)
        parser.add_argument(
            "--allocate",
            action="append",
            default=[],
            metavar="CATEGORY:STAFF_ID",
            help="Add a staff member to a cost category; repeatable.",
        )
        parser.add_argument(
            "--override",
            action="append",
            default=[],
            metavar="CATEGORY:STAFF_ID=AMOUNT",
            help="Replace the equal share of one allocation.",
        )
        parser.add_argument("--expense", action="store_true", help="Book the entry as an expense.")
        parser.add_argument("--voucher-number", default=None)
        parser.add_argument(
            "--replace",
            action="store_true",
            help="Replace the entry recorded under --voucher-number instead of adding one.",
        )
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        return run_entry(context, args, kind)

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_adjust_inventory_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust-inventory``."""
    name = "adjust-inventory"
    help_text = "Count, add, remove, or write off stock at a location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location-id", required=True)
        parser.add_argument("--material-id", required=True)
        parser.add_argument(
            "--type",
            dest="adjustment_type",
            choices=[member.value for member in AdjustmentType],
            required=True,
        )
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--reason", required=True)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust_inventory)


def register_pay_staff_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-staff``."""
    name = "pay-staff"
    help_text = "Record a payout to a staff member."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--staff-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--reference", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_staff)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock per location and material."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_adjustments_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjustments``."""
    name = "adjustments"
    help_text = "Display the inventory adjustment history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location-id", default=None)
        parser.add_argument("--material-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjustments_report)


def register_entries_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``entries``."""
    name = "entries"
    help_text = "Display recorded entries."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in EntryKind], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_entries_report)


def register_staff_balances_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``staff-balances``."""
    name = "staff-balances"
    help_text = "Display the amount owed to each staff member."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_staff_balances_report)


def register_locations_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``locations``."""
    name = "locations"
    help_text = "Display registered locations."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--type",
            dest="location_type",
            choices=[member.value for member in LocationType],
            default=None,
        )
        parser.add_argument("--all", dest="include_inactive", action="store_true", help="Include inactive sites.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_locations_report)


def register_materials_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``materials``."""
    name = "materials"
    help_text = "Display registered materials."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--all", dest="include_inactive", action="store_true", help="Include inactive materials.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_materials_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command definitions keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def parse_item(raw: str) -> core_logic.LineItem:
    """Parse ``MATERIAL:QTY:RATE`` into a line item."""
    parts = raw.split(":")
    if len(parts) != 3 or not parts[0]:
        raise BusinessRuleViolation(f"Invalid item '{raw}': expected MATERIAL:QTY:RATE")
    material_id, quantity, rate = parts
    return core_logic.LineItem(material_id=material_id, quantity=quantity, rate_per_unit=rate)


def parse_allocation(raw: str) -> Tuple[str, str]:
    """Parse ``CATEGORY:STAFF_ID`` into its two halves."""
    category, separator, staff_id = raw.partition(":")
    if not separator or not staff_id:
        raise BusinessRuleViolation(f"Invalid allocation '{raw}': expected CATEGORY:STAFF_ID")
    return category, staff_id


def parse_override(raw: str) -> Tuple[str, str]:
    """Parse ``CATEGORY:STAFF_ID=AMOUNT`` into an allocation id and amount."""
    target, separator, amount = raw.partition("=")
    if not separator:
        raise BusinessRuleViolation(f"Invalid override '{raw}': expected CATEGORY:STAFF_ID=AMOUNT")
    category, staff_id = parse_allocation(target)
    return allocation_id_for(staff_id, normalize_category(category)), amount


def translate_add_staff(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-staff request."""
    return {
        "staff_id": args.staff_id,
        "staff_name": args.staff_name,
        "is_active": not getattr(args, "inactive", False),
    }


def translate_add_agent(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-agent request."""
    return {
        "agent_id": args.agent_id,
        "agent_name": args.agent_name,
        "commission_rate": args.commission_rate,
        "is_active": not getattr(args, "inactive", False),
    }


def translate_add_location(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-location request."""
    return {
        "location_id": args.location_id,
        "location_name": args.location_name,
        "location_type": LocationType(args.location_type),
        "is_active": not getattr(args, "inactive", False),
    }


def translate_add_material(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-material request."""
    return {
        "material_id": args.material_id,
        "material_name": args.material_name,
        "is_active": not getattr(args, "inactive", False),
    }


def translate_entry(
    args: argparse.Namespace,
    kind: EntryKind,
    *,
    agent_directory: Optional[Mapping[str, Any]] = None,
) -> core_logic.TransactionDraft:
    """Translate CLI args into a draft with allocations and overrides applied."""
    fields: Dict[str, Any] = {
        "counterparty_id": args.counterparty_id,
        "is_expense": args.expense,
        "voucher_number": args.voucher_number,
        "notes": args.notes,
        "cost_rates": {
            category: getattr(args, f"{category.value.lower()}_rate", None)
            for category in ENTRY_COST_CATEGORIES[kind]
        },
    }
    if kind is EntryKind.SEGREGATED_OUTWARD:
        fields["line_items"] = [parse_item(raw) for raw in args.item]
    else:
        fields["quantity"] = args.quantity
        fields["rate_per_unit"] = args.rate
    if kind is EntryKind.INWARD:
        fields["commission_agent_id"] = args.agent_id

    draft = core_logic.new_draft(kind, agent_directory=agent_directory, **fields)
    for raw in args.allocate:
        category, staff_id = parse_allocation(raw)
        draft = core_logic.allocate_staff(draft, staff_id, category)
    for raw in args.override:
        allocation_id, amount = parse_override(raw)
        draft = core_logic.override_allocation(draft, allocation_id, amount)
    return draft


def translate_adjust_inventory(args: argparse.Namespace) -> core_logic.InventoryAdjustmentCommand:
    """Translate CLI args into an inventory adjustment command object."""
    return core_logic.InventoryAdjustmentCommand(
        location_id=args.location_id,
        material_id=args.material_id,
        adjustment_type=AdjustmentType(args.adjustment_type),
        quantity=args.quantity,
        reason=args.reason,
        notes=args.notes,
    )


def translate_pay_staff(args: argparse.Namespace) -> core_logic.StaffPaymentCommand:
    """Translate CLI args into a staff payment command object."""
    return core_logic.StaffPaymentCommand(
        staff_id=args.staff_id,
        amount=args.amount,
        reference=args.reference,
        notes=args.notes,
    )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def run_add_staff(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-staff workflow in the BLL."""
    payload = translate_add_staff(args)
    core_logic.add_staff(context, **payload)
    return 0


def run_add_agent(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-agent workflow in the BLL."""
    payload = translate_add_agent(args)
    core_logic.add_agent(context, **payload)
    return 0


def run_add_location(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-location workflow in the BLL."""
    payload = translate_add_location(args)
    core_logic.add_location(context, **payload)
    return 0


def run_add_material(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-material workflow in the BLL."""
    payload = translate_add_material(args)
    core_logic.add_material(context, **payload)
    return 0


def run_entry(context: core_logic.RuntimeContext, args: argparse.Namespace, kind: EntryKind) -> int:
    """Build, finalize, and record (or replace) an entry of ``kind``."""
    draft = translate_entry(args, kind, agent_directory=core_logic.agent_directory(context))
    if getattr(args, "replace", False):
        if not args.voucher_number:
            raise BusinessRuleViolation("--replace needs the --voucher-number of the entry to replace")
        finalized = core_logic.update_entry(context, args.voucher_number, draft)
        verb = "Updated"
    else:
        finalized = core_logic.record_entry(context, draft)
        verb = "Recorded"
    label = "Net expense" if finalized.net_amount < 0 else "Net profit"
    print(f"{verb} {finalized.entry.voucher_number}: total {format_currency(finalized.entry.total_amount)}")
    print(f"{label}: {format_currency(abs(finalized.net_amount))}")
    return 0


def run_delete_entry(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the entry deletion workflow via the BLL."""
    entry = core_logic.delete_entry(context, args.voucher_number)
    print(f"Deleted {entry.voucher_number}")
    return 0


def run_adjust_inventory(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the inventory adjustment workflow via the BLL."""
    command = translate_adjust_inventory(args)
    adjustment = core_logic.record_inventory_adjustment(context, command)
    print(
        f"{adjustment.location_id}/{adjustment.material_id}: "
        f"{adjustment.previous_qty} -> {adjustment.new_qty}"
    )
    return 0


def run_pay_staff(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the staff payment workflow via the BLL."""
    command = translate_pay_staff(args)
    core_logic.record_staff_payment(context, command)
    return 0


def _print_rows(header: Sequence[str], rows: Iterable[Sequence[object]]) -> int:
    lines: List[str] = ["\t".join(header)]
    lines.extend("\t".join("" if value is None else str(value) for value in row) for row in rows)
    print("\n".join(lines))
    return len(lines) - 1


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    count = _print_rows(
        ("LocationID", "MaterialID", "Quantity", "UpdatedAt"),
        (
            (row.location_id, row.material_id, row.quantity, row.updated_at_iso)
            for row in core_logic.list_inventory(context)
        ),
    )
    log.debug("Printed %d inventory rows", count)
    return 0


def run_adjustments_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the adjustment history workflow."""
    rows = core_logic.list_adjustments(
        context,
        location_id=args.location_id,
        material_id=args.material_id,
    )
    _print_rows(
        ("AdjustmentID", "LocationID", "MaterialID", "Type", "Quantity", "PreviousQty", "NewQty", "Reason"),
        (
            (
                row.adjustment_id,
                row.location_id,
                row.material_id,
                row.adjustment_type,
                row.quantity,
                row.previous_qty,
                row.new_qty,
                row.reason,
            )
            for row in rows
        ),
    )
    return 0


def run_entries_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the entry listing workflow."""
    _print_rows(
        ("VoucherNumber", "EntryKind", "Date", "CounterpartyID", "Quantity", "Total"),
        (
            (
                row.voucher_number,
                row.entry_kind,
                row.transaction_date_iso,
                row.counterparty_id,
                row.quantity,
                format_currency(row.total_amount),
            )
            for row in core_logic.list_entries(context, kind=args.kind)
        ),
    )
    return 0


def run_staff_balances_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the staff balance reporting workflow."""
    balances = core_logic.calculate_staff_balances(context)
    _print_rows(
        ("StaffID", "Balance"),
        ((staff_id, format_currency(amount)) for staff_id, amount in sorted(balances.items())),
    )
    return 0


def run_locations_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the location listing workflow."""
    _print_rows(
        ("LocationID", "LocationName", "LocationType", "IsActive"),
        (
            (row.location_id, row.location_name, row.location_type, row.is_active)
            for row in core_logic.list_locations(
                context,
                include_inactive=args.include_inactive,
                location_type=args.location_type,
            )
        ),
    )
    return 0


def run_materials_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the material listing workflow."""
    _print_rows(
        ("MaterialID", "MaterialName", "IsActive"),
        (
            (row.material_id, row.material_name, row.is_active)
            for row in core_logic.list_materials(context, include_inactive=args.include_inactive)
        ),
    )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
