"""Integration tests describing the end-to-end MRF ledger workflows.

Each scenario runs the business logic against a real workbook created by
``setup_excel`` and persists to disk between steps, the way the CLI does.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from mrf_ledger import cli, core_logic, data_manager
from mrf_ledger.constants import AdjustmentType, CostCategory, EntryKind, LocationType
from mrf_ledger.errors import InsufficientInventory, LaborAllocationMismatch, MissingReferenceError


MOMENT = datetime(2024, 5, 1, 8, 0, tzinfo=UTC)


def _register_crew(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    core_logic.add_staff(context, staff_id="S1", staff_name="Asha")
    core_logic.add_staff(context, staff_id="S2", staff_name="Ravi")
    core_logic.add_agent(context, agent_id="A1", agent_name="Kiran", commission_rate="0.5")
    core_logic.add_location(context, location_id="YARD", location_name="Main yard", location_type=LocationType.MRF)
    core_logic.add_material(context, material_id="PET", material_name="PET bottles")
    core_logic.add_material(context, material_id="HDPE", material_name="HDPE containers")
    core_logic.persist_context(context)
    return core_logic.refresh_context(context)


def _record_inward(context: core_logic.RuntimeContext, voucher_number: str, quantity: str = "500"):
    draft = core_logic.new_draft(
        EntryKind.INWARD,
        counterparty_id="SUP-1",
        quantity=quantity,
        rate_per_unit="10",
        cost_rates={CostCategory.LABOR: "2"},
        commission_agent_id="A1",
        voucher_number=voucher_number,
        agent_directory=core_logic.agent_directory(context),
    )
    draft = core_logic.allocate_staff(draft, "S1", CostCategory.LABOR)
    draft = core_logic.allocate_staff(draft, "S2", CostCategory.LABOR)
    finalized = core_logic.record_entry(context, draft, when=MOMENT)
    core_logic.persist_context(context)
    return finalized


def test_inward_entry_lifecycle(runtime_context):
    """Allocate labor across two staff, drop one, and persist the entry."""

    context = _register_crew(runtime_context)
    draft = core_logic.new_draft(
        EntryKind.INWARD,
        counterparty_id="SUP-1",
        quantity="500",
        rate_per_unit="10",
        cost_rates={CostCategory.LABOR: "2"},
        commission_agent_id="A1",
        agent_directory=core_logic.agent_directory(context),
    )
    assert draft.total_amount == Decimal("5000.00")
    assert draft.cost_amounts[CostCategory.LABOR] == Decimal("1000.00")

    staff = core_logic.staff_directory(context)
    draft = core_logic.allocate_staff(draft, "S1", CostCategory.LABOR, staff_directory=staff)
    draft = core_logic.allocate_staff(draft, "S2", CostCategory.LABOR, staff_directory=staff)
    assert draft.pool.allocated_total(CostCategory.LABOR) == Decimal("1000.00")

    draft = core_logic.remove_allocation(draft, "LABOR:S1")
    finalized = core_logic.record_entry(context, draft, when=MOMENT)
    core_logic.persist_context(context)

    context = core_logic.refresh_context(context)
    entry = core_logic.get_entry(context, finalized.entry.voucher_number)
    assert entry.voucher_number.startswith("RW-20240501-")
    assert entry.total_amount == Decimal("5000")
    assert entry.commission_amount == Decimal("250")
    assert entry.cost_amounts[CostCategory.LABOR] == Decimal("1000")
    allocations = core_logic.list_entry_allocations(context, entry.voucher_number)
    assert [(row.staff_id, row.amount) for row in allocations] == [("S2", Decimal("1000"))]
    assert finalized.net_amount == Decimal("3750.00")
    assert core_logic.calculate_staff_balances(context) == {"S2": Decimal("1000")}


def test_segregated_outward_with_two_categories(runtime_context):
    context = _register_crew(runtime_context)
    draft = core_logic.new_draft(
        EntryKind.SEGREGATED_OUTWARD,
        counterparty_id="BUY-1",
        cost_rates={"SEGREGATION": "1", "BAILING": "0.5"},
    )
    draft = core_logic.add_line_item(draft, "PET", "100", "12")
    draft = core_logic.add_line_item(draft, "HDPE", "50", "20")
    draft = core_logic.allocate_staff(draft, "S1", CostCategory.SEGREGATION)
    draft = core_logic.allocate_staff(draft, "S2", CostCategory.SEGREGATION)
    draft = core_logic.allocate_staff(draft, "S1", CostCategory.BAILING)

    finalized = core_logic.record_entry(context, draft, when=MOMENT)
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    assert finalized.entry.total_amount == Decimal("2200.00")
    assert finalized.net_amount == Decimal("2200.00") - Decimal("150.00") - Decimal("75.00")
    items = list(data_manager.iter_entry_items(context.workbook))
    assert [(row.material_id, row.amount) for row in items] == [("PET", Decimal("1200")), ("HDPE", Decimal("1000"))]
    assert core_logic.list_entry_items(context, finalized.entry.voucher_number) == items
    assert core_logic.calculate_staff_balances(context) == {
        "S1": Decimal("75") + Decimal("75"),
        "S2": Decimal("75"),
    }
    assert [row.entry_kind for row in core_logic.list_entries(context, kind="SEGREGATED_OUTWARD")] == ["SEGREGATED_OUTWARD"]


def test_mismatched_allocation_leaves_workbook_untouched(runtime_context):
    context = _register_crew(runtime_context)
    draft = core_logic.new_draft(
        EntryKind.REJECTED_OUTWARD,
        counterparty_id="LANDFILL",
        quantity="200",
        rate_per_unit="1",
        cost_rates={CostCategory.LOADING: "1"},
        is_expense=True,
    )
    draft = core_logic.allocate_staff(draft, "S1", CostCategory.LOADING)
    draft = core_logic.override_allocation(draft, "LOADING:S1", "150")

    with pytest.raises(LaborAllocationMismatch):
        core_logic.record_entry(context, draft, when=MOMENT)

    assert core_logic.list_entries(context) == []
    assert list(data_manager.iter_allocations(context.workbook)) == []


def test_delete_entry_keeps_payments_and_can_leave_a_negative_balance(runtime_context):
    context = _register_crew(runtime_context)
    _record_inward(context, "RW-TEST-1")
    core_logic.record_staff_payment(
        context,
        core_logic.StaffPaymentCommand("S1", "200", reference="RW-TEST-1", timestamp=MOMENT),
    )
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)
    assert core_logic.calculate_staff_balances(context) == {"S1": Decimal("300"), "S2": Decimal("500")}

    deleted = core_logic.delete_entry(context, "RW-TEST-1")
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    assert deleted.voucher_number == "RW-TEST-1"
    assert core_logic.list_entries(context) == []
    assert core_logic.list_entry_allocations(context, "RW-TEST-1") == []
    ledger = core_logic.list_staff_ledger(context)
    assert [(row.staff_id, row.is_payment_to_staff, row.reference) for row in ledger] == [("S1", True, "RW-TEST-1")]
    assert core_logic.calculate_staff_balances(context) == {"S1": Decimal("-200")}
    with pytest.raises(MissingReferenceError):
        core_logic.delete_entry(context, "RW-TEST-1")


def test_loaded_entry_can_be_edited_and_replaced(runtime_context):
    context = _register_crew(runtime_context)
    _record_inward(context, "RW-TEST-2")
    context = core_logic.refresh_context(context)

    draft = core_logic.load_draft(context, "RW-TEST-2")
    assert draft.cost_amounts[CostCategory.LABOR] == Decimal("1000.00")
    assert [allocation.amount for allocation in draft.pool.members(CostCategory.LABOR)] == [Decimal("500.00")] * 2
    assert draft.commission_amount == Decimal("250.00")

    draft = core_logic.update_draft(draft, quantity="600")
    assert draft.commission_amount == Decimal("300.00")
    finalized = core_logic.update_entry(context, "RW-TEST-2", draft, when=MOMENT)
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    assert finalized.entry.voucher_number == "RW-TEST-2"
    entries = core_logic.list_entries(context)
    assert [(row.voucher_number, row.total_amount, row.commission_amount) for row in entries] == [
        ("RW-TEST-2", Decimal("6000"), Decimal("300")),
    ]
    assert entries[0].transaction_date_iso == "2024-05-01"
    assert len(core_logic.list_entry_allocations(context, "RW-TEST-2")) == 2
    assert core_logic.calculate_staff_balances(context) == {"S1": Decimal("600"), "S2": Decimal("600")}


def test_rows_written_at_the_same_instant_get_distinct_ids(runtime_context):
    context = _register_crew(runtime_context)

    first = core_logic.record_staff_payment(context, core_logic.StaffPaymentCommand("S1", "100", timestamp=MOMENT))
    second = core_logic.record_staff_payment(context, core_logic.StaffPaymentCommand("S1", "50", timestamp=MOMENT))
    for quantity in ("10", "5"):
        core_logic.record_inventory_adjustment(
            context,
            core_logic.InventoryAdjustmentCommand("YARD", "PET", AdjustmentType.ADD, quantity, "Intake", timestamp=MOMENT),
        )
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    assert first.ledger_id != second.ledger_id
    assert second.ledger_id == f"{first.ledger_id}-2"
    assert core_logic.calculate_staff_balances(context) == {"S1": Decimal("-150")}
    adjustments = core_logic.list_adjustments(context)
    assert len({row.adjustment_id for row in adjustments}) == 2
    assert core_logic.get_inventory_quantity(context, "YARD", "PET") == Decimal("15")


def test_inventory_adjustment_audit_trail(runtime_context):
    context = _register_crew(runtime_context)

    def adjust(kind: AdjustmentType, quantity: str, reason: str):
        return core_logic.record_inventory_adjustment(
            context,
            core_logic.InventoryAdjustmentCommand("YARD", "PET", kind, quantity, reason),
        )

    adjust(AdjustmentType.ADD, "50", "Opening stock")
    with pytest.raises(InsufficientInventory):
        adjust(AdjustmentType.REMOVE, "80", "Dispatch")
    adjust(AdjustmentType.REMOVE, "20", "Dispatch")
    adjust(AdjustmentType.COUNT, "25", "Physical count")
    adjust(AdjustmentType.LOSS, "5", "Rain damage")
    core_logic.persist_context(context)

    context = core_logic.refresh_context(context)
    assert core_logic.get_inventory_quantity(context, "YARD", "PET") == Decimal("20")
    assert len(core_logic.list_inventory(context)) == 1
    history = core_logic.list_adjustments(context, material_id="PET")
    assert [(row.adjustment_type, row.previous_qty, row.new_qty) for row in history] == [
        ("ADD", Decimal("0"), Decimal("50")),
        ("REMOVE", Decimal("50"), Decimal("30")),
        ("COUNT", Decimal("30"), Decimal("25")),
        ("LOSS", Decimal("25"), Decimal("20")),
    ]


def test_cli_round_trip(config_factory, capsys):
    """Drive the full flow through ``main`` and read the reports back."""

    config = str(config_factory().config_path)

    def run(*argv: str) -> int:
        return cli.main(["--config", config, *argv])

    assert run("add-staff", "--staff-id", "S1", "--staff-name", "Asha") == 0
    assert run("add-staff", "--staff-id", "S2", "--staff-name", "Ravi") == 0
    assert run("add-staff", "--staff-id", "S1", "--staff-name", "Again") == 2
    assert run(
        "inward",
        "--counterparty-id", "SUP-1",
        "--quantity", "500",
        "--rate", "10",
        "--labor-rate", "2",
        "--allocate", "LABOR:S1",
        "--allocate", "LABOR:S2",
        "--voucher-number", "RW-TEST-1",
    ) == 0
    assert run(
        "inward",
        "--counterparty-id", "SUP-1",
        "--quantity", "10",
        "--rate", "10",
        "--labor-rate", "2",
    ) == 2
    assert run("pay-staff", "--staff-id", "S1", "--amount", "200") == 0
    assert run("adjust-inventory", "--location-id", "YARD", "--material-id", "PET", "--type", "ADD", "--quantity", "40", "--reason", "Intake") == 2
    assert run("add-location", "--location-id", "YARD", "--location-name", "Main yard", "--type", "MRF") == 0
    assert run("add-material", "--material-id", "PET", "--material-name", "PET bottles") == 0
    assert run("adjust-inventory", "--location-id", "YARD", "--material-id", "PET", "--type", "ADD", "--quantity", "40", "--reason", "Intake") == 0
    assert run("adjust-inventory", "--location-id", "YARD", "--material-id", "PET", "--type", "REMOVE", "--quantity", "90", "--reason", "Dispatch") == 2
    capsys.readouterr()

    assert run("staff-balances") == 0
    balances = capsys.readouterr().out
    assert "S1\t₹300.00" in balances
    assert "S2\t₹500.00" in balances

    assert run("stock") == 0
    assert "YARD\tPET\t40" in capsys.readouterr().out

    assert run("entries", "--kind", "INWARD") == 0
    assert "RW-TEST-1" in capsys.readouterr().out

    assert run("locations") == 0
    assert "YARD\tMain yard\tMRF\tTrue" in capsys.readouterr().out

    assert run("materials") == 0
    assert "PET\tPET bottles\tTrue" in capsys.readouterr().out


def test_cli_replaces_and_deletes_entries(config_factory, capsys):
    config = str(config_factory().config_path)

    def run(*argv: str) -> int:
        return cli.main(["--config", config, *argv])

    def inward(quantity: str, *extra: str) -> int:
        return run(
            "inward",
            "--counterparty-id", "SUP-1",
            "--quantity", quantity,
            "--rate", "10",
            "--labor-rate", "2",
            "--allocate", "LABOR:S1",
            *extra,
        )

    assert run("add-staff", "--staff-id", "S1", "--staff-name", "Asha") == 0
    assert inward("500", "--voucher-number", "RW-TEST-1") == 0
    assert inward("600", "--replace") == 2
    assert inward("600", "--voucher-number", "RW-TEST-9", "--replace") == 2
    assert inward("600", "--voucher-number", "RW-TEST-1", "--replace") == 0
    assert "Updated RW-TEST-1: total ₹6,000.00" in capsys.readouterr().out

    assert run("staff-balances") == 0
    assert "S1\t₹1,200.00" in capsys.readouterr().out

    assert run("delete-entry", "--voucher-number", "RW-TEST-1") == 0
    assert "Deleted RW-TEST-1" in capsys.readouterr().out
    assert run("delete-entry", "--voucher-number", "RW-TEST-1") == 2

    assert run("entries") == 0
    assert "RW-TEST-1" not in capsys.readouterr().out
    assert run("staff-balances") == 0
    assert "S1" not in capsys.readouterr().out
