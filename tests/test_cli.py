"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from decimal import Decimal
from typing import Iterable
from unittest.mock import Mock

import pytest

from mrf_ledger import cli, core_logic
from mrf_ledger.constants import AdjustmentType, CostCategory, EntryKind, LocationType
from mrf_ledger.errors import BusinessRuleViolation, InsufficientInventory, MissingReferenceError


WRITE_COMMANDS = {
    "add-staff",
    "add-agent",
    "inward",
    "segregated-outward",
    "rejected-outward",
    "adjust-inventory",
    "pay-staff",
    "add-location",
    "add-material",
    "delete-entry",
}

READ_COMMANDS = {
    "stock",
    "adjustments",
    "entries",
    "staff-balances",
    "locations",
    "materials",
}


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "mrf-cli"
    assert "MRF" in (parser.description or "")


def test_configure_subcommands_registers_all_commands(cli_parser):
    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)

    assert set(specs) == WRITE_COMMANDS
    for name, spec in specs.items():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.name == name


def test_build_command_table_rejects_duplicates():
    spec = cli.CommandSpec("alpha", "help", lambda subparsers: subparsers.add_parser("alpha"), lambda *_: 0)

    with pytest.raises(ValueError):
        cli.build_command_table([spec, spec])


def test_entry_commands_only_expose_their_categories():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    inward = parser.parse_args(["inward", "--counterparty-id", "SUP-1", "--quantity", "5", "--rate", "2", "--labor-rate", "1"])
    assert inward.labor_rate == "1"
    assert inward.agent_id is None

    rejected = parser.parse_args(["rejected-outward", "--counterparty-id", "R-1", "--quantity", "5", "--rate", "0", "--loading-rate", "1"])
    assert rejected.loading_rate == "1"
    assert not hasattr(rejected, "labor_rate")

    with pytest.raises(SystemExit):
        parser.parse_args(["rejected-outward", "--counterparty-id", "R-1", "--quantity", "5", "--rate", "0", "--labor-rate", "1"])


def test_dispatch_command_routes_to_executor(context):
    called = {}

    def execute(ctx: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        called["context"] = ctx
        return 0

    table = {"echo": cli.CommandSpec("echo", "help", lambda subparsers: subparsers.add_parser("echo"), execute)}

    assert cli.dispatch_command(context, argparse.Namespace(command="echo"), table) == 0
    assert called["context"] is context
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="missing"), table)


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def test_parse_item_and_allocation_helpers():
    item = cli.parse_item("PET:100:12.5")
    assert (item.material_id, item.quantity, item.rate_per_unit) == ("PET", "100", "12.5")
    assert cli.parse_allocation("labor:S1") == ("labor", "S1")
    assert cli.parse_override("labor:S1=600") == ("LABOR:S1", "600")

    for bad in ("PET:100", ":1:2"):
        with pytest.raises(BusinessRuleViolation):
            cli.parse_item(bad)
    with pytest.raises(BusinessRuleViolation):
        cli.parse_allocation("S1")
    with pytest.raises(BusinessRuleViolation):
        cli.parse_override("LABOR:S1")


def test_translate_entry_builds_allocated_draft():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(
        [
            "inward",
            "--counterparty-id", "SUP-1",
            "--quantity", "500",
            "--rate", "10",
            "--labor-rate", "2",
            "--allocate", "LABOR:S1",
            "--allocate", "LABOR:S2",
            "--override", "LABOR:S1=600",
            "--override", "LABOR:S2=400",
            "--agent-id", "A1",
        ]
    )

    draft = cli.translate_entry(args, EntryKind.INWARD, agent_directory={"A1": Decimal("0.1")})

    assert draft.total_amount == Decimal("5000.00")
    assert draft.commission_amount == Decimal("50.00")
    assert {a.staff_id: a.amount for a in draft.pool.members(CostCategory.LABOR)} == {
        "S1": Decimal("600.00"),
        "S2": Decimal("400.00"),
    }


def test_translate_segregated_entry_reads_items():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(
        [
            "segregated-outward",
            "--counterparty-id", "BUY-1",
            "--item", "PET:10:20",
            "--item", "HDPE:5:30",
            "--bailing-rate", "1",
            "--allocate", "BAILING:S1",
        ]
    )

    draft = cli.translate_entry(args, EntryKind.SEGREGATED_OUTWARD)

    assert draft.total_amount == Decimal("350.00")
    assert draft.pool.allocated_total(CostCategory.BAILING) == Decimal("15.00")


def test_translate_adjust_inventory_returns_command():
    args = argparse.Namespace(
        location_id="YARD",
        material_id="PET",
        adjustment_type="LOSS",
        quantity="3",
        reason="Rain damage",
        notes=None,
    )

    command = cli.translate_adjust_inventory(args)

    assert command.adjustment_type is AdjustmentType.LOSS
    assert command.reason == "Rain damage"


def test_translate_add_location_reads_type_and_flag():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(
        ["add-location", "--location-id", "SHED", "--location-name", "North shed", "--type", "GODOWN", "--inactive"]
    )

    request = cli.translate_add_location(args)

    assert request == {
        "location_id": "SHED",
        "location_name": "North shed",
        "location_type": LocationType.GODOWN,
        "is_active": False,
    }
    assert parser.parse_args(["add-location", "--location-id", "Y", "--location-name", "Yard"]).location_type == "MRF"


def test_replace_requires_a_voucher_number(monkeypatch, context):
    monkeypatch.setattr(core_logic, "agent_directory", lambda _context: {})
    update_entry = Mock()
    monkeypatch.setattr(core_logic, "update_entry", update_entry)
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(
        ["inward", "--counterparty-id", "SUP-1", "--quantity", "5", "--rate", "1", "--replace"]
    )

    with pytest.raises(BusinessRuleViolation):
        cli.run_entry(context, args, EntryKind.INWARD)
    update_entry.assert_not_called()


def test_run_delete_entry_delegates_to_business_logic(monkeypatch, context, capsys):
    calls = []

    def fake_delete(ctx, voucher_number):
        calls.append((ctx, voucher_number))
        return argparse.Namespace(voucher_number=voucher_number)

    monkeypatch.setattr(core_logic, "delete_entry", fake_delete)

    assert cli.run_delete_entry(context, argparse.Namespace(voucher_number="RW-TEST-1")) == 0
    assert calls == [(context, "RW-TEST-1")]
    assert "Deleted RW-TEST-1" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Error handling and main
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (BusinessRuleViolation("invalid"), 2),
        (InsufficientInventory(Decimal("50"), Decimal("80")), 2),
        (MissingReferenceError("missing"), 2),
        (FileNotFoundError("config.ini"), 3),
        (RuntimeError("boom"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    caplog.set_level("ERROR")
    assert cli.handle_cli_error(error) == expected
    assert caplog.records


def test_persist_workbook_wraps_permission_errors(context, monkeypatch):
    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("locked")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError):
        cli.persist_workbook(context)


def test_main_executes_and_persists(monkeypatch, context):
    parser = _stub_parser(command="stock")
    command_table = {"stock": cli.CommandSpec("stock", "help", lambda _: parser, lambda *_: 0)}
    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)

    persisted = {}
    monkeypatch.setattr(cli, "persist_workbook", lambda ctx: persisted.setdefault("context", ctx))

    assert cli.main(["stock"]) == 0
    assert persisted["context"] is context


def test_main_handles_bll_errors_without_persisting(monkeypatch, context):
    parser = _stub_parser(command="inward")
    command_table = {"inward": cli.CommandSpec("inward", "help", lambda _: parser, lambda *_: 0)}
    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)

    def fake_dispatch(*_: object) -> int:
        raise BusinessRuleViolation("invalid")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: (_ for _ in ()).throw(AssertionError("should not persist")))

    assert cli.main(["inward"]) == 2


def test_main_rejects_schema_mismatch(config_factory):
    bundle = config_factory(schema_version="0.1.0")

    assert cli.main(["--config", str(bundle.config_path), "stock"]) == 1


def test_main_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "stock"]) == 3


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command)

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    choices: set[str] = set()
    for action in actions._group_actions:
        if isinstance(action, argparse._SubParsersAction):
            choices.update(action.choices.keys())
    return choices
