"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping
from unittest.mock import Mock

import pytest

from attire_erp import cli, codes, constants, core_logic, data_manager


WRITE_COMMANDS = {
    "add-branch",
    "add-customer",
    "add-user",
    "add-product",
    "create-order",
    "discount",
    "pay",
    "prepare",
    "deliver",
    "return",
    "delete-order",
    "sync-quantities",
    "order-codes",
}

READ_COMMANDS = {
    "show-order",
    "stock",
    "financials",
    "overdue",
    "upcoming",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "attire-cli"
    assert "Attire" in (parser.description or "")


def test_build_parser_defines_caller_identity_flags():
    parser = cli.build_parser()
    namespace = parser.parse_args(["--user-id", "U-7", "--user-name", "Rana", "--branch-id", "B-UP", "--edit-price"])

    assert namespace.user_id == "U-7"
    assert namespace.user_name == "Rana"
    assert namespace.branch_id == "B-UP"
    assert namespace.edit_price is True
    assert namespace.all_branches is False


def test_configure_subcommands_registers_all_commands(cli_parser):
    """configure_subcommands should wire every mutating and reporting sub-command."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_mutating_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)

    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) and spec.mutates for spec in specs.values())
    for name in WRITE_COMMANDS:
        assert name in subparsers_action.choices


def test_register_read_commands_returns_read_only_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)

    assert set(specs) == READ_COMMANDS
    assert not any(spec.mutates for spec in specs.values())
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


# ---------------------------------------------------------------------------
# Command registrations
# ---------------------------------------------------------------------------


def _parse(register, argv):
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = register(subparsers)
    spec.register(subparsers)
    return spec, parser.parse_args(argv)


def test_register_add_product_command_configures_arguments():
    spec, namespace = _parse(
        cli.register_add_product_command,
        [
            "add-product",
            "--product-name",
            "Ivory Gown",
            "--price",
            "50.00",
            "--category",
            "Rental",
            "--initial-stock",
            "4",
            "--global",
        ],
    )

    assert spec.name == "add-product"
    assert spec.help_text
    assert namespace.product_name == "Ivory Gown"
    assert namespace.price == "50.00"
    assert namespace.initial_stock == 4
    assert namespace.is_global is True
    assert namespace.product_branch_id is None


def test_register_add_product_command_rejects_unknown_category():
    with pytest.raises(SystemExit):
        _parse(
            cli.register_add_product_command,
            ["add-product", "--product-name", "X", "--price", "1", "--category", "Lease", "--initial-stock", "1"],
        )


def test_register_create_order_command_configures_arguments():
    spec, namespace = _parse(
        cli.register_create_order_command,
        [
            "create-order",
            "--customer-id",
            "C-LAYLA",
            "--type",
            "Rental",
            "--item",
            "P-1:2",
            "--item",
            "P-2:1:45.50",
            "--order-date",
            "2025-05-01",
            "--delivery-date",
            "2025-05-10",
            "--return-date",
            "2025-05-12",
            "--paid-amount",
            "40",
            "--payment-method",
            "Cash",
            "--order-branch-id",
            "B-DOWN",
            "--idempotency-key",
            "web-form-17",
        ],
    )

    assert spec.name == "create-order"
    assert namespace.transaction_type == "Rental"
    assert namespace.items == [
        core_logic.OrderItemRequest("P-1", 2),
        core_logic.OrderItemRequest("P-2", 1, Decimal("45.50")),
    ]
    assert namespace.order_date == date(2025, 5, 1)
    assert namespace.return_date == date(2025, 5, 12)
    assert namespace.payment_method == "Cash"
    assert namespace.order_branch_id == "B-DOWN"
    assert namespace.idempotency_key == "web-form-17"


def test_register_return_command_configures_arguments():
    _, namespace = _parse(
        cli.register_return_command,
        ["return", "--order-id", "O1", "--condition", "Damaged", "--condition-notes", "Torn hem"],
    )

    assert namespace.condition == "Damaged"
    assert namespace.condition_notes == "Torn hem"
    assert namespace.payment_amount == "0"
    assert namespace.payment_method is None


@pytest.mark.parametrize(
    ("flags", "expected"),
    [([], None), (["--restore-stock"], True), (["--keep-stock"], False)],
)
def test_register_delete_order_command_restore_policy(flags, expected):
    _, namespace = _parse(cli.register_delete_order_command, ["delete-order", "--order-id", "O1", *flags])

    assert namespace.restore_stock is expected


def test_register_delete_order_command_rejects_both_policies():
    with pytest.raises(SystemExit):
        _parse(
            cli.register_delete_order_command,
            ["delete-order", "--order-id", "O1", "--restore-stock", "--keep-stock"],
        )


def test_register_upcoming_command_configures_arguments():
    spec, namespace = _parse(cli.register_upcoming_command, ["upcoming", "--today", "2025-05-12", "--days", "3"])

    assert spec.mutates is False
    assert namespace.today == date(2025, 5, 12)
    assert namespace.days == 3


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is sentinel_context


def test_load_runtime_context_supports_defaults(monkeypatch, tmp_path):
    """load_runtime_context should resolve config.ini from the working directory."""

    config_path = tmp_path / "config.ini"
    config_path.write_text("[Dummy]\nkey=value\n")
    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_path
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.chdir(tmp_path)
    assert cli.load_runtime_context() is sentinel_context


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(runtime_context):
    """dispatch_command should call the executor associated with the command."""

    execute = Mock(return_value=0)
    spec = cli.CommandSpec("alpha", "help", lambda subparsers: subparsers.add_parser("alpha"), execute)
    args = argparse.Namespace(command="alpha")

    assert cli.dispatch_command(runtime_context, args, {"alpha": spec}) == 0
    execute.assert_called_once_with(runtime_context, args)


def test_dispatch_command_handles_unknown_commands(runtime_context):
    """dispatch_command should raise a clear error for unknown commands."""

    args = argparse.Namespace(command="unknown")
    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, args, {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    """build_command_table should index specs by their command names."""

    table = cli.build_command_table(command_spec_iterable)
    assert set(table) == {spec.name for spec in command_spec_iterable}


def test_build_command_table_detects_duplicate_commands():
    """build_command_table should guard against duplicate command names."""

    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_parse_item_accepts_optional_price():
    assert cli.parse_item("P-1:3") == core_logic.OrderItemRequest("P-1", 3)
    assert cli.parse_item("P-1:1:9.99") == core_logic.OrderItemRequest("P-1", 1, Decimal("9.99"))


@pytest.mark.parametrize("raw", ["P-1", ":2", "P-1:two", "P-1:1:cheap", "P-1:1:2:3"])
def test_parse_item_rejects_malformed_values(raw):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_item(raw)


def test_parse_date_rejects_other_formats():
    assert cli.parse_date("2025-05-10") == date(2025, 5, 10)
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_date("10/05/2025")


def test_build_caller_scope_reads_identity_flags():
    args = argparse.Namespace(user_id="U-1", user_name="Rana", branch_id="B-UP", all_branches=True, edit_price=False)

    scope = cli.build_caller_scope(args)

    assert scope == core_logic.CallerScope("U-1", "Rana", "B-UP", None, True, False)


def test_translate_create_order_returns_command(monkeypatch):
    monkeypatch.setattr(core_logic, "current_date", lambda: date(2025, 5, 1))
    args = argparse.Namespace(
        customer_id="C-LAYLA",
        transaction_type="Sale",
        order_date=None,
        delivery_date=date(2025, 5, 2),
        return_date=None,
        items=[core_logic.OrderItemRequest("P-1", 1)],
        seller_id="U-SAMI",
        paid_amount="12.50",
        payment_method="Card",
        order_branch_id="B-DOWN",
        notes="Gift wrap",
        idempotency_key=None,
    )

    command = cli.translate_create_order(args)

    assert command.transaction_type is constants.TransactionType.SALE
    assert command.order_date == date(2025, 5, 1)
    assert command.items == (core_logic.OrderItemRequest("P-1", 1),)
    assert command.paid_amount == Decimal("12.50")
    assert command.payment_method is constants.PaymentMethod.CARD
    assert command.branch_id == "B-DOWN"


def test_translate_pay_returns_payment_command():
    args = argparse.Namespace(
        order_id="O1",
        amount="20",
        payment_method="Bank Transfer",
        notes=None,
        payment_date=None,
        idempotency_key="pay-9",
    )

    command = cli.translate_pay(args)

    assert command == core_logic.PaymentCommand(
        "O1", Decimal("20"), constants.PaymentMethod.BANK_TRANSFER, idempotency_key="pay-9"
    )


def test_translate_discount_and_return_commands():
    discount = cli.translate_discount(
        argparse.Namespace(order_id="O1", amount="5.5", reason="Loyalty", idempotency_key=None)
    )
    returned = cli.translate_return(
        argparse.Namespace(
            order_id="O1",
            condition="Good",
            condition_notes=None,
            payment_amount="0",
            payment_method=None,
            payment_notes=None,
        )
    )

    assert discount == core_logic.DiscountCommand("O1", Decimal("5.5"), "Loyalty")
    assert returned.condition is constants.ReturnCondition.GOOD
    assert returned.payment_amount == Decimal("0")
    assert returned.payment_method is None


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def _identity(**extra) -> argparse.Namespace:
    return argparse.Namespace(
        user_id="U-ADMIN",
        user_name="Amira Admin",
        branch_id=None,
        all_branches=True,
        edit_price=False,
        **extra,
    )


def test_run_create_order_invokes_bll(runtime_context, monkeypatch, capsys):
    command = Mock(name="command")
    order = Mock(
        order_code="70000001",
        transaction_type="Rental",
        status="Ongoing",
        return_date=None,
        total_price=Decimal("100"),
        paid_amount=Decimal("40"),
        discount_amount=Decimal("0"),
        remaining_amount=Decimal("60"),
        order_id="O1",
    )
    monkeypatch.setattr(cli, "translate_create_order", lambda args: command)
    create = Mock(return_value=order)
    monkeypatch.setattr(cli.core_logic, "create_order", create)

    result = cli.run_create_order(runtime_context, _identity())

    assert result == 0
    context, scope, passed = create.call_args.args
    assert context is runtime_context
    assert scope.user_id == "U-ADMIN"
    assert passed is command
    assert "remaining=60.00" in capsys.readouterr().out


def test_run_delete_order_passes_restore_policy(runtime_context, monkeypatch, capsys):
    delete = Mock(return_value=[Mock(), Mock()])
    monkeypatch.setattr(cli.core_logic, "delete_order", delete)

    result = cli.run_delete_order(runtime_context, _identity(order_id="O1", restore_stock=True))

    assert result == 0
    assert delete.call_args.kwargs == {"restore_stock": True}
    assert "2 ledger entries" in capsys.readouterr().out


def test_run_sync_quantities_reports_clean_store(runtime_context, monkeypatch, capsys):
    reconcile = Mock(return_value=[])
    monkeypatch.setattr(cli.reports, "reconcile_rented_quantities", reconcile)

    assert cli.run_sync_quantities(runtime_context, argparse.Namespace(apply=True)) == 0
    reconcile.assert_called_once_with(runtime_context, apply=True)
    assert "All rented quantities match" in capsys.readouterr().out


def test_run_order_codes_repairs_only_when_asked(runtime_context, monkeypatch, capsys):
    monkeypatch.setattr(cli.codes, "find_duplicate_order_codes", Mock(return_value={"70000001": ["O1", "O2"]}))
    repair = Mock(return_value={"O2": "70000009"})
    monkeypatch.setattr(cli.codes, "repair_duplicate_order_codes", repair)

    cli.run_order_codes(runtime_context, argparse.Namespace(repair=False))
    repair.assert_not_called()

    cli.run_order_codes(runtime_context, argparse.Namespace(repair=True))
    repair.assert_called_once()
    assert "O2 -> 70000009" in capsys.readouterr().out


def test_run_financials_report_invokes_reports(runtime_context, monkeypatch, capsys):
    summary = Mock(return_value={"payments_received": Decimal("40")})
    monkeypatch.setattr(cli.reports, "calculate_financial_summary", summary)

    assert cli.run_financials_report(runtime_context, argparse.Namespace()) == 0
    summary.assert_called_once_with(runtime_context)
    assert "payments_received: 40.00" in capsys.readouterr().out


def test_run_show_order_hides_other_branch_orders(runtime_context, monkeypatch):
    order = Mock(branch_id="B-UP")
    monkeypatch.setattr(cli.core_logic, "get_order", Mock(return_value=order))
    args = argparse.Namespace(order_id="O1", user_id="U-2", user_name="Sami", branch_id="B-DOWN")

    with pytest.raises(core_logic.NotFoundError):
        cli.run_show_order(runtime_context, args)


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.InsufficientStockError("Gown", "Rental", 3, 1), 2),
        (FileNotFoundError("missing"), 3),
        (data_manager.StoreWriteError("locked"), 4),
        (codes.CodeGenerationError("exhausted"), 4),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert caplog.records


def test_handle_cli_error_logs_human_readable_message(caplog: pytest.LogCaptureFixture):
    """handle_cli_error should emit a user-friendly log message."""

    caplog.set_level("ERROR")
    cli.handle_cli_error(core_logic.StatusConstraintError("deliver", "Completed"))
    assert any("Cannot deliver an order with status 'Completed'" in record.getMessage() for record in caplog.records)


def test_persist_workbook_saves_changes(runtime_context, monkeypatch):
    """persist_workbook should request the data layer to save the workbook."""

    persist = Mock()
    monkeypatch.setattr(cli.core_logic, "persist_context", persist)
    cli.persist_workbook(runtime_context)
    persist.assert_called_once_with(runtime_context)


def test_persist_workbook_handles_read_only_workbooks(runtime_context, monkeypatch):
    """A workbook locked by another program surfaces as a store write failure."""

    monkeypatch.setattr(cli.core_logic, "persist_context", Mock(side_effect=PermissionError("read-only")))
    with pytest.raises(data_manager.StoreWriteError, match="read-only"):
        cli.persist_workbook(runtime_context)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_executes_specified_command(monkeypatch, runtime_context):
    """main should execute the command parsed from argv and persist writes."""

    parser = _stub_parser(command="pay")
    command_table = {"pay": cli.CommandSpec("pay", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    called = {}

    def fake_dispatch(context: core_logic.RuntimeContext, args: argparse.Namespace, table: Mapping[str, cli.CommandSpec]) -> int:
        called["context"] = context
        called["args"] = args
        called["table"] = table
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda ctx: called.setdefault("persisted", ctx))

    exit_code = cli.main(["pay"])
    assert exit_code == 0
    assert called["context"] is runtime_context
    assert called["persisted"] is runtime_context
    assert called["args"].command == "pay"


def test_main_handles_bll_errors(monkeypatch, runtime_context):
    """main should surface business rule violations as non-zero exits."""

    parser = _stub_parser(command="pay")
    command_table = {"pay": cli.CommandSpec("pay", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    def fake_dispatch(*_: object) -> int:
        raise core_logic.BusinessRuleViolation("invalid")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    persist = Mock()
    monkeypatch.setattr(cli, "persist_workbook", persist)

    handled = {}

    def fake_handle(error: Exception) -> int:
        handled["error"] = error
        return 99

    monkeypatch.setattr(cli, "handle_cli_error", fake_handle)
    exit_code = cli.main(["pay"])
    assert exit_code == 99
    assert isinstance(handled["error"], core_logic.BusinessRuleViolation)
    persist.assert_not_called()


def test_main_skips_persistence_for_read_commands(monkeypatch, runtime_context):
    parser = _stub_parser(command="financials")
    command_table = {
        "financials": cli.CommandSpec("financials", "help", lambda _: parser, lambda *_: 0, mutates=False)
    }

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)
    persist = Mock()
    monkeypatch.setattr(cli, "persist_workbook", persist)

    assert cli.main(["financials"]) == 0
    persist.assert_not_called()


def test_main_runs_order_workflow_against_workbook(config_factory, capsys):
    """Each invocation reloads the workbook, so writes must reach the file."""

    bundle = config_factory()
    admin = ["--config", str(bundle.config_path), "--all-branches", "--user-id", "U-ADMIN", "--user-name", "Amira"]

    assert cli.main([*admin, "add-branch", "--branch-name", "Downtown", "--new-branch-id", "B-DOWN"]) == 0
    assert cli.main([*admin, "add-customer", "--full-name", "Layla Haddad", "--customer-id", "C-LAYLA"]) == 0
    capsys.readouterr()
    assert cli.main(
        [
            *admin,
            "add-product",
            "--product-name",
            "Ivory Gown",
            "--price",
            "50",
            "--category",
            "Rental",
            "--initial-stock",
            "5",
            "--product-branch-id",
            "B-DOWN",
        ]
    ) == 0
    product_id = capsys.readouterr().out.split()[0]

    order_args = [
        *admin,
        "create-order",
        "--customer-id",
        "C-LAYLA",
        "--type",
        "Rental",
        "--item",
        f"{product_id}:2",
        "--order-date",
        "2025-05-01",
        "--delivery-date",
        "2025-05-10",
        "--return-date",
        "2025-05-12",
        "--paid-amount",
        "40",
        "--payment-method",
        "Cash",
        "--order-branch-id",
        "B-DOWN",
        "--idempotency-key",
        "O-CLI-1",
    ]
    assert cli.main(order_args) == 0
    assert cli.main(order_args) == 0
    over_payment = [*admin, "pay", "--order-id", "O-CLI-1", "--amount", "70", "--payment-method", "Card"]
    assert cli.main(over_payment) == 2

    workbook = data_manager.open_workbook(bundle.workbook_path)
    order = data_manager.read_order(workbook, "O-CLI-1")
    assert order.order_code == str(constants.ORDER_CODE_START)
    assert order.paid_amount == Decimal("40")
    assert order.remaining_amount == Decimal("60")
    assert order.processed_by_user_name == "Amira"
    assert data_manager.read_product(workbook, product_id).quantity_rented == 2
    assert len(list(data_manager.iter_financial_transactions(workbook))) == 2

    capsys.readouterr()
    assert cli.main([*admin, "show-order", "--order-id", "O-CLI-1"]) == 0
    shown = capsys.readouterr().out
    assert "Order created by Amira." in shown
    assert "Payment Received" in shown


def test_main_reports_missing_configuration(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "stock"]) == 3


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            parsed = argparse.Namespace(command=command)
            return parsed

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]
