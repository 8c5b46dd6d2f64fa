"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping

import pytest

from pdv_ledger import cli, core_logic, settlement
from pdv_ledger.data_manager import RecordStoreError


WRITE_COMMANDS = {
    "init",
    "sale",
    "cancel-sale",
    "reassign-sale",
    "open-session",
    "close-session",
    "cash-entry",
    "expense",
    "pay",
}

COUNT_COMMANDS = {
    "count-start",
    "count-batch",
    "count-scan",
    "count-remove",
    "count-commit",
    "count-delete-batch",
    "count-status",
    "count-finalize",
    "count-reset",
}

READ_COMMANDS = {
    "balance",
    "margin",
    "sales-report",
    "income-statement",
    "low-stock",
}


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    return cli.build_parser()


@pytest.fixture
def subparsers_action(cli_parser) -> argparse._SubParsersAction:
    return cli_parser.add_subparsers(dest="command")


def _parse(argv):
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata(cli_parser):
    """build_parser should set user-facing program metadata."""

    assert isinstance(cli_parser, argparse.ArgumentParser)
    assert cli_parser.prog == "pdv-ledger"
    assert cli_parser.parse_args([]).config is None


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire writes, counts and reports."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | COUNT_COMMANDS | READ_COMMANDS
    for spec in command_table.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text


def test_register_read_commands_returns_command_specs(subparsers_action):
    """register_read_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_read_commands(subparsers_action)

    assert set(specs) == READ_COMMANDS
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


def test_only_init_runs_without_a_workbook(subparsers_action):
    specs = {**cli.register_write_commands(subparsers_action), **cli.register_count_commands(subparsers_action)}

    assert {name for name, spec in specs.items() if not spec.needs_context} == {"init"}


def test_only_stock_changing_commands_save_the_workbook(subparsers_action):
    specs = {
        **cli.register_write_commands(subparsers_action),
        **cli.register_count_commands(subparsers_action),
        **cli.register_read_commands(subparsers_action),
    }

    read_only = {name for name, spec in specs.items() if not spec.writes_workbook}

    assert read_only == (COUNT_COMMANDS - {"count-finalize"}) | READ_COMMANDS


def test_sales_report_rejects_unknown_grouping():
    with pytest.raises(SystemExit):
        _parse(["sales-report", "--by", "weekday"])


def test_init_flags_are_mutually_exclusive():
    with pytest.raises(SystemExit):
        _parse(["init", "--force", "--upgrade"])


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def test_money_accepts_comma_decimal_separator():
    assert cli.money("12,50") == Decimal("12.50")
    with pytest.raises(argparse.ArgumentTypeError):
        cli.money("doze")


def test_cart_line_parses_optional_price():
    assert cli.cart_line("P1:2") == settlement.CartLine("P1", 2, None)
    assert cli.cart_line("P1:2:9.90") == settlement.CartLine("P1", 2, Decimal("9.90"))
    for raw in ("P1", "P1:x", "P1:1:2:3"):
        with pytest.raises(argparse.ArgumentTypeError):
            cli.cart_line(raw)


def test_tender_validates_method():
    assert cli.tender("Pix:10") == settlement.Tender("Pix", Decimal("10"))
    with pytest.raises(argparse.ArgumentTypeError):
        cli.tender("Boleto:10")
    with pytest.raises(argparse.ArgumentTypeError):
        cli.tender("Dinheiro")


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_sale_attaches_card_details_to_card_tenders():
    args = _parse(
        [
            "sale",
            "--item", "P1:2",
            "--item", "P2:1:5.00",
            "--tender", "Dinheiro:10",
            "--tender", "Credito:15",
            "--vendor", "V1",
            "--discount", "10",
            "--discount-percent",
            "--card-operator", "OP1",
            "--card-brand", "VISA",
            "--installments", "2",
        ]
    )

    command = cli.translate_sale(args)

    assert command.lines == (settlement.CartLine("P1", 2), settlement.CartLine("P2", 1, Decimal("5.00")))
    assert command.vendor_id == "V1"
    assert command.discount == Decimal("10")
    assert command.discount_is_percent is True
    cash, card = command.tenders
    assert cash.card_operator_id is None
    assert (card.card_operator_id, card.card_brand_id, card.installments) == ("OP1", "VISA", 2)


# ---------------------------------------------------------------------------
# Runtime context and dispatch
# ---------------------------------------------------------------------------


def test_load_runtime_context_checks_schema_version(config_file, monkeypatch):
    """load_runtime_context should load from the given path and validate it."""

    sentinel_context = object()
    checked = {}

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.setattr(core_logic, "ensure_schema_version", lambda context: checked.setdefault("context", context))

    assert cli.load_runtime_context(config_file) is sentinel_context
    assert checked["context"] is sentinel_context


def test_load_runtime_context_rejects_other_schema(config_factory):
    bundle = config_factory(schema_version="1.0.0")

    with pytest.raises(RuntimeError, match="schema mismatch"):
        cli.load_runtime_context(bundle.config_path)


def test_dispatch_command_invokes_executor(runtime_context):
    called = {}

    def execute(context, args):
        called["context"] = context
        return 0

    table = {"balance": cli.CommandSpec("balance", "help", lambda s: s.add_parser("balance"), execute)}

    assert cli.dispatch_command(runtime_context, argparse.Namespace(command="balance"), table) == 0
    assert called["context"] is runtime_context


def test_dispatch_command_handles_unknown_commands(runtime_context):
    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, argparse.Namespace(command="unknown"), {})


def test_build_command_table_detects_duplicate_commands():
    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def test_run_sale_delegates_to_settlement(runtime_context, monkeypatch, capsys):
    args = argparse.Namespace()
    command = settlement.SaleCommand(lines=(), tenders=(), vendor_id="V1")
    sale = core_logic.data_manager.TransactionRow(
        transaction_id="SALE-1",
        date="",
        description="",
        store_id="L1",
        category="Venda",
        status="PAGO",
        value=Decimal("20.00"),
        transaction_type="INCOME",
        method="Dinheiro",
    )
    monkeypatch.setattr(cli, "translate_sale", lambda value: command)
    called = {}

    def fake_settle(context, cmd):
        called["context"] = context
        called["cmd"] = cmd
        return sale

    monkeypatch.setattr(cli.settlement, "settle_sale", fake_settle)

    assert cli.run_sale(runtime_context, args) == 0
    assert called["context"] is runtime_context
    assert called["cmd"] is command
    assert "SALE-1 total=20.00" in capsys.readouterr().out


def test_executors_refuse_missing_context():
    with pytest.raises(RuntimeError):
        cli.run_margin(None, argparse.Namespace())


def test_run_low_stock_lists_products(runtime_context, seed_products, product_factory, capsys):
    seed_products(runtime_context, product_factory("P1", stock=1, min_stock=3), product_factory("P2", stock=9, min_stock=3))

    assert cli.run_low_stock(runtime_context, argparse.Namespace()) == 0

    out = capsys.readouterr().out
    assert "P1" in out
    assert "P2" not in out


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.MissingReferenceError("unknown"), 2),
        (FileNotFoundError("missing"), 3),
        (core_logic.OperationFailed("Sale settlement", [("transaction:X", RecordStoreError("x"))]), 1),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    caplog.set_level("ERROR")
    assert cli.handle_cli_error(error) == expected
    assert caplog.records


def test_persist_workbook_handles_read_only_workbooks(runtime_context, monkeypatch):
    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("read-only")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError, match="read-only"):
        cli.persist_workbook(runtime_context)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def _patch_main(
    monkeypatch, runtime_context, command: str, *, needs_context: bool = True, writes_workbook: bool = True
) -> None:
    parser = _stub_parser(command=command)
    table = {
        command: cli.CommandSpec(
            command, "help", lambda _: parser, lambda *_: 0, needs_context=needs_context, writes_workbook=writes_workbook
        )
    }
    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)


def test_main_persists_on_success(monkeypatch, runtime_context):
    _patch_main(monkeypatch, runtime_context, "sale")
    monkeypatch.setattr(cli, "dispatch_command", lambda *_: 0)
    persisted = {}
    monkeypatch.setattr(cli, "persist_workbook", lambda context: persisted.setdefault("context", context))

    assert cli.main(["sale"]) == 0
    assert persisted["context"] is runtime_context


def test_main_leaves_the_workbook_alone_for_count_commands(monkeypatch, runtime_context):
    _patch_main(monkeypatch, runtime_context, "count-scan", writes_workbook=False)
    monkeypatch.setattr(cli, "dispatch_command", lambda *_: 0)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: (_ for _ in ()).throw(AssertionError("should not persist")))

    assert cli.main(["count-scan"]) == 0


def test_main_handles_business_errors_without_persisting(monkeypatch, runtime_context):
    _patch_main(monkeypatch, runtime_context, "sale")

    def fake_dispatch(*_: object) -> int:
        raise core_logic.BusinessRuleViolation("invalid")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: (_ for _ in ()).throw(AssertionError("should not persist")))

    assert cli.main(["sale"]) == 2


def test_main_persists_partial_writes_on_operation_failure(monkeypatch, runtime_context):
    _patch_main(monkeypatch, runtime_context, "sale")

    def fake_dispatch(*_: object) -> int:
        raise core_logic.OperationFailed("Sale settlement", [("transaction:X", RecordStoreError("locked"))])

    persisted = {}
    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda context: persisted.setdefault("context", context))

    assert cli.main(["sale"]) == 1
    assert persisted["context"] is runtime_context


def test_main_runs_init_without_loading_a_workbook(monkeypatch, runtime_context):
    _patch_main(monkeypatch, runtime_context, "init", needs_context=False)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: (_ for _ in ()).throw(AssertionError("no load")))
    seen = {}

    def fake_dispatch(context, args, table: Mapping[str, cli.CommandSpec]) -> int:
        seen["context"] = context
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)

    assert cli.main(["init"]) == 0
    assert seen["context"] is None


def test_main_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "balance"]) == 3


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command, config=None)

    return _Stub(prog="test")
