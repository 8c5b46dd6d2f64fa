"""Command-line entry points for the point-of-sale ledger.

This module only wires argparse: each sub-command is described by a
:class:`CommandSpec`, its arguments are translated into the request objects of
the ledger modules, and results are printed as plain text. Exceptions raised
by the ledger are mapped to exit codes in :func:`handle_cli_error`.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import (
    cash_session,
    core_logic,
    data_manager,
    ledger,
    log,
    settlement,
    setup_excel,
    stock_count,
)
from .constants import CashEntryKind, PaymentMethod


Executor = Callable[[Optional[core_logic.RuntimeContext], argparse.Namespace], int]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction], argparse.ArgumentParser]
    execute: Executor
    needs_context: bool = True
    writes_workbook: bool = True


def money(raw: str) -> Decimal:
    """argparse type for monetary amounts such as ``12.50``."""
    try:
        return Decimal(raw.replace(",", "."))
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid amount: {raw!r}") from exc


def cart_line(raw: str) -> settlement.CartLine:
    """argparse type for ``PRODUCT_ID:QTY[:UNIT_PRICE]``."""
    parts = raw.split(":")
    if len(parts) not in (2, 3):
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID:QTY[:PRICE], got {raw!r}")
    try:
        quantity = int(parts[1])
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid quantity in {raw!r}") from exc
    unit_price = money(parts[2]) if len(parts) == 3 else None
    return settlement.CartLine(product_id=parts[0], quantity=quantity, unit_price=unit_price)


def tender(raw: str) -> settlement.Tender:
    """argparse type for ``METHOD:VALUE``."""
    method, separator, value = raw.partition(":")
    if not separator:
        raise argparse.ArgumentTypeError(f"Expected METHOD:VALUE, got {raw!r}")
    valid = [member.value for member in PaymentMethod]
    if method not in valid:
        raise argparse.ArgumentTypeError(f"Unknown payment method {method!r}; choose from {', '.join(valid)}")
    return settlement.Tender(method=method, value=money(value))


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pdv-ledger",
        description="Register, cash drawer and stock count tools for the ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    return parser


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    specs = [
        *register_write_commands(subparsers).values(),
        *register_count_commands(subparsers).values(),
        *register_read_commands(subparsers).values(),
    ]
    return build_command_table(specs)


def _spec(
    subparsers: argparse._SubParsersAction,
    name: str,
    help_text: str,
    execute: Executor,
    arguments: Callable[[argparse.ArgumentParser], None] = lambda parser: None,
    *,
    needs_context: bool = True,
    writes_workbook: bool = True,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        arguments(parser)
        parser.set_defaults(command=name)
        return parser

    spec = CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=execute,
        needs_context=needs_context,
        writes_workbook=writes_workbook,
    )
    spec.register(subparsers)
    return spec


def register_write_commands(subparsers: argparse._SubParsersAction) -> Dict[str, CommandSpec]:
    """Declare commands that write to the workbook."""

    def init_args(parser: argparse.ArgumentParser) -> None:
        mode = parser.add_mutually_exclusive_group()
        mode.add_argument("--force", action="store_true", help="Overwrite an existing workbook.")
        mode.add_argument("--upgrade", action="store_true", help="Add missing sheets to an existing workbook.")

    def sale_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--item", dest="items", type=cart_line, action="append", default=[], help="PRODUCT_ID:QTY[:PRICE]")
        parser.add_argument("--tender", dest="tenders", type=tender, action="append", default=[], help="METHOD:VALUE")
        parser.add_argument("--vendor", dest="vendor_id", default=None)
        parser.add_argument("--client", dest="client_id", default=None)
        parser.add_argument("--shipping", type=money, default=data_manager.ZERO)
        parser.add_argument("--discount", type=money, default=data_manager.ZERO)
        parser.add_argument("--discount-percent", action="store_true", help="Treat --discount as a percentage.")
        parser.add_argument("--card-operator", default=None)
        parser.add_argument("--card-brand", default=None)
        parser.add_argument("--installments", type=int, default=None)
        parser.add_argument("--auth-number", default=None)
        parser.add_argument("--nsu", dest="transaction_sku", default=None)

    def cancel_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--sale-id", required=True)

    def reassign_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--vendor", dest="vendor_id", default=None)
        parser.add_argument("--client", dest="client_id", default=None)

    def open_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--opening-value", type=money, default=None, help="Defaults to the last closing value.")
        parser.add_argument("--register", dest="register_name", default=None)

    def close_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--session-id", default=None)

    def entry_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--kind", choices=[member.value for member in CashEntryKind], required=True)
        parser.add_argument("--value", type=money, required=True)
        parser.add_argument("--category", required=True)
        parser.add_argument("--description", default="")
        parser.add_argument("--method", choices=[member.value for member in PaymentMethod], default=None)

    def expense_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--description", required=True)
        parser.add_argument("--value", type=money, required=True)
        parser.add_argument("--category", required=True)
        parser.add_argument("--method", choices=[member.value for member in PaymentMethod], default=PaymentMethod.CASH.value)
        parser.add_argument("--paid", action="store_true", help="Record the expense as already paid.")
        parser.add_argument("--due-date", default=None)

    def pay_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--transaction-id", required=True)

    return {
        "init": _spec(subparsers, "init", "Create or upgrade the master workbook.", run_init, init_args, needs_context=False),
        "sale": _spec(subparsers, "sale", "Settle a sale at the register.", run_sale, sale_args),
        "cancel-sale": _spec(subparsers, "cancel-sale", "Refund a sale and restock its items.", run_cancel_sale, cancel_args),
        "reassign-sale": _spec(subparsers, "reassign-sale", "Change the vendor or customer of a sale.", run_reassign_sale, reassign_args),
        "open-session": _spec(subparsers, "open-session", "Open the cash drawer.", run_open_session, open_args),
        "close-session": _spec(subparsers, "close-session", "Close the cash drawer.", run_close_session, close_args),
        "cash-entry": _spec(subparsers, "cash-entry", "Record a manual drawer movement.", run_cash_entry, entry_args),
        "expense": _spec(subparsers, "expense", "Record an expense transaction.", run_expense, expense_args),
        "pay": _spec(subparsers, "pay", "Mark a pending transaction as paid.", run_pay, pay_args),
    }


def register_count_commands(subparsers: argparse._SubParsersAction) -> Dict[str, CommandSpec]:
    """Declare stock count commands."""

    def label_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--label", required=True, help="Batch name, e.g. 'Corredor A'.")

    def scan_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("codes", nargs="+", help="Barcodes or SKUs, one unit each.")

    def remove_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--all", dest="remove_all", action="store_true")

    def batch_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--batch-id", required=True)

    return {
        "count-start": _spec(subparsers, "count-start", "Start a stock count session.", run_count_start, writes_workbook=False),
        "count-batch": _spec(subparsers, "count-batch", "Open a named batch for scanning.", run_count_batch, label_args, writes_workbook=False),
        "count-scan": _spec(subparsers, "count-scan", "Count scanned codes in the open batch.", run_count_scan, scan_args, writes_workbook=False),
        "count-remove": _spec(subparsers, "count-remove", "Remove units from the open batch.", run_count_remove, remove_args, writes_workbook=False),
        "count-commit": _spec(subparsers, "count-commit", "Commit the open batch.", run_count_commit, writes_workbook=False),
        "count-delete-batch": _spec(subparsers, "count-delete-batch", "Delete a committed batch.", run_count_delete_batch, batch_args, writes_workbook=False),
        "count-status": _spec(subparsers, "count-status", "Show counted against recorded stock.", run_count_status, writes_workbook=False),
        "count-finalize": _spec(subparsers, "count-finalize", "Overwrite stock with the count.", run_count_finalize),
        "count-reset": _spec(subparsers, "count-reset", "Discard the count session.", run_count_reset, writes_workbook=False),
    }


def register_read_commands(subparsers: argparse._SubParsersAction) -> Dict[str, CommandSpec]:
    """Declare read-only reports."""

    def balance_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--store-id", default=None)

    def report_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--by", choices=sorted(ledger.GROUPINGS), default="day")
        parser.add_argument("--day", type=date.fromisoformat, default=None, help="Restrict to one day (YYYY-MM-DD).")

    return {
        "balance": _spec(subparsers, "balance", "Show the drawer and cumulative balances.", run_balance, balance_args, writes_workbook=False),
        "margin": _spec(subparsers, "margin", "Show revenue against cost snapshots.", run_margin, writes_workbook=False),
        "sales-report": _spec(subparsers, "sales-report", "Group sales by hour, day, vendor or store.", run_sales_report, report_args, writes_workbook=False),
        "income-statement": _spec(subparsers, "income-statement", "Show the income statement.", run_income_statement, writes_workbook=False),
        "low-stock": _spec(subparsers, "low-stock", "List products at or below minimum stock.", run_low_stock, writes_workbook=False),
    }


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context and refuse mismatched workbooks."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: Optional[core_logic.RuntimeContext],
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


# ---------------------------------------------------------------------------
# Translators
# ---------------------------------------------------------------------------


def translate_sale(args: argparse.Namespace) -> settlement.SaleCommand:
    """Translate CLI args into a sale command, attaching card details to card tenders."""
    tenders: List[settlement.Tender] = []
    for offered in args.tenders:
        if offered.is_card:
            offered = settlement.Tender(
                method=offered.method,
                value=offered.value,
                installments=args.installments,
                auth_number=args.auth_number,
                transaction_sku=args.transaction_sku,
                card_operator_id=args.card_operator,
                card_brand_id=args.card_brand,
            )
        tenders.append(offered)
    return settlement.SaleCommand(
        lines=tuple(args.items),
        tenders=tuple(tenders),
        vendor_id=args.vendor_id,
        client_id=args.client_id,
        shipping=args.shipping,
        discount=args.discount,
        discount_is_percent=args.discount_percent,
    )


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def _require(context: Optional[core_logic.RuntimeContext]) -> core_logic.RuntimeContext:
    if context is None:
        raise RuntimeError("This command needs a loaded workbook")
    return context


def run_init(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    config_path = data_manager.find_config_file(args.config)
    output = setup_excel.run_from_config(config_path, overwrite=args.force, upgrade=args.upgrade)
    print(f"Workbook ready at '{output}'")
    return 0


def run_sale(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Execute the sale workflow."""
    sale = settlement.settle_sale(_require(context), translate_sale(args))
    print(f"{sale.transaction_id} total={sale.value} change={sale.change_value} method={sale.method}")
    return 0


def run_cancel_sale(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    refund = settlement.cancel_sale(_require(context), args.sale_id)
    print(f"{refund.transaction_id} refunded {refund.value}")
    return 0


def run_reassign_sale(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    sale = settlement.reassign_sale_parties(
        _require(context), args.sale_id, vendor_id=args.vendor_id, client_id=args.client_id
    )
    print(f"{sale.transaction_id} vendor={sale.vendor_id} client={sale.client_id}")
    return 0


def run_open_session(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    session = cash_session.open_session(
        _require(context), opening_value=args.opening_value, register_name=args.register_name
    )
    print(f"{session.session_id} {session.status} opening={session.opening_value}")
    return 0


def run_close_session(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    session = cash_session.close_session(_require(context), args.session_id)
    print(f"{session.session_id} {session.status} closing={session.closing_value}")
    return 0


def run_cash_entry(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    entry = cash_session.record_cash_entry(
        _require(context),
        kind=CashEntryKind(args.kind),
        value=args.value,
        category=args.category,
        description=args.description,
        method=args.method,
    )
    print(f"{entry.entry_id} {entry.kind} {entry.value}")
    return 0


def run_expense(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    expense = cash_session.record_expense(
        _require(context),
        description=args.description,
        value=args.value,
        category=args.category,
        method=args.method,
        paid=args.paid,
        due_date=args.due_date,
    )
    print(f"{expense.transaction_id} {expense.status} {expense.value}")
    return 0


def run_pay(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    paid = cash_session.mark_transaction_paid(_require(context), args.transaction_id)
    print(f"{paid.transaction_id} {paid.status}")
    return 0


def run_count_start(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    stock_count.start_session(stock_count.store_for(_require(context)))
    print("Stock count started")
    return 0


def run_count_batch(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    stock_count.open_batch(stock_count.store_for(_require(context)), args.label)
    print(f"Batch '{args.label.strip()}' open")
    return 0


def run_count_scan(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    context = _require(context)
    store = stock_count.store_for(context)
    products = core_logic.list_products(context)
    for code in args.codes:
        product = stock_count.scan(store, code, products)
        print(f"+1 {product.product_id} {product.name}")
    return 0


def run_count_remove(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    session = stock_count.remove_from_current_batch(
        stock_count.store_for(_require(context)), args.product_id, remove_all=args.remove_all
    )
    print(f"{args.product_id}: {session.current_batch_items.get(args.product_id, 0)} in batch")
    return 0


def run_count_commit(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    batch = stock_count.commit_batch(stock_count.store_for(_require(context)))
    print(f"{batch.batch_id} '{batch.label}' {sum(batch.items.values())} units")
    return 0


def run_count_delete_batch(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    batch = stock_count.delete_batch(stock_count.store_for(_require(context)), args.batch_id)
    print(f"Deleted {batch.batch_id} '{batch.label}'")
    return 0


def run_count_status(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    context = _require(context)
    session = stock_count.store_for(context).load()
    products = core_logic.list_products(context)
    for batch in session.batches:
        print(f"batch {batch.batch_id} '{batch.label}' {sum(batch.items.values())} units")
    if session.batch_open:
        print(f"open batch '{session.current_batch_label}' {sum(session.current_batch_items.values())} units")
    for row in stock_count.compare(session, products):
        print(f"{row.product_id}\t{row.name}\trecorded={row.recorded}\tcounted={row.counted}\tdiff={row.diff:+d}\t{row.status.value}")
    stats = stock_count.count_stats(session, products)
    print(f"total counted={stats.total_counted} divergences={stats.divergences}")
    return 0


def run_count_finalize(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    adjustments = stock_count.finalize(_require(context), stock_count.store_for(context))
    print(f"Stock overwritten for {len(adjustments)} products")
    return 0


def run_count_reset(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    stock_count.reset(stock_count.store_for(_require(context)))
    print("Stock count discarded")
    return 0


def run_balance(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    context = _require(context)
    store_id = args.store_id or context.settings.store_id
    collections = core_logic.reload_collections(context)
    session = ledger.open_session_for_store(collections["cash_sessions"], store_id)
    if session is not None:
        balance = ledger.session_balance(session, collections["transactions"], collections["cash_entries"])
        print(f"session {session.session_id}")
        print(f"  opening        {balance.opening_value}")
        print(f"  cash sales     {balance.cash_sales}")
        print(f"  manual incomes {balance.manual_incomes}")
        print(f"  manual expenses {balance.manual_expenses}")
        print(f"  cash expenses  {balance.cash_expense_transactions}")
        print(f"  drawer         {balance.closing_value}")
    cumulative = ledger.cumulative_cash_balance(
        store_id, collections["transactions"], collections["cash_entries"], collections["cash_sessions"]
    )
    print(f"cumulative {store_id}: {cumulative}")
    print(f"suggested opening: {cash_session.suggest_opening_value(collections['cash_sessions'], store_id)}")
    return 0


def run_margin(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    summary = ledger.margin_summary(core_logic.list_transactions(_require(context)))
    print(f"revenue={summary.revenue} cogs={summary.cost_of_goods_sold} margin={summary.gross_margin} ({summary.margin_percent}%)")
    return 0


def run_sales_report(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    transactions = core_logic.list_transactions(_require(context))
    if args.day is not None:
        metrics = ledger.daily_metrics(transactions, args.day)
        print(
            f"{metrics.day}: total={metrics.total_sales} sales={metrics.sales_count} units={metrics.units_sold} "
            f"ticket={metrics.average_ticket} units/sale={metrics.units_per_sale}"
        )
        sales = ledger.sales_of_day(transactions, args.day)
    else:
        sales = [transaction for transaction in transactions if ledger.is_revenue(transaction)]
    for key, total in ledger.group_totals(sales, args.by).items():
        print(f"{key}\t{total}")
    for entry in ledger.product_ranking(sales, limit=10):
        print(f"#{entry.product_id}\t{entry.name}\tqty={entry.quantity}\ttotal={entry.total}")
    return 0


def run_income_statement(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    statement = ledger.income_statement(core_logic.list_transactions(_require(context)))
    print(f"(+) gross income   {statement.total_income}")
    print(f"    sales          {statement.sales_income}")
    print(f"    services       {statement.service_income}")
    print(f"    other          {statement.other_income}")
    print(f"(-) cost of goods  {statement.cost_of_goods_sold}")
    print(f"(=) gross profit   {statement.gross_profit}")
    print(f"(-) expenses       {statement.expenses}")
    print(f"(=) net result     {statement.net_result} ({statement.net_margin_percent}%)")
    return 0


def run_low_stock(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    for product in ledger.products_below_minimum(core_logic.list_products(_require(context))):
        print(f"{product.product_id}\t{product.name}\tstock={product.stock}\tmin={product.min_stock}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution.

    Writes that went through before an ``OperationFailed`` are persisted as
    well, so the workbook reflects what actually happened. Reports and the
    stock count commands that only touch the local count file never save the
    workbook.
    """
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    spec = command_table[args.command]
    context: Optional[core_logic.RuntimeContext] = None
    try:
        if spec.needs_context:
            context = load_runtime_context(args.config)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and context is not None and spec.writes_workbook:
            persist_workbook(context)
        return exit_code
    except core_logic.OperationFailed as error:
        if context is not None and spec.writes_workbook:
            try:
                persist_workbook(context)
            except (RuntimeError, OSError) as persist_error:
                log.error("Could not persist partial writes: %s", persist_error)
        return handle_cli_error(error)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
