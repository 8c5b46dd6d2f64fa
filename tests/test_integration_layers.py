"""Integration tests describing end-to-end register workflows.

These scenarios drive the command line against a real workbook on disk so the
data layer, the ledger modules and the CLI are exercised together, including
the save and reload between commands.
"""

from __future__ import annotations

from decimal import Decimal

from conftest import MOMENT
from pdv_ledger import cash_session, cli, core_logic, settlement
from pdv_ledger.constants import CashSessionStatus, TransactionStatus, TransactionType


def _seed_catalog(bundle, *products) -> None:
    """Write products straight into the workbook and save it."""

    context = core_logic.load_runtime_context(bundle.config_path)
    for product in products:
        context.repositories.products.upsert(product)
    core_logic.persist_context(context)


def _reload(bundle) -> core_logic.RuntimeContext:
    context = core_logic.load_runtime_context(bundle.config_path)
    core_logic.ensure_schema_version(context)
    return context


def _run(bundle, *argv: str) -> int:
    return cli.main(["--config", str(bundle.config_path), *argv])


def test_register_day_through_the_cli(config_factory, product_factory, capsys):
    """Open the drawer, sell in cash and close with the computed value."""

    bundle = config_factory()
    _seed_catalog(bundle, product_factory("P1", stock=10))

    assert _run(bundle, "sale", "--item", "P1:1", "--tender", "Dinheiro:10", "--vendor", "V1") == 2

    assert _run(bundle, "open-session", "--opening-value", "100.00") == 0
    assert _run(bundle, "sale", "--item", "P1:5:10.00", "--tender", "Dinheiro:50", "--vendor", "V1") == 0
    assert _run(bundle, "balance") == 0
    drawer_line = next(line for line in capsys.readouterr().out.splitlines() if "drawer" in line)
    assert drawer_line.split()[-1] == "150.00"
    assert _run(bundle, "close-session") == 0

    context = _reload(bundle)
    (session,) = core_logic.list_cash_sessions(context)
    (sale,) = core_logic.list_transactions(context)
    assert session.status == CashSessionStatus.CLOSED.value
    assert session.closing_value == Decimal("150.00")
    assert sale.value == Decimal("50.00")
    assert core_logic.get_product(context, "P1").stock == 5


def test_refund_through_the_cli_restores_stock_and_drawer(config_factory, product_factory):
    bundle = config_factory()
    _seed_catalog(bundle, product_factory("P1", stock=3))
    assert _run(bundle, "open-session", "--opening-value", "20") == 0
    assert _run(bundle, "sale", "--item", "P1:2", "--tender", "Dinheiro:25", "--vendor", "V1") == 0
    (sale,) = core_logic.list_transactions(_reload(bundle))
    assert sale.change_value == Decimal("5.00")

    assert _run(bundle, "cancel-sale", "--sale-id", sale.transaction_id) == 0
    assert _run(bundle, "cancel-sale", "--sale-id", sale.transaction_id) == 2
    assert _run(bundle, "reassign-sale", "--sale-id", sale.transaction_id, "--vendor", "V2") == 0

    context = _reload(bundle)
    refund = next(t for t in core_logic.list_transactions(context) if t.transaction_type == TransactionType.EXPENSE.value)
    assert refund.description == f"ESTORNO: {sale.transaction_id}"
    assert core_logic.get_transaction(context, sale.transaction_id).vendor_id == "V2"
    assert core_logic.get_product(context, "P1").stock == 3
    session = cash_session.current_session(context)
    assert cash_session.compute_session_balance(context, session).closing_value == Decimal("20.00")


def test_expense_payment_through_the_cli(config_factory):
    bundle = config_factory()
    assert _run(bundle, "open-session", "--opening-value", "100") == 0
    assert _run(bundle, "expense", "--description", "Luz", "--value", "30", "--category", "Contas") == 0
    (expense,) = core_logic.list_transactions(_reload(bundle))
    assert expense.status == TransactionStatus.PENDING.value

    assert _run(bundle, "pay", "--transaction-id", expense.transaction_id) == 0
    assert _run(bundle, "cash-entry", "--kind", "EXPENSE", "--value", "80", "--category", "Sangria") == 2
    assert _run(bundle, "cash-entry", "--kind", "EXPENSE", "--value", "70", "--category", "Sangria") == 0

    context = _reload(bundle)
    assert core_logic.get_transaction(context, expense.transaction_id).status == TransactionStatus.PAID.value
    assert cash_session.drawer_balance(context) == Decimal("0.00")


def test_stock_count_through_the_cli(config_factory, product_factory, capsys):
    """Two batches overcount one product; finalize writes the count."""

    bundle = config_factory()
    _seed_catalog(bundle, product_factory("P1", stock=4), product_factory("P2", stock=1))

    assert _run(bundle, "count-start") == 0
    assert _run(bundle, "count-batch", "--label", "A") == 0
    assert _run(bundle, "count-scan", "789P1", "789P1", "789P1") == 0
    assert _run(bundle, "count-commit") == 0
    assert _run(bundle, "count-batch", "--label", "B") == 0
    assert _run(bundle, "count-scan", "SKU-P1", "SKU-P1", "SKU-P2") == 0
    assert _run(bundle, "count-remove", "--product-id", "P2") == 0
    assert _run(bundle, "count-commit") == 0
    assert _run(bundle, "count-scan", "789P1") == 2

    capsys.readouterr()
    assert _run(bundle, "count-status") == 0
    status = capsys.readouterr().out
    assert "P1\tProduto P1\trecorded=4\tcounted=5\tdiff=+1\tSOBRA" in status
    assert "P2\tProduto P2\trecorded=1\tcounted=0\tdiff=-1\tFALTA" in status

    assert _run(bundle, "count-finalize") == 0

    context = _reload(bundle)
    assert core_logic.get_product(context, "P1").stock == 5
    assert core_logic.get_product(context, "P2").stock == 0
    assert not context.settings.count_session_file.exists()


def test_init_refuses_to_overwrite_but_upgrades(config_factory, product_factory):
    bundle = config_factory()
    _seed_catalog(bundle, product_factory("P1"))

    assert _run(bundle, "init") == 1
    assert _run(bundle, "init", "--upgrade") == 0
    assert [p.product_id for p in core_logic.list_products(_reload(bundle))] == ["P1"]

    assert _run(bundle, "init", "--force") == 0
    assert core_logic.list_products(_reload(bundle)) == []


def test_saved_sale_survives_refresh(runtime_context, seed_products, product_factory):
    """Persist, reload from disk and read the same sale back."""

    seed_products(runtime_context, product_factory("P1"))
    cash_session.open_session(runtime_context, opening_value=Decimal("0"), timestamp=MOMENT)
    sale = settlement.settle_sale(
        runtime_context,
        settlement.SaleCommand(
            lines=(settlement.CartLine("P1", 1),),
            tenders=(settlement.Tender("Pix", Decimal("10.00")),),
            vendor_id="V1",
            timestamp=MOMENT,
        ),
    )

    core_logic.persist_context(runtime_context)
    refreshed = core_logic.refresh_context(runtime_context)

    assert core_logic.get_transaction(refreshed, sale.transaction_id) == sale
    assert core_logic.get_product(refreshed, "P1").stock == 9
