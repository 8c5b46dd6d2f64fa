"""Unit tests for the runtime context, identifiers and write dispatch."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

import pdv_ledger
from pdv_ledger import constants, core_logic, data_manager


@pytest.fixture
def settings(tmp_path):
    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        store_name="Loja",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        store_id="L1",
        register_name="Caixa 01",
        operator_id="U1",
        operator_role=constants.UserRole.CASHIER.value,
        count_session_file=tmp_path / "count.json",
    )


@pytest.fixture
def repositories():
    return Mock(
        name="repositories",
        products=Mock(name="products"),
        transactions=Mock(name="transactions"),
        cash_sessions=Mock(name="cash_sessions"),
        cash_entries=Mock(name="cash_entries"),
    )


@pytest.fixture
def context(settings, repositories):
    return core_logic.RuntimeContext(settings=settings, workbook=Mock(name="workbook"), repositories=repositories)


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path, settings):
    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    workbook = Mock(name="workbook")

    monkeypatch.setattr(data_manager, "find_config_file", Mock(return_value=config_path))
    monkeypatch.setattr(data_manager, "read_config", Mock(return_value=parser))
    parse_settings = Mock(return_value=settings)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", Mock(return_value=workbook))
    build_repositories = Mock(return_value="repos")
    monkeypatch.setattr(data_manager, "build_repositories", build_repositories)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is settings
    assert context.workbook is workbook
    assert context.repositories == "repos"
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    build_repositories.assert_called_once_with(workbook)


def test_ensure_schema_version_rejects_mismatch(context, settings):
    from dataclasses import replace

    stale = core_logic.RuntimeContext(
        settings=replace(settings, schema_version="1.0.0"),
        workbook=context.workbook,
        repositories=context.repositories,
    )

    with pytest.raises(RuntimeError, match="schema mismatch"):
        core_logic.ensure_schema_version(stale)
    core_logic.ensure_schema_version(context)


def test_persist_context_saves_to_configured_file(monkeypatch, context, settings):
    save = Mock()
    monkeypatch.setattr(data_manager, "save_workbook", save)

    core_logic.persist_context(context)

    save.assert_called_once_with(context.workbook, destination=settings.data_file)


def test_refresh_context_drops_cache(monkeypatch, context):
    context._cache["products"] = ["stale"]
    fresh = Mock(name="fresh")
    monkeypatch.setattr(data_manager, "refresh_workbook", Mock(return_value=fresh))
    monkeypatch.setattr(data_manager, "build_repositories", Mock(return_value="repos"))

    refreshed = core_logic.refresh_context(context)

    assert refreshed.workbook is fresh
    assert refreshed._cache == {}


# ---------------------------------------------------------------------------
# Collection cache
# ---------------------------------------------------------------------------


def test_collections_are_cached_until_invalidated(context, repositories):
    repositories.products.list.return_value = ["p1"]

    assert core_logic.list_products(context) == ["p1"]
    assert core_logic.list_products(context) == ["p1"]
    repositories.products.list.assert_called_once()

    core_logic.invalidate_collections(context, "products")
    core_logic.list_products(context)
    assert repositories.products.list.call_count == 2


def test_failed_collection_load_degrades_to_empty(context, repositories, caplog):
    repositories.transactions.list.side_effect = data_manager.RecordStoreError("sheet gone")
    repositories.products.list.return_value = ["p1"]

    collections = core_logic.reload_collections(context, "transactions", "products")

    assert collections == {"transactions": [], "products": ["p1"]}
    assert "transactions" not in context._cache
    assert "Failed to load collection 'transactions'" in caplog.text


def test_reload_without_names_reloads_everything(context, repositories):
    for repository in (repositories.products, repositories.transactions, repositories.cash_sessions, repositories.cash_entries):
        repository.list.return_value = []

    collections = core_logic.reload_collections(context)

    assert set(collections) == set(core_logic.COLLECTIONS)


def test_reload_unknown_collection_raises(context):
    with pytest.raises(KeyError):
        core_logic.reload_collections(context, "customers")


def test_get_product_unknown_id_raises_missing_reference(context, repositories):
    repositories.products.list.return_value = []

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.get_product(context, "P404")


def test_find_product_by_code_prefers_barcode_over_sku(product_factory):
    by_sku = product_factory("P1", sku="7890", barcode=None)
    by_barcode = product_factory("P2", sku="X", barcode="7890")

    assert core_logic.find_product_by_code([by_sku, by_barcode], "7890") is by_barcode
    assert core_logic.find_product_by_code([by_sku], " 7890 ") is by_sku
    assert core_logic.find_product_by_code([by_sku], "") is None
    assert core_logic.find_product_by_code([by_sku], "nothing") is None


# ---------------------------------------------------------------------------
# Identifiers and validation
# ---------------------------------------------------------------------------


def test_generate_record_id_embeds_timestamp():
    moment = datetime(2025, 1, 2, 3, 4, 5, 678901, tzinfo=UTC)

    assert core_logic.generate_record_id("SALE", when=moment) == "SALE-20250102030405678901"


def test_generate_record_id_defaults_to_now(set_fixed_datetime):
    moment = set_fixed_datetime(datetime(2025, 6, 1, 12, 0, tzinfo=UTC))

    assert core_logic.generate_record_id("CASH") == f"CASH-{moment:%Y%m%d%H%M%S%f}"


def test_generate_record_id_never_repeats_for_same_moment():
    moment = datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC)

    first = core_logic.generate_record_id("SALE", when=moment)
    second = core_logic.generate_record_id("SALE", when=moment)
    other_prefix = core_logic.generate_record_id("CASH", when=moment)

    assert first == "SALE-20250102030405000000"
    assert second == "SALE-20250102030405000001"
    assert second > first
    assert other_prefix == "CASH-20250102030405000000"


def test_parse_record_moment_round_trips_and_rejects_foreign_ids():
    moment = datetime(2025, 1, 2, 3, 4, 5, 6, tzinfo=UTC)

    assert core_logic.parse_record_moment(core_logic.generate_record_id("SALE", when=moment)) == moment
    assert core_logic.parse_record_moment("SALE-1700000000000") is None
    assert core_logic.parse_record_moment("legacy") is None


@pytest.mark.parametrize("quantity", [0, -1])
def test_require_positive_quantity_rejects_non_positive(quantity):
    with pytest.raises(ValueError):
        core_logic.require_positive_quantity(quantity)


def test_require_nonnegative_money():
    core_logic.require_nonnegative_money(Decimal("0"))
    with pytest.raises(ValueError):
        core_logic.require_nonnegative_money(Decimal("-0.01"))


# ---------------------------------------------------------------------------
# Write dispatch
# ---------------------------------------------------------------------------


def test_dispatch_writes_returns_results_in_order():
    assert core_logic.dispatch_writes("op", [("a", lambda: 1), ("b", lambda: 2)]) == [1, 2]


def test_dispatch_writes_attempts_every_write_and_reports_failures():
    first = Mock(side_effect=data_manager.RecordStoreError("boom"))
    second = Mock(return_value="ok")
    third = Mock(side_effect=OSError("disk"))

    with pytest.raises(core_logic.OperationFailed) as excinfo:
        core_logic.dispatch_writes("Sale settlement", [("stock:P1", first), ("transaction", second), ("stock:P2", third)])

    second.assert_called_once_with()
    assert [label for label, _ in excinfo.value.failures] == ["stock:P1", "stock:P2"]
    assert "please retry" in str(excinfo.value)
    assert excinfo.value.operation == "Sale settlement"


def test_dispatch_writes_propagates_unexpected_errors():
    with pytest.raises(ZeroDivisionError):
        core_logic.dispatch_writes("op", [("bad", lambda: 1 / 0)])


@pytest.mark.parametrize(
    ("environ", "expected"),
    [
        ({}, logging.WARNING),
        ({"PDV_LEDGER_CONSOLE_LEVEL": "debug"}, logging.DEBUG),
        ({"PDV_LEDGER_CONSOLE_LEVEL": "chatty"}, logging.WARNING),
        ({"PDV_LEDGER_CONSOLE_LEVEL": "  "}, logging.WARNING),
    ],
)
def test_console_level_override(environ, expected):
    assert pdv_ledger.resolve_level(pdv_ledger.CONSOLE_LEVEL_ENV, logging.WARNING, environ) == expected


def test_package_logger_writes_to_file_and_stderr():
    handler_types = {type(handler) for handler in pdv_ledger.log.handlers}

    assert logging.StreamHandler in handler_types
    assert pdv_ledger.log.level <= logging.INFO
