"""Shared pytest fixtures and utilities for the ledger tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pdv_ledger import constants, core_logic, data_manager  # noqa: E402
from pdv_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
STORE_ID = "LOJA-01"
OPERATOR_ID = "U-CAIXA"
MOMENT = datetime(2025, 3, 14, 10, 30, tzinfo=UTC)

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = Loja Centro\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "StoreId = {store_id}\n"
    "RegisterName = Caixa 01\n"
    "OperatorId = {operator_id}\n"
    "OperatorRole = {operator_role}\n\n"
    "[Policy]\n"
    "AllowMultipleDailySessions = {allow_multiple}\n"
    "AllowNegativeStock = {allow_negative}\n\n"
    "[Local]\n"
    "CountSessionFile = count_session.json\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(autouse=True)
def _reset_id_sequence() -> Iterator[None]:
    """Forget identifiers issued by earlier tests."""

    core_logic._last_issued.clear()
    yield
    core_logic._last_issued.clear()


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "master_workbook.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        return create_master_workbook(base_dir / filename, overwrite=True)

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        operator_role: str = constants.UserRole.CASHIER.value,
        operator_id: str = OPERATOR_ID,
        allow_multiple: bool = False,
        allow_negative: bool = False,
    ) -> ConfigBundle:
        bundle_dir = f"bundle_{uuid.uuid4().hex}"
        workbook_path = workbook_factory(subdir=bundle_dir)
        config_path = tmp_path / bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=workbook_path.name,
                schema_version=schema_version,
                store_id=STORE_ID,
                operator_id=operator_id,
                operator_role=operator_role,
                allow_multiple=str(allow_multiple).lower(),
                allow_negative=str(allow_negative).lower(),
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=tmp_path / bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def context_factory(config_factory: Callable[..., ConfigBundle]) -> Callable[..., core_logic.RuntimeContext]:
    """Load a runtime context over a fresh workbook with the given policy."""

    def _load(**config_options: object) -> core_logic.RuntimeContext:
        bundle = config_factory(**config_options)
        context = core_logic.load_runtime_context(bundle.config_path)
        core_logic.ensure_schema_version(context)
        return context

    return _load


@pytest.fixture
def runtime_context(context_factory: Callable[..., core_logic.RuntimeContext]) -> core_logic.RuntimeContext:
    """Runtime context for a cashier over an empty workbook."""

    return context_factory()


def make_product(product_id: str = "P1", **overrides: object) -> data_manager.ProductRow:
    """Build a product row with sensible defaults."""

    values = dict(
        product_id=product_id,
        name=f"Produto {product_id}",
        sku=f"SKU-{product_id}",
        barcode=f"789{product_id}",
        cost_price=Decimal("4.00"),
        sale_price=Decimal("10.00"),
        stock=10,
        min_stock=0,
        is_service=False,
    )
    values.update(overrides)
    return data_manager.ProductRow(**values)


@pytest.fixture
def seed_products() -> Callable[..., list[data_manager.ProductRow]]:
    """Write products straight into a context's workbook."""

    def _seed(context: core_logic.RuntimeContext, *products: data_manager.ProductRow) -> list[data_manager.ProductRow]:
        for product in products:
            context.repositories.products.upsert(product)
        core_logic.invalidate_collections(context, "products")
        return list(products)

    return _seed


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` so ``now`` returns a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime(datetime):
            @classmethod
            def now(cls, tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


@pytest.fixture
def product_factory() -> Callable[..., data_manager.ProductRow]:
    """Expose :func:`make_product` to tests."""

    return make_product
