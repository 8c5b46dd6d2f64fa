"""Data access layer for the point-of-sale ledger.

This module owns every read and write against ``master_workbook.xlsx``.
Business rules belong elsewhere.

The public API is organised around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, saving and reloading the Excel file.
3. Record stores: one :class:`WorkbookRepository` per entity sheet exposing
   ``list``, ``upsert``, ``delete`` and ``ensure_schema``. Rows are keyed by
   their identifier column and upserts replace the matching row in place, so
   the last write for an identifier always wins.
"""


from __future__ import annotations

import configparser
import json
import threading
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Generic, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, TypeVar

from openpyxl.styles import Font
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
DEFAULT_COUNT_SESSION_FILE = "stock_count_session.json"

PRODUCTS_SHEET = SheetName.PRODUCTS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
CASH_SESSIONS_SHEET = SheetName.CASH_SESSIONS.value
CASH_ENTRIES_SHEET = SheetName.CASH_ENTRIES.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: [
        "ProductID",
        "Name",
        "SKU",
        "Barcode",
        "CostPrice",
        "SalePrice",
        "Stock",
        "MinStock",
        "IsService",
    ],
    TRANSACTIONS_SHEET: [
        "TransactionID",
        "Date",
        "Description",
        "StoreID",
        "Category",
        "Status",
        "Value",
        "ShippingValue",
        "DiscountValue",
        "ChangeValue",
        "Type",
        "Method",
        "ClientID",
        "VendorID",
        "CashierID",
        "Items",
        "Tenders",
        "Installments",
        "AuthNumber",
        "TransactionSKU",
        "CardOperatorID",
        "CardBrandID",
        "DueDate",
    ],
    CASH_SESSIONS_SHEET: [
        "SessionID",
        "StoreID",
        "RegisterName",
        "Status",
        "OpeningTime",
        "OpeningOperatorID",
        "OpeningValue",
        "ClosingTime",
        "ClosingOperatorID",
        "ClosingValue",
    ],
    CASH_ENTRIES_SHEET: [
        "EntryID",
        "SessionID",
        "Kind",
        "Category",
        "Description",
        "Value",
        "Timestamp",
        "Method",
    ],
}

ZERO = Decimal("0.00")


class RecordStoreError(Exception):
    """Raised when the record store cannot complete a read or write."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    store_id: str
    register_name: str
    operator_id: str
    operator_role: str
    count_session_file: Path
    allow_multiple_daily_sessions: bool = False
    allow_negative_stock: bool = False


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    sku: str
    barcode: Optional[str]
    cost_price: Decimal
    sale_price: Decimal
    stock: int
    min_stock: int = 0
    is_service: bool = False


@dataclass(frozen=True)
class SaleLineItem:
    """One cart line frozen on a sale, including the cost snapshot."""

    product_id: str
    quantity: int
    unit_sale_price: Decimal
    unit_cost_price_snapshot: Decimal
    name: str = ""
    is_service: bool = False


@dataclass(frozen=True)
class TenderRecord:
    """One payment instrument recorded on a sale."""

    method: str
    value: Decimal


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    date: str
    description: str
    store_id: Optional[str]
    category: str
    status: str
    value: Decimal
    transaction_type: str
    method: Optional[str] = None
    shipping_value: Decimal = ZERO
    discount_value: Decimal = ZERO
    change_value: Decimal = ZERO
    client_id: Optional[str] = None
    vendor_id: Optional[str] = None
    cashier_id: Optional[str] = None
    items: Tuple[SaleLineItem, ...] = field(default_factory=tuple)
    tenders: Tuple[TenderRecord, ...] = field(default_factory=tuple)
    installments: Optional[int] = None
    auth_number: Optional[str] = None
    transaction_sku: Optional[str] = None
    card_operator_id: Optional[str] = None
    card_brand_id: Optional[str] = None
    due_date: Optional[str] = None


@dataclass(frozen=True)
class CashSessionRow:
    """In-memory view of a row from the ``CashSessions`` sheet."""

    session_id: str
    store_id: str
    register_name: str
    status: str
    opening_time: str
    opening_operator_id: Optional[str]
    opening_value: Decimal
    closing_time: Optional[str] = None
    closing_operator_id: Optional[str] = None
    closing_value: Optional[Decimal] = None


@dataclass(frozen=True)
class CashEntryRow:
    """In-memory view of a row from the ``CashEntries`` sheet."""

    entry_id: str
    session_id: str
    kind: str
    category: str
    description: str
    value: Decimal
    timestamp: str
    method: Optional[str] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the ledger.

    An explicit path wins without verification so callers can deliberately
    target a non-standard location. Otherwise the search walks from the
    current working directory toward the filesystem root and returns the first
    ``CONFIG_FILE_NAME`` it finds.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The caller's path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for candidate_dir in (current, *current.parents):
        candidate = candidate_dir / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser``.

    Validation of individual entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def _anchor_path(raw: str, base_path: Path) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = (base_path / path).resolve()
    return path


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults]`` entries are mandatory. ``[Policy]`` flags
    default to ``False`` and ``[Local] CountSessionFile`` defaults to
    ``DEFAULT_COUNT_SESSION_FILE``. Relative paths are anchored at
    ``base_path`` (or the working directory when omitted) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a policy flag is not a recognised boolean.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        store_id = parser.get("Defaults", "StoreId")
        register_name = parser.get("Defaults", "RegisterName")
        operator_id = parser.get("Defaults", "OperatorId")
        operator_role = parser.get("Defaults", "OperatorRole")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    allow_multiple = parser.getboolean("Policy", "AllowMultipleDailySessions", fallback=False)
    allow_negative = parser.getboolean("Policy", "AllowNegativeStock", fallback=False)
    count_file_raw = parser.get("Local", "CountSessionFile", fallback=DEFAULT_COUNT_SESSION_FILE)

    if base_path is None:
        base_path = Path.cwd()

    return ConfigSettings(
        data_file=_anchor_path(data_file_raw, base_path),
        store_name=store_name,
        schema_version=schema_version,
        store_id=store_id,
        register_name=register_name,
        operator_id=operator_id,
        operator_role=operator_role,
        count_session_file=_anchor_path(count_file_raw, base_path),
        allow_multiple_daily_sessions=allow_multiple,
        allow_negative_stock=allow_negative,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def header_map(sheet: Any) -> dict[str, int]:
    """Map header titles of ``sheet`` to 1-based column indices."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    The header row is never considered a match. Keys are compared as strings
    because Excel may hand numeric-looking identifiers back as numbers.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the identifier column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    columns = header_map(sheet)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == str(key_value):
            return row_idx

    return None


# ---------------------------------------------------------------------------
# Cell converters
# ---------------------------------------------------------------------------


def _to_decimal(raw: object, default: Decimal = ZERO) -> Decimal:
    if raw is None or raw == "":
        return default
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise RecordStoreError(f"Invalid monetary value in workbook: {raw!r}") from exc


def _to_int(raw: object, default: int = 0) -> int:
    if raw is None or raw == "":
        return default
    return int(Decimal(str(raw)))


def _to_bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"1", "true", "yes", "sim"}
    return bool(raw)


def _to_text(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _money_text(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _pad(raw_row: Sequence[object], width: int) -> list[object]:
    values = list(raw_row[:width])
    values.extend([None] * (width - len(values)))
    return values


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the ``Products`` column order."""

    return [
        record.product_id,
        record.name,
        record.sku,
        record.barcode,
        _money_text(record.cost_price),
        _money_text(record.sale_price),
        record.stock,
        record.min_stock,
        record.is_service,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw ``Products`` row into a :class:`ProductRow`.

    Identifiers, SKUs and barcodes are coerced to text because Excel likes to
    turn long numeric barcodes into floats.
    """

    (
        product_id,
        name,
        sku,
        barcode,
        cost_raw,
        sale_raw,
        stock_raw,
        min_stock_raw,
        is_service,
    ) = _pad(raw_row, len(SHEET_COLUMNS[PRODUCTS_SHEET]))

    return ProductRow(
        product_id=str(product_id),
        name=str(name) if name is not None else "",
        sku=str(sku) if sku is not None else "",
        barcode=_to_text(barcode),
        cost_price=_to_decimal(cost_raw),
        sale_price=_to_decimal(sale_raw),
        stock=_to_int(stock_raw),
        min_stock=_to_int(min_stock_raw),
        is_service=_to_bool(is_service),
    )


def encode_items(items: Iterable[SaleLineItem]) -> str:
    """Encode sale line items as JSON text for a single workbook cell."""

    return json.dumps(
        [
            {
                "productId": item.product_id,
                "name": item.name,
                "quantity": item.quantity,
                "unitSalePrice": str(item.unit_sale_price),
                "unitCostPriceSnapshot": str(item.unit_cost_price_snapshot),
                "isService": item.is_service,
            }
            for item in items
        ],
        ensure_ascii=False,
    )


def decode_items(raw: object) -> Tuple[SaleLineItem, ...]:
    """Decode the JSON cell written by :func:`encode_items`."""

    if raw in (None, ""):
        return ()
    try:
        payload = json.loads(str(raw))
    except json.JSONDecodeError as exc:
        raise RecordStoreError(f"Corrupted sale items cell: {exc}") from exc
    return tuple(
        SaleLineItem(
            product_id=str(entry["productId"]),
            quantity=int(entry["quantity"]),
            unit_sale_price=_to_decimal(entry.get("unitSalePrice")),
            unit_cost_price_snapshot=_to_decimal(entry.get("unitCostPriceSnapshot")),
            name=str(entry.get("name") or ""),
            is_service=bool(entry.get("isService", False)),
        )
        for entry in payload
    )


def encode_tenders(tenders: Iterable[TenderRecord]) -> str:
    """Encode tenders as JSON text for a single workbook cell."""

    return json.dumps(
        [{"method": tender.method, "value": str(tender.value)} for tender in tenders],
        ensure_ascii=False,
    )


def decode_tenders(raw: object) -> Tuple[TenderRecord, ...]:
    """Decode the JSON cell written by :func:`encode_tenders`."""

    if raw in (None, ""):
        return ()
    try:
        payload = json.loads(str(raw))
    except json.JSONDecodeError as exc:
        raise RecordStoreError(f"Corrupted tenders cell: {exc}") from exc
    return tuple(TenderRecord(method=str(entry["method"]), value=_to_decimal(entry["value"])) for entry in payload)


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the ``Transactions`` column order.

    Monetary values are written as text to keep exact decimal precision;
    nested line items and tenders are written as JSON.
    """

    return [
        record.transaction_id,
        record.date,
        record.description,
        record.store_id,
        record.category,
        record.status,
        _money_text(record.value),
        _money_text(record.shipping_value),
        _money_text(record.discount_value),
        _money_text(record.change_value),
        record.transaction_type,
        record.method,
        record.client_id,
        record.vendor_id,
        record.cashier_id,
        encode_items(record.items),
        encode_tenders(record.tenders),
        record.installments,
        record.auth_number,
        record.transaction_sku,
        record.card_operator_id,
        record.card_brand_id,
        record.due_date,
    ]


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw ``Transactions`` row into a :class:`TransactionRow`."""

    (
        transaction_id,
        date,
        description,
        store_id,
        category,
        status,
        value_raw,
        shipping_raw,
        discount_raw,
        change_raw,
        transaction_type,
        method,
        client_id,
        vendor_id,
        cashier_id,
        items_raw,
        tenders_raw,
        installments_raw,
        auth_number,
        transaction_sku,
        card_operator_id,
        card_brand_id,
        due_date,
    ) = _pad(raw_row, len(SHEET_COLUMNS[TRANSACTIONS_SHEET]))

    return TransactionRow(
        transaction_id=str(transaction_id),
        date=str(date) if date is not None else "",
        description=str(description) if description is not None else "",
        store_id=_to_text(store_id),
        category=str(category) if category is not None else "",
        status=str(status) if status is not None else "",
        value=_to_decimal(value_raw),
        transaction_type=str(transaction_type) if transaction_type is not None else "",
        method=_to_text(method),
        shipping_value=_to_decimal(shipping_raw),
        discount_value=_to_decimal(discount_raw),
        change_value=_to_decimal(change_raw),
        client_id=_to_text(client_id),
        vendor_id=_to_text(vendor_id),
        cashier_id=_to_text(cashier_id),
        items=decode_items(items_raw),
        tenders=decode_tenders(tenders_raw),
        installments=_to_int(installments_raw) if installments_raw not in (None, "") else None,
        auth_number=_to_text(auth_number),
        transaction_sku=_to_text(transaction_sku),
        card_operator_id=_to_text(card_operator_id),
        card_brand_id=_to_text(card_brand_id),
        due_date=_to_text(due_date),
    )


def serialize_cash_session(record: CashSessionRow) -> list[object]:
    """Convert a cash session dataclass into the ``CashSessions`` column order."""

    return [
        record.session_id,
        record.store_id,
        record.register_name,
        record.status,
        record.opening_time,
        record.opening_operator_id,
        _money_text(record.opening_value),
        record.closing_time,
        record.closing_operator_id,
        _money_text(record.closing_value),
    ]


def deserialize_cash_session(raw_row: Sequence[object]) -> CashSessionRow:
    """Convert a raw ``CashSessions`` row into a :class:`CashSessionRow`."""

    (
        session_id,
        store_id,
        register_name,
        status,
        opening_time,
        opening_operator_id,
        opening_raw,
        closing_time,
        closing_operator_id,
        closing_raw,
    ) = _pad(raw_row, len(SHEET_COLUMNS[CASH_SESSIONS_SHEET]))

    return CashSessionRow(
        session_id=str(session_id),
        store_id=str(store_id) if store_id is not None else "",
        register_name=str(register_name) if register_name is not None else "",
        status=str(status) if status is not None else "",
        opening_time=str(opening_time) if opening_time is not None else "",
        opening_operator_id=_to_text(opening_operator_id),
        opening_value=_to_decimal(opening_raw),
        closing_time=_to_text(closing_time),
        closing_operator_id=_to_text(closing_operator_id),
        closing_value=_to_decimal(closing_raw) if closing_raw not in (None, "") else None,
    )


def serialize_cash_entry(record: CashEntryRow) -> list[object]:
    """Convert a cash entry dataclass into the ``CashEntries`` column order."""

    return [
        record.entry_id,
        record.session_id,
        record.kind,
        record.category,
        record.description,
        _money_text(record.value),
        record.timestamp,
        record.method,
    ]


def deserialize_cash_entry(raw_row: Sequence[object]) -> CashEntryRow:
    """Convert a raw ``CashEntries`` row into a :class:`CashEntryRow`."""

    (
        entry_id,
        session_id,
        kind,
        category,
        description,
        value_raw,
        timestamp,
        method,
    ) = _pad(raw_row, len(SHEET_COLUMNS[CASH_ENTRIES_SHEET]))

    return CashEntryRow(
        entry_id=str(entry_id),
        session_id=str(session_id) if session_id is not None else "",
        kind=str(kind) if kind is not None else "",
        category=str(category) if category is not None else "",
        description=str(description) if description is not None else "",
        value=_to_decimal(value_raw),
        timestamp=str(timestamp) if timestamp is not None else "",
        method=_to_text(method),
    )


# ---------------------------------------------------------------------------
# Record stores
# ---------------------------------------------------------------------------


RecordT = TypeVar("RecordT")


class RecordStore(Protocol[RecordT]):
    """Contract every entity collection satisfies, whatever the backend."""

    def list(self) -> List[RecordT]: ...

    def upsert(self, record: RecordT) -> None: ...

    def delete(self, record_id: str) -> None: ...

    def ensure_schema(self) -> None: ...


@dataclass(frozen=True)
class EntitySchema(Generic[RecordT]):
    """Describe how one entity maps onto a worksheet."""

    sheet_name: str
    key_column: str
    key_of: Callable[[RecordT], str]
    serialize: Callable[[RecordT], list[object]]
    deserialize: Callable[[Sequence[object]], RecordT]

    @property
    def columns(self) -> Sequence[str]:
        return SHEET_COLUMNS[self.sheet_name]


PRODUCT_SCHEMA: EntitySchema[ProductRow] = EntitySchema(
    PRODUCTS_SHEET, "ProductID", lambda row: row.product_id, serialize_product, deserialize_product
)
TRANSACTION_SCHEMA: EntitySchema[TransactionRow] = EntitySchema(
    TRANSACTIONS_SHEET,
    "TransactionID",
    lambda row: row.transaction_id,
    serialize_transaction,
    deserialize_transaction,
)
CASH_SESSION_SCHEMA: EntitySchema[CashSessionRow] = EntitySchema(
    CASH_SESSIONS_SHEET,
    "SessionID",
    lambda row: row.session_id,
    serialize_cash_session,
    deserialize_cash_session,
)
CASH_ENTRY_SCHEMA: EntitySchema[CashEntryRow] = EntitySchema(
    CASH_ENTRIES_SHEET,
    "EntryID",
    lambda row: row.entry_id,
    serialize_cash_entry,
    deserialize_cash_entry,
)


class WorkbookRepository(Generic[RecordT]):
    """Record store backed by one worksheet of an ``openpyxl`` workbook.

    Every method translates low-level failures (missing sheets, corrupted
    cells, unknown identifiers) into :class:`RecordStoreError` so callers only
    have one collaborator failure type to handle.
    """

    def __init__(self, workbook: Workbook, schema: EntitySchema[RecordT]) -> None:
        self.workbook = workbook
        self.schema = schema
        self._lock = threading.RLock()

    def _sheet(self) -> Any:
        try:
            return self.workbook[self.schema.sheet_name]
        except KeyError as exc:
            raise RecordStoreError(
                f"Sheet '{self.schema.sheet_name}' is missing; run ensure_schema first"
            ) from exc

    def ensure_schema(self) -> None:
        """Create the sheet and its bold header row when absent.

        Existing sheets missing trailing columns get the new headers appended,
        which lets older workbooks pick up columns added in later versions.
        """

        with self._lock:
            bold_font = Font(bold=True)
            if self.schema.sheet_name not in self.workbook.sheetnames:
                sheet = self.workbook.create_sheet(title=self.schema.sheet_name)
                log.info("Created sheet '%s'", self.schema.sheet_name)
            else:
                sheet = self.workbook[self.schema.sheet_name]
            present = header_map(sheet)
            for column_index, column_name in enumerate(self.schema.columns, start=1):
                if column_name in present:
                    continue
                cell = sheet.cell(row=1, column=column_index)
                cell.value = column_name
                cell.font = bold_font

    def list(self) -> List[RecordT]:
        """Return every non-empty row of the sheet in sheet order."""

        sheet = self._sheet()
        records: List[RecordT] = []
        try:
            for raw in sheet.iter_rows(min_row=2, values_only=True):
                if any(cell is not None for cell in raw):
                    records.append(self.schema.deserialize(raw))
        except (KeyError, TypeError, ValueError) as exc:
            raise RecordStoreError(f"Unreadable row in '{self.schema.sheet_name}': {exc}") from exc
        return records

    def get(self, record_id: str) -> Optional[RecordT]:
        """Return the record stored under ``record_id`` or ``None``."""

        row_index = self._locate(record_id)
        if row_index is None:
            return None
        sheet = self._sheet()
        raw = [cell.value for cell in sheet[row_index]]
        return self.schema.deserialize(raw)

    def upsert(self, record: RecordT) -> None:
        """Insert ``record`` or replace the row sharing its identifier."""

        values = self.schema.serialize(record)
        record_id = self.schema.key_of(record)
        with self._lock:
            sheet = self._sheet()
            row_index = self._locate(record_id)
            if row_index is None:
                sheet.append(values)
                log.debug("Inserted '%s' into '%s'", record_id, self.schema.sheet_name)
                return
            for column_index, value in enumerate(values, start=1):
                sheet.cell(row=row_index, column=column_index, value=value)
            log.debug("Replaced '%s' in '%s'", record_id, self.schema.sheet_name)

    def delete(self, record_id: str) -> None:
        """Remove the row stored under ``record_id``.

        Raises:
            RecordStoreError: If no row carries ``record_id``.
        """

        with self._lock:
            row_index = self._locate(record_id)
            if row_index is None:
                raise RecordStoreError(f"Record '{record_id}' not found in '{self.schema.sheet_name}'")
            self._sheet().delete_rows(row_index, 1)
            log.debug("Deleted '%s' from '%s'", record_id, self.schema.sheet_name)

    def _locate(self, record_id: str) -> Optional[int]:
        self._sheet()
        try:
            return locate_row(self.workbook, self.schema.sheet_name, self.schema.key_column, record_id)
        except KeyError as exc:
            raise RecordStoreError(str(exc)) from exc

    def _write_field(self, record_id: str, column: str, value: object) -> None:
        sheet = self._sheet()
        row_index = self._locate(record_id)
        if row_index is None:
            raise RecordStoreError(f"Record '{record_id}' not found in '{self.schema.sheet_name}'")
        columns = header_map(sheet)
        if column not in columns:
            raise RecordStoreError(f"Unknown column '{column}' in '{self.schema.sheet_name}'")
        sheet.cell(row=row_index, column=columns[column], value=value)


class StockUnavailableError(RecordStoreError):
    """Raised when an atomic decrement would take stock below zero."""

    def __init__(self, product_id: str, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for '{product_id}': available {available}, requested {requested}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class ProductRepository(WorkbookRepository[ProductRow]):
    """Products record store with targeted, lock-guarded stock updates.

    Stock changes never go through a caller-computed full-record upsert: the
    read of the current value and the write of the new one happen under the
    repository lock so concurrent settlements in the same process cannot lose
    an update.
    """

    def __init__(self, workbook: Workbook) -> None:
        super().__init__(workbook, PRODUCT_SCHEMA)

    def adjust_stock(self, product_id: str, delta: int, *, allow_negative: bool = False) -> int:
        """Apply ``delta`` to the recorded stock and return the new value.

        Raises:
            RecordStoreError: If the product does not exist.
            StockUnavailableError: If the result would be negative and
                ``allow_negative`` is ``False``.
        """

        with self._lock:
            current = self.get(product_id)
            if current is None:
                raise RecordStoreError(f"Product '{product_id}' not found")
            new_stock = current.stock + delta
            if new_stock < 0 and not allow_negative:
                raise StockUnavailableError(product_id, current.stock, -delta)
            self._write_field(product_id, "Stock", new_stock)
            return new_stock

    def decrement_stock(self, product_id: str, quantity: int, *, allow_negative: bool = False) -> int:
        """Atomically decrement stock when enough units are available."""

        return self.adjust_stock(product_id, -quantity, allow_negative=allow_negative)

    def overwrite_stock(self, product_id: str, quantity: int) -> None:
        """Set the recorded stock to an absolute ``quantity``."""

        with self._lock:
            self._write_field(product_id, "Stock", quantity)


@dataclass(frozen=True)
class Repositories:
    """Bundle of the record stores the ledger works against."""

    products: ProductRepository
    transactions: WorkbookRepository[TransactionRow]
    cash_sessions: WorkbookRepository[CashSessionRow]
    cash_entries: WorkbookRepository[CashEntryRow]

    def all(self) -> Sequence[WorkbookRepository[Any]]:
        return (self.products, self.transactions, self.cash_sessions, self.cash_entries)


def build_repositories(workbook: Workbook) -> Repositories:
    """Create one repository per entity sheet of ``workbook``."""

    return Repositories(
        products=ProductRepository(workbook),
        transactions=WorkbookRepository(workbook, TRANSACTION_SCHEMA),
        cash_sessions=WorkbookRepository(workbook, CASH_SESSION_SCHEMA),
        cash_entries=WorkbookRepository(workbook, CASH_ENTRY_SCHEMA),
    )


def ensure_schema(workbook: Workbook) -> Repositories:
    """Make sure every entity sheet exists and return the repositories."""

    repositories = build_repositories(workbook)
    for repository in repositories.all():
        repository.ensure_schema()
    return repositories
