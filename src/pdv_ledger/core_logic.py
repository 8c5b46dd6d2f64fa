"""Runtime context and shared rules for the ledger components.

The settlement, cash-session and stock-count modules all work against a
:class:`RuntimeContext`: the parsed configuration, the open workbook, one
record store per entity and a cache of the collections loaded from them.
Derived state is never cached here; after every write the affected
collections are reloaded and summaries are recomputed from scratch.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, session or transaction is unknown."""


class OperationFailed(Exception):
    """Raised when one or more record-store writes of an operation failed.

    Writes that succeeded before or alongside the failing ones are kept as-is;
    ``failures`` lists the label and error of each write that did not go
    through so an operator can reconcile by hand.
    """

    def __init__(self, operation: str, failures: Sequence[Tuple[str, Exception]]) -> None:
        labels = ", ".join(label for label, _ in failures)
        super().__init__(f"{operation} failed; please retry ({labels})")
        self.operation = operation
        self.failures = list(failures)


COLLECTIONS: Tuple[str, ...] = ("products", "transactions", "cash_sessions", "cash_entries")


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and record stores."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    repositories: data_manager.Repositories
    _cache: Dict[str, List[Any]] = field(default_factory=dict, repr=False, compare=False)


def build_context(settings: data_manager.ConfigSettings, workbook: Workbook) -> RuntimeContext:
    """Wire repositories for ``workbook`` into a fresh :class:`RuntimeContext`."""

    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        repositories=data_manager.build_repositories(workbook),
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    ``config.ini`` is located (or taken from ``config_path``), parsed into
    :class:`~pdv_ledger.data_manager.ConfigSettings`, and the configured
    workbook is opened. Relative paths in the configuration are anchored at
    the directory holding the configuration file.

    Args:
        config_path (Path | None): Optional override path for the
            configuration file.

    Returns:
        RuntimeContext: Context with an empty collection cache.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_context(settings, workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to operate on a workbook declared with another layout version.

    Raises:
        RuntimeError: If the configured schema version differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Collection cache
# ---------------------------------------------------------------------------


def _repository_for(context: RuntimeContext, name: str) -> data_manager.WorkbookRepository[Any]:
    if name not in COLLECTIONS:
        raise KeyError(f"Unknown collection: {name}")
    return getattr(context.repositories, name)


def _load_collection(context: RuntimeContext, name: str) -> List[Any]:
    """Return the cached collection ``name``, loading it on first access.

    A collection whose load fails degrades to an empty list so the remaining
    collections stay usable. The failure is logged, and the empty result is
    not cached, so the next access retries the load.
    """

    cached = context._cache.get(name)
    if cached is not None:
        return cached

    try:
        records = _repository_for(context, name).list()
    except data_manager.RecordStoreError as exc:
        log.warning("Failed to load collection '%s'; continuing with an empty set: %s", name, exc)
        return []

    context._cache[name] = records
    log.debug("Loaded %d records into collection '%s'", len(records), name)
    return records


def invalidate_collections(context: RuntimeContext, *names: str) -> None:
    """Evict cached collections so the next read hits the record store."""

    if not names:
        return
    log.debug("Invalidating collections: %s", ", ".join(names))
    for name in names:
        context._cache.pop(name, None)


def reload_collections(context: RuntimeContext, *names: str) -> Dict[str, List[Any]]:
    """Re-fetch ``names`` (every collection when omitted) from the store."""

    targets = names or COLLECTIONS
    invalidate_collections(context, *targets)
    return {name: list(_load_collection(context, name)) for name in targets}


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return a copy of the product collection in sheet order."""
    return list(_load_collection(context, "products"))


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Return a copy of the transaction collection in sheet order."""
    return list(_load_collection(context, "transactions"))


def list_cash_sessions(context: RuntimeContext) -> List[data_manager.CashSessionRow]:
    """Return a copy of the cash-session collection in sheet order."""
    return list(_load_collection(context, "cash_sessions"))


def list_cash_entries(context: RuntimeContext) -> List[data_manager.CashEntryRow]:
    """Return a copy of the manual cash-entry collection in sheet order."""
    return list(_load_collection(context, "cash_entries"))


def _find(records: Sequence[Any], attribute: str, value: str, label: str) -> Any:
    for record in records:
        if getattr(record, attribute) == value:
            return record
    log.warning("%s lookup failed for id '%s'", label, value)
    raise MissingReferenceError(f"Unknown {label.lower()} id: {value}")


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product by identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
    """
    return _find(list_products(context), "product_id", product_id, "Product")


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Resolve a transaction by identifier.

    Raises:
        MissingReferenceError: If ``transaction_id`` is unknown.
    """
    return _find(list_transactions(context), "transaction_id", transaction_id, "Transaction")


def get_cash_session(context: RuntimeContext, session_id: str) -> data_manager.CashSessionRow:
    """Resolve a cash session by identifier.

    Raises:
        MissingReferenceError: If ``session_id`` is unknown.
    """
    return _find(list_cash_sessions(context), "session_id", session_id, "Session")


def find_product_by_code(
    products: Sequence[data_manager.ProductRow], code: str
) -> Optional[data_manager.ProductRow]:
    """Match a scanned code against product barcodes first, then SKUs."""

    needle = code.strip()
    if not needle:
        return None
    for product in products:
        if product.barcode and product.barcode == needle:
            return product
    for product in products:
        if product.sku == needle:
            return product
    return None


# ---------------------------------------------------------------------------
# Identifiers and validation helpers
# ---------------------------------------------------------------------------


_ID_FORMAT = "%Y%m%d%H%M%S%f"
_id_lock = threading.Lock()
_last_issued: Dict[str, str] = {}


def resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_record_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier such as ``SALE-20250101120000000000``.

    Identifiers embed the timestamp down to microseconds. When two identifiers
    with the same prefix would collide inside one process, the later one is
    bumped to keep them unique and ordered.

    Args:
        prefix (str): Entity designator (``SALE``, ``CASH``, ``ENTRY``...).
        when (datetime | None): Timestamp used for the identifier. Defaults to
            the current UTC time.

    Returns:
        str: Identifier formed as ``{prefix}-{YYYYMMDDHHMMSSffffff}``.
    """
    stamp = resolve_timestamp(when).strftime(_ID_FORMAT)
    with _id_lock:
        previous = _last_issued.get(prefix)
        if previous is not None and stamp <= previous:
            stamp = str(int(previous) + 1).zfill(len(previous))
        _last_issued[prefix] = stamp
    return f"{prefix}-{stamp}"


def parse_record_moment(record_id: str) -> Optional[datetime]:
    """Recover the UTC moment embedded by :func:`generate_record_id`.

    Returns ``None`` for identifiers that do not follow the format.
    """

    _, _, stamp = record_id.rpartition("-")
    try:
        return datetime.strptime(stamp, _ID_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


# ---------------------------------------------------------------------------
# Writes and persistence
# ---------------------------------------------------------------------------


WriteOperation = Tuple[str, Callable[[], Any]]


def dispatch_writes(operation: str, writes: Sequence[WriteOperation]) -> List[Any]:
    """Issue every write of an operation, then report failures together.

    All writes are attempted even when an earlier one fails, and nothing is
    compensated: a partially applied operation stays partially applied. This
    mirrors a set of independent requests sent to the record store at once.

    Args:
        operation (str): Human readable name used in logs and errors.
        writes (Sequence[tuple[str, Callable]]): Label and zero-argument
            callable for each write.

    Returns:
        list: The return value of each write, in order.

    Raises:
        OperationFailed: If at least one write raised
            :class:`~pdv_ledger.data_manager.RecordStoreError` or ``OSError``.
    """
    results: List[Any] = []
    failures: List[Tuple[str, Exception]] = []
    for label, write in writes:
        try:
            results.append(write())
        except (data_manager.RecordStoreError, OSError) as exc:
            log.error("%s: write '%s' failed: %s", operation, label, exc)
            failures.append((label, exc))
            results.append(None)

    if failures:
        if len(failures) < len(writes):
            log.warning(
                "%s left partially applied: %d of %d writes failed",
                operation,
                len(failures),
                len(writes),
            )
        raise OperationFailed(operation, failures)
    return results


def persist_context(context: RuntimeContext) -> None:
    """Save the workbook to the configured data file."""

    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk and return a fresh context.

    Unsaved modifications are dropped together with every cached collection.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_context(context.settings, workbook)
