"""Physical stock counts taken in batches.

A count session lives in a small JSON file next to the configuration so that a
count spanning a long walk through the store survives restarts. Every
operation loads the file, applies one change and writes it back. The session
only reaches the workbook on :func:`finalize`, which overwrites the recorded
stock of every product with the consolidated count and then discards the
file.
"""

from __future__ import annotations

import json
import os
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from . import core_logic, log
from .constants import COUNT_SESSION_SCHEMA_VERSION, StockCountStatus
from .core_logic import BusinessRuleViolation, MissingReferenceError, RuntimeContext
from .data_manager import ProductRow


BATCH_PREFIX = "batch"


class CountSessionFileError(Exception):
    """Raised when the local count session file cannot be read or written."""


class UnknownScanCodeError(BusinessRuleViolation):
    """Raised when a scanned code matches no barcode or SKU."""


class EmptyBatchError(BusinessRuleViolation):
    """Raised when committing a batch with nothing counted."""


class InactiveCountSessionError(BusinessRuleViolation):
    """Raised when counting without an active count session."""


class NoOpenBatchError(BusinessRuleViolation):
    """Raised when scanning or committing before a batch is opened."""


@dataclass(frozen=True)
class StockBatch:
    """One committed counting pass."""

    batch_id: str
    label: str
    items: Dict[str, int]
    timestamp: str

    def to_payload(self) -> dict:
        return {"id": self.batch_id, "label": self.label, "items": dict(self.items), "timestamp": self.timestamp}

    @classmethod
    def from_payload(cls, payload: dict) -> "StockBatch":
        return cls(
            batch_id=str(payload["id"]),
            label=str(payload.get("label", "")),
            items={str(key): int(value) for key, value in payload.get("items", {}).items()},
            timestamp=str(payload.get("timestamp", "")),
        )


@dataclass
class StockCountSession:
    """Mutable state of the count in progress."""

    active: bool = False
    batches: List[StockBatch] = field(default_factory=list)
    current_batch_label: Optional[str] = None
    current_batch_items: Dict[str, int] = field(default_factory=dict)

    @property
    def batch_open(self) -> bool:
        return self.current_batch_label is not None


class CountSessionStore:
    """Durable single-writer storage for the count session.

    The file carries a ``schema_version`` so a layout change is detected
    instead of being misread. Writes go to a temporary sibling first and are
    then moved into place.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> StockCountSession:
        """Return the stored session, or an inactive one when none exists.

        Raises:
            CountSessionFileError: If the file is unreadable or was written
                with another schema version.
        """
        if not self.path.exists():
            return StockCountSession()
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise CountSessionFileError(f"Cannot read count session '{self.path}': {exc}") from exc

        version = payload.get("schema_version")
        if version != COUNT_SESSION_SCHEMA_VERSION:
            raise CountSessionFileError(
                f"Count session '{self.path}' has schema version {version}; expected {COUNT_SESSION_SCHEMA_VERSION}"
            )
        try:
            return StockCountSession(
                active=bool(payload.get("active", False)),
                batches=[StockBatch.from_payload(entry) for entry in payload.get("batches", [])],
                current_batch_label=payload.get("currentBatchLabel"),
                current_batch_items={
                    str(key): int(value) for key, value in payload.get("currentBatchItems", {}).items()
                },
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CountSessionFileError(f"Corrupted count session '{self.path}': {exc}") from exc

    def save(self, session: StockCountSession) -> None:
        payload = {
            "schema_version": COUNT_SESSION_SCHEMA_VERSION,
            "active": session.active,
            "batches": [batch.to_payload() for batch in session.batches],
            "currentBatchLabel": session.current_batch_label,
            "currentBatchItems": dict(session.current_batch_items),
        }
        temporary = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temporary.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(temporary, self.path)
        except OSError as exc:
            raise CountSessionFileError(f"Cannot write count session '{self.path}': {exc}") from exc

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            raise CountSessionFileError(f"Cannot discard count session '{self.path}': {exc}") from exc


def store_for(context: RuntimeContext) -> CountSessionStore:
    """Count session store at the configured ``CountSessionFile``."""
    return CountSessionStore(context.settings.count_session_file)


def _require_active(session: StockCountSession) -> None:
    if not session.active:
        log.error("Count operation rejected: no active count session")
        raise InactiveCountSessionError("Start a stock count before counting")


def start_session(store: CountSessionStore) -> StockCountSession:
    """Start a fresh count, dropping any batches left from a previous one."""

    session = StockCountSession(active=True)
    store.save(session)
    log.info("Started stock count session in '%s'", store.path)
    return session


def open_batch(store: CountSessionStore, label: str) -> StockCountSession:
    """Name the batch about to be scanned.

    Raises:
        InactiveCountSessionError: Without an active count.
        ValueError: If ``label`` is blank.
        BusinessRuleViolation: If the open batch already has counted items.
    """
    session = store.load()
    _require_active(session)
    label = label.strip()
    if not label:
        raise ValueError("Batch label is required (e.g. 'Caixa 01' or 'Corredor A')")
    if session.batch_open and session.current_batch_items:
        raise BusinessRuleViolation(
            f"Batch '{session.current_batch_label}' has uncommitted items; commit it first"
        )
    session.current_batch_label = label
    store.save(session)
    log.info("Opened count batch '%s'", label)
    return session


def scan(store: CountSessionStore, code: str, products: Sequence[ProductRow]) -> ProductRow:
    """Count one unit of the product whose barcode or SKU is ``code``.

    Returns:
        ProductRow: The matched product.

    Raises:
        InactiveCountSessionError: Without an active count.
        NoOpenBatchError: If no batch is open.
        UnknownScanCodeError: If nothing matches; the session is unchanged.
    """
    session = store.load()
    _require_active(session)
    if not session.batch_open:
        raise NoOpenBatchError("Open a batch before scanning")

    product = core_logic.find_product_by_code(products, code)
    if product is None:
        log.warning("Scanned code '%s' matches no product", code)
        raise UnknownScanCodeError(f"Product not found for code '{code}'")

    items = session.current_batch_items
    items[product.product_id] = items.get(product.product_id, 0) + 1
    store.save(session)
    log.debug("Counted '%s' (now %d in batch)", product.product_id, items[product.product_id])
    return product


def remove_from_current_batch(store: CountSessionStore, product_id: str, *, remove_all: bool = False) -> StockCountSession:
    """Take one unit (or every unit) of ``product_id`` out of the open batch.

    Raises:
        InactiveCountSessionError: Without an active count.
        MissingReferenceError: If the product was not counted in this batch.
    """
    session = store.load()
    _require_active(session)
    items = session.current_batch_items
    if product_id not in items:
        raise MissingReferenceError(f"Product '{product_id}' was not counted in the current batch")
    if remove_all or items[product_id] <= 1:
        del items[product_id]
    else:
        items[product_id] -= 1
    store.save(session)
    return session


def commit_batch(store: CountSessionStore, *, timestamp: Optional[datetime] = None) -> StockBatch:
    """Freeze the open batch and clear the scanning area.

    Raises:
        InactiveCountSessionError: Without an active count.
        NoOpenBatchError: If no batch is open.
        EmptyBatchError: If nothing was counted in the batch.
    """
    session = store.load()
    _require_active(session)
    if not session.batch_open:
        raise NoOpenBatchError("Open a batch before committing")
    if not session.current_batch_items:
        log.error("Refusing to commit empty batch '%s'", session.current_batch_label)
        raise EmptyBatchError(f"Batch '{session.current_batch_label}' is empty; scan items before committing")

    moment = core_logic.resolve_timestamp(timestamp)
    batch = StockBatch(
        batch_id=core_logic.generate_record_id(BATCH_PREFIX, when=moment),
        label=session.current_batch_label or "",
        items=dict(session.current_batch_items),
        timestamp=moment.isoformat(),
    )
    session.batches.append(batch)
    session.current_batch_label = None
    session.current_batch_items = {}
    store.save(session)
    log.info("Committed batch '%s' (%s) with %d units", batch.batch_id, batch.label, sum(batch.items.values()))
    return batch


def delete_batch(store: CountSessionStore, batch_id: str) -> StockBatch:
    """Drop a committed batch so its units leave the consolidated count.

    Raises:
        InactiveCountSessionError: Without an active count.
        MissingReferenceError: If ``batch_id`` is unknown.
    """
    session = store.load()
    _require_active(session)
    for index, batch in enumerate(session.batches):
        if batch.batch_id == batch_id:
            del session.batches[index]
            store.save(session)
            log.info("Deleted batch '%s' (%s)", batch_id, batch.label)
            return batch
    raise MissingReferenceError(f"Unknown batch id: {batch_id}")


def consolidate(session: StockCountSession) -> Dict[str, int]:
    """Sum counted units across committed batches and the open batch."""

    total: Counter = Counter()
    for batch in session.batches:
        total.update(batch.items)
    total.update(session.current_batch_items)
    return dict(total)


@dataclass(frozen=True)
class CountComparison:
    product_id: str
    name: str
    recorded: int
    counted: int

    @property
    def diff(self) -> int:
        return self.counted - self.recorded

    @property
    def status(self) -> StockCountStatus:
        if self.diff == 0:
            return StockCountStatus.OK
        return StockCountStatus.OVERAGE if self.diff > 0 else StockCountStatus.SHORTAGE


def compare(session: StockCountSession, products: Sequence[ProductRow]) -> List[CountComparison]:
    """Counted against recorded stock for every product, largest gaps first."""

    counted = consolidate(session)
    rows = [
        CountComparison(
            product_id=product.product_id,
            name=product.name,
            recorded=product.stock,
            counted=counted.get(product.product_id, 0),
        )
        for product in products
    ]
    rows.sort(key=lambda row: -abs(row.diff))
    return rows


@dataclass(frozen=True)
class CountStats:
    total_counted: int
    divergences: int


def count_stats(session: StockCountSession, products: Sequence[ProductRow]) -> CountStats:
    """Units counted so far and how many products disagree with the books."""

    return CountStats(
        total_counted=sum(consolidate(session).values()),
        divergences=sum(1 for row in compare(session, products) if row.diff != 0),
    )


def finalize(context: RuntimeContext, store: CountSessionStore) -> Dict[str, int]:
    """Overwrite recorded stock with the count and discard the session.

    Products never scanned are set to zero. When a stock write fails the
    session file is kept so the finalize can be retried; overwriting with the
    same values again is harmless.

    Returns:
        dict[str, int]: New stock per product identifier.

    Raises:
        InactiveCountSessionError: Without an active count.
        OperationFailed: If one or more stock writes failed.
    """
    session = store.load()
    _require_active(session)
    counted = consolidate(session)
    products = core_logic.reload_collections(context, "products")["products"]
    adjustments = {product.product_id: counted.get(product.product_id, 0) for product in products}

    repository = context.repositories.products
    writes: List[core_logic.WriteOperation] = [
        (f"stock:{product_id}", lambda product_id=product_id, quantity=quantity: repository.overwrite_stock(product_id, quantity))
        for product_id, quantity in adjustments.items()
    ]
    try:
        core_logic.dispatch_writes("Stock count finalize", writes)
    finally:
        core_logic.reload_collections(context, "products")

    store.clear()
    log.info("Finalized stock count: %d products overwritten, %d units counted", len(adjustments), sum(counted.values()))
    return adjustments


def reset(store: CountSessionStore) -> None:
    """Discard the count session without touching recorded stock."""

    store.clear()
    log.info("Discarded stock count session '%s'", store.path)
