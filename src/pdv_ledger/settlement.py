"""Sale settlement at the register.

A sale turns a cart and a list of tenders into exactly one ``INCOME``
transaction plus one stock decrement per physical product. The pure helpers
(:func:`compute_totals`, :func:`reconcile_tenders`,
:func:`plan_stock_decrements`) hold the arithmetic; :func:`settle_sale`
validates, dispatches the writes and reloads the affected collections.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import (
    CARD_METHODS,
    MULTIPLE_METHODS_LABEL,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
)
from .cash_session import ensure_sale_permitted, require_drawer_cash
from .core_logic import BusinessRuleViolation, MissingReferenceError, RuntimeContext
from .data_manager import ZERO, ProductRow, SaleLineItem, TenderRecord, TransactionRow
from .ledger import quantize_money, transaction_cash_amount


SALE_PREFIX = "SALE"
REFUND_PREFIX = "CANCEL"
SALE_DESCRIPTION = "Venda PDV"
REFUND_DESCRIPTION = "ESTORNO: {sale_id}"


class EmptyCartError(BusinessRuleViolation):
    """Raised when settling a cart without lines."""


class InsufficientTenderError(BusinessRuleViolation):
    """Raised when tenders do not cover the sale total."""

    def __init__(self, remaining: Decimal) -> None:
        super().__init__(f"Tenders do not cover the total; remaining {remaining}")
        self.remaining = remaining


class MissingVendorError(BusinessRuleViolation):
    """Raised when no vendor is attached to the sale."""


class CardDetailsRequiredError(BusinessRuleViolation):
    """Raised when a card tender lacks its operator or brand."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a physical line asks for more units than recorded."""


@dataclass(frozen=True)
class CartLine:
    """Requested product and quantity; price defaults to the catalog price."""

    product_id: str
    quantity: int
    unit_price: Optional[Decimal] = None


@dataclass(frozen=True)
class Tender:
    """One payment instrument offered for a sale."""

    method: str
    value: Decimal
    installments: Optional[int] = None
    auth_number: Optional[str] = None
    transaction_sku: Optional[str] = None
    card_operator_id: Optional[str] = None
    card_brand_id: Optional[str] = None

    @property
    def is_card(self) -> bool:
        return self.method in CARD_METHODS


@dataclass(frozen=True)
class SaleCommand:
    """Structured intent for settling one sale.

    ``store_id``, ``cashier_id`` and ``operator_role`` fall back to the
    configured defaults when omitted.
    """

    lines: Tuple[CartLine, ...]
    tenders: Tuple[Tender, ...]
    vendor_id: Optional[str]
    client_id: Optional[str] = None
    shipping: Decimal = ZERO
    discount: Decimal = ZERO
    discount_is_percent: bool = False
    store_id: Optional[str] = None
    cashier_id: Optional[str] = None
    operator_role: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleTotals:
    subtotal: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal


@dataclass(frozen=True)
class TenderSummary:
    total: Decimal
    total_paid: Decimal
    remaining: Decimal
    change: Decimal

    @property
    def settled(self) -> bool:
        return self.remaining == ZERO


@dataclass(frozen=True)
class StockDecrement:
    """Stock instruction for one physical product of a sale."""

    product_id: str
    quantity: int
    prior_stock: int
    new_stock: int


@dataclass(frozen=True)
class SettlementPlan:
    """Everything a validated sale will write."""

    transaction: TransactionRow
    totals: SaleTotals
    tenders: TenderSummary
    decrements: Tuple[StockDecrement, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Pure computations
# ---------------------------------------------------------------------------


def compute_totals(
    lines: Iterable[SaleLineItem],
    *,
    shipping: Decimal = ZERO,
    discount: Decimal = ZERO,
    discount_is_percent: bool = False,
) -> SaleTotals:
    """Compute subtotal, discount and total of priced lines.

    A percent discount applies to the subtotal only and is rounded to cents.
    The total never drops below zero.

    Raises:
        ValueError: If shipping or discount is negative.
    """
    core_logic.require_nonnegative_money(shipping)
    core_logic.require_nonnegative_money(discount)

    subtotal = sum((line.unit_sale_price * line.quantity for line in lines), ZERO)
    if discount_is_percent:
        discount_amount = quantize_money(subtotal * discount / Decimal("100"))
    else:
        discount_amount = discount
    total = max(ZERO, subtotal + shipping - discount_amount)
    return SaleTotals(subtotal=subtotal, shipping=shipping, discount=discount_amount, total=total)


def reconcile_tenders(total: Decimal, tenders: Iterable[Tender]) -> TenderSummary:
    """Accumulate tenders against ``total``."""

    total_paid = sum((tender.value for tender in tenders), ZERO)
    return TenderSummary(
        total=total,
        total_paid=total_paid,
        remaining=max(ZERO, total - total_paid),
        change=max(ZERO, total_paid - total),
    )


def summary_method_label(tenders: Iterable[Tender]) -> Optional[str]:
    """``Dinheiro`` for one method, ``Múltiplo (Dinheiro, Pix)`` for several."""

    methods = list(OrderedDict.fromkeys(tender.method for tender in tenders))
    if not methods:
        return None
    if len(methods) == 1:
        return methods[0]
    return f"{MULTIPLE_METHODS_LABEL} ({', '.join(methods)})"


def validate_tenders(tenders: Sequence[Tender]) -> None:
    """Reject negative tenders and card tenders without operator or brand."""

    for tender in tenders:
        core_logic.require_nonnegative_money(tender.value)
        if tender.is_card and not (tender.card_operator_id and tender.card_brand_id):
            log.error("Card tender '%s' is missing operator or brand", tender.method)
            raise CardDetailsRequiredError(f"Select the card operator and brand for '{tender.method}' tenders")


def resolve_lines(lines: Sequence[CartLine], products: Sequence[ProductRow]) -> Tuple[SaleLineItem, ...]:
    """Price each cart line and freeze the product's current cost.

    Raises:
        MissingReferenceError: If a line references an unknown product.
        ValueError: If a quantity is not positive or a price is negative.
    """
    catalog = {product.product_id: product for product in products}
    resolved: List[SaleLineItem] = []
    for line in lines:
        product = catalog.get(line.product_id)
        if product is None:
            raise MissingReferenceError(f"Unknown product id: {line.product_id}")
        core_logic.require_positive_quantity(line.quantity)
        unit_price = product.sale_price if line.unit_price is None else line.unit_price
        core_logic.require_nonnegative_money(unit_price)
        resolved.append(
            SaleLineItem(
                product_id=product.product_id,
                quantity=line.quantity,
                unit_sale_price=unit_price,
                unit_cost_price_snapshot=product.cost_price,
                name=product.name,
                is_service=product.is_service,
            )
        )
    return tuple(resolved)


def plan_stock_decrements(
    lines: Iterable[SaleLineItem],
    products: Sequence[ProductRow],
    *,
    allow_negative: bool = False,
) -> Tuple[StockDecrement, ...]:
    """Build one decrement per physical product, merging repeated lines.

    Service lines never produce an instruction.

    Raises:
        InsufficientStockError: If recorded stock cannot cover a product and
            ``allow_negative`` is false.
    """
    catalog = {product.product_id: product for product in products}
    quantities: Dict[str, int] = OrderedDict()
    for line in lines:
        if line.is_service:
            continue
        quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity

    decrements: List[StockDecrement] = []
    for product_id, quantity in quantities.items():
        prior = catalog[product_id].stock
        if prior < quantity and not allow_negative:
            log.warning("Insufficient stock for '%s': have %s, need %s", product_id, prior, quantity)
            raise InsufficientStockError(
                f"Insufficient stock for '{product_id}': available {prior}, requested {quantity}"
            )
        decrements.append(
            StockDecrement(product_id=product_id, quantity=quantity, prior_stock=prior, new_stock=prior - quantity)
        )
    return tuple(decrements)


def _card_metadata(tenders: Sequence[Tender]) -> Dict[str, Optional[object]]:
    card = next((tender for tender in tenders if tender.is_card), None)
    if card is None:
        return {}
    return {
        "installments": card.installments,
        "auth_number": card.auth_number,
        "transaction_sku": card.transaction_sku,
        "card_operator_id": card.card_operator_id,
        "card_brand_id": card.card_brand_id,
    }


def build_sale_plan(context: RuntimeContext, command: SaleCommand) -> SettlementPlan:
    """Validate ``command`` against loaded collections and build its writes.

    Raises:
        EmptyCartError: If the cart has no lines.
        MissingVendorError: If no vendor is selected.
        CardDetailsRequiredError: If a card tender lacks operator or brand.
        NoOpenSessionError: If the store has no open drawer.
        StaleSessionError: If the open drawer is from an earlier day.
        InsufficientTenderError: If tenders leave an amount outstanding.
        InsufficientStockError: If recorded stock cannot cover a line.
        MissingReferenceError: If a product is unknown.
    """
    settings = context.settings
    if not command.lines:
        log.error("Sale rejected: empty cart")
        raise EmptyCartError("Cart is empty")
    if not command.vendor_id:
        log.error("Sale rejected: no vendor selected")
        raise MissingVendorError("Select the vendor responsible for the sale")
    validate_tenders(command.tenders)

    timestamp = core_logic.resolve_timestamp(command.timestamp)
    store_id = command.store_id or settings.store_id
    ensure_sale_permitted(
        core_logic.list_cash_sessions(context),
        store_id=store_id,
        operator_role=command.operator_role or settings.operator_role,
        today=timestamp.date(),
    )

    products = core_logic.list_products(context)
    items = resolve_lines(command.lines, products)
    totals = compute_totals(
        items,
        shipping=command.shipping,
        discount=command.discount,
        discount_is_percent=command.discount_is_percent,
    )
    summary = reconcile_tenders(totals.total, command.tenders)
    if not summary.settled:
        log.error("Sale rejected: remaining %s of total %s", summary.remaining, totals.total)
        raise InsufficientTenderError(summary.remaining)

    decrements = plan_stock_decrements(items, products, allow_negative=settings.allow_negative_stock)
    category = (
        TransactionCategory.SERVICE.value
        if all(item.is_service for item in items)
        else TransactionCategory.SALE.value
    )
    transaction = TransactionRow(
        transaction_id=core_logic.generate_record_id(SALE_PREFIX, when=timestamp),
        date=timestamp.isoformat(),
        description=SALE_DESCRIPTION,
        store_id=store_id,
        category=category,
        status=TransactionStatus.PAID.value,
        value=totals.total,
        transaction_type=TransactionType.INCOME.value,
        method=summary_method_label(command.tenders),
        shipping_value=totals.shipping,
        discount_value=totals.discount,
        change_value=summary.change,
        client_id=command.client_id,
        vendor_id=command.vendor_id,
        cashier_id=command.cashier_id or settings.operator_id,
        items=items,
        tenders=tuple(TenderRecord(method=tender.method, value=tender.value) for tender in command.tenders),
        **_card_metadata(command.tenders),
    )
    return SettlementPlan(transaction=transaction, totals=totals, tenders=summary, decrements=decrements)


def settle_sale(context: RuntimeContext, command: SaleCommand) -> TransactionRow:
    """Validate and commit a sale.

    The stock decrements and the transaction upsert are issued together and
    are not rolled back if some of them fail. Transactions and products are
    reloaded afterwards whatever the outcome.

    Returns:
        TransactionRow: The committed sale.

    Raises:
        BusinessRuleViolation: For any validation failure listed in
            :func:`build_sale_plan`.
        OperationFailed: If one or more writes failed.
    """
    plan = build_sale_plan(context, command)
    products = context.repositories.products
    allow_negative = context.settings.allow_negative_stock

    writes: List[core_logic.WriteOperation] = [
        (
            f"stock:{decrement.product_id}",
            lambda decrement=decrement: products.decrement_stock(
                decrement.product_id, decrement.quantity, allow_negative=allow_negative
            ),
        )
        for decrement in plan.decrements
    ]
    writes.append(
        (f"transaction:{plan.transaction.transaction_id}", lambda: context.repositories.transactions.upsert(plan.transaction))
    )

    try:
        core_logic.dispatch_writes("Sale settlement", writes)
    finally:
        core_logic.reload_collections(context, "transactions", "products")

    log.info(
        "Settled sale '%s' total=%s paid=%s change=%s method=%s",
        plan.transaction.transaction_id,
        plan.totals.total,
        plan.tenders.total_paid,
        plan.tenders.change,
        plan.transaction.method,
    )
    return plan.transaction


def _find_refund(transactions: Iterable[TransactionRow], sale_id: str) -> Optional[TransactionRow]:
    description = REFUND_DESCRIPTION.format(sale_id=sale_id)
    for transaction in transactions:
        if transaction.category == TransactionCategory.REFUND.value and transaction.description == description:
            return transaction
    return None


def cancel_sale(
    context: RuntimeContext,
    sale_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> TransactionRow:
    """Refund a sale with a matching ``EXPENSE`` and put its units back.

    The sale itself is not modified. The refund carries the sale's value,
    method and tenders so the drawer gives back what it took in. It is booked
    for the configured store and operator so it lands in the drawer that pays
    it out.

    Raises:
        MissingReferenceError: If ``sale_id`` is unknown.
        BusinessRuleViolation: If the target is not a sale or was already
            refunded.
        NoOpenSessionError: If the store has no open drawer.
        StaleSessionError: If the open drawer is from an earlier day.
        InsufficientBalanceError: If the cash to give back exceeds the drawer.
        OperationFailed: If one or more writes failed.
    """
    sale = core_logic.get_transaction(context, sale_id)
    if sale.transaction_type != TransactionType.INCOME.value or not sale.items:
        raise BusinessRuleViolation(f"Transaction '{sale_id}' is not a refundable sale")
    if sale.status == TransactionStatus.CANCELLED.value:
        raise BusinessRuleViolation(f"Sale '{sale_id}' is cancelled")
    existing = _find_refund(core_logic.list_transactions(context), sale_id)
    if existing is not None:
        log.warning("Sale '%s' already refunded by '%s'", sale_id, existing.transaction_id)
        raise BusinessRuleViolation(f"Sale '{sale_id}' was already refunded by '{existing.transaction_id}'")

    settings = context.settings
    moment = core_logic.resolve_timestamp(timestamp)
    ensure_sale_permitted(
        core_logic.list_cash_sessions(context),
        store_id=settings.store_id,
        operator_role=settings.operator_role,
        today=moment.date(),
    )
    refund = replace(
        sale,
        transaction_id=core_logic.generate_record_id(REFUND_PREFIX, when=moment),
        date=moment.isoformat(),
        description=REFUND_DESCRIPTION.format(sale_id=sale_id),
        store_id=settings.store_id,
        category=TransactionCategory.REFUND.value,
        transaction_type=TransactionType.EXPENSE.value,
        status=TransactionStatus.PAID.value,
        cashier_id=settings.operator_id,
    )
    cash_out = transaction_cash_amount(refund)
    if cash_out > ZERO:
        require_drawer_cash(context, cash_out, settings.store_id)

    catalog = {product.product_id: product for product in core_logic.list_products(context)}
    products = context.repositories.products
    writes: List[core_logic.WriteOperation] = []
    for item in sale.items:
        product = catalog.get(item.product_id)
        if product is None or product.is_service:
            continue
        writes.append(
            (
                f"stock:{item.product_id}",
                lambda item=item: products.adjust_stock(item.product_id, item.quantity, allow_negative=True),
            )
        )
    writes.append((f"transaction:{refund.transaction_id}", lambda: context.repositories.transactions.upsert(refund)))

    try:
        core_logic.dispatch_writes("Sale cancellation", writes)
    finally:
        core_logic.reload_collections(context, "transactions", "products")

    log.info("Refunded sale '%s' with '%s' value=%s", sale_id, refund.transaction_id, refund.value)
    return refund


def reassign_sale_parties(
    context: RuntimeContext,
    sale_id: str,
    *,
    vendor_id: Optional[str] = None,
    client_id: Optional[str] = None,
) -> TransactionRow:
    """Point an existing sale at another vendor and/or customer.

    The whole record is re-upserted under the same identifier; the previous
    references survive only in the log.

    Raises:
        ValueError: If neither reference is supplied.
        MissingReferenceError: If ``sale_id`` is unknown.
        OperationFailed: If the write failed.
    """
    if vendor_id is None and client_id is None:
        raise ValueError("Provide a vendor or a customer to reassign")

    sale = core_logic.get_transaction(context, sale_id)
    updated = replace(
        sale,
        vendor_id=vendor_id if vendor_id is not None else sale.vendor_id,
        client_id=client_id if client_id is not None else sale.client_id,
    )
    try:
        core_logic.dispatch_writes(
            "Sale reassignment",
            [(f"transaction:{sale_id}", lambda: context.repositories.transactions.upsert(updated))],
        )
    finally:
        core_logic.reload_collections(context, "transactions")

    log.info(
        "Reassigned sale '%s': vendor %s -> %s, client %s -> %s",
        sale_id,
        sale.vendor_id,
        updated.vendor_id,
        sale.client_id,
        updated.client_id,
    )
    return updated
