"""Pure computations over already-loaded ledger collections.

Nothing in this module touches the workbook. Callers hand in the collections
they loaded through :mod:`pdv_ledger.core_logic`, and every figure is derived
from those inputs alone, so recomputing with the same inputs always yields the
same result.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from . import log
from .constants import (
    CashEntryKind,
    CashSessionStatus,
    PaymentMethod,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
)
from .core_logic import parse_record_moment
from .data_manager import ZERO, CashEntryRow, CashSessionRow, ProductRow, TransactionRow


CENTS = Decimal("0.01")
NO_VENDOR = "(sem vendedor)"
NO_STORE = "(sem loja)"


def quantize_money(amount: Decimal) -> Decimal:
    """Round ``amount`` to cents using commercial rounding."""
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_moment(raw: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp, treating naive values as UTC."""

    if not raw:
        return None
    try:
        moment = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def calendar_date(raw: Optional[str]) -> Optional[date]:
    """Return the UTC calendar date of an ISO timestamp or plain date."""

    moment = parse_moment(raw)
    return moment.date() if moment is not None else None


def transaction_moment(transaction: TransactionRow) -> Optional[datetime]:
    """Best known moment of a transaction: its date, else its identifier."""

    moment = parse_moment(transaction.date)
    if moment is None:
        moment = parse_record_moment(transaction.transaction_id)
    return moment


def _is_cash(method: Optional[str]) -> bool:
    return method == PaymentMethod.CASH.value


def _counts_as_settled(transaction: TransactionRow) -> bool:
    return transaction.status == TransactionStatus.PAID.value


# ---------------------------------------------------------------------------
# Cash balances
# ---------------------------------------------------------------------------


def transaction_cash_amount(transaction: TransactionRow) -> Decimal:
    """Drawer cash moved by ``transaction``.

    With recorded tenders the amount is the cash tendered minus the change
    handed back. Older records carry only a method label, in which case the
    whole value counts when that label is cash.
    """

    if transaction.tenders:
        tendered = sum(
            (tender.value for tender in transaction.tenders if _is_cash(tender.method)),
            ZERO,
        )
        return tendered - transaction.change_value
    if _is_cash(transaction.method):
        return transaction.value
    return ZERO


def entry_is_cash(entry: CashEntryRow) -> bool:
    """Manual entries without a method are drawer cash."""
    return entry.method is None or _is_cash(entry.method)


def transaction_in_session(transaction: TransactionRow, session: CashSessionRow) -> bool:
    """Decide whether ``transaction`` happened during ``session``.

    A transaction belongs to a session when it was recorded for the same store
    on the session's calendar date, no earlier than the opening and, once the
    session is closed, before the closing. When both the transaction's cashier
    and the session's opening operator are known they must also match.
    """

    if transaction.store_id != session.store_id:
        return False
    moment = transaction_moment(transaction)
    opened_at = parse_moment(session.opening_time)
    if moment is None or opened_at is None or moment.date() != opened_at.date():
        return False
    if moment < opened_at:
        return False
    closed_at = parse_moment(session.closing_time)
    if closed_at is not None and moment >= closed_at:
        return False
    if transaction.cashier_id and session.opening_operator_id:
        return transaction.cashier_id == session.opening_operator_id
    return True


@dataclass(frozen=True)
class SessionBalance:
    """Breakdown of the drawer cash accumulated during one session."""

    session_id: str
    opening_value: Decimal
    cash_sales: Decimal
    manual_incomes: Decimal
    manual_expenses: Decimal
    cash_expense_transactions: Decimal

    @property
    def closing_value(self) -> Decimal:
        return (
            self.opening_value
            + self.cash_sales
            + self.manual_incomes
            - self.manual_expenses
            - self.cash_expense_transactions
        )


def session_balance(
    session: CashSessionRow,
    transactions: Iterable[TransactionRow],
    entries: Iterable[CashEntryRow],
) -> SessionBalance:
    """Compute the expected drawer contents of ``session``.

    The closing value equals the opening value plus cash sales and manual cash
    incomes, minus manual cash expenses and cash-paid expense transactions.
    Only settled (``PAGO``) transactions contribute.

    Args:
        session (CashSessionRow): Session to evaluate.
        transactions (Iterable[TransactionRow]): Full transaction history.
        entries (Iterable[CashEntryRow]): Manual drawer movements.

    Returns:
        SessionBalance: Components of the balance and its ``closing_value``.
    """
    cash_sales = ZERO
    cash_expenses = ZERO
    for transaction in transactions:
        if not _counts_as_settled(transaction) or not transaction_in_session(transaction, session):
            continue
        if transaction.transaction_type == TransactionType.INCOME.value:
            cash_sales += transaction_cash_amount(transaction)
        elif transaction.transaction_type == TransactionType.EXPENSE.value:
            cash_expenses += transaction_cash_amount(transaction)

    manual_incomes = ZERO
    manual_expenses = ZERO
    for entry in entries:
        if entry.session_id != session.session_id or not entry_is_cash(entry):
            continue
        if entry.kind == CashEntryKind.INCOME.value:
            manual_incomes += entry.value
        elif entry.kind == CashEntryKind.EXPENSE.value:
            manual_expenses += entry.value

    balance = SessionBalance(
        session_id=session.session_id,
        opening_value=session.opening_value,
        cash_sales=cash_sales,
        manual_incomes=manual_incomes,
        manual_expenses=manual_expenses,
        cash_expense_transactions=cash_expenses,
    )
    log.debug("Session '%s' balance computed: %s", session.session_id, balance.closing_value)
    return balance


def sessions_for_store(sessions: Iterable[CashSessionRow], store_id: str) -> List[CashSessionRow]:
    """Sessions of ``store_id`` ordered by opening time."""

    scoped = [session for session in sessions if session.store_id == store_id]
    scoped.sort(key=lambda session: parse_moment(session.opening_time) or datetime.min.replace(tzinfo=UTC))
    return scoped


def open_session_for_store(sessions: Iterable[CashSessionRow], store_id: str) -> Optional[CashSessionRow]:
    """Return the open session of ``store_id``, if any."""

    for session in sessions_for_store(sessions, store_id):
        if session.status == CashSessionStatus.OPEN.value:
            return session
    return None


def last_closed_session(sessions: Iterable[CashSessionRow], store_id: str) -> Optional[CashSessionRow]:
    """Most recently opened ``CLOSED`` session of ``store_id``."""

    closed = [
        session
        for session in sessions_for_store(sessions, store_id)
        if session.status == CashSessionStatus.CLOSED.value
    ]
    return closed[-1] if closed else None


def cumulative_cash_balance(
    store_id: str,
    transactions: Iterable[TransactionRow],
    entries: Iterable[CashEntryRow],
    sessions: Iterable[CashSessionRow],
) -> Decimal:
    """All-time drawer cash of one store.

    Sums paid cash incomes and manual cash incomes, subtracts paid cash
    expenses and manual cash expenses, then adds the opening value of the
    store's earliest session. The figure is informational: it only seeds the
    suggested opening value and audit displays.
    """

    store_sessions = sessions_for_store(sessions, store_id)
    session_ids = {session.session_id for session in store_sessions}

    balance = store_sessions[0].opening_value if store_sessions else ZERO
    for transaction in transactions:
        if transaction.store_id != store_id or not _counts_as_settled(transaction):
            continue
        if transaction.transaction_type == TransactionType.INCOME.value:
            balance += transaction_cash_amount(transaction)
        elif transaction.transaction_type == TransactionType.EXPENSE.value:
            balance -= transaction_cash_amount(transaction)

    for entry in entries:
        if entry.session_id not in session_ids or not entry_is_cash(entry):
            continue
        if entry.kind == CashEntryKind.INCOME.value:
            balance += entry.value
        elif entry.kind == CashEntryKind.EXPENSE.value:
            balance -= entry.value

    log.debug("Cumulative cash balance for store '%s': %s", store_id, balance)
    return balance


# ---------------------------------------------------------------------------
# Margin and reporting
# ---------------------------------------------------------------------------


def is_revenue(transaction: TransactionRow) -> bool:
    """Income transactions that were not cancelled."""

    return (
        transaction.transaction_type == TransactionType.INCOME.value
        and transaction.status != TransactionStatus.CANCELLED.value
    )


def cost_of_goods_sold(transactions: Iterable[TransactionRow]) -> Decimal:
    """Sum ``quantity * unit_cost_price_snapshot`` over every line item."""

    total = ZERO
    for transaction in transactions:
        for item in transaction.items:
            total += item.unit_cost_price_snapshot * item.quantity
    return total


@dataclass(frozen=True)
class MarginSummary:
    revenue: Decimal
    cost_of_goods_sold: Decimal

    @property
    def gross_margin(self) -> Decimal:
        return self.revenue - self.cost_of_goods_sold

    @property
    def margin_percent(self) -> Decimal:
        if self.revenue == ZERO:
            return ZERO
        return quantize_money(self.gross_margin / self.revenue * 100)


def margin_summary(transactions: Iterable[TransactionRow]) -> MarginSummary:
    """Revenue against the cost snapshots frozen on each sold line."""

    revenue_transactions = [transaction for transaction in transactions if is_revenue(transaction)]
    revenue = sum((transaction.value for transaction in revenue_transactions), ZERO)
    return MarginSummary(revenue=revenue, cost_of_goods_sold=cost_of_goods_sold(revenue_transactions))


def _hour_key(transaction: TransactionRow) -> str:
    moment = parse_record_moment(transaction.transaction_id) or transaction_moment(transaction)
    return f"{moment.hour:02d}:00" if moment is not None else "??:00"


def _day_key(transaction: TransactionRow) -> str:
    moment = transaction_moment(transaction)
    return moment.date().isoformat() if moment is not None else ""


GROUPINGS: Dict[str, Callable[[TransactionRow], str]] = {
    "hour": _hour_key,
    "day": _day_key,
    "vendor": lambda transaction: transaction.vendor_id or NO_VENDOR,
    "store": lambda transaction: transaction.store_id or NO_STORE,
}


def group_transactions(
    transactions: Iterable[TransactionRow], by: str
) -> Dict[str, List[TransactionRow]]:
    """Bucket transactions by ``hour``, ``day``, ``vendor`` or ``store``.

    Hours are taken from the timestamp embedded in the identifier, falling back
    to the transaction date. Buckets are returned in key order.

    Raises:
        ValueError: If ``by`` is not a supported grouping.
    """
    try:
        key_of = GROUPINGS[by]
    except KeyError as exc:
        raise ValueError(f"Unsupported grouping: {by}") from exc

    buckets: Dict[str, List[TransactionRow]] = defaultdict(list)
    for transaction in transactions:
        buckets[key_of(transaction)].append(transaction)
    return {key: buckets[key] for key in sorted(buckets)}


def group_totals(transactions: Iterable[TransactionRow], by: str) -> Dict[str, Decimal]:
    """Total value per bucket of :func:`group_transactions`."""

    return {
        key: sum((transaction.value for transaction in bucket), ZERO)
        for key, bucket in group_transactions(transactions, by).items()
    }


def sales_of_day(transactions: Iterable[TransactionRow], day: date) -> List[TransactionRow]:
    """Sale and service incomes recorded on ``day``."""

    categories = {TransactionCategory.SALE.value, TransactionCategory.SERVICE.value}
    selected = []
    for transaction in transactions:
        if not is_revenue(transaction) or transaction.category not in categories:
            continue
        moment = transaction_moment(transaction)
        if moment is not None and moment.date() == day:
            selected.append(transaction)
    return selected


@dataclass(frozen=True)
class DailyMetrics:
    day: date
    total_sales: Decimal
    sales_count: int
    units_sold: int

    @property
    def average_ticket(self) -> Decimal:
        if self.sales_count == 0:
            return ZERO
        return quantize_money(self.total_sales / self.sales_count)

    @property
    def units_per_sale(self) -> Decimal:
        if self.sales_count == 0:
            return ZERO
        return quantize_money(Decimal(self.units_sold) / self.sales_count)


def daily_metrics(transactions: Iterable[TransactionRow], day: date) -> DailyMetrics:
    """Headline sales figures for ``day``."""

    sales = sales_of_day(transactions, day)
    return DailyMetrics(
        day=day,
        total_sales=sum((transaction.value for transaction in sales), ZERO),
        sales_count=len(sales),
        units_sold=sum(item.quantity for transaction in sales for item in transaction.items),
    )


@dataclass(frozen=True)
class ProductSales:
    product_id: str
    name: str
    quantity: int
    total: Decimal


def product_ranking(transactions: Iterable[TransactionRow], *, limit: Optional[int] = None) -> List[ProductSales]:
    """Sold products ordered by revenue, highest first."""

    quantities: Dict[str, int] = defaultdict(int)
    totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    names: Dict[str, str] = {}
    for transaction in transactions:
        if not is_revenue(transaction):
            continue
        for item in transaction.items:
            quantities[item.product_id] += item.quantity
            totals[item.product_id] += item.unit_sale_price * item.quantity
            names.setdefault(item.product_id, item.name)

    ranking = [
        ProductSales(product_id=product_id, name=names[product_id], quantity=quantities[product_id], total=totals[product_id])
        for product_id in quantities
    ]
    ranking.sort(key=lambda entry: (-entry.total, -entry.quantity, entry.product_id))
    return ranking[:limit] if limit is not None else ranking


@dataclass(frozen=True)
class IncomeStatement:
    """Result statement over a set of transactions."""

    total_income: Decimal
    sales_income: Decimal
    service_income: Decimal
    other_income: Decimal
    cost_of_goods_sold: Decimal
    expenses: Decimal

    @property
    def gross_profit(self) -> Decimal:
        return self.total_income - self.cost_of_goods_sold

    @property
    def net_result(self) -> Decimal:
        return self.gross_profit - self.expenses

    @property
    def net_margin_percent(self) -> Decimal:
        if self.total_income == ZERO:
            return ZERO
        return quantize_money(self.net_result / self.total_income * 100)


def income_statement(transactions: Iterable[TransactionRow]) -> IncomeStatement:
    """Build the income statement of ``transactions``.

    Incomes are split into sales, services and everything else. Costs come
    from the snapshots on income line items; every non-cancelled expense
    transaction counts as an expense, refunds included.
    """
    incomes: List[TransactionRow] = []
    expenses = ZERO
    for transaction in transactions:
        if transaction.status == TransactionStatus.CANCELLED.value:
            continue
        if transaction.transaction_type == TransactionType.INCOME.value:
            incomes.append(transaction)
        elif transaction.transaction_type == TransactionType.EXPENSE.value:
            expenses += transaction.value

    total_income = sum((transaction.value for transaction in incomes), ZERO)
    sales_income = sum(
        (transaction.value for transaction in incomes if transaction.category == TransactionCategory.SALE.value),
        ZERO,
    )
    service_income = sum(
        (transaction.value for transaction in incomes if transaction.category == TransactionCategory.SERVICE.value),
        ZERO,
    )
    return IncomeStatement(
        total_income=total_income,
        sales_income=sales_income,
        service_income=service_income,
        other_income=total_income - sales_income - service_income,
        cost_of_goods_sold=cost_of_goods_sold(incomes),
        expenses=expenses,
    )


def products_below_minimum(products: Sequence[ProductRow]) -> List[ProductRow]:
    """Physical products whose stock is at or under their minimum."""

    return [
        product
        for product in products
        if not product.is_service and product.min_stock > 0 and product.stock <= product.min_stock
    ]
