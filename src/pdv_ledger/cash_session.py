"""Cash drawer sessions and the money moving through them.

A session walks ``ABERTURA PENDENTE -> ABERTO -> FECHADO`` exactly once. Its
closing value is never typed in by an operator: :func:`close_session` derives
it from the ledger at the moment of closing. Manual drawer movements and
expense transactions paid from the drawer are checked against the computed
drawer balance before they are written.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, FrozenSet, Iterable, Optional

from . import core_logic, log
from .constants import (
    CashEntryKind,
    CashSessionStatus,
    PaymentMethod,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from .core_logic import BusinessRuleViolation, RuntimeContext
from .data_manager import ZERO, CashEntryRow, CashSessionRow, TransactionRow
from .ledger import (
    SessionBalance,
    calendar_date,
    cumulative_cash_balance,
    last_closed_session,
    open_session_for_store,
    session_balance,
    sessions_for_store,
)


SESSION_PREFIX = "CASH"
ENTRY_PREFIX = "ENTRY"
EXPENSE_PREFIX = "TRX"

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    CashSessionStatus.PENDING_OPEN.value: frozenset({CashSessionStatus.OPEN.value}),
    CashSessionStatus.OPEN.value: frozenset({CashSessionStatus.CLOSED.value}),
    CashSessionStatus.CLOSED.value: frozenset(),
}


class SessionAlreadyOpenError(BusinessRuleViolation):
    """Raised when the store already has an open drawer."""


class SameDaySessionError(BusinessRuleViolation):
    """Raised when reopening a store's drawer on the same day without override."""


class NoOpenSessionError(BusinessRuleViolation):
    """Raised when the store has no open cash drawer."""


class StaleSessionError(BusinessRuleViolation):
    """Raised when the open cash drawer was opened on an earlier day."""


class InvalidSessionTransition(BusinessRuleViolation):
    """Raised when a session status change is not part of the lifecycle."""


class InsufficientBalanceError(BusinessRuleViolation):
    """Raised when a cash outflow exceeds the drawer balance."""

    def __init__(self, requested: Decimal, available: Decimal) -> None:
        super().__init__(f"Insufficient drawer balance: requested {requested}, available {available}")
        self.requested = requested
        self.available = available


def transition(session: CashSessionRow, target: CashSessionStatus) -> CashSessionRow:
    """Return ``session`` moved to ``target`` if the lifecycle allows it.

    Raises:
        InvalidSessionTransition: For any move outside
            ``ALLOWED_TRANSITIONS``.
    """
    allowed = ALLOWED_TRANSITIONS.get(session.status, frozenset())
    if target.value not in allowed:
        log.error("Rejected session transition %s -> %s for '%s'", session.status, target.value, session.session_id)
        raise InvalidSessionTransition(
            f"Session '{session.session_id}' cannot move from {session.status} to {target.value}"
        )
    return replace(session, status=target.value)


def suggest_opening_value(sessions: Iterable[CashSessionRow], store_id: str) -> Decimal:
    """Closing value of the store's last closed session, or zero."""

    previous = last_closed_session(sessions, store_id)
    if previous is None or previous.closing_value is None:
        return ZERO
    return previous.closing_value


def ensure_sale_permitted(
    sessions: Iterable[CashSessionRow],
    *,
    store_id: str,
    operator_role: str,
    today: date,
) -> CashSessionRow:
    """Return the store's open session or explain why the register is locked.

    Raises:
        NoOpenSessionError: If the store has no open session.
        StaleSessionError: If the open session started before ``today`` and
            the operator is not an administrator.
    """
    session = open_session_for_store(sessions, store_id)
    if session is None:
        log.warning("Register locked: no open cash session for store '%s'", store_id)
        raise NoOpenSessionError(f"No open cash session for store '{store_id}'; open the drawer first")
    opened_on = calendar_date(session.opening_time)
    if opened_on != today and operator_role != UserRole.ADMIN.value:
        log.warning("Register locked: session '%s' was opened on %s", session.session_id, opened_on)
        raise StaleSessionError(
            f"Cash session '{session.session_id}' was opened on {opened_on}; close it before continuing"
        )
    return session


def open_session(
    context: RuntimeContext,
    *,
    opening_value: Optional[Decimal] = None,
    store_id: Optional[str] = None,
    register_name: Optional[str] = None,
    operator_id: Optional[str] = None,
    operator_role: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> CashSessionRow:
    """Open the store's cash drawer.

    The opening value defaults to the closing value of the store's last closed
    session. A second session on the same calendar day is refused unless the
    operator is an administrator and ``AllowMultipleDailySessions`` is set.

    Raises:
        SessionAlreadyOpenError: If the store already has an open session.
        SameDaySessionError: If a session was already opened today and the
            override does not apply.
        ValueError: If ``opening_value`` is negative.
        OperationFailed: If the write failed.
    """
    settings = context.settings
    store_id = store_id or settings.store_id
    role = operator_role or settings.operator_role
    moment = core_logic.resolve_timestamp(timestamp)
    sessions = core_logic.reload_collections(context, "cash_sessions")["cash_sessions"]

    current = open_session_for_store(sessions, store_id)
    if current is not None:
        log.warning("Open rejected: session '%s' is already open for store '%s'", current.session_id, store_id)
        raise SessionAlreadyOpenError(f"Store '{store_id}' already has open session '{current.session_id}'")

    opened_today = [
        session for session in sessions_for_store(sessions, store_id) if calendar_date(session.opening_time) == moment.date()
    ]
    if opened_today:
        if role == UserRole.ADMIN.value and settings.allow_multiple_daily_sessions:
            log.warning("Administrator override: opening another session today for store '%s'", store_id)
        else:
            log.warning("Open rejected: store '%s' already had a session today", store_id)
            raise SameDaySessionError(
                f"Store '{store_id}' already opened a session on {moment.date()}; an administrator override is required"
            )

    if opening_value is None:
        opening_value = suggest_opening_value(sessions, store_id)
    core_logic.require_nonnegative_money(opening_value)

    draft = CashSessionRow(
        session_id=core_logic.generate_record_id(SESSION_PREFIX, when=moment),
        store_id=store_id,
        register_name=register_name or settings.register_name,
        status=CashSessionStatus.PENDING_OPEN.value,
        opening_time=moment.isoformat(),
        opening_operator_id=operator_id or settings.operator_id,
        opening_value=opening_value,
    )
    opened = transition(draft, CashSessionStatus.OPEN)
    try:
        core_logic.dispatch_writes(
            "Cash session opening",
            [(f"session:{opened.session_id}", lambda: context.repositories.cash_sessions.upsert(opened))],
        )
    finally:
        core_logic.reload_collections(context, "cash_sessions")

    log.info("Opened cash session '%s' for store '%s' with %s", opened.session_id, store_id, opening_value)
    return opened


def current_session(context: RuntimeContext, store_id: Optional[str] = None) -> Optional[CashSessionRow]:
    """Open session of ``store_id`` (the configured store by default)."""

    return open_session_for_store(core_logic.list_cash_sessions(context), store_id or context.settings.store_id)


def compute_session_balance(context: RuntimeContext, session: CashSessionRow) -> SessionBalance:
    """Evaluate ``session`` over freshly reloaded transactions and entries."""

    collections = core_logic.reload_collections(context, "transactions", "cash_entries")
    return session_balance(session, collections["transactions"], collections["cash_entries"])


def close_session(
    context: RuntimeContext,
    session_id: Optional[str] = None,
    *,
    operator_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> CashSessionRow:
    """Close a session with its computed closing value.

    Without ``session_id`` the configured store's open session is closed.

    Raises:
        NoOpenSessionError: If no session id is given and none is open.
        MissingReferenceError: If ``session_id`` is unknown.
        InvalidSessionTransition: If the session is not open.
        OperationFailed: If the write failed.
    """
    core_logic.reload_collections(context, "cash_sessions")
    if session_id is None:
        session = current_session(context)
        if session is None:
            raise NoOpenSessionError(f"No open cash session for store '{context.settings.store_id}'")
    else:
        session = core_logic.get_cash_session(context, session_id)

    balance = compute_session_balance(context, session)
    moment = core_logic.resolve_timestamp(timestamp)
    closed = replace(
        transition(session, CashSessionStatus.CLOSED),
        closing_time=moment.isoformat(),
        closing_operator_id=operator_id or context.settings.operator_id,
        closing_value=balance.closing_value,
    )
    try:
        core_logic.dispatch_writes(
            "Cash session closing",
            [(f"session:{closed.session_id}", lambda: context.repositories.cash_sessions.upsert(closed))],
        )
    finally:
        core_logic.reload_collections(context, "cash_sessions")

    log.info(
        "Closed cash session '%s': opening=%s sales=%s incomes=%s expenses=%s paid=%s closing=%s",
        closed.session_id,
        balance.opening_value,
        balance.cash_sales,
        balance.manual_incomes,
        balance.manual_expenses,
        balance.cash_expense_transactions,
        balance.closing_value,
    )
    return closed


def drawer_balance(context: RuntimeContext, store_id: Optional[str] = None) -> Decimal:
    """Cash available for outflows.

    The running balance of the store's open session when there is one,
    otherwise the store's cumulative balance.
    """
    store_id = store_id or context.settings.store_id
    collections = core_logic.reload_collections(context)
    session = open_session_for_store(collections["cash_sessions"], store_id)
    if session is not None:
        return session_balance(session, collections["transactions"], collections["cash_entries"]).closing_value
    return cumulative_cash_balance(
        store_id,
        collections["transactions"],
        collections["cash_entries"],
        collections["cash_sessions"],
    )


def require_drawer_cash(context: RuntimeContext, amount: Decimal, store_id: Optional[str]) -> None:
    """Raise ``InsufficientBalanceError`` when ``amount`` exceeds the drawer."""

    available = drawer_balance(context, store_id)
    if amount > available:
        log.warning("Cash outflow of %s rejected; drawer holds %s", amount, available)
        raise InsufficientBalanceError(amount, available)


def record_cash_entry(
    context: RuntimeContext,
    *,
    kind: CashEntryKind,
    value: Decimal,
    category: str,
    description: str = "",
    method: Optional[str] = None,
    session_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> CashEntryRow:
    """Record a manual drawer movement in an open session.

    Raises:
        NoOpenSessionError: If no session id is given and none is open.
        InvalidSessionTransition: If the target session is not open.
        InsufficientBalanceError: If a cash expense exceeds the drawer.
        ValueError: If ``value`` is not positive.
        OperationFailed: If the write failed.
    """
    if value <= ZERO:
        raise ValueError("Cash entry value must be greater than zero")

    if session_id is None:
        session = current_session(context)
        if session is None:
            raise NoOpenSessionError(f"No open cash session for store '{context.settings.store_id}'")
    else:
        session = core_logic.get_cash_session(context, session_id)
        if session.status != CashSessionStatus.OPEN.value:
            raise InvalidSessionTransition(f"Session '{session.session_id}' is {session.status}; entries need an open drawer")

    is_cash = method is None or method == PaymentMethod.CASH.value
    if kind is CashEntryKind.EXPENSE and is_cash:
        require_drawer_cash(context, value, session.store_id)

    moment = core_logic.resolve_timestamp(timestamp)
    entry = CashEntryRow(
        entry_id=core_logic.generate_record_id(ENTRY_PREFIX, when=moment),
        session_id=session.session_id,
        kind=kind.value,
        category=category,
        description=description,
        value=value,
        timestamp=moment.isoformat(),
        method=method,
    )
    try:
        core_logic.dispatch_writes(
            "Cash entry",
            [(f"entry:{entry.entry_id}", lambda: context.repositories.cash_entries.upsert(entry))],
        )
    finally:
        core_logic.reload_collections(context, "cash_entries")

    log.info("Recorded %s cash entry '%s' of %s in session '%s'", kind.value, entry.entry_id, value, session.session_id)
    return entry


def _is_drawer_cash(transaction: TransactionRow) -> bool:
    return transaction.method == PaymentMethod.CASH.value


def record_expense(
    context: RuntimeContext,
    *,
    description: str,
    value: Decimal,
    category: str,
    method: str = PaymentMethod.CASH.value,
    paid: bool = False,
    due_date: Optional[str] = None,
    store_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> TransactionRow:
    """Record an expense transaction, pending by default.

    Expenses created as paid in drawer cash must fit in the drawer balance.

    Raises:
        InsufficientBalanceError: If a paid cash expense exceeds the drawer.
        ValueError: If ``value`` is not positive.
        OperationFailed: If the write failed.
    """
    if value <= ZERO:
        raise ValueError("Expense value must be greater than zero")

    store_id = store_id or context.settings.store_id
    moment = core_logic.resolve_timestamp(timestamp)
    expense = TransactionRow(
        transaction_id=core_logic.generate_record_id(EXPENSE_PREFIX, when=moment),
        date=moment.isoformat(),
        description=description,
        store_id=store_id,
        category=category,
        status=(TransactionStatus.PAID if paid else TransactionStatus.PENDING).value,
        value=value,
        transaction_type=TransactionType.EXPENSE.value,
        method=method,
        cashier_id=context.settings.operator_id,
        due_date=due_date or moment.date().isoformat(),
    )
    if paid and _is_drawer_cash(expense):
        require_drawer_cash(context, value, store_id)

    try:
        core_logic.dispatch_writes(
            "Expense",
            [(f"transaction:{expense.transaction_id}", lambda: context.repositories.transactions.upsert(expense))],
        )
    finally:
        core_logic.reload_collections(context, "transactions")

    log.info("Recorded expense '%s' (%s) value=%s status=%s", expense.transaction_id, category, value, expense.status)
    return expense


def mark_transaction_paid(
    context: RuntimeContext,
    transaction_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> TransactionRow:
    """Settle a pending or overdue transaction.

    The transaction date moves to the payment moment so the payment lands in
    the session where the money actually left or entered the drawer.

    Raises:
        MissingReferenceError: If ``transaction_id`` is unknown.
        BusinessRuleViolation: If it is already paid or was cancelled.
        InsufficientBalanceError: If a cash expense exceeds the drawer.
        OperationFailed: If the write failed.
    """
    transaction = core_logic.get_transaction(context, transaction_id)
    if transaction.status == TransactionStatus.PAID.value:
        raise BusinessRuleViolation(f"Transaction '{transaction_id}' is already paid")
    if transaction.status == TransactionStatus.CANCELLED.value:
        raise BusinessRuleViolation(f"Transaction '{transaction_id}' was cancelled")

    if transaction.transaction_type == TransactionType.EXPENSE.value and _is_drawer_cash(transaction):
        require_drawer_cash(context, transaction.value, transaction.store_id)

    moment = core_logic.resolve_timestamp(timestamp)
    paid = replace(
        transaction,
        status=TransactionStatus.PAID.value,
        date=moment.isoformat(),
        cashier_id=context.settings.operator_id,
    )
    try:
        core_logic.dispatch_writes(
            "Mark as paid",
            [(f"transaction:{transaction_id}", lambda: context.repositories.transactions.upsert(paid))],
        )
    finally:
        core_logic.reload_collections(context, "transactions")

    log.info("Marked transaction '%s' as paid (value=%s)", transaction_id, paid.value)
    return paid
