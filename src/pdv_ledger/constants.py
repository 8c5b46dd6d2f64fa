"""Enumerations shared across the ledger modules.

Statuses, tender labels and sheet names live here so the record store, the
ledger computations and the command line agree on the exact text persisted in
the workbook.
"""

from __future__ import annotations

from enum import Enum


# Workbook layout version the code expects to find in ``config.ini``.
EXPECTED_SCHEMA_VERSION = "2.0.0"

# Layout version of the local stock-count session file.
COUNT_SESSION_SCHEMA_VERSION = 1


class TransactionStatus(str, Enum):
    """Settlement state of a transaction."""

    PAID = "PAGO"
    PENDING = "PENDENTE"
    OVERDUE = "ATRASADO"
    CANCELLED = "CANCELADO"


class TransactionType(str, Enum):
    """Direction of a transaction relative to the store's cash."""

    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class TransactionCategory(str, Enum):
    """Category labels the ledger itself writes or reads back."""

    SALE = "Venda"
    SERVICE = "Serviço"
    REFUND = "Devolução"


class PaymentMethod(str, Enum):
    """Tender methods accepted at the register."""

    CASH = "Dinheiro"
    PIX = "Pix"
    DEBIT = "Debito"
    CREDIT = "Credito"


# Tenders that must carry card operator and brand references.
CARD_METHODS: frozenset[str] = frozenset({PaymentMethod.DEBIT.value, PaymentMethod.CREDIT.value})

MULTIPLE_METHODS_LABEL = "Múltiplo"


class CashSessionStatus(str, Enum):
    """Lifecycle of a cash drawer session."""

    PENDING_OPEN = "ABERTURA PENDENTE"
    OPEN = "ABERTO"
    CLOSED = "FECHADO"


class CashEntryKind(str, Enum):
    """Manual drawer movements not tied to a sale."""

    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"


class UserRole(str, Enum):
    """Operator roles relevant to ledger policies."""

    ADMIN = "ADMINISTRADOR"
    MANAGER = "GERENTE"
    CASHIER = "CAIXA"
    VENDOR = "VENDEDOR"


class StockCountStatus(str, Enum):
    """Classification of counted versus recorded stock."""

    OK = "OK"
    OVERAGE = "SOBRA"
    SHORTAGE = "FALTA"


class SheetName(str, Enum):
    """Workbook sheets backing each record collection."""

    PRODUCTS = "Products"
    TRANSACTIONS = "Transactions"
    CASH_SESSIONS = "CashSessions"
    CASH_ENTRIES = "CashEntries"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "COUNT_SESSION_SCHEMA_VERSION",
    "TransactionStatus",
    "TransactionType",
    "TransactionCategory",
    "PaymentMethod",
    "CARD_METHODS",
    "MULTIPLE_METHODS_LABEL",
    "CashSessionStatus",
    "CashEntryKind",
    "UserRole",
    "StockCountStatus",
    "SheetName",
]
