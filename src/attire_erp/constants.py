"""Enumerations shared across the Attire ERP modules.

Centralises domain constants so that the data access layer (DAL), the order
engine, and the command-line front-end rely on a single source of truth for
status names, ledger entry types, and storage identifiers.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# First values handed out by the code counters.
ORDER_CODE_START = 70000001
PRODUCT_CODE_START = 90000001


class ProductCategory(str, Enum):
    """Enumerate whether a catalogue item is meant for rental or sale."""

    RENTAL = "Rental"
    SALE = "Sale"


class ProductStatus(str, Enum):
    """Enumerate the availability labels carried by a product."""

    AVAILABLE = "Available"
    RENTED = "Rented"
    SOLD = "Sold"


class TransactionType(str, Enum):
    """Enumerate the two kinds of customer order."""

    RENTAL = "Rental"
    SALE = "Sale"


class OrderStatus(str, Enum):
    """Enumerate the lifecycle states of an order."""

    ONGOING = "Ongoing"
    PREPARED = "Prepared"
    DELIVERED = "Delivered to Customer"
    COMPLETED = "Completed"
    OVERDUE = "Overdue"
    CANCELLED = "Cancelled"


# Orders in these states can no longer be discounted or deleted.
LOCKED_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED.value, OrderStatus.COMPLETED.value})

# Rental orders in these states still hold their items out of stock.
ACTIVE_RENTAL_STATUSES = frozenset(
    {
        OrderStatus.ONGOING.value,
        OrderStatus.PREPARED.value,
        OrderStatus.DELIVERED.value,
        OrderStatus.OVERDUE.value,
    }
)


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms."""

    CASH = "Cash"
    CARD = "Card"
    BANK_TRANSFER = "Bank Transfer"
    OTHER = "Other"


class FinancialTransactionType(str, Enum):
    """Enumerate the entry types recorded in the financial ledger."""

    INITIAL_SALE_VALUE = "Initial Sale Value"
    INITIAL_RENTAL_VALUE = "Initial Rental Value"
    PAYMENT_RECEIVED = "Payment Received"


class ReturnCondition(str, Enum):
    """Enumerate the inspection outcomes recorded when a rental comes back."""

    GOOD = "Good"
    DAMAGED = "Damaged"


class AuditEventKind(str, Enum):
    """Enumerate the kinds of event appended to an order's audit log."""

    NOTE = "NOTE"
    CREATED = "CREATED"
    PAYMENT = "PAYMENT"
    DISCOUNT = "DISCOUNT"
    PREPARED = "PREPARED"
    DELIVERED = "DELIVERED"
    RETURNED = "RETURNED"


class SheetName(str, Enum):
    """Enumerate the workbook sheets (store collections) managed by the DAL."""

    BRANCHES = "Branches"
    CUSTOMERS = "Customers"
    USERS = "Users"
    PRODUCTS = "Products"
    ORDERS = "Orders"
    FINANCIAL_TRANSACTIONS = "FinancialTransactions"
    COUNTERS = "Counters"


class CounterName(str, Enum):
    """Enumerate the persisted counters used by the code generator."""

    ORDER_CODE = "orderCode"
    PRODUCT_CODE = "productCode"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "ORDER_CODE_START",
    "PRODUCT_CODE_START",
    "ProductCategory",
    "ProductStatus",
    "TransactionType",
    "OrderStatus",
    "LOCKED_ORDER_STATUSES",
    "ACTIVE_RENTAL_STATUSES",
    "PaymentMethod",
    "FinancialTransactionType",
    "ReturnCondition",
    "AuditEventKind",
    "SheetName",
    "CounterName",
]
