"""Read-side queries over orders, products, and the financial ledger.

Nothing here mutates orders or the ledger. The one exception to "read only"
is :func:`reconcile_rented_quantities`, the recovery sweep that corrects a
product's rented counter after a partially applied multi-item operation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from . import data_manager, log
from .constants import (
    ACTIVE_RENTAL_STATUSES,
    FinancialTransactionType,
    OrderStatus,
    TransactionType,
)
from .core_logic import RuntimeContext, current_date

# Rentals still out with the customer (or about to be); stored Overdue is included.
_OPEN_RENTAL_STATUSES = frozenset(
    {
        OrderStatus.ONGOING.value,
        OrderStatus.PREPARED.value,
        OrderStatus.DELIVERED.value,
    }
)


@dataclass(frozen=True)
class StockLine:
    """One product's counters as shown by the stock report."""

    product_id: str
    product_code: str
    product_name: str
    quantity_in_stock: int
    quantity_rented: int
    quantity_available: int
    quantity_sold: int
    status: str


@dataclass(frozen=True)
class RentedQuantityDrift:
    """A product whose stored rented counter disagrees with its open rentals."""

    product_id: str
    product_name: str
    recorded: int
    expected: int


def effective_status(order: data_manager.OrderRow, today: Optional[date] = None) -> str:
    """Return the status to display for ``order`` on ``today``.

    ``Overdue`` is never stored by the engine. A rental that is still open
    and whose return date has passed is reported as overdue; every other
    order keeps its stored status.
    """
    today = today or current_date()
    if (
        order.transaction_type == TransactionType.RENTAL.value
        and order.status in _OPEN_RENTAL_STATUSES
        and order.return_date is not None
        and order.return_date < today
    ):
        return OrderStatus.OVERDUE.value
    return order.status


def _open_rentals(context: RuntimeContext) -> List[data_manager.OrderRow]:
    return [
        order
        for order in data_manager.iter_orders(context.workbook)
        if order.transaction_type == TransactionType.RENTAL.value
        and (order.status in _OPEN_RENTAL_STATUSES or order.status == OrderStatus.OVERDUE.value)
        and order.return_date is not None
    ]


def list_overdue_rentals(context: RuntimeContext, today: Optional[date] = None) -> List[data_manager.OrderRow]:
    """Return open rentals whose return date is before ``today``, oldest first."""
    today = today or current_date()
    overdue = [order for order in _open_rentals(context) if order.return_date < today]
    overdue.sort(key=lambda order: order.return_date)
    log.debug("Found %d overdue rentals as of %s", len(overdue), today)
    return overdue


def list_upcoming_returns(
    context: RuntimeContext,
    today: Optional[date] = None,
    days: Optional[int] = None,
) -> List[data_manager.OrderRow]:
    """Return open rentals due back between ``today`` and ``today + days`` inclusive.

    ``days`` defaults to the configured ``UpcomingReturnWindowDays``.
    """
    today = today or current_date()
    window = context.settings.upcoming_return_window_days if days is None else days
    if window < 0:
        raise ValueError("The upcoming return window cannot be negative")
    horizon = today + timedelta(days=window)
    upcoming = [order for order in _open_rentals(context) if today <= order.return_date <= horizon]
    upcoming.sort(key=lambda order: order.return_date)
    return upcoming


def calculate_outstanding_balances(context: RuntimeContext) -> Dict[str, Decimal]:
    """Map the order code of every order with a positive balance to that balance."""
    balances = {
        order.order_code: order.remaining_amount
        for order in data_manager.iter_orders(context.workbook)
        if order.remaining_amount > 0
    }
    log.debug("Calculated outstanding balances for %d orders", len(balances))
    return balances


def calculate_financial_summary(context: RuntimeContext) -> Dict[str, Decimal]:
    """Produce ledger totals per entry type plus the outstanding total.

    Returns:
        dict[str, Decimal]: ``initial_sale_value``, ``initial_rental_value``,
            ``payments_received`` summed from the ledger, and
            ``outstanding`` summed from the orders' remaining amounts.
    """
    totals = {
        FinancialTransactionType.INITIAL_SALE_VALUE.value: Decimal("0"),
        FinancialTransactionType.INITIAL_RENTAL_VALUE.value: Decimal("0"),
        FinancialTransactionType.PAYMENT_RECEIVED.value: Decimal("0"),
    }
    for entry in data_manager.iter_financial_transactions(context.workbook):
        if entry.transaction_type in totals:
            totals[entry.transaction_type] += entry.amount
        else:
            log.warning("Ignoring ledger entry '%s' of unknown type '%s'", entry.transaction_id, entry.transaction_type)
    outstanding = sum(calculate_outstanding_balances(context).values(), Decimal("0"))
    summary = {
        "initial_sale_value": totals[FinancialTransactionType.INITIAL_SALE_VALUE.value],
        "initial_rental_value": totals[FinancialTransactionType.INITIAL_RENTAL_VALUE.value],
        "payments_received": totals[FinancialTransactionType.PAYMENT_RECEIVED.value],
        "outstanding": outstanding,
    }
    log.debug("Calculated financial summary: %s", summary)
    return summary


def calculate_stock_report(context: RuntimeContext, *, branch_id: Optional[str] = None) -> List[StockLine]:
    """List stock counters per product, optionally for one branch plus global items."""
    lines = []
    for product in data_manager.iter_products(context.workbook):
        if branch_id is not None and not product.is_global_product and product.branch_id != branch_id:
            continue
        lines.append(
            StockLine(
                product_id=product.product_id,
                product_code=product.product_code,
                product_name=product.product_name,
                quantity_in_stock=product.quantity_in_stock,
                quantity_rented=product.quantity_rented,
                quantity_available=max(product.available_quantity, 0),
                quantity_sold=product.quantity_sold,
                status=product.status,
            )
        )
    return lines


def _expected_rented(context: RuntimeContext) -> Dict[str, int]:
    """Sum item quantities of rental orders that still hold their units."""
    expected: Dict[str, int] = {}
    for order in data_manager.iter_orders(context.workbook):
        if order.transaction_type != TransactionType.RENTAL.value or order.status not in ACTIVE_RENTAL_STATUSES:
            continue
        for item in order.items:
            expected[item.product_id] = expected.get(item.product_id, 0) + item.quantity
    return expected


def _sync_rented(record: data_manager.ProductRow, context: RuntimeContext) -> data_manager.ProductRow:
    # Recounted against the product version being replaced, so a rental
    # reserved after the first scan is kept.
    target = _expected_rented(context).get(record.product_id, 0)
    if record.quantity_rented == target:
        return record
    return replace(record, quantity_rented=target)


def reconcile_rented_quantities(context: RuntimeContext, *, apply: bool = False) -> List[RentedQuantityDrift]:
    """Compare each product's rented counter with the rentals that hold it.

    The expected value is the summed item quantity of rental orders in an
    active status. With ``apply`` the stored counter is corrected through
    compare-and-set; the open rentals are counted again against the exact
    product version being replaced, so reservations made during the sweep
    are not lost. Units reserved by an order that is still being created
    (stock written, order row not yet stored) look like drift, so apply the
    correction while no orders are being entered.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        apply (bool): Write the corrected counters back to the store.

    Returns:
        list[RentedQuantityDrift]: Products whose counter disagreed.

    Raises:
        StoreWriteError: If a correction kept losing compare-and-set races.
    """
    expected = _expected_rented(context)

    drifts = []
    for product in data_manager.iter_products(context.workbook):
        target = expected.get(product.product_id, 0)
        if product.quantity_rented == target:
            continue
        drifts.append(
            RentedQuantityDrift(
                product_id=product.product_id,
                product_name=product.product_name,
                recorded=product.quantity_rented,
                expected=target,
            )
        )
        log.warning(
            "Product '%s' records %d rented units but open rentals hold %d",
            product.product_id,
            product.quantity_rented,
            target,
        )
        if apply:
            stored = data_manager.mutate_record(
                lambda product_id=product.product_id: data_manager.read_product(context.workbook, product_id),
                lambda record: data_manager.compare_and_set_product(context.workbook, record),
                lambda record: _sync_rented(record, context),
                description=f"rented quantity sync of product '{product.product_id}'",
                attempts=context.settings.max_retry_attempts,
                backoff_base=context.settings.retry_backoff_seconds,
            )
            log.info("Synced rented quantity of '%s' to %d", product.product_id, stored.quantity_rented)
    return drifts
