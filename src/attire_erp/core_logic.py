"""Business logic layer for Attire ERP.

This module contains the order engine: the rules that move an order through
its lifecycle while keeping product stock counters, order balances, and the
append-only financial ledger consistent with one another. It consumes the
Data Access Layer (DAL) for all I/O.

Every operation validates against the current store state before issuing any
write. Single-record updates go through compare-and-set with retry, and
per-product stock changes carry an operation key so that replaying an
operation never applies it twice. Multi-record effects are not one atomic
transaction: order creation compensates its own stock changes when a later
step fails, while failures after the order itself is written are logged and
surfaced to the caller.
"""

from __future__ import annotations

import uuid
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook

from . import codes, data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    LOCKED_ORDER_STATUSES,
    AuditEventKind,
    FinancialTransactionType,
    OrderStatus,
    PaymentMethod,
    ProductCategory,
    ProductStatus,
    ReturnCondition,
    TransactionType,
)

StoreWriteError = data_manager.StoreWriteError

ZERO = Decimal("0")
CENTS = Decimal("0.01")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when input is malformed or a required value is missing."""


class BranchRequiredError(ValidationError):
    """Raised when a branch-bound product is ordered without an order branch."""

    def __init__(self, product_name: str) -> None:
        super().__init__(
            f"Product '{product_name}' belongs to a branch; select the order branch first"
        )
        self.product_name = product_name


class BranchMismatchError(BusinessRuleViolation):
    """Raised when a branch-bound product is ordered from another branch."""

    def __init__(self, product_name: str, product_branch: Optional[str], order_branch: Optional[str]) -> None:
        super().__init__(
            f"Product '{product_name}' belongs to branch '{product_branch}' "
            f"and cannot be ordered from branch '{order_branch}'"
        )
        self.product_name = product_name
        self.product_branch = product_branch
        self.order_branch = order_branch


class InsufficientStockError(BusinessRuleViolation):
    """Raised when the requested quantity exceeds what is available."""

    def __init__(self, product_name: str, transaction_type: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock of '{product_name}' for {transaction_type.lower()}: "
            f"requested {requested}, available {available}"
        )
        self.product_name = product_name
        self.transaction_type = transaction_type
        self.requested = requested
        self.available = available


class BalanceConstraintError(BusinessRuleViolation):
    """Raised when an amount conflicts with the order's outstanding balance."""

    def __init__(self, message: str, *, amount: Decimal, remaining: Decimal) -> None:
        super().__init__(message)
        self.amount = amount
        self.remaining = remaining


class StatusConstraintError(BusinessRuleViolation):
    """Raised when the order's status forbids the requested operation."""

    def __init__(self, operation: str, status: str) -> None:
        super().__init__(f"Cannot {operation} an order with status '{status}'")
        self.operation = operation
        self.status = status


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced product, customer, order, or branch is unknown."""

    def __init__(self, collection: str, key: str) -> None:
        super().__init__(f"Unknown {collection} id: {key}")
        self.collection = collection
        self.key = key


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the engine."""

    settings: data_manager.ConfigSettings
    workbook: Workbook


@dataclass(frozen=True)
class CallerScope:
    """Identity and branch scoping of the user invoking an operation.

    The presentation layer authenticates the user and fills this in. A caller
    without ``can_view_all_branches`` always acts within ``branch_id``.
    """

    user_id: str
    user_name: str
    branch_id: Optional[str] = None
    branch_name: Optional[str] = None
    can_view_all_branches: bool = False
    can_edit_price: bool = False


@dataclass(frozen=True)
class OrderItemRequest:
    """One requested order line; ``price_override`` needs price-edit authority."""

    product_id: str
    quantity: int
    price_override: Optional[Decimal] = None


@dataclass(frozen=True)
class CreateOrderCommand:
    """User intent for creating a rental or sale order."""

    customer_id: str
    transaction_type: Union[TransactionType, str]
    order_date: date
    delivery_date: date
    items: Sequence[OrderItemRequest]
    return_date: Optional[date] = None
    seller_id: Optional[str] = None
    paid_amount: Decimal = ZERO
    payment_method: Optional[Union[PaymentMethod, str]] = None
    branch_id: Optional[str] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class DiscountCommand:
    """User intent for reducing an order's outstanding balance."""

    order_id: str
    amount: Decimal
    reason: str
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for recording a payment against an order."""

    order_id: str
    amount: Decimal
    payment_method: Optional[Union[PaymentMethod, str]]
    notes: Optional[str] = None
    payment_date: Optional[date] = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class ReturnCommand:
    """User intent for receiving a rental back, optionally with a final payment."""

    order_id: str
    condition: Optional[Union[ReturnCondition, str]]
    condition_notes: Optional[str] = None
    payment_amount: Decimal = ZERO
    payment_method: Optional[Union[PaymentMethod, str]] = None
    payment_notes: Optional[str] = None


@dataclass(frozen=True)
class StockChange:
    """Aggregated quantity of one product touched by an order."""

    product_id: str
    quantity: int


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the engine.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context ready for engine operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
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


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def current_date() -> date:
    return _resolve_timestamp(None).date()


def _new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex[:16]}"


def to_money(value: object, *, field_name: str = "amount") -> Decimal:
    """Coerce ``value`` into a finite :class:`Decimal`.

    Floats go through ``str`` first so ``0.1`` becomes ``Decimal("0.1")``
    rather than its binary expansion.

    Raises:
        ValidationError: If the value is not a finite number.
    """

    if value is None:
        return ZERO
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid {field_name}: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"Invalid {field_name}: {value!r}")
    return amount


def format_money(amount: Decimal) -> str:
    """Render an amount with two decimals for display; storage keeps full precision."""

    return str(amount.quantize(CENTS, rounding=ROUND_HALF_UP))


def require_positive_quantity(quantity: int) -> None:
    """Validate that an item quantity is a whole number of at least one.

    Raises:
        ValidationError: If ``quantity`` is not an integer or is below one.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be a whole number greater than zero")


def require_positive_money(amount: Decimal, *, field_name: str = "Amount") -> None:
    if amount <= ZERO:
        log.error("%s validation failed: %s", field_name, amount)
        raise ValidationError(f"{field_name} must be greater than zero")


def require_nonnegative_money(amount: Decimal, *, field_name: str = "Amount") -> None:
    if amount < ZERO:
        log.error("%s validation failed: %s", field_name, amount)
        raise ValidationError(f"{field_name} must be zero or positive")


def _coerce_enum(enum_type, value, *, field_name: str):
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError as exc:
        raise ValidationError(f"Unsupported {field_name}: {value}") from exc


def _payment_method(value: Optional[Union[PaymentMethod, str]]) -> Optional[PaymentMethod]:
    if value is None or value == "":
        return None
    return _coerce_enum(PaymentMethod, value, field_name="payment method")


def _audit_event(
    scope: CallerScope,
    kind: AuditEventKind,
    message: str,
    *,
    when: datetime,
    payload: Optional[Dict[str, str]] = None,
    event_id: Optional[str] = None,
) -> data_manager.AuditEvent:
    return data_manager.AuditEvent(
        event_id=event_id or _new_id("E"),
        timestamp_iso=when.isoformat(),
        actor_id=scope.user_id,
        actor_name=scope.user_name,
        kind=kind.value,
        message=message,
        payload=payload or {},
    )


def render_notes(order: data_manager.OrderRow) -> str:
    """Derive the human-readable notes view from the structured audit log.

    Each event becomes one ``[yyyy-MM-dd HH:mm:ss] - message`` line in log
    order.
    """

    lines = []
    for event in order.audit_log:
        stamp = datetime.fromisoformat(event.timestamp_iso).strftime("%Y-%m-%d %H:%M:%S")
        lines.append(f"[{stamp}] - {event.message}")
    return "\n".join(lines)


def _has_event(order: data_manager.OrderRow, event_id: str) -> bool:
    return any(event.event_id == event_id for event in order.audit_log)


def check_order_invariants(order: data_manager.OrderRow) -> None:
    """Verify the balance invariants of an order before it is written.

    Raises:
        BalanceConstraintError: If the remaining amount is negative, does not
            equal total minus discount minus payments, or payments and
            discounts together exceed the total.
    """

    expected_remaining = order.total_price - order.discount_amount - order.paid_amount
    if order.remaining_amount != expected_remaining or order.remaining_amount < ZERO:
        raise BalanceConstraintError(
            f"Order {order.order_code} balance is inconsistent",
            amount=order.paid_amount + order.discount_amount,
            remaining=order.remaining_amount,
        )
    if order.discount_amount < ZERO or order.paid_amount < ZERO:
        raise BalanceConstraintError(
            f"Order {order.order_code} has a negative discount or payment total",
            amount=order.paid_amount + order.discount_amount,
            remaining=order.remaining_amount,
        )


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        NotFoundError: If ``product_id`` is absent from the store.
    """
    product = data_manager.read_product(context.workbook, product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise NotFoundError("product", product_id)
    return product


def get_order(context: RuntimeContext, order_id: str) -> data_manager.OrderRow:
    """Resolve an order record by its identifier.

    Raises:
        NotFoundError: If ``order_id`` is absent from the store.
    """
    order = data_manager.read_order(context.workbook, order_id)
    if order is None:
        log.warning("Order lookup failed for id '%s'", order_id)
        raise NotFoundError("order", order_id)
    return order


def get_customer(context: RuntimeContext, customer_id: str) -> data_manager.CustomerRow:
    customer = data_manager.read_customer(context.workbook, customer_id)
    if customer is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise NotFoundError("customer", customer_id)
    return customer


def get_user(context: RuntimeContext, user_id: str) -> data_manager.UserRow:
    user = data_manager.read_user(context.workbook, user_id)
    if user is None:
        log.warning("User lookup failed for id '%s'", user_id)
        raise NotFoundError("user", user_id)
    return user


def get_branch(context: RuntimeContext, branch_id: str) -> data_manager.BranchRow:
    branch = data_manager.read_branch(context.workbook, branch_id)
    if branch is None:
        log.warning("Branch lookup failed for id '%s'", branch_id)
        raise NotFoundError("branch", branch_id)
    return branch


def _branch_name(context: RuntimeContext, branch_id: Optional[str]) -> Optional[str]:
    if branch_id is None:
        return None
    branch = data_manager.read_branch(context.workbook, branch_id)
    return branch.branch_name if branch is not None else branch_id


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return every product in sheet order."""
    return list(data_manager.iter_products(context.workbook))


def list_orders(
    context: RuntimeContext,
    *,
    status: Optional[Union[OrderStatus, str]] = None,
    branch_id: Optional[str] = None,
) -> List[data_manager.OrderRow]:
    """Return orders, optionally filtered by stored status and branch."""
    wanted_status = OrderStatus(status).value if status is not None else None
    return [
        order
        for order in data_manager.iter_orders(context.workbook)
        if (wanted_status is None or order.status == wanted_status)
        and (branch_id is None or order.branch_id == branch_id)
    ]


def list_financial_transactions(
    context: RuntimeContext,
    *,
    order_id: Optional[str] = None,
) -> List[data_manager.FinancialTransactionRow]:
    """Return the financial ledger in append order, optionally for one order."""
    return [
        entry
        for entry in data_manager.iter_financial_transactions(context.workbook)
        if order_id is None or entry.order_id == order_id
    ]


# ---------------------------------------------------------------------------
# Branch visibility
# ---------------------------------------------------------------------------


def is_orderable(product: data_manager.ProductRow, order_branch_id: Optional[str], scope: CallerScope) -> bool:
    """Decide whether ``product`` may be placed on an order for ``order_branch_id``.

    Global products are orderable from anywhere. A branch-bound product is
    orderable only on an order of its own branch, and a branch-scoped caller
    can never reach another branch's products.
    """

    if product.is_global_product:
        return True
    if not scope.can_view_all_branches and product.branch_id != scope.branch_id:
        return False
    return order_branch_id is not None and product.branch_id == order_branch_id


def is_order_visible(order: data_manager.OrderRow, scope: CallerScope) -> bool:
    """Branch-scoped callers only see orders of their own branch or none."""

    if scope.can_view_all_branches or order.branch_id is None:
        return True
    return order.branch_id == scope.branch_id


def resolve_order_branch(
    context: RuntimeContext,
    scope: CallerScope,
    requested_branch_id: Optional[str],
) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(branch_id, branch_name)`` for a new order placed by ``scope``.

    Callers with cross-branch authority pick the branch (or none); everyone
    else is pinned to their own branch.

    Raises:
        NotFoundError: If a cross-branch caller names an unknown branch.
    """

    if scope.can_view_all_branches:
        if requested_branch_id is None:
            return None, None
        branch = get_branch(context, requested_branch_id)
        return branch.branch_id, branch.branch_name

    if scope.branch_id is None:
        return None, None
    branch = data_manager.read_branch(context.workbook, scope.branch_id)
    return scope.branch_id, branch.branch_name if branch is not None else scope.branch_name


def ensure_orderable(
    context: RuntimeContext,
    product: data_manager.ProductRow,
    order_branch_id: Optional[str],
    order_branch_name: Optional[str],
    scope: CallerScope,
) -> None:
    """Raise the specific branch error explaining why ``product`` is not orderable."""

    if is_orderable(product, order_branch_id, scope):
        return
    if order_branch_id is None:
        log.warning("Branch required for product '%s'", product.product_id)
        raise BranchRequiredError(product.product_name)
    log.warning(
        "Branch mismatch: product '%s' in '%s', order in '%s'",
        product.product_id,
        product.branch_id,
        order_branch_id,
    )
    raise BranchMismatchError(
        product.product_name,
        _branch_name(context, product.branch_id),
        order_branch_name or order_branch_id,
    )


def list_orderable_products(
    context: RuntimeContext,
    scope: CallerScope,
    order_branch_id: Optional[str],
) -> List[data_manager.ProductRow]:
    """Return the catalogue a caller may place on an order for ``order_branch_id``."""
    return [product for product in list_products(context) if is_orderable(product, order_branch_id, scope)]


def _require_visible(order: data_manager.OrderRow, scope: CallerScope) -> data_manager.OrderRow:
    if not is_order_visible(order, scope):
        log.warning("User '%s' cannot access order '%s'", scope.user_id, order.order_id)
        raise NotFoundError("order", order.order_id)
    return order


# ---------------------------------------------------------------------------
# Stock mutations
# ---------------------------------------------------------------------------


def _reserve_for_rental(product: data_manager.ProductRow, quantity: int, operation_key: str) -> data_manager.ProductRow:
    if operation_key in product.applied_operations:
        return product
    if product.available_quantity < quantity:
        raise InsufficientStockError(
            product.product_name, TransactionType.RENTAL.value, quantity, product.available_quantity
        )
    return replace(
        product,
        quantity_rented=product.quantity_rented + quantity,
        applied_operations=product.applied_operations + (operation_key,),
    )


def _decrement_for_sale(product: data_manager.ProductRow, quantity: int, operation_key: str) -> data_manager.ProductRow:
    if operation_key in product.applied_operations:
        return product
    # Units out on rental are not sellable.
    if product.available_quantity < quantity:
        raise InsufficientStockError(
            product.product_name, TransactionType.SALE.value, quantity, max(product.available_quantity, 0)
        )
    remaining_stock = product.quantity_in_stock - quantity
    return replace(
        product,
        quantity_in_stock=remaining_stock,
        quantity_sold=product.quantity_sold + quantity,
        status=ProductStatus.SOLD.value if remaining_stock <= 0 else product.status,
        applied_operations=product.applied_operations + (operation_key,),
    )


def _release_rental(
    product: data_manager.ProductRow,
    quantity: int,
    operation_key: str,
    *,
    mark_available: bool = True,
) -> data_manager.ProductRow:
    if operation_key in product.applied_operations:
        return product
    status = product.status
    if mark_available and product.status != ProductStatus.SOLD.value:
        status = ProductStatus.AVAILABLE.value
    return replace(
        product,
        quantity_rented=max(0, product.quantity_rented - quantity),
        status=status,
        applied_operations=product.applied_operations + (operation_key,),
    )


def _restore_sale(product: data_manager.ProductRow, quantity: int, operation_key: str) -> data_manager.ProductRow:
    if operation_key in product.applied_operations:
        return product
    restored_stock = product.quantity_in_stock + quantity
    status = product.status
    if status == ProductStatus.SOLD.value and restored_stock > 0:
        status = ProductStatus.AVAILABLE.value
    return replace(
        product,
        quantity_in_stock=restored_stock,
        quantity_sold=max(0, product.quantity_sold - quantity),
        status=status,
        applied_operations=product.applied_operations + (operation_key,),
    )


def _apply_stock_change(
    context: RuntimeContext,
    product_id: str,
    mutator: Callable[[data_manager.ProductRow], data_manager.ProductRow],
    *,
    description: str,
) -> data_manager.ProductRow:
    workbook = context.workbook
    return data_manager.mutate_record(
        lambda: get_product(context, product_id),
        lambda record: data_manager.compare_and_set_product(workbook, record),
        mutator,
        description=description,
        attempts=context.settings.max_retry_attempts,
        backoff_base=context.settings.retry_backoff_seconds,
    )


def _aggregate_quantities(items: Iterable[Union[OrderItemRequest, data_manager.OrderItem]]) -> List[StockChange]:
    totals: "OrderedDict[str, int]" = OrderedDict()
    for item in items:
        totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
    return [StockChange(product_id=product_id, quantity=quantity) for product_id, quantity in totals.items()]


def _check_stock(product: data_manager.ProductRow, transaction_type: TransactionType, quantity: int) -> None:
    if product.available_quantity < quantity:
        log.warning(
            "Insufficient stock for '%s': requested %d, available %d",
            product.product_id,
            quantity,
            product.available_quantity,
        )
        raise InsufficientStockError(
            product.product_name, transaction_type.value, quantity, max(product.available_quantity, 0)
        )


def _mutate_order(
    context: RuntimeContext,
    order_id: str,
    mutator: Callable[[data_manager.OrderRow], data_manager.OrderRow],
    *,
    description: str,
) -> data_manager.OrderRow:
    workbook = context.workbook

    def checked(order: data_manager.OrderRow) -> data_manager.OrderRow:
        updated = mutator(order)
        if updated is not order:
            check_order_invariants(updated)
        return updated

    return data_manager.mutate_record(
        lambda: get_order(context, order_id),
        lambda record: data_manager.compare_and_set_order(workbook, record),
        checked,
        description=description,
        attempts=context.settings.max_retry_attempts,
        backoff_base=context.settings.retry_backoff_seconds,
    )


def _append_ledger(context: RuntimeContext, entry: data_manager.FinancialTransactionRow) -> None:
    """Insert a ledger entry unless an entry with the same id already exists."""

    try:
        data_manager.insert_financial_transaction(context.workbook, entry)
    except data_manager.DuplicateKeyError:
        log.info("Financial transaction '%s' already recorded", entry.transaction_id)
    except StoreWriteError:
        log.error(
            "Order '%s' was updated but ledger entry '%s' could not be written",
            entry.order_id,
            entry.transaction_id,
        )
        raise


# ---------------------------------------------------------------------------
# Master data
# ---------------------------------------------------------------------------


def add_branch(context: RuntimeContext, *, branch_name: str, branch_id: Optional[str] = None) -> data_manager.BranchRow:
    """Register a physical store location."""
    if not branch_name or not branch_name.strip():
        raise ValidationError("Branch name is required")
    record = data_manager.BranchRow(branch_id=branch_id or _new_id("B"), branch_name=branch_name.strip())
    try:
        data_manager.insert_branch(context.workbook, record)
    except data_manager.DuplicateKeyError as exc:
        raise ValidationError(f"Branch id already exists: {record.branch_id}") from exc
    log.info("Registered branch '%s' (%s)", record.branch_name, record.branch_id)
    return record


def add_customer(
    context: RuntimeContext,
    *,
    full_name: str,
    phone_number: str = "",
    customer_id: Optional[str] = None,
) -> data_manager.CustomerRow:
    """Register a customer."""
    if not full_name or not full_name.strip():
        raise ValidationError("Customer name is required")
    record = data_manager.CustomerRow(
        customer_id=customer_id or _new_id("C"),
        full_name=full_name.strip(),
        phone_number=phone_number.strip(),
    )
    try:
        data_manager.insert_customer(context.workbook, record)
    except data_manager.DuplicateKeyError as exc:
        raise ValidationError(f"Customer id already exists: {record.customer_id}") from exc
    log.info("Registered customer '%s' (%s)", record.full_name, record.customer_id)
    return record


def add_user(
    context: RuntimeContext,
    *,
    full_name: str,
    branch_id: Optional[str] = None,
    is_seller: bool = False,
    user_id: Optional[str] = None,
) -> data_manager.UserRow:
    """Register a staff member, optionally flagged as a seller."""
    if not full_name or not full_name.strip():
        raise ValidationError("User name is required")
    if branch_id is not None:
        get_branch(context, branch_id)
    record = data_manager.UserRow(
        user_id=user_id or _new_id("U"),
        full_name=full_name.strip(),
        branch_id=branch_id,
        is_seller=is_seller,
    )
    try:
        data_manager.insert_user(context.workbook, record)
    except data_manager.DuplicateKeyError as exc:
        raise ValidationError(f"User id already exists: {record.user_id}") from exc
    log.info("Registered user '%s' (%s)", record.full_name, record.user_id)
    return record


def add_product(
    context: RuntimeContext,
    scope: CallerScope,
    *,
    product_name: str,
    price: Decimal,
    category: Union[ProductCategory, str],
    initial_stock: int,
    branch_id: Optional[str] = None,
    is_global_product: bool = False,
) -> data_manager.ProductRow:
    """Register a catalogue item with a freshly generated product code.

    The product starts ``Available`` with its whole initial stock on hand.
    A branch-bound product needs a branch: cross-branch callers pass it
    explicitly, everyone else gets their own branch.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        scope (CallerScope): Caller identity and branch scope.
        product_name (str): Display name.
        price (Decimal): Current list price, strictly positive.
        category (ProductCategory | str): ``Rental`` or ``Sale``.
        initial_stock (int): Units on hand, zero or more.
        branch_id (str | None): Home branch for cross-branch callers.
        is_global_product (bool): Whether any branch may order the product.

    Returns:
        data_manager.ProductRow: The stored product.

    Raises:
        ValidationError: For a blank name, non-positive price, negative stock,
            or unknown category.
        BranchRequiredError: If a branch-bound product ends up with no branch.
        NotFoundError: If ``branch_id`` names an unknown branch.
        CodeGenerationError: If no unique product code could be drawn.
    """
    if not product_name or not product_name.strip():
        raise ValidationError("Product name is required")
    amount = to_money(price, field_name="price")
    require_positive_money(amount, field_name="Price")
    if isinstance(initial_stock, bool) or not isinstance(initial_stock, int) or initial_stock < 0:
        raise ValidationError("Initial stock must be a whole number of zero or more")
    category_value = _coerce_enum(ProductCategory, category, field_name="category")

    resolved_branch = branch_id if scope.can_view_all_branches else scope.branch_id
    if resolved_branch is not None:
        get_branch(context, resolved_branch)
    elif not is_global_product:
        raise BranchRequiredError(product_name.strip())

    product_code = codes.generate_product_code(
        context.workbook, max_attempts=context.settings.code_generation_attempts
    )
    record = data_manager.ProductRow(
        product_id=_new_id("P"),
        product_code=product_code,
        product_name=product_name.strip(),
        price=amount,
        category=category_value.value,
        status=ProductStatus.AVAILABLE.value,
        initial_stock=initial_stock,
        quantity_in_stock=initial_stock,
        quantity_rented=0,
        quantity_sold=0,
        branch_id=resolved_branch,
        is_global_product=is_global_product,
    )
    data_manager.insert_product(context.workbook, record)
    log.info(
        "Registered product '%s' with code %s (stock=%d, price=%s)",
        record.product_name,
        record.product_code,
        record.quantity_in_stock,
        record.price,
    )
    return record


# ---------------------------------------------------------------------------
# Order creation
# ---------------------------------------------------------------------------


def validate_order_dates(
    transaction_type: TransactionType,
    order_date: date,
    delivery_date: date,
    return_date: Optional[date],
) -> None:
    """Check the chronological rules of an order.

    Delivery may happen on the order date but not before it. Rentals need a
    return date on or after the delivery date.

    Raises:
        ValidationError: If any rule is broken.
    """
    if order_date is None or delivery_date is None:
        raise ValidationError("Order date and delivery date are required")
    if delivery_date < order_date:
        raise ValidationError("Delivery date cannot be before the order date")
    if transaction_type is TransactionType.RENTAL:
        if return_date is None:
            raise ValidationError("Return date is required for rental orders")
        if return_date < delivery_date:
            raise ValidationError("Return date cannot be before the delivery date")


def build_order_items(
    products: Dict[str, data_manager.ProductRow],
    requests: Sequence[OrderItemRequest],
    scope: CallerScope,
) -> Tuple[data_manager.OrderItem, ...]:
    """Snapshot names, codes, and prices of the requested lines.

    A price override is honoured only when the caller holds price-edit
    authority; otherwise the product's current list price applies.
    """
    items = []
    for request in requests:
        product = products[request.product_id]
        price = product.price
        if scope.can_edit_price and request.price_override is not None:
            price = to_money(request.price_override, field_name="price")
            require_nonnegative_money(price, field_name="Price")
        items.append(
            data_manager.OrderItem(
                product_id=product.product_id,
                product_name=product.product_name,
                product_code=product.product_code,
                quantity=request.quantity,
                price_at_time_of_order=price,
            )
        )
    return tuple(items)


def _initial_ledger_entries(
    order: data_manager.OrderRow,
    paid_amount: Decimal,
    payment_method: Optional[PaymentMethod],
) -> List[data_manager.FinancialTransactionRow]:
    is_sale = order.transaction_type == TransactionType.SALE.value
    item_names = ", ".join(item.product_name for item in order.items)
    base = dict(
        order_id=order.order_id,
        order_code=order.order_code,
        date=order.order_date,
        processed_by_user_id=order.processed_by_user_id,
        processed_by_user_name=order.processed_by_user_name,
        branch_id=order.branch_id,
        notes=f"Order ID: {order.order_id}, Order Code: {order.order_code} ({len(order.items)} items)",
    )
    entries = [
        data_manager.FinancialTransactionRow(
            transaction_id=f"{order.order_id}-initial",
            transaction_type=(
                FinancialTransactionType.INITIAL_SALE_VALUE.value
                if is_sale
                else FinancialTransactionType.INITIAL_RENTAL_VALUE.value
            ),
            transaction_category="Sale Revenue" if is_sale else "Rental Revenue",
            amount=order.total_price,
            payment_method=None,
            description=f"{'Sale' if is_sale else 'Rental'}: {item_names}",
            **base,
        )
    ]
    if paid_amount > ZERO:
        entries.append(
            data_manager.FinancialTransactionRow(
                transaction_id=f"{order.order_id}-initial-payment",
                transaction_type=FinancialTransactionType.PAYMENT_RECEIVED.value,
                transaction_category="Customer Payment",
                amount=paid_amount,
                payment_method=payment_method.value if payment_method else None,
                description=f"Initial payment for order {order.order_code}",
                **base,
            )
        )
    return entries


def _complete_initial_ledger(context: RuntimeContext, order: data_manager.OrderRow) -> None:
    """Write any creation ledger entry of ``order`` that is still missing.

    The amount and method paid at creation are read back from the
    ``CREATED`` audit event, since later payments change ``paid_amount``.
    """
    created = next((event for event in order.audit_log if event.kind == AuditEventKind.CREATED.value), None)
    if created is None:
        log.warning("Order '%s' has no creation event; ledger not checked", order.order_id)
        return
    paid_amount = to_money(created.payload.get("paidAmount", "0"), field_name="paid amount")
    payment_method = _payment_method(created.payload.get("paymentMethod") or None)
    for entry in _initial_ledger_entries(order, paid_amount, payment_method):
        if data_manager.read_financial_transaction(context.workbook, entry.transaction_id) is None:
            log.warning("Restoring missing ledger entry '%s'", entry.transaction_id)
            _append_ledger(context, entry)


def _compensate_stock(
    context: RuntimeContext,
    applied: Sequence[StockChange],
    transaction_type: TransactionType,
    operation_key: str,
) -> None:
    """Undo stock changes already applied by a failed order creation."""

    for change in reversed(applied):
        if transaction_type is TransactionType.RENTAL:
            mutator = lambda product, qty=change.quantity: _release_rental(  # noqa: E731
                product, qty, operation_key, mark_available=False
            )
        else:
            mutator = lambda product, qty=change.quantity: _restore_sale(product, qty, operation_key)  # noqa: E731
        try:
            _apply_stock_change(
                context,
                change.product_id,
                mutator,
                description=f"compensation of product '{change.product_id}'",
            )
            log.warning("Reverted stock change on product '%s'", change.product_id)
        except (BusinessRuleViolation, StoreWriteError) as exc:
            log.error(
                "Could not revert stock change on product '%s' (%s); run the quantity sweep",
                change.product_id,
                exc,
            )


def create_order(
    context: RuntimeContext,
    scope: CallerScope,
    command: CreateOrderCommand,
    *,
    now: Optional[datetime] = None,
) -> data_manager.OrderRow:
    """Validate and record a new rental or sale order.

    Validation runs completely before any write: items and their products,
    branch compatibility, customer and seller, dates, prices, initial payment,
    and stock. The effects then follow in order: a unique order code is
    drawn, each product's counters are updated with compare-and-set, the
    order is inserted with status ``Ongoing``, and the ledger receives the
    initial value entry plus a payment entry when money was taken up front.

    If stock moved between validation and the write, or the order insert
    fails, the stock changes already applied are reverted before the error
    propagates. A replayed ``idempotency_key`` returns the stored order after
    writing any of its creation ledger entries that an earlier attempt left
    out. Each attempt tags its stock changes with its own operation key, so
    a retry after a compensated failure reserves the stock again.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        scope (CallerScope): Caller identity, branch scope and authority.
        command (CreateOrderCommand): Structured order intent.
        now (datetime | None): Timestamp for audit events; defaults to now.

    Returns:
        data_manager.OrderRow: The stored order.

    Raises:
        ValidationError: Malformed input (no items, bad dates, missing
            payment method, zero total, ...).
        BranchRequiredError: A branch-bound product with no order branch.
        BranchMismatchError: A product from another branch.
        NotFoundError: Unknown product, customer, seller, or branch.
        BalanceConstraintError: Initial payment above the total.
        InsufficientStockError: Not enough stock for an item.
        CodeGenerationError: No unique order code could be drawn.
        StoreWriteError: The store rejected a write.
    """
    workbook = context.workbook
    if command.idempotency_key:
        existing = data_manager.read_order(workbook, command.idempotency_key)
        if existing is not None:
            log.info("Order '%s' already exists; returning stored order", existing.order_id)
            _complete_initial_ledger(context, existing)
            return existing

    transaction_type = _coerce_enum(TransactionType, command.transaction_type, field_name="transaction type")

    if not command.items:
        raise ValidationError("Order must contain at least one item")
    products: Dict[str, data_manager.ProductRow] = {}
    for request in command.items:
        require_positive_quantity(request.quantity)
        if request.product_id not in products:
            products[request.product_id] = get_product(context, request.product_id)

    order_branch_id, order_branch_name = resolve_order_branch(context, scope, command.branch_id)
    for product in products.values():
        ensure_orderable(context, product, order_branch_id, order_branch_name, scope)

    get_customer(context, command.customer_id)
    if command.seller_id:
        get_user(context, command.seller_id)

    return_date = command.return_date if transaction_type is TransactionType.RENTAL else None
    validate_order_dates(transaction_type, command.order_date, command.delivery_date, return_date)

    items = build_order_items(products, command.items, scope)
    total_price = sum((item.line_total for item in items), ZERO)
    if total_price <= ZERO:
        raise ValidationError("Total price must be greater than zero")

    paid_amount = to_money(command.paid_amount, field_name="paid amount")
    require_nonnegative_money(paid_amount, field_name="Paid amount")
    if paid_amount > total_price:
        raise BalanceConstraintError(
            f"Paid amount {format_money(paid_amount)} exceeds the order total {format_money(total_price)}",
            amount=paid_amount,
            remaining=total_price,
        )
    payment_method = _payment_method(command.payment_method)
    if paid_amount > ZERO and payment_method is None:
        raise ValidationError("Payment method is required when an amount is paid")

    changes = _aggregate_quantities(command.items)
    for change in changes:
        _check_stock(products[change.product_id], transaction_type, change.quantity)

    # Writes start here.
    order_id = command.idempotency_key or _new_id("O")
    order_code = codes.generate_order_code(workbook, max_attempts=context.settings.code_generation_attempts)
    operation_key = f"{order_id}:create:{uuid.uuid4().hex[:8]}"
    revert_key = f"{operation_key}:revert"
    when = _resolve_timestamp(now)

    applied: List[StockChange] = []
    try:
        for change in changes:
            if transaction_type is TransactionType.RENTAL:
                mutator = lambda product, qty=change.quantity: _reserve_for_rental(  # noqa: E731
                    product, qty, operation_key
                )
            else:
                mutator = lambda product, qty=change.quantity: _decrement_for_sale(  # noqa: E731
                    product, qty, operation_key
                )
            _apply_stock_change(context, change.product_id, mutator, description=f"stock of product '{change.product_id}'")
            applied.append(change)

        events = []
        if command.notes and command.notes.strip():
            events.append(_audit_event(scope, AuditEventKind.NOTE, command.notes.strip(), when=when))
        events.append(
            _audit_event(
                scope,
                AuditEventKind.CREATED,
                f"Order created by {scope.user_name}.",
                when=when,
                payload={
                    "orderCode": order_code,
                    "totalPrice": str(total_price),
                    "paidAmount": str(paid_amount),
                    "paymentMethod": payment_method.value if payment_method else "",
                },
            )
        )
        if paid_amount > ZERO and payment_method is not None:
            events.append(
                _audit_event(
                    scope,
                    AuditEventKind.PAYMENT,
                    f"Initial payment of {format_money(paid_amount)} via {payment_method.value} "
                    f"recorded by {scope.user_name}.",
                    when=when,
                    payload={"amount": str(paid_amount), "paymentMethod": payment_method.value},
                )
            )

        order = data_manager.OrderRow(
            order_id=order_id,
            order_code=order_code,
            items=items,
            customer_id=command.customer_id,
            seller_id=command.seller_id or None,
            processed_by_user_id=scope.user_id,
            processed_by_user_name=scope.user_name,
            transaction_type=transaction_type.value,
            order_date=command.order_date,
            delivery_date=command.delivery_date,
            return_date=return_date,
            total_price=total_price,
            discount_amount=ZERO,
            paid_amount=paid_amount,
            remaining_amount=total_price - paid_amount,
            status=OrderStatus.ONGOING.value,
            branch_id=order_branch_id,
            branch_name=order_branch_name,
            audit_log=tuple(events),
        )
        check_order_invariants(order)
        try:
            data_manager.insert_order(workbook, order)
        except data_manager.DuplicateKeyError as exc:
            raise StoreWriteError(f"Order '{order_id}' was created concurrently") from exc
    except (BusinessRuleViolation, StoreWriteError):
        log.warning("Order creation for customer '%s' failed; compensating stock", command.customer_id)
        _compensate_stock(context, applied, transaction_type, revert_key)
        raise

    for entry in _initial_ledger_entries(order, paid_amount, payment_method):
        _append_ledger(context, entry)

    log.info(
        "Created %s order %s ('%s') total=%s paid=%s",
        transaction_type.value,
        order.order_code,
        order.order_id,
        order.total_price,
        order.paid_amount,
    )
    return order


# ---------------------------------------------------------------------------
# Balance operations
# ---------------------------------------------------------------------------


def apply_discount(
    context: RuntimeContext,
    scope: CallerScope,
    command: DiscountCommand,
    *,
    now: Optional[datetime] = None,
) -> data_manager.OrderRow:
    """Reduce an order's outstanding balance by a justified discount.

    The check against the remaining amount runs on the freshly re-read order
    inside the compare-and-set loop, so two concurrent discounts cannot push
    the balance below zero.

    Raises:
        ValidationError: Non-positive amount or blank reason.
        StatusConstraintError: The order was already delivered or completed.
        BalanceConstraintError: The discount exceeds the remaining amount.
        NotFoundError: The order does not exist for this caller.
    """
    amount = to_money(command.amount)
    require_positive_money(amount, field_name="Discount amount")
    reason = (command.reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to apply a discount")
    _require_visible(get_order(context, command.order_id), scope)

    event = _audit_event(
        scope,
        AuditEventKind.DISCOUNT,
        f"Discount applied: {format_money(amount)} by {scope.user_name}. Reason: {reason}",
        when=_resolve_timestamp(now),
        payload={"amount": str(amount), "reason": reason},
        event_id=command.idempotency_key,
    )

    def mutator(order: data_manager.OrderRow) -> data_manager.OrderRow:
        if _has_event(order, event.event_id):
            return order
        if order.status in LOCKED_ORDER_STATUSES:
            raise StatusConstraintError("discount", order.status)
        if amount > order.remaining_amount:
            raise BalanceConstraintError(
                f"Discount {format_money(amount)} exceeds the remaining amount "
                f"{format_money(order.remaining_amount)}",
                amount=amount,
                remaining=order.remaining_amount,
            )
        return replace(
            order,
            discount_amount=order.discount_amount + amount,
            remaining_amount=order.remaining_amount - amount,
            audit_log=order.audit_log + (event,),
        )

    try:
        stored = _mutate_order(context, command.order_id, mutator, description=f"discount on order '{command.order_id}'")
    except BusinessRuleViolation as exc:
        log.warning("Discount on order '%s' rejected: %s", command.order_id, exc)
        raise
    log.info("Applied discount of %s to order %s", amount, stored.order_code)
    return stored


def _payment_ledger_entry(
    order: data_manager.OrderRow,
    event: data_manager.AuditEvent,
    *,
    description: str,
) -> data_manager.FinancialTransactionRow:
    return data_manager.FinancialTransactionRow(
        transaction_id=f"{order.order_id}-{event.event_id}",
        order_id=order.order_id,
        order_code=order.order_code,
        transaction_type=FinancialTransactionType.PAYMENT_RECEIVED.value,
        transaction_category="Customer Payment",
        amount=Decimal(event.payload["amount"]),
        payment_method=event.payload.get("paymentMethod"),
        date=date.fromisoformat(event.payload["date"]),
        processed_by_user_id=event.actor_id,
        processed_by_user_name=event.actor_name,
        branch_id=order.branch_id,
        description=description,
        notes=event.payload.get("notes") or None,
    )


def _validate_payment(amount: Decimal, method: Optional[PaymentMethod]) -> None:
    require_positive_money(amount, field_name="Payment amount")
    if method is None:
        raise ValidationError("Payment method is required")


def _payment_event(
    scope: CallerScope,
    amount: Decimal,
    method: PaymentMethod,
    notes: Optional[str],
    payment_date: date,
    *,
    when: datetime,
    on_return: bool = False,
    event_id: Optional[str] = None,
) -> data_manager.AuditEvent:
    if on_return:
        message = f"Payment upon return: {format_money(amount)} via {method.value} by {scope.user_name}."
    else:
        message = f"Payment added: {format_money(amount)} by {scope.user_name}. Payment method: {method.value}"
    if notes:
        message = f"{message}. Notes: {notes}" if not on_return else f"{message} Notes: {notes}"
    return _audit_event(
        scope,
        AuditEventKind.PAYMENT,
        message,
        when=when,
        payload={
            "amount": str(amount),
            "paymentMethod": method.value,
            "date": payment_date.isoformat(),
            "notes": notes or "",
        },
        event_id=event_id,
    )


def _apply_payment(order: data_manager.OrderRow, amount: Decimal, event: data_manager.AuditEvent) -> data_manager.OrderRow:
    if amount > order.remaining_amount:
        raise BalanceConstraintError(
            f"Payment {format_money(amount)} exceeds the remaining amount {format_money(order.remaining_amount)}",
            amount=amount,
            remaining=order.remaining_amount,
        )
    return replace(
        order,
        paid_amount=order.paid_amount + amount,
        remaining_amount=order.remaining_amount - amount,
        audit_log=order.audit_log + (event,),
    )


def add_payment(
    context: RuntimeContext,
    scope: CallerScope,
    command: PaymentCommand,
    *,
    now: Optional[datetime] = None,
) -> data_manager.OrderRow:
    """Record a payment against an order in any status.

    The order's paid and remaining amounts are updated with compare-and-set,
    then a ``Payment Received`` ledger entry is appended. The ledger id is
    derived from the payment's audit event, so replaying the same
    ``idempotency_key`` neither double-charges the order nor duplicates the
    entry; it also re-attempts a ledger append that failed earlier.

    Raises:
        ValidationError: Non-positive amount or missing payment method.
        BalanceConstraintError: The payment exceeds the remaining amount.
        NotFoundError: The order does not exist for this caller.
        StoreWriteError: The store rejected a write.
    """
    amount = to_money(command.amount)
    method = _payment_method(command.payment_method)
    _validate_payment(amount, method)
    _require_visible(get_order(context, command.order_id), scope)

    when = _resolve_timestamp(now)
    notes = (command.notes or "").strip() or None
    event = _payment_event(
        scope,
        amount,
        method,
        notes,
        command.payment_date or when.date(),
        when=when,
        event_id=command.idempotency_key,
    )

    def mutator(order: data_manager.OrderRow) -> data_manager.OrderRow:
        if _has_event(order, event.event_id):
            return order
        return _apply_payment(order, amount, event)

    try:
        stored = _mutate_order(context, command.order_id, mutator, description=f"payment on order '{command.order_id}'")
    except BusinessRuleViolation as exc:
        log.warning("Payment on order '%s' rejected: %s", command.order_id, exc)
        raise

    recorded = next(e for e in stored.audit_log if e.event_id == event.event_id)
    _append_ledger(
        context,
        _payment_ledger_entry(stored, recorded, description=f"Payment for order {stored.order_code}"),
    )
    log.info("Recorded payment of %s on order %s", amount, stored.order_code)
    return stored


# ---------------------------------------------------------------------------
# Fulfilment
# ---------------------------------------------------------------------------


def mark_prepared(
    context: RuntimeContext,
    scope: CallerScope,
    order_id: str,
    *,
    now: Optional[datetime] = None,
) -> data_manager.OrderRow:
    """Move an ``Ongoing`` order to ``Prepared``.

    Raises:
        StatusConstraintError: If the order is not ``Ongoing``.
    """
    _require_visible(get_order(context, order_id), scope)
    event = _audit_event(
        scope,
        AuditEventKind.PREPARED,
        f"Order marked as prepared by {scope.user_name}.",
        when=_resolve_timestamp(now),
    )

    def mutator(order: data_manager.OrderRow) -> data_manager.OrderRow:
        if order.status != OrderStatus.ONGOING.value:
            raise StatusConstraintError("prepare", order.status)
        return replace(order, status=OrderStatus.PREPARED.value, audit_log=order.audit_log + (event,))

    try:
        stored = _mutate_order(context, order_id, mutator, description=f"preparation of order '{order_id}'")
    except BusinessRuleViolation as exc:
        log.warning("Preparing order '%s' rejected: %s", order_id, exc)
        raise
    log.info("Order %s prepared", stored.order_code)
    return stored


def mark_delivered(
    context: RuntimeContext,
    scope: CallerScope,
    order_id: str,
    *,
    now: Optional[datetime] = None,
) -> data_manager.OrderRow:
    """Hand a ``Prepared`` order over to the customer.

    Inventory is untouched because it was reserved when the order was
    created. The balance must be fully settled first.

    Raises:
        StatusConstraintError: If the order is not ``Prepared``.
        BalanceConstraintError: If any amount is still owed.
    """
    _require_visible(get_order(context, order_id), scope)
    event = _audit_event(
        scope,
        AuditEventKind.DELIVERED,
        f"Order delivered to customer by {scope.user_name}.",
        when=_resolve_timestamp(now),
    )

    def mutator(order: data_manager.OrderRow) -> data_manager.OrderRow:
        if order.status != OrderStatus.PREPARED.value:
            raise StatusConstraintError("deliver", order.status)
        if order.remaining_amount > ZERO:
            raise BalanceConstraintError(
                f"Settle the remaining balance of {format_money(order.remaining_amount)} before delivery",
                amount=ZERO,
                remaining=order.remaining_amount,
            )
        return replace(order, status=OrderStatus.DELIVERED.value, audit_log=order.audit_log + (event,))

    try:
        stored = _mutate_order(context, order_id, mutator, description=f"delivery of order '{order_id}'")
    except BusinessRuleViolation as exc:
        log.warning("Delivering order '%s' rejected: %s", order_id, exc)
        raise
    log.info("Order %s delivered to customer", stored.order_code)
    return stored


def receive_return(
    context: RuntimeContext,
    scope: CallerScope,
    command: ReturnCommand,
    *,
    now: Optional[datetime] = None,
) -> data_manager.OrderRow:
    """Receive a delivered rental back and complete the order.

    Each item's rented quantity is released (never below zero) and products
    that are not ``Sold`` become ``Available`` again. A final payment may be
    settled in the same step under the usual payment rules. Stock releases
    carry the ``<order>:return`` operation key, so retrying after a failed
    order write does not release twice.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        scope (CallerScope): Caller identity and branch scope.
        command (ReturnCommand): Condition, notes and optional final payment.
        now (datetime | None): Timestamp for audit events; defaults to now.

    Returns:
        data_manager.OrderRow: The completed order.

    Raises:
        ValidationError: Sale order, missing condition, or bad payment input.
        StatusConstraintError: The order is not ``Delivered to Customer``.
        BalanceConstraintError: The final payment exceeds the balance.
        NotFoundError: The order or one of its products is gone.
    """
    condition = command.condition
    if condition is None or condition == "":
        raise ValidationError("A return condition is required")
    condition = _coerce_enum(ReturnCondition, condition, field_name="return condition")
    condition_notes = (command.condition_notes or "").strip() or "No notes on product(s) condition"

    payment_amount = to_money(command.payment_amount, field_name="payment amount")
    payment_method = _payment_method(command.payment_method)
    if payment_amount != ZERO:
        _validate_payment(payment_amount, payment_method)

    def precheck(order: data_manager.OrderRow) -> None:
        if order.transaction_type != TransactionType.RENTAL.value:
            raise ValidationError(f"Order {order.order_code} is a sale and cannot be returned")
        if order.status != OrderStatus.DELIVERED.value:
            raise StatusConstraintError("receive a return for", order.status)
        if payment_amount > order.remaining_amount:
            raise BalanceConstraintError(
                f"Payment {format_money(payment_amount)} exceeds the remaining amount "
                f"{format_money(order.remaining_amount)}",
                amount=payment_amount,
                remaining=order.remaining_amount,
            )

    order = _require_visible(get_order(context, command.order_id), scope)
    try:
        precheck(order)
        for item in order.items:
            get_product(context, item.product_id)
    except BusinessRuleViolation as exc:
        log.warning("Return of order '%s' rejected: %s", command.order_id, exc)
        raise

    operation_key = f"{order.order_id}:return"
    for change in _aggregate_quantities(order.items):
        _apply_stock_change(
            context,
            change.product_id,
            lambda product, qty=change.quantity: _release_rental(product, qty, operation_key),
            description=f"return of product '{change.product_id}'",
        )

    when = _resolve_timestamp(now)
    return_event = _audit_event(
        scope,
        AuditEventKind.RETURNED,
        f"Order returned and received by {scope.user_name}. "
        f"Product(s) condition: {condition.value}. Notes: {condition_notes}.",
        when=when,
        payload={"condition": condition.value, "notes": condition_notes},
    )
    payment_event = None
    if payment_amount > ZERO and payment_method is not None:
        payment_notes = (command.payment_notes or "").strip() or None
        payment_event = _payment_event(
            scope,
            payment_amount,
            payment_method,
            payment_notes,
            when.date(),
            when=when,
            on_return=True,
        )

    def mutator(current: data_manager.OrderRow) -> data_manager.OrderRow:
        precheck(current)
        updated = current
        if payment_event is not None:
            updated = _apply_payment(updated, payment_amount, payment_event)
        return replace(
            updated,
            status=OrderStatus.COMPLETED.value,
            return_condition=condition.value,
            return_notes=condition_notes,
            audit_log=updated.audit_log + (return_event,),
        )

    try:
        stored = _mutate_order(context, order.order_id, mutator, description=f"return of order '{order.order_id}'")
    except BusinessRuleViolation as exc:
        log.error(
            "Stock for order '%s' was released but the order could not be completed: %s",
            order.order_id,
            exc,
        )
        raise

    if payment_event is not None:
        _append_ledger(
            context,
            _payment_ledger_entry(
                stored,
                payment_event,
                description=f"Payment upon return for order {stored.order_code}",
            ),
        )
    log.info("Order %s returned in %s condition", stored.order_code, condition.value)
    return stored


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


def delete_order(
    context: RuntimeContext,
    scope: CallerScope,
    order_id: str,
    *,
    restore_stock: Optional[bool] = None,
) -> List[data_manager.FinancialTransactionRow]:
    """Delete an order that has not been delivered, cascading to its ledger entries.

    By default stock counters are left as they are, so the units reserved or
    sold by the order stay written off. Passing ``restore_stock=True`` (or
    setting ``RestoreStockOnDelete`` in the configuration) puts them back:
    rentals release their reservation, sales return units to stock and leave
    ``Sold`` once stock is positive again.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        scope (CallerScope): Caller identity and branch scope.
        order_id (str): Order to delete.
        restore_stock (bool | None): Overrides the configured policy.

    Returns:
        list[data_manager.FinancialTransactionRow]: The ledger entries removed.

    Raises:
        StatusConstraintError: The order was delivered or completed.
        NotFoundError: The order does not exist for this caller.
        StoreWriteError: Concurrent updates kept the order changing.
    """
    restore = context.settings.restore_stock_on_delete if restore_stock is None else restore_stock
    attempts = max(1, context.settings.max_retry_attempts)
    order: Optional[data_manager.OrderRow] = None
    for attempt in range(attempts):
        order = _require_visible(get_order(context, order_id), scope)
        if order.status in LOCKED_ORDER_STATUSES:
            log.warning("Refusing to delete order '%s' with status '%s'", order_id, order.status)
            raise StatusConstraintError("delete", order.status)
        try:
            data_manager.delete_order(context.workbook, order_id, expected_version=order.version)
            break
        except data_manager.VersionConflictError as exc:
            log.debug("Retrying deletion of order '%s' after conflict: %s", order_id, exc)
    else:
        raise StoreWriteError(f"Concurrent updates prevented deleting order '{order_id}'")

    if restore:
        operation_key = f"{order_id}:delete"
        for change in _aggregate_quantities(order.items):
            if order.transaction_type == TransactionType.RENTAL.value:
                mutator = lambda product, qty=change.quantity: _release_rental(product, qty, operation_key)  # noqa: E731
            else:
                mutator = lambda product, qty=change.quantity: _restore_sale(product, qty, operation_key)  # noqa: E731
            try:
                _apply_stock_change(context, change.product_id, mutator, description=f"restock of product '{change.product_id}'")
            except (NotFoundError, StoreWriteError) as exc:
                log.error("Order '%s' deleted but stock of '%s' not restored: %s", order_id, change.product_id, exc)

    removed = list_financial_transactions(context, order_id=order_id)
    for entry in removed:
        data_manager.delete_financial_transaction(context.workbook, entry.transaction_id)
    log.info(
        "Deleted order %s ('%s') with %d ledger entries (stock restored: %s)",
        order.order_code,
        order_id,
        len(removed),
        restore,
    )
    return removed
