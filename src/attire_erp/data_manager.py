"""Data access layer for Attire ERP.

This module provides low-level helpers that read from and write to the store
workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Record mapping: typed dataclasses for every collection together with the
   serializers that translate them to and from worksheet rows.
4. Single-key primitives: read, insert-if-absent, compare-and-set on the
   ``Version`` column, and delete. Each primitive runs under a process-wide
   lock, so one key is always updated atomically; sequences touching several
   keys are not.
"""


from __future__ import annotations

import configparser
import json
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, Mapping, Optional, Sequence, TypeVar

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.utils.exceptions import IllegalCharacterError
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
VERSION_COLUMN = "Version"

# Applied-operation markers kept on a product row for idempotent replays.
# Only the newest markers survive a write; an operation whose marker has been
# pushed out (200 later stock changes on the same product) is no longer
# recognised and would apply again if it were replayed.
MAX_APPLIED_OPERATIONS = 200

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.BRANCHES.value: ["BranchID", "BranchName"],
    SheetName.CUSTOMERS.value: ["CustomerID", "FullName", "PhoneNumber"],
    SheetName.USERS.value: ["UserID", "FullName", "BranchID", "IsSeller"],
    SheetName.PRODUCTS.value: [
        "ProductID",
        "ProductCode",
        "ProductName",
        "Price",
        "Category",
        "Status",
        "InitialStock",
        "QuantityInStock",
        "QuantityRented",
        "QuantitySold",
        "BranchID",
        "IsGlobalProduct",
        "AppliedOperations",
        VERSION_COLUMN,
    ],
    SheetName.ORDERS.value: [
        "OrderID",
        "OrderCode",
        "Items",
        "CustomerID",
        "SellerID",
        "ProcessedByUserID",
        "ProcessedByUserName",
        "TransactionType",
        "OrderDate",
        "DeliveryDate",
        "ReturnDate",
        "TotalPrice",
        "DiscountAmount",
        "PaidAmount",
        "RemainingAmount",
        "Status",
        "BranchID",
        "BranchName",
        "AuditLog",
        "ReturnCondition",
        "ReturnNotes",
        VERSION_COLUMN,
    ],
    SheetName.FINANCIAL_TRANSACTIONS.value: [
        "TransactionID",
        "OrderID",
        "OrderCode",
        "Type",
        "TransactionCategory",
        "Amount",
        "PaymentMethod",
        "Date",
        "ProcessedByUserID",
        "ProcessedByUserName",
        "BranchID",
        "Description",
        "Notes",
    ],
    SheetName.COUNTERS.value: ["CounterName", "NextValue", VERSION_COLUMN],
}

# Every primitive below acquires this lock; it is re-entrant so helpers may nest.
_STORE_LOCK = threading.RLock()

RecordT = TypeVar("RecordT")


class StoreWriteError(Exception):
    """Raised when the store cannot persist a change."""


class VersionConflictError(Exception):
    """Raised when a compare-and-set finds a newer version than expected."""

    def __init__(self, sheet_name: str, key: str, expected: int, actual: Optional[int]) -> None:
        super().__init__(
            f"Version conflict on {sheet_name}/{key}: expected {expected}, found {actual}"
        )
        self.sheet_name = sheet_name
        self.key = key
        self.expected = expected
        self.actual = actual


class DuplicateKeyError(Exception):
    """Raised when inserting a record whose key already exists."""

    def __init__(self, sheet_name: str, key: str) -> None:
        super().__init__(f"Record already exists: {sheet_name}/{key}")
        self.sheet_name = sheet_name
        self.key = key


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    max_retry_attempts: int = 3
    retry_backoff_seconds: float = 0.05
    code_generation_attempts: int = 5
    restore_stock_on_delete: bool = False
    upcoming_return_window_days: int = 7


@dataclass(frozen=True)
class BranchRow:
    """In-memory view of a row from the ``Branches`` sheet."""

    branch_id: str
    branch_name: str


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    full_name: str
    phone_number: str


@dataclass(frozen=True)
class UserRow:
    """In-memory view of a row from the ``Users`` sheet."""

    user_id: str
    full_name: str
    branch_id: Optional[str]
    is_seller: bool


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_code: str
    product_name: str
    price: Decimal
    category: str
    status: str
    initial_stock: int
    quantity_in_stock: int
    quantity_rented: int
    quantity_sold: int
    branch_id: Optional[str]
    is_global_product: bool
    applied_operations: tuple[str, ...] = ()
    version: int = 0

    @property
    def available_quantity(self) -> int:
        return self.quantity_in_stock - self.quantity_rented


@dataclass(frozen=True)
class OrderItem:
    """Snapshot of one order line, stored inside the order's ``Items`` cell."""

    product_id: str
    product_name: str
    product_code: str
    quantity: int
    price_at_time_of_order: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.price_at_time_of_order * self.quantity


@dataclass(frozen=True)
class AuditEvent:
    """One structured entry of an order's append-only audit log."""

    event_id: str
    timestamp_iso: str
    actor_id: str
    actor_name: str
    kind: str
    message: str
    payload: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OrderRow:
    """In-memory view of a row from the ``Orders`` sheet."""

    order_id: str
    order_code: str
    items: tuple[OrderItem, ...]
    customer_id: str
    seller_id: Optional[str]
    processed_by_user_id: str
    processed_by_user_name: str
    transaction_type: str
    order_date: date
    delivery_date: date
    return_date: Optional[date]
    total_price: Decimal
    discount_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    status: str
    branch_id: Optional[str]
    branch_name: Optional[str]
    audit_log: tuple[AuditEvent, ...] = ()
    return_condition: Optional[str] = None
    return_notes: Optional[str] = None
    version: int = 0


@dataclass(frozen=True)
class FinancialTransactionRow:
    """In-memory view of a row from the ``FinancialTransactions`` sheet."""

    transaction_id: str
    order_id: str
    order_code: str
    transaction_type: str
    transaction_category: str
    amount: Decimal
    payment_method: Optional[str]
    date: date
    processed_by_user_id: str
    processed_by_user_name: str
    branch_id: Optional[str]
    description: str
    notes: Optional[str] = None


@dataclass(frozen=True)
class CounterRow:
    """In-memory view of a row from the ``Counters`` sheet."""

    counter_name: str
    next_value: int
    version: int = 0


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory looking for ``CONFIG_FILE_NAME`` and returns the
    first match.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Engine]`` section is
    optional and each of its keys falls back to the dataclass default.
    Relative ``DataFile`` entries are anchored to ``base_path`` (or the
    current working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required ``[System]`` option is missing.
        ValueError: If an ``[Engine]`` option cannot be converted.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    defaults = ConfigSettings(data_file=data_file_path, shop_name=shop_name, schema_version=schema_version)
    return replace(
        defaults,
        max_retry_attempts=parser.getint("Engine", "MaxRetryAttempts", fallback=defaults.max_retry_attempts),
        retry_backoff_seconds=parser.getfloat(
            "Engine", "RetryBackoffSeconds", fallback=defaults.retry_backoff_seconds
        ),
        code_generation_attempts=parser.getint(
            "Engine", "CodeGenerationAttempts", fallback=defaults.code_generation_attempts
        ),
        restore_stock_on_delete=parser.getboolean(
            "Engine", "RestoreStockOnDelete", fallback=defaults.restore_stock_on_delete
        ),
        upcoming_return_window_days=parser.getint(
            "Engine", "UpcomingReturnWindowDays", fallback=defaults.upcoming_return_window_days
        ),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the store workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    with _STORE_LOCK:
        workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Generic sheet primitives
# ---------------------------------------------------------------------------


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the column storing the lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def _key_column(sheet_name: str) -> str:
    return SHEET_COLUMNS[sheet_name][0]


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterator[Sequence[object]]:
    with _STORE_LOCK:
        rows = [
            raw
            for raw in workbook[sheet_name].iter_rows(min_row=2, values_only=True)
            if any(cell is not None for cell in raw)
        ]
    yield from rows


def _read_raw_row(workbook: Workbook, sheet_name: str, key: str) -> Optional[Sequence[object]]:
    with _STORE_LOCK:
        row_index = locate_row(workbook, sheet_name, _key_column(sheet_name), key)
        if row_index is None:
            return None
        return [cell.value for cell in workbook[sheet_name][row_index]]


def _check_cell_values(sheet_name: str, key: str, values: Sequence[object]) -> None:
    """Reject text openpyxl cannot store before any cell of the row is touched."""

    for value in values:
        if isinstance(value, str) and ILLEGAL_CHARACTERS_RE.search(value):
            log.error("Refusing to write %s/%s: illegal characters in %r", sheet_name, key, value)
            raise StoreWriteError(f"Unable to write {sheet_name}/{key}: value contains illegal characters")


def _write_row(workbook: Workbook, sheet_name: str, row_index: int, values: Sequence[object]) -> None:
    _check_cell_values(sheet_name, str(values[0]) if values else "", values)
    sheet = workbook[sheet_name]
    try:
        for column_index, value in enumerate(values, start=1):
            sheet.cell(row=row_index, column=column_index, value=value)
    except (ValueError, TypeError, IllegalCharacterError) as exc:
        log.error("Failed to write %s row %d: %s", sheet_name, row_index, exc)
        raise StoreWriteError(f"Unable to write {sheet_name} row {row_index}: {exc}") from exc


def _insert_row(workbook: Workbook, sheet_name: str, key: str, values: Sequence[object]) -> None:
    with _STORE_LOCK:
        if locate_row(workbook, sheet_name, _key_column(sheet_name), key) is not None:
            raise DuplicateKeyError(sheet_name, key)
        _check_cell_values(sheet_name, key, values)
        try:
            workbook[sheet_name].append(list(values))
        except (ValueError, TypeError, IllegalCharacterError) as exc:
            log.error("Failed to append %s/%s: %s", sheet_name, key, exc)
            raise StoreWriteError(f"Unable to append {sheet_name}/{key}: {exc}") from exc


def _compare_and_set_row(
    workbook: Workbook,
    sheet_name: str,
    key: str,
    expected_version: int,
    values: Sequence[object],
) -> None:
    with _STORE_LOCK:
        row_index = locate_row(workbook, sheet_name, _key_column(sheet_name), key)
        if row_index is None:
            raise VersionConflictError(sheet_name, key, expected_version, None)
        version_col = _header_map(workbook, sheet_name)[VERSION_COLUMN]
        stored = workbook[sheet_name].cell(row=row_index, column=version_col).value
        stored_version = int(stored) if stored is not None else 0
        if stored_version != expected_version:
            raise VersionConflictError(sheet_name, key, expected_version, stored_version)
        _write_row(workbook, sheet_name, row_index, values)


def _delete_row(workbook: Workbook, sheet_name: str, key: str, expected_version: Optional[int] = None) -> bool:
    with _STORE_LOCK:
        row_index = locate_row(workbook, sheet_name, _key_column(sheet_name), key)
        if row_index is None:
            return False
        if expected_version is not None:
            version_col = _header_map(workbook, sheet_name)[VERSION_COLUMN]
            stored = workbook[sheet_name].cell(row=row_index, column=version_col).value
            stored_version = int(stored) if stored is not None else 0
            if stored_version != expected_version:
                raise VersionConflictError(sheet_name, key, expected_version, stored_version)
        workbook[sheet_name].delete_rows(row_index, 1)
        return True


def mutate_record(
    read: Callable[[], Optional[RecordT]],
    write: Callable[[RecordT], RecordT],
    mutator: Callable[[RecordT], RecordT],
    *,
    description: str,
    attempts: int = 3,
    backoff_base: float = 0.05,
) -> RecordT:
    """Apply ``mutator`` to a freshly read record and compare-and-set it.

    On :class:`VersionConflictError` the record is re-read and the mutator
    runs again against the newer state, up to ``attempts`` times with
    exponential backoff. Exceptions raised by ``read`` or ``mutator`` (for
    instance business-rule violations against the fresh state) propagate
    unchanged.

    Args:
        read (Callable): Zero-argument callable returning the current record.
        write (Callable): Compare-and-set writer returning the stored record.
        mutator (Callable): Pure function computing the replacement record.
        description (str): Human-readable label used in logs and errors.
        attempts (int): Maximum number of read-modify-write cycles.
        backoff_base (float): Seconds to wait after the first conflict.

    Returns:
        The record as stored, carrying its new version.

    Raises:
        StoreWriteError: If every attempt lost the race, or the record
            disappeared between attempts.
    """

    last_conflict: Optional[VersionConflictError] = None
    for attempt in range(max(1, attempts)):
        current = read()
        if current is None:
            raise StoreWriteError(f"Record vanished while updating {description}")
        updated = mutator(current)
        if updated is current:
            return current
        try:
            return write(updated)
        except VersionConflictError as exc:
            last_conflict = exc
            log.debug("Retrying %s after conflict (attempt %d): %s", description, attempt + 1, exc)
            if attempt < attempts - 1:
                time.sleep(backoff_base * (2 ** attempt))
    log.error("Giving up on %s after %d conflicting attempts", description, attempts)
    raise StoreWriteError(f"Concurrent updates prevented {description}") from last_conflict


# ---------------------------------------------------------------------------
# Value conversion helpers
# ---------------------------------------------------------------------------


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None and raw != "" else Decimal(default)


def _to_int(raw: object) -> int:
    return int(raw) if raw is not None and raw != "" else 0


def _to_optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None and raw != "" else None


def _to_date(raw: object) -> date:
    if isinstance(raw, date):
        # openpyxl may hand back datetime instances for date-looking cells
        return raw if type(raw) is date else raw.date()  # type: ignore[attr-defined]
    return date.fromisoformat(str(raw))


def _to_optional_date(raw: object) -> Optional[date]:
    return _to_date(raw) if raw is not None and raw != "" else None


def _to_bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"1", "true", "yes"}
    return bool(raw)


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------


def serialize_branch(record: BranchRow) -> list[object]:
    """Convert a branch dataclass into ``[BranchID, BranchName]``."""

    return [record.branch_id, record.branch_name]


def deserialize_branch(raw_row: Sequence[object]) -> BranchRow:
    return BranchRow(branch_id=str(raw_row[0]), branch_name=str(raw_row[1]))


def serialize_customer(record: CustomerRow) -> list[object]:
    return [record.customer_id, record.full_name, record.phone_number]


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    return CustomerRow(
        customer_id=str(raw_row[0]),
        full_name=str(raw_row[1]),
        phone_number=str(raw_row[2]) if raw_row[2] is not None else "",
    )


def serialize_user(record: UserRow) -> list[object]:
    return [record.user_id, record.full_name, record.branch_id, record.is_seller]


def deserialize_user(raw_row: Sequence[object]) -> UserRow:
    return UserRow(
        user_id=str(raw_row[0]),
        full_name=str(raw_row[1]),
        branch_id=_to_optional_str(raw_row[2]),
        is_seller=_to_bool(raw_row[3]),
    )


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the ``Products`` column ordering.

    Prices are written as decimal strings so no precision is lost to Excel's
    floating point cells. Applied-operation markers are stored as a JSON
    array.
    """

    return [
        record.product_id,
        record.product_code,
        record.product_name,
        str(record.price),
        record.category,
        record.status,
        record.initial_stock,
        record.quantity_in_stock,
        record.quantity_rented,
        record.quantity_sold,
        record.branch_id,
        record.is_global_product,
        json.dumps(list(record.applied_operations)),
        record.version,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw ``Products`` row into a :class:`ProductRow`."""

    (
        product_id,
        product_code,
        product_name,
        price,
        category,
        status,
        initial_stock,
        quantity_in_stock,
        quantity_rented,
        quantity_sold,
        branch_id,
        is_global_product,
        applied_operations,
        version,
    ) = raw_row[:14]

    return ProductRow(
        product_id=str(product_id),
        product_code=str(product_code),
        product_name=str(product_name),
        price=_to_decimal(price, "0.00"),
        category=str(category),
        status=str(status),
        initial_stock=_to_int(initial_stock),
        quantity_in_stock=_to_int(quantity_in_stock),
        quantity_rented=_to_int(quantity_rented),
        quantity_sold=_to_int(quantity_sold),
        branch_id=_to_optional_str(branch_id),
        is_global_product=_to_bool(is_global_product),
        applied_operations=tuple(json.loads(applied_operations)) if applied_operations else (),
        version=_to_int(version),
    )


def _encode_items(items: Iterable[OrderItem]) -> str:
    return json.dumps(
        [
            {
                "productId": item.product_id,
                "productName": item.product_name,
                "productCode": item.product_code,
                "quantity": item.quantity,
                "priceAtTimeOfOrder": str(item.price_at_time_of_order),
            }
            for item in items
        ]
    )


def _decode_items(raw: object) -> tuple[OrderItem, ...]:
    if not raw:
        return ()
    return tuple(
        OrderItem(
            product_id=str(entry["productId"]),
            product_name=str(entry["productName"]),
            product_code=str(entry.get("productCode") or ""),
            quantity=int(entry["quantity"]),
            price_at_time_of_order=Decimal(str(entry["priceAtTimeOfOrder"])),
        )
        for entry in json.loads(str(raw))
    )


def _encode_audit_log(events: Iterable[AuditEvent]) -> str:
    return json.dumps(
        [
            {
                "eventId": event.event_id,
                "timestamp": event.timestamp_iso,
                "actorId": event.actor_id,
                "actorName": event.actor_name,
                "kind": event.kind,
                "message": event.message,
                "payload": dict(event.payload),
            }
            for event in events
        ],
        ensure_ascii=False,
    )


def _decode_audit_log(raw: object) -> tuple[AuditEvent, ...]:
    if not raw:
        return ()
    return tuple(
        AuditEvent(
            event_id=str(entry["eventId"]),
            timestamp_iso=str(entry["timestamp"]),
            actor_id=str(entry["actorId"]),
            actor_name=str(entry["actorName"]),
            kind=str(entry["kind"]),
            message=str(entry["message"]),
            payload={str(k): str(v) for k, v in (entry.get("payload") or {}).items()},
        )
        for entry in json.loads(str(raw))
    )


def serialize_order(record: OrderRow) -> list[object]:
    """Convert an order dataclass into the ``Orders`` column ordering.

    Items and the audit log are nested structures and therefore stored as
    JSON text. Monetary values are stored as decimal strings and dates in
    ``yyyy-MM-dd`` form.
    """

    return [
        record.order_id,
        record.order_code,
        _encode_items(record.items),
        record.customer_id,
        record.seller_id,
        record.processed_by_user_id,
        record.processed_by_user_name,
        record.transaction_type,
        record.order_date.isoformat(),
        record.delivery_date.isoformat(),
        record.return_date.isoformat() if record.return_date else None,
        str(record.total_price),
        str(record.discount_amount),
        str(record.paid_amount),
        str(record.remaining_amount),
        record.status,
        record.branch_id,
        record.branch_name,
        _encode_audit_log(record.audit_log),
        record.return_condition,
        record.return_notes,
        record.version,
    ]


def deserialize_order(raw_row: Sequence[object]) -> OrderRow:
    """Convert a raw ``Orders`` row into an :class:`OrderRow`."""

    (
        order_id,
        order_code,
        items,
        customer_id,
        seller_id,
        processed_by_user_id,
        processed_by_user_name,
        transaction_type,
        order_date,
        delivery_date,
        return_date,
        total_price,
        discount_amount,
        paid_amount,
        remaining_amount,
        status,
        branch_id,
        branch_name,
        audit_log,
        return_condition,
        return_notes,
        version,
    ) = raw_row[:22]

    return OrderRow(
        order_id=str(order_id),
        order_code=str(order_code) if order_code is not None else "",
        items=_decode_items(items),
        customer_id=str(customer_id),
        seller_id=_to_optional_str(seller_id),
        processed_by_user_id=str(processed_by_user_id),
        processed_by_user_name=str(processed_by_user_name),
        transaction_type=str(transaction_type),
        order_date=_to_date(order_date),
        delivery_date=_to_date(delivery_date),
        return_date=_to_optional_date(return_date),
        total_price=_to_decimal(total_price, "0.00"),
        discount_amount=_to_decimal(discount_amount, "0.00"),
        paid_amount=_to_decimal(paid_amount, "0.00"),
        remaining_amount=_to_decimal(remaining_amount, "0.00"),
        status=str(status),
        branch_id=_to_optional_str(branch_id),
        branch_name=_to_optional_str(branch_name),
        audit_log=_decode_audit_log(audit_log),
        return_condition=_to_optional_str(return_condition),
        return_notes=_to_optional_str(return_notes),
        version=_to_int(version),
    )


def serialize_financial_transaction(record: FinancialTransactionRow) -> list[object]:
    return [
        record.transaction_id,
        record.order_id,
        record.order_code,
        record.transaction_type,
        record.transaction_category,
        str(record.amount),
        record.payment_method,
        record.date.isoformat(),
        record.processed_by_user_id,
        record.processed_by_user_name,
        record.branch_id,
        record.description,
        record.notes,
    ]


def deserialize_financial_transaction(raw_row: Sequence[object]) -> FinancialTransactionRow:
    (
        transaction_id,
        order_id,
        order_code,
        transaction_type,
        transaction_category,
        amount,
        payment_method,
        entry_date,
        processed_by_user_id,
        processed_by_user_name,
        branch_id,
        description,
        notes,
    ) = raw_row[:13]

    return FinancialTransactionRow(
        transaction_id=str(transaction_id),
        order_id=str(order_id),
        order_code=str(order_code) if order_code is not None else "",
        transaction_type=str(transaction_type),
        transaction_category=str(transaction_category) if transaction_category is not None else "",
        amount=_to_decimal(amount, "0.00"),
        payment_method=_to_optional_str(payment_method),
        date=_to_date(entry_date),
        processed_by_user_id=str(processed_by_user_id),
        processed_by_user_name=str(processed_by_user_name),
        branch_id=_to_optional_str(branch_id),
        description=str(description) if description is not None else "",
        notes=_to_optional_str(notes),
    )


def serialize_counter(record: CounterRow) -> list[object]:
    return [record.counter_name, record.next_value, record.version]


def deserialize_counter(raw_row: Sequence[object]) -> CounterRow:
    return CounterRow(
        counter_name=str(raw_row[0]),
        next_value=_to_int(raw_row[1]),
        version=_to_int(raw_row[2]),
    )


# ---------------------------------------------------------------------------
# Collection API
# ---------------------------------------------------------------------------

BRANCHES_SHEET = SheetName.BRANCHES.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
USERS_SHEET = SheetName.USERS.value
PRODUCTS_SHEET = SheetName.PRODUCTS.value
ORDERS_SHEET = SheetName.ORDERS.value
FINANCIAL_TRANSACTIONS_SHEET = SheetName.FINANCIAL_TRANSACTIONS.value
COUNTERS_SHEET = SheetName.COUNTERS.value


def iter_branches(workbook: Workbook) -> Iterable[BranchRow]:
    for raw in _iter_raw_rows(workbook, BRANCHES_SHEET):
        yield deserialize_branch(raw)


def iter_customers(workbook: Workbook) -> Iterable[CustomerRow]:
    for raw in _iter_raw_rows(workbook, CUSTOMERS_SHEET):
        yield deserialize_customer(raw)


def iter_users(workbook: Workbook) -> Iterable[UserRow]:
    for raw in _iter_raw_rows(workbook, USERS_SHEET):
        yield deserialize_user(raw)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The rows are snapshotted under the store lock before being converted, so
    a concurrent writer cannot tear a row mid-iteration.
    """

    for raw in _iter_raw_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_orders(workbook: Workbook) -> Iterable[OrderRow]:
    for raw in _iter_raw_rows(workbook, ORDERS_SHEET):
        yield deserialize_order(raw)


def iter_financial_transactions(workbook: Workbook) -> Iterable[FinancialTransactionRow]:
    for raw in _iter_raw_rows(workbook, FINANCIAL_TRANSACTIONS_SHEET):
        yield deserialize_financial_transaction(raw)


def read_branch(workbook: Workbook, branch_id: str) -> Optional[BranchRow]:
    raw = _read_raw_row(workbook, BRANCHES_SHEET, branch_id)
    return deserialize_branch(raw) if raw is not None else None


def read_customer(workbook: Workbook, customer_id: str) -> Optional[CustomerRow]:
    raw = _read_raw_row(workbook, CUSTOMERS_SHEET, customer_id)
    return deserialize_customer(raw) if raw is not None else None


def read_user(workbook: Workbook, user_id: str) -> Optional[UserRow]:
    raw = _read_raw_row(workbook, USERS_SHEET, user_id)
    return deserialize_user(raw) if raw is not None else None


def read_product(workbook: Workbook, product_id: str) -> Optional[ProductRow]:
    raw = _read_raw_row(workbook, PRODUCTS_SHEET, product_id)
    return deserialize_product(raw) if raw is not None else None


def read_order(workbook: Workbook, order_id: str) -> Optional[OrderRow]:
    raw = _read_raw_row(workbook, ORDERS_SHEET, order_id)
    return deserialize_order(raw) if raw is not None else None


def read_financial_transaction(workbook: Workbook, transaction_id: str) -> Optional[FinancialTransactionRow]:
    raw = _read_raw_row(workbook, FINANCIAL_TRANSACTIONS_SHEET, transaction_id)
    return deserialize_financial_transaction(raw) if raw is not None else None


def read_counter(workbook: Workbook, counter_name: str) -> Optional[CounterRow]:
    raw = _read_raw_row(workbook, COUNTERS_SHEET, counter_name)
    return deserialize_counter(raw) if raw is not None else None


def insert_branch(workbook: Workbook, record: BranchRow) -> None:
    _insert_row(workbook, BRANCHES_SHEET, record.branch_id, serialize_branch(record))


def insert_customer(workbook: Workbook, record: CustomerRow) -> None:
    _insert_row(workbook, CUSTOMERS_SHEET, record.customer_id, serialize_customer(record))


def insert_user(workbook: Workbook, record: UserRow) -> None:
    _insert_row(workbook, USERS_SHEET, record.user_id, serialize_user(record))


def insert_product(workbook: Workbook, record: ProductRow) -> None:
    _insert_row(workbook, PRODUCTS_SHEET, record.product_id, serialize_product(record))


def insert_order(workbook: Workbook, record: OrderRow) -> None:
    """Append an order; raises :class:`DuplicateKeyError` if its id exists."""

    _insert_row(workbook, ORDERS_SHEET, record.order_id, serialize_order(record))


def insert_financial_transaction(workbook: Workbook, record: FinancialTransactionRow) -> None:
    """Append a ledger entry; raises :class:`DuplicateKeyError` if its id exists."""

    _insert_row(
        workbook,
        FINANCIAL_TRANSACTIONS_SHEET,
        record.transaction_id,
        serialize_financial_transaction(record),
    )


def insert_counter(workbook: Workbook, record: CounterRow) -> None:
    _insert_row(workbook, COUNTERS_SHEET, record.counter_name, serialize_counter(record))


def compare_and_set_product(workbook: Workbook, record: ProductRow) -> ProductRow:
    """Write ``record`` if the stored version still equals ``record.version``.

    Returns:
        ProductRow: The stored record, carrying the incremented version.

    Raises:
        VersionConflictError: If another writer got there first.
    """

    dropped = len(record.applied_operations) - MAX_APPLIED_OPERATIONS
    if dropped > 0:
        log.info("Dropping %d oldest operation markers of product '%s'", dropped, record.product_id)
    stored = replace(
        record,
        applied_operations=record.applied_operations[-MAX_APPLIED_OPERATIONS:],
        version=record.version + 1,
    )
    _compare_and_set_row(workbook, PRODUCTS_SHEET, record.product_id, record.version, serialize_product(stored))
    return stored


def compare_and_set_order(workbook: Workbook, record: OrderRow) -> OrderRow:
    """Write ``record`` if the stored version still equals ``record.version``."""

    stored = replace(record, version=record.version + 1)
    _compare_and_set_row(workbook, ORDERS_SHEET, record.order_id, record.version, serialize_order(stored))
    return stored


def compare_and_set_counter(workbook: Workbook, record: CounterRow) -> CounterRow:
    stored = replace(record, version=record.version + 1)
    _compare_and_set_row(workbook, COUNTERS_SHEET, record.counter_name, record.version, serialize_counter(stored))
    return stored


def replace_financial_transaction(workbook: Workbook, record: FinancialTransactionRow) -> None:
    """Overwrite a ledger row in place; only used by order-code repair."""

    with _STORE_LOCK:
        row_index = locate_row(workbook, FINANCIAL_TRANSACTIONS_SHEET, "TransactionID", record.transaction_id)
        if row_index is None:
            raise KeyError(f"Financial transaction not found: {record.transaction_id}")
        _write_row(workbook, FINANCIAL_TRANSACTIONS_SHEET, row_index, serialize_financial_transaction(record))


def delete_order(workbook: Workbook, order_id: str, *, expected_version: Optional[int] = None) -> bool:
    """Remove an order row; returns ``False`` when it was already gone.

    Raises:
        VersionConflictError: If ``expected_version`` is given and the stored
            row has moved on.
    """

    return _delete_row(workbook, ORDERS_SHEET, order_id, expected_version)


def delete_financial_transaction(workbook: Workbook, transaction_id: str) -> bool:
    return _delete_row(workbook, FINANCIAL_TRANSACTIONS_SHEET, transaction_id)
