"""Order code and product code generation.

Codes are handed out from persisted counters in the ``Counters`` sheet. Each
draw increments the counter with a compare-and-set so two callers never
receive the same candidate, and every candidate is checked against the codes
already in use before it is returned. Both loops are bounded: exhausting the
attempts raises :class:`CodeGenerationError` instead of spinning forever.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Set

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import ORDER_CODE_START, PRODUCT_CODE_START, CounterName


class CodeGenerationError(Exception):
    """Raised when no unique code could be produced within the allowed attempts."""


COUNTER_START_VALUES: Dict[str, int] = {
    CounterName.ORDER_CODE.value: ORDER_CODE_START,
    CounterName.PRODUCT_CODE.value: PRODUCT_CODE_START,
}


def _start_value(counter_name: str) -> int:
    try:
        return COUNTER_START_VALUES[counter_name]
    except KeyError as exc:
        raise KeyError(f"Unknown counter: {counter_name}") from exc


def initialize_counter(workbook: Workbook, counter_name: str, initial_value: Optional[int] = None) -> data_manager.CounterRow:
    """Create the counter row if it does not exist yet and return it."""

    existing = data_manager.read_counter(workbook, counter_name)
    if existing is not None:
        return existing
    record = data_manager.CounterRow(
        counter_name=counter_name,
        next_value=initial_value if initial_value is not None else _start_value(counter_name),
    )
    try:
        data_manager.insert_counter(workbook, record)
        log.info("Initialized counter '%s' at %d", counter_name, record.next_value)
    except data_manager.DuplicateKeyError:
        # Another caller initialized it first.
        pass
    stored = data_manager.read_counter(workbook, counter_name)
    if stored is None:
        raise data_manager.StoreWriteError(f"Counter '{counter_name}' could not be initialized")
    return stored


def current_counter(workbook: Workbook, counter_name: str) -> int:
    """Return the next value the counter would hand out."""

    record = data_manager.read_counter(workbook, counter_name)
    return record.next_value if record is not None else _start_value(counter_name)


def reset_counter(workbook: Workbook, counter_name: str, new_value: int) -> data_manager.CounterRow:
    """Force the counter to ``new_value``.

    Codes already issued are still checked for collisions by the generator,
    so moving the counter backwards does not produce duplicates; it only
    costs extra attempts.
    """

    if new_value <= 0:
        raise ValueError("Counter value must be greater than zero")
    initialize_counter(workbook, counter_name)
    stored = data_manager.mutate_record(
        lambda: data_manager.read_counter(workbook, counter_name),
        lambda record: data_manager.compare_and_set_counter(workbook, record),
        lambda record: replace(record, next_value=new_value),
        description=f"reset of counter '{counter_name}'",
    )
    log.warning("Counter '%s' reset to %d", counter_name, new_value)
    return stored


def _draw(workbook: Workbook, counter_name: str) -> Optional[int]:
    """Claim the counter's current value, or return ``None`` if we lost the race."""

    record = initialize_counter(workbook, counter_name)
    try:
        data_manager.compare_and_set_counter(workbook, replace(record, next_value=record.next_value + 1))
    except data_manager.VersionConflictError as exc:
        log.debug("Counter '%s' draw lost a race: %s", counter_name, exc)
        return None
    return record.next_value


def generate_code(
    workbook: Workbook,
    counter_name: str,
    existing_codes: Callable[[], Set[str]],
    *,
    max_attempts: int = 5,
    backoff_base: float = 0.01,
) -> str:
    """Return a code drawn from ``counter_name`` that is not yet in use.

    Every attempt either claims a fresh counter value or loses a
    compare-and-set race; a claimed value that collides with
    ``existing_codes()`` is discarded and the next one is tried.

    Args:
        workbook (Workbook): Store workbook holding the counters.
        counter_name (str): Counter to draw from.
        existing_codes (Callable): Returns the set of codes already taken.
        max_attempts (int): Upper bound on draws before giving up.
        backoff_base (float): Seconds to wait after a lost race, doubled on
            each further loss.

    Returns:
        str: The unique code.

    Raises:
        CodeGenerationError: If every attempt collided or lost a race.
    """

    for attempt in range(max_attempts):
        value = _draw(workbook, counter_name)
        if value is None:
            time.sleep(backoff_base * (2 ** attempt))
            continue
        candidate = str(value)
        if candidate in existing_codes():
            log.warning("Code %s from counter '%s' already in use, retrying", candidate, counter_name)
            continue
        return candidate

    log.error("Unable to generate a unique code from '%s' after %d attempts", counter_name, max_attempts)
    raise CodeGenerationError(
        f"Failed to generate a unique code from '{counter_name}' after {max_attempts} attempts"
    )


def existing_order_codes(workbook: Workbook) -> Set[str]:
    return {order.order_code for order in data_manager.iter_orders(workbook) if order.order_code}


def existing_product_codes(workbook: Workbook) -> Set[str]:
    return {product.product_code for product in data_manager.iter_products(workbook)}


def generate_order_code(workbook: Workbook, *, max_attempts: int = 5) -> str:
    """Return a unique, sequential-looking order code."""

    return generate_code(
        workbook,
        CounterName.ORDER_CODE.value,
        lambda: existing_order_codes(workbook),
        max_attempts=max_attempts,
    )


def generate_product_code(workbook: Workbook, *, max_attempts: int = 5) -> str:
    """Return a unique product barcode."""

    return generate_code(
        workbook,
        CounterName.PRODUCT_CODE.value,
        lambda: existing_product_codes(workbook),
        max_attempts=max_attempts,
    )


def find_duplicate_order_codes(workbook: Workbook) -> Dict[str, List[str]]:
    """Map every order code used by more than one order to those order ids."""

    code_to_orders: Dict[str, List[str]] = defaultdict(list)
    for order in data_manager.iter_orders(workbook):
        if order.order_code:
            code_to_orders[order.order_code].append(order.order_id)
    return {code: ids for code, ids in code_to_orders.items() if len(ids) > 1}


def repair_duplicate_order_codes(workbook: Workbook, *, max_attempts: int = 5) -> Dict[str, str]:
    """Give every order but the first of each duplicated code a fresh code.

    The ledger entries of a re-coded order are rewritten to carry the new
    code as well.

    Returns:
        dict[str, str]: Mapping of repaired order id to its new code.
    """

    repaired: Dict[str, str] = {}
    for duplicate_code, order_ids in find_duplicate_order_codes(workbook).items():
        for order_id in order_ids[1:]:
            new_code = generate_order_code(workbook, max_attempts=max_attempts)
            data_manager.mutate_record(
                lambda: data_manager.read_order(workbook, order_id),
                lambda record: data_manager.compare_and_set_order(workbook, record),
                lambda record: replace(record, order_code=new_code),
                description=f"re-coding order '{order_id}'",
            )
            for entry in data_manager.iter_financial_transactions(workbook):
                if entry.order_id == order_id:
                    data_manager.replace_financial_transaction(workbook, replace(entry, order_code=new_code))
            repaired[order_id] = new_code
            log.info("Order '%s' re-coded from %s to %s", order_id, duplicate_code, new_code)
    return repaired
