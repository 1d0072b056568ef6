"""Command-line entry points for the Attire ERP toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the order engine.
Keeping the CLI thin ensures the same parser configuration can be reused by
tests, scripts, or any alternative front-end that wants to expose the package
capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import codes, core_logic, data_manager, log, reports
from .constants import (
    CounterName,
    PaymentMethod,
    ProductCategory,
    ReturnCondition,
    TransactionType,
)


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="attire-cli",
        description="Command-line tools for the Attire ERP order and inventory workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    identity = parser.add_argument_group("caller identity")
    identity.add_argument("--user-id", default="cli", help="Id of the user performing the operation.")
    identity.add_argument("--user-name", default="CLI", help="Display name recorded in audit notes.")
    identity.add_argument("--branch-id", default=None, help="Branch the user belongs to.")
    identity.add_argument(
        "--all-branches",
        action="store_true",
        help="Act with cross-branch authority.",
    )
    identity.add_argument(
        "--edit-price",
        action="store_true",
        help="Allow item price overrides on new orders.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as order creation and payments."""
    specs = {
        "add-branch": register_add_branch_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "add-user": register_add_user_command(subparsers),
        "add-product": register_add_product_command(subparsers),
        "create-order": register_create_order_command(subparsers),
        "discount": register_discount_command(subparsers),
        "pay": register_pay_command(subparsers),
        "prepare": register_prepare_command(subparsers),
        "deliver": register_deliver_command(subparsers),
        "return": register_return_command(subparsers),
        "delete-order": register_delete_order_command(subparsers),
        "sync-quantities": register_sync_quantities_command(subparsers),
        "order-codes": register_order_codes_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "show-order": register_show_order_command(subparsers),
        "stock": register_stock_command(subparsers),
        "financials": register_financials_command(subparsers),
        "overdue": register_overdue_command(subparsers),
        "upcoming": register_upcoming_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _simple_spec(
    name: str,
    help_text: str,
    configure: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    *,
    mutates: bool = True,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutates=mutates)


def register_add_branch_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-branch``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--branch-name", required=True)
        parser.add_argument("--new-branch-id", default=None, help="Explicit id for the new branch.")

    return _simple_spec("add-branch", "Register a new branch.", configure, run_add_branch)


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--full-name", required=True)
        parser.add_argument("--phone-number", default="")
        parser.add_argument("--customer-id", default=None)

    return _simple_spec("add-customer", "Register a new customer.", configure, run_add_customer)


def register_add_user_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-user``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--full-name", required=True)
        parser.add_argument("--user-branch-id", default=None)
        parser.add_argument("--seller", action="store_true", help="Flag the user as a seller.")
        parser.add_argument("--new-user-id", default=None)

    return _simple_spec("add-user", "Register a new staff member.", configure, run_add_user)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument(
            "--category",
            choices=[member.value for member in ProductCategory],
            required=True,
        )
        parser.add_argument("--initial-stock", type=int, required=True)
        parser.add_argument("--product-branch-id", default=None)
        parser.add_argument("--global", dest="is_global", action="store_true", help="Orderable from any branch.")

    return _simple_spec("add-product", "Register a new product with a generated code.", configure, run_add_product)


def register_create_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-order``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--customer-id", required=True)
        parser.add_argument(
            "--type",
            dest="transaction_type",
            choices=[member.value for member in TransactionType],
            required=True,
        )
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            required=True,
            help="PRODUCT_ID:QTY[:PRICE]; repeat for several items.",
        )
        parser.add_argument("--order-date", type=parse_date, default=None)
        parser.add_argument("--delivery-date", type=parse_date, required=True)
        parser.add_argument("--return-date", type=parse_date, default=None)
        parser.add_argument("--seller-id", default=None)
        parser.add_argument("--paid-amount", default="0")
        parser.add_argument("--payment-method", choices=[member.value for member in PaymentMethod], default=None)
        parser.add_argument("--order-branch-id", default=None)
        parser.add_argument("--notes", default=None)
        parser.add_argument("--idempotency-key", default=None)

    return _simple_spec("create-order", "Create a rental or sale order.", configure, run_create_order)


def register_discount_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``discount``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--reason", required=True)
        parser.add_argument("--idempotency-key", default=None)

    return _simple_spec("discount", "Apply a discount to an order.", configure, run_discount)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--payment-method", choices=[member.value for member in PaymentMethod], required=True)
        parser.add_argument("--payment-date", type=parse_date, default=None)
        parser.add_argument("--notes", default=None)
        parser.add_argument("--idempotency-key", default=None)

    return _simple_spec("pay", "Record a payment against an order.", configure, run_pay)


def register_prepare_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``prepare``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--order-id", required=True)

    return _simple_spec("prepare", "Mark an ongoing order as prepared.", configure, run_prepare)


def register_deliver_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``deliver``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--order-id", required=True)

    return _simple_spec("deliver", "Deliver a prepared, fully paid order.", configure, run_deliver)


def register_return_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``return``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--condition", choices=[member.value for member in ReturnCondition], required=True)
        parser.add_argument("--condition-notes", default=None)
        parser.add_argument("--payment-amount", default="0")
        parser.add_argument("--payment-method", choices=[member.value for member in PaymentMethod], default=None)
        parser.add_argument("--payment-notes", default=None)

    return _simple_spec("return", "Receive a delivered rental back.", configure, run_return)


def register_delete_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-order``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--order-id", required=True)
        policy = parser.add_mutually_exclusive_group()
        policy.add_argument(
            "--restore-stock",
            dest="restore_stock",
            action="store_true",
            default=None,
            help="Put reserved or sold units back into stock.",
        )
        policy.add_argument(
            "--keep-stock",
            dest="restore_stock",
            action="store_false",
            help="Leave stock counters untouched.",
        )

    return _simple_spec("delete-order", "Delete an undelivered order and its ledger entries.", configure, run_delete_order)


def register_sync_quantities_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sync-quantities``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--apply", action="store_true", help="Write the corrected counters.")

    return _simple_spec(
        "sync-quantities",
        "Check rented counters against open rentals.",
        configure,
        run_sync_quantities,
    )


def register_order_codes_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``order-codes``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--repair", action="store_true", help="Re-code duplicated orders.")

    return _simple_spec("order-codes", "Report or repair duplicated order codes.", configure, run_order_codes)


def register_show_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show-order``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--order-id", required=True)

    return _simple_spec("show-order", "Display an order with its notes and ledger.", configure, run_show_order, mutates=False)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--report-branch-id", default=None)

    return _simple_spec("stock", "Display current stock levels.", configure, run_stock_report, mutates=False)


def register_financials_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``financials``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        return None

    return _simple_spec(
        "financials",
        "Display ledger totals and outstanding balances.",
        configure,
        run_financials_report,
        mutates=False,
    )


def register_overdue_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``overdue``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--today", type=parse_date, default=None)

    return _simple_spec("overdue", "List rentals past their return date.", configure, run_overdue_report, mutates=False)


def register_upcoming_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``upcoming``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--today", type=parse_date, default=None)
        parser.add_argument("--days", type=int, default=None)

    return _simple_spec("upcoming", "List rentals due back soon.", configure, run_upcoming_report, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Argument translation
# ---------------------------------------------------------------------------


def parse_date(value: str) -> date:
    """Parse a ``yyyy-MM-dd`` argument."""
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected yyyy-MM-dd") from exc


def parse_item(value: str) -> core_logic.OrderItemRequest:
    """Parse ``PRODUCT_ID:QTY[:PRICE]`` into an item request."""
    parts = value.split(":")
    if len(parts) not in (2, 3) or not parts[0]:
        raise argparse.ArgumentTypeError(f"Invalid item '{value}', expected PRODUCT_ID:QTY[:PRICE]")
    try:
        quantity = int(parts[1])
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid quantity in item '{value}'") from exc
    price = None
    if len(parts) == 3:
        try:
            price = core_logic.to_money(parts[2], field_name="price")
        except core_logic.ValidationError as exc:
            raise argparse.ArgumentTypeError(str(exc)) from exc
    return core_logic.OrderItemRequest(product_id=parts[0], quantity=quantity, price_override=price)


def build_caller_scope(args: argparse.Namespace) -> core_logic.CallerScope:
    """Translate the identity flags into a caller scope."""
    return core_logic.CallerScope(
        user_id=args.user_id,
        user_name=args.user_name,
        branch_id=args.branch_id,
        can_view_all_branches=bool(getattr(args, "all_branches", False)),
        can_edit_price=bool(getattr(args, "edit_price", False)),
    )


def translate_create_order(args: argparse.Namespace) -> core_logic.CreateOrderCommand:
    """Translate CLI args into a create-order command object."""
    return core_logic.CreateOrderCommand(
        customer_id=args.customer_id,
        transaction_type=TransactionType(args.transaction_type),
        order_date=args.order_date or core_logic.current_date(),
        delivery_date=args.delivery_date,
        return_date=args.return_date,
        items=tuple(args.items),
        seller_id=args.seller_id,
        paid_amount=core_logic.to_money(args.paid_amount, field_name="paid amount"),
        payment_method=PaymentMethod(args.payment_method) if args.payment_method else None,
        branch_id=args.order_branch_id,
        notes=args.notes,
        idempotency_key=args.idempotency_key,
    )


def translate_discount(args: argparse.Namespace) -> core_logic.DiscountCommand:
    """Translate CLI args into a discount command object."""
    return core_logic.DiscountCommand(
        order_id=args.order_id,
        amount=core_logic.to_money(args.amount),
        reason=args.reason,
        idempotency_key=args.idempotency_key,
    )


def translate_pay(args: argparse.Namespace) -> core_logic.PaymentCommand:
    """Translate CLI args into a payment command object."""
    return core_logic.PaymentCommand(
        order_id=args.order_id,
        amount=core_logic.to_money(args.amount),
        payment_method=PaymentMethod(args.payment_method),
        notes=args.notes,
        payment_date=args.payment_date,
        idempotency_key=args.idempotency_key,
    )


def translate_return(args: argparse.Namespace) -> core_logic.ReturnCommand:
    """Translate CLI args into a return command object."""
    return core_logic.ReturnCommand(
        order_id=args.order_id,
        condition=ReturnCondition(args.condition),
        condition_notes=args.condition_notes,
        payment_amount=core_logic.to_money(args.payment_amount, field_name="payment amount"),
        payment_method=PaymentMethod(args.payment_method) if args.payment_method else None,
        payment_notes=args.payment_notes,
    )


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def _print_order(order: data_manager.OrderRow) -> None:
    print(
        f"{order.order_code}  {order.transaction_type}  {reports.effective_status(order)}  "
        f"total={core_logic.format_money(order.total_price)}  "
        f"paid={core_logic.format_money(order.paid_amount)}  "
        f"discount={core_logic.format_money(order.discount_amount)}  "
        f"remaining={core_logic.format_money(order.remaining_amount)}  id={order.order_id}"
    )


def run_add_branch(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-branch workflow in the BLL."""
    branch = core_logic.add_branch(context, branch_name=args.branch_name, branch_id=args.new_branch_id)
    print(branch.branch_id)
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    customer = core_logic.add_customer(
        context,
        full_name=args.full_name,
        phone_number=args.phone_number,
        customer_id=args.customer_id,
    )
    print(customer.customer_id)
    return 0


def run_add_user(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-user workflow in the BLL."""
    user = core_logic.add_user(
        context,
        full_name=args.full_name,
        branch_id=args.user_branch_id,
        is_seller=args.seller,
        user_id=args.new_user_id,
    )
    print(user.user_id)
    return 0


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(
        context,
        build_caller_scope(args),
        product_name=args.product_name,
        price=core_logic.to_money(args.price, field_name="price"),
        category=ProductCategory(args.category),
        initial_stock=args.initial_stock,
        branch_id=args.product_branch_id,
        is_global_product=args.is_global,
    )
    print(f"{product.product_id} {product.product_code}")
    return 0


def run_create_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-order workflow via the BLL."""
    order = core_logic.create_order(context, build_caller_scope(args), translate_create_order(args))
    _print_order(order)
    return 0


def run_discount(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the discount workflow via the BLL."""
    order = core_logic.apply_discount(context, build_caller_scope(args), translate_discount(args))
    _print_order(order)
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment workflow via the BLL."""
    order = core_logic.add_payment(context, build_caller_scope(args), translate_pay(args))
    _print_order(order)
    return 0


def run_prepare(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    order = core_logic.mark_prepared(context, build_caller_scope(args), args.order_id)
    _print_order(order)
    return 0


def run_deliver(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    order = core_logic.mark_delivered(context, build_caller_scope(args), args.order_id)
    _print_order(order)
    return 0


def run_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the rental return workflow via the BLL."""
    order = core_logic.receive_return(context, build_caller_scope(args), translate_return(args))
    _print_order(order)
    return 0


def run_delete_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order deletion workflow via the BLL."""
    removed = core_logic.delete_order(
        context,
        build_caller_scope(args),
        args.order_id,
        restore_stock=args.restore_stock,
    )
    print(f"Deleted order {args.order_id} and {len(removed)} ledger entries")
    return 0


def run_sync_quantities(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the rented-quantity reconciliation sweep."""
    drifts = reports.reconcile_rented_quantities(context, apply=args.apply)
    for drift in drifts:
        print(f"{drift.product_id}  {drift.product_name}  recorded={drift.recorded}  expected={drift.expected}")
    if not drifts:
        print("All rented quantities match open rentals")
    return 0


def run_order_codes(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Report duplicated order codes and optionally repair them."""
    duplicates = codes.find_duplicate_order_codes(context.workbook)
    for code, order_ids in duplicates.items():
        print(f"{code}: {', '.join(order_ids)}")
    if args.repair and duplicates:
        repaired = codes.repair_duplicate_order_codes(
            context.workbook,
            max_attempts=context.settings.code_generation_attempts,
        )
        for order_id, new_code in repaired.items():
            print(f"{order_id} -> {new_code}")
    print(f"Next order code: {codes.current_counter(context.workbook, CounterName.ORDER_CODE.value)}")
    return 0


def run_show_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Display one order, its derived notes, and its ledger entries."""
    order = core_logic.get_order(context, args.order_id)
    if not core_logic.is_order_visible(order, build_caller_scope(args)):
        raise core_logic.NotFoundError("order", args.order_id)
    _print_order(order)
    for item in order.items:
        print(
            f"  {item.product_code}  {item.product_name}  x{item.quantity}  "
            f"@ {core_logic.format_money(item.price_at_time_of_order)}"
        )
    notes = core_logic.render_notes(order)
    if notes:
        print(notes)
    for entry in core_logic.list_financial_transactions(context, order_id=order.order_id):
        print(f"  {entry.date.isoformat()}  {entry.transaction_type}  {core_logic.format_money(entry.amount)}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    for line in reports.calculate_stock_report(context, branch_id=args.report_branch_id):
        print(
            f"{line.product_code}  {line.product_name}  stock={line.quantity_in_stock}  "
            f"rented={line.quantity_rented}  available={line.quantity_available}  "
            f"sold={line.quantity_sold}  {line.status}"
        )
    return 0


def run_financials_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the financial summary workflow."""
    for key, value in reports.calculate_financial_summary(context).items():
        print(f"{key}: {core_logic.format_money(value)}")
    return 0


def run_overdue_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for order in reports.list_overdue_rentals(context, today=args.today):
        print(f"{order.order_code}  due {order.return_date.isoformat()}  customer={order.customer_id}")
    return 0


def run_upcoming_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for order in reports.list_upcoming_returns(context, today=args.today, days=args.days):
        print(f"{order.order_code}  due {order.return_date.isoformat()}  customer={order.customer_id}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, (data_manager.StoreWriteError, codes.CodeGenerationError)):
        log.error("Store operation failed, try again: %s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise data_manager.StoreWriteError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        spec = command_table[args.command]
        if spec.mutates:
            core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and spec.mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
