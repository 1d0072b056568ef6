"""Shared pytest fixtures and utilities for Attire ERP tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from attire_erp import cli, constants, core_logic, data_manager  # noqa: E402
from setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Engine]\n"
    "MaxRetryAttempts = {max_retry_attempts}\n"
    "RetryBackoffSeconds = 0.001\n"
    "CodeGenerationAttempts = 5\n"
    "RestoreStockOnDelete = {restore_stock_on_delete}\n"
    "UpcomingReturnWindowDays = 7\n"
)

ORDER_DATE = date(2025, 5, 1)
DELIVERY_DATE = date(2025, 5, 10)
RETURN_DATE = date(2025, 5, 12)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    shop_name: str


@dataclass(frozen=True)
class SeedData:
    """Master data registered in a fresh store for engine tests."""

    context: core_logic.RuntimeContext
    downtown: data_manager.BranchRow
    uptown: data_manager.BranchRow
    customer: data_manager.CustomerRow
    seller: data_manager.UserRow


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized store workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "attire_store.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh store workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Atelier",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        max_retry_attempts: int = 3,
        restore_stock_on_delete: bool = False,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                max_retry_attempts=max_retry_attempts,
                restore_stock_on_delete=str(restore_stock_on_delete).lower(),
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            shop_name=shop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Caller scopes and seeded master data
# ---------------------------------------------------------------------------


@pytest.fixture
def admin_scope() -> core_logic.CallerScope:
    """Caller with cross-branch and price-edit authority."""

    return core_logic.CallerScope(
        user_id="U-ADMIN",
        user_name="Amira Admin",
        can_view_all_branches=True,
        can_edit_price=True,
    )


@pytest.fixture
def seed(runtime_context: core_logic.RuntimeContext) -> SeedData:
    """Register two branches, a customer, and a seller in a fresh store."""

    context = runtime_context
    downtown = core_logic.add_branch(context, branch_name="Downtown", branch_id="B-DOWN")
    uptown = core_logic.add_branch(context, branch_name="Uptown", branch_id="B-UP")
    customer = core_logic.add_customer(
        context,
        full_name="Layla Haddad",
        phone_number="555-0100",
        customer_id="C-LAYLA",
    )
    seller = core_logic.add_user(
        context,
        full_name="Sami Seller",
        branch_id=downtown.branch_id,
        is_seller=True,
        user_id="U-SAMI",
    )
    return SeedData(context=context, downtown=downtown, uptown=uptown, customer=customer, seller=seller)


@pytest.fixture
def branch_scope(seed: SeedData) -> core_logic.CallerScope:
    """Caller bound to the Downtown branch without extra authority."""

    return core_logic.CallerScope(
        user_id=seed.seller.user_id,
        user_name=seed.seller.full_name,
        branch_id=seed.downtown.branch_id,
        branch_name=seed.downtown.branch_name,
    )


@pytest.fixture
def product_factory(seed: SeedData, admin_scope: core_logic.CallerScope) -> Callable[..., data_manager.ProductRow]:
    """Register products through the engine with sensible defaults."""

    def _create_product(
        *,
        name: str = "Ivory Gown",
        price: str = "50.00",
        stock: int = 5,
        category: constants.ProductCategory = constants.ProductCategory.RENTAL,
        branch_id: Optional[str] = "B-DOWN",
        is_global: bool = False,
    ) -> data_manager.ProductRow:
        return core_logic.add_product(
            seed.context,
            admin_scope,
            product_name=name,
            price=Decimal(price),
            category=category,
            initial_stock=stock,
            branch_id=branch_id,
            is_global_product=is_global,
        )

    return _create_product


@pytest.fixture
def rental_command(seed: SeedData) -> Callable[..., core_logic.CreateOrderCommand]:
    """Build rental order commands for the seeded customer."""

    def _build(
        *items: core_logic.OrderItemRequest,
        paid_amount: str = "0",
        payment_method: Optional[constants.PaymentMethod] = None,
        branch_id: Optional[str] = "B-DOWN",
        **overrides,
    ) -> core_logic.CreateOrderCommand:
        fields = dict(
            customer_id=seed.customer.customer_id,
            transaction_type=constants.TransactionType.RENTAL,
            order_date=ORDER_DATE,
            delivery_date=DELIVERY_DATE,
            return_date=RETURN_DATE,
            items=items,
            seller_id=seed.seller.user_id,
            paid_amount=Decimal(paid_amount),
            payment_method=payment_method,
            branch_id=branch_id,
        )
        fields.update(overrides)
        return core_logic.CreateOrderCommand(**fields)

    return _build


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="attire-cli", description="Attire CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` so ``now`` returns a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime(datetime):
            @classmethod
            def now(cls, tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
