"""
Test Configuration and Fixtures
Shared testing infrastructure for PharmaPOS
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Generator

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pharmapos.core.database import Base, init_db
from pharmapos.repositories.memory import InMemoryRepository
from pharmapos.repositories.sql import SqlAlchemyRepository
from pharmapos.services.inventory.batch import BatchLocation, BatchRecord
from pharmapos.services.inventory.ledger import ShopPricing, StockLedger
from pharmapos.services.inventory.packaging import PackagingInfo, PackagingLevel
from pharmapos.services.sales.coordinator import OrderCoordinator

# Fixed "current time" for every test; batch dates below are relative to it
NOW = datetime(2023, 12, 1, 9, 0, tzinfo=timezone.utc)

SHOP = "SHOP1"
BRANCH = "SHOP2"
DRUG_A = "DRUG-A"
DRUG_B = "DRUG-B"


def utc(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)


@pytest.fixture
def batch_factory() -> Callable[..., BatchRecord]:
    """Build batch records with sensible defaults"""
    def _make(batch_number: str, quantity: int, expiry: datetime, **overrides) -> BatchRecord:
        data = {
            "batch_number": batch_number,
            "quantity_on_hand": quantity,
            "expiry_date": expiry,
            "purchase_price": Decimal("4.00"),
            "selling_price": Decimal("10.00"),
            "received_date": utc(2023, 10, 1),
            "supplier_id": "SUP-01",
            "location": BatchLocation.STORAGE,
        }
        data.update(overrides)
        return BatchRecord(**data)
    return _make


@pytest.fixture
def ledger(batch_factory) -> StockLedger:
    """
    DRUG-A at SHOP1: batch A (5 units, expires 2024-01-01) and
    batch B (5 units, expires 2024-02-01, costs more)
    """
    return StockLedger(
        SHOP, DRUG_A,
        reorder_point=5,
        shop_pricing=ShopPricing(cost_price=Decimal("4.00"), selling_price=Decimal("10.00")),
        batches=[
            batch_factory("A", 5, utc(2024, 1, 1)),
            batch_factory("B", 5, utc(2024, 2, 1), purchase_price=Decimal("6.00")),
        ],
    )


@pytest.fixture
def second_ledger(batch_factory) -> StockLedger:
    """DRUG-B at SHOP1: one batch C of 20 units"""
    return StockLedger(
        SHOP, DRUG_B,
        reorder_point=2,
        shop_pricing=ShopPricing(cost_price=Decimal("2.00"), selling_price=Decimal("5.00")),
        batches=[
            batch_factory(
                "C", 20, utc(2024, 6, 1),
                purchase_price=Decimal("2.00"), selling_price=Decimal("5.00"),
                location=BatchLocation.SHOP_FLOOR,
            ),
        ],
    )


@pytest.fixture
def branch_ledger(batch_factory) -> StockLedger:
    """DRUG-A at SHOP2: 2 units of batch A on the shop floor, same lot as SHOP1's batch A"""
    return StockLedger(
        BRANCH, DRUG_A,
        reorder_point=3,
        shop_pricing=ShopPricing(cost_price=Decimal("4.00"), selling_price=Decimal("11.00")),
        batches=[batch_factory("A", 2, utc(2024, 1, 1), location=BatchLocation.SHOP_FLOOR)],
    )


@pytest.fixture
def ledgers(ledger, second_ledger):
    """Ledgers keyed by drug id, as SalesOrder.complete and cancel expect"""
    return {DRUG_A: ledger, DRUG_B: second_ledger}


@pytest.fixture
def tablet_packaging() -> PackagingInfo:
    """Tablet -> Strip (10) -> Box (100), sold by the strip by default"""
    return PackagingInfo(
        base_unit="tablet",
        base_unit_display_name="Tablet",
        is_subdivisible=False,
        levels=[
            PackagingLevel(1, "Tablet", Decimal("1"), is_sellable=False),
            PackagingLevel(2, "Strip", Decimal("10"), quantity_per_parent=Decimal("10"), is_default=True),
            PackagingLevel(3, "Box", Decimal("100"), quantity_per_parent=Decimal("10")),
        ],
    )


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest_asyncio.fixture
async def coordinator(repository, ledger, second_ledger) -> OrderCoordinator:
    """Coordinator over an in-memory repository seeded with both ledgers"""
    await repository.save_ledger(ledger)
    await repository.save_ledger(second_ledger)
    return OrderCoordinator(repository, clock=lambda: NOW, lock_timeout=2.0)


@pytest.fixture
def session_factory() -> Generator[sessionmaker, None, None]:
    """In-memory SQLite database shared across threads, fresh per test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def sql_repository(session_factory) -> SqlAlchemyRepository:
    return SqlAlchemyRepository(session_factory)


class SlowRepository(InMemoryRepository):
    """In-memory repository whose ledger saves take a while"""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def save_ledger(self, ledger: StockLedger) -> None:
        await asyncio.sleep(self.delay)
        await super().save_ledger(ledger)


@pytest.fixture
def slow_repository_factory():
    return SlowRepository
