"""Shared fixtures for the stockflow test suite.

Each component gets its own SQLite file so the ledger, the order store and
the audit trail behave as independently-failing resources.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from stockflow.audit import AuditTrail
from stockflow.db import create_engine, create_schema, session_factory
from stockflow.errors import UnknownProductError
from stockflow.guard import ConcurrencyGuard
from stockflow.inventory import InventoryLedger
from stockflow.order import OrderStore
from stockflow.publisher import EventPublisher
from stockflow.saga import OrderPlacementCoordinator


class FakeCatalog:
    """In-memory price and customer lookups."""

    def __init__(self, prices: dict[str, Decimal], customers: set[str]) -> None:
        self.prices = dict(prices)
        self.customers = set(customers)
        self.price_calls: list[str] = []

    async def get_current_price(self, sku: str) -> Decimal:
        self.price_calls.append(sku)
        if sku not in self.prices:
            raise UnknownProductError(sku)
        return self.prices[sku]

    async def customer_exists(self, customer_id: str) -> bool:
        return customer_id in self.customers


def sqlite_url(tmp_path, name: str) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / name}"


async def make_engine(tmp_path, name: str, *, with_schema: bool = True):
    engine = create_engine(sqlite_url(tmp_path, name))
    if with_schema:
        await create_schema(engine)
    return engine


@pytest.fixture
async def engines(tmp_path):
    created = {
        "inventory": await make_engine(tmp_path, "inventory.db"),
        "orders": await make_engine(tmp_path, "orders.db"),
        "audit": await make_engine(tmp_path, "audit.db"),
    }
    yield created
    for engine in created.values():
        await engine.dispose()


@pytest.fixture
def redis() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def audit(engines, redis) -> AuditTrail:
    return AuditTrail(session_factory(engines["audit"]), EventPublisher(redis))


@pytest.fixture
def ledger(engines, audit) -> InventoryLedger:
    return InventoryLedger(session_factory(engines["inventory"]), audit=audit)


@pytest.fixture
def orders(engines) -> OrderStore:
    return OrderStore(session_factory(engines["orders"]))


@pytest.fixture
def guard() -> ConcurrencyGuard:
    return ConcurrencyGuard(timeout=5.0)


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog(
        prices={
            "A": Decimal("10.00"),
            "B": Decimal("4.50"),
            "C": Decimal("99.99"),
            "D": Decimal("1.25"),
        },
        customers={"cust-1", "cust-2"},
    )


@pytest.fixture
def coordinator(ledger, orders, audit, guard, catalog) -> OrderPlacementCoordinator:
    return OrderPlacementCoordinator(ledger, orders, audit, guard, catalog, catalog)
