"""Tests for OrderStore persistence and the order status state machine."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from sqlalchemy.exc import OperationalError

from stockflow.db import session_factory
from stockflow.errors import InvalidTransitionError, NotFoundError, PersistenceError, ValidationError
from stockflow.order import OrderLineDraft, OrderStatus, OrderStore

from conftest import make_engine


def _lines() -> list[OrderLineDraft]:
    return [
        OrderLineDraft(sku="A", quantity=2, unit_price=Decimal("10.00")),
        OrderLineDraft(sku="B", quantity=1, unit_price=Decimal("4.50")),
    ]


class TestCreateOrder:
    async def test_persists_pending_order_with_lines(self, orders):
        order_id = await orders.create_order("cust-1", _lines())

        order = await orders.get_order(order_id)
        assert order.order_id == order_id
        assert order.customer_id == "cust-1"
        assert order.status is OrderStatus.PENDING
        assert [(l.line_no, l.sku, l.quantity) for l in order.lines] == [(1, "A", 2), (2, "B", 1)]
        assert order.lines[0].unit_price == Decimal("10.00")
        assert order.total_price == Decimal("24.50")
        assert order.total_quantity == 3
        assert order.created_at.tzinfo is not None

    async def test_each_order_gets_a_new_id(self, orders):
        first = await orders.create_order("cust-1", _lines())
        second = await orders.create_order("cust-1", _lines())
        assert first != second

    async def test_rejects_empty_lines(self, orders):
        with pytest.raises(ValidationError):
            await orders.create_order("cust-1", [])

    async def test_storage_fault_surfaces_as_persistence_error(self, tmp_path):
        engine = await make_engine(tmp_path, "no-schema.db", with_schema=False)
        store = OrderStore(session_factory(engine))
        try:
            with pytest.raises(PersistenceError):
                await store.create_order("cust-1", _lines())
        finally:
            await engine.dispose()


class TestUpdateStatus:
    @pytest.mark.parametrize(
        "path",
        [
            [OrderStatus.CONFIRMED],
            [OrderStatus.FAILED],
            [OrderStatus.CONFIRMED, OrderStatus.CANCELLED],
        ],
    )
    async def test_allowed_transitions(self, orders, path):
        order_id = await orders.create_order("cust-1", _lines())
        for status in path:
            order = await orders.update_status(order_id, status)
        assert order.status is path[-1]

    @pytest.mark.parametrize(
        "path, rejected",
        [
            ([], OrderStatus.CANCELLED),
            ([], OrderStatus.PENDING),
            ([OrderStatus.CONFIRMED], OrderStatus.FAILED),
            ([OrderStatus.CONFIRMED], OrderStatus.PENDING),
            ([OrderStatus.FAILED], OrderStatus.CONFIRMED),
            ([OrderStatus.CONFIRMED, OrderStatus.CANCELLED], OrderStatus.CONFIRMED),
        ],
    )
    async def test_disallowed_transitions_raise(self, orders, path, rejected):
        order_id = await orders.create_order("cust-1", _lines())
        for status in path:
            await orders.update_status(order_id, status)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await orders.update_status(order_id, rejected)
        assert exc_info.value.retryable is False

    async def test_reason_is_recorded(self, orders):
        order_id = await orders.create_order("cust-1", _lines())
        order = await orders.update_status(order_id, OrderStatus.FAILED, reason="disk full")
        assert order.status_reason == "disk full"

    async def test_unknown_order_raises_not_found(self, orders):
        with pytest.raises(NotFoundError):
            await orders.update_status(uuid4(), OrderStatus.CONFIRMED)

    async def test_status_change_keeps_price_at_purchase(self, orders):
        order_id = await orders.create_order("cust-1", _lines())
        await orders.update_status(order_id, OrderStatus.CONFIRMED)
        order = await orders.update_status(order_id, OrderStatus.CANCELLED)
        assert [l.unit_price for l in order.lines] == [Decimal("10.00"), Decimal("4.50")]

    async def test_failed_read_back_leaves_status_unchanged(self, orders, monkeypatch):
        order_id = await orders.create_order("cust-1", _lines())
        real_load = orders._load
        failures: list[UUID] = []

        async def load_failing_once(session, oid):
            if not failures:
                failures.append(oid)
                raise OperationalError("SELECT orders", {}, Exception("connection reset"))
            return await real_load(session, oid)

        monkeypatch.setattr(orders, "_load", load_failing_once)

        with pytest.raises(PersistenceError):
            await orders.update_status(order_id, OrderStatus.CONFIRMED)

        assert (await orders.get_order(order_id)).status is OrderStatus.PENDING


class TestQueries:
    async def test_get_unknown_order_raises_not_found(self, orders):
        with pytest.raises(NotFoundError):
            await orders.get_order(uuid4())

    async def test_list_orders_filters(self, orders):
        confirmed = await orders.create_order("cust-1", _lines())
        await orders.update_status(confirmed, OrderStatus.CONFIRMED)
        await orders.create_order("cust-2", _lines())

        by_status = await orders.list_orders(status=OrderStatus.CONFIRMED)
        by_customer = await orders.list_orders(customer_id="cust-2")
        everything = await orders.list_orders()

        assert [o.order_id for o in by_status] == [confirmed]
        assert [o.customer_id for o in by_customer] == ["cust-2"]
        assert len(everything) == 2
        assert all(len(o.lines) == 2 for o in everything)
