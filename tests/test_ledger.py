"""Tests for InventoryLedger: atomic reserve, idempotent commit/release, sweeper."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from stockflow.audit import AuditAction, EntityType
from stockflow.db import session_factory, utcnow
from stockflow.errors import (
    InsufficientStockError,
    NotFoundError,
    ReservationExpiredError,
    ValidationError,
)
from stockflow.inventory import InventoryLedger, ReservationState


class TestReceiveStock:
    async def test_creates_record_and_audits_create(self, ledger, audit):
        record = await ledger.receive_stock("A", 5, actor="clerk")

        assert record.available == 5
        assert record.reserved == 0
        assert record.version == 1

        events = await audit.load_events(entity_type=EntityType.INVENTORY_RECORD)
        assert len(events) == 1
        assert events[0].action is AuditAction.CREATE
        assert events[0].actor == "clerk"
        assert events[0].before is None
        assert events[0].after["available"] == 5

    async def test_second_receipt_updates_and_audits_update(self, ledger, audit):
        await ledger.receive_stock("A", 5)
        record = await ledger.receive_stock("A", 3)

        assert record.available == 8
        assert record.version == 2

        events = await audit.load_events(entity_type=EntityType.INVENTORY_RECORD)
        assert [e.action for e in events] == [AuditAction.CREATE, AuditAction.UPDATE]
        assert events[1].before["available"] == 5
        assert events[1].after["available"] == 8

    async def test_rejects_non_positive_quantity(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.receive_stock("A", 0)


class TestReserve:
    async def test_moves_quantity_from_available_to_reserved(self, ledger):
        await ledger.receive_stock("A", 5)

        token = await ledger.reserve("A", 3)

        record = await ledger.get_record("A")
        assert record.available == 2
        assert record.reserved == 3
        assert record.version == 2
        assert token.sku == "A"
        assert token.quantity == 3
        assert token.available_after == 2
        assert token.expires_at > token.created_at
        assert await ledger.reservation_state(token) is ReservationState.HELD

    async def test_insufficient_stock_has_no_side_effects(self, ledger):
        await ledger.receive_stock("B", 2)

        with pytest.raises(InsufficientStockError) as exc_info:
            await ledger.reserve("B", 5)

        assert exc_info.value.sku == "B"
        assert exc_info.value.requested == 5
        assert exc_info.value.available == 2
        assert exc_info.value.retryable is True
        record = await ledger.get_record("B")
        assert (record.available, record.reserved, record.version) == (2, 0, 1)

    async def test_unknown_sku_counts_as_out_of_stock(self, ledger):
        with pytest.raises(InsufficientStockError) as exc_info:
            await ledger.reserve("missing", 1)
        assert exc_info.value.available == 0

    async def test_exact_quantity_drains_to_zero(self, ledger):
        await ledger.receive_stock("A", 4)
        await ledger.reserve("A", 4)
        assert await ledger.current_available("A") == 0

    async def test_rejects_non_positive_quantity(self, ledger):
        await ledger.receive_stock("A", 4)
        with pytest.raises(ValidationError):
            await ledger.reserve("A", 0)

    async def test_concurrent_reserves_never_oversell(self, ledger):
        """No guard here: the conditional UPDATE alone must hold the line."""
        await ledger.receive_stock("C", 3)

        results = await asyncio.gather(
            *(ledger.reserve("C", 1) for _ in range(10)),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, InsufficientStockError)]
        assert len(succeeded) == 3
        assert len(failed) == 7
        record = await ledger.get_record("C")
        assert record.available == 0
        assert record.reserved == 3


class TestCommitAndRelease:
    async def test_commit_discards_reserved_pool(self, ledger):
        await ledger.receive_stock("A", 5)
        token = await ledger.reserve("A", 3)

        assert await ledger.commit(token) is ReservationState.COMMITTED

        record = await ledger.get_record("A")
        assert record.available == 2
        assert record.reserved == 0

    async def test_commit_twice_is_same_as_once(self, ledger):
        await ledger.receive_stock("A", 5)
        token = await ledger.reserve("A", 3)

        await ledger.commit(token)
        after_first = await ledger.get_record("A")
        assert await ledger.commit(token) is ReservationState.COMMITTED
        after_second = await ledger.get_record("A")

        assert after_first == after_second

    async def test_release_returns_quantity_to_available(self, ledger):
        await ledger.receive_stock("A", 5)
        token = await ledger.reserve("A", 3)

        assert await ledger.release(token) is ReservationState.RELEASED

        record = await ledger.get_record("A")
        assert record.available == 5
        assert record.reserved == 0

    async def test_release_twice_is_same_as_once(self, ledger):
        await ledger.receive_stock("A", 5)
        token = await ledger.reserve("A", 3)

        await ledger.release(token)
        await ledger.release(token)

        assert await ledger.current_available("A") == 5

    async def test_commit_after_release_is_a_noop(self, ledger):
        await ledger.receive_stock("A", 5)
        token = await ledger.reserve("A", 3)
        await ledger.release(token)

        assert await ledger.commit(token) is ReservationState.RELEASED
        assert await ledger.current_available("A") == 5

    async def test_release_after_commit_is_a_noop(self, ledger):
        await ledger.receive_stock("A", 5)
        token = await ledger.reserve("A", 3)
        await ledger.commit(token)

        assert await ledger.release(token) is ReservationState.COMMITTED
        assert await ledger.current_available("A") == 2

    async def test_reverse_restores_committed_decrement_once(self, ledger):
        await ledger.receive_stock("A", 5)
        token = await ledger.reserve("A", 3)
        await ledger.commit(token)

        await ledger.reverse_many([token])
        await ledger.reverse_many([token])

        assert await ledger.current_available("A") == 5
        assert await ledger.reservation_state(token) is ReservationState.REVERSED

    async def test_reverse_of_held_token_is_a_noop(self, ledger):
        await ledger.receive_stock("A", 5)
        token = await ledger.reserve("A", 3)

        assert await ledger.reverse(token) is ReservationState.HELD
        assert await ledger.current_available("A") == 2

    async def test_commit_many_commits_every_token(self, ledger):
        await ledger.receive_stock("A", 5)
        await ledger.receive_stock("B", 5)
        tokens = [await ledger.reserve("A", 1), await ledger.reserve("B", 2)]

        await ledger.commit_many(tokens)

        for token in tokens:
            assert await ledger.reservation_state(token) is ReservationState.COMMITTED
        assert [r.reserved for r in await ledger.list_records()] == [0, 0]

    async def test_commit_many_refuses_when_a_token_was_released(self, ledger):
        await ledger.receive_stock("A", 5)
        await ledger.receive_stock("B", 5)
        kept = await ledger.reserve("A", 1)
        expired = await ledger.reserve("B", 2)
        await ledger.release(expired)

        with pytest.raises(ReservationExpiredError) as exc_info:
            await ledger.commit_many([kept, expired])

        assert exc_info.value.skus == ["B"]
        assert await ledger.reservation_state(kept) is ReservationState.HELD

    async def test_release_many_with_no_tokens_is_a_noop(self, ledger):
        await ledger.release_many([])


class TestSweeper:
    async def test_sweep_releases_only_expired_reservations(self, engines, audit):
        ledger = InventoryLedger(
            session_factory(engines["inventory"]), reservation_ttl=60, audit=audit
        )
        await ledger.receive_stock("A", 10)
        token = await ledger.reserve("A", 4)

        assert await ledger.sweep_expired() == []
        assert await ledger.current_available("A") == 6

        released = await ledger.sweep_expired(now=utcnow() + timedelta(seconds=61))

        assert [t.token for t in released] == [token.token]
        assert await ledger.current_available("A") == 10
        assert await ledger.reservation_state(token) is ReservationState.RELEASED

        events = await audit.load_events(entity_type=EntityType.INVENTORY_RECORD, action=AuditAction.UPDATE)
        assert len(events) == 1
        assert events[0].actor == "sweeper"
        assert events[0].after["reason"] == "expired"

    async def test_sweep_ignores_committed_reservations(self, ledger):
        await ledger.receive_stock("A", 10)
        token = await ledger.reserve("A", 4)
        await ledger.commit(token)

        released = await ledger.sweep_expired(now=utcnow() + timedelta(days=1))

        assert released == []
        assert await ledger.current_available("A") == 6


class TestReads:
    async def test_current_available_for_unknown_sku_is_zero(self, ledger):
        assert await ledger.current_available("nope") == 0

    async def test_get_record_for_unknown_sku_raises(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.get_record("nope")

    async def test_list_records_is_sorted_by_sku(self, ledger):
        await ledger.receive_stock("B", 1)
        await ledger.receive_stock("A", 1)
        assert [r.sku for r in await ledger.list_records()] == ["A", "B"]
