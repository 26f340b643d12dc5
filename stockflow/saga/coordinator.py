"""
注文確定 Saga (Order Placement Coordinator)

在庫台帳と注文ストアは独立して失敗しうる2つのリソースなので、
単一の ACID トランザクションではなく、補償トランザクション付きの
Saga として注文を確定する。

  ┌──────────────────────────────────────────────────────────────┐
  │  0. リクエスト検証・顧客確認・購入時価格の取得 (副作用なし)   │
  │  1. SKU ロックを取得し、各明細の在庫を引き当て                │
  │     └─ 失敗 → 取得済みの引き当てを解放 (補償)                │
  │  2. 注文を PENDING で作成                                    │
  │     └─ 失敗 → 引き当てを解放 (補償)                          │
  │  3. 引き当てを確定 (在庫の減算が確定)                         │
  │     └─ 失敗 → 引き当てを解放, 注文を FAILED に (補償)         │
  │  4. 注文を CONFIRMED に                                      │
  │     └─ 失敗 → 減算を取り消し, 注文を FAILED に (補償)         │
  │  5. 監査イベントを追記 (注文・各明細・各在庫減算)             │
  └──────────────────────────────────────────────────────────────┘

どの失敗経路でも(タスクのキャンセルを含む)、補償を済ませてから例外を送出し、
結果を要約する監査イベントを1件だけ追記する。
"""

import asyncio
import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from uuid import UUID, uuid4

from ..audit import AuditAction, AuditEvent, AuditTrail, EntityType
from ..catalog import CustomerLookup, PriceLookup
from ..errors import (
    ConcurrencyTimeoutError,
    InsufficientStockError,
    InvalidTransitionError,
    OrderingError,
    PersistenceError,
    UnknownCustomerError,
    ValidationError,
)
from ..guard import ConcurrencyGuard
from ..inventory import InventoryLedger, ReservationToken
from ..order import Order, OrderLineDraft, OrderStatus, OrderStore

logger = logging.getLogger(__name__)


class OrderPlacementCoordinator:
    """注文 Saga のオーケストレーター"""

    def __init__(
        self,
        ledger: InventoryLedger,
        orders: OrderStore,
        audit: AuditTrail,
        guard: ConcurrencyGuard,
        prices: PriceLookup,
        customers: CustomerLookup,
    ):
        self.ledger = ledger
        self.orders = orders
        self.audit = audit
        self.guard = guard
        self.prices = prices
        self.customers = customers
        # キャンセル中も走り続ける補償タスクへの参照
        self._compensations: set[asyncio.Task] = set()

    async def place_order(
        self,
        customer_id: str,
        lines: Iterable[tuple[str, int]],
        *,
        actor: str = "system",
    ) -> UUID:
        """
        注文を確定し、注文 ID を返す。

        成功: 注文は CONFIRMED, 各 SKU の available は明細数量だけ減っている。
        失敗: CONFIRMED の注文は残らず、available は呼び出し前の値に戻っている。
        """
        requested = _validate(customer_id, lines)
        if not await self.customers.customer_exists(customer_id):
            raise UnknownCustomerError(customer_id)

        # 購入時価格のスナップショット。以後カタログから再計算しない。
        drafts = [
            OrderLineDraft(
                sku=sku,
                quantity=quantity,
                unit_price=await self.prices.get_current_price(sku),
            )
            for sku, quantity in requested
        ]

        placement_id = uuid4()
        saga_log: list[dict] = []
        tokens: list[ReservationToken] = []
        order_id: UUID | None = None
        committing = False

        try:
            # ── Step 1: 在庫を引き当て ──────────────
            _begin(saga_log, "ReserveInventory")
            await self._reserve_all(placement_id, drafts, tokens)
            _complete(saga_log)

            # ── Step 2: 注文を作成 (SKU ロックは保持しない) ──
            _begin(saga_log, "CreateOrder")
            order_id = await self.orders.create_order(customer_id, drafts)
            _complete(saga_log)

            # ── Step 3: 引き当てを確定 ──────────────
            _begin(saga_log, "CommitInventory")
            committing = True
            await self.ledger.commit_many(tokens)
            _complete(saga_log)

            # ── Step 4: 注文を確定 ──────────────────
            _begin(saga_log, "ConfirmOrder")
            order = await self._confirm(order_id)
            _complete(saga_log)
        except BaseException as e:
            # キャンセルされても補償は最後まで走らせる
            _fail(saga_log, e)
            compensation = asyncio.create_task(
                self._compensate(
                    placement_id,
                    order_id,
                    tokens,
                    committing,
                    customer_id,
                    drafts,
                    e,
                    saga_log,
                    actor,
                )
            )
            self._compensations.add(compensation)
            compensation.add_done_callback(self._compensations.discard)
            await asyncio.shield(compensation)
            raise

        # ── Step 5: 監査イベント ────────────────────
        await self._record_success(order, tokens, actor)
        logger.info(
            "Placed order %s for %s (%d lines, placement=%s)",
            order_id,
            customer_id,
            len(drafts),
            placement_id,
        )
        return order_id

    async def cancel_order(
        self,
        order_id: UUID,
        *,
        reason: str = "",
        actor: str = "system",
    ) -> Order:
        """
        CONFIRMED の注文を CANCELLED にする。
        在庫の返却は返金処理側の責務なので、ここでは行わない。
        """
        before = await self.orders.get_order(order_id)
        after = await self.orders.update_status(order_id, OrderStatus.CANCELLED, reason=reason or None)
        await self.audit.append(
            AuditEvent(
                entity_type=EntityType.ORDER,
                entity_id=str(order_id),
                action=AuditAction.UPDATE,
                actor=actor,
                before={"status": before.status.value},
                after={"status": after.status.value, "reason": reason},
            )
        )
        return after

    async def get_order(self, order_id: UUID) -> Order:
        return await self.orders.get_order(order_id)

    # ── 内部処理 ─────────────────────────────────

    async def _reserve_all(
        self,
        placement_id: UUID,
        drafts: Sequence[OrderLineDraft],
        tokens: list[ReservationToken],
    ) -> None:
        """
        SKU ロックを取得して全明細を引き当てる。得られたトークンは tokens に積む
        (途中で失敗しても呼び出し側が補償できるように)。
        """
        timeout = self.guard.timeout
        loop = asyncio.get_running_loop()
        started = loop.time()
        async with self.guard.hold((draft.sku for draft in drafts), timeout=timeout):
            for draft in drafts:
                if loop.time() - started > timeout:
                    raise ConcurrencyTimeoutError([draft.sku], timeout)
                tokens.append(
                    await self.ledger.reserve(draft.sku, draft.quantity, placement_id=placement_id)
                )

    async def _confirm(self, order_id: UUID) -> Order:
        """
        注文を CONFIRMED にする。

        書き込みがコミットされた後に失敗が返ることもあるので、
        PersistenceError のときは状態を読み直し、確定済みならそのまま成功とする。
        """
        try:
            return await self.orders.update_status(order_id, OrderStatus.CONFIRMED)
        except PersistenceError:
            try:
                order = await self.orders.get_order(order_id)
            except OrderingError:
                logger.exception("Could not re-read order %s after a failed confirmation", order_id)
                raise
            if order.status is not OrderStatus.CONFIRMED:
                raise
            logger.warning("Order %s was confirmed despite a reported persistence error", order_id)
            return order

    async def _compensate(
        self,
        placement_id: UUID,
        order_id: UUID | None,
        tokens: list[ReservationToken],
        committing: bool,
        customer_id: str,
        drafts: Sequence[OrderLineDraft],
        error: BaseException,
        saga_log: list[dict],
        actor: str,
    ) -> None:
        """
        失敗したステップまでの副作用を取り消し、失敗を要約する監査イベントを1件追記する。

        確定処理に入っていた場合、コミット済みかどうかは分からないので
        解放(HELD のもの)と取り消し(COMMITTED のもの)の両方を行う。どちらも冪等。
        """
        await self._release(tokens, saga_log)
        if committing:
            await self._reverse(tokens, saga_log)
        if order_id is not None:
            await self._mark_failed(order_id, error, saga_log)

        if isinstance(error, InsufficientStockError):
            action = AuditAction.RESERVATION_FAILED
        else:
            action = AuditAction.PLACEMENT_FAILED
        if order_id is None:
            entity_type, entity_id = EntityType.PLACEMENT, str(placement_id)
        else:
            entity_type, entity_id = EntityType.ORDER, str(order_id)
        await self._record_failure(
            action, entity_type, entity_id, customer_id, drafts, error, saga_log, actor
        )

    async def _release(self, tokens: list[ReservationToken], saga_log: list[dict]) -> None:
        """補償: 引き当てを解放する。失敗してもスイーパーが期限切れで回収する。"""
        if not tokens:
            return
        _begin(saga_log, "ReleaseInventory (COMPENSATING)")
        try:
            await self.ledger.release_many(tokens)
            _complete(saga_log)
        except PersistenceError as e:
            _fail(saga_log, e)
            logger.exception("Failed to release %d reservation(s); leaving them to the sweeper", len(tokens))

    async def _reverse(self, tokens: list[ReservationToken], saga_log: list[dict]) -> None:
        """補償: 確定済みの減算を取り消す。"""
        if not tokens:
            return
        _begin(saga_log, "ReverseInventory (COMPENSATING)")
        try:
            await self.ledger.reverse_many(tokens)
            _complete(saga_log)
        except PersistenceError as e:
            _fail(saga_log, e)
            logger.exception("Failed to reverse committed reservations %s", [str(t.token) for t in tokens])

    async def _mark_failed(self, order_id: UUID, error: BaseException, saga_log: list[dict]) -> None:
        _begin(saga_log, "FailOrder (COMPENSATING)")
        try:
            await self.orders.update_status(order_id, OrderStatus.FAILED, reason=_error_detail(error))
            _complete(saga_log)
        except (PersistenceError, InvalidTransitionError) as e:
            _fail(saga_log, e)
            logger.exception("Failed to mark order %s as failed", order_id)

    async def _record_failure(
        self,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: str,
        customer_id: str,
        drafts: Sequence[OrderLineDraft],
        error: BaseException,
        saga_log: list[dict],
        actor: str,
    ) -> None:
        event = AuditEvent(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor=actor,
            after={
                "status": OrderStatus.FAILED.value,
                "customer_id": customer_id,
                "lines": [draft.model_dump(mode="json") for draft in drafts],
                "error": _error_code(error),
                "detail": _error_detail(error),
                "saga_log": saga_log,
            },
        )
        try:
            await self.audit.append(event)
        except PersistenceError:
            logger.exception("Failed to record %s for %s %s", action.value, entity_type.value, entity_id)

    async def _record_success(
        self,
        order: Order,
        tokens: Sequence[ReservationToken],
        actor: str,
    ) -> None:
        events = [
            AuditEvent(
                entity_type=EntityType.ORDER,
                entity_id=str(order.order_id),
                action=AuditAction.CREATE,
                actor=actor,
                after=order.model_dump(mode="json", exclude={"lines"}),
            )
        ]
        events += [
            AuditEvent(
                entity_type=EntityType.ORDER_LINE,
                entity_id=line.line_id,
                action=AuditAction.CREATE,
                actor=actor,
                after=line.model_dump(mode="json"),
            )
            for line in order.lines
        ]
        events += [
            AuditEvent(
                entity_type=EntityType.INVENTORY_RECORD,
                entity_id=token.sku,
                action=AuditAction.CREATE,
                actor=actor,
                before={"sku": token.sku, "available": _available_before(token)},
                after={
                    "sku": token.sku,
                    "reservation": str(token.token),
                    "quantity": token.quantity,
                    "available": token.available_after,
                    "order_id": str(order.order_id),
                },
            )
            for token in tokens
        ]
        try:
            await self.audit.append_many(events)
        except PersistenceError:
            # 注文は確定済み。ここで失敗を返すと呼び出し側から見た結果と食い違う。
            logger.exception("Order %s confirmed but its audit events could not be written", order.order_id)


def _validate(customer_id: str, lines: Iterable[tuple[str, int]]) -> list[tuple[str, int]]:
    if not isinstance(customer_id, str) or not customer_id.strip():
        raise ValidationError("customer_id must be a non-empty string")

    requested = []
    for line in lines:
        try:
            sku, quantity = line
        except (TypeError, ValueError):
            raise ValidationError(f"Order line must be a (sku, quantity) pair, got {line!r}") from None
        if not isinstance(sku, str) or not sku.strip():
            raise ValidationError("Order line sku must be a non-empty string")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(f"Quantity for {sku} must be a positive integer, got {quantity!r}")
        requested.append((sku, quantity))

    if not requested:
        raise ValidationError("An order needs at least one line")
    return requested


def _available_before(token: ReservationToken) -> int | None:
    if token.available_after is None:
        return None
    return token.available_after + token.quantity


# ── Saga ログ ────────────────────────────────────


def _begin(saga_log: list[dict], action: str) -> None:
    saga_log.append(
        {
            "step": len(saga_log) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )


def _complete(saga_log: list[dict]) -> None:
    saga_log[-1]["status"] = "COMPLETED"


def _fail(saga_log: list[dict], error: BaseException) -> None:
    saga_log[-1]["status"] = "FAILED"
    saga_log[-1]["error"] = str(error) or type(error).__name__


def _error_code(error: BaseException) -> str:
    if isinstance(error, OrderingError):
        return error.code
    return type(error).__name__


def _error_detail(error: BaseException) -> str:
    if isinstance(error, OrderingError):
        return error.message
    return str(error) or type(error).__name__
