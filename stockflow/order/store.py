"""
注文ストア (Order Store)

注文と注文明細の永続化を担う。
価格は自分では取得しない: 購入時価格の取得は Coordinator の責務。
明細を更新する操作は存在しない(購入時価格は作成後に変わらない)。
"""

import logging
from collections.abc import Sequence
from uuid import UUID, uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..db import as_utc, order_lines, orders, utcnow
from ..errors import InvalidTransitionError, NotFoundError, PersistenceError, ValidationError
from .aggregate import Order, OrderLine, OrderLineDraft, OrderStatus, can_transition

logger = logging.getLogger(__name__)


class OrderStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # ── コマンド (Write 側) ──────────────────────

    async def create_order(self, customer_id: str, lines: Sequence[OrderLineDraft]) -> UUID:
        """注文を PENDING で作成し、明細と一緒に1トランザクションで保存する。"""
        if not lines:
            raise ValidationError("An order needs at least one line")

        order_id = uuid4()
        now = utcnow()
        try:
            async with self.session_factory() as session:
                await session.execute(
                    insert(orders).values(
                        id=order_id,
                        customer_id=customer_id,
                        status=OrderStatus.PENDING.value,
                        created_at=now,
                        updated_at=now,
                    )
                )
                await session.execute(
                    insert(order_lines),
                    [
                        {
                            "order_id": order_id,
                            "line_no": line_no,
                            "sku": line.sku,
                            "quantity": line.quantity,
                            "unit_price": line.unit_price,
                        }
                        for line_no, line in enumerate(lines, start=1)
                    ],
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to create order: {exc}") from exc

        logger.info("Created order %s for customer %s (%d lines)", order_id, customer_id, len(lines))
        return order_id

    async def update_status(
        self,
        order_id: UUID,
        new_status: OrderStatus,
        *,
        reason: str | None = None,
    ) -> Order:
        """
        状態を遷移させる。許可されていない遷移は InvalidTransitionError。

        UPDATE は現在の状態を条件に含めるので、
        同時に2つの遷移が走っても勝つのは片方だけ。
        """
        try:
            async with self.session_factory() as session:
                current = await session.scalar(
                    select(orders.c.status).where(orders.c.id == order_id)
                )
                if current is None:
                    raise NotFoundError("Order", order_id)
                current = OrderStatus(current)
                if not can_transition(current, new_status):
                    raise InvalidTransitionError(order_id, current.value, new_status.value)

                result = await session.execute(
                    update(orders)
                    .where(orders.c.id == order_id, orders.c.status == current.value)
                    .values(status=new_status.value, status_reason=reason, updated_at=utcnow())
                )
                if result.rowcount == 0:
                    await session.rollback()
                    latest = await session.scalar(
                        select(orders.c.status).where(orders.c.id == order_id)
                    )
                    raise InvalidTransitionError(order_id, latest, new_status.value)
                # 戻り値はコミット前に同じトランザクションで読む
                order = await self._load(session, order_id)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to update order {order_id}: {exc}") from exc

        logger.info("Order %s: %s -> %s", order_id, current.value, new_status.value)
        return order

    # ── クエリ (Read 側) ─────────────────────────

    async def get_order(self, order_id: UUID) -> Order:
        try:
            async with self.session_factory() as session:
                order = await self._load(session, order_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to load order {order_id}: {exc}") from exc
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def list_orders(
        self,
        *,
        status: OrderStatus | None = None,
        customer_id: str | None = None,
        limit: int = 100,
    ) -> list[Order]:
        """注文一覧を新しい順に返す。"""
        query = select(orders).order_by(orders.c.created_at.desc()).limit(limit)
        if status is not None:
            query = query.where(orders.c.status == status.value)
        if customer_id is not None:
            query = query.where(orders.c.customer_id == customer_id)

        try:
            async with self.session_factory() as session:
                rows = (await session.execute(query)).fetchall()
                lines = await self._load_lines(session, [row.id for row in rows])
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to list orders: {exc}") from exc
        return [_row_to_order(row, lines.get(row.id, [])) for row in rows]

    async def _load(self, session: AsyncSession, order_id: UUID) -> Order | None:
        row = (
            await session.execute(select(orders).where(orders.c.id == order_id))
        ).fetchone()
        if row is None:
            return None
        lines = await self._load_lines(session, [order_id])
        return _row_to_order(row, lines.get(order_id, []))

    async def _load_lines(
        self, session: AsyncSession, order_ids: list[UUID]
    ) -> dict[UUID, list[OrderLine]]:
        if not order_ids:
            return {}
        result = await session.execute(
            select(order_lines)
            .where(order_lines.c.order_id.in_(order_ids))
            .order_by(order_lines.c.order_id, order_lines.c.line_no)
        )
        lines: dict[UUID, list[OrderLine]] = {}
        for row in result.fetchall():
            lines.setdefault(row.order_id, []).append(
                OrderLine(
                    order_id=row.order_id,
                    line_no=row.line_no,
                    sku=row.sku,
                    quantity=row.quantity,
                    unit_price=row.unit_price,
                )
            )
        return lines


def _row_to_order(row, lines: list[OrderLine]) -> Order:
    return Order(
        order_id=row.id,
        customer_id=row.customer_id,
        status=OrderStatus(row.status),
        status_reason=row.status_reason,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        lines=tuple(lines),
    )
