"""
在庫台帳 (Inventory Ledger)

SKU ごとの在庫数の唯一の真実。在庫を変更できるのはこのクラスだけ。

引き当て(reserve)は「読んでから書く」ではなく、条件付き UPDATE 1文で行う:

    UPDATE inventory_records
    SET available = available - :q, reserved = reserved + :q, version = version + 1
    WHERE sku = :sku AND available >= :q

影響行数が 0 なら在庫不足。チェックと減算が同じ文なので、
複数プロセスから同時に呼ばれても available が負になることはない。

commit / release / reverse は冪等。既に遷移済みのトークンに対しては
何もせず現在の状態を返す(タイムアウト後の再試行を許容するため)。
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..audit import AuditAction, AuditEvent, AuditTrail, EntityType
from ..db import as_utc, inventory_records, reservations, utcnow
from ..errors import (
    InsufficientStockError,
    NotFoundError,
    PersistenceError,
    ReservationExpiredError,
    ValidationError,
)
from .aggregate import InventoryRecord, ReservationState, ReservationToken

logger = logging.getLogger(__name__)

# 遷移先ごとの在庫の増減 (available, reserved)
_INVENTORY_DELTAS = {
    ReservationState.COMMITTED: (0, -1),
    ReservationState.RELEASED: (1, -1),
    ReservationState.REVERSED: (1, 0),
}


class InventoryLedger:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        reservation_ttl: float = 300.0,
        audit: AuditTrail | None = None,
    ):
        self.session_factory = session_factory
        self.reservation_ttl = timedelta(seconds=reservation_ttl)
        self.audit = audit

    # ── 引き当て ─────────────────────────────────

    async def reserve(
        self,
        sku: str,
        quantity: int,
        *,
        placement_id: UUID | None = None,
    ) -> ReservationToken:
        """
        available から quantity を引き当てプールへ移し、トークンを返す。
        在庫不足なら副作用なしで InsufficientStockError。
        """
        if quantity <= 0:
            raise ValidationError(f"Reservation quantity must be positive, got {quantity}")

        now = utcnow()
        token = uuid4()
        expires_at = now + self.reservation_ttl

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(inventory_records)
                    .where(
                        inventory_records.c.sku == sku,
                        inventory_records.c.available >= quantity,
                    )
                    .values(
                        available=inventory_records.c.available - quantity,
                        reserved=inventory_records.c.reserved + quantity,
                        version=inventory_records.c.version + 1,
                        updated_at=now,
                    )
                )
                if result.rowcount == 0:
                    await session.rollback()
                    available = await self._available(session, sku)
                    raise InsufficientStockError(sku, quantity, available)

                await session.execute(
                    insert(reservations).values(
                        token=token,
                        sku=sku,
                        quantity=quantity,
                        placement_id=placement_id,
                        state=ReservationState.HELD.value,
                        created_at=now,
                        expires_at=expires_at,
                        updated_at=now,
                    )
                )
                available_after = await self._available(session, sku)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to reserve {sku}: {exc}") from exc

        logger.debug("Reserved %d x %s (token=%s)", quantity, sku, token)
        return ReservationToken(
            token=token,
            sku=sku,
            quantity=quantity,
            placement_id=placement_id,
            created_at=now,
            expires_at=expires_at,
            available_after=available_after,
        )

    async def commit(self, token: ReservationToken) -> ReservationState:
        """引き当てを確定する。HELD 以外なら何もしない。"""
        return await self._transition_one(token, ReservationState.HELD, ReservationState.COMMITTED)

    async def release(self, token: ReservationToken) -> ReservationState:
        """引き当てを解放して available に戻す。HELD 以外なら何もしない。"""
        return await self._transition_one(token, ReservationState.HELD, ReservationState.RELEASED)

    async def reverse(self, token: ReservationToken) -> ReservationState:
        """確定済みの減算を取り消して available に戻す。COMMITTED 以外なら何もしない。"""
        return await self._transition_one(token, ReservationState.COMMITTED, ReservationState.REVERSED)

    async def commit_many(self, tokens: Iterable[ReservationToken]) -> None:
        """
        複数の引き当てを1トランザクションで確定する。

        どれか1つでも既に解放されていた(スイーパーが期限切れとして回収した)場合は
        何も確定せず ReservationExpiredError を送出する。
        """
        tokens = list(tokens)
        now = utcnow()
        expired: list[str] = []
        try:
            async with self.session_factory() as session:
                for token in tokens:
                    state = await self._transition(
                        session,
                        token.token,
                        ReservationState.HELD,
                        ReservationState.COMMITTED,
                        now,
                    )
                    if state is not ReservationState.COMMITTED:
                        expired.append(token.sku)
                if expired:
                    await session.rollback()
                    raise ReservationExpiredError(expired)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to commit reservations: {exc}") from exc

    async def release_many(self, tokens: Iterable[ReservationToken]) -> None:
        tokens = list(tokens)
        if not tokens:
            return
        now = utcnow()
        try:
            async with self.session_factory() as session:
                for token in tokens:
                    await self._transition(
                        session,
                        token.token,
                        ReservationState.HELD,
                        ReservationState.RELEASED,
                        now,
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to release reservations: {exc}") from exc

    async def reverse_many(self, tokens: Iterable[ReservationToken]) -> None:
        tokens = list(tokens)
        if not tokens:
            return
        now = utcnow()
        try:
            async with self.session_factory() as session:
                for token in tokens:
                    await self._transition(
                        session,
                        token.token,
                        ReservationState.COMMITTED,
                        ReservationState.REVERSED,
                        now,
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to reverse reservations: {exc}") from exc

    async def reservation_state(self, token: ReservationToken) -> ReservationState:
        try:
            async with self.session_factory() as session:
                state = await session.scalar(
                    select(reservations.c.state).where(reservations.c.token == token.token)
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to read reservation: {exc}") from exc
        if state is None:
            raise NotFoundError("Reservation", token.token)
        return ReservationState(state)

    # ── 入荷・期限切れ回収 ───────────────────────

    async def receive_stock(self, sku: str, quantity: int, *, actor: str = "system") -> InventoryRecord:
        """
        入荷: available に quantity を加える。SKU が未登録なら作成する。
        在庫が台帳に入る唯一の経路。
        """
        if quantity <= 0:
            raise ValidationError(f"Received quantity must be positive, got {quantity}")

        now = utcnow()
        try:
            async with self.session_factory() as session:
                before = await self._load_record(session, sku)
                if before is None:
                    await session.execute(
                        insert(inventory_records).values(
                            sku=sku,
                            available=quantity,
                            reserved=0,
                            version=1,
                            updated_at=now,
                        )
                    )
                    action = AuditAction.CREATE
                else:
                    await session.execute(
                        update(inventory_records)
                        .where(inventory_records.c.sku == sku)
                        .values(
                            available=inventory_records.c.available + quantity,
                            version=inventory_records.c.version + 1,
                            updated_at=now,
                        )
                    )
                    action = AuditAction.UPDATE
                after = await self._load_record(session, sku)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to receive stock for {sku}: {exc}") from exc

        logger.info("Received %d x %s (available=%d)", quantity, sku, after.available)
        if self.audit is not None:
            await self.audit.append(
                AuditEvent(
                    entity_type=EntityType.INVENTORY_RECORD,
                    entity_id=sku,
                    action=action,
                    actor=actor,
                    before=before.model_dump(mode="json") if before else None,
                    after=after.model_dump(mode="json"),
                )
            )
        return after

    async def sweep_expired(self, now: datetime | None = None) -> list[ReservationToken]:
        """
        期限切れの HELD 引き当てを強制解放する。

        Coordinator が処理の途中で落ちた場合の安全網であり、
        通常の解放経路ではない。
        """
        now = now or utcnow()
        released: list[ReservationToken] = []
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(reservations)
                    .where(
                        reservations.c.state == ReservationState.HELD.value,
                        reservations.c.expires_at <= now,
                    )
                    .order_by(reservations.c.expires_at.asc())
                )
                for row in result.fetchall():
                    state = await self._transition(
                        session,
                        row.token,
                        ReservationState.HELD,
                        ReservationState.RELEASED,
                        now,
                    )
                    if state is ReservationState.RELEASED:
                        released.append(_row_to_token(row))
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to sweep expired reservations: {exc}") from exc

        if released:
            logger.warning("Released %d expired reservation(s)", len(released))
        if released and self.audit is not None:
            await self.audit.append_many(
                [
                    AuditEvent(
                        entity_type=EntityType.INVENTORY_RECORD,
                        entity_id=token.sku,
                        action=AuditAction.UPDATE,
                        actor="sweeper",
                        before={"reservation": str(token.token), "state": ReservationState.HELD.value},
                        after={
                            "reservation": str(token.token),
                            "state": ReservationState.RELEASED.value,
                            "quantity": token.quantity,
                            "reason": "expired",
                        },
                    )
                    for token in released
                ]
            )
        return released

    # ── 読み取り (リードモデル) ─────────────────

    async def current_available(self, sku: str) -> int:
        """
        available のスナップショット。レポート用であり、
        Coordinator の判断には使わない(必ず reserve を使う)。
        """
        try:
            async with self.session_factory() as session:
                return await self._available(session, sku)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to read inventory for {sku}: {exc}") from exc

    async def get_record(self, sku: str) -> InventoryRecord:
        try:
            async with self.session_factory() as session:
                record = await self._load_record(session, sku)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to read inventory for {sku}: {exc}") from exc
        if record is None:
            raise NotFoundError("InventoryRecord", sku)
        return record

    async def list_records(self) -> list[InventoryRecord]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(inventory_records).order_by(inventory_records.c.sku)
                )
                rows = result.fetchall()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to list inventory: {exc}") from exc
        return [_row_to_record(row) for row in rows]

    # ── 内部処理 ─────────────────────────────────

    async def _transition_one(
        self,
        token: ReservationToken,
        source: ReservationState,
        target: ReservationState,
    ) -> ReservationState:
        try:
            async with self.session_factory() as session:
                state = await self._transition(session, token.token, source, target, utcnow())
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to update reservation {token.token}: {exc}") from exc
        return state

    async def _transition(
        self,
        session: AsyncSession,
        token_id: UUID,
        source: ReservationState,
        target: ReservationState,
        now: datetime,
    ) -> ReservationState:
        """
        source → target への遷移を試み、遷移後(または既存)の状態を返す。
        状態が source でなければ在庫には触れない。
        """
        row = (
            await session.execute(
                select(reservations.c.sku, reservations.c.quantity, reservations.c.state)
                .where(reservations.c.token == token_id)
            )
        ).fetchone()
        if row is None:
            raise NotFoundError("Reservation", token_id)
        if row.state != source.value:
            return ReservationState(row.state)

        result = await session.execute(
            update(reservations)
            .where(
                reservations.c.token == token_id,
                reservations.c.state == source.value,
            )
            .values(state=target.value, updated_at=now)
        )
        if result.rowcount == 0:
            # 別の呼び出しが先に遷移させた
            current = await session.scalar(
                select(reservations.c.state).where(reservations.c.token == token_id)
            )
            return ReservationState(current)

        available_delta, reserved_delta = _INVENTORY_DELTAS[target]
        await session.execute(
            update(inventory_records)
            .where(inventory_records.c.sku == row.sku)
            .values(
                available=inventory_records.c.available + available_delta * row.quantity,
                reserved=inventory_records.c.reserved + reserved_delta * row.quantity,
                version=inventory_records.c.version + 1,
                updated_at=now,
            )
        )
        return target

    async def _available(self, session: AsyncSession, sku: str) -> int:
        available = await session.scalar(
            select(inventory_records.c.available).where(inventory_records.c.sku == sku)
        )
        return available or 0

    async def _load_record(self, session: AsyncSession, sku: str) -> InventoryRecord | None:
        row = (
            await session.execute(
                select(inventory_records).where(inventory_records.c.sku == sku)
            )
        ).fetchone()
        return _row_to_record(row) if row else None


def _row_to_record(row) -> InventoryRecord:
    return InventoryRecord(
        sku=row.sku,
        available=row.available,
        reserved=row.reserved,
        version=row.version,
        updated_at=as_utc(row.updated_at),
    )


def _row_to_token(row) -> ReservationToken:
    return ReservationToken(
        token=row.token,
        sku=row.sku,
        quantity=row.quantity,
        placement_id=row.placement_id,
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
    )
