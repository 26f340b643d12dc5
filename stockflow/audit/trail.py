"""
監査ログ (Audit Trail)

状態を変更する操作はすべてここにイベントを追記する。
追記専用: 行の UPDATE / DELETE は一切行わない。

sequence は単調増加なので、読み手は「最後に読んだ sequence」を
カーソルとして保持すれば、いつでも続きから読み直せる。

PostgreSQL のシーケンスは INSERT 時に払い出されるため、そのままでは
コミット順と sequence 順が食い違い、カーソルが未コミットの番号を飛び越える。
追記はトランザクション単位の advisory lock で直列化し、両者を一致させる。
"""

from collections.abc import AsyncIterator, Sequence

from sqlalchemy import insert, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..db import as_utc, audit_events
from ..errors import PersistenceError
from ..publisher import EventPublisher
from .events import AuditAction, AuditEvent, EntityType

# 追記の直列化に使う advisory lock のキー
APPEND_LOCK_KEY = 0x53544F43


class AuditTrail:
    def __init__(
        self,
        session_factory: sessionmaker,
        publisher: EventPublisher | None = None,
    ):
        self.session_factory = session_factory
        self.publisher = publisher or EventPublisher(None)

    async def append(self, event: AuditEvent) -> AuditEvent:
        """イベントを1件追記し、採番済みのイベントを返す。"""
        (stored,) = await self.append_many([event])
        return stored

    async def append_many(self, events: Sequence[AuditEvent]) -> list[AuditEvent]:
        """
        複数のイベントを1トランザクションで追記する。
        すべて書けるか、1件も書けないかのどちらか。
        """
        stored: list[AuditEvent] = []
        try:
            async with self.session_factory() as session:
                await _serialize_appends(session)
                for event in events:
                    result = await session.execute(
                        insert(audit_events).values(
                            entity_type=event.entity_type.value,
                            entity_id=event.entity_id,
                            action=event.action.value,
                            actor=event.actor,
                            created_at=event.created_at,
                            before=event.before,
                            after=event.after,
                        )
                    )
                    sequence = result.inserted_primary_key[0]
                    stored.append(event.model_copy(update={"sequence": sequence}))
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to append audit events: {exc}") from exc

        for event in stored:
            await self.publisher.publish(
                f"{event.entity_type.value}{event.action.value}",
                event.model_dump(mode="json"),
            )
        return stored

    async def load_events(
        self,
        since: int = 0,
        limit: int = 100,
        *,
        entity_type: EntityType | None = None,
        entity_id: str | None = None,
        action: AuditAction | None = None,
    ) -> list[AuditEvent]:
        """sequence が since より大きいイベントを sequence 順に返す。"""
        query = (
            select(audit_events)
            .where(audit_events.c.sequence > since)
            .order_by(audit_events.c.sequence.asc())
            .limit(limit)
        )
        if entity_type is not None:
            query = query.where(audit_events.c.entity_type == entity_type.value)
        if entity_id is not None:
            query = query.where(audit_events.c.entity_id == entity_id)
        if action is not None:
            query = query.where(audit_events.c.action == action.value)

        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                rows = result.fetchall()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to load audit events: {exc}") from exc
        return [_row_to_event(row) for row in rows]

    async def stream(self, since: int = 0, *, batch_size: int = 100) -> AsyncIterator[AuditEvent]:
        """
        since 以降のイベントを遅延評価で順に返す。

        呼び出し時点の末尾まで読んだら終了する(有限)。
        最後に受け取った sequence を since に渡せば続きから再開できる。
        """
        cursor = since
        while True:
            batch = await self.load_events(since=cursor, limit=batch_size)
            for event in batch:
                yield event
            if len(batch) < batch_size:
                return
            cursor = batch[-1].sequence


def _row_to_event(row) -> AuditEvent:
    return AuditEvent(
        sequence=row.sequence,
        entity_type=EntityType(row.entity_type),
        entity_id=row.entity_id,
        action=AuditAction(row.action),
        actor=row.actor,
        created_at=as_utc(row.created_at),
        before=row.before,
        after=row.after,
    )


async def _serialize_appends(session) -> None:
    """
    PostgreSQL ではコミットまで保持される advisory lock を取る。
    SQLite は書き込みトランザクション自体が直列なので何もしない。
    """
    if session.bind.dialect.name == "postgresql":
        await session.execute(
            text("SELECT pg_advisory_xact_lock(:key)"), {"key": APPEND_LOCK_KEY}
        )
