"""
データベース定義

各コンポーネント(在庫台帳・注文ストア・監査ログ)は独自のエンジンを持つ。
同じデータベースを共有してもよいし、別々のデータベースに分けてもよい。

  inventory_records  SKU ごとの在庫 (available / reserved / version)
  reservations       引き当てトークン (Held → Committed | Released)
  orders             注文 (論理削除のみ。物理削除はしない)
  order_lines        注文明細 (購入時価格のスナップショット)
  audit_events       監査イベント (追記専用)
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Uuid,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

metadata = MetaData()

inventory_records = Table(
    "inventory_records",
    metadata,
    Column("sku", String(64), primary_key=True),
    Column("available", Integer, nullable=False, default=0),
    Column("reserved", Integer, nullable=False, default=0),
    Column("version", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("available >= 0", name="ck_inventory_available_non_negative"),
    CheckConstraint("reserved >= 0", name="ck_inventory_reserved_non_negative"),
)

reservations = Table(
    "reservations",
    metadata,
    Column("token", Uuid, primary_key=True),
    Column("sku", String(64), nullable=False, index=True),
    Column("quantity", Integer, nullable=False),
    Column("placement_id", Uuid, nullable=True),
    Column("state", String(16), nullable=False, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("customer_id", String(64), nullable=False, index=True),
    Column("status", String(16), nullable=False, index=True),
    Column("status_reason", String(500), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column("order_id", Uuid, ForeignKey("orders.id"), primary_key=True),
    Column("line_no", Integer, primary_key=True),
    Column("sku", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
    CheckConstraint("quantity > 0", name="ck_order_line_quantity_positive"),
)

audit_events = Table(
    "audit_events",
    metadata,
    # SQLite では INTEGER PRIMARY KEY だけが自動採番される
    Column(
        "sequence",
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    ),
    Column("entity_type", String(32), nullable=False),
    Column("entity_id", String(128), nullable=False, index=True),
    Column("action", String(32), nullable=False),
    Column("actor", String(64), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("before", JSON, nullable=True),
    Column("after", JSON, nullable=True),
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite はタイムゾーンを保存しないので、読み出し時に UTC を付け直す。"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def create_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, echo=False)


def session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する(既存テーブルには触れない)。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
