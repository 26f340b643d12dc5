"""
在庫台帳のモデル

InventoryRecord: SKU ごとの在庫。available は決して負にならない。
ReservationToken: 引き当て(仮押さえ)を表すハンドル。

引き当ての状態遷移:
    HELD → COMMITTED  (注文確定。引き当て分はそのまま減算として確定)
    HELD → RELEASED   (補償 / 期限切れ。available に戻す)
    COMMITTED → REVERSED  (確定後に注文確定が失敗した場合の補償)
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class ReservationState(str, Enum):
    HELD = "Held"
    COMMITTED = "Committed"
    RELEASED = "Released"
    REVERSED = "Reversed"


class InventoryRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    sku: str
    available: int
    reserved: int
    version: int
    updated_at: datetime


class ReservationToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: UUID
    sku: str
    quantity: int
    placement_id: UUID | None
    created_at: datetime
    expires_at: datetime
    # 引き当て直後の available (監査ログのスナップショット用)
    available_after: int | None = None
