"""
監査イベント定義

イベントは過去に起きた事実であり、不変(immutable)として扱う。
追記のみ可能で、更新・削除はしない。
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..db import utcnow


class AuditAction(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    RESERVATION_FAILED = "ReservationFailed"
    PLACEMENT_FAILED = "PlacementFailed"


class EntityType(str, Enum):
    ORDER = "Order"
    ORDER_LINE = "OrderLine"
    INVENTORY_RECORD = "InventoryRecord"
    PLACEMENT = "Placement"


class AuditEvent(BaseModel):
    """監査ログの1行。sequence は追記時に採番される単調増加のカーソル。"""

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: str
    action: AuditAction
    actor: str = "system"
    created_at: datetime = Field(default_factory=utcnow)
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    sequence: int | None = None
