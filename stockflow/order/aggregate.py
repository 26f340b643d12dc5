"""
注文集約 (Order Aggregate)

状態遷移:
    PENDING → CONFIRMED  (引き当て確定 = 成功)
    PENDING → FAILED     (永続化・確定の失敗)
    CONFIRMED → CANCELLED  (キャンセル。在庫の返却は返金側の責務)

注文は物理削除しない。状態で論理削除を表す。
注文明細の unit_price は購入時のスナップショットで、作成後は変わらない。
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class OrderStatus(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.FAILED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.CANCELLED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


class OrderLineDraft(BaseModel):
    """永続化前の注文明細。価格は呼び出し側(Coordinator)が取得済み。"""

    model_config = ConfigDict(frozen=True)

    sku: str
    quantity: int
    unit_price: Decimal


class OrderLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: UUID
    line_no: int
    sku: str
    quantity: int
    unit_price: Decimal

    @property
    def line_id(self) -> str:
        return f"{self.order_id}:{self.line_no}"

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Order(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: UUID
    customer_id: str
    status: OrderStatus
    status_reason: str | None = None
    created_at: datetime
    updated_at: datetime
    lines: tuple[OrderLine, ...] = ()

    @property
    def total_price(self) -> Decimal:
        return sum((line.line_total for line in self.lines), Decimal("0"))

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)
