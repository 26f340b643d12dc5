from .aggregate import Order, OrderLine, OrderLineDraft, OrderStatus
from .store import OrderStore

__all__ = ["Order", "OrderLine", "OrderLineDraft", "OrderStatus", "OrderStore"]
