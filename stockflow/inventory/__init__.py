from .aggregate import InventoryRecord, ReservationState, ReservationToken
from .ledger import InventoryLedger

__all__ = ["InventoryLedger", "InventoryRecord", "ReservationState", "ReservationToken"]
