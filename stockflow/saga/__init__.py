from .coordinator import OrderPlacementCoordinator

__all__ = ["OrderPlacementCoordinator"]
