from .events import AuditAction, AuditEvent, EntityType
from .trail import AuditTrail

__all__ = ["AuditAction", "AuditEvent", "AuditTrail", "EntityType"]
