from .audit import AuditAction, AuditLogEntry, JsonlAuditLog, ResourceType

__all__ = ['AuditAction', 'AuditLogEntry', 'JsonlAuditLog', 'ResourceType']
