from app.models.audit import AuditLog

__all__ = ["AuditLog"]
