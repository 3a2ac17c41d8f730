"""Operator-facing audit artifacts."""

from backend.app.observability.audit import AuditEventType, WriteAuditLog

__all__ = ["AuditEventType", "WriteAuditLog"]
