"""Database models."""

from empanelment.models.audit import (
    AuditAction,
    AuditCategory,
    AuditLog,
    AuditLogImmutableError,
    AuditSeverity,
)

__all__ = [
    "AuditAction",
    "AuditCategory",
    "AuditLog",
    "AuditLogImmutableError",
    "AuditSeverity",
]
