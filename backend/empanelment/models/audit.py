"""Audit log models."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Enum as SQLEnum, Index, String, Text, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from empanelment.audit.hashing import compute_record_hash
from empanelment.db.session import Base
from empanelment.models.base import UUIDMixin

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class AuditCategory(str, Enum):
    """Functional area an audit record belongs to."""

    APPLICATION = "APPLICATION"
    DOCUMENT = "DOCUMENT"
    PAYMENT = "PAYMENT"
    USER = "USER"
    EVALUATION = "EVALUATION"
    FIELD_VERIFICATION = "FIELD_VERIFICATION"
    CERTIFICATE = "CERTIFICATE"
    QUERY = "QUERY"
    NOTIFICATION = "NOTIFICATION"
    SYSTEM = "SYSTEM"
    GENERAL = "GENERAL"


class AuditSeverity(str, Enum):
    """Severity attached to an audit record."""

    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class AuditAction(str, Enum):
    """
    Actions recorded by the audit subsystem itself.

    Business modules pass their own free-text verbs
    (e.g. "APPLICATION_SUBMITTED"); these are the ones emitted here.
    """

    AUDIT_CHAIN_VERIFIED = "AUDIT_CHAIN_VERIFIED"
    AUDIT_VERIFICATION_SCHEDULED = "AUDIT_VERIFICATION_SCHEDULED"
    ALERT_TRIGGERED = "ALERT_TRIGGERED"
    ALERT_RULE_CREATED = "ALERT_RULE_CREATED"
    ALERT_RULE_UPDATED = "ALERT_RULE_UPDATED"
    ALERT_RULE_DELETED = "ALERT_RULE_DELETED"


class AuditLogImmutableError(RuntimeError):
    """Raised when code attempts to modify or delete a written audit record."""


class AuditLog(Base, UUIDMixin):
    """
    Immutable, hash-chained audit log entry.

    IMMUTABILITY ENFORCEMENT:
    - DB-level trigger blocks UPDATE and DELETE operations (see migration 001)
    - ORM listeners below refuse to flush changes or deletes
    - No updated_at column - entries are write-once

    CHAIN:
    - sequence_number is unique and assigned under the append lock
    - previous_hash is the record_hash of sequence_number - 1, or "GENESIS"
    - record_hash = SHA256(canonical {action, entityId, entityType, userId,
      oldValues, newValues, previousHash, timestamp=hashed_at})
    """

    __tablename__ = "audit_logs"

    sequence_number: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    category: Mapped[AuditCategory] = mapped_column(
        SQLEnum(AuditCategory, name="audit_category", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=AuditCategory.GENERAL,
    )
    severity: Mapped[AuditSeverity] = mapped_column(
        SQLEnum(AuditSeverity, name="audit_severity", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=AuditSeverity.INFO,
    )

    # Entity acted upon
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    # Actor - users live in another module, so no foreign key
    user_id: Mapped[str | None] = mapped_column(String(36), index=True)
    user_role: Mapped[str | None] = mapped_column(String(50))
    session_id: Mapped[str | None] = mapped_column(String(64))
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(Text)

    # Before/after snapshots
    old_values: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JSONType)

    # Chain fields
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    record_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # Exact timestamp string fed to the hash; reused verbatim on verification
    hashed_at: Mapped[str] = mapped_column(String(32), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    def compute_record_hash(self, previous_hash: str | None = None) -> str:
        """Compute the SHA-256 chain hash from this record's stored fields.

        Args:
            previous_hash: Hash of the preceding record. If None, uses
                          self.previous_hash. Pass "GENESIS" for the first record.
        """
        prev_hash = previous_hash if previous_hash is not None else self.previous_hash
        return compute_record_hash(
            action=self.action,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            user_id=self.user_id,
            old_values=self.old_values,
            new_values=self.new_values,
            previous_hash=prev_hash,
            timestamp=self.hashed_at,
        )

    def verify_integrity(self) -> bool:
        """Return True if the stored record_hash matches the recomputed hash."""
        if not self.record_hash:
            return False
        return self.record_hash == self.compute_record_hash()

    def __repr__(self) -> str:
        return f"<AuditLog #{self.sequence_number} {self.action} {self.entity_type}:{self.entity_id}>"

    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
        Index("ix_audit_logs_user_created", "user_id", "created_at"),
        Index("ix_audit_logs_category_created", "category", "created_at"),
    )


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target: AuditLog) -> None:
    raise AuditLogImmutableError(
        f"Audit record {target.id} (sequence {target.sequence_number}) is immutable"
    )


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target: AuditLog) -> None:
    raise AuditLogImmutableError(
        f"Audit record {target.id} (sequence {target.sequence_number}) cannot be deleted"
    )
