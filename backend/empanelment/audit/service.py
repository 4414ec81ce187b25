"""Audit logging service: the hash chain writer and audit trail queries."""

import asyncio
import logging
import re
import weakref
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, distinct, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from empanelment.audit.hashing import (
    GENESIS_HASH,
    compute_record_hash,
    format_hash_timestamp,
    normalize_snapshot,
)
from empanelment.core.metrics import track_audit_log
from empanelment.models.audit import AuditCategory, AuditLog, AuditSeverity

logger = logging.getLogger(__name__)


# =============================================================================
# Sensitive value redaction
# =============================================================================

# Fields whose values never enter the audit trail
SENSITIVE_FIELDS = {
    # Authentication secrets
    "password", "hashed_password", "password_hash", "otp", "otp_code",
    "token", "access_token", "refresh_token", "secret", "api_key",
    # Identity documents
    "aadhaar", "aadhaar_number", "aadhaarnumber", "pan", "pan_number", "pannumber",
    # Banking
    "account_number", "accountnumber", "bank_account", "bank_account_number",
}

SENSITIVE_PATTERNS = [
    # PAN: 5 letters, 4 digits, 1 letter
    (re.compile(r"\b[A-Z]{5}\d{4}[A-Z]\b"), "[PAN_REDACTED]"),
]

# Aadhaar: 12 digits, optionally grouped 4-4-4. Only matched under identity
# document keys; payment UTRs and application numbers share the shape.
AADHAAR_PATTERN = re.compile(r"\b\d{4}\s?\d{4}\s?\d{4}\b")
AADHAAR_KEY_HINTS = ("aadhaar", "aadhar", "uidai")


def _is_aadhaar_key(key: Any) -> bool:
    normalized = str(key).lower().replace("_", "").replace("-", "")
    return any(hint in normalized for hint in AADHAAR_KEY_HINTS)


def redact_value(value: Any, identity_context: bool = False) -> Any:
    """Redact sensitive data from a single value.

    Handles strings, dicts, and lists recursively. Aadhaar-shaped numbers
    are only redacted inside an identity document value.
    """
    if isinstance(value, str):
        result = value
        for pattern, replacement in SENSITIVE_PATTERNS:
            result = pattern.sub(replacement, result)
        if identity_context:
            result = AADHAAR_PATTERN.sub("[AADHAAR_REDACTED]", result)
        return result
    if isinstance(value, dict):
        return redact_dict(value, identity_context)
    if isinstance(value, list):
        return [redact_value(item, identity_context) for item in value]
    return value


def redact_dict(data: dict | None, identity_context: bool = False) -> dict | None:
    """Redact sensitive fields from a snapshot before it is hashed and stored."""
    if not data:
        return data

    result = {}
    for key, value in data.items():
        if str(key).lower() in SENSITIVE_FIELDS:
            if value is None:
                result[key] = None
            elif isinstance(value, str) and len(value) > 4:
                # Keep last 4 chars so officers can still match documents
                result[key] = f"****{value[-4:]}"
            else:
                result[key] = "[REDACTED]"
        else:
            result[key] = redact_value(value, identity_context or _is_aadhaar_key(key))
    return result


# =============================================================================
# Append serialisation
# =============================================================================

# Advisory lock key shared by every process appending to the chain ("AUDT")
CHAIN_LOCK_KEY = 0x41554454

_append_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
    weakref.WeakKeyDictionary()
)


def _to_utc(moment: datetime) -> datetime:
    # Naive datetimes are taken as UTC, the zone every record is written in
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _append_lock() -> asyncio.Lock:
    """Return the in-process append lock for the running event loop."""
    loop = asyncio.get_running_loop()
    lock = _append_locks.get(loop)
    if lock is None:
        lock = asyncio.Lock()
        _append_locks[loop] = lock
    return lock


class AuditLogService:
    """
    Service for recording and querying audit logs.

    All entries are immutable and linked into a single hash chain ordered
    by sequence_number.
    """

    GENESIS_HASH = GENESIS_HASH

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _acquire_chain_lock(self) -> None:
        """Serialise appenders across processes for the current transaction.

        On PostgreSQL this takes a transaction-scoped advisory lock, released
        when the caller commits or rolls back. Other backends rely on the
        in-process lock plus the unique constraint on sequence_number.
        """
        if self.db.get_bind().dialect.name == "postgresql":
            await self.db.execute(
                text("SELECT pg_advisory_xact_lock(:key)"),
                {"key": CHAIN_LOCK_KEY},
            )

    async def _get_chain_head(self) -> tuple[int, str]:
        """Return (sequence_number, record_hash) of the latest record.

        Returns (0, "GENESIS") for an empty chain.
        """
        result = await self.db.execute(
            select(AuditLog.sequence_number, AuditLog.record_hash)
            .order_by(AuditLog.sequence_number.desc())
            .limit(1)
        )
        head = result.first()
        if head is None:
            return 0, self.GENESIS_HASH
        return head.sequence_number, head.record_hash

    async def log(
        self,
        action: str,
        entity_type: str,
        entity_id: str | None = None,
        user_id: str | None = None,
        old_values: dict | None = None,
        new_values: dict | None = None,
        category: AuditCategory | str | None = None,
        severity: AuditSeverity | str | None = None,
        user_role: str | None = None,
        session_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditLog:
        """
        Append an immutable audit record to the hash chain.

        Reading the chain head, assigning the next sequence number and
        inserting the row happen under the append lock, so the record given
        sequence N always links to the record actually given N-1.

        The record is flushed, not committed; the caller owns the transaction.

        Args:
            action: Free-text verb, e.g. "APPLICATION_SUBMITTED"
            entity_type: Logical type acted upon, e.g. "Application"
            entity_id: ID of the entity (stored as "" when absent)
            user_id: Actor, None for system-initiated actions
            old_values: Snapshot before the action
            new_values: Snapshot after the action
            category: Functional area (default GENERAL)
            severity: INFO, WARNING or CRITICAL (default INFO)
            user_role, session_id, ip_address, user_agent: request context

        Returns:
            The persisted AuditLog with sequence_number and hashes set

        Raises:
            ValueError: action or entity_type is empty
            SQLAlchemyError: the write failed; propagated unmodified
        """
        if not action or not action.strip():
            raise ValueError("action is required")
        if not entity_type or not entity_type.strip():
            raise ValueError("entity_type is required")

        audit_category = AuditCategory(category) if category else AuditCategory.GENERAL
        audit_severity = AuditSeverity(severity) if severity else AuditSeverity.INFO

        stored_old = normalize_snapshot(redact_dict(old_values)) if old_values is not None else None
        stored_new = normalize_snapshot(redact_dict(new_values)) if new_values is not None else None
        stored_entity_id = "" if entity_id is None else str(entity_id)

        try:
            # Advisory lock first: it is re-entrant within a transaction, so a
            # caller appending twice before committing never waits on itself
            await self._acquire_chain_lock()
            async with _append_lock():
                head_sequence, previous_hash = await self._get_chain_head()

                now = datetime.now(timezone.utc)
                hashed_at = format_hash_timestamp(now)

                entry = AuditLog(
                    sequence_number=head_sequence + 1,
                    action=action,
                    category=audit_category,
                    severity=audit_severity,
                    entity_type=entity_type,
                    entity_id=stored_entity_id,
                    user_id=user_id,
                    user_role=user_role,
                    session_id=session_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    old_values=stored_old,
                    new_values=stored_new,
                    previous_hash=previous_hash,
                    record_hash=compute_record_hash(
                        action=action,
                        entity_type=entity_type,
                        entity_id=stored_entity_id,
                        user_id=user_id,
                        old_values=stored_old,
                        new_values=stored_new,
                        previous_hash=previous_hash,
                        timestamp=hashed_at,
                    ),
                    hashed_at=hashed_at,
                    created_at=now,
                )

                self.db.add(entry)
                await self.db.flush()
        except SQLAlchemyError:
            logger.error(
                "Failed to write audit log entry",
                exc_info=True,
                extra={
                    "event_type": "audit.write.failed",
                    "action": action,
                    "entity_type": entity_type,
                    "entity_id": stored_entity_id,
                },
            )
            raise

        track_audit_log(audit_category.value)
        logger.debug(
            "Audit record appended",
            extra={
                "event_type": "audit.write.appended",
                "sequence_number": entry.sequence_number,
                "action": action,
            },
        )
        return entry

    # =========================================================================
    # Queries
    # =========================================================================

    async def find_all(
        self,
        user_id: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        action: str | None = None,
        category: AuditCategory | None = None,
        severity: AuditSeverity | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[AuditLog], int]:
        """Search audit logs with filters, newest first."""
        conditions = []
        if user_id:
            conditions.append(AuditLog.user_id == user_id)
        if entity_type:
            conditions.append(AuditLog.entity_type == entity_type)
        if entity_id:
            conditions.append(AuditLog.entity_id == entity_id)
        if action:
            conditions.append(AuditLog.action.contains(action))
        if category:
            conditions.append(AuditLog.category == category)
        if severity:
            conditions.append(AuditLog.severity == severity)
        if date_from:
            conditions.append(AuditLog.created_at >= _to_utc(date_from))
        if date_to:
            conditions.append(AuditLog.created_at <= _to_utc(date_to))

        query = select(AuditLog)
        count_query = select(func.count(AuditLog.id))
        if conditions:
            query = query.where(and_(*conditions))
            count_query = count_query.where(and_(*conditions))

        total = (await self.db.execute(count_query)).scalar() or 0

        query = (
            query.order_by(AuditLog.sequence_number.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def find_by_entity(self, entity_type: str, entity_id: str) -> list[AuditLog]:
        """Get audit logs for a specific entity, newest first."""
        result = await self.db.execute(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.sequence_number.desc())
        )
        return list(result.scalars().all())

    async def find_by_user(self, user_id: str, limit: int = 100) -> list[AuditLog]:
        """Get user activity history, newest first."""
        result = await self.db.execute(
            select(AuditLog)
            .where(AuditLog.user_id == user_id)
            .order_by(AuditLog.sequence_number.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_entity_timeline(self, entity_type: str, entity_id: str) -> dict[str, Any]:
        """Full chronological audit trail for an entity, including chain hashes."""
        result = await self.db.execute(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.sequence_number.asc())
        )
        logs = list(result.scalars().all())

        return {
            "entity_type": entity_type,
            "entity_id": entity_id,
            "total_events": len(logs),
            "timeline": [
                {
                    "id": log.id,
                    "sequence_number": log.sequence_number,
                    "action": log.action,
                    "category": log.category.value,
                    "severity": log.severity.value,
                    "user_id": log.user_id,
                    "user_role": log.user_role,
                    "old_values": log.old_values,
                    "new_values": log.new_values,
                    "record_hash": log.record_hash,
                    "previous_hash": log.previous_hash,
                    "created_at": log.created_at,
                }
                for log in logs
            ],
        }

    async def get_recent_activity_summary(self) -> dict[str, Any]:
        """Summarise the last 24 hours: totals, top actions, severity and category mix."""
        one_day_ago = datetime.now(timezone.utc) - timedelta(days=1)
        recent = AuditLog.created_at >= one_day_ago

        total_actions = (
            await self.db.execute(select(func.count(AuditLog.id)).where(recent))
        ).scalar() or 0

        unique_users = (
            await self.db.execute(
                select(func.count(distinct(AuditLog.user_id))).where(
                    recent, AuditLog.user_id.is_not(None)
                )
            )
        ).scalar() or 0

        action_count = func.count(AuditLog.id).label("count")
        by_action = await self.db.execute(
            select(AuditLog.action, action_count)
            .where(recent)
            .group_by(AuditLog.action)
            .order_by(action_count.desc())
            .limit(10)
        )

        by_severity = await self.db.execute(
            select(AuditLog.severity, func.count(AuditLog.id)).where(recent).group_by(AuditLog.severity)
        )

        category_count = func.count(AuditLog.id).label("count")
        by_category = await self.db.execute(
            select(AuditLog.category, category_count)
            .where(recent)
            .group_by(AuditLog.category)
            .order_by(category_count.desc())
        )

        return {
            "last_24_hours": {
                "total_actions": total_actions,
                "unique_users": unique_users,
                "top_actions": [
                    {"action": action, "count": count} for action, count in by_action.all()
                ],
                "severity_breakdown": {
                    severity.value: count for severity, count in by_severity.all()
                },
                "category_breakdown": [
                    {"category": category.value, "count": count}
                    for category, count in by_category.all()
                ],
            }
        }
