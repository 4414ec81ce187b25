"""
Best-effort audit recording for request handlers and background jobs.

Business operations must not fail because their audit record could not be
written, so record_audit_event runs in its own session and swallows
failures after logging and counting them. Code that needs the audit write
to share its transaction calls AuditLogService.log directly instead.
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from empanelment.audit.alerts import AlertRulesService, AuditLogForEvaluation, alert_rules
from empanelment.audit.service import AuditLogService
from empanelment.core.metrics import track_audit_log
from empanelment.models.audit import AuditAction, AuditCategory, AuditLog, AuditSeverity

logger = logging.getLogger(__name__)


async def record_audit_event(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    evaluate_alerts: bool = True,
    rules: AlertRulesService | None = None,
    **fields: Any,
) -> AuditLog | None:
    """
    Append an audit record in a fresh session and commit it.

    After the commit the record is evaluated against the active alert rules
    and an ALERT_TRIGGERED record is appended for every rule that fired.

    Args:
        session_factory: Factory for the session the record is written in
        evaluate_alerts: Set False to skip alert rule evaluation
        rules: Alert rule set, defaults to the process-wide one
        **fields: Passed to AuditLogService.log

    Returns:
        The committed AuditLog, or None if the write failed
    """
    try:
        async with session_factory() as session:
            service = AuditLogService(session)
            entry = await service.log(**fields)
            await session.commit()
    except Exception:
        logger.exception(
            "Audit event could not be recorded",
            extra={
                "event_type": "audit.write.dropped",
                "action": fields.get("action"),
                "entity_type": fields.get("entity_type"),
            },
        )
        category = fields.get("category") or AuditCategory.GENERAL
        track_audit_log(getattr(category, "value", category), success=False)
        return None

    if evaluate_alerts:
        await _record_triggered_alerts(session_factory, entry, rules or alert_rules)
    return entry


async def _record_triggered_alerts(
    session_factory: async_sessionmaker[AsyncSession],
    entry: AuditLog,
    rules: AlertRulesService,
) -> None:
    try:
        alerts = await rules.evaluate_rules(AuditLogForEvaluation.from_record(entry))
        if not alerts:
            return

        async with session_factory() as session:
            service = AuditLogService(session)
            for alert in alerts:
                await service.log(
                    action=AuditAction.ALERT_TRIGGERED.value,
                    entity_type="AlertRule",
                    entity_id=alert.rule.id,
                    category=AuditCategory.SYSTEM,
                    severity=AuditSeverity.WARNING,
                    new_values={
                        "rule_name": alert.rule.name,
                        "rule_severity": alert.rule.severity.value,
                        "triggered_by_log_id": entry.id,
                        "triggered_by_action": entry.action,
                        "details": alert.details,
                    },
                )
            await session.commit()
    except Exception:
        logger.exception(
            "Failed to record triggered alerts",
            extra={"event_type": "alert.record.failed", "audit_log_id": entry.id},
        )
        track_audit_log(AuditCategory.SYSTEM.value, success=False)
