"""
Real-time alert rules evaluated against freshly written audit records.

Rules live in process memory: five predefined rules plus any custom rules
created at runtime. Matching alerts are logged, counted, optionally posted
to a webhook, and returned to the caller so it can append ALERT_TRIGGERED
records to the chain.
"""

import logging
import re
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo

import httpx

from empanelment.core.config import settings
from empanelment.core.metrics import track_alert
from empanelment.models.audit import AuditLog

logger = logging.getLogger(__name__)


def hour_in_window(hour: int, start: int, end: int) -> bool:
    """True if a clock hour falls in [start, end), wrapping past midnight when start > end."""
    if start > end:
        return hour >= start or hour < end
    return start <= hour < end


class AlertRuleSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass
class AlertCondition:
    """All present conditions must match for a rule to fire."""

    action_pattern: str | None = None  # regex, case-insensitive
    entity_type: str | None = None
    severity: str | None = None  # audit severity, exact match
    user_role: str | None = None
    after_hours: bool = False
    bulk_threshold: int | None = None
    bulk_time_window_seconds: int | None = None
    bulk_action: str | None = None


@dataclass
class AlertRule:
    id: str
    name: str
    condition: AlertCondition
    severity: AlertRuleSeverity
    enabled: bool = True
    description: str | None = None
    notify_webhook: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        return data


@dataclass
class AuditLogForEvaluation:
    """The fields of an audit record that rules look at."""

    id: str
    action: str
    entity_type: str
    entity_id: str
    user_id: str | None
    user_role: str | None
    severity: str
    created_at: datetime

    @classmethod
    def from_record(cls, record: AuditLog) -> "AuditLogForEvaluation":
        created_at = record.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return cls(
            id=record.id,
            action=record.action,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            user_id=record.user_id,
            user_role=record.user_role,
            severity=getattr(record.severity, "value", record.severity),
            created_at=created_at,
        )


@dataclass
class TriggeredAlert:
    rule: AlertRule
    audit_log: AuditLogForEvaluation
    details: str
    triggered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _predefined_rules() -> list[AlertRule]:
    return [
        AlertRule(
            id="CRITICAL_ACTION",
            name="Critical Action Alert",
            description="Triggers when any audit log has CRITICAL severity",
            condition=AlertCondition(severity="CRITICAL"),
            severity=AlertRuleSeverity.CRITICAL,
        ),
        AlertRule(
            id="AFTER_HOURS_ADMIN",
            name="After Hours Admin Activity",
            description="Triggers when ADMIN performs actions between 10pm and 6am",
            condition=AlertCondition(user_role="ADMIN", after_hours=True),
            severity=AlertRuleSeverity.HIGH,
        ),
        AlertRule(
            id="BULK_DELETE",
            name="Bulk Delete Detection",
            description="Triggers when multiple DELETE actions occur in a short time",
            condition=AlertCondition(
                bulk_action="DELETE",
                bulk_threshold=10,
                bulk_time_window_seconds=60,
            ),
            severity=AlertRuleSeverity.HIGH,
        ),
        AlertRule(
            id="SUPER_ADMIN_ACTIVITY",
            name="Super Admin Activity",
            description="Triggers on any SUPER_ADMIN action for monitoring",
            condition=AlertCondition(user_role="SUPER_ADMIN"),
            severity=AlertRuleSeverity.MEDIUM,
        ),
        AlertRule(
            id="SENSITIVE_DATA_ACCESS",
            name="Sensitive Data Access",
            description="Triggers on access to sensitive entities like payments",
            condition=AlertCondition(entity_type="Payment", action_pattern=r"^(VIEW|EXPORT|DOWNLOAD)"),
            severity=AlertRuleSeverity.MEDIUM,
        ),
    ]


class AlertRulesService:
    """Evaluates alert rules and manages the custom rule set."""

    # Action types tracked for bulk detection
    BULK_TRACKED_ACTIONS = ("DELETE", "CREATE", "UPDATE", "EXPORT")
    BULK_CACHE_WINDOW = timedelta(minutes=5)

    def __init__(
        self,
        timezone_name: str | None = None,
        after_hours_start: int | None = None,
        after_hours_end: int | None = None,
        webhook_timeout: float | None = None,
    ):
        self.timezone = ZoneInfo(timezone_name or settings.AUDIT_TIMEZONE)
        self.after_hours_start = (
            settings.AUDIT_AFTER_HOURS_START if after_hours_start is None else after_hours_start
        )
        self.after_hours_end = (
            settings.AUDIT_AFTER_HOURS_END if after_hours_end is None else after_hours_end
        )
        self.webhook_timeout = webhook_timeout or settings.ALERT_WEBHOOK_TIMEOUT_SECONDS

        self._predefined_rules = _predefined_rules()
        self._custom_rules: list[AlertRule] = []
        # action type -> timestamps of recent actions of that type
        self._recent_actions: dict[str, list[datetime]] = {}

    async def evaluate_rules(self, audit_log: AuditLogForEvaluation) -> list[TriggeredAlert]:
        """Evaluate every active rule against an audit record.

        Triggers each matching rule and returns the alerts raised.
        """
        triggered: list[TriggeredAlert] = []

        for rule in self.get_active_rules():
            matches, details = self._matches_condition(rule.condition, audit_log)
            if matches:
                triggered.append(TriggeredAlert(rule=rule, audit_log=audit_log, details=details))
                await self.trigger_alert(rule, audit_log, details)

        self._update_recent_actions_cache(audit_log)
        return triggered

    def get_active_rules(self) -> list[AlertRule]:
        return [rule for rule in self.get_all_rules() if rule.enabled]

    def get_all_rules(self) -> list[AlertRule]:
        return [*self._predefined_rules, *self._custom_rules]

    def get_rule(self, rule_id: str) -> AlertRule | None:
        for rule in self.get_all_rules():
            if rule.id == rule_id:
                return rule
        return None

    def is_predefined(self, rule_id: str) -> bool:
        return any(rule.id == rule_id for rule in self._predefined_rules)

    def create_rule(
        self,
        name: str,
        condition: AlertCondition,
        severity: AlertRuleSeverity | str,
        enabled: bool = True,
        description: str | None = None,
        notify_webhook: str | None = None,
    ) -> AlertRule:
        """Create a custom rule with a generated CUSTOM_ id."""
        if condition.action_pattern:
            # Reject bad patterns now rather than on every evaluation
            re.compile(condition.action_pattern)

        rule = AlertRule(
            id=f"CUSTOM_{int(datetime.now(timezone.utc).timestamp() * 1000)}_{uuid.uuid4().hex[:9]}",
            name=name,
            description=description,
            condition=condition,
            severity=AlertRuleSeverity(severity),
            enabled=enabled,
            notify_webhook=notify_webhook,
        )
        self._custom_rules.append(rule)
        logger.info(f"Created new alert rule: {rule.name} ({rule.id})")
        return rule

    def update_rule(self, rule_id: str, **updates: Any) -> AlertRule | None:
        """
        Update a rule.

        Custom rules accept any field except id. Predefined rules can only
        be enabled or disabled; other fields are ignored.

        Returns:
            The updated rule, or None if no rule has that id
        """
        updates.pop("id", None)

        for index, rule in enumerate(self._custom_rules):
            if rule.id == rule_id:
                if "severity" in updates and updates["severity"] is not None:
                    updates["severity"] = AlertRuleSeverity(updates["severity"])
                condition = updates.get("condition")
                if condition is not None and condition.action_pattern:
                    re.compile(condition.action_pattern)
                self._custom_rules[index] = replace(rule, **updates)
                logger.info(f"Updated alert rule: {rule_id}")
                return self._custom_rules[index]

        for rule in self._predefined_rules:
            if rule.id == rule_id:
                if updates.get("enabled") is not None:
                    rule.enabled = updates["enabled"]
                    logger.info(f"Predefined alert rule {rule_id} enabled={rule.enabled}")
                return rule

        return None

    def delete_rule(self, rule_id: str) -> bool:
        """Delete a custom rule. Predefined rules cannot be deleted."""
        for index, rule in enumerate(self._custom_rules):
            if rule.id == rule_id:
                del self._custom_rules[index]
                logger.info(f"Deleted alert rule: {rule_id}")
                return True
        return False

    def reset(self) -> None:
        """Restore the predefined rules and forget custom rules and bulk history."""
        self._predefined_rules = _predefined_rules()
        self._custom_rules = []
        self._recent_actions = {}

    async def trigger_alert(
        self,
        rule: AlertRule,
        audit_log: AuditLogForEvaluation,
        details: str,
    ) -> None:
        """Log, count and notify for a matched rule. Never raises on delivery failure."""
        logger.warning(
            f"ALERT TRIGGERED: [{rule.severity.value}] {rule.name} - {details}",
            extra={
                "event_type": "alert.triggered",
                "rule_id": rule.id,
                "rule_severity": rule.severity.value,
                "audit_log_id": audit_log.id,
                "action": audit_log.action,
                "entity_type": audit_log.entity_type,
                "user_id": audit_log.user_id,
            },
        )
        track_alert(rule.id, rule.severity.value)

        if rule.notify_webhook:
            await self._send_webhook(rule, audit_log, details)

    async def _send_webhook(
        self,
        rule: AlertRule,
        audit_log: AuditLogForEvaluation,
        details: str,
    ) -> None:
        payload = {
            "rule_id": rule.id,
            "rule_name": rule.name,
            "severity": rule.severity.value,
            "details": details,
            "audit_log": {
                "id": audit_log.id,
                "action": audit_log.action,
                "entity_type": audit_log.entity_type,
                "entity_id": audit_log.entity_id,
                "user_id": audit_log.user_id,
                "created_at": audit_log.created_at.isoformat(),
            },
        }
        try:
            async with httpx.AsyncClient(timeout=self.webhook_timeout) as client:
                response = await client.post(rule.notify_webhook, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                f"Alert webhook delivery failed for rule {rule.id}: {e}",
                extra={"event_type": "alert.webhook.failed", "rule_id": rule.id},
            )

    # =========================================================================
    # Matching
    # =========================================================================

    def _matches_condition(
        self,
        condition: AlertCondition,
        audit_log: AuditLogForEvaluation,
    ) -> tuple[bool, str]:
        reasons: list[str] = []

        if condition.action_pattern:
            if not re.search(condition.action_pattern, audit_log.action, re.IGNORECASE):
                return False, ""
            reasons.append(f"Action matches pattern: {condition.action_pattern}")

        if condition.entity_type:
            if audit_log.entity_type != condition.entity_type:
                return False, ""
            reasons.append(f"Entity type: {condition.entity_type}")

        if condition.severity:
            if audit_log.severity != condition.severity:
                return False, ""
            reasons.append(f"Severity: {condition.severity}")

        if condition.user_role:
            if audit_log.user_role != condition.user_role:
                return False, ""
            reasons.append(f"User role: {condition.user_role}")

        if condition.after_hours:
            hour = audit_log.created_at.astimezone(self.timezone).hour
            if not self.is_after_hours(hour):
                return False, ""
            reasons.append(f"After hours activity at {hour}:00")

        if condition.bulk_action and condition.bulk_threshold and condition.bulk_time_window_seconds:
            matches, details = self._check_bulk_operation(
                condition.bulk_action,
                audit_log,
                condition.bulk_threshold,
                condition.bulk_time_window_seconds,
            )
            if not matches:
                return False, ""
            reasons.append(details)

        if not reasons:
            return False, ""
        return True, "; ".join(reasons)

    def is_after_hours(self, hour: int) -> bool:
        """True if a local clock hour falls in the after-hours window."""
        return hour_in_window(hour, self.after_hours_start, self.after_hours_end)

    def _check_bulk_operation(
        self,
        bulk_action: str,
        audit_log: AuditLogForEvaluation,
        threshold: int,
        window_seconds: int,
    ) -> tuple[bool, str]:
        if bulk_action not in audit_log.action:
            return False, ""

        cutoff = audit_log.created_at - timedelta(seconds=window_seconds)
        recent = [t for t in self._recent_actions.get(bulk_action, []) if t > cutoff]
        count = len(recent) + 1  # including this one

        if count >= threshold:
            return True, f"Bulk {bulk_action} detected: {count} operations in {window_seconds} seconds"
        return False, ""

    def _update_recent_actions_cache(self, audit_log: AuditLogForEvaluation) -> None:
        cutoff = audit_log.created_at - self.BULK_CACHE_WINDOW
        for action_type in self.BULK_TRACKED_ACTIONS:
            if action_type in audit_log.action:
                times = self._recent_actions.get(action_type, [])
                times.append(audit_log.created_at)
                self._recent_actions[action_type] = [t for t in times if t > cutoff]


# Process-scoped rule set shared by the recorder and the HTTP surface
alert_rules = AlertRulesService()


def get_alert_rules_service() -> AlertRulesService:
    return alert_rules
