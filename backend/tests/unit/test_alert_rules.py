"""
Unit tests for alert rule evaluation and rule management.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from empanelment.audit.alerts import (
    AlertCondition,
    AlertRuleSeverity,
    AlertRulesService,
    AuditLogForEvaluation,
    hour_in_window,
)

# 10:00 IST, inside business hours
DAYTIME = datetime(2026, 3, 10, 4, 30, tzinfo=timezone.utc)
# 23:30 IST, after hours
NIGHT = datetime(2026, 3, 10, 18, 0, tzinfo=timezone.utc)


def make_entry(**overrides) -> AuditLogForEvaluation:
    fields = {
        "id": "log-1",
        "action": "APPLICATION_SUBMITTED",
        "entity_type": "Application",
        "entity_id": "app-1",
        "user_id": "user-1",
        "user_role": "OEM",
        "severity": "INFO",
        "created_at": DAYTIME,
    }
    fields.update(overrides)
    return AuditLogForEvaluation(**fields)


@pytest.fixture
def rules() -> AlertRulesService:
    return AlertRulesService(timezone_name="Asia/Kolkata", after_hours_start=22, after_hours_end=6)


def fired(alerts) -> set[str]:
    return {alert.rule.id for alert in alerts}


class TestPredefinedRules:
    """Tests for the five predefined rules."""

    def test_predefined_rules_present_and_enabled(self, rules):
        ids = [rule.id for rule in rules.get_active_rules()]
        assert ids == [
            "CRITICAL_ACTION",
            "AFTER_HOURS_ADMIN",
            "BULK_DELETE",
            "SUPER_ADMIN_ACTIVITY",
            "SENSITIVE_DATA_ACCESS",
        ]

    @pytest.mark.asyncio
    async def test_ordinary_entry_triggers_nothing(self, rules):
        assert await rules.evaluate_rules(make_entry()) == []

    @pytest.mark.asyncio
    async def test_critical_severity(self, rules):
        alerts = await rules.evaluate_rules(make_entry(severity="CRITICAL"))
        assert fired(alerts) == {"CRITICAL_ACTION"}
        assert alerts[0].details == "Severity: CRITICAL"

    @pytest.mark.asyncio
    async def test_after_hours_admin_uses_local_time(self, rules):
        """Test that 18:00 UTC is 23:30 in Asia/Kolkata and counts as after hours."""
        alerts = await rules.evaluate_rules(make_entry(user_role="ADMIN", created_at=NIGHT))
        assert fired(alerts) == {"AFTER_HOURS_ADMIN"}
        assert "After hours activity at 23:00" in alerts[0].details

    @pytest.mark.asyncio
    async def test_admin_in_business_hours_does_not_fire(self, rules):
        assert await rules.evaluate_rules(make_entry(user_role="ADMIN")) == []

    @pytest.mark.asyncio
    async def test_super_admin_activity(self, rules):
        alerts = await rules.evaluate_rules(make_entry(user_role="SUPER_ADMIN"))
        assert fired(alerts) == {"SUPER_ADMIN_ACTIVITY"}

    @pytest.mark.asyncio
    async def test_sensitive_payment_access(self, rules):
        alerts = await rules.evaluate_rules(
            make_entry(action="EXPORT_PAYMENTS", entity_type="Payment")
        )
        assert fired(alerts) == {"SENSITIVE_DATA_ACCESS"}

    @pytest.mark.asyncio
    async def test_payment_write_is_not_sensitive_access(self, rules):
        alerts = await rules.evaluate_rules(
            make_entry(action="PAYMENT_VERIFIED", entity_type="Payment")
        )
        assert alerts == []

    @pytest.mark.asyncio
    async def test_bulk_delete_fires_on_tenth_delete_in_window(self, rules):
        """Test that the tenth DELETE within 60 seconds triggers BULK_DELETE."""
        for i in range(9):
            alerts = await rules.evaluate_rules(
                make_entry(id=f"log-{i}", action="DOCUMENT_DELETED", created_at=DAYTIME + timedelta(seconds=i))
            )
            assert "BULK_DELETE" not in fired(alerts)

        alerts = await rules.evaluate_rules(
            make_entry(id="log-9", action="DOCUMENT_DELETED", created_at=DAYTIME + timedelta(seconds=9))
        )
        assert "BULK_DELETE" in fired(alerts)

    @pytest.mark.asyncio
    async def test_bulk_delete_ignores_deletes_outside_window(self, rules):
        for i in range(9):
            await rules.evaluate_rules(
                make_entry(id=f"log-{i}", action="DOCUMENT_DELETED", created_at=DAYTIME + timedelta(seconds=i))
            )

        later = DAYTIME + timedelta(minutes=2)
        alerts = await rules.evaluate_rules(make_entry(action="DOCUMENT_DELETED", created_at=later))
        assert "BULK_DELETE" not in fired(alerts)

    @pytest.mark.asyncio
    async def test_disabled_rule_does_not_fire(self, rules):
        rules.update_rule("CRITICAL_ACTION", enabled=False)
        assert await rules.evaluate_rules(make_entry(severity="CRITICAL")) == []


class TestAfterHoursWindow:
    """Tests for the after-hours window check."""

    @pytest.mark.parametrize("hour,expected", [(21, False), (22, True), (0, True), (5, True), (6, False), (12, False)])
    def test_wrapping_window(self, rules, hour, expected):
        assert rules.is_after_hours(hour) is expected

    def test_non_wrapping_window(self):
        service = AlertRulesService(after_hours_start=1, after_hours_end=4)
        assert service.is_after_hours(2)
        assert not service.is_after_hours(4)

    @pytest.mark.parametrize("hour,expected", [(23, True), (3, True), (6, False), (21, False)])
    def test_shared_window_helper(self, hour, expected):
        """Test the helper used by both alert evaluation and compliance reports."""
        assert hour_in_window(hour, 22, 6) is expected


class TestRuleManagement:
    """Tests for custom rule CRUD."""

    def test_create_custom_rule(self, rules):
        rule = rules.create_rule(
            name="Certificate revocations",
            condition=AlertCondition(action_pattern="REVOKED$", entity_type="Certificate"),
            severity="HIGH",
        )

        assert rule.id.startswith("CUSTOM_")
        assert rule.severity == AlertRuleSeverity.HIGH
        assert rules.get_rule(rule.id) is rule
        assert len(rules.get_all_rules()) == 6

    def test_create_rejects_bad_pattern(self, rules):
        import re

        with pytest.raises(re.error):
            rules.create_rule(name="Bad", condition=AlertCondition(action_pattern="("), severity="LOW")

    @pytest.mark.asyncio
    async def test_custom_rule_fires(self, rules):
        rules.create_rule(
            name="Certificate revocations",
            condition=AlertCondition(action_pattern="revoked$", entity_type="Certificate"),
            severity="HIGH",
        )

        alerts = await rules.evaluate_rules(
            make_entry(action="CERTIFICATE_REVOKED", entity_type="Certificate")
        )
        assert len(alerts) == 1
        assert alerts[0].rule.name == "Certificate revocations"

    def test_rule_without_conditions_never_matches(self, rules):
        matches, _ = rules._matches_condition(AlertCondition(), make_entry())
        assert matches is False

    def test_update_custom_rule(self, rules):
        rule = rules.create_rule(name="R", condition=AlertCondition(user_role="OEM"), severity="LOW")

        updated = rules.update_rule(rule.id, name="Renamed", severity="MEDIUM", id="ignored")

        assert updated.id == rule.id
        assert updated.name == "Renamed"
        assert updated.severity == AlertRuleSeverity.MEDIUM

    def test_update_predefined_only_toggles_enabled(self, rules):
        updated = rules.update_rule("SUPER_ADMIN_ACTIVITY", name="Changed", enabled=False)

        assert updated.name == "Super Admin Activity"
        assert updated.enabled is False
        assert "SUPER_ADMIN_ACTIVITY" not in {r.id for r in rules.get_active_rules()}

    def test_update_unknown_rule(self, rules):
        assert rules.update_rule("NOPE", enabled=False) is None

    def test_delete_custom_rule(self, rules):
        rule = rules.create_rule(name="R", condition=AlertCondition(user_role="OEM"), severity="LOW")
        assert rules.delete_rule(rule.id) is True
        assert rules.get_rule(rule.id) is None

    def test_predefined_rule_cannot_be_deleted(self, rules):
        assert rules.delete_rule("CRITICAL_ACTION") is False
        assert rules.get_rule("CRITICAL_ACTION") is not None

    def test_reset_restores_predefined(self, rules):
        rules.update_rule("CRITICAL_ACTION", enabled=False)
        rules.create_rule(name="R", condition=AlertCondition(user_role="OEM"), severity="LOW")

        rules.reset()

        assert len(rules.get_all_rules()) == 5
        assert rules.get_rule("CRITICAL_ACTION").enabled is True


class TestWebhookDelivery:
    """Tests for webhook notification."""

    @pytest.mark.asyncio
    async def test_webhook_posted(self, rules):
        rules.create_rule(
            name="Hook",
            condition=AlertCondition(user_role="OEM"),
            severity="LOW",
            notify_webhook="https://hooks.example.test/alerts",
        )
        response = httpx.Response(200, request=httpx.Request("POST", "https://hooks.example.test/alerts"))

        with patch("httpx.AsyncClient.post", new=AsyncMock(return_value=response)) as post:
            alerts = await rules.evaluate_rules(make_entry())

        assert len(alerts) == 1
        post.assert_awaited_once()
        assert post.await_args.kwargs["json"]["rule_name"] == "Hook"

    @pytest.mark.asyncio
    async def test_webhook_failure_is_logged_not_raised(self, rules, caplog):
        rules.create_rule(
            name="Hook",
            condition=AlertCondition(user_role="OEM"),
            severity="LOW",
            notify_webhook="https://hooks.example.test/alerts",
        )

        with patch("httpx.AsyncClient.post", new=AsyncMock(side_effect=httpx.ConnectError("refused"))):
            alerts = await rules.evaluate_rules(make_entry())

        assert len(alerts) == 1
        assert "Alert webhook delivery failed" in caplog.text
