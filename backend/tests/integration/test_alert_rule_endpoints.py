"""
Integration tests for alert rule management.

Tests cover:
- Listing predefined and custom rules
- Creating, updating and deleting custom rules
- Predefined rules can only be toggled
- Rule changes are recorded on the chain
"""

import pytest
from sqlalchemy import select

from empanelment.audit.alerts import alert_rules
from empanelment.models.audit import AuditLog

BASE = "/api/v1/alert-rules"

NEW_RULE = {
    "name": "Certificate revocations",
    "description": "Any certificate revocation",
    "condition": {"action_pattern": "^CERTIFICATE_REVOKED$", "entity_type": "Certificate"},
    "severity": "HIGH",
}


async def rule_change_actions(db_session) -> list[str]:
    result = await db_session.execute(
        select(AuditLog.action)
        .where(AuditLog.entity_type == "AlertRule", AuditLog.action.like("ALERT_RULE_%"))
        .order_by(AuditLog.sequence_number)
    )
    return list(result.scalars().all())


class TestListAlertRules:
    """Tests for GET /alert-rules."""

    @pytest.mark.asyncio
    async def test_predefined_rules_listed(self, client, admin_headers):
        response = await client.get(BASE, headers=admin_headers)

        assert response.status_code == 200
        rules = response.json()
        assert [rule["id"] for rule in rules] == [
            "CRITICAL_ACTION",
            "AFTER_HOURS_ADMIN",
            "BULK_DELETE",
            "SUPER_ADMIN_ACTIVITY",
            "SENSITIVE_DATA_ACCESS",
        ]
        assert all(rule["predefined"] for rule in rules)

    @pytest.mark.asyncio
    async def test_active_only(self, client, admin_headers):
        alert_rules.update_rule("BULK_DELETE", enabled=False)

        response = await client.get(BASE, params={"active_only": True}, headers=admin_headers)

        assert "BULK_DELETE" not in [rule["id"] for rule in response.json()]

    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, client, applicant_headers):
        response = await client.get(BASE, headers=applicant_headers)
        assert response.status_code == 403


class TestManageAlertRules:
    """Tests for POST, PATCH and DELETE /alert-rules."""

    @pytest.mark.asyncio
    async def test_create(self, client, db_session, admin_headers):
        response = await client.post(BASE, json=NEW_RULE, headers=admin_headers)

        assert response.status_code == 201
        rule = response.json()
        assert rule["id"].startswith("CUSTOM_")
        assert rule["predefined"] is False
        assert rule["condition"]["entity_type"] == "Certificate"
        assert alert_rules.get_rule(rule["id"]) is not None
        assert await rule_change_actions(db_session) == ["ALERT_RULE_CREATED"]

    @pytest.mark.asyncio
    async def test_create_invalid_pattern(self, client, admin_headers):
        payload = {**NEW_RULE, "condition": {"action_pattern": "([unclosed"}}

        response = await client.post(BASE, json=payload, headers=admin_headers)

        assert response.status_code == 400
        assert "Invalid action_pattern" in response.json()["message"]

    @pytest.mark.asyncio
    async def test_create_invalid_severity(self, client, admin_headers):
        payload = {**NEW_RULE, "severity": "URGENT"}
        response = await client.post(BASE, json=payload, headers=admin_headers)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_update_custom_rule(self, client, db_session, admin_headers):
        created = (await client.post(BASE, json=NEW_RULE, headers=admin_headers)).json()

        response = await client.patch(
            f"{BASE}/{created['id']}",
            json={"name": "Renamed", "severity": "CRITICAL"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        rule = response.json()
        assert rule["name"] == "Renamed"
        assert rule["severity"] == "CRITICAL"
        # Untouched fields survive
        assert rule["condition"]["action_pattern"] == "^CERTIFICATE_REVOKED$"
        assert await rule_change_actions(db_session) == ["ALERT_RULE_CREATED", "ALERT_RULE_UPDATED"]

    @pytest.mark.asyncio
    async def test_predefined_rule_only_toggles(self, client, admin_headers):
        response = await client.patch(
            f"{BASE}/CRITICAL_ACTION",
            json={"enabled": False, "name": "Ignored"},
            headers=admin_headers,
        )

        rule = response.json()
        assert rule["enabled"] is False
        assert rule["name"] == "Critical Action Alert"
        assert rule["predefined"] is True

    @pytest.mark.asyncio
    async def test_update_unknown_rule(self, client, admin_headers):
        response = await client.patch(f"{BASE}/CUSTOM_missing", json={"enabled": False}, headers=admin_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_custom_rule(self, client, db_session, admin_headers):
        created = (await client.post(BASE, json=NEW_RULE, headers=admin_headers)).json()

        response = await client.delete(f"{BASE}/{created['id']}", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert alert_rules.get_rule(created["id"]) is None
        assert await rule_change_actions(db_session) == ["ALERT_RULE_CREATED", "ALERT_RULE_DELETED"]

    @pytest.mark.asyncio
    async def test_delete_predefined_rejected(self, client, admin_headers):
        response = await client.delete(f"{BASE}/CRITICAL_ACTION", headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "RES_4101"
        assert alert_rules.get_rule("CRITICAL_ACTION") is not None

    @pytest.mark.asyncio
    async def test_delete_unknown_rule(self, client, admin_headers):
        response = await client.delete(f"{BASE}/CUSTOM_missing", headers=admin_headers)
        assert response.status_code == 404
