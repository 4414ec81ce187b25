"""
Tests for RTI, CAG, compliance and user activity reports.

Records are inserted with fixed timestamps; the chain fields are not
checked here.
"""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from empanelment.audit.reports import AuditReportsService, local_day_bounds
from empanelment.models.audit import AuditCategory, AuditLog, AuditSeverity

IST = ZoneInfo("Asia/Kolkata")


class LogSeeder:
    """Adds audit rows with controlled created_at values."""

    def __init__(self, db_session):
        self.db = db_session
        self.sequence = 0

    def add(self, created_at: datetime, **fields) -> AuditLog:
        self.sequence += 1
        record = AuditLog(
            sequence_number=self.sequence,
            action=fields.pop("action", "APPLICATION_UPDATED"),
            entity_type=fields.pop("entity_type", "Application"),
            entity_id=fields.pop("entity_id", f"app-{self.sequence}"),
            previous_hash="GENESIS",
            record_hash=f"{self.sequence:064x}",
            hashed_at=created_at.isoformat(),
            created_at=created_at,
            **fields,
        )
        self.db.add(record)
        return record

    async def commit(self) -> None:
        await self.db.commit()


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def seeder(db_session) -> LogSeeder:
    return LogSeeder(db_session)


@pytest.fixture
def reports(db_session) -> AuditReportsService:
    return AuditReportsService(db_session, timezone_name="Asia/Kolkata")


class TestRtiReport:
    """Tests for the Right to Information report."""

    @pytest.mark.asyncio
    async def test_counts_and_critical_events(self, seeder, reports):
        seeder.add(utc(2024, 6, 10, 6), action="APPLICATION_SUBMITTED")
        seeder.add(utc(2024, 6, 11, 6), action="APPLICATION_SUBMITTED")
        first_critical = seeder.add(
            utc(2024, 6, 12, 6), action="APPLICATION_REVOKED", severity=AuditSeverity.CRITICAL
        )
        last_critical = seeder.add(
            utc(2024, 6, 13, 6),
            action="PAYMENT_REFUNDED",
            entity_type="Payment",
            severity=AuditSeverity.CRITICAL,
        )
        # Outside the period
        seeder.add(utc(2024, 7, 2, 6), action="APPLICATION_SUBMITTED")
        await seeder.commit()

        start, end = local_day_bounds(date(2024, 6, 1), date(2024, 6, 30), IST)
        report = await reports.generate_rti_report(start, end)

        assert report["total_entries"] == 4
        assert report["by_action"][0] == {"action": "APPLICATION_SUBMITTED", "count": 2}
        assert {"entity": "Payment", "count": 1} in report["by_entity"]
        assert [e["id"] for e in report["critical_events"]] == [last_critical.id, first_critical.id]
        assert report["summary"] == (
            "[RTI COMPLIANT REPORT] Total of 4 audit entries from 2024-06-01 "
            "to 2024-06-30. 2 critical events recorded."
        )

    @pytest.mark.asyncio
    async def test_entity_type_filter(self, seeder, reports):
        seeder.add(utc(2024, 6, 10, 6))
        seeder.add(utc(2024, 6, 10, 7), entity_type="Payment", action="PAYMENT_VERIFIED")
        await seeder.commit()

        start, end = local_day_bounds(date(2024, 6, 1), date(2024, 6, 30), IST)
        report = await reports.generate_rti_report(start, end, entity_type="Payment")

        assert report["total_entries"] == 1
        assert report["by_entity"] == [{"entity": "Payment", "count": 1}]

    @pytest.mark.asyncio
    async def test_local_day_bounds_include_early_morning(self, seeder, reports):
        """Test that 00:30 IST on the first day counts even though it is the previous UTC day."""
        seeder.add(utc(2024, 5, 31, 19))
        await seeder.commit()

        start, end = local_day_bounds(date(2024, 6, 1), date(2024, 6, 1), IST)
        report = await reports.generate_rti_report(start, end)

        assert report["total_entries"] == 1

    @pytest.mark.asyncio
    async def test_empty_period(self, reports):
        start, end = local_day_bounds(date(2024, 6, 1), date(2024, 6, 30), IST)
        report = await reports.generate_rti_report(start, end)

        assert report["total_entries"] == 0
        assert report["critical_events"] == []
        assert "0 critical events" in report["summary"]


class TestCagReport:
    """Tests for the financial-year CAG report."""

    @pytest.mark.asyncio
    async def test_financial_year_boundaries(self, seeder, reports):
        # 01:30 IST on 1 April 2024: first moment inside FY 2024-25
        seeder.add(utc(2024, 3, 31, 20), user_id="u1", user_role="OEM")
        # 23:30 IST on 31 March 2024: previous financial year
        seeder.add(utc(2024, 3, 31, 18), user_id="u1", user_role="OEM")
        # 00:30 IST on 1 April 2025: next financial year
        seeder.add(utc(2025, 3, 31, 19), user_id="u1", user_role="OEM")
        seeder.add(
            utc(2024, 6, 15, 6),
            action="PAYMENT_VERIFIED",
            entity_type="Payment",
            category=AuditCategory.PAYMENT,
            user_id="u2",
            user_role="FINANCE",
        )
        seeder.add(
            utc(2024, 6, 20, 7),
            action="APPLICATION_STATUS_CHANGE",
            category=AuditCategory.APPLICATION,
            old_values={"status": "SUBMITTED"},
            new_values={"status": "APPROVED"},
            user_id="u2",
            user_role="FINANCE",
        )
        await seeder.commit()

        report = await reports.generate_cag_report("2024-25")

        assert report["financial_year"] == "2024-25"
        assert report["monthly_breakdown"] == [
            {"month": "2024-04", "total_actions": 1, "by_category": {"GENERAL": 1}},
            {"month": "2024-06", "total_actions": 2, "by_category": {"PAYMENT": 1, "APPLICATION": 1}},
        ]
        assert [p["action"] for p in report["payment_audit"]] == ["PAYMENT_VERIFIED"]
        assert len(report["status_transitions"]) == 1
        assert report["status_transitions"][0]["new_values"] == {"status": "APPROVED"}
        assert report["user_activity_summary"] == [
            {"user_id": "u2", "role": "FINANCE", "action_count": 2},
            {"user_id": "u1", "role": "OEM", "action_count": 1},
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("financial_year", ["2024", "2024-26", "24-25", ""])
    async def test_invalid_financial_year(self, reports, financial_year):
        with pytest.raises(ValueError):
            await reports.generate_cag_report(financial_year)


class TestComplianceReport:
    """Tests for anomaly detection and scoring over stored records."""

    @pytest.mark.asyncio
    async def test_anomalies_and_score(self, seeder, reports):
        burst_start = utc(2024, 6, 15, 6)  # 11:30 IST
        for i in range(51):
            seeder.add(burst_start + timedelta(seconds=i), user_id="u-bulk")
        seeder.add(utc(2024, 6, 15, 18), user_id="u-night")  # 23:30 IST
        await seeder.commit()

        start, end = local_day_bounds(date(2024, 6, 15), date(2024, 6, 16), IST)
        report = await reports.generate_compliance_report(start, end)

        assert report["total_actions"] == 52
        types = sorted(a["type"] for a in report["anomalies"])
        assert types == ["AFTER_HOURS", "BULK_OPERATION"]
        assert report["compliance_score"] == 87
        assert len(report["recommendations"]) == 2

    @pytest.mark.asyncio
    async def test_clean_period(self, seeder, reports):
        seeder.add(utc(2024, 6, 15, 6), user_id="u1")
        await seeder.commit()

        start, end = local_day_bounds(date(2024, 6, 15), date(2024, 6, 15), IST)
        report = await reports.generate_compliance_report(start, end)

        assert report["anomalies"] == []
        assert report["compliance_score"] == 100
        assert report["recommendations"] == []


class TestUserActivityReport:
    """Tests for the per-user activity report."""

    @pytest.mark.asyncio
    async def test_grouped_by_day_and_action(self, seeder, reports):
        seeder.add(utc(2024, 6, 10, 6), user_id="u1", action="DOCUMENT_UPLOADED")
        seeder.add(utc(2024, 6, 10, 8), user_id="u1", action="DOCUMENT_UPLOADED")
        seeder.add(utc(2024, 6, 11, 6), user_id="u1", action="APPLICATION_SUBMITTED")
        seeder.add(utc(2024, 6, 11, 6), user_id="u2", action="APPLICATION_SUBMITTED")
        await seeder.commit()

        start, end = local_day_bounds(date(2024, 6, 1), date(2024, 6, 30), IST)
        report = await reports.generate_user_activity_report("u1", start, end)

        assert report["user_id"] == "u1"
        assert report["total_actions"] == 3
        assert sorted(report["by_day"]) == ["2024-06-10", "2024-06-11"]
        assert len(report["by_day"]["2024-06-10"]) == 2
        assert report["by_action"] == {"DOCUMENT_UPLOADED": 2, "APPLICATION_SUBMITTED": 1}
