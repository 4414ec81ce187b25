"""
Audit reports for statutory and internal review.

- RTI: what happened in a period, for Right to Information requests
- CAG: financial-year view for the Comptroller and Auditor General
- Compliance: anomaly detection and a 0-100 score
- User activity: one user's actions grouped by day and action

Reports bucket by local time (AUDIT_TIMEZONE) where a human reads the bucket
(months, after-hours), and by UTC where the bucket is only a grouping key.
"""

import re
from collections import Counter, defaultdict
from datetime import date, datetime, time, timezone
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from empanelment.audit.alerts import hour_in_window
from empanelment.core.config import settings
from empanelment.models.audit import AuditCategory, AuditLog, AuditSeverity

FINANCIAL_YEAR_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")

# More than this many actions by one user in one clock hour is an anomaly
BULK_ACTIONS_PER_HOUR = 50
MAX_COMPLIANCE_PENALTY = 50
ANOMALY_PENALTIES = {"LOW": 1, "MEDIUM": 3, "HIGH": 10}
TOP_USERS_LIMIT = 50


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def parse_financial_year(financial_year: str, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Resolve "2024-25" to [April 1 2024, April 1 2025) in local time.

    Raises:
        ValueError: not in YYYY-YY form, or the years are not consecutive
    """
    match = FINANCIAL_YEAR_PATTERN.match(financial_year or "")
    if not match:
        raise ValueError("financial_year must look like 2024-25")

    start_year = int(match.group(1))
    if (start_year + 1) % 100 != int(match.group(2)):
        raise ValueError(f"{financial_year} is not a valid financial year")

    start = datetime(start_year, 4, 1, tzinfo=tz)
    end = datetime(start_year + 1, 4, 1, tzinfo=tz)
    return start, end


def local_day_bounds(start: date, end: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Whole local days from start to end inclusive, as aware datetimes."""
    return (
        datetime.combine(start, time.min, tzinfo=tz),
        datetime.combine(end, time.max, tzinfo=tz),
    )


class AuditReportsService:
    """Builds RTI, CAG, compliance and user activity reports."""

    def __init__(self, db: AsyncSession, timezone_name: str | None = None):
        self.db = db
        self.timezone = ZoneInfo(timezone_name or settings.AUDIT_TIMEZONE)
        self.after_hours_start = settings.AUDIT_AFTER_HOURS_START
        self.after_hours_end = settings.AUDIT_AFTER_HOURS_END

    async def _fetch(
        self,
        start: datetime,
        end: datetime,
        end_inclusive: bool = True,
        **filters: Any,
    ) -> list[AuditLog]:
        start, end = _as_utc(start), _as_utc(end)
        upper = AuditLog.created_at <= end if end_inclusive else AuditLog.created_at < end
        query = select(AuditLog).where(AuditLog.created_at >= start, upper)
        for column, value in filters.items():
            if value is not None:
                query = query.where(getattr(AuditLog, column) == value)
        result = await self.db.execute(query.order_by(AuditLog.sequence_number.asc()))
        return list(result.scalars().all())

    # =========================================================================
    # RTI
    # =========================================================================

    async def generate_rti_report(
        self,
        start: datetime,
        end: datetime,
        entity_type: str | None = None,
    ) -> dict[str, Any]:
        """Right to Information report for a period, optionally one entity type."""
        logs = await self._fetch(start, end, entity_type=entity_type)

        action_counts = Counter(log.action for log in logs)
        entity_counts = Counter(log.entity_type for log in logs)
        critical = [log for log in logs if log.severity == AuditSeverity.CRITICAL]

        summary = (
            f"Total of {len(logs)} audit entries from {start.date().isoformat()} "
            f"to {end.date().isoformat()}. {len(critical)} critical events recorded."
        )

        return {
            "period": {"start": start, "end": end},
            "total_entries": len(logs),
            "by_action": [
                {"action": action, "count": count} for action, count in action_counts.most_common()
            ],
            "by_entity": [
                {"entity": entity, "count": count} for entity, count in entity_counts.most_common()
            ],
            "critical_events": [
                {
                    "id": log.id,
                    "sequence_number": log.sequence_number,
                    "action": log.action,
                    "entity_type": log.entity_type,
                    "entity_id": log.entity_id,
                    "created_at": _as_utc(log.created_at),
                }
                # Newest first
                for log in reversed(critical)
            ],
            "summary": f"[RTI COMPLIANT REPORT] {summary}",
        }

    # =========================================================================
    # CAG
    # =========================================================================

    async def generate_cag_report(self, financial_year: str) -> dict[str, Any]:
        """Comptroller and Auditor General report for an April-March financial year."""
        start, end = parse_financial_year(financial_year, self.timezone)
        logs = await self._fetch(start, end, end_inclusive=False)

        monthly: dict[str, dict[str, Any]] = {}
        for log in logs:
            month_key = _as_utc(log.created_at).astimezone(self.timezone).strftime("%Y-%m")
            bucket = monthly.setdefault(month_key, {"total": 0, "by_category": Counter()})
            bucket["total"] += 1
            bucket["by_category"][log.category.value] += 1

        users: dict[str, dict[str, Any]] = {}
        for log in logs:
            if not log.user_id:
                continue
            user = users.setdefault(log.user_id, {"role": log.user_role or "UNKNOWN", "count": 0})
            user["count"] += 1

        top_users = sorted(users.items(), key=lambda item: item[1]["count"], reverse=True)

        return {
            "financial_year": financial_year,
            "period": {"start": start, "end": end},
            "monthly_breakdown": [
                {
                    "month": month,
                    "total_actions": data["total"],
                    "by_category": dict(data["by_category"]),
                }
                for month, data in sorted(monthly.items())
            ],
            "payment_audit": [
                {
                    "id": log.id,
                    "action": log.action,
                    "entity_id": log.entity_id,
                    "user_id": log.user_id,
                    "created_at": _as_utc(log.created_at),
                }
                for log in logs
                if log.category == AuditCategory.PAYMENT
            ],
            "status_transitions": [
                {
                    "id": log.id,
                    "action": log.action,
                    "entity_type": log.entity_type,
                    "entity_id": log.entity_id,
                    "old_values": log.old_values,
                    "new_values": log.new_values,
                    "created_at": _as_utc(log.created_at),
                }
                for log in logs
                if "STATUS_CHANGE" in log.action or "TRANSITION" in log.action
            ],
            "user_activity_summary": [
                {"user_id": user_id, "role": data["role"], "action_count": data["count"]}
                for user_id, data in top_users[:TOP_USERS_LIMIT]
            ],
        }

    # =========================================================================
    # Compliance
    # =========================================================================

    async def generate_compliance_report(self, start: datetime, end: datetime) -> dict[str, Any]:
        """Compliance report with anomalies, score and recommendations."""
        logs = await self._fetch(start, end)

        anomalies = self.detect_anomalies(logs)
        score = self.calculate_compliance_score(anomalies, len(logs))

        recommendations = []
        if any(a["type"] == "AFTER_HOURS" for a in anomalies):
            recommendations.append(
                "Review after-hours access patterns and consider implementing time-based access controls."
            )
        if any(a["type"] == "BULK_OPERATION" for a in anomalies):
            recommendations.append(
                "Investigate bulk operations for potential automation or security concerns."
            )
        if score < 80:
            recommendations.append(
                "Overall compliance score is below threshold. Consider security training for users."
            )

        return {
            "period": {"start": start, "end": end},
            "total_actions": len(logs),
            "anomalies": anomalies,
            "compliance_score": score,
            "recommendations": recommendations,
        }

    def detect_anomalies(self, logs: list[AuditLog]) -> list[dict[str, Any]]:
        """Flag after-hours activity (MEDIUM) and per-user hourly bursts (HIGH)."""
        anomalies = []

        for log in logs:
            created_at = _as_utc(log.created_at)
            hour = created_at.astimezone(self.timezone).hour
            if hour_in_window(hour, self.after_hours_start, self.after_hours_end):
                anomalies.append({
                    "type": "AFTER_HOURS",
                    "description": f"Activity detected at {created_at.isoformat()} outside business hours",
                    "severity": "MEDIUM",
                    "timestamp": created_at,
                    "user_id": log.user_id,
                    "details": {"action": log.action, "hour": hour},
                })

        per_user_hour: Counter[tuple[str, datetime]] = Counter()
        for log in logs:
            if not log.user_id:
                continue
            hour_start = _as_utc(log.created_at).replace(minute=0, second=0, microsecond=0)
            per_user_hour[(log.user_id, hour_start)] += 1

        for (user_id, hour_start), count in per_user_hour.items():
            if count > BULK_ACTIONS_PER_HOUR:
                anomalies.append({
                    "type": "BULK_OPERATION",
                    "description": f"User {user_id} performed {count} actions in one hour",
                    "severity": "HIGH",
                    "timestamp": hour_start,
                    "user_id": user_id,
                    "details": {"action_count": count},
                })

        return anomalies

    @staticmethod
    def calculate_compliance_score(anomalies: list[dict[str, Any]], total_actions: int) -> int:
        """100 minus anomaly penalties, with the penalty capped at 50."""
        if total_actions == 0:
            return 100
        penalty = sum(ANOMALY_PENALTIES.get(a["severity"], 0) for a in anomalies)
        return max(0, 100 - min(penalty, MAX_COMPLIANCE_PENALTY))

    # =========================================================================
    # User activity
    # =========================================================================

    async def generate_user_activity_report(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> dict[str, Any]:
        """One user's actions in a period, grouped by UTC day and by action."""
        logs = await self._fetch(start, end, user_id=user_id)

        by_day: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for log in logs:
            created_at = _as_utc(log.created_at)
            by_day[created_at.date().isoformat()].append({
                "id": log.id,
                "action": log.action,
                "entity_type": log.entity_type,
                "entity_id": log.entity_id,
                "created_at": created_at,
            })

        return {
            "user_id": user_id,
            "period": {"start": start, "end": end},
            "total_actions": len(logs),
            "by_day": dict(by_day),
            "by_action": dict(Counter(log.action for log in logs)),
        }
