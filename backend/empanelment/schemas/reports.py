"""Audit report schemas (RTI, CAG, compliance, user activity)."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class ReportPeriod(BaseModel):
    start: datetime
    end: datetime


class ActionCount(BaseModel):
    action: str
    count: int


class EntityCount(BaseModel):
    entity: str
    count: int


# =============================================================================
# RTI
# =============================================================================


class CriticalEvent(BaseModel):
    id: str
    sequence_number: int
    action: str
    entity_type: str
    entity_id: str
    created_at: datetime


class RTIReportResponse(BaseModel):
    """Right to Information report."""

    period: ReportPeriod
    total_entries: int
    by_action: list[ActionCount]
    by_entity: list[EntityCount]
    critical_events: list[CriticalEvent]
    summary: str


# =============================================================================
# CAG
# =============================================================================


class MonthlyBreakdown(BaseModel):
    month: str
    total_actions: int
    by_category: dict[str, int]


class PaymentAuditEntry(BaseModel):
    id: str
    action: str
    entity_id: str
    user_id: str | None = None
    created_at: datetime


class StatusTransition(BaseModel):
    id: str
    action: str
    entity_type: str
    entity_id: str
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    created_at: datetime


class UserActionSummary(BaseModel):
    user_id: str
    role: str
    action_count: int


class CAGReportResponse(BaseModel):
    """Comptroller and Auditor General report for one financial year."""

    financial_year: str
    period: ReportPeriod
    monthly_breakdown: list[MonthlyBreakdown]
    payment_audit: list[PaymentAuditEntry]
    status_transitions: list[StatusTransition]
    user_activity_summary: list[UserActionSummary]


# =============================================================================
# Compliance
# =============================================================================


class Anomaly(BaseModel):
    type: str
    description: str
    severity: str
    timestamp: datetime
    user_id: str | None = None
    details: dict[str, Any]


class ComplianceReportResponse(BaseModel):
    period: ReportPeriod
    total_actions: int
    anomalies: list[Anomaly]
    compliance_score: int
    recommendations: list[str]


# =============================================================================
# User activity
# =============================================================================


class UserActivityEntry(BaseModel):
    id: str
    action: str
    entity_type: str
    entity_id: str
    created_at: datetime


class UserActivityReportResponse(BaseModel):
    user_id: str
    period: ReportPeriod
    total_actions: int
    by_day: dict[str, list[UserActivityEntry]]
    by_action: dict[str, int]
