"""Audit report endpoints (RTI, CAG, compliance, user activity)."""

from datetime import date
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Query

from empanelment.api.deps import CurrentAdmin, DBSession
from empanelment.audit.reports import AuditReportsService, local_day_bounds
from empanelment.core.config import settings
from empanelment.core.errors import ErrorCode, ValidationError
from empanelment.schemas.reports import (
    CAGReportResponse,
    ComplianceReportResponse,
    RTIReportResponse,
    UserActivityReportResponse,
)

router = APIRouter()


def _period(start_date: date, end_date: date):
    if start_date > end_date:
        raise ValidationError("start_date must not be after end_date")
    return local_day_bounds(start_date, end_date, ZoneInfo(settings.AUDIT_TIMEZONE))


@router.get("/rti", response_model=RTIReportResponse)
async def rti_report(
    db: DBSession,
    current_user: CurrentAdmin,
    start_date: date = Query(...),
    end_date: date = Query(...),
    entity_type: str | None = None,
):
    """Right to Information report for a date range."""
    start, end = _period(start_date, end_date)
    return await AuditReportsService(db).generate_rti_report(start, end, entity_type)


@router.get("/cag", response_model=CAGReportResponse)
async def cag_report(
    db: DBSession,
    current_user: CurrentAdmin,
    financial_year: str = Query(..., pattern=r"^\d{4}-\d{2}$", examples=["2024-25"]),
):
    """Comptroller and Auditor General report for a financial year."""
    try:
        return await AuditReportsService(db).generate_cag_report(financial_year)
    except ValueError as e:
        raise ValidationError(str(e), code=ErrorCode.INVALID_FINANCIAL_YEAR, field="financial_year")


@router.get("/compliance", response_model=ComplianceReportResponse)
async def compliance_report(
    db: DBSession,
    current_user: CurrentAdmin,
    start_date: date = Query(...),
    end_date: date = Query(...),
):
    """Compliance report with anomalies and score."""
    start, end = _period(start_date, end_date)
    return await AuditReportsService(db).generate_compliance_report(start, end)


@router.get("/users/{user_id}", response_model=UserActivityReportResponse)
async def user_activity_report(
    user_id: str,
    db: DBSession,
    current_user: CurrentAdmin,
    start_date: date = Query(...),
    end_date: date = Query(...),
):
    """Activity report for one user."""
    start, end = _period(start_date, end_date)
    return await AuditReportsService(db).generate_user_activity_report(user_id, start, end)
