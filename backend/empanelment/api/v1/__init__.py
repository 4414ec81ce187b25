"""API v1 routes."""

from fastapi import APIRouter

from empanelment.api.v1.endpoints import (
    alert_rules,
    audit_integrity,
    audit_logs,
    audit_reports,
)

api_router = APIRouter()

api_router.include_router(audit_integrity.router, prefix="/audit-integrity", tags=["Audit Integrity"])
api_router.include_router(audit_logs.router, prefix="/audit-logs", tags=["Audit Logs"])
api_router.include_router(audit_reports.router, prefix="/audit-reports", tags=["Audit Reports"])
api_router.include_router(alert_rules.router, prefix="/alert-rules", tags=["Alert Rules"])
