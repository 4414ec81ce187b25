"""Audit log query endpoints."""

from datetime import datetime

from fastapi import APIRouter, Query

from empanelment.api.deps import CurrentAdmin, DBSession
from empanelment.audit.service import AuditLogService
from empanelment.models.audit import AuditCategory, AuditSeverity
from empanelment.schemas.audit import AuditLogResponse, EntityTimelineResponse
from empanelment.schemas.common import PaginatedResponse

router = APIRouter()


@router.get("", response_model=PaginatedResponse[AuditLogResponse])
async def search_audit_logs(
    db: DBSession,
    current_user: CurrentAdmin,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    action: str | None = None,
    category: AuditCategory | None = None,
    severity: AuditSeverity | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    user_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
):
    """Search audit logs with filtering, newest first."""
    logs, total = await AuditLogService(db).find_all(
        user_id=user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        category=category,
        severity=severity,
        date_from=date_from,
        date_to=date_to,
        page=page,
        page_size=page_size,
    )

    return PaginatedResponse.build(
        items=[AuditLogResponse.model_validate(log) for log in logs],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/summary")
async def get_activity_summary(
    db: DBSession,
    current_user: CurrentAdmin,
):
    """Activity over the last 24 hours."""
    return await AuditLogService(db).get_recent_activity_summary()


@router.get("/entities/{entity_type}/{entity_id}", response_model=list[AuditLogResponse])
async def get_entity_audit_logs(
    entity_type: str,
    entity_id: str,
    db: DBSession,
    current_user: CurrentAdmin,
):
    """All audit records for one entity, newest first."""
    logs = await AuditLogService(db).find_by_entity(entity_type, entity_id)
    return [AuditLogResponse.model_validate(log) for log in logs]


@router.get("/entities/{entity_type}/{entity_id}/timeline", response_model=EntityTimelineResponse)
async def get_entity_timeline(
    entity_type: str,
    entity_id: str,
    db: DBSession,
    current_user: CurrentAdmin,
):
    """Chronological trail for one entity, including chain hashes."""
    return await AuditLogService(db).get_entity_timeline(entity_type, entity_id)


@router.get("/users/{user_id}", response_model=list[AuditLogResponse])
async def get_user_activity(
    user_id: str,
    db: DBSession,
    current_user: CurrentAdmin,
    limit: int = Query(100, ge=1, le=1000),
):
    """Recent activity of one user, newest first."""
    logs = await AuditLogService(db).find_by_user(user_id, limit=limit)
    return [AuditLogResponse.model_validate(log) for log in logs]
