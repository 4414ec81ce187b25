"""Audit hash chain integrity endpoints."""

from fastapi import APIRouter, BackgroundTasks, Query, Request

from empanelment.api.deps import CurrentAdmin, DBSession, SessionFactory, request_context
from empanelment.audit.integrity import AuditIntegrityService, build_verification_event
from empanelment.audit.recorder import record_audit_event
from empanelment.core.config import settings
from empanelment.core.errors import ErrorCode, ValidationError
from empanelment.models.audit import AuditAction, AuditCategory, AuditSeverity
from empanelment.scheduler import integrity_scheduler
from empanelment.schemas.audit import (
    ChainStatusResponse,
    ScheduleResponse,
    VerificationResultResponse,
)

router = APIRouter()


@router.get("/verify", response_model=VerificationResultResponse)
async def verify_chain(
    request: Request,
    db: DBSession,
    session_factory: SessionFactory,
    current_user: CurrentAdmin,
    background_tasks: BackgroundTasks,
    start_sequence: int | None = Query(None, ge=1),
    end_sequence: int | None = Query(None, ge=1),
):
    """Verify the hash chain, optionally between two sequence numbers."""
    if start_sequence is not None and end_sequence is not None and start_sequence > end_sequence:
        raise ValidationError(
            "start_sequence must not be greater than end_sequence",
            code=ErrorCode.INVALID_SEQUENCE_RANGE,
            field="start_sequence",
        )

    result = await AuditIntegrityService(db).verify_chain(start_sequence, end_sequence)

    background_tasks.add_task(
        record_audit_event,
        session_factory,
        **build_verification_event(
            result,
            trigger="manual",
            start_sequence=start_sequence,
            end_sequence=end_sequence,
            context=request_context(request, current_user),
        ),
    )
    return VerificationResultResponse.from_result(result)


@router.get("/verify-recent", response_model=VerificationResultResponse)
async def verify_recent(
    request: Request,
    db: DBSession,
    session_factory: SessionFactory,
    current_user: CurrentAdmin,
    background_tasks: BackgroundTasks,
    hours: int = Query(settings.AUDIT_VERIFY_RECENT_HOURS, ge=1, le=24 * 366),
):
    """Verify records created in the last N hours."""
    result = await AuditIntegrityService(db).verify_recent(hours)

    background_tasks.add_task(
        record_audit_event,
        session_factory,
        **build_verification_event(
            result,
            trigger="manual",
            hours_back=hours,
            context=request_context(request, current_user),
        ),
    )
    return VerificationResultResponse.from_result(result)


@router.get("/status", response_model=ChainStatusResponse)
async def get_chain_status(
    db: DBSession,
    current_user: CurrentAdmin,
):
    """Chain size and the outcome of the last verification in this process."""
    chain_status = await AuditIntegrityService(db).get_chain_status()
    return ChainStatusResponse.from_status(chain_status)


@router.post("/schedule", response_model=ScheduleResponse)
async def schedule_verification(
    request: Request,
    session_factory: SessionFactory,
    current_user: CurrentAdmin,
    background_tasks: BackgroundTasks,
    cron_expression: str = Query(settings.AUDIT_VERIFY_CRON),
):
    """Set the cron schedule for automatic verification."""
    try:
        schedule = await integrity_scheduler.reschedule_verification(cron_expression)
    except ValueError as e:
        raise ValidationError(str(e), code=ErrorCode.INVALID_CRON_EXPRESSION, field="cron_expression")

    background_tasks.add_task(
        record_audit_event,
        session_factory,
        action=AuditAction.AUDIT_VERIFICATION_SCHEDULED.value,
        entity_type="AuditChain",
        category=AuditCategory.SYSTEM,
        severity=AuditSeverity.INFO,
        new_values={"cron_expression": cron_expression},
        **request_context(request, current_user),
    )
    return ScheduleResponse(**schedule)
