"""Scheduled audit chain verification.

Runs verify_recent over the last AUDIT_VERIFY_RECENT_HOURS hours on the
AUDIT_VERIFY_CRON schedule and writes the outcome to the chain.

Usage in main application startup:
    from empanelment.scheduler import start_scheduler, shutdown_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await start_scheduler()
        yield
        await shutdown_scheduler()
"""

import logging
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from empanelment.audit.integrity import (
    AuditIntegrityService,
    VerificationResult,
    build_verification_event,
)
from empanelment.audit.recorder import record_audit_event
from empanelment.core.config import settings
from empanelment.db.session import AsyncSessionLocal

logger = logging.getLogger(__name__)

VERIFICATION_JOB_ID = "audit_chain_verification"

# Global scheduler instance
_scheduler: AsyncIOScheduler | None = None


async def run_scheduled_verification(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    hours_back: int | None = None,
) -> VerificationResult | None:
    """
    Verify recent audit records and record the outcome.

    This is called by APScheduler at the configured cron time. Failures are
    logged; the next run tries again.
    """
    session_factory = session_factory or AsyncSessionLocal
    hours_back = hours_back or settings.AUDIT_VERIFY_RECENT_HOURS
    logger.info(f"Starting scheduled audit chain verification ({hours_back}h)")

    try:
        async with session_factory() as db:
            result = await AuditIntegrityService(db).verify_recent(hours_back)
    except Exception as e:
        logger.exception(f"Scheduled audit chain verification failed: {e}")
        return None

    await record_audit_event(
        session_factory,
        **build_verification_event(result, trigger="scheduled", hours_back=hours_back),
    )
    return result


def create_cron_trigger(cron_expression: str, timezone_str: str) -> CronTrigger:
    """
    Create an APScheduler CronTrigger from a cron expression.

    Supports standard 5-field cron: minute hour day month weekday
    Example: "0 2 * * *" = 2:00 AM daily
    """
    parts = (cron_expression or "").split()

    if len(parts) != 5:
        raise ValueError(
            f"Invalid cron expression: {cron_expression}. "
            "Expected 5 fields: minute hour day month weekday"
        )

    return CronTrigger(
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=parts[4],
        timezone=timezone_str,
    )


def _describe_job() -> dict[str, Any] | None:
    job = _scheduler.get_job(VERIFICATION_JOB_ID) if _scheduler else None
    if job is None:
        return None
    next_run = job.next_run_time
    return {
        "id": job.id,
        "name": job.name,
        "next_run": next_run.isoformat() if next_run else None,
        "trigger": str(job.trigger),
    }


async def start_scheduler(cron_expression: str | None = None) -> None:
    """
    Start the verification scheduler.

    Call this during application startup.
    """
    global _scheduler

    if _scheduler is not None:
        logger.warning("Scheduler already running")
        return

    trigger = create_cron_trigger(cron_expression or settings.AUDIT_VERIFY_CRON, settings.AUDIT_TIMEZONE)

    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        run_scheduled_verification,
        trigger=trigger,
        id=VERIFICATION_JOB_ID,
        name="Audit Chain Verification",
        replace_existing=True,
    )
    _scheduler.start()
    logger.info(f"Audit verification scheduler started: {cron_expression or settings.AUDIT_VERIFY_CRON}")


async def reschedule_verification(cron_expression: str) -> dict[str, Any]:
    """
    Change the verification schedule, starting the scheduler if needed.

    Raises:
        ValueError: the cron expression is invalid
    """
    trigger = create_cron_trigger(cron_expression, settings.AUDIT_TIMEZONE)

    if _scheduler is None:
        await start_scheduler(cron_expression)
    elif _scheduler.get_job(VERIFICATION_JOB_ID):
        _scheduler.reschedule_job(VERIFICATION_JOB_ID, trigger=trigger)
        logger.info(f"Rescheduled audit chain verification: {cron_expression}")
    else:
        _scheduler.add_job(
            run_scheduled_verification,
            trigger=trigger,
            id=VERIFICATION_JOB_ID,
            name="Audit Chain Verification",
            replace_existing=True,
        )
        logger.info(f"Added audit chain verification schedule: {cron_expression}")

    return {"cron_expression": cron_expression, "job": _describe_job()}


async def shutdown_scheduler() -> None:
    """
    Shutdown the scheduler gracefully.

    Call this during application shutdown.
    """
    global _scheduler

    if _scheduler:
        _scheduler.shutdown(wait=True)
        _scheduler = None
        logger.info("Audit verification scheduler stopped")


def get_scheduler_status() -> dict[str, Any]:
    """
    Get current scheduler status for monitoring.

    Returns:
        Dictionary with scheduler state and job information
    """
    if not _scheduler:
        return {
            "running": False,
            "jobs": [],
        }

    jobs = []
    for job in _scheduler.get_jobs():
        next_run = job.next_run_time
        jobs.append(
            {
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
            }
        )

    return {
        "running": _scheduler.running,
        "jobs": jobs,
    }
