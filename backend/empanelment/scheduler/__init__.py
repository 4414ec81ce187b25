"""Scheduler module for background tasks."""

from empanelment.scheduler.integrity_scheduler import (
    get_scheduler_status,
    reschedule_verification,
    run_scheduled_verification,
    shutdown_scheduler,
    start_scheduler,
)

__all__ = [
    "start_scheduler",
    "shutdown_scheduler",
    "get_scheduler_status",
    "reschedule_verification",
    "run_scheduled_verification",
]
