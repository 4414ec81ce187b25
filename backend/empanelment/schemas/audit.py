"""Audit trail, verification and alert rule schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from empanelment.audit.alerts import AlertCondition, AlertRule, AlertRuleSeverity
from empanelment.audit.integrity import ChainStatus, VerificationResult, VerificationStatus
from empanelment.models.audit import AuditCategory, AuditSeverity
from empanelment.schemas.common import BaseSchema


class AuditLogResponse(BaseSchema):
    """Audit log entry response."""

    id: str
    sequence_number: int
    action: str
    category: AuditCategory
    severity: AuditSeverity
    entity_type: str
    entity_id: str
    user_id: str | None = None
    user_role: str | None = None
    session_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    previous_hash: str
    record_hash: str
    created_at: datetime


class TimelineEventResponse(BaseModel):
    id: str
    sequence_number: int
    action: str
    category: str
    severity: str
    user_id: str | None = None
    user_role: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    record_hash: str
    previous_hash: str
    created_at: datetime


class EntityTimelineResponse(BaseModel):
    entity_type: str
    entity_id: str
    total_events: int
    timeline: list[TimelineEventResponse]


# =============================================================================
# Verification
# =============================================================================


class InvalidRecordResponse(BaseModel):
    id: str
    sequence_number: int
    expected_hash: str
    actual_hash: str | None = None


class VerificationResultResponse(BaseModel):
    """Outcome of a hash chain verification run."""

    valid: bool
    invalid_records: list[InvalidRecordResponse]
    checked_count: int
    first_sequence: int | None = None
    last_sequence: int | None = None
    broken_links: list[int] = []
    sequence_gaps: list[int] = []

    @classmethod
    def from_result(cls, result: VerificationResult) -> "VerificationResultResponse":
        return cls.model_validate(result.to_dict())


class ChainStatusResponse(BaseModel):
    total_records: int
    latest_sequence: int | None = None
    last_verified_at: datetime | None = None
    last_verification_result: VerificationResultResponse | None = None
    status: VerificationStatus

    @classmethod
    def from_status(cls, chain_status: ChainStatus) -> "ChainStatusResponse":
        last = chain_status.last_verification_result
        return cls(
            total_records=chain_status.total_records,
            latest_sequence=chain_status.latest_sequence,
            last_verified_at=chain_status.last_verified_at,
            last_verification_result=VerificationResultResponse.from_result(last) if last else None,
            status=chain_status.status,
        )


class ScheduleResponse(BaseModel):
    cron_expression: str
    job: dict[str, Any] | None = None


# =============================================================================
# Alert rules
# =============================================================================


class AlertConditionSchema(BaseModel):
    action_pattern: str | None = None
    entity_type: str | None = None
    severity: AuditSeverity | None = None
    user_role: str | None = None
    after_hours: bool = False
    bulk_threshold: int | None = Field(None, ge=1)
    bulk_time_window_seconds: int | None = Field(None, ge=1)
    bulk_action: str | None = None

    def to_condition(self) -> AlertCondition:
        data = self.model_dump()
        if self.severity is not None:
            data["severity"] = self.severity.value
        return AlertCondition(**data)


class AlertRuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    condition: AlertConditionSchema
    severity: AlertRuleSeverity
    enabled: bool = True
    notify_webhook: str | None = None


class AlertRuleUpdate(BaseModel):
    """Partial update. Predefined rules only honour `enabled`."""

    name: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = None
    condition: AlertConditionSchema | None = None
    severity: AlertRuleSeverity | None = None
    enabled: bool | None = None
    notify_webhook: str | None = None


class AlertRuleResponse(BaseModel):
    id: str
    name: str
    description: str | None = None
    condition: dict[str, Any]
    severity: AlertRuleSeverity
    enabled: bool
    notify_webhook: str | None = None
    predefined: bool = False

    @classmethod
    def from_rule(cls, rule: AlertRule, predefined: bool = False) -> "AlertRuleResponse":
        return cls(**rule.to_dict(), predefined=predefined)
