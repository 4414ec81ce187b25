"""Alert rule management endpoints."""

import re

from fastapi import APIRouter, BackgroundTasks, Request, status

from empanelment.api.deps import AlertRules, CurrentAdmin, SessionFactory, request_context
from empanelment.audit.recorder import record_audit_event
from empanelment.core.errors import ErrorCode, NotFoundError, ValidationError
from empanelment.models.audit import AuditAction, AuditCategory
from empanelment.schemas.audit import AlertRuleCreate, AlertRuleResponse, AlertRuleUpdate
from empanelment.schemas.common import MessageResponse

router = APIRouter()


@router.get("", response_model=list[AlertRuleResponse])
async def list_alert_rules(
    rules: AlertRules,
    current_user: CurrentAdmin,
    active_only: bool = False,
):
    """List alert rules, predefined first."""
    items = rules.get_active_rules() if active_only else rules.get_all_rules()
    return [AlertRuleResponse.from_rule(rule, rules.is_predefined(rule.id)) for rule in items]


@router.post("", response_model=AlertRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_alert_rule(
    payload: AlertRuleCreate,
    request: Request,
    rules: AlertRules,
    session_factory: SessionFactory,
    current_user: CurrentAdmin,
    background_tasks: BackgroundTasks,
):
    """Create a custom alert rule."""
    try:
        rule = rules.create_rule(
            name=payload.name,
            description=payload.description,
            condition=payload.condition.to_condition(),
            severity=payload.severity,
            enabled=payload.enabled,
            notify_webhook=payload.notify_webhook,
        )
    except re.error as e:
        raise ValidationError(
            f"Invalid action_pattern: {e}",
            code=ErrorCode.INVALID_ALERT_PATTERN,
            field="condition.action_pattern",
        )

    background_tasks.add_task(
        record_audit_event,
        session_factory,
        action=AuditAction.ALERT_RULE_CREATED.value,
        entity_type="AlertRule",
        entity_id=rule.id,
        category=AuditCategory.SYSTEM,
        new_values=rule.to_dict(),
        **request_context(request, current_user),
    )
    return AlertRuleResponse.from_rule(rule)


@router.patch("/{rule_id}", response_model=AlertRuleResponse)
async def update_alert_rule(
    rule_id: str,
    payload: AlertRuleUpdate,
    request: Request,
    rules: AlertRules,
    session_factory: SessionFactory,
    current_user: CurrentAdmin,
    background_tasks: BackgroundTasks,
):
    """Update a rule. Predefined rules can only be enabled or disabled."""
    existing = rules.get_rule(rule_id)
    if existing is None:
        raise NotFoundError("Alert rule", rule_id)
    before = existing.to_dict()

    updates = payload.model_dump(exclude_unset=True)
    if payload.condition is not None:
        updates["condition"] = payload.condition.to_condition()

    try:
        rule = rules.update_rule(rule_id, **updates)
    except re.error as e:
        raise ValidationError(
            f"Invalid action_pattern: {e}",
            code=ErrorCode.INVALID_ALERT_PATTERN,
            field="condition.action_pattern",
        )
    if rule is None:
        raise NotFoundError("Alert rule", rule_id)

    background_tasks.add_task(
        record_audit_event,
        session_factory,
        action=AuditAction.ALERT_RULE_UPDATED.value,
        entity_type="AlertRule",
        entity_id=rule.id,
        category=AuditCategory.SYSTEM,
        old_values=before,
        new_values=rule.to_dict(),
        **request_context(request, current_user),
    )
    return AlertRuleResponse.from_rule(rule, rules.is_predefined(rule.id))


@router.delete("/{rule_id}", response_model=MessageResponse)
async def delete_alert_rule(
    rule_id: str,
    request: Request,
    rules: AlertRules,
    session_factory: SessionFactory,
    current_user: CurrentAdmin,
    background_tasks: BackgroundTasks,
):
    """Delete a custom rule."""
    if rules.is_predefined(rule_id):
        raise ValidationError(
            "Predefined alert rules cannot be deleted; disable them instead",
            code=ErrorCode.PREDEFINED_RULE_PROTECTED,
        )

    existing = rules.get_rule(rule_id)
    if existing is None or not rules.delete_rule(rule_id):
        raise NotFoundError("Alert rule", rule_id)

    background_tasks.add_task(
        record_audit_event,
        session_factory,
        action=AuditAction.ALERT_RULE_DELETED.value,
        entity_type="AlertRule",
        entity_id=rule_id,
        category=AuditCategory.SYSTEM,
        old_values=existing.to_dict(),
        **request_context(request, current_user),
    )
    return MessageResponse(message=f"Alert rule {rule_id} deleted")
