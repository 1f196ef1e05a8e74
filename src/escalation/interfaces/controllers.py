"""
Escalation Controllers (API Routes)
====================================

FastAPI routes for escalation rules, events, incidents and statistics.

Controllers are thin - they delegate to application services. Domain
exceptions propagate to the application exception handler, which maps
them to 404/409/422.
"""

from math import ceil
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.escalation.application import (
    RuleService, IncidentService, StatisticsService, INotifier, TriggerOutcome,
    RuleCreateRequest, RuleUpdateRequest, BulkStatusRequest, TriggerRequest,
    EventRequest, AcknowledgeRequest, ResolveRequest, IncidentActionRequest,
    RuleResponse, RuleListResponse, IncidentResponse, IncidentListResponse,
    EvaluateResponse, TriggerResponse, EventResponse, BulkStatusResponse,
    TimelineResponse, TimelineEntryResponse, StatisticsResponse, PaginationInfo
)
from src.escalation.application.dto import (
    IncidentStatusStr, PriorityStr, RuleStatusStr, RuleTypeStr, SeverityStr
)
from src.escalation.domain import utc_now
from src.escalation.infrastructure import SQLAlchemyIncidentRepository, SQLAlchemyRuleRepository
from src.infrastructure.database import get_session
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/escalation", tags=["Escalation"])

# Fields a PUT may clear by sending null
NULLABLE_RULE_FIELDS = {"sms_template", "working_hours"}


# ========== Example payloads for Swagger ==========

RULE_CREATE_EXAMPLE = {
    "name": "Overdue compliance filing",
    "description": "Escalate filings that miss their deadline",
    "rule_type": "compliance_deadline",
    "severity": "high",
    "priority": "urgent",
    "trigger_condition": {
        "logical_operator": "and",
        "conditions": [
            {"field": "days_overdue", "operator": "greater_than", "value": 0},
            {"field": "institution.region", "operator": "in", "value": ["EU", "UK"]}
        ]
    },
    "levels": [
        {"level": 1, "channels": ["email"], "recipients": ["compliance-team@example.com"]},
        {"level": 2, "channels": ["email", "slack"], "recipients": ["cco@example.com", "#compliance"]}
    ],
    "time_to_escalate": 60,
    "escalation_interval": 30,
    "notification_channels": ["email"],
    "recipients": ["compliance-team@example.com"],
    "subject_template": "[{{severity}}] {{ruleName}} - {{incidentId}}",
    "message_template": "Filing for {{payload.institution.name}} is {{payload.days_overdue}} days overdue (level {{level}}/{{maxLevel}})."
}

INCIDENT_RESPONSE_EXAMPLE = {
    "id": "5f0c6b9e-3d5c-4e8e-9a57-2f1b7c1d9e44",
    "reference": "INC17053128000005F0C",
    "rule_id": "0b7f8f1a-8a43-4a41-9f7e-5c1d8f3a6b21",
    "status": "open",
    "current_level": 1,
    "max_level": 2,
    "created_at": "2024-01-15T10:00:00Z",
    "trigger_payload": {"days_overdue": 3},
    "next_escalation_at": "2024-01-15T11:00:00Z",
    "last_escalated_at": None,
    "is_paused": False,
    "acknowledged_at": None,
    "acknowledgments": [],
    "resolution": None,
    "notification_faults": [],
    "retrigger_count": 0,
    "version": 2
}


# ========== Dependencies ==========

def get_notifier(request: Request) -> INotifier:
    """Notifier created at startup."""
    return request.app.state.notifier


def get_clock() -> Callable:
    return utc_now


def get_conflict_policy() -> str:
    return settings.trigger_conflict_policy


async def get_rule_service(
    session: AsyncSession = Depends(get_session),
    clock: Callable = Depends(get_clock)
) -> RuleService:
    return RuleService(
        SQLAlchemyRuleRepository(session),
        SQLAlchemyIncidentRepository(session),
        clock=clock
    )


async def get_incident_service(
    session: AsyncSession = Depends(get_session),
    notifier: INotifier = Depends(get_notifier),
    clock: Callable = Depends(get_clock),
    conflict_policy: str = Depends(get_conflict_policy)
) -> IncidentService:
    return IncidentService(
        SQLAlchemyRuleRepository(session),
        SQLAlchemyIncidentRepository(session),
        notifier,
        clock=clock,
        conflict_policy=conflict_policy,
        retry_attempts=settings.transition_retry_attempts
    )


async def get_statistics_service(
    session: AsyncSession = Depends(get_session)
) -> StatisticsService:
    return StatisticsService(
        SQLAlchemyRuleRepository(session),
        SQLAlchemyIncidentRepository(session)
    )


def _pagination(page: int, limit: int, total: int) -> PaginationInfo:
    return PaginationInfo(page=page, limit=limit, total=total, pages=ceil(total / limit) if total else 0)


def _trigger_response(outcome: TriggerOutcome) -> TriggerResponse:
    report = outcome.report
    return TriggerResponse(
        rule_id=outcome.rule_id,
        matched=outcome.matched,
        created=outcome.created,
        conflict=outcome.conflict,
        skipped=outcome.skipped,
        incident=IncidentResponse.from_domain(outcome.incident) if outcome.incident else None,
        notifications_sent=len(report.delivered) if report else 0,
        notification_failures=len(report.faults) if report else 0
    )


# ========== Rules ==========

@router.post(
    "/rules",
    response_model=RuleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create escalation rule",
    description="""
    Create a rule describing when an incident opens and how it escalates.

    **Levels** must be numbered 1..N. Each level may override the rule's
    default `notification_channels` and `recipients`, and set its own
    `delay_minutes`; otherwise level 1 waits `time_to_escalate` minutes and
    later levels wait `escalation_interval` minutes.

    **Operators**: `equals`, `not_equals`, `greater_than`, `less_than`,
    `contains`, `not_contains`, `in`, `not_in`, `between`, `is_null`, `is_not_null`

    **Template placeholders**: `{{incidentId}}`, `{{incidentReference}}`,
    `{{ruleName}}`, `{{ruleType}}`, `{{severity}}`, `{{priority}}`, `{{level}}`,
    `{{maxLevel}}`, `{{status}}`, `{{payload.<path>}}`
    """,
    responses={
        422: {"description": "Invalid rule definition (field-level errors)"}
    },
    openapi_extra={"requestBody": {"content": {"application/json": {"example": RULE_CREATE_EXAMPLE}}}}
)
async def create_rule(
    request: RuleCreateRequest,
    service: RuleService = Depends(get_rule_service)
):
    rule = await service.create_rule(request.model_dump())
    return RuleResponse.from_domain(rule)


@router.get(
    "/rules",
    response_model=RuleListResponse,
    summary="List escalation rules",
    description="""
    **Query Parameters:**
    - `status`, `rule_type`, `severity`, `priority`: exact filters
    - `search`: case-insensitive match on the rule name
    - `page`, `limit`: pagination (limit max 100)
    - `sort_by`, `sort_order`: ordering (default newest first)
    """
)
async def list_rules(
    status_filter: Optional[RuleStatusStr] = Query(None, alias="status"),
    rule_type: Optional[RuleTypeStr] = None,
    severity: Optional[SeverityStr] = None,
    priority: Optional[PriorityStr] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    service: RuleService = Depends(get_rule_service)
):
    filters = {
        "status": status_filter,
        "rule_type": rule_type,
        "severity": severity,
        "priority": priority,
        "search": search,
    }
    rules, total = await service.list_rules(filters, page, limit, sort_by, sort_order)
    return RuleListResponse(
        data=[RuleResponse.from_domain(r) for r in rules],
        pagination=_pagination(page, limit, total)
    )


@router.patch(
    "/rules/bulk-status",
    response_model=BulkStatusResponse,
    summary="Set status on many rules"
)
async def bulk_update_status(
    request: BulkStatusRequest,
    service: RuleService = Depends(get_rule_service)
):
    updated = await service.bulk_update_status(request.rule_ids, request.status)
    logger.info("Bulk rule status update", extra={"updated": updated, "status": request.status})
    return BulkStatusResponse(updated=updated, status=request.status)


@router.get(
    "/rules/{rule_id}",
    response_model=RuleResponse,
    summary="Get escalation rule",
    responses={404: {"description": "Rule not found"}}
)
async def get_rule(
    rule_id: str,
    service: RuleService = Depends(get_rule_service)
):
    return RuleResponse.from_domain(await service.get_rule(rule_id))


@router.put(
    "/rules/{rule_id}",
    response_model=RuleResponse,
    summary="Update escalation rule",
    description="""
    Partial update: only the fields sent are changed.

    While the rule has an open incident only `name`, `description` and
    `priority` may change; anything else returns **409**.
    """,
    responses={404: {"description": "Rule not found"}, 409: {"description": "Rule has an open incident"}}
)
async def update_rule(
    rule_id: str,
    request: RuleUpdateRequest,
    service: RuleService = Depends(get_rule_service)
):
    changes = {
        key: value
        for key, value in request.model_dump(exclude_unset=True).items()
        if value is not None or key in NULLABLE_RULE_FIELDS
    }
    return RuleResponse.from_domain(await service.update_rule(rule_id, changes))


@router.delete(
    "/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete escalation rule",
    responses={404: {"description": "Rule not found"}, 409: {"description": "Rule has an open incident"}}
)
async def delete_rule(
    rule_id: str,
    service: RuleService = Depends(get_rule_service)
):
    await service.delete_rule(rule_id)


@router.patch(
    "/rules/{rule_id}/pause",
    response_model=RuleResponse,
    summary="Pause a rule (it stops accepting triggers)",
    responses={409: {"description": "Rule is not active"}}
)
async def pause_rule(
    rule_id: str,
    service: RuleService = Depends(get_rule_service)
):
    return RuleResponse.from_domain(await service.pause_rule(rule_id))


@router.patch(
    "/rules/{rule_id}/resume",
    response_model=RuleResponse,
    summary="Resume a paused rule",
    responses={409: {"description": "Rule is not paused"}}
)
async def resume_rule(
    rule_id: str,
    service: RuleService = Depends(get_rule_service)
):
    return RuleResponse.from_domain(await service.resume_rule(rule_id))


@router.post(
    "/rules/{rule_id}/evaluate",
    response_model=EvaluateResponse,
    summary="Dry-run a rule's trigger condition"
)
async def evaluate_rule(
    rule_id: str,
    request: TriggerRequest,
    service: RuleService = Depends(get_rule_service)
):
    matched = await service.evaluate(rule_id, request.payload)
    return EvaluateResponse(rule_id=rule_id, matched=matched)


@router.post(
    "/rules/{rule_id}/trigger",
    response_model=TriggerResponse,
    summary="Present event data to one rule",
    description="""
    Opens an incident at level 1 when the payload satisfies the rule's
    trigger condition and notifies level 1.

    - Not matched: `matched=false`, no incident
    - Rule not active: **409**
    - Incident already open: **409** (policy `reject`) or the open incident
      with `created=false` (policy `merge`)
    """,
    responses={
        200: {"content": {"application/json": {"example": {
            "rule_id": "0b7f8f1a-8a43-4a41-9f7e-5c1d8f3a6b21",
            "matched": True,
            "created": True,
            "conflict": False,
            "incident": INCIDENT_RESPONSE_EXAMPLE,
            "notifications_sent": 1,
            "notification_failures": 0
        }}}},
        404: {"description": "Rule not found"},
        409: {"description": "Rule not active or incident already open"}
    }
)
async def trigger_rule(
    rule_id: str,
    request: TriggerRequest,
    service: IncidentService = Depends(get_incident_service)
):
    outcome = await service.trigger(rule_id, request.payload)
    return _trigger_response(outcome)


# ========== Events ==========

@router.post(
    "/events",
    response_model=EventResponse,
    summary="Evaluate event data against all active rules",
    description="Each matching rule is triggered; rules with an open incident report `conflict=true`; rules paused meanwhile report `skipped`."
)
async def ingest_event(
    request: EventRequest,
    service: IncidentService = Depends(get_incident_service)
):
    outcomes = await service.process_event(request.payload, request.rule_type)
    results = [_trigger_response(o) for o in outcomes]
    return EventResponse(
        evaluated_rules=sum(1 for o in outcomes if o.skipped is None),
        matched_rules=sum(1 for o in outcomes if o.matched),
        incidents_created=sum(1 for o in outcomes if o.created),
        results=results
    )


# ========== Incidents ==========

@router.get(
    "/incidents",
    response_model=IncidentListResponse,
    summary="List incidents"
)
async def list_incidents(
    status_filter: Optional[IncidentStatusStr] = Query(None, alias="status"),
    rule_id: Optional[str] = None,
    min_level: Optional[int] = Query(None, ge=1),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    service: IncidentService = Depends(get_incident_service)
):
    filters = {"status": status_filter, "rule_id": rule_id, "min_level": min_level}
    incidents, total = await service.list_incidents(filters, page, limit)
    return IncidentListResponse(
        data=[IncidentResponse.from_domain(i) for i in incidents],
        pagination=_pagination(page, limit, total)
    )


@router.get(
    "/incidents/active",
    response_model=IncidentListResponse,
    summary="Unresolved incidents, oldest first"
)
async def list_active_incidents(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    service: IncidentService = Depends(get_incident_service)
):
    incidents, total = await service.list_incidents({"unresolved": True, "order": "oldest"}, page, limit)
    return IncidentListResponse(
        data=[IncidentResponse.from_domain(i) for i in incidents],
        pagination=_pagination(page, limit, total)
    )


@router.get(
    "/incidents/escalated",
    response_model=IncidentListResponse,
    summary="Unresolved incidents at or above a level, highest level first"
)
async def list_escalated_incidents(
    min_level: int = Query(2, ge=1),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    service: IncidentService = Depends(get_incident_service)
):
    filters = {"unresolved": True, "min_level": min_level, "order": "level"}
    incidents, total = await service.list_incidents(filters, page, limit)
    return IncidentListResponse(
        data=[IncidentResponse.from_domain(i) for i in incidents],
        pagination=_pagination(page, limit, total)
    )


@router.get(
    "/incidents/{incident_id}",
    response_model=IncidentResponse,
    summary="Get incident",
    responses={
        200: {"content": {"application/json": {"example": INCIDENT_RESPONSE_EXAMPLE}}},
        404: {"description": "Incident not found"}
    }
)
async def get_incident(
    incident_id: str,
    service: IncidentService = Depends(get_incident_service)
):
    return IncidentResponse.from_domain(await service.get_incident(incident_id))


@router.get(
    "/incidents/{incident_id}/timeline",
    response_model=TimelineResponse,
    summary="Incident timeline (trigger, escalations, notifications, acknowledgments, resolution)"
)
async def get_incident_timeline(
    incident_id: str,
    service: IncidentService = Depends(get_incident_service)
):
    incident, events = await service.get_timeline(incident_id)
    return TimelineResponse(
        incident_id=incident.id,
        reference=incident.reference,
        rule_id=incident.rule_id,
        status=incident.status.value,
        timeline=[TimelineEntryResponse.from_domain(e) for e in events]
    )


@router.patch(
    "/incidents/{incident_id}/acknowledge",
    response_model=IncidentResponse,
    summary="Acknowledge an open incident (cancels pending escalation)",
    responses={404: {"description": "Incident not found"}, 409: {"description": "Incident is not open"}}
)
async def acknowledge_incident(
    incident_id: str,
    request: AcknowledgeRequest,
    service: IncidentService = Depends(get_incident_service)
):
    incident = await service.acknowledge(incident_id, request.actor, request.comments)
    return IncidentResponse.from_domain(incident)


@router.patch(
    "/incidents/{incident_id}/resolve",
    response_model=IncidentResponse,
    summary="Resolve an incident",
    responses={404: {"description": "Incident not found"}, 409: {"description": "Incident already resolved"}}
)
async def resolve_incident(
    incident_id: str,
    request: ResolveRequest,
    service: IncidentService = Depends(get_incident_service)
):
    incident = await service.resolve(incident_id, request.actor, request.resolution, request.notes)
    return IncidentResponse.from_domain(incident)


@router.patch(
    "/incidents/{incident_id}/pause",
    response_model=IncidentResponse,
    summary="Freeze an open incident's escalation clock",
    responses={409: {"description": "Incident not open or already paused"}}
)
async def pause_incident(
    incident_id: str,
    request: IncidentActionRequest = IncidentActionRequest(),
    service: IncidentService = Depends(get_incident_service)
):
    return IncidentResponse.from_domain(await service.pause(incident_id, request.actor))


@router.patch(
    "/incidents/{incident_id}/resume",
    response_model=IncidentResponse,
    summary="Restart a paused incident's escalation clock",
    responses={409: {"description": "Incident not open or not paused"}}
)
async def resume_incident(
    incident_id: str,
    request: IncidentActionRequest = IncidentActionRequest(),
    service: IncidentService = Depends(get_incident_service)
):
    return IncidentResponse.from_domain(await service.resume(incident_id, request.actor))


# ========== Statistics ==========

@router.get(
    "/statistics",
    response_model=StatisticsResponse,
    summary="Rule and incident counters"
)
async def get_statistics(
    service: StatisticsService = Depends(get_statistics_service)
):
    return StatisticsResponse(**await service.overview())


# Export router
escalation_router = router
