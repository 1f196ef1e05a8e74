"""
Escalation Application DTOs
============================

Data Transfer Objects for the escalation API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses. Operators inside trigger conditions are
checked by the rule service so errors carry the condition path.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from src.escalation.domain import EscalationRule, Incident, TimelineEvent


# ========== Type Aliases for Literals ==========
RuleTypeStr = Literal[
    "compliance_deadline", "audit_breach", "non_compliance", "risk_threshold",
    "policy_violation", "document_expiry", "training_due", "license_expiry",
    "regulatory_change", "system_error", "data_anomaly", "custom"
]
SeverityStr = Literal["low", "medium", "high", "critical"]
PriorityStr = Literal["low", "normal", "high", "urgent"]
RuleStatusStr = Literal["active", "inactive", "paused"]
IncidentStatusStr = Literal["open", "acknowledged", "resolved"]
ChannelStr = Literal["email", "sms", "webhook", "slack"]
LogicalOperatorStr = Literal["and", "or"]


# ========== Request DTOs ==========

class ConditionDTO(BaseModel):
    """A single comparison against a payload field (dotted path)."""
    field: str = Field(..., min_length=1, description="Dotted path into the event payload")
    operator: str = Field(..., description="Comparison operator, e.g. greater_than")
    value: Any = Field(None, description="Operand; a list for in/not_in, [low, high] for between")


class ConditionGroupDTO(BaseModel):
    """Group of conditions joined by and/or; groups may nest."""
    logical_operator: LogicalOperatorStr = Field(default="and")
    conditions: List[Union["ConditionGroupDTO", ConditionDTO]] = Field(...)


class EscalationLevelDTO(BaseModel):
    """One escalation step."""
    level: int = Field(..., ge=1, description="1-based level number")
    delay_minutes: Optional[int] = Field(
        None, ge=1, description="Minutes at this level before escalating further"
    )
    channels: List[ChannelStr] = Field(default_factory=list, description="Overrides rule channels")
    recipients: List[str] = Field(default_factory=list, description="Overrides rule recipients")


class WorkingHoursDTO(BaseModel):
    """Weekly hours during which escalation may run, local to `timezone`."""
    start_hour: int = Field(default=9, ge=0, le=23)
    end_hour: int = Field(default=18, ge=1, le=24, description="Exclusive")
    days: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4], min_length=1, description="Weekdays, Monday is 0")
    timezone: str = Field(default="UTC", description="IANA timezone name")


class MaintenanceWindowDTO(BaseModel):
    """Period during which escalation is held back."""
    starts_at: datetime
    ends_at: datetime
    reason: str = Field(default="", max_length=500)


class RuleCreateRequest(BaseModel):
    """Request model for creating an escalation rule."""
    name: str = Field(..., min_length=1, max_length=255)
    description: str = Field(default="", max_length=2000)
    rule_type: RuleTypeStr
    status: Literal["active", "inactive"] = Field(default="active")
    trigger_condition: ConditionGroupDTO = Field(
        default_factory=lambda: ConditionGroupDTO(conditions=[]),
        description="Empty condition matches every event"
    )
    severity: SeverityStr = Field(default="medium")
    priority: PriorityStr = Field(default="normal")
    levels: List[EscalationLevelDTO] = Field(..., min_length=1)
    time_to_escalate: int = Field(default=60, ge=1, description="Minutes before leaving level 1")
    escalation_interval: int = Field(default=30, ge=1, description="Minutes between later levels")
    notification_channels: List[ChannelStr] = Field(..., min_length=1)
    recipients: List[str] = Field(..., min_length=1)
    subject_template: str = Field(..., min_length=1, max_length=500)
    message_template: str = Field(..., min_length=1)
    sms_template: Optional[str] = Field(None, max_length=160)
    working_hours: Optional[WorkingHoursDTO] = Field(None, description="Escalate only inside these hours")
    maintenance_windows: List[MaintenanceWindowDTO] = Field(default_factory=list)


class RuleUpdateRequest(BaseModel):
    """Partial rule update; only fields that are sent are applied."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    rule_type: Optional[RuleTypeStr] = None
    trigger_condition: Optional[ConditionGroupDTO] = None
    severity: Optional[SeverityStr] = None
    priority: Optional[PriorityStr] = None
    levels: Optional[List[EscalationLevelDTO]] = Field(None, min_length=1)
    time_to_escalate: Optional[int] = Field(None, ge=1)
    escalation_interval: Optional[int] = Field(None, ge=1)
    notification_channels: Optional[List[ChannelStr]] = Field(None, min_length=1)
    recipients: Optional[List[str]] = Field(None, min_length=1)
    subject_template: Optional[str] = Field(None, min_length=1, max_length=500)
    message_template: Optional[str] = Field(None, min_length=1)
    sms_template: Optional[str] = Field(None, max_length=160)
    working_hours: Optional[WorkingHoursDTO] = None
    maintenance_windows: Optional[List[MaintenanceWindowDTO]] = None


class BulkStatusRequest(BaseModel):
    rule_ids: List[str] = Field(..., min_length=1)
    status: RuleStatusStr


class TriggerRequest(BaseModel):
    """Event data presented to a rule."""
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventRequest(BaseModel):
    """Event data presented to every active rule."""
    payload: Dict[str, Any] = Field(default_factory=dict)
    rule_type: Optional[RuleTypeStr] = Field(None, description="Only consider rules of this type")


class AcknowledgeRequest(BaseModel):
    actor: str = Field(..., min_length=1, description="Who takes ownership")
    comments: str = Field(default="", max_length=2000)


class ResolveRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    resolution: str = Field(..., min_length=1, max_length=2000)
    notes: str = Field(default="", max_length=5000)


class IncidentActionRequest(BaseModel):
    actor: Optional[str] = Field(None, description="Who paused/resumed escalation")


# ========== Response DTOs ==========

class PaginationInfo(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class RuleResponse(BaseModel):
    """Response model for an escalation rule."""
    id: str
    name: str
    description: str
    rule_type: RuleTypeStr
    status: RuleStatusStr
    trigger_condition: Dict[str, Any]
    severity: SeverityStr
    priority: PriorityStr
    levels: List[EscalationLevelDTO]
    max_level: int
    time_to_escalate: int
    escalation_interval: int
    notification_channels: List[ChannelStr]
    recipients: List[str]
    subject_template: str
    message_template: str
    sms_template: Optional[str] = None
    working_hours: Optional[WorkingHoursDTO] = None
    maintenance_windows: List[MaintenanceWindowDTO] = Field(default_factory=list)
    open_incident_id: Optional[str] = None
    last_triggered_at: Optional[datetime] = None
    total_triggers: int
    resolved_triggers: int
    avg_resolution_minutes: Optional[float] = None
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, rule: EscalationRule) -> "RuleResponse":
        return cls(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            rule_type=rule.rule_type,
            status=rule.status,
            trigger_condition=rule.trigger_condition.to_dict(),
            severity=rule.severity,
            priority=rule.priority,
            levels=[EscalationLevelDTO(**lvl.to_dict()) for lvl in rule.levels],
            max_level=rule.max_level,
            time_to_escalate=rule.time_to_escalate,
            escalation_interval=rule.escalation_interval,
            notification_channels=list(rule.notification_channels),
            recipients=list(rule.recipients),
            subject_template=rule.subject_template,
            message_template=rule.message_template,
            sms_template=rule.sms_template,
            working_hours=WorkingHoursDTO(**rule.working_hours.to_dict()) if rule.working_hours else None,
            maintenance_windows=[MaintenanceWindowDTO(**w.to_dict()) for w in rule.maintenance_windows],
            open_incident_id=rule.open_incident_id,
            last_triggered_at=rule.last_triggered_at,
            total_triggers=rule.total_triggers,
            resolved_triggers=rule.resolved_triggers,
            avg_resolution_minutes=rule.avg_resolution_minutes,
            version=rule.version,
            created_at=rule.created_at,
            updated_at=rule.updated_at
        )


class RuleListResponse(BaseModel):
    data: List[RuleResponse]
    pagination: PaginationInfo


class AcknowledgmentResponse(BaseModel):
    actor: str
    acknowledged_at: datetime
    level: int
    response_seconds: float
    comments: str


class ResolutionResponse(BaseModel):
    actor: str
    resolution: str
    resolved_at: datetime
    resolution_seconds: float
    notes: str


class NotificationFaultResponse(BaseModel):
    channel: ChannelStr
    recipient: str
    level: int
    error: str
    attempts: int
    occurred_at: datetime


class IncidentResponse(BaseModel):
    """Response model for an incident."""
    id: str
    reference: str
    rule_id: str
    status: IncidentStatusStr
    current_level: int
    max_level: int
    created_at: datetime
    trigger_payload: Dict[str, Any]
    next_escalation_at: Optional[datetime] = None
    last_escalated_at: Optional[datetime] = None
    is_paused: bool
    acknowledged_at: Optional[datetime] = None
    acknowledgments: List[AcknowledgmentResponse] = Field(default_factory=list)
    resolution: Optional[ResolutionResponse] = None
    notification_faults: List[NotificationFaultResponse] = Field(default_factory=list)
    retrigger_count: int
    version: int

    @classmethod
    def from_domain(cls, incident: Incident) -> "IncidentResponse":
        resolution = None
        if incident.resolution is not None:
            r = incident.resolution
            resolution = ResolutionResponse(
                actor=r.actor,
                resolution=r.resolution,
                resolved_at=r.resolved_at,
                resolution_seconds=r.resolution_seconds,
                notes=r.notes
            )
        return cls(
            id=incident.id,
            reference=incident.reference,
            rule_id=incident.rule_id,
            status=incident.status.value,
            current_level=incident.current_level,
            max_level=incident.max_level,
            created_at=incident.created_at,
            trigger_payload=incident.trigger_payload,
            next_escalation_at=incident.next_escalation_at,
            last_escalated_at=incident.last_escalated_at,
            is_paused=incident.is_paused,
            acknowledged_at=incident.acknowledged_at,
            acknowledgments=[
                AcknowledgmentResponse(
                    actor=a.actor,
                    acknowledged_at=a.acknowledged_at,
                    level=a.level,
                    response_seconds=a.response_seconds,
                    comments=a.comments
                )
                for a in incident.acknowledgments
            ],
            resolution=resolution,
            notification_faults=[NotificationFaultResponse(**f.to_dict()) for f in incident.faults],
            retrigger_count=incident.retrigger_count,
            version=incident.version
        )


class IncidentListResponse(BaseModel):
    data: List[IncidentResponse]
    pagination: PaginationInfo


class EvaluateResponse(BaseModel):
    rule_id: str
    matched: bool


class TriggerResponse(BaseModel):
    """Outcome of presenting event data to one rule."""
    rule_id: str
    matched: bool
    created: bool = False
    conflict: bool = False
    skipped: Optional[str] = Field(None, description="Why the rule was not evaluated")
    incident: Optional[IncidentResponse] = None
    notifications_sent: int = 0
    notification_failures: int = 0


class EventResponse(BaseModel):
    evaluated_rules: int
    matched_rules: int
    incidents_created: int
    results: List[TriggerResponse]


class BulkStatusResponse(BaseModel):
    updated: int
    status: RuleStatusStr


class TimelineEntryResponse(BaseModel):
    id: Optional[str] = None
    event_type: str
    occurred_at: datetime
    description: str
    level: Optional[int] = None
    actor: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_domain(cls, event: TimelineEvent) -> "TimelineEntryResponse":
        return cls(
            id=event.id,
            event_type=event.event_type.value,
            occurred_at=event.occurred_at,
            description=event.description,
            level=event.level,
            actor=event.actor,
            data=event.data
        )


class TimelineResponse(BaseModel):
    incident_id: str
    reference: str
    rule_id: str
    status: IncidentStatusStr
    timeline: List[TimelineEntryResponse]


class StatisticsResponse(BaseModel):
    """Overview counters for rules and incidents."""
    total_rules: int
    active_rules: int
    inactive_rules: int
    paused_rules: int
    triggered_rules: int = Field(..., description="Rules holding an unresolved incident")
    critical_rules: int
    total_triggers: int
    resolved_triggers: int
    avg_resolution_minutes: Optional[float] = None
    activation_rate: float = Field(..., description="Active rules, percent")
    resolution_rate: float = Field(..., description="Resolved triggers, percent")
    total_incidents: int
    open_incidents: int
    acknowledged_incidents: int
    resolved_incidents: int
    escalated_incidents: int = Field(..., description="Unresolved incidents above level 1")


# Update forward references
ConditionGroupDTO.model_rebuild()
