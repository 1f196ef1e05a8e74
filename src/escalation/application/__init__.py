"""
Escalation Application Layer
=============================

Application layer for the escalation module.

Contains:
- Services: Orchestrate business logic and coordinate with repositories
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from src.escalation.application.dto import (
    RuleCreateRequest,
    RuleUpdateRequest,
    BulkStatusRequest,
    TriggerRequest,
    EventRequest,
    AcknowledgeRequest,
    ResolveRequest,
    IncidentActionRequest,
    RuleResponse,
    RuleListResponse,
    IncidentResponse,
    IncidentListResponse,
    EvaluateResponse,
    TriggerResponse,
    EventResponse,
    BulkStatusResponse,
    TimelineResponse,
    TimelineEntryResponse,
    StatisticsResponse,
    PaginationInfo,
)
from src.escalation.application.services import (
    RuleService,
    IncidentService,
    EscalationSweepService,
    StatisticsService,
    NotificationRecorder,
    DispatchReport,
    TriggerOutcome,
    IRuleRepository,
    IIncidentRepository,
    INotifier,
)

__all__ = [
    # DTOs
    "RuleCreateRequest",
    "RuleUpdateRequest",
    "BulkStatusRequest",
    "TriggerRequest",
    "EventRequest",
    "AcknowledgeRequest",
    "ResolveRequest",
    "IncidentActionRequest",
    "RuleResponse",
    "RuleListResponse",
    "IncidentResponse",
    "IncidentListResponse",
    "EvaluateResponse",
    "TriggerResponse",
    "EventResponse",
    "BulkStatusResponse",
    "TimelineResponse",
    "TimelineEntryResponse",
    "StatisticsResponse",
    "PaginationInfo",
    # Services
    "RuleService",
    "IncidentService",
    "EscalationSweepService",
    "StatisticsService",
    "NotificationRecorder",
    "DispatchReport",
    "TriggerOutcome",
    # Repository Interfaces
    "IRuleRepository",
    "IIncidentRepository",
    "INotifier",
]
