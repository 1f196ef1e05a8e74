"""
Escalation Domain Layer
=======================

Domain layer for the escalation module.

Contains:
- Entities: Core business objects with identity (EscalationRule, Incident)
- Value Objects: Immutable objects defined by attributes (ConditionGroup,
  EscalationLevel, WorkingHours, MaintenanceWindow, NotificationConfig)
- Domain Services: Stateless business logic (TriggerEvaluator, TemplateRenderer)

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from src.escalation.domain.entities import (
    EscalationRule,
    Incident,
    Acknowledgment,
    Resolution,
    NotificationFault,
    TimelineEvent,
    utc_now,
)
from src.escalation.domain.value_objects import (
    Condition,
    ConditionGroup,
    TriggerEvaluator,
    TemplateRenderer,
    EscalationLevel,
    WorkingHours,
    MaintenanceWindow,
    DeliveryTarget,
    NotificationMessage,
    NotificationConfig,
    RetryPolicy,
    CircuitBreakerConfig,
    ChannelConfig,
)

__all__ = [
    # Entities
    "EscalationRule",
    "Incident",
    "Acknowledgment",
    "Resolution",
    "NotificationFault",
    "TimelineEvent",
    "utc_now",
    # Value Objects & Services
    "Condition",
    "ConditionGroup",
    "TriggerEvaluator",
    "TemplateRenderer",
    "EscalationLevel",
    "WorkingHours",
    "MaintenanceWindow",
    "DeliveryTarget",
    "NotificationMessage",
    "NotificationConfig",
    "RetryPolicy",
    "CircuitBreakerConfig",
    "ChannelConfig",
]
