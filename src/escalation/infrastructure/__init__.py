"""
Escalation Infrastructure Layer
================================

Infrastructure implementations for the escalation engine:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer with compare-and-set writes
- External: Notification channels, config watcher, scheduler
"""

from src.escalation.infrastructure.models import EscalationRuleModel, IncidentModel, IncidentEventModel
from src.escalation.infrastructure.repositories import (
    SQLAlchemyRuleRepository,
    SQLAlchemyIncidentRepository,
)
from src.escalation.infrastructure.external import (
    NotificationConfigManager,
    CircuitBreaker,
    Notifier,
    EscalationScheduler,
)

__all__ = [
    "EscalationRuleModel",
    "IncidentModel",
    "IncidentEventModel",
    "SQLAlchemyRuleRepository",
    "SQLAlchemyIncidentRepository",
    "NotificationConfigManager",
    "CircuitBreaker",
    "Notifier",
    "EscalationScheduler",
]
