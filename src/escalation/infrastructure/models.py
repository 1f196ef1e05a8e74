"""
Escalation Infrastructure Models
=================================

SQLAlchemy ORM models for the escalation module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from src.infrastructure.database import Base
from src.config import IncidentStatus, RulePriority, RuleStatus, Severity


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EscalationRuleModel(Base):
    """
    Database model for EscalationRule entity.

    Maps to the 'escalation_rules' table. ``open_incident_id`` is the
    single-open-incident slot claimed with a compare-and-set on trigger.
    """
    __tablename__ = "escalation_rules"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Identity and classification
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    rule_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=RuleStatus.ACTIVE.value, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default=Severity.MEDIUM.value, index=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default=RulePriority.NORMAL.value)

    # Trigger and escalation configuration
    trigger_condition: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    levels: Mapped[list] = mapped_column(JSON, nullable=False)
    time_to_escalate: Mapped[int] = mapped_column(Integer, nullable=False, default=60)  # minutes
    escalation_interval: Mapped[int] = mapped_column(Integer, nullable=False, default=30)  # minutes
    working_hours: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    maintenance_windows: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Notification targets and content
    notification_channels: Mapped[list] = mapped_column(JSON, nullable=False)
    recipients: Mapped[list] = mapped_column(JSON, nullable=False)
    subject_template: Mapped[str] = mapped_column(String(500), nullable=False)
    message_template: Mapped[str] = mapped_column(Text, nullable=False)
    sms_template: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)

    # Current incident slot
    open_incident_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)

    # Monitoring and tracking
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    total_triggers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved_triggers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_resolution_minutes: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class IncidentModel(Base):
    """
    Database model for Incident entity.

    Maps to the 'incidents' table. ``version`` guards every write
    (UPDATE ... WHERE version = expected).
    """
    __tablename__ = "incidents"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    reference: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Rule reference
    rule_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("escalation_rules.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=IncidentStatus.OPEN.value, index=True)
    current_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_level: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger_payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    retrigger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Escalation clock
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    next_escalation_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paused_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paused_remaining_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Acknowledgment
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledgments: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Resolution
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolution_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Notification faults
    faults: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class IncidentEventModel(Base):
    """
    Database model for timeline events.

    Maps to the 'incident_events' table (append-only).
    """
    __tablename__ = "incident_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    rule_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("escalation_rules.id", ondelete="CASCADE"), nullable=False, index=True
    )
    incident_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    actor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, index=True)
