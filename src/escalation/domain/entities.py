"""
Escalation Domain Entities
===========================

Pure Python domain entities for escalation rules and incidents.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.

Incidents are immutable: every lifecycle transition returns a new
``Incident`` value and leaves the original untouched.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from src.config import (
    IncidentStatus, RuleStatus, TimelineEventType
)
from src.core import InvalidStateTransitionException
from src.escalation.domain.value_objects import (
    ConditionGroup, DeliveryTarget, EscalationLevel, MaintenanceWindow,
    WorkingHours, minutes
)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ========== Records attached to incidents ==========

@dataclass(frozen=True)
class Acknowledgment:
    """Append-only record of someone taking ownership of an incident."""
    actor: str
    acknowledged_at: datetime
    level: int
    response_seconds: float
    comments: str = ""

    def to_dict(self) -> dict:
        return {
            "actor": self.actor,
            "acknowledged_at": _iso(self.acknowledged_at),
            "level": self.level,
            "response_seconds": self.response_seconds,
            "comments": self.comments
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Acknowledgment":
        return cls(
            actor=data["actor"],
            acknowledged_at=_parse(data["acknowledged_at"]),
            level=data["level"],
            response_seconds=data["response_seconds"],
            comments=data.get("comments", "")
        )


@dataclass(frozen=True)
class Resolution:
    """Terminal record closing an incident's lifecycle."""
    actor: str
    resolution: str
    resolved_at: datetime
    resolution_seconds: float
    notes: str = ""


@dataclass(frozen=True)
class NotificationFault:
    """A delivery that failed after exhausting its retries."""
    channel: str
    recipient: str
    level: int
    error: str
    attempts: int
    occurred_at: datetime

    def to_dict(self) -> dict:
        return {
            "channel": self.channel,
            "recipient": self.recipient,
            "level": self.level,
            "error": self.error,
            "attempts": self.attempts,
            "occurred_at": _iso(self.occurred_at)
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationFault":
        return cls(
            channel=data["channel"],
            recipient=data["recipient"],
            level=data["level"],
            error=data["error"],
            attempts=data["attempts"],
            occurred_at=_parse(data["occurred_at"])
        )


@dataclass(frozen=True)
class TimelineEvent:
    """One entry of an incident's timeline."""
    event_type: TimelineEventType
    occurred_at: datetime
    description: str
    rule_id: str
    incident_id: Optional[str] = None
    level: Optional[int] = None
    actor: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


# ========== Rule ==========

@dataclass
class EscalationRule:
    """
    Escalation rule entity.

    Describes when an incident opens and how it escalates. While the rule
    has an unresolved incident, only ``METADATA_FIELDS`` may change.
    """

    METADATA_FIELDS = frozenset({"name", "description", "priority"})

    id: str
    name: str
    rule_type: str
    status: str
    trigger_condition: ConditionGroup
    severity: str
    priority: str
    levels: Tuple[EscalationLevel, ...]
    time_to_escalate: int
    escalation_interval: int
    notification_channels: Tuple[str, ...]
    recipients: Tuple[str, ...]
    subject_template: str
    message_template: str
    sms_template: Optional[str] = None
    description: str = ""

    # When escalation may happen
    working_hours: Optional[WorkingHours] = None
    maintenance_windows: Tuple[MaintenanceWindow, ...] = ()

    # Bookkeeping
    open_incident_id: Optional[str] = None
    last_triggered_at: Optional[datetime] = None
    total_triggers: int = 0
    resolved_triggers: int = 0
    avg_resolution_minutes: Optional[float] = None
    version: int = 1
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        """Validate level ordering on initialization."""
        if not self.levels:
            raise ValueError("An escalation rule needs at least one level")
        numbers = [lvl.level for lvl in self.levels]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError("Escalation levels must be numbered 1..N in order")

    @property
    def max_level(self) -> int:
        return len(self.levels)

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE.value

    @property
    def has_open_incident(self) -> bool:
        return self.open_incident_id is not None

    def get_level(self, level: int) -> EscalationLevel:
        return self.levels[level - 1]

    def delay_for_level(self, level: int) -> timedelta:
        """How long an incident waits at ``level`` before escalating."""
        configured = self.get_level(level).delay_minutes
        if configured is not None:
            return minutes(configured)
        if level == 1:
            return minutes(self.time_to_escalate)
        return minutes(self.escalation_interval)

    def targets_for_level(self, level: int) -> List[DeliveryTarget]:
        """Channel x recipient pairs to notify at ``level``."""
        step = self.get_level(level)
        channels = step.channels or self.notification_channels
        recipients = step.recipients or self.recipients
        return [
            DeliveryTarget(channel=channel, recipient=recipient)
            for channel in channels
            for recipient in recipients
        ]

    def next_allowed_time(self, moment: datetime) -> datetime:
        """
        Earliest instant at or after ``moment`` when escalation may run.

        That is outside every maintenance window and, when working hours
        are set, inside them.
        """
        candidate = moment
        for _ in range(2 * len(self.maintenance_windows) + 3):
            shifted = candidate
            for window in self.maintenance_windows:
                if window.contains(shifted):
                    shifted = window.ends_at
            if self.working_hours is not None:
                shifted = self.working_hours.next_opening(shifted)
            if shifted == candidate:
                break
            candidate = shifted
        return candidate


# ========== Incident ==========

@dataclass(frozen=True)
class Incident:
    """
    One firing of a rule, tracked through acknowledgment and resolution.

    States: open -> acknowledged -> resolved, with open also looping onto
    itself as the level rises. ``next_escalation_at`` is the persisted due
    time of the next escalation; ``None`` means nothing is pending.
    """

    id: str
    reference: str
    rule_id: str
    status: IncidentStatus
    current_level: int
    max_level: int
    created_at: datetime
    trigger_payload: Dict[str, Any] = field(default_factory=dict)
    next_escalation_at: Optional[datetime] = None
    last_escalated_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    paused_remaining_seconds: Optional[float] = None
    acknowledged_at: Optional[datetime] = None
    acknowledgments: Tuple[Acknowledgment, ...] = ()
    resolution: Optional[Resolution] = None
    faults: Tuple[NotificationFault, ...] = ()
    retrigger_count: int = 0
    version: int = 1

    def __post_init__(self):
        if not 1 <= self.current_level <= self.max_level:
            raise ValueError(
                f"current_level {self.current_level} outside [1, {self.max_level}]"
            )

    # ----- constructors -----

    @classmethod
    def open(
        cls,
        rule: EscalationRule,
        payload: Dict[str, Any],
        now: datetime,
        incident_id: Optional[str] = None
    ) -> "Incident":
        """Open a new incident for ``rule`` at level 1."""
        next_due = now + rule.delay_for_level(1) if rule.max_level > 1 else None
        incident_id = incident_id or str(uuid4())
        return cls(
            id=incident_id,
            # Millisecond stamp plus an id fragment keeps same-instant incidents apart
            reference=f"INC{int(now.timestamp() * 1000)}{incident_id[:4].upper()}",
            rule_id=rule.id,
            status=IncidentStatus.OPEN,
            current_level=1,
            max_level=rule.max_level,
            created_at=now,
            trigger_payload=dict(payload),
            next_escalation_at=next_due
        )

    # ----- queries -----

    @property
    def is_open(self) -> bool:
        return self.status == IncidentStatus.OPEN

    @property
    def is_resolved(self) -> bool:
        return self.status == IncidentStatus.RESOLVED

    @property
    def is_paused(self) -> bool:
        return self.paused_at is not None

    @property
    def at_max_level(self) -> bool:
        return self.current_level >= self.max_level

    def is_escalation_due(self, now: datetime) -> bool:
        return (
            self.is_open
            and not self.is_paused
            and self.next_escalation_at is not None
            and self.next_escalation_at <= now
        )

    def _require(self, action: str, *allowed: IncidentStatus) -> None:
        if self.status not in allowed:
            raise InvalidStateTransitionException("incident", action, self.status.value)

    # ----- transitions -----

    def escalate(
        self,
        rule: EscalationRule,
        now: datetime,
        anchor: Optional[datetime] = None
    ) -> "Incident":
        """
        Move one level up.

        ``anchor`` is the due time being honoured; the next due time is
        measured from it so a late sweep does not stretch later levels.
        At the top level this only clears the pending escalation.
        """
        self._require("escalate", IncidentStatus.OPEN)
        if self.is_paused:
            raise InvalidStateTransitionException("incident", "escalate", "paused")

        if self.at_max_level:
            return replace(self, next_escalation_at=None)

        new_level = self.current_level + 1
        base = anchor or now
        next_due = base + rule.delay_for_level(new_level) if new_level < self.max_level else None
        return replace(
            self,
            current_level=new_level,
            last_escalated_at=now,
            next_escalation_at=next_due
        )

    def defer(self, until: datetime) -> "Incident":
        """Hold the pending escalation until ``until``; the level is unchanged."""
        self._require("defer", IncidentStatus.OPEN)
        if self.is_paused or self.next_escalation_at is None:
            raise InvalidStateTransitionException("incident", "defer", "paused" if self.is_paused else "idle")
        return replace(self, next_escalation_at=until)

    def acknowledge(self, actor: str, now: datetime, comments: str = "") -> "Incident":
        """Take ownership; cancels any pending escalation."""
        self._require("acknowledge", IncidentStatus.OPEN)
        ack = Acknowledgment(
            actor=actor,
            acknowledged_at=now,
            level=self.current_level,
            response_seconds=(now - self.created_at).total_seconds(),
            comments=comments
        )
        return replace(
            self,
            status=IncidentStatus.ACKNOWLEDGED,
            acknowledged_at=now,
            acknowledgments=self.acknowledgments + (ack,),
            next_escalation_at=None,
            paused_at=None,
            paused_remaining_seconds=None
        )

    def resolve(
        self,
        actor: str,
        resolution: str,
        now: datetime,
        notes: str = ""
    ) -> "Incident":
        """Close the incident; no transition is accepted afterwards."""
        self._require("resolve", IncidentStatus.OPEN, IncidentStatus.ACKNOWLEDGED)
        record = Resolution(
            actor=actor,
            resolution=resolution,
            resolved_at=now,
            resolution_seconds=(now - self.created_at).total_seconds(),
            notes=notes
        )
        return replace(
            self,
            status=IncidentStatus.RESOLVED,
            resolution=record,
            next_escalation_at=None,
            paused_at=None,
            paused_remaining_seconds=None
        )

    def pause(self, now: datetime) -> "Incident":
        """Freeze the escalation clock, keeping the remaining delay."""
        self._require("pause", IncidentStatus.OPEN)
        if self.is_paused:
            raise InvalidStateTransitionException("incident", "pause", "paused")
        remaining = None
        if self.next_escalation_at is not None:
            remaining = max(0.0, (self.next_escalation_at - now).total_seconds())
        return replace(
            self,
            paused_at=now,
            paused_remaining_seconds=remaining,
            next_escalation_at=None
        )

    def resume(self, now: datetime) -> "Incident":
        """Restart the escalation clock with the delay left at pause time."""
        self._require("resume", IncidentStatus.OPEN)
        if not self.is_paused:
            raise InvalidStateTransitionException("incident", "resume", "running")
        next_due = None
        if self.paused_remaining_seconds is not None:
            next_due = now + timedelta(seconds=self.paused_remaining_seconds)
        return replace(
            self,
            paused_at=None,
            paused_remaining_seconds=None,
            next_escalation_at=next_due
        )

    def record_faults(self, faults: List[NotificationFault]) -> "Incident":
        """Attach delivery faults; allowed in any state."""
        if not faults:
            return self
        return replace(self, faults=self.faults + tuple(faults))

    def record_retrigger(self) -> "Incident":
        """Count a trigger merged into this incident."""
        if self.is_resolved:
            raise InvalidStateTransitionException("incident", "retrigger", self.status.value)
        return replace(self, retrigger_count=self.retrigger_count + 1)
