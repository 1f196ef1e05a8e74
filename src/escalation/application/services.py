"""
Escalation Application Services
================================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories, notifier),
  not concrete implementations
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from src.config import (
    RuleStatus, TimelineEventType, TriggerConflictPolicy,
    SMS_MAX_LENGTH, VALID_CHANNELS, VALID_RULE_STATUSES
)
from src.core import (
    ConcurrencyException, ConflictException, InvalidStateTransitionException,
    ResourceNotFoundException, ValidationException
)
from src.escalation.domain import (
    ConditionGroup, EscalationLevel, EscalationRule, Incident, MaintenanceWindow,
    NotificationFault, TimelineEvent, TriggerEvaluator, WorkingHours, utc_now
)
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


# ========== Repository Interfaces (Dependency Inversion) ==========

class IRuleRepository(ABC):
    """Interface for escalation rule data access."""

    @abstractmethod
    async def get(self, rule_id: str) -> Optional[EscalationRule]:
        """Get rule by ID."""

    @abstractmethod
    async def create(self, rule: EscalationRule) -> EscalationRule:
        """Persist a new rule."""

    @abstractmethod
    async def update(self, rule: EscalationRule, require_no_open_incident: bool) -> EscalationRule:
        """
        Write ``rule`` if its stored version still equals ``rule.version``.

        Raises ConcurrencyException when the row changed underneath, or when
        ``require_no_open_incident`` is set and an incident holds the slot.
        """

    @abstractmethod
    async def delete(self, rule_id: str) -> bool:
        """Delete a rule that has no open incident; False if one appeared."""

    @abstractmethod
    async def list(
        self,
        filters: dict,
        limit: int = 10,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc"
    ) -> Tuple[List[EscalationRule], int]:
        """List rules with filters; returns (page, total)."""

    @abstractmethod
    async def claim_incident_slot(self, rule_id: str, incident_id: str, now: datetime) -> bool:
        """Compare-and-set the rule's open incident; False if already taken."""

    @abstractmethod
    async def release_incident_slot(
        self,
        rule_id: str,
        incident_id: str,
        resolution_minutes: float
    ) -> None:
        """Clear the slot held by ``incident_id`` and fold in resolution stats."""

    @abstractmethod
    async def bulk_update_status(self, rule_ids: List[str], status: str) -> int:
        """Set status on many rules; returns rows changed."""

    @abstractmethod
    async def statistics(self) -> Dict[str, Any]:
        """Aggregate rule counters."""


class IIncidentRepository(ABC):
    """Interface for incident and timeline data access."""

    @abstractmethod
    async def get(self, incident_id: str) -> Optional[Incident]:
        """Get incident by ID (always re-read from storage)."""

    @abstractmethod
    async def create(self, incident: Incident) -> Incident:
        """Persist a new incident."""

    @abstractmethod
    async def save(self, incident: Incident) -> Incident:
        """
        Write ``incident`` if the stored version equals ``incident.version``.

        Returns the incident with its bumped version; raises
        ConcurrencyException when another writer got there first.
        """

    @abstractmethod
    async def list(
        self,
        filters: dict,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[Incident], int]:
        """List incidents with filters; returns (page, total)."""

    @abstractmethod
    async def list_due(self, now: datetime, limit: int = 100) -> List[Incident]:
        """Open, unpaused incidents whose next escalation is due at ``now``."""

    @abstractmethod
    async def add_event(self, event: TimelineEvent) -> TimelineEvent:
        """Append a timeline event."""

    @abstractmethod
    async def list_events(self, incident_id: str) -> List[TimelineEvent]:
        """Timeline events of one incident, oldest first."""

    @abstractmethod
    async def statistics(self) -> Dict[str, Any]:
        """Aggregate incident counters."""

    @abstractmethod
    async def commit(self) -> None:
        """Make pending writes durable."""


@dataclass
class DispatchReport:
    """Outcome of one notification round."""
    delivered: List[Dict[str, Any]] = field(default_factory=list)
    faults: List[NotificationFault] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.faults)


class INotifier(ABC):
    """Interface for dispatching notifications for an incident's current level."""

    @abstractmethod
    async def dispatch(self, rule: EscalationRule, incident: Incident) -> DispatchReport:
        """Render and deliver; failures are reported, never raised."""


# ========== Results ==========

@dataclass
class TriggerOutcome:
    """Result of presenting event data to one rule."""
    rule_id: str
    matched: bool
    created: bool = False
    incident: Optional[Incident] = None
    conflict: bool = False
    report: Optional[DispatchReport] = None
    skipped: Optional[str] = None


# ========== Helpers ==========

async def apply_transition(
    repository: IIncidentRepository,
    incident_id: str,
    transition: Callable[[Incident], Incident],
    attempts: int = 3
) -> Tuple[Incident, Incident]:
    """
    Load, transition and save an incident, re-reading on a lost race.

    Returns (before, after). Domain errors from ``transition`` propagate
    immediately; only ConcurrencyException is retried.
    """
    for attempt in range(1, attempts + 1):
        current = await repository.get(incident_id)
        if current is None:
            raise ResourceNotFoundException("Incident", incident_id)

        updated = transition(current)
        if updated is current:
            return current, current

        try:
            saved = await repository.save(updated)
            return current, saved
        except ConcurrencyException:
            logger.info(
                "Incident write lost a race, re-reading",
                extra={"incident_id": incident_id, "attempt": attempt}
            )

    raise ConcurrencyException(
        f"Incident {incident_id} kept changing; gave up after {attempts} attempts",
        {"incident_id": incident_id}
    )


# ========== Application Services ==========

class RuleService:
    """
    Rule Store operations.

    Validates rule definitions and guards the fields of rules that are
    referenced by an open incident.
    """

    def __init__(
        self,
        rule_repository: IRuleRepository,
        incident_repository: IIncidentRepository,
        clock: Clock = utc_now
    ):
        self._rule_repo = rule_repository
        self._incident_repo = incident_repository
        self._clock = clock

    @staticmethod
    def validate_definition(data: Dict[str, Any]) -> List[dict]:
        """Field-level errors for a rule definition in plain-dict form."""
        errors = TriggerEvaluator.validate(data.get("trigger_condition"))

        levels = data.get("levels") or []
        if not levels:
            errors.append({"field": "levels", "message": "at least one escalation level is required"})
        numbers = [lvl.get("level") for lvl in levels]
        if levels and numbers != list(range(1, len(levels) + 1)):
            errors.append({"field": "levels", "message": "levels must be numbered 1..N in order"})

        for index, lvl in enumerate(levels):
            for channel in lvl.get("channels") or []:
                if channel not in VALID_CHANNELS:
                    errors.append({
                        "field": f"levels[{index}].channels",
                        "message": f"unknown channel '{channel}'"
                    })

        for channel in data.get("notification_channels") or []:
            if channel not in VALID_CHANNELS:
                errors.append({"field": "notification_channels", "message": f"unknown channel '{channel}'"})

        sms_template = data.get("sms_template")
        if sms_template and len(sms_template) > SMS_MAX_LENGTH:
            errors.append({"field": "sms_template", "message": f"must be at most {SMS_MAX_LENGTH} characters"})

        if data.get("working_hours"):
            errors.extend(WorkingHours.validate(data["working_hours"]))
        for index, window in enumerate(data.get("maintenance_windows") or []):
            errors.extend(MaintenanceWindow.validate(window, f"maintenance_windows[{index}]"))

        return errors

    @staticmethod
    def _build_rule(rule_id: str, data: Dict[str, Any], now: datetime) -> EscalationRule:
        return EscalationRule(
            id=rule_id,
            name=data["name"],
            description=data.get("description") or "",
            rule_type=data["rule_type"],
            status=data.get("status") or RuleStatus.ACTIVE.value,
            trigger_condition=ConditionGroup.from_dict(data.get("trigger_condition")),
            severity=data["severity"],
            priority=data["priority"],
            levels=tuple(EscalationLevel.from_dict(lvl) for lvl in data["levels"]),
            time_to_escalate=data["time_to_escalate"],
            escalation_interval=data["escalation_interval"],
            notification_channels=tuple(data["notification_channels"]),
            recipients=tuple(data["recipients"]),
            subject_template=data["subject_template"],
            message_template=data["message_template"],
            sms_template=data.get("sms_template"),
            working_hours=WorkingHours.from_dict(data["working_hours"]) if data.get("working_hours") else None,
            maintenance_windows=tuple(
                MaintenanceWindow.from_dict(window) for window in data.get("maintenance_windows") or ()
            ),
            created_at=now,
            updated_at=now
        )

    async def create_rule(self, data: Dict[str, Any]) -> EscalationRule:
        """Validate and store a new rule."""
        errors = self.validate_definition(data)
        if errors:
            raise ValidationException("Invalid escalation rule", errors=errors)

        now = self._clock()
        rule = await self._rule_repo.create(self._build_rule(str(uuid4()), data, now))
        await self._incident_repo.add_event(TimelineEvent(
            event_type=TimelineEventType.RULE_CREATED,
            occurred_at=now,
            description=f'Escalation rule "{rule.name}" was created',
            rule_id=rule.id
        ))

        logger.info(
            "Escalation rule created",
            extra={"rule_id": rule.id, "rule_type": rule.rule_type, "max_level": rule.max_level}
        )
        return rule

    async def get_rule(self, rule_id: str) -> EscalationRule:
        rule = await self._rule_repo.get(rule_id)
        if rule is None:
            raise ResourceNotFoundException("Escalation rule", rule_id)
        return rule

    async def list_rules(
        self,
        filters: dict,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        sort_order: str = "desc"
    ) -> Tuple[List[EscalationRule], int]:
        return await self._rule_repo.list(
            filters, limit=limit, offset=(page - 1) * limit,
            sort_by=sort_by, sort_order=sort_order
        )

    async def update_rule(self, rule_id: str, changes: Dict[str, Any]) -> EscalationRule:
        """
        Apply a partial update.

        While an incident is open only metadata fields may change.
        """
        rule = await self.get_rule(rule_id)
        if not changes:
            return rule

        locked = sorted(set(changes) - EscalationRule.METADATA_FIELDS)
        if rule.has_open_incident and locked:
            raise ConflictException(
                "Rule is referenced by an open incident; only metadata may change",
                {"rule_id": rule_id, "locked_fields": locked, "incident_id": rule.open_incident_id}
            )

        merged = {
            "name": rule.name,
            "description": rule.description,
            "rule_type": rule.rule_type,
            "status": rule.status,
            "trigger_condition": rule.trigger_condition.to_dict(),
            "severity": rule.severity,
            "priority": rule.priority,
            "levels": [lvl.to_dict() for lvl in rule.levels],
            "time_to_escalate": rule.time_to_escalate,
            "escalation_interval": rule.escalation_interval,
            "notification_channels": list(rule.notification_channels),
            "recipients": list(rule.recipients),
            "subject_template": rule.subject_template,
            "message_template": rule.message_template,
            "sms_template": rule.sms_template,
            "working_hours": rule.working_hours.to_dict() if rule.working_hours else None,
            "maintenance_windows": [window.to_dict() for window in rule.maintenance_windows],
        }
        merged.update(changes)

        errors = self.validate_definition(merged)
        if errors:
            raise ValidationException("Invalid escalation rule", errors=errors)

        updated = self._build_rule(rule.id, merged, rule.created_at)
        updated = replace(
            updated,
            open_incident_id=rule.open_incident_id,
            last_triggered_at=rule.last_triggered_at,
            total_triggers=rule.total_triggers,
            resolved_triggers=rule.resolved_triggers,
            avg_resolution_minutes=rule.avg_resolution_minutes,
            version=rule.version,
            updated_at=self._clock()
        )
        return await self._rule_repo.update(updated, require_no_open_incident=bool(locked))

    async def delete_rule(self, rule_id: str) -> None:
        rule = await self.get_rule(rule_id)
        if rule.has_open_incident or not await self._rule_repo.delete(rule_id):
            raise ConflictException(
                "Cannot delete a rule with an open incident",
                {"rule_id": rule_id, "incident_id": rule.open_incident_id}
            )
        logger.info("Escalation rule deleted", extra={"rule_id": rule_id})

    async def _set_status(self, rule_id: str, action: str, expected: str, target: str) -> EscalationRule:
        rule = await self.get_rule(rule_id)
        if rule.status != expected:
            raise InvalidStateTransitionException("rule", action, rule.status)
        updated = replace(rule, status=target, updated_at=self._clock())
        return await self._rule_repo.update(updated, require_no_open_incident=False)

    async def pause_rule(self, rule_id: str) -> EscalationRule:
        """active -> paused; a paused rule rejects triggers."""
        return await self._set_status(rule_id, "pause", RuleStatus.ACTIVE.value, RuleStatus.PAUSED.value)

    async def resume_rule(self, rule_id: str) -> EscalationRule:
        """paused -> active."""
        return await self._set_status(rule_id, "resume", RuleStatus.PAUSED.value, RuleStatus.ACTIVE.value)

    async def bulk_update_status(self, rule_ids: List[str], status: str) -> int:
        if status not in VALID_RULE_STATUSES:
            raise ValidationException(
                "Invalid status",
                errors=[{"field": "status", "message": f"must be one of {VALID_RULE_STATUSES}"}]
            )
        return await self._rule_repo.bulk_update_status(rule_ids, status)

    async def evaluate(self, rule_id: str, payload: Dict[str, Any]) -> bool:
        """Dry-run the rule's trigger condition."""
        rule = await self.get_rule(rule_id)
        return TriggerEvaluator.matches(rule.trigger_condition, payload)


class NotificationRecorder:
    """
    Runs a notification round and records its outcome on the incident.

    Delivery faults are appended to the incident and the timeline; they
    never change the incident's lifecycle state.
    """

    def __init__(
        self,
        incident_repository: IIncidentRepository,
        notifier: INotifier,
        clock: Clock = utc_now,
        retry_attempts: int = 3
    ):
        self._incident_repo = incident_repository
        self._notifier = notifier
        self._clock = clock
        self._retry_attempts = retry_attempts

    async def notify(self, rule: EscalationRule, incident: Incident) -> DispatchReport:
        report = await self._notifier.dispatch(rule, incident)
        now = self._clock()

        if report.delivered:
            await self._incident_repo.add_event(TimelineEvent(
                event_type=TimelineEventType.NOTIFICATION_SENT,
                occurred_at=now,
                description=f"Level {incident.current_level} notified {len(report.delivered)} target(s)",
                rule_id=rule.id,
                incident_id=incident.id,
                level=incident.current_level,
                data={"targets": report.delivered}
            ))

        if report.faults:
            for fault in report.faults:
                await self._incident_repo.add_event(TimelineEvent(
                    event_type=TimelineEventType.NOTIFICATION_FAILED,
                    occurred_at=now,
                    description=f"Delivery to {fault.recipient} via {fault.channel} failed after {fault.attempts} attempt(s)",
                    rule_id=rule.id,
                    incident_id=incident.id,
                    level=fault.level,
                    data=fault.to_dict()
                ))
            await apply_transition(
                self._incident_repo,
                incident.id,
                lambda current: current.record_faults(report.faults),
                self._retry_attempts
            )
            logger.warning(
                "Notification faults recorded on incident",
                extra={"incident_id": incident.id, "fault_count": len(report.faults)}
            )

        await self._incident_repo.commit()
        return report


class IncidentService:
    """
    Incident Tracker operations: trigger, acknowledge, resolve, pause, resume.

    Single-open-incident-per-rule is enforced by a compare-and-set on the
    rule; incident writes are version-checked so an acknowledgment and a
    concurrent escalation can never both apply to the same version.
    """

    EVENT_PAGE_SIZE = 500

    def __init__(
        self,
        rule_repository: IRuleRepository,
        incident_repository: IIncidentRepository,
        notifier: INotifier,
        clock: Clock = utc_now,
        conflict_policy: str = TriggerConflictPolicy.REJECT.value,
        retry_attempts: int = 3
    ):
        self._rule_repo = rule_repository
        self._incident_repo = incident_repository
        self._clock = clock
        self._conflict_policy = conflict_policy
        self._retry_attempts = retry_attempts
        self._recorder = NotificationRecorder(incident_repository, notifier, clock, retry_attempts)

    # ----- queries -----

    async def get_incident(self, incident_id: str) -> Incident:
        incident = await self._incident_repo.get(incident_id)
        if incident is None:
            raise ResourceNotFoundException("Incident", incident_id)
        return incident

    async def list_incidents(
        self,
        filters: dict,
        page: int = 1,
        limit: int = 50
    ) -> Tuple[List[Incident], int]:
        return await self._incident_repo.list(filters, limit=limit, offset=(page - 1) * limit)

    async def get_timeline(self, incident_id: str) -> Tuple[Incident, List[TimelineEvent]]:
        incident = await self.get_incident(incident_id)
        events = await self._incident_repo.list_events(incident_id)
        return incident, sorted(events, key=lambda e: e.occurred_at)

    # ----- trigger -----

    async def trigger(self, rule_id: str, payload: Dict[str, Any]) -> TriggerOutcome:
        """
        Open an incident for ``rule_id`` if ``payload`` satisfies its condition.

        Raises ConflictException when the rule is not active, or when an
        incident is already open and the conflict policy is ``reject``.
        """
        rule = await self._rule_repo.get(rule_id)
        if rule is None:
            raise ResourceNotFoundException("Escalation rule", rule_id)
        if not rule.is_active:
            raise InvalidStateTransitionException("rule", "trigger", rule.status)

        if not TriggerEvaluator.matches(rule.trigger_condition, payload):
            logger.debug("Trigger condition not met", extra={"rule_id": rule_id})
            return TriggerOutcome(rule_id=rule_id, matched=False)

        now = self._clock()
        incident = Incident.open(rule, payload, now)

        if not await self._rule_repo.claim_incident_slot(rule.id, incident.id, now):
            return await self._on_conflict(rule_id, payload, now)

        incident = await self._incident_repo.create(incident)
        await self._incident_repo.add_event(TimelineEvent(
            event_type=TimelineEventType.INCIDENT_TRIGGERED,
            occurred_at=now,
            description=f"Rule triggered incident {incident.reference}",
            rule_id=rule.id,
            incident_id=incident.id,
            level=incident.current_level,
            data={"payload": payload}
        ))
        await self._incident_repo.commit()

        logger.info(
            "Incident opened",
            extra={
                "incident_id": incident.id,
                "rule_id": rule.id,
                "reference": incident.reference,
                "next_escalation_at": incident.next_escalation_at.isoformat() if incident.next_escalation_at else None
            }
        )

        report = await self._recorder.notify(rule, incident)
        incident = await self.get_incident(incident.id)
        return TriggerOutcome(rule_id=rule.id, matched=True, created=True, incident=incident, report=report)

    async def _on_conflict(self, rule_id: str, payload: Dict[str, Any], now: datetime) -> TriggerOutcome:
        # Re-read: the rule we loaded may predate the winning trigger
        rule = await self._rule_repo.get(rule_id)
        if rule is None:
            raise ResourceNotFoundException("Escalation rule", rule_id)
        if not rule.is_active:
            raise InvalidStateTransitionException("rule", "trigger", rule.status)
        open_id = rule.open_incident_id

        if self._conflict_policy != TriggerConflictPolicy.MERGE.value or open_id is None:
            raise ConflictException(
                "An incident is already open for this rule",
                {"rule_id": rule_id, "incident_id": open_id}
            )

        _, merged = await apply_transition(
            self._incident_repo, open_id,
            lambda current: current.record_retrigger(),
            self._retry_attempts
        )
        await self._incident_repo.add_event(TimelineEvent(
            event_type=TimelineEventType.INCIDENT_RETRIGGERED,
            occurred_at=now,
            description="Rule fired again while the incident was open",
            rule_id=rule_id,
            incident_id=open_id,
            level=merged.current_level,
            data={"payload": payload}
        ))
        await self._incident_repo.commit()
        logger.info("Trigger merged into open incident", extra={"rule_id": rule_id, "incident_id": open_id})
        return TriggerOutcome(rule_id=rule_id, matched=True, created=False, incident=merged)

    async def process_event(self, payload: Dict[str, Any], rule_type: Optional[str] = None) -> List[TriggerOutcome]:
        """Present event data to every active rule (optionally of one type)."""
        filters: Dict[str, Any] = {"status": RuleStatus.ACTIVE.value}
        if rule_type:
            filters["rule_type"] = rule_type
        outcomes = []
        for rule in await self._active_rules(filters):
            try:
                outcomes.append(await self.trigger(rule.id, payload))
            except (InvalidStateTransitionException, ResourceNotFoundException) as e:
                # Paused or deleted after it was listed; never evaluated
                outcomes.append(TriggerOutcome(rule_id=rule.id, matched=False, skipped=e.message))
                logger.info("Rule left the active set before evaluation", extra={"rule_id": rule.id, "error": e.message})
            except ConflictException as e:
                outcomes.append(TriggerOutcome(
                    rule_id=rule.id,
                    matched=True,
                    conflict=True,
                    incident=None
                ))
                logger.info("Event matched a rule with an open incident", extra={"rule_id": rule.id, "error": e.message})
        return outcomes

    async def _active_rules(self, filters: Dict[str, Any]) -> List[EscalationRule]:
        rules: List[EscalationRule] = []
        offset = 0
        page_size = self.EVENT_PAGE_SIZE
        while True:
            page, total = await self._rule_repo.list(
                filters, limit=page_size, offset=offset, sort_by="created_at", sort_order="asc"
            )
            rules.extend(page)
            offset += page_size
            if not page or offset >= total:
                return rules

    # ----- lifecycle -----

    async def _transition(
        self,
        incident_id: str,
        transition: Callable[[Incident], Incident],
        event_type: TimelineEventType,
        description: str,
        actor: Optional[str] = None,
        data: Optional[dict] = None
    ) -> Incident:
        _, updated = await apply_transition(self._incident_repo, incident_id, transition, self._retry_attempts)
        await self._incident_repo.add_event(TimelineEvent(
            event_type=event_type,
            occurred_at=self._clock(),
            description=description,
            rule_id=updated.rule_id,
            incident_id=updated.id,
            level=updated.current_level,
            actor=actor,
            data=data or {}
        ))
        return updated

    async def acknowledge(self, incident_id: str, actor: str, comments: str = "") -> Incident:
        """open -> acknowledged; the pending escalation is cancelled in the same write."""
        now = self._clock()
        incident = await self._transition(
            incident_id,
            lambda current: current.acknowledge(actor, now, comments),
            TimelineEventType.INCIDENT_ACKNOWLEDGED,
            f"Incident acknowledged by {actor}",
            actor=actor,
            data={"comments": comments}
        )
        logger.info("Incident acknowledged", extra={"incident_id": incident_id, "level": incident.current_level})
        return incident

    async def resolve(self, incident_id: str, actor: str, resolution: str, notes: str = "") -> Incident:
        """open|acknowledged -> resolved; releases the rule for new triggers."""
        now = self._clock()
        incident = await self._transition(
            incident_id,
            lambda current: current.resolve(actor, resolution, now, notes),
            TimelineEventType.INCIDENT_RESOLVED,
            f"Incident resolved by {actor}",
            actor=actor,
            data={"resolution": resolution, "notes": notes}
        )
        await self._rule_repo.release_incident_slot(
            incident.rule_id, incident.id, incident.resolution.resolution_seconds / 60
        )
        logger.info(
            "Incident resolved",
            extra={"incident_id": incident_id, "resolution_seconds": incident.resolution.resolution_seconds}
        )
        return incident

    async def pause(self, incident_id: str, actor: Optional[str] = None) -> Incident:
        now = self._clock()
        return await self._transition(
            incident_id,
            lambda current: current.pause(now),
            TimelineEventType.INCIDENT_PAUSED,
            "Escalation paused",
            actor=actor
        )

    async def resume(self, incident_id: str, actor: Optional[str] = None) -> Incident:
        now = self._clock()
        return await self._transition(
            incident_id,
            lambda current: current.resume(now),
            TimelineEventType.INCIDENT_RESUMED,
            "Escalation resumed",
            actor=actor
        )


class EscalationSweepService:
    """
    Escalation Scheduler core.

    Durable by construction: every pass re-derives what is due from the
    persisted ``next_escalation_at`` column, so a restart loses nothing.
    Run periodically (see ``EscalationScheduler``).
    """

    def __init__(
        self,
        rule_repository: IRuleRepository,
        incident_repository: IIncidentRepository,
        notifier: INotifier,
        clock: Clock = utc_now,
        batch_size: int = 100,
        retry_attempts: int = 3
    ):
        self._rule_repo = rule_repository
        self._incident_repo = incident_repository
        self._clock = clock
        self._batch_size = batch_size
        self._recorder = NotificationRecorder(incident_repository, notifier, clock, retry_attempts)

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Escalate every overdue incident.

        An incident overdue by several delays is walked up one level per
        delay, each level notified once.

        Returns:
            Summary of the pass
        """
        now = now or self._clock()
        due = await self._incident_repo.list_due(now, limit=self._batch_size)

        escalations = 0
        notifications = 0
        skipped = 0
        deferred = 0

        for incident in due:
            rule = await self._rule_repo.get(incident.rule_id)
            if rule is None:
                continue

            while incident.is_escalation_due(now):
                previous_level = incident.current_level
                due_at = incident.next_escalation_at
                allowed_at = rule.next_allowed_time(due_at)

                if allowed_at > now:
                    try:
                        incident = await self._incident_repo.save(incident.defer(allowed_at))
                    except ConcurrencyException:
                        skipped += 1
                        logger.info("Deferral skipped, incident changed concurrently", extra={"incident_id": incident.id})
                        break
                    deferred += 1
                    await self._incident_repo.add_event(TimelineEvent(
                        event_type=TimelineEventType.ESCALATION_DEFERRED,
                        occurred_at=now,
                        description=f"Escalation held until {allowed_at.isoformat()} (outside working hours or in maintenance)",
                        rule_id=rule.id,
                        incident_id=incident.id,
                        level=incident.current_level,
                        data={"due_at": due_at.isoformat(), "deferred_until": allowed_at.isoformat()}
                    ))
                    await self._incident_repo.commit()
                    logger.info(
                        "Escalation deferred",
                        extra={"incident_id": incident.id, "deferred_until": allowed_at.isoformat()}
                    )
                    break

                try:
                    # A due time that fell in a blocked period counts from its opening
                    incident = await self._incident_repo.save(
                        incident.escalate(rule, now, anchor=allowed_at)
                    )
                except ConcurrencyException:
                    # An acknowledgment or another sweeper changed it first
                    skipped += 1
                    logger.info("Escalation skipped, incident changed concurrently", extra={"incident_id": incident.id})
                    break

                if incident.current_level == previous_level:
                    await self._incident_repo.commit()
                    break

                escalations += 1
                await self._incident_repo.add_event(TimelineEvent(
                    event_type=TimelineEventType.INCIDENT_ESCALATED,
                    occurred_at=now,
                    description=f"Escalated from level {previous_level} to level {incident.current_level}",
                    rule_id=rule.id,
                    incident_id=incident.id,
                    level=incident.current_level
                ))
                await self._incident_repo.commit()

                logger.info(
                    "Incident escalated",
                    extra={"incident_id": incident.id, "level": incident.current_level, "max_level": incident.max_level}
                )

                report = await self._recorder.notify(rule, incident)
                notifications += report.attempted

                refreshed = await self._incident_repo.get(incident.id)
                if refreshed is None:
                    break
                incident = refreshed

        summary = {
            "incidents_due": len(due),
            "escalations": escalations,
            "notifications": notifications,
            "skipped": skipped,
            "deferred": deferred
        }
        if due:
            logger.info("Escalation sweep complete", extra=summary)
        return summary


class StatisticsService:
    """Aggregates rule and incident counters for the overview endpoint."""

    def __init__(self, rule_repository: IRuleRepository, incident_repository: IIncidentRepository):
        self._rule_repo = rule_repository
        self._incident_repo = incident_repository

    async def overview(self) -> Dict[str, Any]:
        rules = await self._rule_repo.statistics()
        incidents = await self._incident_repo.statistics()

        total_rules = rules["total_rules"]
        total_triggers = rules["total_triggers"]
        return {
            **rules,
            **incidents,
            "activation_rate": round(rules["active_rules"] / total_rules * 100, 2) if total_rules else 0.0,
            "resolution_rate": round(rules["resolved_triggers"] / total_triggers * 100, 2) if total_triggers else 0.0,
        }
