"""
Escalation Infrastructure Repositories
=======================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. Concurrency guards live in the WHERE clause
of single UPDATE statements so they hold across processes:

- the rule's open-incident slot is claimed with ``open_incident_id IS NULL``
- incident writes require ``version = expected``
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import IncidentStatus, RuleStatus, Severity, TimelineEventType, UNRESOLVED_INCIDENT_STATUSES
from src.core import ConcurrencyException, RepositoryException
from src.escalation.application.services import IIncidentRepository, IRuleRepository
from src.escalation.domain import (
    Acknowledgment, ConditionGroup, EscalationLevel, EscalationRule, Incident,
    MaintenanceWindow, NotificationFault, Resolution, TimelineEvent, WorkingHours
)
from src.escalation.infrastructure.models import EscalationRuleModel, IncidentEventModel, IncidentModel


RULE_SORT_FIELDS = {
    "created_at", "updated_at", "name", "severity", "priority",
    "last_triggered_at", "total_triggers"
}


def _uuid(value: Optional[str]) -> Optional[UUID]:
    """Parse an ID; malformed IDs behave like unknown ones."""
    if value is None:
        return None
    try:
        return value if isinstance(value, UUID) else UUID(str(value))
    except ValueError:
        return None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored in UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _str(value: Optional[UUID]) -> Optional[str]:
    return str(value) if value is not None else None


# ========== Mapping ==========

def rule_to_domain(model: EscalationRuleModel) -> EscalationRule:
    return EscalationRule(
        id=str(model.id),
        name=model.name,
        description=model.description or "",
        rule_type=model.rule_type,
        status=model.status,
        trigger_condition=ConditionGroup.from_dict(model.trigger_condition),
        severity=model.severity,
        priority=model.priority,
        levels=tuple(EscalationLevel.from_dict(lvl) for lvl in model.levels),
        time_to_escalate=model.time_to_escalate,
        escalation_interval=model.escalation_interval,
        notification_channels=tuple(model.notification_channels),
        recipients=tuple(model.recipients),
        subject_template=model.subject_template,
        message_template=model.message_template,
        sms_template=model.sms_template,
        working_hours=WorkingHours.from_dict(model.working_hours) if model.working_hours else None,
        maintenance_windows=tuple(MaintenanceWindow.from_dict(w) for w in model.maintenance_windows or ()),
        open_incident_id=_str(model.open_incident_id),
        last_triggered_at=_as_utc(model.last_triggered_at),
        total_triggers=model.total_triggers,
        resolved_triggers=model.resolved_triggers,
        avg_resolution_minutes=model.avg_resolution_minutes,
        version=model.version,
        created_at=_as_utc(model.created_at),
        updated_at=_as_utc(model.updated_at)
    )


def _rule_definition(rule: EscalationRule) -> Dict[str, Any]:
    """Columns owned by rule edits (the slot and counters are not)."""
    return {
        "name": rule.name,
        "description": rule.description,
        "rule_type": rule.rule_type,
        "status": rule.status,
        "severity": rule.severity,
        "priority": rule.priority,
        "trigger_condition": rule.trigger_condition.to_dict(),
        "levels": [lvl.to_dict() for lvl in rule.levels],
        "time_to_escalate": rule.time_to_escalate,
        "escalation_interval": rule.escalation_interval,
        "notification_channels": list(rule.notification_channels),
        "recipients": list(rule.recipients),
        "subject_template": rule.subject_template,
        "message_template": rule.message_template,
        "sms_template": rule.sms_template,
        "working_hours": rule.working_hours.to_dict() if rule.working_hours else None,
        "maintenance_windows": [w.to_dict() for w in rule.maintenance_windows],
        "updated_at": rule.updated_at,
    }


def incident_to_domain(model: IncidentModel) -> Incident:
    resolution = None
    if model.resolved_at is not None:
        resolution = Resolution(
            actor=model.resolved_by or "",
            resolution=model.resolution or "",
            resolved_at=_as_utc(model.resolved_at),
            resolution_seconds=model.resolution_seconds or 0.0,
            notes=model.resolution_notes or ""
        )

    return Incident(
        id=str(model.id),
        reference=model.reference,
        rule_id=str(model.rule_id),
        status=IncidentStatus(model.status),
        current_level=model.current_level,
        max_level=model.max_level,
        created_at=_as_utc(model.created_at),
        trigger_payload=model.trigger_payload or {},
        next_escalation_at=_as_utc(model.next_escalation_at),
        last_escalated_at=_as_utc(model.last_escalated_at),
        paused_at=_as_utc(model.paused_at),
        paused_remaining_seconds=model.paused_remaining_seconds,
        acknowledged_at=_as_utc(model.acknowledged_at),
        acknowledgments=tuple(Acknowledgment.from_dict(a) for a in model.acknowledgments or []),
        resolution=resolution,
        faults=tuple(NotificationFault.from_dict(f) for f in model.faults or []),
        retrigger_count=model.retrigger_count,
        version=model.version
    )


def _incident_state(incident: Incident) -> Dict[str, Any]:
    """Mutable incident columns."""
    resolution = incident.resolution
    return {
        "status": incident.status.value,
        "current_level": incident.current_level,
        "next_escalation_at": incident.next_escalation_at,
        "last_escalated_at": incident.last_escalated_at,
        "paused_at": incident.paused_at,
        "paused_remaining_seconds": incident.paused_remaining_seconds,
        "acknowledged_at": incident.acknowledged_at,
        "acknowledgments": [a.to_dict() for a in incident.acknowledgments],
        "resolved_at": resolution.resolved_at if resolution else None,
        "resolved_by": resolution.actor if resolution else None,
        "resolution": resolution.resolution if resolution else None,
        "resolution_notes": resolution.notes if resolution else None,
        "resolution_seconds": resolution.resolution_seconds if resolution else None,
        "faults": [f.to_dict() for f in incident.faults],
        "retrigger_count": incident.retrigger_count,
    }


def event_to_domain(model: IncidentEventModel) -> TimelineEvent:
    return TimelineEvent(
        id=str(model.id),
        event_type=TimelineEventType(model.event_type),
        occurred_at=_as_utc(model.occurred_at),
        description=model.description,
        rule_id=str(model.rule_id),
        incident_id=_str(model.incident_id),
        level=model.level,
        actor=model.actor,
        data=model.data or {}
    )


# ========== Repositories ==========

class SQLAlchemyRuleRepository(IRuleRepository):
    """
    SQLAlchemy implementation of the rule repository.

    Handles persistence of EscalationRule entities using async SQLAlchemy.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, rule_id: str) -> Optional[EscalationRule]:
        rule_uuid = _uuid(rule_id)
        if rule_uuid is None:
            return None

        stmt = (
            select(EscalationRuleModel)
            .where(EscalationRuleModel.id == rule_uuid)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return rule_to_domain(model) if model else None

    async def create(self, rule: EscalationRule) -> EscalationRule:
        try:
            model = EscalationRuleModel(
                id=UUID(rule.id),
                created_at=rule.created_at,
                total_triggers=rule.total_triggers,
                resolved_triggers=rule.resolved_triggers,
                version=rule.version,
                **_rule_definition(rule)
            )
            self._session.add(model)
            await self._session.flush()
            await self._session.refresh(model)
            return rule_to_domain(model)
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to create rule: {str(e)}")

    async def update(self, rule: EscalationRule, require_no_open_incident: bool) -> EscalationRule:
        conditions = [
            EscalationRuleModel.id == UUID(rule.id),
            EscalationRuleModel.version == rule.version,
        ]
        if require_no_open_incident:
            conditions.append(EscalationRuleModel.open_incident_id.is_(None))

        stmt = (
            update(EscalationRuleModel)
            .where(*conditions)
            .values(version=EscalationRuleModel.version + 1, **_rule_definition(rule))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise ConcurrencyException(
                "Rule changed concurrently or gained an open incident",
                {"rule_id": rule.id}
            )
        return replace(rule, version=rule.version + 1)

    async def delete(self, rule_id: str) -> bool:
        rule_uuid = _uuid(rule_id)
        if rule_uuid is None:
            return False

        result = await self._session.execute(
            delete(EscalationRuleModel)
            .where(
                EscalationRuleModel.id == rule_uuid,
                EscalationRuleModel.open_incident_id.is_(None)
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False

        # Backends without enforced foreign keys (SQLite) skip the cascade
        await self._session.execute(
            delete(IncidentEventModel).where(IncidentEventModel.rule_id == rule_uuid)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(
            delete(IncidentModel).where(IncidentModel.rule_id == rule_uuid)
            .execution_options(synchronize_session=False)
        )
        return True

    async def list(
        self,
        filters: dict,
        limit: int = 10,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc"
    ) -> Tuple[List[EscalationRule], int]:
        stmt = select(EscalationRuleModel)

        if filters.get("status"):
            stmt = stmt.where(EscalationRuleModel.status == filters["status"])
        if filters.get("rule_type"):
            stmt = stmt.where(EscalationRuleModel.rule_type == filters["rule_type"])
        if filters.get("severity"):
            stmt = stmt.where(EscalationRuleModel.severity == filters["severity"])
        if filters.get("priority"):
            stmt = stmt.where(EscalationRuleModel.priority == filters["priority"])
        if filters.get("search"):
            stmt = stmt.where(EscalationRuleModel.name.ilike(f"%{filters['search']}%"))

        count_stmt = select(func.count()).select_from(stmt.subquery())
        total = (await self._session.execute(count_stmt)).scalar_one()

        column = getattr(EscalationRuleModel, sort_by if sort_by in RULE_SORT_FIELDS else "created_at")
        direction = column.asc() if sort_order == "asc" else column.desc()
        # id breaks ties so pages never overlap
        stmt = stmt.order_by(direction, EscalationRuleModel.id.asc())
        stmt = stmt.offset(offset).limit(limit).execution_options(populate_existing=True)

        result = await self._session.execute(stmt)
        return [rule_to_domain(m) for m in result.scalars().all()], total

    async def claim_incident_slot(self, rule_id: str, incident_id: str, now: datetime) -> bool:
        stmt = (
            update(EscalationRuleModel)
            .where(
                EscalationRuleModel.id == UUID(rule_id),
                EscalationRuleModel.open_incident_id.is_(None),
                EscalationRuleModel.status == RuleStatus.ACTIVE.value
            )
            .values(
                open_incident_id=UUID(incident_id),
                last_triggered_at=now,
                total_triggers=EscalationRuleModel.total_triggers + 1
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def release_incident_slot(
        self,
        rule_id: str,
        incident_id: str,
        resolution_minutes: float
    ) -> None:
        resolved = EscalationRuleModel.resolved_triggers
        stmt = (
            update(EscalationRuleModel)
            .where(
                EscalationRuleModel.id == UUID(rule_id),
                EscalationRuleModel.open_incident_id == UUID(incident_id)
            )
            .values(
                open_incident_id=None,
                resolved_triggers=resolved + 1,
                avg_resolution_minutes=(
                    func.coalesce(EscalationRuleModel.avg_resolution_minutes, 0.0) * resolved
                    + resolution_minutes
                ) / (resolved + 1)
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def bulk_update_status(self, rule_ids: List[str], status: str) -> int:
        ids = [u for u in (_uuid(r) for r in rule_ids) if u is not None]
        if not ids:
            return 0

        stmt = (
            update(EscalationRuleModel)
            .where(EscalationRuleModel.id.in_(ids))
            .values(
                status=status,
                updated_at=datetime.now(timezone.utc),
                version=EscalationRuleModel.version + 1
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def statistics(self) -> Dict[str, Any]:
        M = EscalationRuleModel
        stmt = select(
            func.count(M.id),
            func.count(M.id).filter(M.status == RuleStatus.ACTIVE.value),
            func.count(M.id).filter(M.status == RuleStatus.INACTIVE.value),
            func.count(M.id).filter(M.status == RuleStatus.PAUSED.value),
            func.count(M.id).filter(M.open_incident_id.is_not(None)),
            func.count(M.id).filter(M.severity == Severity.CRITICAL.value),
            func.coalesce(func.sum(M.total_triggers), 0),
            func.coalesce(func.sum(M.resolved_triggers), 0),
            func.sum(M.avg_resolution_minutes * M.resolved_triggers),
        )
        row = (await self._session.execute(stmt)).one()
        total, active, inactive, paused, triggered, critical, triggers, resolved, weighted = row

        return {
            "total_rules": total,
            "active_rules": active,
            "inactive_rules": inactive,
            "paused_rules": paused,
            "triggered_rules": triggered,
            "critical_rules": critical,
            "total_triggers": int(triggers),
            "resolved_triggers": int(resolved),
            "avg_resolution_minutes": round(weighted / resolved, 2) if resolved and weighted is not None else None,
        }


class SQLAlchemyIncidentRepository(IIncidentRepository):
    """
    SQLAlchemy implementation of the incident repository.

    Also owns the append-only timeline (incident_events).
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, incident_id: str) -> Optional[Incident]:
        incident_uuid = _uuid(incident_id)
        if incident_uuid is None:
            return None

        stmt = (
            select(IncidentModel)
            .where(IncidentModel.id == incident_uuid)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return incident_to_domain(model) if model else None

    async def create(self, incident: Incident) -> Incident:
        try:
            model = IncidentModel(
                id=UUID(incident.id),
                reference=incident.reference,
                rule_id=UUID(incident.rule_id),
                max_level=incident.max_level,
                trigger_payload=incident.trigger_payload,
                created_at=incident.created_at,
                version=incident.version,
                **_incident_state(incident)
            )
            self._session.add(model)
            await self._session.flush()
            return incident
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to create incident: {str(e)}")

    async def save(self, incident: Incident) -> Incident:
        stmt = (
            update(IncidentModel)
            .where(
                IncidentModel.id == UUID(incident.id),
                IncidentModel.version == incident.version
            )
            .values(version=IncidentModel.version + 1, **_incident_state(incident))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise ConcurrencyException(
                "Incident changed concurrently",
                {"incident_id": incident.id, "expected_version": incident.version}
            )
        return replace(incident, version=incident.version + 1)

    async def list(
        self,
        filters: dict,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[Incident], int]:
        """
        List incidents.

        Filters: ``status``, ``rule_id``, ``unresolved`` (bool), ``min_level``
        and ``order`` (``newest`` default, ``oldest`` or ``level``).
        """
        stmt = select(IncidentModel)

        if filters.get("status"):
            stmt = stmt.where(IncidentModel.status == filters["status"])
        if filters.get("unresolved"):
            stmt = stmt.where(IncidentModel.status.in_([s.value for s in UNRESOLVED_INCIDENT_STATUSES]))
        if filters.get("rule_id"):
            rule_uuid = _uuid(filters["rule_id"])
            if rule_uuid is None:
                return [], 0
            stmt = stmt.where(IncidentModel.rule_id == rule_uuid)
        if filters.get("min_level"):
            stmt = stmt.where(IncidentModel.current_level >= filters["min_level"])

        count_stmt = select(func.count()).select_from(stmt.subquery())
        total = (await self._session.execute(count_stmt)).scalar_one()

        order = filters.get("order", "newest")
        if order == "level":
            stmt = stmt.order_by(IncidentModel.current_level.desc(), IncidentModel.created_at.desc())
        elif order == "oldest":
            stmt = stmt.order_by(IncidentModel.created_at.asc())
        else:
            stmt = stmt.order_by(IncidentModel.created_at.desc())

        stmt = stmt.offset(offset).limit(limit).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return [incident_to_domain(m) for m in result.scalars().all()], total

    async def list_due(self, now: datetime, limit: int = 100) -> List[Incident]:
        stmt = (
            select(IncidentModel)
            .where(
                IncidentModel.status == IncidentStatus.OPEN.value,
                IncidentModel.paused_at.is_(None),
                IncidentModel.next_escalation_at.is_not(None),
                IncidentModel.next_escalation_at <= now
            )
            .order_by(IncidentModel.next_escalation_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [incident_to_domain(m) for m in result.scalars().all()]

    async def add_event(self, event: TimelineEvent) -> TimelineEvent:
        model = IncidentEventModel(
            rule_id=UUID(event.rule_id),
            incident_id=_uuid(event.incident_id),
            event_type=event.event_type.value,
            level=event.level,
            actor=event.actor,
            description=event.description,
            data=event.data,
            occurred_at=event.occurred_at
        )
        self._session.add(model)
        await self._session.flush()
        return replace(event, id=str(model.id))

    async def list_events(self, incident_id: str) -> List[TimelineEvent]:
        incident_uuid = _uuid(incident_id)
        if incident_uuid is None:
            return []

        stmt = (
            select(IncidentEventModel)
            .where(IncidentEventModel.incident_id == incident_uuid)
            .order_by(IncidentEventModel.occurred_at.asc())
        )
        result = await self._session.execute(stmt)
        return [event_to_domain(m) for m in result.scalars().all()]

    async def statistics(self) -> Dict[str, Any]:
        M = IncidentModel
        unresolved = [s.value for s in UNRESOLVED_INCIDENT_STATUSES]
        stmt = select(
            func.count(M.id),
            func.count(M.id).filter(M.status == IncidentStatus.OPEN.value),
            func.count(M.id).filter(M.status == IncidentStatus.ACKNOWLEDGED.value),
            func.count(M.id).filter(M.status == IncidentStatus.RESOLVED.value),
            func.count(M.id).filter(M.status.in_(unresolved), M.current_level > 1),
        )
        total, open_, acknowledged, resolved, escalated = (await self._session.execute(stmt)).one()
        return {
            "total_incidents": total,
            "open_incidents": open_,
            "acknowledged_incidents": acknowledged,
            "resolved_incidents": resolved,
            "escalated_incidents": escalated,
        }

    async def commit(self) -> None:
        await self._session.commit()
