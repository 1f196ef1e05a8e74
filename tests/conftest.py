"""
Shared pytest configuration and fixtures for all tests.

This module provides:
- An in-memory SQLite database (aiosqlite) created per test
- A controllable clock for time-dependent escalation scenarios
- A recording notifier standing in for the real channel adapters
- Rule builders shared by domain, service and API tests
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
import pytest_asyncio

from src.escalation.application import (
    DispatchReport, EscalationSweepService, IncidentService, INotifier, RuleService
)
from src.escalation.domain import ConditionGroup, EscalationLevel, EscalationRule, NotificationFault
from src.escalation.infrastructure import SQLAlchemyIncidentRepository, SQLAlchemyRuleRepository
from src.infrastructure.database import (
    close_database, create_tables, drop_tables, get_session_maker, init_database
)

T0 = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, **kwargs) -> datetime:
        """Jump to T0 plus the given offset."""
        self.now = T0 + timedelta(**kwargs)
        return self.now


class RecordingNotifier(INotifier):
    """Records every dispatch; optionally reports every target as failed."""

    def __init__(self, fail: bool = False):
        self.calls: List[dict] = []
        self.fail = fail

    async def dispatch(self, rule, incident) -> DispatchReport:
        targets = rule.targets_for_level(incident.current_level)
        self.calls.append({
            "rule_id": rule.id,
            "incident_id": incident.id,
            "level": incident.current_level,
            "targets": [(t.channel, t.recipient) for t in targets],
        })
        report = DispatchReport()
        for target in targets:
            if self.fail:
                report.faults.append(NotificationFault(
                    channel=target.channel,
                    recipient=target.recipient,
                    level=incident.current_level,
                    error="gateway returned 503",
                    attempts=3,
                    occurred_at=T0
                ))
            else:
                report.delivered.append({"channel": target.channel, "recipient": target.recipient})
        return report

    @property
    def levels(self) -> List[int]:
        return [c["level"] for c in self.calls]


def rule_definition(levels: int = 2, **overrides) -> dict:
    """Plain-dict rule definition as accepted by RuleService.create_rule."""
    data = {
        "name": "Overdue compliance filing",
        "description": "Escalate filings that miss their deadline",
        "rule_type": "compliance_deadline",
        "status": "active",
        "trigger_condition": {
            "logical_operator": "and",
            "conditions": [
                {"field": "days_overdue", "operator": "greater_than", "value": 0}
            ]
        },
        "severity": "high",
        "priority": "urgent",
        "levels": [
            {"level": n, "channels": [], "recipients": [f"level{n}@example.com"]}
            for n in range(1, levels + 1)
        ],
        "time_to_escalate": 1,
        "escalation_interval": 1,
        "notification_channels": ["email"],
        "recipients": ["team@example.com"],
        "subject_template": "[{{severity}}] {{ruleName}} - {{incidentId}}",
        "message_template": "Level {{level}} of {{maxLevel}}: {{payload.days_overdue}} days overdue",
        "sms_template": None,
    }
    data.update(overrides)
    return data


def build_rule(levels: int = 2, rule_id: str = "9d3c2f0e-1111-4a4a-8b8b-000000000001", **overrides) -> EscalationRule:
    """In-memory rule for domain tests."""
    data = rule_definition(levels, **overrides)
    return EscalationRule(
        id=rule_id,
        name=data["name"],
        rule_type=data["rule_type"],
        status=data["status"],
        trigger_condition=ConditionGroup.from_dict(data["trigger_condition"]),
        severity=data["severity"],
        priority=data["priority"],
        levels=tuple(EscalationLevel.from_dict(lvl) for lvl in data["levels"]),
        time_to_escalate=data["time_to_escalate"],
        escalation_interval=data["escalation_interval"],
        notification_channels=tuple(data["notification_channels"]),
        recipients=tuple(data["recipients"]),
        subject_template=data["subject_template"],
        message_template=data["message_template"],
        sms_template=data["sms_template"],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def database():
    """Fresh in-memory database per test."""
    init_database("sqlite+aiosqlite://")
    await create_tables()
    yield
    await drop_tables()
    await close_database()


@pytest_asyncio.fixture
async def session(database):
    async with get_session_maker()() as session:
        yield session


class Services:
    """Service graph bound to one session, rebuilt to simulate a restart."""

    def __init__(self, session, notifier, clock, conflict_policy: str = "reject"):
        self.rule_repo = SQLAlchemyRuleRepository(session)
        self.incident_repo = SQLAlchemyIncidentRepository(session)
        self.rules = RuleService(self.rule_repo, self.incident_repo, clock=clock)
        self.incidents = IncidentService(
            self.rule_repo, self.incident_repo, notifier,
            clock=clock, conflict_policy=conflict_policy
        )
        self.sweeper = EscalationSweepService(self.rule_repo, self.incident_repo, notifier, clock=clock)


@pytest.fixture
def services(session, notifier, clock) -> Services:
    return Services(session, notifier, clock)


def payload(days_overdue: Optional[int] = 3) -> dict:
    return {"days_overdue": days_overdue, "institution": {"name": "Acme Bank", "region": "EU"}}
