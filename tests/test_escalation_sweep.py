"""Tests for the durable escalation sweep."""

from datetime import datetime, timedelta, timezone

import pytest

from src.config import TimelineEventType
from src.infrastructure.database import get_session_maker

from tests.conftest import T0, RecordingNotifier, Services, payload, rule_definition


class TestSweepScenarios:
    """End-to-end timer scenarios with an injected clock."""

    @pytest.mark.asyncio
    async def test_unacknowledged_incident_reaches_level_two(self, services, notifier, clock):
        """time_to_escalate=1, two levels, no ack: level 2 after a minute, one notification per level."""
        rule = await services.rules.create_rule(rule_definition(levels=2, time_to_escalate=1))
        incident = (await services.incidents.trigger(rule.id, payload())).incident

        early = await services.sweeper.sweep(T0 + timedelta(seconds=59))
        assert early["escalations"] == 0

        summary = await services.sweeper.sweep(T0 + timedelta(minutes=1))
        stored = await services.incidents.get_incident(incident.id)

        assert summary["escalations"] == 1
        assert stored.current_level == 2
        assert stored.next_escalation_at is None
        assert notifier.levels == [1, 2]
        assert notifier.calls[1]["targets"] == [("email", "level2@example.com")]

        # Nothing further at max level
        await services.sweeper.sweep(T0 + timedelta(hours=2))
        assert (await services.incidents.get_incident(incident.id)).current_level == 2
        assert notifier.levels == [1, 2]

    @pytest.mark.asyncio
    async def test_acknowledged_incident_does_not_escalate(self, services, notifier, clock):
        """Ack at 0:30 keeps level 1 and sends no second notification."""
        rule = await services.rules.create_rule(rule_definition(levels=2, time_to_escalate=1))
        incident = (await services.incidents.trigger(rule.id, payload())).incident

        clock.set(seconds=30)
        await services.incidents.acknowledge(incident.id, "alice")
        await services.sweeper.sweep(T0 + timedelta(minutes=5))

        stored = await services.incidents.get_incident(incident.id)
        assert stored.current_level == 1
        assert notifier.levels == [1]

    @pytest.mark.asyncio
    async def test_catch_up_after_downtime_anchors_on_due_times(self, services, notifier):
        """One late sweep walks several levels, each due time based on the previous one."""
        rule = await services.rules.create_rule(
            rule_definition(levels=4, time_to_escalate=1, escalation_interval=1)
        )
        incident = (await services.incidents.trigger(rule.id, payload())).incident

        summary = await services.sweeper.sweep(T0 + timedelta(minutes=2, seconds=30))
        stored = await services.incidents.get_incident(incident.id)

        assert summary["escalations"] == 2
        assert stored.current_level == 3
        assert stored.next_escalation_at == T0 + timedelta(minutes=3)
        assert notifier.levels == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_pending_escalation_survives_restart(self, database, clock):
        """A fresh service graph finds the persisted timer."""
        before = RecordingNotifier()
        async with get_session_maker()() as session:
            services = Services(session, before, clock)
            rule = await services.rules.create_rule(rule_definition(levels=2, time_to_escalate=1))
            incident = (await services.incidents.trigger(rule.id, payload())).incident
            await session.commit()

        after = RecordingNotifier()
        async with get_session_maker()() as session:
            services = Services(session, after, clock)
            summary = await services.sweeper.sweep(T0 + timedelta(minutes=3))
            await session.commit()
            stored = await services.incidents.get_incident(incident.id)

        assert summary["incidents_due"] == 1
        assert stored.current_level == 2
        assert before.levels == [1]
        assert after.levels == [2]

    @pytest.mark.asyncio
    async def test_paused_incident_waits_for_resume(self, services, notifier, clock):
        rule = await services.rules.create_rule(rule_definition(levels=2, time_to_escalate=1))
        incident = (await services.incidents.trigger(rule.id, payload())).incident

        clock.set(seconds=20)
        await services.incidents.pause(incident.id, "alice")
        await services.sweeper.sweep(T0 + timedelta(minutes=5))
        assert (await services.incidents.get_incident(incident.id)).current_level == 1

        clock.set(minutes=5)
        resumed = await services.incidents.resume(incident.id, "alice")
        assert resumed.next_escalation_at == T0 + timedelta(minutes=5, seconds=40)

        await services.sweeper.sweep(T0 + timedelta(minutes=5, seconds=40))
        assert (await services.incidents.get_incident(incident.id)).current_level == 2
        assert notifier.levels == [1, 2]

    @pytest.mark.asyncio
    async def test_resolved_incident_is_never_swept(self, services, notifier):
        rule = await services.rules.create_rule(rule_definition(levels=3))
        incident = (await services.incidents.trigger(rule.id, payload())).incident
        await services.incidents.resolve(incident.id, "alice", "fixed")

        summary = await services.sweeper.sweep(T0 + timedelta(days=1))

        assert summary["incidents_due"] == 0
        assert notifier.levels == [1]

    @pytest.mark.asyncio
    async def test_escalation_recorded_on_timeline(self, services):
        rule = await services.rules.create_rule(rule_definition(levels=2))
        incident = (await services.incidents.trigger(rule.id, payload())).incident

        await services.sweeper.sweep(T0 + timedelta(minutes=1))
        _, events = await services.incidents.get_timeline(incident.id)

        escalations = [e for e in events if e.event_type == TimelineEventType.INCIDENT_ESCALATED]
        assert len(escalations) == 1
        assert escalations[0].level == 2

    @pytest.mark.asyncio
    async def test_level_never_exceeds_max(self, services):
        """Repeated sweeps far in the future stay within [1, max_level]."""
        rule = await services.rules.create_rule(rule_definition(levels=3))
        incident = (await services.incidents.trigger(rule.id, payload())).incident

        for hours in (1, 2, 3, 24):
            await services.sweeper.sweep(T0 + timedelta(hours=hours))
            stored = await services.incidents.get_incident(incident.id)
            assert 1 <= stored.current_level <= stored.max_level

        assert stored.current_level == 3


class TestEscalationWindows:
    """Working hours and maintenance windows hold escalation back."""

    @pytest.mark.asyncio
    async def test_outside_working_hours_defers_to_next_opening(self, services, notifier):
        """Due at 10:01 Monday with hours 09-10: held until 09:00 Tuesday, then escalated."""
        rule = await services.rules.create_rule(rule_definition(
            levels=3,
            working_hours={"start_hour": 9, "end_hour": 10, "days": [0, 1, 2, 3, 4], "timezone": "UTC"}
        ))
        incident = (await services.incidents.trigger(rule.id, payload())).incident
        tuesday_opening = datetime(2024, 1, 16, 9, tzinfo=timezone.utc)

        summary = await services.sweeper.sweep(T0 + timedelta(minutes=1))
        stored = await services.incidents.get_incident(incident.id)

        assert (summary["escalations"], summary["deferred"]) == (0, 1)
        assert stored.current_level == 1
        assert stored.next_escalation_at == tuesday_opening
        assert notifier.levels == [1]
        _, events = await services.incidents.get_timeline(incident.id)
        assert TimelineEventType.ESCALATION_DEFERRED in [e.event_type for e in events]

        # Later sweeps the same evening change nothing
        await services.sweeper.sweep(T0 + timedelta(hours=8))
        assert notifier.levels == [1]

        summary = await services.sweeper.sweep(tuesday_opening + timedelta(seconds=30))
        stored = await services.incidents.get_incident(incident.id)

        assert summary["escalations"] == 1
        assert stored.current_level == 2
        assert stored.next_escalation_at == tuesday_opening + timedelta(minutes=1)
        assert notifier.levels == [1, 2]

    @pytest.mark.asyncio
    async def test_maintenance_window_defers_until_it_ends(self, services, notifier):
        window_end = T0 + timedelta(minutes=10)
        rule = await services.rules.create_rule(rule_definition(
            levels=3,
            maintenance_windows=[{
                "starts_at": T0 + timedelta(seconds=30),
                "ends_at": window_end,
                "reason": "Core banking upgrade"
            }]
        ))
        incident = (await services.incidents.trigger(rule.id, payload())).incident

        summary = await services.sweeper.sweep(T0 + timedelta(minutes=1))
        stored = await services.incidents.get_incident(incident.id)

        assert summary["deferred"] == 1
        assert stored.next_escalation_at == window_end
        assert notifier.levels == [1]

        await services.sweeper.sweep(window_end)
        stored = await services.incidents.get_incident(incident.id)

        assert stored.current_level == 2
        assert stored.next_escalation_at == window_end + timedelta(minutes=1)
        assert notifier.levels == [1, 2]

    @pytest.mark.asyncio
    async def test_late_sweep_counts_from_end_of_blocked_period(self, services, notifier):
        """A due time inside maintenance is anchored on the window end, not paged twice."""
        window_end = T0 + timedelta(minutes=10)
        rule = await services.rules.create_rule(rule_definition(
            levels=3,
            maintenance_windows=[{"starts_at": T0, "ends_at": window_end}]
        ))
        incident = (await services.incidents.trigger(rule.id, payload())).incident

        summary = await services.sweeper.sweep(window_end + timedelta(seconds=30))
        stored = await services.incidents.get_incident(incident.id)

        assert summary["escalations"] == 1
        assert stored.current_level == 2
        assert stored.next_escalation_at == window_end + timedelta(minutes=1)
