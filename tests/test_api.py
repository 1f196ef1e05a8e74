"""HTTP tests for the escalation API."""

from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.escalation.interfaces.controllers import get_clock, get_conflict_policy
from src.infrastructure.database import get_session_maker
from src.main import app

from tests.conftest import T0, Services, payload, rule_definition

UNKNOWN_ID = "5f0c6b9e-3d5c-4e8e-9a57-2f1b7c1d9e44"


@pytest_asyncio.fixture
async def client(database, notifier, clock):
    app.state.notifier = notifier
    app.dependency_overrides[get_clock] = lambda: clock
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def create_rule(client, **overrides) -> dict:
    response = await client.post("/escalation/rules", json=rule_definition(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


async def trigger(client, rule_id, data=None):
    return await client.post(f"/escalation/rules/{rule_id}/trigger", json={"payload": data or payload()})


class TestRuleEndpoints:
    """Tests for rule CRUD and status endpoints."""

    @pytest.mark.asyncio
    async def test_create_rule(self, client):
        rule = await create_rule(client, levels=3)

        assert rule["max_level"] == 3
        assert rule["status"] == "active"
        assert rule["open_incident_id"] is None
        assert rule["levels"][1]["recipients"] == ["level2@example.com"]

    @pytest.mark.asyncio
    async def test_unknown_operator_is_422_with_path(self, client):
        body = rule_definition(trigger_condition={
            "logical_operator": "and",
            "conditions": [{"field": "days_overdue", "operator": "approximately", "value": 1}]
        })

        response = await client.post("/escalation/rules", json=body)

        assert response.status_code == 422
        fields = [e["field"] for e in response.json()["errors"]]
        assert "trigger_condition.conditions[0].operator" in fields

    @pytest.mark.asyncio
    async def test_schema_violation_is_422(self, client):
        body = rule_definition()
        body["notification_channels"] = ["pager"]

        response = await client.post("/escalation/rules", json=body)

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_and_malformed_ids_are_404(self, client):
        assert (await client.get(f"/escalation/rules/{UNKNOWN_ID}")).status_code == 404
        assert (await client.get("/escalation/rules/not-an-id")).status_code == 404

    @pytest.mark.asyncio
    async def test_list_filters_and_paginates(self, client):
        await create_rule(client, name="Filing A", severity="critical")
        await create_rule(client, name="Filing B")
        await create_rule(client, name="Audit C", rule_type="audit_breach")

        response = await client.get("/escalation/rules", params={"search": "filing", "limit": 1})
        body = response.json()

        assert response.status_code == 200
        assert body["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
        assert len(body["data"]) == 1

        critical = (await client.get("/escalation/rules", params={"severity": "critical"})).json()
        assert [r["name"] for r in critical["data"]] == ["Filing A"]

    @pytest.mark.asyncio
    async def test_update_frozen_while_incident_open(self, client):
        rule = await create_rule(client)
        await trigger(client, rule["id"])

        blocked = await client.put(f"/escalation/rules/{rule['id']}", json={"time_to_escalate": 90})
        allowed = await client.put(f"/escalation/rules/{rule['id']}", json={"description": "Updated"})

        assert blocked.status_code == 409
        assert allowed.status_code == 200
        assert allowed.json()["description"] == "Updated"

    @pytest.mark.asyncio
    async def test_update_null_clears_nullable_fields_only(self, client):
        rule = await create_rule(
            client,
            sms_template="{{incidentId}} L{{level}}",
            working_hours={"start_hour": 9, "end_hour": 17}
        )
        assert rule["working_hours"]["days"] == [0, 1, 2, 3, 4]

        response = await client.put(
            f"/escalation/rules/{rule['id']}",
            json={"sms_template": None, "working_hours": None, "name": None}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["sms_template"] is None
        assert body["working_hours"] is None
        assert body["name"] == rule["name"]

    @pytest.mark.asyncio
    async def test_maintenance_window_round_trip(self, client):
        rule = await create_rule(client, maintenance_windows=[{
            "starts_at": "2024-01-20T00:00:00Z",
            "ends_at": "2024-01-20T06:00:00Z",
            "reason": "Core banking upgrade"
        }])

        fetched = (await client.get(f"/escalation/rules/{rule['id']}")).json()

        window = fetched["maintenance_windows"][0]
        assert window["reason"] == "Core banking upgrade"
        assert window["starts_at"].startswith("2024-01-20T00:00:00")

    @pytest.mark.asyncio
    async def test_delete(self, client):
        rule = await create_rule(client)
        incident = (await trigger(client, rule["id"])).json()["incident"]

        assert (await client.delete(f"/escalation/rules/{rule['id']}")).status_code == 409

        await client.patch(
            f"/escalation/incidents/{incident['id']}/resolve",
            json={"actor": "alice", "resolution": "filed"}
        )
        assert (await client.delete(f"/escalation/rules/{rule['id']}")).status_code == 204
        assert (await client.get(f"/escalation/rules/{rule['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_pause_resume_and_bulk_status(self, client):
        first = await create_rule(client)
        second = await create_rule(client, name="Second")

        paused = await client.patch(f"/escalation/rules/{first['id']}/pause")
        assert paused.json()["status"] == "paused"
        assert (await trigger(client, first["id"])).status_code == 409
        assert (await client.patch(f"/escalation/rules/{first['id']}/pause")).status_code == 409
        assert (await client.patch(f"/escalation/rules/{first['id']}/resume")).json()["status"] == "active"

        bulk = await client.patch(
            "/escalation/rules/bulk-status",
            json={"rule_ids": [first["id"], second["id"]], "status": "inactive"}
        )
        assert bulk.json() == {"updated": 2, "status": "inactive"}

    @pytest.mark.asyncio
    async def test_evaluate_is_dry_run(self, client, notifier):
        rule = await create_rule(client)

        response = await client.post(f"/escalation/rules/{rule['id']}/evaluate", json={"payload": payload()})

        assert response.json() == {"rule_id": rule["id"], "matched": True}
        assert notifier.calls == []
        assert (await client.get(f"/escalation/rules/{rule['id']}")).json()["open_incident_id"] is None


class TestTriggerEndpoints:
    """Tests for triggering rules and ingesting events."""

    @pytest.mark.asyncio
    async def test_trigger_opens_incident(self, client, notifier):
        rule = await create_rule(client)

        response = await trigger(client, rule["id"])
        body = response.json()

        assert response.status_code == 200
        assert body["matched"] is True
        assert body["created"] is True
        assert body["notifications_sent"] == 1
        assert body["incident"]["current_level"] == 1
        assert body["incident"]["status"] == "open"
        assert notifier.levels == [1]

    @pytest.mark.asyncio
    async def test_unmatched_trigger(self, client):
        rule = await create_rule(client)

        body = (await trigger(client, rule["id"], payload(days_overdue=0))).json()

        assert body["matched"] is False
        assert body["incident"] is None

    @pytest.mark.asyncio
    async def test_second_trigger_conflicts(self, client):
        rule = await create_rule(client)
        await trigger(client, rule["id"])

        response = await trigger(client, rule["id"])

        assert response.status_code == 409
        incidents = (await client.get("/escalation/incidents", params={"rule_id": rule["id"]})).json()
        assert incidents["pagination"]["total"] == 1

    @pytest.mark.asyncio
    async def test_second_trigger_merges_under_merge_policy(self, client):
        app.dependency_overrides[get_conflict_policy] = lambda: "merge"
        rule = await create_rule(client)
        first = (await trigger(client, rule["id"])).json()

        second = await trigger(client, rule["id"])

        assert second.status_code == 200
        assert second.json()["created"] is False
        assert second.json()["incident"]["id"] == first["incident"]["id"]
        assert second.json()["incident"]["retrigger_count"] == 1

    @pytest.mark.asyncio
    async def test_trigger_unknown_rule(self, client):
        assert (await trigger(client, UNKNOWN_ID)).status_code == 404

    @pytest.mark.asyncio
    async def test_event_ingest(self, client):
        rule = await create_rule(client)
        await create_rule(client, name="Other", rule_type="audit_breach")

        response = await client.post(
            "/escalation/events",
            json={"payload": payload(), "rule_type": "compliance_deadline"}
        )
        body = response.json()

        assert body["evaluated_rules"] == 1
        assert body["incidents_created"] == 1
        assert body["results"][0]["rule_id"] == rule["id"]


class TestIncidentEndpoints:
    """Tests for incident reads and transitions."""

    @pytest.mark.asyncio
    async def test_acknowledge_then_resolve(self, client, clock):
        rule = await create_rule(client)
        incident = (await trigger(client, rule["id"])).json()["incident"]
        clock.advance(seconds=90)

        acked = await client.patch(
            f"/escalation/incidents/{incident['id']}/acknowledge",
            json={"actor": "alice", "comments": "on it"}
        )
        assert acked.status_code == 200
        assert acked.json()["status"] == "acknowledged"
        assert acked.json()["next_escalation_at"] is None
        assert acked.json()["acknowledgments"][0]["response_seconds"] == 90

        again = await client.patch(
            f"/escalation/incidents/{incident['id']}/acknowledge", json={"actor": "bob"}
        )
        assert again.status_code == 409

        resolved = await client.patch(
            f"/escalation/incidents/{incident['id']}/resolve",
            json={"actor": "alice", "resolution": "filed", "notes": "late filing submitted"}
        )
        assert resolved.json()["status"] == "resolved"
        assert resolved.json()["resolution"]["actor"] == "alice"

        twice = await client.patch(
            f"/escalation/incidents/{incident['id']}/resolve",
            json={"actor": "bob", "resolution": "again"}
        )
        assert twice.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_incident(self, client):
        response = await client.patch(
            f"/escalation/incidents/{UNKNOWN_ID}/acknowledge", json={"actor": "alice"}
        )
        assert response.status_code == 404
        assert response.json()["error_type"] == "ResourceNotFoundException"

    @pytest.mark.asyncio
    async def test_pause_and_resume_incident(self, client):
        rule = await create_rule(client)
        incident = (await trigger(client, rule["id"])).json()["incident"]

        paused = await client.patch(f"/escalation/incidents/{incident['id']}/pause")
        assert paused.json()["is_paused"] is True
        assert paused.json()["next_escalation_at"] is None

        resumed = await client.patch(
            f"/escalation/incidents/{incident['id']}/resume", json={"actor": "alice"}
        )
        assert resumed.json()["is_paused"] is False
        assert resumed.json()["next_escalation_at"] is not None

    @pytest.mark.asyncio
    async def test_active_and_escalated_views(self, client, notifier, clock):
        quiet = await create_rule(client, name="Quiet", levels=1)
        loud = await create_rule(client, name="Loud", levels=2)
        await trigger(client, quiet["id"])
        loud_incident = (await trigger(client, loud["id"])).json()["incident"]

        async with get_session_maker()() as session:
            await Services(session, notifier, clock).sweeper.sweep(T0 + timedelta(minutes=1))
            await session.commit()

        active = (await client.get("/escalation/incidents/active")).json()
        escalated = (await client.get("/escalation/incidents/escalated")).json()

        assert active["pagination"]["total"] == 2
        assert [i["id"] for i in escalated["data"]] == [loud_incident["id"]]
        assert escalated["data"][0]["current_level"] == 2

    @pytest.mark.asyncio
    async def test_timeline(self, client, clock):
        rule = await create_rule(client)
        incident = (await trigger(client, rule["id"])).json()["incident"]
        clock.advance(seconds=30)
        await client.patch(f"/escalation/incidents/{incident['id']}/acknowledge", json={"actor": "alice"})

        response = await client.get(f"/escalation/incidents/{incident['id']}/timeline")
        body = response.json()

        assert body["reference"] == incident["reference"]
        event_types = [e["event_type"] for e in body["timeline"]]
        assert "incident_triggered" in event_types
        assert event_types[-1] == "incident_acknowledged"
        assert body["timeline"][-1]["actor"] == "alice"


class TestStatisticsAndHealth:
    """Tests for statistics, health and root endpoints."""

    @pytest.mark.asyncio
    async def test_statistics(self, client):
        rule = await create_rule(client, severity="critical")
        await create_rule(client, name="Idle", status="inactive")
        incident = (await trigger(client, rule["id"])).json()["incident"]
        await client.patch(
            f"/escalation/incidents/{incident['id']}/resolve",
            json={"actor": "alice", "resolution": "done"}
        )

        stats = (await client.get("/escalation/statistics")).json()

        assert stats["total_rules"] == 2
        assert stats["active_rules"] == 1
        assert stats["critical_rules"] == 1
        assert stats["activation_rate"] == 50.0
        assert stats["total_triggers"] == 1
        assert stats["resolution_rate"] == 100.0
        assert stats["resolved_incidents"] == 1
        assert stats["triggered_rules"] == 0

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["checks"]["database"] == "connected"
        assert "X-Correlation-ID" in response.headers

    @pytest.mark.asyncio
    async def test_root(self, client):
        body = (await client.get("/")).json()
        assert body["modules"]["escalation"]["prefix"] == "/escalation"
