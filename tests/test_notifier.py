"""Tests for the notifier, channel adapters, circuit breaker and config manager."""

import json
from dataclasses import replace

import httpx
import pytest

from src.core import ConfigurationException
from src.escalation.domain import EscalationLevel, Incident, NotificationConfig
from src.escalation.infrastructure.external import (
    CircuitBreaker, CircuitState, NotificationConfigManager, Notifier
)

from tests.conftest import T0, build_rule

ENDPOINTS = {
    "email": "https://mail.test/send",
    "sms": "https://sms.test/messages",
    "webhook": None,
    "slack": "https://hooks.slack.test/services/T000",
}


class FakeSleep:
    """Records backoff delays instead of sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def make_notifier(handler, config=None, endpoints=ENDPOINTS):
    sleep = FakeSleep()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = Notifier(
        NotificationConfigManager(config or NotificationConfig()),
        http_client=client,
        sleep=sleep,
        clock=lambda: T0,
        endpoints=endpoints
    )
    return notifier, sleep


def open_incident(rule, payload=None):
    return Incident.open(rule, payload or {"days_overdue": 3}, T0)


class TestDelivery:
    """Tests for rendering and delivering notifications."""

    @pytest.mark.asyncio
    async def test_email_rendered_and_delivered(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(202)

        notifier, sleep = make_notifier(handler)
        rule = build_rule(levels=2)
        incident = open_incident(rule)

        report = await notifier.dispatch(rule, incident)

        assert report.faults == []
        assert report.delivered == [{"channel": "email", "recipient": "level1@example.com"}]
        body = json.loads(requests[0].content)
        assert str(requests[0].url) == "https://mail.test/send"
        assert body["to"] == "level1@example.com"
        assert body["subject"] == f"[high] Overdue compliance filing - {incident.reference}"
        assert body["text"] == "Level 1 of 2: 3 days overdue"
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retries_with_exponential_backoff(self):
        """Transient failures are retried; delays double each attempt."""
        statuses = iter([503, 500, 200])

        def handler(request):
            return httpx.Response(next(statuses))

        config = NotificationConfig(retry={"max_attempts": 3, "base_delay_seconds": 1.0, "max_delay_seconds": 30})
        notifier, sleep = make_notifier(handler, config)
        rule = build_rule()

        report = await notifier.dispatch(rule, open_incident(rule))

        assert len(report.delivered) == 1
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_become_fault(self):
        """Failures are returned, never raised."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        config = NotificationConfig(retry={"max_attempts": 4, "base_delay_seconds": 2.0, "max_delay_seconds": 5.0})
        notifier, sleep = make_notifier(handler, config)
        rule = build_rule()

        report = await notifier.dispatch(rule, open_incident(rule))

        assert report.delivered == []
        assert len(calls) == 4
        assert sleep.delays == [2.0, 4.0, 5.0]
        fault = report.faults[0]
        assert (fault.channel, fault.recipient, fault.attempts, fault.level) == ("email", "level1@example.com", 4, 1)
        assert "503" in fault.error

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        notifier, sleep = make_notifier(handler)
        rule = build_rule()

        report = await notifier.dispatch(rule, open_incident(rule))

        assert len(report.delivered) == 1
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400)

        notifier, sleep = make_notifier(handler)
        rule = build_rule()

        report = await notifier.dispatch(rule, open_incident(rule))

        assert len(calls) == 1
        assert report.faults[0].attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_missing_endpoint_is_fault(self):
        def handler(request):
            raise AssertionError("no request expected")

        notifier, _ = make_notifier(handler, endpoints={})
        rule = build_rule()

        report = await notifier.dispatch(rule, open_incident(rule))

        assert "not configured" in report.faults[0].error

    @pytest.mark.asyncio
    async def test_disabled_channel_is_skipped(self):
        def handler(request):
            raise AssertionError("no request expected")

        config = NotificationConfig(channels={"email": {"enabled": False}})
        notifier, _ = make_notifier(handler, config)
        rule = build_rule()

        report = await notifier.dispatch(rule, open_incident(rule))

        assert report.faults[0].error == "channel disabled"
        assert report.faults[0].attempts == 0


class TestChannels:
    """Tests for channel-specific payloads."""

    @pytest.mark.asyncio
    async def test_sms_uses_sms_template_and_fits_one_segment(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200)

        notifier, _ = make_notifier(handler)
        rule = build_rule(
            notification_channels=["sms"],
            sms_template="{{incidentId}} L{{level}}",
            message_template="x" * 500
        )
        incident = open_incident(rule)

        await notifier.dispatch(rule, incident)

        assert bodies[0] == {"to": "level1@example.com", "message": f"{incident.reference} L1"}

    @pytest.mark.asyncio
    async def test_sms_body_truncated(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200)

        notifier, _ = make_notifier(handler)
        rule = build_rule(notification_channels=["sms"], message_template="y" * 500)

        await notifier.dispatch(rule, open_incident(rule))

        assert len(bodies[0]["message"]) == 160

    @pytest.mark.asyncio
    async def test_webhook_posts_to_recipient_url(self):
        urls = []

        def handler(request):
            urls.append(str(request.url))
            return httpx.Response(204)

        notifier, _ = make_notifier(handler)
        rule = replace(
            build_rule(levels=1, notification_channels=["webhook"]),
            levels=(EscalationLevel(level=1, recipients=("https://hooks.test/incident",)),)
        )

        report = await notifier.dispatch(rule, open_incident(rule))

        assert urls == ["https://hooks.test/incident"]
        assert len(report.delivered) == 1

    @pytest.mark.asyncio
    async def test_slack_block_message(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200)

        notifier, _ = make_notifier(handler)
        rule = build_rule(notification_channels=["slack"], severity="critical")

        await notifier.dispatch(rule, open_incident(rule))

        message = bodies[0]
        assert message["channel"] == "level1@example.com"
        assert message["blocks"][0]["type"] == "header"
        fields = [f["text"] for f in message["blocks"][2]["fields"]]
        assert "*Escalation Level:*\n1 of 2" in fields


class TestCircuitBreaker:
    """Tests for the per-channel circuit breaker."""

    def test_opens_after_threshold_and_recovers(self):
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60, monotonic=lambda: now[0])

        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False

        now[0] = 61.0
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self):
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10, monotonic=lambda: now[0])
        breaker.record_failure()
        now[0] = 11.0
        assert breaker.allow_request()

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits_deliveries(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        config = NotificationConfig(
            retry={"max_attempts": 1},
            circuit_breaker={"failure_threshold": 2, "recovery_timeout_seconds": 600}
        )
        notifier, _ = make_notifier(handler, config)
        # Level without recipients falls back to the rule recipients
        rule = replace(
            build_rule(levels=1, recipients=["a@x.test", "b@x.test", "c@x.test"]),
            levels=(EscalationLevel(level=1),)
        )

        report = await notifier.dispatch(rule, open_incident(rule))

        assert len(calls) == 2
        assert len(report.faults) == 3
        assert report.faults[2].error == "circuit breaker open"

    @pytest.mark.asyncio
    async def test_reloaded_thresholds_apply_to_existing_breaker(self, tmp_path):
        path = tmp_path / "escalation_config.yaml"
        path.write_text("retry:\n  max_attempts: 1\ncircuit_breaker:\n  failure_threshold: 100\n")
        manager = NotificationConfigManager()
        manager.load(path)
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        notifier = Notifier(
            manager,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            sleep=FakeSleep(),
            clock=lambda: T0,
            endpoints=ENDPOINTS
        )
        rule = build_rule()
        await notifier.dispatch(rule, open_incident(rule))

        path.write_text("retry:\n  max_attempts: 1\ncircuit_breaker:\n  failure_threshold: 2\n")
        assert manager.reload() is True

        await notifier.dispatch(rule, open_incident(rule))
        report = await notifier.dispatch(rule, open_incident(rule))

        assert len(calls) == 2
        assert report.faults[0].error == "circuit breaker open"


class TestNotificationConfigManager:
    """Tests for YAML loading and hot reload."""

    def test_missing_file_uses_defaults(self, tmp_path):
        manager = NotificationConfigManager()
        config = manager.load(tmp_path / "absent.yaml")

        assert config.retry.max_attempts == 3
        assert set(config.channels) == {"email", "sms", "webhook", "slack"}

    def test_reload_applies_changes(self, tmp_path):
        path = tmp_path / "escalation_config.yaml"
        path.write_text("retry:\n  max_attempts: 2\n")
        manager = NotificationConfigManager()
        manager.load(path)

        path.write_text("retry:\n  max_attempts: 5\nchannels:\n  sms:\n    enabled: false\n")

        assert manager.reload() is True
        assert manager.config.retry.max_attempts == 5
        assert manager.config.get_channel("sms").enabled is False

    def test_invalid_reload_keeps_previous(self, tmp_path):
        path = tmp_path / "escalation_config.yaml"
        path.write_text("retry:\n  max_attempts: 2\n")
        manager = NotificationConfigManager()
        manager.load(path)

        path.write_text("channels:\n  pager:\n    enabled: true\n")

        assert manager.reload() is False
        assert manager.config.retry.max_attempts == 2

    def test_invalid_initial_load_fails(self, tmp_path):
        path = tmp_path / "escalation_config.yaml"
        path.write_text("retry:\n  max_attempts: 0\n")

        with pytest.raises(ConfigurationException):
            NotificationConfigManager().load(path)

    def test_backoff_is_capped(self):
        config = NotificationConfig(retry={"base_delay_seconds": 10, "max_delay_seconds": 25})
        assert [config.retry.delay_for_attempt(n) for n in (1, 2, 3)] == [10, 20, 25]
