"""
Escalation External Service Integrations
=========================================

External services for the escalation engine:
- Notification channels (email/SMS gateways, webhook, Slack) over httpx
- YAML notification config watcher
- APScheduler for the background escalation sweep
"""

import asyncio
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from src.config import NotificationChannel, SMS_MAX_LENGTH, settings
from src.core import ConfigurationException, NotificationDeliveryException
from src.escalation.application.services import DispatchReport, INotifier
from src.escalation.domain import (
    EscalationRule, Incident, NotificationConfig, NotificationFault,
    NotificationMessage, TemplateRenderer, utc_now
)
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Configuration ==========

class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for notification config file changes."""

    def __init__(self, config_manager: "NotificationConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info("Notification config file changed", extra={"path": event.src_path})
            self.config_manager.reload()


class NotificationConfigManager:
    """
    Thread-safe notification configuration with hot-reload support.

    A reload that fails validation keeps the previous configuration.
    """

    def __init__(self, config: Optional[NotificationConfig] = None):
        self._config: Optional[NotificationConfig] = config
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> NotificationConfig:
        """Initial configuration load; invalid files fail startup."""
        self._path = path
        try:
            self._config = self._load_from_file(path)
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigurationException(f"Invalid notification config {path}: {e}")
        return self._config

    def _load_from_file(self, path: Path) -> NotificationConfig:
        if not path.exists():
            logger.warning("Notification config file not found, using defaults", extra={"path": str(path)})
            return NotificationConfig()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return NotificationConfig(**data)

    def reload(self) -> bool:
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except (OSError, yaml.YAMLError, ValueError) as e:
            logger.error("Failed to reload notification config", extra={"error": str(e)})
            return False

        with self._lock:
            self._config = new_config
        logger.info("Notification configuration reloaded")
        return True

    def start_watching(self) -> None:
        """Watch the config file; a missing file or no inotify means static config."""
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info("Notification config file doesn't exist, skipping file watch", extra={"path": str(self._path)})
            return

        try:
            self._observer = Observer()
            self._observer.schedule(
                ConfigFileHandler(self, self._path),
                str(self._path.parent),
                recursive=False
            )
            self._observer.start()
            logger.info("Started watching notification config", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static config", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def config(self) -> NotificationConfig:
        with self._lock:
            if self._config is None:
                raise RuntimeError("Notification configuration not loaded")
            return self._config


# ========== Circuit breaker ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failed deliveries, reject requests for M seconds
    - HALF_OPEN: After timeout, allow a test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        monotonic: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._monotonic = monotonic
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._monotonic() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = self._monotonic()
            logger.warning(
                "Circuit breaker opened",
                extra={"failure_count": self._failure_count, "recovery_timeout": self.recovery_timeout}
            )


# ========== Channels ==========

class ChannelClient(ABC):
    """One delivery mechanism. ``send`` raises NotificationDeliveryException."""

    channel: str = ""

    def __init__(self, endpoint: Optional[str] = None):
        self.endpoint = endpoint

    @abstractmethod
    def build_request(self, message: NotificationMessage) -> Dict[str, Any]:
        """Return ``{"url": ..., "json": ...}`` for the outbound call."""

    def _require_endpoint(self) -> str:
        if not self.endpoint:
            raise NotificationDeliveryException(
                self.channel, "endpoint not configured", {"retryable": False}
            )
        return self.endpoint

    async def send(self, client: httpx.AsyncClient, message: NotificationMessage) -> None:
        request = self.build_request(message)
        try:
            response = await client.post(request["url"], json=request["json"])
        except httpx.HTTPError as e:
            raise NotificationDeliveryException(self.channel, f"transport error: {e}")

        if response.status_code >= 500 or response.status_code == 429:
            raise NotificationDeliveryException(
                self.channel, f"gateway returned {response.status_code}",
                {"status_code": response.status_code}
            )
        if response.status_code >= 400:
            raise NotificationDeliveryException(
                self.channel, f"gateway rejected delivery with {response.status_code}",
                {"status_code": response.status_code, "retryable": False}
            )


class EmailChannel(ChannelClient):
    """Email through an HTTP mail gateway."""

    channel = NotificationChannel.EMAIL.value

    def build_request(self, message: NotificationMessage) -> Dict[str, Any]:
        return {
            "url": self._require_endpoint(),
            "json": {
                "to": message.recipient,
                "subject": message.subject,
                "text": message.body,
                "headers": {"X-Incident-Reference": message.incident_reference}
            }
        }


class SmsChannel(ChannelClient):
    """SMS through an HTTP gateway; bodies are cut to one segment."""

    channel = NotificationChannel.SMS.value

    def build_request(self, message: NotificationMessage) -> Dict[str, Any]:
        text = message.body
        if len(text) > SMS_MAX_LENGTH:
            text = text[:SMS_MAX_LENGTH - 3] + "..."
        return {
            "url": self._require_endpoint(),
            "json": {"to": message.recipient, "message": text}
        }


class WebhookChannel(ChannelClient):
    """Generic JSON webhook; an http(s) recipient is the target URL."""

    channel = NotificationChannel.WEBHOOK.value

    def build_request(self, message: NotificationMessage) -> Dict[str, Any]:
        if message.recipient.startswith(("http://", "https://")):
            url = message.recipient
        else:
            url = self._require_endpoint()
        return {
            "url": url,
            "json": {
                "incident_id": message.incident_id,
                "incident_reference": message.incident_reference,
                "rule_id": message.rule_id,
                "rule_name": message.rule_name,
                "recipient": message.recipient,
                "subject": message.subject,
                "message": message.body,
                "level": message.level,
                "max_level": message.max_level,
                "severity": message.severity,
                "priority": message.priority,
                "created_at": message.created_at.isoformat(),
                "payload": message.payload
            }
        }


class SlackChannel(ChannelClient):
    """Slack incoming webhook with a Block Kit message; recipient is the channel."""

    channel = NotificationChannel.SLACK.value

    SEVERITY_EMOJI = {
        "low": ":large_blue_circle:",
        "medium": ":large_yellow_circle:",
        "high": ":large_orange_circle:",
        "critical": ":red_circle:",
    }

    def build_request(self, message: NotificationMessage) -> Dict[str, Any]:
        emoji = self.SEVERITY_EMOJI.get(message.severity, ":warning:")
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"{message.subject}"[:150], "emoji": True}
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": message.body}
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Incident:*\n{message.incident_reference}"},
                    {"type": "mrkdwn", "text": f"*Rule:*\n{message.rule_name}"},
                    {"type": "mrkdwn", "text": f"*Severity:*\n{emoji} {message.severity.title()}"},
                    {"type": "mrkdwn", "text": f"*Escalation Level:*\n{message.level} of {message.max_level}"}
                ]
            },
            {
                "type": "context",
                "elements": [
                    {"type": "mrkdwn", "text": f"Opened: {message.created_at.isoformat()} | Priority: {message.priority}"}
                ]
            }
        ]
        return {
            "url": self._require_endpoint(),
            "json": {"channel": message.recipient, "text": message.subject, "blocks": blocks}
        }


CHANNEL_CLASSES = {
    NotificationChannel.EMAIL.value: EmailChannel,
    NotificationChannel.SMS.value: SmsChannel,
    NotificationChannel.WEBHOOK.value: WebhookChannel,
    NotificationChannel.SLACK.value: SlackChannel,
}


def default_endpoints() -> Dict[str, Optional[str]]:
    """Channel endpoints from application settings."""
    return {
        NotificationChannel.EMAIL.value: settings.email_gateway_url,
        NotificationChannel.SMS.value: settings.sms_gateway_url,
        NotificationChannel.WEBHOOK.value: None,
        NotificationChannel.SLACK.value: settings.slack_webhook_url,
    }


# ========== Notifier ==========

def render_context(rule: EscalationRule, incident: Incident) -> Dict[str, Any]:
    """Values available to ``{{placeholder}}`` templates."""
    return {
        "incidentId": incident.reference,
        "incidentReference": incident.reference,
        "ruleName": rule.name,
        "ruleType": rule.rule_type,
        "severity": rule.severity,
        "priority": rule.priority,
        "level": incident.current_level,
        "maxLevel": incident.max_level,
        "status": incident.status.value,
        "payload": incident.trigger_payload,
    }


class Notifier(INotifier):
    """
    Renders and delivers one notification round for an incident.

    Each (channel, recipient) delivery is retried with exponential backoff
    behind a per-channel circuit breaker. Exhausted deliveries come back as
    faults in the report; nothing is raised to the caller.
    """

    def __init__(
        self,
        config_manager: NotificationConfigManager,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock=utc_now,
        endpoints: Optional[Dict[str, Optional[str]]] = None
    ):
        self._config_manager = config_manager
        self._http_client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep
        self._clock = clock
        self._endpoints = endpoints if endpoints is not None else default_endpoints()
        self._breakers: Dict[str, CircuitBreaker] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.notification_timeout_seconds)
        return self._http_client

    def _breaker(self, channel: str) -> CircuitBreaker:
        cb = self._config_manager.config.circuit_breaker
        if channel not in self._breakers:
            self._breakers[channel] = CircuitBreaker(
                failure_threshold=cb.failure_threshold,
                recovery_timeout=cb.recovery_timeout_seconds
            )
        breaker = self._breakers[channel]
        # Follow hot reloads; the breaker keeps its state and counts
        breaker.failure_threshold = cb.failure_threshold
        breaker.recovery_timeout = cb.recovery_timeout_seconds
        return breaker

    def _channel_client(self, channel: str) -> ChannelClient:
        configured = self._config_manager.config.get_channel(channel)
        endpoint = configured.endpoint or self._endpoints.get(channel)
        return CHANNEL_CLASSES[channel](endpoint=endpoint)

    def build_messages(self, rule: EscalationRule, incident: Incident):
        context = render_context(rule, incident)
        subject = TemplateRenderer.render(rule.subject_template, context)
        body = TemplateRenderer.render(rule.message_template, context)
        sms_body = TemplateRenderer.render(rule.sms_template, context) if rule.sms_template else body

        for target in rule.targets_for_level(incident.current_level):
            yield NotificationMessage(
                incident_id=incident.id,
                incident_reference=incident.reference,
                rule_id=rule.id,
                rule_name=rule.name,
                channel=target.channel,
                recipient=target.recipient,
                subject=subject,
                body=sms_body if target.channel == NotificationChannel.SMS.value else body,
                level=incident.current_level,
                max_level=incident.max_level,
                severity=rule.severity,
                priority=rule.priority,
                created_at=incident.created_at,
                payload=incident.trigger_payload
            )

    async def dispatch(self, rule: EscalationRule, incident: Incident) -> DispatchReport:
        report = DispatchReport()
        for message in self.build_messages(rule, incident):
            fault = await self._deliver(message)
            if fault is None:
                report.delivered.append({"channel": message.channel, "recipient": message.recipient})
            else:
                report.faults.append(fault)
        return report

    async def _deliver(self, message: NotificationMessage) -> Optional[NotificationFault]:
        """Deliver one message; returns a fault once retries are exhausted."""
        config = self._config_manager.config
        policy = config.retry
        log_context = {
            "incident_id": message.incident_id,
            "channel": message.channel,
            "recipient": message.recipient,
            "level": message.level
        }

        def fault(error: str, attempts: int) -> NotificationFault:
            return NotificationFault(
                channel=message.channel,
                recipient=message.recipient,
                level=message.level,
                error=error,
                attempts=attempts,
                occurred_at=self._clock()
            )

        if not config.get_channel(message.channel).enabled:
            logger.warning("Notification channel disabled", extra=log_context)
            return fault("channel disabled", 0)

        breaker = self._breaker(message.channel)
        channel = self._channel_client(message.channel)
        client = await self._get_client()
        last_error = ""

        for attempt in range(1, policy.max_attempts + 1):
            if not breaker.allow_request():
                logger.warning("Circuit breaker open, skipping delivery", extra=log_context)
                return fault(last_error or "circuit breaker open", attempt - 1)

            try:
                await channel.send(client, message)
                breaker.record_success()
                logger.info("Notification delivered", extra={**log_context, "attempt": attempt})
                return None
            except NotificationDeliveryException as e:
                last_error = e.message
                logger.error(
                    "Notification delivery failed",
                    extra={**log_context, "attempt": attempt, "error": e.message}
                )
                if not e.details.get("retryable", True):
                    return fault(last_error, attempt)

            breaker.record_failure()
            if attempt < policy.max_attempts:
                await self._sleep(policy.delay_for_attempt(attempt))

        return fault(last_error, policy.max_attempts)

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None


# ========== Scheduler ==========

class EscalationScheduler:
    """
    Wrapper for APScheduler running the escalation sweep.

    Manages the lifecycle of the scheduler and its single job.
    """

    def __init__(self, interval_seconds: int = 15):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func) -> None:
        if self._running:
            logger.warning("Escalation scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="escalation_sweep",
            name="Escalation Sweep Job",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info("Escalation scheduler started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Escalation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
