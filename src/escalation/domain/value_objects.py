"""
Escalation Value Objects
=========================

Immutable value objects for the escalation domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

from src.config import (
    ConditionOperator, LogicalOperator,
    VALID_CHANNELS, VALID_OPERATORS
)

logger = logging.getLogger(__name__)

_MISSING = object()


# ========== Trigger conditions ==========

@dataclass(frozen=True)
class Condition:
    """A single typed comparison against one payload field."""
    field: str
    operator: str
    value: Any = None

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator, "value": self.value}


@dataclass(frozen=True)
class ConditionGroup:
    """
    Conjunction or disjunction over conditions and nested groups.

    An empty group matches every payload.
    """
    logical_operator: str = LogicalOperator.AND.value
    conditions: Tuple[Union[Condition, "ConditionGroup"], ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ConditionGroup":
        """Build a group from its stored/JSON form."""
        if not data:
            return cls()

        children = []
        for item in data.get("conditions", []) or []:
            if "conditions" in item:
                children.append(cls.from_dict(item))
            else:
                children.append(Condition(
                    field=item.get("field", ""),
                    operator=item.get("operator", ""),
                    value=item.get("value")
                ))

        return cls(
            logical_operator=data.get("logical_operator", LogicalOperator.AND.value),
            conditions=tuple(children)
        )

    def to_dict(self) -> dict:
        return {
            "logical_operator": self.logical_operator,
            "conditions": [c.to_dict() for c in self.conditions]
        }


class TriggerEvaluator:
    """
    Pure functions deciding whether event data satisfies a trigger condition.

    Evaluation fails closed: an unknown operator, a malformed operand or a
    comparison between incompatible types is a non-match, never an exception.
    """

    @staticmethod
    def matches(group: ConditionGroup, payload: Mapping[str, Any]) -> bool:
        """Evaluate a condition group against an event payload."""
        if not group.conditions:
            return True

        results = (
            TriggerEvaluator.matches(child, payload)
            if isinstance(child, ConditionGroup)
            else TriggerEvaluator.evaluate_condition(child, payload)
            for child in group.conditions
        )

        if group.logical_operator == LogicalOperator.AND.value:
            return all(results)
        if group.logical_operator == LogicalOperator.OR.value:
            return any(results)

        logger.warning(
            "Unknown logical operator in trigger condition",
            extra={"logical_operator": group.logical_operator}
        )
        return False

    @staticmethod
    def resolve_field(payload: Mapping[str, Any], path: str) -> Any:
        """Look up a dotted path in the payload; missing keys resolve to None."""
        current: Any = payload
        for part in path.split("."):
            if isinstance(current, Mapping):
                current = current.get(part, _MISSING)
            elif isinstance(current, (list, tuple)) and part.isdigit():
                index = int(part)
                current = current[index] if index < len(current) else _MISSING
            else:
                current = _MISSING
            if current is _MISSING:
                return None
        return current

    @staticmethod
    def evaluate_condition(condition: Condition, payload: Mapping[str, Any]) -> bool:
        """Evaluate one comparison."""
        actual = TriggerEvaluator.resolve_field(payload, condition.field)
        expected = condition.value

        try:
            operator = ConditionOperator(condition.operator)
        except ValueError:
            logger.warning(
                "Unknown condition operator, treating as no match",
                extra={"operator": condition.operator, "field": condition.field}
            )
            return False

        try:
            if operator == ConditionOperator.IS_NULL:
                return actual is None
            if operator == ConditionOperator.IS_NOT_NULL:
                return actual is not None
            if operator == ConditionOperator.EQUALS:
                return actual == expected
            if operator == ConditionOperator.NOT_EQUALS:
                return actual != expected

            # Remaining operators need a value to compare
            if actual is None:
                return False

            if operator == ConditionOperator.GREATER_THAN:
                return actual > expected
            if operator == ConditionOperator.LESS_THAN:
                return actual < expected
            if operator == ConditionOperator.CONTAINS:
                return TriggerEvaluator._contains(actual, expected)
            if operator == ConditionOperator.NOT_CONTAINS:
                return not TriggerEvaluator._contains(actual, expected)
            if operator == ConditionOperator.IN:
                return isinstance(expected, (list, tuple)) and actual in expected
            if operator == ConditionOperator.NOT_IN:
                return isinstance(expected, (list, tuple)) and actual not in expected
            if operator == ConditionOperator.BETWEEN:
                if not isinstance(expected, (list, tuple)) or len(expected) != 2:
                    return False
                low, high = expected
                return low <= actual <= high
        except TypeError as e:
            logger.warning(
                "Trigger condition type mismatch, treating as no match",
                extra={"field": condition.field, "operator": condition.operator, "error": str(e)}
            )
            return False

        return False

    @staticmethod
    def _contains(actual: Any, expected: Any) -> bool:
        if isinstance(actual, str):
            if not isinstance(expected, str):
                raise TypeError("substring match needs a string value")
            return expected in actual
        if isinstance(actual, (list, tuple, set, Mapping)):
            return expected in actual
        raise TypeError(f"cannot test containment on {type(actual).__name__}")

    @staticmethod
    def validate(group_data: Optional[Mapping[str, Any]], path: str = "trigger_condition") -> List[dict]:
        """
        Return field-level errors for a condition group in JSON form.

        Used at rule creation so bad operators are rejected synchronously.
        """
        errors: List[dict] = []
        if not group_data:
            return errors

        logical = group_data.get("logical_operator", LogicalOperator.AND.value)
        if logical not in (LogicalOperator.AND.value, LogicalOperator.OR.value):
            errors.append({
                "field": f"{path}.logical_operator",
                "message": f"must be one of ['and', 'or'], got '{logical}'"
            })

        for index, item in enumerate(group_data.get("conditions", []) or []):
            item_path = f"{path}.conditions[{index}]"
            if "conditions" in item:
                errors.extend(TriggerEvaluator.validate(item, item_path))
                continue

            if not item.get("field"):
                errors.append({"field": f"{item_path}.field", "message": "field is required"})

            operator = item.get("operator")
            if operator not in VALID_OPERATORS:
                errors.append({
                    "field": f"{item_path}.operator",
                    "message": f"unknown operator '{operator}'"
                })
            elif operator in (ConditionOperator.IN.value, ConditionOperator.NOT_IN.value):
                if not isinstance(item.get("value"), list):
                    errors.append({"field": f"{item_path}.value", "message": "must be a list"})
            elif operator == ConditionOperator.BETWEEN.value:
                value = item.get("value")
                if not isinstance(value, list) or len(value) != 2:
                    errors.append({
                        "field": f"{item_path}.value",
                        "message": "must be a [low, high] pair"
                    })

        return errors


# ========== Templates ==========

class TemplateRenderer:
    """
    ``{{placeholder}}`` substitution for subject/message templates.

    Dotted names walk nested mappings (``{{payload.institution}}``).
    Placeholders without a value are left as written.
    """

    PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")

    @staticmethod
    def render(template: str, context: Mapping[str, Any]) -> str:
        def substitute(match: "re.Match[str]") -> str:
            value = TriggerEvaluator.resolve_field(context, match.group(1))
            if value is None:
                return match.group(0)
            return str(value)

        return TemplateRenderer.PLACEHOLDER.sub(substitute, template)


# ========== Escalation levels ==========

@dataclass(frozen=True)
class EscalationLevel:
    """
    One ordered escalation step.

    ``delay_minutes`` is how long an unacknowledged incident stays at this
    level before moving to the next one; ``None`` falls back to the rule's
    ``time_to_escalate`` (level 1) or ``escalation_interval`` (later levels).
    """
    level: int
    delay_minutes: Optional[int] = None
    channels: Tuple[str, ...] = ()
    recipients: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EscalationLevel":
        return cls(
            level=int(data["level"]),
            delay_minutes=data.get("delay_minutes"),
            channels=tuple(data.get("channels") or ()),
            recipients=tuple(data.get("recipients") or ())
        )

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "delay_minutes": self.delay_minutes,
            "channels": list(self.channels),
            "recipients": list(self.recipients)
        }


# ========== Escalation windows ==========

_UTC = timezone.utc


def _aware(value: Union[str, datetime]) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value if value.tzinfo is not None else value.replace(tzinfo=_UTC)


@dataclass(frozen=True)
class WorkingHours:
    """
    Weekly hours during which a rule may escalate.

    ``days`` are weekday numbers (Monday is 0). Hours are local to
    ``timezone``; ``end_hour`` is exclusive.
    """
    start_hour: int = 9
    end_hour: int = 18
    days: Tuple[int, ...] = (0, 1, 2, 3, 4)
    timezone: str = "UTC"

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def contains(self, moment: datetime) -> bool:
        local = moment.astimezone(self.zone)
        return local.weekday() in self.days and self.start_hour <= local.hour < self.end_hour

    def next_opening(self, moment: datetime) -> datetime:
        """``moment`` itself inside working hours, otherwise the next start of day."""
        if self.contains(moment):
            return moment
        local = moment.astimezone(self.zone)
        for offset in range(8):
            day = local.date() + timedelta(days=offset)
            if day.weekday() not in self.days:
                continue
            opening = datetime.combine(day, time(self.start_hour), tzinfo=self.zone)
            if opening > local:
                return opening.astimezone(_UTC)
        raise ValueError("working hours have no working day")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkingHours":
        return cls(
            start_hour=int(data.get("start_hour", 9)),
            end_hour=int(data.get("end_hour", 18)),
            days=tuple(int(d) for d in data.get("days", (0, 1, 2, 3, 4))),
            timezone=data.get("timezone") or "UTC"
        )

    def to_dict(self) -> dict:
        return {
            "start_hour": self.start_hour,
            "end_hour": self.end_hour,
            "days": list(self.days),
            "timezone": self.timezone
        }

    @staticmethod
    def validate(data: Mapping[str, Any], path: str = "working_hours") -> List[dict]:
        errors = []
        start, end = data.get("start_hour", 9), data.get("end_hour", 18)
        if not 0 <= start <= 23 or not 1 <= end <= 24 or start >= end:
            errors.append({"field": path, "message": "need 0 <= start_hour < end_hour <= 24"})
        days = data.get("days", [0, 1, 2, 3, 4])
        if not days or any(d not in range(7) for d in days):
            errors.append({"field": f"{path}.days", "message": "days must be weekday numbers 0 (Monday) to 6"})
        try:
            ZoneInfo(data.get("timezone") or "UTC")
        except (ZoneInfoNotFoundError, ValueError):
            errors.append({"field": f"{path}.timezone", "message": f"unknown timezone '{data.get('timezone')}'"})
        return errors


@dataclass(frozen=True)
class MaintenanceWindow:
    """A fixed period during which escalation is held back."""
    starts_at: datetime
    ends_at: datetime
    reason: str = ""

    def contains(self, moment: datetime) -> bool:
        return self.starts_at <= moment < self.ends_at

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MaintenanceWindow":
        return cls(
            starts_at=_aware(data["starts_at"]),
            ends_at=_aware(data["ends_at"]),
            reason=data.get("reason") or ""
        )

    def to_dict(self) -> dict:
        return {
            "starts_at": self.starts_at.isoformat(),
            "ends_at": self.ends_at.isoformat(),
            "reason": self.reason
        }

    @staticmethod
    def validate(data: Mapping[str, Any], path: str) -> List[dict]:
        try:
            window = MaintenanceWindow.from_dict(data)
        except (KeyError, TypeError, ValueError):
            return [{"field": path, "message": "starts_at and ends_at must be ISO timestamps"}]
        if window.ends_at <= window.starts_at:
            return [{"field": path, "message": "ends_at must be after starts_at"}]
        return []


@dataclass(frozen=True)
class DeliveryTarget:
    """A (channel, recipient) pair."""
    channel: str
    recipient: str


@dataclass(frozen=True)
class NotificationMessage:
    """A rendered notification ready for one channel and recipient."""
    incident_id: str
    incident_reference: str
    rule_id: str
    rule_name: str
    channel: str
    recipient: str
    subject: str
    body: str
    level: int
    max_level: int
    severity: str
    priority: str
    created_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)


# ========== Notification configuration (YAML) ==========

class RetryPolicy(BaseModel):
    """Bounded exponential backoff for notification delivery."""
    max_attempts: int = Field(default=3, ge=1, le=10, description="Attempts per delivery")
    base_delay_seconds: float = Field(default=1.0, ge=0, description="Delay before the first retry")
    max_delay_seconds: float = Field(default=30.0, ge=0, description="Upper bound on a single delay")

    def delay_for_attempt(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))


class CircuitBreakerConfig(BaseModel):
    """Per-channel circuit breaker thresholds."""
    failure_threshold: int = Field(default=5, ge=1)
    recovery_timeout_seconds: float = Field(default=60.0, ge=0)


class ChannelConfig(BaseModel):
    """Per-channel delivery settings."""
    enabled: bool = True
    endpoint: Optional[str] = Field(default=None, description="Gateway/webhook URL override")


class NotificationConfig(BaseModel):
    """
    Notification configuration loaded from YAML.

    This is a value object - immutable and defined by its attributes.
    """
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    channels: Dict[str, ChannelConfig] = Field(default_factory=dict, validate_default=True)

    @field_validator("channels")
    @classmethod
    def validate_channels(cls, v: Dict[str, ChannelConfig]) -> Dict[str, ChannelConfig]:
        """Reject unknown channels and fill in the missing ones."""
        unknown = set(v) - set(VALID_CHANNELS)
        if unknown:
            raise ValueError(f"unknown notification channels: {sorted(unknown)}")
        for channel in VALID_CHANNELS:
            v.setdefault(channel, ChannelConfig())
        return v

    def get_channel(self, channel: str) -> ChannelConfig:
        return self.channels.get(channel, ChannelConfig())


def minutes(value: Optional[int]) -> timedelta:
    """Minutes as a timedelta (None counts as zero)."""
    return timedelta(minutes=value or 0)
