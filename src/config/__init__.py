"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="escalation-service", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/escalations",
        description="Database connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Escalation Engine ==========
    escalation_config_path: Path = Field(
        default=Path("escalation_config.yaml"),
        description="Path to notification/retry configuration YAML file"
    )
    escalation_sweep_interval: int = Field(
        default=15,
        description="Seconds between escalation sweeps (0 disables the scheduler)",
        ge=0
    )
    trigger_conflict_policy: str = Field(
        default="reject",
        description="What to do when a rule triggers while its incident is open (reject, merge)"
    )
    transition_retry_attempts: int = Field(
        default=3,
        description="Re-read attempts when an incident write loses a concurrent race",
        ge=1,
        le=10
    )

    # ========== Notification Channels ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack incoming webhook URL"
    )
    email_gateway_url: Optional[str] = Field(
        default=None,
        description="HTTP endpoint of the outbound email gateway"
    )
    sms_gateway_url: Optional[str] = Field(
        default=None,
        description="HTTP endpoint of the outbound SMS gateway"
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for outbound notification calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("trigger_conflict_policy")
    @classmethod
    def validate_conflict_policy(cls, v: str) -> str:
        """Ensure the conflict policy is known."""
        if v not in VALID_CONFLICT_POLICIES:
            raise ValueError(f"trigger_conflict_policy must be one of {VALID_CONFLICT_POLICIES}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

class RuleType(str, Enum):
    """Domain events an escalation rule can watch for."""
    COMPLIANCE_DEADLINE = "compliance_deadline"
    AUDIT_BREACH = "audit_breach"
    NON_COMPLIANCE = "non_compliance"
    RISK_THRESHOLD = "risk_threshold"
    POLICY_VIOLATION = "policy_violation"
    DOCUMENT_EXPIRY = "document_expiry"
    TRAINING_DUE = "training_due"
    LICENSE_EXPIRY = "license_expiry"
    REGULATORY_CHANGE = "regulatory_change"
    SYSTEM_ERROR = "system_error"
    DATA_ANOMALY = "data_anomaly"
    CUSTOM = "custom"


class Severity(str, Enum):
    """Rule severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RulePriority(str, Enum):
    """Rule priority levels."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class RuleStatus(str, Enum):
    """Rule lifecycle statuses."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    PAUSED = "paused"


class IncidentStatus(str, Enum):
    """Incident lifecycle statuses."""
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class ConditionOperator(str, Enum):
    """Comparison operators usable in trigger conditions."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"
    BETWEEN = "between"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


class LogicalOperator(str, Enum):
    """How conditions in a group are combined."""
    AND = "and"
    OR = "or"


class NotificationChannel(str, Enum):
    """Delivery channels."""
    EMAIL = "email"
    SMS = "sms"
    WEBHOOK = "webhook"
    SLACK = "slack"


class TriggerConflictPolicy(str, Enum):
    """Policy for triggers arriving while the rule's incident is open."""
    REJECT = "reject"
    MERGE = "merge"


class TimelineEventType(str, Enum):
    """Incident timeline event types."""
    RULE_CREATED = "rule_created"
    INCIDENT_TRIGGERED = "incident_triggered"
    INCIDENT_RETRIGGERED = "incident_retriggered"
    INCIDENT_ESCALATED = "incident_escalated"
    ESCALATION_DEFERRED = "escalation_deferred"
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_FAILED = "notification_failed"
    INCIDENT_ACKNOWLEDGED = "incident_acknowledged"
    INCIDENT_PAUSED = "incident_paused"
    INCIDENT_RESUMED = "incident_resumed"
    INCIDENT_RESOLVED = "incident_resolved"


# ========== Lists for validation ==========

VALID_RULE_TYPES = [t.value for t in RuleType]
VALID_SEVERITIES = [s.value for s in Severity]
VALID_PRIORITIES = [p.value for p in RulePriority]
VALID_RULE_STATUSES = [s.value for s in RuleStatus]
VALID_INCIDENT_STATUSES = [s.value for s in IncidentStatus]
VALID_OPERATORS = [o.value for o in ConditionOperator]
VALID_CHANNELS = [c.value for c in NotificationChannel]
VALID_CONFLICT_POLICIES = [p.value for p in TriggerConflictPolicy]

# Statuses in which an incident still holds its rule's open slot
UNRESOLVED_INCIDENT_STATUSES = [IncidentStatus.OPEN, IncidentStatus.ACKNOWLEDGED]

SMS_MAX_LENGTH = 160


# Global settings instance
settings = get_settings()
