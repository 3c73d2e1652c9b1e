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
    app_name: str = Field(default="sla-engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/itsm",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Engine ==========
    sla_catalog_path: Path = Field(
        default=Path("sla_catalog.yaml"),
        description="Path to the SLA rule catalog YAML file"
    )
    sla_monitoring_enabled: bool = Field(
        default=True,
        description="Start the background monitoring scheduler on startup"
    )
    sla_monitoring_interval_seconds: int = Field(
        default=300,
        description="Seconds between monitoring sweeps",
        ge=10
    )
    sla_monitoring_run_on_start: bool = Field(
        default=True,
        description="Run one sweep immediately when the scheduler starts"
    )
    sla_misfire_grace_seconds: int = Field(
        default=60,
        description="How late a scheduled sweep may still start",
        ge=1
    )
    sla_approaching_breach_minutes: int = Field(
        default=30,
        description="Default window for the approaching-breach report",
        ge=1
    )
    sla_default_timezone: str = Field(
        default="UTC",
        description="Time zone for schedules that do not declare one"
    )

    # ========== Notifications ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for escalation notifications"
    )
    slack_channel: str = Field(
        default="#sla-escalations",
        description="Slack channel for escalation notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )
    notification_max_retries: int = Field(
        default=3,
        description="Delivery attempts per notification",
        ge=1,
        le=10
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
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

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.upper()


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class LifecycleStatus(str, Enum):
    """Lifecycle of configuration rows (rules, schedules, calendars)."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    RETIRED = "retired"


class SlaStatus(str, Enum):
    """Live SLA status of a tracked ticket."""
    ON_TRACK = "on_track"
    WARNING = "warning"
    CRITICAL = "critical"
    BREACHED = "breached"


class SlaZone(str, Enum):
    """Display zones, one per SlaStatus."""
    GREEN = "green"
    YELLOW = "yellow"
    ORANGE = "orange"
    RED = "red"


class TrackingState(str, Enum):
    """Timer state of a tracking record."""
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class ResolutionOutcome(str, Enum):
    """Final outcome recorded when tracking stops."""
    MET_EARLY = "met_early"
    MET = "met"
    MET_LATE = "met_late"
    BREACHED = "breached"


class PauseAction(str, Enum):
    """Pause log actions."""
    PAUSED = "paused"
    RESUMED = "resumed"


class PauseConditionKind(str, Enum):
    """Kinds of pause-eligibility conditions on an SLA rule."""
    TICKET_STATUS = "ticket_status"   # params: statuses
    MANUAL = "manual"                 # params: require_reason


class TriggerType(str, Enum):
    """Escalation trigger labels."""
    WARNING_ZONE = "warning_zone"
    IMMINENT_BREACH = "imminent_breach"
    BREACHED = "breached"
    RECURRING_BREACH = "recurring_breach"


class ReferenceThreshold(str, Enum):
    """Which deadline an escalation is measured against."""
    MIN_TAT = "min_tat"
    AVG_TAT = "avg_tat"
    MAX_TAT = "max_tat"


class RecipientType(str, Enum):
    """Who receives an escalation."""
    ASSIGNED_ENGINEER = "assigned_engineer"
    COORDINATOR = "coordinator"
    TEAM_LEADER = "team_leader"
    DEPARTMENT_HEAD = "department_head"
    PROJECT_OWNER = "project_owner"
    CUSTOM_GROUP = "custom_group"
    CUSTOM_ROLE = "custom_role"


class EscalationType(str, Enum):
    HIERARCHICAL = "hierarchical"
    FUNCTIONAL = "functional"


class DeliveryStatus(str, Enum):
    """Delivery state of an escalation ledger row."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class AssetImportance(str, Enum):
    """Asset importance, highest first."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TicketStatus(str):
    """Ticket statuses the lifecycle hooks react to."""
    PENDING_CLOSURE = "pending_closure"
    AWAITING_INFO = "awaiting_info"
    ON_HOLD = "on_hold"
    RESOLVED = "resolved"
    CLOSED = "closed"
    CANCELLED = "cancelled"


# ========== Lists for validation ==========

IMPORTANCE_RANK = {
    AssetImportance.CRITICAL.value: 4,
    AssetImportance.HIGH.value: 3,
    AssetImportance.MEDIUM.value: 2,
    AssetImportance.LOW.value: 1,
}
DEFAULT_PAUSE_STATUSES = frozenset([
    TicketStatus.PENDING_CLOSURE, TicketStatus.AWAITING_INFO, TicketStatus.ON_HOLD
])
TERMINAL_TICKET_STATUSES = frozenset([
    TicketStatus.RESOLVED, TicketStatus.CLOSED, TicketStatus.CANCELLED
])
WILDCARD = "all"
