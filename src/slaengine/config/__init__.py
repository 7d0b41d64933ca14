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
        default="postgresql+asyncpg://localhost:5432/hotel_ops",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Configuration ==========
    sla_config_path: Path = Field(
        default=Path("sla_config.yaml"),
        description="Path to department templates and exception reasons YAML file"
    )
    sla_evaluation_interval: int = Field(
        default=30,
        description="Seconds between SLA sweeps (0 disables the scheduler)",
        ge=0
    )
    sweep_deadline_seconds: float = Field(
        default=20.0,
        description="Upper bound on event delivery time within one sweep",
        gt=0
    )
    sweep_workers: int = Field(
        default=8,
        description="Worker pool size for ticket classification",
        ge=1,
        le=64
    )
    policy_write_retries: int = Field(
        default=3,
        description="Retries for a policy write that lost a race",
        ge=1
    )
    reporting_timezone: str = Field(
        default="UTC",
        description="Time zone used for daily compliance buckets"
    )
    impact_window_days: int = Field(
        default=7,
        description="Default window for the impact breakdown",
        ge=1
    )

    # ========== Event Delivery ==========
    event_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook receiving classification and escalation events"
    )
    event_webhook_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for a single event delivery",
        ge=0.1,
        le=30
    )
    event_webhook_max_retries: int = Field(
        default=2,
        description="Attempts per delivery before the event is left pending",
        ge=1
    )
    event_batch_size: int = Field(
        default=200,
        description="Pending events pulled per dispatch",
        ge=1
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
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("reporting_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Ensure the reporting time zone is known to zoneinfo."""
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown time zone: {v}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class TicketStatus(str, Enum):
    """Ticket lifecycle statuses."""
    CREATED = "CREATED"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class StartTrigger(str, Enum):
    """Lifecycle point at which the SLA clock starts."""
    ON_CREATE = "ON_CREATE"
    ON_ASSIGN = "ON_ASSIGN"
    ON_ACCEPT = "ON_ACCEPT"


class SLAClassification(str, Enum):
    """SLA classification of a ticket at a point in time."""
    NOT_STARTED = "NOT_STARTED"
    ON_TRACK = "ON_TRACK"
    AT_RISK = "AT_RISK"
    BREACHED = "BREACHED"
    ESCALATED = "ESCALATED"
    BLOCKED = "BLOCKED"
    EXEMPT = "EXEMPT"


class SLAEventType(str, Enum):
    """Events emitted to the notification collaborator."""
    CLASSIFICATION_CHANGED = "CLASSIFICATION_CHANGED"
    BREACHED = "BREACHED"
    ESCALATED = "ESCALATED"
    EXEMPTED = "EXEMPTED"


class ComplianceOutcome(str, Enum):
    """Outcome of a terminal ticket as folded into compliance buckets."""
    WITHIN_SLA = "WITHIN_SLA"
    BREACHED = "BREACHED"
    EXEMPTED = "EXEMPTED"


# ========== Lists for validation ==========

OPEN_STATUSES = [
    TicketStatus.CREATED, TicketStatus.ASSIGNED,
    TicketStatus.IN_PROGRESS, TicketStatus.BLOCKED
]
TERMINAL_STATUSES = [TicketStatus.COMPLETED, TicketStatus.CANCELLED]
VALID_START_TRIGGERS = [t.value for t in StartTrigger]
