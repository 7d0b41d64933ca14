"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for the SLA engine:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer and unit of work
- External: Config watcher, event webhook, scheduler
"""

from slaengine.sla.infrastructure.external import (
    CircuitBreaker,
    LoggingNotificationChannel,
    SLAConfigManager,
    SLAScheduler,
    WebhookNotificationChannel,
)
from slaengine.sla.infrastructure.repositories import SQLAlchemyUnitOfWork

__all__ = [
    "CircuitBreaker",
    "LoggingNotificationChannel",
    "SLAConfigManager",
    "SLAScheduler",
    "SQLAlchemyUnitOfWork",
    "WebhookNotificationChannel",
]
