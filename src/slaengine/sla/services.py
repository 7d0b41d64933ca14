"""
SLA Engine
==========

Composition root of the SLA bounded context.

Owns the process-wide pieces (department and ticket locks, the
classification worker pool, the notification channel, the config
provider) and builds session-scoped services on top of them. The
scheduler and the HTTP layer both go through this object.
"""

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slaengine.config import Settings, settings as default_settings
from slaengine.shared.infrastructure.locks import KeyedLock
from slaengine.shared.infrastructure.logging import get_logger, log_latency
from slaengine.shared.time import utc_now
from slaengine.sla.application import (
    ComplianceAggregator,
    EscalationEvaluator,
    INotificationChannel,
    ISLAConfigProvider,
    LifecycleService,
    PolicyService,
    SLAEventDispatcher,
    SLAQueryService,
)
from slaengine.sla.infrastructure.external import (
    LoggingNotificationChannel,
    WebhookNotificationChannel,
)
from slaengine.sla.infrastructure.repositories import SQLAlchemyUnitOfWork

logger = get_logger(__name__)


@dataclass
class SweepSummary:
    """What one full sweep did."""
    evaluated: int = 0
    changed: int = 0
    events_emitted: int = 0
    failed_ticket_ids: List[str] = field(default_factory=list)
    folded: int = 0
    delivered: int = 0
    delivery_failed: int = 0
    deferred: int = 0
    duration_ms: float = 0.0
    skipped: bool = False


def build_notification_channel(config: Settings) -> INotificationChannel:
    """Webhook channel when a URL is configured, log channel otherwise."""
    if config.event_webhook_url:
        return WebhookNotificationChannel(
            url=config.event_webhook_url,
            timeout_seconds=config.event_webhook_timeout_seconds,
            max_retries=config.event_webhook_max_retries,
        )
    logger.info("No event webhook configured, SLA events will be logged")
    return LoggingNotificationChannel()


class SLAEngine:
    """
    Entry point for all SLA operations.

    Usage:
        async with engine.unit_of_work() as uow:
            policy = await engine.policies(uow).set_policy(department_id, terms)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config_provider: ISLAConfigProvider,
        notifier: Optional[INotificationChannel] = None,
        settings: Optional[Settings] = None
    ):
        self._session_factory = session_factory
        self.config_provider = config_provider
        self.settings = settings or default_settings
        self.notifier = notifier or build_notification_channel(self.settings)

        self.policy_locks = KeyedLock()
        self.ticket_locks = KeyedLock()
        self._sweep_lock = asyncio.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.sweep_workers,
            thread_name_prefix="sla-classify"
        )

    # ========== Session-scoped services ==========

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[SQLAlchemyUnitOfWork]:
        async with self._session_factory() as session:
            uow = SQLAlchemyUnitOfWork(session)
            try:
                yield uow
            except Exception:
                await uow.rollback()
                raise

    def policies(self, uow: SQLAlchemyUnitOfWork) -> PolicyService:
        return PolicyService(
            uow,
            self.config_provider,
            self.policy_locks,
            max_retries=self.settings.policy_write_retries
        )

    def evaluator(self, uow: SQLAlchemyUnitOfWork) -> EscalationEvaluator:
        return EscalationEvaluator(uow, self._executor, self.ticket_locks)

    def compliance(self, uow: SQLAlchemyUnitOfWork) -> ComplianceAggregator:
        return ComplianceAggregator(uow, self.settings.reporting_timezone)

    def lifecycle(self, uow: SQLAlchemyUnitOfWork) -> LifecycleService:
        return LifecycleService(
            uow,
            self.config_provider,
            self.ticket_locks,
            self.evaluator(uow),
            self.compliance(uow)
        )

    def queries(self, uow: SQLAlchemyUnitOfWork) -> SLAQueryService:
        return SLAQueryService(uow, self.config_provider)

    def dispatcher(self, uow: SQLAlchemyUnitOfWork) -> SLAEventDispatcher:
        return SLAEventDispatcher(
            uow,
            self.notifier,
            deadline_seconds=self.settings.sweep_deadline_seconds,
            batch_size=self.settings.event_batch_size
        )

    # ========== Background work ==========

    async def fold_pending(self, now: Optional[datetime] = None) -> int:
        """
        Fold terminal tickets that have no compliance fold yet.

        Each ticket folds in its own transaction; a failure is logged and
        the ticket is picked up again by the next sweep.
        """
        async with self.unit_of_work() as uow:
            ticket_ids = await uow.tickets.list_unfolded_terminal(self.settings.event_batch_size)

        folded = 0
        for ticket_id in ticket_ids:
            try:
                async with self.ticket_locks.acquire(ticket_id):
                    async with self.unit_of_work() as uow:
                        ticket = await uow.tickets.get(ticket_id)
                        if ticket is None or not ticket.is_terminal:
                            continue
                        if await self.compliance(uow).fold_ticket(ticket, now):
                            folded += 1
                        await uow.commit()
            except Exception as e:
                logger.error(
                    "Compliance fold failed",
                    extra={"ticket_id": ticket_id, "error": str(e), "error_type": type(e).__name__}
                )
        return folded

    async def run_sweep(self, now: Optional[datetime] = None) -> SweepSummary:
        """
        One full pass: classify open tickets, fold stragglers, deliver events.

        Undelivered events stay pending for the next sweep. Only one sweep
        runs at a time; a sweep requested while another is running is
        skipped and reported with `skipped=True`.
        """
        if self._sweep_lock.locked():
            logger.info("SLA sweep already running, skipping")
            return SweepSummary(skipped=True)

        async with self._sweep_lock:
            return await self._sweep(now or utc_now())

    async def _sweep(self, now: datetime) -> SweepSummary:
        summary = SweepSummary()
        started = time.perf_counter()

        with log_latency(logger, "sla_sweep"):
            async with self.unit_of_work() as uow:
                report = await self.evaluator(uow).sweep(now)
            summary.evaluated = report.evaluated
            summary.changed = report.changed
            summary.events_emitted = report.events_emitted
            summary.failed_ticket_ids = report.failed_ticket_ids

            summary.folded = await self.fold_pending(now)

            async with self.unit_of_work() as uow:
                dispatch = await self.dispatcher(uow).dispatch()
            summary.delivered = dispatch.delivered
            summary.delivery_failed = dispatch.failed
            summary.deferred = dispatch.deferred

        summary.duration_ms = round((time.perf_counter() - started) * 1000, 2)
        return summary

    async def close(self) -> None:
        await self.notifier.close()
        self._executor.shutdown(wait=False)
