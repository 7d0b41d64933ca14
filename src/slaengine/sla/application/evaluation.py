"""
Escalation Evaluation
======================

Turns SLA clocks into events.

The evaluator classifies tickets (in a worker pool during sweeps, inline
after a transition), compares the result against the last observation and
writes changed observations plus outbox events. The dispatcher drains the
outbox to the notification channel under a bounded deadline.
"""

import asyncio
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from slaengine.config import SLAClassification, SLAEventType
from slaengine.core import ExternalServiceException
from slaengine.shared.infrastructure.locks import KeyedLock
from slaengine.shared.infrastructure.logging import get_logger
from slaengine.shared.time import utc_now
from slaengine.sla.application.interfaces import INotificationChannel, IUnitOfWork
from slaengine.sla.domain import SLAClock, SLAClockState, SLAEvent, SLAObservation, SLAPolicy, Ticket

logger = get_logger(__name__)

_BREACH_STATES = (SLAClassification.BREACHED, SLAClassification.ESCALATED)


@dataclass
class SweepReport:
    """Outcome of one evaluation sweep."""
    evaluated: int = 0
    changed: int = 0
    events_emitted: int = 0
    failed_ticket_ids: List[str] = field(default_factory=list)
    superseded: int = 0


@dataclass
class DispatchReport:
    """Outcome of one outbox dispatch."""
    delivered: int = 0
    failed: int = 0
    deferred: int = 0


def plan_emission(
    ticket: Ticket,
    clock: SLAClockState,
    previous: Optional[SLAObservation],
    now: datetime
) -> Tuple[Optional[SLAObservation], List[SLAEvent]]:
    """
    Events owed for a new classification.

    Returns (None, []) when the classification did not change. BREACHED and
    ESCALATED events are owed once per ticket, tracked by the observation's
    breached_at / escalated_at markers.
    """
    old = previous.classification if previous else None
    new = clock.classification
    if old == new:
        return None, []

    def event(event_type: SLAEventType, payload: dict) -> SLAEvent:
        return SLAEvent(
            ticket_id=ticket.id,
            department_id=ticket.department_id,
            event_type=event_type,
            occurred_at=now,
            old_classification=old,
            new_classification=new,
            payload=payload,
        )

    clock_payload = clock.to_dict()
    events = [event(SLAEventType.CLASSIFICATION_CHANGED, clock_payload)]

    breached_at = previous.breached_at if previous else None
    escalated_at = previous.escalated_at if previous else None

    if new in _BREACH_STATES and breached_at is None:
        breached_at = now
        events.append(event(SLAEventType.BREACHED, clock_payload))
    if new == SLAClassification.ESCALATED and escalated_at is None:
        escalated_at = now
        events.append(event(SLAEventType.ESCALATED, clock_payload))
    if new == SLAClassification.EXEMPT and ticket.is_exempted:
        events.append(event(SLAEventType.EXEMPTED, {
            "reason_code": ticket.exception_reason_code,
            "category": ticket.exception_category,
            "exempted_at": ticket.sla_exempted_at.isoformat(),
        }))

    observation = SLAObservation(
        ticket_id=ticket.id,
        department_id=ticket.department_id,
        classification=new,
        observed_at=now,
        breached_at=breached_at,
        escalated_at=escalated_at,
    )
    return observation, events


class EscalationEvaluator:
    """
    Classifies tickets and records classification changes.

    Emission is change-only: re-evaluating a ticket whose classification
    is unchanged writes nothing.
    """

    def __init__(
        self,
        uow: IUnitOfWork,
        executor: Optional[Executor] = None,
        locks: Optional[KeyedLock] = None
    ):
        self._uow = uow
        self._executor = executor
        self._locks = locks or KeyedLock()

    async def evaluate_ticket(self, ticket: Ticket, now: Optional[datetime] = None) -> SLAClockState:
        """
        Evaluate one ticket inside the caller's transaction.

        The caller holds the ticket's lock. Does not commit.
        """
        now = now or utc_now()
        policy = None
        if ticket.sla_policy_id:
            policy = await self._uow.policies.get_by_id(ticket.sla_policy_id)
        clock = SLAClock.compute_clock(ticket, policy, now)
        previous = await self._uow.observations.get(ticket.id)
        await self._record(ticket, clock, previous, now)
        return clock

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Evaluate every open ticket and commit the resulting events.

        Classification runs on the worker pool. Each ticket is loaded,
        classified and recorded on its own: a ticket that fails at any step
        is logged, reported in `failed_ticket_ids` and skipped. Results are
        recorded under the ticket's lock against a fresh read, and dropped
        when a transition changed the ticket after it was loaded.
        """
        now = now or utc_now()
        report = SweepReport()

        snapshots: List[Tuple[Ticket, Optional[SLAPolicy]]] = []
        for ticket_id in await self._uow.tickets.list_open_ids():
            try:
                snapshot = await self._load(ticket_id)
            except Exception as e:
                await self._uow.rollback()
                self._fail(report, ticket_id, e)
                continue
            if snapshot is not None:
                snapshots.append(snapshot)

        if not snapshots:
            return report

        loop = asyncio.get_running_loop()
        results = await asyncio.gather(
            *(
                loop.run_in_executor(self._executor, SLAClock.compute_clock, ticket, policy, now)
                for ticket, policy in snapshots
            ),
            return_exceptions=True,
        )

        for (ticket, _), result in zip(snapshots, results):
            if isinstance(result, Exception):
                self._fail(report, ticket.id, result, ticket.department_id)
                continue

            try:
                emitted = await self._record_swept(ticket, result, now)
            except Exception as e:
                await self._uow.rollback()
                self._fail(report, ticket.id, e, ticket.department_id)
                continue

            if emitted is None:
                report.superseded += 1
                continue
            report.evaluated += 1
            if emitted:
                report.changed += 1
                report.events_emitted += emitted

        logger.info(
            "SLA sweep evaluated",
            extra={
                "evaluated": report.evaluated,
                "changed": report.changed,
                "events_emitted": report.events_emitted,
                "superseded": report.superseded,
                "failed": len(report.failed_ticket_ids)
            }
        )
        return report

    async def _load(self, ticket_id: str) -> Optional[Tuple[Ticket, Optional[SLAPolicy]]]:
        ticket = await self._uow.tickets.get(ticket_id)
        if ticket is None:
            return None
        policy = None
        if ticket.sla_policy_id:
            policy = await self._uow.policies.get_by_id(ticket.sla_policy_id)
        return ticket, policy

    async def _record_swept(
        self,
        ticket: Ticket,
        clock: SLAClockState,
        now: datetime
    ) -> Optional[int]:
        """Record a swept result; None when the ticket moved on since it was loaded."""
        async with self._locks.acquire(ticket.id):
            current = await self._uow.tickets.get(ticket.id, for_update=True)
            if current is None or current.revision != ticket.revision:
                await self._uow.rollback()
                return None

            previous = await self._uow.observations.get(ticket.id)
            emitted = await self._record(ticket, clock, previous, now)
            await self._uow.commit()
            return emitted

    @staticmethod
    def _fail(
        report: SweepReport,
        ticket_id: str,
        error: Exception,
        department_id: Optional[str] = None
    ) -> None:
        report.failed_ticket_ids.append(ticket_id)
        logger.error(
            "SLA classification failed",
            extra={
                "ticket_id": ticket_id,
                "department_id": department_id,
                "error": str(error),
                "error_type": type(error).__name__
            }
        )

    async def _record(
        self,
        ticket: Ticket,
        clock: SLAClockState,
        previous: Optional[SLAObservation],
        now: datetime
    ) -> int:
        observation, events = plan_emission(ticket, clock, previous, now)
        if observation is None:
            return 0

        await self._uow.observations.upsert(observation)
        for event in events:
            await self._uow.events.add(event)

        logger.info(
            "SLA classification changed",
            extra={
                "ticket_id": ticket.id,
                "department_id": ticket.department_id,
                "old_classification": previous.classification.value if previous else None,
                "classification": clock.classification.value,
                "events": [e.event_type.value for e in events]
            }
        )
        return len(events)


class SLAEventDispatcher:
    """
    Delivers pending outbox events in emission order.

    The whole dispatch is bounded by `deadline_seconds`; events not
    attempted in time, or whose delivery failed, stay pending for the
    next run. After a failure, later events of the same ticket are held
    back so a ticket's events are never delivered out of order.
    """

    def __init__(
        self,
        uow: IUnitOfWork,
        channel: INotificationChannel,
        deadline_seconds: float,
        batch_size: int = 200
    ):
        self._uow = uow
        self._channel = channel
        self._deadline_seconds = deadline_seconds
        self._batch_size = batch_size

    async def dispatch(self) -> DispatchReport:
        report = DispatchReport()
        events = await self._uow.events.list_pending(self._batch_size)
        if not events:
            return report

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._deadline_seconds
        held_tickets = set()

        for event in events:
            remaining = deadline - loop.time()
            if remaining <= 0 or event.ticket_id in held_tickets:
                report.deferred += 1
                continue

            try:
                await asyncio.wait_for(self._channel.deliver(event), timeout=remaining)
            except (asyncio.TimeoutError, ExternalServiceException) as e:
                error = str(e) or "delivery timed out"
                await self._uow.events.record_failure(event.id, error)
                held_tickets.add(event.ticket_id)
                report.failed += 1
                logger.warning(
                    "SLA event delivery failed",
                    extra={
                        "event_id": event.id,
                        "ticket_id": event.ticket_id,
                        "event_type": event.event_type.value,
                        "error": error
                    }
                )
                continue

            await self._uow.events.mark_delivered(event.id, utc_now())
            report.delivered += 1

        await self._uow.commit()

        logger.info(
            "SLA events dispatched",
            extra={
                "delivered": report.delivered,
                "failed": report.failed,
                "deferred": report.deferred
            }
        )
        return report
