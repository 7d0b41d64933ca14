"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations

Each write operation commits its own unit of work while holding the
relevant lock (department for policies, ticket for transitions).
"""

from datetime import datetime
from typing import List, Optional, Tuple
from uuid import uuid4

from slaengine.config import TicketStatus
from slaengine.core import (
    InvalidTransitionException, ResourceNotFoundException,
    StaleWriteException, ValidationException
)
from slaengine.shared.infrastructure.locks import KeyedLock
from slaengine.shared.infrastructure.logging import get_logger
from slaengine.shared.time import ensure_utc, utc_now
from slaengine.sla.application.compliance import ComplianceAggregator
from slaengine.sla.application.evaluation import EscalationEvaluator
from slaengine.sla.application.interfaces import ISLAConfigProvider, IUnitOfWork
from slaengine.sla.domain import (
    Department, PolicyTerms, SLAClockState, SLAPolicy, Ticket, TicketStateMachine
)

logger = get_logger(__name__)


class PolicyService:
    """
    Service for departments and their versioned SLA policies.

    Writes for one department are serialized by a process-wide keyed lock;
    the optimistic supersede in the repository catches writers in other
    processes.
    """

    def __init__(
        self,
        uow: IUnitOfWork,
        config_provider: ISLAConfigProvider,
        locks: KeyedLock,
        max_retries: int = 3
    ):
        self._uow = uow
        self._config_provider = config_provider
        self._locks = locks
        self._max_retries = max_retries

    async def register_department(
        self,
        hotel_id: str,
        code: str,
        name: str,
        terms: Optional[PolicyTerms] = None,
        department_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Tuple[Department, SLAPolicy]:
        """
        Create a department with its first policy version.

        Without explicit terms the department code's template is used.

        Raises:
            ValidationException: code already registered for the hotel
        """
        code = code.strip().upper()
        if not code:
            raise ValidationException("Department code is required")

        if await self._uow.departments.get_by_code(hotel_id, code):
            raise ValidationException(
                f"Department {code} already exists for hotel {hotel_id}",
                details={"hotel_id": hotel_id, "code": code}
            )
        if department_id and await self._uow.departments.get(department_id):
            raise ValidationException(
                f"Department {department_id} already exists",
                details={"department_id": department_id}
            )

        if terms is None:
            terms = self._config_provider.get_config().template_for(code).to_terms()

        department = Department(
            id=department_id or str(uuid4()),
            hotel_id=hotel_id,
            code=code,
            name=name,
        )
        policy = SLAPolicy.new_version(
            department_id=department.id,
            version=1,
            target_minutes=terms.target_minutes,
            warn_minutes=terms.warn_minutes,
            escalate_minutes=terms.escalate_minutes,
            start_trigger=terms.start_trigger,
            valid_from=ensure_utc(now) or utc_now(),
        )

        async with self._locks.acquire(department.id):
            try:
                await self._uow.departments.add(department)
                await self._uow.policies.replace_current(None, policy)
                await self._uow.commit()
            except Exception:
                await self._uow.rollback()
                raise

        logger.info(
            "Department registered",
            extra={
                "department_id": department.id,
                "hotel_id": hotel_id,
                "code": code,
                "policy_id": policy.id
            }
        )
        return department, policy

    async def _require_department(self, department_id: str) -> Department:
        department = await self._uow.departments.get(department_id)
        if department is None:
            raise ResourceNotFoundException("Department", department_id)
        return department

    async def get_current_policy(self, department_id: str) -> SLAPolicy:
        """
        Get the department's current policy version.

        Reads never take the department lock.

        Raises:
            ResourceNotFoundException: unknown department or no policy
        """
        await self._require_department(department_id)
        policy = await self._uow.policies.get_current(department_id)
        if policy is None:
            raise ResourceNotFoundException("SLAPolicy", department_id)
        return policy

    async def policy_history(self, department_id: str) -> List[SLAPolicy]:
        """All versions of a department's policy, newest first."""
        await self._require_department(department_id)
        return await self._uow.policies.list_history(department_id)

    async def set_policy(
        self,
        department_id: str,
        terms: PolicyTerms,
        expected_current_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> SLAPolicy:
        """
        Supersede the department's current policy with a new version.

        In-flight tickets keep the version they captured at clock start.

        Args:
            expected_current_id: When given, the write only succeeds if this
                is still the current version; the caller sees StaleWrite
                instead of an automatic retry.

        Raises:
            ResourceNotFoundException: unknown department
            StaleWriteException: lost the race and retries are exhausted
        """
        await self._require_department(department_id)

        async with self._locks.acquire(department_id):
            for attempt in range(1, self._max_retries + 1):
                current = await self._uow.policies.get_current(department_id)
                if expected_current_id is not None and (
                    current is None or current.id != expected_current_id
                ):
                    raise StaleWriteException(department_id)

                valid_from = ensure_utc(now) or utc_now()
                if current is not None and valid_from < current.valid_from:
                    valid_from = current.valid_from

                policy = SLAPolicy.new_version(
                    department_id=department_id,
                    version=current.version + 1 if current else 1,
                    target_minutes=terms.target_minutes,
                    warn_minutes=terms.warn_minutes,
                    escalate_minutes=terms.escalate_minutes,
                    start_trigger=terms.start_trigger,
                    valid_from=valid_from,
                )

                try:
                    await self._uow.policies.replace_current(current, policy)
                    await self._uow.commit()
                except StaleWriteException:
                    await self._uow.rollback()
                    if expected_current_id is not None:
                        raise
                    logger.warning(
                        "Policy write lost a race, retrying",
                        extra={"department_id": department_id, "attempt": attempt}
                    )
                    continue

                logger.info(
                    "SLA policy updated",
                    extra={
                        "department_id": department_id,
                        "policy_id": policy.id,
                        "version": policy.version,
                        "superseded_policy_id": current.id if current else None
                    }
                )
                return policy

        raise StaleWriteException(department_id)


class LifecycleService:
    """
    Service applying ticket lifecycle events.

    A transition, the clock-start capture, the resulting evaluation and,
    for terminal transitions, the compliance fold commit together.
    Transitions for one ticket are serialized; different tickets never
    wait on each other.
    """

    def __init__(
        self,
        uow: IUnitOfWork,
        config_provider: ISLAConfigProvider,
        locks: KeyedLock,
        evaluator: EscalationEvaluator,
        aggregator: ComplianceAggregator
    ):
        self._uow = uow
        self._config_provider = config_provider
        self._locks = locks
        self._evaluator = evaluator
        self._aggregator = aggregator

    async def register_ticket(
        self,
        ticket_id: str,
        department_id: str,
        service_key: str,
        created_at: Optional[datetime] = None,
        display_id: Optional[str] = None,
        title: Optional[str] = None,
        assignee: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Tuple[Ticket, SLAClockState]:
        """
        Accept a ticket-created event. Idempotent on ticket_id.

        Raises:
            ResourceNotFoundException: unknown department
        """
        created_at = ensure_utc(created_at) or utc_now()

        async with self._locks.acquire(ticket_id):
            existing = await self._uow.tickets.get(ticket_id)
            if existing is not None:
                clock = await self._evaluator.evaluate_ticket(existing, now)
                await self._uow.commit()
                return existing, clock

            if await self._uow.departments.get(department_id) is None:
                raise ResourceNotFoundException("Department", department_id)

            ticket = Ticket(
                id=ticket_id,
                department_id=department_id,
                service_key=service_key,
                status=TicketStatus.CREATED,
                created_at=created_at,
                updated_at=created_at,
                display_id=display_id,
                title=title,
                assignee=assignee,
            )
            await self._maybe_start_clock(ticket, created_at)

            try:
                await self._uow.tickets.add(ticket)
                clock = await self._evaluator.evaluate_ticket(ticket, now)
                await self._uow.commit()
            except Exception:
                await self._uow.rollback()
                raise

        logger.info(
            "Ticket registered",
            extra={
                "ticket_id": ticket.id,
                "department_id": department_id,
                "clock_started": ticket.clock_started,
                "classification": clock.classification.value
            }
        )
        return ticket, clock

    async def transition(
        self,
        ticket_id: str,
        to_status: TicketStatus,
        at: Optional[datetime] = None,
        block_reason: Optional[str] = None,
        assignee: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Tuple[Ticket, SLAClockState]:
        """
        Apply one lifecycle transition.

        Raises:
            ResourceNotFoundException: unknown ticket
            InvalidTransitionException: transition not allowed; ticket unchanged
            ValidationException: missing or unknown block reason, or out-of-order timestamp
        """
        at = ensure_utc(at) or utc_now()

        if to_status == TicketStatus.BLOCKED and block_reason and block_reason.strip():
            block_reason = block_reason.strip()
            reason = self._config_provider.get_config().get_block_reason(block_reason)
            if reason is None or not reason.is_active:
                raise ValidationException(
                    f"Invalid block reason: {block_reason}",
                    details={"ticket_id": ticket_id, "block_reason": block_reason}
                )

        async with self._locks.acquire(ticket_id):
            ticket = await self._uow.tickets.get(ticket_id, for_update=True)
            if ticket is None:
                raise ResourceNotFoundException("Ticket", ticket_id)

            from_status = ticket.status
            try:
                TicketStateMachine.transition(
                    ticket, to_status, at, block_reason=block_reason, assignee=assignee
                )
                await self._maybe_start_clock(ticket, at)
                await self._uow.tickets.save(ticket)

                clock = await self._evaluator.evaluate_ticket(ticket, now)
                if ticket.is_terminal:
                    await self._aggregator.fold_ticket(ticket, now)

                await self._uow.commit()
            except Exception:
                await self._uow.rollback()
                raise

        logger.info(
            "Ticket transitioned",
            extra={
                "ticket_id": ticket_id,
                "department_id": ticket.department_id,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "classification": clock.classification.value
            }
        )
        return ticket, clock

    async def grant_exception(
        self,
        ticket_id: str,
        reason_code: str,
        at: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> Tuple[Ticket, SLAClockState]:
        """
        Exempt an open ticket from its SLA. Granting twice is a no-op.

        Raises:
            ValidationException: unknown or inactive reason code
            ResourceNotFoundException: unknown ticket
            InvalidTransitionException: ticket already terminal
        """
        reason = self._config_provider.get_config().get_exception_reason(reason_code)
        if reason is None or not reason.is_active:
            raise ValidationException(
                f"Unknown SLA exception reason: {reason_code}",
                details={"reason_code": reason_code}
            )

        at = ensure_utc(at) or utc_now()

        async with self._locks.acquire(ticket_id):
            ticket = await self._uow.tickets.get(ticket_id, for_update=True)
            if ticket is None:
                raise ResourceNotFoundException("Ticket", ticket_id)

            if ticket.is_exempted:
                clock = await self._evaluator.evaluate_ticket(ticket, now)
                await self._uow.commit()
                return ticket, clock
            if ticket.is_terminal:
                raise InvalidTransitionException(ticket_id, ticket.status.value, "EXEMPT")

            ticket.sla_exempted_at = at
            ticket.exception_reason_code = reason.code
            ticket.exception_category = reason.category

            try:
                await self._uow.tickets.save(ticket)
                clock = await self._evaluator.evaluate_ticket(ticket, now)
                await self._uow.commit()
            except Exception:
                await self._uow.rollback()
                raise

        logger.info(
            "SLA exception granted",
            extra={
                "ticket_id": ticket_id,
                "department_id": ticket.department_id,
                "reason_code": reason.code,
                "category": reason.category
            }
        )
        return ticket, clock

    async def _maybe_start_clock(self, ticket: Ticket, at: datetime) -> None:
        if ticket.clock_started or not ticket.is_open:
            return
        policy = await self._uow.policies.get_current(ticket.department_id)
        if TicketStateMachine.should_start_clock(ticket, policy):
            TicketStateMachine.start_clock(ticket, policy, at)
            logger.info(
                "SLA clock started",
                extra={
                    "ticket_id": ticket.id,
                    "department_id": ticket.department_id,
                    "policy_id": policy.id,
                    "policy_version": policy.version
                }
            )
