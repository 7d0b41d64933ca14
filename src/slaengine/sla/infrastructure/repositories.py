"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. Repositories hand out domain entities, never
ORM models.
"""

from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from slaengine.config import (
    OPEN_STATUSES, TERMINAL_STATUSES,
    ComplianceOutcome, SLAClassification, SLAEventType, StartTrigger, TicketStatus
)
from slaengine.core import RepositoryException, StaleWriteException
from slaengine.sla.application.interfaces import (
    IComplianceRepository, IDepartmentRepository, IEventRepository,
    IObservationRepository, IPolicyRepository, ITicketRepository, IUnitOfWork
)
from slaengine.sla.domain import (
    BlockInterval, ComplianceBucket, ComplianceFold, Department,
    SLAEvent, SLAObservation, SLAPolicy, Ticket
)
from slaengine.sla.infrastructure.models import (
    BlockIntervalModel, ComplianceFoldModel, ComplianceSnapshotModel,
    DepartmentModel, SLAEventModel, SLAObservationModel, SLAPolicyModel, TicketModel
)


# ========== Model <-> entity mapping ==========

def _to_department(model: DepartmentModel) -> Department:
    return Department(
        id=model.id,
        hotel_id=model.hotel_id,
        code=model.code,
        name=model.name,
        is_active=model.is_active,
    )


def _to_policy(model: SLAPolicyModel) -> SLAPolicy:
    return SLAPolicy(
        id=model.id,
        department_id=model.department_id,
        version=model.version,
        target_minutes=model.target_minutes,
        warn_minutes=model.warn_minutes,
        escalate_minutes=model.escalate_minutes,
        start_trigger=StartTrigger(model.start_trigger),
        valid_from=model.valid_from,
        valid_to=model.valid_to,
    )


def _to_ticket(model: TicketModel) -> Ticket:
    return Ticket(
        id=model.id,
        department_id=model.department_id,
        service_key=model.service_key,
        status=TicketStatus(model.status),
        created_at=model.created_at,
        updated_at=model.updated_at,
        display_id=model.display_id,
        title=model.title,
        assignee=model.assignee,
        assigned_at=model.assigned_at,
        accepted_at=model.accepted_at,
        blocked_at=model.blocked_at,
        block_reason=model.block_reason,
        completed_at=model.completed_at,
        cancelled_at=model.cancelled_at,
        clock_started_at=model.clock_started_at,
        sla_policy_id=model.sla_policy_id,
        block_intervals=[
            BlockInterval(reason=b.reason, started_at=b.started_at, ended_at=b.ended_at)
            for b in model.block_intervals
        ],
        sla_exempted_at=model.sla_exempted_at,
        exception_reason_code=model.exception_reason_code,
        exception_category=model.exception_category,
    )


def _copy_ticket_fields(ticket: Ticket, model: TicketModel) -> None:
    model.status = ticket.status.value
    model.service_key = ticket.service_key
    model.display_id = ticket.display_id
    model.title = ticket.title
    model.assignee = ticket.assignee
    model.updated_at = ticket.updated_at
    model.assigned_at = ticket.assigned_at
    model.accepted_at = ticket.accepted_at
    model.blocked_at = ticket.blocked_at
    model.block_reason = ticket.block_reason
    model.completed_at = ticket.completed_at
    model.cancelled_at = ticket.cancelled_at
    model.clock_started_at = ticket.clock_started_at
    model.sla_policy_id = ticket.sla_policy_id
    model.sla_exempted_at = ticket.sla_exempted_at
    model.exception_reason_code = ticket.exception_reason_code
    model.exception_category = ticket.exception_category

    # Intervals are append-only; only the tail can change
    for position, interval in enumerate(ticket.block_intervals):
        if position < len(model.block_intervals):
            model.block_intervals[position].ended_at = interval.ended_at
        else:
            model.block_intervals.append(BlockIntervalModel(
                position=position,
                reason=interval.reason,
                started_at=interval.started_at,
                ended_at=interval.ended_at,
            ))


def _to_observation(model: SLAObservationModel) -> SLAObservation:
    return SLAObservation(
        ticket_id=model.ticket_id,
        department_id=model.department_id,
        classification=SLAClassification(model.classification),
        observed_at=model.observed_at,
        breached_at=model.breached_at,
        escalated_at=model.escalated_at,
    )


def _to_event(model: SLAEventModel) -> SLAEvent:
    return SLAEvent(
        id=model.id,
        ticket_id=model.ticket_id,
        department_id=model.department_id,
        event_type=SLAEventType(model.event_type),
        occurred_at=model.occurred_at,
        old_classification=(
            SLAClassification(model.old_classification) if model.old_classification else None
        ),
        new_classification=SLAClassification(model.new_classification),
        payload=model.payload or {},
        delivered_at=model.delivered_at,
        attempts=model.attempts,
        last_error=model.last_error,
    )


def _to_bucket(model: ComplianceSnapshotModel) -> ComplianceBucket:
    return ComplianceBucket(
        department_id=model.department_id,
        bucket_date=model.bucket_date,
        completed_within_sla=model.completed_within_sla,
        breached_sla=model.breached_sla,
        sla_exempted=model.sla_exempted,
    )


def _dialect_insert(session: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    name = session.bind.dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise RepositoryException(f"Upsert not supported for dialect {name}")


# ========== Repositories ==========

class SQLAlchemyDepartmentRepository(IDepartmentRepository):
    """SQLAlchemy implementation of department repository."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, department_id: str) -> Optional[Department]:
        model = await self._session.get(DepartmentModel, department_id)
        return _to_department(model) if model else None

    async def get_by_code(self, hotel_id: str, code: str) -> Optional[Department]:
        stmt = select(DepartmentModel).where(
            DepartmentModel.hotel_id == hotel_id,
            DepartmentModel.code == code,
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _to_department(model) if model else None

    async def list_for_hotel(self, hotel_id: str) -> List[Department]:
        stmt = (
            select(DepartmentModel)
            .where(DepartmentModel.hotel_id == hotel_id)
            .order_by(DepartmentModel.code)
        )
        result = await self._session.execute(stmt)
        return [_to_department(m) for m in result.scalars().all()]

    async def add(self, department: Department) -> None:
        self._session.add(DepartmentModel(
            id=department.id,
            hotel_id=department.hotel_id,
            code=department.code,
            name=department.name,
            is_active=department.is_active,
        ))
        await self._session.flush()


class SQLAlchemyPolicyRepository(IPolicyRepository):
    """
    SQLAlchemy implementation of the versioned policy store.

    Superseding is an optimistic UPDATE guarded by `valid_to IS NULL`;
    the partial unique index is the backstop against a concurrent insert.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_current(self, department_id: str) -> Optional[SLAPolicy]:
        stmt = select(SLAPolicyModel).where(
            SLAPolicyModel.department_id == department_id,
            SLAPolicyModel.valid_to.is_(None),
        ).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _to_policy(model) if model else None

    async def get_by_id(self, policy_id: str) -> Optional[SLAPolicy]:
        model = await self._session.get(SLAPolicyModel, policy_id)
        return _to_policy(model) if model else None

    async def get_many(self, policy_ids: Iterable[str]) -> Dict[str, SLAPolicy]:
        ids = {pid for pid in policy_ids if pid}
        if not ids:
            return {}
        stmt = select(SLAPolicyModel).where(SLAPolicyModel.id.in_(ids))
        result = await self._session.execute(stmt)
        return {m.id: _to_policy(m) for m in result.scalars().all()}

    async def list_history(self, department_id: str) -> List[SLAPolicy]:
        stmt = (
            select(SLAPolicyModel)
            .where(SLAPolicyModel.department_id == department_id)
            .order_by(SLAPolicyModel.version.desc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [_to_policy(m) for m in result.scalars().all()]

    async def replace_current(self, current: Optional[SLAPolicy], new: SLAPolicy) -> None:
        if current is not None:
            stmt = (
                update(SLAPolicyModel)
                .where(
                    SLAPolicyModel.id == current.id,
                    SLAPolicyModel.valid_to.is_(None),
                )
                .values(valid_to=new.valid_from)
                .execution_options(synchronize_session=False)
            )
            result = await self._session.execute(stmt)
            if result.rowcount != 1:
                raise StaleWriteException(new.department_id)

        self._session.add(SLAPolicyModel(
            id=new.id,
            department_id=new.department_id,
            version=new.version,
            target_minutes=new.target_minutes,
            warn_minutes=new.warn_minutes,
            escalate_minutes=new.escalate_minutes,
            start_trigger=new.start_trigger.value,
            valid_from=new.valid_from,
            valid_to=None,
        ))
        try:
            await self._session.flush()
        except IntegrityError as e:
            raise StaleWriteException(new.department_id) from e


class SQLAlchemyTicketRepository(ITicketRepository):
    """
    SQLAlchemy implementation of ticket repository.

    Handles persistence of Ticket entities using async SQLAlchemy.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get_model(self, ticket_id: str, for_update: bool = False) -> Optional[TicketModel]:
        stmt = select(TicketModel).where(TicketModel.id == ticket_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, ticket_id: str, for_update: bool = False) -> Optional[Ticket]:
        model = await self._get_model(ticket_id, for_update)
        return _to_ticket(model) if model else None

    async def add(self, ticket: Ticket) -> None:
        model = TicketModel(
            id=ticket.id,
            department_id=ticket.department_id,
            service_key=ticket.service_key,
            status=ticket.status.value,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
            block_intervals=[],
        )
        _copy_ticket_fields(ticket, model)
        self._session.add(model)
        await self._session.flush()

    async def save(self, ticket: Ticket) -> None:
        model = await self._get_model(ticket.id)
        if model is None:
            raise RepositoryException(f"Ticket {ticket.id} not found")
        _copy_ticket_fields(ticket, model)
        await self._session.flush()

    async def list_open(self, department_id: Optional[str] = None) -> List[Ticket]:
        stmt = select(TicketModel).where(
            TicketModel.status.in_([s.value for s in OPEN_STATUSES])
        )
        if department_id is not None:
            stmt = stmt.where(TicketModel.department_id == department_id)
        stmt = stmt.order_by(TicketModel.created_at.asc())
        result = await self._session.execute(stmt)
        return [_to_ticket(m) for m in result.scalars().all()]

    async def list_open_ids(self) -> List[str]:
        stmt = (
            select(TicketModel.id)
            .where(TicketModel.status.in_([s.value for s in OPEN_STATUSES]))
            .order_by(TicketModel.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_status(self, department_id: str, status: TicketStatus) -> List[Ticket]:
        stmt = (
            select(TicketModel)
            .where(
                TicketModel.department_id == department_id,
                TicketModel.status == status.value,
            )
            .order_by(TicketModel.updated_at.asc())
        )
        result = await self._session.execute(stmt)
        return [_to_ticket(m) for m in result.scalars().all()]

    async def list_exceptions(
        self,
        department_id: str,
        since: datetime,
        category: Optional[str] = None
    ) -> List[Ticket]:
        stmt = select(TicketModel).where(
            TicketModel.department_id == department_id,
            TicketModel.sla_exempted_at.is_not(None),
            TicketModel.sla_exempted_at >= since,
        )
        if category:
            stmt = stmt.where(TicketModel.exception_category == category)
        stmt = stmt.order_by(TicketModel.sla_exempted_at.desc())
        result = await self._session.execute(stmt)
        return [_to_ticket(m) for m in result.scalars().all()]

    async def list_unfolded_terminal(self, limit: int = 500) -> List[str]:
        folded = select(ComplianceFoldModel.ticket_id).where(
            ComplianceFoldModel.ticket_id == TicketModel.id
        )
        stmt = (
            select(TicketModel.id)
            .where(
                TicketModel.status.in_([s.value for s in TERMINAL_STATUSES]),
                ~folded.exists(),
            )
            .order_by(TicketModel.updated_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class SQLAlchemyObservationRepository(IObservationRepository):
    """SQLAlchemy implementation of observation repository."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, ticket_id: str) -> Optional[SLAObservation]:
        model = await self._session.get(SLAObservationModel, ticket_id, populate_existing=True)
        return _to_observation(model) if model else None

    async def upsert(self, observation: SLAObservation) -> None:
        model = await self._session.get(SLAObservationModel, observation.ticket_id)
        if model is None:
            model = SLAObservationModel(ticket_id=observation.ticket_id)
            self._session.add(model)
        model.department_id = observation.department_id
        model.classification = observation.classification.value
        model.observed_at = observation.observed_at
        model.breached_at = observation.breached_at
        model.escalated_at = observation.escalated_at
        await self._session.flush()


class SQLAlchemyEventRepository(IEventRepository):
    """
    SQLAlchemy implementation of the SLA event outbox.

    Handles persistence of SLAEvent entities.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def add(self, event: SLAEvent) -> None:
        self._session.add(SLAEventModel(
            id=event.id,
            ticket_id=event.ticket_id,
            department_id=event.department_id,
            event_type=event.event_type.value,
            old_classification=event.old_classification.value if event.old_classification else None,
            new_classification=event.new_classification.value,
            occurred_at=event.occurred_at,
            payload=event.payload,
            delivered_at=event.delivered_at,
            attempts=event.attempts,
            last_error=event.last_error,
        ))
        await self._session.flush()

    async def list_pending(self, limit: int = 200) -> List[SLAEvent]:
        # Rows stay locked until the dispatch commits; a concurrent dispatcher
        # skips them instead of delivering them a second time
        stmt = (
            select(SLAEventModel)
            .where(SLAEventModel.delivered_at.is_(None))
            .order_by(SLAEventModel.seq.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [_to_event(m) for m in result.scalars().all()]

    async def list_for_ticket(self, ticket_id: str) -> List[SLAEvent]:
        stmt = (
            select(SLAEventModel)
            .where(SLAEventModel.ticket_id == ticket_id)
            .order_by(SLAEventModel.seq.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [_to_event(m) for m in result.scalars().all()]

    async def _get_model(self, event_id: str) -> SLAEventModel:
        stmt = select(SLAEventModel).where(SLAEventModel.id == event_id)
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            raise RepositoryException(f"SLA event {event_id} not found")
        return model

    async def mark_delivered(self, event_id: str, delivered_at: datetime) -> None:
        model = await self._get_model(event_id)
        model.delivered_at = delivered_at
        model.attempts += 1
        model.last_error = None
        await self._session.flush()

    async def record_failure(self, event_id: str, error: str) -> None:
        model = await self._get_model(event_id)
        model.attempts += 1
        model.last_error = error[:2000]
        await self._session.flush()


class SQLAlchemyComplianceRepository(IComplianceRepository):
    """
    SQLAlchemy implementation of compliance snapshots.

    The fold row and the bucket increment are written in the caller's
    transaction; the fold row's primary key guarantees at-most-once counting.
    """

    _COLUMN_FOR_OUTCOME = {
        ComplianceOutcome.WITHIN_SLA: "completed_within_sla",
        ComplianceOutcome.BREACHED: "breached_sla",
        ComplianceOutcome.EXEMPTED: "sla_exempted",
    }

    def __init__(self, session: AsyncSession):
        self._session = session

    async def fold(self, fold: ComplianceFold) -> bool:
        insert = _dialect_insert(self._session)

        claim = (
            insert(ComplianceFoldModel)
            .values(
                ticket_id=fold.ticket_id,
                department_id=fold.department_id,
                bucket_date=fold.bucket_date,
                outcome=fold.outcome.value,
                folded_at=fold.folded_at,
            )
            .on_conflict_do_nothing(index_elements=["ticket_id"])
            .returning(ComplianceFoldModel.ticket_id)
        )
        result = await self._session.execute(claim)
        if result.scalar_one_or_none() is None:
            return False

        column_name = self._COLUMN_FOR_OUTCOME[fold.outcome]
        column = getattr(ComplianceSnapshotModel, column_name)
        counts = {name: 0 for name in self._COLUMN_FOR_OUTCOME.values()}
        counts[column_name] = 1

        increment = insert(ComplianceSnapshotModel).values(
            department_id=fold.department_id,
            bucket_date=fold.bucket_date,
            **counts,
        )
        increment = increment.on_conflict_do_update(
            index_elements=["department_id", "bucket_date"],
            set_={column_name: column + 1},
        )
        await self._session.execute(increment)
        return True

    async def is_folded(self, ticket_id: str) -> bool:
        stmt = select(ComplianceFoldModel.ticket_id).where(
            ComplianceFoldModel.ticket_id == ticket_id
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def list_buckets(
        self,
        department_ids: Iterable[str],
        start: date,
        end: date
    ) -> List[ComplianceBucket]:
        ids = list(department_ids)
        if not ids:
            return []
        stmt = (
            select(ComplianceSnapshotModel)
            .where(
                ComplianceSnapshotModel.department_id.in_(ids),
                ComplianceSnapshotModel.bucket_date >= start,
                ComplianceSnapshotModel.bucket_date <= end,
            )
            .order_by(ComplianceSnapshotModel.bucket_date.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [_to_bucket(m) for m in result.scalars().all()]


# ========== Unit of Work ==========

class SQLAlchemyUnitOfWork(IUnitOfWork):
    """All repositories bound to one AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.departments = SQLAlchemyDepartmentRepository(session)
        self.policies = SQLAlchemyPolicyRepository(session)
        self.tickets = SQLAlchemyTicketRepository(session)
        self.observations = SQLAlchemyObservationRepository(session)
        self.events = SQLAlchemyEventRepository(session)
        self.compliance = SQLAlchemyComplianceRepository(session)

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()
