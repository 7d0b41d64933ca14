"""
SLA Application Interfaces
===========================

Repository, unit-of-work and collaborator abstractions.

Application services depend on these interfaces, not on SQLAlchemy or
httpx (Dependency Inversion).
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from slaengine.config import TicketStatus
from slaengine.sla.domain import (
    ComplianceBucket, ComplianceFold, Department, SLAConfig,
    SLAEvent, SLAObservation, SLAPolicy, Ticket
)


# ========== Repository Interfaces ==========

class IDepartmentRepository(ABC):
    """Interface for department data access."""

    @abstractmethod
    async def get(self, department_id: str) -> Optional[Department]:
        """Get department by ID."""

    @abstractmethod
    async def get_by_code(self, hotel_id: str, code: str) -> Optional[Department]:
        """Get department by its code within a hotel."""

    @abstractmethod
    async def list_for_hotel(self, hotel_id: str) -> List[Department]:
        """List the departments of a hotel."""

    @abstractmethod
    async def add(self, department: Department) -> None:
        """Persist a new department."""


class IPolicyRepository(ABC):
    """Interface for SLA policy version data access."""

    @abstractmethod
    async def get_current(self, department_id: str) -> Optional[SLAPolicy]:
        """Get the version with valid_to = None, if any."""

    @abstractmethod
    async def get_by_id(self, policy_id: str) -> Optional[SLAPolicy]:
        """Get a policy version by ID."""

    @abstractmethod
    async def get_many(self, policy_ids: Iterable[str]) -> Dict[str, SLAPolicy]:
        """Get policy versions keyed by ID."""

    @abstractmethod
    async def list_history(self, department_id: str) -> List[SLAPolicy]:
        """All versions of a department's policy, newest first."""

    @abstractmethod
    async def replace_current(self, current: Optional[SLAPolicy], new: SLAPolicy) -> None:
        """
        Close `current` at new.valid_from and insert `new` as current.

        Raises:
            StaleWriteException: `current` is no longer the current version
        """


class ITicketRepository(ABC):
    """Interface for ticket data access."""

    @abstractmethod
    async def get(self, ticket_id: str, for_update: bool = False) -> Optional[Ticket]:
        """Get ticket by ID, optionally locking its row."""

    @abstractmethod
    async def add(self, ticket: Ticket) -> None:
        """Persist a new ticket."""

    @abstractmethod
    async def save(self, ticket: Ticket) -> None:
        """Write back lifecycle and SLA fields of a loaded ticket."""

    @abstractmethod
    async def list_open(self, department_id: Optional[str] = None) -> List[Ticket]:
        """List tickets in a non-terminal status."""

    @abstractmethod
    async def list_open_ids(self) -> List[str]:
        """IDs of tickets in a non-terminal status, oldest first."""

    @abstractmethod
    async def list_by_status(self, department_id: str, status: TicketStatus) -> List[Ticket]:
        """List a department's tickets in one status."""

    @abstractmethod
    async def list_exceptions(
        self,
        department_id: str,
        since: datetime,
        category: Optional[str] = None
    ) -> List[Ticket]:
        """List tickets granted an SLA exception since `since`."""

    @abstractmethod
    async def list_unfolded_terminal(self, limit: int = 500) -> List[str]:
        """IDs of terminal tickets without a compliance fold."""


class IObservationRepository(ABC):
    """Interface for last-seen classification data access."""

    @abstractmethod
    async def get(self, ticket_id: str) -> Optional[SLAObservation]:
        """Get the observation of a ticket."""

    @abstractmethod
    async def upsert(self, observation: SLAObservation) -> None:
        """Insert or replace the observation of a ticket."""


class IEventRepository(ABC):
    """Interface for the SLA event outbox."""

    @abstractmethod
    async def add(self, event: SLAEvent) -> None:
        """Append an event to the outbox."""

    @abstractmethod
    async def list_pending(self, limit: int = 200) -> List[SLAEvent]:
        """Undelivered events in emission order, claimed until the caller commits."""

    @abstractmethod
    async def list_for_ticket(self, ticket_id: str) -> List[SLAEvent]:
        """All events of a ticket in emission order."""

    @abstractmethod
    async def mark_delivered(self, event_id: str, delivered_at: datetime) -> None:
        """Mark event as delivered."""

    @abstractmethod
    async def record_failure(self, event_id: str, error: str) -> None:
        """Count a failed delivery attempt; the event stays pending."""


class IComplianceRepository(ABC):
    """Interface for compliance snapshot data access."""

    @abstractmethod
    async def fold(self, fold: ComplianceFold) -> bool:
        """
        Count a terminal ticket into its daily bucket.

        Returns:
            False when the ticket was already folded (nothing changes)
        """

    @abstractmethod
    async def is_folded(self, ticket_id: str) -> bool:
        """Check if a ticket has been folded."""

    @abstractmethod
    async def list_buckets(
        self,
        department_ids: Iterable[str],
        start: date,
        end: date
    ) -> List[ComplianceBucket]:
        """Buckets for the departments between start and end (inclusive)."""


class IUnitOfWork(ABC):
    """One transaction spanning all repositories."""

    departments: IDepartmentRepository
    policies: IPolicyRepository
    tickets: ITicketRepository
    observations: IObservationRepository
    events: IEventRepository
    compliance: IComplianceRepository

    @abstractmethod
    async def commit(self) -> None:
        """Commit the transaction."""

    @abstractmethod
    async def rollback(self) -> None:
        """Roll back the transaction."""


# ========== Collaborator Interfaces ==========

class ISLAConfigProvider(ABC):
    """Interface for SLA configuration access."""

    @abstractmethod
    def get_config(self) -> SLAConfig:
        """Get current SLA configuration."""


class INotificationChannel(ABC):
    """Interface for delivering SLA events to the paging collaborator."""

    @abstractmethod
    async def deliver(self, event: SLAEvent) -> None:
        """
        Deliver one event.

        Raises:
            ExternalServiceException: delivery failed
        """

    async def close(self) -> None:
        """Release transport resources."""
