"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for the SLA module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON, Boolean, Date, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from slaengine.config import (
    ComplianceOutcome, SLAClassification, SLAEventType, StartTrigger, TicketStatus
)
from slaengine.infrastructure.database import Base, UTCDateTime
from slaengine.shared.time import utc_now


class DepartmentModel(Base):
    """
    Database model for Department entity.

    Maps to the 'departments' table.
    """
    __tablename__ = "departments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("hotel_id", "code", name="uq_departments_hotel_code"),
    )


class SLAPolicyModel(Base):
    """
    Database model for one SLA policy version.

    Maps to the 'sla_policies' table. The partial unique index allows at
    most one row per department with valid_to IS NULL.
    """
    __tablename__ = "sla_policies"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    department_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("departments.id"), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    target_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    warn_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalate_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_trigger: Mapped[StartTrigger] = mapped_column(String(32), nullable=False)
    valid_from: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    valid_to: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("department_id", "version", name="uq_sla_policies_department_version"),
        Index(
            "uq_sla_policies_one_current",
            "department_id",
            unique=True,
            postgresql_where=text("valid_to IS NULL"),
            sqlite_where=text("valid_to IS NULL"),
        ),
    )


class TicketModel(Base):
    """
    Database model for Ticket entity.

    Maps to the 'tickets' table.
    """
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    department_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("departments.id"), nullable=False, index=True
    )
    service_key: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[TicketStatus] = mapped_column(String(32), nullable=False, index=True)

    display_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    assignee: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Lifecycle timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    blocked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    block_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # SLA tracking
    clock_started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    sla_policy_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("sla_policies.id"), nullable=True
    )

    # SLA exception
    sla_exempted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    exception_reason_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    exception_category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    block_intervals: Mapped[List["BlockIntervalModel"]] = relationship(
        back_populates="ticket",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="BlockIntervalModel.position",
    )


class BlockIntervalModel(Base):
    """
    Database model for one pause of a ticket's SLA clock.

    Maps to the 'ticket_block_intervals' table.
    """
    __tablename__ = "ticket_block_intervals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    ticket: Mapped[TicketModel] = relationship(back_populates="block_intervals")


class SLAObservationModel(Base):
    """
    Last classification reported per ticket.

    Maps to the 'ticket_sla_observations' table.
    """
    __tablename__ = "ticket_sla_observations"

    ticket_id: Mapped[str] = mapped_column(String(64), ForeignKey("tickets.id"), primary_key=True)
    department_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    classification: Mapped[SLAClassification] = mapped_column(String(32), nullable=False)
    observed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    breached_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    escalated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class SLAEventModel(Base):
    """
    Outbox of SLA events awaiting delivery.

    Maps to the 'sla_events' table.
    """
    __tablename__ = "sla_events"

    # Insertion order is delivery order
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    ticket_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    department_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[SLAEventType] = mapped_column(String(32), nullable=False)
    old_classification: Mapped[Optional[SLAClassification]] = mapped_column(String(32), nullable=True)
    new_classification: Mapped[SLAClassification] = mapped_column(String(32), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Delivery tracking
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ComplianceFoldModel(Base):
    """
    One row per terminal ticket counted into compliance.

    Maps to the 'compliance_folds' table; the primary key makes folding idempotent.
    """
    __tablename__ = "compliance_folds"

    ticket_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    department_id: Mapped[str] = mapped_column(String(64), nullable=False)
    bucket_date: Mapped[date] = mapped_column(Date, nullable=False)
    outcome: Mapped[ComplianceOutcome] = mapped_column(String(32), nullable=False)
    folded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class ComplianceSnapshotModel(Base):
    """
    Daily compliance counts per department.

    Maps to the 'compliance_snapshots' table.
    """
    __tablename__ = "compliance_snapshots"

    department_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    bucket_date: Mapped[date] = mapped_column(Date, primary_key=True)
    completed_within_sla: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    breached_sla: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sla_exempted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
