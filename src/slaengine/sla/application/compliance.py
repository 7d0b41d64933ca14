"""
Compliance Aggregation
=======================

Folds terminal tickets into daily per-department buckets and answers
trend and impact questions from those buckets.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional

from slaengine.shared.infrastructure.logging import get_logger
from slaengine.shared.time import trailing_days, utc_now
from slaengine.sla.application.interfaces import IUnitOfWork
from slaengine.sla.domain import ComplianceBucket, ComplianceRules, Ticket

logger = get_logger(__name__)


@dataclass
class DepartmentImpact:
    """One department's share of the compliance loss in a window."""
    department_id: str
    code: str
    name: str
    completed_within_sla: int
    breached_count: int
    sla_exempted: int
    impact_percent: float


@dataclass
class ImpactBreakdown:
    """Compliance loss attributed to departments over a window."""
    hotel_id: str
    start_date: date
    end_date: date
    total_counted: int
    compliance_percent: Optional[float]
    departments: List[DepartmentImpact] = field(default_factory=list)


class ComplianceAggregator:
    """
    Service for compliance snapshots.

    `fold_ticket` runs inside the caller's transaction; it is safe to call
    again for an already folded ticket.
    """

    def __init__(self, uow: IUnitOfWork, tz_name: str):
        self._uow = uow
        self._tz_name = tz_name

    async def fold_ticket(self, ticket: Ticket, now: Optional[datetime] = None) -> bool:
        """
        Count a terminal ticket into its completion-day bucket.

        Returns:
            False when the ticket had already been folded
        """
        policy = None
        if ticket.sla_policy_id:
            policy = await self._uow.policies.get_by_id(ticket.sla_policy_id)

        fold = ComplianceRules.fold_for(ticket, policy, now or utc_now(), self._tz_name)
        folded = await self._uow.compliance.fold(fold)

        logger.info(
            "Compliance fold" if folded else "Compliance fold skipped, already counted",
            extra={
                "ticket_id": ticket.id,
                "department_id": ticket.department_id,
                "bucket_date": fold.bucket_date.isoformat(),
                "outcome": fold.outcome.value
            }
        )
        return folded

    async def trend(
        self,
        hotel_id: str,
        days: int,
        now: Optional[datetime] = None
    ) -> List[ComplianceBucket]:
        """Hotel-wide counts per day for the last `days` days, oldest first, zero-filled."""
        window = trailing_days(now or utc_now(), days, self._tz_name)
        departments = await self._uow.departments.list_for_hotel(hotel_id)
        buckets = await self._uow.compliance.list_buckets(
            [d.id for d in departments], window[0], window[-1]
        )
        return ComplianceRules.merge_by_date(buckets, window)

    async def impact(
        self,
        hotel_id: str,
        days: int,
        now: Optional[datetime] = None
    ) -> ImpactBreakdown:
        """
        Attribute the window's compliance loss to departments.

        impact_percent = department breaches / hotel SLA-counted tickets, so
        compliance_percent plus all impacts is 100.
        """
        window = trailing_days(now or utc_now(), days, self._tz_name)
        departments = await self._uow.departments.list_for_hotel(hotel_id)
        buckets = await self._uow.compliance.list_buckets(
            [d.id for d in departments], window[0], window[-1]
        )

        totals = {d.id: ComplianceBucket(department_id=d.id, bucket_date=window[-1]) for d in departments}
        for bucket in buckets:
            totals[bucket.department_id].add(bucket)

        hotel_total = ComplianceBucket(department_id="*", bucket_date=window[-1])
        for bucket in totals.values():
            hotel_total.add(bucket)

        rows = [
            DepartmentImpact(
                department_id=d.id,
                code=d.code,
                name=d.name,
                completed_within_sla=totals[d.id].completed_within_sla,
                breached_count=totals[d.id].breached_sla,
                sla_exempted=totals[d.id].sla_exempted,
                impact_percent=ComplianceRules.impact_percent(
                    totals[d.id].breached_sla, hotel_total.counted
                ),
            )
            for d in departments
        ]
        rows.sort(key=lambda row: (-row.impact_percent, row.code))

        return ImpactBreakdown(
            hotel_id=hotel_id,
            start_date=window[0],
            end_date=window[-1],
            total_counted=hotel_total.counted,
            compliance_percent=hotel_total.compliance_percent,
            departments=rows,
        )
