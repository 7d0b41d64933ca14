"""Tests for the pure SLA clock and classification rules."""

from datetime import timedelta

import pytest

from slaengine.config import SLAClassification, StartTrigger, TicketStatus
from slaengine.sla.domain import BlockInterval, SLAClock, SLAPolicy, Ticket

from tests.conftest import T0, at


def make_policy(target=30, warn=10, escalate=15) -> SLAPolicy:
    return SLAPolicy.new_version(
        department_id="hk",
        version=1,
        target_minutes=target,
        warn_minutes=warn,
        escalate_minutes=escalate,
        start_trigger=StartTrigger.ON_ASSIGN,
        valid_from=T0 - timedelta(days=1),
    )


def make_ticket(policy: SLAPolicy, status=TicketStatus.ASSIGNED, **kwargs) -> Ticket:
    defaults = dict(
        id="HK-1042",
        department_id="hk",
        service_key="EXTRA_TOWELS",
        status=status,
        created_at=T0,
        updated_at=T0,
        assigned_at=T0,
        clock_started_at=T0,
        sla_policy_id=policy.id,
    )
    defaults.update(kwargs)
    return Ticket(**defaults)


class TestClassification:
    """Classification of a running clock."""

    def test_on_track_before_warning_window(self):
        policy = make_policy()
        clock = SLAClock.compute_clock(make_ticket(policy), policy, at(5))

        assert clock.classification == SLAClassification.ON_TRACK
        assert clock.deadline_at == at(30)
        assert clock.warn_at == at(20)
        assert clock.escalate_at == at(45)
        assert clock.elapsed_seconds == 300
        assert clock.remaining_seconds == 1500

    def test_at_risk_inside_warning_window(self):
        policy = make_policy()
        clock = SLAClock.compute_clock(make_ticket(policy), policy, at(25))

        assert clock.classification == SLAClassification.AT_RISK
        assert clock.remaining_seconds == 300

    def test_breached_after_deadline(self):
        policy = make_policy()
        clock = SLAClock.compute_clock(make_ticket(policy), policy, at(35))

        assert clock.classification == SLAClassification.BREACHED
        assert clock.is_breached
        assert clock.remaining_seconds == 0

    def test_escalated_after_escalation_window(self):
        policy = make_policy()
        clock = SLAClock.compute_clock(make_ticket(policy), policy, at(46))

        assert clock.classification == SLAClassification.ESCALATED
        assert clock.is_breached

    @pytest.mark.parametrize("minutes,expected", [
        (20, SLAClassification.AT_RISK),
        (30, SLAClassification.AT_RISK),
        (45, SLAClassification.BREACHED),
    ])
    def test_boundaries(self, minutes, expected):
        """Warning starts at warn_at; breach and escalation need strictly later instants."""
        policy = make_policy()
        clock = SLAClock.compute_clock(make_ticket(policy), policy, at(minutes))
        assert clock.classification == expected

    def test_zero_warn_window_goes_straight_to_breach(self):
        policy = make_policy(warn=0)
        ticket = make_ticket(policy)

        assert SLAClock.compute_clock(ticket, policy, at(29)).classification == SLAClassification.ON_TRACK
        assert SLAClock.compute_clock(ticket, policy, at(31)).classification == SLAClassification.BREACHED

    def test_not_started_without_clock(self):
        policy = make_policy()
        ticket = make_ticket(policy, status=TicketStatus.CREATED, assigned_at=None,
                             clock_started_at=None, sla_policy_id=None)

        clock = SLAClock.compute_clock(ticket, None, at(90))

        assert clock.classification == SLAClassification.NOT_STARTED
        assert clock.deadline_at is None


class TestPauses:
    """Blocked time pauses the clock."""

    def test_completed_block_extends_deadline(self):
        policy = make_policy()
        ticket = make_ticket(
            policy,
            status=TicketStatus.IN_PROGRESS,
            block_intervals=[BlockInterval(reason="GUEST_INSIDE", started_at=at(20), ended_at=at(40))],
        )

        clock = SLAClock.compute_clock(ticket, policy, at(45))

        # 45 minutes elapsed, 20 of them blocked: 25 effective minutes
        assert not clock.is_breached
        assert clock.classification == SLAClassification.AT_RISK
        assert clock.paused_seconds == 1200
        assert clock.elapsed_seconds == 1500
        assert clock.deadline_at == at(50)

    def test_blocked_ticket_is_always_blocked(self):
        policy = make_policy()
        ticket = make_ticket(
            policy,
            status=TicketStatus.BLOCKED,
            blocked_at=at(10),
            block_reason="WAITING_MAINTENANCE",
            block_intervals=[BlockInterval(reason="WAITING_MAINTENANCE", started_at=at(10))],
        )

        for minutes in (11, 35, 500):
            clock = SLAClock.compute_clock(ticket, policy, at(minutes))
            assert clock.classification == SLAClassification.BLOCKED
            assert clock.deadline_at is None
            assert clock.blocked_seconds == (minutes - 10) * 60

    def test_pauses_only_push_the_deadline_later(self):
        policy = make_policy()
        unpaused = make_ticket(policy, status=TicketStatus.IN_PROGRESS)
        paused = make_ticket(
            policy,
            status=TicketStatus.IN_PROGRESS,
            block_intervals=[
                BlockInterval(reason="ROOM_LOCKED", started_at=at(2), ended_at=at(4)),
                BlockInterval(reason="GUEST_INSIDE", started_at=at(6), ended_at=at(16)),
            ],
        )

        base = SLAClock.compute_clock(unpaused, policy, at(20))
        shifted = SLAClock.compute_clock(paused, policy, at(20))

        assert shifted.deadline_at - base.deadline_at == timedelta(minutes=12)
        assert shifted.deadline_at > base.deadline_at


class TestTerminalAndExempt:
    def test_completed_ticket_is_evaluated_at_completion(self):
        policy = make_policy()
        ticket = make_ticket(policy, status=TicketStatus.COMPLETED, completed_at=at(20))

        early = SLAClock.compute_clock(ticket, policy, at(25))
        late = SLAClock.compute_clock(ticket, policy, at(500))

        assert early.classification == SLAClassification.ON_TRACK
        assert late == early

    def test_cancelled_and_exempted_are_exempt(self):
        policy = make_policy()
        cancelled = make_ticket(policy, status=TicketStatus.CANCELLED, cancelled_at=at(5))
        exempted = make_ticket(policy, sla_exempted_at=at(5), exception_reason_code="VENDOR_DELAY")

        assert SLAClock.compute_clock(cancelled, policy, at(90)).classification == SLAClassification.EXEMPT
        assert SLAClock.compute_clock(exempted, policy, at(90)).classification == SLAClassification.EXEMPT

    def test_mismatched_policy_is_rejected(self):
        policy = make_policy()
        other = make_policy(target=60)

        with pytest.raises(ValueError):
            SLAClock.compute_clock(make_ticket(policy), other, at(5))
        with pytest.raises(ValueError):
            SLAClock.compute_clock(make_ticket(policy), None, at(5))
