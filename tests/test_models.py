"""Tests for invoiceflow.models -- entity dataclasses and guard decisions."""

from datetime import date
from decimal import Decimal

import pytest

from invoiceflow.models import (
    FollowUp,
    FollowUpStatus,
    GuardDecision,
    InactiveScheduleError,
    Invoice,
    InvoiceNotFoundError,
    InvoiceStatus,
    Schedule,
    ScheduleNotFoundError,
    ScheduleStep,
)


# ============================================================================
# Invoice
# ============================================================================

class TestInvoice:

    def _invoice(self, **overrides) -> Invoice:
        fields = dict(
            id="inv-1", user_id="u-1", invoice_number="INV-1",
            client_name="Acme", amount=Decimal("10"), due_date=date(2025, 6, 1),
        )
        fields.update(overrides)
        return Invoice(**fields)

    def test_defaults(self):
        inv = self._invoice()
        assert inv.status is InvoiceStatus.PENDING
        assert inv.currency == "USD"
        assert inv.reminders_enabled is True
        assert inv.reminders_completed is False

    @pytest.mark.parametrize("status,terminal", [
        (InvoiceStatus.PENDING, False),
        (InvoiceStatus.OVERDUE, False),
        (InvoiceStatus.PAID, True),
        (InvoiceStatus.CANCELLED, True),
    ])
    def test_is_terminal(self, status, terminal):
        assert self._invoice(status=status).is_terminal is terminal

    def test_is_past_due_only_for_pending(self):
        today = date(2025, 6, 10)
        assert self._invoice().is_past_due(today) is True
        assert self._invoice(status=InvoiceStatus.PAID).is_past_due(today) is False
        assert self._invoice(status=InvoiceStatus.OVERDUE).is_past_due(today) is False

    def test_not_past_due_on_due_date(self):
        assert self._invoice().is_past_due(date(2025, 6, 1)) is False


# ============================================================================
# Schedules and follow-ups
# ============================================================================

class TestSchedule:

    def test_has_steps(self):
        schedule = Schedule(id="s-1", user_id="u-1", name="Empty")
        assert schedule.has_steps is False
        schedule.steps.append(
            ScheduleStep(id="st-1", schedule_id="s-1", day_offset=0, order=1, template_id="t-1")
        )
        assert schedule.has_steps is True

    def test_steps_not_shared_between_instances(self):
        a = Schedule(id="a", user_id="u", name="A")
        b = Schedule(id="b", user_id="u", name="B")
        a.steps.append(None)
        assert b.steps == []


class TestFollowUp:

    def test_is_pending(self):
        f = FollowUp(
            id="f-1", invoice_id="inv-1", template_id="t-1",
            scheduled_date=date(2025, 6, 1), subject="s", body="b",
        )
        assert f.is_pending
        f.status = FollowUpStatus.SENT
        assert not f.is_pending


# ============================================================================
# GuardDecision and errors
# ============================================================================

class TestGuardDecision:

    def test_allow_is_truthy(self):
        decision = GuardDecision(True)
        assert decision
        assert decision.to_dict() == {"allowed": True}

    def test_deny_carries_reason(self):
        decision = GuardDecision(False, "nope")
        assert not decision
        assert decision.to_dict() == {"allowed": False, "reason": "nope"}


class TestErrors:

    def test_error_hierarchy(self):
        assert issubclass(ScheduleNotFoundError, LookupError)
        assert issubclass(InvoiceNotFoundError, LookupError)
        assert issubclass(InactiveScheduleError, ValueError)
