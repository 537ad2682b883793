"""
InvoiceFlow -- Follow-Up Generator

Turns an invoice plus a schedule into dated, rendered reminder events.

    invoice ─┐
             ├─> resolve schedule ─> per step: due date + offset
    schedule ┘                        render subject/body
                                      ─> replace PENDING follow-ups

Schedule resolution order:
    1. explicit ``schedule_id`` argument
    2. the invoice's own schedule assignment
    3. the user's default schedule (bootstrapped if absent)
An explicit or assigned schedule that is missing, deactivated or owned by
someone else falls back to the default instead of failing.

Regeneration only deletes PENDING rows.  SENT / FAILED / SKIPPED rows are
the invoice's reminder history and are never touched.

Usage:
    from invoiceflow.followups import FollowUpGenerator

    generator = FollowUpGenerator(store)
    follow_ups = generator.generate_follow_ups(invoice_id)
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from .default_schedule import ensure_default_schedule_in
from .models import (
    FollowUp,
    FollowUpStatus,
    Invoice,
    InvoiceNotFoundError,
    InvoiceStatus,
    Schedule,
    ScheduleStep,
)
from .reminder_state import (
    RESTART_PENDING_ONLY_ERROR,
    RestartDecision,
    compute_reminder_restart,
)
from .store import FollowUpStore, StoreSession
from .template_engine import build_variables, render_template


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Date arithmetic
# ---------------------------------------------------------------------------

def add_days_utc(anchor: date | datetime, days: int) -> date:
    """Shift a calendar date by ``days`` whole days.

    Datetimes are reduced to their UTC calendar date first (naive values
    are taken as UTC), so the time of day and local DST rules never move
    the result.

    >>> add_days_utc(date(2025, 3, 8), 3)
    datetime.date(2025, 3, 11)
    """
    if isinstance(anchor, datetime):
        if anchor.tzinfo is not None:
            anchor = anchor.astimezone(timezone.utc)
        anchor = anchor.date()
    return anchor + timedelta(days=days)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class RegenerationReport:
    """Outcome of regenerating every PENDING invoice of a user."""

    user_id: str
    regenerated: list[str] = field(default_factory=list)
    follow_ups_created: int = 0
    failed: dict[str, str] = field(default_factory=dict)   # invoice id -> error

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class DueDateChange:
    """Outcome of ``change_due_date``.

    ``invoice`` is None when the change was refused (``decision.error``).
    """

    decision: RestartDecision
    invoice: Invoice | None = None
    follow_ups: list[FollowUp] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Session-level operations
# ---------------------------------------------------------------------------

def _resolve_schedule(
    session: StoreSession,
    invoice: Invoice,
    schedule_id: str | None,
) -> Schedule:
    wanted = schedule_id or invoice.schedule_id
    if wanted:
        schedule = session.get_schedule(wanted, user_id=invoice.user_id, active_only=True)
        if schedule is not None:
            return schedule
        logger.warning(
            "Schedule %s unusable for invoice %s (missing, inactive or not owned); "
            "falling back to the default schedule",
            wanted, invoice.id,
        )
    return ensure_default_schedule_in(session, invoice.user_id)


def _build_follow_up(invoice: Invoice, step: ScheduleStep) -> FollowUp:
    template = step.template
    variables = build_variables(invoice, step.day_offset)
    return FollowUp(
        id=str(uuid.uuid4()),
        invoice_id=invoice.id,
        template_id=step.template_id,
        scheduled_date=add_days_utc(invoice.due_date, step.day_offset),
        subject=render_template(template.subject, variables),
        body=render_template(template.body, variables),
        status=FollowUpStatus.PENDING,
    )


def generate_follow_ups_in(
    session: StoreSession,
    invoice_id: str,
    schedule_id: str | None = None,
) -> list[FollowUp]:
    """Replace the invoice's PENDING follow-ups inside an open transaction.

    Returns the follow-ups created; empty on every no-op path.
    """
    invoice = session.get_invoice(invoice_id)
    if invoice is None:
        logger.warning("Invoice %s not found; no follow-ups generated", invoice_id)
        return []

    if invoice.status is not InvoiceStatus.PENDING:
        logger.debug(
            "Invoice %s is %s; follow-ups are only generated for PENDING invoices",
            invoice.id, invoice.status.value,
        )
        return []

    schedule = _resolve_schedule(session, invoice, schedule_id)
    if not schedule.has_steps:
        logger.error(
            "Schedule %s has no steps; no follow-ups generated for invoice %s",
            schedule.id, invoice.id,
        )
        return []

    removed = session.delete_pending_follow_ups(invoice.id)
    follow_ups = [_build_follow_up(invoice, step) for step in schedule.steps]
    session.insert_follow_ups(follow_ups)

    logger.info(
        "Generated %d follow-up(s) for invoice %s from schedule %s (%d pending replaced)",
        len(follow_ups), invoice.id, schedule.id, removed,
    )
    return follow_ups


# ===========================================================================
# Generator
# ===========================================================================

class FollowUpGenerator:
    """Generates and regenerates follow-ups for invoices.

    Every public method runs in one store transaction per invoice.  Store
    errors propagate, except in ``regenerate_all_follow_ups`` which
    records them per invoice and carries on.
    """

    def __init__(self, store: FollowUpStore):
        self.store = store

    def generate_follow_ups(
        self,
        invoice_id: str,
        schedule_id: str | None = None,
    ) -> list[FollowUp]:
        """(Re)generate the invoice's PENDING follow-ups.

        Args:
            invoice_id: The invoice to generate for.
            schedule_id: Optional schedule overriding the invoice's own
                assignment for this run.

        Returns:
            The follow-ups created, in step order.  Empty when the invoice
            is missing or not PENDING, or the schedule has no steps.
        """
        with self.store.transaction() as session:
            return generate_follow_ups_in(session, invoice_id, schedule_id)

    def regenerate_follow_ups_for_invoice(self, invoice_id: str) -> list[FollowUp]:
        """Regenerate from the invoice's current schedule assignment."""
        with self.store.transaction() as session:
            invoice = session.get_invoice(invoice_id)
            schedule_id = invoice.schedule_id if invoice is not None else None
            return generate_follow_ups_in(session, invoice_id, schedule_id)

    def regenerate_all_follow_ups(self, user_id: str) -> RegenerationReport:
        """Regenerate every PENDING invoice of the user.

        Each invoice gets its own transaction.  A store error on one
        invoice rolls back only that invoice; it is logged, recorded in the
        report and the loop moves on.
        """
        with self.store.read() as session:
            invoice_ids = [
                inv.id for inv in session.list_invoices(user_id, status=InvoiceStatus.PENDING)
            ]

        report = RegenerationReport(user_id=user_id)
        for invoice_id in invoice_ids:
            try:
                created = self.regenerate_follow_ups_for_invoice(invoice_id)
            except sqlite3.Error as exc:
                logger.exception("Regeneration failed for invoice %s", invoice_id)
                report.failed[invoice_id] = str(exc)
                continue
            report.regenerated.append(invoice_id)
            report.follow_ups_created += len(created)

        logger.info(
            "Regenerated follow-ups for %d/%d invoice(s) of user %s",
            len(report.regenerated), len(invoice_ids), user_id,
        )
        return report

    def change_due_date(
        self,
        invoice_id: str,
        user_id: str,
        new_due_date: date,
        restart_reminders: bool | None = None,
        today: date | None = None,
    ) -> DueDateChange:
        """Move an invoice's due date, applying the reminder restart rules.

        A changed date needs an explicit ``restart_reminders`` choice;
        without one nothing is written and the returned decision carries
        the error.  Restarting regenerates the follow-ups in the same
        transaction as the date change.  Restarting an invoice that is not
        PENDING is refused the same way.

        Raises:
            InvoiceNotFoundError: Missing or owned by another user.
            ValueError: The invoice is PAID.
        """
        today = today or datetime.now(timezone.utc).date()

        with self.store.transaction() as session:
            invoice = session.get_invoice(invoice_id, user_id=user_id)
            if invoice is None:
                raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")
            if invoice.status is InvoiceStatus.PAID:
                raise ValueError("Paid invoices cannot be edited")

            decision = compute_reminder_restart(
                restart_reminders=restart_reminders,
                due_date_changed=invoice.due_date != new_due_date,
                is_overdue=(
                    invoice.status is InvoiceStatus.OVERDUE or invoice.is_past_due(today)
                ),
                reminders_completed=invoice.reminders_completed,
            )
            if decision.error:
                return DueDateChange(decision=decision)
            if decision.should_regenerate and invoice.status is not InvoiceStatus.PENDING:
                # Only PENDING invoices carry a follow-up sequence.
                return DueDateChange(decision=RestartDecision(error=RESTART_PENDING_ONLY_ERROR))

            if invoice.due_date != new_due_date:
                invoice = session.update_invoice(
                    invoice.id,
                    due_date=new_due_date,
                    reminders_base_due_date=new_due_date,
                    **decision.update_fields,
                )

            follow_ups: list[FollowUp] = []
            if decision.should_regenerate:
                follow_ups = generate_follow_ups_in(session, invoice.id, invoice.schedule_id)

            return DueDateChange(decision=decision, invoice=invoice, follow_ups=follow_ups)


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------

def generate_follow_ups(
    store: FollowUpStore,
    invoice_id: str,
    schedule_id: str | None = None,
) -> list[FollowUp]:
    return FollowUpGenerator(store).generate_follow_ups(invoice_id, schedule_id)


def regenerate_all_follow_ups(store: FollowUpStore, user_id: str) -> RegenerationReport:
    return FollowUpGenerator(store).regenerate_all_follow_ups(user_id)
