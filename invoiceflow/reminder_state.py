"""Reminder lifecycle helpers.

Pure functions deriving where an invoice is in its reminder sequence,
and deciding what a due-date change does to that sequence.

Due-date change rules:
  - date unchanged                    -> nothing to do
  - date changed, no explicit choice  -> refuse (caller must ask the user)
  - "restart reminders"               -> regenerate, clear completed/paused
  - "update date only" on an overdue
    or exhausted invoice              -> pause reminders, no regeneration
  - "update date only" otherwise      -> keep the current state
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from .models import FollowUp, FollowUpStatus, Invoice, InvoiceStatus


PAUSED_NO_RESTART = "user_updated_date_no_restart"

RESTART_REQUIRED_ERROR = (
    "Due date cannot be changed without choosing whether to restart reminders."
)
RESTART_PENDING_ONLY_ERROR = "Reminders can only be restarted for pending invoices."


class ReminderState(Enum):
    NOT_STARTED = "NOT_STARTED"     # no reminders sent yet
    IN_PROGRESS = "IN_PROGRESS"     # some sent, more scheduled
    COMPLETED = "COMPLETED"         # all sent, invoice still unpaid
    STOPPED = "STOPPED"             # invoice paid


REMINDER_STATE_LABELS: dict[ReminderState, tuple[str, str]] = {
    ReminderState.NOT_STARTED: ("Reminders Pending", "No reminders sent yet"),
    ReminderState.IN_PROGRESS: ("Reminders Active", "Sending scheduled reminders"),
    ReminderState.COMPLETED: (
        "Reminders Completed",
        "All scheduled reminders sent - manual action needed",
    ),
    ReminderState.STOPPED: ("Paid", "Invoice paid - reminders stopped"),
}


def _sent_count(follow_ups: Iterable[FollowUp]) -> int:
    return sum(
        1 for f in follow_ups
        if f.status is FollowUpStatus.SENT or f.sent_at is not None
    )


def get_reminder_state(invoice: Invoice, follow_ups: Iterable[FollowUp] = ()) -> ReminderState:
    """Where the invoice is in its reminder sequence."""
    if invoice.status is InvoiceStatus.PAID:
        return ReminderState.STOPPED

    if invoice.reminders_completed:
        return ReminderState.COMPLETED

    sent = _sent_count(follow_ups)
    if sent == 0 and invoice.last_reminder_sent_at is None:
        return ReminderState.NOT_STARTED

    if invoice.total_scheduled_reminders and sent >= invoice.total_scheduled_reminders:
        return ReminderState.COMPLETED

    return ReminderState.IN_PROGRESS


def is_reminder_exhausted(invoice: Invoice, follow_ups: Iterable[FollowUp] = ()) -> bool:
    return get_reminder_state(invoice, follow_ups) is ReminderState.COMPLETED


def reminder_status_message(
    invoice: Invoice,
    follow_ups: Iterable[FollowUp] = (),
) -> str | None:
    """One-line explanation of the reminder state for the invoice page."""
    follow_ups = list(follow_ups)
    state = get_reminder_state(invoice, follow_ups)

    if state is ReminderState.COMPLETED:
        return (
            "All scheduled reminder emails have been sent. No more emails "
            "will be sent unless you change the schedule or take manual action."
        )
    if state is ReminderState.NOT_STARTED:
        if invoice.status in (InvoiceStatus.PENDING, InvoiceStatus.OVERDUE):
            return "Reminders will be sent based on your schedule."
        return None
    if state is ReminderState.IN_PROGRESS:
        sent = sum(1 for f in follow_ups if f.status is FollowUpStatus.SENT)
        total = invoice.total_scheduled_reminders
        if total:
            return f"{sent} of {total} scheduled reminders sent."
        return "Reminders are being sent according to schedule."
    return None


@dataclass
class RestartDecision:
    """Outcome of a due-date change for the reminder sequence.

    ``update_fields`` are invoice columns to write alongside the new date.
    ``error`` is set when the change must be refused.
    """

    should_regenerate: bool = False
    update_fields: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


def compute_reminder_restart(
    restart_reminders: bool | None,
    due_date_changed: bool,
    is_overdue: bool,
    reminders_completed: bool,
    now: datetime | None = None,
) -> RestartDecision:
    """Decide what a due-date change does to the invoice's reminders.

    Args:
        restart_reminders: The caller's explicit choice; None if not asked.
        due_date_changed: Whether the due date actually differs.
        is_overdue: PENDING and the old due date is already past.
        reminders_completed: Every scheduled reminder was already sent.
        now: Timestamp for ``reminders_reset_at`` (defaults to UTC now).
    """
    if not due_date_changed:
        return RestartDecision()

    if restart_reminders is None:
        return RestartDecision(error=RESTART_REQUIRED_ERROR)

    if restart_reminders:
        return RestartDecision(
            should_regenerate=True,
            update_fields={
                "reminders_enabled": True,
                "reminders_reset_at": now or datetime.now(timezone.utc),
                "reminders_completed": False,
                "reminders_paused_reason": None,
            },
        )

    if is_overdue or reminders_completed:
        return RestartDecision(
            update_fields={
                "reminders_enabled": False,
                "reminders_paused_reason": PAUSED_NO_RESTART,
            },
        )

    return RestartDecision()
