"""Data models for the InvoiceFlow follow-up engine.

All models are plain dataclasses with type hints.  No ORM, no Pydantic --
the store maps them to and from SQLite rows.

Entity overview:
  Invoice       -- a billable amount owed by a client
  Template      -- reusable email content with {variable} placeholders
  Schedule      -- a named, ordered reminder policy owned by a user
  ScheduleStep  -- one (day-offset, template) rung of a schedule
  FollowUp      -- a generated, dated reminder event for an invoice
  EmailLog      -- immutable audit record of one send attempt
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class InvoiceStatus(Enum):
    """Lifecycle status of an invoice.

    Only PENDING invoices get follow-ups (re)generated.  OVERDUE is an
    explicit, user-set status and is treated like PAID / CANCELLED here;
    "past due but still PENDING" is a display-only notion.
    """

    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class FollowUpStatus(Enum):
    """Lifecycle states for a generated follow-up.

    PENDING -> SENT
            |-> FAILED
            |-> SKIPPED

    Only PENDING rows are ever deleted by regeneration.
    """

    PENDING = "PENDING"
    SENT = "SENT"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class InvoiceNotFoundError(LookupError):
    """The invoice does not exist or is not owned by the caller."""


class ScheduleNotFoundError(LookupError):
    """The schedule does not exist or is not owned by the caller."""


class InactiveScheduleError(ValueError):
    """An inactive schedule cannot become the default."""


class DefaultTemplatesError(RuntimeError):
    """Baseline templates were missing right after being ensured."""


# ---------------------------------------------------------------------------
# Core Data Models
# ---------------------------------------------------------------------------

@dataclass
class Invoice:
    """A billable amount owed by a client.

    ``due_date`` is a calendar date with no time-of-day semantics; it is
    the UTC-midnight anchor that step day-offsets are applied to.

    ``notes`` doubles as the invoice-link slot in rendered reminders.
    """

    # --- identifiers ---
    id: str
    user_id: str
    invoice_number: str

    # --- client ---
    client_name: str
    client_email: str = ""

    # --- financials ---
    amount: Decimal = Decimal("0")
    currency: str = "USD"

    # --- dates & status ---
    due_date: date | None = None
    status: InvoiceStatus = InvoiceStatus.PENDING
    notes: str | None = None
    schedule_id: str | None = None          # explicit assignment, nullable

    # --- reminder bookkeeping ---
    last_reminder_sent_at: datetime | None = None
    total_scheduled_reminders: int | None = None
    reminders_completed: bool = False
    reminders_enabled: bool = True
    reminders_paused_reason: str | None = None
    reminders_reset_at: datetime | None = None
    reminders_base_due_date: date | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """True once the invoice is PAID or CANCELLED."""
        return self.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED)

    def is_past_due(self, today: date) -> bool:
        """Display-only: PENDING and the due date is behind ``today``."""
        return (
            self.status is InvoiceStatus.PENDING
            and self.due_date is not None
            and self.due_date < today
        )


@dataclass
class Template:
    """Reusable email content.  Subject and body carry {variable} tokens."""

    id: str
    user_id: str
    name: str
    subject: str
    body: str
    is_default: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ScheduleStep:
    """One rung of a schedule: fire ``template_id`` at ``day_offset``.

    ``day_offset`` is signed and relative to the invoice due date
    (0 = due date, positive = days after).  ``order`` defines evaluation
    and display order within the schedule.
    """

    id: str
    schedule_id: str
    day_offset: int
    order: int
    template_id: str
    template: Template | None = None


@dataclass
class Schedule:
    """A named, ordered reminder policy owned by a user."""

    id: str
    user_id: str
    name: str
    is_active: bool = True
    is_default: bool = False
    steps: list[ScheduleStep] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_steps(self) -> bool:
        return bool(self.steps)


@dataclass
class FollowUp:
    """A generated reminder event derived from a schedule step and an invoice."""

    id: str
    invoice_id: str
    template_id: str
    scheduled_date: date
    subject: str
    body: str
    status: FollowUpStatus = FollowUpStatus.PENDING
    sent_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status is FollowUpStatus.PENDING


@dataclass
class EmailLog:
    """Audit record of a single send attempt.  Display-only."""

    id: str
    follow_up_id: str
    recipient_email: str
    subject: str
    success: bool
    sent_at: datetime | None = None
    error_message: str | None = None


@dataclass
class GuardDecision:
    """Allow/deny answer from a schedule invariant guard.

    ``reason`` is human-readable and only set on a deny.
    """

    allowed: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.allowed

    def to_dict(self) -> dict:
        """Serialize for the calling layer (JSON responses, CLI output)."""
        if self.reason is None:
            return {"allowed": self.allowed}
        return {"allowed": self.allowed, "reason": self.reason}
