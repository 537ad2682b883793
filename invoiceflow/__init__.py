"""InvoiceFlow - Invoice Follow-Up Scheduling Engine.

Generates dated, rendered reminder emails for invoices from multi-step
schedules, and keeps each user's schedules consistent (exactly one
default, backed by the baseline templates).

The FollowUpStore provides the SQLite-backed transactional store every
service operates on.
"""

from .models import (
    EmailLog,
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
    Template,
)

from .store import FollowUpStore
from .default_schedule import DefaultScheduleBootstrapper
from .followups import FollowUpGenerator, RegenerationReport
from .schedule_guard import ScheduleGuard
from .template_engine import render_template

__all__ = [
    "DefaultScheduleBootstrapper",
    "EmailLog",
    "FollowUp",
    "FollowUpGenerator",
    "FollowUpStatus",
    "FollowUpStore",
    "GuardDecision",
    "InactiveScheduleError",
    "Invoice",
    "InvoiceNotFoundError",
    "InvoiceStatus",
    "RegenerationReport",
    "Schedule",
    "ScheduleGuard",
    "ScheduleNotFoundError",
    "ScheduleStep",
    "Template",
    "render_template",
]
