"""
InvoiceFlow -- Schedule Invariant Guard

Precondition checks consulted before a schedule is deleted, deactivated or
made the default.  They protect the "exactly one default schedule per
user" invariant.

The ``can_*`` checks never raise for an invariant reason: they return a
GuardDecision the calling layer shows to the user.  ``set_schedule_as_default``
is the only sanctioned way to move the default flag and raises when the
target is missing, foreign or inactive.
"""

from __future__ import annotations

import logging

from .models import (
    GuardDecision,
    InactiveScheduleError,
    Schedule,
    ScheduleNotFoundError,
)
from .store import FollowUpStore, StoreSession


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Deny reasons
# ---------------------------------------------------------------------------

REASON_NOT_FOUND = "Schedule not found"
REASON_ONLY_SCHEDULE = "Cannot delete the only schedule. This is your default schedule."
REASON_DEFAULT_SCHEDULE = (
    "Cannot delete the default schedule. Set another schedule as default first."
)
REASON_DEACTIVATE_DEFAULT = (
    "You must have at least one active default schedule. "
    "Set another schedule as default first."
)


# ---------------------------------------------------------------------------
# Session-level checks
# ---------------------------------------------------------------------------

def check_delete(session: StoreSession, user_id: str, schedule_id: str) -> GuardDecision:
    schedule = session.get_schedule(schedule_id, user_id=user_id)
    if schedule is None:
        return GuardDecision(False, REASON_NOT_FOUND)
    if session.count_schedules(user_id, exclude_id=schedule_id) == 0:
        return GuardDecision(False, REASON_ONLY_SCHEDULE)
    if schedule.is_default:
        return GuardDecision(False, REASON_DEFAULT_SCHEDULE)
    return GuardDecision(True)


def check_deactivate(session: StoreSession, user_id: str, schedule_id: str) -> GuardDecision:
    schedule = session.get_schedule(schedule_id, user_id=user_id)
    if schedule is None:
        return GuardDecision(False, REASON_NOT_FOUND)
    if schedule.is_default:
        return GuardDecision(False, REASON_DEACTIVATE_DEFAULT)
    return GuardDecision(True)


# ===========================================================================
# Guard
# ===========================================================================

class ScheduleGuard:
    """Invariant checks and guarded mutations for a user's schedules."""

    def __init__(self, store: FollowUpStore):
        self.store = store

    # -------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------

    def can_delete_schedule(self, user_id: str, schedule_id: str) -> GuardDecision:
        """Deny deleting the user's only schedule or the default one."""
        with self.store.read() as session:
            return check_delete(session, user_id, schedule_id)

    def can_deactivate_schedule(self, user_id: str, schedule_id: str) -> GuardDecision:
        """Deny deactivating the default schedule.  Others always pass."""
        with self.store.read() as session:
            return check_deactivate(session, user_id, schedule_id)

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------

    def set_schedule_as_default(self, schedule_id: str, user_id: str) -> Schedule:
        """Make ``schedule_id`` the user's one default schedule.

        Clears the flag on every other schedule of the user before setting
        it on the target, all in one transaction, so two schedules are
        never flagged at once.

        Raises:
            ScheduleNotFoundError: Missing or owned by another user.
            InactiveScheduleError: The schedule is deactivated.
        """
        with self.store.transaction() as session:
            schedule = session.get_schedule(schedule_id, user_id=user_id)
            if schedule is None:
                raise ScheduleNotFoundError(REASON_NOT_FOUND)
            if not schedule.is_active:
                raise InactiveScheduleError("Cannot set inactive schedule as default")

            cleared = session.clear_default_flags(user_id, except_id=schedule_id)
            session.set_default_flag(schedule_id, True)
            logger.info(
                "Schedule %s is now default for user %s (%d flag(s) cleared)",
                schedule_id, user_id, cleared,
            )
            return session.get_schedule(schedule_id)

    def delete_schedule(self, user_id: str, schedule_id: str) -> GuardDecision:
        """Delete the schedule if the guard allows it.

        Check and delete share one transaction.  Invoices assigned to the
        schedule fall back to the default (their assignment is nulled).
        """
        with self.store.transaction() as session:
            decision = check_delete(session, user_id, schedule_id)
            if decision.allowed:
                session.delete_schedule(schedule_id)
                logger.info("Deleted schedule %s for user %s", schedule_id, user_id)
        return decision

    def deactivate_schedule(self, user_id: str, schedule_id: str) -> GuardDecision:
        """Deactivate the schedule if the guard allows it."""
        with self.store.transaction() as session:
            decision = check_deactivate(session, user_id, schedule_id)
            if decision.allowed:
                session.set_schedule_active(schedule_id, False)
                logger.info("Deactivated schedule %s for user %s", schedule_id, user_id)
        return decision
