"""
InvoiceFlow -- Default Schedule Bootstrapper

Guarantees every user has exactly one default, active, multi-step
schedule backed by the three baseline templates.  Bootstrapping is lazy
and idempotent: it runs the first time a default is needed and is a
no-op once the user's schedules are consistent.

State machine over a user's schedules (one transaction):

    no schedules            -> create "Standard Payment Reminder"
    none default            -> promote most recently updated active one,
                               or create a new default if none is active
    several default         -> keep the most recently updated, clear others
    exactly one default     -> return it

Usage:
    from invoiceflow.default_schedule import DefaultScheduleBootstrapper

    bootstrapper = DefaultScheduleBootstrapper(store)
    schedule = bootstrapper.ensure_default_schedule(user_id)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .models import DefaultTemplatesError, Schedule, Template
from .store import FollowUpStore, StoreSession


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Baseline content
# ---------------------------------------------------------------------------

DEFAULT_SCHEDULE_NAME = "Standard Payment Reminder"

FRIENDLY_REMINDER = "Friendly Reminder"
NEUTRAL_FOLLOW_UP = "Neutral Follow-up"
FIRM_REMINDER = "Firm Reminder"


@dataclass(frozen=True)
class BaselineTemplate:
    """Fixed copy for one of the templates every user starts with."""
    name: str
    subject: str
    body: str


DEFAULT_TEMPLATES: tuple[BaselineTemplate, ...] = (
    BaselineTemplate(
        name=FRIENDLY_REMINDER,
        subject="Reminder: Invoice {invoiceNumber} is due",
        body=(
            "Hi {clientName},\n"
            "\n"
            "This is a friendly reminder that invoice {invoiceNumber} for "
            "{amount} ({currency}) is due today ({dueDate}).\n"
            "\n"
            "Please let us know if you have any questions or if payment has "
            "already been sent.\n"
            "\n"
            "Thank you for your business!\n"
            "\n"
            "Best regards"
        ),
    ),
    BaselineTemplate(
        name=NEUTRAL_FOLLOW_UP,
        subject="Follow-up: Invoice {invoiceNumber} is overdue",
        body=(
            "Hi {clientName},\n"
            "\n"
            "We wanted to follow up regarding invoice {invoiceNumber} for "
            "{amount} ({currency}), which is now {daysOverdue} days overdue.\n"
            "\n"
            "The invoice was due on {dueDate}. We would appreciate prompt "
            "payment to avoid any service interruptions.\n"
            "\n"
            "If you have already sent payment, please disregard this message. "
            "Otherwise, please let us know when we can expect payment.\n"
            "\n"
            "Thank you for your attention to this matter."
        ),
    ),
    BaselineTemplate(
        name=FIRM_REMINDER,
        subject="Final reminder: Invoice {invoiceNumber} is past due",
        body=(
            "Dear {clientName},\n"
            "\n"
            "This is a final reminder that invoice {invoiceNumber} for "
            "{amount} ({currency}) is now {daysOverdue} days past due.\n"
            "\n"
            "The original due date was {dueDate}. Immediate payment is "
            "required to avoid late fees and potential service suspension.\n"
            "\n"
            "Please remit payment immediately or contact us to discuss this "
            "matter.\n"
            "\n"
            "This is an automated reminder. If payment has been sent, please "
            "provide confirmation.\n"
            "\n"
            "Regards"
        ),
    ),
)

# (day_offset, order, template name)
DEFAULT_STEPS: tuple[tuple[int, int, str], ...] = (
    (0, 1, FRIENDLY_REMINDER),      # on the due date
    (3, 2, NEUTRAL_FOLLOW_UP),
    (7, 3, FIRM_REMINDER),
)


# ---------------------------------------------------------------------------
# Session-level operations (run inside the caller's transaction)
# ---------------------------------------------------------------------------

def ensure_default_templates_in(session: StoreSession, user_id: str) -> list[Template]:
    """Create any baseline template the user lacks (matched by name).

    Existing templates are never touched.  If the user has no default
    template, the first template created here becomes the default.

    Returns:
        All of the user's templates after the operation.
    """
    existing = session.list_templates(user_id)
    existing_names = {t.name for t in existing}
    has_default = any(t.is_default for t in existing)

    missing = [t for t in DEFAULT_TEMPLATES if t.name not in existing_names]
    for index, baseline in enumerate(missing):
        session.create_template(
            user_id=user_id,
            name=baseline.name,
            subject=baseline.subject,
            body=baseline.body,
            is_default=(not has_default and index == 0),
        )

    if missing:
        logger.info(
            "Created %d baseline template(s) for user %s: %s",
            len(missing), user_id, ", ".join(t.name for t in missing),
        )

    return session.list_templates(user_id)


def _create_default_schedule(session: StoreSession, user_id: str) -> Schedule:
    """Create the standard three-step schedule as the user's default."""
    templates = ensure_default_templates_in(session, user_id)
    template_ids = {t.name: t.id for t in templates}

    missing = [name for _, _, name in DEFAULT_STEPS if name not in template_ids]
    if missing:
        raise DefaultTemplatesError(
            f"Baseline templates missing for user {user_id}: {', '.join(missing)}"
        )

    schedule = session.create_schedule(
        user_id=user_id,
        name=DEFAULT_SCHEDULE_NAME,
        steps=[
            (day_offset, order, template_ids[name])
            for day_offset, order, name in DEFAULT_STEPS
        ],
        is_active=True,
        is_default=True,
    )
    logger.info("Created default schedule %s for user %s", schedule.id, user_id)
    return schedule


def ensure_default_schedule_in(session: StoreSession, user_id: str) -> Schedule:
    """Resolve the user's schedules to exactly one default and return it."""
    schedules = session.list_schedules(user_id)     # most recently updated first
    defaults = [s for s in schedules if s.is_default]

    if not schedules:
        return _create_default_schedule(session, user_id)

    if not defaults:
        active = next((s for s in schedules if s.is_active), None)
        if active is None:
            logger.info(
                "User %s has %d schedule(s) but none active; creating a default",
                user_id, len(schedules),
            )
            return _create_default_schedule(session, user_id)
        session.set_default_flag(active.id, True)
        logger.info("Promoted schedule %s to default for user %s", active.id, user_id)
        return session.get_schedule(active.id)

    if len(defaults) > 1:
        keep, *demote = defaults
        session.clear_default_flags(user_id, only_ids=[s.id for s in demote])
        logger.warning(
            "User %s had %d default schedules; kept %s, cleared %d",
            user_id, len(defaults), keep.id, len(demote),
        )
        return session.get_schedule(keep.id)

    return defaults[0]


# ===========================================================================
# Bootstrapper
# ===========================================================================

class DefaultScheduleBootstrapper:
    """Transactional entry points for default template/schedule bootstrapping.

    Each public method opens exactly one store transaction.  Store errors
    propagate to the caller.
    """

    def __init__(self, store: FollowUpStore):
        self.store = store

    def ensure_default_templates(self, user_id: str) -> list[dict[str, str]]:
        """Create missing baseline templates; return ``{id, name}`` for all."""
        with self.store.transaction() as session:
            templates = ensure_default_templates_in(session, user_id)
        return [{"id": t.id, "name": t.name} for t in templates]

    def ensure_default_schedule(self, user_id: str) -> Schedule:
        """Return the user's single default schedule, repairing state first."""
        with self.store.transaction() as session:
            return ensure_default_schedule_in(session, user_id)

    def get_default_schedule(self, user_id: str) -> Schedule:
        """The flagged default with its steps, bootstrapping one if absent."""
        with self.store.read() as session:
            for schedule in session.list_schedules(user_id):
                if schedule.is_default:
                    return schedule
        return self.ensure_default_schedule(user_id)

    def has_default_schedule(self, user_id: str) -> bool:
        """True when at least one of the user's schedules is flagged default."""
        with self.store.read() as session:
            return any(s.is_default for s in session.list_schedules(user_id))
