"""InvoiceFlow -- Command Line Entry Point.

Thin operator CLI over the follow-up engine.  Every command opens the
configured store, runs one engine operation and prints the outcome:

    init-db           create the SQLite schema
    bootstrap         ensure a user's default templates and schedule
    generate          (re)generate follow-ups for one invoice
    regenerate-all    regenerate every PENDING invoice of a user
    set-default       make a schedule the user's default
    check-delete      ask the guard whether a schedule may be deleted
    check-deactivate  ask the guard whether a schedule may be deactivated
    due               list follow-ups due on a day (mailer view)
    state             show an invoice's reminder state and follow-ups

Usage::

    python -m invoiceflow.main init-db
    python -m invoiceflow.main bootstrap --user USER_ID
    python -m invoiceflow.main generate --invoice INVOICE_ID --verbose
    python -m invoiceflow.main due --date 2025-06-04
"""

from __future__ import annotations

import argparse
import json
import logging
import sqlite3
import sys
from datetime import date, datetime, timezone

from .config import InvoiceFlowConfig, get_config
from .default_schedule import DefaultScheduleBootstrapper
from .followups import FollowUpGenerator
from .models import FollowUp, InactiveScheduleError, Schedule, ScheduleNotFoundError
from .reminder_state import REMINDER_STATE_LABELS, get_reminder_state, reminder_status_message
from .schedule_guard import ScheduleGuard
from .store import FollowUpStore


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

def _print_schedule(schedule: Schedule) -> None:
    flags = []
    if schedule.is_default:
        flags.append("default")
    if not schedule.is_active:
        flags.append("inactive")
    suffix = f" [{', '.join(flags)}]" if flags else ""
    print(f"Schedule {schedule.id}: {schedule.name}{suffix}")
    for step in schedule.steps:
        name = step.template.name if step.template else step.template_id
        print(f"  {step.order:>2d}. day {step.day_offset:+d}  {name}")


def _print_follow_ups(follow_ups: list[FollowUp]) -> None:
    if not follow_ups:
        print("  (none)")
        return
    for f in follow_ups:
        print(f"  {f.scheduled_date.isoformat()}  {f.status.value:<8s} {f.subject}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _cmd_init_db(store: FollowUpStore, args: argparse.Namespace, config: InvoiceFlowConfig) -> int:
    print(f"Store ready at {store.db_path}")
    return 0


def _cmd_bootstrap(store: FollowUpStore, args: argparse.Namespace, config: InvoiceFlowConfig) -> int:
    bootstrapper = DefaultScheduleBootstrapper(store)
    templates = bootstrapper.ensure_default_templates(args.user)
    print(f"{len(templates)} template(s): {', '.join(t['name'] for t in templates)}")
    _print_schedule(bootstrapper.ensure_default_schedule(args.user))
    return 0


def _cmd_generate(store: FollowUpStore, args: argparse.Namespace, config: InvoiceFlowConfig) -> int:
    follow_ups = FollowUpGenerator(store).generate_follow_ups(args.invoice, args.schedule)
    print(f"Generated {len(follow_ups)} follow-up(s) for invoice {args.invoice}")
    _print_follow_ups(follow_ups)
    return 0


def _cmd_regenerate_all(store: FollowUpStore, args: argparse.Namespace, config: InvoiceFlowConfig) -> int:
    report = FollowUpGenerator(store).regenerate_all_follow_ups(args.user)
    print(
        f"Regenerated {len(report.regenerated)} invoice(s), "
        f"{report.follow_ups_created} follow-up(s) created"
    )
    for invoice_id, error in report.failed.items():
        print(f"  FAILED {invoice_id}: {error}")
    return 0 if report.ok else 1


def _cmd_set_default(store: FollowUpStore, args: argparse.Namespace, config: InvoiceFlowConfig) -> int:
    try:
        schedule = ScheduleGuard(store).set_schedule_as_default(args.schedule, args.user)
    except (ScheduleNotFoundError, InactiveScheduleError) as exc:
        print(f"ERROR: {exc}")
        return 1
    _print_schedule(schedule)
    return 0


def _cmd_check_delete(store: FollowUpStore, args: argparse.Namespace, config: InvoiceFlowConfig) -> int:
    decision = ScheduleGuard(store).can_delete_schedule(args.user, args.schedule)
    print(json.dumps(decision.to_dict()))
    return 0 if decision.allowed else 1


def _cmd_check_deactivate(store: FollowUpStore, args: argparse.Namespace, config: InvoiceFlowConfig) -> int:
    decision = ScheduleGuard(store).can_deactivate_schedule(args.user, args.schedule)
    print(json.dumps(decision.to_dict()))
    return 0 if decision.allowed else 1


def _cmd_due(store: FollowUpStore, args: argparse.Namespace, config: InvoiceFlowConfig) -> int:
    day = args.date or datetime.now(timezone.utc).date()
    per_invoice_cap = config.mailer.max_follow_ups_per_day_per_invoice

    with store.read() as session:
        pairs = session.due_follow_ups(day, limit=config.mailer.batch_limit)
        # Sends already logged today count against the cap.
        per_invoice: dict[str, int] = {
            invoice_id: session.count_emails_sent_on(invoice_id, day)
            for invoice_id in {invoice.id for _, invoice in pairs}
        }

    held_back = 0
    print(f"Follow-ups due {day.isoformat()}:")
    for follow_up, invoice in pairs:
        per_invoice[invoice.id] += 1
        if per_invoice[invoice.id] > per_invoice_cap:
            held_back += 1
            continue
        recipient = invoice.client_email or "(no email)"
        print(f"  {invoice.invoice_number:<12s} {recipient:<30s} {follow_up.subject}")
    if not pairs:
        print("  (none)")
    if held_back:
        print(f"  {held_back} more held back by the per-invoice daily cap ({per_invoice_cap})")
    return 0


def _cmd_state(store: FollowUpStore, args: argparse.Namespace, config: InvoiceFlowConfig) -> int:
    with store.read() as session:
        invoice = session.get_invoice(args.invoice)
        follow_ups = session.list_follow_ups(args.invoice) if invoice else []
    if invoice is None:
        print(f"ERROR: invoice {args.invoice} not found")
        return 1

    state = get_reminder_state(invoice, follow_ups)
    label, description = REMINDER_STATE_LABELS[state]
    print(f"Invoice {invoice.invoice_number} ({invoice.status.value}): {label} - {description}")
    message = reminder_status_message(invoice, follow_ups)
    if message:
        print(f"  {message}")
    _print_follow_ups(follow_ups)
    return 0


_COMMANDS = {
    "init-db": _cmd_init_db,
    "bootstrap": _cmd_bootstrap,
    "generate": _cmd_generate,
    "regenerate-all": _cmd_regenerate_all,
    "set-default": _cmd_set_default,
    "check-delete": _cmd_check_delete,
    "check-deactivate": _cmd_check_deactivate,
    "due": _cmd_due,
    "state": _cmd_state,
}


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="invoiceflow",
        description="InvoiceFlow - invoice follow-up scheduling engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  invoiceflow init-db\n"
            "  invoiceflow bootstrap --user u-1\n"
            "  invoiceflow generate --invoice inv-1 --verbose\n"
            "  invoiceflow due --date 2025-06-04\n"
        ),
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: project root config.yaml)",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite database path (overrides config)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema")

    p = sub.add_parser("bootstrap", help="Ensure default templates and schedule")
    p.add_argument("--user", required=True)

    p = sub.add_parser("generate", help="Generate follow-ups for an invoice")
    p.add_argument("--invoice", required=True)
    p.add_argument("--schedule", default=None)

    p = sub.add_parser("regenerate-all", help="Regenerate all PENDING invoices of a user")
    p.add_argument("--user", required=True)

    for name, text in (
        ("set-default", "Make a schedule the user's default"),
        ("check-delete", "Check whether a schedule may be deleted"),
        ("check-deactivate", "Check whether a schedule may be deactivated"),
    ):
        p = sub.add_parser(name, help=text)
        p.add_argument("--user", required=True)
        p.add_argument("--schedule", required=True)

    p = sub.add_parser("due", help="List follow-ups due on a day")
    p.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Day to list, YYYY-MM-DD (default: today, UTC)",
    )

    p = sub.add_parser("state", help="Show an invoice's reminder state")
    p.add_argument("--invoice", required=True)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error or denied check).
    """
    args = build_parser().parse_args(argv)
    config = get_config(args.config)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else config.logging.level,
        format=config.logging.format,
        datefmt=config.logging.datefmt,
    )

    try:
        store = FollowUpStore(db_path=args.db, config=config)
        return _COMMANDS[args.command](store, args, config)
    except sqlite3.Error as exc:
        logger.exception("Store error")
        print(f"\nERROR: {exc}")
        return 1
    except (LookupError, ValueError) as exc:
        logger.error("Data error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
