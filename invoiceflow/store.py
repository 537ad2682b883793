"""
InvoiceFlow -- Store Module

SQLite-backed relational store for invoices, templates, schedules and the
follow-ups generated from them.

Every mutating engine operation runs inside exactly one transaction:

    store = FollowUpStore("path/to/invoiceflow.db")
    with store.transaction() as session:
        schedule = session.get_schedule(schedule_id, user_id=user_id)
        session.clear_default_flags(user_id, except_id=schedule.id)
        session.set_default_flag(schedule.id, True)

``transaction()`` issues ``BEGIN IMMEDIATE`` so concurrent writers
serialize on the database lock, commits on success and rolls back on any
exception.  That transaction boundary is the only concurrency control in
the engine; there is no in-process locking.

Database schema:
    users           - account owners
    invoices        - billable amounts + reminder bookkeeping
    templates       - email content with {variable} placeholders
    schedules       - named reminder policies (one default per user)
    schedule_steps  - (day_offset, template) rungs, cascade with schedule
    follow_ups      - generated reminder events, cascade with invoice
    email_logs      - send attempts recorded by the mailer

The mailer collaborator polls ``due_follow_ups`` and reports back through
``mark_follow_up_sent`` / ``mark_follow_up_failed`` /
``mark_follow_up_skipped``.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, ContextManager, Iterable, Iterator

from .config import InvoiceFlowConfig, get_config
from .models import (
    EmailLog,
    FollowUp,
    FollowUpStatus,
    Invoice,
    InvoiceStatus,
    Schedule,
    ScheduleStep,
    Template,
)


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Database Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id                  TEXT PRIMARY KEY,
    email               TEXT NOT NULL UNIQUE,
    name                TEXT NOT NULL DEFAULT '',
    created_at          TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS invoices (
    id                          TEXT PRIMARY KEY,
    user_id                     TEXT NOT NULL,
    client_name                 TEXT NOT NULL,
    client_email                TEXT NOT NULL DEFAULT '',
    invoice_number              TEXT NOT NULL,
    amount                      TEXT NOT NULL,              -- Decimal as text
    currency                    TEXT NOT NULL DEFAULT 'USD',
    due_date                    TEXT NOT NULL,              -- YYYY-MM-DD
    status                      TEXT NOT NULL DEFAULT 'PENDING',
    notes                       TEXT,
    schedule_id                 TEXT,

    -- Reminder bookkeeping
    last_reminder_sent_at       TEXT,
    total_scheduled_reminders   INTEGER,
    reminders_completed         INTEGER NOT NULL DEFAULT 0,
    reminders_enabled           INTEGER NOT NULL DEFAULT 1,
    reminders_paused_reason     TEXT,
    reminders_reset_at          TEXT,
    reminders_base_due_date     TEXT,

    created_at                  TEXT NOT NULL DEFAULT '',
    updated_at                  TEXT NOT NULL DEFAULT '',
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (schedule_id) REFERENCES schedules(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS templates (
    id                  TEXT PRIMARY KEY,
    user_id             TEXT NOT NULL,
    name                TEXT NOT NULL,
    subject             TEXT NOT NULL,
    body                TEXT NOT NULL,
    is_default          INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL DEFAULT '',
    updated_at          TEXT NOT NULL DEFAULT '',
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS schedules (
    id                  TEXT PRIMARY KEY,
    user_id             TEXT NOT NULL,
    name                TEXT NOT NULL,
    is_active           INTEGER NOT NULL DEFAULT 1,
    is_default          INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL DEFAULT '',
    updated_at          TEXT NOT NULL DEFAULT '',
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS schedule_steps (
    id                  TEXT PRIMARY KEY,
    schedule_id         TEXT NOT NULL,
    template_id         TEXT NOT NULL,
    day_offset          INTEGER NOT NULL,
    step_order          INTEGER NOT NULL,
    FOREIGN KEY (schedule_id) REFERENCES schedules(id) ON DELETE CASCADE,
    FOREIGN KEY (template_id) REFERENCES templates(id)
);

CREATE TABLE IF NOT EXISTS follow_ups (
    id                  TEXT PRIMARY KEY,
    invoice_id          TEXT NOT NULL,
    template_id         TEXT NOT NULL,
    scheduled_date      TEXT NOT NULL,                      -- YYYY-MM-DD
    subject             TEXT NOT NULL,
    body                TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'PENDING',
    sent_at             TEXT,
    error_message       TEXT,
    created_at          TEXT NOT NULL DEFAULT '',
    FOREIGN KEY (invoice_id) REFERENCES invoices(id) ON DELETE CASCADE,
    FOREIGN KEY (template_id) REFERENCES templates(id)
);

CREATE TABLE IF NOT EXISTS email_logs (
    id                  TEXT PRIMARY KEY,
    follow_up_id        TEXT NOT NULL,
    recipient_email     TEXT NOT NULL,
    subject             TEXT NOT NULL,
    sent_at             TEXT NOT NULL,
    success             INTEGER NOT NULL,
    error_message       TEXT,
    FOREIGN KEY (follow_up_id) REFERENCES follow_ups(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_invoices_user_status ON invoices(user_id, status);
CREATE INDEX IF NOT EXISTS idx_invoices_status_enabled ON invoices(status, reminders_enabled);
CREATE INDEX IF NOT EXISTS idx_templates_user ON templates(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_schedules_user_default ON schedules(user_id, is_default);
CREATE INDEX IF NOT EXISTS idx_steps_schedule ON schedule_steps(schedule_id, step_order);
CREATE INDEX IF NOT EXISTS idx_follow_ups_invoice ON follow_ups(invoice_id, status);
CREATE INDEX IF NOT EXISTS idx_follow_ups_status_date ON follow_ups(status, scheduled_date);
CREATE INDEX IF NOT EXISTS idx_email_logs_follow_up ON email_logs(follow_up_id, sent_at);
"""

# At most one default schedule per user, enforced by the database as well.
_UNIQUE_DEFAULT_SQL = """
CREATE UNIQUE INDEX IF NOT EXISTS uq_schedules_one_default
    ON schedules(user_id) WHERE is_default = 1;
"""

_INVOICE_COLUMNS = {
    "client_name", "client_email", "invoice_number", "amount", "currency",
    "due_date", "status", "notes", "schedule_id", "last_reminder_sent_at",
    "total_scheduled_reminders", "reminders_completed", "reminders_enabled",
    "reminders_paused_reason", "reminders_reset_at", "reminders_base_due_date",
}


# ---------------------------------------------------------------------------
# Serialization Helpers
# ---------------------------------------------------------------------------

def _new_id() -> str:
    return str(uuid.uuid4())


def _iso(dt: datetime | None) -> str | None:
    """Datetime -> sortable UTC ISO 8601 string (fixed microsecond width)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    """Return current UTC datetime as ISO 8601 string."""
    return _iso(datetime.now(timezone.utc))


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except (ValueError, TypeError):
        return None


def _to_db(column: str, value: Any) -> Any:
    """Convert a Python value to its column representation."""
    if value is None:
        return None
    if isinstance(value, (InvoiceStatus, FollowUpStatus)):
        return value.value
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, datetime):
        return _iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if column == "amount":
        return str(Decimal(str(value)))
    return value


def _row_to_invoice(row: sqlite3.Row) -> Invoice:
    return Invoice(
        id=row["id"],
        user_id=row["user_id"],
        invoice_number=row["invoice_number"],
        client_name=row["client_name"],
        client_email=row["client_email"],
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        due_date=_parse_date(row["due_date"]),
        status=InvoiceStatus(row["status"]),
        notes=row["notes"],
        schedule_id=row["schedule_id"],
        last_reminder_sent_at=_parse_dt(row["last_reminder_sent_at"]),
        total_scheduled_reminders=row["total_scheduled_reminders"],
        reminders_completed=bool(row["reminders_completed"]),
        reminders_enabled=bool(row["reminders_enabled"]),
        reminders_paused_reason=row["reminders_paused_reason"],
        reminders_reset_at=_parse_dt(row["reminders_reset_at"]),
        reminders_base_due_date=_parse_date(row["reminders_base_due_date"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_template(row: sqlite3.Row) -> Template:
    return Template(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        subject=row["subject"],
        body=row["body"],
        is_default=bool(row["is_default"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_schedule(row: sqlite3.Row) -> Schedule:
    return Schedule(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        is_active=bool(row["is_active"]),
        is_default=bool(row["is_default"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_follow_up(row: sqlite3.Row) -> FollowUp:
    return FollowUp(
        id=row["id"],
        invoice_id=row["invoice_id"],
        template_id=row["template_id"],
        scheduled_date=_parse_date(row["scheduled_date"]),
        subject=row["subject"],
        body=row["body"],
        status=FollowUpStatus(row["status"]),
        sent_at=_parse_dt(row["sent_at"]),
        error_message=row["error_message"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_email_log(row: sqlite3.Row) -> EmailLog:
    return EmailLog(
        id=row["id"],
        follow_up_id=row["follow_up_id"],
        recipient_email=row["recipient_email"],
        subject=row["subject"],
        success=bool(row["success"]),
        sent_at=_parse_dt(row["sent_at"]),
        error_message=row["error_message"],
    )


# ---------------------------------------------------------------------------
# StoreSession -- entity operations bound to one open transaction
# ---------------------------------------------------------------------------

class StoreSession:
    """Entity-level operations on a connection inside an open transaction.

    Never constructed directly; obtained from ``FollowUpStore.transaction()``.
    Nothing here commits -- the owning transaction does.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, email: str, name: str = "", user_id: str | None = None) -> str:
        """Insert a user and return its id."""
        uid = user_id or _new_id()
        self.conn.execute(
            "INSERT INTO users (id, email, name, created_at) VALUES (?, ?, ?, ?)",
            (uid, email, name, _now_iso()),
        )
        return uid

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def create_invoice(
        self,
        user_id: str,
        invoice_number: str,
        client_name: str,
        amount: Decimal | float | int | str,
        due_date: date,
        currency: str = "USD",
        client_email: str = "",
        status: InvoiceStatus = InvoiceStatus.PENDING,
        notes: str | None = None,
        schedule_id: str | None = None,
    ) -> Invoice:
        """Insert an invoice.  ``amount`` must be positive."""
        value = Decimal(str(amount))
        if value <= 0:
            raise ValueError(f"Invoice amount must be greater than 0, got {value}")

        invoice_id = _new_id()
        now = _now_iso()
        self.conn.execute(
            """INSERT INTO invoices
               (id, user_id, client_name, client_email, invoice_number, amount,
                currency, due_date, status, notes, schedule_id,
                reminders_base_due_date, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                invoice_id, user_id, client_name, client_email, invoice_number,
                str(value), currency, due_date.isoformat(), status.value, notes,
                schedule_id, due_date.isoformat(), now, now,
            ),
        )
        return self.get_invoice(invoice_id)

    def get_invoice(self, invoice_id: str, user_id: str | None = None) -> Invoice | None:
        """Fetch one invoice, optionally scoped to its owner."""
        sql = "SELECT * FROM invoices WHERE id = ?"
        params: list[Any] = [invoice_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        row = self.conn.execute(sql, params).fetchone()
        return _row_to_invoice(row) if row else None

    def list_invoices(
        self,
        user_id: str,
        status: InvoiceStatus | None = None,
    ) -> list[Invoice]:
        """All invoices for a user, oldest first, optionally by status."""
        sql = "SELECT * FROM invoices WHERE user_id = ?"
        params: list[Any] = [user_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at ASC, id ASC"
        return [_row_to_invoice(r) for r in self.conn.execute(sql, params).fetchall()]

    def update_invoice(self, invoice_id: str, **fields: Any) -> Invoice | None:
        """Update invoice columns by name.  Unknown names raise ValueError."""
        unknown = set(fields) - _INVOICE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown invoice fields: {sorted(unknown)}")
        if fields:
            updates = {k: _to_db(k, v) for k, v in fields.items()}
            updates["updated_at"] = _now_iso()
            set_clause = ", ".join(f"{k} = ?" for k in updates)
            self.conn.execute(
                f"UPDATE invoices SET {set_clause} WHERE id = ?",
                list(updates.values()) + [invoice_id],
            )
        return self.get_invoice(invoice_id)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def create_template(
        self,
        user_id: str,
        name: str,
        subject: str,
        body: str,
        is_default: bool = False,
    ) -> Template:
        """Insert a template.

        A new default template clears the flag on the user's other
        templates first, so at most one default template exists per user.
        """
        if is_default:
            self.conn.execute(
                "UPDATE templates SET is_default = 0, updated_at = ? "
                "WHERE user_id = ? AND is_default = 1",
                (_now_iso(), user_id),
            )
        template_id = _new_id()
        now = _now_iso()
        self.conn.execute(
            """INSERT INTO templates
               (id, user_id, name, subject, body, is_default, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (template_id, user_id, name, subject, body, 1 if is_default else 0, now, now),
        )
        return self.get_template(template_id)

    def get_template(self, template_id: str) -> Template | None:
        row = self.conn.execute(
            "SELECT * FROM templates WHERE id = ?", (template_id,)
        ).fetchone()
        return _row_to_template(row) if row else None

    def list_templates(self, user_id: str) -> list[Template]:
        """All templates for a user in creation order."""
        rows = self.conn.execute(
            "SELECT * FROM templates WHERE user_id = ? ORDER BY created_at ASC, rowid ASC",
            (user_id,),
        ).fetchall()
        return [_row_to_template(r) for r in rows]

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def create_schedule(
        self,
        user_id: str,
        name: str,
        steps: Iterable[tuple[int, int, str]] = (),
        is_active: bool = True,
        is_default: bool = False,
        updated_at: datetime | None = None,
    ) -> Schedule:
        """Insert a schedule with its steps.

        Args:
            steps: ``(day_offset, order, template_id)`` tuples.
            updated_at: Override for the last-updated stamp (imports, tests).
        """
        schedule_id = _new_id()
        now = _now_iso()
        self.conn.execute(
            """INSERT INTO schedules
               (id, user_id, name, is_active, is_default, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                schedule_id, user_id, name,
                1 if is_active else 0, 1 if is_default else 0,
                now, _iso(updated_at) or now,
            ),
        )
        self.conn.executemany(
            """INSERT INTO schedule_steps
               (id, schedule_id, template_id, day_offset, step_order)
               VALUES (?, ?, ?, ?, ?)""",
            [
                (_new_id(), schedule_id, template_id, day_offset, order)
                for day_offset, order, template_id in steps
            ],
        )
        return self.get_schedule(schedule_id)

    def _load_steps(self, schedule_id: str) -> list[ScheduleStep]:
        rows = self.conn.execute(
            """SELECT s.id AS step_id, s.schedule_id, s.template_id, s.day_offset,
                      s.step_order, t.*
               FROM schedule_steps s
               JOIN templates t ON t.id = s.template_id
               WHERE s.schedule_id = ?
               ORDER BY s.step_order ASC, s.day_offset ASC""",
            (schedule_id,),
        ).fetchall()
        return [
            ScheduleStep(
                id=r["step_id"],
                schedule_id=r["schedule_id"],
                day_offset=r["day_offset"],
                order=r["step_order"],
                template_id=r["template_id"],
                template=_row_to_template(r),
            )
            for r in rows
        ]

    def get_schedule(
        self,
        schedule_id: str,
        user_id: str | None = None,
        active_only: bool = False,
    ) -> Schedule | None:
        """Fetch a schedule with its ordered steps (templates attached).

        ``user_id`` scopes the lookup to an owner; ``active_only`` hides
        deactivated schedules.  Either mismatch returns None.
        """
        sql = "SELECT * FROM schedules WHERE id = ?"
        params: list[Any] = [schedule_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        if active_only:
            sql += " AND is_active = 1"
        row = self.conn.execute(sql, params).fetchone()
        if row is None:
            return None
        schedule = _row_to_schedule(row)
        schedule.steps = self._load_steps(schedule.id)
        return schedule

    def list_schedules(self, user_id: str) -> list[Schedule]:
        """All schedules for a user, most recently updated first."""
        rows = self.conn.execute(
            """SELECT * FROM schedules WHERE user_id = ?
               ORDER BY updated_at DESC, created_at DESC, rowid DESC""",
            (user_id,),
        ).fetchall()
        schedules = [_row_to_schedule(r) for r in rows]
        for schedule in schedules:
            schedule.steps = self._load_steps(schedule.id)
        return schedules

    def count_schedules(self, user_id: str, exclude_id: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM schedules WHERE user_id = ?"
        params: list[Any] = [user_id]
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(exclude_id)
        return self.conn.execute(sql, params).fetchone()[0]

    def set_default_flag(self, schedule_id: str, is_default: bool) -> None:
        self.conn.execute(
            "UPDATE schedules SET is_default = ?, updated_at = ? WHERE id = ?",
            (1 if is_default else 0, _now_iso(), schedule_id),
        )

    def clear_default_flags(
        self,
        user_id: str,
        except_id: str | None = None,
        only_ids: Iterable[str] | None = None,
    ) -> int:
        """Unset ``is_default`` on a user's schedules.

        Args:
            except_id: Leave this schedule untouched.
            only_ids: Restrict the update to these schedule ids.

        Returns:
            Number of schedules changed.
        """
        sql = "UPDATE schedules SET is_default = 0, updated_at = ? WHERE user_id = ? AND is_default = 1"
        params: list[Any] = [_now_iso(), user_id]
        if except_id is not None:
            sql += " AND id != ?"
            params.append(except_id)
        if only_ids is not None:
            ids = list(only_ids)
            if not ids:
                return 0
            sql += f" AND id IN ({', '.join('?' * len(ids))})"
            params.extend(ids)
        return self.conn.execute(sql, params).rowcount

    def set_schedule_active(self, schedule_id: str, is_active: bool) -> None:
        self.conn.execute(
            "UPDATE schedules SET is_active = ?, updated_at = ? WHERE id = ?",
            (1 if is_active else 0, _now_iso(), schedule_id),
        )

    def delete_schedule(self, schedule_id: str) -> bool:
        """Delete a schedule; its steps go with it (ON DELETE CASCADE)."""
        result = self.conn.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Follow-ups
    # ------------------------------------------------------------------

    def list_follow_ups(
        self,
        invoice_id: str,
        status: FollowUpStatus | None = None,
    ) -> list[FollowUp]:
        """Follow-ups for an invoice, ordered by scheduled date."""
        sql = "SELECT * FROM follow_ups WHERE invoice_id = ?"
        params: list[Any] = [invoice_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY scheduled_date ASC, created_at ASC, rowid ASC"
        return [_row_to_follow_up(r) for r in self.conn.execute(sql, params).fetchall()]

    def get_follow_up(self, follow_up_id: str) -> FollowUp | None:
        row = self.conn.execute(
            "SELECT * FROM follow_ups WHERE id = ?", (follow_up_id,)
        ).fetchone()
        return _row_to_follow_up(row) if row else None

    def delete_pending_follow_ups(self, invoice_id: str) -> int:
        """Delete the invoice's PENDING follow-ups.  Other statuses are history."""
        result = self.conn.execute(
            "DELETE FROM follow_ups WHERE invoice_id = ? AND status = ?",
            (invoice_id, FollowUpStatus.PENDING.value),
        )
        return result.rowcount

    def insert_follow_ups(self, follow_ups: list[FollowUp]) -> None:
        """Batch-insert follow-ups in one statement."""
        now = _now_iso()
        self.conn.executemany(
            """INSERT INTO follow_ups
               (id, invoice_id, template_id, scheduled_date, subject, body,
                status, sent_at, error_message, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    f.id, f.invoice_id, f.template_id, f.scheduled_date.isoformat(),
                    f.subject, f.body, f.status.value, _iso(f.sent_at),
                    f.error_message, _iso(f.created_at) or now,
                )
                for f in follow_ups
            ],
        )

    # ------------------------------------------------------------------
    # Mailer collaborator surface
    # ------------------------------------------------------------------

    def due_follow_ups(self, day: date, limit: int = 500) -> list[tuple[FollowUp, Invoice]]:
        """PENDING follow-ups scheduled on ``day`` for sendable invoices.

        An invoice is sendable while it is PENDING with reminders enabled.
        Returns (follow_up, invoice) pairs, oldest scheduled first.
        """
        rows = self.conn.execute(
            """SELECT f.id FROM follow_ups f
               JOIN invoices i ON i.id = f.invoice_id
               WHERE f.status = ? AND f.scheduled_date = ?
                 AND i.status = ? AND i.reminders_enabled = 1
               ORDER BY f.scheduled_date ASC, f.created_at ASC, f.rowid ASC
               LIMIT ?""",
            (
                FollowUpStatus.PENDING.value, day.isoformat(),
                InvoiceStatus.PENDING.value, limit,
            ),
        ).fetchall()
        pairs = []
        for row in rows:
            follow_up = self.get_follow_up(row["id"])
            pairs.append((follow_up, self.get_invoice(follow_up.invoice_id)))
        return pairs

    def _log_email(
        self,
        follow_up: FollowUp,
        recipient_email: str,
        success: bool,
        error_message: str | None = None,
    ) -> None:
        self.conn.execute(
            """INSERT INTO email_logs
               (id, follow_up_id, recipient_email, subject, sent_at, success, error_message)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                _new_id(), follow_up.id, recipient_email, follow_up.subject,
                _now_iso(), 1 if success else 0, error_message,
            ),
        )

    def mark_follow_up_sent(self, follow_up_id: str, recipient_email: str) -> bool:
        """Record a successful send.

        Only transitions from PENDING.  Stamps the invoice's last reminder
        time, and once every follow-up of the invoice is SENT marks its
        reminders completed.  Returns True if the transition happened.
        """
        now = _now_iso()
        result = self.conn.execute(
            "UPDATE follow_ups SET status = ?, sent_at = ? WHERE id = ? AND status = ?",
            (FollowUpStatus.SENT.value, now, follow_up_id, FollowUpStatus.PENDING.value),
        )
        if result.rowcount == 0:
            return False

        follow_up = self.get_follow_up(follow_up_id)
        self._log_email(follow_up, recipient_email, success=True)

        total, sent = self.conn.execute(
            """SELECT COUNT(*), SUM(CASE WHEN status = ? THEN 1 ELSE 0 END)
               FROM follow_ups WHERE invoice_id = ?""",
            (FollowUpStatus.SENT.value, follow_up.invoice_id),
        ).fetchone()

        fields: dict[str, Any] = {"last_reminder_sent_at": now}
        if sent >= total:
            fields["reminders_completed"] = 1
            fields["total_scheduled_reminders"] = total
        set_clause = ", ".join(f"{k} = ?" for k in fields)
        self.conn.execute(
            f"UPDATE invoices SET {set_clause}, updated_at = ? WHERE id = ?",
            list(fields.values()) + [now, follow_up.invoice_id],
        )
        return True

    def mark_follow_up_failed(
        self,
        follow_up_id: str,
        recipient_email: str,
        error_message: str,
    ) -> bool:
        """Record a failed send attempt.  Only transitions from PENDING."""
        result = self.conn.execute(
            "UPDATE follow_ups SET status = ?, error_message = ? WHERE id = ? AND status = ?",
            (
                FollowUpStatus.FAILED.value, error_message,
                follow_up_id, FollowUpStatus.PENDING.value,
            ),
        )
        if result.rowcount == 0:
            return False
        self._log_email(
            self.get_follow_up(follow_up_id), recipient_email,
            success=False, error_message=error_message,
        )
        return True

    def mark_follow_up_skipped(self, follow_up_id: str, reason: str) -> bool:
        """Retire a PENDING follow-up without sending (e.g. daily cap hit)."""
        result = self.conn.execute(
            "UPDATE follow_ups SET status = ?, error_message = ? WHERE id = ? AND status = ?",
            (
                FollowUpStatus.SKIPPED.value, reason,
                follow_up_id, FollowUpStatus.PENDING.value,
            ),
        )
        return result.rowcount > 0

    def list_email_logs(self, follow_up_id: str) -> list[EmailLog]:
        rows = self.conn.execute(
            "SELECT * FROM email_logs WHERE follow_up_id = ? ORDER BY sent_at ASC",
            (follow_up_id,),
        ).fetchall()
        return [_row_to_email_log(r) for r in rows]

    def count_emails_sent_on(self, invoice_id: str, day: date) -> int:
        """Successful sends logged for an invoice on ``day`` (UTC)."""
        row = self.conn.execute(
            """SELECT COUNT(*) FROM email_logs l
               JOIN follow_ups f ON f.id = l.follow_up_id
               WHERE f.invoice_id = ? AND l.success = 1
                 AND substr(l.sent_at, 1, 10) = ?""",
            (invoice_id, day.isoformat()),
        ).fetchone()
        return row[0]


# ---------------------------------------------------------------------------
# FollowUpStore -- connection management and transactions
# ---------------------------------------------------------------------------

class FollowUpStore:
    """SQLite database holding the engine's entities.

    Each ``transaction()`` opens its own connection, so a store instance
    can be shared across threads; SQLite's database lock serializes the
    writers.
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        config: InvoiceFlowConfig | None = None,
        enforce_unique_default: bool | None = None,
    ):
        self.config = config or get_config()
        settings = self.config.store
        self.db_path = Path(db_path) if db_path else settings.resolved_db_path
        self.busy_timeout_ms = settings.busy_timeout_ms
        self.enforce_unique_default = (
            settings.enforce_unique_default
            if enforce_unique_default is None
            else enforce_unique_default
        )

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Database connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """Open a new connection in manual-transaction mode with pragmas."""
        conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)};")
        return conn

    def _init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            if self.enforce_unique_default:
                conn.executescript(_UNIQUE_DEFAULT_SQL)
        finally:
            conn.close()
        logger.debug(
            "Store ready at %s (unique default index: %s)",
            self.db_path, self.enforce_unique_default,
        )

    @contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[StoreSession]:
        """Run a block in one transaction.

        ``immediate=True`` takes the write lock up front (``BEGIN IMMEDIATE``)
        so read-then-write sequences cannot interleave with another writer.
        Commits on normal exit, rolls back and re-raises on any exception.
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield StoreSession(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def read(self) -> ContextManager[StoreSession]:
        """Shorthand for a deferred (read) transaction."""
        return self.transaction(immediate=False)
