"""Tests for invoiceflow.store -- SQLite store, transactions and mailer surface."""

import sqlite3
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from invoiceflow.models import FollowUp, FollowUpStatus, InvoiceStatus
from invoiceflow.store import FollowUpStore


def _template(store, user_id, name="T", is_default=False):
    with store.transaction() as session:
        return session.create_template(user_id, name, f"{name} subject", f"{name} body", is_default)


def _follow_up(invoice, template, day, fid, status=FollowUpStatus.PENDING):
    return FollowUp(
        id=fid, invoice_id=invoice.id, template_id=template.id,
        scheduled_date=day, subject=f"subject {fid}", body="body", status=status,
    )


# ============================================================================
# Schema and transactions
# ============================================================================

class TestTransactions:

    def test_schema_created(self, store):
        with store.read() as session:
            tables = {
                row[0] for row in session.conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table'"
                )
            }
        assert {
            "users", "invoices", "templates", "schedules",
            "schedule_steps", "follow_ups", "email_logs",
        } <= tables

    def test_rollback_on_exception(self, store, user_id):
        with pytest.raises(RuntimeError):
            with store.transaction() as session:
                session.create_template(user_id, "Temp", "s", "b")
                raise RuntimeError("boom")
        with store.read() as session:
            assert session.list_templates(user_id) == []

    def test_reopen_existing_database(self, store, user_id, config):
        _template(store, user_id)
        reopened = FollowUpStore(store.db_path, config=config)
        with reopened.read() as session:
            assert len(session.list_templates(user_id)) == 1

    def test_unique_default_index(self, store, user_id):
        with store.transaction() as session:
            session.create_schedule(user_id, "A", is_default=True)
        with pytest.raises(sqlite3.IntegrityError):
            with store.transaction() as session:
                session.create_schedule(user_id, "B", is_default=True)

    def test_unique_default_index_can_be_disabled(self, store_no_unique):
        with store_no_unique.transaction() as session:
            uid = session.create_user("x@example.com")
            session.create_schedule(uid, "A", is_default=True)
            session.create_schedule(uid, "B", is_default=True)
            assert sum(s.is_default for s in session.list_schedules(uid)) == 2


# ============================================================================
# Invoices
# ============================================================================

class TestInvoices:

    def test_create_and_get(self, store, make_invoice):
        invoice = make_invoice(amount="99.90", notes="link")
        with store.read() as session:
            loaded = session.get_invoice(invoice.id)
        assert loaded.amount == Decimal("99.90")
        assert loaded.due_date == date(2025, 6, 1)
        assert loaded.reminders_base_due_date == date(2025, 6, 1)
        assert loaded.status is InvoiceStatus.PENDING
        assert loaded.notes == "link"

    @pytest.mark.parametrize("amount", [0, "-1", Decimal("0.00")])
    def test_amount_must_be_positive(self, make_invoice, amount):
        with pytest.raises(ValueError):
            make_invoice(amount=amount)

    def test_get_scoped_to_owner(self, store, make_invoice, make_user):
        invoice = make_invoice()
        other = make_user()
        with store.read() as session:
            assert session.get_invoice(invoice.id, user_id=other) is None

    def test_list_by_status(self, store, user_id, make_invoice):
        make_invoice()
        make_invoice(status=InvoiceStatus.PAID)
        with store.read() as session:
            pending = session.list_invoices(user_id, status=InvoiceStatus.PENDING)
            everything = session.list_invoices(user_id)
        assert len(pending) == 1
        assert len(everything) == 2

    def test_update_invoice(self, store, make_invoice):
        invoice = make_invoice()
        with store.transaction() as session:
            updated = session.update_invoice(
                invoice.id, status=InvoiceStatus.PAID, reminders_enabled=False,
            )
        assert updated.status is InvoiceStatus.PAID
        assert updated.reminders_enabled is False

    def test_update_rejects_unknown_field(self, store, make_invoice):
        invoice = make_invoice()
        with pytest.raises(ValueError):
            with store.transaction() as session:
                session.update_invoice(invoice.id, user_id="someone-else")


# ============================================================================
# Templates and schedules
# ============================================================================

class TestTemplatesAndSchedules:

    def test_default_template_unsets_others(self, store, user_id):
        first = _template(store, user_id, "First", is_default=True)
        second = _template(store, user_id, "Second", is_default=True)
        with store.read() as session:
            flags = {t.id: t.is_default for t in session.list_templates(user_id)}
        assert flags == {first.id: False, second.id: True}

    def test_schedule_steps_ordered_with_templates(self, store, user_id):
        a = _template(store, user_id, "A")
        b = _template(store, user_id, "B")
        with store.transaction() as session:
            schedule = session.create_schedule(user_id, "S", steps=[(7, 2, b.id), (0, 1, a.id)])
        assert [(s.order, s.day_offset) for s in schedule.steps] == [(1, 0), (2, 7)]
        assert schedule.steps[0].template.name == "A"

    def test_get_schedule_filters(self, store, user_id, make_user):
        with store.transaction() as session:
            schedule = session.create_schedule(user_id, "S", is_active=False)
        other = make_user()
        with store.read() as session:
            assert session.get_schedule(schedule.id) is not None
            assert session.get_schedule(schedule.id, active_only=True) is None
            assert session.get_schedule(schedule.id, user_id=other) is None

    def test_delete_schedule_cascades_steps(self, store, user_id):
        t = _template(store, user_id)
        with store.transaction() as session:
            schedule = session.create_schedule(user_id, "S", steps=[(0, 1, t.id)])
            session.delete_schedule(schedule.id)
            remaining = session.conn.execute(
                "SELECT COUNT(*) FROM schedule_steps WHERE schedule_id = ?", (schedule.id,)
            ).fetchone()[0]
        assert remaining == 0

    def test_delete_schedule_unassigns_invoices(self, store, user_id, make_invoice):
        with store.transaction() as session:
            schedule = session.create_schedule(user_id, "S")
        invoice = make_invoice(schedule_id=schedule.id)
        with store.transaction() as session:
            session.delete_schedule(schedule.id)
            assert session.get_invoice(invoice.id).schedule_id is None

    def test_clear_default_flags_only_ids(self, store_no_unique):
        with store_no_unique.transaction() as session:
            uid = session.create_user("x@example.com")
            a = session.create_schedule(uid, "A", is_default=True)
            b = session.create_schedule(uid, "B", is_default=True)
            assert session.clear_default_flags(uid, only_ids=[a.id]) == 1
            assert session.get_schedule(a.id).is_default is False
            assert session.get_schedule(b.id).is_default is True
            assert session.clear_default_flags(uid, only_ids=[]) == 0


# ============================================================================
# Follow-ups and the mailer surface
# ============================================================================

class TestFollowUps:

    def test_delete_pending_keeps_history(self, store, user_id, make_invoice):
        invoice = make_invoice()
        t = _template(store, user_id)
        with store.transaction() as session:
            session.insert_follow_ups([
                _follow_up(invoice, t, date(2025, 6, 1), "sent", FollowUpStatus.SENT),
                _follow_up(invoice, t, date(2025, 6, 4), "pending"),
            ])
            assert session.delete_pending_follow_ups(invoice.id) == 1
            remaining = session.list_follow_ups(invoice.id)
        assert [f.id for f in remaining] == ["sent"]

    def test_due_follow_ups(self, store, user_id, make_invoice):
        live = make_invoice()
        paid = make_invoice(status=InvoiceStatus.PAID)
        muted = make_invoice()
        t = _template(store, user_id)
        day = date(2025, 6, 4)
        with store.transaction() as session:
            session.update_invoice(muted.id, reminders_enabled=False)
            session.insert_follow_ups([
                _follow_up(live, t, day, "due"),
                _follow_up(live, t, date(2025, 6, 8), "later"),
                _follow_up(paid, t, day, "paid"),
                _follow_up(muted, t, day, "muted"),
            ])
        with store.read() as session:
            pairs = session.due_follow_ups(day)
        assert [(f.id, inv.id) for f, inv in pairs] == [("due", live.id)]

    def test_mark_sent_completes_invoice(self, store, user_id, make_invoice):
        invoice = make_invoice()
        t = _template(store, user_id)
        with store.transaction() as session:
            session.insert_follow_ups([
                _follow_up(invoice, t, date(2025, 6, 1), "a"),
                _follow_up(invoice, t, date(2025, 6, 4), "b"),
            ])
            assert session.mark_follow_up_sent("a", "billing@acme.test") is True
            halfway = session.get_invoice(invoice.id)
            assert session.mark_follow_up_sent("b", "billing@acme.test") is True
            done = session.get_invoice(invoice.id)
            logs = session.list_email_logs("a")

        assert halfway.last_reminder_sent_at is not None
        assert halfway.reminders_completed is False
        assert done.reminders_completed is True
        assert done.total_scheduled_reminders == 2
        assert len(logs) == 1 and logs[0].success is True

    def test_mark_sent_only_from_pending(self, store, user_id, make_invoice):
        invoice = make_invoice()
        t = _template(store, user_id)
        with store.transaction() as session:
            session.insert_follow_ups([_follow_up(invoice, t, date(2025, 6, 1), "a")])
            assert session.mark_follow_up_sent("a", "x@example.com") is True
            assert session.mark_follow_up_sent("a", "x@example.com") is False
            assert session.mark_follow_up_failed("a", "x@example.com", "late") is False

    def test_mark_failed_logs_error(self, store, user_id, make_invoice):
        invoice = make_invoice()
        t = _template(store, user_id)
        with store.transaction() as session:
            session.insert_follow_ups([_follow_up(invoice, t, date(2025, 6, 1), "a")])
            assert session.mark_follow_up_failed("a", "x@example.com", "SMTP 550") is True
            follow_up = session.get_follow_up("a")
            logs = session.list_email_logs("a")
        assert follow_up.status is FollowUpStatus.FAILED
        assert follow_up.error_message == "SMTP 550"
        assert logs[0].success is False
        assert logs[0].error_message == "SMTP 550"

    def test_mark_skipped(self, store, user_id, make_invoice):
        invoice = make_invoice()
        t = _template(store, user_id)
        with store.transaction() as session:
            session.insert_follow_ups([_follow_up(invoice, t, date(2025, 6, 1), "a")])
            assert session.mark_follow_up_skipped("a", "daily cap") is True
            assert session.get_follow_up("a").status is FollowUpStatus.SKIPPED

    def test_count_emails_sent_on(self, store, user_id, make_invoice):
        invoice = make_invoice()
        other = make_invoice()
        t = _template(store, user_id)
        today = datetime.now(timezone.utc).date()
        with store.transaction() as session:
            session.insert_follow_ups([
                _follow_up(invoice, t, date(2025, 6, 1), "a"),
                _follow_up(invoice, t, date(2025, 6, 4), "b"),
                _follow_up(other, t, date(2025, 6, 1), "c"),
            ])
            session.mark_follow_up_sent("a", "billing@acme.test")
            session.mark_follow_up_failed("b", "billing@acme.test", "SMTP 550")
            session.mark_follow_up_sent("c", "billing@acme.test")
            assert session.count_emails_sent_on(invoice.id, today) == 1
            assert session.count_emails_sent_on(invoice.id, today - timedelta(days=1)) == 0
