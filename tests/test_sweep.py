from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import delete, event, select
from sqlalchemy.exc import OperationalError

from invoiceflow import crud
from invoiceflow.db import SessionLocal, engine
from invoiceflow.email_gateway import EmailSendResult
from invoiceflow.errors import SweepAborted
from invoiceflow.models import EmailLog, FollowUp, FollowUpStatus, InvoiceStatus, SubscriptionStatus
from invoiceflow.reminder_state import ReminderState, classify
from invoiceflow.schedules import create_schedule, ensure_default_templates
from invoiceflow.schemas import ScheduleCreate, StepIn
from invoiceflow.sweep import RATE_LIMIT_MESSAGE, prefetch_sent_today, run_followups

DUE = date(2025, 3, 10)


def at(day: date, hour: int = 9) -> datetime:
    return datetime(day.year, day.month, day.day, hour, 0)


def followups_of(db, invoice_id):
    return list(db.scalars(
        select(FollowUp).where(FollowUp.invoice_id == invoice_id).order_by(FollowUp.scheduled_date, FollowUp.id)
    ).all())


def logs_of(db, invoice_id):
    return list(db.scalars(
        select(EmailLog).where(EmailLog.invoice_id == invoice_id).order_by(EmailLog.sent_at)
    ).all())


def same_day_schedule(db, account, count=2):
    template = ensure_default_templates(db, account.id)["Friendly Reminder"]
    schedule = create_schedule(db, account.id, ScheduleCreate(
        name="Same day",
        steps=[StepIn(template_id=template.id, day_offset=0, order=i) for i in range(count)],
    ))
    db.commit()
    return schedule


def test_full_lifecycle(db, account, make_invoice, gateway):
    invoice = make_invoice(account, DUE)
    assert classify(invoice, followups_of(db, invoice.id)) == ReminderState.NOT_STARTED

    results = run_followups(db, gateway, now=at(DUE))
    assert results.sent == 1
    db.refresh(invoice)
    rows = followups_of(db, invoice.id)
    assert [r.status for r in rows] == [FollowUpStatus.SENT, FollowUpStatus.PENDING, FollowUpStatus.PENDING]
    assert rows[0].sent_at == at(DUE)
    assert invoice.last_reminder_sent_at == at(DUE)
    assert invoice.reminders_completed is False
    assert classify(invoice, rows) == ReminderState.IN_PROGRESS

    run_followups(db, gateway, now=at(DUE + timedelta(days=3)))
    results = run_followups(db, gateway, now=at(DUE + timedelta(days=7)))
    assert results.sent == 1

    db.refresh(invoice)
    rows = followups_of(db, invoice.id)
    assert all(r.status == FollowUpStatus.SENT for r in rows)
    assert invoice.reminders_completed is True
    assert invoice.total_scheduled_reminders == 3
    assert classify(invoice, rows) == ReminderState.COMPLETED

    assert len(gateway.sent) == 3
    assert gateway.sent[0]["to"] == "billing@acme.example.com"
    assert gateway.sent[0]["to_name"] == "Acme Corp"
    assert "<br>" in gateway.sent[0]["html"]
    assert all(log.success for log in logs_of(db, invoice.id))


def test_rerun_on_same_day_sends_nothing(db, account, make_invoice, gateway):
    make_invoice(account, DUE)

    first = run_followups(db, gateway, now=at(DUE, 8))
    second = run_followups(db, gateway, now=at(DUE, 20))

    assert first.sent == 1
    assert second.total_followups == 0
    assert second.sent == 0
    assert len(gateway.sent) == 1


def test_existing_log_today_makes_candidate_a_no_op(db, account, make_invoice, gateway):
    invoice = make_invoice(account, DUE)
    row = followups_of(db, invoice.id)[0]
    # Left behind by a run that logged the attempt but never saw the status change
    db.add(EmailLog(invoice_id=invoice.id, follow_up_id=row.id, recipient_email=invoice.client_email,
                    subject=row.subject, success=True, sent_at=at(DUE, 7)))
    db.commit()

    results = run_followups(db, gateway, now=at(DUE))

    assert results.total_followups == 1
    assert results.skipped == 1
    assert results.skipped_already_processed == 1
    assert results.sent == 0
    assert gateway.sent == []
    db.refresh(row)
    assert row.status == FollowUpStatus.PENDING


def test_daily_cap_skips_second_same_day_reminder(db, account, make_invoice, gateway):
    schedule = same_day_schedule(db, account)
    invoice = make_invoice(account, DUE, schedule_id=schedule.id)

    results = run_followups(db, gateway, now=at(DUE), daily_cap=1)

    assert results.sent == 1
    assert results.skipped == 1
    assert results.skipped_rate_limit == 1
    rows = followups_of(db, invoice.id)
    statuses = sorted(r.status.value for r in rows)
    assert statuses == ["SENT", "SKIPPED"]
    skipped = next(r for r in rows if r.status == FollowUpStatus.SKIPPED)
    assert "limit" in skipped.error_message
    assert skipped.error_message == RATE_LIMIT_MESSAGE
    assert len(logs_of(db, invoice.id)) == 1
    assert len(gateway.sent) == 1


def test_daily_cap_counts_sends_from_earlier_runs(db, account, make_invoice, gateway):
    schedule = same_day_schedule(db, account)
    invoice = make_invoice(account, DUE, schedule_id=schedule.id)
    first, second = followups_of(db, invoice.id)
    db.add(EmailLog(invoice_id=invoice.id, follow_up_id=first.id, recipient_email=invoice.client_email,
                    subject=first.subject, success=True, sent_at=at(DUE, 6)))
    first.status = FollowUpStatus.SENT
    db.commit()

    results = run_followups(db, gateway, now=at(DUE), daily_cap=1)

    assert results.skipped_rate_limit == 1
    db.refresh(second)
    assert second.status == FollowUpStatus.SKIPPED


def test_higher_cap_allows_both(db, account, make_invoice, gateway):
    schedule = same_day_schedule(db, account)
    invoice = make_invoice(account, DUE, schedule_id=schedule.id)

    results = run_followups(db, gateway, now=at(DUE), daily_cap=2)

    assert results.sent == 2
    db.refresh(invoice)
    assert invoice.reminders_completed is True


def test_send_failure_marks_followup_failed(db, account, make_invoice, failing_gateway):
    invoice = make_invoice(account, DUE)

    results = run_followups(db, failing_gateway, now=at(DUE))

    assert results.failed == 1
    assert results.sent == 0
    row = followups_of(db, invoice.id)[0]
    assert row.status == FollowUpStatus.FAILED
    assert row.error_message == "Mailbox unavailable"
    logs = logs_of(db, invoice.id)
    assert len(logs) == 1
    assert logs[0].success is False
    assert logs[0].error_message == "Mailbox unavailable"
    db.refresh(invoice)
    assert invoice.last_reminder_sent_at is None


def test_raising_gateway_is_recorded_as_failure(db, account, make_invoice):
    class ExplodingGateway:
        def send(self, to, to_name, subject, html):
            raise RuntimeError("connection reset")

    invoice = make_invoice(account, DUE)

    results = run_followups(db, ExplodingGateway(), now=at(DUE))

    assert results.failed == 1
    row = followups_of(db, invoice.id)[0]
    assert row.status == FollowUpStatus.FAILED
    assert row.error_message == "connection reset"


def test_paid_and_paused_invoices_are_not_selected(db, account, make_invoice, gateway):
    paid = make_invoice(account, DUE)
    paused = make_invoice(account, DUE)
    paid.status = InvoiceStatus.PAID
    paused.reminders_enabled = False
    db.commit()

    results = run_followups(db, gateway, now=at(DUE))

    assert results.scanned_invoices == 0
    assert results.total_followups == 0
    assert gateway.sent == []


def test_past_and_future_rows_are_not_selected(db, account, make_invoice, gateway):
    make_invoice(account, DUE)

    results = run_followups(db, gateway, now=at(DUE + timedelta(days=1)))

    assert results.total_followups == 0


def test_entitlement_exclusion_is_counted(db, account, make_invoice, gateway):
    free = crud.create_account(db, "free@example.com")
    expired = crud.create_account(db, "expired@example.com", subscription_status=SubscriptionStatus.ACTIVE,
                                  subscription_ends_at=at(DUE, 0))
    trial_over = crud.create_account(db, "trial@example.com", subscription_status=SubscriptionStatus.TRIALING,
                                     trial_ends_at=at(DUE - timedelta(days=1)))
    trialing = crud.create_account(db, "trialing@example.com", subscription_status=SubscriptionStatus.TRIALING,
                                   trial_ends_at=at(DUE + timedelta(days=10)))
    for owner in (account, free, expired, trial_over, trialing):
        make_invoice(owner, DUE)

    results = run_followups(db, gateway, now=at(DUE))

    assert results.scanned_invoices == 5
    assert results.eligible_invoices == 2
    assert results.skipped_not_entitled == 3
    assert results.total_followups == 2
    assert results.sent == 2


def test_batch_limit_caps_the_run(db, account, make_invoice, gateway):
    for _ in range(3):
        make_invoice(account, DUE)

    results = run_followups(db, gateway, now=at(DUE), batch_limit=2)

    assert results.batch_limit == 2
    assert results.total_followups == 2
    assert results.sent == 2
    assert results.sent + results.skipped + results.failed <= results.total_followups

    later = run_followups(db, gateway, now=at(DUE, 18), batch_limit=2)
    assert later.total_followups == 1
    assert later.sent == 1


def count_grouped_queries(db, gateway, now):
    statements = []

    def capture(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(engine, "before_cursor_execute", capture)
    try:
        run_followups(db, gateway, now=now, daily_cap=5)
    finally:
        event.remove(engine, "before_cursor_execute", capture)
    return len([s for s in statements if "GROUP BY" in s.upper()])


def test_grouped_counts_do_not_grow_with_batch_size(db, account, make_invoice, gateway):
    make_invoice(account, DUE)
    small = count_grouped_queries(db, gateway, at(DUE))

    for _ in range(5):
        make_invoice(account, DUE + timedelta(days=1))
    large = count_grouped_queries(db, gateway, at(DUE + timedelta(days=1)))

    assert small == 2
    assert large == 2
    assert len(gateway.sent) == 6


def test_store_failure_aborts_the_run(db, account, make_invoice, gateway, monkeypatch):
    make_invoice(account, DUE)

    def broken(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr("invoiceflow.sweep.log_attempt", broken)

    with pytest.raises(SweepAborted) as exc:
        run_followups(db, gateway, now=at(DUE))
    assert exc.value.status_code == 500


class RowRemovingGateway:
    """Deletes the pending rows of the first recipient's invoice mid-send, from another session."""

    def __init__(self, invoices):
        self.by_email = {inv.client_email: inv.id for inv in invoices}
        self.removed_invoice_id = None
        self.sent = []

    def send(self, to, to_name, subject, html):
        self.sent.append(to)
        if self.removed_invoice_id is None:
            self.removed_invoice_id = self.by_email[to]
            other = SessionLocal()
            try:
                other.execute(delete(FollowUp).where(
                    FollowUp.invoice_id == self.removed_invoice_id,
                    FollowUp.status == FollowUpStatus.PENDING,
                ))
                other.commit()
            finally:
                other.close()
        return EmailSendResult(success=True, provider_message_id="removed-mid-send")


def test_row_removed_during_send_is_logged_and_run_continues(db, account, make_invoice):
    first = make_invoice(account, DUE, client_email="first@example.com")
    second = make_invoice(account, DUE, client_email="second@example.com")
    gateway = RowRemovingGateway([first, second])

    results = run_followups(db, gateway, now=at(DUE))

    assert results.total_followups == 2
    assert results.sent == 2
    assert results.failed == 0
    assert len(gateway.sent) == 2

    removed_id = gateway.removed_invoice_id
    kept_id = second.id if removed_id == first.id else first.id
    assert followups_of(db, removed_id) == []
    (log,) = logs_of(db, removed_id)
    assert log.success is True
    assert log.follow_up_id is None

    kept_rows = followups_of(db, kept_id)
    assert kept_rows[0].status == FollowUpStatus.SENT
    (kept_log,) = logs_of(db, kept_id)
    assert kept_log.follow_up_id == kept_rows[0].id


def test_cap_is_rechecked_against_an_overlapping_run(db, account, make_invoice, gateway, monkeypatch):
    schedule = same_day_schedule(db, account)
    invoice = make_invoice(account, DUE, schedule_id=schedule.id)
    now = at(DUE)

    # Daily counts the second run loaded before the first run sent anything
    stale_counts = prefetch_sent_today(db, [invoice.id], now)
    assert stale_counts == {}

    first_run = run_followups(db, gateway, now=now, batch_limit=1, daily_cap=1)
    assert first_run.sent == 1

    monkeypatch.setattr("invoiceflow.sweep.prefetch_sent_today", lambda *args: dict(stale_counts))
    other = SessionLocal()
    try:
        second_run = run_followups(other, gateway, now=now, daily_cap=1)
    finally:
        other.close()

    assert second_run.total_followups == 1
    assert second_run.sent == 0
    assert second_run.skipped_rate_limit == 1
    assert len(gateway.sent) == 1
    assert len([log for log in logs_of(db, invoice.id) if log.success]) == 1
    statuses = sorted(r.status.value for r in followups_of(db, invoice.id))
    assert statuses == ["SENT", "SKIPPED"]


def test_explicit_zero_limits_are_honoured(db, account, make_invoice, gateway):
    invoice = make_invoice(account, DUE)

    nothing = run_followups(db, gateway, now=at(DUE), batch_limit=0)
    assert nothing.batch_limit == 0
    assert nothing.total_followups == 0

    capped = run_followups(db, gateway, now=at(DUE), daily_cap=0)
    assert capped.total_followups == 1
    assert capped.skipped_rate_limit == 1
    assert gateway.sent == []
    assert followups_of(db, invoice.id)[0].status == FollowUpStatus.SKIPPED
