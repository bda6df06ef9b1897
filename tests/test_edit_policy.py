from datetime import date, datetime
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from invoiceflow import crud
from invoiceflow.edit_policy import (
    FULL_EDIT_FIELDS, PAUSED_NO_RESTART, allowed_update_fields, apply_invoice_update, compute_reminder_restart,
)
from invoiceflow.errors import (
    InvalidUpdate, PaidInvoiceLocked, RestartDecisionRequired, RestrictedFields, ScheduleLocked,
)
from invoiceflow.models import FollowUp, FollowUpStatus, InvoiceStatus
from invoiceflow.schedules import create_schedule, ensure_default_templates
from invoiceflow.schemas import InvoiceUpdate, ScheduleCreate, StepIn
from invoiceflow.sweep import run_followups

DUE = date(2025, 3, 10)
BEFORE_DUE = datetime(2025, 3, 1, 12, 0)


def followups_of(db, invoice_id):
    return list(db.scalars(
        select(FollowUp).where(FollowUp.invoice_id == invoice_id).order_by(FollowUp.scheduled_date, FollowUp.id)
    ).all())


def mark_first_sent(db, invoice):
    row = followups_of(db, invoice.id)[0]
    row.status = FollowUpStatus.SENT
    row.sent_at = datetime(2025, 3, 10, 9, 0)
    invoice.last_reminder_sent_at = row.sent_at
    db.commit()
    return row


def complete_reminders(db, invoice, gateway):
    for day in (10, 13, 17):
        run_followups(db, gateway, now=datetime(2025, 3, day, 9, 0))
    db.refresh(invoice)
    assert invoice.reminders_completed is True


def update(db, account, invoice, now=BEFORE_DUE, **fields):
    return apply_invoice_update(db, account.id, invoice.id, InvoiceUpdate(**fields), now=now)


# ---- pure helpers ----

def test_full_edit_mode_without_sent_reminders():
    invoice = SimpleNamespace(status=InvoiceStatus.PENDING, reminders_completed=False, due_date=DUE)
    allowed, restricted = allowed_update_fields(invoice, 0, date(2025, 3, 1))
    assert allowed == FULL_EDIT_FIELDS
    assert restricted is False


def test_limited_edit_mode_after_a_send():
    invoice = SimpleNamespace(status=InvoiceStatus.PENDING, reminders_completed=False, due_date=DUE)
    allowed, restricted = allowed_update_fields(invoice, 1, date(2025, 3, 10))
    assert allowed == {"notes", "status"}
    assert restricted is True


def test_limited_edit_mode_allows_due_date_once_overdue():
    invoice = SimpleNamespace(status=InvoiceStatus.PENDING, reminders_completed=False, due_date=DUE)
    allowed, _ = allowed_update_fields(invoice, 1, date(2025, 3, 20))
    assert allowed == {"notes", "status", "due_date"}


def test_paid_invoice_allows_nothing():
    invoice = SimpleNamespace(status=InvoiceStatus.PAID, reminders_completed=False, due_date=DUE)
    assert allowed_update_fields(invoice, 0) == (frozenset(), True)


def test_restart_decision_matrix():
    assert compute_reminder_restart(None, False, False, False).should_regenerate is False

    with pytest.raises(RestartDecisionRequired):
        compute_reminder_restart(None, True, False, False)

    now = datetime(2025, 4, 1)
    restart = compute_reminder_restart(True, True, True, True, new_due_date=date(2025, 4, 15), now=now)
    assert restart.should_regenerate is True
    assert restart.updates == {
        "reminders_enabled": True,
        "reminders_base_due_date": date(2025, 4, 15),
        "reminders_reset_at": now,
        "reminders_completed": False,
        "reminders_paused_reason": None,
    }

    paused = compute_reminder_restart(False, True, True, False)
    assert paused.should_regenerate is False
    assert paused.updates == {"reminders_enabled": False, "reminders_paused_reason": PAUSED_NO_RESTART}

    untouched = compute_reminder_restart(False, True, False, False)
    assert untouched.should_regenerate is False
    assert untouched.updates == {}


# ---- restriction boundary ----

def test_client_name_rejected_after_one_send(db, account, make_invoice):
    invoice = make_invoice(account, DUE)
    mark_first_sent(db, invoice)

    with pytest.raises(RestrictedFields) as exc:
        update(db, account, invoice, now=datetime(2025, 3, 10, 12, 0), client_name="Someone Else")

    assert exc.value.fields == ["client_name"]
    assert exc.value.sent_count == 1
    assert "1 reminder(s) already sent" in exc.value.details
    db.refresh(invoice)
    assert invoice.client_name == "Acme Corp"


def test_notes_and_status_allowed_after_one_send(db, account, make_invoice):
    invoice = make_invoice(account, DUE)
    mark_first_sent(db, invoice)
    now = datetime(2025, 3, 10, 12, 0)

    updated = update(db, account, invoice, now=now, notes="Client promised payment Friday")
    assert updated.notes == "Client promised payment Friday"

    updated = update(db, account, invoice, now=now, status=InvoiceStatus.PAID)
    assert updated.status == InvoiceStatus.PAID
    rows = followups_of(db, invoice.id)
    assert [r.status for r in rows] == [FollowUpStatus.SENT]


def test_resubmitting_unchanged_values_is_not_an_edit(db, account, make_invoice):
    invoice = make_invoice(account, DUE)
    mark_first_sent(db, invoice)

    updated = update(db, account, invoice, now=datetime(2025, 3, 10, 12, 0),
                     client_name="Acme Corp", currency="usd", notes="ok")
    assert updated.notes == "ok"


def test_schedule_change_is_locked_after_a_send(db, account, make_invoice):
    invoice = make_invoice(account, DUE)
    mark_first_sent(db, invoice)
    template = ensure_default_templates(db, account.id)["Firm Reminder"]
    schedule = create_schedule(db, account.id, ScheduleCreate(
        name="Aggressive", steps=[StepIn(template_id=template.id, day_offset=1, order=1)],
    ))
    db.commit()

    with pytest.raises(ScheduleLocked) as exc:
        update(db, account, invoice, now=datetime(2025, 3, 10, 12, 0), schedule_id=schedule.id, notes="x")
    assert exc.value.status_code == 409
    assert exc.value.sent_count == 1


def test_paid_invoice_rejects_every_edit(db, account, make_invoice):
    invoice = make_invoice(account, DUE)
    invoice.status = InvoiceStatus.PAID
    db.commit()

    with pytest.raises(PaidInvoiceLocked):
        update(db, account, invoice, notes="late note")


def test_foreign_schedule_is_rejected(db, account, make_invoice):
    invoice = make_invoice(account, DUE)
    other = crud.create_account(db, "other@example.com")
    foreign = other.schedules[0]

    with pytest.raises(InvalidUpdate):
        update(db, account, invoice, schedule_id=foreign.id)


def test_foreign_schedule_after_a_send_reports_the_lock(db, account, make_invoice):
    invoice = make_invoice(account, DUE)
    mark_first_sent(db, invoice)
    other = crud.create_account(db, "other@example.com")
    foreign = other.schedules[0]

    with pytest.raises(ScheduleLocked) as exc:
        update(db, account, invoice, now=datetime(2025, 3, 10, 12, 0), schedule_id=foreign.id)
    assert exc.value.sent_count == 1
    db.refresh(invoice)
    assert invoice.schedule_id is None


# ---- due date changes ----

def test_due_date_change_without_decision_is_rejected(db, account, make_invoice):
    invoice = make_invoice(account, DUE)

    with pytest.raises(RestartDecisionRequired):
        update(db, account, invoice, due_date=date(2025, 4, 1))

    db.refresh(invoice)
    assert invoice.due_date == DUE
    assert [r.scheduled_date.day for r in followups_of(db, invoice.id)] == [10, 13, 17]


def test_same_due_date_needs_no_decision(db, account, make_invoice):
    invoice = make_invoice(account, DUE)
    updated = update(db, account, invoice, due_date=DUE, notes="same date")
    assert updated.notes == "same date"


def test_restart_in_full_edit_mode_reschedules(db, account, make_invoice):
    invoice = make_invoice(account, DUE)

    updated = update(db, account, invoice, due_date=date(2025, 4, 1), restart_reminders=True)

    assert updated.reminders_base_due_date == date(2025, 4, 1)
    assert updated.reminders_reset_at == BEFORE_DUE
    assert [r.scheduled_date for r in followups_of(db, invoice.id)] == [
        date(2025, 4, 1), date(2025, 4, 4), date(2025, 4, 8),
    ]


def test_no_restart_before_due_date_leaves_reminders_alone(db, account, make_invoice):
    invoice = make_invoice(account, DUE)

    updated = update(db, account, invoice, due_date=date(2025, 4, 1), restart_reminders=False)

    assert updated.reminders_enabled is True
    assert updated.reminders_paused_reason is None
    assert [r.scheduled_date.day for r in followups_of(db, invoice.id)] == [10, 13, 17]


def test_schedule_change_regenerates(db, account, make_invoice):
    invoice = make_invoice(account, DUE)
    template = ensure_default_templates(db, account.id)["Firm Reminder"]
    schedule = create_schedule(db, account.id, ScheduleCreate(
        name="Single", steps=[StepIn(template_id=template.id, day_offset=14, order=1)],
    ))
    db.commit()

    update(db, account, invoice, schedule_id=schedule.id)

    rows = followups_of(db, invoice.id)
    assert [r.scheduled_date for r in rows] == [date(2025, 3, 24)]
    assert rows[0].subject.startswith("Final reminder")


def test_restart_after_completion(db, account, make_invoice, gateway):
    invoice = make_invoice(account, DUE)
    complete_reminders(db, invoice, gateway)
    sent_before = {r.id: r.sent_at for r in followups_of(db, invoice.id)}
    assert len(sent_before) == 3

    new_due = date(2025, 4, 15)
    updated = update(db, account, invoice, now=datetime(2025, 3, 20, 10, 0),
                     due_date=new_due, restart_reminders=True)

    assert updated.reminders_completed is False
    assert updated.reminders_enabled is True
    assert updated.reminders_base_due_date == new_due
    rows = followups_of(db, invoice.id)
    sent = [r for r in rows if r.status == FollowUpStatus.SENT]
    pending = [r for r in rows if r.status == FollowUpStatus.PENDING]
    assert {r.id: r.sent_at for r in sent} == sent_before
    assert [r.scheduled_date for r in pending] == [date(2025, 4, 15), date(2025, 4, 18), date(2025, 4, 22)]


def test_pause_without_restart(db, account, make_invoice, gateway):
    invoice = make_invoice(account, DUE)
    complete_reminders(db, invoice, gateway)

    updated = update(db, account, invoice, now=datetime(2025, 3, 20, 10, 0),
                     due_date=date(2025, 5, 1), restart_reminders=False)

    assert updated.reminders_enabled is False
    assert updated.reminders_paused_reason == PAUSED_NO_RESTART
    assert updated.reminders_completed is True
    rows = followups_of(db, invoice.id)
    assert len(rows) == 3
    assert all(r.status == FollowUpStatus.SENT for r in rows)


def test_due_date_still_locked_while_reminders_in_progress(db, account, make_invoice):
    invoice = make_invoice(account, DUE)
    mark_first_sent(db, invoice)

    with pytest.raises(RestrictedFields) as exc:
        update(db, account, invoice, now=datetime(2025, 3, 10, 12, 0),
               due_date=date(2025, 4, 1), restart_reminders=True)
    assert exc.value.fields == ["due_date"]
