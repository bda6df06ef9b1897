"""
Invoice edit policy.

Once a reminder has gone out, the invoice it quoted is part of the audit
trail: only ``notes`` and ``status`` stay editable, and the schedule is locked.
The one exception is the due date of an invoice whose reminders have run out
(completed, or the invoice is overdue): the caller may move it, and must say
whether reminders restart from the new date.

PAID invoices accept no edits at all.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, FrozenSet, Optional, Tuple
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from invoiceflow.errors import (
    InvalidUpdate, NotFound, PaidInvoiceLocked, RestartDecisionRequired,
    RestrictedFields, ScheduleLocked,
)
from invoiceflow.followups import regenerate_followups
from invoiceflow.models import FollowUp, FollowUpStatus, Invoice, InvoiceStatus, utcnow
from invoiceflow.schedules import get_active_schedule
from invoiceflow.schemas import InvoiceUpdate

logger = logging.getLogger(__name__)

PAUSED_NO_RESTART = "user_updated_date_no_restart"

FULL_EDIT_FIELDS: FrozenSet[str] = frozenset({
    "client_name", "client_email", "amount", "currency", "invoice_number",
    "due_date", "status", "notes", "schedule_id",
})
LIMITED_EDIT_FIELDS: FrozenSet[str] = frozenset({"notes", "status"})
NULLABLE_FIELDS: FrozenSet[str] = frozenset({"notes", "schedule_id"})


@dataclass
class ReminderRestart:
    should_regenerate: bool = False
    updates: Dict[str, Any] = field(default_factory=dict)


def is_overdue(invoice: Invoice, today: date) -> bool:
    if invoice.status == InvoiceStatus.OVERDUE:
        return True
    return invoice.status == InvoiceStatus.PENDING and invoice.due_date < today


def allowed_update_fields(invoice: Invoice, sent_count: int,
                          today: Optional[date] = None) -> Tuple[FrozenSet[str], bool]:
    """Return ``(allowed fields, is_restricted)`` for the invoice's current state."""
    if invoice.status == InvoiceStatus.PAID:
        return frozenset(), True
    if sent_count == 0:
        return FULL_EDIT_FIELDS, False

    today = today or utcnow().date()
    if invoice.reminders_completed or is_overdue(invoice, today):
        # Moving the due date here always comes with a restart decision
        return LIMITED_EDIT_FIELDS | {"due_date"}, True
    return LIMITED_EDIT_FIELDS, True


def compute_reminder_restart(restart_reminders: Optional[bool], due_date_changed: bool,
                             is_overdue: bool, reminders_completed: bool,
                             new_due_date: Optional[date] = None,
                             now: Optional[datetime] = None) -> ReminderRestart:
    """
    Decide what a due-date change does to reminders.

    Raises RestartDecisionRequired when the date changed and the caller gave
    no explicit ``restart_reminders``.
    """
    if not due_date_changed:
        return ReminderRestart()

    if restart_reminders is None:
        raise RestartDecisionRequired()

    if restart_reminders:
        return ReminderRestart(
            should_regenerate=True,
            updates={
                "reminders_enabled": True,
                "reminders_base_due_date": new_due_date,
                "reminders_reset_at": now or utcnow(),
                "reminders_completed": False,
                "reminders_paused_reason": None,
            },
        )

    if is_overdue or reminders_completed:
        return ReminderRestart(updates={
            "reminders_enabled": False,
            "reminders_paused_reason": PAUSED_NO_RESTART,
        })

    return ReminderRestart()


def _requested_changes(invoice: Invoice, update: InvoiceUpdate) -> Dict[str, Any]:
    """Fields present in the request whose value differs from the stored one."""
    changes = {}
    for name in update.model_fields_set - {"restart_reminders"}:
        value = getattr(update, name)
        if value is None and name not in NULLABLE_FIELDS:
            raise InvalidUpdate(f"{name} cannot be null")
        if name == "currency":
            value = value.upper()
        elif name == "client_email":
            value = str(value)
        if getattr(invoice, name) != value:
            changes[name] = value
    return changes


def _sent_count(db: Session, invoice_id: str) -> int:
    return db.scalar(
        select(func.count(FollowUp.id))
        .where(FollowUp.invoice_id == invoice_id, FollowUp.status == FollowUpStatus.SENT)
    ) or 0


def apply_invoice_update(db: Session, account_id: str, invoice_id: str,
                         update: InvoiceUpdate, now: Optional[datetime] = None) -> Invoice:
    """
    Validate ``update`` against the edit policy and apply it.

    The field changes, the reminder flags and any regeneration of pending
    follow-ups are committed together; a rejected update changes nothing.
    """
    now = now or utcnow()
    today = now.date()

    invoice = db.scalars(
        select(Invoice)
        .where(Invoice.id == invoice_id, Invoice.account_id == account_id)
        .with_for_update()
    ).one_or_none()
    if invoice is None:
        raise NotFound("Invoice not found")

    if invoice.status == InvoiceStatus.PAID:
        raise PaidInvoiceLocked()

    changes = _requested_changes(invoice, update)

    sent_count = _sent_count(db, invoice.id)
    allowed, is_restricted = allowed_update_fields(invoice, sent_count, today)
    disallowed = sorted(set(changes) - allowed)
    if is_restricted and disallowed:
        if "schedule_id" in disallowed:
            raise ScheduleLocked(sent_count)
        raise RestrictedFields(disallowed, sent_count)

    if changes.get("schedule_id") is not None:
        if get_active_schedule(db, account_id, changes["schedule_id"]) is None:
            raise InvalidUpdate("Schedule not found or does not belong to account")

    restart = compute_reminder_restart(
        update.restart_reminders,
        due_date_changed="due_date" in changes,
        is_overdue=is_overdue(invoice, today),
        reminders_completed=invoice.reminders_completed,
        new_due_date=changes.get("due_date"),
        now=now,
    )

    try:
        for name, value in changes.items():
            setattr(invoice, name, value)
        for name, value in restart.updates.items():
            setattr(invoice, name, value)
        invoice.updated_at = now
        db.flush()

        if restart.should_regenerate or "status" in changes or "schedule_id" in changes:
            regenerate_followups(db, account_id, invoice.id)

        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(invoice)
    if restart.should_regenerate:
        logger.info(f"Invoice {invoice.id}: reminders restarted from {invoice.due_date}")
    elif restart.updates:
        logger.info(f"Invoice {invoice.id}: reminders paused ({invoice.reminders_paused_reason})")
    return invoice
