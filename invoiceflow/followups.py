"""
Follow-up generation: turns a schedule into dated, pre-rendered reminder rows.

Only PENDING rows are ever replaced. Rows already SENT, SKIPPED or FAILED are
delivery history and survive every regeneration untouched.

Nothing here commits. Rows are flushed into the caller's transaction so an
invoice update and the regeneration it triggers land together or not at all.
"""
import logging
from datetime import timedelta
from typing import List, Optional
from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session, selectinload
from invoiceflow.errors import NotFound
from invoiceflow.models import FollowUp, FollowUpStatus, Invoice, InvoiceStatus, Schedule, ScheduleStep
from invoiceflow.schedules import ensure_default_schedule
from invoiceflow.templating import format_amount, format_date, render_template

logger = logging.getLogger(__name__)


def _get_invoice(db: Session, account_id: str, invoice_id: str, lock: bool = False) -> Invoice:
    query = select(Invoice).where(Invoice.id == invoice_id, Invoice.account_id == account_id)
    if lock:
        # Same row lock the delivery sweep holds while sending
        query = query.with_for_update().execution_options(populate_existing=True)
    invoice = db.scalars(query).one_or_none()
    if invoice is None:
        raise NotFound("Invoice not found")
    return invoice


def _load_schedule(db: Session, account_id: str, schedule_id: str) -> Optional[Schedule]:
    return db.scalars(
        select(Schedule)
        .where(Schedule.id == schedule_id, Schedule.account_id == account_id, Schedule.is_active.is_(True))
        .options(selectinload(Schedule.steps).selectinload(ScheduleStep.template))
    ).one_or_none()


def resolve_schedule(db: Session, account_id: str, invoice: Invoice, schedule_id: Optional[str] = None) -> Schedule:
    """Explicit schedule, else the invoice's own, else the account default."""
    effective_id = schedule_id or invoice.schedule_id
    schedule = _load_schedule(db, account_id, effective_id) if effective_id else None
    if schedule is None:
        if effective_id:
            logger.warning(f"Schedule {effective_id} unavailable for invoice {invoice.id}; using default")
        schedule = ensure_default_schedule(db, account_id)
    return schedule


def reminder_variables(invoice: Invoice, day_offset: int) -> dict:
    return {
        "clientName": invoice.client_name,
        "amount": format_amount(invoice.amount, invoice.currency),
        "currency": invoice.currency,
        "dueDate": format_date(invoice.due_date),
        "invoiceNumber": invoice.invoice_number,
        "daysOverdue": str(max(day_offset, 0)),
        "invoiceLink": invoice.notes or "",
    }


def _delete_pending(db: Session, invoice_id: str) -> int:
    result = db.execute(
        delete(FollowUp)
        .where(FollowUp.invoice_id == invoice_id, FollowUp.status == FollowUpStatus.PENDING)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


def generate_followups(db: Session, account_id: str, invoice_id: str,
                       schedule_id: Optional[str] = None) -> List[FollowUp]:
    """
    Create one PENDING follow-up per schedule step for a PENDING invoice.

    Existing PENDING rows are replaced, so calling this twice leaves the same
    set of rows behind. Invoices in any other status are left alone.
    """
    invoice = _get_invoice(db, account_id, invoice_id)
    if invoice.status != InvoiceStatus.PENDING:
        return []

    schedule = resolve_schedule(db, account_id, invoice, schedule_id)
    steps = sorted(schedule.steps, key=lambda s: s.order)
    if not steps:
        logger.error(f"Schedule {schedule.id} has no steps; no follow-ups for invoice {invoice.id}")
        return []

    _delete_pending(db, invoice.id)

    created = []
    for step in steps:
        variables = reminder_variables(invoice, step.day_offset)
        follow_up = FollowUp(
            invoice_id=invoice.id,
            template_id=step.template_id,
            # due_date is a calendar date, so this never drifts across DST
            scheduled_date=invoice.due_date + timedelta(days=step.day_offset),
            status=FollowUpStatus.PENDING,
            subject=render_template(step.template.subject, variables),
            body=render_template(step.template.body, variables),
        )
        db.add(follow_up)
        created.append(follow_up)
    db.flush()
    db.expire(invoice, ["follow_ups"])

    logger.info(f"Generated {len(created)} follow-up(s) for invoice {invoice.id} from schedule {schedule.id}")
    return created


def regenerate_followups(db: Session, account_id: str, invoice_id: str) -> List[FollowUp]:
    """
    Rebuild PENDING rows from the invoice's current schedule and due date.

    The invoice row is locked first, so pending rows are never deleted under a
    sweep that is sending one of them.
    """
    invoice = _get_invoice(db, account_id, invoice_id, lock=True)
    if invoice.status != InvoiceStatus.PENDING:
        pruned = _delete_pending(db, invoice.id)
        db.flush()
        db.expire(invoice, ["follow_ups"])
        if pruned:
            logger.info(f"Pruned {pruned} pending follow-up(s) of {invoice.status.value} invoice {invoice.id}")
        return []
    return generate_followups(db, account_id, invoice_id, invoice.schedule_id)


def regenerate_all_followups(db: Session, account_id: str, schedule_id: Optional[str] = None) -> int:
    """
    Regenerate every PENDING invoice of the account, optionally only those on
    ``schedule_id``. Paused and completed invoices keep their rows.

    Returns the number of invoices regenerated.
    """
    query = select(Invoice.id).where(
        Invoice.account_id == account_id,
        Invoice.status == InvoiceStatus.PENDING,
        Invoice.reminders_enabled.is_(True),
        Invoice.reminders_completed.is_(False),
    )
    if schedule_id is not None:
        is_default = db.scalar(
            select(Schedule.is_default).where(Schedule.id == schedule_id, Schedule.account_id == account_id)
        )
        if is_default:
            # Unassigned invoices follow the default schedule
            query = query.where(or_(Invoice.schedule_id == schedule_id, Invoice.schedule_id.is_(None)))
        else:
            query = query.where(Invoice.schedule_id == schedule_id)

    invoice_ids = db.scalars(query.order_by(Invoice.created_at)).all()
    for invoice_id in invoice_ids:
        regenerate_followups(db, account_id, invoice_id)
    return len(invoice_ids)
