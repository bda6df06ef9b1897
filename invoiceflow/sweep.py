"""
Delivery sweep: sends the reminders that fall due today.

One run picks up to ``batch_limit`` PENDING follow-ups scheduled for the
current UTC day, for PENDING invoices with reminders enabled that belong to
entitled accounts, and processes them oldest first. Every candidate is its own
transaction, so a failure on one never blocks or undoes another.

A follow-up leaves PENDING exactly once. Re-running the sweep the same day, or
two sweeps overlapping, cannot send a reminder twice: a candidate that is no
longer PENDING or that already has an EmailLog today is skipped, and the
status transitions are conditional on the row still being PENDING.

The invoice row is locked for the whole candidate. Regeneration takes the same
lock before deleting pending rows, and the daily cap is recounted under it, so
overlapping sweeps cannot both pass the cap for one invoice. A send that has
gone out is always logged, even if its follow-up row has since disappeared.

Run from the command line with ``python -m invoiceflow.sweep``.
"""
import logging
import sys
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Tuple
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from invoiceflow.config import settings
from invoiceflow.db import Base, SessionLocal, engine
from invoiceflow.email_gateway import EmailGateway, EmailSendResult, build_gateway, text_to_html
from invoiceflow.entitlement import entitled_account_clause
from invoiceflow.errors import SweepAborted
from invoiceflow.models import EmailLog, FollowUp, FollowUpStatus, Invoice, InvoiceStatus, utcnow
from invoiceflow.schemas import SweepResults

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Max follow-ups per day limit reached"


def day_window(now: datetime) -> Tuple[date, date, datetime, datetime]:
    """UTC day containing ``now`` as dates (for scheduled_date) and datetimes (for EmailLog)."""
    today = now.date()
    start = datetime.combine(today, time.min)
    return today, today + timedelta(days=1), start, start + timedelta(days=1)


def _due_followup_filter(today: date, tomorrow: date):
    return (
        FollowUp.status == FollowUpStatus.PENDING,
        FollowUp.scheduled_date >= today,
        FollowUp.scheduled_date < tomorrow,
    )


def _sendable_invoice_filter():
    return (
        Invoice.status == InvoiceStatus.PENDING,
        Invoice.reminders_enabled.is_(True),
    )


def count_invoices_due(db: Session, now: datetime, entitled_only: bool = False) -> int:
    today, tomorrow, _, _ = day_window(now)
    query = (
        select(func.count(func.distinct(Invoice.id)))
        .select_from(Invoice)
        .join(FollowUp, FollowUp.invoice_id == Invoice.id)
        .where(*_sendable_invoice_filter(), *_due_followup_filter(today, tomorrow))
    )
    if entitled_only:
        query = query.where(entitled_account_clause(Invoice.account_id, now))
    return db.scalar(query) or 0


def pick_due_followups(db: Session, now: datetime, limit: int) -> List[Tuple[str, str]]:
    """``(follow_up_id, invoice_id)`` pairs for this run, oldest first."""
    today, tomorrow, _, _ = day_window(now)
    rows = db.execute(
        select(FollowUp.id, FollowUp.invoice_id)
        .join(Invoice, FollowUp.invoice_id == Invoice.id)
        .where(*_due_followup_filter(today, tomorrow))
        .where(*_sendable_invoice_filter())
        .where(entitled_account_clause(Invoice.account_id, now))
        .order_by(FollowUp.scheduled_date.asc(), FollowUp.created_at.asc(), FollowUp.id.asc())
        .limit(limit)
    ).all()
    return [(row[0], row[1]) for row in rows]


def prefetch_sent_today(db: Session, invoice_ids: Iterable[str], now: datetime) -> Dict[str, int]:
    """Successful sends per invoice in the current UTC day, one grouped query."""
    ids = list(invoice_ids)
    if not ids:
        return {}
    _, _, start, end = day_window(now)
    rows = db.execute(
        select(EmailLog.invoice_id, func.count(EmailLog.id))
        .where(
            EmailLog.success.is_(True),
            EmailLog.sent_at >= start,
            EmailLog.sent_at < end,
            EmailLog.invoice_id.in_(ids),
        )
        .group_by(EmailLog.invoice_id)
    ).all()
    return {invoice_id: count for invoice_id, count in rows}


def count_sent_today(db: Session, invoice_id: str, now: datetime) -> int:
    """Successful sends for one invoice in the current UTC day, read under the invoice lock."""
    _, _, start, end = day_window(now)
    return db.scalar(
        select(func.count(EmailLog.id))
        .where(
            EmailLog.invoice_id == invoice_id,
            EmailLog.success.is_(True),
            EmailLog.sent_at >= start,
            EmailLog.sent_at < end,
        )
    ) or 0


def prefetch_followup_counts(db: Session, invoice_ids: Iterable[str]) -> Dict[str, List[int]]:
    """``invoice_id -> [total follow-ups, sent follow-ups]``, one grouped query."""
    ids = list(invoice_ids)
    if not ids:
        return {}
    rows = db.execute(
        select(
            FollowUp.invoice_id,
            func.count(FollowUp.id),
            func.sum(case((FollowUp.status == FollowUpStatus.SENT, 1), else_=0)),
        )
        .where(FollowUp.invoice_id.in_(ids))
        .group_by(FollowUp.invoice_id)
    ).all()
    return {invoice_id: [total, int(sent or 0)] for invoice_id, total, sent in rows}


def _transition(db: Session, follow_up_id: str, **values) -> bool:
    """PENDING -> ``values['status']``; False when the row already left PENDING."""
    result = db.execute(
        update(FollowUp)
        .where(FollowUp.id == follow_up_id, FollowUp.status == FollowUpStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def mark_skipped(db: Session, follow_up: FollowUp, reason: str) -> bool:
    return _transition(db, follow_up.id, status=FollowUpStatus.SKIPPED, error_message=reason)


def mark_sent(db: Session, follow_up: FollowUp, sent_at: datetime) -> bool:
    return _transition(db, follow_up.id, status=FollowUpStatus.SENT, sent_at=sent_at, error_message=None)


def mark_failed(db: Session, follow_up: FollowUp, error: str) -> bool:
    return _transition(db, follow_up.id, status=FollowUpStatus.FAILED, error_message=error)


def _follow_up_exists(db: Session, follow_up_id: str) -> bool:
    return db.scalar(select(FollowUp.id).where(FollowUp.id == follow_up_id)) is not None


def log_attempt(db: Session, follow_up: FollowUp, invoice: Invoice, result: EmailSendResult,
                now: datetime, follow_up_exists: bool = True):
    db.add(EmailLog(
        invoice_id=invoice.id,
        follow_up_id=follow_up.id if follow_up_exists else None,
        recipient_email=invoice.client_email,
        subject=follow_up.subject,
        success=result.success,
        sent_at=now,
        error_message=None if result.success else result.error_message,
    ))


def _send(gateway: EmailGateway, invoice: Invoice, follow_up: FollowUp) -> EmailSendResult:
    try:
        return gateway.send(
            to=invoice.client_email,
            to_name=invoice.client_name,
            subject=follow_up.subject,
            html=text_to_html(follow_up.body),
        )
    except Exception as e:
        # Gateways report failures in the result; a raising one is still a failed attempt
        logger.exception(f"Email gateway raised for follow-up {follow_up.id}")
        return EmailSendResult(success=False, error_message=str(e) or e.__class__.__name__)


def _skip_processed(db: Session, results: SweepResults) -> None:
    db.rollback()
    results.skipped += 1
    results.skipped_already_processed += 1


def _process_candidate(db: Session, gateway: EmailGateway, follow_up_id: str, invoice_id: str,
                       now: datetime, daily_cap: int, sent_today: Dict[str, int],
                       followup_counts: Dict[str, List[int]], results: SweepResults) -> None:
    _, _, start, end = day_window(now)

    # Invoice first, then the follow-up: the order regeneration locks in
    invoice = db.scalars(
        select(Invoice)
        .where(Invoice.id == invoice_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).one_or_none()
    follow_up = db.scalars(
        select(FollowUp)
        .where(FollowUp.id == follow_up_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).one_or_none()
    if invoice is None or follow_up is None or follow_up.status != FollowUpStatus.PENDING:
        _skip_processed(db, results)
        return
    if invoice.status != InvoiceStatus.PENDING or not invoice.reminders_enabled:
        # Paid, cancelled or paused after selection
        _skip_processed(db, results)
        return

    already_logged = db.scalar(
        select(EmailLog.id)
        .where(EmailLog.follow_up_id == follow_up.id, EmailLog.sent_at >= start, EmailLog.sent_at < end)
        .limit(1)
    )
    if already_logged is not None:
        _skip_processed(db, results)
        return

    sent_count = sent_today.get(invoice.id, 0)
    if sent_count < daily_cap:
        # Another sweep may have sent for this invoice since the batch was loaded
        sent_count = count_sent_today(db, invoice.id, now)
        sent_today[invoice.id] = sent_count
    if sent_count >= daily_cap:
        mark_skipped(db, follow_up, RATE_LIMIT_MESSAGE)
        db.commit()
        results.skipped += 1
        results.skipped_rate_limit += 1
        return

    result = _send(gateway, invoice, follow_up)

    if not result.success:
        transitioned = mark_failed(db, follow_up, result.error_message or "Failed to send email")
        log_attempt(db, follow_up, invoice, result, now,
                    follow_up_exists=transitioned or _follow_up_exists(db, follow_up.id))
        db.commit()
        results.failed += 1
        logger.warning(f"Follow-up {follow_up.id} failed: {result.error_message}")
        return

    transitioned = mark_sent(db, follow_up, now)
    log_attempt(db, follow_up, invoice, result, now,
                follow_up_exists=transitioned or _follow_up_exists(db, follow_up.id))
    invoice.last_reminder_sent_at = now
    invoice.updated_at = now

    if transitioned:
        counts = followup_counts.setdefault(invoice.id, [0, 0])
        counts[1] += 1
        total, sent = counts
        if total and sent >= total:
            invoice.reminders_completed = True
            invoice.total_scheduled_reminders = total
            logger.info(f"Invoice {invoice.id}: all {total} scheduled reminders sent")
    else:
        logger.warning(
            f"Follow-up {follow_up.id} was removed or processed elsewhere during send; "
            f"attempt logged against invoice {invoice.id}"
        )

    db.commit()
    sent_today[invoice.id] = sent_today.get(invoice.id, 0) + 1
    results.sent += 1


def run_followups(db: Session, gateway: EmailGateway, now: Optional[datetime] = None,
                  batch_limit: Optional[int] = None, daily_cap: Optional[int] = None) -> SweepResults:
    """
    Process today's due follow-ups.

    Raises SweepAborted when the database fails; candidates already processed
    keep their committed outcome.
    """
    now = now or utcnow()
    if batch_limit is None:
        batch_limit = settings.followup_batch_limit
    if daily_cap is None:
        daily_cap = settings.max_followups_per_day_per_invoice

    try:
        scanned = count_invoices_due(db, now)
        eligible = count_invoices_due(db, now, entitled_only=True)
        candidates = pick_due_followups(db, now, batch_limit)
        invoice_ids = {invoice_id for _, invoice_id in candidates}
        sent_today = prefetch_sent_today(db, invoice_ids, now)
        followup_counts = prefetch_followup_counts(db, invoice_ids)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Sweep could not load candidates: {e}")
        raise SweepAborted("Internal server error", details=str(e))

    results = SweepResults(
        scanned_invoices=scanned,
        eligible_invoices=eligible,
        skipped_not_entitled=scanned - eligible,
        total_followups=len(candidates),
        batch_limit=batch_limit,
    )
    logger.info(f"Sweep started: {len(candidates)} follow-up(s) due for {len(invoice_ids)} invoice(s)")

    for follow_up_id, invoice_id in candidates:
        try:
            _process_candidate(db, gateway, follow_up_id, invoice_id, now, daily_cap,
                               sent_today, followup_counts, results)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Sweep aborted at follow-up {follow_up_id}: {e}")
            raise SweepAborted("Internal server error", details=str(e), results=results.model_dump())
        except Exception:
            db.rollback()
            logger.exception(f"Failed to process follow-up {follow_up_id}")
            results.failed += 1

    logger.info(
        f"Sweep finished: {results.total_followups} processed "
        f"(sent: {results.sent}, skipped: {results.skipped}, failed: {results.failed}); "
        f"eligible invoices: {results.eligible_invoices} / {results.scanned_invoices} "
        f"({results.skipped_not_entitled} not entitled)"
    )
    return results


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    Base.metadata.create_all(bind=engine)
    gateway = build_gateway(settings)
    started = utcnow()
    db = SessionLocal()
    try:
        results = run_followups(db, gateway)
    except SweepAborted as e:
        logger.error(f"Sweep aborted: {e.details or e.error}")
        return 1
    finally:
        db.close()
    logger.info(f"Sweep completed in {int((utcnow() - started).total_seconds() * 1000)}ms: {results.model_dump()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
