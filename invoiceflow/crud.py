import secrets
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload
from invoiceflow.errors import InvalidUpdate, NotFound
from invoiceflow.followups import generate_followups
from invoiceflow.models import (
    Account, FollowUp, Invoice, InvoiceStatus, Subscription, SubscriptionStatus, Template, utcnow,
)
from invoiceflow.reminder_state import classify, reminder_status_message, state_display
from invoiceflow.schedules import ensure_default_schedule, get_active_schedule
from invoiceflow.schemas import (
    FollowUpDetailOut, InvoiceCreate, InvoiceDetailOut, InvoiceOut, ReminderStateOut, TemplateCreate,
)


def generate_api_token() -> str:
    return secrets.token_urlsafe(32)

def get_account_by_token(db: Session, token: str) -> Optional[Account]:
    return db.query(Account).filter(Account.api_token == token).one_or_none()

def create_account(
    db: Session,
    email: str,
    name: str = "",
    subscription_status: Optional[SubscriptionStatus] = None,
    subscription_ends_at: Optional[datetime] = None,
    trial_ends_at: Optional[datetime] = None,
) -> Account:
    """Create an account with its default templates and schedule."""
    account = Account(email=email, name=name, api_token=generate_api_token())
    db.add(account)
    db.flush()  # get account.id

    if subscription_status is not None:
        db.add(Subscription(
            account_id=account.id,
            status=subscription_status,
            ends_at=subscription_ends_at,
            trial_ends_at=trial_ends_at,
        ))

    ensure_default_schedule(db, account.id)
    db.commit()
    db.refresh(account)
    return account


def list_templates(db: Session, account_id: str) -> List[Template]:
    return list(db.scalars(
        select(Template).where(Template.account_id == account_id).order_by(Template.created_at.asc())
    ).all())

def create_template(db: Session, account_id: str, payload: TemplateCreate) -> Template:
    template = Template(account_id=account_id, name=payload.name, subject=payload.subject, body=payload.body)
    db.add(template)
    db.commit()
    db.refresh(template)
    return template


def get_invoice(db: Session, account_id: str, invoice_id: str) -> Invoice:
    inv = db.scalars(
        select(Invoice)
        .where(Invoice.id == invoice_id, Invoice.account_id == account_id)
        .options(selectinload(Invoice.follow_ups).selectinload(FollowUp.logs))
    ).one_or_none()
    if inv is None:
        raise NotFound("Invoice not found")
    return inv

def list_invoices(db: Session, account_id: str, status: Optional[InvoiceStatus] = None) -> List[Invoice]:
    query = (
        select(Invoice)
        .where(Invoice.account_id == account_id)
        .options(selectinload(Invoice.follow_ups))
        .order_by(Invoice.due_date.asc(), Invoice.created_at.asc())
    )
    if status is not None:
        query = query.where(Invoice.status == status)
    return list(db.scalars(query).all())

def create_invoice(db: Session, account_id: str, payload: InvoiceCreate) -> Invoice:
    """Create an invoice and its follow-ups in one transaction."""
    if payload.schedule_id and get_active_schedule(db, account_id, payload.schedule_id) is None:
        raise InvalidUpdate("Schedule not found or does not belong to account")

    now = utcnow()
    inv = Invoice(
        account_id=account_id,
        client_name=payload.client_name,
        client_email=str(payload.client_email),
        amount=payload.amount,
        currency=payload.currency.upper(),
        invoice_number=payload.invoice_number,
        due_date=payload.due_date,
        notes=payload.notes,
        schedule_id=payload.schedule_id,
        status=InvoiceStatus.PENDING,
        reminders_base_due_date=payload.due_date,
        created_at=now,
        updated_at=now,
    )
    db.add(inv)
    try:
        db.flush()  # get inv.id
        generate_followups(db, account_id, inv.id, payload.schedule_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(inv)
    return inv

def delete_invoice(db: Session, account_id: str, invoice_id: str) -> None:
    inv = get_invoice(db, account_id, invoice_id)
    db.delete(inv)
    db.commit()


def invoice_detail(inv: Invoice) -> InvoiceDetailOut:
    """Invoice with follow-ups, their delivery logs and the derived reminder state."""
    follow_ups = list(inv.follow_ups)
    state = classify(inv, follow_ups)
    display = state_display(state)
    base = InvoiceOut.model_validate(inv).model_dump(exclude={"follow_ups"})
    return InvoiceDetailOut(
        **base,
        follow_ups=[FollowUpDetailOut.model_validate(f) for f in follow_ups],
        reminder_state=ReminderStateOut(
            state=state,
            label=display.label,
            color=display.color,
            description=display.description,
            message=reminder_status_message(inv, follow_ups),
        ),
    )
