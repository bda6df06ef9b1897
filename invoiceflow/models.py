import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional
from sqlalchemy import Boolean, Date, DateTime, Enum, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from invoiceflow.db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    # UUID stored as string for portability
    return str(uuid.uuid4())


class InvoiceStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"

class FollowUpStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"

class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    api_token: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    subscription: Mapped[Optional["Subscription"]] = relationship(
        back_populates="account", cascade="all, delete-orphan", uselist=False
    )
    invoices: Mapped[List["Invoice"]] = relationship(back_populates="account", cascade="all, delete-orphan")
    schedules: Mapped[List["Schedule"]] = relationship(back_populates="account", cascade="all, delete-orphan")
    templates: Mapped[List["Template"]] = relationship(back_populates="account", cascade="all, delete-orphan")


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id", ondelete="CASCADE"), unique=True)
    status: Mapped[SubscriptionStatus] = mapped_column(Enum(SubscriptionStatus), default=SubscriptionStatus.ACTIVE)
    ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    account: Mapped["Account"] = relationship(back_populates="subscription")

    __table_args__ = (Index("ix_subscriptions_status_ends_at", "status", "ends_at"),)


class Template(Base):
    __tablename__ = "templates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    subject: Mapped[str] = mapped_column(String(500))
    body: Mapped[str] = mapped_column(Text)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    account: Mapped["Account"] = relationship(back_populates="templates")


class Schedule(Base):
    __tablename__ = "schedules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Exactly one per account; maintained by schedules.set_default, not by a constraint
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    account: Mapped["Account"] = relationship(back_populates="schedules")
    steps: Mapped[List["ScheduleStep"]] = relationship(
        back_populates="schedule", cascade="all, delete-orphan", order_by="ScheduleStep.order"
    )

    __table_args__ = (Index("ix_schedules_account_default", "account_id", "is_default"),)


class ScheduleStep(Base):
    __tablename__ = "schedule_steps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    schedule_id: Mapped[str] = mapped_column(ForeignKey("schedules.id", ondelete="CASCADE"), index=True)
    template_id: Mapped[str] = mapped_column(ForeignKey("templates.id"))
    # Days relative to the due date; negative fires before it
    day_offset: Mapped[int] = mapped_column(Integer)
    order: Mapped[int] = mapped_column("step_order", Integer, default=0)

    schedule: Mapped["Schedule"] = relationship(back_populates="steps")
    template: Mapped["Template"] = relationship()


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id", ondelete="CASCADE"), index=True)

    client_name: Mapped[str] = mapped_column(String(255))
    client_email: Mapped[str] = mapped_column(String(255))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    invoice_number: Mapped[str] = mapped_column(String(100))
    due_date: Mapped[date] = mapped_column(Date)
    status: Mapped[InvoiceStatus] = mapped_column(Enum(InvoiceStatus), default=InvoiceStatus.PENDING, index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    schedule_id: Mapped[Optional[str]] = mapped_column(ForeignKey("schedules.id"), nullable=True, index=True)

    # Reminder control
    reminders_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    reminders_base_due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    reminders_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    reminders_paused_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    total_scheduled_reminders: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reminders_reset_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    account: Mapped["Account"] = relationship(back_populates="invoices")
    schedule: Mapped[Optional["Schedule"]] = relationship()
    follow_ups: Mapped[List["FollowUp"]] = relationship(
        back_populates="invoice", cascade="all, delete-orphan", order_by="FollowUp.scheduled_date"
    )

    __table_args__ = (Index("ix_invoices_status_reminders_enabled", "status", "reminders_enabled"),)


class FollowUp(Base):
    __tablename__ = "follow_ups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    invoice_id: Mapped[str] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), index=True)
    template_id: Mapped[Optional[str]] = mapped_column(ForeignKey("templates.id", ondelete="SET NULL"), nullable=True)
    scheduled_date: Mapped[date] = mapped_column(Date)
    status: Mapped[FollowUpStatus] = mapped_column(Enum(FollowUpStatus), default=FollowUpStatus.PENDING)

    # Rendered at generation time; template edits never reach scheduled rows
    subject: Mapped[str] = mapped_column(String(500))
    body: Mapped[str] = mapped_column(Text)

    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    invoice: Mapped["Invoice"] = relationship(back_populates="follow_ups")
    logs: Mapped[List["EmailLog"]] = relationship(
        back_populates="follow_up", cascade="all, delete-orphan", order_by="EmailLog.sent_at"
    )

    __table_args__ = (Index("ix_follow_ups_status_scheduled_date", "status", "scheduled_date"),)


class EmailLog(Base):
    __tablename__ = "email_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    invoice_id: Mapped[str] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"))
    # Cleared when a pending row is regenerated away; the attempt itself stays on record
    follow_up_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("follow_ups.id", ondelete="SET NULL"), nullable=True
    )
    recipient_email: Mapped[str] = mapped_column(String(255))
    subject: Mapped[str] = mapped_column(String(500))
    success: Mapped[bool] = mapped_column(Boolean)
    sent_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    follow_up: Mapped[Optional["FollowUp"]] = relationship(back_populates="logs")

    __table_args__ = (
        Index("ix_email_logs_follow_up_sent_at", "follow_up_id", "sent_at"),
        Index("ix_email_logs_invoice_sent_at", "invoice_id", "sent_at"),
    )
