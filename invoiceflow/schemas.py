from datetime import date, datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from typing import List, Optional
from invoiceflow.models import FollowUpStatus, InvoiceStatus
from invoiceflow.reminder_state import ReminderState


class TemplateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    subject: str = Field(min_length=1, max_length=500)
    body: str = Field(min_length=1)

class TemplateOut(BaseModel):
    id: str
    name: str
    subject: str
    body: str
    is_default: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class StepIn(BaseModel):
    template_id: str = Field(min_length=1)
    day_offset: int
    order: int

class StepOut(BaseModel):
    id: str
    template_id: str
    day_offset: int
    order: int

    model_config = ConfigDict(from_attributes=True)

class ScheduleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    is_active: bool = True
    steps: List[StepIn] = Field(min_length=1)

class ScheduleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None
    steps: Optional[List[StepIn]] = Field(default=None, min_length=1)

class ScheduleOut(BaseModel):
    id: str
    name: str
    is_active: bool
    is_default: bool
    steps: List[StepOut]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvoiceCreate(BaseModel):
    client_name: str = Field(min_length=1, max_length=255)
    client_email: EmailStr
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    invoice_number: str = Field(min_length=1, max_length=100)
    due_date: date
    notes: Optional[str] = None
    schedule_id: Optional[str] = None

class InvoiceUpdate(BaseModel):
    """Partial update; only fields present in the request body are applied."""
    client_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    client_email: Optional[EmailStr] = None
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    invoice_number: Optional[str] = Field(default=None, min_length=1, max_length=100)
    due_date: Optional[date] = None
    status: Optional[InvoiceStatus] = None
    notes: Optional[str] = None
    schedule_id: Optional[str] = None
    # Required whenever due_date actually changes
    restart_reminders: Optional[bool] = None

class EmailLogOut(BaseModel):
    id: str
    recipient_email: str
    subject: str
    success: bool
    sent_at: datetime
    error_message: Optional[str]

    model_config = ConfigDict(from_attributes=True)

class FollowUpOut(BaseModel):
    id: str
    scheduled_date: date
    status: FollowUpStatus
    subject: str
    body: str
    sent_at: Optional[datetime]
    error_message: Optional[str]

    model_config = ConfigDict(from_attributes=True)

class FollowUpDetailOut(FollowUpOut):
    logs: List[EmailLogOut] = []

class InvoiceOut(BaseModel):
    id: str  # UUID stored as string for portability
    client_name: str
    client_email: str
    amount: Decimal
    currency: str
    invoice_number: str
    due_date: date
    status: InvoiceStatus
    notes: Optional[str]
    schedule_id: Optional[str]
    reminders_enabled: bool
    reminders_base_due_date: Optional[date]
    reminders_completed: bool
    reminders_paused_reason: Optional[str]
    last_reminder_sent_at: Optional[datetime]
    total_scheduled_reminders: Optional[int]
    reminders_reset_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    follow_ups: List[FollowUpOut] = []

    model_config = ConfigDict(from_attributes=True)

class ReminderStateOut(BaseModel):
    state: ReminderState
    label: str
    color: str
    description: str
    message: Optional[str]

class InvoiceDetailOut(InvoiceOut):
    follow_ups: List[FollowUpDetailOut] = []
    reminder_state: ReminderStateOut


class SweepResults(BaseModel):
    scanned_invoices: int = 0
    eligible_invoices: int = 0
    skipped_not_entitled: int = 0
    total_followups: int = 0
    batch_limit: int = 0
    sent: int = 0
    skipped: int = 0
    skipped_rate_limit: int = 0
    skipped_already_processed: int = 0
    failed: int = 0

class SweepResponse(BaseModel):
    success: bool
    timestamp: datetime
    duration_ms: int
    results: SweepResults
