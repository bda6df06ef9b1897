"""
Schedule store: per-account reminder schedules and their default.

Every account has exactly one default schedule. Nothing in the database
enforces that, so every path that touches ``is_default`` goes through this
module: ``set_default`` clears the other defaults and sets the new one in the
same transaction, and ``ensure_default_schedule`` repairs an account with zero
or several defaults.

Functions here flush but never commit; the caller owns the transaction.
"""
import logging
from typing import Dict, List, Sequence
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload
from invoiceflow.errors import InvalidUpdate, NotFound, ScheduleConflict
from invoiceflow.models import Invoice, Schedule, ScheduleStep, Template
from invoiceflow.schemas import ScheduleCreate, ScheduleUpdate, StepIn

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULE_NAME = "Standard Payment Reminder"

DEFAULT_TEMPLATES = [
    {
        "name": "Friendly Reminder",
        "subject": "Reminder: Invoice {invoiceNumber} is due",
        "body": (
            "Hi {clientName},\n\n"
            "This is a friendly reminder that invoice {invoiceNumber} for {amount} "
            "is due today ({dueDate}).\n\n"
            "Please let us know if you have any questions or if payment has already been sent.\n\n"
            "Thank you for your business!\n\n"
            "Best regards"
        ),
        "is_default": True,
    },
    {
        "name": "Neutral Follow-up",
        "subject": "Follow-up: Invoice {invoiceNumber} is overdue",
        "body": (
            "Hi {clientName},\n\n"
            "We wanted to follow up regarding invoice {invoiceNumber} for {amount}, "
            "which is now {daysOverdue} days overdue.\n\n"
            "The invoice was due on {dueDate}. We would appreciate prompt payment.\n\n"
            "If you have already sent payment, please disregard this message.\n\n"
            "Thank you for your attention to this matter."
        ),
        "is_default": False,
    },
    {
        "name": "Firm Reminder",
        "subject": "Final reminder: Invoice {invoiceNumber} is past due",
        "body": (
            "Dear {clientName},\n\n"
            "This is a final reminder that invoice {invoiceNumber} for {amount} "
            "is now {daysOverdue} days past due.\n\n"
            "The original due date was {dueDate}. Please remit payment immediately "
            "or contact us to discuss this matter.\n\n"
            "Regards"
        ),
        "is_default": False,
    },
]

# (template name, day offset) for the default schedule, in step order
DEFAULT_STEPS = [
    ("Friendly Reminder", 0),
    ("Neutral Follow-up", 3),
    ("Firm Reminder", 7),
]


def ensure_default_templates(db: Session, account_id: str) -> Dict[str, Template]:
    """Create any missing default templates; returns the account's templates by name."""
    existing = db.scalars(select(Template).where(Template.account_id == account_id)).all()
    by_name = {t.name: t for t in existing}
    has_default = any(t.is_default for t in existing)

    for default in DEFAULT_TEMPLATES:
        if default["name"] in by_name:
            continue
        template = Template(
            account_id=account_id,
            name=default["name"],
            subject=default["subject"],
            body=default["body"],
            is_default=default["is_default"] and not has_default,
        )
        db.add(template)
        by_name[template.name] = template
    db.flush()
    return by_name


def _create_default_schedule(db: Session, account_id: str) -> Schedule:
    templates = ensure_default_templates(db, account_id)
    schedule = Schedule(account_id=account_id, name=DEFAULT_SCHEDULE_NAME, is_active=True, is_default=True)
    for position, (template_name, day_offset) in enumerate(DEFAULT_STEPS, start=1):
        schedule.steps.append(
            ScheduleStep(template_id=templates[template_name].id, day_offset=day_offset, order=position)
        )
    db.add(schedule)
    db.flush()
    logger.info(f"Created default schedule {schedule.id} for account {account_id}")
    return schedule


def ensure_default_schedule(db: Session, account_id: str) -> Schedule:
    """Return the account's default schedule, creating or repairing it as needed."""
    schedules = db.scalars(
        select(Schedule)
        .where(Schedule.account_id == account_id)
        .order_by(Schedule.updated_at.desc(), Schedule.created_at.desc())
    ).all()
    defaults = [s for s in schedules if s.is_default]

    if not schedules:
        return _create_default_schedule(db, account_id)

    if not defaults:
        active = next((s for s in schedules if s.is_active), None)
        if active is None:
            return _create_default_schedule(db, account_id)
        active.is_default = True
        db.flush()
        return active

    if len(defaults) > 1:
        keep, extra = defaults[0], defaults[1:]
        logger.warning(f"Account {account_id} had {len(defaults)} default schedules; keeping {keep.id}")
        for schedule in extra:
            schedule.is_default = False
        db.flush()
        return keep

    return defaults[0]


def get_schedule(db: Session, account_id: str, schedule_id: str) -> Schedule:
    schedule = db.scalars(
        select(Schedule)
        .where(Schedule.id == schedule_id, Schedule.account_id == account_id)
        .options(selectinload(Schedule.steps))
    ).one_or_none()
    if schedule is None:
        raise NotFound("Schedule not found")
    return schedule


def get_active_schedule(db: Session, account_id: str, schedule_id: str):
    return db.scalars(
        select(Schedule).where(
            Schedule.id == schedule_id,
            Schedule.account_id == account_id,
            Schedule.is_active.is_(True),
        )
    ).one_or_none()


def list_schedules(db: Session, account_id: str) -> List[Schedule]:
    return list(db.scalars(
        select(Schedule)
        .where(Schedule.account_id == account_id)
        .options(selectinload(Schedule.steps))
        .order_by(Schedule.created_at.desc())
    ).all())


def _build_steps(db: Session, account_id: str, steps: Sequence[StepIn]) -> List[ScheduleStep]:
    template_ids = {step.template_id for step in steps}
    owned = set(db.scalars(
        select(Template.id).where(Template.account_id == account_id, Template.id.in_(template_ids))
    ).all())
    missing = sorted(template_ids - owned)
    if missing:
        raise InvalidUpdate("Template not found or does not belong to account", template_ids=missing)
    return [
        ScheduleStep(template_id=step.template_id, day_offset=step.day_offset, order=step.order)
        for step in steps
    ]


def create_schedule(db: Session, account_id: str, payload: ScheduleCreate) -> Schedule:
    schedule = Schedule(account_id=account_id, name=payload.name, is_active=payload.is_active)
    schedule.steps = _build_steps(db, account_id, payload.steps)
    db.add(schedule)
    db.flush()
    return schedule


def set_default(db: Session, account_id: str, schedule_id: str) -> Schedule:
    schedule = get_schedule(db, account_id, schedule_id)
    if not schedule.is_active:
        raise ScheduleConflict("Cannot set inactive schedule as default")

    db.execute(
        update(Schedule)
        .where(Schedule.account_id == account_id, Schedule.is_default.is_(True), Schedule.id != schedule_id)
        .values(is_default=False)
        .execution_options(synchronize_session="fetch")
    )
    schedule.is_default = True
    db.flush()
    return schedule


def update_schedule(db: Session, account_id: str, schedule_id: str, payload: ScheduleUpdate) -> bool:
    """
    Apply a partial schedule update.

    Returns True when the change affects generated follow-ups (steps replaced or
    activation toggled) and invoices on this schedule need regenerating.
    """
    schedule = get_schedule(db, account_id, schedule_id)

    if payload.is_active is False and schedule.is_default:
        raise ScheduleConflict(
            "You must have at least one active default schedule. Set another schedule as default first."
        )
    if payload.is_default is False and schedule.is_default:
        raise ScheduleConflict("Set another schedule as default instead of unsetting the current one.")

    if payload.name is not None:
        schedule.name = payload.name
    if payload.is_active is not None:
        schedule.is_active = payload.is_active
    if payload.steps is not None:
        schedule.steps.clear()
        db.flush()
        schedule.steps.extend(_build_steps(db, account_id, payload.steps))
    db.flush()

    if payload.is_default is True and not schedule.is_default:
        set_default(db, account_id, schedule_id)

    return payload.steps is not None or payload.is_active is not None


def delete_schedule(db: Session, account_id: str, schedule_id: str) -> None:
    schedule = get_schedule(db, account_id, schedule_id)

    if schedule.is_default:
        others = db.scalar(
            select(func.count(Schedule.id)).where(Schedule.account_id == account_id, Schedule.id != schedule_id)
        )
        if not others:
            raise ScheduleConflict("Cannot delete the only schedule. This is your default schedule.")
        raise ScheduleConflict("Cannot delete the default schedule. Set another schedule as default first.")

    in_use = db.scalar(select(func.count(Invoice.id)).where(Invoice.schedule_id == schedule_id))
    if in_use:
        raise ScheduleConflict(f"Schedule is still assigned to {in_use} invoice(s)", invoice_count=in_use)

    db.delete(schedule)
    db.flush()
