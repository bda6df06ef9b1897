"""
Reminder lifecycle state of an invoice.

The state is derived, never stored: callers pass the invoice and its already
loaded follow-ups and get one of four states back. Precedence lives in
``STATE_RULES``, an ordered table where the first matching rule wins, so the
order can be read and tested on its own.

The ``reminders_completed`` flag is the only completion signal. It is set by
the delivery sweep when the last scheduled reminder goes out; the classifier
does not re-derive completion from follow-up counts.
"""
import enum
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple


class ReminderState(str, enum.Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    STOPPED = "STOPPED"


@dataclass(frozen=True)
class StateDisplay:
    label: str
    color: str
    description: str


def _value(field: Any) -> Any:
    return getattr(field, "value", field)


def _sent_count(follow_ups: Sequence[Any]) -> int:
    return sum(1 for f in follow_ups if _value(f.status) == "SENT")


def _is_paid(invoice: Any, follow_ups: Sequence[Any]) -> bool:
    return _value(invoice.status) == "PAID"


def _is_completed(invoice: Any, follow_ups: Sequence[Any]) -> bool:
    return bool(invoice.reminders_completed)


def _nothing_sent(invoice: Any, follow_ups: Sequence[Any]) -> bool:
    return _sent_count(follow_ups) == 0 and invoice.last_reminder_sent_at is None


def _always(invoice: Any, follow_ups: Sequence[Any]) -> bool:
    return True


Rule = Tuple[str, Callable[[Any, Sequence[Any]], bool], ReminderState]

STATE_RULES: List[Rule] = [
    ("invoice paid", _is_paid, ReminderState.STOPPED),
    ("reminders completed", _is_completed, ReminderState.COMPLETED),
    ("no reminder sent yet", _nothing_sent, ReminderState.NOT_STARTED),
    ("reminders underway", _always, ReminderState.IN_PROGRESS),
]

STATE_DISPLAY = {
    ReminderState.NOT_STARTED: StateDisplay("Reminders Pending", "slate", "No reminders sent yet"),
    ReminderState.IN_PROGRESS: StateDisplay("Reminders Active", "blue", "Sending scheduled reminders"),
    ReminderState.COMPLETED: StateDisplay(
        "Reminders Completed", "amber", "All scheduled reminders sent - manual action needed"
    ),
    ReminderState.STOPPED: StateDisplay("Paid", "green", "Invoice paid - reminders stopped"),
}


def classify(invoice: Any, follow_ups: Iterable[Any]) -> ReminderState:
    loaded = list(follow_ups)
    for _name, matches, state in STATE_RULES:
        if matches(invoice, loaded):
            return state
    # STATE_RULES ends with a catch-all
    raise AssertionError("no reminder state rule matched")


def state_display(state: ReminderState) -> StateDisplay:
    return STATE_DISPLAY[state]


def is_reminder_exhausted(invoice: Any, follow_ups: Iterable[Any]) -> bool:
    return classify(invoice, follow_ups) == ReminderState.COMPLETED


def reminder_status_message(invoice: Any, follow_ups: Iterable[Any]) -> Optional[str]:
    """Sentence shown next to the state badge, or None when there is nothing to say."""
    loaded = list(follow_ups)
    state = classify(invoice, loaded)

    if state == ReminderState.COMPLETED:
        return (
            "All scheduled reminder emails have been sent. No more emails will go out "
            "unless you change the schedule or take manual action."
        )
    if state == ReminderState.NOT_STARTED:
        if _value(invoice.status) in ("PENDING", "OVERDUE"):
            return "Reminders will be sent based on your schedule."
        return None
    if state == ReminderState.IN_PROGRESS:
        total = invoice.total_scheduled_reminders or len(loaded)
        if total:
            return f"{_sent_count(loaded)} of {total} scheduled reminders sent."
        return "Reminders are being sent according to schedule."
    return None
