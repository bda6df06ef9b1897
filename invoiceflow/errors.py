"""
Domain errors raised by the reminder core.

Each error knows the HTTP status it maps to, so the API layer can render any
of them with a single exception handler. ``details`` carries the structured
context an end user needs to understand the refusal (sent-reminder count,
rejected fields).
"""
from typing import Any, Dict, List, Optional


class InvoiceFlowError(Exception):
    status_code = 400

    def __init__(self, error: str, details: Optional[str] = None, **context: Any):
        super().__init__(error)
        self.error = error
        self.details = details
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": False, "error": self.error}
        if self.details:
            payload["details"] = self.details
        payload.update(self.context)
        return payload


class NotFound(InvoiceFlowError):
    status_code = 404


class InvalidUpdate(InvoiceFlowError):
    """Input is well-formed but breaks a domain rule (foreign schedule, foreign template)."""


class ScheduleConflict(InvoiceFlowError):
    """Default-schedule invariant or in-use schedule would be violated."""


class PaidInvoiceLocked(InvoiceFlowError):
    def __init__(self):
        super().__init__("Paid invoices cannot be edited to maintain financial audit trail")


class RestrictedFields(InvoiceFlowError):
    def __init__(self, fields: List[str], sent_count: int):
        super().__init__(
            f"Cannot edit {', '.join(fields)} after reminders have been sent",
            details=(
                f"{sent_count} reminder(s) already sent. Only 'notes' and 'status' "
                "can be edited to preserve audit trail."
            ),
            fields=fields,
            sent_count=sent_count,
        )
        self.fields = fields
        self.sent_count = sent_count


class ScheduleLocked(InvoiceFlowError):
    status_code = 409

    def __init__(self, sent_count: int):
        super().__init__(
            "Cannot change schedule after reminders have been sent",
            details=f"{sent_count} reminder(s) already sent. Schedule is locked to preserve audit trail.",
            sent_count=sent_count,
        )
        self.sent_count = sent_count


class RestartDecisionRequired(InvoiceFlowError):
    def __init__(self):
        super().__init__(
            "restart_reminders is required when the due date changes",
            details="Send restart_reminders=true to reschedule reminders from the new due date, "
                    "or false to keep the current reminders.",
        )


class SweepAborted(InvoiceFlowError):
    """The store failed mid-sweep; the remaining batch was not processed."""
    status_code = 500
