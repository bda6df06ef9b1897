"""
Outbound transactional email.

The sweep treats delivery as a black box: ``send`` returns an
``EmailSendResult`` and never raises for delivery problems. Retrying is not
the gateway's job.
"""
import logging
from dataclasses import dataclass
from email.utils import parseaddr
from typing import Optional, Protocol

import requests

from invoiceflow.config import Settings

logger = logging.getLogger(__name__)

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"


@dataclass(frozen=True)
class EmailSendResult:
    success: bool
    error_message: Optional[str] = None
    provider_message_id: Optional[str] = None


class EmailGateway(Protocol):
    def send(self, to: str, to_name: str, subject: str, html: str) -> EmailSendResult: ...


def text_to_html(body: str) -> str:
    return body.replace("\n", "<br>")


class ConsoleEmailGateway:
    """Development gateway: logs the message instead of sending it."""

    def send(self, to: str, to_name: str, subject: str, html: str) -> EmailSendResult:
        logger.info("========== EMAIL (DEV MODE) ==========")
        logger.info(f"To: {to_name} <{to}>")
        logger.info(f"Subject: {subject}")
        logger.info(f"HTML: {html}")
        logger.info("======================================")
        return EmailSendResult(success=True, provider_message_id="console")


class BrevoEmailGateway:
    """Sends through the Brevo transactional email API."""

    def __init__(self, api_key: str, email_from: str, timeout_seconds: int = 30):
        if not api_key or not api_key.strip():
            raise ValueError("BREVO_API_KEY must be set when EMAIL_PROVIDER=brevo")
        sender_name, sender_email = parseaddr(email_from)
        if not sender_email:
            raise ValueError(f"Invalid EMAIL_FROM value: '{email_from}'")
        self._api_key = api_key.strip()
        self._sender = {"name": sender_name or "Invoice Reminders", "email": sender_email}
        self._timeout_seconds = timeout_seconds

    def send(self, to: str, to_name: str, subject: str, html: str) -> EmailSendResult:
        payload = {
            "sender": self._sender,
            "to": [{"email": to, "name": to_name}],
            "subject": subject,
            "htmlContent": html,
        }
        headers = {
            "api-key": self._api_key,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        try:
            response = requests.post(BREVO_API_URL, headers=headers, json=payload,
                                     timeout=self._timeout_seconds)
        except requests.Timeout as e:
            return EmailSendResult(success=False, error_message=f"Request timed out: {e}")
        except requests.RequestException as e:
            return EmailSendResult(success=False, error_message=f"Connection error: {e}")

        if response.status_code not in (200, 201, 202):
            return EmailSendResult(
                success=False,
                error_message=f"HTTP {response.status_code}: {response.text[:500]}",
            )

        try:
            message_id = response.json().get("messageId")
        except ValueError:
            message_id = None
        return EmailSendResult(success=True, provider_message_id=message_id)


def build_gateway(settings: Settings) -> EmailGateway:
    if settings.email_provider == "brevo":
        return BrevoEmailGateway(
            api_key=settings.brevo_api_key,
            email_from=settings.email_from,
            timeout_seconds=settings.email_timeout_seconds,
        )
    return ConsoleEmailGateway()
