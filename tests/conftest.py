import os

os.environ["DATABASE_URL"] = "sqlite:///./test_invoiceflow.db"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["EMAIL_PROVIDER"] = "console"

from datetime import date
from decimal import Decimal

import pytest

from invoiceflow import crud
from invoiceflow.db import Base, SessionLocal, engine
from invoiceflow.email_gateway import EmailSendResult
from invoiceflow.models import SubscriptionStatus
from invoiceflow.schemas import InvoiceCreate


class FakeGateway:
    """Records every message; fails them all when ``fail`` is set."""

    def __init__(self, fail: bool = False, error: str = "Mailbox unavailable"):
        self.fail = fail
        self.error = error
        self.sent = []

    def send(self, to, to_name, subject, html):
        self.sent.append({"to": to, "to_name": to_name, "subject": subject, "html": html})
        if self.fail:
            return EmailSendResult(success=False, error_message=self.error)
        return EmailSendResult(success=True, provider_message_id=f"fake-{len(self.sent)}")


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def failing_gateway():
    return FakeGateway(fail=True)


@pytest.fixture
def account(db):
    return crud.create_account(db, "owner@example.com", "Owner", subscription_status=SubscriptionStatus.ACTIVE)


@pytest.fixture
def make_invoice(db):
    counter = {"n": 0}

    def _make(account, due_date: date, schedule_id=None, **overrides):
        counter["n"] += 1
        fields = {
            "client_name": "Acme Corp",
            "client_email": "billing@acme.example.com",
            "amount": Decimal("1250.00"),
            "currency": "USD",
            "invoice_number": f"INV-{counter['n']:04d}",
            "due_date": due_date,
            "schedule_id": schedule_id,
        }
        fields.update(overrides)
        return crud.create_invoice(db, account.id, InvoiceCreate(**fields))

    return _make
