"""
Shared pytest fixtures.

Environment is pinned before any gatepass module is imported: the server
and the redemption backend switch read it at import time.
"""

from __future__ import annotations

import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="gatepass-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/server.db"
os.environ["APP_ENV"] = "testing"
os.environ["PAYMENT_GATEWAY"] = "mock"
os.environ["REDEMPTION_BACKEND"] = "sql"
os.environ["RESEND_API_KEY"] = ""
os.environ["FROM_EMAIL"] = ""

from typing import Any, List, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from gatepass.gateway import MockPay  # noqa: E402
from gatepass.infra.sql import Database  # noqa: E402
from gatepass.model import redemption  # noqa: E402
from gatepass.model.ledger import (  # noqa: E402
    AttendeeDraft, PurchaseDraft, PurchaseLedger, TicketSnapshot,
)
from gatepass.model.orm import Base  # noqa: E402
from gatepass.reconcile import ReconciliationPipeline, ReconcileRequest  # noqa: E402

from fakes import FakeMailer  # noqa: E402

EVENT = {"name": "Test Fest", "venue": "Hall A", "time": "8:00 PM"}

CATALOG = {
    1: {"name": "General Admission", "price": 7000, "seats": 1},
    2: {"name": "Couple Pass", "price": 13000, "seats": 2},
    3: {"name": "Squad of 4", "price": 25000, "seats": 4},
}


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path}/test.db")
    await database.start()
    await database.create_all(Base.metadata)
    yield database
    await database.stop()


@pytest.fixture
def ledger(db) -> PurchaseLedger:
    return PurchaseLedger(db)


@pytest.fixture
def redemptions(db):
    return redemption.new_store(db=db)


@pytest.fixture
def mockpay() -> MockPay:
    return MockPay(secret="test-secret")


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def make_pipeline(ledger, mockpay, mailer):
    def _make(**kw: Any) -> ReconciliationPipeline:
        kw.setdefault("mailer", mailer)
        kw.setdefault("event", EVENT)
        kw.setdefault("catalog", CATALOG)
        return ReconciliationPipeline(
            ledger=ledger,
            gateway=mockpay,
            receipt_base_url="https://tickets.example.com",
            **kw,
        )
    return _make


@pytest.fixture
def paid(mockpay):
    """Initialize and settle a mock transaction, return a ReconcileRequest."""

    async def _paid(
        reference: str,
        amount: float = 7000,
        *,
        ticket_id: int = 1,
        ticket: Optional[dict] = None,
        transaction_reference: Optional[str] = None,
        attendees: Optional[List[dict]] = None,
        buyer: str = "Ada Obi",
        email: str = "ada@example.com",
        settle: Optional[str] = "succeeded",
    ) -> ReconcileRequest:
        await mockpay.initialize_transaction(
            email=email,
            amount_minor=round(amount * 100),
            reference=reference,
            callback_url="https://tickets.example.com/done",
        )
        if settle:
            mockpay.settle(reference, settle)
        if ticket is None:
            ticket = {"id": ticket_id, **CATALOG.get(ticket_id, {})}
        payload = {
            "transactionReference": transaction_reference or f"tx-{reference}",
            "paymentReference": reference,
            "amountPaid": amount,
            "customerName": buyer,
            "customerEmail": email,
            "ticket": ticket,
        }
        if attendees is not None:
            payload["attendees"] = attendees
        return ReconcileRequest.from_payload(payload)

    return _paid


@pytest.fixture
def issued(ledger):
    """Persist a purchase holding the given serials directly."""

    async def _issued(serials: List[str], reference: str = "ref-issued"):
        draft = PurchaseDraft(
            transaction_reference=f"tx-{reference}",
            payment_reference=reference,
            amount_paid=13000.0,
            customer_name="Ada Obi",
            customer_email="ada@example.com",
            paid_on=1_700_000_000.0,
            ticket=TicketSnapshot(name="Couple Pass", seats=len(serials),
                                  id=2, price=13000.0),
            attendees=[
                AttendeeDraft(name=f"Guest {i + 1}",
                              email=f"guest{i + 1}@example.com",
                              ticket_name="Couple Pass", serial=s)
                for i, s in enumerate(serials)
            ],
        )
        return await ledger.create_purchase(draft)

    return _issued
