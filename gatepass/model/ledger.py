# model/ledger.py
"""
Purchase ledger: the durable record of completed purchases and the serials
issued to each attendee.

- purchases are inserted together with their attendees in one transaction
- attendees.serial carries a UNIQUE index across the whole table
- purchases.payment_reference is UNIQUE (one purchase per settled payment)
- purchases.transaction_reference is UNIQUE too, so a client reference
  cannot be attached to two payments
- nothing here updates or deletes a purchase
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from ..helpers import now_ts, to_iso
from ..infra.sql import Database, store_errors
from ..infra.timings import timeit
from .orm import Attendee, Purchase


@dataclass
class TicketSnapshot:
    name: str
    seats: int
    id: Optional[int] = None
    price: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "seats": self.seats,
        }


@dataclass
class AttendeeDraft:
    name: str
    email: str
    ticket_name: str
    serial: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "serial": self.serial,
            "ticketName": self.ticket_name,
        }


@dataclass
class PurchaseDraft:
    transaction_reference: str
    payment_reference: str
    amount_paid: float
    customer_name: str
    customer_email: str
    paid_on: float
    ticket: TicketSnapshot
    attendees: List[AttendeeDraft] = field(default_factory=list)
    currency: str = "NGN"
    raw: Optional[Dict[str, Any]] = None


class SerialConflict(Exception):
    """an attendee serial in the draft is already taken"""


class DuplicatePayment(Exception):
    """a purchase for this payment reference already exists"""

    def __init__(self, purchase: Dict[str, Any]) -> None:
        self.purchase = purchase
        super().__init__(purchase["paymentReference"])


class TransactionReferenceTaken(Exception):
    """the transaction reference belongs to a purchase for another payment"""


def purchase_to_dict(p: Purchase) -> Dict[str, Any]:
    return {
        "id": p.id,
        "transactionReference": p.transaction_reference,
        "paymentReference": p.payment_reference,
        "amountPaid": p.amount_paid,
        "currency": p.currency,
        "customerName": p.customer_name,
        "customerEmail": p.customer_email,
        "paidOn": to_iso(p.paid_on),
        "createdAt": to_iso(p.created_at),
        "ticket": {
            "id": p.ticket_id,
            "name": p.ticket_name,
            "price": p.ticket_price,
            "seats": p.ticket_seats,
        },
        "attendees": [
            {
                "name": a.name,
                "email": a.email,
                "serial": a.serial,
                "ticketName": a.ticket_name,
            }
            for a in p.attendees
        ],
    }


class PurchaseLedger:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def serial_exists(self, serial: str) -> bool:
        async with timeit("ledger.serial_exists"):
            async with store_errors("serial_exists"):
                async with self.db.gated(), self.db.session() as s:
                    row = (await s.execute(
                        text("SELECT 1 FROM attendees WHERE serial = :serial"),
                        {"serial": serial},
                    )).first()
        return row is not None

    async def create_purchase(self, draft: PurchaseDraft) -> Dict[str, Any]:
        """
        Insert purchase + attendees atomically.

        Raises:
            DuplicatePayment: payment reference already recorded
            TransactionReferenceTaken: transaction reference used by another
                payment
            SerialConflict: some attendee serial is already taken
            StoreUnavailable: store unreachable (nothing was written)
        """
        purchase = Purchase(
            id=uuid.uuid4().hex,
            transaction_reference=draft.transaction_reference,
            payment_reference=draft.payment_reference,
            amount_paid=draft.amount_paid,
            currency=draft.currency,
            customer_name=draft.customer_name,
            customer_email=draft.customer_email,
            paid_on=draft.paid_on,
            created_at=now_ts(),
            ticket_id=draft.ticket.id,
            ticket_name=draft.ticket.name,
            ticket_price=draft.ticket.price,
            ticket_seats=draft.ticket.seats,
            raw=draft.raw,
            attendees=[
                Attendee(
                    position=i,
                    name=a.name,
                    email=a.email,
                    serial=a.serial,
                    ticket_name=a.ticket_name,
                )
                for i, a in enumerate(draft.attendees)
            ],
        )
        try:
            async with timeit("ledger.create_purchase"):
                async with store_errors("create_purchase"):
                    async with self.db.gated(), self.db.session() as s:
                        async with s.begin():
                            s.add(purchase)
        except IntegrityError as e:
            # any of the three UNIQUE constraints could have fired
            existing = await self.find_by_payment_reference(
                draft.payment_reference
            )
            if existing is not None:
                raise DuplicatePayment(existing) from e
            if await self.find_by_transaction_reference(
                draft.transaction_reference
            ) is not None:
                raise TransactionReferenceTaken(
                    draft.transaction_reference
                ) from e
            raise SerialConflict(str(e.orig)) from e
        return purchase_to_dict(purchase)

    async def _find_one(self, *where) -> Optional[Dict[str, Any]]:
        async with store_errors("find_purchase"):
            async with self.db.gated(), self.db.session() as s:
                p = (await s.execute(
                    select(Purchase)
                    .options(selectinload(Purchase.attendees))
                    .where(*where)
                    .limit(1)
                )).scalars().first()
                return purchase_to_dict(p) if p else None

    async def get_purchase(self, purchase_id: str) -> Optional[Dict[str, Any]]:
        return await self._find_one(Purchase.id == purchase_id)

    async def find_by_transaction_reference(
        self, transaction_reference: str
    ) -> Optional[Dict[str, Any]]:
        async with timeit("ledger.find_by_txref"):
            return await self._find_one(
                Purchase.transaction_reference == transaction_reference
            )

    async def find_by_payment_reference(
        self, payment_reference: str
    ) -> Optional[Dict[str, Any]]:
        async with timeit("ledger.find_by_ref"):
            return await self._find_one(
                Purchase.payment_reference == payment_reference
            )

    async def find_by_references(
        self, payment_reference: str, transaction_reference: Optional[str]
    ) -> Optional[Dict[str, Any]]:
        where = [Purchase.payment_reference == payment_reference]
        if transaction_reference:
            where.append(
                Purchase.transaction_reference == transaction_reference
            )
        return await self._find_one(*where)

    async def find_attendee(self, serial: str) -> Optional[Dict[str, Any]]:
        """
        Projected lookup: the one matching attendee plus the payment fields
        needed for a redemption snapshot. Sibling attendees are not loaded.
        """
        async with timeit("ledger.find_attendee"):
            async with store_errors("find_attendee"):
                async with self.db.gated(), self.db.session() as s:
                    row = (await s.execute(text("""
                        SELECT a.name, a.email, a.serial, a.ticket_name,
                               p.id AS purchase_id,
                               p.payment_reference, p.transaction_reference,
                               p.amount_paid, p.currency,
                               p.customer_name, p.customer_email, p.paid_on,
                               p.ticket_name AS bundle_name,
                               p.ticket_price, p.ticket_seats
                        FROM attendees AS a
                        JOIN purchases AS p ON p.id = a.purchase_id
                        WHERE a.serial = :serial
                    """), {"serial": serial})).mappings().first()
        if row is None:
            return None
        match = dict(row)
        # raw SQL: postgres hands NUMERIC back as Decimal
        for k in ("amount_paid", "ticket_price"):
            if match[k] is not None:
                match[k] = float(match[k])
        return match

    async def list_recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with store_errors("list_purchases"):
            async with self.db.gated(), self.db.session() as s:
                rows = (await s.execute(
                    select(Purchase)
                    .options(selectinload(Purchase.attendees))
                    .order_by(Purchase.created_at.desc())
                    .limit(max(1, min(limit, 500)))
                )).scalars().all()
                return [purchase_to_dict(p) for p in rows]
