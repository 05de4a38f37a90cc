# reconcile.py
"""
Payment reconciliation: turn a gateway-confirmed payment into one persisted
purchase with one unique serial per seat, then mail receipts.

Steps run strictly in order within one call:

    validate -> dedupe on payment reference -> resolve bundle in catalog
      -> verify with gateway -> normalize attendees -> draw serials
      -> persist (retry on serial conflict) -> email (best effort) -> result

Idempotency: the payment reference, the one the gateway verifies, is the
dedup key. A second call for an already recorded payment returns the first
purchase untouched (`duplicate=True`) and mails nothing, whatever
transaction reference it carries; the UNIQUE index on
purchases.payment_reference covers two calls racing past the lookup.

Bundle name, price and seats come from the server catalog keyed by
`ticket.id`. The client only picks the id, and the gateway must have settled
exactly the catalog price.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .errors import InvalidInput, PaymentNotVerified, PersistenceConflict
from .gateway import PaymentAdapter, Verification, is_settled
from .helpers import is_valid_email, now_ts, parse_ts, receipt_url
from .infra.timings import timeit
from .mailer import Mailer, render
from .model.ledger import (
    AttendeeDraft, DuplicatePayment, PurchaseDraft, PurchaseLedger,
    SerialConflict, TicketSnapshot, TransactionReferenceTaken,
)
from .model.serials import SerialGenerator

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PERSIST_ATTEMPTS = 3
DEFAULT_TICKET_NAME = "Event Ticket"

EMAIL_SENT = "sent"
EMAIL_PARTIAL = "partial"
EMAIL_SKIPPED = "skipped"


# ----------------------------
# Request / result
# ----------------------------
def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


@dataclass
class ReconcileRequest:
    transaction_reference: str
    payment_reference: str
    amount_paid: float
    customer_name: str
    customer_email: str
    paid_on: Optional[float] = None
    ticket: Optional[Dict[str, Any]] = None
    attendees: Optional[List[Dict[str, Any]]] = None
    raw: Any = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ReconcileRequest":
        """Parse the camelCase API body. Raises InvalidInput."""
        if not isinstance(payload, dict):
            raise InvalidInput("Body must be a JSON object")
        txref = _text(payload.get("transactionReference"))
        ref = _text(payload.get("paymentReference"))
        name = _text(payload.get("customerName"))
        email = _text(payload.get("customerEmail"))
        amount = payload.get("amountPaid")

        missing = [
            k for k, v in (
                ("transactionReference", txref),
                ("paymentReference", ref),
                ("customerName", name),
                ("customerEmail", email),
                ("amountPaid", amount),
            ) if v in ("", None)
        ]
        if missing:
            raise InvalidInput(
                "Missing required fields: " + ", ".join(missing)
            )
        if not is_valid_email(email):
            raise InvalidInput("customerEmail must be a valid email address")
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            raise InvalidInput("amountPaid must be a number")
        if amount <= 0:
            raise InvalidInput("amountPaid must be positive")

        ticket = payload.get("ticket")
        if ticket is not None and not isinstance(ticket, dict):
            raise InvalidInput("ticket must be an object")
        attendees = payload.get("attendees")
        if attendees is not None:
            if not isinstance(attendees, list) or not all(
                isinstance(a, dict) for a in attendees
            ):
                raise InvalidInput("attendees must be a list of objects")

        return cls(
            transaction_reference=txref,
            payment_reference=ref,
            amount_paid=amount,
            customer_name=name,
            customer_email=email,
            paid_on=parse_ts(payload.get("paidOn")),
            ticket=ticket,
            attendees=attendees,
            raw=payload.get("raw"),
        )

    @classmethod
    def from_gateway(cls, data: Dict[str, Any],
                     minor_units: int = 100) -> "ReconcileRequest":
        """
        Build a request from a gateway charge payload (webhook data). Buyer,
        bundle and attendees come from the metadata attached at
        initialization.
        """
        meta = data.get("metadata") or {}
        if not isinstance(meta, dict):
            meta = {}
        customer = data.get("customer") or {}
        full_name = " ".join(
            p for p in (_text(customer.get("first_name")),
                        _text(customer.get("last_name"))) if p
        )
        return cls.from_payload({
            "transactionReference": (
                meta.get("transactionReference") or data.get("id")
                or data.get("reference")
            ),
            "paymentReference": data.get("reference"),
            "amountPaid": (int(data.get("amount") or 0) / minor_units) or None,
            "customerName": meta.get("customerName") or full_name,
            "customerEmail": meta.get("customerEmail") or customer.get("email"),
            "paidOn": data.get("paid_at") or data.get("paidAt"),
            "ticket": meta.get("ticket"),
            "attendees": meta.get("attendees"),
            "raw": data,
        })


@dataclass
class ReconcileResult:
    purchase: Dict[str, Any]
    receipt_url: str
    email_status: str
    duplicate: bool = False

    @property
    def serials(self) -> List[str]:
        return [a["serial"] for a in self.purchase["attendees"]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "id": self.purchase["id"],
            "serials": self.serials,
            "attendees": self.purchase["attendees"],
            "receiptUrl": self.receipt_url,
            "emailStatus": self.email_status,
            "duplicate": self.duplicate,
        }


# ----------------------------
# Normalization
# ----------------------------
def normalize_seats(ticket: Optional[Dict[str, Any]]) -> int:
    try:
        seats = int((ticket or {}).get("seats") or 1)
    except (TypeError, ValueError):
        raise InvalidInput("ticket.seats must be an integer")
    return max(seats, 1)


def normalize_attendees(
    attendees: Optional[List[Dict[str, Any]]],
    seats: int,
    *,
    buyer_name: str,
    buyer_email: str,
    bundle_name: str,
) -> List[AttendeeDraft]:
    """
    Exactly `seats` entries: supplied ones first (extra dropped), then the
    first entry repeated. No attendees at all means the buyer holds every
    seat.
    """
    base = list(attendees or [])[:seats]
    if not base:
        base = [{"name": buyer_name, "email": buyer_email}]
    while len(base) < seats:
        base.append(base[0])

    out: List[AttendeeDraft] = []
    for i, a in enumerate(base):
        out.append(AttendeeDraft(
            name=_text(a.get("name")) or f"Attendee {i + 1}",
            email=_text(a.get("email")),
            ticket_name=_text(a.get("ticketName")) or bundle_name,
        ))
    return out


# ----------------------------
# Retry wrapper
# ----------------------------
async def retry_on_conflict(
    op: Callable[[int], Awaitable[T]],
    *,
    max_attempts: int = MAX_PERSIST_ATTEMPTS,
) -> T:
    """
    Run op(attempt) until it stops raising SerialConflict, at most
    `max_attempts` times. Exhaustion raises PersistenceConflict.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await op(attempt)
        except SerialConflict as e:
            if attempt >= max_attempts:
                raise PersistenceConflict(
                    f"serial conflict persisted after {max_attempts} attempts"
                ) from e
            logger.warning("serial conflict on attempt %d/%d, regenerating",
                           attempt, max_attempts)
    raise PersistenceConflict("max_attempts must be >= 1")


def _opt_number(value: Any, kind: Callable[[Any], Any]) -> Any:
    try:
        return kind(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def resolve_bundle(
    ticket: Optional[Dict[str, Any]],
    catalog: Dict[int, Dict[str, Any]],
    default_name: str = DEFAULT_TICKET_NAME,
) -> TicketSnapshot:
    """
    Snapshot of the catalog bundle named by `ticket.id`. Anything else the
    client put in `ticket` is ignored.
    """
    ticket_id = _opt_number((ticket or {}).get("id"), int)
    if ticket_id is None:
        raise InvalidInput("ticket.id is required")
    bundle = catalog.get(ticket_id)
    if bundle is None:
        raise InvalidInput(f"Unknown ticket id: {ticket_id}")
    return TicketSnapshot(
        id=ticket_id,
        name=_text(bundle.get("name")) or default_name,
        price=float(bundle["price"]),
        seats=normalize_seats(bundle),
    )


# ----------------------------
# Pipeline
# ----------------------------
class ReconciliationPipeline:
    def __init__(
        self,
        *,
        ledger: PurchaseLedger,
        gateway: PaymentAdapter,
        mailer: Mailer,
        catalog: Dict[int, Dict[str, Any]],
        serials: Optional[SerialGenerator] = None,
        receipt_base_url: str = "http://localhost:8000",
        event: Optional[Dict[str, str]] = None,
        currency: str = "NGN",
        currency_symbol: str = "₦",
        minor_units: int = 100,
        default_ticket_name: str = DEFAULT_TICKET_NAME,
        max_attempts: int = MAX_PERSIST_ATTEMPTS,
    ) -> None:
        self.ledger = ledger
        self.gateway = gateway
        self.mailer = mailer
        self.catalog = catalog
        self.serials = serials or SerialGenerator(ledger.serial_exists)
        self.receipt_base_url = receipt_base_url.rstrip("/")
        self.event = event or {}
        self.currency = currency
        self.currency_symbol = currency_symbol
        self.minor_units = minor_units
        self.default_ticket_name = default_ticket_name
        self.max_attempts = max_attempts

    def receipt_url(self, purchase: Dict[str, Any]) -> str:
        return receipt_url(
            self.receipt_base_url,
            payment_reference=purchase["paymentReference"],
            transaction_reference=purchase["transactionReference"],
            amount=purchase["amountPaid"],
            seats=purchase["ticket"]["seats"],
        )

    async def reconcile(self, req: ReconcileRequest) -> ReconcileResult:
        existing = await self.ledger.find_by_payment_reference(
            req.payment_reference
        )
        if existing is not None:
            return self._duplicate(existing)

        bundle = resolve_bundle(req.ticket, self.catalog,
                                self.default_ticket_name)
        taken = await self.ledger.find_by_transaction_reference(
            req.transaction_reference
        )
        if taken is not None:
            # a racing call for the same payment may have just committed
            if taken["paymentReference"] == req.payment_reference:
                return self._duplicate(taken)
            raise self._txref_taken(req)

        verification = await self._verify(req, bundle)

        seats = bundle.seats
        attendees = normalize_attendees(
            req.attendees, seats,
            buyer_name=req.customer_name,
            buyer_email=req.customer_email,
            bundle_name=bundle.name,
        )
        for a, serial in zip(attendees,
                             await self.serials.generate_many(seats)):
            a.serial = serial

        draft = PurchaseDraft(
            transaction_reference=req.transaction_reference,
            payment_reference=req.payment_reference,
            amount_paid=req.amount_paid,
            currency=verification.get("currency") or self.currency,
            customer_name=req.customer_name,
            customer_email=req.customer_email,
            paid_on=req.paid_on or verification.get("paid_on") or now_ts(),
            ticket=bundle,
            attendees=attendees,
            raw={"verification": verification["raw"], "client": req.raw},
        )

        async def attempt(n: int) -> Dict[str, Any]:
            if n > 1:
                fresh = await self.serials.generate_many(seats)
                for a, serial in zip(draft.attendees, fresh):
                    a.serial = serial
            return await self.ledger.create_purchase(draft)

        try:
            purchase = await retry_on_conflict(
                attempt, max_attempts=self.max_attempts
            )
        except DuplicatePayment as e:
            return self._duplicate(e.purchase)
        except TransactionReferenceTaken as e:
            raise self._txref_taken(req) from e
        except PersistenceConflict:
            logger.error(
                "INCIDENT: payment %s (tx %s, %s) verified but no purchase "
                "persisted; manual reconciliation required",
                req.payment_reference, req.transaction_reference,
                req.customer_email,
            )
            raise

        logger.info("purchase %s recorded: %d seat(s) for %s",
                    purchase["id"], seats, req.customer_email)

        receipt_url = self.receipt_url(purchase)
        email_status = await self.send_receipts(purchase, receipt_url)
        return ReconcileResult(
            purchase=purchase,
            receipt_url=receipt_url,
            email_status=email_status,
        )

    def _duplicate(self, purchase: Dict[str, Any]) -> ReconcileResult:
        logger.info("payment %s already reconciled as %s",
                    purchase["paymentReference"], purchase["id"])
        return ReconcileResult(
            purchase=purchase,
            receipt_url=self.receipt_url(purchase),
            email_status=EMAIL_SKIPPED,
            duplicate=True,
        )

    def _txref_taken(self, req: ReconcileRequest) -> InvalidInput:
        logger.warning("transaction reference %s reused for payment %s",
                       req.transaction_reference, req.payment_reference)
        return InvalidInput(
            f"transactionReference {req.transaction_reference} already "
            "belongs to another payment"
        )

    async def _verify(self, req: ReconcileRequest,
                      bundle: TicketSnapshot) -> Verification:
        async with timeit("gateway.verify"):
            v = await self.gateway.verify_transaction(req.payment_reference)
        if not is_settled(v):
            raise PaymentNotVerified(
                f"Payment {req.payment_reference} not settled "
                f"(status: {v.get('status') or 'unknown'})"
            )
        settled = int(v.get("amount_minor") or 0)
        claimed = round(req.amount_paid * self.minor_units)
        if settled != claimed:
            raise PaymentNotVerified(
                f"Amount mismatch for {req.payment_reference}: gateway "
                f"settled {settled}, expected {claimed}"
            )
        price = round(bundle.price * self.minor_units)
        if settled != price:
            raise PaymentNotVerified(
                f"Payment {req.payment_reference} settled {settled}, but "
                f"{bundle.name} costs {price}"
            )
        currency = v.get("currency") or ""
        if currency and currency.upper() != self.currency.upper():
            raise PaymentNotVerified(
                f"Currency mismatch for {req.payment_reference}: {currency}"
            )
        return v

    # ----------------------------
    # Email (best effort)
    # ----------------------------
    async def send_receipts(self, purchase: Dict[str, Any],
                            receipt_url: str) -> str:
        if not self.mailer.enabled:
            logger.warning("mail credentials missing, skipping receipts "
                           "for purchase %s", purchase["id"])
            return EMAIL_SKIPPED

        ctx = {
            "event_name": self.event.get("name", ""),
            "event_venue": self.event.get("venue", ""),
            "event_time": self.event.get("time", ""),
            "currency_symbol": self.currency_symbol,
            "receipt_url": receipt_url,
            "customer_name": purchase["customerName"],
        }
        jobs = [self._send_one(
            purchase["customerEmail"],
            f"Your {ctx['event_name'] or 'Ticket'} Receipt".strip(),
            "buyer_receipt.html",
            ticket_name=purchase["ticket"]["name"],
            amount_paid=purchase["amountPaid"],
            paid_on=purchase["paidOn"],
            payment_reference=purchase["paymentReference"],
            transaction_reference=purchase["transactionReference"],
            attendees=purchase["attendees"],
            **ctx,
        )]
        for a in purchase["attendees"]:
            if not a["email"]:
                continue
            jobs.append(self._send_one(
                a["email"],
                f"Your {ctx['event_name'] or 'Event'} Ticket "
                "(Attendee Copy)",
                "attendee_ticket.html",
                attendee=a,
                **ctx,
            ))

        async with timeit("mail.receipts"):
            results = await asyncio.gather(*jobs)
        return EMAIL_SENT if all(results) else EMAIL_PARTIAL

    async def _send_one(self, to: str, subject: str, template: str,
                        **ctx: Any) -> bool:
        # never raises: a failed send is recorded in the status only
        try:
            await self.mailer.send(to, subject, render(template, **ctx))
        except Exception:
            logger.warning("receipt email to %s failed", to, exc_info=True)
            return False
        return True
