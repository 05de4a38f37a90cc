# checkin.py
"""
Gate check-in. A serial moves UNSEEN -> USED exactly once; any later scan
is answered with ALREADY_USED plus who/when/where of the winning scan.

The claim is a single insert-if-absent against the redemption store and
its own result decides won vs lost. There is no read-then-write anywhere on
this path, so concurrent scans on different workers are still linearized by
the store.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import SerialNotFound
from .helpers import now_ts, receipt_url, to_iso
from .infra.timings import timeit
from .model.ledger import PurchaseLedger
from .model.redemption import RedemptionRecord, RedemptionStore
from .model.serials import normalize_serial

logger = logging.getLogger(__name__)

OK = "OK"
ALREADY_USED = "ALREADY_USED"


@dataclass
class CheckInResult:
    outcome: str
    record: RedemptionRecord

    @property
    def serial(self) -> str:
        return self.record.serial

    @property
    def already_used(self) -> bool:
        return self.outcome == ALREADY_USED

    def to_dict(self) -> Dict[str, Any]:
        if self.already_used:
            return {
                "success": False,
                "error": "Serial already used.",
                "alreadyUsed": True,
                "serial": self.serial,
                **self.record.usage(),
            }
        return {
            "success": True,
            "serial": self.serial,
            **self.record.usage(),
            "attendee": dict(self.record.attendee),
            "payment": dict(self.record.payment),
        }


class CheckInService:
    def __init__(self, *, ledger: PurchaseLedger,
                 redemptions: RedemptionStore,
                 default_venue: str = "",
                 receipt_base_url: str = "http://localhost:8000",
                 event: Optional[Dict[str, str]] = None) -> None:
        self.ledger = ledger
        self.redemptions = redemptions
        self.default_venue = default_venue
        self.receipt_base_url = receipt_base_url
        self.event = event or {}

    async def _find(self, serial: str) -> Dict[str, Any]:
        match = await self.ledger.find_attendee(serial)
        if match is None:
            raise SerialNotFound("Serial not found.")
        return match

    async def check_in(
        self,
        serial_input: Any,
        gate: str,
        staff_id: str,
        *,
        venue: Optional[str] = None,
        ip: str = "",
        user_agent: str = "",
    ) -> CheckInResult:
        """
        Raises:
            MalformedSerial: input does not normalize to a serial
            SerialNotFound: no purchase holds this serial
            StoreUnavailable: either store unreachable
        """
        serial = normalize_serial(serial_input)
        match = await self._find(serial)

        record = RedemptionRecord(
            serial=serial,
            purchase_id=match["purchase_id"],
            used_at=now_ts(),
            used_by=(staff_id or "").strip(),
            gate=(gate or "").strip(),
            venue=(venue or "").strip() or self.default_venue,
            ip=ip or "",
            user_agent=user_agent or "",
            attendee={
                "name": match["name"] or "",
                "email": match["email"] or "",
                "ticketName": match["ticket_name"]
                or match["bundle_name"] or "",
            },
            payment={
                "paymentReference": match["payment_reference"],
                "transactionReference": match["transaction_reference"],
                "amountPaid": match["amount_paid"],
            },
        )

        async with timeit("redemption.claim"):
            won, stored = await self.redemptions.claim(record)

        if not won:
            logger.info("serial %s already used (gate=%s by=%s at %s); "
                        "rejected at gate=%s", serial, stored.gate,
                        stored.used_by, to_iso(stored.used_at), record.gate)
            return CheckInResult(outcome=ALREADY_USED, record=stored)

        logger.info("serial %s checked in at gate=%s by=%s",
                    serial, record.gate, record.used_by)
        return CheckInResult(outcome=OK, record=stored)

    async def lookup(self, serial_input: Any) -> Dict[str, Any]:
        """Read-only: who holds this serial and has it been used yet."""
        serial = normalize_serial(serial_input)
        m = await self._find(serial)
        ticket_name = m["ticket_name"] or m["bundle_name"] or ""
        seats = int(m["ticket_seats"] or 1)
        redeemed = await self.redemptions.get(serial)
        return {
            "success": True,
            "attendee": {
                "name": m["name"],
                "email": m["email"],
                "serial": m["serial"],
                "ticketName": ticket_name,
            },
            "ticket": {
                "name": ticket_name,
                "price": m["ticket_price"],
                "seats": seats,
            },
            "customerName": m["customer_name"],
            "customerEmail": m["customer_email"],
            "amountPaid": m["amount_paid"],
            "paymentReference": m["payment_reference"],
            "transactionReference": m["transaction_reference"],
            "paidOn": to_iso(m["paid_on"]),
            "receiptUrl": receipt_url(
                self.receipt_base_url,
                payment_reference=m["payment_reference"],
                transaction_reference=m["transaction_reference"],
                amount=m["amount_paid"],
                seats=seats,
                serial=serial,
            ),
            "event": {
                "time": self.event.get("time", ""),
                "venue": self.event.get("venue", ""),
            },
            "redeemed": redeemed.usage() if redeemed else None,
        }
