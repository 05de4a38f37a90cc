from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import text

from ...infra.sql import Database, store_errors
from ._record import RedemptionRecord


_COLUMNS = """
    serial, purchase_id, attendee_name, attendee_email, ticket_name,
    payment_reference, transaction_reference, amount_paid,
    used_at, used_by, gate, venue, ip, user_agent, status
"""


def _from_row(r: Dict[str, Any]) -> RedemptionRecord:
    return RedemptionRecord(
        serial=r["serial"],
        purchase_id=r["purchase_id"],
        used_at=float(r["used_at"]),
        used_by=r["used_by"] or "",
        gate=r["gate"] or "",
        venue=r["venue"] or "",
        ip=r["ip"] or "",
        user_agent=r["user_agent"] or "",
        status=r["status"],
        attendee={
            "name": r["attendee_name"] or "",
            "email": r["attendee_email"] or "",
            "ticketName": r["ticket_name"] or "",
        },
        payment={
            "paymentReference": r["payment_reference"],
            "transactionReference": r["transaction_reference"],
            "amountPaid": (
                float(r["amount_paid"]) if r["amount_paid"] is not None
                else None
            ),
        },
    )


class RedemptionStore:
    def __init__(self, *, db: Database) -> None:
        self.db = db

    async def claim(
        self, record: RedemptionRecord
    ) -> Tuple[bool, RedemptionRecord]:
        """
        Insert-if-absent in ONE statement. RETURNING yields a row only when
        this call inserted it; no row means another claim got there first.

        Returns (won, record_as_stored).
        """
        async with store_errors("redemption.claim"):
            async with self.db.gated(), self.db.session() as s:
                async with s.begin():
                    won = (await s.execute(text(f"""
                        INSERT INTO redemptions ({_COLUMNS})
                        VALUES (
                          :serial, :purchase_id, :attendee_name,
                          :attendee_email, :ticket_name,
                          :payment_reference, :transaction_reference,
                          :amount_paid, :used_at, :used_by, :gate, :venue,
                          :ip, :user_agent, :status
                        )
                        ON CONFLICT (serial) DO NOTHING
                        RETURNING serial
                    """), {
                        "serial": record.serial,
                        "purchase_id": record.purchase_id,
                        "attendee_name": record.attendee.get("name", ""),
                        "attendee_email": record.attendee.get("email", ""),
                        "ticket_name": record.attendee.get("ticketName", ""),
                        "payment_reference":
                            record.payment.get("paymentReference"),
                        "transaction_reference":
                            record.payment.get("transactionReference"),
                        "amount_paid": record.payment.get("amountPaid"),
                        "used_at": record.used_at,
                        "used_by": record.used_by,
                        "gate": record.gate,
                        "venue": record.venue,
                        "ip": record.ip,
                        "user_agent": record.user_agent,
                        "status": record.status,
                    })).first()
        if won is not None:
            return True, record

        existing = await self.get(record.serial)
        if existing is None:
            # rows are never deleted, so a lost claim always has a winner
            raise RuntimeError(f"lost claim on {record.serial} but no row")
        return False, existing

    async def get(self, serial: str) -> Optional[RedemptionRecord]:
        async with store_errors("redemption.get"):
            async with self.db.gated(), self.db.session() as s:
                row = (await s.execute(
                    text(f"SELECT {_COLUMNS} FROM redemptions "
                         "WHERE serial = :serial"),
                    {"serial": serial},
                )).mappings().first()
        return _from_row(row) if row else None

    async def list_recent(
        self, gate: Optional[str] = None, limit: int = 100
    ) -> List[RedemptionRecord]:
        params = {"lim": max(1, min(limit, 500))}
        where = ""
        if gate:
            where = "WHERE gate = :gate"
            params["gate"] = gate
        async with store_errors("redemption.list"):
            async with self.db.gated(), self.db.session() as s:
                rows = (await s.execute(text(f"""
                    SELECT {_COLUMNS} FROM redemptions
                    {where}
                    ORDER BY used_at DESC
                    LIMIT :lim
                """), params)).mappings().all()
        return [_from_row(r) for r in rows]
