from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Numeric,
    JSON,
    ForeignKey,
    Index,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Purchase(Base):
    """
    One completed payment. Written once at reconciliation time and never
    updated afterwards.
    """
    __tablename__ = "purchases"
    id = Column(String, primary_key=True)
    transaction_reference = Column(String, nullable=False, unique=True,
                                   index=True)
    # dedup key: the reference the gateway verified as settled
    payment_reference = Column(String, nullable=False, unique=True,
                               index=True)
    amount_paid = Column(Numeric(12, 2, asdecimal=False), nullable=False)
    currency = Column(String, nullable=False, default="NGN")
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    paid_on = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)

    # ticket bundle snapshot (not a reference into the catalog)
    ticket_id = Column(Integer, nullable=True)
    ticket_name = Column(String, nullable=False)
    ticket_price = Column(Numeric(12, 2, asdecimal=False), nullable=True)
    ticket_seats = Column(Integer, nullable=False)

    # gateway verification payload, audit only
    raw = Column(JSON, nullable=True)

    attendees = relationship(
        "Attendee",
        order_by="Attendee.position",
        cascade="all, delete-orphan",
        back_populates="purchase",
    )


class Attendee(Base):
    __tablename__ = "attendees"
    id = Column(Integer, primary_key=True, autoincrement=True)
    purchase_id = Column(String, ForeignKey("purchases.id"), nullable=False,
                         index=True)
    position = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, default="")
    # system-wide unique: the load-bearing invariant
    serial = Column(String(6), nullable=False, unique=True)
    ticket_name = Column(String, nullable=False)

    purchase = relationship("Purchase", back_populates="attendees")


class Redemption(Base):
    """
    One row per serial ever checked in. Only the sql redemption backend
    uses this table; rows are inserted by an ON CONFLICT DO NOTHING claim.
    """
    __tablename__ = "redemptions"
    serial = Column(String(6), primary_key=True)
    purchase_id = Column(String, nullable=True)

    attendee_name = Column(String, nullable=False, default="")
    attendee_email = Column(String, nullable=False, default="")
    ticket_name = Column(String, nullable=False, default="")

    payment_reference = Column(String, nullable=True)
    transaction_reference = Column(String, nullable=True)
    amount_paid = Column(Numeric(12, 2, asdecimal=False), nullable=True)

    used_at = Column(Float, nullable=False)
    used_by = Column(String, nullable=False, default="")
    gate = Column(String, nullable=False, default="")
    venue = Column(String, nullable=False, default="")
    ip = Column(String, nullable=False, default="")
    user_agent = Column(String, nullable=False, default="")

    # USED | REVOKED
    status = Column(String, nullable=False, default="USED")

    __table_args__ = (
        Index("ix_redemptions_gate_used_at", "gate", "used_at"),
    )
