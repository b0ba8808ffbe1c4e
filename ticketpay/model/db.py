from typing import Any, Dict
from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    Index,
)
from sqlalchemy.ext.asyncio import AsyncEngine


Base = declarative_base()

# ticket statuses
CREATED = "created"
PENDING_GATEWAY = "pending_gateway"
PUSH_SENT = "push_sent"
CONFIRMED = "confirmed"
FAILED = "failed"

TERMINAL = (CONFIRMED, FAILED)


# ----------------------------
# ORM models
# ----------------------------
class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)

    # created | pending_gateway | push_sent | confirmed | failed
    status = Column(String, nullable=False, default=CREATED)
    amount = Column(Integer, nullable=False)  # KES
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)

    # the one outstanding push request; replaced on retry
    gateway_request_id = Column(String, nullable=True)

    # receipt fields, written once on confirmation
    receipt_number = Column(String, nullable=True)
    paid_amount = Column(Float, nullable=True)
    paid_phone = Column(String, nullable=True)
    paid_at = Column(Float, nullable=True)

    email_sent = Column(Boolean, nullable=False, default=False)
    email_attempts = Column(Integer, nullable=False, default=0)
    last_email_error = Column(String, nullable=True)

    last_error = Column(String, nullable=True)

    # optimistic concurrency marker, bumped on every write
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class AuditEntry(Base):
    """Append-only. Rows are inserted, never updated or deleted."""
    __tablename__ = "audit_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    # no FK: evidence for unknown tickets is audited too
    ticket_id = Column(String, nullable=False)
    # initiate | evidence | email | resend
    action = Column(String, nullable=False)
    # webhook | poll | client | email_guard ...
    source = Column(String, nullable=False)
    outcome = Column(String, nullable=True)
    applied = Column(Boolean, nullable=False)
    # applied | duplicate | ignored | not_found | rejected | conflict | ...
    note = Column(String, nullable=False)
    detail = Column(Text, nullable=True)  # JSON
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_audit_ticket_created", "ticket_id", "id"),
    )


TICKET_FIELDS = (
    "id", "status", "amount", "phone", "email", "quantity",
    "gateway_request_id", "receipt_number", "paid_amount", "paid_phone",
    "paid_at", "email_sent", "email_attempts", "last_email_error",
    "last_error", "version", "created_at", "updated_at",
)


def ticket_to_dict(t: Ticket) -> Dict[str, Any]:
    return {f: getattr(t, f) for f in TICKET_FIELDS}


def audit_to_dict(a: AuditEntry) -> Dict[str, Any]:
    return {
        "id": a.id,
        "ticket_id": a.ticket_id,
        "action": a.action,
        "source": a.source,
        "outcome": a.outcome,
        "applied": bool(a.applied),
        "note": a.note,
        "detail": a.detail,
        "created_at": a.created_at,
    }


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
