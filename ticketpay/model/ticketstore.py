"""
Ticket record store.

Reads are always authoritative: every call opens a fresh session, so there is
no identity-map cache between calls. Writes are conditional: `update_if`
only touches the row when its guards (version, status, email flag) still
hold at write time and reports whether it won. Nobody holds a lock on a
ticket; ownership of a write is established by winning the UPDATE.

Every successful write publishes the full snapshot on the change feed.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set

import orjson
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError
from ..helpers import now_ts
from ..infra.sql import Database
from ..infra.timings import timeit
from .changefeed import ChangeFeed
from .db import (
    AuditEntry, Ticket, CONFIRMED, CREATED, ticket_to_dict, audit_to_dict
)

log = logging.getLogger(__name__)


@dataclass
class AuditRecord:
    ticket_id: str
    action: str
    source: str
    applied: bool
    note: str
    outcome: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None

    def to_row(self, created_at: float) -> AuditEntry:
        detail = None
        if self.detail is not None:
            detail = orjson.dumps(self.detail, default=str).decode()
        return AuditEntry(
            ticket_id=self.ticket_id,
            action=self.action,
            source=self.source,
            outcome=self.outcome,
            applied=self.applied,
            note=self.note,
            detail=detail,
            created_at=created_at,
        )


class TicketStore:
    def __init__(self, db: Database, feed: ChangeFeed) -> None:
        self.sessions = db.sessions
        self.gated = db.gated
        self.feed = feed

    async def create_ticket(
        self, ticket_id: str, amount: int, *,
        phone: Optional[str] = None, email: Optional[str] = None,
        quantity: int = 1,
    ) -> Dict[str, Any]:
        now = now_ts()
        t = Ticket(
            id=ticket_id,
            status=CREATED,
            amount=int(amount),
            phone=phone,
            email=email,
            quantity=quantity,
            gateway_request_id=None,
            receipt_number=None,
            paid_amount=None,
            paid_phone=None,
            paid_at=None,
            email_sent=False,
            email_attempts=0,
            last_email_error=None,
            last_error=None,
            version=1,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.gated():
                async with self.sessions() as s:
                    async with s.begin():
                        s.add(t)
        except IntegrityError as e:
            raise ConflictError(
                "Ticket already exists.", detail=ticket_id
            ) from e
        snap = ticket_to_dict(t)
        await self.feed.publish(snap)
        return snap

    async def get_ticket(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        async with timeit("ticketstore.get"):
            async with self.gated():
                async with self.sessions() as s:
                    t = await s.get(Ticket, ticket_id)
                    return ticket_to_dict(t) if t is not None else None

    async def update_if(
        self,
        ticket_id: str,
        changes: Dict[str, Any],
        *,
        version: Optional[int] = None,
        status_in: Iterable[str] = (),
        status_not_in: Iterable[str] = (),
        email_sent: Optional[bool] = None,
        audit: Optional[AuditRecord] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Conditionally apply `changes`. Returns the new snapshot when the
        guards held and the row was written, None when the write lost.

        The audit record, if given, is committed in the same transaction as
        the write, so it exists iff the write happened.
        """
        conds = [Ticket.id == ticket_id]
        if version is not None:
            conds.append(Ticket.version == version)
        status_in = tuple(status_in)
        if status_in:
            conds.append(Ticket.status.in_(status_in))
        status_not_in = tuple(status_not_in)
        if status_not_in:
            conds.append(Ticket.status.not_in(status_not_in))
        if email_sent is not None:
            conds.append(Ticket.email_sent == email_sent)

        now = now_ts()
        values = dict(changes)
        values["version"] = Ticket.version + 1
        values["updated_at"] = now

        async with timeit("ticketstore.update_if"):
            async with self.gated():
                async with self.sessions() as s:
                    async with s.begin():
                        res = await s.execute(
                            update(Ticket)
                            .where(*conds)
                            .values(**values)
                            .execution_options(synchronize_session=False)
                        )
                        if res.rowcount != 1:
                            return None
                        if audit is not None:
                            s.add(audit.to_row(now))
                        t = await s.get(Ticket, ticket_id)
                        snap = ticket_to_dict(t)

        await self.feed.publish(snap)
        return snap

    async def record_email_attempt(
        self,
        ticket_id: str,
        *,
        error: Optional[str] = None,
        mark_sent: bool = False,
        audit: Optional[AuditRecord] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Count a delivery attempt. With `mark_sent` the write also flips
        email_sent and only happens if nobody flipped it first.
        """
        changes: Dict[str, Any] = {
            "email_attempts": Ticket.email_attempts + 1,
            "last_email_error": error,
        }
        if mark_sent:
            changes["email_sent"] = True
            return await self.update_if(
                ticket_id, changes, email_sent=False,
                status_in=(CONFIRMED,), audit=audit,
            )
        return await self.update_if(ticket_id, changes, audit=audit)

    async def append_audit(self, record: AuditRecord) -> None:
        async with timeit("ticketstore.append_audit"):
            async with self.gated():
                async with self.sessions() as s:
                    async with s.begin():
                        s.add(record.to_row(now_ts()))
        log.debug("audit %s/%s %s: %s", record.action, record.source,
                  record.ticket_id, record.note)

    async def list_audit(self, ticket_id: str) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.sessions() as s:
                rows = (await s.execute(
                    select(AuditEntry)
                    .where(AuditEntry.ticket_id == ticket_id)
                    .order_by(AuditEntry.id)
                )).scalars().all()
        return [audit_to_dict(a) for a in rows]

    async def issued_request_ids(self, ticket_id: str) -> Set[str]:
        """Every gateway request id a push for this ticket was sent under."""
        async with self.gated():
            async with self.sessions() as s:
                details = (await s.execute(
                    select(AuditEntry.detail)
                    .where(AuditEntry.ticket_id == ticket_id)
                    .where(AuditEntry.action == "initiate")
                    .where(AuditEntry.note.in_(("push_sent", "superseded")))
                )).scalars().all()
        issued = set()
        for raw in details:
            rid = orjson.loads(raw).get("gateway_request_id") if raw else None
            if rid:
                issued.add(rid)
        return issued
