"""
Email dispatch guard.

The automatic receipt goes out at most once per confirmed ticket as far as
the `email_sent` flag is concerned. Ordering matters: deliver first, then
flip the flag with a conditional write, never the other way round, so a
crash between the two costs a duplicate mail rather than a lost receipt.
Two racing triggers may both deliver; only one of them wins the flag.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, TypedDict

from .config import TICKET_STATUS_URL
from .errors import EmailDispatchError, NotFoundError
from .mailer import Mailer, render_receipt
from .model.db import CONFIRMED
from .model.ticketstore import AuditRecord, TicketStore

log = logging.getLogger(__name__)


class DispatchResult(TypedDict):
    attempted: bool
    success: bool
    message: str


class EmailDispatchGuard:

    def __init__(
        self, store: TicketStore, mailer: Mailer,
        status_url_template: str = TICKET_STATUS_URL,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.status_url_template = status_url_template

    async def _load(self, ticket_id: str) -> Dict[str, Any]:
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError(f"Ticket {ticket_id} not found.")
        return ticket

    async def _deliver(self, ticket: Dict[str, Any]) -> None:
        message = render_receipt(
            ticket, status_url_template=self.status_url_template
        )
        await self.mailer.send(message)

    async def dispatch_if_needed(
        self, ticket_id: str, source: str = "email_guard"
    ) -> DispatchResult:
        ticket = await self._load(ticket_id)
        if ticket["status"] != CONFIRMED:
            return {"attempted": False, "success": False,
                    "message": "Payment is not confirmed yet."}
        if not ticket["email"]:
            return {"attempted": False, "success": False,
                    "message": "No email address on this ticket."}
        if ticket["email_sent"]:
            return {"attempted": False, "success": True,
                    "message": "Receipt already sent."}

        try:
            await self._deliver(ticket)
        except EmailDispatchError as e:
            log.warning("receipt for ticket %s failed: %s", ticket_id,
                        e.detail or e.message)
            await self.store.record_email_attempt(
                ticket_id,
                error=e.detail or e.message,
                audit=AuditRecord(
                    ticket_id=ticket_id, action="email", source=source,
                    applied=False, note="failed",
                    detail={"to": ticket["email"],
                            "error": e.detail or e.message},
                ),
            )
            return {"attempted": True, "success": False,
                    "message": e.message}

        # the send happened; now claim the flag
        marked = await self.store.record_email_attempt(
            ticket_id,
            mark_sent=True,
            audit=AuditRecord(
                ticket_id=ticket_id, action="email", source=source,
                applied=True, note="sent", detail={"to": ticket["email"]},
            ),
        )
        if marked is None:
            log.info("receipt for ticket %s was already marked sent by "
                     "another caller", ticket_id)
            await self.store.append_audit(AuditRecord(
                ticket_id=ticket_id, action="email", source=source,
                applied=False, note="duplicate_send",
                detail={"to": ticket["email"]},
            ))
        return {"attempted": True, "success": True,
                "message": f"Receipt sent to {ticket['email']}."}

    async def resend(self, ticket_id: str) -> DispatchResult:
        """Explicit user resend: ignores email_sent and always delivers."""
        ticket = await self._load(ticket_id)
        if ticket["status"] != CONFIRMED:
            return {"attempted": False, "success": False,
                    "message": "Payment is not confirmed yet."}
        if not ticket["email"]:
            return {"attempted": False, "success": False,
                    "message": "No email address on this ticket."}

        error = None
        try:
            await self._deliver(ticket)
        except EmailDispatchError as e:
            error = e
            log.warning("resend for ticket %s failed: %s", ticket_id,
                        e.detail or e.message)

        await self.store.record_email_attempt(
            ticket_id,
            error=(error.detail or error.message) if error else None,
            audit=AuditRecord(
                ticket_id=ticket_id, action="resend", source="client",
                applied=error is None,
                note="failed" if error else "sent",
                detail={"to": ticket["email"]} if error is None else {
                    "to": ticket["email"],
                    "error": error.detail or error.message,
                },
            ),
        )
        if error is not None:
            return {"attempted": True, "success": False,
                    "message": error.message}
        return {"attempted": True, "success": True,
                "message": f"Receipt sent to {ticket['email']}."}
