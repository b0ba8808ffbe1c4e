from __future__ import annotations
import logging
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple, TypedDict

from .errors import (
    AlreadyConfirmedError, GatewayError, GatewayUnreachableError,
    NotFoundError, PaymentError, ValidationError,
)
from .gateway import GatewayClient
from .helpers import is_valid_email, normalize_msisdn
from .model.db import CONFIRMED, FAILED, PENDING_GATEWAY, PUSH_SENT
from .model.ticketstore import AuditRecord, TicketStore

log = logging.getLogger(__name__)


class InitiationResult(TypedDict):
    gateway_request_id: str
    message: str


def _parse_amount(amount: Any) -> int:
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a positive number.") from None
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be a positive number.")
    if value != value.to_integral_value():
        raise ValidationError("Amount must be a whole number of shillings.")
    return int(value)


class InitiationCoordinator:
    """
    Starts (or restarts) a push payment for a ticket.

    Each call issues a brand-new gateway request; the previous request id is
    replaced on the ticket but stays in the audit log. Evidence is matched by
    ticket, so a late success for a superseded request still confirms.
    """

    def __init__(self, store: TicketStore, gateway: GatewayClient) -> None:
        self.store = store
        self.gateway = gateway

    def _validate(
        self, ticket_id: str, amount: Any, phone: Optional[str],
        email: Optional[str],
    ) -> Tuple[int, str, Optional[str]]:
        if not ticket_id:
            raise ValidationError("Ticket ID is required.")
        amount_v = _parse_amount(amount)
        phone_v = normalize_msisdn(phone)
        if phone_v is None:
            raise ValidationError(
                "Invalid phone format. Use 07XXXXXXXX or 2547XXXXXXXX."
            )
        email_v = (email or "").strip() or None
        if email_v is not None and not is_valid_email(email_v):
            raise ValidationError("Please enter a valid email address.")
        return amount_v, phone_v, email_v

    async def initiate(
        self, ticket_id: str, amount: Any, phone: Optional[str],
        email: Optional[str] = None,
    ) -> InitiationResult:
        attempt: Dict[str, Any] = {
            "amount": amount, "phone": phone, "email": email,
        }
        try:
            return await self._initiate(ticket_id, amount, phone, email,
                                        attempt)
        except (ValidationError, NotFoundError,
                AlreadyConfirmedError) as e:
            # refused before talking to the gateway
            note = {
                ValidationError: "rejected",
                NotFoundError: "not_found",
                AlreadyConfirmedError: "already_confirmed",
            }[type(e)]
            log.info("initiation refused for ticket %s: %s", ticket_id,
                     e.message)
            await self.store.append_audit(AuditRecord(
                ticket_id=ticket_id or "-",
                action="initiate",
                source="client",
                applied=False,
                note=note,
                detail={**attempt, "error": e.detail or e.message},
            ))
            raise

    async def _initiate(
        self, ticket_id: str, amount: Any, phone: Optional[str],
        email: Optional[str], attempt: Dict[str, Any],
    ) -> InitiationResult:
        amount_v, phone_v, email_v = self._validate(
            ticket_id, amount, phone, email
        )
        attempt.update(amount=amount_v, phone=phone_v, email=email_v)

        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError(f"Ticket {ticket_id} not found.")
        if ticket["status"] == CONFIRMED:
            raise AlreadyConfirmedError()
        if ticket["amount"] != amount_v:
            raise ValidationError(
                "Amount does not match the ticket.",
                detail=f"ticket={ticket['amount']} requested={amount_v}",
            )
        attempt["previous_request_id"] = ticket["gateway_request_id"]

        changes: Dict[str, Any] = {
            "phone": phone_v, "status": PENDING_GATEWAY, "last_error": None,
        }
        if email_v:
            changes["email"] = email_v
        if await self.store.update_if(
            ticket_id, changes, status_not_in=(CONFIRMED,)
        ) is None:
            raise AlreadyConfirmedError()

        try:
            accepted = await self.gateway.initiate_push(
                ticket_id=ticket_id, amount=amount_v, phone=phone_v
            )
        except GatewayError as e:
            await self._record_gateway_failure(ticket_id, e, attempt)
            raise

        rid = accepted["gateway_request_id"]
        record = AuditRecord(
            ticket_id=ticket_id,
            action="initiate",
            source="client",
            applied=True,
            note="push_sent",
            detail={**attempt, "gateway_request_id": rid},
        )
        snap = await self.store.update_if(
            ticket_id,
            {"gateway_request_id": rid, "status": PUSH_SENT},
            status_not_in=(CONFIRMED,),
            audit=record,
        )
        if snap is None:
            # evidence for an earlier request confirmed the ticket meanwhile
            log.info("ticket %s confirmed while push %s was in flight",
                     ticket_id, rid)
            await self.store.append_audit(
                replace(record, applied=False, note="superseded")
            )
        else:
            log.info("push %s sent for ticket %s", rid, ticket_id)
        return {"gateway_request_id": rid, "message": accepted["message"]}

    async def _record_gateway_failure(
        self, ticket_id: str, e: PaymentError, attempt: Dict[str, Any]
    ) -> None:
        note = (
            "gateway_unreachable" if isinstance(e, GatewayUnreachableError)
            else "gateway_rejected"
        )
        error = e.detail or e.message
        log.warning("push for ticket %s failed: %s", ticket_id, error)
        record = AuditRecord(
            ticket_id=ticket_id,
            action="initiate",
            source="client",
            applied=True,
            note=note,
            detail={**attempt, "error": error},
        )
        snap = await self.store.update_if(
            ticket_id,
            {"status": FAILED, "last_error": error},
            status_in=(PENDING_GATEWAY,),
            audit=record,
        )
        if snap is None:
            await self.store.append_audit(replace(record, applied=False))
