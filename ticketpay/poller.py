from __future__ import annotations
import logging
from typing import TypedDict

from .errors import GatewayError, NotFoundError, ValidationError
from .gateway import GatewayClient
from .model.db import CONFIRMED
from .model.ticketstore import TicketStore
from .reconcile import ReconciliationEngine

log = logging.getLogger(__name__)


class PollResult(TypedDict):
    is_confirmed: bool
    message: str


class StatusPoller:
    """User-triggered status check: gateway status -> evidence -> engine."""

    def __init__(
        self, store: TicketStore, gateway: GatewayClient,
        engine: ReconciliationEngine,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.engine = engine

    async def poll(self, ticket_id: str, gateway_request_id: str) -> PollResult:
        if not ticket_id or not gateway_request_id:
            raise ValidationError(
                "Missing transaction ID or Ticket ID to check status."
            )
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError(f"Ticket {ticket_id} not found.")
        if ticket["status"] == CONFIRMED:
            return {"is_confirmed": True, "message": "Payment confirmed."}

        issued = await self.store.issued_request_ids(ticket_id)
        if gateway_request_id not in issued:
            log.warning("status query for ticket %s with request %s it "
                        "never issued", ticket_id, gateway_request_id)
            await self.engine.record_rejected(
                ticket_id, "poll", {"gateway_request_id": gateway_request_id},
                "request id was not issued for this ticket",
            )
            raise ValidationError(
                "This transaction does not belong to the ticket.",
                detail=gateway_request_id,
            )

        try:
            evidence = await self.gateway.query_status(
                ticket_id=ticket_id, gateway_request_id=gateway_request_id
            )
        except GatewayError as e:
            log.warning("status query %s for ticket %s failed: %s",
                        gateway_request_id, ticket_id, e.detail or e.message)
            return {
                "is_confirmed": False,
                "message": "Could not retrieve the payment status. "
                           "Please try again.",
            }
        except ValidationError as e:
            log.warning("unreadable status for %s: %s", gateway_request_id,
                        e.detail)
            await self.engine.record_rejected(
                ticket_id, "poll", {"gateway_request_id": gateway_request_id},
                e.detail or e.message,
            )
            return {"is_confirmed": False, "message": e.message}

        if evidence is None:
            return {
                "is_confirmed": False,
                "message": "Payment is still pending. Please complete the "
                           "prompt on your phone.",
            }

        try:
            result = await self.engine.confirm_or_fail(ticket_id, evidence)
        except ValidationError as e:
            return {"is_confirmed": False, "message": e.message}

        if result.status == CONFIRMED:
            return {"is_confirmed": True, "message": "Payment confirmed."}
        return {
            "is_confirmed": False,
            "message": "Payment was not completed: "
                       f"{evidence.error_detail or 'failed'}.",
        }
