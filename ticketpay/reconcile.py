"""
Reconciliation engine.

Evidence about one ticket's payment can arrive from the webhook handler and
from manual polls, in any order, possibly more than once, and from several
worker processes at the same time. `confirm_or_fail` folds all of it into one
authoritative ticket state:

- `confirmed` is final. Later evidence of any kind is audited and ignored.
- `failed` is not final for success: a success always overrides a failure,
  because a timeout or failed poll does not prove the money never moved.
- Writes are conditional on the version read just before. Losing the race
  means re-reading once; if the fresh read shows `confirmed`, the loser
  simply reports a duplicate.
- Each evidence instance produces exactly one audit entry. For applied
  evidence that entry is committed together with the state change.
"""
from __future__ import annotations
import logging
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple

from .errors import NotFoundError, TransientError, ValidationError
from .helpers import now_ts
from .model.db import CONFIRMED, FAILED, TERMINAL
from .model.evidence import ConfirmationEvidence
from .model.ticketstore import AuditRecord, TicketStore

log = logging.getLogger(__name__)

ConfirmedListener = Callable[[Dict[str, Any]], Awaitable[None]]

# audit key for evidence that names no ticket at all
UNKNOWN_TICKET = "-"


class ReconcileResult(NamedTuple):
    applied: bool
    status: str


class ReconciliationEngine:
    # first attempt + one retry against a fresh read
    max_attempts = 2

    def __init__(self, store: TicketStore) -> None:
        self.store = store
        self._listeners: List[ConfirmedListener] = []

    def on_confirmed(self, fn: ConfirmedListener) -> ConfirmedListener:
        """Register a coroutine called once per transition into confirmed."""
        self._listeners.append(fn)
        return fn

    async def confirm_or_fail(
        self, ticket_id: str, evidence: ConfirmationEvidence
    ) -> ReconcileResult:
        try:
            evidence.validate()
            if evidence.ticket_id != ticket_id:
                raise ValidationError(
                    "Evidence is for a different ticket.",
                    detail=f"{evidence.ticket_id!r} != {ticket_id!r}",
                )
        except ValidationError as e:
            log.warning("rejected %s evidence for ticket %s: %s (%s)",
                        evidence.source, ticket_id, e.message, e.detail)
            await self.store.append_audit(self._record(
                ticket_id or UNKNOWN_TICKET, evidence, False, "rejected",
                error=e.message,
            ))
            raise

        for attempt in range(self.max_attempts):
            ticket = await self.store.get_ticket(ticket_id)
            if ticket is None:
                log.warning("%s evidence for unknown ticket %s",
                            evidence.source, ticket_id)
                await self.store.append_audit(self._record(
                    ticket_id, evidence, False, "not_found"
                ))
                raise NotFoundError(detail=ticket_id)

            status = ticket["status"]
            if status == CONFIRMED or (
                status == FAILED and not evidence.is_success
            ):
                log.info("duplicate %s evidence (%s) for ticket %s, "
                         "already %s", evidence.source,
                         evidence.outcome.value, ticket_id, status)
                await self.store.append_audit(self._record(
                    ticket_id, evidence, False, "duplicate"
                ))
                return ReconcileResult(False, status)

            if evidence.is_success:
                snap = await self._apply_success(ticket, evidence)
                if snap is not None:
                    await self._notify_confirmed(snap)
                    return ReconcileResult(True, CONFIRMED)
            else:
                snap = await self._apply_failure(ticket, evidence)
                if snap is not None:
                    return ReconcileResult(True, FAILED)

            log.info("ticket %s changed under %s evidence (attempt %d), "
                     "re-reading", ticket_id, evidence.source, attempt + 1)

        await self.store.append_audit(self._record(
            ticket_id, evidence, False, "conflict"
        ))
        raise TransientError(detail=f"write conflict on ticket {ticket_id}")

    async def record_rejected(
        self, ticket_id: str | None, source: str, raw: Dict[str, Any],
        reason: str,
    ) -> None:
        """Audit a payload that could not even be turned into evidence."""
        await self.store.append_audit(AuditRecord(
            ticket_id=ticket_id or UNKNOWN_TICKET,
            action="evidence",
            source=source,
            applied=False,
            note="rejected",
            detail={"error": reason, "raw": raw},
        ))

    async def _apply_success(
        self, ticket: Dict[str, Any], ev: ConfirmationEvidence
    ) -> Dict[str, Any] | None:
        if ev.amount is not None and ev.amount != ticket["amount"]:
            log.warning("ticket %s paid %s, expected %s", ticket["id"],
                        ev.amount, ticket["amount"])
        note = "applied" if ticket["status"] != FAILED else "override_failure"
        extra: Dict[str, Any] = {}
        if not ev.receipt_number:
            log.warning("ticket %s confirmed via %s without a receipt number",
                        ticket["id"], ev.source)
            extra["missing_receipt"] = True
        snap = await self.store.update_if(
            ticket["id"],
            {
                "status": CONFIRMED,
                "receipt_number": ev.receipt_number,
                "paid_amount": (
                    ev.amount if ev.amount is not None else ticket["amount"]
                ),
                "paid_phone": ev.phone or ticket["phone"],
                "paid_at": ev.timestamp or now_ts(),
                "last_error": None,
            },
            version=ticket["version"],
            status_not_in=(CONFIRMED,),
            audit=self._record(ticket["id"], ev, True, note, **extra),
        )
        if snap is not None:
            log.info("ticket %s confirmed via %s, receipt %s",
                     ticket["id"], ev.source, ev.receipt_number)
        return snap

    async def _apply_failure(
        self, ticket: Dict[str, Any], ev: ConfirmationEvidence
    ) -> Dict[str, Any] | None:
        snap = await self.store.update_if(
            ticket["id"],
            {"status": FAILED, "last_error": ev.error_detail or "failed"},
            version=ticket["version"],
            status_not_in=TERMINAL,
            audit=self._record(ticket["id"], ev, True, "applied"),
        )
        if snap is not None:
            log.info("ticket %s failed via %s: %s",
                     ticket["id"], ev.source, ev.error_detail)
        return snap

    async def _notify_confirmed(self, snap: Dict[str, Any]) -> None:
        for fn in self._listeners:
            try:
                await fn(snap)
            except Exception:
                # the confirmation is committed; a listener cannot undo it
                log.exception("confirmed-listener %r failed for ticket %s",
                              fn, snap["id"])

    @staticmethod
    def _record(
        ticket_id: str, ev: ConfirmationEvidence, applied: bool, note: str,
        **extra: Any,
    ) -> AuditRecord:
        detail = ev.audit_detail()
        detail.update(extra)
        return AuditRecord(
            ticket_id=ticket_id,
            action="evidence",
            source=ev.source,
            applied=applied,
            note=note,
            outcome=detail["outcome"],
            detail=detail,
        )
