"""
Client confirmation coordinator.

Three signals can report that a ticket is confirmed: the push subscription,
the initial pull, and the user's manual status check. They interleave
freely on the event loop, so `_confirm` is a plain synchronous
check-and-set. Whichever signal gets there first moves the coordinator to
CONFIRMED and schedules the one redirect; the others find the flag set and
do nothing.

All handles (deadline timer, redirect timer, subscription, background
tasks) belong to the coordinator and are released by `dispose`, which also
runs when the coordinator is pointed at a different ticket.
"""
from __future__ import annotations
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..config import MANUAL_ACTIONS_DELAY, REDIRECT_DELAY, TICKET_STATUS_URL
from .api import ApiError, Subscription, TicketApi

log = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    AWAITING_GATEWAY = "awaiting_gateway"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    MANUAL_ACTIONS = "manual_actions"
    CONFIRMED = "confirmed"


class ConfirmationCoordinator:

    def __init__(
        self,
        api: TicketApi,
        open_destination: Callable[[str], Any],
        *,
        destination_template: str = TICKET_STATUS_URL,
        manual_delay: float = MANUAL_ACTIONS_DELAY,
        redirect_delay: float = REDIRECT_DELAY,
        send_receipt: bool = True,
    ) -> None:
        self.api = api
        self.open_destination = open_destination
        self.destination_template = destination_template
        self.manual_delay = manual_delay
        self.redirect_delay = redirect_delay
        self.send_receipt = send_receipt

        self.ticket_id: Optional[str] = None
        self._deadline_timer: Optional[asyncio.TimerHandle] = None
        self._redirect_timer: Optional[asyncio.TimerHandle] = None
        self._subscription: Optional[Subscription] = None
        self._tasks: Set[asyncio.Task] = set()
        self._reset()

    def _reset(self) -> None:
        self.phase = Phase.IDLE
        self.history: List[Phase] = [Phase.IDLE]
        self.snapshot: Optional[Dict[str, Any]] = None
        self.gateway_request_id: Optional[str] = None
        self.message: Optional[str] = None
        self.error: Optional[str] = None
        self._last_request: Optional[Tuple[Any, str, Optional[str]]] = None
        self._confirmed = False
        self._redirected = False

    # ----------------------------
    # State
    # ----------------------------
    @property
    def confirmed(self) -> bool:
        return self._confirmed

    @property
    def manual_actions_available(self) -> bool:
        return self.phase is Phase.MANUAL_ACTIONS

    @property
    def destination(self) -> str:
        return self.destination_template.format(ticket_id=self.ticket_id)

    def _set_phase(self, phase: Phase) -> None:
        if self.phase is phase:
            return
        log.debug("ticket %s: %s -> %s", self.ticket_id, self.phase.value,
                  phase.value)
        self.phase = phase
        self.history.append(phase)

    def _stale(self, ticket_id: str) -> bool:
        return self.ticket_id != ticket_id

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ----------------------------
    # Signals
    # ----------------------------
    async def start(self, ticket_id: str) -> None:
        """Follow `ticket_id`: subscribe (push), then read once (pull)."""
        if self.ticket_id == ticket_id and self._subscription is not None:
            return
        self.dispose()
        self._reset()
        self.ticket_id = ticket_id
        self._subscription = self.api.subscribe(ticket_id, self._observe)

        try:
            snapshot = await self.api.get_ticket(ticket_id)
        except ApiError as e:
            if not self._stale(ticket_id):
                self.error = e.message
            log.warning("initial read of ticket %s failed: %s",
                        ticket_id, e.message)
            return
        self._observe(snapshot)

    def _observe(self, snapshot: Dict[str, Any]) -> None:
        if snapshot.get("id") != self.ticket_id or self._confirmed:
            return
        self.snapshot = snapshot
        status = snapshot.get("status")
        if status == "confirmed":
            self._confirm()
        elif status == "failed":
            if self.phase is Phase.AWAITING_CONFIRMATION:
                self.error = snapshot.get("last_error") or "Payment failed."
                self._cancel_deadline()
                self._set_phase(Phase.MANUAL_ACTIONS)
        elif status == "push_sent" and self.phase is Phase.IDLE:
            # picked up a payment started elsewhere (e.g. before a reload)
            self.gateway_request_id = snapshot.get("gateway_request_id")
            self._await_confirmation()

    async def initiate(
        self, amount: Any, phone: str, email: Optional[str] = None
    ) -> bool:
        if self.ticket_id is None:
            raise RuntimeError("start() must be called before initiate()")
        if self._confirmed:
            return False
        ticket_id = self.ticket_id
        self._last_request = (amount, phone, email)
        self._cancel_deadline()
        self.error = None
        self._set_phase(Phase.AWAITING_GATEWAY)

        try:
            res = await self.api.initiate(ticket_id, amount, phone, email)
        except ApiError as e:
            if self._stale(ticket_id) or self._confirmed:
                return False
            self.error = e.message
            self._set_phase(Phase.IDLE)
            return False

        if self._stale(ticket_id) or self._confirmed:
            return False
        self.gateway_request_id = res["gateway_request_id"]
        self.message = res.get("message")
        self._await_confirmation()
        return True

    async def retry(self) -> bool:
        """Re-initiate with the last amount/phone/email."""
        if self._last_request is None:
            raise RuntimeError("nothing to retry")
        return await self.initiate(*self._last_request)

    async def check_status(self) -> Optional[Dict[str, Any]]:
        """Manual poll. Returns the poll result, None if it could not run."""
        ticket_id = self.ticket_id
        if ticket_id is None:
            return None
        if self._confirmed:
            return {"is_confirmed": True, "message": "Payment confirmed."}
        if not self.gateway_request_id:
            self.error = "No payment in progress for this ticket."
            return None

        try:
            res = await self.api.poll(ticket_id, self.gateway_request_id)
        except ApiError as e:
            if not self._stale(ticket_id):
                self.error = e.message
            return None
        if self._stale(ticket_id):
            return None

        if res.get("is_confirmed"):
            self._confirm()
        else:
            self.message = res.get("message")
        return res

    # ----------------------------
    # Transitions
    # ----------------------------
    def _await_confirmation(self) -> None:
        self._set_phase(Phase.AWAITING_CONFIRMATION)
        self._cancel_deadline()
        loop = asyncio.get_running_loop()
        self._deadline_timer = loop.call_later(
            self.manual_delay, self._deadline_elapsed
        )

    def _deadline_elapsed(self) -> None:
        self._deadline_timer = None
        if self._confirmed or self.phase is not Phase.AWAITING_CONFIRMATION:
            return
        log.info("ticket %s: no confirmation after %.0fs, offering manual "
                 "actions", self.ticket_id, self.manual_delay)
        self._set_phase(Phase.MANUAL_ACTIONS)

    def _confirm(self) -> None:
        # check-and-set with no await in between
        if self._confirmed:
            return
        self._confirmed = True
        self._cancel_deadline()
        self.error = None
        self.message = "Payment confirmed."
        self._set_phase(Phase.CONFIRMED)

        loop = asyncio.get_running_loop()
        self._redirect_timer = loop.call_later(
            self.redirect_delay, self._redirect
        )
        if self.send_receipt:
            self._spawn(self._dispatch_receipt(self.ticket_id))

    def _redirect(self) -> None:
        self._redirect_timer = None
        if self._redirected:
            return
        self._redirected = True
        log.info("ticket %s: opening %s", self.ticket_id, self.destination)
        self.open_destination(self.destination)

    async def _dispatch_receipt(self, ticket_id: str) -> None:
        try:
            res = await self.api.dispatch_email(ticket_id)
        except ApiError as e:
            log.warning("receipt dispatch for %s failed: %s", ticket_id,
                        e.message)
            return
        log.info("receipt dispatch for %s: %s", ticket_id,
                 res.get("message"))

    # ----------------------------
    # Teardown
    # ----------------------------
    def _cancel_deadline(self) -> None:
        if self._deadline_timer is not None:
            self._deadline_timer.cancel()
            self._deadline_timer = None

    def dispose(self) -> None:
        """Release every handle; in-flight calls then find themselves stale."""
        self.ticket_id = None
        self._cancel_deadline()
        if self._redirect_timer is not None:
            self._redirect_timer.cancel()
            self._redirect_timer = None
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def __aenter__(self) -> "ConfirmationCoordinator":
        return self

    async def __aexit__(self, *exc) -> None:
        self.dispose()
