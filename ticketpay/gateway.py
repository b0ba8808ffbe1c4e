from __future__ import annotations
import itertools
import logging
from datetime import datetime, timezone
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, TypedDict

import httpx

from .config import (
    GATEWAY_TIMEOUT, MOCK_WEBHOOK_URL, MPESA_ACCOUNT_ID, MPESA_API_KEY,
    MPESA_API_URL, MPESA_STATUS_URL, MPESA_UMS_EMAIL,
)
from .errors import (
    GatewayError, GatewayRejectedError, GatewayUnreachableError,
)
from .helpers import GATEWAY_TS_FORMAT, now_ts
from .infra.timings import timeit
from .model.evidence import (
    ConfirmationEvidence, Outcome, evidence_from_callback,
    evidence_from_status,
)

log = logging.getLogger(__name__)


# ----------------------------
# Gateway Client Interface
# ----------------------------
class PushAccepted(TypedDict):
    gateway_request_id: str
    message: str


class GatewayClient(ABC):
    @abstractmethod
    async def initiate_push(
        self, *, ticket_id: str, amount: int, phone: str
    ) -> PushAccepted: ...

    # None while the payment is still pending at the gateway
    @abstractmethod
    async def query_status(
        self, *, ticket_id: str, gateway_request_id: str
    ) -> Optional[ConfirmationEvidence]: ...

    def parse_callback(self, payload: Dict[str, Any]) -> ConfirmationEvidence:
        return evidence_from_callback(payload)

    async def aclose(self) -> None:
        return None


def _is_zero(v: Any) -> bool:
    return v == 0 or v == "0"


def _push_accepted(data: Any) -> bool:
    if not isinstance(data, dict) or not data.get("CheckoutRequestID"):
        return False
    return (
        _is_zero(data.get("ResponseCode"))
        or _is_zero(data.get("ResultCode"))
        or data.get("success") is True
    )


# ----------------------------
# Umeskia (M-Pesa STK push) implementation
# ----------------------------
class UmeskiaGateway(GatewayClient):

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        api_url: str = MPESA_API_URL,
        status_url: str = MPESA_STATUS_URL,
        api_key: str = MPESA_API_KEY,
        ums_email: str = MPESA_UMS_EMAIL,
        account_id: str = MPESA_ACCOUNT_ID,
        timeout: float = GATEWAY_TIMEOUT,
    ) -> None:
        self.http = http
        self.api_url = api_url
        self.status_url = status_url
        self.api_key = api_key
        self.ums_email = ums_email
        self.account_id = account_id
        self.timeout = timeout

    def _require_config(self) -> None:
        if not (self.api_key and self.ums_email and self.account_id):
            log.error("M-Pesa API credentials not configured")
            raise GatewayError(
                "Payment gateway configuration error. "
                "Please contact support."
            )

    async def _post(self, kind: str, url: str, body: Dict[str, Any]) -> Any:
        try:
            async with timeit(kind):
                r = await self.http.post(url, json=body, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise GatewayUnreachableError(
                detail=f"{kind}: timeout after {self.timeout}s"
            ) from e
        except httpx.HTTPError as e:
            raise GatewayUnreachableError(detail=f"{kind}: {e!r}") from e

        try:
            data = r.json()
        except ValueError:
            data = None
        if r.status_code >= 400 or data is None:
            raise GatewayRejectedError(
                detail=f"{kind}: HTTP {r.status_code} {r.text[:200]}"
            )
        log.debug("%s response: %s", kind, data)
        return data

    async def initiate_push(
        self, *, ticket_id: str, amount: int, phone: str
    ) -> PushAccepted:
        self._require_config()
        log.info("initiating STK push ticket=%s amount=%s phone=%s",
                 ticket_id, amount, phone)
        data = await self._post("gateway.initiate", self.api_url, {
            "api_key": self.api_key,
            "email": self.ums_email,
            "account_id": self.account_id,
            "msisdn": phone,
            "amount": str(amount),
            "reference": ticket_id,
        })
        if not _push_accepted(data):
            desc = None
            if isinstance(data, dict):
                desc = (data.get("ResponseDescription")
                        or data.get("ResultDesc") or data.get("message"))
            raise GatewayRejectedError(
                detail=f"push not accepted: {desc or data!r}"
            )
        return {
            "gateway_request_id": str(data["CheckoutRequestID"]),
            "message": (
                data.get("ResponseDescription")
                or data.get("CustomerMessage")
                or "STK Push initiated. Please check your phone."
            ),
        }

    async def query_status(
        self, *, ticket_id: str, gateway_request_id: str
    ) -> Optional[ConfirmationEvidence]:
        self._require_config()
        data = await self._post("gateway.status", self.status_url, {
            "api_key": self.api_key,
            "email": self.ums_email,
            "transaction_request_id": gateway_request_id,
        })
        return evidence_from_status(ticket_id, data)


# ----------------------------
# Mock implementation (demo + tests)
# ----------------------------
class MockGateway(GatewayClient):
    """
    Accepts every push and keeps the requests in memory. `emit` settles a
    request and delivers the callback to the webhook the way the real
    gateway would.
    """

    def __init__(
        self,
        *,
        http: Optional[httpx.AsyncClient] = None,
        webhook_url: str = MOCK_WEBHOOK_URL,
    ) -> None:
        self.http = http
        self.webhook_url = webhook_url
        self._seq = itertools.count(1)
        self.requests: Dict[str, Dict[str, Any]] = {}
        # raised (once) by the next initiate_push; tests use it
        self.next_error: Optional[GatewayError] = None

    async def initiate_push(
        self, *, ticket_id: str, amount: int, phone: str
    ) -> PushAccepted:
        if self.next_error is not None:
            err, self.next_error = self.next_error, None
            raise err
        rid = f"R-{next(self._seq)}"
        self.requests[rid] = {
            "ticket_id": ticket_id,
            "amount": amount,
            "phone": phone,
            "status": "Pending",
            "receipt": None,
        }
        return {"gateway_request_id": rid, "message": "STK Push initiated"}

    def settle(
        self, request_id: str, outcome: Outcome,
        receipt_number: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Mark a request paid/failed and return its callback payload."""
        req = self.requests.get(request_id)
        if req is None:
            raise GatewayRejectedError(
                "Unknown transaction.", detail=request_id
            )
        ok = outcome is Outcome.SUCCESS
        req["status"] = "Completed" if ok else "Failed"
        if ok:
            req["receipt"] = receipt_number or f"MCK{request_id[2:]:0>7}"
        ts = now_ts()
        req["paid_at"] = ts
        return {"Body": {"stkCallback": {
            "ResponseCode": 0 if ok else 1032,
            "ResponseDescription": (
                "Success. Request accepted for processing" if ok
                else "Request cancelled by user"
            ),
            "MerchantRequestID": f"M-{request_id}",
            "CheckoutRequestID": request_id,
            "TransactionAmount": req["amount"] if ok else None,
            "TransactionReceipt": req["receipt"],
            "TransactionDate": _gateway_date(ts) if ok else None,
            "TransactionReference": req["ticket_id"],
            "Msisdn": req["phone"],
        }}}

    async def emit(
        self, request_id: str, outcome: Outcome,
        receipt_number: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = self.settle(request_id, outcome, receipt_number)
        if self.http is None:
            return payload
        try:
            await self.http.post(self.webhook_url, json=payload)
        except httpx.HTTPError as e:
            # the callback is lost; a manual poll still finds the outcome
            log.warning("mock webhook delivery failed: %r", e)
        return payload

    async def query_status(
        self, *, ticket_id: str, gateway_request_id: str
    ) -> Optional[ConfirmationEvidence]:
        req = self.requests.get(gateway_request_id)
        if req is None:
            raise GatewayRejectedError(
                "Unknown transaction.", detail=gateway_request_id
            )
        return evidence_from_status(ticket_id, {
            "TransactionStatus": req["status"],
            "TransactionReceipt": req["receipt"],
            "TransactionAmount": req["amount"],
            "Msisdn": req["phone"],
            "TransactionDate": (
                _gateway_date(req["paid_at"]) if req.get("paid_at") else None
            ),
            "TransactionReference": req["ticket_id"],
        })


def _gateway_date(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime(
        GATEWAY_TS_FORMAT
    )
