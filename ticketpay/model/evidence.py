"""
Confirmation evidence.

Whatever channel reports a payment outcome (gateway webhook, manual status
poll), it is normalised into one `ConfirmationEvidence` record before it
reaches the reconciliation engine. Gateway payloads are validated here, at
the boundary, with pydantic; anything that does not parse is rejected as a
whole and never partially trusted.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as SchemaError

from ..errors import ValidationError
from ..helpers import parse_gateway_ts


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


# channels evidence can arrive through
SOURCE_WEBHOOK = "webhook"
SOURCE_POLL = "poll"


@dataclass(frozen=True)
class ConfirmationEvidence:
    ticket_id: str
    outcome: Outcome
    source: str
    receipt_number: Optional[str] = None
    amount: Optional[float] = None
    phone: Optional[str] = None
    timestamp: Optional[float] = None
    # gateway's description of a failure
    error_detail: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_success(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def validate(self) -> None:
        if not self.ticket_id or not isinstance(self.ticket_id, str):
            raise ValidationError("Evidence has no ticket reference.")
        if not isinstance(self.outcome, Outcome):
            raise ValidationError(
                "Unknown payment outcome.", detail=repr(self.outcome)
            )
        # failure callbacks may carry a zero amount
        if self.is_success and self.amount is not None and self.amount <= 0:
            raise ValidationError(
                "Evidence amount must be positive.", detail=str(self.amount)
            )

    def audit_detail(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value
            if isinstance(self.outcome, Outcome) else str(self.outcome),
            "receipt_number": self.receipt_number,
            "amount": self.amount,
            "phone": self.phone,
            "timestamp": self.timestamp,
            "error_detail": self.error_detail,
            "raw": self.raw,
        }


# ----------------------------
# Gateway wire shapes
# ----------------------------
class StkCallback(BaseModel):
    model_config = ConfigDict(extra="allow")

    ResponseCode: int
    ResponseDescription: str
    MerchantRequestID: str
    CheckoutRequestID: str
    TransactionID: Optional[str] = None
    TransactionAmount: Optional[float] = None
    TransactionReceipt: Optional[str] = None
    TransactionDate: Optional[str | int] = None
    # our ticket id, sent as the push reference
    TransactionReference: Optional[str] = None
    Msisdn: Optional[str | int] = None


class _StkBody(BaseModel):
    model_config = ConfigDict(extra="allow")
    stkCallback: StkCallback


class StkCallbackPayload(BaseModel):
    model_config = ConfigDict(extra="allow")
    Body: _StkBody


class StatusResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    TransactionStatus: str
    ResultDesc: Optional[str] = None
    TransactionReceipt: Optional[str] = None
    TransactionAmount: Optional[float] = None
    TransactionDate: Optional[str | int] = None
    TransactionReference: Optional[str] = None
    Msisdn: Optional[str | int] = None


def _ts(value: Optional[str | int]) -> Optional[float]:
    return parse_gateway_ts(str(value)) if value is not None else None


STATUS_SUCCESS = {"completed", "success", "successful"}
STATUS_FAILURE = {"failed", "cancelled", "canceled", "expired"}


def evidence_from_callback(
    payload: Dict[str, Any], source: str = SOURCE_WEBHOOK
) -> ConfirmationEvidence:
    try:
        cb = StkCallbackPayload.model_validate(payload).Body.stkCallback
    except SchemaError as e:
        raise ValidationError(
            "Invalid gateway callback.", detail=str(e)
        ) from e

    if not cb.TransactionReference:
        raise ValidationError(
            "Gateway callback has no ticket reference.",
            detail=f"MerchantRequestID={cb.MerchantRequestID}",
        )

    success = cb.ResponseCode == 0
    return ConfirmationEvidence(
        ticket_id=cb.TransactionReference,
        outcome=Outcome.SUCCESS if success else Outcome.FAILURE,
        source=source,
        receipt_number=cb.TransactionReceipt,
        amount=cb.TransactionAmount,
        phone=str(cb.Msisdn) if cb.Msisdn is not None else None,
        timestamp=_ts(cb.TransactionDate),
        error_detail=None if success else cb.ResponseDescription,
        raw=cb.model_dump(),
    )


def evidence_from_status(
    ticket_id: str, payload: Dict[str, Any], source: str = SOURCE_POLL
) -> Optional[ConfirmationEvidence]:
    """None while the gateway still reports the payment as pending."""
    try:
        st = StatusResponse.model_validate(payload)
    except SchemaError as e:
        raise ValidationError(
            "Invalid gateway status response.", detail=str(e)
        ) from e

    status = st.TransactionStatus.strip().lower()
    if status in STATUS_SUCCESS:
        outcome = Outcome.SUCCESS
    elif status in STATUS_FAILURE:
        outcome = Outcome.FAILURE
    else:
        return None

    # the gateway reference names the ticket the request was issued for
    return ConfirmationEvidence(
        ticket_id=st.TransactionReference or ticket_id,
        outcome=outcome,
        source=source,
        receipt_number=st.TransactionReceipt,
        amount=st.TransactionAmount,
        phone=str(st.Msisdn) if st.Msisdn is not None else None,
        timestamp=_ts(st.TransactionDate),
        error_detail=(
            None if outcome is Outcome.SUCCESS
            else (st.ResultDesc or st.TransactionStatus)
        ),
        raw=st.model_dump(),
    )
