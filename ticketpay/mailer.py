"""
Receipt emails: rendering and delivery.

The status-page QR code is rendered as an HTML table straight from the
`qrcode` module matrix, so the mail needs no image attachment and renders
in clients that block images.
"""
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import qrcode
import qrcode.constants
from jinja2 import DictLoader, Environment, select_autoescape

from .config import (
    MAIL_FROM, MAILGUN_API_KEY, MAILGUN_DOMAIN, MAILGUN_URL,
    TICKET_STATUS_URL,
)
from .errors import EmailDispatchError

log = logging.getLogger(__name__)

TEMPLATES = {
    "receipt.txt": """\
Dear Customer,

Your payment has been successfully processed!

Ticket Details:
-----------------------------------
Ticket ID: {{ ticket_id }}
M-Pesa Receipt: {{ receipt_number }}
Amount Paid: KES {{ amount }}
Phone Number: {{ phone or 'N/A' }}
Quantity: {{ quantity or 'N/A' }}
-----------------------------------

Thank you for using RNR Pay.
You can view your ticket status here: {{ status_url }}

Sincerely,
The RNR Solutions Team
""",
    "receipt.html": """\
<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>Payment Confirmed</title></head>
<body style="font-family: Arial, sans-serif; background-color: #f4f4f4;">
<div style="max-width: 600px; margin: 20px auto; background: #ffffff;">
  <div style="background-color: #202A44; padding: 20px; text-align: center;">
    <h1 style="color: #ffffff;">You're In! Get Ready for an Experience.</h1>
  </div>
  <div style="padding: 30px;">
    <p>Your payment is confirmed and your spot is secured.</p>
    <div style="text-align: center; margin: 30px 0;">
      <h4>Ticket QR Code</h4>
      <table style="border-collapse: collapse; margin: 0 auto;">
      {% for row in qr %}<tr>{% for dark in row %}<td style="width: {{ cell }}px; height: {{ cell }}px; padding: 0; background-color: {{ '#000000' if dark else '#ffffff' }};"></td>{% endfor %}</tr>
      {% endfor %}</table>
      <div style="font-size: 14px; color: #666;">Scan with your phone's camera for quick access</div>
    </div>
    <table>
      <tr><td><b>Ticket ID:</b></td><td>{{ ticket_id }}</td></tr>
      <tr><td><b>M-Pesa Receipt:</b></td><td>{{ receipt_number }}</td></tr>
      <tr><td><b>Amount Paid:</b></td><td>KES {{ amount }}</td></tr>
      <tr><td><b>Phone Number:</b></td><td>{{ phone or 'N/A' }}</td></tr>
      <tr><td><b>Tickets Secured:</b></td><td>{{ quantity or 'N/A' }}</td></tr>
    </table>
    <p style="text-align: center;"><a href="{{ status_url }}">Access Your Ticket</a></p>
  </div>
  <div style="background-color: #f0f0f0; padding: 20px; text-align: center; font-size: 14px; color: #777;">
    <p>&copy; {{ year }} RNR Social Experiences. All rights reserved.</p>
    <p>This is an automated confirmation. No need to reply.</p>
  </div>
</div>
</body>
</html>
""",
}

_env = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=select_autoescape(["html"]),
)


@dataclass
class ReceiptEmail:
    to: str
    subject: str
    text: str
    html: str


def qr_matrix(data: str) -> List[List[bool]]:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        border=2,
    )
    qr.add_data(data)
    qr.make(fit=True)
    return qr.get_matrix()


def status_url(ticket_id: str, template: str = TICKET_STATUS_URL) -> str:
    return template.format(ticket_id=ticket_id)


def render_receipt(
    ticket: Dict[str, Any], to: Optional[str] = None,
    status_url_template: str = TICKET_STATUS_URL,
) -> ReceiptEmail:
    to = to or ticket.get("email")
    if not to:
        raise EmailDispatchError(
            "No recipient email address provided.", detail=ticket["id"]
        )
    url = status_url(ticket["id"], status_url_template)
    amount = ticket.get("paid_amount") or ticket.get("amount")
    if isinstance(amount, float) and amount.is_integer():
        amount = int(amount)
    qr = qr_matrix(url)
    ctx = {
        "ticket_id": ticket["id"],
        "receipt_number": ticket.get("receipt_number") or "N/A",
        "amount": amount,
        "phone": ticket.get("paid_phone") or ticket.get("phone"),
        "quantity": ticket.get("quantity"),
        "status_url": url,
        "qr": qr,
        "cell": max(2, 160 // max(1, len(qr))),
        "year": datetime.now(timezone.utc).year,
    }
    return ReceiptEmail(
        to=to,
        subject=f"Payment Confirmed - Ticket {ticket['id']}",
        text=_env.get_template("receipt.txt").render(**ctx),
        html=_env.get_template("receipt.html").render(**ctx),
    )


# ----------------------------
# Delivery
# ----------------------------
class Mailer(ABC):
    @abstractmethod
    async def send(self, message: ReceiptEmail) -> None:
        """Deliver or raise EmailDispatchError."""


class MailgunMailer(Mailer):

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        api_key: str = MAILGUN_API_KEY,
        domain: str = MAILGUN_DOMAIN,
        base_url: str = MAILGUN_URL,
        sender: str = MAIL_FROM,
        timeout: float = 10.0,
    ) -> None:
        self.http = http
        self.api_key = api_key
        self.domain = domain
        self.base_url = base_url.rstrip("/")
        self.sender = sender
        self.timeout = timeout

    async def send(self, message: ReceiptEmail) -> None:
        try:
            r = await self.http.post(
                f"{self.base_url}/v3/{self.domain}/messages",
                auth=("api", self.api_key),
                data={
                    "from": self.sender,
                    "to": message.to,
                    "subject": message.subject,
                    "text": message.text,
                    "html": message.html,
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise EmailDispatchError(detail=f"mailgun: {e!r}") from e
        if r.status_code >= 400:
            raise EmailDispatchError(
                detail=f"mailgun: HTTP {r.status_code} {r.text[:200]}"
            )
        log.info("email sent to %s via Mailgun: %s", message.to,
                 message.subject)


class LogMailer(Mailer):
    """Used when Mailgun is not configured: logs instead of sending."""

    def __init__(self) -> None:
        self.sent: List[ReceiptEmail] = []

    async def send(self, message: ReceiptEmail) -> None:
        log.info("[Simulated Email] to=%s subject=%r", message.to,
                 message.subject)
        self.sent.append(message)


def new_mailer(http: httpx.AsyncClient) -> Mailer:
    if MAILGUN_API_KEY and MAILGUN_DOMAIN:
        return MailgunMailer(http)
    log.warning("MAILGUN_API_KEY / MAILGUN_DOMAIN not set; "
                "emails will be simulated")
    return LogMailer()
