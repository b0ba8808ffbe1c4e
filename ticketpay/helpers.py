import re
import time
from datetime import datetime, timezone
from typing import Optional

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MSISDN_RE = re.compile(r"^(?:0[17]\d{8}|254[17]\d{8})$")
GATEWAY_TS_FORMAT = "%Y%m%d%H%M%S"


def now_ts() -> float:
    return time.time()


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and _EMAIL_RE.match(email.strip()) is not None


def normalize_msisdn(phone: Optional[str]) -> Optional[str]:
    """Strip whitespace and a leading '+'; None if not a mobile-money number.

    Accepts 07XXXXXXXX / 01XXXXXXXX and 2547XXXXXXXX / 2541XXXXXXXX.
    """
    if not phone:
        return None
    p = re.sub(r"\s+", "", phone).removeprefix("+")
    return p if _MSISDN_RE.match(p) else None


def parse_gateway_ts(value: Optional[str]) -> Optional[float]:
    # gateway timestamps are UTC
    if not value:
        return None
    try:
        dt = datetime.strptime(value, GATEWAY_TS_FORMAT)
    except ValueError:
        return None
    return dt.replace(tzinfo=timezone.utc).timestamp()
