import time
import re
from datetime import datetime, timezone
import hmac
from typing import Any, Optional
from urllib.parse import urlencode


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def parse_ts(value: Any) -> Optional[float]:
    """epoch seconds, epoch millis or ISO-8601 -> epoch seconds"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)):
        ts = float(value)
        # JS clients send milliseconds
        return ts / 1000.0 if ts > 1e11 else ts
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def receipt_url(base_url: str, *, payment_reference: str,
                transaction_reference: str, amount: float, seats: int,
                serial: Optional[str] = None) -> str:
    amount = float(amount or 0)
    params = {
        "ref": payment_reference,
        "txref": transaction_reference,
        "amount": str(int(amount)) if amount.is_integer() else f"{amount:.2f}",
        "seats": seats,
    }
    if serial:
        params["serial"] = serial
    return f"{base_url.rstrip('/')}/receipt?{urlencode(params)}"


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
