import math
import time
import re
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_order_id() -> str:
    return uuid.uuid4().hex


def new_payment_id(order_id: str) -> str:
    return f"{order_id}_retry{int(time.time() * 1000)}"


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), ROUND_HALF_UP)


def format_money(value) -> str:
    return f"{to_money(value):.2f}"


def ceil_units(value: Decimal) -> int:
    return int(math.ceil(value))


def order_id_of(payment_id: str) -> str:
    # inverse of new_payment_id(); plain order ids pass through
    return payment_id.split("_retry", 1)[0]
