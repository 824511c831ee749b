import os
import time
import uuid
from datetime import datetime, timezone
import hmac
from typing import Optional

ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "ORD-")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def new_id() -> str:
    return uuid.uuid4().hex


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def clean_str(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def format_order_number(seq: int) -> str:
    return f"{ORDER_NUMBER_PREFIX}{seq:06d}"


def order_number_variants(raw: str) -> list[str]:
    # customers type the number with or without the prefix
    num = raw.strip()
    if num.startswith(ORDER_NUMBER_PREFIX):
        bare = num[len(ORDER_NUMBER_PREFIX):]
    else:
        bare = num
    return list(dict.fromkeys([num, ORDER_NUMBER_PREFIX + bare, bare]))
