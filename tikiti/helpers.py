import time
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
import hmac
from typing import Optional, Union

ALNUM = string.ascii_letters + string.digits
_B36 = string.digits + string.ascii_lowercase
CENT = Decimal("0.01")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def to_js_iso(ts: float) -> str:
    # 2025-01-31T18:04:05.123Z
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def base36(n: int) -> str:
    if n < 0:
        raise ValueError("base36 of negative number")
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_B36[r])
    return "".join(reversed(out))


def base36_millis(ts: float | None = None) -> str:
    ts = now_ts() if ts is None else ts
    return base36(int(ts * 1000))


def random_alnum(k: int) -> str:
    return "".join(secrets.choice(ALNUM) for _ in range(k))


# ----------------------------
# Money: stored as integer cents
# ----------------------------
Money = Union[Decimal, int, str, float]


def to_decimal(value: Money) -> Decimal:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"not a monetary amount: {value!r}")
    if not d.is_finite():
        raise ValueError(f"not a monetary amount: {value!r}")
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Money) -> int:
    return int(to_decimal(value) * 100)


def from_cents(cents: int | None) -> Optional[Decimal]:
    if cents is None:
        return None
    return (Decimal(int(cents)) / 100).quantize(CENT)


def money_str(cents: int | None) -> Optional[str]:
    d = from_cents(cents)
    return None if d is None else str(d)
