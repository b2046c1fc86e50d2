from __future__ import annotations

import os
import re
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

import pytz


# -----------------------
# Clock primitives
# -----------------------
class Clock:
    def now_utc(self) -> datetime:
        raise NotImplementedError


class RealClock(Clock):
    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock frozen at a given instant. ``advance`` moves it forward for tests."""

    def __init__(self, dt_utc: datetime):
        if dt_utc.tzinfo is None:
            dt_utc = dt_utc.replace(tzinfo=timezone.utc)
        self._dt = dt_utc.astimezone(timezone.utc)

    @staticmethod
    def from_env(var: str = "NOW_UTC") -> Optional["FixedClock"]:
        val = os.getenv(var)
        if not val:
            return None
        return FixedClock(parse_datetime(val))

    def advance(self, **kwargs: float) -> None:
        self._dt = self._dt + timedelta(**kwargs)

    def now_utc(self) -> datetime:
        return self._dt


def default_clock() -> Clock:
    return FixedClock.from_env() or RealClock()


def parse_datetime(s: str) -> datetime:
    """Parse epoch seconds, epoch millis or ISO 8601 (including Meta's ``+0000`` offsets)."""
    s = s.strip()
    if re.fullmatch(r"\d{10}", s):
        return datetime.fromtimestamp(int(s), tz=timezone.utc)
    if re.fullmatch(r"\d{13}", s):
        return datetime.fromtimestamp(int(s) / 1000.0, tz=timezone.utc)
    s = s.replace("Z", "+00:00")
    # Graph API returns offsets without a colon, e.g. 2024-01-02T10:00:00+0000
    s = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", s)
    try:
        dt = datetime.fromisoformat(s)
    except ValueError as e:
        raise ValueError(f"Invalid datetime: {s!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_optional_datetime(v: Any) -> Optional[datetime]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)
    return parse_datetime(str(v))


def parse_day(v: Any) -> date:
    """Coerce a report date (``YYYY-MM-DD``, ISO datetime or ``date``) to a calendar day."""
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    s = str(v).strip()
    if not s:
        raise ValueError("Empty date")
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", s):
        return date.fromisoformat(s)
    return parse_datetime(s).date()


def require_tz(name: str) -> pytz.BaseTzInfo:
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError as e:
        raise ValueError(f"Invalid IANA timezone: {name!r}") from e


def day_in_tz(dt: datetime, tz_name: Optional[str]) -> date:
    return dt.astimezone(require_tz(tz_name or "UTC")).date()


def today_in_tz(clock: Clock, tz_name: Optional[str]) -> date:
    return day_in_tz(clock.now_utc(), tz_name)


def iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


# -----------------------
# Env helpers
# -----------------------
def getenv_f(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


def getenv_i(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


# -----------------------
# Numbers & money
# -----------------------
_NUMERIC_STRIP = re.compile(r"[\s$€£¥₫₩,]")


def parse_numeric(v: Any) -> Optional[float]:
    """Parse a report cell into a float.

    Currency symbols and thousands separators are tolerated. Empty, ``"--"``
    and unparseable cells are ``None`` (absent), which is distinct from 0.
    """
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        f = float(v)
        return None if f != f else f
    s = _NUMERIC_STRIP.sub("", str(v)).rstrip("%")
    if s in ("", "-", "--"):
        return None
    try:
        f = float(s)
    except ValueError:
        return None
    if f != f or f in (float("inf"), float("-inf")):
        return None
    return f


# Meta bills these currencies without a minor unit (offset 1).
ZERO_DECIMAL_CURRENCIES = frozenset({
    "CLP", "COP", "CRC", "HUF", "ISK", "IDR", "JPY", "KRW", "PYG", "TWD", "VND",
})


def currency_decimals(currency: Optional[str]) -> int:
    return 0 if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES else 2


def round_money(amount: Any, currency: Optional[str]) -> Decimal:
    places = currency_decimals(currency)
    quantum = Decimal(1).scaleb(-places)
    try:
        return Decimal(str(amount)).quantize(quantum, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e


def from_minor_units(v: Any, currency: Optional[str]) -> Optional[Decimal]:
    """Graph budgets are integers in the currency's smallest unit (cents for USD)."""
    n = parse_numeric(v)
    if n is None:
        return None
    places = currency_decimals(currency)
    return round_money(Decimal(str(n)).scaleb(-places), currency)


def format_money(amount: Optional[Decimal], currency: Optional[str]) -> str:
    if amount is None:
        return "-"
    places = currency_decimals(currency)
    return f"{amount:,.{places}f} {(currency or '').upper()}".strip()


# -----------------------
# Meta identifiers
# -----------------------
def normalize_ad_account_id(raw: Any) -> str:
    """Return the ``act_``-prefixed form of an ad account id."""
    s = str(raw or "").strip()
    if not s:
        raise ValueError("Empty ad account id")
    return s if s.startswith("act_") else f"act_{s}"


def numeric_ad_account_id(raw: Any) -> str:
    return normalize_ad_account_id(raw)[len("act_"):]
