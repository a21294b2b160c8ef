"""
Delivery Calendar — Mondays of the month and business-timezone dates.

Rules:
  - Deliveries only ever happen on Mondays
  - Ordinal slots: first, second, third, fourth, last
  - "last" always aliases the final Monday (equal to "fourth" in 4-Monday months)
  - Month keys are "YYYY-MM" strings
"""

from __future__ import annotations
import calendar
import re
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from config import settings
from services.errors import BillingValidationError

MONDAY_SLOTS = ("first", "second", "third", "fourth", "last")

_MONTH_KEY_RE = re.compile(r"^(\d{4})-(\d{2})$")


def normalize_month_key(value: str) -> str:
    """Validate a "YYYY-MM" key; raises BillingValidationError if malformed."""
    match = _MONTH_KEY_RE.match((value or "").strip())
    if not match:
        raise BillingValidationError(f"Invalid cycle month: {value!r}")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12 or year < 1:
        raise BillingValidationError(f"Invalid cycle month: {value!r}")
    return f"{year:04d}-{month:02d}"


def parse_month_key(value: str) -> tuple[int, int]:
    normalized = normalize_month_key(value)
    return int(normalized[:4]), int(normalized[5:])


def month_key_for(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def next_month_key(value: str) -> str:
    year, month = parse_month_key(value)
    if month == 12:
        return f"{year + 1:04d}-01"
    return f"{year:04d}-{month + 1:02d}"


def compare_month_keys(left: str, right: str) -> int:
    """-1 / 0 / 1 — zero-padded keys compare lexically."""
    a, b = normalize_month_key(left), normalize_month_key(right)
    if a == b:
        return 0
    return 1 if a > b else -1


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def list_mondays(month_key: str) -> list[date]:
    """Every Monday in the month, ascending."""
    year, month = parse_month_key(month_key)
    first = date(year, month, 1)
    # weekday(): Monday == 0
    offset = (7 - first.weekday()) % 7
    current = first + timedelta(days=offset)
    mondays = []
    while current.month == month:
        mondays.append(current)
        current += timedelta(days=7)
    return mondays


def monday_slot_map(month_key: str) -> dict[str, date]:
    """Map ordinal slots to concrete Mondays for the month."""
    mondays = list_mondays(month_key)
    slot_map = {}
    for index, slot in enumerate(MONDAY_SLOTS[:4]):
        if index < len(mondays):
            slot_map[slot] = mondays[index]
    slot_map["last"] = mondays[-1]
    return slot_map


def business_now(now: datetime | None = None) -> datetime:
    """Current wall-clock time in the business timezone."""
    tz = ZoneInfo(settings.BUSINESS_TIMEZONE)
    if now is None:
        return datetime.now(tz)
    if now.tzinfo is None:
        return now.replace(tzinfo=tz)
    return now.astimezone(tz)


def business_today(now: datetime | None = None) -> date:
    return business_now(now).date()
