"""GTIN check digit and GS1 date arithmetic."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timezone

EXPIRY_FORMAT_INVALID = "EXPIRY_FORMAT_INVALID"
EXPIRY_MONTH_INVALID = "EXPIRY_MONTH_INVALID"
EXPIRY_DAY_INVALID = "EXPIRY_DAY_INVALID"


@dataclass(frozen=True)
class ExpiryDate:
    value: date | None = None
    error: str | None = None

    @property
    def iso(self) -> str | None:
        return self.value.isoformat() if self.value else None


def gtin_to_14(value: str) -> str:
    if len(value) == 14:
        return value
    if len(value) < 14:
        return value.rjust(14, "0")
    return value[-14:]


def gtin_check_digit(body: str) -> int:
    """GS1 mod-10 over the digits preceding the check digit.

    Weights run 3, 1, 3, 1... starting from the rightmost body digit.
    """
    total = 0
    weight = 3
    for char in reversed(body):
        total += int(char) * weight
        weight = 1 if weight == 3 else 3
    return (10 - (total % 10)) % 10


def is_valid_gtin14(gtin14: str) -> bool:
    text = str(gtin14 or "")
    if len(text) != 14 or not (text.isascii() and text.isdigit()):
        return False
    return gtin_check_digit(text[:13]) == int(text[13])


def parse_expiry_yymmdd(value: str) -> ExpiryDate:
    text = str(value or "")
    if len(text) != 6 or not (text.isascii() and text.isdigit()):
        return ExpiryDate(error=EXPIRY_FORMAT_INVALID)
    year = 2000 + int(text[0:2])
    month = int(text[2:4])
    day = int(text[4:6])
    if month < 1 or month > 12:
        return ExpiryDate(error=EXPIRY_MONTH_INVALID)
    last_day = calendar.monthrange(year, month)[1]
    if day == 0:
        day = last_day
    if day > last_day:
        return ExpiryDate(error=EXPIRY_DAY_INVALID)
    return ExpiryDate(value=date(year, month, day))


def days_until(expiry: date, now: datetime) -> int:
    """Whole days between UTC midnight of ``now`` and the expiry date."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    today = now.astimezone(timezone.utc).date()
    return (expiry - today).days
