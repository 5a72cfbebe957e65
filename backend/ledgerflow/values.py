import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from dateutil import parser as dtparse

MONTHS_ABBR = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

DMY_RE = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4}|\d{2})$")
YMD_RE = re.compile(r"^(\d{4})[/\-.](\d{1,2})[/\-.](\d{1,2})$")
D_MON_Y_RE = re.compile(r"^(\d{1,2})[\s\-]([A-Za-z]{3})[\s\-](\d{4}|\d{2})$")

CURRENCY_GLYPHS_RE = re.compile(r"[₹$€£¥\s]|\b(?:rs|inr)\.?", re.IGNORECASE)
LEADING_NUMBER_RE = re.compile(r"^[-+]?(?:\d+(?:\.\d*)?|\.\d+)")

CENTS = Decimal("0.01")
FALLBACK_DEFAULTS = (datetime(2000, 1, 1), datetime(2004, 1, 1))


def expand_year(yy: str) -> int:
    if len(yy) == 4:
        return int(yy)
    value = int(yy)
    return 1900 + value if value > 50 else 2000 + value


def _iso(year: int, month: int, day: int) -> Optional[str]:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def parse_date(value: Any) -> Optional[str]:
    """
    Normalize a statement date to YYYY-MM-DD.

    Day-first numeric forms (01/02/2024, 1-2-24, 01.02.2024), ISO year-first
    forms and "15 Jan 2024" are handled explicitly; anything else is handed to
    dateutil. Returns None when the text is not a calendar date.
    """
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()[:10]
    s = str(value).strip()
    if not s:
        return None

    m = DMY_RE.match(s)
    if m:
        return _iso(expand_year(m.group(3)), int(m.group(2)), int(m.group(1)))

    m = YMD_RE.match(s)
    if m:
        return _iso(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    m = D_MON_Y_RE.match(s)
    if m:
        month = MONTHS_ABBR.get(m.group(2).lower())
        if month is None:
            return None
        return _iso(expand_year(m.group(3)), month, int(m.group(1)))

    # Generic fallback only for text that plausibly spells a full date.
    if len(s) < 6 or not re.search(r"\d", s):
        return None
    try:
        # Missing parts come from the defaults, never from today. A year that
        # follows the default was not in the text.
        first = dtparse.parse(s, dayfirst=True, default=FALLBACK_DEFAULTS[0])
        second = dtparse.parse(s, dayfirst=True, default=FALLBACK_DEFAULTS[1])
    except (ValueError, OverflowError):
        return None
    if first.year != second.year:
        return None
    return first.date().isoformat()


def _leading_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        number = Decimal(str(value))
        return number if number.is_finite() else None
    s = CURRENCY_GLYPHS_RE.sub("", str(value)).replace(",", "")
    negative = s.startswith("(") and s.endswith(")")
    if negative:
        s = "-" + s[1:-1]
    m = LEADING_NUMBER_RE.match(s)
    if not m:
        return None
    try:
        return Decimal(m.group(0))
    except InvalidOperation:
        return None


def parse_amount(value: Any) -> Decimal:
    """
    Absolute amount in currency units. Grouping commas are dropped wholesale, so
    both 1,234,567.89 and the lakh form 12,34,567.89 parse. Non-numeric -> 0.
    """
    number = _leading_decimal(value)
    if number is None:
        return Decimal("0.00")
    return abs(number).quantize(CENTS)


def parse_signed_amount(value: Any) -> Optional[Decimal]:
    number = _leading_decimal(value)
    return None if number is None else number.quantize(CENTS)
