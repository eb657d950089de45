"""Lenient value coercion for spreadsheet cells.

Sheets arrive with French and English conventions mixed freely: decimal
commas, thousands dots, currency suffixes, day-first dates, local phone
numbers. Everything here returns None instead of raising on junk input,
so one bad cell never fails a row.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime, timezone
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_NUMBER_JUNK = re.compile(r"[^\d.,\-]")
_DMY = re.compile(
    r"^(\d{1,2})[/\-](\d{1,2})[/\-](\d{2,4})(?:[ T](\d{1,2}):(\d{2})(?::(\d{2}))?)?$"
)
_PHONE_JUNK = re.compile(r"[\s\-().]")
_QUANTITY_UNITS = re.compile(r"\b(pcs|pieces|units|items|qty|pièces|unités)\b", re.IGNORECASE)

_CURRENCY_TOKENS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\b(mad|dh|dhs|dirham|dirhams)\b|درهم", re.IGNORECASE), "MAD"),
    (re.compile(r"€|\beur(o|os)?\b", re.IGNORECASE), "EUR"),
    (re.compile(r"\$|\busd\b", re.IGNORECASE), "USD"),
]


def norm_text(value: Any) -> str:
    """Accent-insensitive comparison key.

    NFD-decompose, drop combining marks, lowercase, collapse every run of
    non-alphanumerics into one space, trim. ``"Téléphone"`` -> ``"telephone"``.
    """
    s = unicodedata.normalize("NFD", "" if value is None else str(value))
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", s.lower()).strip()


def coerce_number(value: Any) -> Decimal | None:
    """Parse a money/quantity cell.

    Strips everything but digits, ``.``, ``,`` and ``-``. When both
    separators appear the earlier one is the thousands separator
    (``1.234,50`` and ``1,234.50`` both give 1234.50); a lone comma is a
    decimal comma (``199,90`` -> 199.90).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            number = Decimal(str(value))
        except InvalidOperation:
            return None
        return number if number.is_finite() else None

    s = _NUMBER_JUNK.sub("", str(value).strip())
    if "." in s and "," in s:
        if s.index(".") < s.index(","):
            s = s.replace(".", "").replace(",", ".", 1)
        else:
            s = s.replace(",", "")
    elif "," in s:
        s = s.replace(",", ".", 1)

    if not s or s in {"-", "."}:
        return None
    try:
        number = Decimal(s)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def _from_epoch(value: float) -> datetime | None:
    seconds = value / 1000 if value > 1e12 else value
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_date_loose(value: Any) -> datetime | None:
    """Parse a date cell into an aware UTC datetime.

    Accepts datetimes/dates (xlsx cells), epoch seconds or milliseconds,
    ISO-8601 strings, and ``d/m/Y`` or ``d-m-Y`` with optional time. Day
    first is preferred; ``03/25/2024`` is flipped because 25 cannot be a
    month.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_epoch(float(value))

    s = str(value).strip()
    if not s:
        return None
    if s.isdigit() and len(s) in (10, 13):
        return _from_epoch(float(s))

    try:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is not None:
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    m = _DMY.match(s)
    if not m:
        return None
    a, b, c, hh, mm, ss = m.groups()
    day, month = int(a), int(b)
    year = int(f"20{c}") if len(c) == 2 else int(c)
    if day <= 12 and month > 12:
        day, month = month, day
    try:
        return datetime(
            year, month, day, int(hh or 0), int(mm or 0), int(ss or 0), tzinfo=timezone.utc
        )
    except ValueError:
        return None


def normalize_phone(value: Any, default_country_code: str = "212") -> str | None:
    """Format a phone cell as ``+<country><number>``.

    ``0612345678`` -> ``+212612345678``; ``00336...`` -> ``+336...``;
    numbers already starting with ``+`` only lose their punctuation.
    """
    if value is None:
        return None
    cleaned = _PHONE_JUNK.sub("", str(value).strip())
    if not cleaned:
        return None
    if cleaned.startswith("+"):
        return "+" + cleaned[1:]
    if cleaned.startswith("00"):
        return "+" + cleaned[2:]
    if cleaned.startswith("0"):
        return "+" + default_country_code + cleaned[1:]
    if not cleaned.startswith(default_country_code):
        return "+" + default_country_code + cleaned
    return "+" + cleaned


def detect_currency(value: Any) -> str | None:
    """ISO currency code from symbols or words inside an amount cell."""
    if value is None or isinstance(value, (int, float, Decimal)):
        return None
    s = str(value)
    for pattern, code in _CURRENCY_TOKENS:
        if pattern.search(s):
            return code
    return None


def extract_quantity(value: Any) -> int | None:
    """Integer quantity from cells like ``"3 pcs"`` or ``"12,0"``."""
    if isinstance(value, str):
        value = _QUANTITY_UNITS.sub("", value)
    number = coerce_number(value)
    if number is None:
        return None
    return int(number.to_integral_value(rounding=ROUND_FLOOR))


def normalize_sku(value: Any) -> str | None:
    if value is None:
        return None
    s = re.sub(r"\s+", "-", str(value).strip().upper())
    s = re.sub(r"[^A-Z0-9\-_]", "", s)
    return s or None


def clean_text(value: Any) -> str | None:
    """Trimmed string with inner whitespace collapsed; None when empty."""
    if value is None:
        return None
    s = re.sub(r"[ \t]+", " ", str(value)).strip()
    return s or None


def strip_empty_keys(record: dict[str, Any]) -> dict[str, Any]:
    """Drop blank keys and None/blank values; stringify the rest for JSONB."""
    out: dict[str, Any] = {}
    for key, value in record.items():
        if not key or not str(key).strip():
            continue
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = str(value)
        out[str(key)] = value
    return out
