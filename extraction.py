"""
Numeric price and date extraction from loosely formatted quote/news text.

Number normalization is a best-effort heuristic tuned to belex.rs quotes, where
"8.400" and "5,002" are usually thousands-grouped prices, not decimals:
  (a) "d{1,3}.ddd" (after comma -> dot) is read as a grouped integer: "8.400" -> 8400
  (b) value < 50 with 1-3 fractional digits is multiplied by 1000: "5,002" -> 5002
  (c) value < 50 with more than 2 fractional digits is multiplied by 1000: "1.020442" -> 1020.442
Rules run in that order on the running value, so a value already lifted past 50
is left alone by the later rules.
"""

from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

DATE_RE = re.compile(r"(\d{1,2})\.(\d{1,2})\.(\d{4})\.?")
NUMBER_RE = re.compile(r"\d+[.,]\d+")
GROUPED_INTEGER_RE = re.compile(r"^\d{1,3}\.\d{3}$")

SMALL_PRICE_THRESHOLD = Decimal(50)
THOUSAND = Decimal(1000)

DEFAULT_TIMEZONE = "Europe/Belgrade"


@dataclass(frozen=True)
class DateParts:
    day: int
    month: int
    year: int

    @classmethod
    def from_date(cls, value: date) -> "DateParts":
        return cls(day=value.day, month=value.month, year=value.year)

    @classmethod
    def today(cls, tz_name: str = DEFAULT_TIMEZONE) -> "DateParts":
        return cls.from_date(datetime.now(ZoneInfo(tz_name)).date())


@dataclass(frozen=True)
class ExtractedPrice:
    raw: str
    numeric: float


def extract_date(text: Optional[str]) -> Optional[DateParts]:
    if not text:
        return None
    m = DATE_RE.search(text)
    if not m:
        return None
    return DateParts(day=int(m.group(1)), month=int(m.group(2)), year=int(m.group(3)))


def normalize_number(raw: str) -> Optional[Decimal]:
    normalized = raw.strip().replace(",", ".")
    if GROUPED_INTEGER_RE.match(normalized):
        return Decimal(normalized.replace(".", ""))

    try:
        value = Decimal(normalized)
    except InvalidOperation:
        return None

    fraction = normalized.split(".", 1)[1] if "." in normalized else ""
    if value < SMALL_PRICE_THRESHOLD and 1 <= len(fraction) <= 3:
        value *= THOUSAND
    if value < SMALL_PRICE_THRESHOLD and len(fraction) > 2:
        value *= THOUSAND
    return value


def extract_price(text: Optional[str]) -> Optional[ExtractedPrice]:
    if not text:
        return None
    m = NUMBER_RE.search(text)
    if not m:
        return None
    value = normalize_number(m.group(0))
    if value is None:
        return None
    return ExtractedPrice(raw=m.group(0), numeric=float(value))


def extract_number(text: Optional[str]) -> Optional[float]:
    found = extract_price(text)
    return found.numeric if found else None


def extract_pdf_text(data: Optional[bytes]) -> Optional[str]:
    """Plain text of a PDF document, or None when it cannot be parsed."""
    if not data:
        return None
    try:
        from pdfminer.high_level import extract_text

        text = extract_text(io.BytesIO(data))
    except Exception as e:
        logger.warning(f"PDF text extraction failed: {e}")
        return None
    text = (text or "").strip()
    return text or None
