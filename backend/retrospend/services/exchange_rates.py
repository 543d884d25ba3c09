"""Value parsing and base-currency derivation shared by the parsers.

The currency-rate lookup itself lives outside this service; parsers only see
it through the ``RateResolver`` callable.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Protocol

_DATE_ONLY = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[ T]00:00:00)?$")


@dataclass(frozen=True)
class RateQuote:
    rate: Decimal
    kind: str


class RateResolver(Protocol):
    async def __call__(self, currency: str, on: date) -> RateQuote | None: ...


def parse_date_only(value: str) -> date:
    """Parse ``YYYY-MM-DD`` into a calendar day.

    Spreadsheet cells holding real dates come through as ``YYYY-MM-DD 00:00:00``;
    the midnight suffix is accepted, any other time is not.
    """
    match = _DATE_ONLY.match(value.strip())
    if match is None:
        raise ValueError("Date must be in YYYY-MM-DD format")
    year, month, day = (int(part) for part in match.groups())
    return date(year, month, day)


def parse_decimal(value: object) -> Decimal | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def is_currency_code(value: str) -> bool:
    return len(value) == 3 and value.isascii() and value.isalpha()
