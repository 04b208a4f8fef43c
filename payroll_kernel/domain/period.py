"""
Payroll period helpers.

A payroll period is identified by a ``YYYY-MM`` year-month key.  These
helpers validate the key, expand it to a date range, and compute whole
work years as of the end of the period.
"""

from __future__ import annotations

import calendar
import re
from datetime import date
from decimal import ROUND_FLOOR, Decimal

from payroll_kernel.exceptions import InvalidYearMonthError

_YEAR_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")

DAYS_PER_YEAR = Decimal("365.25")


def parse_year_month(year_month: str) -> tuple[int, int]:
    """Split ``YYYY-MM`` into ``(year, month)``.

    Raises:
        InvalidYearMonthError: If the key is malformed or the month is
            outside 01-12.
    """
    if not isinstance(year_month, str):
        raise InvalidYearMonthError(year_month)
    match = _YEAR_MONTH_RE.match(year_month)
    if match is None:
        raise InvalidYearMonthError(year_month)
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise InvalidYearMonthError(year_month)
    return year, month


def month_range(year_month: str) -> tuple[date, date]:
    """Return the first and last calendar day of the period (inclusive)."""
    year, month = parse_year_month(year_month)
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def work_years(entry_date: date | None, as_of: date) -> int:
    """Whole years of service: floor(days / 365.25), never negative.

    An unknown entry date counts as zero years.
    """
    if entry_date is None or entry_date > as_of:
        return 0
    days = Decimal((as_of - entry_date).days)
    return int((days / DAYS_PER_YEAR).to_integral_value(rounding=ROUND_FLOOR))
