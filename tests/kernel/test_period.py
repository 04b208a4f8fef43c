"""Tests for year-month parsing and work-year computation."""

from datetime import date

import pytest

from payroll_kernel.domain.period import month_range, parse_year_month, work_years
from payroll_kernel.exceptions import InvalidYearMonthError


class TestParseYearMonth:

    def test_valid_key(self):
        assert parse_year_month("2024-05") == (2024, 5)

    def test_december(self):
        assert parse_year_month("2023-12") == (2023, 12)

    @pytest.mark.parametrize(
        "bad",
        ["2024-13", "2024-00", "2024-5", "24-05", "2024/05", "2024-05-01", "", " 2024-05"],
    )
    def test_malformed_keys_rejected(self, bad):
        with pytest.raises(InvalidYearMonthError) as exc_info:
            parse_year_month(bad)
        assert exc_info.value.code == "INVALID_YEAR_MONTH"

    def test_non_string_rejected(self):
        with pytest.raises(InvalidYearMonthError):
            parse_year_month(202405)


class TestMonthRange:

    def test_thirty_one_day_month(self):
        assert month_range("2024-05") == (date(2024, 5, 1), date(2024, 5, 31))

    def test_leap_february(self):
        assert month_range("2024-02") == (date(2024, 2, 1), date(2024, 2, 29))

    def test_common_february(self):
        assert month_range("2023-02") == (date(2023, 2, 1), date(2023, 2, 28))


class TestWorkYears:

    def test_whole_years(self):
        assert work_years(date(2021, 3, 15), date(2024, 5, 31)) == 3

    def test_just_before_anniversary(self):
        assert work_years(date(2021, 6, 1), date(2024, 5, 31)) == 2

    def test_unknown_entry_date_is_zero(self):
        assert work_years(None, date(2024, 5, 31)) == 0

    def test_future_entry_date_is_zero(self):
        assert work_years(date(2025, 1, 1), date(2024, 5, 31)) == 0

    def test_same_day_is_zero(self):
        assert work_years(date(2024, 5, 31), date(2024, 5, 31)) == 0
