"""
Tests for the Attendance Deduction Engine.

Covers:
- fixed, per_hour, per_day_salary and tiered_count rules
- Grouping of records by exception type
- Non-fatal degradations reported as warnings
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from payroll_engines.attendance import AttendanceDeductionEngine
from payroll_kernel.domain.dtos import AttendanceExceptionSetting, AttendanceRecord
from payroll_kernel.exceptions import DataUnavailableError

EMPLOYEE_ID = uuid4()


def _setting(rule_type, value, threshold=None, **kwargs):
    return AttendanceExceptionSetting(
        id=uuid4(),
        name=kwargs.pop("name", rule_type),
        deduction_rule_type=rule_type,
        deduction_rule_value=value,
        deduction_rule_threshold=threshold,
        **kwargs,
    )


def _records(setting, count, exception_count="1"):
    return [
        AttendanceRecord(
            employee_id=EMPLOYEE_ID,
            record_date=date(2024, 5, day + 1),
            exception_type_id=setting.id,
            exception_count=exception_count,
        )
        for day in range(count)
    ]


class TestRules:

    def setup_method(self):
        self.engine = AttendanceDeductionEngine()

    def test_fixed_per_occurrence(self):
        late = _setting("fixed", "50")
        result = self.engine.calculate_deductions(records=_records(late, 3), settings=[late])
        assert result.total == Decimal("150.00")
        assert result.lines[0].record_count == 3

    def test_per_hour_uses_exception_count(self):
        early_leave = _setting("per_hour", "30")
        records = _records(early_leave, 2, exception_count="1.5")
        result = self.engine.calculate_deductions(records=records, settings=[early_leave])
        assert result.total == Decimal("90.00")
        assert result.lines[0].quantity == Decimal("3.0")

    def test_per_day_salary(self):
        absence = _setting("per_day_salary", "1")
        result = self.engine.calculate_deductions(
            records=_records(absence, 1), settings=[absence], monthly_salary=Decimal("8000"),
        )
        # 8000 / 21.75 = 367.816...
        assert result.total == Decimal("367.82")

    def test_per_day_salary_multiplier(self):
        absence = _setting("per_day_salary", "2")
        result = self.engine.calculate_deductions(
            records=_records(absence, 2), settings=[absence], monthly_salary=Decimal("4350"),
        )
        assert result.total == Decimal("800.00")

    @pytest.mark.parametrize("count, expected", [(5, "100.00"), (3, "0.00"), (0, "0")])
    def test_tiered_count(self, count, expected):
        late = _setting("tiered_count", "50", threshold="3")
        total = self.engine.calculate_deductions_total(records=_records(late, count), settings=[late])
        assert total == Decimal(expected)

    def test_tiered_count_without_threshold(self):
        late = _setting("tiered_count", "50")
        assert self.engine.calculate_deductions_total(
            records=_records(late, 2), settings=[late],
        ) == Decimal("100.00")

    def test_multiple_types_summed(self):
        late = _setting("fixed", "50", name="Late")
        absence = _setting("per_day_salary", "1", name="Absence")
        records = _records(late, 2) + _records(absence, 1)
        result = self.engine.calculate_deductions(
            records=records, settings={s.id: s for s in (late, absence)},
            monthly_salary=Decimal("8000"),
        )
        assert result.total == Decimal("467.82")
        assert {line.exception_name for line in result.lines} == {"Late", "Absence"}
        assert result.exception_count == 3

    def test_custom_working_days(self):
        engine = AttendanceDeductionEngine(working_days_per_month=Decimal("20"))
        assert engine.daily_salary(Decimal("8000")) == Decimal("400")

    def test_working_days_must_be_positive(self):
        with pytest.raises(ValueError):
            AttendanceDeductionEngine(working_days_per_month=Decimal("0"))


class TestDegradations:

    def setup_method(self):
        self.engine = AttendanceDeductionEngine()

    def _codes(self, result):
        return [w.code for w in result.warnings]

    def test_missing_rule(self):
        orphan = _setting("fixed", "50")
        result = self.engine.calculate_deductions(records=_records(orphan, 2), settings=[])
        assert result.total == Decimal("0")
        assert self._codes(result) == ["ATTENDANCE_RULE_MISSING"]

    def test_disabled_rule(self):
        late = _setting("fixed", "50", is_enabled=False)
        result = self.engine.calculate_deductions(records=_records(late, 2), settings=[late])
        assert result.total == Decimal("0")
        assert self._codes(result) == ["ATTENDANCE_RULE_DISABLED"]

    def test_unknown_rule_type(self, captured_logs):
        odd = _setting("per_fortnight", "50")
        result = self.engine.calculate_deductions(records=_records(odd, 1), settings=[odd])
        assert result.total == Decimal("0")
        assert self._codes(result) == ["ATTENDANCE_RULE_UNKNOWN"]
        assert any(r["message"] == "attendance_rule_unknown" for r in captured_logs())

    def test_salary_base_unavailable(self):
        absence = _setting("per_day_salary", "1")
        result = self.engine.calculate_deductions(
            records=_records(absence, 1), settings=[absence], monthly_salary=None,
        )
        assert result.total == Decimal("0")
        assert self._codes(result) == ["SALARY_BASE_UNAVAILABLE"]

    def test_salary_base_unavailable_strict(self):
        engine = AttendanceDeductionEngine(strict=True)
        absence = _setting("per_day_salary", "1")
        with pytest.raises(DataUnavailableError):
            engine.calculate_deductions(records=_records(absence, 1), settings=[absence])

    def test_negative_amount_clamped(self):
        refund = _setting("fixed", "-20")
        result = self.engine.calculate_deductions(records=_records(refund, 2), settings=[refund])
        assert result.total == Decimal("0")
        assert self._codes(result) == ["NEGATIVE_DEDUCTION_CLAMPED"]

    def test_degraded_type_does_not_affect_others(self):
        late = _setting("fixed", "50")
        orphan = _setting("fixed", "999")
        result = self.engine.calculate_deductions(
            records=_records(late, 1) + _records(orphan, 1), settings=[late],
        )
        assert result.total == Decimal("50.00")
        assert len(result.warnings) == 1

    def test_no_records(self):
        result = self.engine.calculate_deductions(records=[], settings=[])
        assert result.total == Decimal("0")
        assert result.lines == ()
        assert result.warnings == ()
