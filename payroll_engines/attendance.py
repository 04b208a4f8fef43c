"""
Attendance Deduction Engine - Reduce exception records to a deduction.

Responsibility:
    Groups an employee's attendance-exception records by exception type and
    applies the matching deduction rule to each group.

Rules:
    fixed           value x number of records
    per_hour        value x total exception count (hours)
    per_day_salary  (monthly salary / working days) x value x total days
    tiered_count    value x max(0, total count - threshold)

Failure modes (all non-fatal; the group contributes zero and a
CalculationWarning is returned):
    - ATTENDANCE_RULE_MISSING   no setting for the exception type
    - ATTENDANCE_RULE_DISABLED  setting exists but is disabled
    - ATTENDANCE_RULE_UNKNOWN   unrecognised rule type
    - SALARY_BASE_UNAVAILABLE   per_day_salary without a monthly salary
    - NEGATIVE_DEDUCTION_CLAMPED a negative rule value produced a negative
      amount; clamped to zero

With ``strict=True`` a missing monthly salary raises DataUnavailableError
instead of producing SALARY_BASE_UNAVAILABLE.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from payroll_engines.tracer import traced_engine
from payroll_kernel.domain.dtos import (
    AttendanceExceptionSetting,
    AttendanceRecord,
    CalculationWarning,
    DeductionRuleType,
)
from payroll_kernel.exceptions import DataUnavailableError
from payroll_kernel.logging_config import get_logger

logger = get_logger("engines.attendance")

ZERO = Decimal("0")
DEFAULT_WORKING_DAYS_PER_MONTH = Decimal("21.75")


@dataclass(frozen=True)
class AttendanceDeductionLine:
    """Deduction for one exception type."""

    exception_type_id: UUID
    exception_name: str
    rule_type: str
    record_count: int
    quantity: Decimal  # Sum of exception_count across records
    amount: Decimal


@dataclass(frozen=True)
class AttendanceDeductionResult:
    total: Decimal
    lines: tuple[AttendanceDeductionLine, ...] = ()
    warnings: tuple[CalculationWarning, ...] = ()

    @property
    def exception_count(self) -> int:
        """Number of exception records that were considered."""
        return sum(line.record_count for line in self.lines)


class AttendanceDeductionEngine:
    """
    Applies per-exception-type deduction rules.

    Pure: no I/O; settings and records are passed in.
    """

    def __init__(
        self,
        working_days_per_month: Decimal = DEFAULT_WORKING_DAYS_PER_MONTH,
        decimal_places: int = 2,
        strict: bool = False,
    ):
        if working_days_per_month <= 0:
            raise ValueError("working_days_per_month must be positive")
        self.working_days_per_month = working_days_per_month
        self.strict = strict
        self._quantum = Decimal(1).scaleb(-decimal_places)

    def daily_salary(self, monthly_salary: Decimal) -> Decimal:
        return monthly_salary / self.working_days_per_month

    @traced_engine("attendance", "1.0", fingerprint_fields=("monthly_salary",))
    def calculate_deductions(
        self,
        records: Iterable[AttendanceRecord],
        settings: Mapping[UUID, AttendanceExceptionSetting] | Iterable[AttendanceExceptionSetting],
        monthly_salary: Decimal | None = None,
    ) -> AttendanceDeductionResult:
        """Compute the attendance deduction for one employee-month."""
        if not isinstance(settings, Mapping):
            settings = {s.id: s for s in settings}

        groups: dict[UUID, list[AttendanceRecord]] = {}
        for record in records:
            groups.setdefault(record.exception_type_id, []).append(record)

        lines: list[AttendanceDeductionLine] = []
        warnings: list[CalculationWarning] = []
        total = ZERO

        for type_id, group in groups.items():
            count = len(group)
            quantity = sum((r.exception_count for r in group), ZERO)
            setting = settings.get(type_id)

            if setting is None:
                warnings.append(self._warn(
                    "ATTENDANCE_RULE_MISSING",
                    f"No deduction rule for exception type {type_id}",
                    exception_type_id=str(type_id),
                    record_count=count,
                ))
                continue

            if not setting.is_enabled:
                warnings.append(self._warn(
                    "ATTENDANCE_RULE_DISABLED",
                    f"Deduction rule '{setting.name}' is disabled",
                    exception_type_id=str(type_id),
                    record_count=count,
                ))
                continue

            amount = self._apply_rule(setting, count, quantity, monthly_salary, warnings)
            if amount is None:
                continue

            if amount < 0:
                warnings.append(self._warn(
                    "NEGATIVE_DEDUCTION_CLAMPED",
                    f"Deduction rule '{setting.name}' produced {amount}; clamped to zero",
                    exception_type_id=str(type_id),
                    amount=str(amount),
                ))
                amount = ZERO

            amount = amount.quantize(self._quantum, rounding=ROUND_HALF_UP)
            lines.append(AttendanceDeductionLine(
                exception_type_id=type_id,
                exception_name=setting.name,
                rule_type=setting.deduction_rule_type,
                record_count=count,
                quantity=quantity,
                amount=amount,
            ))
            total += amount

        logger.info(
            "attendance_deductions_calculated",
            extra={
                "exception_types": len(groups),
                "total": str(total),
                "warning_count": len(warnings),
            },
        )
        return AttendanceDeductionResult(
            total=total,
            lines=tuple(lines),
            warnings=tuple(warnings),
        )

    def calculate_deductions_total(
        self,
        records: Iterable[AttendanceRecord],
        settings: Mapping[UUID, AttendanceExceptionSetting] | Iterable[AttendanceExceptionSetting],
        monthly_salary: Decimal | None = None,
    ) -> Decimal:
        return self.calculate_deductions(
            records=records, settings=settings, monthly_salary=monthly_salary,
        ).total

    def _apply_rule(
        self,
        setting: AttendanceExceptionSetting,
        count: int,
        quantity: Decimal,
        monthly_salary: Decimal | None,
        warnings: list[CalculationWarning],
    ) -> Decimal | None:
        rule = setting.rule_type
        value = setting.deduction_rule_value

        if rule == DeductionRuleType.FIXED:
            return value * count

        if rule == DeductionRuleType.PER_HOUR:
            return value * quantity

        if rule == DeductionRuleType.PER_DAY_SALARY:
            if monthly_salary is None:
                if self.strict:
                    raise DataUnavailableError(
                        f"monthly salary for deduction rule '{setting.name}'"
                    )
                warnings.append(self._warn(
                    "SALARY_BASE_UNAVAILABLE",
                    f"Deduction rule '{setting.name}' needs a monthly salary; none available",
                    exception_type_id=str(setting.id),
                ))
                return None
            return self.daily_salary(monthly_salary) * value * quantity

        if rule == DeductionRuleType.TIERED_COUNT:
            threshold = setting.deduction_rule_threshold or ZERO
            return value * max(ZERO, quantity - threshold)

        warnings.append(self._warn(
            "ATTENDANCE_RULE_UNKNOWN",
            f"Deduction rule '{setting.name}' has unknown type "
            f"'{setting.deduction_rule_type}'",
            exception_type_id=str(setting.id),
            rule_type=setting.deduction_rule_type,
        ))
        return None

    @staticmethod
    def _warn(code: str, message: str, **context: object) -> CalculationWarning:
        logger.warning(
            code.lower(),
            extra={"warning_code": code, **{f"ctx_{k}": v for k, v in context.items()}},
        )
        return CalculationWarning(code=code, message=message, context=context)
