"""
Payroll Orchestrator (``payroll_services.orchestrator``).

Responsibility
--------------
Sequences the pure payroll engines into one monthly result per employee:

    employee + configuration
      -> SalaryItemResolver          (components, total)
      -> AttendanceDeductionEngine   (deduction)
      -> SocialInsuranceCalculator   (personal withholding, company cost)
      -> reward / punishment sum     (signed)
      -> TaxEngine                   (tax on total - SI - standard deduction)
      -> net = total - SI - tax - attendance + reward/punishment
      -> PayrollResultStore.replace_result

Architecture position
---------------------
**Services layer**.  Receives its collaborators (data source, result store,
configuration, clock, engines) through the constructor.  Does NOT commit;
the caller owns the outer transaction.

Invariants enforced
-------------------
* At most one stored result per (employee_id, year_month); recomputation
  replaces it atomically (delete + insert in one savepoint).
* A failed recomputation raises; the previous result is never returned in
  its place.
* Salary group validation runs before any evaluation (no partial
  components map).
* Batch runs isolate employees: one employee's failure is recorded in the
  summary and the run continues.  Cancellation is checked between
  employees only.

Failure modes
-------------
* ConfigurationError / FormulaError / InvalidYearMonthError propagate from
  the single-employee paths.
* Non-fatal degradations (missing attendance rule, missing salary base,
  clamped negative amounts) are returned as ``PayrollResult.warnings``.

Audit relevance
---------------
Structured log events are emitted at calculation start and completion
with employee id, year-month, totals, and warning codes; batch runs log a
summary with success/failure counts.

Usage::

    orchestrator = PayrollOrchestrator(
        SqlPayrollDataSource(session), SqlPayrollResultStore(session),
        config=get_active_config(), clock=clock,
    )
    result = orchestrator.calculate_employee_salary(employee_id, "2024-05")
    session.commit()
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID, uuid4

from payroll_config import get_active_config
from payroll_config.schema import PayrollConfig
from payroll_engines.attendance import AttendanceDeductionEngine
from payroll_engines.formula import FormulaEvaluator
from payroll_engines.salary_items import SalaryItemResolver
from payroll_engines.social_insurance import SocialInsuranceCalculator
from payroll_engines.tax import TaxEngine
from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.domain.dtos import (
    AttendanceExceptionSetting,
    CalculationWarning,
    PayrollResult,
    PayrollStatus,
    SalaryGroup,
    SalaryItem,
    SocialInsuranceGroup,
    TaxFormula,
)
from payroll_kernel.domain.period import month_range, parse_year_month, work_years
from payroll_kernel.exceptions import (
    PayrollError,
    PayrollResultNotFoundError,
    SalaryGroupNotFoundError,
    SocialInsuranceGroupNotFoundError,
)
from payroll_kernel.logging_config import LogContext, get_logger
from payroll_services.repositories import PayrollDataSource, PayrollResultStore
from payroll_services.types import (
    BatchPayrollResult,
    BatchStatus,
    CancellationToken,
    EmployeePayrollOutcome,
    OutcomeStatus,
)

logger = get_logger("services.orchestrator")

ZERO = Decimal("0")


class _MemoizingDataSource:
    """
    Wraps a data source for one batch run.

    Employee-independent configuration reads (attendance settings, salary
    groups and items, social insurance groups, tax formulas) are read once
    per run; employee-specific reads pass through.
    """

    def __init__(self, inner: PayrollDataSource):
        self._inner = inner
        self._attendance_settings: dict[UUID, AttendanceExceptionSetting] | None = None
        self._groups: dict[UUID, SalaryGroup] = {}
        self._items: dict[UUID, SalaryItem] = {}
        self._si_groups: dict[UUID, SocialInsuranceGroup] = {}
        self._tax_formulas: dict[UUID | None, TaxFormula] = {}

    def __getattr__(self, name: str):
        return getattr(self._inner, name)

    def get_attendance_settings(self) -> dict[UUID, AttendanceExceptionSetting]:
        if self._attendance_settings is None:
            self._attendance_settings = self._inner.get_attendance_settings()
        return self._attendance_settings

    def get_salary_group(self, group_id: UUID) -> SalaryGroup:
        if group_id not in self._groups:
            self._groups[group_id] = self._inner.get_salary_group(group_id)
        return self._groups[group_id]

    def get_salary_items(self, item_ids: Iterable[UUID]) -> dict[UUID, SalaryItem]:
        ids = list(item_ids)
        missing = [i for i in ids if i not in self._items]
        if missing:
            self._items.update(self._inner.get_salary_items(missing))
        return {i: self._items[i] for i in ids if i in self._items}

    def get_social_insurance_group(self, group_id: UUID) -> SocialInsuranceGroup:
        if group_id not in self._si_groups:
            self._si_groups[group_id] = self._inner.get_social_insurance_group(group_id)
        return self._si_groups[group_id]

    def get_tax_formula(self, formula_id: UUID | None = None) -> TaxFormula:
        if formula_id not in self._tax_formulas:
            self._tax_formulas[formula_id] = self._inner.get_tax_formula(formula_id)
        return self._tax_formulas[formula_id]


class PayrollOrchestrator:
    """
    Assembles monthly payroll results from the pure engines.

    Contract:
        - ``calculate_employee_salary`` computes and stores one result.
        - ``recalculate_employee_salary`` is the same operation, logged as a
          recalculation.
        - ``preview_employee_salary`` computes without storing.
        - ``batch_calculate_salary`` runs every active employee (optionally
          one department) with per-employee isolation.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        data_source: PayrollDataSource,
        result_store: PayrollResultStore,
        config: PayrollConfig | None = None,
        clock: Clock | None = None,
        resolver: SalaryItemResolver | None = None,
        attendance_engine: AttendanceDeductionEngine | None = None,
        social_insurance_calculator: SocialInsuranceCalculator | None = None,
        tax_engine: TaxEngine | None = None,
    ):
        self._data_source = data_source
        self._result_store = result_store
        config = config or get_active_config()
        self._config = config
        self._clock = clock or SystemClock()
        self._quantum = Decimal(1).scaleb(-config.decimal_places)

        self._resolver = resolver or SalaryItemResolver(
            FormulaEvaluator(config.percentage_base_variable),
            context_variables=config.context_variables,
            decimal_places=config.decimal_places,
        )
        self._attendance = attendance_engine or AttendanceDeductionEngine(
            working_days_per_month=config.working_days_per_month,
            decimal_places=config.decimal_places,
        )
        self._social_insurance = social_insurance_calculator or SocialInsuranceCalculator(
            base_policy=config.social_insurance.base_policy,
            base_floor=config.social_insurance.base_floor,
            base_cap=config.social_insurance.base_cap,
            decimal_places=config.decimal_places,
        )
        self._tax = tax_engine or TaxEngine(decimal_places=config.decimal_places)

    # -------------------------------------------------------------------------
    # Single employee
    # -------------------------------------------------------------------------

    def calculate_employee_salary(self, employee_id: UUID, year_month: str) -> PayrollResult:
        """Compute and store the result for one employee-month.

        Raises:
            InvalidYearMonthError: Malformed period key.
            ConfigurationError: Missing employee, group, or tax formula.
            FormulaError: Invalid salary group or formula.
        """
        return self._calculate_and_store(employee_id, year_month, self._data_source)

    def recalculate_employee_salary(self, employee_id: UUID, year_month: str) -> PayrollResult:
        """Recompute and replace the stored result.

        The replacement only happens after a successful computation; on
        failure the error propagates and no stale result is returned.
        """
        logger.info(
            "payroll_recalculation_started",
            extra={"employee_id": str(employee_id), "year_month": year_month},
        )
        return self._calculate_and_store(employee_id, year_month, self._data_source)

    def preview_employee_salary(self, employee_id: UUID, year_month: str) -> PayrollResult:
        """Compute a result without storing it."""
        with LogContext.bind(employee_id=str(employee_id), year_month=year_month):
            return self._compute(employee_id, year_month, self._data_source)

    def get_payroll_result(self, employee_id: UUID, year_month: str) -> PayrollResult:
        parse_year_month(year_month)
        result = self._result_store.get_result(employee_id, year_month)
        if result is None:
            raise PayrollResultNotFoundError(employee_id, year_month)
        return result

    def delete_payroll_result(self, employee_id: UUID, year_month: str) -> bool:
        parse_year_month(year_month)
        deleted = self._result_store.delete_result(employee_id, year_month)
        logger.info(
            "payroll_result_deleted",
            extra={
                "employee_id": str(employee_id),
                "year_month": year_month,
                "deleted": deleted,
            },
        )
        return deleted

    def _calculate_and_store(
        self,
        employee_id: UUID,
        year_month: str,
        source: PayrollDataSource,
    ) -> PayrollResult:
        with LogContext.bind(employee_id=str(employee_id), year_month=year_month):
            logger.info("payroll_calculation_started")
            result = self._compute(employee_id, year_month, source)
            self._result_store.replace_result(result)
            logger.info(
                "payroll_calculated",
                extra={
                    "total_salary": str(result.total_salary),
                    "social_insurance": str(result.social_insurance),
                    "tax": str(result.tax),
                    "attendance_deduction": str(result.attendance_deduction),
                    "reward_punishment": str(result.reward_punishment),
                    "net_salary": str(result.net_salary),
                    "warning_codes": [w.code for w in result.warnings],
                },
            )
            return result

    def _compute(
        self,
        employee_id: UUID,
        year_month: str,
        source: PayrollDataSource,
    ) -> PayrollResult:
        parse_year_month(year_month)
        _, period_end = month_range(year_month)

        employee = source.get_employee(employee_id)
        if employee.salary_group_id is None:
            raise SalaryGroupNotFoundError(None, employee_id)
        if employee.social_insurance_group_id is None:
            raise SocialInsuranceGroupNotFoundError(None, employee_id)

        group = source.get_salary_group(employee.salary_group_id)
        items = source.get_salary_items(m.salary_item_id for m in group.members)
        records = source.get_attendance_records(employee_id, year_month)
        settings = source.get_attendance_settings()
        si_group = source.get_social_insurance_group(employee.social_insurance_group_id)
        adjustments = source.get_reward_punishments(employee_id, year_month)
        tax_formula = source.get_tax_formula(employee.tax_formula_id)

        warnings: list[CalculationWarning] = []

        # Salary components
        context = self._build_context(employee.base_salary, employee.entry_date, period_end,
                                      len(records), year_month)
        resolved = self._resolver.resolve(group=group, items=items, context=context)

        # Attendance
        attendance = self._attendance.calculate_deductions(
            records=records,
            settings=settings,
            monthly_salary=employee.base_salary,
        )
        warnings.extend(attendance.warnings)

        # Social insurance on the resolved total
        social_insurance = self._social_insurance.calculate(
            group=si_group, wage_basis=resolved.total,
        )

        reward_punishment = sum((a.signed_amount for a in adjustments), ZERO)

        # Tax
        taxable_income = self._tax.taxable_income(
            resolved.taxable_total, social_insurance.personal_total, tax_formula,
        )
        tax = self._tax.calculate(
            taxable_income=taxable_income,
            formula=tax_formula,
            special_deductions=ZERO,
        )
        if tax.clamped:
            warnings.append(CalculationWarning(
                code="NEGATIVE_TAX_CLAMPED",
                message=f"Tax formula '{tax_formula.name}' produced a negative tax; clamped to zero",
                context={"adjusted_income": str(tax.adjusted_income)},
            ))

        net_salary = (
            resolved.total
            - social_insurance.personal_total
            - tax.tax
            - attendance.total
            + reward_punishment
        ).quantize(self._quantum, rounding=ROUND_HALF_UP)

        return PayrollResult(
            employee_id=employee_id,
            year_month=year_month,
            base_salary=employee.base_salary if employee.base_salary is not None else ZERO,
            total_salary=resolved.total,
            social_insurance=social_insurance.personal_total,
            tax=tax.tax,
            attendance_deduction=attendance.total,
            reward_punishment=reward_punishment.quantize(self._quantum, rounding=ROUND_HALF_UP),
            net_salary=net_salary,
            details=dict(resolved.components),
            status=PayrollStatus.CALCULATED,
            taxable_income=max(ZERO, taxable_income),
            social_insurance_company=social_insurance.company_total,
            warnings=tuple(warnings),
            calculated_at=self._clock.now(),
        )

    def _build_context(
        self,
        base_salary: Decimal | None,
        entry_date: date | None,
        period_end: date,
        exception_count: int,
        year_month: str,
    ) -> dict[str, Decimal | int]:
        context: dict[str, Decimal | int] = {
            "workYears": work_years(entry_date, period_end),
            "attendanceExceptions": exception_count,
            "exceptions": exception_count,
            "month": parse_year_month(year_month)[1],
        }
        if base_salary is not None:
            context["baseSalary"] = base_salary
        return context

    # -------------------------------------------------------------------------
    # Batch
    # -------------------------------------------------------------------------

    def batch_calculate_salary(
        self,
        year_month: str,
        department_id: UUID | None = None,
        cancellation: CancellationToken | None = None,
    ) -> BatchPayrollResult:
        """Calculate every active employee (optionally one department).

        Each employee is isolated: failures are recorded in the summary and
        the run continues.  ``cancellation`` is checked before each
        employee; employees not yet started are reported as skipped.

        Raises:
            InvalidYearMonthError: Malformed period key (before any work).
        """
        parse_year_month(year_month)
        batch_id = uuid4()
        started_at = self._clock.now()
        start = time.monotonic()

        source = _MemoizingDataSource(self._data_source)
        employee_ids = source.list_employee_ids(department_id)
        outcomes: list[EmployeePayrollOutcome] = []
        cancelled = False

        with LogContext.bind(batch_id=str(batch_id), year_month=year_month):
            logger.info(
                "payroll_batch_started",
                extra={
                    "department_id": str(department_id) if department_id else None,
                    "employee_count": len(employee_ids),
                },
            )

            for employee_id in employee_ids:
                if cancelled or (cancellation is not None and cancellation.is_cancelled):
                    cancelled = True
                    outcomes.append(EmployeePayrollOutcome(
                        employee_id=employee_id, status=OutcomeStatus.SKIPPED,
                    ))
                    continue
                outcomes.append(self._run_one(employee_id, year_month, source))

            succeeded = sum(1 for o in outcomes if o.status == OutcomeStatus.SUCCEEDED)
            failed = sum(1 for o in outcomes if o.status == OutcomeStatus.FAILED)
            skipped = sum(1 for o in outcomes if o.status == OutcomeStatus.SKIPPED)

            if cancelled:
                status = BatchStatus.CANCELLED
            elif failed == 0:
                status = BatchStatus.COMPLETED
            elif succeeded == 0:
                status = BatchStatus.FAILED
            else:
                status = BatchStatus.PARTIALLY_COMPLETED

            duration_ms = int((time.monotonic() - start) * 1000)
            logger.info(
                "payroll_batch_completed",
                extra={
                    "status": status.value,
                    "succeeded": succeeded,
                    "failed": failed,
                    "skipped": skipped,
                    "duration_ms": duration_ms,
                },
            )

        return BatchPayrollResult(
            batch_id=batch_id,
            year_month=year_month,
            department_id=department_id,
            status=status,
            total=len(employee_ids),
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            outcomes=tuple(outcomes),
            started_at=started_at,
            completed_at=self._clock.now(),
            duration_ms=duration_ms,
        )

    def _run_one(
        self,
        employee_id: UUID,
        year_month: str,
        source: PayrollDataSource,
    ) -> EmployeePayrollOutcome:
        item_start = time.monotonic()
        try:
            result = self._calculate_and_store(employee_id, year_month, source)
        except PayrollError as exc:
            logger.warning(
                "payroll_batch_employee_failed",
                extra={"employee_id": str(employee_id), "error_code": exc.code},
                exc_info=True,
            )
            return EmployeePayrollOutcome(
                employee_id=employee_id,
                status=OutcomeStatus.FAILED,
                error_code=exc.code,
                error_message=str(exc),
                duration_ms=int((time.monotonic() - item_start) * 1000),
            )
        except Exception as exc:
            logger.error(
                "payroll_batch_employee_failed",
                extra={"employee_id": str(employee_id), "error_code": "UNHANDLED_EXCEPTION"},
                exc_info=True,
            )
            return EmployeePayrollOutcome(
                employee_id=employee_id,
                status=OutcomeStatus.FAILED,
                error_code="UNHANDLED_EXCEPTION",
                error_message=str(exc),
                duration_ms=int((time.monotonic() - item_start) * 1000),
            )
        return EmployeePayrollOutcome(
            employee_id=employee_id,
            status=OutcomeStatus.SUCCEEDED,
            result=result,
            duration_ms=int((time.monotonic() - item_start) * 1000),
        )
