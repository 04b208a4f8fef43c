"""
Payroll Repositories (``payroll_services.repositories``).

Responsibility
--------------
Defines the two collaborator contracts the payroll orchestrator depends on
and their SQLAlchemy implementations:

* ``PayrollDataSource``  -- read-only access to employees, salary groups
  and items, attendance settings and records, reward/punishment records,
  social insurance groups, and tax formulas.
* ``PayrollResultStore`` -- persistence of ``PayrollResult`` keyed by
  (employee_id, year_month) with a delete-then-insert replace.

Architecture position
---------------------
**Services layer** -- I/O boundary.  Both implementations receive the
session through their constructor and never commit; the caller owns the
transaction boundary.

Invariants enforced
-------------------
* ``replace_result`` deletes the existing result (and its detail rows) and
  inserts the new one inside a single SAVEPOINT: either both happen or
  neither does.
* Attendance records are selected by ``record_date`` within the calendar
  month of the year-month key (first to last day, inclusive).

Failure modes
-------------
* Missing employee / salary group / social insurance group / tax formula
  -> the matching ``ConfigurationError`` subclass.
* Database errors inside ``replace_result`` roll back the savepoint and
  propagate.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from payroll_kernel.domain.dtos import (
    AttendanceExceptionSetting,
    AttendanceRecord,
    Employee,
    PayrollResult,
    RewardPunishment,
    SalaryGroup,
    SalaryItem,
    SocialInsuranceGroup,
    TaxFormula,
)
from payroll_kernel.domain.period import month_range, parse_year_month
from payroll_kernel.exceptions import (
    EmployeeNotFoundError,
    SalaryGroupNotFoundError,
    SocialInsuranceGroupNotFoundError,
    TaxFormulaNotFoundError,
)
from payroll_kernel.logging_config import get_logger
from payroll_services.orm import (
    AttendanceExceptionSettingModel,
    AttendanceRecordModel,
    EmployeeModel,
    PayrollResultModel,
    RewardPunishmentModel,
    SalaryGroupModel,
    SalaryItemModel,
    SocialInsuranceGroupModel,
    TaxFormulaModel,
)

logger = get_logger("services.repositories")


# =============================================================================
# Collaborator contracts
# =============================================================================


class PayrollDataSource(Protocol):
    """Read-only configuration and monthly input data."""

    def get_employee(self, employee_id: UUID) -> Employee: ...

    def list_employee_ids(self, department_id: UUID | None = None) -> list[UUID]: ...

    def get_salary_group(self, group_id: UUID) -> SalaryGroup: ...

    def get_salary_items(self, item_ids: Iterable[UUID]) -> dict[UUID, SalaryItem]: ...

    def get_social_insurance_group(self, group_id: UUID) -> SocialInsuranceGroup: ...

    def get_attendance_settings(self) -> dict[UUID, AttendanceExceptionSetting]: ...

    def get_attendance_records(
        self, employee_id: UUID, year_month: str,
    ) -> list[AttendanceRecord]: ...

    def get_reward_punishments(
        self, employee_id: UUID, year_month: str,
    ) -> list[RewardPunishment]: ...

    def get_tax_formula(self, formula_id: UUID | None = None) -> TaxFormula: ...


class PayrollResultStore(Protocol):
    """Persistence of payroll results keyed by (employee_id, year_month)."""

    def replace_result(self, result: PayrollResult) -> None: ...

    def get_result(self, employee_id: UUID, year_month: str) -> PayrollResult | None: ...

    def delete_result(self, employee_id: UUID, year_month: str) -> bool: ...

    def list_results(self, year_month: str) -> list[PayrollResult]: ...


# =============================================================================
# SQLAlchemy implementations
# =============================================================================


class SqlPayrollDataSource:
    """``PayrollDataSource`` over the payroll ORM tables."""

    def __init__(self, session: Session):
        self._session = session

    def get_employee(self, employee_id: UUID) -> Employee:
        model = self._session.get(EmployeeModel, employee_id)
        if model is None:
            raise EmployeeNotFoundError(employee_id)
        return model.to_dto()

    def list_employee_ids(self, department_id: UUID | None = None) -> list[UUID]:
        stmt = select(EmployeeModel.id).where(EmployeeModel.is_active.is_(True))
        if department_id is not None:
            stmt = stmt.where(EmployeeModel.department_id == department_id)
        stmt = stmt.order_by(EmployeeModel.employee_no)
        return list(self._session.execute(stmt).scalars())

    def get_salary_group(self, group_id: UUID) -> SalaryGroup:
        model = self._session.get(SalaryGroupModel, group_id)
        if model is None:
            raise SalaryGroupNotFoundError(group_id)
        return model.to_dto()

    def get_salary_items(self, item_ids: Iterable[UUID]) -> dict[UUID, SalaryItem]:
        ids = list(item_ids)
        if not ids:
            return {}
        models = self._session.execute(
            select(SalaryItemModel).where(SalaryItemModel.id.in_(ids))
        ).scalars()
        return {m.id: m.to_dto() for m in models}

    def get_social_insurance_group(self, group_id: UUID) -> SocialInsuranceGroup:
        model = self._session.get(SocialInsuranceGroupModel, group_id)
        if model is None:
            raise SocialInsuranceGroupNotFoundError(group_id)
        return model.to_dto()

    def get_attendance_settings(self) -> dict[UUID, AttendanceExceptionSetting]:
        models = self._session.execute(select(AttendanceExceptionSettingModel)).scalars()
        return {m.id: m.to_dto() for m in models}

    def get_attendance_records(
        self, employee_id: UUID, year_month: str,
    ) -> list[AttendanceRecord]:
        first_day, last_day = month_range(year_month)
        models = self._session.execute(
            select(AttendanceRecordModel)
            .where(
                AttendanceRecordModel.employee_id == employee_id,
                AttendanceRecordModel.record_date >= first_day,
                AttendanceRecordModel.record_date <= last_day,
            )
            .order_by(AttendanceRecordModel.record_date)
        ).scalars()
        return [m.to_dto() for m in models]

    def get_reward_punishments(
        self, employee_id: UUID, year_month: str,
    ) -> list[RewardPunishment]:
        parse_year_month(year_month)
        models = self._session.execute(
            select(RewardPunishmentModel).where(
                RewardPunishmentModel.employee_id == employee_id,
                RewardPunishmentModel.year_month == year_month,
            )
        ).scalars()
        return [m.to_dto() for m in models]

    def get_tax_formula(self, formula_id: UUID | None = None) -> TaxFormula:
        if formula_id is not None:
            model = self._session.get(TaxFormulaModel, formula_id)
            if model is None:
                raise TaxFormulaNotFoundError(formula_id)
            return model.to_dto()

        model = self._session.execute(
            select(TaxFormulaModel)
            .where(TaxFormulaModel.is_default.is_(True))
            .order_by(TaxFormulaModel.name)
        ).scalars().first()
        if model is None:
            raise TaxFormulaNotFoundError()
        return model.to_dto()


class SqlPayrollResultStore:
    """``PayrollResultStore`` over ``payroll_results`` / ``payroll_result_details``."""

    def __init__(self, session: Session):
        self._session = session

    def _find(self, employee_id: UUID, year_month: str) -> PayrollResultModel | None:
        return self._session.execute(
            select(PayrollResultModel).where(
                PayrollResultModel.employee_id == employee_id,
                PayrollResultModel.year_month == year_month,
            )
        ).scalar_one_or_none()

    def replace_result(self, result: PayrollResult) -> None:
        """Delete any stored result for the key and insert ``result`` atomically."""
        with self._session.begin_nested():
            existing = self._find(result.employee_id, result.year_month)
            if existing is not None:
                self._session.delete(existing)
                self._session.flush()
            self._session.add(PayrollResultModel.from_dto(result))
            self._session.flush()

        logger.debug(
            "payroll_result_replaced",
            extra={
                "employee_id": str(result.employee_id),
                "year_month": result.year_month,
                "replaced_existing": existing is not None,
            },
        )

    def get_result(self, employee_id: UUID, year_month: str) -> PayrollResult | None:
        model = self._find(employee_id, year_month)
        return None if model is None else model.to_dto()

    def delete_result(self, employee_id: UUID, year_month: str) -> bool:
        with self._session.begin_nested():
            existing = self._find(employee_id, year_month)
            if existing is None:
                return False
            self._session.delete(existing)
            self._session.flush()
        return True

    def list_results(self, year_month: str) -> list[PayrollResult]:
        models = self._session.execute(
            select(PayrollResultModel)
            .where(PayrollResultModel.year_month == year_month)
            .order_by(PayrollResultModel.employee_id)
        ).scalars()
        return [m.to_dto() for m in models]
