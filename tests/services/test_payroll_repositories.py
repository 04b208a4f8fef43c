"""Tests for the SQLAlchemy payroll data source and result store."""

from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from payroll_kernel.domain.dtos import (
    AttendanceRecord,
    CalculationWarning,
    Employee,
    PayrollResult,
    RewardPunishment,
    RewardPunishmentKind,
    SocialInsuranceGroup,
)
from payroll_kernel.exceptions import (
    EmployeeNotFoundError,
    SalaryGroupNotFoundError,
    SocialInsuranceGroupNotFoundError,
    TaxFormulaNotFoundError,
)
from payroll_services.orm import (
    AttendanceRecordModel,
    EmployeeModel,
    RewardPunishmentModel,
    SocialInsuranceGroupModel,
    TaxFormulaModel,
)
from payroll_services.repositories import SqlPayrollDataSource, SqlPayrollResultStore
from tests.conftest import standard_rates


def _result(employee_id, year_month="2024-05", net="8945.00"):
    return PayrollResult(
        employee_id=employee_id,
        year_month=year_month,
        base_salary=Decimal("8000"),
        total_salary=Decimal("11400"),
        social_insurance=Decimal("2250.00"),
        tax=Decimal("205.00"),
        attendance_deduction=Decimal("0"),
        reward_punishment=Decimal("0"),
        net_salary=Decimal(net),
        details={"BaseSalary": Decimal("8000"), "Bonus": Decimal("3400")},
        taxable_income=Decimal("4150"),
        social_insurance_company=Decimal("3970.00"),
        warnings=(CalculationWarning("ATTENDANCE_RULE_DISABLED", "Overtime disabled", {"records": "1"}),),
        calculated_at=datetime(2024, 6, 1, 9, 0, tzinfo=UTC),
    )


class TestSqlPayrollDataSource:

    def test_employee(self, db_session, payroll_setup):
        source = SqlPayrollDataSource(db_session)
        employee = source.get_employee(payroll_setup.employee_id)
        assert employee.name == "Wang Fang"
        assert employee.entry_date == date(2021, 3, 15)

    def test_employee_added_before_its_group_in_one_flush(self, db_session, payroll_setup):
        si_group = SocialInsuranceGroup(id=uuid4(), name="Suburb Standard", rates=standard_rates())
        employee = Employee(
            id=uuid4(),
            name="Li Lei",
            employee_no="E900",
            base_salary=Decimal("6000"),
            salary_group_id=payroll_setup.salary_group.id,
            social_insurance_group_id=si_group.id,
        )
        db_session.add(EmployeeModel.from_dto(employee))
        db_session.add(SocialInsuranceGroupModel.from_dto(si_group))
        db_session.flush()

        loaded = SqlPayrollDataSource(db_session).get_employee(employee.id)
        assert loaded.social_insurance_group_id == si_group.id

    def test_missing_lookups(self, db_session, payroll_setup):
        source = SqlPayrollDataSource(db_session)
        with pytest.raises(EmployeeNotFoundError):
            source.get_employee(uuid4())
        with pytest.raises(SalaryGroupNotFoundError):
            source.get_salary_group(uuid4())
        with pytest.raises(SocialInsuranceGroupNotFoundError):
            source.get_social_insurance_group(uuid4())
        with pytest.raises(TaxFormulaNotFoundError):
            source.get_tax_formula(uuid4())

    def test_group_and_items(self, db_session, payroll_setup):
        source = SqlPayrollDataSource(db_session)
        group = source.get_salary_group(payroll_setup.salary_group.id)
        items = source.get_salary_items(m.salary_item_id for m in group.members)
        assert {item.name for item in items.values()} == set(payroll_setup.items)
        assert source.get_salary_items([]) == {}

    def test_social_insurance_group_rates(self, db_session, payroll_setup):
        group = SqlPayrollDataSource(db_session).get_social_insurance_group(
            payroll_setup.social_insurance_group_id,
        )
        assert len(group.rates) == 6

    def test_attendance_records_limited_to_month(self, db_session, payroll_setup):
        for record_date in (date(2024, 4, 30), date(2024, 5, 1), date(2024, 5, 31), date(2024, 6, 1)):
            db_session.add(AttendanceRecordModel.from_dto(AttendanceRecord(
                employee_id=payroll_setup.employee_id,
                record_date=record_date,
                exception_type_id=payroll_setup.late_setting_id,
            )))
        db_session.flush()

        records = SqlPayrollDataSource(db_session).get_attendance_records(
            payroll_setup.employee_id, "2024-05",
        )
        assert [r.record_date for r in records] == [date(2024, 5, 1), date(2024, 5, 31)]

    def test_reward_punishments_for_month(self, db_session, payroll_setup):
        for year_month in ("2024-05", "2024-06"):
            db_session.add(RewardPunishmentModel.from_dto(RewardPunishment(
                employee_id=payroll_setup.employee_id, year_month=year_month,
                kind=RewardPunishmentKind.REWARD, amount=Decimal("100"),
            )))
        db_session.flush()

        adjustments = SqlPayrollDataSource(db_session).get_reward_punishments(
            payroll_setup.employee_id, "2024-05",
        )
        assert len(adjustments) == 1

    def test_default_tax_formula(self, db_session, payroll_setup):
        formula = SqlPayrollDataSource(db_session).get_tax_formula()
        assert formula.is_default
        assert formula.threshold == Decimal("5000")

    def test_no_default_tax_formula(self, db_session, payroll_setup):
        for model in db_session.execute(select(TaxFormulaModel)).scalars():
            model.is_default = False
        db_session.flush()
        with pytest.raises(TaxFormulaNotFoundError):
            SqlPayrollDataSource(db_session).get_tax_formula()

    def test_department_filter_and_ordering(self, db_session, payroll_setup):
        other_department = uuid4()
        extra = payroll_setup.add_employee(db_session)
        payroll_setup.add_employee(db_session, department_id=other_department)

        source = SqlPayrollDataSource(db_session)
        assert source.list_employee_ids(payroll_setup.department_id) == [
            payroll_setup.employee_id, extra,
        ]
        assert len(source.list_employee_ids()) == 3


class TestSqlPayrollResultStore:

    def test_round_trip(self, db_session, payroll_setup):
        store = SqlPayrollResultStore(db_session)
        result = _result(payroll_setup.employee_id)

        store.replace_result(result)
        db_session.expire_all()

        loaded = store.get_result(payroll_setup.employee_id, "2024-05")
        assert loaded == result
        assert list(loaded.details) == ["BaseSalary", "Bonus"]
        assert loaded.warnings[0].context == {"records": "1"}

    def test_replace_keeps_one_row(self, db_session, payroll_setup, captured_logs):
        store = SqlPayrollResultStore(db_session)
        store.replace_result(_result(payroll_setup.employee_id))
        store.replace_result(_result(payroll_setup.employee_id, net="9000.00"))

        results = store.list_results("2024-05")
        assert len(results) == 1
        assert results[0].net_salary == Decimal("9000.00")
        replaced = [r for r in captured_logs() if r["message"] == "payroll_result_replaced"]
        assert [r["replaced_existing"] for r in replaced] == [False, True]

    def test_months_are_independent(self, db_session, payroll_setup):
        store = SqlPayrollResultStore(db_session)
        store.replace_result(_result(payroll_setup.employee_id, "2024-04"))
        store.replace_result(_result(payroll_setup.employee_id, "2024-05"))

        assert store.delete_result(payroll_setup.employee_id, "2024-04") is True
        assert store.get_result(payroll_setup.employee_id, "2024-04") is None
        assert store.get_result(payroll_setup.employee_id, "2024-05") is not None

    def test_delete_missing(self, db_session, payroll_setup):
        assert SqlPayrollResultStore(db_session).delete_result(payroll_setup.employee_id, "2024-05") is False
