"""
Pytest fixtures for the payroll test suite.

Provides:
- Structured logging setup and a ``captured_logs`` fixture
- A DeterministicClock
- In-memory SQLite sessions with every payroll table created
- ``payroll_setup``: a seeded employee with salary group, social insurance
  group, attendance settings and the shipped tax tables
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session

from payroll_config import get_active_config, reset_active_config
from payroll_kernel.db.base import Base
from payroll_kernel.db.engine import (
    create_tables,
    init_engine_from_url,
    reset_engine,
)
from payroll_kernel.domain.clock import DeterministicClock
from payroll_kernel.domain.dtos import (
    AttendanceExceptionSetting,
    ContributionCategory,
    ContributionRate,
    Employee,
    SalaryGroup,
    SalaryGroupMember,
    SalaryItem,
    SalaryItemType,
    SocialInsuranceGroup,
)
from payroll_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from payroll_services.orm import (
    AttendanceExceptionSettingModel,
    EmployeeModel,
    SocialInsuranceGroupModel,
)
from payroll_services.salary_config import (
    SalaryGroupService,
    SalaryItemService,
    TaxFormulaService,
)

TEST_ACTOR_ID = uuid4()


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture payroll_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, orchestrator):
            orchestrator.calculate_employee_salary(...)
            logs = captured_logs()
            assert any(r["message"] == "payroll_calculated" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("payroll_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Time and configuration
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(datetime(2024, 6, 1, 9, 0, tzinfo=UTC))


@pytest.fixture
def payroll_config():
    reset_active_config()
    yield get_active_config()
    reset_active_config()


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine():
    """Fresh in-memory SQLite database per test."""
    engine = init_engine_from_url("sqlite:///:memory:")
    create_tables()
    yield engine
    Base.metadata.drop_all(engine)
    reset_engine()


@pytest.fixture
def db_session(db_engine) -> Session:
    """
    Session wrapped in an outer transaction that is rolled back at teardown.

    Services only flush and open savepoints, so nothing leaks between tests.
    """
    connection = db_engine.connect()
    transaction = connection.begin()
    session = Session(bind=connection, join_transaction_mode="create_savepoint")

    yield session

    session.close()
    transaction.rollback()
    connection.close()


# =============================================================================
# Seeded payroll data
# =============================================================================


def make_item(name, item_type, value, **kwargs) -> SalaryItem:
    return SalaryItem(id=uuid4(), name=name, item_type=item_type, value=value, **kwargs)


def standard_items() -> list[SalaryItem]:
    """BaseSalary 8000, allowance 1000, 20% bonus, seniority and attendance bonus."""
    return [
        make_item("BaseSalary", SalaryItemType.FIXED, "8000", is_preset=True),
        make_item("PositionAllowance", SalaryItemType.FIXED, "1000"),
        make_item(
            "PerformanceBonus", SalaryItemType.PERCENTAGE, "0.2",
            percentage_base="BaseSalary",
        ),
        make_item("SeniorityPay", SalaryItemType.FORMULA, "workYears * 100"),
        make_item(
            "FullAttendanceBonus", SalaryItemType.FORMULA,
            "IF(exceptions == 0, 500, 0)",
        ),
    ]


def standard_rates() -> dict[ContributionCategory, ContributionRate]:
    return {
        ContributionCategory.PENSION: ContributionRate(Decimal("10000"), Decimal("0.08"), Decimal("0.16")),
        ContributionCategory.MEDICAL: ContributionRate(Decimal("10000"), Decimal("0.02"), Decimal("0.10")),
        ContributionCategory.UNEMPLOYMENT: ContributionRate(Decimal("10000"), Decimal("0.005"), Decimal("0.005")),
        ContributionCategory.INJURY: ContributionRate(Decimal("10000"), Decimal("0"), Decimal("0.004")),
        ContributionCategory.MATERNITY: ContributionRate(Decimal("10000"), Decimal("0"), Decimal("0.008")),
        ContributionCategory.HOUSING_FUND: ContributionRate(Decimal("10000"), Decimal("0.12"), Decimal("0.12")),
    }


@dataclass
class PayrollSetup:
    """Identifiers of the seeded payroll fixture data."""

    employee_id: UUID
    department_id: UUID
    salary_group: SalaryGroup
    items: dict[str, SalaryItem]
    social_insurance_group_id: UUID
    late_setting_id: UUID
    absence_setting_id: UUID
    extra_employee_ids: list[UUID] = field(default_factory=list)

    def add_employee(self, session: Session, **overrides) -> UUID:
        values = dict(
            id=uuid4(),
            name="Extra",
            employee_no=f"E{len(self.extra_employee_ids) + 2:03d}",
            base_salary=Decimal("8000"),
            salary_group_id=self.salary_group.id,
            social_insurance_group_id=self.social_insurance_group_id,
            department_id=self.department_id,
            entry_date=date(2021, 6, 1),
        )
        values.update(overrides)
        employee = Employee(**values)
        session.add(EmployeeModel.from_dto(employee, created_by_id=TEST_ACTOR_ID))
        session.flush()
        self.extra_employee_ids.append(employee.id)
        return employee.id


@pytest.fixture
def payroll_setup(db_session, payroll_config) -> PayrollSetup:
    """
    One employee (entry 2021-03-15, base 8000) in the standard salary group.

    The social insurance group uses a configured base of 10000 for every
    category, so personal withholding is 2250.00 (8% + 2% + 0.5% + 12%).
    """
    item_service = SalaryItemService(db_session)
    items = {item.name: item_service.create_item(item, actor_id=TEST_ACTOR_ID) for item in standard_items()}

    group = SalaryGroup(
        id=uuid4(),
        name="Standard",
        members=tuple(
            SalaryGroupMember(salary_item_id=item.id, calculation_order=index + 1)
            for index, item in enumerate(items.values())
        ),
    )
    SalaryGroupService(db_session, config=payroll_config).save_group(group, actor_id=TEST_ACTOR_ID)
    TaxFormulaService(db_session, config=payroll_config).ensure_default_formulas()

    si_group = SocialInsuranceGroup(id=uuid4(), name="City Standard", rates=standard_rates())
    db_session.add(SocialInsuranceGroupModel.from_dto(si_group, created_by_id=TEST_ACTOR_ID))
    db_session.flush()

    late = AttendanceExceptionSetting(
        id=uuid4(), name="Late", deduction_rule_type="fixed", deduction_rule_value=Decimal("50"),
    )
    absence = AttendanceExceptionSetting(
        id=uuid4(), name="Absence", deduction_rule_type="per_day_salary",
        deduction_rule_value=Decimal("1"),
    )
    for setting in (late, absence):
        db_session.add(AttendanceExceptionSettingModel.from_dto(setting, created_by_id=TEST_ACTOR_ID))

    department_id = uuid4()
    employee = Employee(
        id=uuid4(),
        name="Wang Fang",
        employee_no="E001",
        base_salary=Decimal("8000"),
        salary_group_id=group.id,
        social_insurance_group_id=si_group.id,
        department_id=department_id,
        entry_date=date(2021, 3, 15),
    )
    db_session.add(EmployeeModel.from_dto(employee, created_by_id=TEST_ACTOR_ID))
    db_session.flush()

    return PayrollSetup(
        employee_id=employee.id,
        department_id=department_id,
        salary_group=group,
        items=items,
        social_insurance_group_id=si_group.id,
        late_setting_id=late.id,
        absence_setting_id=absence.id,
    )
