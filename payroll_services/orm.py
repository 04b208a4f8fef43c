"""
Payroll ORM Persistence Models (``payroll_services.orm``).

Responsibility:
    SQLAlchemy ORM models that persist the frozen DTOs defined in
    ``payroll_kernel.domain.dtos``.  Each ORM class mirrors a DTO and
    provides ``to_dto()`` / ``from_dto()`` conversion.

Architecture position:
    **Services layer** -- persistence companions to the pure DTOs.
    Inherits from ``TrackedBase`` which provides id (UUID PK),
    created_at, updated_at, created_by_id, updated_by_id.

Invariants enforced:
    - All monetary fields use Decimal (Numeric(38,9)) -- NEVER float.
    - Enum fields stored as String(50) containing the enum .value string.
    - At most one payroll result per (employee_id, year_month)
      (uq_payroll_result_employee_month).
    - Calculation orders are unique within a salary group
      (uq_payroll_group_item_order).
    - Salary item values are stored as text: a decimal literal for fixed
      and percentage items, the expression for formula items.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_kernel.db.base import TrackedBase
from payroll_kernel.domain.dtos import (
    AttendanceExceptionSetting,
    AttendanceRecord,
    CalculationWarning,
    ContributionCategory,
    ContributionRate,
    Employee,
    PayrollResult,
    PayrollStatus,
    RewardPunishment,
    RewardPunishmentKind,
    SalaryGroup,
    SalaryGroupMember,
    SalaryItem,
    SalaryItemType,
    SocialInsuranceGroup,
    TaxFormula,
    TaxLevel,
)


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


# ---------------------------------------------------------------------------
# EmployeeModel
# ---------------------------------------------------------------------------


class EmployeeModel(TrackedBase):
    """
    ORM model for ``Employee``.

    Guarantees:
        - ``employee_no`` is unique (uq_payroll_employee_no).
        - Group assignments are nullable; a missing assignment is reported
          as a ConfigurationError at calculation time.
    """

    __tablename__ = "payroll_employees"

    employee_no: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    base_salary: Mapped[Decimal | None] = mapped_column(nullable=True)
    salary_group_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_salary_groups.id"), nullable=True,
    )
    social_insurance_group_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_social_insurance_groups.id"), nullable=True,
    )
    tax_formula_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_tax_formulas.id"), nullable=True,
    )
    department_id: Mapped[UUID | None] = mapped_column(nullable=True)
    entry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Flush ordering: referenced groups and formulas insert before employees.
    salary_group: Mapped["SalaryGroupModel | None"] = relationship()
    social_insurance_group: Mapped["SocialInsuranceGroupModel | None"] = relationship()
    tax_formula: Mapped["TaxFormulaModel | None"] = relationship()

    __table_args__ = (
        UniqueConstraint("employee_no", name="uq_payroll_employee_no"),
        Index("idx_payroll_employee_department", "department_id"),
        Index("idx_payroll_employee_salary_group", "salary_group_id"),
    )

    def to_dto(self) -> Employee:
        return Employee(
            id=self.id,
            name=self.name,
            base_salary=self.base_salary,
            salary_group_id=self.salary_group_id,
            social_insurance_group_id=self.social_insurance_group_id,
            tax_formula_id=self.tax_formula_id,
            department_id=self.department_id,
            entry_date=self.entry_date,
            employee_no=self.employee_no,
            is_active=self.is_active,
        )

    @classmethod
    def from_dto(cls, dto: Employee, created_by_id: UUID | None = None) -> "EmployeeModel":
        return cls(
            id=dto.id,
            employee_no=dto.employee_no or str(dto.id)[:8],
            name=dto.name,
            base_salary=dto.base_salary,
            salary_group_id=dto.salary_group_id,
            social_insurance_group_id=dto.social_insurance_group_id,
            tax_formula_id=dto.tax_formula_id,
            department_id=dto.department_id,
            entry_date=dto.entry_date,
            is_active=dto.is_active,
            created_by_id=created_by_id,
        )


# ---------------------------------------------------------------------------
# Salary items and groups
# ---------------------------------------------------------------------------


class SalaryItemModel(TrackedBase):
    """ORM model for ``SalaryItem``.  ``name`` is unique (it is the formula variable)."""

    __tablename__ = "payroll_salary_items"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    item_type: Mapped[str] = mapped_column(String(50), nullable=False)
    value_text: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    is_taxable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    percentage_base: Mapped[str | None] = mapped_column(String(200), nullable=True)
    subsidy_cycle: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_preset: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("name", name="uq_payroll_salary_item_name"),
    )

    def to_dto(self) -> SalaryItem:
        return SalaryItem(
            id=self.id,
            name=self.name,
            item_type=SalaryItemType(self.item_type),
            value=self.value_text,
            description=self.description or "",
            is_taxable=self.is_taxable,
            percentage_base=self.percentage_base,
            subsidy_cycle=self.subsidy_cycle,
            is_preset=self.is_preset,
        )

    def apply_dto(self, dto: SalaryItem) -> None:
        self.name = dto.name
        self.item_type = _enum_value(dto.item_type)
        self.value_text = str(dto.value)
        self.description = dto.description
        self.is_taxable = dto.is_taxable
        self.percentage_base = dto.percentage_base
        self.subsidy_cycle = dto.subsidy_cycle
        self.is_preset = dto.is_preset

    @classmethod
    def from_dto(cls, dto: SalaryItem, created_by_id: UUID | None = None) -> "SalaryItemModel":
        model = cls(id=dto.id, created_by_id=created_by_id)
        model.apply_dto(dto)
        return model


class SalaryGroupModel(TrackedBase):
    """ORM model for ``SalaryGroup``; members are owned (delete-orphan)."""

    __tablename__ = "payroll_salary_groups"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)

    members: Mapped[list["SalaryGroupItemModel"]] = relationship(
        back_populates="group",
        cascade="all, delete-orphan",
        order_by="SalaryGroupItemModel.calculation_order",
    )

    __table_args__ = (
        UniqueConstraint("name", name="uq_payroll_salary_group_name"),
    )

    def to_dto(self) -> SalaryGroup:
        return SalaryGroup(
            id=self.id,
            name=self.name,
            members=tuple(
                SalaryGroupMember(
                    salary_item_id=m.salary_item_id,
                    calculation_order=m.calculation_order,
                )
                for m in self.members
            ),
            description=self.description or "",
        )


class SalaryGroupItemModel(TrackedBase):
    """Membership row: salary item at a calculation order within a group."""

    __tablename__ = "payroll_salary_group_items"

    group_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_salary_groups.id"), nullable=False,
    )
    salary_item_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_salary_items.id"), nullable=False,
    )
    calculation_order: Mapped[int] = mapped_column(Integer, nullable=False)

    group: Mapped[SalaryGroupModel] = relationship(back_populates="members")
    salary_item: Mapped["SalaryItemModel"] = relationship()

    __table_args__ = (
        UniqueConstraint("group_id", "calculation_order", name="uq_payroll_group_item_order"),
        UniqueConstraint("group_id", "salary_item_id", name="uq_payroll_group_item"),
        Index("idx_payroll_group_item_item", "salary_item_id"),
    )


# ---------------------------------------------------------------------------
# Attendance
# ---------------------------------------------------------------------------


class AttendanceExceptionSettingModel(TrackedBase):
    """ORM model for ``AttendanceExceptionSetting``."""

    __tablename__ = "payroll_attendance_settings"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    deduction_rule_type: Mapped[str] = mapped_column(String(50), nullable=False)
    deduction_rule_value: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    deduction_rule_threshold: Mapped[Decimal | None] = mapped_column(nullable=True)
    notes: Mapped[str] = mapped_column(Text, default="", nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def to_dto(self) -> AttendanceExceptionSetting:
        return AttendanceExceptionSetting(
            id=self.id,
            name=self.name,
            deduction_rule_type=self.deduction_rule_type,
            deduction_rule_value=self.deduction_rule_value,
            deduction_rule_threshold=self.deduction_rule_threshold,
            notes=self.notes or "",
            is_enabled=self.is_enabled,
        )

    @classmethod
    def from_dto(
        cls, dto: AttendanceExceptionSetting, created_by_id: UUID | None = None,
    ) -> "AttendanceExceptionSettingModel":
        return cls(
            id=dto.id,
            name=dto.name,
            deduction_rule_type=dto.deduction_rule_type,
            deduction_rule_value=dto.deduction_rule_value,
            deduction_rule_threshold=dto.deduction_rule_threshold,
            notes=dto.notes,
            is_enabled=dto.is_enabled,
            created_by_id=created_by_id,
        )


class AttendanceRecordModel(TrackedBase):
    """ORM model for ``AttendanceRecord``."""

    __tablename__ = "payroll_attendance_records"

    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_employees.id"), nullable=False,
    )
    record_date: Mapped[date] = mapped_column(Date, nullable=False)
    exception_type_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_attendance_settings.id"), nullable=False,
    )
    exception_count: Mapped[Decimal] = mapped_column(default=Decimal("1"), nullable=False)
    remark: Mapped[str] = mapped_column(Text, default="", nullable=False)

    __table_args__ = (
        Index("idx_payroll_attendance_employee_date", "employee_id", "record_date"),
    )

    def to_dto(self) -> AttendanceRecord:
        return AttendanceRecord(
            employee_id=self.employee_id,
            record_date=self.record_date,
            exception_type_id=self.exception_type_id,
            exception_count=self.exception_count,
            remark=self.remark or "",
        )

    @classmethod
    def from_dto(cls, dto: AttendanceRecord, created_by_id: UUID | None = None) -> "AttendanceRecordModel":
        return cls(
            employee_id=dto.employee_id,
            record_date=dto.record_date,
            exception_type_id=dto.exception_type_id,
            exception_count=dto.exception_count,
            remark=dto.remark,
            created_by_id=created_by_id,
        )


# ---------------------------------------------------------------------------
# Social insurance
# ---------------------------------------------------------------------------


class SocialInsuranceGroupModel(TrackedBase):
    """ORM model for ``SocialInsuranceGroup``; one rate row per category."""

    __tablename__ = "payroll_social_insurance_groups"

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    rates: Mapped[list["SocialInsuranceRateModel"]] = relationship(
        back_populates="group",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("name", name="uq_payroll_si_group_name"),
    )

    def to_dto(self) -> SocialInsuranceGroup:
        return SocialInsuranceGroup(
            id=self.id,
            name=self.name,
            rates={
                ContributionCategory(r.category): ContributionRate(
                    base=r.base,
                    personal_rate=r.personal_rate,
                    company_rate=r.company_rate,
                )
                for r in self.rates
            },
        )

    @classmethod
    def from_dto(
        cls, dto: SocialInsuranceGroup, created_by_id: UUID | None = None,
    ) -> "SocialInsuranceGroupModel":
        return cls(
            id=dto.id,
            name=dto.name,
            created_by_id=created_by_id,
            rates=[
                SocialInsuranceRateModel(
                    category=_enum_value(category),
                    base=rate.base,
                    personal_rate=rate.personal_rate,
                    company_rate=rate.company_rate,
                    created_by_id=created_by_id,
                )
                for category, rate in dto.rates.items()
            ],
        )


class SocialInsuranceRateModel(TrackedBase):
    __tablename__ = "payroll_social_insurance_rates"

    group_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_social_insurance_groups.id"), nullable=False,
    )
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    base: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    personal_rate: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    company_rate: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    group: Mapped[SocialInsuranceGroupModel] = relationship(back_populates="rates")

    __table_args__ = (
        UniqueConstraint("group_id", "category", name="uq_payroll_si_rate_category"),
    )


# ---------------------------------------------------------------------------
# Tax formulas
# ---------------------------------------------------------------------------


class TaxFormulaModel(TrackedBase):
    """ORM model for ``TaxFormula``; levels are owned and ordered by level_no."""

    __tablename__ = "payroll_tax_formulas"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    threshold: Mapped[Decimal] = mapped_column(default=Decimal("5000"), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)

    levels: Mapped[list["TaxFormulaLevelModel"]] = relationship(
        back_populates="formula",
        cascade="all, delete-orphan",
        order_by="TaxFormulaLevelModel.level_no",
    )

    __table_args__ = (
        UniqueConstraint("name", name="uq_payroll_tax_formula_name"),
        Index("idx_payroll_tax_formula_default", "is_default"),
    )

    def to_dto(self) -> TaxFormula:
        return TaxFormula(
            id=self.id,
            name=self.name,
            levels=tuple(
                TaxLevel(
                    threshold=level.threshold,
                    rate=level.rate,
                    quick_deduction=level.quick_deduction,
                )
                for level in self.levels
            ),
            is_default=self.is_default,
            threshold=self.threshold,
            description=self.description or "",
        )

    def apply_dto(self, dto: TaxFormula) -> None:
        self.name = dto.name
        self.is_default = dto.is_default
        self.threshold = dto.threshold
        self.description = dto.description
        self.levels = [
            TaxFormulaLevelModel(
                level_no=index + 1,
                threshold=level.threshold,
                rate=level.rate,
                quick_deduction=level.quick_deduction,
            )
            for index, level in enumerate(dto.levels)
        ]

    @classmethod
    def from_dto(cls, dto: TaxFormula, created_by_id: UUID | None = None) -> "TaxFormulaModel":
        model = cls(id=dto.id, created_by_id=created_by_id)
        model.apply_dto(dto)
        return model


class TaxFormulaLevelModel(TrackedBase):
    __tablename__ = "payroll_tax_formula_levels"

    formula_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_tax_formulas.id"), nullable=False,
    )
    level_no: Mapped[int] = mapped_column(Integer, nullable=False)
    threshold: Mapped[Decimal] = mapped_column(nullable=False)
    rate: Mapped[Decimal] = mapped_column(nullable=False)
    quick_deduction: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    formula: Mapped[TaxFormulaModel] = relationship(back_populates="levels")

    __table_args__ = (
        UniqueConstraint("formula_id", "level_no", name="uq_payroll_tax_level_no"),
    )


# ---------------------------------------------------------------------------
# Rewards and punishments
# ---------------------------------------------------------------------------


class RewardPunishmentModel(TrackedBase):
    """ORM model for ``RewardPunishment``."""

    __tablename__ = "payroll_reward_punishments"

    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_employees.id"), nullable=False,
    )
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="", nullable=False)

    __table_args__ = (
        Index("idx_payroll_reward_employee_month", "employee_id", "year_month"),
    )

    def to_dto(self) -> RewardPunishment:
        return RewardPunishment(
            employee_id=self.employee_id,
            year_month=self.year_month,
            kind=RewardPunishmentKind(self.kind),
            amount=self.amount,
            reason=self.reason or "",
        )

    @classmethod
    def from_dto(cls, dto: RewardPunishment, created_by_id: UUID | None = None) -> "RewardPunishmentModel":
        return cls(
            employee_id=dto.employee_id,
            year_month=dto.year_month,
            kind=_enum_value(dto.kind),
            amount=dto.amount,
            reason=dto.reason,
            created_by_id=created_by_id,
        )


# ---------------------------------------------------------------------------
# Payroll results
# ---------------------------------------------------------------------------


class PayrollResultModel(TrackedBase):
    """
    ORM model for ``PayrollResult``.

    Guarantees:
        - Unique on (employee_id, year_month).
        - ``details`` rows keep their calculation position so the component
          map can be reconstructed in order.
    """

    __tablename__ = "payroll_results"

    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_employees.id"), nullable=False,
    )
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    base_salary: Mapped[Decimal] = mapped_column(nullable=False)
    total_salary: Mapped[Decimal] = mapped_column(nullable=False)
    social_insurance: Mapped[Decimal] = mapped_column(nullable=False)
    social_insurance_company: Mapped[Decimal] = mapped_column(nullable=False)
    taxable_income: Mapped[Decimal] = mapped_column(nullable=False)
    tax: Mapped[Decimal] = mapped_column(nullable=False)
    attendance_deduction: Mapped[Decimal] = mapped_column(nullable=False)
    reward_punishment: Mapped[Decimal] = mapped_column(nullable=False)
    net_salary: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    warnings: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    calculated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    details: Mapped[list["PayrollResultDetailModel"]] = relationship(
        back_populates="result",
        cascade="all, delete-orphan",
        order_by="PayrollResultDetailModel.position",
    )

    __table_args__ = (
        UniqueConstraint("employee_id", "year_month", name="uq_payroll_result_employee_month"),
        Index("idx_payroll_result_month", "year_month"),
    )

    def to_dto(self) -> PayrollResult:
        return PayrollResult(
            employee_id=self.employee_id,
            year_month=self.year_month,
            base_salary=self.base_salary,
            total_salary=self.total_salary,
            social_insurance=self.social_insurance,
            tax=self.tax,
            attendance_deduction=self.attendance_deduction,
            reward_punishment=self.reward_punishment,
            net_salary=self.net_salary,
            details={d.item_name: d.item_value for d in self.details},
            status=PayrollStatus(self.status),
            taxable_income=self.taxable_income,
            social_insurance_company=self.social_insurance_company,
            warnings=tuple(
                CalculationWarning(
                    code=w["code"], message=w["message"], context=w.get("context", {}),
                )
                for w in (self.warnings or ())
            ),
            calculated_at=self.calculated_at,
        )

    @classmethod
    def from_dto(cls, dto: PayrollResult, created_by_id: UUID | None = None) -> "PayrollResultModel":
        return cls(
            employee_id=dto.employee_id,
            year_month=dto.year_month,
            base_salary=dto.base_salary,
            total_salary=dto.total_salary,
            social_insurance=dto.social_insurance,
            social_insurance_company=dto.social_insurance_company,
            taxable_income=dto.taxable_income,
            tax=dto.tax,
            attendance_deduction=dto.attendance_deduction,
            reward_punishment=dto.reward_punishment,
            net_salary=dto.net_salary,
            status=_enum_value(dto.status),
            warnings=[
                {"code": w.code, "message": w.message, "context": dict(w.context)}
                for w in dto.warnings
            ],
            calculated_at=dto.calculated_at,
            created_by_id=created_by_id,
            details=[
                PayrollResultDetailModel(
                    position=position,
                    item_name=name,
                    item_value=value,
                    created_by_id=created_by_id,
                )
                for position, (name, value) in enumerate(dto.details.items())
            ],
        )


class PayrollResultDetailModel(TrackedBase):
    """One component of a stored payroll result."""

    __tablename__ = "payroll_result_details"

    result_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_results.id"), nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    item_name: Mapped[str] = mapped_column(String(200), nullable=False)
    item_value: Mapped[Decimal] = mapped_column(nullable=False)

    result: Mapped[PayrollResultModel] = relationship(back_populates="details")

    __table_args__ = (
        UniqueConstraint("result_id", "position", name="uq_payroll_result_detail_position"),
    )
