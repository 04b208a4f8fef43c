"""
DTOs -- Pure payroll data transfer objects.

Responsibility:
    Defines the immutable data structures that flow through the payroll
    calculation core: configuration inputs (SalaryItem, SalaryGroup,
    AttendanceExceptionSetting, SocialInsuranceGroup, TaxFormula), per-month
    inputs (AttendanceRecord, RewardPunishment), the Employee snapshot, and
    the PayrollResult output.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    Free of ORM dependencies.  ORM models convert to and from these DTOs in
    ``payroll_services.orm``.

Invariants enforced:
    - All amounts, rates and counts are Decimal.  Non-Decimal numerics are
      coerced via ``Decimal(str(value))`` in ``__post_init__``.
    - Salary items of type ``formula`` carry a string expression; ``fixed``
      and ``percentage`` items carry a Decimal.
    - Attendance settings keep the raw rule-type string so that unrecognised
      rule types reach the engine (and are reported) instead of failing at
      load time.

Failure modes:
    - ValueError on non-numeric amounts or an unknown salary item type.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID

ZERO = Decimal("0")


def to_decimal(value: Any, field_name: str = "value") -> Decimal:
    """Coerce an int/str/Decimal to Decimal, raising ValueError otherwise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid {field_name}: {value!r}")
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid {field_name}: {value!r}") from e


def _coerce(obj: Any, *names: str) -> None:
    for name in names:
        value = getattr(obj, name)
        if value is not None and not isinstance(value, Decimal):
            object.__setattr__(obj, name, to_decimal(value, name))


# =============================================================================
# Salary items and groups
# =============================================================================


class SalaryItemType(str, Enum):
    """How a salary item's value is produced."""

    FIXED = "fixed"  # Constant amount
    PERCENTAGE = "percentage"  # Fraction (0-1) of a named base variable
    FORMULA = "formula"  # Expression over earlier items and context variables


@dataclass(frozen=True)
class SalaryItem:
    """
    One named, typed component of pay.

    ``name`` doubles as the formula variable name.  For percentage items
    ``value`` is a fraction (0.2 means 20%) applied to ``percentage_base``
    (or the configured default base when None).
    """

    id: UUID
    name: str
    item_type: SalaryItemType
    value: Decimal | str
    description: str = ""
    is_taxable: bool = True
    percentage_base: str | None = None
    subsidy_cycle: str | None = None
    is_preset: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.item_type, SalaryItemType):
            object.__setattr__(self, "item_type", SalaryItemType(self.item_type))
        if self.item_type == SalaryItemType.FORMULA:
            object.__setattr__(self, "value", str(self.value))
        else:
            _coerce(self, "value")


@dataclass(frozen=True)
class SalaryGroupMember:
    """Membership of a salary item in a group at a calculation order."""

    salary_item_id: UUID
    calculation_order: int


@dataclass(frozen=True)
class SalaryGroup:
    """An ordered set of salary items assigned to an employee category."""

    id: UUID
    name: str
    members: tuple[SalaryGroupMember, ...] = ()
    description: str = ""

    def ordered_members(self) -> tuple[SalaryGroupMember, ...]:
        """Members sorted by ascending calculation order."""
        return tuple(sorted(self.members, key=lambda m: m.calculation_order))


# =============================================================================
# Attendance
# =============================================================================


class DeductionRuleType(str, Enum):
    """Attendance deduction rule kinds."""

    FIXED = "fixed"  # value x occurrences
    PER_HOUR = "per_hour"  # value x hours
    PER_DAY_SALARY = "per_day_salary"  # daily salary x value x days
    TIERED_COUNT = "tiered_count"  # value x occurrences beyond threshold


@dataclass(frozen=True)
class AttendanceExceptionSetting:
    """Deduction rule for one attendance exception type (late, absent, ...)."""

    id: UUID
    name: str
    deduction_rule_type: str
    deduction_rule_value: Decimal = ZERO
    deduction_rule_threshold: Decimal | None = None
    notes: str = ""
    is_enabled: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.deduction_rule_type, DeductionRuleType):
            object.__setattr__(
                self, "deduction_rule_type", self.deduction_rule_type.value,
            )
        _coerce(self, "deduction_rule_value", "deduction_rule_threshold")

    @property
    def rule_type(self) -> DeductionRuleType | None:
        """Parsed rule type, or None when the stored type is unrecognised."""
        try:
            return DeductionRuleType(self.deduction_rule_type)
        except ValueError:
            return None


@dataclass(frozen=True)
class AttendanceRecord:
    """One attendance exception occurrence for an employee.

    ``exception_count`` is hours, days or occurrences depending on the rule
    type of the referenced setting.
    """

    employee_id: UUID
    record_date: date
    exception_type_id: UUID
    exception_count: Decimal = Decimal("1")
    remark: str = ""

    def __post_init__(self) -> None:
        _coerce(self, "exception_count")


# =============================================================================
# Social insurance
# =============================================================================


class ContributionCategory(str, Enum):
    """Social insurance and housing fund contribution categories."""

    PENSION = "pension"
    MEDICAL = "medical"
    UNEMPLOYMENT = "unemployment"
    INJURY = "injury"  # Company-only
    MATERNITY = "maternity"  # Company-only
    HOUSING_FUND = "housing_fund"


PERSONAL_CATEGORIES: tuple[ContributionCategory, ...] = (
    ContributionCategory.PENSION,
    ContributionCategory.MEDICAL,
    ContributionCategory.UNEMPLOYMENT,
    ContributionCategory.HOUSING_FUND,
)


class BasePolicy(str, Enum):
    """Which amount a contribution rate is applied to."""

    CONFIGURED = "configured"  # The category base configured on the group
    WAGE = "wage"  # The employee's wage basis, uncapped
    WAGE_CLAMPED = "wage_clamped"  # Wage basis clamped into [floor, cap]


@dataclass(frozen=True)
class ContributionRate:
    """Base amount and personal/company rates for one category."""

    base: Decimal = ZERO
    personal_rate: Decimal = ZERO
    company_rate: Decimal = ZERO

    def __post_init__(self) -> None:
        _coerce(self, "base", "personal_rate", "company_rate")
        if self.personal_rate < 0 or self.company_rate < 0:
            raise ValueError("Contribution rates cannot be negative")


@dataclass(frozen=True)
class SocialInsuranceGroup:
    """Per-category contribution configuration."""

    id: UUID
    name: str
    rates: Mapping[ContributionCategory, ContributionRate] = field(default_factory=dict)

    def rate_for(self, category: ContributionCategory) -> ContributionRate:
        return self.rates.get(category, ContributionRate())


# =============================================================================
# Tax
# =============================================================================


@dataclass(frozen=True)
class TaxLevel:
    """One progressive bracket: lower bound, flat rate, quick deduction."""

    threshold: Decimal
    rate: Decimal
    quick_deduction: Decimal = ZERO

    def __post_init__(self) -> None:
        _coerce(self, "threshold", "rate", "quick_deduction")


@dataclass(frozen=True)
class TaxFormula:
    """
    Progressive tax table.

    ``levels`` are ordered by ascending ``threshold``; each level's upper
    bound is the next level's threshold and the last level is unbounded.
    ``threshold`` (the standard deduction) is subtracted from income before
    the bracket lookup.
    """

    id: UUID
    name: str
    levels: tuple[TaxLevel, ...]
    is_default: bool = False
    threshold: Decimal = Decimal("5000")
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "levels", tuple(self.levels))
        _coerce(self, "threshold")


# =============================================================================
# Employees and monthly adjustments
# =============================================================================


class RewardPunishmentKind(str, Enum):
    REWARD = "reward"
    PUNISHMENT = "punishment"


@dataclass(frozen=True)
class RewardPunishment:
    """A one-off monthly adjustment. ``amount`` is positive; kind gives the sign."""

    employee_id: UUID
    year_month: str
    kind: RewardPunishmentKind
    amount: Decimal
    reason: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.kind, RewardPunishmentKind):
            object.__setattr__(self, "kind", RewardPunishmentKind(self.kind))
        _coerce(self, "amount")

    @property
    def signed_amount(self) -> Decimal:
        if self.kind == RewardPunishmentKind.PUNISHMENT:
            return -abs(self.amount)
        return abs(self.amount)


@dataclass(frozen=True)
class Employee:
    """Employee snapshot as consumed by the payroll core."""

    id: UUID
    name: str
    base_salary: Decimal | None = None
    salary_group_id: UUID | None = None
    social_insurance_group_id: UUID | None = None
    tax_formula_id: UUID | None = None
    department_id: UUID | None = None
    entry_date: date | None = None
    employee_no: str = ""
    is_active: bool = True

    def __post_init__(self) -> None:
        _coerce(self, "base_salary")


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class CalculationWarning:
    """Non-fatal degradation surfaced alongside a calculation result."""

    code: str
    message: str
    context: Mapping[str, Any] = field(default_factory=dict)


class PayrollStatus(str, Enum):
    CALCULATED = "calculated"
    PENDING = "pending"


@dataclass(frozen=True)
class PayrollResult:
    """
    Monthly payroll result for one employee.

    ``details`` maps component name to value in calculation order.
    ``calculated_at`` is excluded from equality so that recomputation with
    unchanged inputs compares equal.
    """

    employee_id: UUID
    year_month: str
    base_salary: Decimal
    total_salary: Decimal
    social_insurance: Decimal
    tax: Decimal
    attendance_deduction: Decimal
    reward_punishment: Decimal
    net_salary: Decimal
    details: Mapping[str, Decimal] = field(default_factory=dict)
    status: PayrollStatus = PayrollStatus.CALCULATED
    taxable_income: Decimal = ZERO
    social_insurance_company: Decimal = ZERO
    warnings: tuple[CalculationWarning, ...] = ()
    calculated_at: datetime | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.status, PayrollStatus):
            object.__setattr__(self, "status", PayrollStatus(self.status))
        _coerce(
            self,
            "base_salary",
            "total_salary",
            "social_insurance",
            "tax",
            "attendance_deduction",
            "reward_punishment",
            "net_salary",
            "taxable_income",
            "social_insurance_company",
        )
