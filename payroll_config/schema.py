"""
Payroll configuration schema.

Typed, frozen form of the payroll YAML document.  The loader parses YAML
into these dataclasses; services and the orchestrator read them.  Engines
never import this module -- the orchestrator passes the individual values
(working days, base policy, ...) into engine constructors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from uuid import NAMESPACE_URL, uuid5

from payroll_kernel.domain.dtos import BasePolicy, TaxFormula, TaxLevel

# ---------------------------------------------------------------------------
# Tax
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TaxLevelDef:
    """One bracket of a configured tax table."""

    threshold: Decimal
    rate: Decimal
    quick_deduction: Decimal


@dataclass(frozen=True)
class TaxFormulaDef:
    """A named tax table shipped with the configuration."""

    name: str
    levels: tuple[TaxLevelDef, ...]
    threshold: Decimal
    is_default: bool = False
    description: str = ""

    @property
    def formula_id(self):
        """Stable identifier derived from the formula name."""
        return uuid5(NAMESPACE_URL, f"payroll-tax-formula:{self.name}")

    def to_formula(self) -> TaxFormula:
        return TaxFormula(
            id=self.formula_id,
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
            description=self.description,
        )


@dataclass(frozen=True)
class TaxConfig:
    monthly_threshold: Decimal
    default_formulas: tuple[TaxFormulaDef, ...] = ()

    def default_formula(self) -> TaxFormulaDef | None:
        for formula in self.default_formulas:
            if formula.is_default:
                return formula
        return None


# ---------------------------------------------------------------------------
# Social insurance
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SocialInsuranceConfig:
    base_policy: BasePolicy = BasePolicy.CONFIGURED
    base_floor: Decimal | None = None
    base_cap: Decimal | None = None


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PayrollConfig:
    """Root payroll configuration."""

    version: str
    working_days_per_month: Decimal = Decimal("21.75")
    decimal_places: int = 2
    percentage_base_variable: str = "baseSalary"
    context_variables: tuple[str, ...] = (
        "baseSalary",
        "workYears",
        "attendanceExceptions",
        "exceptions",
        "month",
    )
    social_insurance: SocialInsuranceConfig = field(default_factory=SocialInsuranceConfig)
    tax: TaxConfig = field(default_factory=lambda: TaxConfig(Decimal("5000")))
    checksum: str = ""
