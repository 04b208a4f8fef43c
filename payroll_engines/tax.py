"""
Tax Engine - Progressive income tax with quick deductions.

Pure functions with no I/O - tax tables provided as parameters.

A table is a list of levels ordered by ascending lower-bound threshold.
Each level's upper bound is the next level's threshold; the last level is
unbounded.  Income exactly equal to a threshold belongs to the level whose
lower bound it is (the higher bracket).

    tax = max(0, adjusted x rate - quick_deduction)
    adjusted = max(0, taxable_income - special_deductions)

Usage:
    from payroll_engines.tax import TaxEngine

    engine = TaxEngine()
    taxable = engine.taxable_income(Decimal("11400"), Decimal("1200"), formula)
    engine.calculate_tax(taxable, formula)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from payroll_engines.tracer import traced_engine
from payroll_kernel.domain.dtos import TaxFormula, TaxLevel
from payroll_kernel.exceptions import InvalidTaxFormulaError
from payroll_kernel.logging_config import get_logger

logger = get_logger("engines.tax")

ZERO = Decimal("0")
ONE = Decimal("1")


@dataclass(frozen=True)
class TaxCalculationResult:
    """
    Complete tax calculation result.

    Immutable value object with the matched bracket for audit.
    """

    taxable_income: Decimal
    special_deductions: Decimal
    adjusted_income: Decimal
    level_index: int
    rate: Decimal
    quick_deduction: Decimal
    tax: Decimal
    clamped: bool = False  # True if the raw bracket formula went negative


def validate_levels(formula_name: str, levels: Sequence[TaxLevel]) -> None:
    """
    Check a tax table's structure.

    Raises:
        InvalidTaxFormulaError: empty table, first threshold not zero,
            thresholds not strictly ascending, rate outside [0, 1], or a
            negative quick deduction.
    """
    if not levels:
        raise InvalidTaxFormulaError(formula_name, "no levels")
    if levels[0].threshold != ZERO:
        raise InvalidTaxFormulaError(formula_name, "first level must start at 0")
    previous: Decimal | None = None
    for index, level in enumerate(levels):
        if previous is not None and level.threshold <= previous:
            raise InvalidTaxFormulaError(
                formula_name,
                f"level {index + 1} threshold {level.threshold} is not above {previous}",
            )
        if not ZERO <= level.rate <= ONE:
            raise InvalidTaxFormulaError(
                formula_name, f"level {index + 1} rate {level.rate} is outside [0, 1]",
            )
        if level.quick_deduction < ZERO:
            raise InvalidTaxFormulaError(
                formula_name, f"level {index + 1} quick deduction is negative",
            )
        previous = level.threshold


def find_level_index(levels: Sequence[TaxLevel], amount: Decimal) -> int:
    """Index of the last level whose threshold is <= amount."""
    index = 0
    for i, level in enumerate(levels):
        if amount >= level.threshold:
            index = i
        else:
            break
    return index


class TaxEngine:
    """
    Progressive tax calculator.

    Stateless - all tables are provided as parameters.
    """

    def __init__(self, decimal_places: int = 2):
        self._quantum = Decimal(1).scaleb(-decimal_places)

    def taxable_income(
        self,
        gross: Decimal,
        social_insurance: Decimal,
        formula: TaxFormula,
    ) -> Decimal:
        """Income subject to the table: gross - social insurance - standard deduction.

        May be negative; ``calculate`` clamps the adjusted figure at zero.
        """
        return gross - social_insurance - formula.threshold

    @traced_engine(
        "tax", "1.0", fingerprint_fields=("taxable_income", "special_deductions"),
    )
    def calculate(
        self,
        taxable_income: Decimal,
        formula: TaxFormula,
        special_deductions: Decimal = ZERO,
    ) -> TaxCalculationResult:
        """Apply the formula's bracket table.

        Raises:
            InvalidTaxFormulaError: If the formula's levels are malformed.
        """
        validate_levels(formula.name, formula.levels)

        adjusted = max(ZERO, taxable_income - special_deductions)
        index = find_level_index(formula.levels, adjusted)
        level = formula.levels[index]

        raw = adjusted * level.rate - level.quick_deduction
        clamped = raw < ZERO
        tax = max(ZERO, raw).quantize(self._quantum, rounding=ROUND_HALF_UP)

        if clamped:
            logger.warning(
                "negative_tax_clamped",
                extra={
                    "formula_name": formula.name,
                    "adjusted_income": str(adjusted),
                    "raw_tax": str(raw),
                },
            )

        logger.debug(
            "tax_calculated",
            extra={
                "formula_name": formula.name,
                "adjusted_income": str(adjusted),
                "level": index + 1,
                "tax": str(tax),
            },
        )
        return TaxCalculationResult(
            taxable_income=taxable_income,
            special_deductions=special_deductions,
            adjusted_income=adjusted,
            level_index=index,
            rate=level.rate,
            quick_deduction=level.quick_deduction,
            tax=tax,
            clamped=clamped,
        )

    def calculate_tax(
        self,
        taxable_income: Decimal,
        formula: TaxFormula,
        special_deductions: Decimal = ZERO,
    ) -> Decimal:
        return self.calculate(
            taxable_income=taxable_income,
            formula=formula,
            special_deductions=special_deductions,
        ).tax
