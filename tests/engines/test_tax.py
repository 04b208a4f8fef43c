"""
Tests for the Tax Engine.

Covers:
- Bracket lookup on both sides of every monthly threshold
- Quick-deduction arithmetic and rounding
- Taxable income derivation and special deductions
- Negative-tax clamping
- Level validation
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from payroll_config.loader import load_payroll_config
from payroll_engines.tax import TaxEngine, find_level_index, validate_levels
from payroll_kernel.domain.dtos import TaxFormula, TaxLevel
from payroll_kernel.exceptions import InvalidTaxFormulaError

MONTHLY_THRESHOLDS = ["3000", "12000", "25000", "35000", "55000", "80000"]


def _monthly_formula() -> TaxFormula:
    return load_payroll_config().tax.default_formula().to_formula()


class TestBrackets:

    def setup_method(self):
        self.engine = TaxEngine()
        self.formula = _monthly_formula()

    @pytest.mark.parametrize("position, threshold", enumerate(MONTHLY_THRESHOLDS, start=1))
    def test_threshold_belongs_to_higher_bracket(self, position, threshold):
        at = self.engine.calculate(taxable_income=Decimal(threshold), formula=self.formula)
        below = self.engine.calculate(
            taxable_income=Decimal(threshold) - Decimal("0.01"), formula=self.formula,
        )
        assert at.level_index == position
        assert below.level_index == position - 1

    @pytest.mark.parametrize(
        "income, expected",
        [
            ("0", "0.00"),
            ("1000", "30.00"),
            ("3000", "90.00"),
            ("4150", "205.00"),
            ("12000", "990.00"),
            ("20000", "2590.00"),
            ("30000", "4840.00"),
            ("50000", "10590.00"),
            ("60000", "13840.00"),
            ("100000", "29840.00"),
        ],
    )
    def test_tax_amounts(self, income, expected):
        assert self.engine.calculate_tax(Decimal(income), self.formula) == Decimal(expected)

    def test_negative_taxable_income_is_zero_tax(self):
        result = self.engine.calculate(taxable_income=Decimal("-1200"), formula=self.formula)
        assert result.adjusted_income == Decimal("0")
        assert result.tax == Decimal("0")
        assert not result.clamped

    def test_special_deductions_reduce_income(self):
        result = self.engine.calculate(
            taxable_income=Decimal("4150"), formula=self.formula, special_deductions=Decimal("1150"),
        )
        assert result.adjusted_income == Decimal("3000")
        assert result.tax == Decimal("90.00")

    def test_rounding_half_up(self):
        # 1000.50 * 0.03 = 30.015
        assert self.engine.calculate_tax(Decimal("1000.50"), self.formula) == Decimal("30.02")

    def test_taxable_income_subtracts_si_and_standard_deduction(self):
        taxable = self.engine.taxable_income(Decimal("11400"), Decimal("2250"), self.formula)
        assert taxable == Decimal("4150")


class TestAnnualTable:

    def setup_method(self):
        definitions = load_payroll_config().tax.default_formulas
        self.formula = next(d for d in definitions if not d.is_default).to_formula()

    @pytest.mark.parametrize(
        "income, expected",
        [("36000", "1080.00"), ("144000", "11880.00"), ("1000000", "268080.00")],
    )
    def test_annual_amounts(self, income, expected):
        assert TaxEngine().calculate_tax(Decimal(income), self.formula) == Decimal(expected)

    def test_annual_standard_deduction(self):
        assert self.formula.threshold == Decimal("60000")


class TestClamping:

    def test_inconsistent_quick_deduction_clamped(self, captured_logs):
        formula = TaxFormula(
            id=uuid4(),
            name="Gap",
            levels=(TaxLevel("0", "0.03", "0"), TaxLevel("3000", "0.10", "500")),
        )
        result = TaxEngine().calculate(taxable_income=Decimal("3000"), formula=formula)
        assert result.tax == Decimal("0")
        assert result.clamped
        assert any(r["message"] == "negative_tax_clamped" for r in captured_logs())


class TestLevels:

    def test_find_level_index(self):
        levels = _monthly_formula().levels
        assert find_level_index(levels, Decimal("0")) == 0
        assert find_level_index(levels, Decimal("79999.99")) == 5
        assert find_level_index(levels, Decimal("1000000")) == 6

    @pytest.mark.parametrize(
        "levels, reason",
        [
            ((), "no levels"),
            ((TaxLevel("100", "0.03"),), "start at 0"),
            ((TaxLevel("0", "0.03"), TaxLevel("0", "0.1")), "not above"),
            ((TaxLevel("0", "1.5"),), "outside"),
            ((TaxLevel("0", "0.03", "-1"),), "negative"),
        ],
    )
    def test_invalid_levels(self, levels, reason):
        with pytest.raises(InvalidTaxFormulaError, match=reason):
            validate_levels("Broken", levels)

    def test_calculate_validates(self):
        formula = TaxFormula(id=uuid4(), name="Empty", levels=())
        with pytest.raises(InvalidTaxFormulaError):
            TaxEngine().calculate(taxable_income=Decimal("1000"), formula=formula)
