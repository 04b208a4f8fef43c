"""
Tests for the Formula Engine.

Covers:
- Tokenizing and parsing (both variable reference forms)
- Operator precedence, comparisons and whitelisted functions
- Reference extraction
- FormulaEvaluator for fixed, percentage and formula items
- Error reporting
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from payroll_engines.formula import (
    FormulaEvaluator,
    TokenKind,
    evaluate_expression,
    extract_references,
    parse_formula,
    tokenize,
)
from payroll_kernel.domain.dtos import SalaryItem, SalaryItemType
from payroll_kernel.exceptions import (
    FormulaEvaluationError,
    FormulaSyntaxError,
    UnknownVariableError,
)


def _item(name, item_type, value, **kwargs):
    return SalaryItem(id=uuid4(), name=name, item_type=item_type, value=value, **kwargs)


class TestTokenizer:

    def test_braced_reference_keeps_spaces_and_unicode(self):
        tokens = tokenize("${基本工资} + ${Meal Allowance}")
        variables = [t.text for t in tokens if t.kind == TokenKind.VARIABLE]
        assert variables == ["基本工资", "Meal Allowance"]

    def test_two_char_operators(self):
        ops = [t.text for t in tokenize("a >= 1 != b <= 2 == c") if t.kind == TokenKind.OPERATOR]
        assert ops == [">=", "!=", "<=", "=="]

    def test_leading_dot_number(self):
        tokens = tokenize(".5")
        assert tokens[0].kind == TokenKind.NUMBER
        assert tokens[0].text == ".5"

    def test_unexpected_character_reports_position(self):
        with pytest.raises(FormulaSyntaxError) as exc_info:
            tokenize("1 + 2 # 3")
        assert exc_info.value.position == 6

    def test_unterminated_reference(self):
        with pytest.raises(FormulaSyntaxError, match="unterminated"):
            tokenize("${BaseSalary * 2")

    def test_empty_reference(self):
        with pytest.raises(FormulaSyntaxError, match="empty variable"):
            tokenize("${ } + 1")

    def test_malformed_number(self):
        with pytest.raises(FormulaSyntaxError, match="malformed number"):
            tokenize("12abc")


class TestEvaluateExpression:

    def test_precedence(self):
        assert evaluate_expression("2 + 3 * 4", {}) == Decimal("14")

    def test_parentheses(self):
        assert evaluate_expression("(2 + 3) * 4", {}) == Decimal("20")

    def test_unary_minus(self):
        assert evaluate_expression("-2 * -3", {}) == Decimal("6")

    def test_left_associative_subtraction(self):
        assert evaluate_expression("10 - 3 - 2", {}) == Decimal("5")

    def test_both_reference_forms(self):
        env = {"BaseSalary": Decimal("8000"), "workYears": 3}
        assert evaluate_expression("${BaseSalary} * 0.1 + workYears * 100", env) == Decimal("1100.0")

    def test_comparisons_yield_one_or_zero(self):
        assert evaluate_expression("3 > 2", {}) == Decimal("1")
        assert evaluate_expression("3 < 2", {}) == Decimal("0")
        assert evaluate_expression("exceptions == 0", {"exceptions": 0}) == Decimal("1")

    def test_if_selects_branch(self):
        assert evaluate_expression("IF(exceptions == 0, 500, 0)", {"exceptions": 0}) == Decimal("500")
        assert evaluate_expression("IF(exceptions == 0, 500, 0)", {"exceptions": 2}) == Decimal("0")

    def test_if_does_not_evaluate_other_branch(self):
        assert evaluate_expression("IF(1, 7, 1 / 0)", {}) == Decimal("7")
        assert evaluate_expression("IF(0, missing, 3)", {}) == Decimal("3")

    def test_min_max_abs(self):
        assert evaluate_expression("MIN(5, 2, 9)", {}) == Decimal("2")
        assert evaluate_expression("MAX(5, 2, 9)", {}) == Decimal("9")
        assert evaluate_expression("ABS(-4.5)", {}) == Decimal("4.5")

    def test_round(self):
        assert evaluate_expression("ROUND(2.345, 2)", {}) == Decimal("2.35")
        assert evaluate_expression("ROUND(2.5)", {}) == Decimal("3")

    def test_function_names_case_insensitive(self):
        assert evaluate_expression("max(1, 2)", {}) == Decimal("2")

    def test_decimal_precision_preserved(self):
        assert evaluate_expression("0.1 + 0.2", {}) == Decimal("0.3")

    def test_division_by_zero(self):
        with pytest.raises(FormulaEvaluationError, match="division by zero"):
            evaluate_expression("100 / (workYears - 3)", {"workYears": 3})

    def test_round_rejects_fractional_places(self):
        with pytest.raises(FormulaEvaluationError):
            evaluate_expression("ROUND(1.5, 0.5)", {})

    def test_unknown_variable(self):
        with pytest.raises(UnknownVariableError) as exc_info:
            evaluate_expression("${Missing} + 1", {})
        assert exc_info.value.variable == "Missing"


class TestParseErrors:

    @pytest.mark.parametrize(
        "expression",
        ["", "1 +", "(1 + 2", "1 2", "IF(1, 2)", "ABS()", "1 < 2 < 3", "* 3"],
    )
    def test_rejected(self, expression):
        with pytest.raises(FormulaSyntaxError):
            parse_formula(expression)

    def test_unknown_function(self):
        with pytest.raises(FormulaSyntaxError, match="unknown function"):
            parse_formula("SQRT(4)")

    def test_parse_is_cached(self):
        assert parse_formula("a + b") is parse_formula("a + b")


class TestExtractReferences:

    def test_collects_both_forms(self):
        refs = extract_references("IF(exceptions == 0, ${Full Attendance}, 0) + MAX(workYears, 1)")
        assert refs == frozenset({"exceptions", "Full Attendance", "workYears"})

    def test_function_names_are_not_references(self):
        assert extract_references("ROUND(1.234, 2)") == frozenset()


class TestFormulaEvaluator:

    def setup_method(self):
        self.evaluator = FormulaEvaluator()

    def test_fixed(self):
        item = _item("PositionAllowance", SalaryItemType.FIXED, "1000")
        assert self.evaluator.evaluate(item, {}) == Decimal("1000")

    def test_percentage_of_default_base(self):
        item = _item("Bonus", SalaryItemType.PERCENTAGE, "0.2")
        assert self.evaluator.evaluate(item, {"baseSalary": Decimal("8000")}) == Decimal("1600")

    def test_percentage_of_named_base(self):
        item = _item("Bonus", SalaryItemType.PERCENTAGE, "0.2", percentage_base="BaseSalary")
        env = {"BaseSalary": Decimal("9000"), "baseSalary": Decimal("8000")}
        assert self.evaluator.evaluate(item, env) == Decimal("1800")

    def test_percentage_missing_base(self):
        item = _item("Bonus", SalaryItemType.PERCENTAGE, "0.2")
        with pytest.raises(UnknownVariableError) as exc_info:
            self.evaluator.evaluate(item, {})
        assert exc_info.value.item_name == "Bonus"

    def test_formula(self):
        item = _item("SeniorityPay", SalaryItemType.FORMULA, "workYears * 100")
        assert self.evaluator.evaluate(item, {"workYears": 3}) == Decimal("300")

    def test_formula_error_names_the_item(self):
        item = _item("Ratio", SalaryItemType.FORMULA, "1 / exceptions")
        with pytest.raises(FormulaEvaluationError) as exc_info:
            self.evaluator.evaluate(item, {"exceptions": 0})
        assert exc_info.value.item_name == "Ratio"

    def test_references_per_type(self):
        assert self.evaluator.references(_item("F", SalaryItemType.FIXED, "1")) == frozenset()
        assert self.evaluator.references(
            _item("P", SalaryItemType.PERCENTAGE, "0.1", percentage_base="Gross"),
        ) == frozenset({"Gross"})
        assert self.evaluator.references(
            _item("X", SalaryItemType.FORMULA, "${A} + b"),
        ) == frozenset({"A", "b"})

    def test_custom_default_base(self):
        evaluator = FormulaEvaluator(percentage_base_variable="grossPay")
        item = _item("Levy", SalaryItemType.PERCENTAGE, "0.01")
        assert evaluator.evaluate(item, {"grossPay": Decimal("5000")}) == Decimal("50.00")
