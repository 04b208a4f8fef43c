"""
Formula Engine - Evaluate salary item values.

Salary items are fixed amounts, percentages of a named base variable, or
formulas over previously computed items and context variables.  Formulas
are parsed by a hand-written tokenizer and recursive-descent parser into a
small AST and evaluated directly; no general-purpose interpreter is ever
invoked.

Grammar::

    expression  := comparison
    comparison  := additive (("==" | "!=" | "<" | "<=" | ">" | ">=") additive)?
    additive    := term (("+" | "-") term)*
    term        := unary (("*" | "/") unary)*
    unary       := ("-" | "+") unary | primary
    primary     := NUMBER
                 | "${" NAME "}"
                 | IDENT
                 | IDENT "(" expression ("," expression)* ")"
                 | "(" expression ")"

``${Name}`` may contain any character except ``}``; bare identifiers are
letters, digits and underscores.  Both forms are variable references.
Whitelisted functions: IF, MIN, MAX, ABS, ROUND (case-insensitive).

Usage:
    from payroll_engines.formula import FormulaEvaluator, evaluate_expression

    evaluate_expression("${BaseSalary} * 0.1 + workYears * 100",
                        {"BaseSalary": Decimal("8000"), "workYears": 3})
    # Decimal('1100.0')
"""

from __future__ import annotations

import functools
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Union

from payroll_kernel.domain.dtos import SalaryItem, SalaryItemType
from payroll_kernel.exceptions import (
    FormulaEvaluationError,
    FormulaSyntaxError,
    UnknownVariableError,
)
from payroll_kernel.logging_config import get_logger

logger = get_logger("engines.formula")

ONE = Decimal("1")
ZERO = Decimal("0")


# =============================================================================
# Tokenizer
# =============================================================================


class TokenKind(str, Enum):
    NUMBER = "number"
    VARIABLE = "variable"  # ${Name}
    IDENT = "ident"  # bare identifier (variable or function name)
    OPERATOR = "operator"
    LPAREN = "lparen"
    RPAREN = "rparen"
    COMMA = "comma"
    END = "end"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    position: int


_TWO_CHAR_OPERATORS = frozenset({"==", "!=", "<=", ">="})
_ONE_CHAR_OPERATORS = frozenset({"+", "-", "*", "/", "<", ">"})
_COMPARISON_OPERATORS = frozenset({"==", "!=", "<", "<=", ">", ">="})


def _is_ident_start(ch: str) -> bool:
    return ch.isalpha() or ch == "_"


def _is_ident_part(ch: str) -> bool:
    return ch.isalnum() or ch == "_"


def tokenize(expression: str) -> list[Token]:
    """Split a formula into tokens.

    Raises:
        FormulaSyntaxError: On an unexpected character, an unterminated or
            empty ``${...}`` reference, or a malformed number.
    """
    tokens: list[Token] = []
    i = 0
    n = len(expression)

    while i < n:
        ch = expression[i]

        if ch.isspace():
            i += 1
            continue

        if ch.isdigit() or (ch == "." and i + 1 < n and expression[i + 1].isdigit()):
            start = i
            while i < n and expression[i].isdigit():
                i += 1
            if i < n and expression[i] == ".":
                i += 1
                while i < n and expression[i].isdigit():
                    i += 1
            if i < n and _is_ident_start(expression[i]):
                raise FormulaSyntaxError(expression, "malformed number", start)
            tokens.append(Token(TokenKind.NUMBER, expression[start:i], start))
            continue

        if ch == "$":
            start = i
            if i + 1 >= n or expression[i + 1] != "{":
                raise FormulaSyntaxError(expression, "expected '{' after '$'", i)
            close = expression.find("}", i + 2)
            if close == -1:
                raise FormulaSyntaxError(expression, "unterminated variable reference", start)
            name = expression[i + 2:close].strip()
            if not name:
                raise FormulaSyntaxError(expression, "empty variable reference", start)
            tokens.append(Token(TokenKind.VARIABLE, name, start))
            i = close + 1
            continue

        if _is_ident_start(ch):
            start = i
            while i < n and _is_ident_part(expression[i]):
                i += 1
            tokens.append(Token(TokenKind.IDENT, expression[start:i], start))
            continue

        pair = expression[i:i + 2]
        if pair in _TWO_CHAR_OPERATORS:
            tokens.append(Token(TokenKind.OPERATOR, pair, i))
            i += 2
            continue
        if ch in _ONE_CHAR_OPERATORS:
            tokens.append(Token(TokenKind.OPERATOR, ch, i))
            i += 1
            continue
        if ch == "(":
            tokens.append(Token(TokenKind.LPAREN, ch, i))
        elif ch == ")":
            tokens.append(Token(TokenKind.RPAREN, ch, i))
        elif ch == ",":
            tokens.append(Token(TokenKind.COMMA, ch, i))
        else:
            raise FormulaSyntaxError(expression, f"unexpected character {ch!r}", i)
        i += 1

    tokens.append(Token(TokenKind.END, "", n))
    return tokens


# =============================================================================
# AST
# =============================================================================


@dataclass(frozen=True)
class Number:
    value: Decimal


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class UnaryOp:
    operator: str
    operand: "FormulaNode"


@dataclass(frozen=True)
class BinaryOp:
    operator: str
    left: "FormulaNode"
    right: "FormulaNode"


@dataclass(frozen=True)
class Call:
    function: str
    args: tuple["FormulaNode", ...]


FormulaNode = Union[Number, Variable, UnaryOp, BinaryOp, Call]

# name -> (min args, max args or None for unbounded)
FUNCTIONS: dict[str, tuple[int, int | None]] = {
    "IF": (3, 3),
    "MIN": (1, None),
    "MAX": (1, None),
    "ABS": (1, 1),
    "ROUND": (1, 2),
}


# =============================================================================
# Parser
# =============================================================================


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, expression: str, tokens: list[Token]):
        self._expression = expression
        self._tokens = tokens
        self._pos = 0

    def _peek(self) -> Token:
        return self._tokens[self._pos]

    def _advance(self) -> Token:
        token = self._tokens[self._pos]
        self._pos += 1
        return token

    def _error(self, reason: str, token: Token | None = None) -> FormulaSyntaxError:
        token = token or self._peek()
        return FormulaSyntaxError(self._expression, reason, token.position)

    def _expect(self, kind: TokenKind, what: str) -> Token:
        token = self._peek()
        if token.kind != kind:
            found = token.text or "end of formula"
            raise self._error(f"expected {what}, found {found!r}")
        return self._advance()

    def parse(self) -> FormulaNode:
        if self._peek().kind == TokenKind.END:
            raise self._error("empty formula")
        node = self._comparison()
        if self._peek().kind != TokenKind.END:
            raise self._error(f"unexpected {self._peek().text!r}")
        return node

    def _comparison(self) -> FormulaNode:
        left = self._additive()
        token = self._peek()
        if token.kind == TokenKind.OPERATOR and token.text in _COMPARISON_OPERATORS:
            self._advance()
            right = self._additive()
            nxt = self._peek()
            if nxt.kind == TokenKind.OPERATOR and nxt.text in _COMPARISON_OPERATORS:
                raise self._error("comparisons cannot be chained", nxt)
            return BinaryOp(token.text, left, right)
        return left

    def _additive(self) -> FormulaNode:
        node = self._term()
        while self._peek().kind == TokenKind.OPERATOR and self._peek().text in ("+", "-"):
            op = self._advance().text
            node = BinaryOp(op, node, self._term())
        return node

    def _term(self) -> FormulaNode:
        node = self._unary()
        while self._peek().kind == TokenKind.OPERATOR and self._peek().text in ("*", "/"):
            op = self._advance().text
            node = BinaryOp(op, node, self._unary())
        return node

    def _unary(self) -> FormulaNode:
        token = self._peek()
        if token.kind == TokenKind.OPERATOR and token.text in ("+", "-"):
            self._advance()
            return UnaryOp(token.text, self._unary())
        return self._primary()

    def _primary(self) -> FormulaNode:
        token = self._peek()

        if token.kind == TokenKind.NUMBER:
            self._advance()
            try:
                return Number(Decimal(token.text))
            except InvalidOperation:
                raise self._error("malformed number", token) from None

        if token.kind == TokenKind.VARIABLE:
            self._advance()
            return Variable(token.text)

        if token.kind == TokenKind.IDENT:
            self._advance()
            if self._peek().kind == TokenKind.LPAREN:
                return self._call(token)
            return Variable(token.text)

        if token.kind == TokenKind.LPAREN:
            self._advance()
            node = self._comparison()
            self._expect(TokenKind.RPAREN, "')'")
            return node

        found = token.text or "end of formula"
        raise self._error(f"expected a number, variable or '(', found {found!r}")

    def _call(self, name_token: Token) -> FormulaNode:
        name = name_token.text.upper()
        if name not in FUNCTIONS:
            raise self._error(f"unknown function {name_token.text!r}", name_token)
        self._expect(TokenKind.LPAREN, "'('")
        args: list[FormulaNode] = []
        if self._peek().kind != TokenKind.RPAREN:
            args.append(self._comparison())
            while self._peek().kind == TokenKind.COMMA:
                self._advance()
                args.append(self._comparison())
        self._expect(TokenKind.RPAREN, "')'")

        min_args, max_args = FUNCTIONS[name]
        if len(args) < min_args or (max_args is not None and len(args) > max_args):
            raise self._error(
                f"{name} takes {min_args}"
                + ("" if max_args == min_args else f" to {max_args or 'any'}")
                + f" argument(s), got {len(args)}",
                name_token,
            )
        return Call(name, tuple(args))


@functools.lru_cache(maxsize=1024)
def parse_formula(expression: str) -> FormulaNode:
    """Parse a formula into an AST (cached per expression string).

    Raises:
        FormulaSyntaxError: If the formula does not match the grammar.
    """
    return _Parser(expression, tokenize(expression)).parse()


def _collect_references(node: FormulaNode, names: set[str]) -> None:
    if isinstance(node, Variable):
        names.add(node.name)
    elif isinstance(node, UnaryOp):
        _collect_references(node.operand, names)
    elif isinstance(node, BinaryOp):
        _collect_references(node.left, names)
        _collect_references(node.right, names)
    elif isinstance(node, Call):
        for arg in node.args:
            _collect_references(arg, names)


def extract_references(expression: str) -> frozenset[str]:
    """Names of all variables a formula reads."""
    names: set[str] = set()
    _collect_references(parse_formula(expression), names)
    return frozenset(names)


# =============================================================================
# Evaluation
# =============================================================================


def _lookup(name: str, environment: Mapping[str, Any]) -> Decimal:
    if name not in environment:
        raise UnknownVariableError(name)
    value = environment[name]
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _truthy(value: Decimal) -> bool:
    return value != ZERO


def _evaluate(node: FormulaNode, environment: Mapping[str, Any], expression: str) -> Decimal:
    if isinstance(node, Number):
        return node.value

    if isinstance(node, Variable):
        return _lookup(node.name, environment)

    if isinstance(node, UnaryOp):
        operand = _evaluate(node.operand, environment, expression)
        return -operand if node.operator == "-" else operand

    if isinstance(node, BinaryOp):
        left = _evaluate(node.left, environment, expression)
        right = _evaluate(node.right, environment, expression)
        op = node.operator
        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if op == "/":
            if right == ZERO:
                raise FormulaEvaluationError(expression, "division by zero")
            return left / right
        if op == "==":
            return ONE if left == right else ZERO
        if op == "!=":
            return ONE if left != right else ZERO
        if op == "<":
            return ONE if left < right else ZERO
        if op == "<=":
            return ONE if left <= right else ZERO
        if op == ">":
            return ONE if left > right else ZERO
        if op == ">=":
            return ONE if left >= right else ZERO
        raise FormulaEvaluationError(expression, f"unsupported operator {op!r}")

    if isinstance(node, Call):
        return _evaluate_call(node, environment, expression)

    raise FormulaEvaluationError(expression, f"unsupported node {type(node).__name__}")


def _evaluate_call(node: Call, environment: Mapping[str, Any], expression: str) -> Decimal:
    if node.function == "IF":
        # Only the selected branch is evaluated
        condition = _evaluate(node.args[0], environment, expression)
        branch = node.args[1] if _truthy(condition) else node.args[2]
        return _evaluate(branch, environment, expression)

    values = [_evaluate(arg, environment, expression) for arg in node.args]
    if node.function == "MIN":
        return min(values)
    if node.function == "MAX":
        return max(values)
    if node.function == "ABS":
        return abs(values[0])
    if node.function == "ROUND":
        places = values[1] if len(values) > 1 else ZERO
        if places != places.to_integral_value() or places < 0:
            raise FormulaEvaluationError(
                expression, "ROUND places must be a non-negative integer",
            )
        return values[0].quantize(Decimal(1).scaleb(-int(places)), rounding=ROUND_HALF_UP)
    raise FormulaEvaluationError(expression, f"unsupported function {node.function}")


def evaluate_expression(expression: str, environment: Mapping[str, Any]) -> Decimal:
    """Parse (cached) and evaluate a formula against an environment.

    Raises:
        FormulaSyntaxError: Malformed formula.
        UnknownVariableError: A referenced name is absent from the environment.
        FormulaEvaluationError: Division by zero or invalid ROUND places.
    """
    return _evaluate(parse_formula(expression), environment, expression)


# =============================================================================
# Salary item evaluation
# =============================================================================


class FormulaEvaluator:
    """
    Evaluates one salary item's value against a variable environment.

    Contract:
        - fixed: returns the item value unchanged.
        - percentage: value (a 0-1 fraction) times the item's named base
          variable, or ``percentage_base_variable`` when the item names none.
        - formula: evaluates the expression over the environment.

    Pure: the result depends only on ``(item, environment)``.
    """

    def __init__(self, percentage_base_variable: str = "baseSalary"):
        self.percentage_base_variable = percentage_base_variable

    def base_variable_for(self, item: SalaryItem) -> str:
        return item.percentage_base or self.percentage_base_variable

    def references(self, item: SalaryItem) -> frozenset[str]:
        """Variable names the item reads when evaluated."""
        if item.item_type == SalaryItemType.FORMULA:
            return extract_references(item.value)
        if item.item_type == SalaryItemType.PERCENTAGE:
            return frozenset({self.base_variable_for(item)})
        return frozenset()

    def evaluate(self, item: SalaryItem, environment: Mapping[str, Any]) -> Decimal:
        """Compute the item's value.

        Raises:
            UnknownVariableError: A referenced variable (or percentage base)
                is not in the environment; carries the item name.
            FormulaSyntaxError / FormulaEvaluationError: Formula problems.
        """
        if item.item_type == SalaryItemType.FIXED:
            return item.value

        if item.item_type == SalaryItemType.PERCENTAGE:
            base_name = self.base_variable_for(item)
            try:
                base = _lookup(base_name, environment)
            except UnknownVariableError as e:
                raise UnknownVariableError(base_name, item.name) from e
            return item.value * base

        try:
            return evaluate_expression(item.value, environment)
        except UnknownVariableError as e:
            logger.warning(
                "formula_unknown_variable",
                extra={"item_name": item.name, "variable": e.variable},
            )
            raise UnknownVariableError(e.variable, item.name) from e
        except FormulaEvaluationError as e:
            raise FormulaEvaluationError(e.expression, e.reason, item.name) from e
