"""
Module: payroll_kernel.exceptions
Responsibility: Typed exception hierarchy for the payroll calculation core.
    Every exception carries a machine-readable ``code`` class attribute and
    structured attributes so that log records and batch summaries can report
    failures without parsing messages.
Architecture position: Kernel.  Lowest layer -- imported by engines, config,
    and services.  MUST NOT import from any other payroll package.

===============================================================================
ERROR TAXONOMY
===============================================================================

    PayrollError
    +-- ConfigurationError          missing or invalid configuration data;
    |                               fatal for one employee, never for a batch
    +-- FormulaError                formula syntax, unknown variables,
    |                               ordering, duplicate orders, cycles
    +-- DataUnavailableError        missing input data; engines degrade to a
    |                               CalculationWarning instead of raising
    +-- InvalidYearMonthError       malformed YYYY-MM period key
    +-- PayrollResultNotFoundError
    +-- PayrollMaintenanceError     rejected configuration maintenance
                                    operations (delete preset item, ...)

Negative tax or deduction amounts are clamped to zero and reported as
warnings; they never surface as exceptions.
===============================================================================
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class PayrollError(Exception):
    """
    Base exception for all payroll errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "PAYROLL_ERROR"


# Configuration errors


class ConfigurationError(PayrollError):
    """Base exception for missing or invalid configuration."""

    code: str = "CONFIGURATION_ERROR"


class EmployeeNotFoundError(ConfigurationError):
    """Employee with given ID was not found."""

    code: str = "EMPLOYEE_NOT_FOUND"

    def __init__(self, employee_id: Any):
        self.employee_id = str(employee_id)
        super().__init__(f"Employee not found: {employee_id}")


class SalaryGroupNotFoundError(ConfigurationError):
    """Salary group is missing or the employee has none assigned."""

    code: str = "SALARY_GROUP_NOT_FOUND"

    def __init__(self, group_id: Any, employee_id: Any = None):
        self.group_id = None if group_id is None else str(group_id)
        self.employee_id = None if employee_id is None else str(employee_id)
        if group_id is None:
            message = f"Employee {employee_id} has no salary group assigned"
        else:
            message = f"Salary group not found: {group_id}"
        super().__init__(message)


class SalaryItemNotFoundError(ConfigurationError):
    """Salary item referenced by a group does not exist."""

    code: str = "SALARY_ITEM_NOT_FOUND"

    def __init__(self, item_id: Any):
        self.item_id = str(item_id)
        super().__init__(f"Salary item not found: {item_id}")


class SocialInsuranceGroupNotFoundError(ConfigurationError):
    """Social insurance group is missing or unassigned."""

    code: str = "SOCIAL_INSURANCE_GROUP_NOT_FOUND"

    def __init__(self, group_id: Any, employee_id: Any = None):
        self.group_id = None if group_id is None else str(group_id)
        self.employee_id = None if employee_id is None else str(employee_id)
        if group_id is None:
            message = f"Employee {employee_id} has no social insurance group assigned"
        else:
            message = f"Social insurance group not found: {group_id}"
        super().__init__(message)


class TaxFormulaNotFoundError(ConfigurationError):
    """No explicit tax formula and no default formula is configured."""

    code: str = "TAX_FORMULA_NOT_FOUND"

    def __init__(self, formula_id: Any = None):
        self.formula_id = None if formula_id is None else str(formula_id)
        if formula_id is None:
            message = "No default tax formula configured"
        else:
            message = f"Tax formula not found: {formula_id}"
        super().__init__(message)


class InvalidTaxFormulaError(ConfigurationError):
    """Tax formula levels are malformed."""

    code: str = "INVALID_TAX_FORMULA"

    def __init__(self, formula_name: str, reason: str):
        self.formula_name = formula_name
        self.reason = reason
        super().__init__(f"Invalid tax formula '{formula_name}': {reason}")


class InvalidSalaryItemError(ConfigurationError):
    """Salary item definition is malformed (bad type, value out of range)."""

    code: str = "INVALID_SALARY_ITEM"

    def __init__(self, item_name: str, reason: str):
        self.item_name = item_name
        self.reason = reason
        super().__init__(f"Invalid salary item '{item_name}': {reason}")


class ConfigurationLoadError(ConfigurationError):
    """Payroll configuration document could not be parsed."""

    code: str = "CONFIGURATION_LOAD_ERROR"

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Cannot load payroll configuration from {source}: {reason}")


# Formula errors


class FormulaError(PayrollError):
    """Base exception for formula and calculation-order errors."""

    code: str = "FORMULA_ERROR"


class FormulaSyntaxError(FormulaError):
    """Formula text does not match the formula grammar."""

    code: str = "FORMULA_SYNTAX_ERROR"

    def __init__(self, expression: str, reason: str, position: int = 0):
        self.expression = expression
        self.reason = reason
        self.position = position
        super().__init__(
            f"Syntax error in formula {expression!r} at position {position}: {reason}"
        )


class FormulaEvaluationError(FormulaError):
    """Formula is well-formed but cannot be evaluated (e.g. division by zero)."""

    code: str = "FORMULA_EVALUATION_ERROR"

    def __init__(self, expression: str, reason: str, item_name: str | None = None):
        self.expression = expression
        self.reason = reason
        self.item_name = item_name
        super().__init__(f"Cannot evaluate formula {expression!r}: {reason}")


class UnknownVariableError(FormulaError):
    """Formula references a name that is neither an item nor a context variable."""

    code: str = "UNKNOWN_VARIABLE"

    def __init__(self, variable: str, item_name: str | None = None):
        self.variable = variable
        self.item_name = item_name
        where = f" in salary item '{item_name}'" if item_name else ""
        super().__init__(f"Unknown variable '{variable}'{where}")


class InvalidOrderingError(FormulaError):
    """Formula references an item whose calculation order is not strictly lower."""

    code: str = "INVALID_ORDERING"

    def __init__(
        self,
        item_name: str,
        item_order: int,
        referenced_name: str,
        referenced_order: int,
    ):
        self.item_name = item_name
        self.item_order = item_order
        self.referenced_name = referenced_name
        self.referenced_order = referenced_order
        super().__init__(
            f"Salary item '{item_name}' (order {item_order}) references "
            f"'{referenced_name}' (order {referenced_order}); referenced items "
            f"must have a lower calculation order"
        )


class DuplicateOrderError(FormulaError):
    """Two members of one salary group share a calculation order."""

    code: str = "DUPLICATE_ORDER"

    def __init__(self, calculation_order: int, item_names: Sequence[str]):
        self.calculation_order = calculation_order
        self.item_names = list(item_names)
        super().__init__(
            f"Calculation order {calculation_order} is used by more than one "
            f"item: {', '.join(item_names)}"
        )


class CircularReferenceError(FormulaError):
    """Salary item references form a cycle."""

    code: str = "CIRCULAR_REFERENCE"

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular reference between salary items: {' -> '.join(cycle)}")


class SalaryGroupValidationError(FormulaError):
    """Salary group failed validation; carries every issue found."""

    code: str = "SALARY_GROUP_INVALID"

    def __init__(self, group_name: str, issues: Sequence[Any]):
        self.group_name = group_name
        self.issues = [getattr(issue, "message", str(issue)) for issue in issues]
        super().__init__(
            f"Salary group '{group_name}' is invalid: " + "; ".join(self.issues)
        )


# Data and period errors


class DataUnavailableError(PayrollError):
    """Input data required for a calculation step is missing."""

    code: str = "DATA_UNAVAILABLE"

    def __init__(self, what: str, employee_id: Any = None):
        self.what = what
        self.employee_id = None if employee_id is None else str(employee_id)
        super().__init__(f"Data unavailable: {what}")


class InvalidYearMonthError(PayrollError):
    """Period key is not a valid YYYY-MM string."""

    code: str = "INVALID_YEAR_MONTH"

    def __init__(self, year_month: Any):
        self.year_month = str(year_month)
        super().__init__(f"Invalid year-month {year_month!r}; expected YYYY-MM")


class PayrollResultNotFoundError(PayrollError):
    """No payroll result stored for (employee, year-month)."""

    code: str = "PAYROLL_RESULT_NOT_FOUND"

    def __init__(self, employee_id: Any, year_month: str):
        self.employee_id = str(employee_id)
        self.year_month = year_month
        super().__init__(f"No payroll result for employee {employee_id} in {year_month}")


# Maintenance errors


class PayrollMaintenanceError(PayrollError):
    """Base exception for rejected configuration maintenance operations."""

    code: str = "PAYROLL_MAINTENANCE_ERROR"


class PresetSalaryItemError(PayrollMaintenanceError):
    """Preset salary items cannot be deleted."""

    code: str = "PRESET_SALARY_ITEM"

    def __init__(self, item_name: str):
        self.item_name = item_name
        super().__init__(f"Preset salary item '{item_name}' cannot be deleted")


class SalaryItemInUseError(PayrollMaintenanceError):
    """Salary item is still a member of one or more salary groups."""

    code: str = "SALARY_ITEM_IN_USE"

    def __init__(self, item_name: str, group_names: Sequence[str]):
        self.item_name = item_name
        self.group_names = list(group_names)
        super().__init__(
            f"Salary item '{item_name}' is used by salary groups: {', '.join(group_names)}"
        )


class SalaryGroupInUseError(PayrollMaintenanceError):
    """Salary group is still assigned to employees."""

    code: str = "SALARY_GROUP_IN_USE"

    def __init__(self, group_name: str, employee_count: int):
        self.group_name = group_name
        self.employee_count = employee_count
        super().__init__(
            f"Salary group '{group_name}' is assigned to {employee_count} employee(s)"
        )


class DefaultTaxFormulaError(PayrollMaintenanceError):
    """The default tax formula cannot be deleted."""

    code: str = "DEFAULT_TAX_FORMULA"

    def __init__(self, formula_name: str):
        self.formula_name = formula_name
        super().__init__(f"Default tax formula '{formula_name}' cannot be deleted")
