"""
Module: payroll_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    payroll calculation engines.  This is the canonical import surface for
    ``payroll_services``.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import ``payroll_kernel`` (domain DTOs, exceptions, logging)
    and sibling engine modules.  MUST NOT import payroll_services or
    payroll_config.

Invariants enforced:
    - Purity: engines never read the clock or the database; dates, rates
      and tables are passed in.
    - Decimal-only arithmetic: floats never enter engine calculations.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Engine entry points are wrapped by ``@traced_engine`` and emit
    PAYROLL_ENGINE_TRACE records with an input fingerprint and duration.
"""

from payroll_engines.attendance import (
    AttendanceDeductionEngine,
    AttendanceDeductionLine,
    AttendanceDeductionResult,
)
from payroll_engines.formula import (
    FormulaEvaluator,
    evaluate_expression,
    extract_references,
    parse_formula,
    tokenize,
)
from payroll_engines.salary_items import (
    DependencyGraph,
    IssueKind,
    ResolvedSalary,
    SalaryGroupIssue,
    SalaryItemResolver,
)
from payroll_engines.social_insurance import (
    ContributionDetail,
    SocialInsuranceCalculator,
    SocialInsuranceResult,
)
from payroll_engines.tax import (
    TaxCalculationResult,
    TaxEngine,
    find_level_index,
    validate_levels,
)

__all__ = [
    # Attendance
    "AttendanceDeductionEngine",
    "AttendanceDeductionLine",
    "AttendanceDeductionResult",
    # Formula
    "FormulaEvaluator",
    "evaluate_expression",
    "extract_references",
    "parse_formula",
    "tokenize",
    # Salary items
    "DependencyGraph",
    "IssueKind",
    "ResolvedSalary",
    "SalaryGroupIssue",
    "SalaryItemResolver",
    # Social insurance
    "ContributionDetail",
    "SocialInsuranceCalculator",
    "SocialInsuranceResult",
    # Tax
    "TaxCalculationResult",
    "TaxEngine",
    "find_level_index",
    "validate_levels",
]
