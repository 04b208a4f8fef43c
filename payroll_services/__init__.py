"""
payroll_services -- Package init and public API.

Responsibility:
    Stateful services that compose the pure payroll engines with database
    sessions: the PayrollOrchestrator, the SQLAlchemy data source and result
    store, and the configuration maintenance services.  This is the **only**
    layer that holds database sessions or reads wall-clock time.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        payroll_services/ -> payroll_engines/  (allowed)
        payroll_services/ -> payroll_config/   (allowed)
        payroll_services/ -> payroll_kernel/   (allowed)
        payroll_engines/  -> payroll_services/ (FORBIDDEN)
        payroll_kernel/   -> payroll_services/ (FORBIDDEN)

Invariants enforced:
    - No service commits; callers own the transaction boundary.

Audit relevance:
    - This package is the canonical import surface for external consumers.
"""

from payroll_services.orchestrator import PayrollOrchestrator
from payroll_services.repositories import (
    PayrollDataSource,
    PayrollResultStore,
    SqlPayrollDataSource,
    SqlPayrollResultStore,
)
from payroll_services.salary_config import (
    SalaryGroupService,
    SalaryItemService,
    TaxFormulaService,
)
from payroll_services.types import (
    BatchPayrollResult,
    BatchStatus,
    CancellationToken,
    EmployeePayrollOutcome,
    OutcomeStatus,
)

__all__ = [
    "BatchPayrollResult",
    "BatchStatus",
    "CancellationToken",
    "EmployeePayrollOutcome",
    "OutcomeStatus",
    "PayrollDataSource",
    "PayrollOrchestrator",
    "PayrollResultStore",
    "SalaryGroupService",
    "SalaryItemService",
    "SqlPayrollDataSource",
    "SqlPayrollResultStore",
    "TaxFormulaService",
]
