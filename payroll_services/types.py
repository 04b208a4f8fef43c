"""
payroll_services.types -- Frozen dataclasses for payroll batch runs.

Follows the batch DTO pattern: frozen dataclasses with enum status fields
and tuples for immutable collections.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from payroll_kernel.domain.dtos import PayrollResult


class BatchStatus(str, Enum):
    """Outcome of a whole batch run."""

    COMPLETED = "completed"  # Every employee succeeded
    PARTIALLY_COMPLETED = "partially_completed"  # Some employees failed
    FAILED = "failed"  # No employee succeeded
    CANCELLED = "cancelled"  # Stopped between employees


class OutcomeStatus(str, Enum):
    """Outcome for one employee within a batch."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # Not attempted because the run was cancelled


@dataclass(frozen=True)
class EmployeePayrollOutcome:
    employee_id: UUID
    status: OutcomeStatus
    result: PayrollResult | None = None
    error_code: str | None = None
    error_message: str | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class BatchPayrollResult:
    """Summary of one ``batch_calculate_salary`` run."""

    batch_id: UUID
    year_month: str
    department_id: UUID | None
    status: BatchStatus
    total: int
    succeeded: int
    failed: int
    skipped: int
    outcomes: tuple[EmployeePayrollOutcome, ...]
    started_at: datetime
    completed_at: datetime
    duration_ms: int

    @property
    def failures(self) -> tuple[EmployeePayrollOutcome, ...]:
        return tuple(o for o in self.outcomes if o.status == OutcomeStatus.FAILED)


class CancellationToken:
    """Cooperative cancellation flag, checked between employees."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()
