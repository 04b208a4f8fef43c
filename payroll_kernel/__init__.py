"""
Payroll Kernel

Shared foundation for the payroll calculation core:
- Structured JSON logging with calculation-scoped context
- Typed exception hierarchy with machine-readable codes
- Immutable Decimal-only domain DTOs
- Injected clock for deterministic recalculation
- SQLAlchemy declarative base and session management
"""

__version__ = "0.1.0"
