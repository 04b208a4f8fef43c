"""
payroll_engines.tracer -- Engine invocation tracer emitting PAYROLL_ENGINE_TRACE.

Responsibility:
    Provide a lightweight decorator (``@traced_engine``) that wraps pure
    engine invocations with structured trace logging.  The trace captures
    engine_name, engine_version, input_fingerprint (deterministic SHA-256
    hash of selected keyword inputs), and duration_ms.

Architecture position:
    Engines -- infrastructure support for the pure calculation layer.
    Emits a log record only; does not mutate inputs.

Failure modes:
    - Fingerprint fields missing from kwargs are recorded as "null".
    - Unknown value types fall back to ``str(value)`` when canonicalized.

Usage:
    from payroll_engines.tracer import traced_engine

    @traced_engine("tax", "1.0", fingerprint_fields=("taxable_income",))
    def calculate(self, taxable_income, formula, special_deductions=...):
        ...
"""

from __future__ import annotations

import functools
import hashlib
import time
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from payroll_kernel.logging_config import get_logger

_logger = get_logger("engines.tracer")


def _canonicalize(value: Any) -> str:
    """Produce a stable string representation of a value for fingerprinting."""
    if value is None:
        return "null"
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "{" + ",".join(f"{k}:{_canonicalize(v)}" for k, v in items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(v) for v in value) + "]"
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    kwargs: dict[str, Any],
) -> str:
    """Deterministic 16-hex-char SHA-256 fingerprint of selected kwargs."""
    parts: list[str] = []
    for name in fingerprint_fields:
        parts.append(f"{name}={_canonicalize(kwargs.get(name))}")
    canonical = "|".join(parts)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """Decorator that emits PAYROLL_ENGINE_TRACE for pure engine invocations.

    Args:
        engine_name: Engine identifier (e.g., "attendance").
        engine_version: Engine version (e.g., "1.0").
        fingerprint_fields: Keyword argument names to include in the
            input fingerprint hash.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fp = ""
            if fingerprint_fields:
                fp = compute_input_fingerprint(fingerprint_fields, kwargs)

            t0 = time.monotonic()
            result = func(*args, **kwargs)
            duration_ms = round((time.monotonic() - t0) * 1000, 2)

            _logger.debug(
                "PAYROLL_ENGINE_TRACE",
                extra={
                    "trace_type": "PAYROLL_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fp,
                    "duration_ms": duration_ms,
                    "function": func.__qualname__,
                },
            )
            return result

        return wrapper

    return decorator
