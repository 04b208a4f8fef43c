"""
payroll_config -- single public entrypoint for payroll configuration.

Responsibility:
    Provides ``get_active_config()``, the runtime way to obtain payroll
    defaults (working days per month, rounding, percentage base variable,
    social insurance base policy, shipped tax tables).  YAML loading lives
    in ``payroll_config.loader``.

Architecture position:
    Configuration -- sits above ``payroll_kernel`` and below
    ``payroll_services``.  Engines never import this package.

Failure modes:
    - ``ConfigurationLoadError`` when the YAML document is missing or
      malformed.

Audit relevance:
    Every load emits a ``PAYROLL_CONFIG_TRACE`` log entry carrying the
    config version and checksum, tying each payroll run to the exact
    configuration that governed it.
"""

from __future__ import annotations

import threading
from pathlib import Path

from payroll_config.loader import load_payroll_config
from payroll_config.schema import (
    PayrollConfig,
    SocialInsuranceConfig,
    TaxConfig,
    TaxFormulaDef,
    TaxLevelDef,
)
from payroll_kernel.logging_config import get_logger

logger = get_logger("config")

_active: PayrollConfig | None = None
_lock = threading.Lock()


def get_active_config(path: Path | None = None) -> PayrollConfig:
    """Return the payroll configuration.

    With no ``path`` the shipped defaults are loaded once and cached for the
    process.  An explicit ``path`` always loads fresh and is not cached.
    """
    global _active
    if path is not None:
        config = load_payroll_config(path)
        _trace(config, str(path))
        return config

    with _lock:
        if _active is None:
            _active = load_payroll_config()
            _trace(_active, "defaults")
        return _active


def reset_active_config() -> None:
    """Forget the cached default configuration. FOR TESTING ONLY."""
    global _active
    with _lock:
        _active = None


def _trace(config: PayrollConfig, source: str) -> None:
    logger.info(
        "PAYROLL_CONFIG_TRACE",
        extra={
            "trace_type": "PAYROLL_CONFIG_TRACE",
            "config_version": config.version,
            "checksum": config.checksum,
            "source": source,
            "tax_formula_count": len(config.tax.default_formulas),
        },
    )


__all__ = [
    "PayrollConfig",
    "SocialInsuranceConfig",
    "TaxConfig",
    "TaxFormulaDef",
    "TaxLevelDef",
    "get_active_config",
    "load_payroll_config",
    "reset_active_config",
]
