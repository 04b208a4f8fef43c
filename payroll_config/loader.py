"""
Configuration Loader (``payroll_config.loader``).

Responsibility
--------------
Loads the payroll YAML document and parses it into the typed
``payroll_config.schema`` dataclasses.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Amounts and rates are parsed from strings into Decimal; YAML floats are
  converted through ``str`` so that ``0.1`` stays exactly ``0.1``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the
  canonical document for configuration identity.

Failure modes
-------------
* Missing YAML file  -> ``ConfigurationLoadError``.
* Malformed YAML or missing required keys  -> ``ConfigurationLoadError``
  with the underlying reason.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from payroll_config.schema import (
    PayrollConfig,
    SocialInsuranceConfig,
    TaxConfig,
    TaxFormulaDef,
    TaxLevelDef,
)
from payroll_kernel.domain.dtos import BasePolicy
from payroll_kernel.exceptions import ConfigurationLoadError

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "payroll.yaml"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        ConfigurationLoadError: if the file is missing or not valid YAML.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigurationLoadError(str(path), "file not found") from e
    except yaml.YAMLError as e:
        raise ConfigurationLoadError(str(path), f"invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationLoadError(str(path), "top-level document must be a mapping")
    return data


def parse_decimal(value: Any, field_name: str) -> Decimal:
    """Parse a Decimal from a YAML scalar (string, int, or float)."""
    if isinstance(value, bool) or value is None:
        raise ValueError(f"{field_name}: expected a number, got {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"{field_name}: expected a number, got {value!r}") from e


def parse_tax_formula(
    data: dict[str, Any], default_threshold: Decimal = Decimal("0"),
) -> TaxFormulaDef:
    """Parse a ``TaxFormulaDef`` from a dict."""
    name = data["name"]
    levels = tuple(
        TaxLevelDef(
            threshold=parse_decimal(level["threshold"], f"{name}.threshold"),
            rate=parse_decimal(level["rate"], f"{name}.rate"),
            quick_deduction=parse_decimal(
                level.get("quick_deduction", 0), f"{name}.quick_deduction",
            ),
        )
        for level in data["levels"]
    )
    return TaxFormulaDef(
        name=name,
        levels=levels,
        threshold=parse_decimal(data.get("threshold", default_threshold), f"{name}.threshold"),
        is_default=bool(data.get("is_default", False)),
        description=data.get("description", ""),
    )


def parse_tax_config(data: dict[str, Any]) -> TaxConfig:
    monthly_threshold = parse_decimal(
        data.get("monthly_threshold", "5000"), "tax.monthly_threshold",
    )
    formulas = tuple(
        parse_tax_formula(f, default_threshold=monthly_threshold)
        for f in data.get("default_formulas", ())
    )
    defaults = [f.name for f in formulas if f.is_default]
    if len(defaults) > 1:
        raise ValueError(f"more than one default tax formula: {defaults}")
    return TaxConfig(
        monthly_threshold=monthly_threshold,
        default_formulas=formulas,
    )


def parse_social_insurance(data: dict[str, Any]) -> SocialInsuranceConfig:
    floor = data.get("base_floor")
    cap = data.get("base_cap")
    return SocialInsuranceConfig(
        base_policy=BasePolicy(data.get("base_policy", BasePolicy.CONFIGURED.value)),
        base_floor=None if floor is None else parse_decimal(floor, "base_floor"),
        base_cap=None if cap is None else parse_decimal(cap, "base_cap"),
    )


def parse_payroll_config(data: dict[str, Any], source: str = "<dict>") -> PayrollConfig:
    """
    Parse a ``PayrollConfig`` from a dict.

    Raises:
        ConfigurationLoadError: on missing keys or invalid values.
    """
    try:
        context_variables = tuple(data.get("context_variables", ()))
        base_variable = data.get("percentage_base_variable", "baseSalary")
        if base_variable not in context_variables:
            context_variables = (*context_variables, base_variable)
        return PayrollConfig(
            version=str(data["version"]),
            working_days_per_month=parse_decimal(
                data.get("working_days_per_month", "21.75"), "working_days_per_month",
            ),
            decimal_places=int(data.get("decimal_places", 2)),
            percentage_base_variable=base_variable,
            context_variables=context_variables,
            social_insurance=parse_social_insurance(data.get("social_insurance") or {}),
            tax=parse_tax_config(data.get("tax") or {}),
            checksum=compute_checksum(data),
        )
    except (KeyError, ValueError, TypeError) as e:
        raise ConfigurationLoadError(source, str(e)) from e


def load_payroll_config(path: Path | None = None) -> PayrollConfig:
    """Load and parse a payroll configuration file (defaults when None)."""
    config_path = path or DEFAULT_CONFIG_PATH
    return parse_payroll_config(load_yaml_file(config_path), source=str(config_path))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
