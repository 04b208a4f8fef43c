"""
Social Insurance Calculator - Personal withholding and company cost.

Personal withholding covers pension, medical, unemployment, and the housing
fund.  Injury and maternity are company-only; they are computed for the
company-cost figure and ignored for the personal figure.

Base policies (``BasePolicy``):
    CONFIGURED    the category base configured on the group; a zero base
                  falls back to the wage basis
    WAGE          the wage basis, uncapped
    WAGE_CLAMPED  the wage basis clamped into [base_floor, base_cap]
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from payroll_engines.tracer import traced_engine
from payroll_kernel.domain.dtos import (
    PERSONAL_CATEGORIES,
    BasePolicy,
    ContributionCategory,
    SocialInsuranceGroup,
)
from payroll_kernel.logging_config import get_logger

logger = get_logger("engines.social_insurance")

ZERO = Decimal("0")


@dataclass(frozen=True)
class ContributionDetail:
    category: ContributionCategory
    base: Decimal
    personal_amount: Decimal
    company_amount: Decimal


@dataclass(frozen=True)
class SocialInsuranceResult:
    personal_total: Decimal
    company_total: Decimal
    details: tuple[ContributionDetail, ...]

    def detail_for(self, category: ContributionCategory) -> ContributionDetail | None:
        for detail in self.details:
            if detail.category == category:
                return detail
        return None


class SocialInsuranceCalculator:
    """Applies contribution rates to per-category bases."""

    def __init__(
        self,
        base_policy: BasePolicy = BasePolicy.CONFIGURED,
        base_floor: Decimal | None = None,
        base_cap: Decimal | None = None,
        decimal_places: int = 2,
    ):
        if base_floor is not None and base_cap is not None and base_floor > base_cap:
            raise ValueError("base_floor cannot exceed base_cap")
        self.base_policy = BasePolicy(base_policy)
        self.base_floor = base_floor
        self.base_cap = base_cap
        self._quantum = Decimal(1).scaleb(-decimal_places)

    def contribution_base(self, configured_base: Decimal, wage_basis: Decimal) -> Decimal:
        """The amount a category's rates apply to under the active policy."""
        if self.base_policy == BasePolicy.CONFIGURED:
            return configured_base if configured_base > 0 else wage_basis
        if self.base_policy == BasePolicy.WAGE:
            return wage_basis
        base = wage_basis
        if self.base_floor is not None:
            base = max(base, self.base_floor)
        if self.base_cap is not None:
            base = min(base, self.base_cap)
        return base

    @traced_engine("social_insurance", "1.0", fingerprint_fields=("wage_basis",))
    def calculate(self, group: SocialInsuranceGroup, wage_basis: Decimal) -> SocialInsuranceResult:
        details: list[ContributionDetail] = []
        personal_total = ZERO
        company_total = ZERO

        for category in ContributionCategory:
            rate = group.rate_for(category)
            base = self.contribution_base(rate.base, wage_basis)
            personal = ZERO
            if category in PERSONAL_CATEGORIES:
                personal = self._round(base * rate.personal_rate)
            company = self._round(base * rate.company_rate)
            details.append(ContributionDetail(
                category=category,
                base=base,
                personal_amount=personal,
                company_amount=company,
            ))
            personal_total += personal
            company_total += company

        logger.info(
            "social_insurance_calculated",
            extra={
                "group_name": group.name,
                "base_policy": self.base_policy.value,
                "personal_total": str(personal_total),
                "company_total": str(company_total),
            },
        )
        return SocialInsuranceResult(
            personal_total=personal_total,
            company_total=company_total,
            details=tuple(details),
        )

    def calculate_personal_withholding(
        self, group: SocialInsuranceGroup, wage_basis: Decimal,
    ) -> Decimal:
        return self.calculate(group=group, wage_basis=wage_basis).personal_total

    def _round(self, amount: Decimal) -> Decimal:
        return amount.quantize(self._quantum, rounding=ROUND_HALF_UP)
