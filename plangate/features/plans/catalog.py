"""
plangate/features/plans/catalog.py

Static plan catalog.

Plans are configuration, not data: the catalog is built once at startup
(price ids come from settings) and is read-only afterwards.
"""

from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from plangate.core.errors import ValidationError


UNLIMITED = -1


class PlanId(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PlanConfig(BaseModel):
    """
    Entitlement bundle for one plan.

    Limits use -1 for "unlimited":
    - max_deployments: lifetime deployment credits
    - max_deployments_per_month: monthly rate limit
    """
    model_config = ConfigDict(frozen=True)

    plan: PlanId
    name: str
    description: str
    max_projects: int
    max_deployments: int
    max_deployments_per_month: int
    max_github_accounts: int
    custom_domain_enabled: bool = False
    priority_support: bool = False
    analytics_enabled: bool = False
    monthly_price: int = 0
    yearly_price: int = 0
    stripe_price_id_monthly: Optional[str] = None
    stripe_price_id_yearly: Optional[str] = None

    @property
    def is_free(self) -> bool:
        return self.plan == PlanId.FREE

    def price_id_for(self, interval: BillingInterval) -> Optional[str]:
        if BillingInterval(interval) == BillingInterval.MONTHLY:
            return self.stripe_price_id_monthly
        return self.stripe_price_id_yearly

    def price_for(self, interval: Optional[BillingInterval]) -> int:
        if interval is not None and BillingInterval(interval) == BillingInterval.YEARLY:
            return self.yearly_price
        return self.monthly_price

    def entitlements(self) -> Dict[str, object]:
        """Fields copied onto a subscription when this plan is confirmed."""
        return {
            "max_projects": self.max_projects,
            "max_deployments": self.max_deployments,
            "max_deployments_per_month": self.max_deployments_per_month,
            "max_github_accounts": self.max_github_accounts,
            "custom_domain_enabled": self.custom_domain_enabled,
            "priority_support": self.priority_support,
            "analytics_enabled": self.analytics_enabled,
        }


# maxGithubAccounts = ceil(max_deployments_per_month / 2000) + 1
DEFAULT_PLANS: List[PlanConfig] = [
    PlanConfig(
        plan=PlanId.FREE,
        name="Free",
        description="Perfect for trying out the platform",
        max_projects=1,
        max_deployments=50,
        max_deployments_per_month=10,
        max_github_accounts=2,
    ),
    PlanConfig(
        plan=PlanId.STARTER,
        name="Starter",
        description="For growing businesses",
        max_projects=10,
        max_deployments=2500,
        max_deployments_per_month=500,
        max_github_accounts=2,
        custom_domain_enabled=True,
        analytics_enabled=True,
        monthly_price=19,
        yearly_price=190,
    ),
    PlanConfig(
        plan=PlanId.PRO,
        name="Pro",
        description="For professional teams",
        max_projects=50,
        max_deployments=10000,
        max_deployments_per_month=2000,
        max_github_accounts=2,
        custom_domain_enabled=True,
        priority_support=True,
        analytics_enabled=True,
        monthly_price=49,
        yearly_price=490,
    ),
    PlanConfig(
        plan=PlanId.ENTERPRISE,
        name="Enterprise",
        description="For large organizations",
        max_projects=UNLIMITED,
        max_deployments=UNLIMITED,
        max_deployments_per_month=UNLIMITED,
        max_github_accounts=UNLIMITED,
        custom_domain_enabled=True,
        priority_support=True,
        analytics_enabled=True,
        monthly_price=199,
        yearly_price=1990,
    ),
]


class PlanCatalog:
    """Read-only lookup over plan configs keyed by plan id."""

    def __init__(self, plans: Mapping[PlanId, PlanConfig]):
        self._plans = MappingProxyType(dict(plans))

    def get(self, plan_id) -> Optional[PlanConfig]:
        try:
            return self._plans.get(PlanId(plan_id))
        except ValueError:
            return None

    def require(self, plan_id) -> PlanConfig:
        config = self.get(plan_id)
        if config is None:
            raise ValidationError(f"Invalid plan: {plan_id}", code="invalid_plan")
        return config

    def all(self) -> List[PlanConfig]:
        return list(self._plans.values())

    def free(self) -> PlanConfig:
        return self._plans[PlanId.FREE]

    def lowest_paid(self) -> PlanConfig:
        return self._plans[PlanId.STARTER]

    def resolve_price(self, price_id: Optional[str]) -> Optional[tuple]:
        """Map a provider price id back to (plan, interval)."""
        if not price_id:
            return None
        for config in self._plans.values():
            if config.stripe_price_id_monthly == price_id:
                return config.plan, BillingInterval.MONTHLY
            if config.stripe_price_id_yearly == price_id:
                return config.plan, BillingInterval.YEARLY
        return None


def build_catalog(settings_obj=None, plans: Optional[List[PlanConfig]] = None) -> PlanCatalog:
    """Build the catalog once, filling provider price ids from settings."""
    if settings_obj is None:
        from plangate.core.config import settings as settings_obj

    built: Dict[PlanId, PlanConfig] = {}
    for config in plans or DEFAULT_PLANS:
        if config.is_free:
            built[config.plan] = config
            continue
        prefix = f"STRIPE_PRICE_{config.plan.value.upper()}"
        built[config.plan] = config.model_copy(update={
            "stripe_price_id_monthly": getattr(settings_obj, f"{prefix}_MONTHLY", None) or config.stripe_price_id_monthly,
            "stripe_price_id_yearly": getattr(settings_obj, f"{prefix}_YEARLY", None) or config.stripe_price_id_yearly,
        })
    return PlanCatalog(built)
