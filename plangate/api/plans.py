"""
Public plan listing.

- GET /api/plans
"""
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from plangate.api.deps import get_services
from plangate.features.plans.catalog import PlanConfig
from plangate.features.wiring import Services


router = APIRouter(prefix="/plans", tags=["plans"])


class PlanResponse(BaseModel):
    plan: str
    name: str
    description: str
    monthly_price: int
    yearly_price: int
    max_projects: int
    max_deployments: int
    max_deployments_per_month: int
    max_github_accounts: int
    custom_domain_enabled: bool
    priority_support: bool
    analytics_enabled: bool
    stripe_price_id_monthly: Optional[str] = None
    stripe_price_id_yearly: Optional[str] = None

    @classmethod
    def from_config(cls, config: PlanConfig) -> "PlanResponse":
        return cls(**config.model_dump(mode="json"))


@router.get("", response_model=List[PlanResponse])
def list_plans(services: Services = Depends(get_services)):
    return [PlanResponse.from_config(c) for c in services.catalog.all()]
