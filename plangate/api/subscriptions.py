"""
Subscription API routes.

- GET  /api/subscriptions: current subscription with deployment pool
- GET  /api/subscriptions/plans: available plans
- GET  /api/subscriptions/usage: quota usage summary
- POST /api/subscriptions/checkout: create checkout session
- POST /api/subscriptions/portal: create billing portal session
- PUT  /api/subscriptions: change plan / schedule cancellation
- POST /api/subscriptions/cancel: cancel subscription
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from plangate.api.deps import get_services
from plangate.api.plans import PlanResponse
from plangate.core.auth import get_current_user_id
from plangate.features.plans.catalog import BillingInterval, PlanId
from plangate.features.subscriptions.service import lifecycle_state
from plangate.features.wiring import Services
from plangate.models.subscription import Subscription


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class CheckoutRequest(BaseModel):
    plan: PlanId
    billing_interval: BillingInterval = BillingInterval.MONTHLY
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


class UpdateSubscriptionRequest(BaseModel):
    plan: Optional[PlanId] = None
    billing_interval: Optional[BillingInterval] = None
    cancel_at_period_end: Optional[bool] = None


class CancelRequest(BaseModel):
    immediate: bool = False


class SessionResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


class DeploymentPoolResponse(BaseModel):
    total: int
    allocated: int
    available: int


class SubscriptionResponse(BaseModel):
    account_id: str
    plan: str
    status: str
    state: str
    billing_interval: Optional[str] = None
    amount: float
    currency: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    cancel_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    max_projects: int
    max_deployments: int
    max_deployments_per_month: int
    max_github_accounts: int
    custom_domain_enabled: bool
    priority_support: bool
    analytics_enabled: bool
    deployments_this_month: int
    total_deployments_used: int
    deployment_pool: Optional[DeploymentPoolResponse] = None

    @classmethod
    def from_subscription(cls, sub: Subscription, pool=None) -> "SubscriptionResponse":
        values = {k: v for k, v in sub.to_values().items() if k in cls.model_fields}
        return cls(
            **values,
            state=lifecycle_state(sub).value,
            deployment_pool=DeploymentPoolResponse(**vars(pool)) if pool else None,
        )


@router.get("", response_model=SubscriptionResponse)
def get_subscription(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    info = services.subscriptions.get_subscription_with_pool_info(user_id)
    return SubscriptionResponse.from_subscription(info["subscription"], info["deployment_pool"])


@router.get("/plans", response_model=List[PlanResponse])
def get_plans(services: Services = Depends(get_services)):
    return [PlanResponse.from_config(c) for c in services.subscriptions.get_available_plans()]


@router.get("/usage")
def get_usage(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return services.quota.get_usage_summary(user_id)


@router.post("/checkout", response_model=SessionResponse)
def create_checkout(
    request: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    session = services.subscriptions.create_checkout_session(
        user_id,
        request.plan,
        request.billing_interval,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )
    return {"session_id": session.id, "url": session.url}


@router.post("/portal", response_model=SessionResponse)
def create_portal(
    request: PortalRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    session = services.subscriptions.create_portal_session(user_id, request.return_url)
    return {"session_id": session.id, "url": session.url}


@router.put("", response_model=SubscriptionResponse)
def update_subscription(
    request: UpdateSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    sub = services.subscriptions.update_subscription(
        user_id,
        plan=request.plan,
        interval=request.billing_interval,
        cancel_at_period_end=request.cancel_at_period_end,
    )
    return SubscriptionResponse.from_subscription(sub)


@router.post("/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    request: Optional[CancelRequest] = None,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    immediate = request.immediate if request else False
    sub = services.subscriptions.cancel_subscription(user_id, immediate=immediate)
    return SubscriptionResponse.from_subscription(sub)
