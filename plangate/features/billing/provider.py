"""
Payment provider protocol.

Defines the interface for payment providers (Stripe, etc.) and the plain
result types the rest of the service works with, so business logic never
touches SDK objects and providers can be swapped without changing it.
"""
from typing import Protocol, Dict, Any, Optional, TYPE_CHECKING
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from plangate.features.plans.catalog import PlanId, BillingInterval

if TYPE_CHECKING:
    from plangate.features.billing.events import BillingEvent


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    UNPAID = "unpaid"
    PAUSED = "paused"


PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "trialing": SubscriptionStatus.TRIALING,
    "unpaid": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.PAUSED,
}


def map_status(provider_status: Optional[str]) -> SubscriptionStatus:
    """Map a provider subscription status to ours; unknown values are INCOMPLETE."""
    return PROVIDER_STATUS_MAP.get(provider_status or "", SubscriptionStatus.INCOMPLETE)


@dataclass(frozen=True)
class CustomerRef:
    id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class SessionRef:
    id: str
    url: Optional[str]


@dataclass(frozen=True)
class ProviderSubscription:
    """Provider-reported facts about one subscription."""
    id: str
    customer_id: Optional[str]
    status: str
    price_id: Optional[str] = None
    item_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancel_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must not retry: every remote failure (including network
    timeouts) is raised as ProviderError and retry policy is left to callers.
    """

    def create_or_get_customer(self, account_id: str, email: Optional[str], name: Optional[str] = None) -> CustomerRef:
        """Look up a customer by email, creating one if none exists."""
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        plan: PlanId,
        interval: BillingInterval,
        success_url: str,
        cancel_url: str,
    ) -> SessionRef:
        """
        Create a subscription checkout session.

        Raises:
            ValidationError: plan is free or has no price for the interval
            ProviderError: remote call failed
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> SessionRef:
        ...

    def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    def cancel_subscription(self, subscription_id: str, immediate: bool = False) -> ProviderSubscription:
        ...

    def reactivate_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    def update_subscription(self, subscription_id: str, plan: PlanId, interval: BillingInterval) -> ProviderSubscription:
        """Replace the subscription's line item with the new plan price (prorated)."""
        ...

    def verify_and_parse_event(self, payload: bytes, signature: str) -> "BillingEvent":
        """
        Verify a webhook signature and parse the event.

        Raises:
            SignatureError: signature invalid or payload malformed
        """
        ...


class ProviderError(Exception):
    """A payment provider call failed."""

    def __init__(self, message: str, *, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code


class SignatureError(ProviderError):
    """Webhook signature verification failed."""
    pass
