"""
Stripe payment provider implementation.

Implements the PaymentProvider protocol using the Stripe API.
Handles webhook signature verification and event parsing.
"""
import json
import logging
from typing import Any, Dict, Optional

import stripe

from plangate.core.config import settings
from plangate.core.errors import ValidationError
from plangate.features.billing.events import (
    BillingEvent,
    field_of,
    parse_event,
    subscription_from_stripe,
)
from plangate.features.billing.provider import (
    CustomerRef,
    ProviderError,
    ProviderSubscription,
    SessionRef,
    SignatureError,
)
from plangate.features.plans.catalog import BillingInterval, PlanCatalog, PlanId


logger = logging.getLogger(__name__)


def _provider_error(action: str, exc: "stripe.StripeError") -> ProviderError:
    return ProviderError(
        f"Stripe {action} failed: {getattr(exc, 'user_message', None) or exc}",
        status=getattr(exc, "http_status", None),
        code=getattr(exc, "code", None) or type(exc).__name__,
    )


class StripeProvider:
    """Stripe implementation of the PaymentProvider protocol."""

    def __init__(
        self,
        catalog: PlanCatalog,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            catalog: Plan catalog used to resolve price ids
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
        """
        self.catalog = catalog
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise ProviderError("STRIPE_SECRET_KEY not configured", code="not_configured")

        stripe.api_key = self.secret_key
        # Retries belong to callers; network timeouts surface as APIConnectionError
        stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
        if settings.STRIPE_API_VERSION:
            stripe.api_version = settings.STRIPE_API_VERSION

    def _price_for(self, plan: PlanId, interval: BillingInterval) -> str:
        config = self.catalog.require(plan)
        if config.is_free:
            raise ValidationError("Cannot create checkout for free plan", code="free_plan_checkout")
        price_id = config.price_id_for(interval)
        if not price_id:
            raise ValidationError(
                f"No Stripe price configured for {config.plan.value} {BillingInterval(interval).value} plan",
                code="price_not_configured",
            )
        return price_id

    def create_or_get_customer(self, account_id: str, email: Optional[str], name: Optional[str] = None) -> CustomerRef:
        """Return the customer registered under this email, creating it if needed."""
        try:
            if email:
                existing = stripe.Customer.list(email=email, limit=1)
                data = field_of(existing, "data", [])
                if data:
                    return CustomerRef(id=field_of(data[0], "id"), email=email)

            customer_data: Dict[str, Any] = {"metadata": {"user_id": account_id}}
            if email:
                customer_data["email"] = email
            if name:
                customer_data["name"] = name

            customer = stripe.Customer.create(**customer_data)
        except stripe.StripeError as e:
            raise _provider_error("customer creation", e) from e

        logger.info("Created Stripe customer %s for account %s", field_of(customer, "id"), account_id)
        return CustomerRef(id=field_of(customer, "id"), email=email)

    def create_checkout_session(
        self,
        customer_id: str,
        plan: PlanId,
        interval: BillingInterval,
        success_url: str,
        cancel_url: str,
    ) -> SessionRef:
        """Create Stripe checkout session in subscription mode."""
        price_id = self._price_for(plan, interval)
        metadata = {"plan": PlanId(plan).value, "billing_interval": BillingInterval(interval).value}
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                subscription_data={"metadata": metadata},
                metadata=metadata,
            )
        except stripe.StripeError as e:
            raise _provider_error("checkout session creation", e) from e

        logger.info("Created checkout session %s for customer %s", field_of(session, "id"), customer_id)
        return SessionRef(id=field_of(session, "id"), url=field_of(session, "url"))

    def create_portal_session(self, customer_id: str, return_url: str) -> SessionRef:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            raise _provider_error("portal session creation", e) from e
        return SessionRef(id=field_of(session, "id"), url=field_of(session, "url"))

    def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            obj = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise _provider_error("subscription retrieval", e) from e
        return self._normalize(obj)

    def cancel_subscription(self, subscription_id: str, immediate: bool = False) -> ProviderSubscription:
        """Cancel now, or schedule cancellation at the end of the paid period."""
        try:
            if immediate:
                obj = stripe.Subscription.cancel(subscription_id)
            else:
                obj = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as e:
            raise _provider_error("subscription cancellation", e) from e
        return self._normalize(obj)

    def reactivate_subscription(self, subscription_id: str) -> ProviderSubscription:
        """Undo a scheduled cancellation."""
        try:
            obj = stripe.Subscription.modify(subscription_id, cancel_at_period_end=False)
        except stripe.StripeError as e:
            raise _provider_error("subscription reactivation", e) from e
        return self._normalize(obj)

    def update_subscription(self, subscription_id: str, plan: PlanId, interval: BillingInterval) -> ProviderSubscription:
        """Swap the subscription's line item to the new plan price, prorating."""
        price_id = self._price_for(plan, interval)
        current = self.get_subscription(subscription_id)
        if not current.item_id:
            raise ProviderError(f"Subscription {subscription_id} has no line items", code="no_line_items")

        try:
            obj = stripe.Subscription.modify(
                subscription_id,
                items=[{"id": current.item_id, "price": price_id}],
                proration_behavior="create_prorations",
                metadata={"plan": PlanId(plan).value, "billing_interval": BillingInterval(interval).value},
            )
        except stripe.StripeError as e:
            raise _provider_error("subscription update", e) from e
        return self._normalize(obj)

    def verify_and_parse_event(self, payload: bytes, signature: str) -> BillingEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise SignatureError("STRIPE_WEBHOOK_SECRET not configured", code="not_configured")
        if not signature:
            raise SignatureError("Missing stripe-signature header", code="missing_signature")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            raise SignatureError(f"Invalid payload: {e}", code="invalid_payload") from e
        except stripe.SignatureVerificationError as e:
            raise SignatureError(f"Invalid signature: {e}", code="invalid_signature") from e

        # Parse the verified raw body ourselves so handlers only ever see plain data
        body = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        return parse_event(json.loads(body))

    def _normalize(self, obj: Any) -> ProviderSubscription:
        subscription = subscription_from_stripe(obj)
        if subscription is None:
            raise ProviderError("Stripe returned a subscription without an id", code="malformed_response")
        return subscription
