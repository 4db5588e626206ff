"""
Subscription state machine.

Owns the local subscription record per account and moves it between states
from two directions:
- provider-reported facts (webhook reconciliation handlers below)
- explicit user actions (checkout, plan change, cancel)

Reconciliation handlers overwrite provider-sourced fields rather than
applying deltas, so replaying an event converges to the same record.
Events pointing at records we don't have are orphans: logged and dropped.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from plangate.core.errors import BillingDisabledError, ValidationError
from plangate.core.logging import log_event
from plangate.features.accounts.directory import AccountDirectory
from plangate.features.billing.provider import (
    PaymentProvider,
    ProviderError,
    ProviderSubscription,
    SessionRef,
    SubscriptionStatus,
    map_status,
)
from plangate.features.plans.catalog import (
    BillingInterval,
    PlanCatalog,
    PlanConfig,
    PlanId,
    UNLIMITED,
)
from plangate.features.projects.counter import AllocatedDeploymentsLookup, no_allocations
from plangate.features.quota.downgrade import DowngradeValidator
from plangate.features.subscriptions.repository import SubscriptionRepository
from plangate.models.subscription import Subscription

_DELINQUENT = {
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.UNPAID.value,
    SubscriptionStatus.INCOMPLETE.value,
    SubscriptionStatus.INCOMPLETE_EXPIRED.value,
    SubscriptionStatus.PAUSED.value,
    SubscriptionStatus.CANCELED.value,
}

_ENDED = {SubscriptionStatus.CANCELED.value, SubscriptionStatus.INCOMPLETE_EXPIRED.value}


class LifecycleState(str, Enum):
    FREE_ACTIVE = "FREE_ACTIVE"
    PAID_ACTIVE = "PAID_ACTIVE"
    TRIALING = "TRIALING"
    PAST_DUE = "PAST_DUE"
    CANCEL_SCHEDULED = "CANCEL_SCHEDULED"
    CANCELED_TO_FREE = "CANCELED_TO_FREE"


def lifecycle_state(subscription: Subscription) -> LifecycleState:
    """Derive the state-machine state from a record."""
    if subscription.plan == PlanId.FREE.value:
        if subscription.canceled_at is not None:
            return LifecycleState.CANCELED_TO_FREE
        return LifecycleState.FREE_ACTIVE
    if subscription.status in _DELINQUENT:
        return LifecycleState.PAST_DUE
    if subscription.cancel_at_period_end:
        return LifecycleState.CANCEL_SCHEDULED
    if subscription.status == SubscriptionStatus.TRIALING.value:
        return LifecycleState.TRIALING
    return LifecycleState.PAID_ACTIVE


def _monthly_cap(config: PlanConfig) -> float:
    cap = config.max_deployments_per_month
    return float("inf") if cap == UNLIMITED else cap


@dataclass(frozen=True)
class DeploymentPool:
    total: int
    allocated: int
    available: int


class SubscriptionService:
    def __init__(
        self,
        repository: SubscriptionRepository,
        catalog: PlanCatalog,
        downgrade_validator: DowngradeValidator,
        provider: Optional[PaymentProvider] = None,
        directory: Optional[AccountDirectory] = None,
        allocated_deployments: AllocatedDeploymentsLookup = no_allocations,
        api_base_url: str = "",
    ):
        self.repository = repository
        self.catalog = catalog
        self.downgrade_validator = downgrade_validator
        self.provider = provider
        self.directory = directory
        self.allocated_deployments = allocated_deployments
        self.api_base_url = api_base_url.rstrip("/")

    # ------------------------------------------------------------------
    # Record access
    # ------------------------------------------------------------------

    def get_or_create_subscription(self, account_id: str) -> Subscription:
        """Return the account's record, creating a free-plan row on first access.

        The provider customer is registered before the account lock is taken.
        """
        existing = self.repository.get(account_id)
        if existing is not None:
            return existing

        customer_id = self._register_customer(account_id)
        try:
            with self.repository.lock(account_id) as session:
                return self.load_locked(session, account_id, customer_id=customer_id)
        except IntegrityError:
            # Another process inserted the row first
            existing = self.repository.get(account_id)
            if existing is None:
                raise
            return existing

    def get_subscription(self, account_id: str) -> Subscription:
        return self.get_or_create_subscription(account_id)

    def load_locked(self, session: Session, account_id: str, customer_id: Optional[str] = None) -> Subscription:
        """Read (or lazily create) the record inside an already-held account lock."""
        subscription = self.repository.find_by_account(session, account_id, for_update=True)
        if subscription is not None:
            if customer_id and not subscription.stripe_customer_id:
                subscription.stripe_customer_id = customer_id
                subscription = self.repository.save(session, subscription)
            return subscription

        free = self.catalog.free()
        subscription = Subscription(
            account_id=account_id,
            stripe_customer_id=customer_id,
            plan=free.plan.value,
            status=SubscriptionStatus.ACTIVE.value,
            amount=0,
            deployment_count_reset_at=datetime.now(timezone.utc),
        )
        subscription.apply_entitlements(free.entitlements())
        created = self.repository.insert(session, subscription)
        log_event("info", "[subscription] created free subscription", account_id=account_id)
        return created

    def _register_customer(self, account_id: str) -> Optional[str]:
        """Create the provider customer for a new record.

        On provider failure the record is created without a customer and
        checkout registers one later.
        """
        if self.provider is None:
            return None
        contact = self.directory.get_contact(account_id) if self.directory else None
        try:
            customer = self.provider.create_or_get_customer(
                account_id,
                contact.email if contact else None,
                contact.name if contact else None,
            )
        except ProviderError as e:
            log_event(
                "warning",
                "[subscription] provider customer creation failed",
                account_id=account_id,
                error_code=e.code,
                extra={"error": e.message},
            )
            return None
        return customer.id

    def _ensure_customer(self, account_id: str, subscription: Subscription) -> str:
        if subscription.stripe_customer_id:
            return subscription.stripe_customer_id
        if self.provider is None:
            raise ValidationError("No Stripe customer found for this user", code="no_customer")

        contact = self.directory.get_contact(account_id) if self.directory else None
        customer = self.provider.create_or_get_customer(
            account_id,
            contact.email if contact else None,
            contact.name if contact else None,
        )
        with self.repository.lock(account_id) as session:
            current = self.load_locked(session, account_id)
            if not current.stripe_customer_id:
                current.stripe_customer_id = customer.id
                self.repository.save(session, current)
            return current.stripe_customer_id

    def _require_provider(self) -> PaymentProvider:
        if self.provider is None:
            raise BillingDisabledError("Billing is not configured. Set STRIPE_SECRET_KEY.")
        return self.provider

    def get_subscription_with_pool_info(self, account_id: str) -> Dict[str, Any]:
        subscription = self.get_subscription(account_id)
        allocated = self.allocated_deployments(account_id)
        total = subscription.max_deployments_per_month
        available = UNLIMITED if total == UNLIMITED else max(0, total - allocated)
        return {
            "subscription": subscription,
            "deployment_pool": DeploymentPool(total=total, allocated=allocated, available=available),
        }

    def get_available_plans(self) -> List[PlanConfig]:
        return self.catalog.all()

    def has_active_subscription(self, account_id: str) -> bool:
        return self.get_subscription(account_id).status == SubscriptionStatus.ACTIVE.value

    # ------------------------------------------------------------------
    # Explicit user actions
    # ------------------------------------------------------------------

    def create_checkout_session(
        self,
        account_id: str,
        plan: PlanId,
        interval: BillingInterval,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> SessionRef:
        provider = self._require_provider()
        subscription = self.get_or_create_subscription(account_id)

        config = self.catalog.require(plan)
        if config.is_free:
            raise ValidationError("Cannot create checkout for free plan", code="free_plan_checkout")

        if subscription.plan == config.plan.value and subscription.status == SubscriptionStatus.ACTIVE.value:
            raise ValidationError("You are already subscribed to this plan", code="already_subscribed")

        customer_id = self._ensure_customer(account_id, subscription)

        session = provider.create_checkout_session(
            customer_id,
            config.plan,
            BillingInterval(interval),
            success_url or f"{self.api_base_url}/dashboard/billing?success=true",
            cancel_url or f"{self.api_base_url}/dashboard/billing?canceled=true",
        )
        if not session.url:
            raise ValidationError("Failed to create checkout session", code="checkout_failed")
        return session

    def create_portal_session(self, account_id: str, return_url: Optional[str] = None) -> SessionRef:
        provider = self._require_provider()
        subscription = self.get_subscription(account_id)
        if not subscription.stripe_customer_id:
            raise ValidationError("No Stripe customer found for this user", code="no_customer")
        return provider.create_portal_session(
            subscription.stripe_customer_id,
            return_url or f"{self.api_base_url}/dashboard/billing",
        )

    def update_subscription(
        self,
        account_id: str,
        plan: Optional[PlanId] = None,
        interval: Optional[BillingInterval] = None,
        cancel_at_period_end: Optional[bool] = None,
    ) -> Subscription:
        """Schedule/unschedule cancellation and/or change plan.

        Remote calls happen before the account lock is taken; the provider's
        answer is then merged under the lock.
        """
        provider = self._require_provider()
        subscription = self.get_subscription(account_id)
        if not subscription.stripe_subscription_id:
            raise ValidationError("No active subscription to update", code="no_subscription")
        sub_id = subscription.stripe_subscription_id

        if cancel_at_period_end is not None:
            if cancel_at_period_end:
                self.downgrade_validator.validate(account_id, PlanId.FREE)
                confirmed = provider.cancel_subscription(sub_id, immediate=False)
            else:
                confirmed = provider.reactivate_subscription(sub_id)
            subscription = self._merge_cancellation(account_id, sub_id, confirmed, cancel_at_period_end)

        if plan is not None:
            new_config = self.catalog.require(plan)
            new_interval = BillingInterval(interval or subscription.billing_interval or BillingInterval.MONTHLY)
            current_config = self.catalog.get(subscription.plan)

            if (
                new_config.plan.value == subscription.plan
                and new_interval.value == subscription.billing_interval
            ):
                raise ValidationError("You are already subscribed to this plan", code="already_subscribed")

            if current_config and _monthly_cap(new_config) < _monthly_cap(current_config):
                self.downgrade_validator.validate(account_id, new_config.plan)

            if new_config.is_free:
                # Entitlements shrink only when the paid period really ends
                confirmed = provider.cancel_subscription(sub_id, immediate=False)
                subscription = self._merge_cancellation(account_id, sub_id, confirmed, True)
            else:
                confirmed = provider.update_subscription(sub_id, new_config.plan, new_interval)
                subscription = self._merge_plan_change(account_id, sub_id, confirmed, new_config, new_interval)

        return subscription

    def cancel_subscription(self, account_id: str, immediate: bool = False) -> Subscription:
        provider = self._require_provider()
        subscription = self.get_subscription(account_id)
        if not subscription.stripe_subscription_id:
            raise ValidationError("No active subscription to cancel", code="no_subscription")
        sub_id = subscription.stripe_subscription_id

        self.downgrade_validator.validate(account_id, PlanId.FREE)
        confirmed = provider.cancel_subscription(sub_id, immediate=immediate)

        if immediate:
            with self.repository.lock(account_id) as session:
                current = self.load_locked(session, account_id)
                if current.stripe_subscription_id == sub_id:
                    self._revert_to_free(current)
                    self.repository.save(session, current)
                return current
        return self._merge_cancellation(account_id, sub_id, confirmed, True)

    def _merge_cancellation(
        self,
        account_id: str,
        sub_id: str,
        confirmed: ProviderSubscription,
        cancel_at_period_end: bool,
    ) -> Subscription:
        with self.repository.lock(account_id) as session:
            current = self.load_locked(session, account_id)
            if current.stripe_subscription_id != sub_id:
                return current
            current.cancel_at_period_end = cancel_at_period_end
            if cancel_at_period_end:
                current.cancel_at = confirmed.cancel_at or confirmed.current_period_end
            else:
                current.cancel_at = None
                current.canceled_at = None
            return self.repository.save(session, current)

    def _merge_plan_change(
        self,
        account_id: str,
        sub_id: str,
        confirmed: ProviderSubscription,
        config: PlanConfig,
        interval: BillingInterval,
    ) -> Subscription:
        with self.repository.lock(account_id) as session:
            current = self.load_locked(session, account_id)
            if current.stripe_subscription_id != sub_id:
                return current
            self._apply_confirmed_plan(current, confirmed, config, interval)
            saved = self.repository.save(session, current)
        log_event(
            "info",
            "[subscription] plan changed",
            account_id=account_id,
            extra={"plan": config.plan.value, "interval": interval.value},
        )
        return saved

    # ------------------------------------------------------------------
    # Webhook reconciliation
    # ------------------------------------------------------------------

    def handle_checkout_completed(self, customer_id: Optional[str], subscription_id: Optional[str]) -> Optional[Subscription]:
        if not customer_id or not subscription_id:
            self._orphan("checkout.session.completed", customer_id=customer_id, subscription_id=subscription_id)
            return None

        account_id = self.repository.account_for_customer(customer_id)
        if account_id is None:
            self._orphan("checkout.session.completed", customer_id=customer_id)
            return None

        provider_sub = self._require_provider().get_subscription(subscription_id)
        if map_status(provider_sub.status).value in _ENDED:
            # Late delivery for a subscription that is already over; nothing to grant
            log_event(
                "info",
                "[subscription] checkout completed for an ended subscription, ignored",
                account_id=account_id,
                event_type="checkout.session.completed",
                extra={"subscription_id": subscription_id, "status": provider_sub.status},
            )
            return self.repository.get(account_id)
        config, interval = self._resolve_plan(provider_sub)

        with self.repository.lock(account_id) as session:
            subscription = self.repository.find_by_account(session, account_id, for_update=True)
            if subscription is None or subscription.stripe_customer_id != customer_id:
                self._orphan("checkout.session.completed", customer_id=customer_id)
                return None
            self._apply_confirmed_plan(subscription, provider_sub, config, interval)
            saved = self.repository.save(session, subscription)

        log_event(
            "info",
            "[subscription] checkout completed",
            account_id=account_id,
            event_type="checkout.session.completed",
            extra={"plan": config.plan.value, "status": saved.status},
        )
        return saved

    def handle_subscription_updated(self, provider_sub: Optional[ProviderSubscription]) -> Optional[Subscription]:
        """Merge status, period and cancellation fields; plan is left alone."""
        if provider_sub is None:
            self._orphan("customer.subscription.updated")
            return None

        account_id = self.repository.account_for_subscription(provider_sub.id)
        if account_id is None:
            self._orphan("customer.subscription.updated", subscription_id=provider_sub.id)
            return None

        with self.repository.lock(account_id) as session:
            subscription = self.repository.find_by_account(session, account_id, for_update=True)
            if subscription is None or subscription.stripe_subscription_id != provider_sub.id:
                self._orphan("customer.subscription.updated", subscription_id=provider_sub.id)
                return None

            subscription.status = map_status(provider_sub.status).value
            if provider_sub.current_period_start:
                subscription.current_period_start = provider_sub.current_period_start
            if provider_sub.current_period_end:
                subscription.current_period_end = provider_sub.current_period_end
            subscription.cancel_at_period_end = provider_sub.cancel_at_period_end
            subscription.cancel_at = provider_sub.cancel_at
            subscription.canceled_at = provider_sub.canceled_at
            saved = self.repository.save(session, subscription)

        log_event(
            "info",
            "[subscription] updated from provider",
            account_id=account_id,
            event_type="customer.subscription.updated",
            extra={"subscription_id": provider_sub.id, "status": saved.status},
        )
        return saved

    def handle_subscription_deleted(self, subscription_id: Optional[str]) -> Optional[Subscription]:
        if not subscription_id:
            self._orphan("customer.subscription.deleted")
            return None

        account_id = self.repository.account_for_subscription(subscription_id)
        if account_id is None:
            self._orphan("customer.subscription.deleted", subscription_id=subscription_id)
            return None

        with self.repository.lock(account_id) as session:
            subscription = self.repository.find_by_account(session, account_id, for_update=True)
            if subscription is None or subscription.stripe_subscription_id != subscription_id:
                self._orphan("customer.subscription.deleted", subscription_id=subscription_id)
                return None
            self._revert_to_free(subscription)
            saved = self.repository.save(session, subscription)

        log_event(
            "info",
            "[subscription] deleted, downgraded to free plan",
            account_id=account_id,
            event_type="customer.subscription.deleted",
            extra={"subscription_id": subscription_id},
        )
        return saved

    def handle_payment_failed(self, customer_id: Optional[str]) -> Optional[Subscription]:
        """Mark the record past due. Entitlements stay; grace policy is the caller's."""
        if not customer_id:
            self._orphan("invoice.payment_failed")
            return None

        account_id = self.repository.account_for_customer(customer_id)
        if account_id is None:
            self._orphan("invoice.payment_failed", customer_id=customer_id)
            return None

        with self.repository.lock(account_id) as session:
            subscription = self.repository.find_by_account(session, account_id, for_update=True)
            if subscription is None or subscription.stripe_customer_id != customer_id:
                self._orphan("invoice.payment_failed", customer_id=customer_id)
                return None
            subscription.status = SubscriptionStatus.PAST_DUE.value
            saved = self.repository.save(session, subscription)

        log_event(
            "warning",
            "[subscription] payment failed",
            account_id=account_id,
            event_type="invoice.payment_failed",
            extra={"customer_id": customer_id},
        )
        return saved

    def handle_payment_succeeded(self, customer_id: Optional[str], invoice_id: Optional[str]) -> None:
        log_event(
            "info",
            "[subscription] payment succeeded",
            event_type="invoice.payment_succeeded",
            extra={"customer_id": customer_id, "invoice_id": invoice_id},
        )

    # ------------------------------------------------------------------
    # Record transitions
    # ------------------------------------------------------------------

    def _resolve_plan(self, provider_sub: ProviderSubscription):
        """Plan and interval from subscription metadata, then price id, then defaults."""
        config = self.catalog.get(provider_sub.metadata.get("plan"))
        interval = None
        raw_interval = provider_sub.metadata.get("billing_interval")
        if raw_interval in {i.value for i in BillingInterval}:
            interval = BillingInterval(raw_interval)

        if config is None or config.is_free:
            resolved = self.catalog.resolve_price(provider_sub.price_id)
            if resolved:
                config = self.catalog.get(resolved[0])
                interval = interval or resolved[1]
            else:
                config = self.catalog.lowest_paid()
        return config, interval or BillingInterval.MONTHLY

    def _apply_confirmed_plan(
        self,
        subscription: Subscription,
        provider_sub: ProviderSubscription,
        config: PlanConfig,
        interval: BillingInterval,
    ) -> None:
        subscription.stripe_subscription_id = provider_sub.id
        subscription.stripe_price_id = provider_sub.price_id
        subscription.plan = config.plan.value
        subscription.billing_interval = interval.value
        subscription.status = map_status(provider_sub.status).value
        subscription.amount = config.price_for(interval)
        if provider_sub.current_period_start:
            subscription.current_period_start = provider_sub.current_period_start
        if provider_sub.current_period_end:
            subscription.current_period_end = provider_sub.current_period_end
        if provider_sub.trial_start:
            subscription.trial_start = provider_sub.trial_start
        if provider_sub.trial_end:
            subscription.trial_end = provider_sub.trial_end
        subscription.apply_entitlements(config.entitlements())

    def _revert_to_free(self, subscription: Subscription) -> None:
        free = self.catalog.free()
        subscription.stripe_subscription_id = None
        subscription.stripe_price_id = None
        subscription.plan = free.plan.value
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.billing_interval = None
        subscription.amount = 0
        subscription.current_period_start = None
        subscription.current_period_end = None
        subscription.cancel_at = None
        subscription.cancel_at_period_end = False
        subscription.canceled_at = datetime.now(timezone.utc)
        subscription.apply_entitlements(free.entitlements())

    def _orphan(self, event_type: str, **ids) -> None:
        log_event(
            "warning",
            "[subscription] no matching local record, event dropped",
            event_type=event_type,
            extra={k: v for k, v in ids.items() if v},
        )
