"""
Service construction.

Everything is built once at startup and handed to the app; collaborators are
passed in here and never swapped on a live service.
"""
from dataclasses import dataclass
from typing import Optional

from plangate.core.locks import KeyedLock
from plangate.core.logging import log_event
from plangate.features.accounts.directory import AccountDirectory, TableAccountDirectory
from plangate.features.billing.provider import PaymentProvider, ProviderError
from plangate.features.billing.stripe_provider import StripeProvider
from plangate.features.billing.webhooks import WebhookDispatcher
from plangate.features.plans.catalog import PlanCatalog, build_catalog
from plangate.features.projects.counter import (
    AllocatedDeploymentsLookup,
    ProjectCounter,
    TableProjectCounter,
    no_allocations,
)
from plangate.features.quota.downgrade import DowngradeValidator
from plangate.features.quota.service import QuotaService
from plangate.features.subscriptions.repository import SubscriptionRepository
from plangate.features.subscriptions.service import SubscriptionService


@dataclass
class Services:
    catalog: PlanCatalog
    provider: Optional[PaymentProvider]
    subscriptions: SubscriptionService
    quota: QuotaService
    webhooks: WebhookDispatcher


def default_provider(catalog: PlanCatalog, settings_obj) -> Optional[PaymentProvider]:
    """Stripe when a secret key is configured, otherwise billing is disabled."""
    if not settings_obj.STRIPE_SECRET_KEY:
        log_event("warning", "[billing] STRIPE_SECRET_KEY not set, billing disabled")
        return None
    try:
        return StripeProvider(
            catalog,
            secret_key=settings_obj.STRIPE_SECRET_KEY,
            webhook_secret=settings_obj.STRIPE_WEBHOOK_SECRET,
        )
    except ProviderError as e:
        log_event("warning", "[billing] provider unavailable, billing disabled", error_code=e.code)
        return None


_UNSET = object()


def build_services(
    settings_obj=None,
    *,
    catalog: Optional[PlanCatalog] = None,
    provider=_UNSET,
    project_counter: Optional[ProjectCounter] = None,
    directory: Optional[AccountDirectory] = None,
    allocated_deployments: AllocatedDeploymentsLookup = no_allocations,
    locks: Optional[KeyedLock] = None,
) -> Services:
    if settings_obj is None:
        from plangate.core.config import settings as settings_obj

    catalog = catalog or build_catalog(settings_obj)
    if provider is _UNSET:
        provider = default_provider(catalog, settings_obj)
    project_counter = project_counter or TableProjectCounter()
    directory = directory or TableAccountDirectory()

    repository = SubscriptionRepository(locks)
    validator = DowngradeValidator(catalog, project_counter, allocated_deployments)
    subscriptions = SubscriptionService(
        repository,
        catalog,
        validator,
        provider=provider,
        directory=directory,
        allocated_deployments=allocated_deployments,
        api_base_url=settings_obj.API_BASE_URL,
    )
    quota = QuotaService(subscriptions, project_counter, validator)
    webhooks = WebhookDispatcher(provider, subscriptions)
    return Services(
        catalog=catalog,
        provider=provider,
        subscriptions=subscriptions,
        quota=quota,
        webhooks=webhooks,
    )
