"""
Subscription state machine: webhook-driven transitions.

Each handler overwrites provider-sourced fields, so replaying an event
converges to the same record.
"""
from datetime import datetime, timezone

import pytest

from plangate.features.billing.provider import ProviderError
from plangate.features.plans.catalog import BillingInterval, PlanId
from plangate.features.subscriptions.service import LifecycleState, lifecycle_state
from plangate.tests.mocks import PERIOD_END


def comparable(sub):
    values = sub.to_values()
    values.pop("canceled_at", None)
    return values


# --- creation -------------------------------------------------------------


def test_first_access_creates_free_record_with_customer(services, provider):
    sub = services.subscriptions.get_or_create_subscription("acct_1")

    assert sub.plan == "free"
    assert sub.status == "active"
    assert sub.stripe_customer_id == "cus_acct_1"
    assert (sub.max_projects, sub.max_deployments, sub.max_deployments_per_month) == (1, 50, 10)
    assert sub.deployments_this_month == 0
    assert sub.total_deployments_used == 0
    assert sub.deployment_count_reset_at is not None
    assert lifecycle_state(sub) == LifecycleState.FREE_ACTIVE
    assert provider.calls_to("create_or_get_customer") == [
        ("create_or_get_customer", "acct_1", "acct_1@example.com", "Acct_1")
    ]


def test_second_access_reuses_record(services, provider):
    first = services.subscriptions.get_or_create_subscription("acct_1")
    second = services.subscriptions.get_or_create_subscription("acct_1")
    assert first.id == second.id
    assert len(provider.calls_to("create_or_get_customer")) == 1


def test_provider_outage_does_not_block_record_creation(services, provider):
    provider.fail_with = ProviderError("Request timed out", code="APIConnectionError")

    sub = services.subscriptions.get_or_create_subscription("acct_1")

    assert sub.plan == "free"
    assert sub.stripe_customer_id is None


def test_billing_disabled_creates_record_without_customer(billing_disabled_services):
    sub = billing_disabled_services.subscriptions.get_or_create_subscription("acct_1")
    assert sub.stripe_customer_id is None
    assert sub.plan == "free"


# --- checkout.session.completed -------------------------------------------


def test_checkout_completed_applies_paid_plan(services, make_paid):
    sub = make_paid("acct_1", plan="pro", interval="yearly")

    assert sub.plan == "pro"
    assert sub.billing_interval == "yearly"
    assert sub.status == "active"
    assert sub.amount == 490
    assert sub.stripe_subscription_id == "sub_acct_1"
    assert sub.stripe_price_id == "price_pro_yearly"
    assert sub.current_period_end == PERIOD_END
    assert (sub.max_projects, sub.max_deployments, sub.max_deployments_per_month) == (50, 10000, 2000)
    assert sub.priority_support is True
    assert lifecycle_state(sub) == LifecycleState.PAID_ACTIVE

    stored = services.subscriptions.get_subscription("acct_1")
    assert stored.plan == "pro"
    assert stored.current_period_end == PERIOD_END


def test_checkout_completed_trialing(make_paid):
    trial_end = datetime(2026, 10, 15, tzinfo=timezone.utc)
    sub = make_paid("acct_1", status="trialing", trial_end=trial_end)
    assert sub.status == "trialing"
    assert sub.trial_end == trial_end
    assert lifecycle_state(sub) == LifecycleState.TRIALING


def test_checkout_completed_resolves_plan_from_price_when_metadata_missing(services, provider):
    sub = services.subscriptions.get_or_create_subscription("acct_1")
    provider.add_subscription(
        "sub_1", sub.stripe_customer_id, plan=PlanId.ENTERPRISE, interval=BillingInterval.YEARLY, metadata={}
    )

    result = services.subscriptions.handle_checkout_completed(sub.stripe_customer_id, "sub_1")

    assert result.plan == "enterprise"
    assert result.billing_interval == "yearly"
    assert result.max_projects == -1


def test_checkout_completed_unknown_price_defaults_to_lowest_paid(services, provider):
    sub = services.subscriptions.get_or_create_subscription("acct_1")
    provider.add_subscription("sub_1", sub.stripe_customer_id, metadata={}, price_id="price_legacy")

    result = services.subscriptions.handle_checkout_completed(sub.stripe_customer_id, "sub_1")

    assert result.plan == "starter"
    assert result.billing_interval == "monthly"


def test_checkout_completed_is_idempotent(services, make_paid):
    first = make_paid("acct_1")
    services.subscriptions.handle_checkout_completed("cus_acct_1", "sub_acct_1")
    stored = services.subscriptions.get_subscription("acct_1")
    assert comparable(stored) | {"updated_at": None} == comparable(first) | {"updated_at": None}


def test_checkout_completed_for_unknown_customer_is_orphan(services, provider):
    provider.add_subscription("sub_1", "cus_nobody")
    assert services.subscriptions.handle_checkout_completed("cus_nobody", "sub_1") is None
    assert provider.calls_to("get_subscription") == []


def test_checkout_completed_with_missing_ids_is_orphan(services):
    assert services.subscriptions.handle_checkout_completed(None, "sub_1") is None
    assert services.subscriptions.handle_checkout_completed("cus_1", None) is None


def test_checkout_completed_provider_failure_propagates(services):
    services.subscriptions.get_or_create_subscription("acct_1")
    with pytest.raises(ProviderError):
        services.subscriptions.handle_checkout_completed("cus_acct_1", "sub_missing")
    assert services.subscriptions.get_subscription("acct_1").plan == "free"


def test_checkout_completed_for_ended_subscription_grants_nothing(services, provider):
    services.subscriptions.get_or_create_subscription("acct_1")
    provider.add_subscription("sub_late", "cus_acct_1", plan=PlanId.PRO, status="canceled")

    sub = services.subscriptions.handle_checkout_completed("cus_acct_1", "sub_late")

    assert sub.plan == "free"
    assert sub.stripe_subscription_id is None
    assert sub.max_projects == 1
    assert lifecycle_state(sub) == LifecycleState.FREE_ACTIVE


# --- customer.subscription.updated ----------------------------------------


def test_subscription_updated_merges_status_and_cancellation(services, provider, make_paid):
    make_paid("acct_1")
    cancel_at = datetime(2026, 11, 1, tzinfo=timezone.utc)
    changed = provider.add_subscription(
        "sub_acct_1", "cus_acct_1", status="active", cancel_at_period_end=True, cancel_at=cancel_at
    )

    sub = services.subscriptions.handle_subscription_updated(changed)

    assert sub.cancel_at_period_end is True
    assert sub.cancel_at == cancel_at
    assert lifecycle_state(sub) == LifecycleState.CANCEL_SCHEDULED


def test_subscription_updated_does_not_change_plan(services, provider, make_paid):
    make_paid("acct_1", plan="pro")
    changed = provider.add_subscription("sub_acct_1", "cus_acct_1", plan=PlanId.STARTER)

    sub = services.subscriptions.handle_subscription_updated(changed)

    assert sub.plan == "pro"
    assert sub.max_deployments_per_month == 2000


def test_subscription_updated_past_due(services, provider, make_paid):
    make_paid("acct_1")
    sub = services.subscriptions.handle_subscription_updated(
        provider.add_subscription("sub_acct_1", "cus_acct_1", status="past_due")
    )
    assert sub.status == "past_due"
    assert lifecycle_state(sub) == LifecycleState.PAST_DUE


def test_subscription_updated_unknown_status_maps_to_incomplete(services, provider, make_paid):
    make_paid("acct_1")
    sub = services.subscriptions.handle_subscription_updated(
        provider.add_subscription("sub_acct_1", "cus_acct_1", status="brand_new_status")
    )
    assert sub.status == "incomplete"


def test_subscription_updated_replay_converges(services, provider, make_paid):
    make_paid("acct_1")
    changed = provider.add_subscription("sub_acct_1", "cus_acct_1", status="past_due", cancel_at_period_end=True)

    once = services.subscriptions.handle_subscription_updated(changed)
    twice = services.subscriptions.handle_subscription_updated(changed)

    assert comparable(once) | {"updated_at": None} == comparable(twice) | {"updated_at": None}


def test_subscription_updated_for_unknown_subscription_is_orphan(services, provider):
    changed = provider.add_subscription("sub_unknown", "cus_unknown")
    assert services.subscriptions.handle_subscription_updated(changed) is None
    assert services.subscriptions.handle_subscription_updated(None) is None


# --- customer.subscription.deleted ----------------------------------------


def test_subscription_deleted_reverts_to_free(services, make_paid):
    make_paid("acct_1", plan="pro", interval="yearly")

    sub = services.subscriptions.handle_subscription_deleted("sub_acct_1")

    assert sub.plan == "free"
    assert sub.status == "active"
    assert sub.stripe_subscription_id is None
    assert sub.stripe_price_id is None
    assert sub.billing_interval is None
    assert sub.current_period_start is None
    assert sub.current_period_end is None
    assert sub.cancel_at_period_end is False
    assert sub.canceled_at is not None
    assert sub.amount == 0
    assert (sub.max_projects, sub.max_deployments, sub.max_deployments_per_month) == (1, 50, 10)
    assert lifecycle_state(sub) == LifecycleState.CANCELED_TO_FREE
    # Customer stays on file for a later checkout
    assert sub.stripe_customer_id == "cus_acct_1"


def test_subscription_deleted_keeps_usage_counters(services, make_paid):
    make_paid("acct_1")
    services.quota.increment_deployment_count("acct_1")
    services.quota.increment_deployment_count("acct_1")

    sub = services.subscriptions.handle_subscription_deleted("sub_acct_1")

    assert sub.deployments_this_month == 2
    assert sub.total_deployments_used == 2


def test_subscription_deleted_replay_is_orphan(services, make_paid):
    make_paid("acct_1")
    first = services.subscriptions.handle_subscription_deleted("sub_acct_1")
    assert services.subscriptions.handle_subscription_deleted("sub_acct_1") is None
    stored = services.subscriptions.get_subscription("acct_1")
    assert stored.canceled_at == first.canceled_at


def test_subscription_deleted_unknown_is_orphan(services):
    assert services.subscriptions.handle_subscription_deleted("sub_unknown") is None
    assert services.subscriptions.handle_subscription_deleted(None) is None


# --- invoices -------------------------------------------------------------


def test_payment_failed_marks_past_due_keeping_entitlements(services, make_paid):
    make_paid("acct_1", plan="pro")

    sub = services.subscriptions.handle_payment_failed("cus_acct_1")

    assert sub.status == "past_due"
    assert sub.plan == "pro"
    assert sub.max_deployments_per_month == 2000
    assert lifecycle_state(sub) == LifecycleState.PAST_DUE


def test_payment_failed_unknown_customer_is_orphan(services):
    assert services.subscriptions.handle_payment_failed("cus_unknown") is None
    assert services.subscriptions.handle_payment_failed(None) is None


def test_payment_succeeded_only_logs(services, make_paid):
    before = make_paid("acct_1")
    assert services.subscriptions.handle_payment_succeeded("cus_acct_1", "in_1") is None
    after = services.subscriptions.get_subscription("acct_1")
    assert after.status == before.status


# --- derived state --------------------------------------------------------


def test_has_active_subscription(services, make_paid):
    make_paid("acct_1")
    assert services.subscriptions.has_active_subscription("acct_1") is True
    services.subscriptions.handle_payment_failed("cus_acct_1")
    assert services.subscriptions.has_active_subscription("acct_1") is False


def test_deployment_pool_info(services, allocations):
    allocations.allocated["acct_1"] = 4
    info = services.subscriptions.get_subscription_with_pool_info("acct_1")
    pool = info["deployment_pool"]
    assert (pool.total, pool.allocated, pool.available) == (10, 4, 6)


def test_deployment_pool_unlimited(services, make_paid, allocations):
    make_paid("acct_1", plan="enterprise")
    allocations.allocated["acct_1"] = 5000
    pool = services.subscriptions.get_subscription_with_pool_info("acct_1")["deployment_pool"]
    assert pool.total == -1
    assert pool.available == -1
