"""In-memory stand-ins for the payment provider and the external collaborators."""
import json
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from plangate.features.accounts.directory import AccountContact
from plangate.features.billing.events import parse_event
from plangate.features.billing.provider import (
    CustomerRef,
    ProviderError,
    ProviderSubscription,
    SessionRef,
    SignatureError,
)
from plangate.features.plans.catalog import BillingInterval, PlanCatalog, PlanId


VALID_SIGNATURE = "t=1,v1=valid"

PERIOD_START = datetime(2026, 10, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 11, 1, tzinfo=timezone.utc)


class FakeProvider:
    """Records calls and keeps provider-side subscriptions in a dict."""

    def __init__(self, catalog: PlanCatalog):
        self.catalog = catalog
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.calls: List[tuple] = []
        self.fail_with: Optional[ProviderError] = None
        self._counter = 0

    def _call(self, name: str, *args):
        self.calls.append((name,) + args)
        if self.fail_with is not None:
            raise self.fail_with

    def calls_to(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    def add_subscription(
        self,
        sub_id: str,
        customer_id: str,
        plan: PlanId = PlanId.PRO,
        interval: BillingInterval = BillingInterval.MONTHLY,
        status: str = "active",
        **overrides,
    ) -> ProviderSubscription:
        config = self.catalog.require(plan)
        values = dict(
            id=sub_id,
            customer_id=customer_id,
            status=status,
            price_id=config.price_id_for(interval),
            item_id=f"si_{sub_id}",
            current_period_start=PERIOD_START,
            current_period_end=PERIOD_END,
            metadata={"plan": plan.value, "billing_interval": interval.value},
        )
        values.update(overrides)
        sub = ProviderSubscription(**values)
        self.subscriptions[sub_id] = sub
        return sub

    def create_or_get_customer(self, account_id, email, name=None):
        self._call("create_or_get_customer", account_id, email, name)
        return CustomerRef(id=f"cus_{account_id}", email=email)

    def create_checkout_session(self, customer_id, plan, interval, success_url, cancel_url):
        self._call("create_checkout_session", customer_id, plan, interval, success_url, cancel_url)
        self._counter += 1
        return SessionRef(id=f"cs_test_{self._counter}", url=f"https://checkout.stripe.test/cs_test_{self._counter}")

    def create_portal_session(self, customer_id, return_url):
        self._call("create_portal_session", customer_id, return_url)
        return SessionRef(id="bps_test_1", url="https://billing.stripe.test/session/bps_test_1")

    def get_subscription(self, subscription_id):
        self._call("get_subscription", subscription_id)
        if subscription_id not in self.subscriptions:
            raise ProviderError("No such subscription", status=404, code="resource_missing")
        return self.subscriptions[subscription_id]

    def cancel_subscription(self, subscription_id, immediate=False):
        self._call("cancel_subscription", subscription_id, immediate)
        sub = self.subscriptions[subscription_id]
        if immediate:
            sub = replace(sub, status="canceled", canceled_at=datetime.now(timezone.utc))
        else:
            sub = replace(sub, cancel_at_period_end=True, cancel_at=sub.current_period_end)
        self.subscriptions[subscription_id] = sub
        return sub

    def reactivate_subscription(self, subscription_id):
        self._call("reactivate_subscription", subscription_id)
        sub = replace(self.subscriptions[subscription_id], cancel_at_period_end=False, cancel_at=None)
        self.subscriptions[subscription_id] = sub
        return sub

    def update_subscription(self, subscription_id, plan, interval):
        self._call("update_subscription", subscription_id, plan, interval)
        config = self.catalog.require(plan)
        sub = replace(
            self.subscriptions[subscription_id],
            price_id=config.price_id_for(interval),
            metadata={"plan": config.plan.value, "billing_interval": BillingInterval(interval).value},
        )
        self.subscriptions[subscription_id] = sub
        return sub

    def verify_and_parse_event(self, payload, signature):
        if signature != VALID_SIGNATURE:
            raise SignatureError("No signatures found matching the expected signature", code="invalid_signature")
        return parse_event(json.loads(payload))


class FakeProjectCounter:
    def __init__(self):
        self.counts: Dict[str, int] = {}

    def count_by_owner(self, account_id: str) -> int:
        return self.counts.get(account_id, 0)


class FakeAllocations:
    def __init__(self):
        self.allocated: Dict[str, int] = {}

    def __call__(self, account_id: str) -> int:
        return self.allocated.get(account_id, 0)


class FakeDirectory:
    def get_contact(self, account_id: str) -> AccountContact:
        return AccountContact(email=f"{account_id}@example.com", name=account_id.title())


def stripe_event(event_id: str, kind: str, obj: dict) -> bytes:
    return json.dumps({"id": event_id, "type": kind, "data": {"object": obj}}).encode()


def stripe_subscription_payload(sub: ProviderSubscription, **overrides) -> dict:
    """Render a ProviderSubscription the way Stripe sends it in an event."""
    def ts(value):
        return int(value.timestamp()) if value else None

    payload = {
        "id": sub.id,
        "object": "subscription",
        "customer": sub.customer_id,
        "status": sub.status,
        "cancel_at_period_end": sub.cancel_at_period_end,
        "cancel_at": ts(sub.cancel_at),
        "canceled_at": ts(sub.canceled_at),
        "current_period_start": ts(sub.current_period_start),
        "current_period_end": ts(sub.current_period_end),
        "trial_start": ts(sub.trial_start),
        "trial_end": ts(sub.trial_end),
        "items": {"data": [{"id": sub.item_id, "price": {"id": sub.price_id}}]},
        "metadata": dict(sub.metadata),
    }
    payload.update(overrides)
    return payload
