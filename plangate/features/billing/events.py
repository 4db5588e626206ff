"""
Webhook event types.

Inbound provider events are loosely-typed JSON. They are parsed into a
closed set of event classes here; anything unrecognized becomes
UnrecognizedEvent, which every consumer treats as a no-op. Missing ids are
kept as None rather than raising, and handlers drop such events as orphans.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from plangate.features.billing.provider import ProviderSubscription


CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    kind: str
    customer_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionChanged:
    """customer.subscription.created / customer.subscription.updated"""
    event_id: str
    kind: str
    subscription: Optional[ProviderSubscription]


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    kind: str
    subscription_id: Optional[str]
    customer_id: Optional[str]


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    kind: str
    customer_id: Optional[str]
    invoice_id: Optional[str]


@dataclass(frozen=True)
class InvoicePaymentSucceeded:
    event_id: str
    kind: str
    customer_id: Optional[str]
    invoice_id: Optional[str]


@dataclass(frozen=True)
class UnrecognizedEvent:
    event_id: str
    kind: str


BillingEvent = Union[
    CheckoutCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    UnrecognizedEvent,
]


def field_of(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a dict or a Stripe object without relying on .get()."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError, AttributeError):
        return default
    return default if value is None else value


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _ref_id(value: Any) -> Optional[str]:
    """Ids may arrive as plain strings or as expanded objects."""
    if isinstance(value, str):
        return value or None
    return _text(field_of(value, "id"))


def from_timestamp(value: Any) -> Optional[datetime]:
    """Unix seconds to an aware datetime; None for anything unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def subscription_from_stripe(obj: Any) -> Optional[ProviderSubscription]:
    """Normalize a Stripe subscription (dict or StripeObject)."""
    sub_id = _ref_id(field_of(obj, "id"))
    if not sub_id:
        return None

    items = field_of(field_of(obj, "items"), "data")
    first_item = items[0] if isinstance(items, (list, tuple)) and items else None
    price = field_of(first_item, "price")

    # Period dates moved onto subscription items in newer API versions
    period_start = field_of(first_item, "current_period_start") or field_of(obj, "current_period_start")
    period_end = field_of(first_item, "current_period_end") or field_of(obj, "current_period_end")

    metadata: Dict[str, Any] = {}
    raw_metadata = field_of(obj, "metadata")
    if raw_metadata is not None:
        for key in ("plan", "billing_interval", "user_id"):
            value = _text(field_of(raw_metadata, key))
            if value is not None:
                metadata[key] = value

    return ProviderSubscription(
        id=sub_id,
        customer_id=_ref_id(field_of(obj, "customer")),
        status=_text(field_of(obj, "status")) or "incomplete",
        price_id=_ref_id(price),
        item_id=_ref_id(first_item),
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        trial_start=from_timestamp(field_of(obj, "trial_start")),
        trial_end=from_timestamp(field_of(obj, "trial_end")),
        cancel_at_period_end=bool(field_of(obj, "cancel_at_period_end", False)),
        cancel_at=from_timestamp(field_of(obj, "cancel_at")),
        canceled_at=from_timestamp(field_of(obj, "canceled_at")),
        metadata=metadata,
    )


def parse_event(event: Dict[str, Any]) -> BillingEvent:
    """Parse a Stripe event payload into one of the event classes."""
    event_id = _text(field_of(event, "id")) or ""
    kind = _text(field_of(event, "type")) or ""
    data = field_of(field_of(event, "data"), "object", {})

    if kind == CHECKOUT_COMPLETED:
        return CheckoutCompleted(
            event_id=event_id,
            kind=kind,
            customer_id=_ref_id(field_of(data, "customer")),
            subscription_id=_ref_id(field_of(data, "subscription")),
        )
    if kind in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        return SubscriptionChanged(
            event_id=event_id,
            kind=kind,
            subscription=subscription_from_stripe(data),
        )
    if kind == SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(
            event_id=event_id,
            kind=kind,
            subscription_id=_ref_id(field_of(data, "id")),
            customer_id=_ref_id(field_of(data, "customer")),
        )
    if kind == INVOICE_PAYMENT_FAILED:
        return InvoicePaymentFailed(
            event_id=event_id,
            kind=kind,
            customer_id=_ref_id(field_of(data, "customer")),
            invoice_id=_ref_id(field_of(data, "id")),
        )
    if kind == INVOICE_PAYMENT_SUCCEEDED:
        return InvoicePaymentSucceeded(
            event_id=event_id,
            kind=kind,
            customer_id=_ref_id(field_of(data, "customer")),
            invoice_id=_ref_id(field_of(data, "id")),
        )
    return UnrecognizedEvent(event_id=event_id, kind=kind)
