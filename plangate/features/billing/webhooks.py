"""
Webhook ingress.

dispatch() takes a request through UNVERIFIED -> VERIFIED -> ROUTED ->
ACKNOWLEDGED. Only the first step can reject a request. Once the signature is
good the sender always gets {"received": true}, whatever the handler did;
failures are recorded on the billing_events ledger and in the logs instead.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from plangate.core.database import billing_events, get_db_session
from plangate.core.errors import AppError
from plangate.core.logging import ALERTS_LOGGER, log_event
from plangate.core.metrics import webhook_events_total
from plangate.features.billing.events import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionChanged,
    SubscriptionDeleted,
    UnrecognizedEvent,
)
from plangate.features.billing.provider import PaymentProvider, ProviderError, SignatureError
from plangate.features.subscriptions.service import SubscriptionService


class WebhookState(str, Enum):
    UNVERIFIED = "UNVERIFIED"
    VERIFIED = "VERIFIED"
    ROUTED = "ROUTED"
    ACKNOWLEDGED = "ACKNOWLEDGED"


class WebhookRejected(AppError):
    code = "webhook_rejected"
    status_code = 400


@dataclass
class WebhookAck:
    status_code: int
    body: Dict[str, Any]
    state: WebhookState = WebhookState.ACKNOWLEDGED
    event_id: Optional[str] = None
    outcome: Optional[str] = None


RECEIVED = {"received": True}


class WebhookDispatcher:
    def __init__(self, provider: Optional[PaymentProvider], subscriptions: SubscriptionService):
        self.provider = provider
        self.subscriptions = subscriptions

    def dispatch(self, raw_body: Optional[bytes], signature: Optional[str]) -> WebhookAck:
        try:
            event = self._verify(raw_body, signature)
        except WebhookRejected as e:
            webhook_events_total.inc({"event_type": "unknown", "outcome": "rejected"})
            log_event("warning", "[webhook] rejected", error_code=e.code, extra={"reason": e.message})
            return WebhookAck(
                status_code=e.status_code,
                body={"error": {"code": e.code, "message": e.message}},
                state=WebhookState.UNVERIFIED,
                outcome="rejected",
            )
        except Exception as e:
            # The signature passed; only the payload is unusable, so redelivery won't help
            webhook_events_total.inc({"event_type": "unknown", "outcome": "failed"})
            log_event(
                "error",
                "[webhook] verified event could not be parsed",
                error_code=type(e).__name__,
                extra={"error": e},
                exc_info=True,
            )
            return WebhookAck(status_code=200, body=dict(RECEIVED), outcome="failed")

        outcome = self._route(event, raw_body)
        webhook_events_total.inc({"event_type": event.kind or "unknown", "outcome": outcome})
        return WebhookAck(status_code=200, body=dict(RECEIVED), event_id=event.event_id, outcome=outcome)

    def _verify(self, raw_body: Optional[bytes], signature: Optional[str]) -> BillingEvent:
        if not signature:
            raise WebhookRejected("Missing stripe-signature header", code="missing_signature")
        if not raw_body:
            raise WebhookRejected("Missing raw body for webhook verification", code="missing_body")
        if self.provider is None:
            # Nothing to verify against; the sender will retry once billing is configured
            raise WebhookRejected("Billing is not configured", code="billing_disabled", status_code=503)
        try:
            return self.provider.verify_and_parse_event(raw_body, signature)
        except SignatureError as e:
            raise WebhookRejected(f"Webhook signature verification failed: {e.message}", code="invalid_signature")

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _route(self, event: BillingEvent, raw_body: bytes) -> str:
        if isinstance(event, UnrecognizedEvent):
            log_event("info", "[webhook] unhandled event type", event_type=event.kind, extra={"event_id": event.event_id})
            return "ignored"

        try:
            if not self._claim(event, raw_body):
                log_event("info", "[webhook] duplicate event skipped", event_type=event.kind, extra={"event_id": event.event_id})
                return "duplicate"
        except SQLAlchemyError as e:
            self._report_failure(event, e)
            return "failed"

        try:
            self._handle(event)
        except Exception as e:
            self._report_failure(event, e)
            self._mark(event, error=f"{type(e).__name__}: {e}")
            return "failed"

        self._mark(event, processed=True)
        return "processed"

    def _handle(self, event: BillingEvent) -> None:
        service = self.subscriptions
        if isinstance(event, CheckoutCompleted):
            service.handle_checkout_completed(event.customer_id, event.subscription_id)
        elif isinstance(event, SubscriptionChanged):
            service.handle_subscription_updated(event.subscription)
        elif isinstance(event, SubscriptionDeleted):
            service.handle_subscription_deleted(event.subscription_id)
        elif isinstance(event, InvoicePaymentFailed):
            service.handle_payment_failed(event.customer_id)
        elif isinstance(event, InvoicePaymentSucceeded):
            service.handle_payment_succeeded(event.customer_id, event.invoice_id)

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def _claim(self, event: BillingEvent, raw_body: bytes) -> bool:
        """Record the event; False if it was already processed.

        Events whose handler failed earlier stay unprocessed and are run again
        on redelivery.
        """
        if not event.event_id:
            return True

        with get_db_session() as session:
            existing = session.execute(
                select(billing_events.c.processed).where(billing_events.c.stripe_event_id == event.event_id)
            ).first()
        if existing is not None:
            return not existing.processed

        try:
            with get_db_session() as session:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=event.event_id,
                        event_type=event.kind,
                        payload_hash=hashlib.sha256(raw_body).hexdigest(),
                        processed=False,
                        received_at=datetime.now(timezone.utc),
                    )
                )
        except IntegrityError:
            # Concurrent delivery of the same event got there first
            return False
        return True

    def _mark(self, event: BillingEvent, *, processed: bool = False, error: Optional[str] = None) -> None:
        if not event.event_id:
            return
        values: Dict[str, Any] = {"error": error[:2000] if error else None}
        if processed:
            values.update(processed=True, processed_at=datetime.now(timezone.utc))
        try:
            with get_db_session() as session:
                session.execute(
                    update(billing_events)
                    .where(billing_events.c.stripe_event_id == event.event_id)
                    .values(**values)
                )
        except SQLAlchemyError as e:
            self._report_failure(event, e)

    def _report_failure(self, event: BillingEvent, exc: Exception) -> None:
        ids = {
            "event_id": event.event_id,
            "customer_id": getattr(event, "customer_id", None),
            "subscription_id": getattr(event, "subscription_id", None),
        }
        ids = {k: v for k, v in ids.items() if v}
        error_code = type(exc).__name__

        log_event(
            "error",
            "[webhook] handler failed",
            event_type=event.kind,
            error_code=error_code,
            extra={**ids, "error": exc},
            exc_info=True,
        )
        if isinstance(exc, (SQLAlchemyError, ProviderError)):
            log_event(
                "critical",
                "[webhook] infrastructure failure while reconciling billing event",
                event_type=event.kind,
                error_code=error_code,
                extra=ids,
                logger_name=ALERTS_LOGGER,
            )
