"""Applies gateway webhook events to the local ledger.

Delivery is at-least-once and unordered, so every handler writes absolute
state through conditional updates. The only relative write, the property
occupancy increment, is guarded by a per-event marker in the store.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from .gateway import (
    GatewayEvent,
    PaymentGateway,
    field_of,
    string_metadata,
    subscription_period_end,
    timestamp_to_datetime,
)
from .lifecycle import (
    TransitionOutcome,
    from_minor_units,
    map_gateway_subscription_status,
    paid_date_for,
    plan_transition,
)
from .models import (
    DEFAULT_PAID_PLAN,
    FREE_PLAN,
    Payment,
    PaymentKind,
    PaymentStatus,
    ReconciliationOutcome,
    ReconciliationResult,
    SubscriptionStatus,
)
from .repository import LedgerRepository

logger = logging.getLogger(__name__)

PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


def _result(event: GatewayEvent, outcome: ReconciliationOutcome, detail: Optional[str] = None) -> ReconciliationResult:
    return ReconciliationResult(event_id=event.id, event_type=event.type, outcome=outcome, detail=detail)


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription")
    if subscription is None:
        details = field_of(field_of(invoice.get("parent"), "subscription_details"), "subscription")
        subscription = details
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    return str(subscription) if subscription else None


def _customer_id(source: Dict[str, Any]) -> Optional[str]:
    customer = source.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return str(customer) if customer else None


@dataclass
class WebhookReconciler:
    """Verifies gateway webhooks and applies idempotent ledger transitions."""

    repository: LedgerRepository
    gateway: PaymentGateway

    def __post_init__(self) -> None:
        self._handlers: Dict[str, Callable[[GatewayEvent], ReconciliationResult]] = {
            PAYMENT_INTENT_SUCCEEDED: self._handle_intent_succeeded,
            PAYMENT_INTENT_FAILED: self._handle_intent_failed,
            SUBSCRIPTION_CREATED: self._handle_subscription_created,
            SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            INVOICE_PAYMENT_SUCCEEDED: self._handle_invoice_succeeded,
            INVOICE_PAYMENT_FAILED: self._handle_invoice_failed,
        }

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def handle(self, raw_body: bytes, signature_header: Optional[str]) -> ReconciliationResult:
        """Verify and apply one webhook delivery.

        :class:`SignatureError` propagates before anything is interpreted.
        Failures inside an event handler are logged and reported in the
        result instead of being raised.
        """

        event = self.gateway.construct_event(raw_body, signature_header)
        return self.apply(event)

    def apply(self, event: GatewayEvent) -> ReconciliationResult:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled webhook event type %s (%s)", event.type, event.id)
            return _result(event, ReconciliationOutcome.IGNORED)

        try:
            result = handler(event)
        except Exception as exc:
            logger.exception(
                "Webhook handler for %s failed on event %s",
                event.type,
                event.id,
                extra={"webhook_event_id": event.id, "webhook_event_type": event.type},
            )
            return _result(event, ReconciliationOutcome.ERROR, type(exc).__name__)

        logger.info(
            "Webhook %s %s: %s",
            event.type,
            event.id,
            result.outcome.value,
            extra={
                "webhook_event_id": event.id,
                "webhook_event_type": event.type,
                "webhook_outcome": result.outcome.value,
            },
        )
        return result

    def _transition(
        self,
        event: GatewayEvent,
        payment: Payment,
        target: PaymentStatus,
        *,
        changes: Optional[Dict[str, Any]] = None,
        note: Optional[str] = None,
    ) -> ReconciliationOutcome:
        outcome = plan_transition(payment.status, target)
        if outcome == TransitionOutcome.REPEAT:
            return ReconciliationOutcome.REPEAT
        if outcome == TransitionOutcome.REJECT:
            logger.warning(
                "Ignoring %s for payment %s in status %s",
                event.type,
                payment.payment_id,
                payment.status.value,
                extra={"webhook_event_id": event.id, "payment_id": payment.payment_id},
            )
            return ReconciliationOutcome.REPEAT

        updated = self.repository.transition_payment(
            payment.payment_id,
            from_status=payment.status,
            to_status=target,
            changes=changes,
            note=note,
        )
        if updated is not None:
            return ReconciliationOutcome.APPLIED
        # Lost the conditional write to a concurrent delivery.
        return ReconciliationOutcome.REPEAT

    def _handle_intent_succeeded(self, event: GatewayEvent) -> ReconciliationResult:
        intent = event.data_object
        intent_id = intent.get("id")
        if not intent_id:
            return _result(event, ReconciliationOutcome.DROPPED, "missing payment intent id")

        payment = self.repository.get_payment_by_intent(str(intent_id))
        if payment is None:
            logger.warning(
                "No payment found for intent %s; dropping %s",
                intent_id,
                event.id,
                extra={"webhook_event_id": event.id, "payment_intent_id": intent_id},
            )
            return _result(event, ReconciliationOutcome.DROPPED, "unknown payment intent")

        now = self._now()
        changes: Dict[str, Any] = {"paid_date": paid_date_for(PaymentStatus.COMPLETED, now)}
        customer_id = _customer_id(intent)
        if customer_id:
            changes["gateway_customer_id"] = customer_id
        received = intent.get("amount")
        if isinstance(received, int) and received > 0:
            changes["amount"] = from_minor_units(received)
        charge_id = intent.get("latest_charge")
        if isinstance(charge_id, str) and charge_id:
            changes["gateway_charge_id"] = charge_id

        outcome = self._transition(event, payment, PaymentStatus.COMPLETED, changes=changes)

        metadata = string_metadata(intent.get("metadata"))
        property_id = metadata.get("propertyId")
        if property_id and metadata.get("tenantId") and (
            outcome == ReconciliationOutcome.APPLIED or self._is_completed(payment.payment_id)
        ):
            if self.repository.apply_occupancy_once(payment.payment_id, property_id):
                logger.info(
                    "Occupancy incremented for property %s by payment %s",
                    property_id,
                    payment.payment_id,
                    extra={"webhook_event_id": event.id, "payment_id": payment.payment_id},
                )

        return _result(event, outcome)

    def _is_completed(self, payment_id: str) -> bool:
        current = self.repository.get_payment(payment_id)
        return current is not None and current.status == PaymentStatus.COMPLETED

    def _handle_intent_failed(self, event: GatewayEvent) -> ReconciliationResult:
        intent = event.data_object
        intent_id = intent.get("id")
        payment = self.repository.get_payment_by_intent(str(intent_id)) if intent_id else None
        if payment is None:
            logger.warning("No payment found for failed intent %s; dropping %s", intent_id, event.id)
            return _result(event, ReconciliationOutcome.DROPPED, "unknown payment intent")

        error = intent.get("last_payment_error") or {}
        message = field_of(error, "message") or "Unknown error"
        outcome = self._transition(
            event,
            payment,
            PaymentStatus.FAILED,
            note=f"Payment failed: {message}",
        )
        return _result(event, outcome)

    def _subscription_target(self, event: GatewayEvent) -> Optional[str]:
        metadata = string_metadata(event.data_object.get("metadata"))
        user_id = metadata.get("userId")
        if not user_id:
            logger.warning(
                "Subscription event %s carries no userId metadata; dropping",
                event.id,
                extra={"webhook_event_id": event.id},
            )
        return user_id or None

    def _update_subscription(
        self,
        event: GatewayEvent,
        *,
        status: SubscriptionStatus,
        plan: Optional[str] = None,
    ) -> ReconciliationResult:
        user_id = self._subscription_target(event)
        if user_id is None:
            return _result(event, ReconciliationOutcome.DROPPED, "missing userId metadata")

        subscription = event.data_object
        subscription_id = subscription.get("id")
        if not subscription_id and status != SubscriptionStatus.INACTIVE:
            return _result(event, ReconciliationOutcome.DROPPED, "missing subscription id")

        updated = self.repository.update_subscription_status(
            user_id,
            status=status,
            gateway_subscription_id=str(subscription_id) if subscription_id else None,
            plan=plan,
            current_period_end=subscription_period_end(subscription),
        )
        if updated is None:
            logger.warning("Subscription event %s references unknown user %s", event.id, user_id)
            return _result(event, ReconciliationOutcome.DROPPED, "unknown user")
        return _result(event, ReconciliationOutcome.APPLIED)

    def _handle_subscription_created(self, event: GatewayEvent) -> ReconciliationResult:
        metadata = string_metadata(event.data_object.get("metadata"))
        return self._update_subscription(
            event,
            status=map_gateway_subscription_status(event.data_object.get("status")),
            plan=metadata.get("plan") or DEFAULT_PAID_PLAN,
        )

    def _handle_subscription_updated(self, event: GatewayEvent) -> ReconciliationResult:
        return self._update_subscription(
            event,
            status=map_gateway_subscription_status(event.data_object.get("status")),
        )

    def _handle_subscription_deleted(self, event: GatewayEvent) -> ReconciliationResult:
        return self._update_subscription(event, status=SubscriptionStatus.CANCELLED, plan=FREE_PLAN)

    def _record_invoice(self, event: GatewayEvent, *, succeeded: bool) -> ReconciliationResult:
        invoice = event.data_object
        invoice_id = invoice.get("id")
        subscription_id = _invoice_subscription_id(invoice)
        customer_id = _customer_id(invoice)
        if not invoice_id or not subscription_id or not customer_id:
            return _result(event, ReconciliationOutcome.DROPPED, "invoice is not tied to a subscription")

        user = self.repository.get_user_by_customer_id(customer_id)
        if user is None:
            logger.warning("Invoice %s references unknown customer %s", invoice_id, customer_id)
            return _result(event, ReconciliationOutcome.DROPPED, "unknown customer")

        now = self._now()
        status = PaymentStatus.COMPLETED if succeeded else PaymentStatus.FAILED
        minor_amount = invoice.get("amount_paid") if succeeded else invoice.get("amount_due")
        payment = Payment(
            payment_id=uuid4().hex,
            tenant_id=user.user_id,
            amount=from_minor_units(minor_amount or 0),
            currency=str(invoice.get("currency") or "usd"),
            kind=PaymentKind.SUBSCRIPTION,
            status=status,
            due_date=timestamp_to_datetime(invoice.get("created")) or now,
            paid_date=paid_date_for(status, now),
            description="Subscription payment" if succeeded else "Subscription payment failed",
            gateway_invoice_id=str(invoice_id),
            gateway_subscription_id=subscription_id,
            gateway_customer_id=customer_id,
        )
        if not self.repository.record_invoice_payment(payment):
            return _result(event, ReconciliationOutcome.REPEAT)
        return _result(event, ReconciliationOutcome.APPLIED)

    def _handle_invoice_succeeded(self, event: GatewayEvent) -> ReconciliationResult:
        return self._record_invoice(event, succeeded=True)

    def _handle_invoice_failed(self, event: GatewayEvent) -> ReconciliationResult:
        return self._record_invoice(event, succeeded=False)


__all__ = [
    "INVOICE_PAYMENT_FAILED",
    "INVOICE_PAYMENT_SUCCEEDED",
    "PAYMENT_INTENT_FAILED",
    "PAYMENT_INTENT_SUCCEEDED",
    "SUBSCRIPTION_CREATED",
    "SUBSCRIPTION_DELETED",
    "SUBSCRIPTION_UPDATED",
    "WebhookReconciler",
]
