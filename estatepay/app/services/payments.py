"""Application wiring for the payment orchestrator and webhook reconciler."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, Mapping, Optional

from ..payments import (
    GatewayCustomer,
    GatewayEvent,
    GatewayPaymentIntent,
    GatewayRefund,
    GatewaySubscription,
    PaymentGateway,
    PaymentOrchestrator,
    StripePaymentGateway,
    WebhookReconciler,
)
from ..payments.config import PaymentsConfig, load_payments_config
from ..payments.gateway import string_metadata, verify_webhook
from ..payments.lifecycle import to_minor_units
from ..payments.repository import PostgresLedgerRepository

logger = logging.getLogger("payments")


def sign_payload(raw_body: bytes, secret: str, *, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header value for ``raw_body``."""

    if timestamp is None:
        timestamp = int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + raw_body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class SandboxPaymentGateway(PaymentGateway):
    """Gateway for local development that never leaves the process.

    Object ids are derived from a counter so runs are reproducible, and
    webhooks are verified with the same signed-header scheme as Stripe.
    """

    def __init__(self, *, webhook_secret: str, webhook_tolerance_seconds: int = 300) -> None:
        self._webhook_secret = webhook_secret
        self._webhook_tolerance_seconds = webhook_tolerance_seconds
        self._counter = 0
        self._customers_by_key: Dict[str, GatewayCustomer] = {}
        self._intents_by_key: Dict[str, GatewayPaymentIntent] = {}
        self._intents: Dict[str, GatewayPaymentIntent] = {}

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_sandbox_{self._counter:06d}"

    def create_customer(
        self,
        *,
        email: str,
        name: str,
        metadata: Mapping[str, str],
        idempotency_key: Optional[str] = None,
    ) -> GatewayCustomer:
        if idempotency_key and idempotency_key in self._customers_by_key:
            return self._customers_by_key[idempotency_key]
        customer = GatewayCustomer(id=self._next_id("cus"))
        if idempotency_key:
            self._customers_by_key[idempotency_key] = customer
        logger.debug("Sandbox customer %s created for %s", customer.id, email)
        return customer

    def create_payment_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, str],
        idempotency_key: Optional[str] = None,
    ) -> GatewayPaymentIntent:
        if idempotency_key and idempotency_key in self._intents_by_key:
            return self._intents_by_key[idempotency_key]
        intent_id = self._next_id("pi")
        intent = GatewayPaymentIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret",
            amount=to_minor_units(amount),
            currency=currency.lower(),
            status="requires_payment_method",
            metadata=string_metadata(metadata),
        )
        self._intents[intent.id] = intent
        if idempotency_key:
            self._intents_by_key[idempotency_key] = intent
        return intent

    def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        metadata: Mapping[str, str],
    ) -> GatewaySubscription:
        subscription_id = self._next_id("sub")
        return GatewaySubscription(
            id=subscription_id,
            status="incomplete",
            client_secret=f"{subscription_id}_secret",
        )

    def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> GatewayRefund:
        intent = self._intents.get(payment_intent_id)
        if amount is not None:
            refunded = to_minor_units(amount)
        else:
            refunded = intent.amount if intent else None
        return GatewayRefund(id=self._next_id("re"), amount=refunded, status="succeeded")

    def construct_event(self, raw_body: bytes, signature_header: Optional[str]) -> GatewayEvent:
        return verify_webhook(
            raw_body,
            signature_header,
            secret=self._webhook_secret,
            tolerance_seconds=self._webhook_tolerance_seconds,
        )

    def signed_event(self, event_type: str, data_object: Dict[str, Any]) -> tuple[bytes, str]:
        """Serialize a webhook for ``data_object`` and sign it; used for local replays."""

        body = json.dumps(
            {
                "id": self._next_id("evt"),
                "type": event_type,
                "created": int(time.time()),
                "data": {"object": data_object},
            }
        ).encode("utf-8")
        return body, sign_payload(body, self._webhook_secret)


def build_gateway(config: PaymentsConfig) -> PaymentGateway:
    if config.gateway_name == "stripe":
        return StripePaymentGateway(
            api_key=config.stripe_secret_key or "",
            webhook_secret=config.webhook_secret,
            api_version=config.stripe_api_version,
            timeout_seconds=config.gateway_timeout_seconds,
            webhook_tolerance_seconds=config.webhook_tolerance_seconds,
        )
    logger.warning("Using the sandbox payment gateway; no real charges will be made")
    return SandboxPaymentGateway(
        webhook_secret=config.webhook_secret,
        webhook_tolerance_seconds=config.webhook_tolerance_seconds,
    )


@lru_cache(maxsize=1)
def get_payments_config() -> PaymentsConfig:
    return load_payments_config()


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    return build_gateway(get_payments_config())


@lru_cache(maxsize=1)
def get_payment_orchestrator() -> PaymentOrchestrator:
    config = get_payments_config()
    return PaymentOrchestrator(
        repository=PostgresLedgerRepository(),
        gateway=get_payment_gateway(),
        late_fee_policy=config.late_fee_policy,
        default_currency=config.default_currency,
    )


@lru_cache(maxsize=1)
def get_webhook_reconciler() -> WebhookReconciler:
    return WebhookReconciler(repository=PostgresLedgerRepository(), gateway=get_payment_gateway())


__all__ = [
    "SandboxPaymentGateway",
    "build_gateway",
    "get_payment_gateway",
    "get_payment_orchestrator",
    "get_payments_config",
    "get_webhook_reconciler",
    "sign_payload",
]
