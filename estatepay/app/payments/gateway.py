"""Payment gateway boundary and its Stripe implementation."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Protocol

import stripe
from pydantic import BaseModel, ConfigDict, Field

from .config import DEFAULT_STRIPE_API_VERSION
from .errors import SignatureError, UpstreamError
from .lifecycle import to_minor_units

logger = logging.getLogger(__name__)


class GatewayCustomer(BaseModel):
    id: str

    model_config = ConfigDict(frozen=True)


class GatewayPaymentIntent(BaseModel):
    id: str
    client_secret: str
    amount: int = Field(description="Amount in minor currency units")
    currency: str
    status: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class GatewaySubscription(BaseModel):
    id: str
    status: str
    client_secret: Optional[str] = None
    current_period_end: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class GatewayRefund(BaseModel):
    id: str
    amount: Optional[int] = None
    status: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class GatewayEvent(BaseModel):
    """Verified webhook event; ``data_object`` is the event's ``data.object``."""

    id: str
    type: str
    data_object: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class PaymentGateway(Protocol):
    """External payment processor operations required by the core.

    Amount arguments are in major units; implementations convert them to
    minor units at the boundary.
    """

    def create_customer(
        self,
        *,
        email: str,
        name: str,
        metadata: Mapping[str, str],
        idempotency_key: Optional[str] = None,
    ) -> GatewayCustomer:
        ...

    def create_payment_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, str],
        idempotency_key: Optional[str] = None,
    ) -> GatewayPaymentIntent:
        ...

    def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        metadata: Mapping[str, str],
    ) -> GatewaySubscription:
        ...

    def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> GatewayRefund:
        ...

    def construct_event(self, raw_body: bytes, signature_header: Optional[str]) -> GatewayEvent:
        """Verify ``signature_header`` against ``raw_body`` and parse the event.

        Raises :class:`SignatureError` when the payload is not authentic.
        """


def field_of(source: Any, key: str, default: Any = None) -> Any:
    """Read ``key`` from a dict or a gateway object, tolerating absence."""

    if source is None:
        return default
    if isinstance(source, Mapping):
        return source.get(key, default)
    try:
        return source[key]
    except (KeyError, TypeError, IndexError):
        return getattr(source, key, default)


def timestamp_to_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return None


def as_plain_dict(source: Any) -> Dict[str, Any]:
    if source is None:
        return {}
    if isinstance(source, Mapping):
        return dict(source)
    to_dict = getattr(source, "to_dict", None)
    return dict(to_dict()) if callable(to_dict) else {}


def string_metadata(metadata: Any) -> Dict[str, str]:
    return {str(key): "" if value is None else str(value) for key, value in as_plain_dict(metadata).items()}


def parse_event_payload(raw_body: bytes) -> GatewayEvent:
    """Parse an already verified webhook body."""

    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError) as exc:
        raise SignatureError("Invalid webhook payload") from exc
    if not isinstance(payload, dict) or not payload.get("id") or not payload.get("type"):
        raise SignatureError("Invalid webhook payload")

    data_object = field_of(payload.get("data"), "object") or {}
    return GatewayEvent(
        id=str(payload["id"]),
        type=str(payload["type"]),
        data_object=data_object if isinstance(data_object, dict) else {},
    )


def verify_webhook(
    raw_body: bytes,
    signature_header: Optional[str],
    *,
    secret: str,
    tolerance_seconds: int,
) -> GatewayEvent:
    """Check a ``Stripe-Signature`` header and return the parsed event."""

    if not signature_header:
        raise SignatureError("Missing webhook signature")
    try:
        body = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SignatureError("Invalid webhook payload") from exc
    try:
        stripe.WebhookSignature.verify_header(body, signature_header, secret, tolerance_seconds)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise SignatureError() from exc
    return parse_event_payload(raw_body)


def _subscription_client_secret(subscription: Any) -> Optional[str]:
    invoice = field_of(subscription, "latest_invoice")
    if invoice is None or isinstance(invoice, str):
        return None
    intent = field_of(invoice, "payment_intent")
    if intent is not None and not isinstance(intent, str):
        secret = field_of(intent, "client_secret")
        if secret:
            return str(secret)
    confirmation = field_of(invoice, "confirmation_secret")
    secret = field_of(confirmation, "client_secret")
    return str(secret) if secret else None


def subscription_period_end(subscription: Any) -> Optional[datetime]:
    period_end = timestamp_to_datetime(field_of(subscription, "current_period_end"))
    if period_end is not None:
        return period_end
    items = field_of(field_of(subscription, "items"), "data") or []
    for item in items:
        period_end = timestamp_to_datetime(field_of(item, "current_period_end"))
        if period_end is not None:
            return period_end
    return None


class StripePaymentGateway:
    """Gateway backed by the Stripe API.

    Each instance owns its own ``StripeClient`` with a bounded HTTP timeout
    and network retries disabled; a timeout surfaces as :class:`UpstreamError`
    like any other gateway failure.
    """

    def __init__(
        self,
        *,
        api_key: str,
        webhook_secret: str,
        api_version: str = DEFAULT_STRIPE_API_VERSION,
        timeout_seconds: float = 10.0,
        webhook_tolerance_seconds: int = 300,
        client: Any = None,
    ) -> None:
        if client is None:
            client = stripe.StripeClient(
                api_key,
                stripe_version=api_version,
                http_client=stripe.RequestsClient(timeout=timeout_seconds),
                max_network_retries=0,
            )
        # Newer SDKs group the REST resources under ``client.v1``.
        self._api = getattr(client, "v1", None) or client
        self._webhook_secret = webhook_secret
        self._webhook_tolerance_seconds = webhook_tolerance_seconds

    def _call(self, operation: str, func, **kwargs: Any) -> Any:
        try:
            return func(**kwargs)
        except stripe.StripeError as exc:
            logger.error(
                "Stripe %s failed: %s",
                operation,
                exc,
                extra={"gateway_operation": operation, "gateway_error": type(exc).__name__},
            )
            raise UpstreamError(detail={"operation": operation, "error": str(exc)}) from exc

    def create_customer(
        self,
        *,
        email: str,
        name: str,
        metadata: Mapping[str, str],
        idempotency_key: Optional[str] = None,
    ) -> GatewayCustomer:
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        customer = self._call(
            "customers.create",
            self._api.customers.create,
            params={"email": email, "name": name, "metadata": string_metadata(metadata)},
            options=options,
        )
        return GatewayCustomer(id=str(field_of(customer, "id")))

    def create_payment_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, str],
        idempotency_key: Optional[str] = None,
    ) -> GatewayPaymentIntent:
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        intent = self._call(
            "payment_intents.create",
            self._api.payment_intents.create,
            params={
                "amount": to_minor_units(amount),
                "currency": currency.lower(),
                "metadata": string_metadata(metadata),
                "automatic_payment_methods": {"enabled": True},
            },
            options=options,
        )
        return self._intent_from_object(intent)

    def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        metadata: Mapping[str, str],
    ) -> GatewaySubscription:
        subscription = self._call(
            "subscriptions.create",
            self._api.subscriptions.create,
            params={
                "customer": customer_id,
                "items": [{"price": price_id}],
                "metadata": string_metadata(metadata),
                "payment_behavior": "default_incomplete",
                "payment_settings": {"save_default_payment_method": "on_subscription"},
                "expand": ["latest_invoice.payment_intent"],
            },
        )
        return GatewaySubscription(
            id=str(field_of(subscription, "id")),
            status=str(field_of(subscription, "status", "incomplete")),
            client_secret=_subscription_client_secret(subscription),
            current_period_end=subscription_period_end(subscription),
        )

    def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> GatewayRefund:
        params: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        if reason:
            params["reason"] = reason
        refund = self._call("refunds.create", self._api.refunds.create, params=params)
        amount_refunded = field_of(refund, "amount")
        return GatewayRefund(
            id=str(field_of(refund, "id")),
            amount=int(amount_refunded) if amount_refunded is not None else None,
            status=field_of(refund, "status"),
        )

    def construct_event(self, raw_body: bytes, signature_header: Optional[str]) -> GatewayEvent:
        return verify_webhook(
            raw_body,
            signature_header,
            secret=self._webhook_secret,
            tolerance_seconds=self._webhook_tolerance_seconds,
        )

    @staticmethod
    def _intent_from_object(intent: Any) -> GatewayPaymentIntent:
        return GatewayPaymentIntent(
            id=str(field_of(intent, "id")),
            client_secret=str(field_of(intent, "client_secret") or ""),
            amount=int(field_of(intent, "amount", 0) or 0),
            currency=str(field_of(intent, "currency", "usd")),
            status=field_of(intent, "status"),
            metadata=string_metadata(field_of(intent, "metadata")),
        )


__all__ = [
    "GatewayCustomer",
    "GatewayEvent",
    "GatewayPaymentIntent",
    "GatewayRefund",
    "GatewaySubscription",
    "PaymentGateway",
    "StripePaymentGateway",
    "field_of",
    "parse_event_payload",
    "as_plain_dict",
    "string_metadata",
    "subscription_period_end",
    "timestamp_to_datetime",
    "verify_webhook",
]
