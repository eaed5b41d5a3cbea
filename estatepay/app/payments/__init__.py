"""Payments domain package: rent collection, subscriptions, and webhook reconciliation."""

from .errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    PaymentsError,
    SignatureError,
    Unauthorized,
    UpstreamError,
    ValidationError,
)
from .gateway import (
    GatewayCustomer,
    GatewayEvent,
    GatewayPaymentIntent,
    GatewayRefund,
    GatewaySubscription,
    PaymentGateway,
    StripePaymentGateway,
)
from .lifecycle import LateFeePolicy, TransitionOutcome
from .models import (
    Actor,
    Payment,
    PaymentInitiation,
    PaymentKind,
    PaymentMethod,
    PaymentStatus,
    PaymentStatusSummary,
    PaymentView,
    PropertyRecord,
    PropertyStatus,
    ReconciliationOutcome,
    ReconciliationResult,
    SubscriptionInitiation,
    SubscriptionState,
    SubscriptionStatus,
    UserAccount,
    UserRole,
)
from .orchestrator import PaymentOrchestrator
from .reconciler import WebhookReconciler
from .repository import LedgerRepository

__all__ = [
    "Actor",
    "Forbidden",
    "GatewayCustomer",
    "GatewayEvent",
    "GatewayPaymentIntent",
    "GatewayRefund",
    "GatewaySubscription",
    "InvalidTransition",
    "LateFeePolicy",
    "LedgerRepository",
    "NotFound",
    "Payment",
    "PaymentGateway",
    "PaymentInitiation",
    "PaymentKind",
    "PaymentMethod",
    "PaymentOrchestrator",
    "PaymentStatus",
    "PaymentStatusSummary",
    "PaymentView",
    "PaymentsError",
    "PropertyRecord",
    "PropertyStatus",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "SignatureError",
    "StripePaymentGateway",
    "SubscriptionInitiation",
    "SubscriptionState",
    "SubscriptionStatus",
    "TransitionOutcome",
    "Unauthorized",
    "UpstreamError",
    "UserAccount",
    "UserRole",
    "ValidationError",
    "WebhookReconciler",
]
