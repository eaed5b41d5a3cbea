"""Pure state-machine and money helpers for payment records.

Nothing in this module performs I/O. The orchestrator and reconciler call
these functions at the point of a state transition (or on read, for the late
fee) so the derived values are computed in one visible place.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from .models import Payment, PaymentKind, PaymentStatus, PaymentView, SubscriptionStatus

CENT = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = 100

LEGAL_TRANSITIONS: FrozenSet[Tuple[PaymentStatus, PaymentStatus]] = frozenset(
    {
        (PaymentStatus.PENDING, PaymentStatus.COMPLETED),
        (PaymentStatus.PENDING, PaymentStatus.FAILED),
        (PaymentStatus.PENDING, PaymentStatus.CANCELLED),
        (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED),
    }
)


class TransitionOutcome(str, Enum):
    APPLY = "apply"
    REPEAT = "repeat"
    REJECT = "reject"


@dataclass(frozen=True)
class LateFeePolicy:
    """Late fee rule for overdue rent: ``rate`` of the amount after ``grace_days``."""

    grace_days: int = 5
    rate: Decimal = Decimal("0.05")


DEFAULT_LATE_FEE_POLICY = LateFeePolicy()


def plan_transition(current: PaymentStatus, target: PaymentStatus) -> TransitionOutcome:
    """Classify a requested status change.

    A request for the status the payment already has is a repeat, which
    callers treat as a successful no-op.
    """

    if current == target:
        return TransitionOutcome.REPEAT
    if (current, target) in LEGAL_TRANSITIONS:
        return TransitionOutcome.APPLY
    return TransitionOutcome.REJECT


def paid_date_for(status: PaymentStatus, now: datetime) -> Optional[datetime]:
    """Return the paid date a payment entering ``status`` must carry."""

    return now if status == PaymentStatus.COMPLETED else None


def to_minor_units(amount: Decimal) -> int:
    quantized = Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
    return int(quantized * MINOR_UNITS_PER_MAJOR)


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(int(amount)) / MINOR_UNITS_PER_MAJOR).quantize(CENT)


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def days_overdue(payment: Payment, now: datetime) -> int:
    if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED) or payment.paid_date is not None:
        return 0
    elapsed = _as_aware(now) - _as_aware(payment.due_date)
    return max(0, math.ceil(elapsed / timedelta(days=1)))


def compute_late_fee(
    payment: Payment,
    now: datetime,
    policy: LateFeePolicy = DEFAULT_LATE_FEE_POLICY,
) -> Decimal:
    if payment.kind != PaymentKind.RENT or payment.status != PaymentStatus.PENDING:
        return Decimal("0.00")
    if _as_aware(now) - _as_aware(payment.due_date) <= timedelta(days=policy.grace_days):
        return Decimal("0.00")
    return (Decimal(payment.amount) * policy.rate).quantize(CENT, rounding=ROUND_HALF_UP)


def total_amount(
    payment: Payment,
    now: datetime,
    policy: LateFeePolicy = DEFAULT_LATE_FEE_POLICY,
) -> Decimal:
    return Decimal(payment.amount) + compute_late_fee(payment, now, policy)


def build_view(
    payment: Payment,
    now: datetime,
    policy: LateFeePolicy = DEFAULT_LATE_FEE_POLICY,
) -> PaymentView:
    late_fee = compute_late_fee(payment, now, policy)
    overdue = days_overdue(payment, now)
    return PaymentView(
        payment=payment,
        late_fee=late_fee,
        total_amount=Decimal(payment.amount) + late_fee,
        days_overdue=overdue,
        is_overdue=overdue > 0,
    )


_ACTIVE_GATEWAY_STATUSES = {"active", "trialing"}
_CANCELLED_GATEWAY_STATUSES = {"canceled", "cancelled"}


def map_gateway_subscription_status(gateway_status: Optional[str]) -> SubscriptionStatus:
    """Collapse the gateway's subscription statuses onto the local three."""

    normalized = (gateway_status or "").strip().lower()
    if normalized in _ACTIVE_GATEWAY_STATUSES:
        return SubscriptionStatus.ACTIVE
    if normalized in _CANCELLED_GATEWAY_STATUSES:
        return SubscriptionStatus.CANCELLED
    return SubscriptionStatus.INACTIVE


def check_subscription_state(status: SubscriptionStatus, gateway_subscription_id: Optional[str]) -> None:
    if status != SubscriptionStatus.INACTIVE and not gateway_subscription_id:
        raise ValueError("gateway subscription id is required before a subscription can leave 'inactive'")


__all__ = [
    "DEFAULT_LATE_FEE_POLICY",
    "LEGAL_TRANSITIONS",
    "LateFeePolicy",
    "TransitionOutcome",
    "build_view",
    "check_subscription_state",
    "compute_late_fee",
    "days_overdue",
    "from_minor_units",
    "map_gateway_subscription_status",
    "paid_date_for",
    "plan_transition",
    "to_minor_units",
]
