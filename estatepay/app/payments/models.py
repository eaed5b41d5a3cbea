"""Domain models for rent payments and subscription billing."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator

# Money is kept as Decimal internally and rendered as a JSON number.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class PaymentKind(str, Enum):
    """What a payment is for."""

    RENT = "rent"
    SECURITY_DEPOSIT = "security_deposit"
    LATE_FEE = "late_fee"
    MAINTENANCE = "maintenance"
    SUBSCRIPTION = "subscription"
    OTHER = "other"


class PaymentStatus(str, Enum):
    """Lifecycle status of a local payment record."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    STRIPE = "stripe"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    CASH = "cash"
    OTHER = "other"


class SubscriptionStatus(str, Enum):
    """Local view of a user's recurring billing relationship."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"


class UserRole(str, Enum):
    LANDLORD = "landlord"
    TENANT = "tenant"
    MANAGER = "manager"


class PropertyStatus(str, Enum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"
    UNAVAILABLE = "unavailable"


FREE_PLAN = "free"
DEFAULT_PAID_PLAN = "professional"


class Actor(BaseModel):
    """Authenticated caller resolved by the access boundary."""

    user_id: str
    role: UserRole

    model_config = ConfigDict(frozen=True)


class SubscriptionState(BaseModel):
    """Subscription fields embedded in the user record."""

    plan: str = FREE_PLAN
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    gateway_customer_id: Optional[str] = None
    gateway_subscription_id: Optional[str] = None
    current_period_end: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class UserAccount(BaseModel):
    user_id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: UserRole
    subscription: SubscriptionState = Field(default_factory=SubscriptionState)

    model_config = ConfigDict(frozen=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def gateway_customer_id(self) -> Optional[str]:
        return self.subscription.gateway_customer_id


class PropertyRecord(BaseModel):
    property_id: str
    owner_id: str
    manager_id: Optional[str] = None
    name: str = ""
    status: PropertyStatus = PropertyStatus.AVAILABLE
    current_tenants: int = Field(default=0, ge=0)
    max_tenants: int = Field(default=1, ge=1)

    model_config = ConfigDict(frozen=True)


class Payment(BaseModel):
    """One money movement obligation or event.

    ``late_fee`` is intentionally absent: it is derived on read by
    :func:`estatepay.app.payments.lifecycle.compute_late_fee`.
    """

    payment_id: str
    tenant_id: str
    landlord_id: Optional[str] = None
    property_id: Optional[str] = None
    amount: Money = Field(ge=0)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    kind: PaymentKind
    status: PaymentStatus = PaymentStatus.PENDING
    method: PaymentMethod = PaymentMethod.STRIPE
    due_date: datetime
    paid_date: Optional[datetime] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    recurring: bool = False
    recurring_id: Optional[str] = None
    gateway_payment_intent_id: Optional[str] = None
    gateway_charge_id: Optional[str] = None
    gateway_invoice_id: Optional[str] = None
    gateway_subscription_id: Optional[str] = None
    gateway_customer_id: Optional[str] = None
    refunded_amount: Optional[Money] = None
    refunded_at: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()


class PaymentView(BaseModel):
    """Payment with the read-time derived figures attached."""

    payment: Payment
    late_fee: Money
    total_amount: Money
    days_overdue: int
    is_overdue: bool

    model_config = ConfigDict(frozen=True)


class PaymentInitiation(BaseModel):
    """Result of a successful rent payment initiation."""

    payment_id: str
    payment_intent_id: str
    client_secret: str

    model_config = ConfigDict(frozen=True)


class SubscriptionInitiation(BaseModel):
    subscription_id: str
    status: str
    client_secret: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class PaymentStatusSummary(BaseModel):
    """Per-status aggregate for a landlord's payments."""

    status: PaymentStatus
    count: int = 0
    total_amount: Money = Decimal("0")
    total_late_fees: Money = Decimal("0")

    model_config = ConfigDict(frozen=True)


class ReconciliationOutcome(str, Enum):
    """How the reconciler disposed of a single gateway event."""

    APPLIED = "applied"
    REPEAT = "repeat"
    DROPPED = "dropped"
    IGNORED = "ignored"
    ERROR = "error"


class ReconciliationResult(BaseModel):
    event_id: str
    event_type: str
    outcome: ReconciliationOutcome
    detail: Optional[str] = None

    model_config = ConfigDict(frozen=True)


__all__ = [
    "Actor",
    "DEFAULT_PAID_PLAN",
    "FREE_PLAN",
    "Money",
    "Payment",
    "PaymentInitiation",
    "PaymentKind",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentStatusSummary",
    "PaymentView",
    "PropertyRecord",
    "PropertyStatus",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "SubscriptionInitiation",
    "SubscriptionState",
    "SubscriptionStatus",
    "UserAccount",
    "UserRole",
]
