"""API schemas for payment, subscription, and webhook endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..payments import (
    PaymentInitiation,
    PaymentKind,
    PaymentStatus,
    PaymentStatusSummary,
    PaymentView,
    SubscriptionInitiation,
)
from ..payments.models import Money


class CreatePaymentRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    kind: PaymentKind = Field(validation_alias=AliasChoices("type", "kind"))
    property_id: Optional[str] = Field(default=None, alias="propertyId")
    description: Optional[str] = Field(default=None, max_length=500)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class CreatePaymentResponse(BaseModel):
    client_secret: str = Field(alias="clientSecret")
    payment_intent_id: str = Field(alias="paymentIntentId")
    payment_id: str = Field(alias="paymentId")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_initiation(cls, initiation: PaymentInitiation) -> "CreatePaymentResponse":
        return cls(
            client_secret=initiation.client_secret,
            payment_intent_id=initiation.payment_intent_id,
            payment_id=initiation.payment_id,
        )


class CreateSubscriptionRequest(BaseModel):
    price_id: str = Field(alias="priceId", min_length=1)
    plan: str = Field(min_length=1)

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class CreateSubscriptionResponse(BaseModel):
    subscription_id: str = Field(alias="subscriptionId")
    client_secret: Optional[str] = Field(default=None, alias="clientSecret")
    status: str

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_initiation(cls, initiation: SubscriptionInitiation) -> "CreateSubscriptionResponse":
        return cls(
            subscription_id=initiation.subscription_id,
            client_secret=initiation.client_secret,
            status=initiation.status,
        )


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class WebhookAck(BaseModel):
    received: bool = True


class PaymentViewResponse(BaseModel):
    payment_id: str = Field(alias="paymentId")
    tenant_id: str = Field(alias="tenantId")
    landlord_id: Optional[str] = Field(default=None, alias="landlordId")
    property_id: Optional[str] = Field(default=None, alias="propertyId")
    amount: Money
    currency: str
    type: PaymentKind
    status: PaymentStatus
    due_date: datetime = Field(alias="dueDate")
    paid_date: Optional[datetime] = Field(default=None, alias="paidDate")
    description: Optional[str] = None
    late_fee: Money = Field(alias="lateFee")
    total_amount: Money = Field(alias="totalAmount")
    days_overdue: int = Field(alias="daysOverdue")
    is_overdue: bool = Field(alias="isOverdue")
    refunded_amount: Optional[Money] = Field(default=None, alias="refundedAmount")
    refunded_at: Optional[datetime] = Field(default=None, alias="refundedAt")
    payment_intent_id: Optional[str] = Field(default=None, alias="paymentIntentId")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_view(cls, view: PaymentView) -> "PaymentViewResponse":
        payment = view.payment
        return cls(
            payment_id=payment.payment_id,
            tenant_id=payment.tenant_id,
            landlord_id=payment.landlord_id,
            property_id=payment.property_id,
            amount=payment.amount,
            currency=payment.currency,
            type=payment.kind,
            status=payment.status,
            due_date=payment.due_date,
            paid_date=payment.paid_date,
            description=payment.description,
            late_fee=view.late_fee,
            total_amount=view.total_amount,
            days_overdue=view.days_overdue,
            is_overdue=view.is_overdue,
            refunded_amount=payment.refunded_amount,
            refunded_at=payment.refunded_at,
            payment_intent_id=payment.gateway_payment_intent_id,
        )


class PaymentStatusSummaryResponse(BaseModel):
    status: PaymentStatus
    count: int
    total_amount: Money = Field(alias="totalAmount")
    total_late_fees: Money = Field(alias="totalLateFees")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: PaymentStatusSummary) -> "PaymentStatusSummaryResponse":
        return cls(
            status=summary.status,
            count=summary.count,
            total_amount=summary.total_amount,
            total_late_fees=summary.total_late_fees,
        )


class PaymentStatsResponse(BaseModel):
    stats: List[PaymentStatusSummaryResponse]


class OverduePaymentsResponse(BaseModel):
    payments: List[PaymentViewResponse]
    count: int
