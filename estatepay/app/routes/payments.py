"""API routes exposing rent payments, subscriptions, and the gateway webhook."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.concurrency import run_in_threadpool

from ... import app_context
from ..payments import Actor, Unauthorized
from ..schemas.payments import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    OverduePaymentsResponse,
    PaymentStatsResponse,
    PaymentStatusSummaryResponse,
    PaymentViewResponse,
    RefundRequest,
    WebhookAck,
)
from ..services.payments import get_payment_orchestrator, get_webhook_reconciler

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"


def require_actor(authorization: Optional[str] = Header(None)) -> Actor:
    actor = app_context.get_current_actor(authorization=authorization)
    if actor is None:
        raise Unauthorized()
    return actor


payments_router = APIRouter(prefix="/payments", tags=["payments"])
subscriptions_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@payments_router.post("/create", response_model=CreatePaymentResponse)
def create_payment(
    payload: CreatePaymentRequest,
    *,
    current_actor: Actor = Depends(require_actor),
) -> CreatePaymentResponse:
    orchestrator = get_payment_orchestrator()
    initiation = orchestrator.initiate_rent_payment(
        current_actor,
        amount=payload.amount,
        kind=payload.kind,
        property_id=payload.property_id,
        description=payload.description,
        currency=payload.currency,
    )
    return CreatePaymentResponse.from_initiation(initiation)


@payments_router.get("/stats", response_model=PaymentStatsResponse)
def payment_stats(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    *,
    current_actor: Actor = Depends(require_actor),
) -> PaymentStatsResponse:
    summaries = get_payment_orchestrator().payment_stats(current_actor, start=start, end=end)
    return PaymentStatsResponse(stats=[PaymentStatusSummaryResponse.from_summary(item) for item in summaries])


@payments_router.get("/overdue", response_model=OverduePaymentsResponse)
def overdue_payments(*, current_actor: Actor = Depends(require_actor)) -> OverduePaymentsResponse:
    views = get_payment_orchestrator().overdue_payments(current_actor)
    return OverduePaymentsResponse(
        payments=[PaymentViewResponse.from_view(view) for view in views],
        count=len(views),
    )


@payments_router.get("/{payment_id}", response_model=PaymentViewResponse)
def get_payment(payment_id: str, *, current_actor: Actor = Depends(require_actor)) -> PaymentViewResponse:
    view = get_payment_orchestrator().get_payment(current_actor, payment_id)
    return PaymentViewResponse.from_view(view)


@payments_router.post("/{payment_id}/refund", response_model=PaymentViewResponse)
def refund_payment(
    payment_id: str,
    payload: Optional[RefundRequest] = None,
    *,
    current_actor: Actor = Depends(require_actor),
) -> PaymentViewResponse:
    payload = payload or RefundRequest()
    view = get_payment_orchestrator().refund_payment(
        current_actor,
        payment_id,
        amount=payload.amount,
        reason=payload.reason,
    )
    return PaymentViewResponse.from_view(view)


@payments_router.post("/{payment_id}/cancel", response_model=PaymentViewResponse)
def cancel_payment(payment_id: str, *, current_actor: Actor = Depends(require_actor)) -> PaymentViewResponse:
    view = get_payment_orchestrator().cancel_payment(current_actor, payment_id)
    return PaymentViewResponse.from_view(view)


@subscriptions_router.post("/create", response_model=CreateSubscriptionResponse)
def create_subscription(
    payload: CreateSubscriptionRequest,
    *,
    current_actor: Actor = Depends(require_actor),
) -> CreateSubscriptionResponse:
    initiation = get_payment_orchestrator().initiate_subscription(
        current_actor,
        price_id=payload.price_id,
        plan=payload.plan,
    )
    return CreateSubscriptionResponse.from_initiation(initiation)


@webhooks_router.post("/gateway", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def receive_gateway_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
) -> WebhookAck:
    raw_body = await request.body()
    reconciler = get_webhook_reconciler()
    # Signature failures raise; handler failures are reported in the result.
    result = await run_in_threadpool(reconciler.handle, raw_body, stripe_signature)
    logger.debug("Webhook %s acknowledged with outcome %s", result.event_id, result.outcome.value)
    return WebhookAck(received=True)


__all__ = ["payments_router", "require_actor", "subscriptions_router", "webhooks_router"]
