"""Originates rent payments and subscriptions against the payment gateway."""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Union
from uuid import uuid4

from .errors import Forbidden, InvalidTransition, NotFound, Unauthorized, UpstreamError, ValidationError
from .gateway import PaymentGateway
from .lifecycle import (
    DEFAULT_LATE_FEE_POLICY,
    LateFeePolicy,
    TransitionOutcome,
    build_view,
    check_subscription_state,
    compute_late_fee,
    map_gateway_subscription_status,
    paid_date_for,
    plan_transition,
    to_minor_units,
)
from .models import (
    Actor,
    Payment,
    PaymentInitiation,
    PaymentKind,
    PaymentStatus,
    PaymentStatusSummary,
    PaymentView,
    PropertyRecord,
    SubscriptionInitiation,
    SubscriptionState,
    UserAccount,
    UserRole,
)
from .repository import LedgerRepository

logger = logging.getLogger(__name__)

REFUND_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer"})
STATS_SCAN_LIMIT = 10_000


def _parse_amount(value: Union[Decimal, float, int, str]) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Amount must be a number") from exc
    if not amount.is_finite() or amount <= 0 or to_minor_units(amount) <= 0:
        raise ValidationError("Amount must be greater than zero")
    return amount


@dataclass
class PaymentOrchestrator:
    """Creates local payment records and links them to gateway objects.

    A local record exists from the moment an obligation is known. If the
    gateway call that follows fails, the record stays ``pending`` with no
    gateway id attached and the failure surfaces as :class:`UpstreamError`.
    """

    repository: LedgerRepository
    gateway: PaymentGateway
    late_fee_policy: LateFeePolicy = DEFAULT_LATE_FEE_POLICY
    default_currency: str = "usd"

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def initiate_rent_payment(
        self,
        actor: Optional[Actor],
        *,
        amount: Union[Decimal, float, int, str],
        kind: Union[PaymentKind, str],
        property_id: Optional[str] = None,
        description: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> PaymentInitiation:
        if actor is None:
            raise Unauthorized()
        parsed_amount = _parse_amount(amount)
        try:
            payment_kind = PaymentKind(kind)
        except ValueError as exc:
            raise ValidationError(f"Unknown payment type: {kind}") from exc
        payment_currency = (currency or self.default_currency).lower()
        if len(payment_currency) != 3:
            raise ValidationError("Currency must be a 3-letter code")

        payer = self._require_user(actor.user_id)
        rental: Optional[PropertyRecord] = None
        if property_id:
            rental = self.repository.get_property(property_id)
            if rental is None:
                raise NotFound("Property not found")

        customer_id = self._ensure_customer(payer)

        payment = self.repository.create_payment(
            Payment(
                payment_id=uuid4().hex,
                tenant_id=payer.user_id,
                landlord_id=rental.owner_id if rental else payer.user_id,
                property_id=rental.property_id if rental else None,
                amount=parsed_amount,
                currency=payment_currency,
                kind=payment_kind,
                status=PaymentStatus.PENDING,
                due_date=self._now(),
                description=description or f"{payment_kind.value} payment",
            )
        )

        try:
            intent = self.gateway.create_payment_intent(
                amount=parsed_amount,
                currency=payment_currency,
                metadata={
                    "paymentId": payment.payment_id,
                    "userId": payer.user_id,
                    "tenantId": payer.user_id,
                    "propertyId": payment.property_id or "",
                    "kind": payment_kind.value,
                    "description": payment.description or "",
                },
                idempotency_key=f"payment-intent-{payment.payment_id}",
            )
        except UpstreamError:
            logger.error(
                "Payment %s left pending without a gateway intent",
                payment.payment_id,
                extra={"payment_id": payment.payment_id, "payment_tenant_id": payer.user_id},
            )
            raise

        linked = self.repository.attach_gateway_ids(
            payment.payment_id,
            payment_intent_id=intent.id,
            customer_id=customer_id,
        )
        if linked is None:
            raise RuntimeError(f"Payment {payment.payment_id} disappeared before its intent was attached")

        logger.info(
            "Payment %s initiated with intent %s",
            payment.payment_id,
            intent.id,
            extra={
                "payment_id": payment.payment_id,
                "payment_intent_id": intent.id,
                "payment_kind": payment_kind.value,
            },
        )
        return PaymentInitiation(
            payment_id=payment.payment_id,
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
        )

    def initiate_subscription(
        self,
        actor: Optional[Actor],
        *,
        price_id: str,
        plan: str,
    ) -> SubscriptionInitiation:
        if actor is None:
            raise Unauthorized()
        if not price_id or not price_id.strip() or not plan or not plan.strip():
            raise ValidationError("Price ID and plan are required")

        user = self._require_user(actor.user_id)
        customer_id = self._ensure_customer(user)

        subscription = self.gateway.create_subscription(
            customer_id=customer_id,
            price_id=price_id.strip(),
            metadata={"userId": user.user_id, "plan": plan.strip(), "email": user.email},
        )

        state = SubscriptionState(
            plan=plan.strip(),
            status=map_gateway_subscription_status(subscription.status),
            gateway_customer_id=customer_id,
            gateway_subscription_id=subscription.id,
            current_period_end=subscription.current_period_end,
        )
        try:
            check_subscription_state(state.status, state.gateway_subscription_id)
        except ValueError as exc:
            logger.error(
                "Gateway returned subscription without an id for user %s status=%s",
                user.user_id,
                subscription.status,
                extra={"subscription_plan": state.plan},
            )
            raise UpstreamError(
                detail={"operation": "subscriptions.create", "error": str(exc)}
            ) from exc
        if self.repository.save_subscription_state(user.user_id, state) is None:
            raise NotFound("User not found")

        logger.info(
            "Subscription %s created for user %s status=%s",
            subscription.id,
            user.user_id,
            subscription.status,
            extra={"subscription_id": subscription.id, "subscription_plan": state.plan},
        )
        return SubscriptionInitiation(
            subscription_id=subscription.id,
            status=subscription.status,
            client_secret=subscription.client_secret,
        )

    def refund_payment(
        self,
        actor: Optional[Actor],
        payment_id: str,
        *,
        amount: Optional[Union[Decimal, float, int, str]] = None,
        reason: Optional[str] = None,
    ) -> PaymentView:
        if actor is None:
            raise Unauthorized()
        payment = self._require_payment(payment_id)
        if actor.user_id != payment.landlord_id and actor.role != UserRole.MANAGER:
            raise Forbidden("Only the payee can refund this payment")

        outcome = plan_transition(payment.status, PaymentStatus.REFUNDED)
        if outcome == TransitionOutcome.REPEAT:
            return build_view(payment, self._now(), self.late_fee_policy)
        if outcome == TransitionOutcome.REJECT:
            raise InvalidTransition(f"Cannot refund a {payment.status.value} payment")
        if not payment.gateway_payment_intent_id:
            raise InvalidTransition("Payment has no gateway charge to refund")

        refund_amount = _parse_amount(amount) if amount is not None else None
        if refund_amount is not None and refund_amount > payment.amount:
            raise ValidationError("Refund amount exceeds the payment amount")
        if reason is not None and reason not in REFUND_REASONS:
            raise ValidationError(f"Refund reason must be one of {sorted(REFUND_REASONS)}")

        refund = self.gateway.create_refund(
            payment_intent_id=payment.gateway_payment_intent_id,
            amount=refund_amount,
            reason=reason,
        )
        now = self._now()
        updated = self.repository.transition_payment(
            payment.payment_id,
            from_status=PaymentStatus.COMPLETED,
            to_status=PaymentStatus.REFUNDED,
            changes={
                "paid_date": paid_date_for(PaymentStatus.REFUNDED, now),
                "refunded_amount": refund_amount if refund_amount is not None else payment.amount,
                "refunded_at": now,
            },
            note=f"Refunded via {refund.id}",
        )
        if updated is None:
            current = self._require_payment(payment.payment_id)
            if current.status != PaymentStatus.REFUNDED:
                raise InvalidTransition(f"Cannot refund a {current.status.value} payment")
            updated = current

        logger.info(
            "Payment %s refunded refund=%s",
            payment.payment_id,
            refund.id,
            extra={"payment_id": payment.payment_id, "payment_refund_id": refund.id},
        )
        return build_view(updated, self._now(), self.late_fee_policy)

    def cancel_payment(self, actor: Optional[Actor], payment_id: str) -> PaymentView:
        if actor is None:
            raise Unauthorized()
        payment = self._require_payment(payment_id)
        if actor.user_id not in {payment.tenant_id, payment.landlord_id} and actor.role != UserRole.MANAGER:
            raise Forbidden("Cannot cancel another user's payment")

        outcome = plan_transition(payment.status, PaymentStatus.CANCELLED)
        if outcome == TransitionOutcome.REPEAT:
            return build_view(payment, self._now(), self.late_fee_policy)
        if outcome == TransitionOutcome.REJECT:
            raise InvalidTransition(f"Cannot cancel a {payment.status.value} payment")

        updated = self.repository.transition_payment(
            payment.payment_id,
            from_status=PaymentStatus.PENDING,
            to_status=PaymentStatus.CANCELLED,
        )
        if updated is None:
            current = self._require_payment(payment.payment_id)
            raise InvalidTransition(f"Cannot cancel a {current.status.value} payment")
        return build_view(updated, self._now(), self.late_fee_policy)

    def get_payment(self, actor: Optional[Actor], payment_id: str) -> PaymentView:
        if actor is None:
            raise Unauthorized()
        payment = self.repository.get_payment(payment_id)
        if payment is None or not self._can_view(actor, payment):
            raise NotFound("Payment not found")
        return build_view(payment, self._now(), self.late_fee_policy)

    def payment_stats(
        self,
        actor: Optional[Actor],
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[PaymentStatusSummary]:
        """Count, amount, and late fee totals per status for the caller's payee payments."""

        if actor is None:
            raise Unauthorized()
        if actor.role == UserRole.TENANT:
            raise Forbidden("Payment statistics are available to landlords and managers")
        if start and end and start > end:
            raise ValidationError("start must not be after end")

        now = self._now()
        counts: Dict[PaymentStatus, int] = defaultdict(int)
        amounts: Dict[PaymentStatus, Decimal] = defaultdict(Decimal)
        late_fees: Dict[PaymentStatus, Decimal] = defaultdict(Decimal)
        payments = self.repository.list_payments(
            landlord_id=actor.user_id,
            due_from=start,
            due_to=end,
            limit=STATS_SCAN_LIMIT,
        )
        for payment in payments:
            counts[payment.status] += 1
            amounts[payment.status] += Decimal(payment.amount)
            late_fees[payment.status] += compute_late_fee(payment, now, self.late_fee_policy)

        return [
            PaymentStatusSummary(
                status=status,
                count=counts[status],
                total_amount=amounts[status],
                total_late_fees=late_fees[status],
            )
            for status in PaymentStatus
            if counts[status]
        ]

    def overdue_payments(self, actor: Optional[Actor]) -> List[PaymentView]:
        if actor is None:
            raise Unauthorized()
        now = self._now()
        payments = self.repository.list_payments(
            landlord_id=actor.user_id,
            status=PaymentStatus.PENDING,
            kind=PaymentKind.RENT,
            due_before=now,
        )
        return [build_view(payment, now, self.late_fee_policy) for payment in payments]

    def _require_user(self, user_id: str) -> UserAccount:
        user = self.repository.get_user(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    def _require_payment(self, payment_id: str) -> Payment:
        payment = self.repository.get_payment(payment_id)
        if payment is None:
            raise NotFound("Payment not found")
        return payment

    @staticmethod
    def _can_view(actor: Actor, payment: Payment) -> bool:
        return actor.role == UserRole.MANAGER or actor.user_id in {payment.tenant_id, payment.landlord_id}

    def _ensure_customer(self, user: UserAccount) -> str:
        if user.gateway_customer_id:
            return user.gateway_customer_id

        customer = self.gateway.create_customer(
            email=user.email,
            name=user.full_name or user.email,
            metadata={"userId": user.user_id, "role": user.role.value},
            idempotency_key=f"customer-{user.user_id}",
        )
        stored = self.repository.set_customer_id_if_absent(user.user_id, customer.id)
        if stored != customer.id:
            # A concurrent request cached its customer first; ours is orphaned.
            logger.warning(
                "Discarded duplicate gateway customer %s for user %s (kept %s)",
                customer.id,
                user.user_id,
                stored,
                extra={"payment_user_id": user.user_id, "gateway_customer_id": stored},
            )
        return stored


__all__ = ["PaymentOrchestrator", "REFUND_REASONS"]
