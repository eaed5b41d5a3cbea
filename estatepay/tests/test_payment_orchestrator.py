"""Tests for payment and subscription initiation and the supplementary payment operations."""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from estatepay.app.payments import (
    Actor,
    GatewaySubscription,
    Forbidden,
    InvalidTransition,
    NotFound,
    PaymentKind,
    PaymentStatus,
    SubscriptionStatus,
    Unauthorized,
    UpstreamError,
    UserRole,
    ValidationError,
)

TENANT = Actor(user_id="tenant-1", role=UserRole.TENANT)
LANDLORD = Actor(user_id="landlord-1", role=UserRole.LANDLORD)
MANAGER = Actor(user_id="manager-1", role=UserRole.MANAGER)


def test_initiate_rent_payment_creates_pending_payment_linked_to_intent(orchestrator, ledger, gateway):
    initiation = orchestrator.initiate_rent_payment(
        TENANT,
        amount=Decimal("2500.00"),
        kind="rent",
        property_id="prop-1",
        description="March rent",
    )

    payment = ledger.get_payment(initiation.payment_id)
    assert payment.status == PaymentStatus.PENDING
    assert payment.tenant_id == "tenant-1"
    assert payment.landlord_id == "landlord-1"
    assert payment.gateway_payment_intent_id == initiation.payment_intent_id
    assert payment.gateway_customer_id == "cus_1"
    assert payment.paid_date is None
    assert initiation.client_secret == f"{initiation.payment_intent_id}_secret_abc"

    intent = gateway.intents[0]
    assert intent["amount"] == 250000
    assert intent["currency"] == "usd"
    assert intent["idempotency_key"] == f"payment-intent-{payment.payment_id}"
    assert intent["metadata"] == {
        "paymentId": payment.payment_id,
        "userId": "tenant-1",
        "tenantId": "tenant-1",
        "propertyId": "prop-1",
        "kind": "rent",
        "description": "March rent",
    }
    assert ledger.get_user("tenant-1").gateway_customer_id == "cus_1"


def test_existing_gateway_customer_is_reused(orchestrator, ledger, gateway):
    ledger.add_user("tenant-2", customer_id="cus_existing")

    orchestrator.initiate_rent_payment(
        Actor(user_id="tenant-2", role=UserRole.TENANT),
        amount="100",
        kind=PaymentKind.MAINTENANCE,
    )

    assert gateway.customers == []
    payment = next(iter(ledger.payments.values()))
    assert payment.gateway_customer_id == "cus_existing"
    # Without a property the payer is also the payee.
    assert payment.landlord_id == "tenant-2"


def test_customer_creation_uses_user_scoped_idempotency_key(orchestrator, gateway):
    orchestrator.initiate_rent_payment(TENANT, amount=10, kind="rent")
    orchestrator.initiate_rent_payment(TENANT, amount=10, kind="rent")

    assert len(gateway.customers) == 1
    assert gateway.customers[0]["idempotency_key"] == "customer-tenant-1"
    assert gateway.customers[0]["metadata"] == {"userId": "tenant-1", "role": "tenant"}


def test_initiate_rent_payment_requires_actor(orchestrator, ledger, gateway):
    with pytest.raises(Unauthorized):
        orchestrator.initiate_rent_payment(None, amount=10, kind="rent")

    assert ledger.payments == {}
    assert gateway.intents == []


@pytest.mark.parametrize("amount", [0, -5, "0.001", "abc"])
def test_invalid_amount_is_rejected_before_any_write(orchestrator, ledger, gateway, amount):
    with pytest.raises(ValidationError):
        orchestrator.initiate_rent_payment(TENANT, amount=amount, kind="rent")

    assert ledger.payments == {}
    assert gateway.customers == []


def test_unknown_payment_type_is_rejected(orchestrator, ledger):
    with pytest.raises(ValidationError):
        orchestrator.initiate_rent_payment(TENANT, amount=10, kind="parking")
    assert ledger.payments == {}


def test_unknown_property_is_not_found(orchestrator, ledger, gateway):
    with pytest.raises(NotFound):
        orchestrator.initiate_rent_payment(TENANT, amount=10, kind="rent", property_id="missing")

    assert ledger.payments == {}
    assert gateway.customers == []


def test_unknown_payer_is_not_found(orchestrator):
    with pytest.raises(NotFound):
        orchestrator.initiate_rent_payment(Actor(user_id="ghost", role=UserRole.TENANT), amount=10, kind="rent")


def test_gateway_failure_leaves_pending_payment_without_intent(orchestrator, ledger, gateway):
    gateway.failing.add("payment_intents.create")

    with pytest.raises(UpstreamError) as excinfo:
        orchestrator.initiate_rent_payment(TENANT, amount=Decimal("900"), kind="rent", property_id="prop-1")

    assert excinfo.value.payload == {"error": "Internal server error"}
    [payment] = ledger.payments.values()
    assert payment.status == PaymentStatus.PENDING
    assert payment.gateway_payment_intent_id is None


def test_initiate_subscription_records_state_in_one_write(orchestrator, ledger, gateway):
    initiation = orchestrator.initiate_subscription(LANDLORD, price_id="price_pro", plan="professional")

    assert initiation.subscription_id == "sub_1"
    assert initiation.status == "incomplete"
    assert initiation.client_secret == "sub_1_secret"

    subscription = ledger.get_user("landlord-1").subscription
    assert subscription.plan == "professional"
    assert subscription.status == SubscriptionStatus.INACTIVE
    assert subscription.gateway_subscription_id == "sub_1"
    assert subscription.gateway_customer_id == "cus_1"
    assert subscription.current_period_end is not None
    assert gateway.subscriptions[0]["metadata"]["userId"] == "landlord-1"
    assert gateway.subscriptions[0]["metadata"]["plan"] == "professional"


def test_initiate_subscription_maps_active_gateway_status(orchestrator, ledger, gateway):
    gateway.subscription_status = "active"

    orchestrator.initiate_subscription(LANDLORD, price_id="price_pro", plan="professional")

    assert ledger.get_user("landlord-1").subscription.status == SubscriptionStatus.ACTIVE


def test_initiate_subscription_failure_leaves_user_unchanged(orchestrator, ledger, gateway):
    gateway.failing.add("subscriptions.create")

    with pytest.raises(UpstreamError):
        orchestrator.initiate_subscription(LANDLORD, price_id="price_pro", plan="professional")

    subscription = ledger.get_user("landlord-1").subscription
    assert subscription.status == SubscriptionStatus.INACTIVE
    assert subscription.gateway_subscription_id is None
    assert subscription.plan == "free"


def test_subscription_without_gateway_id_is_an_upstream_error(orchestrator, ledger, gateway, monkeypatch):
    monkeypatch.setattr(
        gateway,
        "create_subscription",
        lambda **kwargs: GatewaySubscription(id="", status="active"),
    )

    with pytest.raises(UpstreamError) as excinfo:
        orchestrator.initiate_subscription(LANDLORD, price_id="price_pro", plan="professional")

    assert excinfo.value.detail["operation"] == "subscriptions.create"
    assert excinfo.value.payload == {"error": "Internal server error"}
    assert ledger.get_user("landlord-1").subscription.status == SubscriptionStatus.INACTIVE


def test_initiate_subscription_requires_price_and_plan(orchestrator):
    with pytest.raises(ValidationError):
        orchestrator.initiate_subscription(LANDLORD, price_id=" ", plan="professional")


def test_landlord_refunds_completed_payment(orchestrator, ledger, gateway, fixed_now):
    ledger.add_payment(
        payment_id="pay-done",
        status=PaymentStatus.COMPLETED,
        paid_date=fixed_now,
        gateway_payment_intent_id="pi_done",
    )

    view = orchestrator.refund_payment(LANDLORD, "pay-done", reason="requested_by_customer")

    assert view.payment.status == PaymentStatus.REFUNDED
    assert view.payment.refunded_amount == Decimal("1000.00")
    assert view.payment.paid_date is None
    assert view.payment.refunded_at == fixed_now
    assert view.days_overdue == 0
    assert "Refunded via re_1" in view.payment.notes
    assert gateway.refunds == [
        {"payment_intent_id": "pi_done", "amount": None, "reason": "requested_by_customer"}
    ]


def test_partial_refund_records_amount(orchestrator, ledger, gateway, fixed_now):
    ledger.add_payment(
        payment_id="pay-done",
        status=PaymentStatus.COMPLETED,
        paid_date=fixed_now,
        gateway_payment_intent_id="pi_done",
    )

    view = orchestrator.refund_payment(MANAGER, "pay-done", amount="250.50")

    assert view.payment.refunded_amount == Decimal("250.50")
    assert gateway.refunds[0]["amount"] == Decimal("250.50")


def test_refund_rejected_for_tenant(orchestrator, ledger, gateway, fixed_now):
    ledger.add_payment(
        payment_id="pay-done",
        status=PaymentStatus.COMPLETED,
        paid_date=fixed_now,
        gateway_payment_intent_id="pi_done",
    )

    with pytest.raises(Forbidden):
        orchestrator.refund_payment(TENANT, "pay-done")
    assert gateway.refunds == []


def test_refund_rejected_for_pending_payment(orchestrator, ledger, gateway):
    ledger.add_payment(payment_id="pay-open", gateway_payment_intent_id="pi_open")

    with pytest.raises(InvalidTransition):
        orchestrator.refund_payment(LANDLORD, "pay-open")
    assert gateway.refunds == []


def test_refund_validates_amount_and_reason(orchestrator, ledger, fixed_now):
    ledger.add_payment(
        payment_id="pay-done",
        status=PaymentStatus.COMPLETED,
        paid_date=fixed_now,
        gateway_payment_intent_id="pi_done",
    )

    with pytest.raises(ValidationError):
        orchestrator.refund_payment(LANDLORD, "pay-done", amount="5000")
    with pytest.raises(ValidationError):
        orchestrator.refund_payment(LANDLORD, "pay-done", reason="changed_my_mind")


def test_refund_of_already_refunded_payment_is_a_no_op(orchestrator, ledger, gateway, fixed_now):
    ledger.add_payment(
        payment_id="pay-back",
        status=PaymentStatus.REFUNDED,
        refunded_at=fixed_now,
        gateway_payment_intent_id="pi_back",
    )

    view = orchestrator.refund_payment(LANDLORD, "pay-back")

    assert view.payment.status == PaymentStatus.REFUNDED
    assert gateway.refunds == []


def test_cancel_pending_payment(orchestrator, ledger):
    ledger.add_payment(payment_id="pay-open")

    view = orchestrator.cancel_payment(TENANT, "pay-open")

    assert view.payment.status == PaymentStatus.CANCELLED
    assert ledger.get_payment("pay-open").paid_date is None


def test_cancel_completed_payment_is_rejected(orchestrator, ledger, fixed_now):
    ledger.add_payment(payment_id="pay-done", status=PaymentStatus.COMPLETED, paid_date=fixed_now)

    with pytest.raises(InvalidTransition):
        orchestrator.cancel_payment(LANDLORD, "pay-done")


def test_cancel_by_unrelated_user_is_forbidden(orchestrator, ledger):
    ledger.add_user("tenant-9")
    ledger.add_payment(payment_id="pay-open")

    with pytest.raises(Forbidden):
        orchestrator.cancel_payment(Actor(user_id="tenant-9", role=UserRole.TENANT), "pay-open")


def test_get_payment_includes_derived_late_fee(orchestrator, ledger, fixed_now):
    ledger.add_payment(payment_id="pay-late", due_date=fixed_now - timedelta(days=8))

    view = orchestrator.get_payment(TENANT, "pay-late")

    assert view.late_fee == Decimal("50.00")
    assert view.total_amount == Decimal("1050.00")
    assert view.days_overdue == 8


def test_get_payment_hides_other_users_payments(orchestrator, ledger):
    ledger.add_payment(payment_id="pay-open")

    with pytest.raises(NotFound):
        orchestrator.get_payment(Actor(user_id="tenant-9", role=UserRole.TENANT), "pay-open")
    assert orchestrator.get_payment(MANAGER, "pay-open").payment.payment_id == "pay-open"


def test_payment_stats_group_by_status(orchestrator, ledger, fixed_now):
    ledger.add_payment(due_date=fixed_now - timedelta(days=10))
    ledger.add_payment(due_date=fixed_now - timedelta(days=1), amount=Decimal("500.00"))
    ledger.add_payment(status=PaymentStatus.COMPLETED, paid_date=fixed_now)
    ledger.add_payment(landlord_id="someone-else")

    stats = {summary.status: summary for summary in orchestrator.payment_stats(LANDLORD)}

    assert set(stats) == {PaymentStatus.PENDING, PaymentStatus.COMPLETED}
    assert stats[PaymentStatus.PENDING].count == 2
    assert stats[PaymentStatus.PENDING].total_amount == Decimal("1500.00")
    assert stats[PaymentStatus.PENDING].total_late_fees == Decimal("50.00")
    assert stats[PaymentStatus.COMPLETED].count == 1


def test_payment_stats_include_payments_due_on_the_end_date(orchestrator, ledger, fixed_now):
    end = fixed_now + timedelta(days=2)
    ledger.add_payment(payment_id="on-end", due_date=end)
    ledger.add_payment(payment_id="after-end", due_date=end + timedelta(seconds=1))

    stats = orchestrator.payment_stats(LANDLORD, start=end - timedelta(days=5), end=end)

    assert len(stats) == 1
    assert stats[0].status == PaymentStatus.PENDING
    assert stats[0].count == 1


def test_payment_stats_restricted_to_landlords_and_managers(orchestrator):
    with pytest.raises(Forbidden):
        orchestrator.payment_stats(TENANT)


def test_payment_stats_rejects_inverted_range(orchestrator, fixed_now):
    with pytest.raises(ValidationError):
        orchestrator.payment_stats(LANDLORD, start=fixed_now, end=fixed_now - timedelta(days=1))


def test_overdue_payments_lists_pending_rent_past_due(orchestrator, ledger, fixed_now):
    ledger.add_payment(payment_id="late", due_date=fixed_now - timedelta(days=3))
    ledger.add_payment(payment_id="future", due_date=fixed_now + timedelta(days=3))
    ledger.add_payment(payment_id="fixit", due_date=fixed_now - timedelta(days=3), kind=PaymentKind.MAINTENANCE)

    views = orchestrator.overdue_payments(LANDLORD)

    assert [view.payment.payment_id for view in views] == ["late"]
    assert views[0].is_overdue is True
