import pathlib
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from estatepay.app.payments import (
    GatewayCustomer,
    GatewayEvent,
    GatewayPaymentIntent,
    GatewayRefund,
    GatewaySubscription,
    LedgerRepository,
    Payment,
    PaymentGateway,
    PaymentKind,
    PaymentOrchestrator,
    PaymentStatus,
    PropertyRecord,
    PropertyStatus,
    SubscriptionState,
    SubscriptionStatus,
    UpstreamError,
    UserAccount,
    UserRole,
    WebhookReconciler,
)
from estatepay.app.payments.gateway import string_metadata, verify_webhook
from estatepay.app.payments.lifecycle import to_minor_units
from estatepay.app.payments.repository import TRANSITION_COLUMNS

WEBHOOK_SECRET = "whsec_test_secret"
FIXED_NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class InMemoryLedgerRepository(LedgerRepository):
    def __init__(self) -> None:
        self.users: Dict[str, UserAccount] = {}
        self.properties: Dict[str, PropertyRecord] = {}
        self.payments: Dict[str, Payment] = {}
        self.effects: Set[Tuple[str, str]] = set()

    def add_user(
        self,
        user_id: str,
        *,
        role: UserRole = UserRole.TENANT,
        customer_id: Optional[str] = None,
    ) -> UserAccount:
        user = UserAccount(
            user_id=user_id,
            email=f"{user_id}@example.com",
            first_name=user_id.title(),
            last_name="Tester",
            role=role,
            subscription=SubscriptionState(gateway_customer_id=customer_id),
        )
        self.users[user_id] = user
        return user

    def add_property(self, property_id: str, *, owner_id: str, current_tenants: int = 0) -> PropertyRecord:
        record = PropertyRecord(
            property_id=property_id,
            owner_id=owner_id,
            name=f"Unit {property_id}",
            current_tenants=current_tenants,
            max_tenants=4,
        )
        self.properties[property_id] = record
        return record

    def add_payment(self, **fields: Any) -> Payment:
        fields.setdefault("payment_id", f"pay-{len(self.payments) + 1}")
        fields.setdefault("tenant_id", "tenant-1")
        fields.setdefault("landlord_id", "landlord-1")
        fields.setdefault("amount", Decimal("1000.00"))
        fields.setdefault("kind", PaymentKind.RENT)
        fields.setdefault("due_date", FIXED_NOW)
        payment = Payment(**fields)
        self.payments[payment.payment_id] = payment
        return payment

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        return self.users.get(user_id)

    def get_user_by_customer_id(self, customer_id: str) -> Optional[UserAccount]:
        for user in self.users.values():
            if user.gateway_customer_id == customer_id:
                return user
        return None

    def set_customer_id_if_absent(self, user_id: str, customer_id: str) -> str:
        user = self.users.get(user_id)
        if user is None:
            raise LookupError(user_id)
        if user.gateway_customer_id:
            return user.gateway_customer_id
        subscription = user.subscription.model_copy(update={"gateway_customer_id": customer_id})
        self.users[user_id] = user.model_copy(update={"subscription": subscription})
        return customer_id

    def save_subscription_state(self, user_id: str, state: SubscriptionState) -> Optional[UserAccount]:
        user = self.users.get(user_id)
        if user is None:
            return None
        if state.gateway_customer_id is None:
            state = state.model_copy(update={"gateway_customer_id": user.gateway_customer_id})
        updated = user.model_copy(update={"subscription": state})
        self.users[user_id] = updated
        return updated

    def update_subscription_status(
        self,
        user_id: str,
        *,
        status: SubscriptionStatus,
        gateway_subscription_id: Optional[str],
        plan: Optional[str] = None,
        current_period_end: Optional[datetime] = None,
    ) -> Optional[UserAccount]:
        user = self.users.get(user_id)
        if user is None:
            return None
        current = user.subscription
        subscription = current.model_copy(
            update={
                "status": status,
                "gateway_subscription_id": gateway_subscription_id or current.gateway_subscription_id,
                "plan": plan or current.plan,
                "current_period_end": current_period_end or current.current_period_end,
            }
        )
        updated = user.model_copy(update={"subscription": subscription})
        self.users[user_id] = updated
        return updated

    def get_property(self, property_id: str) -> Optional[PropertyRecord]:
        return self.properties.get(property_id)

    def create_payment(self, payment: Payment) -> Payment:
        self.payments[payment.payment_id] = payment
        return payment

    def record_invoice_payment(self, payment: Payment) -> bool:
        if any(existing.gateway_invoice_id == payment.gateway_invoice_id for existing in self.payments.values()):
            return False
        self.payments[payment.payment_id] = payment
        return True

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self.payments.get(payment_id)

    def get_payment_by_intent(self, payment_intent_id: str) -> Optional[Payment]:
        for payment in self.payments.values():
            if payment.gateway_payment_intent_id == payment_intent_id:
                return payment
        return None

    def attach_gateway_ids(
        self,
        payment_id: str,
        *,
        payment_intent_id: str,
        customer_id: Optional[str],
    ) -> Optional[Payment]:
        payment = self.payments.get(payment_id)
        if payment is None:
            return None
        updated = payment.model_copy(
            update={
                "gateway_payment_intent_id": payment_intent_id,
                "gateway_customer_id": customer_id or payment.gateway_customer_id,
            }
        )
        self.payments[payment_id] = updated
        return updated

    def transition_payment(
        self,
        payment_id: str,
        *,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        changes: Optional[Mapping[str, Any]] = None,
        note: Optional[str] = None,
    ) -> Optional[Payment]:
        changes = dict(changes or {})
        assert set(changes) <= TRANSITION_COLUMNS
        payment = self.payments.get(payment_id)
        if payment is None or payment.status != from_status:
            return None
        update: Dict[str, Any] = {"status": to_status, **changes}
        if note:
            update["notes"] = f"{payment.notes}\n{note}" if payment.notes else note
        updated = payment.model_copy(update=update)
        self.payments[payment_id] = updated
        return updated

    def apply_occupancy_once(self, payment_id: str, property_id: str) -> bool:
        marker = (payment_id, "occupancy_increment")
        if marker in self.effects:
            return False
        self.effects.add(marker)
        record = self.properties.get(property_id)
        if record is None:
            return False
        self.properties[property_id] = record.model_copy(
            update={"current_tenants": record.current_tenants + 1, "status": PropertyStatus.OCCUPIED}
        )
        return True

    def list_payments(
        self,
        *,
        tenant_id: Optional[str] = None,
        landlord_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        kind: Optional[PaymentKind] = None,
        due_from: Optional[datetime] = None,
        due_to: Optional[datetime] = None,
        due_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> Sequence[Payment]:
        matching = [
            payment
            for payment in self.payments.values()
            if (tenant_id is None or payment.tenant_id == tenant_id)
            and (landlord_id is None or payment.landlord_id == landlord_id)
            and (status is None or payment.status == status)
            and (kind is None or payment.kind == kind)
            and (due_from is None or payment.due_date >= due_from)
            and (due_to is None or payment.due_date <= due_to)
            and (due_before is None or payment.due_date < due_before)
        ]
        matching.sort(key=lambda payment: payment.due_date, reverse=True)
        return matching[:limit]


class FakePaymentGateway(PaymentGateway):
    def __init__(self, *, webhook_secret: str = WEBHOOK_SECRET) -> None:
        self.webhook_secret = webhook_secret
        self.failing: Set[str] = set()
        self.subscription_status = "incomplete"
        self.customers: List[Dict[str, Any]] = []
        self.intents: List[Dict[str, Any]] = []
        self.subscriptions: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failing:
            raise UpstreamError(detail={"operation": operation, "error": "gateway unavailable"})

    def create_customer(
        self,
        *,
        email: str,
        name: str,
        metadata: Mapping[str, str],
        idempotency_key: Optional[str] = None,
    ) -> GatewayCustomer:
        self._maybe_fail("customers.create")
        self.customers.append(
            {"email": email, "name": name, "metadata": dict(metadata), "idempotency_key": idempotency_key}
        )
        return GatewayCustomer(id=f"cus_{len(self.customers)}")

    def create_payment_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, str],
        idempotency_key: Optional[str] = None,
    ) -> GatewayPaymentIntent:
        self._maybe_fail("payment_intents.create")
        intent_id = f"pi_{len(self.intents) + 1}"
        self.intents.append(
            {
                "id": intent_id,
                "amount": to_minor_units(amount),
                "currency": currency,
                "metadata": dict(metadata),
                "idempotency_key": idempotency_key,
            }
        )
        return GatewayPaymentIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret_abc",
            amount=to_minor_units(amount),
            currency=currency,
            metadata=string_metadata(metadata),
        )

    def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        metadata: Mapping[str, str],
    ) -> GatewaySubscription:
        self._maybe_fail("subscriptions.create")
        subscription_id = f"sub_{len(self.subscriptions) + 1}"
        self.subscriptions.append(
            {"id": subscription_id, "customer_id": customer_id, "price_id": price_id, "metadata": dict(metadata)}
        )
        return GatewaySubscription(
            id=subscription_id,
            status=self.subscription_status,
            client_secret=f"{subscription_id}_secret",
            current_period_end=FIXED_NOW + timedelta(days=30),
        )

    def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> GatewayRefund:
        self._maybe_fail("refunds.create")
        refund_id = f"re_{len(self.refunds) + 1}"
        self.refunds.append({"payment_intent_id": payment_intent_id, "amount": amount, "reason": reason})
        return GatewayRefund(
            id=refund_id,
            amount=to_minor_units(amount) if amount is not None else None,
            status="succeeded",
        )

    def construct_event(self, raw_body: bytes, signature_header: Optional[str]) -> GatewayEvent:
        return verify_webhook(raw_body, signature_header, secret=self.webhook_secret, tolerance_seconds=300)


@pytest.fixture
def ledger() -> InMemoryLedgerRepository:
    repository = InMemoryLedgerRepository()
    repository.add_user("tenant-1", role=UserRole.TENANT)
    repository.add_user("landlord-1", role=UserRole.LANDLORD)
    repository.add_user("manager-1", role=UserRole.MANAGER)
    repository.add_property("prop-1", owner_id="landlord-1")
    return repository


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def orchestrator(ledger, gateway) -> PaymentOrchestrator:
    service = PaymentOrchestrator(repository=ledger, gateway=gateway)
    service._now = lambda: FIXED_NOW
    return service


@pytest.fixture
def reconciler(ledger, gateway) -> WebhookReconciler:
    service = WebhookReconciler(repository=ledger, gateway=gateway)
    service._now = lambda: FIXED_NOW
    return service


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def sign_webhook():
    from estatepay.app.services.payments import sign_payload

    def _sign(raw_body: bytes, *, secret: str = WEBHOOK_SECRET) -> str:
        return sign_payload(raw_body, secret)

    return _sign
