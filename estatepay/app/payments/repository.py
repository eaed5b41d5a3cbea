"""Persistence layer for payments, user subscription state, and occupancy."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .models import (
    Payment,
    PaymentKind,
    PaymentMethod,
    PaymentStatus,
    PropertyRecord,
    PropertyStatus,
    SubscriptionState,
    SubscriptionStatus,
    UserAccount,
    UserRole,
)

from ... import app_context


class LedgerRepository(Protocol):
    """Keyed and conditional store operations required by the payments core."""

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        ...

    def get_user_by_customer_id(self, customer_id: str) -> Optional[UserAccount]:
        ...

    def set_customer_id_if_absent(self, user_id: str, customer_id: str) -> str:
        """Store ``customer_id`` unless one is already set; return the stored id."""

    def save_subscription_state(self, user_id: str, state: SubscriptionState) -> Optional[UserAccount]:
        ...

    def update_subscription_status(
        self,
        user_id: str,
        *,
        status: SubscriptionStatus,
        gateway_subscription_id: Optional[str],
        plan: Optional[str] = None,
        current_period_end: Optional[datetime] = None,
    ) -> Optional[UserAccount]:
        ...

    def get_property(self, property_id: str) -> Optional[PropertyRecord]:
        ...

    def create_payment(self, payment: Payment) -> Payment:
        ...

    def record_invoice_payment(self, payment: Payment) -> bool:
        """Insert an invoice-derived payment unless its invoice id is already recorded."""

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        ...

    def get_payment_by_intent(self, payment_intent_id: str) -> Optional[Payment]:
        ...

    def attach_gateway_ids(
        self,
        payment_id: str,
        *,
        payment_intent_id: str,
        customer_id: Optional[str],
    ) -> Optional[Payment]:
        ...

    def transition_payment(
        self,
        payment_id: str,
        *,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        changes: Optional[Mapping[str, Any]] = None,
        note: Optional[str] = None,
    ) -> Optional[Payment]:
        """Move a payment out of ``from_status``; ``None`` when it was not in that status."""

    def apply_occupancy_once(self, payment_id: str, property_id: str) -> bool:
        """Increment occupancy for ``property_id`` unless ``payment_id`` already did."""

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
        ...


# Columns a status transition may write alongside ``status``.
TRANSITION_COLUMNS = frozenset(
    {
        "paid_date",
        "amount",
        "gateway_customer_id",
        "gateway_charge_id",
        "refunded_amount",
        "refunded_at",
    }
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = app_context.get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_user(row: Mapping[str, Any]) -> UserAccount:
    return UserAccount(
        user_id=str(row["id"]),
        email=row["email"],
        first_name=row.get("first_name") or "",
        last_name=row.get("last_name") or "",
        role=UserRole(row["role"]),
        subscription=SubscriptionState(
            plan=row.get("plan") or "free",
            status=SubscriptionStatus(row.get("subscription_status") or SubscriptionStatus.INACTIVE.value),
            gateway_customer_id=row.get("gateway_customer_id"),
            gateway_subscription_id=row.get("gateway_subscription_id"),
            current_period_end=row.get("current_period_end"),
        ),
    )


def _row_to_property(row: Mapping[str, Any]) -> PropertyRecord:
    return PropertyRecord(
        property_id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        manager_id=row.get("manager_id"),
        name=row.get("name") or "",
        status=PropertyStatus(row["status"]),
        current_tenants=int(row["current_tenants"]),
        max_tenants=int(row["max_tenants"]),
    )


def _row_to_payment(row: Mapping[str, Any]) -> Payment:
    refunded = row.get("refunded_amount")
    return Payment(
        payment_id=str(row["payment_id"]),
        tenant_id=str(row["tenant_id"]),
        landlord_id=row.get("landlord_id"),
        property_id=row.get("property_id"),
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        kind=PaymentKind(row["kind"]),
        status=PaymentStatus(row["status"]),
        method=PaymentMethod(row["method"]),
        due_date=row["due_date"],
        paid_date=row.get("paid_date"),
        description=row.get("description"),
        notes=row.get("notes"),
        recurring=bool(row.get("recurring")),
        recurring_id=row.get("recurring_id"),
        gateway_payment_intent_id=row.get("gateway_payment_intent_id"),
        gateway_charge_id=row.get("gateway_charge_id"),
        gateway_invoice_id=row.get("gateway_invoice_id"),
        gateway_subscription_id=row.get("gateway_subscription_id"),
        gateway_customer_id=row.get("gateway_customer_id"),
        refunded_amount=Decimal(refunded) if refunded is not None else None,
        refunded_at=row.get("refunded_at"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _payment_params(payment: Payment) -> dict:
    return {
        "payment_id": payment.payment_id,
        "tenant_id": payment.tenant_id,
        "landlord_id": payment.landlord_id,
        "property_id": payment.property_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "kind": payment.kind.value,
        "status": payment.status.value,
        "method": payment.method.value,
        "due_date": payment.due_date,
        "paid_date": payment.paid_date,
        "description": payment.description,
        "notes": payment.notes,
        "recurring": payment.recurring,
        "recurring_id": payment.recurring_id,
        "gateway_payment_intent_id": payment.gateway_payment_intent_id,
        "gateway_charge_id": payment.gateway_charge_id,
        "gateway_invoice_id": payment.gateway_invoice_id,
        "gateway_subscription_id": payment.gateway_subscription_id,
        "gateway_customer_id": payment.gateway_customer_id,
        "metadata": psycopg2.extras.Json(payment.metadata),
    }


_INSERT_PAYMENT = """
    INSERT INTO payments (
        payment_id,
        tenant_id,
        landlord_id,
        property_id,
        amount,
        currency,
        kind,
        status,
        method,
        due_date,
        paid_date,
        description,
        notes,
        recurring,
        recurring_id,
        gateway_payment_intent_id,
        gateway_charge_id,
        gateway_invoice_id,
        gateway_subscription_id,
        gateway_customer_id,
        metadata
    )
    VALUES (%(payment_id)s, %(tenant_id)s, %(landlord_id)s, %(property_id)s, %(amount)s,
            %(currency)s, %(kind)s, %(status)s, %(method)s, %(due_date)s, %(paid_date)s,
            %(description)s, %(notes)s, %(recurring)s, %(recurring_id)s,
            %(gateway_payment_intent_id)s, %(gateway_charge_id)s, %(gateway_invoice_id)s,
            %(gateway_subscription_id)s, %(gateway_customer_id)s, %(metadata)s)
"""


class PostgresLedgerRepository:
    """Concrete repository persisting the payment ledger in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, _):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM users WHERE id = %s LIMIT 1", (user_id,))
            row = cursor.fetchone()
            return _row_to_user(row) if row else None

    def get_user_by_customer_id(self, customer_id: str) -> Optional[UserAccount]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM users WHERE gateway_customer_id = %s LIMIT 1", (customer_id,))
            row = cursor.fetchone()
            return _row_to_user(row) if row else None

    def set_customer_id_if_absent(self, user_id: str, customer_id: str) -> str:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET gateway_customer_id = %s, updated_at = NOW()
                WHERE id = %s AND gateway_customer_id IS NULL
                RETURNING gateway_customer_id
                """,
                (customer_id, user_id),
            )
            row = cursor.fetchone()
            if row:
                return row["gateway_customer_id"]
            cursor.execute("SELECT gateway_customer_id FROM users WHERE id = %s", (user_id,))
            row = cursor.fetchone()
            if not row or not row["gateway_customer_id"]:
                raise LookupError(f"User {user_id} not found while caching customer id")
            return row["gateway_customer_id"]

    def save_subscription_state(self, user_id: str, state: SubscriptionState) -> Optional[UserAccount]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET plan = %(plan)s,
                    subscription_status = %(status)s,
                    gateway_customer_id = COALESCE(%(customer_id)s, gateway_customer_id),
                    gateway_subscription_id = %(subscription_id)s,
                    current_period_end = %(period_end)s,
                    updated_at = NOW()
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {
                    "plan": state.plan,
                    "status": state.status.value,
                    "customer_id": state.gateway_customer_id,
                    "subscription_id": state.gateway_subscription_id,
                    "period_end": state.current_period_end,
                    "user_id": user_id,
                },
            )
            row = cursor.fetchone()
            return _row_to_user(row) if row else None

    def update_subscription_status(
        self,
        user_id: str,
        *,
        status: SubscriptionStatus,
        gateway_subscription_id: Optional[str],
        plan: Optional[str] = None,
        current_period_end: Optional[datetime] = None,
    ) -> Optional[UserAccount]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET subscription_status = %(status)s,
                    gateway_subscription_id = COALESCE(%(subscription_id)s, gateway_subscription_id),
                    plan = COALESCE(%(plan)s, plan),
                    current_period_end = COALESCE(%(period_end)s, current_period_end),
                    updated_at = NOW()
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {
                    "status": status.value,
                    "subscription_id": gateway_subscription_id,
                    "plan": plan,
                    "period_end": current_period_end,
                    "user_id": user_id,
                },
            )
            row = cursor.fetchone()
            return _row_to_user(row) if row else None

    def get_property(self, property_id: str) -> Optional[PropertyRecord]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM properties WHERE id = %s LIMIT 1", (property_id,))
            row = cursor.fetchone()
            return _row_to_property(row) if row else None

    def create_payment(self, payment: Payment) -> Payment:
        with self._cursor() as cursor:
            cursor.execute(_INSERT_PAYMENT + " RETURNING *", _payment_params(payment))
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist payment")
            return _row_to_payment(row)

    def record_invoice_payment(self, payment: Payment) -> bool:
        if not payment.gateway_invoice_id:
            raise ValueError("invoice payments require a gateway invoice id")
        with self._cursor() as cursor:
            cursor.execute(
                _INSERT_PAYMENT + " ON CONFLICT (gateway_invoice_id) DO NOTHING",
                _payment_params(payment),
            )
            return cursor.rowcount > 0

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM payments WHERE payment_id = %s LIMIT 1", (payment_id,))
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def get_payment_by_intent(self, payment_intent_id: str) -> Optional[Payment]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM payments WHERE gateway_payment_intent_id = %s LIMIT 1",
                (payment_intent_id,),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def attach_gateway_ids(
        self,
        payment_id: str,
        *,
        payment_intent_id: str,
        customer_id: Optional[str],
    ) -> Optional[Payment]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE payments
                SET gateway_payment_intent_id = %s,
                    gateway_customer_id = COALESCE(%s, gateway_customer_id),
                    updated_at = NOW()
                WHERE payment_id = %s
                RETURNING *
                """,
                (payment_intent_id, customer_id, payment_id),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

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
        unknown = set(changes) - TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported payment columns in transition: {sorted(unknown)}")

        assignments = ["status = %(to_status)s", "updated_at = NOW()"]
        params: dict = {
            "payment_id": payment_id,
            "from_status": from_status.value,
            "to_status": to_status.value,
        }
        for column, value in changes.items():
            assignments.append(f"{column} = %({column})s")
            params[column] = value
        if note:
            assignments.append("notes = CONCAT_WS(E'\\n', notes, %(note)s)")
            params["note"] = note

        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE payments
                SET {", ".join(assignments)}
                WHERE payment_id = %(payment_id)s AND status = %(from_status)s
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def apply_occupancy_once(self, payment_id: str, property_id: str) -> bool:
        # Marker insert and increment share one transaction.
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO payment_webhook_effects (payment_id, effect, target_id)
                VALUES (%s, 'occupancy_increment', %s)
                ON CONFLICT (payment_id, effect) DO NOTHING
                """,
                (payment_id, property_id),
            )
            if cursor.rowcount == 0:
                return False
            cursor.execute(
                """
                UPDATE properties
                SET current_tenants = current_tenants + 1,
                    status = 'occupied',
                    updated_at = NOW()
                WHERE id = %s
                """,
                (property_id,),
            )
            return cursor.rowcount > 0

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
    ) -> list[Payment]:
        clauses = []
        params: list = []
        if tenant_id is not None:
            clauses.append("tenant_id = %s")
            params.append(tenant_id)
        if landlord_id is not None:
            clauses.append("landlord_id = %s")
            params.append(landlord_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if kind is not None:
            clauses.append("kind = %s")
            params.append(kind.value)
        if due_from is not None:
            clauses.append("due_date >= %s")
            params.append(due_from)
        if due_to is not None:
            clauses.append("due_date <= %s")
            params.append(due_to)
        if due_before is not None:
            clauses.append("due_date < %s")
            params.append(due_before)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM payments
                {where}
                ORDER BY due_date DESC
                LIMIT %s
                """,
                params,
            )
            rows = cursor.fetchall() or []
            return [_row_to_payment(row) for row in rows]


__all__ = ["LedgerRepository", "PostgresLedgerRepository", "TRANSITION_COLUMNS", "managed_connection"]
