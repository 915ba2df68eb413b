# Overview: Payment Reconciliation; accumulates payments and derives payment status.

from __future__ import annotations

from flask import current_app

from .. import permissions
from ..errors import InvalidStateTransitionError, OverpaymentError, ValidationError
from ..extensions import db
from ..models import Order, OrderPayment
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    PAYMENT_METHODS,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_PARTIALLY_PAID,
    PAYMENT_STATUS_UNPAID,
)
from ..time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import begin_write_transaction, run_with_retry
from .permission_service import require_permission
from .tenant_service import TenantScope


def compute_payment_status(total_paid_cents: int, effective_total_cents: int, refunded_cents: int = 0) -> str:
    """
    Derive payment status from money in vs. the effective total (total - refunds).

    - unpaid: nothing paid and nothing refunded
    - paid: remaining balance is zero (including a fully refunded order)
    - partially_paid: something paid, balance remains
    """
    if total_paid_cents <= 0 and refunded_cents <= 0:
        return PAYMENT_STATUS_UNPAID
    balance = effective_total_cents - min(total_paid_cents, effective_total_cents)
    if balance <= 0:
        return PAYMENT_STATUS_PAID
    if total_paid_cents <= 0:
        return PAYMENT_STATUS_UNPAID
    return PAYMENT_STATUS_PARTIALLY_PAID


def refresh_payment_state(order: Order) -> None:
    """Recompute payment_status and amount_due_back in place (caller commits)."""
    effective = order.effective_total_cents
    order.payment_status = compute_payment_status(
        order.total_paid_cents, effective, order.refunded_amount_cents
    )
    order.amount_due_back_cents = max(0, order.total_paid_cents - effective)


def apply_payment(
    business_id: int,
    order_id: int,
    amount_cents: int,
    method: str,
    *,
    reference_number: str | None = None,
    user_id: int | None = None,
) -> OrderPayment:
    """
    Append one payment to an order and recompute its payment status.

    Raises:
        ValidationError for a non-positive amount or unknown method
        OverpaymentError if cumulative payments would exceed the effective total
        InvalidStateTransitionError for a cancelled order
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("amount_cents must be a positive integer", {"field": "amount_cents", "value": amount_cents})
    if method not in PAYMENT_METHODS:
        raise ValidationError("Unknown payment method", {"field": "method", "value": method, "allowed": list(PAYMENT_METHODS)})

    scope = TenantScope(business_id, user_id=user_id)

    def _op() -> OrderPayment:
        require_permission(user_id, permissions.PAYMENT_APPLY, business_id)
        begin_write_transaction()
        order = scope.get(Order, order_id, lock=True)

        if order.status == ORDER_STATUS_CANCELLED:
            raise InvalidStateTransitionError(
                "Cannot pay a cancelled order",
                {"order_id": order.id, "status": order.status},
            )

        effective = order.effective_total_cents
        if order.total_paid_cents + amount_cents > effective:
            raise OverpaymentError(
                "Payment exceeds the order's remaining balance",
                {
                    "order_id": order.id,
                    "amount_cents": amount_cents,
                    "total_paid_cents": order.total_paid_cents,
                    "effective_total_cents": effective,
                    "balance_due_cents": max(0, effective - order.total_paid_cents),
                },
            )

        now = utcnow()
        payment = OrderPayment(
            business_id=business_id,
            order_id=order.id,
            payment_method=method,
            amount_cents=amount_cents,
            reference_number=reference_number,
            created_by_user_id=user_id,
            paid_at=now,
        )
        db.session.add(payment)

        order.total_paid_cents = order.total_paid_cents + amount_cents
        refresh_payment_state(order)
        db.session.flush()

        append_audit_event(
            business_id=business_id,
            event_type="payment.applied",
            entity_type="order_payment",
            entity_id=payment.id,
            actor_user_id=user_id,
            order_id=order.id,
            occurred_at=now,
            payload={
                "amount_cents": amount_cents,
                "method": method,
                "payment_status": order.payment_status,
            },
        )
        db.session.commit()
        return payment

    payment = run_with_retry(_op)
    current_app.logger.info(
        "Applied %s payment of %s cents to order %s", method, amount_cents, order_id
    )
    return payment


def list_payments(business_id: int, order_id: int) -> list[OrderPayment]:
    scope = TenantScope(business_id)

    def _op() -> list[OrderPayment]:
        order = scope.get(Order, order_id)
        return (
            scope.query(OrderPayment)
            .filter(OrderPayment.order_id == order.id)
            .order_by(OrderPayment.id.asc())
            .all()
        )

    return run_with_retry(_op)
