# Overview: Refund Processor; reverses stock and money for all or part of an order.

from __future__ import annotations

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from .. import permissions
from ..errors import InvalidStateTransitionError, NotFoundError, RefundExceedsOriginalError, ValidationError
from ..extensions import db
from ..models import InventoryEntry, InventoryMovement, Order, OrderItem, Refund, RefundItem
from ..models.inventory import MOVEMENT_IN, MOVEMENT_OUT
from ..models.orders import ORDER_STATUS_DELIVERED, ORDER_STATUS_PAID, ORDER_STATUS_SHIPPED
from ..models.refunds import (
    REFUND_STATUS_FAILED,
    REFUND_STATUS_PENDING,
    REFUND_STATUS_PROCESSED,
    REFUND_TYPE_FULL,
    REFUND_TYPE_PARTIAL,
)
from ..time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import begin_write_transaction, run_with_retry
from .document_service import next_document_number
from .movement_service import apply_movement
from .payment_service import refresh_payment_state
from .permission_service import require_permission
from .tenant_service import TenantScope
"""
Refund Invariants (authoritative)

- Only paid, shipped or delivered orders are refundable.
- Per order item: refunded_quantity + requested <= quantity; otherwise
  RefundExceedsOriginalError naming the first offending item, nothing written.
- full: every item's remaining refundable quantity.
- Stock returns to the entries the item's OUT movements drew from, latest
  draw first, never more than was drawn from an entry (minus earlier returns).
- Amount per item comes from its allocated share of the order total:
  the final units take whatever of the share is left, earlier partial refunds
  take floor(share * qty / item quantity). Refunding everything returns the
  order total exactly.
- Money owed back is recorded on the order (amount_due_back); moving it is external.
- A storage failure rolls everything back; a `failed` Refund row is then
  written in its own transaction.
"""


REFUNDABLE_STATUSES = {ORDER_STATUS_PAID, ORDER_STATUS_SHIPPED, ORDER_STATUS_DELIVERED}


def _validate_request(items, refund_type: str) -> list[tuple[int, int]]:
    if refund_type not in (REFUND_TYPE_FULL, REFUND_TYPE_PARTIAL):
        raise ValidationError(
            "Unknown refund type",
            {"field": "refund_type", "value": refund_type, "allowed": [REFUND_TYPE_FULL, REFUND_TYPE_PARTIAL]},
        )
    if refund_type == REFUND_TYPE_FULL:
        if items:
            raise ValidationError("items are not accepted for a full refund", {"field": "items"})
        return []
    if not items:
        raise ValidationError("at least one item is required for a partial refund", {"field": "items"})

    merged: dict[int, int] = {}
    for index, item in enumerate(items):
        order_item_id = item.get("order_item_id")
        quantity = item.get("quantity")
        if isinstance(order_item_id, bool) or not isinstance(order_item_id, int):
            raise ValidationError(
                "order_item_id must be an integer",
                {"field": "order_item_id", "index": index, "value": order_item_id},
            )
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(
                "quantity must be a positive integer",
                {"field": "quantity", "index": index, "value": quantity},
            )
        merged[order_item_id] = merged.get(order_item_id, 0) + quantity
    return list(merged.items())


def refund_amount_for(item: OrderItem, quantity: int) -> int:
    if quantity >= item.refundable_quantity:
        return item.allocated_total_cents - item.refunded_amount_cents
    return item.allocated_total_cents * quantity // item.quantity


def _plan_items(scope: TenantScope, order: Order, requested, refund_type: str) -> list[tuple[OrderItem, int]]:
    if refund_type == REFUND_TYPE_FULL:
        plan = [(item, item.refundable_quantity) for item in order.items if item.refundable_quantity > 0]
        if not plan:
            raise RefundExceedsOriginalError(
                "Nothing left to refund on this order",
                {"order_id": order.id, "refundable_quantity": 0},
            )
        return plan

    plan = []
    for order_item_id, quantity in requested:
        item = scope.get(OrderItem, order_item_id)
        if item.order_id != order.id:
            raise NotFoundError("OrderItem not found", {"entity": "OrderItem", "id": order_item_id})
        if quantity > item.refundable_quantity:
            raise RefundExceedsOriginalError(
                "Refund exceeds the remaining refundable quantity",
                {
                    "order_item_id": item.id,
                    "product_id": item.product_id,
                    "requested": quantity,
                    "refundable": item.refundable_quantity,
                    "quantity": item.quantity,
                    "refunded_quantity": item.refunded_quantity,
                },
            )
        plan.append((item, quantity))
    return plan


def _draws_by_item(scope: TenantScope, item_ids) -> dict[int, list[list[int]]]:
    """
    Per order item: [[entry_id, still_returnable]] ordered latest draw first.
    """
    outs = (
        scope.query(InventoryMovement)
        .filter(
            InventoryMovement.order_item_id.in_(item_ids),
            InventoryMovement.movement_type == MOVEMENT_OUT,
        )
        .order_by(InventoryMovement.id.asc())
        .all()
    )
    returned = dict(
        ((item_id, entry_id), int(total))
        for item_id, entry_id, total in (
            db.session.query(
                InventoryMovement.order_item_id,
                InventoryMovement.entry_id,
                func.sum(InventoryMovement.quantity),
            )
            .filter(
                InventoryMovement.order_item_id.in_(item_ids),
                InventoryMovement.movement_type == MOVEMENT_IN,
            )
            .group_by(InventoryMovement.order_item_id, InventoryMovement.entry_id)
            .all()
        )
    )

    drawn: dict[tuple[int, int], int] = {}
    last_draw: dict[tuple[int, int], int] = {}
    for out in outs:
        key = (out.order_item_id, out.entry_id)
        drawn[key] = drawn.get(key, 0) - out.quantity
        last_draw[key] = out.id

    draws: dict[int, list[list[int]]] = {item_id: [] for item_id in item_ids}
    for key in sorted(drawn, key=lambda k: last_draw[k], reverse=True):
        item_id, entry_id = key
        returnable = drawn[key] - returned.get(key, 0)
        if returnable > 0:
            draws[item_id].append([entry_id, returnable])
    return draws


def refund(
    business_id: int,
    order_id: int,
    items: list[dict] | None = None,
    refund_type: str = REFUND_TYPE_PARTIAL,
    *,
    reason: str | None = None,
    notes: str | None = None,
    user_id: int | None = None,
) -> Refund:
    """
    Refund an order fully or per item: [{order_item_id, quantity}].

    A `full` refund takes every item's remaining refundable quantity and
    accepts no items list; passing one raises ValidationError.

    Restores stock through compensating IN movements, reduces the order's
    effective total and recomputes its payment status, all in one transaction.

    Raises:
        RefundExceedsOriginalError if an item's request exceeds what remains refundable
        InvalidStateTransitionError if the order is not paid/shipped/delivered
        ValidationError on malformed requests
        ContentionError after exhausted lock/version retries
        SQLAlchemyError on storage failure (a `failed` Refund is recorded first)
    """
    requested = _validate_request(items, refund_type)
    scope = TenantScope(business_id, user_id=user_id)

    def _op() -> Refund:
        require_permission(user_id, permissions.REFUND_PROCESS, business_id)
        begin_write_transaction()
        order = scope.get(Order, order_id, lock=True)
        if order.status not in REFUNDABLE_STATUSES:
            raise InvalidStateTransitionError(
                "Order is not in a refundable status",
                {"order_id": order.id, "status": order.status, "allowed": sorted(REFUNDABLE_STATUSES)},
            )

        plan = _plan_items(scope, order, requested, refund_type)
        now = utcnow()

        record = Refund(
            business_id=business_id,
            order_id=order.id,
            refund_number=next_document_number(business_id=business_id, document_type="REFUND"),
            refund_type=refund_type,
            status=REFUND_STATUS_PENDING,
            reason=reason,
            notes=notes,
            created_by_user_id=user_id,
        )
        db.session.add(record)
        db.session.flush()

        item_ids = [item.id for item, _ in plan]
        draws = _draws_by_item(scope, item_ids)
        entry_ids = [entry_id for rows in draws.values() for entry_id, _ in rows]
        entries = {e.id: e for e in scope.get_many(InventoryEntry, entry_ids, lock=True)}

        total = 0
        for item, quantity in plan:
            amount = refund_amount_for(item, quantity)

            remaining = quantity
            for row in draws[item.id]:
                if remaining <= 0:
                    break
                entry_id, returnable = row
                back = min(returnable, remaining)
                apply_movement(
                    entries[entry_id],
                    back,
                    MOVEMENT_IN,
                    reference_id=order.id,
                    order_item_id=item.id,
                    refund_id=record.id,
                    reason="refund",
                    note=reason,
                    user_id=user_id,
                    occurred_at=now,
                )
                row[1] = returnable - back
                remaining -= back
            if remaining > 0:
                raise RefundExceedsOriginalError(
                    "No recorded stock draw left to reverse",
                    {"order_item_id": item.id, "requested": quantity, "unmatched": remaining},
                )

            db.session.add(
                RefundItem(
                    business_id=business_id,
                    refund_id=record.id,
                    order_item_id=item.id,
                    quantity=quantity,
                    amount_cents=amount,
                )
            )
            item.refunded_quantity = item.refunded_quantity + quantity
            item.refunded_amount_cents = item.refunded_amount_cents + amount
            total += amount

        record.amount_cents = total
        record.status = REFUND_STATUS_PROCESSED
        record.processed_at = now

        order.refunded_amount_cents = order.refunded_amount_cents + total
        refresh_payment_state(order)
        db.session.flush()

        append_audit_event(
            business_id=business_id,
            event_type="refund.processed",
            entity_type="refund",
            entity_id=record.id,
            actor_user_id=user_id,
            order_id=order.id,
            occurred_at=now,
            note=reason,
            payload={
                "refund_number": record.refund_number,
                "refund_type": refund_type,
                "amount_cents": total,
                "items": [{"order_item_id": item.id, "quantity": q} for item, q in plan],
            },
        )
        db.session.commit()
        return record

    try:
        record = run_with_retry(_op)
    except SQLAlchemyError as exc:
        current_app.logger.exception("Refund for order %s failed on storage error", order_id)
        _record_failed_refund(business_id, order_id, refund_type, reason, notes, user_id, exc)
        raise

    current_app.logger.info(
        "Processed %s refund %s (%s cents) for order %s",
        refund_type,
        record.refund_number,
        record.amount_cents,
        order_id,
    )
    return record


def _record_failed_refund(business_id, order_id, refund_type, reason, notes, user_id, exc) -> Refund | None:
    """Write a `failed` Refund in a fresh transaction; stock and money stay untouched."""
    try:
        begin_write_transaction()
        failed = Refund(
            business_id=business_id,
            order_id=order_id,
            refund_type=refund_type,
            status=REFUND_STATUS_FAILED,
            amount_cents=0,
            reason=reason,
            notes=notes,
            failure_reason=f"{type(exc).__name__}: {exc}",
            created_by_user_id=user_id,
        )
        db.session.add(failed)
        db.session.flush()
        append_audit_event(
            business_id=business_id,
            event_type="refund.failed",
            entity_type="refund",
            entity_id=failed.id,
            actor_user_id=user_id,
            order_id=order_id,
            note=reason,
            payload={"error": type(exc).__name__},
        )
        db.session.commit()
        return failed
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Could not record failed refund for order %s", order_id)
        return None


def list_refunds(business_id: int, order_id: int) -> list[Refund]:
    scope = TenantScope(business_id)

    def _op() -> list[Refund]:
        order = scope.get(Order, order_id)
        return (
            scope.query(Refund)
            .filter(Refund.order_id == order.id)
            .order_by(Refund.id.asc())
            .all()
        )

    return run_with_retry(_op)
