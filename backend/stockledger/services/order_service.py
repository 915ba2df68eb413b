# Overview: Order Fulfillment State Machine; creation with stock reservation, status moves, cancellation.

from __future__ import annotations

from flask import current_app

from .. import permissions
from ..errors import InsufficientStockError, InvalidStateTransitionError, ValidationError
from ..extensions import db
from ..models import Customer, InventoryEntry, InventoryMovement, Order, OrderDiscount, OrderItem, Product
from ..models.inventory import MOVEMENT_IN, MOVEMENT_OUT
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_PAID,
    ORDER_STATUS_PENDING,
    ORDER_STATUS_SHIPPED,
    PAYMENT_STATUS_UNPAID,
)
from ..time_utils import utcnow
from .alert_service import notify_low_stock
from .audit_service import append_audit_event
from .batch_service import load_candidate_entries, plan_deduction
from .concurrency import begin_write_transaction, run_with_retry
from .discount_service import resolve_discounts
from .document_service import next_document_number
from .movement_service import apply_movement
from .permission_service import require_permission
from .tenant_service import TenantScope
"""
Order Fulfillment Invariants (authoritative)

Stock:
- Stock is reserved at create time: one OUT movement per (order item, entry)
  allocation, every one carrying the order id and order item id.
- All-or-nothing: if any item cannot be satisfied the whole order rolls back,
  and the error names the first unsatisfiable product.

Totals (integer cents):
- line = unit_price * quantity; item discount capped at the line
- subtotal = SUM(line)
- discount_total = SUM(item discounts) + resolved order-level discounts, capped at subtotal
  (percentages apply to the pre-discount subtotal)
- total = subtotal - discount_total + tax + shipping
- the total is allocated across items by line value (largest remainder),
  which later prices refunds

Status graph:
- pending -> paid | shipped | cancelled
- paid -> shipped | delivered
- shipped -> delivered
- delivered, cancelled: terminal
- cancel is only legal from pending; it writes a compensating IN movement for
  every OUT movement of the order. Committed orders are reversed by refunds.
"""


TRANSITIONS = {
    ORDER_STATUS_PENDING: {ORDER_STATUS_PAID, ORDER_STATUS_SHIPPED, ORDER_STATUS_CANCELLED},
    ORDER_STATUS_PAID: {ORDER_STATUS_SHIPPED, ORDER_STATUS_DELIVERED},
    ORDER_STATUS_SHIPPED: {ORDER_STATUS_DELIVERED},
    ORDER_STATUS_DELIVERED: set(),
    ORDER_STATUS_CANCELLED: set(),
}

_STATUS_TIMESTAMPS = {
    ORDER_STATUS_PAID: "paid_at",
    ORDER_STATUS_SHIPPED: "shipped_at",
    ORDER_STATUS_DELIVERED: "delivered_at",
    ORDER_STATUS_CANCELLED: "cancelled_at",
}


def _non_negative_cents(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer", {"field": field, "value": value})
    return value


def _validate_items(items) -> list[dict]:
    if not items:
        raise ValidationError("at least one item is required", {"field": "items"})

    clean = []
    for index, item in enumerate(items):
        quantity = item.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(
                "quantity must be a positive integer",
                {"field": "quantity", "index": index, "value": quantity},
            )
        unit_price = item.get("unit_price_cents")
        if isinstance(unit_price, bool) or not isinstance(unit_price, int) or unit_price < 0:
            raise ValidationError(
                "unit_price_cents must be a non-negative integer",
                {"field": "unit_price_cents", "index": index, "value": unit_price},
            )
        discount = item.get("discount_cents", 0) or 0
        if isinstance(discount, bool) or not isinstance(discount, int) or discount < 0:
            raise ValidationError(
                "discount_cents must be a non-negative integer",
                {"field": "discount_cents", "index": index, "value": discount},
            )
        product_id = item.get("product_id")
        if isinstance(product_id, bool) or not isinstance(product_id, int):
            raise ValidationError(
                "product_id must be an integer",
                {"field": "product_id", "index": index, "value": product_id},
            )
        clean.append({
            "product_id": product_id,
            "quantity": quantity,
            "unit_price_cents": unit_price,
            "discount_cents": discount,
        })
    return clean


def allocate_total(total_cents: int, weights: list[int]) -> list[int]:
    """
    Split total_cents across weights proportionally; shares sum exactly to total_cents.

    Largest remainder, ties to the earlier position.
    """
    if not weights:
        return []
    weight_sum = sum(weights)
    if weight_sum <= 0:
        weights = [1] * len(weights)
        weight_sum = len(weights)

    shares = [total_cents * w // weight_sum for w in weights]
    leftover = total_cents - sum(shares)
    by_remainder = sorted(
        range(len(weights)),
        key=lambda i: (-(total_cents * weights[i] % weight_sum), i),
    )
    for i in by_remainder[:leftover]:
        shares[i] += 1
    return shares


def create_order(
    business_id: int,
    items: list[dict],
    discounts: list[dict] | None = None,
    *,
    customer_id: int | None = None,
    tax_amount_cents: int = 0,
    shipping_cost_cents: int = 0,
    notes: str | None = None,
    order_number: str | None = None,
    user_id: int | None = None,
) -> Order:
    """
    Create a pending order and reserve its stock (FEFO/FIFO OUT movements).

    items: [{product_id, quantity, unit_price_cents, discount_cents?}]
    discounts: [{discount_id?, kind, value}] order-level references

    Raises:
        ValidationError on malformed lines or amounts
        InsufficientStockError naming the first product that cannot be satisfied
        NotFoundError / TenantMismatchError for foreign product/customer/discount ids
    """
    lines = _validate_items(items)
    tax = _non_negative_cents(tax_amount_cents, "tax_amount_cents")
    shipping = _non_negative_cents(shipping_cost_cents, "shipping_cost_cents")
    scope = TenantScope(business_id, user_id=user_id)

    def _op() -> Order:
        require_permission(user_id, permissions.ORDER_CREATE, business_id)
        begin_write_transaction()
        scope.require_business()

        if customer_id is not None:
            scope.get(Customer, customer_id)
        product_ids = [line["product_id"] for line in lines]
        scope.get_many(Product, product_ids)

        # Lock every candidate entry (ascending id) before planning
        candidates = load_candidate_entries(business_id, product_ids, lock=True)

        # Repeated products see the units earlier lines already planned
        plans = []
        reserved: dict[int, int] = {}
        for index, line in enumerate(lines):
            try:
                allocations = plan_deduction(
                    line["product_id"], candidates[line["product_id"]], line["quantity"], reserved
                )
            except InsufficientStockError as exc:
                exc.details["item_index"] = index
                raise
            for entry, take in allocations:
                reserved[entry.id] = reserved.get(entry.id, 0) + take
            plans.append(allocations)

        # Totals
        subtotal = 0
        item_discount_total = 0
        line_totals = []
        for line in lines:
            gross = line["unit_price_cents"] * line["quantity"]
            item_discount = min(line["discount_cents"], gross)
            subtotal += gross
            item_discount_total += item_discount
            line_totals.append((gross, item_discount))

        now = utcnow()
        resolved, order_discount_total = resolve_discounts(
            scope,
            discounts,
            subtotal_cents=subtotal,
            cap_cents=subtotal - item_discount_total,
            now=now,
        )
        discount_total = min(item_discount_total + order_discount_total, subtotal)
        total = subtotal - discount_total + tax + shipping

        order = Order(
            business_id=business_id,
            customer_id=customer_id,
            order_number=order_number or next_document_number(business_id=business_id, document_type="ORDER"),
            status=ORDER_STATUS_PENDING,
            payment_status=PAYMENT_STATUS_UNPAID,
            subtotal_cents=subtotal,
            discount_total_cents=discount_total,
            tax_amount_cents=tax,
            shipping_cost_cents=shipping,
            total_amount_cents=total,
            total_paid_cents=0,
            refunded_amount_cents=0,
            amount_due_back_cents=0,
            notes=notes,
            created_by_user_id=user_id,
            order_date=now,
        )
        db.session.add(order)
        db.session.flush()

        net_totals = [gross - disc for gross, disc in line_totals]
        weights = net_totals if sum(net_totals) > 0 else [line["quantity"] for line in lines]
        shares = allocate_total(total, weights)

        order_items = []
        for line, (gross, item_discount), share in zip(lines, line_totals, shares):
            item = OrderItem(
                business_id=business_id,
                order_id=order.id,
                product_id=line["product_id"],
                quantity=line["quantity"],
                unit_price_cents=line["unit_price_cents"],
                discount_cents=item_discount,
                total_amount_cents=gross - item_discount,
                allocated_total_cents=share,
                refunded_quantity=0,
                refunded_amount_cents=0,
            )
            db.session.add(item)
            order_items.append(item)

        for ref in resolved:
            db.session.add(
                OrderDiscount(
                    business_id=business_id,
                    order_id=order.id,
                    discount_id=ref.discount_id,
                    kind=ref.kind,
                    value=ref.value,
                    amount_cents=ref.amount_cents,
                )
            )
        db.session.flush()

        for item, allocations in zip(order_items, plans):
            for entry, take in allocations:
                apply_movement(
                    entry,
                    take,
                    MOVEMENT_OUT,
                    reference_id=order.id,
                    order_item_id=item.id,
                    reason="order_created",
                    user_id=user_id,
                    occurred_at=now,
                )

        append_audit_event(
            business_id=business_id,
            event_type="order.created",
            entity_type="order",
            entity_id=order.id,
            actor_user_id=user_id,
            order_id=order.id,
            occurred_at=now,
            payload={
                "order_number": order.order_number,
                "total_amount_cents": total,
                "items": [
                    {"order_item_id": item.id, "product_id": item.product_id, "quantity": item.quantity}
                    for item in order_items
                ],
            },
        )
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info(
        "Created order %s (%s items, total %s cents) for business %s",
        order.order_number,
        len(lines),
        order.total_amount_cents,
        business_id,
    )
    notify_low_stock(business_id, [line["product_id"] for line in lines])
    return order


def _set_status(order: Order, target: str, now) -> str:
    previous = order.status
    allowed = TRANSITIONS.get(previous, set())
    if target not in allowed:
        raise InvalidStateTransitionError(
            "Illegal order status transition",
            {
                "order_id": order.id,
                "from_status": previous,
                "to_status": target,
                "allowed": sorted(allowed),
            },
        )
    order.status = target
    setattr(order, _STATUS_TIMESTAMPS[target], now)
    return previous


def _cancel_locked(scope: TenantScope, order: Order, user_id: int | None, reason: str | None) -> list[InventoryMovement]:
    now = utcnow()
    _set_status(order, ORDER_STATUS_CANCELLED, now)

    outs = (
        scope.query(InventoryMovement)
        .filter(
            InventoryMovement.reference_id == order.id,
            InventoryMovement.movement_type == MOVEMENT_OUT,
        )
        .order_by(InventoryMovement.id.asc())
        .all()
    )
    entries = {e.id: e for e in scope.get_many(InventoryEntry, [m.entry_id for m in outs], lock=True)}

    compensations = []
    for out in outs:
        compensations.append(
            apply_movement(
                entries[out.entry_id],
                -out.quantity,
                MOVEMENT_IN,
                reference_id=order.id,
                order_item_id=out.order_item_id,
                reason="order_cancelled",
                note=reason,
                user_id=user_id,
                occurred_at=now,
            )
        )

    # Money already taken on a pending order is owed back in full
    order.amount_due_back_cents = order.total_paid_cents

    append_audit_event(
        business_id=order.business_id,
        event_type="order.cancelled",
        entity_type="order",
        entity_id=order.id,
        actor_user_id=user_id,
        order_id=order.id,
        occurred_at=now,
        note=reason,
        payload={"movements_reversed": len(compensations)},
    )
    return compensations


def advance(business_id: int, order_id: int, target_status: str, *, user_id: int | None = None) -> Order:
    """
    Move an order along the status graph.

    Raises InvalidStateTransitionError for any move the graph does not allow.
    Advancing to `cancelled` performs a full cancel().
    """
    if target_status not in TRANSITIONS:
        raise ValidationError("Unknown order status", {"to_status": target_status, "allowed": sorted(TRANSITIONS)})
    if target_status == ORDER_STATUS_CANCELLED:
        return cancel(business_id, order_id, user_id=user_id)

    scope = TenantScope(business_id, user_id=user_id)

    def _op() -> Order:
        require_permission(user_id, permissions.ORDER_ADVANCE, business_id)
        begin_write_transaction()
        order = scope.get(Order, order_id, lock=True)
        now = utcnow()
        previous = _set_status(order, target_status, now)
        append_audit_event(
            business_id=business_id,
            event_type="order.advanced",
            entity_type="order",
            entity_id=order.id,
            actor_user_id=user_id,
            order_id=order.id,
            occurred_at=now,
            payload={"from_status": previous, "to_status": target_status},
        )
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Order %s advanced to %s", order.order_number, target_status)
    return order


def cancel(business_id: int, order_id: int, *, user_id: int | None = None, reason: str | None = None) -> Order:
    """
    Cancel a pending order and release its reserved stock.

    Every OUT movement of the order gets a compensating IN movement against
    the same entry, referencing the same order and order item.
    """
    scope = TenantScope(business_id, user_id=user_id)

    def _op() -> Order:
        require_permission(user_id, permissions.ORDER_CANCEL, business_id)
        begin_write_transaction()
        order = scope.get(Order, order_id, lock=True)
        _cancel_locked(scope, order, user_id, reason)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Cancelled order %s for business %s", order.order_number, business_id)
    return order


def get_order(business_id: int, order_id: int) -> Order:
    scope = TenantScope(business_id)
    return run_with_retry(lambda: scope.get(Order, order_id))


def list_orders(business_id: int, *, status: str | None = None) -> list[Order]:
    scope = TenantScope(business_id)

    def _op() -> list[Order]:
        q = scope.query(Order)
        if status:
            q = q.filter(Order.status == status)
        return q.order_by(Order.id.asc()).all()

    return run_with_retry(_op)


def list_order_movements(business_id: int, order_id: int) -> list[InventoryMovement]:
    """Every movement referencing the order (reservation, cancellation, refunds), in insertion order."""
    scope = TenantScope(business_id)

    def _op() -> list[InventoryMovement]:
        order = scope.get(Order, order_id)
        return (
            scope.query(InventoryMovement)
            .filter(InventoryMovement.reference_id == order.id)
            .order_by(InventoryMovement.id.asc())
            .all()
        )

    return run_with_retry(_op)
