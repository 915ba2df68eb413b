# Overview: Stock Movement Log; append-only quantity changes against inventory entries.

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from .. import permissions
from ..errors import InsufficientStockError, ValidationError
from ..extensions import db
from ..models import InventoryEntry, InventoryMovement, Order, Product
from ..models.inventory import MOVEMENT_ADJUSTMENT, MOVEMENT_IN, MOVEMENT_TYPES
from ..time_utils import utcnow
from .alert_service import notify_low_stock
from .audit_service import append_audit_event
from .concurrency import begin_write_transaction, run_with_retry
from .permission_service import require_permission
from .tenant_service import TenantScope
"""
Stock Movement Invariants (authoritative)

- quantity_received + SUM(movement.quantity) >= 0 for every entry, at all times.
- A movement row is never visible without its quantity effect: the entry's
  current_quantity and the product's quantity cache are updated in the same
  flush as the movement insert, and the check happens before either.
- Movements are immutable (see model listeners) and ordered by id.

Sign convention:
- IN and OUT take a positive magnitude; OUT is stored negative.
- ADJUSTMENT takes a signed, non-zero quantity.
"""


def signed_quantity(quantity, movement_type: str) -> int:
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(
            "Unknown movement type",
            {"movement_type": movement_type, "allowed": list(MOVEMENT_TYPES)},
        )
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer", {"field": "quantity", "value": quantity})

    if movement_type == MOVEMENT_ADJUSTMENT:
        if quantity == 0:
            raise ValidationError("adjustment quantity must be non-zero", {"field": "quantity", "value": quantity})
        return quantity
    if quantity <= 0:
        raise ValidationError(
            f"{movement_type} quantity must be positive",
            {"field": "quantity", "value": quantity, "movement_type": movement_type},
        )
    return quantity if movement_type == MOVEMENT_IN else -quantity


def apply_movement(
    entry: InventoryEntry,
    quantity: int,
    movement_type: str,
    *,
    reference_id: int | None = None,
    order_item_id: int | None = None,
    refund_id: int | None = None,
    reason: str | None = None,
    note: str | None = None,
    user_id: int | None = None,
    occurred_at=None,
) -> InventoryMovement:
    """
    Check-then-append one movement against an already locked entry.

    Runs inside the caller's transaction; the caller commits.
    """
    delta = signed_quantity(quantity, movement_type)
    new_quantity = entry.current_quantity + delta
    if new_quantity < 0:
        raise InsufficientStockError(
            "Insufficient stock",
            {
                "entry_id": entry.id,
                "product_id": entry.product_id,
                "requested": -delta,
                "available": entry.current_quantity,
            },
        )

    movement = InventoryMovement(
        business_id=entry.business_id,
        entry_id=entry.id,
        product_id=entry.product_id,
        movement_type=movement_type,
        quantity=delta,
        reference_id=reference_id,
        order_item_id=order_item_id,
        refund_id=refund_id,
        reason=reason,
        note=note,
        created_by_user_id=user_id,
        occurred_at=occurred_at or utcnow(),
    )
    entry.current_quantity = new_quantity
    entry.product.quantity = entry.product.quantity + delta
    db.session.add(movement)
    db.session.flush()
    return movement


def record(
    business_id: int,
    entry_id: int,
    quantity: int,
    movement_type: str,
    reference_id: int | None = None,
    *,
    reason: str | None = None,
    note: str | None = None,
    user_id: int | None = None,
) -> InventoryMovement:
    """
    Append a movement and update the entry's live quantity atomically.

    Raises:
        InsufficientStockError if the entry would go below zero
        ValidationError on a bad type/quantity
        NotFoundError / TenantMismatchError for foreign entry or order ids
    """
    delta = signed_quantity(quantity, movement_type)
    scope = TenantScope(business_id, user_id=user_id)

    def _op() -> InventoryMovement:
        require_permission(user_id, permissions.INVENTORY_RECORD, business_id)
        begin_write_transaction()
        if reference_id is not None:
            scope.get(Order, reference_id)
        entry = scope.get(InventoryEntry, entry_id, lock=True)
        movement = apply_movement(
            entry,
            quantity,
            movement_type,
            reference_id=reference_id,
            reason=reason,
            note=note,
            user_id=user_id,
        )
        db.session.commit()
        return movement

    movement = run_with_retry(_op)
    current_app.logger.info(
        "Recorded %s %+d on entry %s (business %s)", movement_type, delta, entry_id, business_id
    )
    if delta < 0:
        notify_low_stock(business_id, [movement.product_id])
    return movement


def adjust(
    business_id: int,
    entry_id: int,
    quantity: int,
    reason: str,
    *,
    note: str | None = None,
    user_id: int | None = None,
) -> InventoryMovement:
    """Record a signed ADJUSTMENT (count correction, damage, shrinkage)."""
    if not reason:
        raise ValidationError("reason is required", {"field": "reason"})
    signed_quantity(quantity, MOVEMENT_ADJUSTMENT)
    scope = TenantScope(business_id, user_id=user_id)

    def _op() -> InventoryMovement:
        require_permission(user_id, permissions.INVENTORY_ADJUST, business_id)
        begin_write_transaction()
        entry = scope.get(InventoryEntry, entry_id, lock=True)
        movement = apply_movement(
            entry,
            quantity,
            MOVEMENT_ADJUSTMENT,
            reason=reason,
            note=note,
            user_id=user_id,
        )
        append_audit_event(
            business_id=business_id,
            event_type="inventory.adjusted",
            entity_type="inventory_entry",
            entity_id=entry.id,
            actor_user_id=user_id,
            occurred_at=movement.occurred_at,
            note=reason,
            payload={"movement_id": movement.id, "quantity": movement.quantity},
        )
        db.session.commit()
        return movement

    movement = run_with_retry(_op)
    current_app.logger.info(
        "Adjusted entry %s by %+d (%s) for business %s", entry_id, quantity, reason, business_id
    )
    if quantity < 0:
        notify_low_stock(business_id, [movement.product_id])
    return movement


class MovementHistory:
    """
    Lazy, restartable view over one entry's movements in insertion order.

    Each iteration re-reads the log from the start in keyset pages of
    `page_size`, so iterating twice yields the same sequence.
    """

    def __init__(self, business_id: int, entry_id: int, page_size: int = 500):
        self.business_id = business_id
        self.entry_id = entry_id
        self.page_size = page_size

    def __iter__(self):
        last_id = 0
        while True:
            page = (
                db.session.query(InventoryMovement)
                .filter(
                    InventoryMovement.business_id == self.business_id,
                    InventoryMovement.entry_id == self.entry_id,
                    InventoryMovement.id > last_id,
                )
                .order_by(InventoryMovement.id.asc())
                .limit(self.page_size)
                .all()
            )
            if not page:
                return
            yield from page
            last_id = page[-1].id


def history(business_id: int, entry_id: int, *, page_size: int = 500) -> MovementHistory:
    """Audit view of an entry's movements. Validates tenancy eagerly; never mutates."""
    scope = TenantScope(business_id)
    entry = run_with_retry(lambda: scope.get(InventoryEntry, entry_id))
    return MovementHistory(business_id, entry.id, page_size=page_size)


def _movement_total(entry_id: int) -> tuple[int, int]:
    total, count = (
        db.session.query(
            func.coalesce(func.sum(InventoryMovement.quantity), 0),
            func.count(InventoryMovement.id),
        )
        .filter(InventoryMovement.entry_id == entry_id)
        .one()
    )
    return int(total), int(count)


def live_quantity(business_id: int, entry_id: int) -> int:
    """quantity_received + SUM(movements), derived from the log rather than the cache."""
    scope = TenantScope(business_id)

    def _op() -> int:
        entry = scope.get(InventoryEntry, entry_id)
        total, _ = _movement_total(entry.id)
        return entry.quantity_received + total

    return run_with_retry(_op)


def audit_entry(business_id: int, entry_id: int) -> dict:
    """
    Re-derive an entry's live quantity by replaying its history and compare with the cache.
    """
    scope = TenantScope(business_id)
    entry = run_with_retry(lambda: scope.get(InventoryEntry, entry_id))

    derived = entry.quantity_received
    count = 0
    went_negative = False
    for movement in MovementHistory(business_id, entry.id):
        derived += movement.quantity
        count += 1
        if derived < 0:
            went_negative = True

    return {
        "entry_id": entry.id,
        "product_id": entry.product_id,
        "quantity_received": entry.quantity_received,
        "movement_count": count,
        "derived_quantity": derived,
        "cached_quantity": entry.current_quantity,
        "drift": entry.current_quantity - derived,
        "went_negative": went_negative,
    }


def entry_movement_totals(entry_ids) -> dict[int, int]:
    """SUM(movement.quantity) per entry id; entries with no movements map to 0."""
    ids = sorted(set(entry_ids))
    if not ids:
        return {}
    rows = (
        db.session.query(InventoryMovement.entry_id, func.sum(InventoryMovement.quantity))
        .filter(InventoryMovement.entry_id.in_(ids))
        .group_by(InventoryMovement.entry_id)
        .all()
    )
    totals = {entry_id: 0 for entry_id in ids}
    for entry_id, total in rows:
        totals[entry_id] = int(total or 0)
    return totals


def list_movements(business_id: int, *, product_id: int | None = None, reference_id: int | None = None) -> list[InventoryMovement]:
    scope = TenantScope(business_id)

    def _op():
        q = scope.query(InventoryMovement)
        if product_id is not None:
            product = scope.get(Product, product_id)
            q = q.filter(InventoryMovement.product_id == product.id)
        if reference_id is not None:
            order = scope.get(Order, reference_id)
            q = q.filter(InventoryMovement.reference_id == order.id)
        return q.order_by(InventoryMovement.id.asc()).all()

    return run_with_retry(_op)
