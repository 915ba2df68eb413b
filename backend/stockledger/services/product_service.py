# Overview: Product quantity cache maintenance, reconciliation and stock summaries.

from __future__ import annotations

from datetime import timedelta

from flask import current_app

from .. import permissions
from ..errors import ValidationError
from ..extensions import db
from ..models import InventoryEntry, Product
from ..time_utils import to_iso_date, today
from .audit_service import append_audit_event
from .batch_service import deduction_key
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .movement_service import entry_movement_totals
from .permission_service import require_permission
from .tenant_service import TenantScope


STOCK_STATUS_GOOD = "good"
STOCK_STATUS_LOW = "low"


def _reconcile_locked(product: Product, user_id: int | None) -> dict:
    entries = (
        lock_for_update(
            db.session.query(InventoryEntry)
            .filter(InventoryEntry.product_id == product.id)
            .order_by(InventoryEntry.id.asc())
        )
        .all()
    )
    totals = entry_movement_totals([e.id for e in entries])

    repaired = []
    quantity = 0
    for entry in entries:
        derived = entry.quantity_received + totals.get(entry.id, 0)
        if entry.current_quantity != derived:
            repaired.append({"entry_id": entry.id, "cached": entry.current_quantity, "derived": derived})
            entry.current_quantity = derived
        quantity += derived

    previous = product.quantity
    changed = previous != quantity or bool(repaired)
    if previous != quantity:
        product.quantity = quantity

    if changed:
        append_audit_event(
            business_id=product.business_id,
            event_type="product.quantity_reconciled",
            entity_type="product",
            entity_id=product.id,
            actor_user_id=user_id,
            payload={"previous": previous, "quantity": quantity, "entries": repaired},
        )

    return {
        "product_id": product.id,
        "previous_quantity": previous,
        "quantity": quantity,
        "changed": changed,
        "entries_repaired": repaired,
    }


def reconcile_product_quantity(business_id: int, product_id: int, *, user_id: int | None = None) -> dict:
    """
    Recompute a product's cached quantity (and its entries' current_quantity)
    from quantity_received + SUM(movements). Repairs drift; no-op when consistent.
    """
    scope = TenantScope(business_id, user_id=user_id)

    def _op() -> dict:
        require_permission(user_id, permissions.INVENTORY_RECONCILE, business_id)
        begin_write_transaction()
        product = scope.get(Product, product_id, lock=True)
        result = _reconcile_locked(product, user_id)
        db.session.commit()
        return result

    result = run_with_retry(_op)
    if result["changed"]:
        current_app.logger.warning(
            "Product %s quantity reconciled %s -> %s (business %s)",
            product_id,
            result["previous_quantity"],
            result["quantity"],
            business_id,
        )
    return result


def reconcile_business(business_id: int, *, user_id: int | None = None) -> list[dict]:
    """Reconcile every product of a business in one transaction."""
    scope = TenantScope(business_id, user_id=user_id)

    def _op() -> list[dict]:
        require_permission(user_id, permissions.INVENTORY_RECONCILE, business_id)
        begin_write_transaction()
        scope.require_business()
        products = lock_for_update(scope.query(Product).order_by(Product.id.asc())).all()
        results = [_reconcile_locked(p, user_id) for p in products]
        db.session.commit()
        return results

    results = run_with_retry(_op)
    changed = [r for r in results if r["changed"]]
    current_app.logger.info(
        "Reconciled %s products for business %s (%s changed)", len(results), business_id, len(changed)
    )
    return results


def _summary_row(product: Product) -> dict:
    entries = sorted(
        (e for e in product.entries if e.current_quantity > 0),
        key=deduction_key,
    )
    return {
        "product_id": product.id,
        "product_code": product.product_code,
        "name": product.name,
        "quantity": product.quantity,
        "reorder_threshold": product.reorder_threshold,
        "status": STOCK_STATUS_LOW if product.is_low_stock else STOCK_STATUS_GOOD,
        "entries": [
            {
                "entry_id": e.id,
                "batch_id": e.batch_id,
                "batch_number": e.batch.batch_number,
                "current_quantity": e.current_quantity,
                "expiry_date": to_iso_date(e.expiry_date),
                "cost_price_cents": e.cost_price_cents,
                "selling_price_cents": e.selling_price_cents,
                "warehouse_location": e.warehouse_location,
            }
            for e in entries
        ],
    }


def inventory_summary(business_id: int, product_id: int | None = None) -> list[dict]:
    """
    Per-product stock overview: {quantity, reorder_threshold, status good|low, entries[]}.

    Entries are the in-stock ones, in deduction order.
    """
    scope = TenantScope(business_id)

    def _op() -> list[dict]:
        if product_id is not None:
            return [_summary_row(scope.get(Product, product_id))]
        products = (
            scope.query(Product)
            .filter(Product.is_active.is_(True))
            .order_by(Product.name.asc(), Product.id.asc())
            .all()
        )
        return [_summary_row(p) for p in products]

    return run_with_retry(_op)


def low_stock_products(business_id: int) -> list[Product]:
    """Active products whose quantity is at or below their reorder threshold."""
    scope = TenantScope(business_id)

    def _op() -> list[Product]:
        return (
            scope.query(Product)
            .filter(
                Product.is_active.is_(True),
                Product.quantity <= Product.reorder_threshold,
            )
            .order_by(Product.quantity.asc(), Product.id.asc())
            .all()
        )

    return run_with_retry(_op)


def expiring_entries(business_id: int, days: int = 30) -> list[dict]:
    """
    In-stock entries whose expiry date falls within `days` of today, soonest first.

    Already-expired stock is included with a negative days_until_expiry.
    """
    if isinstance(days, bool) or not isinstance(days, int) or days < 0:
        raise ValidationError("days must be a non-negative integer", {"field": "days", "value": days})
    scope = TenantScope(business_id)

    def _op() -> list[dict]:
        current = today()
        rows = (
            scope.query(InventoryEntry)
            .join(Product, Product.id == InventoryEntry.product_id)
            .filter(
                InventoryEntry.expiry_date.isnot(None),
                InventoryEntry.expiry_date <= current + timedelta(days=days),
                InventoryEntry.current_quantity > 0,
            )
            .order_by(InventoryEntry.expiry_date.asc(), InventoryEntry.id.asc())
            .all()
        )
        return [
            {
                "entry_id": e.id,
                "product_id": e.product_id,
                "product_code": e.product.product_code,
                "name": e.product.name,
                "quantity": e.current_quantity,
                "expiry_date": to_iso_date(e.expiry_date),
                "days_until_expiry": (e.expiry_date - current).days,
            }
            for e in rows
        ]

    return run_with_retry(_op)
