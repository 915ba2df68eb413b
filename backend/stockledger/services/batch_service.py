# Overview: Batch Ledger; receiving stock into batches and choosing entries for deduction.

from __future__ import annotations

from collections import namedtuple
from datetime import date

from flask import current_app

from .. import permissions
from ..errors import InsufficientStockError, InvalidStateTransitionError, ValidationError
from ..extensions import db
from ..models import Batch, InventoryEntry, Product, Supplier
from ..models.inventory import BATCH_STATUS_CLOSED, BATCH_STATUS_OPEN
from ..time_utils import parse_iso_date, today, utcnow
from .audit_service import append_audit_event
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .document_service import next_document_number
from .permission_service import require_permission
from .tenant_service import TenantScope
"""
Batch Ledger Invariants (authoritative)

- Receiving creates a batch (or extends an open one) plus one InventoryEntry per line.
  Receipt is NOT a movement: quantity_received is the entry's opening balance.
- Cost and selling prices are integer cents >= 0; quantities are integers >= 0.
- A closed batch accepts no further receiving; its remaining stock stays sellable.
- Batches and entries are never deleted.

Deduction order (FEFO with FIFO fallback):
- Only entries with current_quantity > 0 are candidates.
- Entries with an expiry date come first, earliest expiry first.
- Entries without expiry follow, oldest batch received_date first.
- Ties break by entry id (creation order), so the order is deterministic.
"""


Allocation = namedtuple("Allocation", ["entry", "quantity"])


def _require_int(value, field: str, *, minimum: int = 0, index: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", {"field": field, "value": value, "index": index})
    if value < minimum:
        raise ValidationError(
            f"{field} must be >= {minimum}",
            {"field": field, "value": value, "minimum": minimum, "index": index},
        )
    return value


def _parse_expiry(value, index: int) -> date | None:
    try:
        return parse_iso_date(value)
    except (TypeError, ValueError):
        raise ValidationError("invalid expiry_date", {"field": "expiry_date", "value": value, "index": index})


def _validate_entry_lines(entries) -> list[dict]:
    if not entries:
        raise ValidationError("at least one entry is required", {"field": "entries"})

    clean = []
    for index, line in enumerate(entries):
        clean.append({
            "product_id": _require_int(line.get("product_id"), "product_id", minimum=1, index=index),
            "quantity": _require_int(line.get("quantity"), "quantity", index=index),
            "cost_price_cents": _require_int(line.get("cost_price_cents"), "cost_price_cents", index=index),
            "selling_price_cents": _require_int(line.get("selling_price_cents"), "selling_price_cents", index=index),
            "expiry_date": _parse_expiry(line.get("expiry_date"), index),
            "warehouse_location": line.get("warehouse_location"),
            "reference": line.get("reference"),
            "notes": line.get("notes"),
        })
    return clean


def receive(
    business_id: int,
    entries: list[dict],
    *,
    supplier_id: int | None = None,
    batch_id: int | None = None,
    batch_number: str | None = None,
    waybill_number: str | None = None,
    received_date=None,
    notes: str | None = None,
    user_id: int | None = None,
) -> Batch:
    """
    Receive stock: create a batch (or extend the open batch `batch_id`) with its entries.

    Each entry line: {product_id, quantity, cost_price_cents, selling_price_cents,
    expiry_date?, warehouse_location?, reference?, notes?}.

    Raises:
        ValidationError on negative prices/quantities or an empty line list
        InvalidStateTransitionError when extending a closed batch
        NotFoundError / TenantMismatchError for foreign supplier, batch or product ids
    """
    lines = _validate_entry_lines(entries)
    try:
        received_on = parse_iso_date(received_date) or today()
    except (TypeError, ValueError):
        raise ValidationError("invalid received_date", {"field": "received_date", "value": received_date})

    scope = TenantScope(business_id, user_id=user_id)

    def _op() -> Batch:
        require_permission(user_id, permissions.BATCH_RECEIVE, business_id)
        begin_write_transaction()
        scope.require_business()

        if batch_id is not None:
            batch = scope.get(Batch, batch_id, lock=True)
            if batch.status != BATCH_STATUS_OPEN:
                raise InvalidStateTransitionError(
                    "Batch is closed to receiving",
                    {"batch_id": batch.id, "status": batch.status},
                )
        else:
            if supplier_id is None:
                raise ValidationError("supplier_id is required", {"field": "supplier_id"})
            supplier = scope.get(Supplier, supplier_id)
            number = batch_number or next_document_number(business_id=business_id, document_type="BATCH")
            batch = Batch(
                business_id=business_id,
                supplier_id=supplier.id,
                batch_number=number,
                waybill_number=waybill_number,
                received_date=received_on,
                notes=notes,
                status=BATCH_STATUS_OPEN,
                created_by_user_id=user_id,
            )
            db.session.add(batch)
            db.session.flush()

        products = {
            p.id: p
            for p in scope.get_many(Product, [line["product_id"] for line in lines], lock=True)
        }

        created = []
        for line in lines:
            product = products[line["product_id"]]
            entry = InventoryEntry(
                business_id=business_id,
                batch_id=batch.id,
                product_id=product.id,
                cost_price_cents=line["cost_price_cents"],
                selling_price_cents=line["selling_price_cents"],
                quantity_received=line["quantity"],
                current_quantity=line["quantity"],
                expiry_date=line["expiry_date"],
                warehouse_location=line["warehouse_location"],
                reference=line["reference"],
                notes=line["notes"],
            )
            db.session.add(entry)
            product.quantity = product.quantity + line["quantity"]
            created.append(entry)
        db.session.flush()

        append_audit_event(
            business_id=business_id,
            event_type="batch.received",
            entity_type="batch",
            entity_id=batch.id,
            actor_user_id=user_id,
            payload={
                "batch_number": batch.batch_number,
                "entries": [
                    {"entry_id": e.id, "product_id": e.product_id, "quantity": e.quantity_received}
                    for e in created
                ],
            },
        )
        db.session.commit()
        return batch

    batch = run_with_retry(_op)
    current_app.logger.info(
        "Received batch %s (%s entries) for business %s", batch.batch_number, len(lines), business_id
    )
    return batch


def close(business_id: int, batch_id: int, *, user_id: int | None = None) -> Batch:
    """Close a batch to further receiving. Remaining stock stays sellable."""
    scope = TenantScope(business_id, user_id=user_id)

    def _op() -> Batch:
        require_permission(user_id, permissions.BATCH_CLOSE, business_id)
        begin_write_transaction()
        batch = scope.get(Batch, batch_id, lock=True)
        if batch.status != BATCH_STATUS_OPEN:
            raise InvalidStateTransitionError(
                "Batch is already closed",
                {"batch_id": batch.id, "from_status": batch.status, "to_status": BATCH_STATUS_CLOSED},
            )
        batch.status = BATCH_STATUS_CLOSED
        batch.closed_at = utcnow()
        append_audit_event(
            business_id=business_id,
            event_type="batch.closed",
            entity_type="batch",
            entity_id=batch.id,
            actor_user_id=user_id,
            occurred_at=batch.closed_at,
        )
        db.session.commit()
        return batch

    batch = run_with_retry(_op)
    current_app.logger.info("Closed batch %s for business %s", batch.batch_number, business_id)
    return batch


def deduction_key(entry: InventoryEntry):
    received = entry.batch.received_date
    if entry.expiry_date is not None:
        return (0, entry.expiry_date, received, entry.id)
    return (1, date.max, received, entry.id)


def load_candidate_entries(business_id: int, product_ids, *, lock: bool = False) -> dict[int, list[InventoryEntry]]:
    """
    Fetch in-stock entries for the given products, grouped per product in deduction order.

    Rows are fetched (and locked) in ascending id order across all products.
    """
    ids = sorted(set(product_ids))
    q = (
        db.session.query(InventoryEntry)
        .filter(
            InventoryEntry.business_id == business_id,
            InventoryEntry.product_id.in_(ids),
            InventoryEntry.current_quantity > 0,
        )
        .order_by(InventoryEntry.id.asc())
    )
    if lock:
        q = lock_for_update(q)

    grouped: dict[int, list[InventoryEntry]] = {pid: [] for pid in ids}
    for entry in q.all():
        grouped[entry.product_id].append(entry)
    for entries in grouped.values():
        entries.sort(key=deduction_key)
    return grouped


def plan_deduction(
    product_id: int,
    candidates: list[InventoryEntry],
    quantity: int,
    reserved: dict[int, int] | None = None,
) -> list[Allocation]:
    """
    Walk candidates in deduction order, taking from each until `quantity` is covered.

    `reserved` maps entry id -> units already planned by earlier lines of the
    same operation; those units are not offered again.
    """
    reserved = reserved or {}
    allocations = []
    remaining = quantity
    for entry in candidates:
        if remaining <= 0:
            break
        take = min(entry.current_quantity - reserved.get(entry.id, 0), remaining)
        if take <= 0:
            continue
        allocations.append(Allocation(entry, take))
        remaining -= take

    if remaining > 0:
        available = sum(max(e.current_quantity - reserved.get(e.id, 0), 0) for e in candidates)
        raise InsufficientStockError(
            "Insufficient stock",
            {"product_id": product_id, "requested": quantity, "available": available},
        )
    return allocations


def select_entries_for_deduction(business_id: int, product_id: int, quantity: int) -> list[Allocation]:
    """
    Return the ordered (entry, quantity) allocations that would satisfy `quantity` units.

    Read-only: nothing is deducted. Raises InsufficientStockError when the
    product's total live quantity is below `quantity`.
    """
    _require_int(quantity, "quantity", minimum=1)
    scope = TenantScope(business_id)

    def _op():
        product = scope.get(Product, product_id)
        candidates = load_candidate_entries(business_id, [product.id])[product.id]
        return plan_deduction(product.id, candidates, quantity)

    return run_with_retry(_op)


def get_batch(business_id: int, batch_id: int) -> Batch:
    scope = TenantScope(business_id)
    return run_with_retry(lambda: scope.get(Batch, batch_id))


def list_entries(business_id: int, product_id: int, *, in_stock_only: bool = False) -> list[InventoryEntry]:
    """Entries of a product in deduction order (empty entries last unless filtered out)."""
    scope = TenantScope(business_id)

    def _op():
        product = scope.get(Product, product_id)
        q = scope.query(InventoryEntry).filter(InventoryEntry.product_id == product.id)
        if in_stock_only:
            q = q.filter(InventoryEntry.current_quantity > 0)
        entries = q.order_by(InventoryEntry.id.asc()).all()
        return sorted(entries, key=lambda e: (e.current_quantity <= 0, deduction_key(e)))

    return run_with_retry(_op)
