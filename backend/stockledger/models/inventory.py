from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from stockledger.time_utils import to_utc_z, to_iso_date


BATCH_STATUS_OPEN = "open"
BATCH_STATUS_CLOSED = "closed"

MOVEMENT_IN = "IN"
MOVEMENT_OUT = "OUT"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_TYPES = (MOVEMENT_IN, MOVEMENT_OUT, MOVEMENT_ADJUSTMENT)


class Product(db.Model):
    """
    Catalog item.

    `quantity` is a cache: the sum of live quantities across the product's
    inventory entries. It is maintained in the same transaction as every
    movement and can be recomputed from the movement log at any time
    (product_service.reconcile_product_quantity). It is never the source of truth.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("business_id", "product_code", name="uq_products_business_code"),
        db.Index("ix_products_business_name", "business_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    product_code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    unit_of_measure = db.Column(db.String(32), nullable=True)

    # Default supplier (receiving may still come from any supplier in the business)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True, index=True)

    reorder_threshold = db.Column(db.Integer, nullable=False, default=0)

    # Materialized sum of entry live quantities
    quantity = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    business = db.relationship("Business", backref=db.backref("products", lazy=True))
    supplier = db.relationship("Supplier")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} code={self.product_code!r} business_id={self.business_id}>"

    @property
    def is_low_stock(self) -> bool:
        return self.quantity <= self.reorder_threshold

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "product_code": self.product_code,
            "name": self.name,
            "description": self.description,
            "unit_of_measure": self.unit_of_measure,
            "supplier_id": self.supplier_id,
            "reorder_threshold": self.reorder_threshold,
            "quantity": self.quantity,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Batch(db.Model):
    """
    A received shipment from one supplier; container for InventoryEntry rows.

    LIFECYCLE:
    - open: entries may be added by receiving
    - closed: no further receiving; remaining stock stays sellable

    Batches are never deleted.
    """
    __tablename__ = "batches"
    __table_args__ = (
        db.UniqueConstraint("business_id", "batch_number", name="uq_batches_business_number"),
        db.Index("ix_batches_business_status", "business_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)

    batch_number = db.Column(db.String(64), nullable=False)
    waybill_number = db.Column(db.String(64), nullable=True)
    received_date = db.Column(db.Date, nullable=False)
    notes = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=BATCH_STATUS_OPEN, index=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    business = db.relationship("Business")
    supplier = db.relationship("Supplier", backref=db.backref("batches", lazy=True))

    def __repr__(self) -> str:
        return f"<Batch id={self.id} number={self.batch_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "supplier_id": self.supplier_id,
            "batch_number": self.batch_number,
            "waybill_number": self.waybill_number,
            "received_date": to_iso_date(self.received_date),
            "notes": self.notes,
            "status": self.status,
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class InventoryEntry(db.Model):
    """
    One product line within a batch: the unit of FEFO/FIFO cost allocation.

    INVARIANT: quantity_received + SUM(movements.quantity) >= 0 at all times.
    `current_quantity` holds that live value and is only ever written together
    with the movement that changes it; the movement log can re-derive it.
    """
    __tablename__ = "inventory_entries"
    __table_args__ = (
        db.Index("ix_entries_business_product", "business_id", "product_id"),
        db.Index("ix_entries_product_expiry", "product_id", "expiry_date"),
        db.CheckConstraint("quantity_received >= 0", name="ck_entries_received_nonneg"),
        db.CheckConstraint("current_quantity >= 0", name="ck_entries_current_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    cost_price_cents = db.Column(db.Integer, nullable=False)
    selling_price_cents = db.Column(db.Integer, nullable=False)
    quantity_received = db.Column(db.Integer, nullable=False)
    current_quantity = db.Column(db.Integer, nullable=False)
    expiry_date = db.Column(db.Date, nullable=True)

    warehouse_location = db.Column(db.String(100), nullable=True)
    reference = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    batch = db.relationship("Batch", backref=db.backref("entries", lazy=True, order_by="InventoryEntry.id"))
    product = db.relationship("Product", backref=db.backref("entries", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<InventoryEntry id={self.id} product_id={self.product_id} "
            f"received={self.quantity_received} current={self.current_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "batch_id": self.batch_id,
            "product_id": self.product_id,
            "cost_price_cents": self.cost_price_cents,
            "selling_price_cents": self.selling_price_cents,
            "quantity_received": self.quantity_received,
            "current_quantity": self.current_quantity,
            "expiry_date": to_iso_date(self.expiry_date),
            "warehouse_location": self.warehouse_location,
            "reference": self.reference,
            "notes": self.notes,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }


class InventoryMovement(db.Model):
    """
    Immutable fact recording a quantity change against one inventory entry.

    quantity is signed: IN > 0, OUT < 0, ADJUSTMENT either way.
    reference_id points at the order whose fulfillment, cancellation or refund
    produced the movement; order_item_id / refund_id narrow it further.

    IMMUTABLE: rows are append-only; updates and deletes are rejected at flush.
    """
    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.Index("ix_movements_entry_id", "entry_id", "id"),
        db.Index("ix_movements_reference", "business_id", "reference_id"),
        db.Index("ix_movements_order_item", "order_item_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    entry_id = db.Column(db.Integer, db.ForeignKey("inventory_entries.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    reference_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("refunds.id"), nullable=True, index=True)

    reason = db.Column(db.String(64), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    entry = db.relationship("InventoryEntry")

    def __repr__(self) -> str:
        return f"<InventoryMovement id={self.id} entry_id={self.entry_id} {self.movement_type} {self.quantity:+d}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "entry_id": self.entry_id,
            "product_id": self.product_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "reference_id": self.reference_id,
            "order_item_id": self.order_item_id,
            "refund_id": self.refund_id,
            "reason": self.reason,
            "note": self.note,
            "created_by_user_id": self.created_by_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }


@event.listens_for(InventoryMovement, "before_update")
def _reject_movement_update(mapper, connection, target):
    raise RuntimeError(f"inventory movement {target.id} is immutable")


@event.listens_for(InventoryMovement, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise RuntimeError(f"inventory movement {target.id} is immutable")
