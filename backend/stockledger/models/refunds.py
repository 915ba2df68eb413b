from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


REFUND_TYPE_FULL = "full"
REFUND_TYPE_PARTIAL = "partial"

REFUND_STATUS_PENDING = "pending"
REFUND_STATUS_PROCESSED = "processed"
REFUND_STATUS_FAILED = "failed"


class Refund(db.Model):
    """
    Reversal against an order, full or partial.

    A processed refund has restored stock (IN movements) and reduced the
    order's effective total in the same transaction. A failed refund is
    recorded on its own after the rollback and changed nothing else.
    """
    __tablename__ = "refunds"
    __table_args__ = (
        db.UniqueConstraint("business_id", "refund_number", name="uq_refunds_business_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    refund_number = db.Column(db.String(64), nullable=True)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    refund_type = db.Column(db.String(16), nullable=False, default=REFUND_TYPE_FULL)
    status = db.Column(db.String(16), nullable=False, default=REFUND_STATUS_PENDING, index=True)

    reason = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    failure_reason = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", backref=db.backref("refunds", lazy=True, order_by="Refund.id"))
    items = db.relationship("RefundItem", back_populates="refund", lazy=True, order_by="RefundItem.id")

    def __repr__(self) -> str:
        return f"<Refund id={self.id} order_id={self.order_id} status={self.status} amount={self.amount_cents}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "order_id": self.order_id,
            "refund_number": self.refund_number,
            "amount_cents": self.amount_cents,
            "refund_type": self.refund_type,
            "status": self.status,
            "reason": self.reason,
            "notes": self.notes,
            "failure_reason": self.failure_reason,
            "created_by_user_id": self.created_by_user_id,
            "processed_at": to_utc_z(self.processed_at) if self.processed_at else None,
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


class RefundItem(db.Model):
    """Order item quantity returned by a refund."""
    __tablename__ = "refund_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_refund_items_quantity_pos"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("refunds.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    refund = db.relationship("Refund", back_populates="items")
    order_item = db.relationship("OrderItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "refund_id": self.refund_id,
            "order_item_id": self.order_item_id,
            "quantity": self.quantity,
            "amount_cents": self.amount_cents,
        }
