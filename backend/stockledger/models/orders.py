from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from stockledger.time_utils import to_utc_z


ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_PAID = "paid"
ORDER_STATUS_SHIPPED = "shipped"
ORDER_STATUS_DELIVERED = "delivered"
ORDER_STATUS_CANCELLED = "cancelled"

PAYMENT_STATUS_UNPAID = "unpaid"
PAYMENT_STATUS_PARTIALLY_PAID = "partially_paid"
PAYMENT_STATUS_PAID = "paid"

PAYMENT_METHODS = ("cash", "card", "online")

DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED = "fixed"


class Discount(db.Model):
    """
    Discount definition.

    discount_value is basis points for percentage discounts (1000 = 10%)
    and cents for fixed discounts. Which products a `selected` scope covers
    is resolved upstream; the engine only checks validity and computes the amount.
    """
    __tablename__ = "discounts"
    __table_args__ = (
        db.UniqueConstraint("business_id", "name", name="uq_discounts_business_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    discount_type = db.Column(db.String(16), nullable=False)  # percentage, fixed
    discount_value = db.Column(db.Integer, nullable=False)
    scope = db.Column(db.String(16), nullable=False, default="all")  # all, selected

    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "name": self.name,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "scope": self.scope,
            "start_date": to_utc_z(self.start_date),
            "end_date": to_utc_z(self.end_date),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Order(db.Model):
    """
    Customer order.

    STATUS: pending -> paid|shipped -> delivered, or pending -> cancelled.
    Stock is reserved (OUT movements) when the order is created.

    MONEY (all cents):
    - total_amount = subtotal - discount_total + tax_amount + shipping_cost
    - refunded_amount reduces the effective total
    - amount_due_back is what the business owes the customer after refunds
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("business_id", "order_number", name="uq_orders_business_number"),
        db.Index("ix_orders_business_status", "business_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    order_number = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=ORDER_STATUS_PENDING, index=True)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_UNPAID, index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_total_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    total_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    refunded_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_due_back_cents = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    order_date = db.Column(db.DateTime(timezone=True), nullable=False)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    customer = db.relationship("Customer")
    items = db.relationship("OrderItem", back_populates="order", lazy=True, order_by="OrderItem.id")
    discounts = db.relationship("OrderDiscount", back_populates="order", lazy=True, order_by="OrderDiscount.id")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status}>"

    @property
    def effective_total_cents(self) -> int:
        return self.total_amount_cents - self.refunded_amount_cents

    @property
    def balance_due_cents(self) -> int:
        return max(0, self.effective_total_cents - self.total_paid_cents)

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "business_id": self.business_id,
            "customer_id": self.customer_id,
            "order_number": self.order_number,
            "status": self.status,
            "payment_status": self.payment_status,
            "subtotal_cents": self.subtotal_cents,
            "discount_total_cents": self.discount_total_cents,
            "tax_amount_cents": self.tax_amount_cents,
            "shipping_cost_cents": self.shipping_cost_cents,
            "total_amount_cents": self.total_amount_cents,
            "total_paid_cents": self.total_paid_cents,
            "refunded_amount_cents": self.refunded_amount_cents,
            "effective_total_cents": self.effective_total_cents,
            "balance_due_cents": self.balance_due_cents,
            "amount_due_back_cents": self.amount_due_back_cents,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "order_date": to_utc_z(self.order_date),
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "shipped_at": to_utc_z(self.shipped_at) if self.shipped_at else None,
            "delivered_at": to_utc_z(self.delivered_at) if self.delivered_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
            data["discounts"] = [d.to_dict() for d in self.discounts]
        return data


class OrderItem(db.Model):
    """
    One product line on an order.

    total_amount = unit_price * quantity - discount.
    allocated_total is this line's share of the order's total_amount
    (order-level discounts, tax and shipping spread by line value); refunds
    are priced from it so that refunding every unit returns the whole total.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_pos"),
        db.CheckConstraint("refunded_quantity <= quantity", name="ck_order_items_refund_le_qty"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False)
    allocated_total_cents = db.Column(db.Integer, nullable=False, default=0)

    refunded_quantity = db.Column(db.Integer, nullable=False, default=0)
    refunded_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="items")
    product = db.relationship("Product")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def refundable_quantity(self) -> int:
        return self.quantity - self.refunded_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "total_amount_cents": self.total_amount_cents,
            "allocated_total_cents": self.allocated_total_cents,
            "refunded_quantity": self.refunded_quantity,
            "refunded_amount_cents": self.refunded_amount_cents,
            "refundable_quantity": self.refundable_quantity,
            "created_at": to_utc_z(self.created_at),
        }


class OrderDiscount(db.Model):
    """Resolved order-level discount with the concrete amount applied."""
    __tablename__ = "order_discounts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    discount_id = db.Column(db.Integer, db.ForeignKey("discounts.id"), nullable=True)

    kind = db.Column(db.String(16), nullable=False)
    value = db.Column(db.Integer, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="discounts")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "discount_id": self.discount_id,
            "kind": self.kind,
            "value": self.value,
            "amount_cents": self.amount_cents,
        }


class OrderPayment(db.Model):
    """
    One payment fact applied to an order. Append-only.

    Each apply_payment call appends exactly one row; duplicate-submission
    protection belongs to the calling layer.
    """
    __tablename__ = "order_payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_order_payments_amount_pos"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    payment_method = db.Column(db.String(16), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    reference_number = db.Column(db.String(128), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", backref=db.backref("payments", lazy=True, order_by="OrderPayment.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "order_id": self.order_id,
            "payment_method": self.payment_method,
            "amount_cents": self.amount_cents,
            "reference_number": self.reference_number,
            "created_by_user_id": self.created_by_user_id,
            "paid_at": to_utc_z(self.paid_at),
        }


@event.listens_for(OrderPayment, "before_update")
def _reject_payment_update(mapper, connection, target):
    raise RuntimeError(f"order payment {target.id} is immutable")
