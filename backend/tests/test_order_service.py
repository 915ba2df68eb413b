# Overview: Pytest coverage for order creation, totals and the status state machine.

from datetime import date, datetime

import pytest

from stockledger.errors import (
    InsufficientStockError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from stockledger.models import (
    Discount,
    InventoryEntry,
    InventoryMovement,
    Order,
    OrderItem,
    Product,
)
from stockledger.services import audit_service, movement_service, order_service


def _item(product, quantity, unit_price_cents=1000, **extra):
    item = {"product_id": product.id, "quantity": quantity, "unit_price_cents": unit_price_cents}
    item.update(extra)
    return item


class TestCreateOrder:
    def test_reserves_stock_with_one_out_movement(self, db_session, business_a, product_a, entry_100, customer_a):
        order = order_service.create_order(
            business_a.id,
            [_item(product_a, 30)],
            customer_id=customer_a.id,
        )

        assert order.status == "pending"
        assert order.payment_status == "unpaid"
        assert order.order_number == f"ORD-{business_a.id:03d}-0001"
        assert movement_service.live_quantity(business_a.id, entry_100.id) == 70

        movements = order_service.list_order_movements(business_a.id, order.id)
        assert len(movements) == 1
        out = movements[0]
        assert (out.movement_type, out.quantity, out.entry_id) == ("OUT", -30, entry_100.id)
        assert out.reference_id == order.id
        assert out.order_item_id == order.items[0].id
        assert db_session.get(Product, product_a.id).quantity == 70

    def test_exact_remaining_quantity_then_one_more(self, db_session, business_a, product_a, entry_100):
        order_service.create_order(business_a.id, [_item(product_a, 100)])
        assert db_session.get(InventoryEntry, entry_100.id).current_quantity == 0

        with pytest.raises(InsufficientStockError) as exc:
            order_service.create_order(business_a.id, [_item(product_a, 1)])
        assert exc.value.details["product_id"] == product_a.id
        assert exc.value.details["requested"] == 1
        assert exc.value.details["available"] == 0

    def test_allocation_spans_entries_in_fefo_order(self, db_session, business_a, product_a, supplier_a, receive_stock):
        later = receive_stock(product_a, supplier_a, 10, expiry_date=date(2026, 12, 1))
        sooner = receive_stock(product_a, supplier_a, 10, expiry_date=date(2026, 6, 1))

        order = order_service.create_order(business_a.id, [_item(product_a, 15)])

        movements = order_service.list_order_movements(business_a.id, order.id)
        assert [(m.entry_id, m.quantity) for m in movements] == [(sooner.id, -10), (later.id, -5)]
        assert {m.order_item_id for m in movements} == {order.items[0].id}
        assert -sum(m.quantity for m in movements) == order.items[0].quantity

    def test_all_or_nothing_names_first_unsatisfiable_product(
        self, db_session, business_a, product_a, product_a2, supplier_a, receive_stock, entry_100
    ):
        receive_stock(product_a2, supplier_a, 2)

        with pytest.raises(InsufficientStockError) as exc:
            order_service.create_order(
                business_a.id,
                [_item(product_a, 10), _item(product_a2, 3), _item(product_a, 500)],
            )

        assert exc.value.details["product_id"] == product_a2.id
        assert exc.value.details["item_index"] == 1
        assert db_session.query(Order).count() == 0
        assert db_session.query(OrderItem).count() == 0
        assert db_session.query(InventoryMovement).count() == 0
        assert db_session.get(InventoryEntry, entry_100.id).current_quantity == 100
        assert db_session.get(Product, product_a.id).quantity == 100

    def test_repeated_product_lines_share_stock(self, db_session, business_a, product_a, entry_100):
        order_service.create_order(business_a.id, [_item(product_a, 60), _item(product_a, 40)])
        assert db_session.get(InventoryEntry, entry_100.id).current_quantity == 0

        with pytest.raises(InsufficientStockError):
            order_service.create_order(business_a.id, [_item(product_a, 1), _item(product_a, 1)])

    def test_failed_order_releases_its_number(self, db_session, business_a, product_a, entry_100):
        with pytest.raises(InsufficientStockError):
            order_service.create_order(business_a.id, [_item(product_a, 101)])
        order = order_service.create_order(business_a.id, [_item(product_a, 1)])
        assert order.order_number.endswith("-0001")

    def test_validation(self, db_session, business_a, product_a, entry_100):
        with pytest.raises(ValidationError):
            order_service.create_order(business_a.id, [])
        with pytest.raises(ValidationError):
            order_service.create_order(business_a.id, [_item(product_a, 0)])
        with pytest.raises(ValidationError):
            order_service.create_order(business_a.id, [_item(product_a, 1, unit_price_cents=-1)])
        with pytest.raises(ValidationError):
            order_service.create_order(business_a.id, [_item(product_a, 1)], tax_amount_cents=-5)

    @pytest.mark.parametrize("product_id", ["abc", None, False])
    def test_malformed_product_id_rejected(self, db_session, business_a, product_a, entry_100, product_id):
        with pytest.raises(ValidationError) as exc:
            order_service.create_order(
                business_a.id,
                [_item(product_a, 1), {"product_id": product_id, "quantity": 1, "unit_price_cents": 100}],
            )
        assert exc.value.details["field"] == "product_id"
        assert exc.value.details["index"] == 1
        assert db_session.query(Order).count() == 0
        assert db_session.get(InventoryEntry, entry_100.id).current_quantity == 100

    def test_unknown_customer(self, db_session, business_a, product_a, entry_100):
        with pytest.raises(NotFoundError):
            order_service.create_order(business_a.id, [_item(product_a, 1)], customer_id=999999)
        assert db_session.query(InventoryMovement).count() == 0

    def test_audit_event_written(self, db_session, business_a, product_a, entry_100):
        order = order_service.create_order(business_a.id, [_item(product_a, 2)])
        events = audit_service.list_audit_events(business_a.id, event_type="order.created")
        assert [e.order_id for e in events] == [order.id]


class TestTotals:
    def test_percentage_discount_tax_and_shipping(self, db_session, business_a, product_a, product_a2, supplier_a, receive_stock, entry_100):
        receive_stock(product_a2, supplier_a, 10)

        order = order_service.create_order(
            business_a.id,
            [_item(product_a, 3, 1000), _item(product_a2, 2, 500, discount_cents=100)],
            [{"kind": "percentage", "value": 1000}],
            tax_amount_cents=250,
            shipping_cost_cents=400,
        )

        # subtotal 4000; item discount 100; 10% of 4000 = 400
        assert order.subtotal_cents == 4000
        assert order.discount_total_cents == 500
        assert order.total_amount_cents == 4000 - 500 + 250 + 400
        assert order.items[1].total_amount_cents == 900
        assert sum(i.allocated_total_cents for i in order.items) == order.total_amount_cents
        assert [d.amount_cents for d in order.discounts] == [400]

    def test_fixed_discount_capped_at_subtotal(self, db_session, business_a, product_a, entry_100):
        order = order_service.create_order(
            business_a.id,
            [_item(product_a, 2, 300)],
            [{"kind": "fixed", "value": 5000}],
            tax_amount_cents=50,
        )
        assert order.discount_total_cents == 600
        assert order.total_amount_cents == 50

    def test_item_discount_capped_at_line(self, db_session, business_a, product_a, entry_100):
        order = order_service.create_order(business_a.id, [_item(product_a, 1, 300, discount_cents=999)])
        assert order.items[0].discount_cents == 300
        assert order.total_amount_cents == 0

    def test_stored_discount_must_be_active_and_in_window(self, app, db_session, business_a, product_a, entry_100, monkeypatch):
        discount = Discount(
            business_id=business_a.id,
            name="Spring",
            discount_type="percentage",
            discount_value=2500,
            start_date=datetime(2026, 3, 1),
            end_date=datetime(2026, 3, 31),
            is_active=True,
        )
        db_session.add(discount)
        db_session.commit()

        monkeypatch.setitem(app.config, "CLOCK", lambda: datetime(2026, 3, 15, 12, 0))
        order = order_service.create_order(
            business_a.id, [_item(product_a, 4, 1000)], [{"discount_id": discount.id}]
        )
        assert order.discount_total_cents == 1000
        assert order.discounts[0].discount_id == discount.id

        monkeypatch.setitem(app.config, "CLOCK", lambda: datetime(2026, 4, 2))
        with pytest.raises(ValidationError):
            order_service.create_order(business_a.id, [_item(product_a, 1)], [{"discount_id": discount.id}])

    def test_allocate_total_is_exact(self):
        assert order_service.allocate_total(100, [1, 1, 1]) == [34, 33, 33]
        assert order_service.allocate_total(0, [5, 5]) == [0, 0]
        assert order_service.allocate_total(7, [0, 0]) == [4, 3]
        assert sum(order_service.allocate_total(9999, [3, 7, 11])) == 9999


class TestTransitions:
    @pytest.fixture
    def order(self, db_session, business_a, product_a, entry_100):
        return order_service.create_order(business_a.id, [_item(product_a, 10)])

    @pytest.mark.parametrize("path", [
        ["paid", "shipped", "delivered"],
        ["paid", "delivered"],
        ["shipped", "delivered"],
    ])
    def test_legal_paths(self, db_session, business_a, order, path):
        for status in path:
            order = order_service.advance(business_a.id, order.id, status)
        assert order.status == "delivered"
        assert order.delivered_at is not None

    @pytest.mark.parametrize("path,illegal", [
        ([], "delivered"),
        (["shipped"], "paid"),
        (["paid", "shipped", "delivered"], "shipped"),
        (["paid"], "pending"),
    ])
    def test_illegal_transitions(self, db_session, business_a, order, path, illegal):
        for status in path:
            order_service.advance(business_a.id, order.id, status)
        with pytest.raises(InvalidStateTransitionError) as exc:
            order_service.advance(business_a.id, order.id, illegal)
        assert exc.value.details["to_status"] == illegal

    def test_cancel_pending_releases_stock(self, db_session, business_a, order, entry_100):
        cancelled = order_service.cancel(business_a.id, order.id, reason="customer changed mind")

        assert cancelled.status == "cancelled"
        assert movement_service.live_quantity(business_a.id, entry_100.id) == 100
        movements = order_service.list_order_movements(business_a.id, order.id)
        assert [(m.movement_type, m.quantity) for m in movements] == [("OUT", -10), ("IN", 10)]
        assert movements[1].order_item_id == movements[0].order_item_id
        assert movements[1].reason == "order_cancelled"

    def test_cancel_via_advance(self, db_session, business_a, order, entry_100):
        order_service.advance(business_a.id, order.id, "cancelled")
        assert db_session.get(InventoryEntry, entry_100.id).current_quantity == 100

    @pytest.mark.parametrize("status", ["paid", "shipped"])
    def test_cancel_after_commitment_is_rejected(self, db_session, business_a, order, entry_100, status):
        order_service.advance(business_a.id, order.id, status)
        with pytest.raises(InvalidStateTransitionError):
            order_service.cancel(business_a.id, order.id)
        assert db_session.get(InventoryEntry, entry_100.id).current_quantity == 90

    def test_cancelled_is_terminal(self, db_session, business_a, order):
        order_service.cancel(business_a.id, order.id)
        with pytest.raises(InvalidStateTransitionError):
            order_service.cancel(business_a.id, order.id)
        with pytest.raises(InvalidStateTransitionError):
            order_service.advance(business_a.id, order.id, "paid")

    def test_unknown_status(self, db_session, business_a, order):
        with pytest.raises(ValidationError):
            order_service.advance(business_a.id, order.id, "teleported")

    def test_list_orders_filters_by_status(self, db_session, business_a, product_a, order):
        second = order_service.create_order(business_a.id, [_item(product_a, 1)])
        order_service.cancel(business_a.id, second.id)

        assert [o.id for o in order_service.list_orders(business_a.id)] == [order.id, second.id]
        assert [o.id for o in order_service.list_orders(business_a.id, status="cancelled")] == [second.id]
