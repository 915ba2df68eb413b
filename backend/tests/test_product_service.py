# Overview: Pytest coverage for quantity reconciliation, stock summaries and the CLI.

from datetime import date, datetime

import pytest
from sqlalchemy import update

from stockledger.errors import ValidationError
from stockledger.models import AuditEvent, InventoryEntry, Product
from stockledger.services import movement_service, order_service, product_service


def _corrupt(db_session, entry_id=None, product_id=None, value=0):
    if entry_id is not None:
        db_session.execute(update(InventoryEntry).where(InventoryEntry.id == entry_id).values(current_quantity=value))
    if product_id is not None:
        db_session.execute(update(Product).where(Product.id == product_id).values(quantity=value))
    db_session.commit()
    db_session.expire_all()


class TestReconcile:
    def test_consistent_product_is_untouched(self, db_session, business_a, product_a, entry_100):
        movement_service.record(business_a.id, entry_100.id, 12, "OUT")
        result = product_service.reconcile_product_quantity(business_a.id, product_a.id)

        assert result["changed"] is False
        assert result["quantity"] == 88
        assert db_session.query(AuditEvent).filter_by(event_type="product.quantity_reconciled").count() == 0

    def test_repairs_drifted_caches(self, db_session, business_a, product_a, entry_100):
        movement_service.record(business_a.id, entry_100.id, 12, "OUT")
        _corrupt(db_session, entry_id=entry_100.id, product_id=product_a.id, value=3)

        report = movement_service.audit_entry(business_a.id, entry_100.id)
        assert report["derived_quantity"] == 88
        assert report["drift"] == 3 - 88

        result = product_service.reconcile_product_quantity(business_a.id, product_a.id)
        assert result["changed"] is True
        assert result["previous_quantity"] == 3
        assert result["quantity"] == 88
        assert result["entries_repaired"] == [{"entry_id": entry_100.id, "cached": 3, "derived": 88}]

        assert db_session.get(InventoryEntry, entry_100.id).current_quantity == 88
        assert db_session.get(Product, product_a.id).quantity == 88
        assert db_session.query(AuditEvent).filter_by(event_type="product.quantity_reconciled").count() == 1

    def test_reconcile_business(self, db_session, business_a, product_a, product_a2, entry_100):
        _corrupt(db_session, product_id=product_a2.id, value=9)
        results = product_service.reconcile_business(business_a.id)

        by_product = {r["product_id"]: r for r in results}
        assert by_product[product_a.id]["changed"] is False
        assert by_product[product_a2.id]["changed"] is True
        assert db_session.get(Product, product_a2.id).quantity == 0


class TestSummary:
    def test_status_good_and_low(self, db_session, business_a, product_a, product_a2, entry_100):
        order_service.create_order(
            business_a.id, [{"product_id": product_a.id, "quantity": 95, "unit_price_cents": 10}]
        )
        rows = {r["product_id"]: r for r in product_service.inventory_summary(business_a.id)}

        assert rows[product_a.id]["quantity"] == 5
        assert rows[product_a.id]["status"] == "low"
        assert [e["entry_id"] for e in rows[product_a.id]["entries"]] == [entry_100.id]
        assert rows[product_a2.id]["status"] == "low"
        assert rows[product_a2.id]["entries"] == []

        low = product_service.low_stock_products(business_a.id)
        assert {p.id for p in low} == {product_a.id, product_a2.id}

    def test_good_when_above_threshold(self, db_session, business_a, product_a, entry_100):
        [row] = product_service.inventory_summary(business_a.id, product_a.id)
        assert row["status"] == "good"
        assert product_service.low_stock_products(business_a.id) == []


class TestExpiring:
    @pytest.fixture
    def stocked(self, app, db_session, product_a, product_a2, supplier_a, receive_stock, monkeypatch):
        monkeypatch.setitem(app.config, "CLOCK", lambda: datetime(2026, 3, 1, 9, 0))
        return {
            "expired": receive_stock(product_a, supplier_a, 5, expiry_date=date(2026, 2, 25)),
            "soon": receive_stock(product_a2, supplier_a, 3, expiry_date=date(2026, 3, 10)),
            "empty": receive_stock(product_a, supplier_a, 0, expiry_date=date(2026, 3, 5)),
            "later": receive_stock(product_a, supplier_a, 8, expiry_date=date(2026, 5, 1)),
            "no_expiry": receive_stock(product_a, supplier_a, 4),
        }

    def test_window_is_soonest_first_and_in_stock_only(self, db_session, business_a, stocked):
        rows = product_service.expiring_entries(business_a.id)

        assert [r["entry_id"] for r in rows] == [stocked["expired"].id, stocked["soon"].id]
        assert [r["days_until_expiry"] for r in rows] == [-4, 9]
        assert rows[1]["product_code"] == "BREAD"
        assert rows[1]["quantity"] == 3
        assert rows[1]["expiry_date"] == "2026-03-10"

    def test_wider_window(self, db_session, business_a, stocked):
        rows = product_service.expiring_entries(business_a.id, days=61)
        assert stocked["later"].id in [r["entry_id"] for r in rows]
        assert stocked["no_expiry"].id not in [r["entry_id"] for r in rows]

    def test_invalid_days(self, db_session, business_a):
        with pytest.raises(ValidationError):
            product_service.expiring_entries(business_a.id, days=-1)

    def test_expiring_command(self, app, db_session, business_a, stocked):
        result = app.test_cli_runner().invoke(
            args=["inventory", "expiring", "--business-id", str(business_a.id), "--days", "5"]
        )
        assert result.exit_code == 0, result.output
        assert "days=-4" in result.output
        assert "days=9" not in result.output


class TestCli:
    def test_reconcile_command(self, app, db_session, business_a, product_a, entry_100):
        _corrupt(db_session, product_id=product_a.id, value=1)

        result = app.test_cli_runner().invoke(args=["inventory", "reconcile", "--business-id", str(business_a.id)])

        assert result.exit_code == 0, result.output
        assert "1 changed" in result.output
        db_session.expire_all()
        assert db_session.get(Product, product_a.id).quantity == 100

    def test_audit_entry_command(self, app, db_session, business_a, entry_100):
        result = app.test_cli_runner().invoke(
            args=["inventory", "audit-entry", "--business-id", str(business_a.id), "--entry-id", str(entry_100.id)]
        )
        assert result.exit_code == 0, result.output
        assert "drift=0" in result.output

    def test_unknown_business(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["inventory", "reconcile", "--business-id", "424242"])
        assert result.exit_code != 0
        assert "Business not found" in result.output
