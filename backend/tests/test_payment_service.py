# Overview: Pytest coverage for payment reconciliation.

import pytest

from stockledger.errors import InvalidStateTransitionError, OverpaymentError, ValidationError
from stockledger.models import AuditEvent, OrderPayment
from stockledger.services import order_service, payment_service


@pytest.fixture
def order_200(db_session, business_a, product_a, entry_100):
    """Order with total_amount = 200 cents."""
    return order_service.create_order(
        business_a.id,
        [{"product_id": product_a.id, "quantity": 2, "unit_price_cents": 100}],
    )


class TestApplyPayment:
    def test_status_moves_unpaid_partial_paid(self, db_session, business_a, order_200):
        assert order_200.total_amount_cents == 200
        assert order_200.payment_status == "unpaid"

        payment_service.apply_payment(business_a.id, order_200.id, 120, "cash")
        order = order_service.get_order(business_a.id, order_200.id)
        assert order.payment_status == "partially_paid"
        assert order.total_paid_cents == 120
        assert order.balance_due_cents == 80

        payment_service.apply_payment(business_a.id, order_200.id, 80, "card", reference_number="TX-1")
        order = order_service.get_order(business_a.id, order_200.id)
        assert order.payment_status == "paid"
        assert order.balance_due_cents == 0

    def test_any_further_payment_is_overpayment(self, db_session, business_a, order_200):
        payment_service.apply_payment(business_a.id, order_200.id, 120, "cash")
        payment_service.apply_payment(business_a.id, order_200.id, 80, "cash")

        with pytest.raises(OverpaymentError) as exc:
            payment_service.apply_payment(business_a.id, order_200.id, 1, "online")

        assert exc.value.details["total_paid_cents"] == 200
        assert exc.value.details["effective_total_cents"] == 200
        assert len(payment_service.list_payments(business_a.id, order_200.id)) == 2

    def test_single_overpayment_rejected(self, db_session, business_a, order_200):
        with pytest.raises(OverpaymentError) as exc:
            payment_service.apply_payment(business_a.id, order_200.id, 201, "cash")
        assert exc.value.details["balance_due_cents"] == 200
        assert db_session.query(OrderPayment).count() == 0

    def test_each_call_appends_one_payment(self, db_session, business_a, order_200):
        payment_service.apply_payment(business_a.id, order_200.id, 50, "cash")
        payment_service.apply_payment(business_a.id, order_200.id, 50, "cash")

        payments = payment_service.list_payments(business_a.id, order_200.id)
        assert [p.amount_cents for p in payments] == [50, 50]
        assert db_session.query(AuditEvent).filter_by(event_type="payment.applied").count() == 2

    def test_payments_do_not_advance_order_status(self, db_session, business_a, order_200):
        payment_service.apply_payment(business_a.id, order_200.id, 200, "cash")
        assert order_service.get_order(business_a.id, order_200.id).status == "pending"

    @pytest.mark.parametrize("amount,method", [(0, "cash"), (-10, "cash"), (10, "cheque"), (1.5, "cash")])
    def test_invalid_input(self, db_session, business_a, order_200, amount, method):
        with pytest.raises(ValidationError):
            payment_service.apply_payment(business_a.id, order_200.id, amount, method)

    def test_cancelled_order_cannot_be_paid(self, db_session, business_a, order_200):
        order_service.cancel(business_a.id, order_200.id)
        with pytest.raises(InvalidStateTransitionError):
            payment_service.apply_payment(business_a.id, order_200.id, 10, "cash")

    def test_cancel_with_payment_records_amount_due_back(self, db_session, business_a, order_200):
        payment_service.apply_payment(business_a.id, order_200.id, 150, "card")
        order = order_service.cancel(business_a.id, order_200.id)
        assert order.amount_due_back_cents == 150


class TestComputePaymentStatus:
    @pytest.mark.parametrize("paid,effective,refunded,expected", [
        (0, 200, 0, "unpaid"),
        (1, 200, 0, "partially_paid"),
        (199, 200, 0, "partially_paid"),
        (200, 200, 0, "paid"),
        (200, 120, 80, "paid"),
        (100, 120, 80, "partially_paid"),
        (0, 120, 80, "unpaid"),
        (0, 0, 200, "paid"),
        (0, 0, 0, "unpaid"),
    ])
    def test_table(self, paid, effective, refunded, expected):
        assert payment_service.compute_payment_status(paid, effective, refunded) == expected
