"""
Pytest fixtures for stockledger tests.

Provides an in-memory database, two tenants with reference data, and helpers
to receive stock.
"""

from datetime import date

import pytest

from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Business, Customer, Product, Supplier
from stockledger.services import batch_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'RETRY_BACKOFF_SECONDS': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture
def business_a(db_session):
    business = Business(name="Business A", code="BIZ-A", is_active=True)
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture
def business_b(db_session):
    business = Business(name="Business B", code="BIZ-B", is_active=True)
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture
def supplier_a(db_session, business_a):
    supplier = Supplier(business_id=business_a.id, name="Fresh Farms", lead_time_days=3)
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture
def supplier_b(db_session, business_b):
    supplier = Supplier(business_id=business_b.id, name="Other Supplier")
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture
def customer_a(db_session, business_a):
    customer = Customer(business_id=business_a.id, customer_name="Ada Buyer", customer_type="retail")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture
def product_a(db_session, business_a):
    product = Product(
        business_id=business_a.id,
        product_code="MILK-1L",
        name="Milk 1L",
        reorder_threshold=5,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def product_a2(db_session, business_a):
    product = Product(
        business_id=business_a.id,
        product_code="BREAD",
        name="Bread",
        reorder_threshold=2,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def product_b(db_session, business_b):
    product = Product(
        business_id=business_b.id,
        product_code="MILK-1L",
        name="Milk 1L (B)",
        reorder_threshold=5,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def receive_stock(db_session):
    """Return a helper that receives one entry and returns it."""
    def _receive(
        product,
        supplier,
        quantity,
        *,
        expiry_date=None,
        received_date=date(2026, 1, 10),
        cost_price_cents=100,
        selling_price_cents=250,
    ):
        batch = batch_service.receive(
            product.business_id,
            [{
                "product_id": product.id,
                "quantity": quantity,
                "cost_price_cents": cost_price_cents,
                "selling_price_cents": selling_price_cents,
                "expiry_date": expiry_date,
            }],
            supplier_id=supplier.id,
            received_date=received_date,
        )
        return batch.entries[-1]
    return _receive


@pytest.fixture
def entry_100(receive_stock, product_a, supplier_a):
    """Entry E1: 100 units of product_a, no prior movements."""
    return receive_stock(product_a, supplier_a, 100)
