"""
Pytest fixtures for lounge ledger backend tests.

Provides test database setup, catalog/customer factories, and a test client
with staff headers.
"""

import pytest
from lounge import create_app
from lounge.extensions import db
from lounge.models import Customer, InventoryItem, LoyaltyTransaction
from lounge.services import catalog_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'MUTATION_RETRY_BACKOFF': 0,
        'STORE_TIMEZONE': 'Africa/Nairobi',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        app.extensions.pop('loyalty_ledger', None)

        yield db.session

        # Cleanup after test
        db.session.rollback()
        app.extensions.pop('loyalty_ledger', None)


@pytest.fixture(scope='function')
def make_item(db_session):
    """Factory: create a catalog item with opening stock through the catalog service."""
    def _make(name="Coca-Cola 500ml", stock=10, **fields):
        payload = {
            "name": name,
            "category": fields.pop("category", "Drinks"),
            "unit_price_cents": fields.pop("unit_price_cents", 10000),
        }
        payload.update(fields)
        data = catalog_service.create_item(payload, opening_stock=stock, performed_by="fixture")
        return db_session.get(InventoryItem, data["id"])
    return _make


@pytest.fixture(scope='function')
def make_customer(db_session):
    """Factory: create a customer, optionally with a starting points balance."""
    def _make(full_name="Wanjiru Kamau", tier="Bronze", points=0):
        customer = Customer(full_name=full_name, loyalty_tier=tier)
        db_session.add(customer)
        db_session.flush()
        if points:
            db_session.add(LoyaltyTransaction(
                customer_id=customer.id,
                transaction_type="adjust",
                points=points,
                description="Opening balance",
            ))
        db_session.commit()
        return customer
    return _make


def staff_headers(role: str = "admin", staff_id: str = "staff-1") -> dict:
    """Helper to create the upstream auth headers."""
    return {"X-Staff-Id": staff_id, "X-Staff-Role": role}
