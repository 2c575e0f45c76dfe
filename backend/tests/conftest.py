"""
Pytest fixtures for PharmaPOS backend tests.

Provides test database setup, staff accounts for each role, sample
catalog products, and test client helpers.
"""

from datetime import timedelta

import pytest
from pharmapos import create_app
from pharmapos.config import TestConfig
from pharmapos.extensions import db, carts
from pharmapos.models import Product
from pharmapos.services.auth_service import create_user
from pharmapos.services import session_service
from pharmapos.services.session_service import SessionContext
from pharmapos.time_utils import utcnow


PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

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
    """Create fresh database (and no open carts) for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        carts.reset()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        carts.reset()


@pytest.fixture(scope='function')
def admin_user(db_session):
    return create_user(
        email="admin@pharmapos.test",
        full_name="Amina Admin",
        password=PASSWORD,
        role="super_admin",
    )


@pytest.fixture(scope='function')
def pharmtech_user(db_session):
    return create_user(
        email="tech@pharmapos.test",
        full_name="Peter Tech",
        password=PASSWORD,
        role="pharmtech",
    )


@pytest.fixture(scope='function')
def cashier_user(db_session):
    return create_user(
        email="cashier@pharmapos.test",
        full_name="Carol Cashier",
        password=PASSWORD,
        role="cashier",
    )


@pytest.fixture(scope='function')
def cashier_ctx(cashier_user):
    """SessionContext for service-level cart and checkout tests."""
    session, _ = session_service.create_session(cashier_user.id)
    return SessionContext(user=cashier_user, session=session)


@pytest.fixture(scope='function')
def pharmtech_ctx(pharmtech_user):
    session, _ = session_service.create_session(pharmtech_user.id)
    return SessionContext(user=pharmtech_user, session=session)


def make_product(name="Panadol Extra", price_cents=15000, stock_level=250, **overrides) -> Product:
    """Insert a product with sensible defaults; keyword overrides win."""
    fields = {
        "name": name,
        "category": "Pain Relief",
        "supplier": "GlaxoSmithKline",
        "batch_number": "PE2024001",
        "expiry_date": utcnow().date() + timedelta(days=400),
        "cost_price_cents": 12000,
        "selling_price_cents": price_cents,
        "stock_level": stock_level,
        "minimum_stock": 50,
        "barcode": None,
        "prescription_required": False,
    }
    fields.update(overrides)
    product = Product(**fields)
    db.session.add(product)
    db.session.commit()
    return product


@pytest.fixture(scope='function')
def panadol(db_session):
    return make_product(barcode="1234567890123")


@pytest.fixture(scope='function')
def amoxicillin(db_session):
    return make_product(
        name="Amoxicillin 500mg",
        price_cents=35000,
        stock_level=15,
        category="Antibiotics",
        supplier="Cipla Kenya",
        batch_number="AM2024002",
        minimum_stock=25,
        barcode="1234567890124",
        prescription_required=True,
    )


def get_auth_token(client, email: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'email': email,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(client, admin_user):
    return auth_headers(get_auth_token(client, admin_user.email))


@pytest.fixture(scope='function')
def pharmtech_headers(client, pharmtech_user):
    return auth_headers(get_auth_token(client, pharmtech_user.email))


@pytest.fixture(scope='function')
def cashier_headers(client, cashier_user):
    return auth_headers(get_auth_token(client, cashier_user.email))
