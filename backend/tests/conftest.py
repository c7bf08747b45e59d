"""
Pytest fixtures for the stock ledger backend tests.

Provides an in-memory SQLite app, per-test table cleanup, catalog/outlet
fixtures and bearer-token headers for each role.
"""

import bcrypt
import pytest

from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import LifecycleState, Outlet, Product, ProductVariant, User
from stockledger.services import receive_service, session_service, sku_service


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'WEBHOOK_SECRET_SHOPEE': 'shopee-secret',
    'WEBHOOK_SECRET_TIKTOK': 'tiktok-secret',
    'SHOPEE_PARTNER_KEY': 'shopee-partner-key',
    'TIKTOK_APP_SECRET': 'tiktok-app-secret',
    'DB_RETRY_ATTEMPTS': 2,
    'LOG_LEVEL': 'WARNING',
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

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
    """Empty every table before each test."""
    with app.app_context():
        db.session.rollback()
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


def _user(db_session, username: str, role: str) -> User:
    # Low bcrypt cost keeps the suite fast; production hashing uses cost 12
    user = User(
        username=username,
        email=f"{username}@example.com",
        password_hash=bcrypt.hashpw(b"Password123", bcrypt.gensalt(rounds=4)).decode("utf-8"),
        role=role,
        is_active=True,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def owner(db_session):
    return _user(db_session, "owner", "OWNER")


@pytest.fixture(scope='function')
def staff(db_session):
    return _user(db_session, "staff", "STAFF")


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def owner_headers(owner):
    _, token = session_service.issue_token(owner.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def staff_headers(staff):
    _, token = session_service.issue_token(staff.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def warehouse(db_session):
    outlet = Outlet(name="Gudang", type="WAREHOUSE", lifecycle=LifecycleState.ACTIVE.value)
    db_session.add(outlet)
    db_session.commit()
    return outlet


@pytest.fixture(scope='function')
def store_outlet(db_session, warehouse):
    outlet = Outlet(name="Toko Bandung", type="OFFLINE_STORE", lifecycle=LifecycleState.ACTIVE.value)
    db_session.add(outlet)
    db_session.commit()
    return outlet


@pytest.fixture(scope='function')
def product(db_session):
    product = Product(name="Kaos Polos", category="T-Shirt", lifecycle=LifecycleState.ACTIVE.value)
    db_session.add(product)
    db_session.commit()
    return product


def _variant(db_session, product, sku, size, price=75000, min_qty=0):
    variant = ProductVariant(
        product_id=product.id,
        sku=sku,
        size=size,
        color="Black",
        price=price,
        min_qty=min_qty,
        lifecycle=LifecycleState.ACTIVE.value,
    )
    db_session.add(variant)
    db_session.commit()
    return variant


@pytest.fixture(scope='function')
def variant_m(db_session, product):
    return _variant(db_session, product, "KP-BLK-M", "M")


@pytest.fixture(scope='function')
def variant_l(db_session, product):
    return _variant(db_session, product, "KP-BLK-L", "L", min_qty=2)


@pytest.fixture(scope='function')
def stock_up(db_session):
    """Receive `qty` units of `variant` into `outlet`."""
    def _stock_up(outlet, variant, qty, actor_user_id=None):
        return receive_service.receive_stock(
            items=[{"variant_id": variant.id, "qty": qty}],
            actor_user_id=actor_user_id,
            outlet_id=outlet.id,
        )
    return _stock_up


@pytest.fixture(scope='function')
def map_sku(db_session):
    def _map_sku(channel, external_sku_id, variant):
        mapping, _ = sku_service.upsert_mapping(channel=channel, external_sku_id=external_sku_id, variant_id=variant.id)
        return mapping
    return _map_sku
