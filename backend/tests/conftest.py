"""
Pytest fixtures for the cinema canteen backend tests.

Provides the test database, two tenants with users, catalog factories and
the test client.
"""

import threading

import pytest
from cinepos import create_app
from cinepos.errors import CoreError
from cinepos.extensions import db
from cinepos.models import Theater, Product, ComboOffer, ComboComponent
from cinepos.services import identity_service, stock_service
from cinepos.services.identity_service import Principal
from cinepos.services.units import to_milli


PASSWORD = "Password123"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
        'RETRY_BACKOFF_BASE': 0,
        'LOG_LEVEL': 'WARNING',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def file_app(tmp_path):
    """Application on a file-backed SQLite database; each thread gets its own connection."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.sqlite3'}",
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
        'RETRY_ATTEMPTS': 10,
        'RETRY_BACKOFF_BASE': 0.01,
        'LOG_LEVEL': 'WARNING',
    })

    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


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

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def theater_a(db_session):
    """Theater A (first tenant)."""
    theater = Theater(name="Grand Cinema", code="GRAND", is_active=True)
    db_session.add(theater)
    db_session.commit()
    return theater


@pytest.fixture(scope='function')
def theater_b(db_session):
    """Theater B (second tenant)."""
    theater = Theater(name="Beta Screens", code="BETA", is_active=True)
    db_session.add(theater)
    db_session.commit()
    return theater


@pytest.fixture(scope='function')
def staff_a(db_session, theater_a):
    return identity_service.create_user("staff_a", PASSWORD, role="staff", theater_id=theater_a.id)


@pytest.fixture(scope='function')
def admin_a(db_session, theater_a):
    return identity_service.create_user("admin_a", PASSWORD, role="theater_admin", theater_id=theater_a.id)


@pytest.fixture(scope='function')
def kiosk_a(db_session, theater_a):
    return identity_service.create_user("kiosk_a", PASSWORD, role="kiosk", theater_id=theater_a.id)


@pytest.fixture(scope='function')
def staff_b(db_session, theater_b):
    return identity_service.create_user("staff_b", PASSWORD, role="staff", theater_id=theater_b.id)


@pytest.fixture(scope='function')
def staff_principal(staff_a):
    return Principal(user_id=staff_a.id, role="staff", tenant_id=staff_a.theater_id)


@pytest.fixture(scope='function')
def kiosk_principal(kiosk_a):
    return Principal(user_id=kiosk_a.id, role="kiosk", tenant_id=kiosk_a.theater_id)


@pytest.fixture(scope='function')
def staff_headers(client, staff_a):
    return auth_headers(get_auth_token(client, "staff_a"))


@pytest.fixture(scope='function')
def admin_headers(client, admin_a):
    return auth_headers(get_auth_token(client, "admin_a"))


@pytest.fixture(scope='function')
def kiosk_headers(client, kiosk_a):
    return auth_headers(get_auth_token(client, "kiosk_a"))


@pytest.fixture(scope='function')
def staff_b_headers(client, staff_b):
    return auth_headers(get_auth_token(client, "staff_b"))


def make_product(theater, name="Popcorn", price_cents=10000, **fields) -> Product:
    """Insert a sellable product; keyword fields override the defaults."""
    values = {
        "theater_id": theater.id,
        "name": name,
        "selling_price_cents": price_cents,
        "tax_rate_bps": 500,
        "gst_type": "Exclusive",
        "discount_bps": 0,
        "no_qty": 1,
        "stock_unit": "Nos",
        "is_active": True,
        "is_available": True,
    }
    values.update(fields)
    product = Product(**values)
    db.session.add(product)
    db.session.commit()
    return product


def make_combo(theater, components, name="Movie Combo", price_cents=25000, **fields) -> ComboOffer:
    """components: [(product, quantity_per_combo), ...] in declared order."""
    values = {
        "theater_id": theater.id,
        "name": name,
        "offer_price_cents": price_cents,
        "tax_rate_bps": 500,
        "gst_type": "Inclusive",
        "discount_bps": 0,
        "is_active": True,
    }
    values.update(fields)
    combo = ComboOffer(**values)
    for position, (product, quantity) in enumerate(components):
        combo.components.append(
            ComboComponent(product_id=product.id, position=position, quantity_per_combo=quantity)
        )
    db.session.add(combo)
    db.session.commit()
    return combo


def stock_in(product, amount, **kwargs):
    """Purchase `amount` (in the product's stock unit) into stock."""
    return stock_service.append_entry(
        product.theater_id,
        product.id,
        stock_service.KIND_PURCHASE,
        to_milli(amount),
        "opening stock",
        **kwargs,
    )


def balance(product) -> int:
    return stock_service.current_balance_milli(product.theater_id, product.id)


def get_auth_token(client, username: str, password: str = PASSWORD, tenant_id=None) -> str:
    """Helper to get auth token for a user."""
    body = {'username': username, 'password': password}
    if tenant_id is not None:
        body['tenantId'] = tenant_id
    response = client.post('/api/auth/login', json=body)
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


def run_in_parallel(app, *calls) -> list:
    """
    Start every call at the same moment, each in its own thread and app context.

    Returns one outcome per call: "ok" or the CoreError code it raised.
    """
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def worker(index, call):
        with app.app_context():
            barrier.wait()
            try:
                call()
                outcomes[index] = "ok"
            except CoreError as exc:
                outcomes[index] = exc.code

    threads = [threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return outcomes
