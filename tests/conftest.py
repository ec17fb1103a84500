"""
Pytest fixtures for tillpos tests.

Provides the test database, two tenants with locations, employees and
products, caller contexts, and an authenticated test client.
"""

import pytest

from tillpos import create_app
from tillpos.extensions import db
from tillpos.models import Business, Employee, Location, Product, Role
from tillpos.permissions import ALL_PERMISSIONS, INVENTORY_MOVE
from tillpos.services import session_service, stock_service
from tillpos.services.access_service import resolve_caller


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'DB_RETRY_BACKOFF': 0.01,
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

        yield db.session

        # Cleanup after test
        db.session.rollback()


# =============================================================================
# TENANTS
# =============================================================================

@pytest.fixture(scope='function')
def business_a(db_session):
    """Business A (first tenant), no VAT."""
    business = Business(name="Business A - Corner Shop", vat_rate_bps=0)
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture(scope='function')
def business_b(db_session):
    """Business B (second tenant), 16% VAT."""
    business = Business(name="Business B - Hardware", vat_rate_bps=1600)
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture(scope='function')
def front_a(db_session, business_a):
    location = Location(business_id=business_a.id, name="Front A")
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def back_a(db_session, business_a):
    location = Location(business_id=business_a.id, name="Back A")
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def front_b(db_session, business_b):
    location = Location(business_id=business_b.id, name="Front B")
    db_session.add(location)
    db_session.commit()
    return location


# =============================================================================
# EMPLOYEES AND CALLERS
# =============================================================================

def _employee(db_session, business, location, email, role_name=None, permissions=None, **kwargs):
    role = None
    if role_name:
        role = db_session.query(Role).filter_by(business_id=business.id, name=role_name).first()
        if role is None:
            role = Role(business_id=business.id, name=role_name, permissions=list(permissions or []))
            db_session.add(role)
            db_session.flush()
    employee = Employee(
        business_id=business.id,
        email=email,
        role_id=role.id if role else None,
        default_location_id=location.id if location else None,
        **kwargs,
    )
    db_session.add(employee)
    db_session.commit()
    return employee


@pytest.fixture(scope='function')
def cashier_a(db_session, business_a, front_a):
    """Cashier in Business A, default location Front A, no extra permissions."""
    return _employee(db_session, business_a, front_a, "cashier@a.test", role_name="cashier")


@pytest.fixture(scope='function')
def admin_a(db_session, business_a, front_a):
    """Admin-tier employee in Business A holding every permission."""
    return _employee(
        db_session, business_a, front_a, "admin@a.test",
        role_name="admin", permissions=ALL_PERMISSIONS,
    )


@pytest.fixture(scope='function')
def stockkeeper_a(db_session, business_a, back_a):
    """Business A employee allowed to move stock but not to sell elsewhere."""
    return _employee(
        db_session, business_a, back_a, "stock@a.test",
        role_name="stockkeeper", permissions=[INVENTORY_MOVE],
    )


@pytest.fixture(scope='function')
def cashier_b(db_session, business_b, front_b):
    return _employee(db_session, business_b, front_b, "cashier@b.test", role_name="cashier")


@pytest.fixture(scope='function')
def super_admin_b(db_session, business_b, front_b):
    """Super-admin whose home tenant is Business B."""
    return _employee(db_session, business_b, front_b, "root@b.test", is_super_admin=True)


@pytest.fixture(scope='function')
def cashier_a_caller(cashier_a):
    return resolve_caller(cashier_a.id)


@pytest.fixture(scope='function')
def admin_a_caller(admin_a):
    return resolve_caller(admin_a.id)


@pytest.fixture(scope='function')
def stockkeeper_a_caller(stockkeeper_a):
    return resolve_caller(stockkeeper_a.id)


@pytest.fixture(scope='function')
def cashier_b_caller(cashier_b):
    return resolve_caller(cashier_b.id)


@pytest.fixture(scope='function')
def super_admin_b_caller(super_admin_b):
    return resolve_caller(super_admin_b.id)


# =============================================================================
# CATALOG AND STOCK
# =============================================================================

@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: make_product(business, product_id, price_cents=100, is_service=False)."""
    def _make(business, product_id, price_cents=100, is_service=False, name=None):
        product = Product(
            id=product_id,
            business_id=business.id,
            name=name or f"Product {product_id}",
            price_cents=price_cents,
            is_service=is_service,
        )
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def soda(make_product, business_a):
    return make_product(business_a, "SODA-A", price_cents=100, name="Soda")


@pytest.fixture(scope='function')
def bread(make_product, business_a):
    return make_product(business_a, "BREAD-A", price_cents=250, name="Bread")


@pytest.fixture(scope='function')
def stocked(admin_a_caller):
    """Factory: stocked(product, location, quantity) through the public ledger operation."""
    def _stock(product, location, quantity):
        return stock_service.increase_stock(
            admin_a_caller,
            product_id=product.id,
            location_id=location.id,
            quantity=quantity,
        )
    return _stock


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture(scope='function')
def auth_headers(db_session):
    """Factory: auth_headers(employee) -> Authorization header for a fresh session."""
    def _headers(employee):
        _, token = session_service.create_session(employee.id)
        return {"Authorization": f"Bearer {token}"}
    return _headers
