"""
Pytest fixtures for Murimi POS backend tests.

Provides the app on an in-memory database, per-test table clearing, one user
per role with ready-made auth headers, catalog fixtures and a fake Daraja
gateway behind httpx.MockTransport.
"""

import httpx
import pytest

from murimi_pos import create_app
from murimi_pos.extensions import db
from murimi_pos.models import Category, Product, Supplier
from murimi_pos.models.auth import ROLE_ADMIN, ROLE_CASHIER, ROLE_MANAGER
from murimi_pos.models.catalog import VAT_EXCLUSIVE, VAT_NONE
from murimi_pos.services import session_service
from murimi_pos.services.auth_service import create_user
from murimi_pos.services.mpesa_client import MpesaClient

TEST_PASSWORD = "Password123!"

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'BCRYPT_ROUNDS': 4,
    'RATE_LIMIT_ENABLED': False,
    'MPESA_CONSUMER_KEY': 'test-key',
    'MPESA_CONSUMER_SECRET': 'test-secret',
    'MPESA_BUSINESS_SHORT_CODE': '174379',
    'MPESA_PASSKEY': 'test-passkey',
    'MPESA_CALLBACK_BASE_URL': 'https://pos.example.com',
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
def client(app, db_session):
    """Create test client."""
    return app.test_client()


# =============================================================================
# USERS
# =============================================================================

def _make_user(username: str, role: str):
    return create_user(
        username=username,
        email=f"{username}@murimi.local",
        password=TEST_PASSWORD,
        role=role,
        first_name=username.capitalize(),
        last_name="Test",
    )


@pytest.fixture(scope='function')
def cashier(db_session):
    return _make_user("cashier", ROLE_CASHIER)


@pytest.fixture(scope='function')
def other_cashier(db_session):
    return _make_user("cashier2", ROLE_CASHIER)


@pytest.fixture(scope='function')
def manager(db_session):
    return _make_user("manager", ROLE_MANAGER)


@pytest.fixture(scope='function')
def admin(db_session):
    return _make_user("admin", ROLE_ADMIN)


def auth_headers(user) -> dict:
    """Helper to create Authorization headers for a user without going through /login."""
    _, token = session_service.create_session(user.id, user_agent="pytest", ip_address="127.0.0.1")
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def cashier_headers(cashier):
    return auth_headers(cashier)


@pytest.fixture(scope='function')
def manager_headers(manager):
    return auth_headers(manager)


@pytest.fixture(scope='function')
def admin_headers(admin):
    return auth_headers(admin)


# =============================================================================
# CATALOG
# =============================================================================

def make_product(name: str, *, sku: str, price_cents: int = 1000, stock: int = 10,
                 vat_status: str = VAT_NONE, **kwargs) -> Product:
    product = Product(
        name=name,
        sku=sku,
        retail_price_cents=price_cents,
        cost_price_cents=price_cents // 2,
        stock_quantity=stock,
        vat_status=vat_status,
        **kwargs,
    )
    db.session.add(product)
    db.session.commit()
    return product


@pytest.fixture(scope='function')
def category(db_session):
    category = Category(name="Beverages", description="Drinks")
    db_session.add(category)
    db_session.commit()
    return category


@pytest.fixture(scope='function')
def supplier(db_session):
    supplier = Supplier(name="Kenya Distributors", contact_person="Wanjiru", phone="0712345678")
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def product(db_session):
    """Zero-rated product, 10 in stock at KES 10.00."""
    return make_product("Unga 2kg", sku="UNGA-2KG", price_cents=1000, stock=10)


@pytest.fixture(scope='function')
def taxed_product(db_session):
    """VAT-exclusive product, 20 in stock at KES 25.00."""
    return make_product("Soda 500ml", sku="SODA-500", price_cents=2500, stock=20, vat_status=VAT_EXCLUSIVE)


def cash_sale_body(*lines, paid=None, **extra) -> dict:
    """Build a CASH sale body from (product, quantity) pairs."""
    body = {
        "cartItems": [{"productId": p.id, "quantity": q} for p, q in lines],
        "paymentMethod": "CASH",
        "paidAmount": paid if paid is not None else sum(p.retail_price_cents * q for p, q in lines) * 2,
    }
    body.update(extra)
    return body


# =============================================================================
# M-PESA
# =============================================================================

class FakeDaraja:
    """Stands in for Safaricom's OAuth and STK push endpoints."""

    def __init__(self):
        self.requests = []
        self.stk_requests = []
        self.network_down = False
        self.stk_status = 200
        self.stk_body = {
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }
        self._counter = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.network_down:
            raise httpx.ConnectError("gateway unreachable", request=request)
        if request.url.path.endswith("/oauth/v1/generate"):
            return httpx.Response(200, json={"access_token": "test-access-token", "expires_in": "3599"})

        self.stk_requests.append(request)
        self._counter += 1
        body = dict(self.stk_body)
        body.setdefault("MerchantRequestID", f"mr-{self._counter}")
        body.setdefault("CheckoutRequestID", f"ws_CO_{self._counter}")
        return httpx.Response(self.stk_status, json=body)

    @property
    def last_checkout_id(self) -> str:
        return f"ws_CO_{self._counter}"


@pytest.fixture(scope='function')
def daraja(app):
    fake = FakeDaraja()
    mpesa_client = MpesaClient.from_config(app.config, transport=httpx.MockTransport(fake.handler))
    app.extensions["mpesa_client"] = mpesa_client
    yield fake
    app.extensions.pop("mpesa_client", None)
    mpesa_client.close()


def stk_callback(checkout_id: str, result_code: int = 0, *, receipt: str = "QGH7XK2LMN", amount: int = 30) -> dict:
    callback = {
        "MerchantRequestID": "mr-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20261019101530},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}
