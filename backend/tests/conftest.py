"""
Pytest fixtures for storefront backend tests.

Provides an in-memory database, per-role users with session tokens,
catalog factories, recording notification transports and a fake payment
gateway (no test ever reaches the network).

NOTE: requests made through `client` run in their own app context and
therefore their own DB session. Objects created by fixtures live in the
test's session; call db_session.expire_all() (or refresh) before reading
them after a request.
"""

import hashlib
import hmac
from datetime import timedelta

import pytest

from storefront import create_app
from storefront.extensions import db
from storefront.models import Category, Coupon, Product, User
from storefront.models.auth import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_DELIVERY
from storefront.services import session_service
from storefront.services.gateway import GatewayError, PaymentGateway
from storefront.services.notification_service import NotificationDispatcher
from storefront.time_utils import utcnow


GATEWAY_SECRET = "test_secret"

ADDRESS = {
    "label": "Home",
    "full_address": "12 Temple Street",
    "city": "Kanchipuram",
    "pincode": "631501",
    "phone": "9800000000",
}


# =============================================================================
# FAKE TRANSPORTS
# =============================================================================

class RecordingBroadcaster:
    def __init__(self):
        self.emitted = []
        self.fail = False

    def emit(self, event, room, payload):
        if self.fail:
            raise ConnectionError("socket server down")
        self.emitted.append((event, room, payload))


class RecordingPushSender:
    def __init__(self):
        self.sent = []
        self.stale_tokens = []

    def send(self, tokens, title, message, data=None):
        self.sent.append((list(tokens), title, message, data))
        return list(self.stale_tokens)


class RecordingEmailSender:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to, subject, body):
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.sent.append((to, subject, body))


class FakeGateway(PaymentGateway):
    """In-memory stand-in for the Razorpay API."""

    key_id = "rzp_test_key"

    def __init__(self):
        self.orders = {}
        self.refunds = []
        self.fail_refunds = False
        self._seq = 0

    def create_order(self, amount_paise, receipt, notes=None):
        self._seq += 1
        gateway_order = {
            "id": f"order_test_{self._seq}",
            "amount": amount_paise,
            "currency": "INR",
            "receipt": receipt,
            "notes": notes or {},
        }
        self.orders[gateway_order["id"]] = gateway_order
        return gateway_order

    def fetch_order(self, gateway_order_id):
        if gateway_order_id not in self.orders:
            raise GatewayError("The id provided does not exist")
        return self.orders[gateway_order_id]

    def refund(self, payment_id, amount_paise, notes=None):
        if self.fail_refunds:
            raise GatewayError("Refund could not be processed")
        refund = {"id": f"rfnd_{len(self.refunds) + 1}", "payment_id": payment_id, "amount": amount_paise}
        self.refunds.append(refund)
        return refund


def sign(gateway_order_id: str, payment_id: str, secret: str = GATEWAY_SECRET) -> str:
    """Signature the gateway would attach to a successful checkout."""
    return hmac.new(
        secret.encode("utf-8"),
        f"{gateway_order_id}|{payment_id}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


# =============================================================================
# APP / DB
# =============================================================================

@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RAZORPAY_KEY_ID': 'rzp_test_key',
        'RAZORPAY_KEY_SECRET': GATEWAY_SECRET,
        'ADMIN_EMAIL': 'owner@storefront.test',
        'NOTIFICATION_MAX_ATTEMPTS': 3,
        'RETURN_WINDOW_DAYS': 7,
        'REPLACEMENT_STOCK_POLICY': 'SWAP',
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


@pytest.fixture(scope='function')
def transports(app):
    """Fresh recording transports behind the app's notification dispatcher."""
    broadcaster = RecordingBroadcaster()
    push = RecordingPushSender()
    email = RecordingEmailSender()
    app.extensions["notification_dispatcher"] = NotificationDispatcher(
        broadcaster, push, email, backoff_base_seconds=30
    )
    return {"socket": broadcaster, "push": push, "email": email}


@pytest.fixture(scope='function')
def gateway(app):
    fake = FakeGateway()
    app.extensions["payment_gateway"] = fake
    return fake


@pytest.fixture(autouse=True)
def _isolate_transports(transports, gateway):
    """Every test gets recording transports and the fake gateway."""


# =============================================================================
# USERS
# =============================================================================

def _make_user(db_session, email, role, **extra):
    user = User(
        uid=f"test-{email}",
        email=email,
        display_name=email.split("@")[0].title(),
        provider="email",
        role=role,
        wishlist=[],
        fcm_tokens=[],
        **extra,
    )
    db_session.add(user)
    db_session.commit()
    return user


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


def headers_for(user) -> dict:
    _, token = session_service.create_session(user.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def customer(db_session):
    return _make_user(db_session, "meera@example.com", ROLE_CUSTOMER)


@pytest.fixture(scope='function')
def other_customer(db_session):
    return _make_user(db_session, "kavya@example.com", ROLE_CUSTOMER)


@pytest.fixture(scope='function')
def admin(db_session):
    return _make_user(db_session, "owner@storefront.test", ROLE_ADMIN)


@pytest.fixture(scope='function')
def courier(db_session):
    return _make_user(db_session, "ravi@storefront.test", ROLE_DELIVERY)


@pytest.fixture(scope='function')
def customer_headers(customer):
    return headers_for(customer)


@pytest.fixture(scope='function')
def other_headers(other_customer):
    return headers_for(other_customer)


@pytest.fixture(scope='function')
def admin_headers(admin):
    return headers_for(admin)


@pytest.fixture(scope='function')
def courier_headers(courier):
    return headers_for(courier)


# =============================================================================
# CATALOG / PRICING
# =============================================================================

@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: make_product(name=..., price_paise=..., stock=...)."""
    def _make(**overrides):
        values = {
            "name": "Kanjivaram Silk Saree",
            "description": "Handwoven pure silk",
            "category": "Silk",
            "image": "https://cdn.example.com/kanjivaram.jpg",
            "images": ["https://cdn.example.com/kanjivaram.jpg"],
            "colors": ["Red", "Gold"],
            "price_paise": 100000,
            "mrp_paise": 120000,
            "discount": 16,
            "stock": 10,
            "sales_count": 0,
            "is_available": True,
        }
        values.update(overrides)
        product = Product(**values)
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def saree(make_product):
    return make_product()


@pytest.fixture(scope='function')
def category(db_session):
    category = Category(name="Silk", image="https://cdn.example.com/silk.jpg", icon="silk")
    db_session.add(category)
    db_session.commit()
    return category


@pytest.fixture(scope='function')
def make_coupon(db_session):
    def _make(**overrides):
        values = {
            "code": "SAVE10",
            "discount_type": "PERCENTAGE",
            "discount_value": 1000,
            "min_order_value_paise": 50000,
            "expiry_date": utcnow() + timedelta(days=30),
            "is_active": True,
        }
        values.update(overrides)
        coupon = Coupon(**values)
        db_session.add(coupon)
        db_session.commit()
        return coupon
    return _make
