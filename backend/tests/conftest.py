from datetime import datetime
from itertools import count

import mongomock
import pytest
from flask_jwt_extended import create_access_token

from rangleela.accounts import hash_password
from rangleela.app import create_app
from rangleela.config import Settings
from rangleela.errors import UpstreamError
from rangleela.media import MediaStore
from rangleela.payments import compute_payment_signature, verify_payment_signature

GATEWAY_SECRET = "test_gateway_secret"
ADMIN_EMAIL = "admin@rangleela.test"


class FakeGateway:
    """In-memory stand-in for the Razorpay client."""

    def __init__(self, secret=GATEWAY_SECRET):
        self.secret = secret
        self.key_id = "rzp_test_key"
        self.sessions = []
        self.fail = False
        self._ids = count(1)

    def create_session(self, amount, currency, receipt, notes=None):
        if self.fail:
            raise UpstreamError("Failed to create payment session.")
        session = {
            "id": f"order_test_{next(self._ids)}",
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        self.sessions.append(session)
        return session

    def verify_signature(self, order_id, payment_id, signature):
        return verify_payment_signature(self.secret, order_id, payment_id, signature)

    def sign(self, order_id, payment_id):
        return compute_payment_signature(self.secret, order_id, payment_id)


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, template_name, recipient, data=None):
        self.sent.append((template_name, recipient, dict(data or {})))
        if self.fail:
            return {"success": False, "error": "provider unavailable"}
        return {"success": True}

    def templates(self):
        return [entry[0] for entry in self.sent]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        mongo_uri="mongodb://localhost:27017/rangleela_test",
        jwt_secret_key="test-secret",
        environment="testing",
        admin_emails=frozenset({ADMIN_EMAIL}),
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret=GATEWAY_SECRET,
        resend_api_key="re_test",
        upload_folder=str(tmp_path / "uploads"),
        trusted_proxy_hops=0,
    )


@pytest.fixture
def db():
    return mongomock.MongoClient().rangleela_test


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def media_store(settings):
    return MediaStore(settings.upload_folder, "http://testserver")


@pytest.fixture
def app(settings, db, gateway, notifier, media_store):
    app = create_app(
        settings,
        db=db,
        gateway=gateway,
        notifier=notifier,
        media_store=media_store,
    )
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(db):
    def _make_user(email="buyer@rangleela.test", password="correct-horse", **extra):
        now = datetime.utcnow()
        document = {
            "email": email,
            "name": extra.pop("name", "Test Buyer"),
            "password_hash": hash_password(password),
            "avatar": "",
            "is_verified": True,
            "login_attempts": 0,
            "created_at": now,
            "updated_at": now,
        }
        document.update(extra)
        document["_id"] = db.users.insert_one(document).inserted_id
        return document

    return _make_user


@pytest.fixture
def auth_headers(app):
    def _auth_headers(user_document):
        with app.app_context():
            token = create_access_token(identity=str(user_document["_id"]))
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers


@pytest.fixture
def buyer(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(email=ADMIN_EMAIL, name="Store Admin")


@pytest.fixture
def make_product(db):
    def _make_product(**overrides):
        now = datetime.utcnow()
        document = {
            "name": "Madhubani Peacock",
            "description": "Hand painted on handmade paper.",
            "price": 1000.0,
            "discount_price": None,
            "category": "painting",
            "size": "A3",
            "material": "Paper",
            "featured": False,
            "in_stock": True,
            "image": {"url": "http://testserver/uploads/image_a.jpg", "id": "image_a.jpg"},
            "additional_images": [],
            "video": None,
            "rating": 0.0,
            "reviews": 0,
            "created_at": now,
            "updated_at": now,
        }
        document.update(overrides)
        document["_id"] = db.products.insert_one(document).inserted_id
        return document

    return _make_product


@pytest.fixture
def shipping_address():
    return {
        "name": "Asha Rao",
        "email": "asha@example.com",
        "phone": "9876543210",
        "address": "12 Temple Street, Basavanagudi",
        "city": "Bengaluru",
        "state": "Karnataka",
        "pincode": "560004",
    }
