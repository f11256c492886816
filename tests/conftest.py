from datetime import datetime
from unittest.mock import patch

import bcrypt
import mongomock
import pytest

from storefront import create_app
from storefront.security import issue_token

TEST_CONFIG = {
    "TESTING": True,
    "JWT_SECRET_KEY": "test-secret-key-with-enough-length-for-hs256",
    "RESEND_API_KEY": "re_test_key",
    "EMAIL_FROM": "Storefront <no-reply@example.com>",
    "DEFAULT_ADMIN_EMAIL": "",
    "FRONTEND_URL": "http://frontend.test",
    "STRIPE_SECRET_KEY": "sk_test_123",
    "STRIPE_PUBLISHABLE_KEY": "pk_test_123",
    "STRIPE_WEBHOOK_SECRET": "whsec_test",
    "STRIPE_API_BASE": "https://stripe.test/v1",
    "GOOGLE_CLIENT_ID": "google-client-id",
    "TRUSTED_PROXY_HOPS": 0,
}

DEFAULT_PASSWORD = "secret123"


@pytest.fixture
def db():
    return mongomock.MongoClient().storefront


@pytest.fixture
def sent_emails():
    with patch("resend.Emails.send", return_value={"id": "email_123"}) as send:
        yield send


@pytest.fixture
def app(db, sent_emails):
    return create_app(TEST_CONFIG, db=db)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(db):
    def _make_user(email="shopper@example.com", name="Shopper", role="user", **overrides):
        timestamp = datetime.utcnow()
        document = {
            "name": name,
            "email": email,
            "password": bcrypt.hashpw(DEFAULT_PASSWORD.encode("utf-8"), bcrypt.gensalt(rounds=4)),
            "role": role,
            "avatar": {"url": ""},
            "is_active": True,
            "is_otp_verified": True,
            "is_email_verified": True,
            "login_attempts": 0,
            "total_orders": 0,
            "total_spent": 0,
            "loyalty": {"points": 0, "tier": "bronze", "total_spent": 0},
            "social_logins": {},
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        document.update(overrides)
        document["_id"] = db.users.insert_one(document).inserted_id
        return document

    return _make_user


@pytest.fixture
def headers_for(app):
    def _headers_for(user_document):
        with app.app_context():
            token = issue_token(user_document)
        return {"Authorization": f"Bearer {token}"}

    return _headers_for


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", name="Admin", role="admin")


@pytest.fixture
def user_headers(user, headers_for):
    return headers_for(user)


@pytest.fixture
def admin_headers(admin, headers_for):
    return headers_for(admin)


@pytest.fixture
def make_product(db, admin):
    def _make_product(name="Noise Cancelling Headphones", price=100.0, stock=10, **overrides):
        timestamp = datetime.utcnow()
        document = {
            "name": name,
            "slug": name.lower().replace(" ", "-"),
            "description": "A product description long enough to pass validation.",
            "price": price,
            "category": "Electronics",
            "brand": "Acme",
            "images": [{"url": "https://img.test/p.png", "alt": name, "is_primary": True}],
            "stock": stock,
            "low_stock_threshold": 3,
            "reserved_stock": 0,
            "tags": ["audio"],
            "reviews": [],
            "rating": 0,
            "num_reviews": 0,
            "is_active": True,
            "is_featured": False,
            "status": "active",
            "views": 0,
            "purchases": 0,
            "wishlist_count": 0,
            "seller": admin["_id"],
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        document.update(overrides)
        document["_id"] = db.products.insert_one(document).inserted_id
        return document

    return _make_product


@pytest.fixture
def shipping_address():
    return {
        "fullName": "Shopper One",
        "address": "1 Main Street",
        "city": "Springfield",
        "state": "IL",
        "country": "US",
        "postalCode": "62701",
    }
