import os
import tempfile

# Settings are read at import time
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["ENVIRONMENT"] = "test"
os.environ["RESEND_API_KEY"] = ""
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = ""
os.environ["PAYPAL_CLIENT_ID"] = ""
os.environ["PAYPAL_CLIENT_SECRET"] = ""
os.environ["UPLOAD_PATH"] = tempfile.mkdtemp(prefix="spark-uploads-")

import mongomock  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from database import get_db, utcnow  # noqa: E402
from main import app  # noqa: E402
from security import create_access_token, hash_password  # noqa: E402

PASSWORD = "Password123"


@pytest.fixture
def db():
    client = mongomock.MongoClient(tz_aware=True)
    yield client["spark_test"]
    client.drop_database("spark_test")


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="user", email=None, is_active=True, **extra):
        counter["n"] += 1
        now = utcnow()
        doc = {
            "first_name": "Test",
            "last_name": f"User{counter['n']}",
            "email": email or f"user{counter['n']}@example.com",
            "password_hash": hash_password(PASSWORD),
            "role": role,
            "is_active": is_active,
            "is_email_verified": True,
            "addresses": [],
            "preferences": {"newsletter": False, "marketing": False, "analytics": False},
            "gdpr": {"data_processing_consent": True, "marketing_consent": False},
            "created_at": now,
            "updated_at": now,
            **extra,
        }
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        return doc

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(role="admin", email="admin@example.com")


def auth(user: dict) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
def user_headers(user):
    return auth(user)


@pytest.fixture
def admin_headers(admin):
    return auth(admin)


@pytest.fixture
def make_product(db):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        now = utcnow()
        doc = {
            "name": f"Product {counter['n']}",
            "slug": f"product-{counter['n']}",
            "description": "A dependable accessory for every phone.",
            "category": "chargers",
            "brand": "Anker",
            "price": 30.0,
            "stock": 10,
            "min_stock": 5,
            "images": [],
            "tags": [],
            "is_active": True,
            "is_featured": False,
            "is_on_sale": False,
            "ratings": {"average": 0, "count": 0},
            "sales": {"total_sold": 0, "total_revenue": 0.0, "last_sold": None},
            "created_at": now,
            "updated_at": now,
        }
        doc.update(overrides)
        doc["_id"] = db["product"].insert_one(doc).inserted_id
        return doc

    return _make


ADDRESS = {"street": "12 rue de la Paix", "city": "Paris", "postal_code": "75002", "country": "France"}
