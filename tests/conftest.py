from datetime import datetime

import bcrypt
import mongomock
import pytest

from pharmashop.app import create_app
from pharmashop.auth_guard import issue_access_token

TEST_SECRET = "test-secret-key-with-enough-length-for-hs256"


@pytest.fixture
def db():
    return mongomock.MongoClient().pharmashop_test


@pytest.fixture
def app(db):
    return create_app(
        {"TESTING": True, "JWT_SECRET_KEY": TEST_SECRET, "PHARMASHOP_DB": db}
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def app_context(app):
    with app.app_context():
        yield


@pytest.fixture
def make_user(db):
    def _make_user(
        email="user@example.com",
        password="secret123",
        role="user",
        is_active=True,
        name=None,
        created_at=None,
    ):
        document = {
            "name": name or email.split("@")[0].title(),
            "email": email,
            "password": bcrypt.hashpw(
                password.encode("utf-8"), bcrypt.gensalt(rounds=4)
            ).decode("utf-8"),
            "role": role,
            "isActive": is_active,
            "createdAt": created_at or datetime.utcnow(),
        }
        document["_id"] = db.users.insert_one(document).inserted_id
        return document

    return _make_user


@pytest.fixture
def auth_headers(app):
    def _auth_headers(user_document):
        with app.app_context():
            token = issue_access_token(user_document)
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers


@pytest.fixture
def make_order(db):
    def _make_order(owner, status="pending", items=None, total=25.0):
        now = datetime.utcnow()
        document = {
            "userId": owner["_id"],
            "items": items or [],
            "totalAmount": total,
            "status": status,
            "createdAt": now,
            "updatedAt": now,
        }
        document["_id"] = db.orders.insert_one(document).inserted_id
        return document

    return _make_order


@pytest.fixture
def make_product(db):
    def _make_product(name, **fields):
        document = {
            "name": name,
            "description": fields.pop("description", f"{name} description"),
            "brand": fields.pop("brand", "Generic"),
            "category": fields.pop("category", "pain-relief"),
            "price": fields.pop("price", 10.0),
            "stock": fields.pop("stock", 20),
            "isActive": fields.pop("isActive", True),
            "tags": fields.pop("tags", []),
            "createdAt": fields.pop("createdAt", datetime.utcnow()),
        }
        document.update(fields)
        document["_id"] = db.products.insert_one(document).inserted_id
        return document

    return _make_product
