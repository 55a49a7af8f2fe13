import itertools

import mongomock
import pytest
from bson import ObjectId

import database

# Route modules bind `db` at import time, so swap it in before they load
database.db = mongomock.MongoClient().db

from fastapi.testclient import TestClient  # noqa: E402

import main  # noqa: E402
from auth import create_access_token, hash_password  # noqa: E402
from schemas import Product  # noqa: E402

PASSWORD = "secret123"

ADDRESS = {
    "name": "Asha Rao",
    "phone": "9876543210",
    "address": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
}

_seq = itertools.count(1)


def order_payload(*lines, payment_method="cod"):
    return {
        "items": [{"product": product_id, "quantity": quantity} for product_id, quantity in lines],
        "shippingAddress": ADDRESS,
        "billingAddress": ADDRESS,
        "paymentMethod": payment_method,
    }


def stock_of(product_id):
    return database.db["product"].find_one({"_id": ObjectId(product_id)})["stock_quantity"]


@pytest.fixture
def db():
    yield database.db
    for name in database.db.list_collection_names():
        database.db[name].delete_many({})


@pytest.fixture
def client(db):
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def make_user(db):
    def _make(role="user", name="Test User", email=None):
        email = email or f"{role}{next(_seq)}@kolzo.com"
        res = db["user"].insert_one({
            "name": name,
            "email": email,
            "password_hash": hash_password(PASSWORD),
            "role": role,
            "addresses": [],
            "created_at": database.utcnow(),
            "updated_at": database.utcnow(),
        })
        token = create_access_token({"sub": str(res.inserted_id)})
        return {"id": str(res.inserted_id), "email": email, "headers": {"Authorization": f"Bearer {token}"}}
    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def other_user(make_user):
    return make_user(name="Other User")


@pytest.fixture
def admin_user(make_user):
    return make_user(role="admin", name="Admin")


@pytest.fixture
def make_product(db):
    def _make(**overrides):
        n = next(_seq)
        doc = Product(
            name=f"Quilted Bag {n}",
            slug=f"quilted-bag-{n}",
            description="Lambskin shoulder bag with chain strap",
            price=100,
            category="handbags",
            gender="women",
            brand="KOLZO",
            sku=f"KZ-{n:05d}",
            stock_quantity=10,
        ).model_dump()
        doc.update(overrides)
        doc.update({"created_at": database.utcnow(), "updated_at": database.utcnow()})
        return str(db["product"].insert_one(doc).inserted_id)
    return _make
