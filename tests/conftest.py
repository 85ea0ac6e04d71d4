import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import hash_password, token_for_user
from database import get_db, now_utc
from main import app

PASSWORD = "secret-password"


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def insert_user(db, email, roles=None, brand="reeva", addresses=None):
    doc = {
        "first_name": email.split("@")[0].title(),
        "last_name": "Tester",
        "email": email,
        "password_hash": hash_password(PASSWORD),
        "addresses": addresses or [],
        "roles": roles or ["user"],
        "brand": brand,
        "status": "active",
        "is_deleted": False,
        "created_at": now_utc(),
    }
    doc["_id"] = db["user"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def address():
    return {
        "_id": ObjectId(),
        "name": "Asha",
        "phone": "9999999999",
        "street": "12 MG Road",
        "city": "Pune",
        "state": "MH",
        "zip": "411001",
        "country": "India",
        "type": "Home",
        "is_default": True,
    }


@pytest.fixture
def user(db, address):
    return insert_user(db, "asha@example.com", addresses=[address])


@pytest.fixture
def admin(db):
    return insert_user(db, "admin@example.com", roles=["user", "admin"])


@pytest.fixture
def auth_headers():
    def make(user_doc, brand=None):
        return {"Authorization": f"Bearer {token_for_user(user_doc, brand)}"}
    return make


@pytest.fixture
def make_product(db):
    def make(**overrides):
        doc = {
            "name": "Silk Scarf",
            "description": "Hand woven",
            "mrp": 150.0,
            "selling_price": 100.0,
            "category": ["Women Fashion"],
            "images": ["https://img.example.com/scarf.jpg"],
            "stock": 5,
            "rating": 0,
            "brand": "Weaves",
            "storefront": "reeva",
            "views": 0,
            "clicks": 0,
            "keywords": ["silk", "scarf"],
            "return_period": 10,
            "style_id": str(ObjectId()),
            "created_at": now_utc(),
        }
        doc.update(overrides)
        doc["_id"] = db["product"].insert_one(doc).inserted_id
        return doc
    return make


@pytest.fixture
def make_user(db):
    def make(email, **kwargs):
        return insert_user(db, email, **kwargs)
    return make
