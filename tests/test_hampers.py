import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from database import now_utc
from hampers import HamperUpdate, save_draft


@pytest.fixture
def make_box(db):
    def make(name="Kraft Box", price=49.0, kind="box", **overrides):
        doc = {
            "name": name,
            "description": "",
            "price": price,
            "mrp": None,
            "images": ["https://img.example.com/box.jpg"],
            "stock": 10,
            "storefront": "reeva",
            "kind": kind,
            "likes": 0,
            "usage_count": 0,
            "created_at": now_utc(),
        }
        doc.update(overrides)
        doc["_id"] = db["box"].insert_one(doc).inserted_id
        return doc
    return make


def test_partial_saves_accumulate_in_one_draft(client, db, user, auth_headers):
    headers = auth_headers(user)

    client.post("/api/hampers", json={"occasion": "Birthday"}, headers=headers)
    res = client.patch("/api/hampers", json={"add_rose": True}, headers=headers)

    hamper = res.json()["hamper"]
    assert hamper["occasion"] == "Birthday"
    assert hamper["add_rose"] is True
    assert hamper["is_complete"] is False
    assert db["hamper"].count_documents({"user_id": str(user["_id"])}) == 1

    assert client.get("/api/hampers", headers=headers).json()["hamper"]["id"] == hamper["id"]


def test_concurrent_first_save_reuses_existing_draft(db, user):
    user_id = str(user["_id"])
    hampers_collection = db["hamper"]

    class RacingCollection:
        calls = 0

        def find_one_and_update(self, *args, **kwargs):
            self.calls += 1
            if self.calls == 1:
                # the other request's upsert lands first
                hampers_collection.insert_one({"user_id": user_id, "is_complete": False, "occasion": "Anniversary"})
                raise DuplicateKeyError("E11000 duplicate key error")
            return hampers_collection.find_one_and_update(*args, **kwargs)

    racing = RacingCollection()
    hamper = save_draft({"hamper": racing}, user_id, HamperUpdate(add_rose=True))

    assert racing.calls == 2
    assert hamper["occasion"] == "Anniversary"
    assert hamper["add_rose"] is True
    assert db["hamper"].count_documents({"user_id": user_id}) == 1


def test_no_draft_returns_null(client, user, auth_headers):
    assert client.get("/api/hampers", headers=auth_headers(user)).json()["hamper"] is None


def test_discard_draft(client, db, user, auth_headers):
    headers = auth_headers(user)
    client.post("/api/hampers", json={"occasion": "Diwali"}, headers=headers)

    client.delete("/api/hampers", headers=headers)

    assert db["hamper"].count_documents({}) == 0


def test_invalid_box_id_is_rejected(client, user, auth_headers):
    res = client.post("/api/hampers", json={"box_id": "nope"}, headers=auth_headers(user))
    assert res.status_code == 400
    assert "box_id" in res.json()["errors"]


def test_checkout_without_draft(client, user, auth_headers):
    assert client.post("/api/hampers/checkout", headers=auth_headers(user)).status_code == 404


def test_checkout_requires_box_bag_and_products(client, user, make_product, make_box, auth_headers):
    headers = auth_headers(user)
    product = make_product()
    box = make_box()
    client.post("/api/hampers", json={"products": [str(product["_id"])], "box_id": str(box["_id"])}, headers=headers)

    res = client.post("/api/hampers/checkout", headers=headers)

    assert res.status_code == 400


def test_checkout_fills_cart(client, db, user, make_product, make_box, auth_headers):
    headers = auth_headers(user)
    gift = make_product(name="Candle")
    sold_out = make_product(name="Soap", stock=0)
    box = make_box(price=49.0)
    bag = make_box(name="Free Bag", price=0, kind="bag")
    client.post("/api/hampers", json={
        "products": [str(gift["_id"]), str(sold_out["_id"])],
        "box_id": str(box["_id"]),
        "bag_id": str(bag["_id"]),
    }, headers=headers)

    res = client.post("/api/hampers/checkout", headers=headers)

    assert res.status_code == 200
    body = res.json()
    assert body["hamper"]["is_complete"] is True
    assert body["hamper"]["is_added_to_cart"] is True
    names = sorted(it["product"]["name"] for it in body["cart"]["items"])
    assert names == ["Candle", "Kraft Box"]

    packaging = db["product"].find_one({"packaging_box_id": str(box["_id"])})
    assert packaging["selling_price"] == 49.0
    assert db["box"].find_one({"_id": bag["_id"]})["usage_count"] == 1
    assert client.get("/api/hampers", headers=headers).json()["hamper"] is None


def test_packaging_product_is_reused(client, db, user, make_product, make_box, auth_headers):
    headers = auth_headers(user)
    box = make_box()
    bag = make_box(name="Jute Bag", price=20.0, kind="bag")
    for _ in range(2):
        client.post("/api/hampers", json={
            "products": [str(make_product()["_id"])],
            "box_id": str(box["_id"]),
            "bag_id": str(bag["_id"]),
        }, headers=headers)
        assert client.post("/api/hampers/checkout", headers=headers).status_code == 200

    assert db["product"].count_documents({"packaging_box_id": str(box["_id"])}) == 1
    assert db["box"].find_one({"_id": box["_id"]})["usage_count"] == 2
    cart = client.get("/api/cart", headers=headers).json()["cart"]
    box_line = next(it for it in cart["items"] if it["product"]["name"] == "Kraft Box")
    assert box_line["quantity"] == 2
    assert db["hamper"].count_documents({"user_id": str(user["_id"]), "is_complete": True}) == 2


def test_box_admin_routes(client, user, admin, auth_headers):
    payload = {
        "name": "Velvet Box",
        "price": 99,
        "images": ["https://img.example.com/velvet.jpg"],
        "stock": 4,
        "storefront": "reeva",
    }
    assert client.post("/api/boxes", json=payload, headers=auth_headers(user)).status_code == 403

    res = client.post("/api/boxes", json=payload, headers=auth_headers(admin))
    assert res.status_code == 201
    box_id = res.json()["box"]["id"]

    bags = client.post("/api/boxes", json={**payload, "name": "Cloth Bag", "kind": "bag"}, headers=auth_headers(admin))
    assert bags.status_code == 201

    listed = client.get("/api/boxes", params={"storefront": "reeva", "kind": "box"}).json()["boxes"]
    assert [b["name"] for b in listed] == ["Velvet Box"]

    assert client.delete(f"/api/boxes/{box_id}", headers=auth_headers(admin)).status_code == 200
    assert client.delete(f"/api/boxes/{ObjectId()}", headers=auth_headers(admin)).status_code == 404
