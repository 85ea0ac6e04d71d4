import pytest

from database import now_utc


@pytest.fixture
def delivered(db, user):
    def make(product):
        db["order"].insert_one({
            "user_id": str(user["_id"]),
            "order_number": f"ORD-{db['order'].count_documents({}) + 100000}",
            "products": [{"product_id": str(product["_id"]), "quantity": 1, "price": product["selling_price"]}],
            "total_amount": product["selling_price"],
            "status": "delivered",
            "brand": "reeva",
            "created_at": now_utc(),
        })
    return make


def review(client, headers, product, rating=4, text="Lovely fabric"):
    return client.post(
        "/api/reviews",
        json={"product_id": str(product["_id"]), "rating": rating, "review_text": text},
        headers=headers,
    )


def test_review_requires_delivered_purchase(client, user, make_product, auth_headers):
    product = make_product()
    assert review(client, auth_headers(user), product).status_code == 403


def test_review_updates_rating(client, db, user, make_product, delivered, auth_headers):
    product = make_product()
    delivered(product)

    res = review(client, auth_headers(user), product, rating=4)

    assert res.status_code == 201
    assert res.json()["review"]["user_name"] == user["first_name"]
    assert db["product"].find_one({"_id": product["_id"]})["rating"] == 4


def test_second_review_conflicts(client, user, make_product, delivered, auth_headers):
    product = make_product()
    delivered(product)
    review(client, auth_headers(user), product)
    assert review(client, auth_headers(user), product).status_code == 409


def test_rating_out_of_range(client, user, make_product, auth_headers):
    res = review(client, auth_headers(user), make_product(), rating=6)
    assert res.status_code == 400
    assert "rating" in res.json()["errors"]


def test_stats_cover_all_variants(client, db, user, make_user, make_product, auth_headers):
    blue = make_product(style_id="kurta-style", color="Blue")
    red = make_product(style_id="kurta-style", color="Red")
    other = make_user("other@example.com")
    now = now_utc()
    db["review"].insert_many([
        {"product_id": str(blue["_id"]), "user_id": str(user["_id"]), "user_name": "Asha", "rating": 5, "review": "Great", "images": [], "likes": 1, "created_at": now},
        {"product_id": str(red["_id"]), "user_id": str(other["_id"]), "user_name": "Other", "rating": 2, "review": "", "images": [], "likes": 7, "created_at": now},
    ])

    stats = client.get(f"/api/reviews/{red['_id']}/stats").json()
    assert stats == {"total_ratings": 2, "total_reviews": 1, "average_rating": 3.5}

    listed = client.get(f"/api/reviews/{blue['_id']}").json()["reviews"]
    assert [r["likes"] for r in listed] == [7, 1]


def test_stats_without_reviews(client, make_product):
    product = make_product()
    assert client.get(f"/api/reviews/{product['_id']}/stats").json() == {
        "total_ratings": 0, "total_reviews": 0, "average_rating": 0,
    }


def test_like_review(client, user, make_product, delivered, auth_headers):
    product = make_product()
    delivered(product)
    review_id = review(client, auth_headers(user), product).json()["review"]["id"]

    res = client.post(f"/api/reviews/like/{review_id}")

    assert res.json()["review"]["likes"] == 1
