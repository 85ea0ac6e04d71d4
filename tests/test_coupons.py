from datetime import timedelta

import pytest

from coupons import compute_discount, is_active
from database import now_utc


def coupon_payload(**overrides):
    payload = {"code": "save10", "type": "percentage", "value": 10, "min_purchase": 500, "brand": "reeva"}
    payload.update(overrides)
    return payload


def test_create_normalizes_code(client, admin, auth_headers):
    res = client.post("/api/coupons", json=coupon_payload(), headers=auth_headers(admin))

    assert res.status_code == 201
    assert res.json()["coupon"]["code"] == "SAVE10"
    assert res.json()["coupon"]["is_active"] is True


def test_duplicate_code(client, admin, auth_headers):
    client.post("/api/coupons", json=coupon_payload(), headers=auth_headers(admin))
    res = client.post("/api/coupons", json=coupon_payload(code="SAVE10"), headers=auth_headers(admin))
    assert res.status_code == 409


@pytest.mark.parametrize("overrides", [
    {"value": 120},
    {"type": "fixed", "value": -5},
    {"type": "free-shipping", "value": 50},
    {"code": "ab"},
])
def test_invalid_coupons(client, admin, auth_headers, overrides):
    res = client.post("/api/coupons", json=coupon_payload(**overrides), headers=auth_headers(admin))
    assert res.status_code == 400


def test_end_before_start(client, admin, auth_headers):
    start = now_utc()
    payload = coupon_payload(start_date=start.isoformat(), end_date=(start - timedelta(days=1)).isoformat())
    assert client.post("/api/coupons", json=payload, headers=auth_headers(admin)).status_code == 400


def test_list_by_brand_includes_global(client, admin, auth_headers):
    headers = auth_headers(admin)
    client.post("/api/coupons", json=coupon_payload(code="REEVA5"), headers=headers)
    client.post("/api/coupons", json=coupon_payload(code="EVERY5", brand="All Brands"), headers=headers)
    client.post("/api/coupons", json=coupon_payload(code="OTHER5", brand="lumen"), headers=headers)

    codes = sorted(c["code"] for c in client.get("/api/coupons", params={"brand": "reeva"}).json()["coupons"])
    assert codes == ["EVERY5", "REEVA5"]

    everyone = client.get("/api/coupons", params={"brand": "All Brands"}).json()["coupons"]
    assert [c["code"] for c in everyone] == ["EVERY5"]


def test_apply(client, admin, auth_headers):
    client.post("/api/coupons", json=coupon_payload(), headers=auth_headers(admin))

    ok = client.post("/api/coupons/apply", json={"code": "save10", "subtotal": 800, "brand": "reeva"})
    assert ok.json() == {"code": "SAVE10", "type": "percentage", "discount": 80.0, "free_shipping": False}

    assert client.post("/api/coupons/apply", json={"code": "SAVE10", "subtotal": 100, "brand": "reeva"}).status_code == 400
    assert client.post("/api/coupons/apply", json={"code": "SAVE10", "subtotal": 800, "brand": "lumen"}).status_code == 400
    assert client.post("/api/coupons/apply", json={"code": "NOPE", "subtotal": 800, "brand": "reeva"}).status_code == 404


def test_update_and_delete(client, admin, auth_headers):
    headers = auth_headers(admin)
    coupon_id = client.post("/api/coupons", json=coupon_payload(), headers=headers).json()["coupon"]["id"]

    res = client.put(f"/api/coupons/{coupon_id}", json=coupon_payload(type="fixed", value=75), headers=headers)
    assert res.json()["coupon"]["type"] == "fixed"

    assert client.delete(f"/api/coupons/{coupon_id}", headers=headers).status_code == 200
    assert client.get(f"/api/coupons/{coupon_id}").status_code == 404


def test_coupon_windows():
    now = now_utc()
    assert is_active({"start_date": now + timedelta(days=1)}) is False
    assert is_active({"end_date": now - timedelta(days=1)}) is False
    assert is_active({"start_date": (now - timedelta(days=1)).replace(tzinfo=None)}) is True


def test_fixed_discount_is_capped():
    assert compute_discount({"type": "fixed", "value": 500}, 300) == {"discount": 300, "free_shipping": False}
    assert compute_discount({"type": "free-shipping", "value": None}, 300)["free_shipping"] is True
