from notifications import notify_user


def test_user_sees_own_notifications(client, db, user, make_user, auth_headers):
    other = make_user("other@example.com")
    notify_user(db, str(user["_id"]), "Order Placed", "Thanks!", "order_success", "/orders")
    notify_user(db, str(other["_id"]), "Hello", "Not for Asha", "admin_announcement")

    listed = client.get("/api/notifications", headers=auth_headers(user)).json()["notifications"]

    assert [n["title"] for n in listed] == ["Order Placed"]
    assert listed[0]["is_read"] is False
    assert "recipient_users" not in listed[0]


def test_mark_one_and_all_read(client, db, user, auth_headers):
    headers = auth_headers(user)
    first = notify_user(db, str(user["_id"]), "One", "1", "order_status")
    notify_user(db, str(user["_id"]), "Two", "2", "order_status")

    res = client.patch(f"/api/notifications/{first}", headers=headers)
    assert res.json()["notification"]["is_read"] is True

    client.post("/api/notifications/mark-all-read", headers=headers)
    listed = client.get("/api/notifications", headers=headers).json()["notifications"]
    assert all(n["is_read"] for n in listed)


def test_mark_read_foreign_notification(client, db, user, make_user, auth_headers):
    other = make_user("other@example.com")
    foreign = notify_user(db, str(other["_id"]), "Private", "x", "order_status")

    assert client.patch(f"/api/notifications/{foreign}", headers=auth_headers(user)).status_code == 404


def test_broadcast_skips_admins_and_blocked(client, db, user, admin, make_user, auth_headers):
    blocked = make_user("blocked@example.com")
    db["user"].update_one({"_id": blocked["_id"]}, {"$set": {"status": "blocked"}})
    make_user("second@example.com")

    res = client.post(
        "/api/notifications/broadcast",
        json={"title": "Sale", "message": "Everything 20% off"},
        headers=auth_headers(admin),
    )

    assert res.json()["notification_count"] == 2
    assert db["notification"].count_documents({"recipient_users": str(admin["_id"])}) == 0
    assert db["notification"].count_documents({"recipient_users": str(blocked["_id"])}) == 0
    mine = client.get("/api/notifications", headers=auth_headers(user)).json()["notifications"]
    assert mine[0]["type"] == "admin_announcement"


def test_broadcast_needs_admin(client, user, auth_headers):
    res = client.post("/api/notifications/broadcast", json={"title": "x", "message": "y"}, headers=auth_headers(user))
    assert res.status_code == 403
