from datetime import datetime, timedelta

from bson import ObjectId

from storefront.notifications import build_notification_document


def _insert(db, recipient, notification_type="system", **overrides):
    document = build_notification_document(
        recipient, notification_type, "Heads up", "Something happened"
    )
    document.update(overrides)
    document["_id"] = db.notifications.insert_one(document).inserted_id
    return document


def test_default_expiry_by_type():
    promotion = build_notification_document(ObjectId(), "promotion", "Sale", "Everything 20% off")
    system = build_notification_document(ObjectId(), "system", "Maintenance", "Tonight")
    welcome = build_notification_document(ObjectId(), "welcome", "Hi", "Welcome")

    assert promotion["expires_at"] - promotion["created_at"] == timedelta(days=7)
    assert system["expires_at"] - system["created_at"] == timedelta(days=30)
    assert "expires_at" not in welcome


def test_list_with_filters_and_unread_count(client, db, user, admin, user_headers):
    _insert(db, user["_id"], "promotion", sender=admin["_id"])
    _insert(db, user["_id"], "system", is_read=True, priority="high")
    _insert(db, admin["_id"], "system")

    everything = client.get("/api/notifications", headers=user_headers).get_json()
    assert len(everything["notifications"]) == 2
    assert everything["unreadCount"] == 1
    promotion = next(n for n in everything["notifications"] if n["type"] == "promotion")
    assert promotion["sender"] == {"_id": str(admin["_id"]), "name": "Admin"}

    unread = client.get("/api/notifications?unreadOnly=true", headers=user_headers).get_json()
    assert [n["type"] for n in unread["notifications"]] == ["promotion"]

    high = client.get("/api/notifications?priority=high", headers=user_headers).get_json()
    assert [n["priority"] for n in high["notifications"]] == ["high"]

    paged = client.get("/api/notifications?limit=1", headers=user_headers).get_json()
    assert paged["pagination"] == {"currentPage": 1, "limit": 1, "hasMore": True}

    count = client.get("/api/notifications/unread-count", headers=user_headers).get_json()
    assert count == {"success": True, "unreadCount": 1}


def test_mark_one_read_is_idempotent(client, db, user, admin, user_headers):
    notification = _insert(db, user["_id"])
    foreign = _insert(db, admin["_id"])

    first = client.patch(f"/api/notifications/{notification['_id']}/read", headers=user_headers)
    read_at = db.notifications.find_one({"_id": notification["_id"]})["read_at"]
    second = client.patch(f"/api/notifications/{notification['_id']}/read", headers=user_headers)

    assert first.status_code == 200
    assert first.get_json()["notification"]["isRead"] is True
    assert second.status_code == 200
    assert db.notifications.find_one({"_id": notification["_id"]})["read_at"] == read_at
    assert (
        client.patch(f"/api/notifications/{foreign['_id']}/read", headers=user_headers).status_code
        == 404
    )
    assert client.patch("/api/notifications/bogus/read", headers=user_headers).status_code == 404


def test_mark_many_and_all_read(client, db, user, user_headers):
    first = _insert(db, user["_id"])
    second = _insert(db, user["_id"])
    _insert(db, user["_id"])

    response = client.patch(
        "/api/notifications/read",
        json={"notificationIds": [str(first["_id"]), str(second["_id"])]},
        headers=user_headers,
    )
    assert response.get_json()["modifiedCount"] == 2

    rest = client.patch("/api/notifications/read-all", headers=user_headers)
    assert rest.get_json()["modifiedCount"] == 1
    assert db.notifications.count_documents({"is_read": False}) == 0


def test_id_list_validation(client, user_headers):
    empty = client.patch("/api/notifications/read", json={"notificationIds": []}, headers=user_headers)
    malformed = client.delete(
        "/api/notifications", json={"notificationIds": ["short"]}, headers=user_headers
    )

    assert empty.status_code == 400
    assert malformed.status_code == 400
    assert malformed.get_json()["success"] is False


def test_delete_one_and_many(client, db, user, user_headers):
    first = _insert(db, user["_id"])
    second = _insert(db, user["_id"])
    third = _insert(db, user["_id"])

    assert client.delete(f"/api/notifications/{first['_id']}", headers=user_headers).status_code == 200
    assert client.delete(f"/api/notifications/{first['_id']}", headers=user_headers).status_code == 404

    response = client.delete(
        "/api/notifications",
        json={"notificationIds": [str(second["_id"]), str(third["_id"])]},
        headers=user_headers,
    )
    assert response.get_json()["deletedCount"] == 2
    assert db.notifications.count_documents({}) == 0


def test_admin_create_for_all_active_users(client, db, user, admin, make_user, admin_headers):
    make_user(email="inactive@example.com", is_active=False)

    response = client.post(
        "/api/notifications/admin/create",
        json={
            "recipients": "all",
            "type": "promotion",
            "title": "Flash sale",
            "message": "Everything is 20% off today.",
            "priority": "high",
            "actionUrl": "https://shop.example.com/sale",
        },
        headers=admin_headers,
    )

    assert response.status_code == 201
    created = response.get_json()["notifications"]
    assert {entry["recipient"] for entry in created} == {str(user["_id"]), str(admin["_id"])}
    stored = db.notifications.find_one({"recipient": user["_id"]})
    assert stored["sender"] == admin["_id"]
    assert stored["expires_at"] > datetime.utcnow() + timedelta(days=6)


def test_admin_create_single_recipient_with_expiry(client, db, user, admin_headers):
    response = client.post(
        "/api/notifications/admin/create",
        json={
            "recipients": str(user["_id"]),
            "type": "account_update",
            "title": "Profile reviewed",
            "message": "Your seller profile was approved.",
            "expiresAt": "2030-01-01T00:00:00Z",
        },
        headers=admin_headers,
    )

    assert response.status_code == 201
    body = response.get_json()["notifications"]
    assert body["recipient"] == str(user["_id"])
    assert body["expiresAt"].startswith("2030-01-01T00:00:00")


def test_admin_create_validation(client, admin_headers, user_headers):
    invalid = client.post(
        "/api/notifications/admin/create",
        json={
            "recipients": 42,
            "type": "gossip",
            "title": "",
            "message": "x",
            "priority": "whenever",
            "channel": ["carrier_pigeon"],
            "actionUrl": "not a url",
            "expiresAt": "tomorrow",
        },
        headers=admin_headers,
    )
    fields = {error["field"] for error in invalid.get_json()["errors"]}

    assert invalid.status_code == 400
    assert fields == {
        "recipients",
        "type",
        "title",
        "priority",
        "channel",
        "actionUrl",
        "expiresAt",
    }

    forbidden = client.post(
        "/api/notifications/admin/create",
        json={"recipients": "all", "type": "system", "title": "t", "message": "m"},
        headers=user_headers,
    )
    assert forbidden.status_code == 403


def test_admin_stats(client, db, user, admin_headers):
    _insert(db, user["_id"], "promotion", priority="high")
    _insert(db, user["_id"], "promotion", is_read=True)
    _insert(db, user["_id"], "system", is_read=True)
    _insert(db, user["_id"], "welcome")

    body = client.get("/api/notifications/admin/stats", headers=admin_headers).get_json()

    assert body["stats"] == {
        "totalNotifications": 4,
        "unreadNotifications": 2,
        "readNotifications": 2,
        "readRate": 50,
    }
    promotion = next(entry for entry in body["typeStats"] if entry["_id"] == "promotion")
    assert promotion == {"_id": "promotion", "count": 2, "unreadCount": 1}
    assert body["typeStats"][0]["_id"] == "promotion"
    high = next(entry for entry in body["priorityStats"] if entry["_id"] == "high")
    assert high["unreadCount"] == 1


def test_admin_cleanup_removes_old_read_notifications(client, db, user, admin_headers):
    old = datetime.utcnow() - timedelta(days=45)
    _insert(db, user["_id"], is_read=True, created_at=old)
    _insert(db, user["_id"], is_read=False, created_at=old)
    _insert(db, user["_id"], is_read=True)

    response = client.delete("/api/notifications/admin/cleanup?daysOld=30", headers=admin_headers)

    assert response.get_json()["deletedCount"] == 1
    assert db.notifications.count_documents({}) == 2
    assert (
        client.delete("/api/notifications/admin/cleanup?daysOld=-1", headers=admin_headers).status_code
        == 400
    )
