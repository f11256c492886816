from bson import ObjectId


def test_get_wishlist_creates_default(client, db, user, user_headers):
    response = client.get("/api/wishlist", headers=user_headers)

    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert body["wishlist"]["name"] == "My Wishlist"
    assert body["wishlist"]["isPublic"] is False
    assert db.wishlists.count_documents({"user_id": user["_id"]}) == 1


def test_add_and_remove_product(client, db, user_headers, make_product):
    product = make_product()

    added = client.post(
        f"/api/wishlist/{product['_id']}", json={"notes": "birthday"}, headers=user_headers
    )
    assert added.status_code == 201
    entries = added.get_json()["wishlist"]["products"]
    assert entries[0]["notes"] == "birthday"
    assert entries[0]["product"]["name"] == product["name"]
    assert db.products.find_one({"_id": product["_id"]})["wishlist_count"] == 1

    duplicate = client.post(f"/api/wishlist/{product['_id']}", headers=user_headers)
    assert duplicate.status_code == 400
    assert duplicate.get_json()["success"] is False

    removed = client.delete(f"/api/wishlist/{product['_id']}", headers=user_headers)
    assert removed.status_code == 200
    assert db.products.find_one({"_id": product["_id"]})["wishlist_count"] == 0

    again = client.delete(f"/api/wishlist/{product['_id']}", headers=user_headers)
    assert again.status_code == 404


def test_add_missing_or_inactive_product(client, user_headers, make_product):
    inactive = make_product(is_active=False)

    assert client.post(f"/api/wishlist/{inactive['_id']}", headers=user_headers).status_code == 404
    assert client.post(f"/api/wishlist/{ObjectId()}", headers=user_headers).status_code == 404


def test_remove_without_wishlist(client, user_headers):
    response = client.delete(f"/api/wishlist/{ObjectId()}", headers=user_headers)

    assert response.status_code == 404
    assert response.get_json()["message"] == "Wishlist not found"


def test_inactive_products_are_hidden(client, db, user_headers, make_product):
    product = make_product()
    client.post(f"/api/wishlist/{product['_id']}", headers=user_headers)
    db.products.update_one({"_id": product["_id"]}, {"$set": {"is_active": False}})

    wishlist = client.get("/api/wishlist", headers=user_headers).get_json()["wishlist"]

    assert wishlist["products"] == []


def test_update_wishlist_generates_share_token(client, user_headers):
    assert client.put("/api/wishlist", json={"name": "Gifts"}, headers=user_headers).status_code == 404

    client.get("/api/wishlist", headers=user_headers)
    response = client.put(
        "/api/wishlist", json={"name": "Gifts", "isPublic": True}, headers=user_headers
    )

    assert response.status_code == 200
    wishlist = response.get_json()["wishlist"]
    assert wishlist["name"] == "Gifts"
    assert wishlist["isPublic"] is True
    assert wishlist["shareToken"]

    invalid = client.put("/api/wishlist", json={"name": "", "isPublic": "yes"}, headers=user_headers)
    assert invalid.status_code == 400


def test_share_and_view_shared(client, user_headers, make_product):
    product = make_product()
    client.post(f"/api/wishlist/{product['_id']}", headers=user_headers)

    shared = client.post("/api/wishlist/share", headers=user_headers)
    body = shared.get_json()
    assert shared.status_code == 200
    assert body["shareUrl"].endswith(f"/wishlist/shared/{body['shareToken']}")

    public = client.get(f"/api/wishlist/shared/{body['shareToken']}")
    assert public.status_code == 200
    assert public.get_json()["wishlist"]["user"] == {"name": "Shopper"}
    assert len(public.get_json()["wishlist"]["products"]) == 1

    assert client.get("/api/wishlist/shared/unknown").status_code == 404


def test_share_without_wishlist(client, user_headers):
    assert client.post("/api/wishlist/share", headers=user_headers).status_code == 404


def test_private_wishlist_is_not_shared(client, user_headers):
    token = client.post("/api/wishlist/share", headers=user_headers)
    assert token.status_code == 404

    client.get("/api/wishlist", headers=user_headers)
    share_token = client.post("/api/wishlist/share", headers=user_headers).get_json()["shareToken"]
    client.put("/api/wishlist", json={"isPublic": False}, headers=user_headers)

    assert client.get(f"/api/wishlist/shared/{share_token}").status_code == 404


def test_check_supports_anonymous_callers(client, user_headers, make_product):
    product = make_product()
    client.post(f"/api/wishlist/{product['_id']}", headers=user_headers)

    anonymous = client.get(f"/api/wishlist/check/{product['_id']}")
    signed_in = client.get(f"/api/wishlist/check/{product['_id']}", headers=user_headers)

    assert anonymous.get_json() == {"success": True, "inWishlist": False}
    assert signed_in.get_json() == {"success": True, "inWishlist": True}


def test_clear_wishlist(client, db, user_headers, make_product):
    assert client.delete("/api/wishlist", headers=user_headers).status_code == 404

    first = make_product()
    second = make_product(name="Second")
    client.post(f"/api/wishlist/{first['_id']}", headers=user_headers)
    client.post(f"/api/wishlist/{second['_id']}", headers=user_headers)

    response = client.delete("/api/wishlist", headers=user_headers)

    assert response.status_code == 200
    assert response.get_json()["wishlist"]["products"] == []
    assert db.products.find_one({"_id": first["_id"]})["wishlist_count"] == 0
    assert db.products.find_one({"_id": second["_id"]})["wishlist_count"] == 0


def test_move_to_cart_merges_quantities(client, db, user, user_headers, make_product):
    product = make_product(stock=5)
    client.post(
        "/api/cart/add",
        json={"productId": str(product["_id"]), "quantity": 1},
        headers=user_headers,
    )
    client.post(f"/api/wishlist/{product['_id']}", headers=user_headers)

    response = client.post(
        f"/api/wishlist/{product['_id']}/move-to-cart", json={"quantity": 2}, headers=user_headers
    )

    assert response.status_code == 200
    cart = response.get_json()["cart"]
    assert cart["items"][0]["quantity"] == 3
    wishlist = db.wishlists.find_one({"user_id": user["_id"]})
    assert wishlist["products"] == []
    assert db.products.find_one({"_id": product["_id"]})["wishlist_count"] == 0


def test_move_to_cart_error_cases(client, user_headers, make_product):
    product = make_product(stock=1)

    assert (
        client.post("/api/wishlist/not-an-id/move-to-cart", headers=user_headers).status_code
        == 400
    )
    assert (
        client.post(f"/api/wishlist/{ObjectId()}/move-to-cart", headers=user_headers).status_code
        == 404
    )
    too_many = client.post(
        f"/api/wishlist/{product['_id']}/move-to-cart", json={"quantity": 2}, headers=user_headers
    )
    assert too_many.status_code == 400
    assert too_many.get_json()["availableStock"] == 1


def test_deleted_user_gets_success_flag(client, db, user, user_headers):
    db.users.delete_one({"_id": user["_id"]})

    response = client.get("/api/wishlist", headers=user_headers)

    assert response.status_code == 401
    assert response.get_json()["success"] is False
