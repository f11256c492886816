from bson import ObjectId


def _add(client, headers, product, quantity=1):
    return client.post(
        "/api/cart/add",
        json={"productId": str(product["_id"]), "quantity": quantity},
        headers=headers,
    )


def test_get_cart_creates_empty_cart(client, db, user, user_headers):
    response = client.get("/api/cart", headers=user_headers)

    assert response.status_code == 200
    cart = response.get_json()["cart"]
    assert cart["items"] == []
    assert cart["totalItems"] == 0
    assert db.carts.count_documents({"user_id": user["_id"]}) == 1


def test_add_merges_quantities_and_recomputes_totals(client, user_headers, make_product):
    product = make_product(price=19.99, stock=5)

    assert _add(client, user_headers, product, 2).status_code == 200
    response = _add(client, user_headers, product, 1)

    cart = response.get_json()["cart"]
    assert len(cart["items"]) == 1
    assert cart["items"][0]["quantity"] == 3
    assert cart["items"][0]["product"]["name"] == product["name"]
    assert cart["totalItems"] == 3
    assert cart["totalPrice"] == 59.97


def test_add_rejects_quantity_beyond_stock(client, user_headers, make_product):
    product = make_product(stock=2)

    too_many = _add(client, user_headers, product, 3)
    assert too_many.status_code == 400
    assert too_many.get_json()["availableStock"] == 2

    _add(client, user_headers, product, 2)
    combined = _add(client, user_headers, product, 1)
    assert combined.status_code == 400
    assert combined.get_json()["currentInCart"] == 2


def test_add_unknown_or_inactive_product(client, user_headers, make_product):
    inactive = make_product(is_active=False)

    assert _add(client, user_headers, inactive).status_code == 404
    assert _add(client, user_headers, {"_id": ObjectId()}).status_code == 404


def test_add_validates_payload(client, user_headers):
    response = client.post(
        "/api/cart/add", json={"productId": "bad", "quantity": 0}, headers=user_headers
    )

    assert response.status_code == 400
    assert {error["field"] for error in response.get_json()["errors"]} == {
        "productId",
        "quantity",
    }


def test_add_refreshes_line_price(client, db, user_headers, make_product):
    product = make_product(price=10, stock=10)
    _add(client, user_headers, product, 1)
    db.products.update_one({"_id": product["_id"]}, {"$set": {"price": 12}})

    cart = _add(client, user_headers, product, 1).get_json()["cart"]

    assert cart["items"][0]["price"] == 12
    assert cart["totalPrice"] == 24


def test_update_quantity_and_remove_with_zero(client, user_headers, make_product):
    product = make_product(stock=10)
    other = make_product(name="Other", stock=10)
    _add(client, user_headers, product, 1)
    _add(client, user_headers, other, 1)

    updated = client.put(
        "/api/cart/update",
        json={"productId": str(product["_id"]), "quantity": 4},
        headers=user_headers,
    )
    assert updated.status_code == 200
    assert updated.get_json()["cart"]["totalItems"] == 5

    removed = client.put(
        "/api/cart/update",
        json={"productId": str(product["_id"]), "quantity": 0},
        headers=user_headers,
    )
    items = removed.get_json()["cart"]["items"]
    assert [item["productId"] for item in items] == [str(other["_id"])]


def test_update_error_cases(client, user_headers, make_product):
    product = make_product(stock=2)
    stranger = make_product(name="Not In Cart", stock=5)

    no_cart = client.put(
        "/api/cart/update",
        json={"productId": str(product["_id"]), "quantity": 1},
        headers=user_headers,
    )
    assert no_cart.status_code == 404

    _add(client, user_headers, product, 1)
    too_many = client.put(
        "/api/cart/update",
        json={"productId": str(product["_id"]), "quantity": 3},
        headers=user_headers,
    )
    assert too_many.status_code == 400

    missing_line = client.put(
        "/api/cart/update",
        json={"productId": str(stranger["_id"]), "quantity": 1},
        headers=user_headers,
    )
    assert missing_line.status_code == 404


def test_remove_and_clear(client, user_headers, make_product):
    product = make_product()

    assert client.delete(f"/api/cart/remove/{product['_id']}", headers=user_headers).status_code == 404
    assert client.delete("/api/cart/clear", headers=user_headers).status_code == 404

    _add(client, user_headers, product, 2)
    removed = client.delete(f"/api/cart/remove/{product['_id']}", headers=user_headers)
    assert removed.status_code == 200
    assert removed.get_json()["cart"]["totalItems"] == 0
    again = client.delete(f"/api/cart/remove/{product['_id']}", headers=user_headers)
    assert again.status_code == 404

    _add(client, user_headers, product, 1)
    cleared = client.delete("/api/cart/clear", headers=user_headers)
    assert cleared.get_json()["cart"]["items"] == []


def test_get_cart_drops_inactive_products(client, db, user_headers, make_product):
    product = make_product()
    _add(client, user_headers, product, 1)
    db.products.update_one({"_id": product["_id"]}, {"$set": {"is_active": False}})

    cart = client.get("/api/cart", headers=user_headers).get_json()["cart"]

    assert cart["items"] == []
    assert cart["totalPrice"] == 0


def test_count(client, user_headers, make_product):
    assert client.get("/api/cart/count", headers=user_headers).get_json() == {"count": 0}

    _add(client, user_headers, make_product(), 3)

    assert client.get("/api/cart/count", headers=user_headers).get_json() == {"count": 3}
