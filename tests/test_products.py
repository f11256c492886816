from datetime import datetime

from bson import ObjectId

VALID_PRODUCT = {
    "name": "Trail Running Shoes",
    "description": "Lightweight shoes with grippy soles for muddy trails.",
    "price": 89.99,
    "category": "Sports",
    "stock": 25,
    "brand": "Stride",
    "tags": ["Running", "Outdoor"],
    "images": ["https://img.test/shoe.png"],
}


def test_create_product_requires_admin(client, user_headers):
    response = client.post("/api/products", json=VALID_PRODUCT, headers=user_headers)

    assert response.status_code == 403


def test_create_product(client, db, admin, admin_headers):
    response = client.post("/api/products", json=VALID_PRODUCT, headers=admin_headers)

    assert response.status_code == 201
    product = response.get_json()["product"]
    assert product["slug"] == "trail-running-shoes"
    assert product["tags"] == ["running", "outdoor"]
    assert product["images"][0]["isPrimary"] is True
    assert product["stockStatus"] == "in_stock"
    stored = db.products.find_one({"_id": ObjectId(product["_id"])})
    assert stored["seller"] == admin["_id"]


def test_create_product_validation(client, admin_headers):
    response = client.post(
        "/api/products",
        json={"name": "X", "description": "short", "price": -1, "category": "Food", "stock": 1.5},
        headers=admin_headers,
    )

    assert response.status_code == 400
    fields = {error["field"] for error in response.get_json()["errors"]}
    assert fields == {"name", "description", "price", "category", "stock"}


def test_list_products_filters_and_paginates(client, make_product):
    make_product(name="Cheap Cable", price=5, tags=["usb"])
    make_product(name="Mid Speaker", price=50, brand="Boom")
    make_product(name="Premium Amplifier", price=500)
    make_product(name="Hidden Thing", price=20, is_active=False)
    make_product(name="Board Game", price=30, category="Toys", brand="Fun")

    response = client.get("/api/products?category=Electronics&minPrice=10&sortBy=price_desc")
    body = response.get_json()

    assert response.status_code == 200
    assert [product["name"] for product in body["products"]] == [
        "Premium Amplifier",
        "Mid Speaker",
    ]
    assert "reviews" not in body["products"][0]
    assert body["pagination"]["totalProducts"] == 2
    assert body["filters"]["categories"] == ["Electronics", "Toys"]
    assert "Boom" in body["filters"]["brands"]

    paged = client.get("/api/products?limit=2&page=2&sortBy=price_asc").get_json()
    assert [product["name"] for product in paged["products"]] == ["Mid Speaker", "Premium Amplifier"]
    assert paged["pagination"]["hasPrev"] is True
    assert paged["pagination"]["hasNext"] is False


def test_list_products_search_is_case_insensitive(client, make_product):
    make_product(name="Wireless Mouse")
    make_product(name="Mechanical Keyboard", tags=["typing"])

    by_name = client.get("/api/products?search=MOUSE").get_json()
    by_tag = client.get("/api/products?search=typ").get_json()

    assert [product["name"] for product in by_name["products"]] == ["Wireless Mouse"]
    assert [product["name"] for product in by_tag["products"]] == ["Mechanical Keyboard"]


def test_list_products_rejects_bad_pagination(client):
    assert client.get("/api/products?limit=51").status_code == 400
    assert client.get("/api/products?page=0").status_code == 400
    assert client.get("/api/products?minPrice=-3").status_code == 400


def test_featured_list(client, make_product):
    for index in range(10):
        make_product(name=f"Featured {index}", is_featured=True)
    make_product(name="Plain")

    response = client.get("/api/products/featured/list")

    products = response.get_json()["products"]
    assert len(products) == 8
    assert all(product["isFeatured"] for product in products)


def test_get_product_increments_views(client, db, make_product):
    product = make_product()

    response = client.get(f"/api/products/{product['_id']}")

    assert response.status_code == 200
    body = response.get_json()["product"]
    assert body["views"] == 1
    assert body["seller"]["name"] == "Admin"
    assert db.products.find_one({"_id": product["_id"]})["views"] == 1


def test_get_product_not_found_cases(client, make_product):
    inactive = make_product(is_active=False)

    assert client.get("/api/products/not-an-id").status_code == 404
    assert client.get(f"/api/products/{ObjectId()}").status_code == 404
    assert client.get(f"/api/products/{inactive['_id']}").status_code == 404


def test_update_product_recomputes_status(client, db, make_product, admin_headers):
    product = make_product(stock=5)

    response = client.put(
        f"/api/products/{product['_id']}",
        json={"stock": 0, "name": "Renamed Item"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    body = response.get_json()["product"]
    assert body["status"] == "out_of_stock"
    assert body["stockStatus"] == "out_of_stock"
    assert body["slug"] == "renamed-item"

    restocked = client.put(
        f"/api/products/{product['_id']}", json={"stock": 2}, headers=admin_headers
    ).get_json()["product"]
    assert restocked["status"] == "active"
    assert restocked["stockStatus"] == "low_stock"


def test_update_unknown_product(client, admin_headers):
    response = client.put(f"/api/products/{ObjectId()}", json={"price": 3}, headers=admin_headers)

    assert response.status_code == 404


def test_delete_product_is_soft(client, db, make_product, admin_headers):
    product = make_product()

    response = client.delete(f"/api/products/{product['_id']}", headers=admin_headers)

    assert response.status_code == 200
    assert db.products.find_one({"_id": product["_id"]})["is_active"] is False
    assert client.delete(f"/api/products/{ObjectId()}", headers=admin_headers).status_code == 404


def test_delete_all_products(client, db, make_product, admin_headers):
    make_product()
    make_product(name="Another")

    response = client.delete("/api/products", headers=admin_headers)

    assert response.get_json()["deletedCount"] == 2
    assert db.products.count_documents({}) == 0


def test_review_marks_verified_purchase(client, db, user, user_headers, make_product):
    product = make_product()
    db.orders.insert_one(
        {
            "user_id": user["_id"],
            "is_paid": True,
            "order_items": [{"product_id": product["_id"], "quantity": 1, "price": 100}],
            "created_at": datetime.utcnow(),
        }
    )

    response = client.post(
        f"/api/products/{product['_id']}/reviews",
        json={"rating": 4, "comment": "Great sound for the price."},
        headers=user_headers,
    )

    assert response.status_code == 201
    assert response.get_json()["review"]["verified"] is True
    stored = db.products.find_one({"_id": product["_id"]})
    assert stored["rating"] == 4
    assert stored["num_reviews"] == 1
    assert db.notifications.find_one({"type": "product_review"})

    duplicate = client.post(
        f"/api/products/{product['_id']}/reviews",
        json={"rating": 5, "comment": "Changed my mind."},
        headers=user_headers,
    )
    assert duplicate.status_code == 400


def test_review_rating_is_rounded_average(client, db, make_user, headers_for, make_product):
    product = make_product()
    for index, rating in enumerate((5, 4, 4)):
        reviewer = make_user(email=f"reviewer{index}@example.com")
        response = client.post(
            f"/api/products/{product['_id']}/reviews",
            json={"rating": rating, "comment": "Solid product overall."},
            headers=headers_for(reviewer),
        )
        assert response.status_code == 201
        assert response.get_json()["review"]["verified"] is False

    assert db.products.find_one({"_id": product["_id"]})["rating"] == 4.3


def test_review_validation(client, make_product, user_headers):
    product = make_product()

    response = client.post(
        f"/api/products/{product['_id']}/reviews",
        json={"rating": 6, "comment": "bad"},
        headers=user_headers,
    )

    assert response.status_code == 400
    assert {error["field"] for error in response.get_json()["errors"]} == {"rating", "comment"}
