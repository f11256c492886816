from datetime import datetime
from typing import Dict, List

from flask import jsonify, request
from flask_jwt_extended import jwt_required

from .helpers import first_value, iso, parse_int, parse_object_id, safe_float, validation_failed
from .products import available_stock, fetch_active_product, product_summary
from .security import get_current_user


def new_cart(user_id) -> Dict[str, object]:
    return {"user_id": user_id, "items": [], "total_items": 0, "total_price": 0.0}


def load_cart(db, user_id):
    return db.carts.find_one({"user_id": user_id})


def recompute_cart_totals(cart_document) -> None:
    items = cart_document.get("items") or []
    cart_document["total_items"] = sum(int(item.get("quantity") or 0) for item in items)
    cart_document["total_price"] = round(
        sum(safe_float(item.get("price")) * int(item.get("quantity") or 0) for item in items),
        2,
    )


def save_cart(db, cart_document) -> Dict[str, object]:
    recompute_cart_totals(cart_document)
    cart_document["updated_at"] = datetime.utcnow()
    db.carts.update_one(
        {"user_id": cart_document["user_id"]},
        {
            "$set": {
                "items": cart_document.get("items") or [],
                "total_items": cart_document["total_items"],
                "total_price": cart_document["total_price"],
                "updated_at": cart_document["updated_at"],
            }
        },
        upsert=True,
    )
    return cart_document


def find_cart_item(cart_document, product_id):
    for item in cart_document.get("items") or []:
        if item.get("product_id") == product_id:
            return item
    return None


def put_in_cart(cart_document, product_document, quantity: int) -> None:
    """Merge ``quantity`` of the product into the cart at its current price."""
    price = round(safe_float(product_document.get("price")), 2)
    existing = find_cart_item(cart_document, product_document["_id"])
    if existing:
        existing["quantity"] = int(existing.get("quantity") or 0) + quantity
        existing["price"] = price
    else:
        cart_document.setdefault("items", []).append(
            {"product_id": product_document["_id"], "quantity": quantity, "price": price}
        )


def serialize_cart(db, cart_document, products_by_id=None):
    items = cart_document.get("items") or []
    if products_by_id is None:
        product_ids = [item["product_id"] for item in items]
        products_by_id = {
            document["_id"]: document
            for document in db.products.find({"_id": {"$in": product_ids}}, {"reviews": 0})
        }
    return {
        "_id": str(cart_document["_id"]) if cart_document.get("_id") else None,
        "user": str(cart_document.get("user_id")),
        "items": [
            {
                "product": product_summary(products_by_id.get(item["product_id"])),
                "productId": str(item["product_id"]),
                "quantity": int(item.get("quantity") or 0),
                "price": round(safe_float(item.get("price")), 2),
            }
            for item in items
        ],
        "totalItems": int(cart_document.get("total_items") or 0),
        "totalPrice": round(safe_float(cart_document.get("total_price")), 2),
        "updatedAt": iso(cart_document.get("updated_at")),
    }


def _read_cart_line(payload, minimum: int):
    errors: List[Dict[str, str]] = []
    product_id = parse_object_id(first_value(payload, "productId", "product_id"))
    if product_id is None:
        errors.append({"field": "productId", "message": "Valid product ID is required"})

    raw_quantity = payload.get("quantity")
    quantity = parse_int(raw_quantity) if raw_quantity is not None else (1 if minimum else None)
    if quantity is None or quantity < minimum:
        errors.append(
            {
                "field": "quantity",
                "message": f"Quantity must be an integer of at least {minimum}",
            }
        )
    return product_id, quantity, errors


def register_routes(app, db):
    @app.route("/api/cart", methods=["GET"])
    @jwt_required()
    def get_cart():
        current_user, error = get_current_user(db)
        if error:
            return error

        cart_document = load_cart(db, current_user["_id"])
        if not cart_document:
            cart_document = save_cart(db, new_cart(current_user["_id"]))
            cart_document = load_cart(db, current_user["_id"])

        items = cart_document.get("items") or []
        product_ids = [item["product_id"] for item in items]
        products_by_id = {
            document["_id"]: document
            for document in db.products.find(
                {"_id": {"$in": product_ids}, "is_active": True}, {"reviews": 0}
            )
        }
        kept_items = [item for item in items if item["product_id"] in products_by_id]
        if len(kept_items) != len(items):
            cart_document["items"] = kept_items
            save_cart(db, cart_document)

        return jsonify({"cart": serialize_cart(db, cart_document, products_by_id)})

    @app.route("/api/cart/add", methods=["POST"])
    @jwt_required()
    def add_cart_item():
        current_user, error = get_current_user(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        product_id, quantity, errors = _read_cart_line(payload, 1)
        if errors:
            return validation_failed(errors)

        product_document = fetch_active_product(db, product_id)
        if not product_document:
            return jsonify({"message": "Product not found or unavailable"}), 404

        stock = available_stock(product_document)
        if stock < quantity:
            return (
                jsonify({"message": "Insufficient stock", "availableStock": stock}),
                400,
            )

        cart_document = load_cart(db, current_user["_id"]) or new_cart(current_user["_id"])
        existing = find_cart_item(cart_document, product_id)
        if existing and int(existing.get("quantity") or 0) + quantity > stock:
            return (
                jsonify(
                    {
                        "message": "Cannot add more items. Insufficient stock",
                        "availableStock": stock,
                        "currentInCart": int(existing.get("quantity") or 0),
                    }
                ),
                400,
            )

        put_in_cart(cart_document, product_document, quantity)
        save_cart(db, cart_document)
        cart_document = load_cart(db, current_user["_id"])

        return jsonify(
            {"message": "Item added to cart", "cart": serialize_cart(db, cart_document)}
        )

    @app.route("/api/cart/update", methods=["PUT"])
    @jwt_required()
    def update_cart_item():
        current_user, error = get_current_user(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        product_id, quantity, errors = _read_cart_line(payload, 0)
        if errors:
            return validation_failed(errors)

        cart_document = load_cart(db, current_user["_id"])
        if not cart_document:
            return jsonify({"message": "Cart not found"}), 404

        if quantity == 0:
            cart_document["items"] = [
                item for item in cart_document.get("items") or []
                if item.get("product_id") != product_id
            ]
        else:
            product_document = fetch_active_product(db, product_id)
            if not product_document:
                return jsonify({"message": "Product not found"}), 404

            stock = available_stock(product_document)
            if stock < quantity:
                return (
                    jsonify({"message": "Insufficient stock", "availableStock": stock}),
                    400,
                )

            existing = find_cart_item(cart_document, product_id)
            if not existing:
                return jsonify({"message": "Item not found in cart"}), 404
            existing["quantity"] = quantity
            existing["price"] = round(safe_float(product_document.get("price")), 2)

        save_cart(db, cart_document)
        return jsonify({"message": "Cart updated", "cart": serialize_cart(db, cart_document)})

    @app.route("/api/cart/remove/<product_id>", methods=["DELETE"])
    @jwt_required()
    def remove_cart_item(product_id: str):
        current_user, error = get_current_user(db)
        if error:
            return error

        cart_document = load_cart(db, current_user["_id"])
        if not cart_document:
            return jsonify({"message": "Cart not found"}), 404

        object_id = parse_object_id(product_id)
        items = cart_document.get("items") or []
        remaining = [item for item in items if item.get("product_id") != object_id]
        if object_id is None or len(remaining) == len(items):
            return jsonify({"message": "Item not found in cart"}), 404

        cart_document["items"] = remaining
        save_cart(db, cart_document)
        return jsonify(
            {"message": "Item removed from cart", "cart": serialize_cart(db, cart_document)}
        )

    @app.route("/api/cart/clear", methods=["DELETE"])
    @jwt_required()
    def clear_cart():
        current_user, error = get_current_user(db)
        if error:
            return error

        cart_document = load_cart(db, current_user["_id"])
        if not cart_document:
            return jsonify({"message": "Cart not found"}), 404

        cart_document["items"] = []
        save_cart(db, cart_document)
        return jsonify({"message": "Cart cleared", "cart": serialize_cart(db, cart_document)})

    @app.route("/api/cart/count", methods=["GET"])
    @jwt_required()
    def cart_count():
        current_user, error = get_current_user(db)
        if error:
            return error

        cart_document = load_cart(db, current_user["_id"])
        count = int(cart_document.get("total_items") or 0) if cart_document else 0
        return jsonify({"count": count})
