import secrets
from datetime import datetime
from typing import Dict, List

from flask import jsonify, request
from flask_jwt_extended import jwt_required

from .cart import find_cart_item, load_cart, new_cart, put_in_cart, save_cart, serialize_cart
from .helpers import first_value, iso, parse_int, parse_object_id, validation_failed
from .products import available_stock, fetch_active_product, product_summary
from .security import get_current_user, get_optional_user

DEFAULT_WISHLIST_NAME = "My Wishlist"


def new_wishlist(user_id) -> Dict[str, object]:
    timestamp = datetime.utcnow()
    return {
        "user_id": user_id,
        "products": [],
        "name": DEFAULT_WISHLIST_NAME,
        "is_public": False,
        "share_token": None,
        "created_at": timestamp,
        "updated_at": timestamp,
    }


def generate_share_token() -> str:
    return secrets.token_hex(16)


def serialize_wishlist(db, wishlist_document, owner=None):
    entries = wishlist_document.get("products") or []
    products_by_id = {
        document["_id"]: document
        for document in db.products.find(
            {"_id": {"$in": [entry["product_id"] for entry in entries]}, "is_active": True},
            {"reviews": 0},
        )
    }
    return {
        "_id": str(wishlist_document["_id"]) if wishlist_document.get("_id") else None,
        "user": owner if owner is not None else str(wishlist_document.get("user_id")),
        "name": wishlist_document.get("name") or DEFAULT_WISHLIST_NAME,
        "isPublic": bool(wishlist_document.get("is_public")),
        "shareToken": wishlist_document.get("share_token"),
        "products": [
            {
                "product": product_summary(products_by_id[entry["product_id"]]),
                "addedAt": iso(entry.get("added_at")),
                "notes": entry.get("notes", ""),
            }
            for entry in entries
            if entry["product_id"] in products_by_id
        ],
        "itemCount": len(entries),
        "updatedAt": iso(wishlist_document.get("updated_at")),
    }


def _not_found(message: str):
    return jsonify({"success": False, "message": message}), 404


def register_routes(app, db):
    def load_user():
        current_user, error = get_current_user(db)
        if error:
            response, status = error
            return None, (jsonify({**response.get_json(), "success": False}), status)
        return current_user, None

    def load_wishlist(user_id):
        return db.wishlists.find_one({"user_id": user_id})

    def store_wishlist(wishlist_document):
        wishlist_document["updated_at"] = datetime.utcnow()
        if wishlist_document.get("_id"):
            db.wishlists.replace_one({"_id": wishlist_document["_id"]}, wishlist_document)
        else:
            wishlist_document["_id"] = db.wishlists.insert_one(wishlist_document).inserted_id
        return wishlist_document

    def adjust_wishlist_count(product_ids, delta: int):
        if product_ids:
            db.products.update_many(
                {"_id": {"$in": list(product_ids)}}, {"$inc": {"wishlist_count": delta}}
            )

    @app.route("/api/wishlist", methods=["GET"])
    @jwt_required()
    def get_wishlist():
        current_user, error = load_user()
        if error:
            return error

        wishlist_document = load_wishlist(current_user["_id"])
        if not wishlist_document:
            wishlist_document = store_wishlist(new_wishlist(current_user["_id"]))

        return jsonify(
            {"success": True, "wishlist": serialize_wishlist(db, wishlist_document)}
        )

    @app.route("/api/wishlist/<product_id>", methods=["POST"])
    @jwt_required()
    def add_to_wishlist(product_id: str):
        current_user, error = load_user()
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        notes = str(payload.get("notes") or "").strip()
        if len(notes) > 200:
            return validation_failed(
                [{"field": "notes", "message": "Notes cannot exceed 200 characters"}],
                success=False,
            )

        product_document = fetch_active_product(db, product_id)
        if not product_document:
            return _not_found("Product not found")

        wishlist_document = load_wishlist(current_user["_id"]) or new_wishlist(current_user["_id"])
        if any(
            entry["product_id"] == product_document["_id"]
            for entry in wishlist_document.get("products") or []
        ):
            return (
                jsonify({"success": False, "message": "Product already in wishlist"}),
                400,
            )

        wishlist_document.setdefault("products", []).append(
            {"product_id": product_document["_id"], "added_at": datetime.utcnow(), "notes": notes}
        )
        store_wishlist(wishlist_document)
        adjust_wishlist_count([product_document["_id"]], 1)

        return (
            jsonify(
                {
                    "success": True,
                    "message": "Product added to wishlist",
                    "wishlist": serialize_wishlist(db, wishlist_document),
                }
            ),
            201,
        )

    @app.route("/api/wishlist/<product_id>", methods=["DELETE"])
    @jwt_required()
    def remove_from_wishlist(product_id: str):
        current_user, error = load_user()
        if error:
            return error

        wishlist_document = load_wishlist(current_user["_id"])
        if not wishlist_document:
            return _not_found("Wishlist not found")

        object_id = parse_object_id(product_id)
        entries = wishlist_document.get("products") or []
        remaining = [entry for entry in entries if entry["product_id"] != object_id]
        if object_id is None or len(remaining) == len(entries):
            return _not_found("Product not found in wishlist")

        wishlist_document["products"] = remaining
        store_wishlist(wishlist_document)
        adjust_wishlist_count([object_id], -1)

        return jsonify(
            {
                "success": True,
                "message": "Product removed from wishlist",
                "wishlist": serialize_wishlist(db, wishlist_document),
            }
        )

    @app.route("/api/wishlist", methods=["PUT"])
    @jwt_required()
    def update_wishlist():
        current_user, error = load_user()
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        errors: List[Dict[str, str]] = []
        name = payload.get("name")
        if name is not None:
            name = str(name).strip()
            if not 1 <= len(name) <= 50:
                errors.append(
                    {"field": "name", "message": "Name must be between 1 and 50 characters"}
                )
        is_public = first_value(payload, "isPublic", "is_public")
        if is_public is not None and not isinstance(is_public, bool):
            errors.append({"field": "isPublic", "message": "isPublic must be a boolean"})
        if errors:
            return validation_failed(errors, success=False)

        wishlist_document = load_wishlist(current_user["_id"])
        if not wishlist_document:
            return _not_found("Wishlist not found")

        if name is not None:
            wishlist_document["name"] = name
        if is_public is not None:
            wishlist_document["is_public"] = is_public
            if is_public and not wishlist_document.get("share_token"):
                wishlist_document["share_token"] = generate_share_token()
        store_wishlist(wishlist_document)

        return jsonify(
            {
                "success": True,
                "message": "Wishlist updated successfully",
                "wishlist": serialize_wishlist(db, wishlist_document),
            }
        )

    @app.route("/api/wishlist/share", methods=["POST"])
    @jwt_required()
    def share_wishlist():
        current_user, error = load_user()
        if error:
            return error

        wishlist_document = load_wishlist(current_user["_id"])
        if not wishlist_document:
            return _not_found("Wishlist not found")

        share_token = generate_share_token()
        wishlist_document["share_token"] = share_token
        wishlist_document["is_public"] = True
        store_wishlist(wishlist_document)

        return jsonify(
            {
                "success": True,
                "message": "Share token generated successfully",
                "shareToken": share_token,
                "shareUrl": f"{request.host_url.rstrip('/')}/wishlist/shared/{share_token}",
            }
        )

    @app.route("/api/wishlist/shared/<share_token>", methods=["GET"])
    def get_shared_wishlist(share_token: str):
        wishlist_document = db.wishlists.find_one(
            {"share_token": share_token, "is_public": True}
        )
        if not wishlist_document:
            return _not_found("Shared wishlist not found")

        owner_document = db.users.find_one({"_id": wishlist_document["user_id"]}, {"name": 1})
        owner = {"name": (owner_document or {}).get("name", "")}
        return jsonify(
            {"success": True, "wishlist": serialize_wishlist(db, wishlist_document, owner=owner)}
        )

    @app.route("/api/wishlist/check/<product_id>", methods=["GET"])
    def check_wishlist(product_id: str):
        current_user = get_optional_user(db)
        if not current_user:
            return jsonify({"success": True, "inWishlist": False})

        object_id = parse_object_id(product_id)
        in_wishlist = bool(
            object_id
            and db.wishlists.find_one(
                {"user_id": current_user["_id"], "products.product_id": object_id}
            )
        )
        return jsonify({"success": True, "inWishlist": in_wishlist})

    @app.route("/api/wishlist", methods=["DELETE"])
    @jwt_required()
    def clear_wishlist():
        current_user, error = load_user()
        if error:
            return error

        wishlist_document = load_wishlist(current_user["_id"])
        if not wishlist_document:
            return _not_found("Wishlist not found")

        adjust_wishlist_count(
            [entry["product_id"] for entry in wishlist_document.get("products") or []], -1
        )
        wishlist_document["products"] = []
        store_wishlist(wishlist_document)

        return jsonify(
            {
                "success": True,
                "message": "Wishlist cleared successfully",
                "wishlist": serialize_wishlist(db, wishlist_document),
            }
        )

    @app.route("/api/wishlist/<product_id>/move-to-cart", methods=["POST"])
    @jwt_required()
    def move_wishlist_item_to_cart(product_id: str):
        current_user, error = load_user()
        if error:
            return error

        object_id = parse_object_id(product_id)
        if object_id is None:
            return jsonify({"success": False, "message": "Invalid product ID"}), 400

        payload = request.get_json(silent=True) or {}
        quantity = parse_int(payload.get("quantity", 1))
        if quantity is None or quantity < 1:
            return validation_failed(
                [{"field": "quantity", "message": "Quantity must be at least 1"}],
                success=False,
            )

        product_document = fetch_active_product(db, object_id)
        if not product_document:
            return _not_found("Product not found")

        cart_document = load_cart(db, current_user["_id"]) or new_cart(current_user["_id"])
        existing = find_cart_item(cart_document, object_id)
        in_cart = int(existing.get("quantity") or 0) if existing else 0
        stock = available_stock(product_document)
        if stock < quantity + in_cart:
            return (
                jsonify(
                    {
                        "success": False,
                        "message": "Insufficient stock",
                        "availableStock": stock,
                    }
                ),
                400,
            )

        wishlist_document = load_wishlist(current_user["_id"])
        if wishlist_document:
            entries = wishlist_document.get("products") or []
            remaining = [entry for entry in entries if entry["product_id"] != object_id]
            if len(remaining) != len(entries):
                wishlist_document["products"] = remaining
                store_wishlist(wishlist_document)
                adjust_wishlist_count([object_id], -1)

        put_in_cart(cart_document, product_document, quantity)
        save_cart(db, cart_document)
        cart_document = load_cart(db, current_user["_id"])

        return jsonify(
            {
                "success": True,
                "message": "Product moved to cart",
                "cart": serialize_cart(db, cart_document),
            }
        )
