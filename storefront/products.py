import math
import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from flask import jsonify, request
from flask_jwt_extended import jwt_required

from .helpers import (
    build_pagination,
    first_value,
    iso,
    parse_int,
    parse_number,
    parse_object_id,
    read_pagination,
    safe_float,
    slugify,
    validation_failed,
)
from .notifications import create_notification
from .security import get_current_user, require_admin

PRODUCT_CATEGORIES = ("Electronics", "Books", "Sports", "Toys")
PRODUCT_STATUSES = ("draft", "active", "inactive", "out_of_stock", "discontinued")
FEATURED_LIST_LIMIT = 8

SORT_OPTIONS = {
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "rating": [("rating", -1)],
    "newest": [("created_at", -1)],
    "name": [("name", 1)],
}


def available_stock(product_document) -> int:
    stock = int(product_document.get("stock") or 0)
    reserved = int(product_document.get("reserved_stock") or 0)
    return max(0, stock - reserved)


def stock_status(product_document) -> str:
    available = available_stock(product_document)
    if available == 0:
        return "out_of_stock"
    if available <= int(product_document.get("low_stock_threshold", 10) or 0):
        return "low_stock"
    return "in_stock"


def resolve_product_status(product_document) -> str:
    status = product_document.get("status") or "active"
    available = available_stock(product_document)
    if available == 0 and status == "active":
        return "out_of_stock"
    if available > 0 and status == "out_of_stock":
        return "active"
    return status


def sync_stock_status(db, product_id) -> None:
    product_document = db.products.find_one({"_id": product_id})
    if not product_document:
        return
    status = resolve_product_status(product_document)
    if status != product_document.get("status"):
        db.products.update_one({"_id": product_id}, {"$set": {"status": status}})


def take_stock(db, product_id, quantity: int) -> bool:
    """Decrement stock only while enough remains. Returns whether it applied."""
    result = db.products.update_one(
        {"_id": product_id, "is_active": True, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity, "purchases": 1}},
    )
    if result.modified_count:
        sync_stock_status(db, product_id)
    return bool(result.modified_count)


def restore_stock(db, product_id, quantity: int, purchases: int = 0) -> None:
    db.products.update_one(
        {"_id": product_id},
        {"$inc": {"stock": quantity, "purchases": -purchases}},
    )
    sync_stock_status(db, product_id)


def fetch_active_product(db, product_id):
    object_id = parse_object_id(product_id)
    if object_id is None:
        return None
    product_document = db.products.find_one({"_id": object_id})
    if not product_document or product_document.get("is_active") is False:
        return None
    return product_document


def normalize_images(value) -> List[Dict[str, object]]:
    images: List[Dict[str, object]] = []
    if not isinstance(value, list):
        return images
    for index, entry in enumerate(value):
        if isinstance(entry, str):
            entry = {"url": entry}
        if not isinstance(entry, dict):
            continue
        url = str(entry.get("url") or "").strip()
        if not url:
            continue
        images.append(
            {
                "url": url,
                "alt": str(entry.get("alt") or "").strip(),
                "is_primary": bool(first_value(entry, "isPrimary", "is_primary")),
                "order": parse_int(entry.get("order")) or index,
            }
        )
    if images and not any(image["is_primary"] for image in images):
        images[0]["is_primary"] = True
    return images


def primary_image_url(product_document) -> str:
    images = product_document.get("images") or []
    for image in images:
        if image.get("is_primary"):
            return image.get("url", "")
    return images[0].get("url", "") if images else ""


def _string_list(value, lowercase=False) -> Optional[List[str]]:
    if not isinstance(value, list):
        return None
    cleaned = [str(item).strip() for item in value if str(item).strip()]
    return [item.lower() for item in cleaned] if lowercase else cleaned


def validate_product_payload(payload: Dict, partial: bool = False) -> Tuple[Dict, List[Dict]]:
    fields: Dict[str, object] = {}
    errors: List[Dict[str, str]] = []

    def present(*keys) -> bool:
        return first_value(payload, *keys) is not None

    if present("name") or not partial:
        name = str(payload.get("name") or "").strip()
        if not 2 <= len(name) <= 100:
            errors.append(
                {"field": "name", "message": "Product name must be between 2 and 100 characters"}
            )
        fields["name"] = name
        fields["slug"] = slugify(name)

    if present("description") or not partial:
        description = str(payload.get("description") or "").strip()
        if not 10 <= len(description) <= 2000:
            errors.append(
                {
                    "field": "description",
                    "message": "Description must be between 10 and 2000 characters",
                }
            )
        fields["description"] = description

    if present("shortDescription", "short_description"):
        short_description = str(
            first_value(payload, "shortDescription", "short_description")
        ).strip()
        if len(short_description) > 200:
            errors.append(
                {
                    "field": "shortDescription",
                    "message": "Short description cannot exceed 200 characters",
                }
            )
        fields["short_description"] = short_description

    if present("price") or not partial:
        price = parse_number(payload.get("price"))
        if price is None or price < 0:
            errors.append({"field": "price", "message": "Price must be a positive number"})
        else:
            fields["price"] = round(price, 2)

    if present("originalPrice", "original_price"):
        original_price = parse_number(first_value(payload, "originalPrice", "original_price"))
        if original_price is None or original_price < 0:
            errors.append(
                {"field": "originalPrice", "message": "Original price must be a positive number"}
            )
        else:
            fields["original_price"] = round(original_price, 2)

    if present("category") or not partial:
        category = str(payload.get("category") or "").strip()
        if category not in PRODUCT_CATEGORIES:
            errors.append({"field": "category", "message": "Invalid product category"})
        fields["category"] = category

    if present("stock") or not partial:
        stock = parse_int(payload.get("stock"))
        if stock is None or stock < 0:
            errors.append({"field": "stock", "message": "Stock must be a non-negative integer"})
        else:
            fields["stock"] = stock

    if present("lowStockThreshold", "low_stock_threshold"):
        threshold = parse_int(first_value(payload, "lowStockThreshold", "low_stock_threshold"))
        if threshold is None or threshold < 0:
            errors.append(
                {
                    "field": "lowStockThreshold",
                    "message": "Low stock threshold must be a non-negative integer",
                }
            )
        else:
            fields["low_stock_threshold"] = threshold

    if present("brand"):
        brand = str(payload.get("brand")).strip()
        if len(brand) > 50:
            errors.append({"field": "brand", "message": "Brand name cannot exceed 50 characters"})
        fields["brand"] = brand

    if present("sku"):
        fields["sku"] = str(payload.get("sku")).strip().upper()

    if present("tags"):
        tags = _string_list(payload.get("tags"), lowercase=True)
        if tags is None:
            errors.append({"field": "tags", "message": "Tags must be an array"})
        elif any(len(tag) > 30 for tag in tags):
            errors.append(
                {"field": "tags", "message": "Each tag must be between 1 and 30 characters"}
            )
        else:
            fields["tags"] = tags

    if present("features"):
        features = _string_list(payload.get("features"))
        if features is None:
            errors.append({"field": "features", "message": "Features must be an array"})
        else:
            fields["features"] = features

    if present("images"):
        fields["images"] = normalize_images(payload.get("images"))

    if present("discount"):
        discount = parse_number(payload.get("discount"))
        if discount is None or not 0 <= discount <= 100:
            errors.append({"field": "discount", "message": "Discount must be between 0 and 100"})
        else:
            fields["discount"] = discount

    for camel, snake in (("isFeatured", "is_featured"), ("isActive", "is_active")):
        if present(camel, snake):
            value = first_value(payload, camel, snake)
            if not isinstance(value, bool):
                errors.append({"field": camel, "message": f"{camel} must be a boolean"})
            else:
                fields[snake] = value

    if present("status"):
        status = str(payload.get("status")).strip()
        if status not in PRODUCT_STATUSES:
            errors.append({"field": "status", "message": "Invalid product status"})
        else:
            fields["status"] = status

    return fields, errors


def round_rating(value: float) -> float:
    return math.floor(value * 10 + 0.5) / 10


def serialize_review(review) -> Dict[str, object]:
    return {
        "_id": str(review.get("_id")),
        "user": str(review.get("user")),
        "name": review.get("name", ""),
        "rating": review.get("rating"),
        "comment": review.get("comment", ""),
        "verified": bool(review.get("verified")),
        "helpful": int(review.get("helpful") or 0),
        "createdAt": iso(review.get("created_at")),
    }


def serialize_product(product_document, seller=None, include_reviews=False):
    if not product_document:
        return None

    seller_id = product_document.get("seller")
    serialized = {
        "_id": str(product_document.get("_id")),
        "name": product_document.get("name", ""),
        "slug": product_document.get("slug", ""),
        "description": product_document.get("description", ""),
        "shortDescription": product_document.get("short_description", ""),
        "price": round(safe_float(product_document.get("price")), 2),
        "originalPrice": product_document.get("original_price"),
        "category": product_document.get("category", ""),
        "brand": product_document.get("brand", ""),
        "images": [
            {
                "url": image.get("url", ""),
                "alt": image.get("alt", ""),
                "isPrimary": bool(image.get("is_primary")),
                "order": image.get("order", 0),
            }
            for image in product_document.get("images") or []
        ],
        "stock": int(product_document.get("stock") or 0),
        "availableStock": available_stock(product_document),
        "stockStatus": stock_status(product_document),
        "sku": product_document.get("sku"),
        "tags": product_document.get("tags") or [],
        "features": product_document.get("features") or [],
        "rating": product_document.get("rating", 0),
        "numReviews": int(product_document.get("num_reviews") or 0),
        "discount": product_document.get("discount", 0),
        "isActive": product_document.get("is_active", True) is not False,
        "isFeatured": bool(product_document.get("is_featured")),
        "status": product_document.get("status", "active"),
        "views": int(product_document.get("views") or 0),
        "purchases": int(product_document.get("purchases") or 0),
        "wishlistCount": int(product_document.get("wishlist_count") or 0),
        "seller": seller if seller is not None else (str(seller_id) if seller_id else None),
        "createdAt": iso(product_document.get("created_at")),
        "updatedAt": iso(product_document.get("updated_at")),
    }
    if include_reviews:
        serialized["reviews"] = [
            serialize_review(review) for review in product_document.get("reviews") or []
        ]
    return serialized


def product_summary(product_document) -> Optional[Dict[str, object]]:
    if not product_document:
        return None
    return {
        "_id": str(product_document["_id"]),
        "name": product_document.get("name", ""),
        "price": round(safe_float(product_document.get("price")), 2),
        "images": [
            {"url": image.get("url", ""), "alt": image.get("alt", "")}
            for image in product_document.get("images") or []
        ],
        "stock": int(product_document.get("stock") or 0),
        "rating": product_document.get("rating", 0),
        "numReviews": int(product_document.get("num_reviews") or 0),
        "isActive": product_document.get("is_active", True) is not False,
    }


def seller_name_map(db, product_documents) -> Dict[ObjectId, Dict[str, str]]:
    seller_ids = list(
        {document["seller"] for document in product_documents if document.get("seller")}
    )
    if not seller_ids:
        return {}
    return {
        user["_id"]: {"_id": str(user["_id"]), "name": user.get("name", "")}
        for user in db.users.find({"_id": {"$in": seller_ids}}, {"name": 1})
    }


def register_routes(app, db):
    @app.route("/api/products", methods=["GET"])
    def list_products():
        page, limit, errors = read_pagination(12, max_limit=50)

        query: Dict[str, object] = {"is_active": True}
        category = request.args.get("category")
        if category:
            query["category"] = category

        price_filter: Dict[str, float] = {}
        for arg, operator in (("minPrice", "$gte"), ("maxPrice", "$lte")):
            raw = request.args.get(arg)
            if raw in (None, ""):
                continue
            value = parse_number(raw)
            if value is None or value < 0:
                errors.append({"field": arg, "message": f"{arg} must be non-negative"})
            else:
                price_filter[operator] = value
        if price_filter:
            query["price"] = price_filter

        if errors:
            return validation_failed(errors)

        brand = request.args.get("brand")
        if brand:
            query["brand"] = {"$regex": re.escape(brand), "$options": "i"}

        search = str(request.args.get("search") or "").strip()
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [
                {"name": pattern},
                {"description": pattern},
                {"tags": pattern},
            ]

        min_rating = parse_number(request.args.get("minRating"))
        if min_rating is not None:
            query["rating"] = {"$gte": min_rating}

        if request.args.get("featured") == "true":
            query["is_featured"] = True

        sort = SORT_OPTIONS.get(request.args.get("sortBy"), SORT_OPTIONS["newest"])
        product_docs = list(
            db.products.find(query, {"reviews": 0})
            .sort(sort + [("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total = db.products.count_documents(query)

        sellers = seller_name_map(db, product_docs)
        categories = sorted(
            value for value in db.products.distinct("category", {"is_active": True}) if value
        )
        brands = sorted(
            value for value in db.products.distinct("brand", {"is_active": True}) if value
        )

        return jsonify(
            {
                "products": [
                    serialize_product(document, seller=sellers.get(document.get("seller")))
                    for document in product_docs
                ],
                "pagination": build_pagination(page, limit, total, "totalProducts"),
                "filters": {"categories": categories, "brands": brands},
            }
        )

    @app.route("/api/products/featured/list", methods=["GET"])
    def list_featured_products():
        product_docs = list(
            db.products.find({"is_active": True, "is_featured": True}, {"reviews": 0})
            .sort([("created_at", -1), ("_id", -1)])
            .limit(FEATURED_LIST_LIMIT)
        )
        sellers = seller_name_map(db, product_docs)
        return jsonify(
            {
                "products": [
                    serialize_product(document, seller=sellers.get(document.get("seller")))
                    for document in product_docs
                ]
            }
        )

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        object_id = parse_object_id(product_id)
        product_document = db.products.find_one({"_id": object_id}) if object_id else None
        if not product_document:
            return jsonify({"message": "Product not found"}), 404
        if product_document.get("is_active") is False:
            return jsonify({"message": "Product not available"}), 404

        db.products.update_one({"_id": object_id}, {"$inc": {"views": 1}})
        product_document["views"] = int(product_document.get("views") or 0) + 1

        seller = None
        if product_document.get("seller"):
            seller_document = db.users.find_one(
                {"_id": product_document["seller"]}, {"name": 1, "email": 1}
            )
            if seller_document:
                seller = {
                    "_id": str(seller_document["_id"]),
                    "name": seller_document.get("name", ""),
                    "email": seller_document.get("email", ""),
                }

        return jsonify(
            {"product": serialize_product(product_document, seller=seller, include_reviews=True)}
        )

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        current_user, error = require_admin(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        fields, errors = validate_product_payload(payload)
        if errors:
            return validation_failed(errors)

        timestamp = datetime.utcnow()
        product_document = {
            "short_description": "",
            "brand": "",
            "images": [],
            "low_stock_threshold": 10,
            "reserved_stock": 0,
            "tags": [],
            "features": [],
            "reviews": [],
            "rating": 0,
            "num_reviews": 0,
            "discount": 0,
            "is_active": True,
            "is_featured": False,
            "status": "active",
            "views": 0,
            "purchases": 0,
            "wishlist_count": 0,
            **fields,
            "seller": current_user["_id"],
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        product_document["status"] = resolve_product_status(product_document)
        insert_result = db.products.insert_one(product_document)
        product_document["_id"] = insert_result.inserted_id

        app.logger.info(
            "Product %s created by %s", insert_result.inserted_id, current_user.get("email")
        )
        return (
            jsonify(
                {
                    "message": "Product created successfully",
                    "product": serialize_product(product_document),
                }
            ),
            201,
        )

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        _, error = require_admin(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        fields, errors = validate_product_payload(payload, partial=True)
        if errors:
            return validation_failed(errors)

        object_id = parse_object_id(product_id)
        product_document = db.products.find_one({"_id": object_id}) if object_id else None
        if not product_document:
            return jsonify({"message": "Product not found"}), 404

        product_document.update(fields)
        fields["status"] = resolve_product_status(product_document)
        fields["updated_at"] = datetime.utcnow()
        db.products.update_one({"_id": object_id}, {"$set": fields})
        product_document.update(fields)

        return jsonify(
            {
                "message": "Product updated successfully",
                "product": serialize_product(product_document),
            }
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        _, error = require_admin(db)
        if error:
            return error

        object_id = parse_object_id(product_id)
        result = (
            db.products.update_one(
                {"_id": object_id},
                {"$set": {"is_active": False, "updated_at": datetime.utcnow()}},
            )
            if object_id
            else None
        )
        if not result or not result.matched_count:
            return jsonify({"message": "Product not found"}), 404

        return jsonify({"message": "Product deleted successfully"})

    @app.route("/api/products", methods=["DELETE"])
    @jwt_required()
    def delete_all_products():
        current_user, error = require_admin(db)
        if error:
            return error

        result = db.products.delete_many({})
        app.logger.warning(
            "%s deleted all %s products", current_user.get("email"), result.deleted_count
        )
        return jsonify(
            {
                "message": "All products deleted successfully",
                "deletedCount": result.deleted_count,
            }
        )

    @app.route("/api/products/<product_id>/reviews", methods=["POST"])
    @jwt_required()
    def add_product_review(product_id: str):
        current_user, error = get_current_user(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        errors: List[Dict[str, str]] = []
        rating = parse_int(payload.get("rating"))
        if rating is None or not 1 <= rating <= 5:
            errors.append({"field": "rating", "message": "Rating must be between 1 and 5"})
        comment = str(payload.get("comment") or "").strip()
        if not 5 <= len(comment) <= 500:
            errors.append(
                {"field": "comment", "message": "Comment must be between 5 and 500 characters"}
            )
        if errors:
            return validation_failed(errors)

        object_id = parse_object_id(product_id)
        product_document = db.products.find_one({"_id": object_id}) if object_id else None
        if not product_document:
            return jsonify({"message": "Product not found"}), 404

        reviews = product_document.get("reviews") or []
        if any(review.get("user") == current_user["_id"] for review in reviews):
            return jsonify({"message": "Product already reviewed"}), 400

        purchased = db.orders.find_one(
            {
                "user_id": current_user["_id"],
                "is_paid": True,
                "order_items.product_id": object_id,
            }
        )
        review = {
            "_id": ObjectId(),
            "user": current_user["_id"],
            "name": current_user.get("name", ""),
            "rating": rating,
            "comment": comment,
            "verified": bool(purchased),
            "helpful": 0,
            "created_at": datetime.utcnow(),
        }
        reviews.append(review)
        average = round_rating(sum(entry["rating"] for entry in reviews) / len(reviews))
        db.products.update_one(
            {"_id": object_id},
            {
                "$push": {"reviews": review},
                "$set": {"rating": average, "num_reviews": len(reviews)},
            },
        )

        seller_id = product_document.get("seller")
        if seller_id and seller_id != current_user["_id"]:
            create_notification(
                db,
                seller_id,
                "product_review",
                "New product review",
                f"{review['name'] or 'A customer'} rated {product_document.get('name', 'your product')} {rating}/5.",
                sender=current_user["_id"],
                data={"productId": str(object_id), "rating": rating},
                priority="low",
            )

        return (
            jsonify({"message": "Review added successfully", "review": serialize_review(review)}),
            201,
        )
