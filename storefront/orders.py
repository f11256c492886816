import math
import secrets
import time
from datetime import datetime
from typing import Dict, List, Optional

from flask import jsonify, request
from flask_jwt_extended import jwt_required

from .cart import load_cart, save_cart
from .emails import send_order_email
from .helpers import (
    build_pagination,
    first_value,
    iso,
    parse_object_id,
    read_pagination,
    safe_float,
    validation_failed,
)
from .notifications import create_notification
from .products import primary_image_url, restore_stock, take_stock
from .security import get_current_user, is_admin, require_admin

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled", "refunded")
PAYMENT_METHODS = ("stripe", "paypal", "cash_on_delivery")

# Statuses that produce an in-app notification when an admin moves an order to them.
STATUS_NOTIFICATION_TYPES = {
    "processing": "order_confirmed",
    "shipped": "order_shipped",
    "delivered": "order_delivered",
    "cancelled": "order_cancelled",
}

LOYALTY_TIERS = ((10000, "platinum"), (5000, "gold"), (1000, "silver"))

SHIPPING_FIELDS = (
    ("fullName", "full_name", "Full name is required"),
    ("address", "address", "Address is required"),
    ("city", "city", "City is required"),
    ("state", "state", "State is required"),
    ("country", "country", "Country is required"),
)


def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{secrets.randbelow(1000):03d}"


def loyalty_tier(total_spent: float) -> str:
    for threshold, tier in LOYALTY_TIERS:
        if total_spent >= threshold:
            return tier
    return "bronze"


def record_order_stats(db, user_id, order_value: float) -> None:
    user_document = db.users.find_one({"_id": user_id})
    if not user_document:
        return

    total_orders = int(user_document.get("total_orders") or 0) + 1
    total_spent = round(safe_float(user_document.get("total_spent")) + order_value, 2)
    loyalty = dict(user_document.get("loyalty") or {})
    loyalty_spent = round(safe_float(loyalty.get("total_spent")) + order_value, 2)
    loyalty.update(
        {
            "points": int(loyalty.get("points") or 0) + math.floor(order_value),
            "total_spent": loyalty_spent,
            "tier": loyalty_tier(loyalty_spent),
        }
    )
    db.users.update_one(
        {"_id": user_id},
        {
            "$set": {
                "total_orders": total_orders,
                "total_spent": total_spent,
                "average_order_value": round(total_spent / total_orders, 2),
                "last_order_date": datetime.utcnow(),
                "loyalty": loyalty,
            }
        },
    )


def mark_order_paid(db, order_document, payment_result: Dict[str, object]) -> bool:
    """Mark an unpaid order as paid. Returns False when it was already paid."""
    paid_at = datetime.utcnow()
    changes = {
        "is_paid": True,
        "paid_at": paid_at,
        "payment_result": payment_result,
        "status": "processing",
        "updated_at": paid_at,
    }
    result = db.orders.update_one(
        {"_id": order_document["_id"], "is_paid": {"$ne": True}}, {"$set": changes}
    )
    if not result.modified_count:
        return False

    order_document.update(changes)
    total_price = safe_float(order_document.get("total_price"))
    record_order_stats(db, order_document["user_id"], total_price)
    create_notification(
        db,
        order_document["user_id"],
        "payment_received",
        "Payment received",
        f"We received your payment of ${total_price:.2f} for order {order_document.get('order_number')}.",
        data={"orderId": str(order_document["_id"]), "amount": total_price},
        action_url=f"/orders/{order_document['_id']}",
    )
    return True


def serialize_order(order_document, user=None) -> Optional[Dict[str, object]]:
    if not order_document:
        return None

    shipping = order_document.get("shipping_address") or {}
    return {
        "_id": str(order_document["_id"]),
        "orderNumber": order_document.get("order_number"),
        "user": user if user is not None else str(order_document.get("user_id")),
        "orderItems": [
            {
                "product": str(item.get("product_id")),
                "name": item.get("name", ""),
                "image": item.get("image", ""),
                "price": round(safe_float(item.get("price")), 2),
                "quantity": int(item.get("quantity") or 0),
            }
            for item in order_document.get("order_items") or []
        ],
        "shippingAddress": {
            "fullName": shipping.get("full_name", ""),
            "address": shipping.get("address", ""),
            "city": shipping.get("city", ""),
            "state": shipping.get("state", ""),
            "country": shipping.get("country", ""),
            "postalCode": shipping.get("postal_code", ""),
            "phone": shipping.get("phone", ""),
        },
        "paymentMethod": order_document.get("payment_method"),
        "paymentResult": order_document.get("payment_result"),
        "itemsPrice": round(safe_float(order_document.get("items_price")), 2),
        "totalPrice": round(safe_float(order_document.get("total_price")), 2),
        "isPaid": bool(order_document.get("is_paid")),
        "paidAt": iso(order_document.get("paid_at")),
        "isDelivered": bool(order_document.get("is_delivered")),
        "deliveredAt": iso(order_document.get("delivered_at")),
        "status": order_document.get("status", "pending"),
        "trackingNumber": order_document.get("tracking_number"),
        "notes": order_document.get("notes", ""),
        "stripePaymentIntentId": order_document.get("stripe_payment_intent_id"),
        "refundId": order_document.get("refund_id"),
        "refundAmount": order_document.get("refund_amount"),
        "createdAt": iso(order_document.get("created_at")),
        "updatedAt": iso(order_document.get("updated_at")),
    }


def find_order(db, order_id):
    object_id = parse_object_id(order_id)
    return db.orders.find_one({"_id": object_id}) if object_id else None


def _user_names(db, user_ids) -> Dict[object, Dict[str, str]]:
    return {
        user["_id"]: {
            "_id": str(user["_id"]),
            "name": user.get("name", ""),
            "email": user.get("email", ""),
        }
        for user in db.users.find({"_id": {"$in": list(set(user_ids))}}, {"name": 1, "email": 1})
    }


def _validate_order_payload(payload):
    errors: List[Dict[str, str]] = []
    raw_address = first_value(payload, "shippingAddress", "shipping_address")
    if not isinstance(raw_address, dict):
        raw_address = {}

    shipping_address: Dict[str, str] = {}
    for camel, snake, message in SHIPPING_FIELDS:
        value = str(first_value(raw_address, camel, snake) or "").strip()
        if not value:
            errors.append({"field": f"shippingAddress.{camel}", "message": message})
        shipping_address[snake] = value
    for camel, snake in (("postalCode", "postal_code"), ("phone", "phone")):
        value = first_value(raw_address, camel, snake)
        if value is not None:
            shipping_address[snake] = str(value).strip()

    payment_method = str(first_value(payload, "paymentMethod", "payment_method") or "").strip()
    if payment_method not in PAYMENT_METHODS:
        errors.append({"field": "paymentMethod", "message": "Invalid payment method"})

    notes = str(payload.get("notes") or "").strip()
    if len(notes) > 500:
        errors.append({"field": "notes", "message": "Notes cannot exceed 500 characters"})

    return shipping_address, payment_method, notes, errors


def notify_order_email(app, recipient_email, order_document, customer_name) -> None:
    sent, error = send_order_email(recipient_email, order_document, customer_name)
    if not sent:
        app.logger.warning(
            "Order email for %s could not be sent: %s",
            order_document.get("order_number") or order_document.get("_id"),
            error,
        )


def register_routes(app, db):
    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        current_user, error = get_current_user(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        shipping_address, payment_method, notes, errors = _validate_order_payload(payload)
        if errors:
            return validation_failed(errors)

        cart_document = load_cart(db, current_user["_id"])
        cart_items = (cart_document or {}).get("items") or []
        if not cart_items:
            return jsonify({"message": "Cart is empty"}), 400

        order_items = []
        for item in cart_items:
            product_document = db.products.find_one({"_id": item["product_id"]})
            quantity = int(item.get("quantity") or 0)
            if not product_document or product_document.get("is_active") is False:
                name = (product_document or {}).get("name") or str(item["product_id"])
                return jsonify({"message": f"Product {name} is no longer available"}), 400

            stock = int(product_document.get("stock") or 0)
            if stock < quantity:
                return (
                    jsonify(
                        {
                            "message": f"Insufficient stock for {product_document.get('name')}. Available: {stock}"
                        }
                    ),
                    400,
                )

            order_items.append(
                {
                    "product_id": product_document["_id"],
                    "name": product_document.get("name", ""),
                    "image": primary_image_url(product_document),
                    "price": round(safe_float(product_document.get("price")), 2),
                    "quantity": quantity,
                }
            )

        taken = []
        for item in order_items:
            if not take_stock(db, item["product_id"], item["quantity"]):
                for product_id, quantity in taken:
                    restore_stock(db, product_id, quantity, purchases=1)
                app.logger.warning(
                    "Stock for %s changed while placing an order for %s",
                    item["product_id"],
                    current_user.get("email"),
                )
                return (
                    jsonify({"message": f"Insufficient stock for {item['name']}"}),
                    400,
                )
            taken.append((item["product_id"], item["quantity"]))

        items_price = round(sum(item["price"] * item["quantity"] for item in order_items), 2)
        timestamp = datetime.utcnow()
        order_document = {
            "order_number": generate_order_number(),
            "user_id": current_user["_id"],
            "order_items": order_items,
            "shipping_address": shipping_address,
            "payment_method": payment_method,
            "payment_result": None,
            "items_price": items_price,
            "total_price": items_price,
            "is_paid": False,
            "paid_at": None,
            "is_delivered": False,
            "delivered_at": None,
            "status": "pending",
            "tracking_number": None,
            "notes": notes,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        insert_result = db.orders.insert_one(order_document)
        order_document["_id"] = insert_result.inserted_id

        cart_document["items"] = []
        save_cart(db, cart_document)

        create_notification(
            db,
            current_user["_id"],
            "order_placed",
            "Order placed",
            f"Your order {order_document['order_number']} has been placed successfully.",
            data={"orderId": str(order_document["_id"]), "total": items_price},
            action_url=f"/orders/{order_document['_id']}",
        )
        notify_order_email(app, current_user.get("email"), order_document, current_user.get("name"))

        app.logger.info(
            "Order %s created for %s", order_document["order_number"], current_user.get("email")
        )
        return (
            jsonify(
                {"message": "Order created successfully", "order": serialize_order(order_document)}
            ),
            201,
        )

    @app.route("/api/orders/my-orders", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        current_user, error = get_current_user(db)
        if error:
            return error

        page, limit, errors = read_pagination(10)
        if errors:
            return validation_failed(errors)

        query = {"user_id": current_user["_id"]}
        order_docs = (
            db.orders.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total = db.orders.count_documents(query)
        return jsonify(
            {
                "orders": [serialize_order(document) for document in order_docs],
                "pagination": build_pagination(page, limit, total, "totalOrders"),
            }
        )

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        current_user, error = get_current_user(db)
        if error:
            return error

        order_document = find_order(db, order_id)
        if not order_document:
            return jsonify({"message": "Order not found"}), 404
        if order_document.get("user_id") != current_user["_id"] and not is_admin(current_user):
            return jsonify({"message": "Not authorized to view this order"}), 403

        owner = _user_names(db, [order_document["user_id"]]).get(order_document["user_id"])
        return jsonify({"order": serialize_order(order_document, user=owner)})

    @app.route("/api/orders/<order_id>/status", methods=["PUT"])
    @jwt_required()
    def update_order_status(order_id: str):
        _, error = require_admin(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        status = str(payload.get("status") or "").strip()
        if status not in ORDER_STATUSES:
            return validation_failed([{"field": "status", "message": "Invalid status"}])

        order_document = find_order(db, order_id)
        if not order_document:
            return jsonify({"message": "Order not found"}), 404

        previous_status = order_document.get("status")
        changes: Dict[str, object] = {"status": status, "updated_at": datetime.utcnow()}
        if status == "delivered":
            changes["is_delivered"] = True
            changes["delivered_at"] = changes["updated_at"]
        tracking_number = first_value(payload, "trackingNumber", "tracking_number")
        if tracking_number:
            changes["tracking_number"] = str(tracking_number).strip()

        db.orders.update_one({"_id": order_document["_id"]}, {"$set": changes})
        order_document.update(changes)

        if previous_status != status or status == "delivered":
            customer = db.users.find_one({"_id": order_document["user_id"]}) or {}
            notify_order_email(app, customer.get("email"), order_document, customer.get("name"))

            notification_type = STATUS_NOTIFICATION_TYPES.get(status)
            if notification_type:
                create_notification(
                    db,
                    order_document["user_id"],
                    notification_type,
                    f"Order {status}",
                    f"Your order {order_document.get('order_number')} is now {status}.",
                    data={"orderId": str(order_document["_id"]), "status": status},
                    action_url=f"/orders/{order_document['_id']}",
                )

        return jsonify(
            {
                "message": f'Order status updated to "{status}" successfully',
                "order": serialize_order(order_document),
            }
        )

    @app.route("/api/orders/<order_id>/cancel", methods=["PUT"])
    @jwt_required()
    def cancel_order(order_id: str):
        current_user, error = get_current_user(db)
        if error:
            return error

        order_document = find_order(db, order_id)
        if not order_document:
            return jsonify({"message": "Order not found"}), 404
        if order_document.get("user_id") != current_user["_id"]:
            return jsonify({"message": "Not authorized to cancel this order"}), 403

        changes = {"status": "cancelled", "updated_at": datetime.utcnow()}
        result = db.orders.update_one(
            {"_id": order_document["_id"], "status": {"$nin": ["delivered", "cancelled"]}},
            {"$set": changes},
        )
        if not result.modified_count:
            return jsonify({"message": "Order cannot be cancelled"}), 400
        order_document.update(changes)

        for item in order_document.get("order_items") or []:
            restore_stock(db, item["product_id"], int(item.get("quantity") or 0))

        create_notification(
            db,
            current_user["_id"],
            "order_cancelled",
            "Order cancelled",
            f"Your order {order_document.get('order_number')} has been cancelled.",
            data={"orderId": str(order_document["_id"])},
        )
        return jsonify(
            {"message": "Order cancelled successfully", "order": serialize_order(order_document)}
        )

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_all_orders():
        _, error = require_admin(db)
        if error:
            return error

        page, limit, errors = read_pagination(20)
        if errors:
            return validation_failed(errors)

        query: Dict[str, object] = {}
        if request.args.get("status"):
            query["status"] = request.args["status"]
        if request.args.get("paymentMethod"):
            query["payment_method"] = request.args["paymentMethod"]

        order_docs = list(
            db.orders.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total = db.orders.count_documents(query)
        users = _user_names(db, [document["user_id"] for document in order_docs])

        stats = next(
            iter(
                db.orders.aggregate(
                    [
                        {
                            "$group": {
                                "_id": None,
                                "totalOrders": {"$sum": 1},
                                "totalRevenue": {"$sum": "$total_price"},
                                "averageOrderValue": {"$avg": "$total_price"},
                            }
                        }
                    ]
                )
            ),
            None,
        )

        return jsonify(
            {
                "orders": [
                    serialize_order(document, user=users.get(document["user_id"]))
                    for document in order_docs
                ],
                "pagination": build_pagination(page, limit, total, "totalOrders"),
                "stats": {
                    "totalOrders": int(stats["totalOrders"]) if stats else 0,
                    "totalRevenue": round(safe_float(stats["totalRevenue"]), 2) if stats else 0,
                    "averageOrderValue": round(safe_float(stats["averageOrderValue"]), 2)
                    if stats
                    else 0,
                },
            }
        )

    @app.route("/api/orders", methods=["DELETE"])
    @jwt_required()
    def delete_all_orders():
        current_user, error = require_admin(db)
        if error:
            return error

        result = db.orders.delete_many({})
        if not result.deleted_count:
            return jsonify({"message": "No orders to delete"}), 404

        app.logger.warning(
            "%s deleted all %s orders", current_user.get("email"), result.deleted_count
        )
        return jsonify({"message": "All orders deleted!", "deletedCount": result.deleted_count})
