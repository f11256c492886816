import hashlib
import hmac
import json
import time
from datetime import datetime
from typing import Dict, Optional

import requests
from flask import current_app, jsonify, request
from flask_jwt_extended import jwt_required

from .helpers import first_value, iso, parse_number, parse_object_id, safe_float, validation_failed
from .notifications import create_notification
from .orders import find_order, mark_order_paid, serialize_order
from .security import get_current_user, is_admin

WEBHOOK_TOLERANCE_SECONDS = 300
REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


class PaymentProviderError(Exception):
    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class WebhookSignatureError(ValueError):
    pass


def _stripe_request(method: str, path: str, data: Optional[Dict[str, object]] = None):
    secret_key = (current_app.config.get("STRIPE_SECRET_KEY") or "").strip()
    if not secret_key:
        raise PaymentProviderError("Stripe is not configured.", status_code=500)

    url = f"{current_app.config['STRIPE_API_BASE'].rstrip('/')}/{path.lstrip('/')}"
    try:
        if method == "GET":
            response = requests.get(url, auth=(secret_key, ""), timeout=15)
        else:
            response = requests.post(url, data=data, auth=(secret_key, ""), timeout=15)
    except requests.RequestException as exc:
        current_app.logger.error("Stripe request to %s failed: %s", path, exc)
        raise PaymentProviderError("Unable to reach the payment provider.") from exc

    try:
        body = response.json()
    except ValueError:
        body = {}

    if response.status_code >= 400:
        provider_message = (body.get("error") or {}).get("message") or response.text
        current_app.logger.error(
            "Stripe %s %s returned %s: %s", method, path, response.status_code, provider_message
        )
        raise PaymentProviderError(provider_message or "Payment provider error.")
    return body


def create_payment_intent(amount_cents: int, metadata: Dict[str, str]):
    data: Dict[str, object] = {
        "amount": amount_cents,
        "currency": current_app.config["STRIPE_CURRENCY"],
        "automatic_payment_methods[enabled]": "true",
    }
    for key, value in metadata.items():
        data[f"metadata[{key}]"] = value
    return _stripe_request("POST", "payment_intents", data)


def retrieve_payment_intent(payment_intent_id: str):
    return _stripe_request("GET", f"payment_intents/{payment_intent_id}")


def create_refund(payment_intent_id: str, amount_cents: int, reason: str):
    return _stripe_request(
        "POST",
        "refunds",
        {"payment_intent": payment_intent_id, "amount": amount_cents, "reason": reason},
    )


def construct_webhook_event(payload: bytes, signature_header: Optional[str], secret: str):
    """Verify a ``Stripe-Signature`` header and decode the event body."""
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not signature_header:
        raise WebhookSignatureError("Missing Stripe-Signature header")

    timestamp = None
    signatures = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not signatures:
        raise WebhookSignatureError("Unable to extract timestamp and signatures from header")

    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("No signatures found matching the expected signature")

    try:
        age = time.time() - int(timestamp)
    except ValueError as exc:
        raise WebhookSignatureError("Invalid timestamp in signature header") from exc
    if abs(age) > WEBHOOK_TOLERANCE_SECONDS:
        raise WebhookSignatureError("Timestamp outside the tolerance zone")

    try:
        event = json.loads(payload.decode("utf-8"))
    except ValueError as exc:
        raise WebhookSignatureError("Invalid payload") from exc
    if not isinstance(event, dict):
        raise WebhookSignatureError("Invalid payload")
    return event


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


def provider_error_response(exc: PaymentProviderError):
    return jsonify({"message": exc.message}), exc.status_code


def register_routes(app, db):
    def load_owned_order(order_id, current_user, allow_admin=False):
        order_document = find_order(db, order_id)
        if not order_document:
            return None, (jsonify({"message": "Order not found"}), 404)
        owns = order_document.get("user_id") == current_user["_id"]
        if not owns and not (allow_admin and is_admin(current_user)):
            return None, (jsonify({"message": "Not authorized for this order"}), 403)
        return order_document, None

    @app.route("/api/payment/create-intent", methods=["POST"])
    @jwt_required()
    def create_intent():
        current_user, error = get_current_user(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        order_id = first_value(payload, "orderId", "order_id")
        if parse_object_id(order_id) is None:
            return validation_failed([{"field": "orderId", "message": "Valid order ID is required"}])

        order_document, error = load_owned_order(order_id, current_user)
        if error:
            return error
        if order_document.get("is_paid"):
            return jsonify({"message": "Order is already paid"}), 400

        try:
            intent = create_payment_intent(
                to_cents(safe_float(order_document.get("total_price"))),
                {"orderId": str(order_document["_id"]), "userId": str(current_user["_id"])},
            )
        except PaymentProviderError as exc:
            return provider_error_response(exc)

        db.orders.update_one(
            {"_id": order_document["_id"]},
            {"$set": {"stripe_payment_intent_id": intent.get("id"), "updated_at": datetime.utcnow()}},
        )
        return jsonify(
            {"clientSecret": intent.get("client_secret"), "paymentIntentId": intent.get("id")}
        )

    @app.route("/api/payment/confirm", methods=["POST"])
    @jwt_required()
    def confirm_payment():
        current_user, error = get_current_user(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        payment_intent_id = str(
            first_value(payload, "paymentIntentId", "payment_intent_id") or ""
        ).strip()
        order_id = first_value(payload, "orderId", "order_id")
        errors = []
        if not payment_intent_id:
            errors.append(
                {"field": "paymentIntentId", "message": "Payment intent ID is required"}
            )
        if parse_object_id(order_id) is None:
            errors.append({"field": "orderId", "message": "Valid order ID is required"})
        if errors:
            return validation_failed(errors)

        order_document, error = load_owned_order(order_id, current_user)
        if error:
            return error

        try:
            intent = retrieve_payment_intent(payment_intent_id)
        except PaymentProviderError as exc:
            return provider_error_response(exc)

        if intent.get("status") != "succeeded":
            return (
                jsonify({"message": "Payment not completed", "status": intent.get("status")}),
                400,
            )

        metadata = intent.get("metadata") or {}
        belongs_to_order = bool(intent.get("id")) and (
            intent.get("id") == order_document.get("stripe_payment_intent_id")
            or metadata.get("orderId") == str(order_document["_id"])
        )
        expected_amount = to_cents(safe_float(order_document.get("total_price")))
        if not belongs_to_order or intent.get("amount") != expected_amount:
            app.logger.warning(
                "Payment intent %s does not match order %s",
                intent.get("id"),
                order_document.get("order_number"),
            )
            return jsonify({"message": "Payment does not match this order"}), 400

        mark_order_paid(
            db,
            order_document,
            {
                "id": intent.get("id"),
                "status": intent.get("status"),
                "update_time": iso(datetime.utcnow()),
                "email_address": current_user.get("email"),
            },
        )
        order_document = find_order(db, order_document["_id"])
        return jsonify(
            {"message": "Payment confirmed successfully", "order": serialize_order(order_document)}
        )

    @app.route("/api/payment/config", methods=["GET"])
    def payment_config():
        return jsonify({"publishableKey": app.config.get("STRIPE_PUBLISHABLE_KEY") or ""})

    @app.route("/api/payment/webhook", methods=["POST"])
    def stripe_webhook():
        try:
            event = construct_webhook_event(
                request.get_data(),
                request.headers.get("Stripe-Signature"),
                app.config.get("STRIPE_WEBHOOK_SECRET") or "",
            )
        except WebhookSignatureError as exc:
            app.logger.warning("Rejected Stripe webhook: %s", exc)
            return jsonify({"message": f"Webhook Error: {exc}"}), 400

        event_type = event.get("type")
        intent = (event.get("data") or {}).get("object") or {}
        order_document = (
            db.orders.find_one({"stripe_payment_intent_id": intent.get("id")})
            if intent.get("id")
            else None
        )

        if event_type == "payment_intent.succeeded":
            if not order_document:
                app.logger.warning("No order matches payment intent %s", intent.get("id"))
            elif not order_document.get("is_paid"):
                paid = mark_order_paid(
                    db,
                    order_document,
                    {
                        "id": intent.get("id"),
                        "status": intent.get("status"),
                        "update_time": iso(datetime.utcnow()),
                        "email_address": intent.get("receipt_email"),
                    },
                )
                if paid:
                    app.logger.info(
                        "Order %s marked paid from webhook", order_document.get("order_number")
                    )
        elif event_type == "payment_intent.payment_failed":
            if order_document:
                failure = intent.get("last_payment_error") or {}
                create_notification(
                    db,
                    order_document["user_id"],
                    "payment_failed",
                    "Payment failed",
                    f"The payment for order {order_document.get('order_number')} did not go through.",
                    data={
                        "orderId": str(order_document["_id"]),
                        "reason": failure.get("message", ""),
                    },
                    priority="high",
                    action_url=f"/orders/{order_document['_id']}",
                )
            else:
                app.logger.warning("No order matches failed payment intent %s", intent.get("id"))

        return jsonify({"received": True})

    @app.route("/api/payment/refund", methods=["POST"])
    @jwt_required()
    def refund_payment():
        current_user, error = get_current_user(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        order_id = first_value(payload, "orderId", "order_id")
        errors = []
        if parse_object_id(order_id) is None:
            errors.append({"field": "orderId", "message": "Valid order ID is required"})
        amount = None
        if payload.get("amount") is not None:
            amount = parse_number(payload.get("amount"))
            if amount is None or amount <= 0:
                errors.append({"field": "amount", "message": "Amount must be a positive number"})
        reason = str(payload.get("reason") or "requested_by_customer").strip()
        if reason not in REFUND_REASONS:
            errors.append({"field": "reason", "message": "Invalid refund reason"})
        if errors:
            return validation_failed(errors)

        order_document, error = load_owned_order(order_id, current_user, allow_admin=True)
        if error:
            return error
        if not order_document.get("is_paid") or not order_document.get("stripe_payment_intent_id"):
            return (
                jsonify({"message": "Order is not paid or payment intent not found"}),
                400,
            )

        amount_cents = to_cents(
            amount if amount is not None else safe_float(order_document.get("total_price"))
        )
        try:
            refund = create_refund(
                order_document["stripe_payment_intent_id"], amount_cents, reason
            )
        except PaymentProviderError as exc:
            return provider_error_response(exc)

        changes = {
            "status": "refunded",
            "refund_id": refund.get("id"),
            "refund_amount": amount_cents / 100,
            "updated_at": datetime.utcnow(),
        }
        db.orders.update_one({"_id": order_document["_id"]}, {"$set": changes})
        order_document.update(changes)

        app.logger.info(
            "Refunded %.2f for order %s", amount_cents / 100, order_document.get("order_number")
        )
        return jsonify(
            {
                "message": "Refund processed successfully",
                "refund": {
                    "id": refund.get("id"),
                    "amount": safe_float(refund.get("amount"), amount_cents) / 100,
                    "status": refund.get("status"),
                },
                "order": serialize_order(order_document),
            }
        )

    @app.route("/api/payment/history", methods=["GET"])
    @jwt_required()
    def payment_history():
        current_user, error = get_current_user(db)
        if error:
            return error

        order_docs = (
            db.orders.find(
                {"user_id": current_user["_id"], "is_paid": True},
                {"total_price": 1, "paid_at": 1, "payment_method": 1, "status": 1},
            )
            .sort([("paid_at", -1), ("_id", -1)])
            .limit(20)
        )
        return jsonify(
            {
                "payments": [
                    {
                        "_id": str(document["_id"]),
                        "totalPrice": round(safe_float(document.get("total_price")), 2),
                        "paidAt": iso(document.get("paid_at")),
                        "paymentMethod": document.get("payment_method"),
                        "status": document.get("status"),
                    }
                    for document in order_docs
                ]
            }
        )
