from datetime import datetime
from typing import Dict, List, Optional, Tuple

import resend
from flask import current_app, render_template

from .helpers import normalize_email, safe_float, safe_positive_int

ORDER_STATUS_MESSAGES = {
    "pending": {
        "title": "Order Received",
        "message": "Your order has been placed and is awaiting processing.",
        "color": "#FFA500",
    },
    "processing": {
        "title": "Order Processing",
        "message": "We are preparing your order. Sit tight!",
        "color": "#17a2b8",
    },
    "shipped": {
        "title": "Order Shipped",
        "message": "Your order is on the way.",
        "color": "#007bff",
    },
    "delivered": {
        "title": "Order Delivered",
        "message": "Your order has been successfully delivered. Enjoy!",
        "color": "#28a745",
    },
    "cancelled": {
        "title": "Order Cancelled",
        "message": "Your order has been cancelled. Contact support if needed.",
        "color": "#DC3545",
    },
    "refunded": {
        "title": "Order Refunded",
        "message": "Your order has been refunded. Check your account for details.",
        "color": "#6C757D",
    },
}


def deliver_email(payload: Dict[str, object]) -> Tuple[bool, Optional[str]]:
    """Send one message through Resend with the configured key.

    Returns ``(sent, error)`` and restores the previous ``resend.api_key``.
    """
    api_key = (current_app.config.get("RESEND_API_KEY") or "").strip()
    if not api_key:
        return False, "Email delivery is not configured."

    previous_key = getattr(resend, "api_key", None)
    resend.api_key = api_key
    try:
        sent = resend.Emails.send(payload)
    except Exception as exc:
        return False, f"Resend rejected the message: {exc}"
    finally:
        resend.api_key = previous_key

    message_id = sent.get("id") if isinstance(sent, dict) else None
    if not message_id:
        return False, f"Unexpected Resend response: {sent!r}"
    return True, None


def _sender() -> str:
    return current_app.config["EMAIL_FROM"]


def send_otp_email(recipient_email: str, otp: str, name: Optional[str]):
    expiration_minutes = current_app.config["OTP_EXPIRATION_MINUTES"]
    html_body = render_template(
        "emails/otp.html",
        otp=otp,
        recipient_name=name or "there",
        expiration_minutes=expiration_minutes,
    )
    text_body = (
        f"Your verification code is {otp}. "
        f"It is valid for {expiration_minutes} minutes."
    )
    payload: Dict[str, object] = {
        "from": _sender(),
        "to": [recipient_email],
        "subject": "Verify Your Email Address",
        "html": html_body,
        "text": text_body,
    }
    return deliver_email(payload)


def send_password_reset_email(recipient_email: str, reset_url: str, name: Optional[str]):
    expiration_minutes = current_app.config["PASSWORD_RESET_EXPIRATION_MINUTES"]
    html_body = render_template(
        "emails/password_reset.html",
        reset_url=reset_url,
        recipient_name=name or "there",
        expiration_minutes=expiration_minutes,
    )
    text_body = (
        f"Reset your password within {expiration_minutes} minutes: {reset_url}"
    )
    payload: Dict[str, object] = {
        "from": _sender(),
        "to": [recipient_email],
        "subject": "Password Reset Request",
        "html": html_body,
        "text": text_body,
    }
    return deliver_email(payload)


def normalize_order_email_items(items: List[Dict]) -> List[Dict]:
    normalized_items: List[Dict] = []
    for entry in items or []:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("name") or "").strip() or "Item"
        quantity = safe_positive_int(entry.get("quantity"), 1) or 1
        price_value = round(safe_float(entry.get("price"), 0.0), 2)
        normalized_items.append(
            {
                "name": name,
                "quantity": quantity,
                "price": price_value,
                "line_total": round(price_value * quantity, 2),
            }
        )
    return normalized_items


def send_order_email(
    recipient_email: str, order_document: Dict[str, object], customer_name: Optional[str]
) -> Tuple[bool, Optional[str]]:
    normalized_email = normalize_email(recipient_email)
    if not normalized_email:
        return False, "Missing customer email for the order update."

    status = str(order_document.get("status") or "pending")
    status_content = dict(ORDER_STATUS_MESSAGES.get(status) or ORDER_STATUS_MESSAGES["pending"])
    tracking_number = order_document.get("tracking_number")
    if status == "shipped" and tracking_number:
        status_content["message"] = (
            f"Your order is on the way (Tracking No: {tracking_number})."
        )

    items = normalize_order_email_items(order_document.get("order_items"))
    total_value = round(safe_float(order_document.get("total_price"), 0.0), 2)
    order_identifier = str(
        order_document.get("order_number") or order_document.get("_id") or ""
    )
    created_at = order_document.get("created_at")
    if not isinstance(created_at, datetime):
        created_at = datetime.utcnow()

    html_body = render_template(
        "emails/order_status.html",
        order_id=order_identifier,
        status=status_content,
        items=items,
        total=total_value,
        customer_name=customer_name or "Customer",
        created_at=created_at,
    )
    item_lines = ", ".join(
        f"{item['name']} x{item['quantity']} (${item['price']:.2f})" for item in items
    )
    text_body = (
        f"{status_content['title']}: {status_content['message']}\n"
        f"Order {order_identifier} placed {created_at.strftime('%Y-%m-%d %H:%M')}.\n"
        f"Items: {item_lines}.\n"
        f"Total: ${total_value:.2f}."
    )

    payload: Dict[str, object] = {
        "from": _sender(),
        "to": [normalized_email],
        "subject": f"Order #{order_identifier} - {status_content['title']}",
        "html": html_body,
        "text": text_body,
    }
    return deliver_email(payload)
