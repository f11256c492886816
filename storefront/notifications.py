from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

from flask import current_app, jsonify, request
from flask_jwt_extended import jwt_required
from pymongo.errors import PyMongoError

from .helpers import (
    first_value,
    iso,
    parse_int,
    parse_iso_date,
    parse_object_id,
    read_pagination,
    validation_failed,
)
from .security import get_current_user, require_admin

NOTIFICATION_TYPES = (
    "order_placed",
    "order_confirmed",
    "order_shipped",
    "order_delivered",
    "order_cancelled",
    "payment_received",
    "payment_failed",
    "product_review",
    "low_stock",
    "new_product",
    "price_drop",
    "promotion",
    "account_update",
    "welcome",
    "system",
)
NOTIFICATION_PRIORITIES = ("low", "medium", "high", "urgent")
NOTIFICATION_CHANNELS = ("in_app", "email", "push", "sms")

# Days until a notification of this type lapses when no expiry is supplied.
DEFAULT_EXPIRY_DAYS = {"promotion": 7, "system": 30}


def build_notification_document(
    recipient,
    notification_type: str,
    title: str,
    message: str,
    sender=None,
    data: Optional[Dict] = None,
    priority: str = "medium",
    channel: Optional[List[str]] = None,
    action_url: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> Dict[str, object]:
    created_at = datetime.utcnow()
    if expires_at is None and notification_type in DEFAULT_EXPIRY_DAYS:
        expires_at = created_at + timedelta(days=DEFAULT_EXPIRY_DAYS[notification_type])

    document: Dict[str, object] = {
        "recipient": recipient,
        "type": notification_type,
        "title": title,
        "message": message,
        "data": data or {},
        "is_read": False,
        "read_at": None,
        "priority": priority or "medium",
        "channel": list(channel or ["in_app"]),
        "created_at": created_at,
    }
    if sender is not None:
        document["sender"] = sender
    if action_url:
        document["action_url"] = action_url
    if expires_at is not None:
        document["expires_at"] = expires_at
    return document


def create_notification(db, recipient, notification_type: str, title: str, message: str, **options):
    """Insert an in-app notification. Failures are logged, never raised."""
    document = build_notification_document(
        recipient, notification_type, title, message, **options
    )
    try:
        result = db.notifications.insert_one(document)
    except PyMongoError as exc:
        current_app.logger.warning(
            "Unable to record %s notification for %s: %s", notification_type, recipient, exc
        )
        return None
    document["_id"] = result.inserted_id
    return document


def serialize_notification(document, sender_names: Optional[Dict[str, str]] = None):
    if not document:
        return {}
    sender_id = document.get("sender")
    sender = None
    if sender_id is not None:
        sender = {"_id": str(sender_id)}
        if sender_names is not None:
            sender["name"] = sender_names.get(str(sender_id), "")
    return {
        "_id": str(document.get("_id")),
        "recipient": str(document.get("recipient")),
        "sender": sender,
        "type": document.get("type"),
        "title": document.get("title", ""),
        "message": document.get("message", ""),
        "data": document.get("data") or {},
        "isRead": bool(document.get("is_read")),
        "readAt": iso(document.get("read_at")),
        "priority": document.get("priority", "medium"),
        "channel": document.get("channel") or ["in_app"],
        "actionUrl": document.get("action_url"),
        "expiresAt": iso(document.get("expires_at")),
        "createdAt": iso(document.get("created_at")),
    }


def _validate_id_list(payload) -> Tuple[List, List[Dict[str, str]]]:
    raw_ids = first_value(payload, "notificationIds", "notification_ids")
    if not isinstance(raw_ids, list) or not raw_ids:
        return [], [
            {
                "field": "notificationIds",
                "message": "notificationIds must be a non-empty array",
            }
        ]
    object_ids = []
    for raw in raw_ids:
        object_id = parse_object_id(raw) if isinstance(raw, str) and len(raw) == 24 else None
        if object_id is None:
            return [], [
                {
                    "field": "notificationIds",
                    "message": "All notification IDs must be valid ObjectIds",
                }
            ]
        object_ids.append(object_id)
    return object_ids, []


def _is_valid_url(value: str) -> bool:
    parsed = urlparse(str(value or "").strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def register_routes(app, db):
    @app.route("/api/notifications", methods=["GET"])
    @jwt_required()
    def list_notifications():
        current_user, error = get_current_user(db)
        if error:
            return error

        page, limit, errors = read_pagination(20)
        if errors:
            return validation_failed(errors, success=False)

        query: Dict[str, object] = {"recipient": current_user["_id"]}
        if request.args.get("unreadOnly") == "true":
            query["is_read"] = False
        notification_type = request.args.get("type")
        if notification_type:
            query["type"] = notification_type
        priority = request.args.get("priority")
        if priority:
            query["priority"] = priority

        documents = list(
            db.notifications.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        sender_ids = list({doc["sender"] for doc in documents if doc.get("sender")})
        sender_names = {
            str(user["_id"]): user.get("name", "")
            for user in db.users.find({"_id": {"$in": sender_ids}}, {"name": 1})
        } if sender_ids else {}

        unread_count = db.notifications.count_documents(
            {"recipient": current_user["_id"], "is_read": False}
        )
        return jsonify(
            {
                "success": True,
                "notifications": [
                    serialize_notification(doc, sender_names) for doc in documents
                ],
                "unreadCount": unread_count,
                "pagination": {
                    "currentPage": page,
                    "limit": limit,
                    "hasMore": len(documents) == limit,
                },
            }
        )

    @app.route("/api/notifications/unread-count", methods=["GET"])
    @jwt_required()
    def notification_unread_count():
        current_user, error = get_current_user(db)
        if error:
            return error
        unread_count = db.notifications.count_documents(
            {"recipient": current_user["_id"], "is_read": False}
        )
        return jsonify({"success": True, "unreadCount": unread_count})

    @app.route("/api/notifications/<notification_id>/read", methods=["PATCH"])
    @jwt_required()
    def mark_notification_read(notification_id: str):
        current_user, error = get_current_user(db)
        if error:
            return error

        object_id = parse_object_id(notification_id)
        document = (
            db.notifications.find_one({"_id": object_id, "recipient": current_user["_id"]})
            if object_id
            else None
        )
        if not document:
            return jsonify({"success": False, "message": "Notification not found"}), 404

        if not document.get("is_read"):
            read_at = datetime.utcnow()
            db.notifications.update_one(
                {"_id": document["_id"]},
                {"$set": {"is_read": True, "read_at": read_at}},
            )
            document.update({"is_read": True, "read_at": read_at})

        return jsonify(
            {
                "success": True,
                "message": "Notification marked as read",
                "notification": serialize_notification(document),
            }
        )

    @app.route("/api/notifications/read", methods=["PATCH"])
    @jwt_required()
    def mark_notifications_read():
        current_user, error = get_current_user(db)
        if error:
            return error

        object_ids, errors = _validate_id_list(request.get_json(silent=True) or {})
        if errors:
            return validation_failed(errors, success=False)

        result = db.notifications.update_many(
            {
                "_id": {"$in": object_ids},
                "recipient": current_user["_id"],
                "is_read": False,
            },
            {"$set": {"is_read": True, "read_at": datetime.utcnow()}},
        )
        return jsonify(
            {
                "success": True,
                "message": f"{result.modified_count} notifications marked as read",
                "modifiedCount": result.modified_count,
            }
        )

    @app.route("/api/notifications/read-all", methods=["PATCH"])
    @jwt_required()
    def mark_all_notifications_read():
        current_user, error = get_current_user(db)
        if error:
            return error

        result = db.notifications.update_many(
            {"recipient": current_user["_id"], "is_read": False},
            {"$set": {"is_read": True, "read_at": datetime.utcnow()}},
        )
        return jsonify(
            {
                "success": True,
                "message": f"{result.modified_count} notifications marked as read",
                "modifiedCount": result.modified_count,
            }
        )

    @app.route("/api/notifications/<notification_id>", methods=["DELETE"])
    @jwt_required()
    def delete_notification(notification_id: str):
        current_user, error = get_current_user(db)
        if error:
            return error

        object_id = parse_object_id(notification_id)
        deleted = 0
        if object_id:
            deleted = db.notifications.delete_one(
                {"_id": object_id, "recipient": current_user["_id"]}
            ).deleted_count
        if not deleted:
            return jsonify({"success": False, "message": "Notification not found"}), 404

        return jsonify({"success": True, "message": "Notification deleted successfully"})

    @app.route("/api/notifications", methods=["DELETE"])
    @jwt_required()
    def delete_notifications():
        current_user, error = get_current_user(db)
        if error:
            return error

        object_ids, errors = _validate_id_list(request.get_json(silent=True) or {})
        if errors:
            return validation_failed(errors, success=False)

        result = db.notifications.delete_many(
            {"_id": {"$in": object_ids}, "recipient": current_user["_id"]}
        )
        return jsonify(
            {
                "success": True,
                "message": f"{result.deleted_count} notifications deleted",
                "deletedCount": result.deleted_count,
            }
        )

    @app.route("/api/notifications/admin/create", methods=["POST"])
    @jwt_required()
    def admin_create_notification():
        admin_user, error = require_admin(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        errors: List[Dict[str, str]] = []

        recipients = payload.get("recipients")
        recipient_ids: List = []
        if recipients == "all":
            recipient_ids = [
                user["_id"]
                for user in db.users.find({"is_active": {"$ne": False}}, {"_id": 1})
            ]
        elif isinstance(recipients, list) and recipients:
            recipient_ids = [parse_object_id(value) for value in recipients]
            if not all(recipient_ids):
                errors.append(
                    {"field": "recipients", "message": "Recipients contain an invalid user ID"}
                )
        elif isinstance(recipients, str) and len(recipients) == 24 and parse_object_id(recipients):
            recipient_ids = [parse_object_id(recipients)]
        else:
            errors.append(
                {
                    "field": "recipients",
                    "message": "Recipients must be 'all', an array of user IDs, or a single user ID",
                }
            )

        notification_type = payload.get("type")
        if notification_type not in NOTIFICATION_TYPES:
            errors.append({"field": "type", "message": "Invalid notification type"})

        title = str(payload.get("title") or "").strip()
        if not 1 <= len(title) <= 100:
            errors.append(
                {"field": "title", "message": "Title must be between 1 and 100 characters"}
            )
        message = str(payload.get("message") or "").strip()
        if not 1 <= len(message) <= 500:
            errors.append(
                {"field": "message", "message": "Message must be between 1 and 500 characters"}
            )

        priority = payload.get("priority") or "medium"
        if priority not in NOTIFICATION_PRIORITIES:
            errors.append({"field": "priority", "message": "Invalid priority level"})

        channel = payload.get("channel")
        if channel is not None and (
            not isinstance(channel, list)
            or not all(entry in NOTIFICATION_CHANNELS for entry in channel)
        ):
            errors.append({"field": "channel", "message": "Invalid notification channel"})

        action_url = first_value(payload, "actionUrl", "action_url")
        if action_url is not None and not _is_valid_url(action_url):
            errors.append({"field": "actionUrl", "message": "Action URL must be a valid URL"})

        raw_expires_at = first_value(payload, "expiresAt", "expires_at")
        expires_at = None
        if raw_expires_at is not None:
            expires_at = parse_iso_date(raw_expires_at)
            if expires_at is None:
                errors.append(
                    {
                        "field": "expiresAt",
                        "message": "Expiration date must be a valid ISO 8601 date",
                    }
                )

        if errors:
            return validation_failed(errors, success=False)

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        documents = [
            build_notification_document(
                recipient_id,
                notification_type,
                title,
                message,
                sender=admin_user["_id"],
                data=data,
                priority=priority,
                channel=channel,
                action_url=action_url,
                expires_at=expires_at,
            )
            for recipient_id in recipient_ids
        ]
        if documents:
            result = db.notifications.insert_many(documents)
            for document, inserted_id in zip(documents, result.inserted_ids):
                document["_id"] = inserted_id

        serialized = [serialize_notification(document) for document in documents]
        return (
            jsonify(
                {
                    "success": True,
                    "message": "Notification(s) created successfully",
                    "notifications": serialized
                    if isinstance(recipients, list) or recipients == "all"
                    else (serialized[0] if serialized else None),
                }
            ),
            201,
        )

    @app.route("/api/notifications/admin/stats", methods=["GET"])
    @jwt_required()
    def admin_notification_stats():
        _, error = require_admin(db)
        if error:
            return error

        total = db.notifications.count_documents({})
        unread = db.notifications.count_documents({"is_read": False})
        read = total - unread

        def grouped_counts(field: str):
            rows = db.notifications.aggregate(
                [
                    {
                        "$group": {
                            "_id": {"key": f"${field}", "is_read": "$is_read"},
                            "count": {"$sum": 1},
                        }
                    }
                ]
            )
            folded: Dict[str, Dict[str, object]] = {}
            for row in rows:
                key = row["_id"].get("key")
                entry = folded.setdefault(key, {"_id": key, "count": 0, "unreadCount": 0})
                entry["count"] += row["count"]
                if row["_id"].get("is_read") is False:
                    entry["unreadCount"] += row["count"]
            return sorted(folded.values(), key=lambda entry: entry["count"], reverse=True)

        return jsonify(
            {
                "success": True,
                "stats": {
                    "totalNotifications": total,
                    "unreadNotifications": unread,
                    "readNotifications": read,
                    "readRate": (read / total) * 100 if total else 0,
                },
                "typeStats": grouped_counts("type"),
                "priorityStats": grouped_counts("priority"),
            }
        )

    @app.route("/api/notifications/admin/cleanup", methods=["DELETE"])
    @jwt_required()
    def admin_cleanup_notifications():
        _, error = require_admin(db)
        if error:
            return error

        days_old = parse_int(request.args.get("daysOld", 30))
        if days_old is None or days_old < 0:
            return validation_failed(
                [{"field": "daysOld", "message": "daysOld must be a non-negative integer"}],
                success=False,
            )

        cutoff = datetime.utcnow() - timedelta(days=days_old)
        result = db.notifications.delete_many(
            {"created_at": {"$lt": cutoff}, "is_read": True}
        )
        return jsonify(
            {
                "success": True,
                "message": f"{result.deleted_count} old notifications cleaned up",
                "deletedCount": result.deleted_count,
            }
        )
