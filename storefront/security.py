from datetime import timedelta
from typing import Dict, Optional

from flask import current_app, jsonify
from flask_jwt_extended import (
    create_access_token,
    get_jwt_identity,
    verify_jwt_in_request,
)

from .helpers import iso, normalize_email, parse_object_id

ALLOWED_USER_ROLES = {"user", "admin", "moderator", "seller"}


def normalize_role(value: Optional[str]) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in ALLOWED_USER_ROLES else "user"


def get_user_role(user_document) -> str:
    if not user_document:
        return "user"

    admin_email = normalize_email(current_app.config.get("DEFAULT_ADMIN_EMAIL"))
    if admin_email and normalize_email(user_document.get("email")) == admin_email:
        return "admin"

    return normalize_role(user_document.get("role"))


def issue_token(user_document, remember_me: bool = False) -> str:
    if remember_me:
        expires = timedelta(days=current_app.config["REMEMBER_ME_TOKEN_DAYS"])
    else:
        expires = current_app.config["JWT_ACCESS_TOKEN_EXPIRES"]
    return create_access_token(
        identity=str(user_document["_id"]), expires_delta=expires
    )


def get_current_user(db):
    """Load the user behind the verified JWT. Returns ``(user, error)``."""
    user_id = parse_object_id(get_jwt_identity())
    user_document = db.users.find_one({"_id": user_id}) if user_id else None
    if not user_document:
        return None, (jsonify({"message": "Not authorized, user not found"}), 401)
    if user_document.get("is_active") is False:
        return None, (jsonify({"message": "Account is deactivated"}), 401)
    return user_document, None


def get_optional_user(db):
    verify_jwt_in_request(optional=True)
    if not get_jwt_identity():
        return None
    user_document, _ = get_current_user(db)
    return user_document


def require_role(db, *roles: str):
    current_user, error = get_current_user(db)
    if error:
        return None, error

    allowed = {normalize_role(role) for role in roles if role}
    user_role = get_user_role(current_user)
    if user_role == "admin" or not allowed or user_role in allowed:
        return current_user, None

    return (
        None,
        (
            jsonify({"message": "You need additional permissions to perform this action."}),
            403,
        ),
    )


def require_admin(db):
    return require_role(db, "admin")


def is_admin(user_document) -> bool:
    return get_user_role(user_document) == "admin"


def serialize_user_summary(user_document) -> Dict[str, object]:
    if not user_document:
        return {}
    return {
        "_id": str(user_document.get("_id")),
        "name": user_document.get("name", "") or "",
        "email": user_document.get("email", "") or "",
        "role": get_user_role(user_document),
    }


def serialize_user_profile(user_document) -> Dict[str, object]:
    if not user_document:
        return {}

    avatar = user_document.get("avatar") or {}
    google = (user_document.get("social_logins") or {}).get("google") or {}
    return {
        **serialize_user_summary(user_document),
        "avatar": {"url": avatar.get("url", "") or ""},
        "phone": user_document.get("phone", "") or "",
        "address": user_document.get("address") or {},
        "isActive": user_document.get("is_active", True) is not False,
        "isEmailVerified": bool(user_document.get("is_email_verified")),
        "googleLinked": bool(google.get("id")),
        "totalOrders": int(user_document.get("total_orders") or 0),
        "totalSpent": round(float(user_document.get("total_spent") or 0), 2),
        "loyalty": {
            "points": int((user_document.get("loyalty") or {}).get("points") or 0),
            "tier": (user_document.get("loyalty") or {}).get("tier") or "bronze",
        },
        "createdAt": iso(user_document.get("created_at")),
        "lastLogin": iso(user_document.get("last_login")),
    }
