import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import bcrypt
import requests
from flask import jsonify, request
from flask_jwt_extended import jwt_required

from .emails import send_otp_email, send_password_reset_email
from .helpers import first_value, is_valid_email, normalize_email, parse_object_id, validation_failed
from .notifications import create_notification
from .security import (
    ALLOWED_USER_ROLES,
    get_current_user,
    issue_token,
    require_admin,
    serialize_user_profile,
    serialize_user_summary,
)

OTP_CODE_LENGTH = 6
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
SELF_SERVICE_ROLES = ("user", "seller")

# Never returned to clients.
SECRET_USER_FIELDS = {
    "password": 0,
    "reset_password_token": 0,
    "reset_password_expire": 0,
    "login_attempts": 0,
    "lock_until": 0,
}


class GoogleTokenError(ValueError):
    pass


def hash_password(password: str) -> bytes:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())


def check_password(password: str, hashed) -> bool:
    if not hashed:
        return False
    if isinstance(hashed, str):
        hashed = hashed.encode("utf-8")
    return bcrypt.checkpw(password.encode("utf-8"), hashed)


def generate_otp_code(length: int = OTP_CODE_LENGTH) -> str:
    return f"{secrets.randbelow(10**length):0{length}d}"


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_google_token(id_token: str, client_id: str) -> Dict[str, str]:
    """Validate a Google ID token through the tokeninfo endpoint."""
    if not client_id:
        raise GoogleTokenError("Google sign-in is not configured")
    try:
        response = requests.get(GOOGLE_TOKENINFO_URL, params={"id_token": id_token}, timeout=10)
    except requests.RequestException as exc:
        raise GoogleTokenError("Unable to reach Google") from exc
    if response.status_code != 200:
        raise GoogleTokenError("Invalid Google token")

    try:
        claims = response.json()
    except ValueError as exc:
        raise GoogleTokenError("Invalid Google token") from exc
    if not isinstance(claims, dict):
        raise GoogleTokenError("Invalid Google token")
    if claims.get("aud") != client_id:
        raise GoogleTokenError("Google token was issued for another client")
    if not claims.get("sub") or not claims.get("email"):
        raise GoogleTokenError("Google token is missing account details")
    return claims


def _validate_signup(payload) -> tuple:
    errors: List[Dict[str, str]] = []
    name = str(payload.get("name") or "").strip()
    if not 2 <= len(name) <= 50:
        errors.append({"field": "name", "message": "Name must be between 2 and 50 characters"})
    email = normalize_email(payload.get("email"))
    if not is_valid_email(email):
        errors.append({"field": "email", "message": "Please enter a valid email"})
    password = str(payload.get("password") or "")
    if len(password) < 6:
        errors.append(
            {"field": "password", "message": "Password must be at least 6 characters long"}
        )
    role = str(payload.get("role") or "user").strip().lower()
    if role not in SELF_SERVICE_ROLES:
        errors.append({"field": "role", "message": "Invalid role"})
    return name, email, password, role, errors


def new_user_document(name: str, email: str, password_hash: bytes, role: str = "user") -> Dict:
    timestamp = datetime.utcnow()
    return {
        "name": name,
        "email": email,
        "password": password_hash,
        "role": role,
        "avatar": {"url": ""},
        "phone": "",
        "address": {},
        "is_active": True,
        "is_otp_verified": False,
        "is_email_verified": False,
        "login_attempts": 0,
        "total_orders": 0,
        "total_spent": 0,
        "average_order_value": 0,
        "loyalty": {"points": 0, "tier": "bronze", "total_spent": 0},
        "social_logins": {},
        "created_at": timestamp,
        "updated_at": timestamp,
    }


def register_routes(app, db):
    email_verification_collection = db.email_verification_tokens

    def persist_verification_code(email: str, otp: str) -> datetime:
        expires_at = datetime.utcnow() + timedelta(minutes=app.config["OTP_EXPIRATION_MINUTES"])
        email_verification_collection.update_one(
            {"email": email},
            {
                "$set": {
                    "email": email,
                    "otp_hash": bcrypt.hashpw(otp.encode("utf-8"), bcrypt.gensalt()),
                    "expires_at": expires_at,
                    "created_at": datetime.utcnow(),
                    "failed_attempts": 0,
                }
            },
            upsert=True,
        )
        return expires_at

    def dispatch_verification_code(email: str, name: Optional[str]):
        otp = generate_otp_code()
        persist_verification_code(email, otp)
        sent, error = send_otp_email(email, otp, name)
        if not sent:
            app.logger.error("OTP dispatch failed for %s: %s", email, error)
        return sent, error

    def otp_delivery_failed(error):
        return (
            jsonify(
                {
                    "message": "We could not send the verification email. Please try again in a moment.",
                    "error": error,
                }
            ),
            500,
        )

    @app.route("/api/auth/send-otp", methods=["POST"])
    def send_otp():
        payload = request.get_json(silent=True) or {}
        name, email, password, role, errors = _validate_signup(payload)
        if errors:
            return validation_failed(errors)

        existing_user = db.users.find_one({"email": email})
        if existing_user and existing_user.get("is_otp_verified"):
            return jsonify({"message": "User already exists"}), 400

        password_hash = hash_password(password)
        if existing_user:
            db.users.update_one(
                {"_id": existing_user["_id"]},
                {
                    "$set": {
                        "name": name,
                        "password": password_hash,
                        "role": role,
                        "updated_at": datetime.utcnow(),
                    }
                },
            )
        else:
            db.users.insert_one(new_user_document(name, email, password_hash, role))

        sent, error = dispatch_verification_code(email, name)
        if not sent:
            return otp_delivery_failed(error)

        return jsonify({"message": "OTP sent to your email", "email": email, "otpSent": True})

    @app.route("/api/auth/verify-otp", methods=["POST"])
    def verify_otp():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        otp = str(payload.get("otp") or "").strip()

        errors = []
        if not is_valid_email(email):
            errors.append({"field": "email", "message": "Please enter a valid email"})
        if not (otp.isdigit() and len(otp) == OTP_CODE_LENGTH):
            errors.append({"field": "otp", "message": "OTP must be 6 digits"})
        if errors:
            return validation_failed(errors)

        user_document = db.users.find_one({"email": email})
        if not user_document:
            return jsonify({"message": "User not found"}), 404

        code_record = email_verification_collection.find_one({"email": email})
        expires_at = (code_record or {}).get("expires_at")
        if not code_record or not expires_at or expires_at < datetime.utcnow():
            if code_record:
                email_verification_collection.delete_one({"_id": code_record["_id"]})
            return jsonify({"message": "Invalid or expired OTP"}), 400

        stored_hash = code_record.get("otp_hash")
        if not stored_hash or not bcrypt.checkpw(otp.encode("utf-8"), stored_hash):
            failed_attempts = int(code_record.get("failed_attempts", 0) or 0) + 1
            if failed_attempts >= app.config["MAX_FAILED_OTP_ATTEMPTS"]:
                email_verification_collection.delete_one({"_id": code_record["_id"]})
                return (
                    jsonify(
                        {"message": "Too many incorrect attempts. Please request a new OTP."}
                    ),
                    400,
                )
            email_verification_collection.update_one(
                {"_id": code_record["_id"]},
                {"$set": {"failed_attempts": failed_attempts}},
            )
            return jsonify({"message": "Invalid or expired OTP"}), 400

        email_verification_collection.delete_one({"_id": code_record["_id"]})
        changes = {
            "is_otp_verified": True,
            "is_email_verified": True,
            "updated_at": datetime.utcnow(),
        }
        db.users.update_one({"_id": user_document["_id"]}, {"$set": changes})
        user_document.update(changes)

        create_notification(
            db,
            user_document["_id"],
            "welcome",
            "Welcome aboard!",
            f"Hi {user_document.get('name') or 'there'}, your account is ready. Happy shopping!",
            priority="low",
        )

        return (
            jsonify(
                {
                    "message": "Email verified successfully",
                    "user": serialize_user_summary(user_document),
                    "token": issue_token(user_document),
                }
            ),
            201,
        )

    @app.route("/api/auth/resend-otp", methods=["POST"])
    def resend_otp():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        if not is_valid_email(email):
            return validation_failed([{"field": "email", "message": "Please enter a valid email"}])

        user_document = db.users.find_one({"email": email})
        if not user_document:
            return jsonify({"message": "User not found"}), 404
        if user_document.get("is_otp_verified"):
            return jsonify({"message": "User already verified"}), 400

        sent, error = dispatch_verification_code(email, user_document.get("name"))
        if not sent:
            return otp_delivery_failed(error)

        return jsonify({"message": "OTP resent successfully to your email", "email": email})

    @app.route("/api/auth/register", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        name, email, password, role, errors = _validate_signup(payload)
        if errors:
            return validation_failed(errors)

        if db.users.find_one({"email": email}):
            return jsonify({"message": "User already exists with this email"}), 400

        user_document = new_user_document(name, email, hash_password(password), role)
        user_document["_id"] = db.users.insert_one(user_document).inserted_id

        return (
            jsonify(
                {
                    "message": "User registered successfully",
                    "user": serialize_user_summary(user_document),
                    "token": issue_token(user_document),
                }
            ),
            201,
        )

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")
        remember_me = bool(first_value(payload, "rememberMe", "remember_me"))

        errors = []
        if not is_valid_email(email):
            errors.append({"field": "email", "message": "Please enter a valid email"})
        if not password:
            errors.append({"field": "password", "message": "Password is required"})
        if errors:
            return validation_failed(errors)

        user_document = db.users.find_one({"email": email})
        if not user_document:
            return jsonify({"message": "Invalid email or password"}), 401

        now = datetime.utcnow()
        lock_until = user_document.get("lock_until")
        if lock_until and lock_until > now:
            return (
                jsonify(
                    {
                        "message": "Account is temporarily locked due to too many failed login attempts. Please try again later.",
                        "lockUntil": f"{lock_until.isoformat()}Z",
                    }
                ),
                423,
            )

        if not user_document.get("is_otp_verified") or not user_document.get("is_email_verified"):
            return (
                jsonify(
                    {
                        "message": "Please verify your email before logging in",
                        "emailNotVerified": True,
                        "email": user_document.get("email"),
                    }
                ),
                401,
            )

        if user_document.get("is_active") is False:
            return jsonify({"message": "Account is deactivated"}), 401

        if not check_password(password, user_document.get("password")):
            if lock_until and lock_until <= now:
                attempts = 1
                update = {"$set": {"login_attempts": 1}, "$unset": {"lock_until": ""}}
            else:
                attempts = int(user_document.get("login_attempts") or 0) + 1
                update = {"$set": {"login_attempts": attempts}}
            if attempts >= app.config["MAX_LOGIN_ATTEMPTS"]:
                update["$set"]["lock_until"] = now + timedelta(hours=app.config["LOGIN_LOCK_HOURS"])
                update.pop("$unset", None)
                app.logger.warning("Locking %s after %s failed logins", email, attempts)
            db.users.update_one({"_id": user_document["_id"]}, update)
            return jsonify({"message": "Invalid email or password"}), 401

        db.users.update_one(
            {"_id": user_document["_id"]},
            {"$set": {"last_login": now, "login_attempts": 0}, "$unset": {"lock_until": ""}},
        )
        user_document["last_login"] = now

        return jsonify(
            {
                "message": "Login successful",
                "user": {
                    **serialize_user_summary(user_document),
                    "avatar": user_document.get("avatar") or {"url": ""},
                },
                "token": issue_token(user_document, remember_me=remember_me),
                "rememberMe": remember_me,
            }
        )

    @app.route("/api/auth/profile", methods=["GET"])
    @jwt_required()
    def get_profile():
        current_user, error = get_current_user(db)
        if error:
            return error
        return jsonify({"user": serialize_user_profile(current_user)})

    @app.route("/api/auth/profile", methods=["PUT"])
    @jwt_required()
    def update_profile():
        current_user, error = get_current_user(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        errors: List[Dict[str, str]] = []
        changes: Dict[str, object] = {}

        if payload.get("name") is not None:
            name = str(payload.get("name")).strip()
            if not 2 <= len(name) <= 50:
                errors.append(
                    {"field": "name", "message": "Name must be between 2 and 50 characters"}
                )
            changes["name"] = name

        if payload.get("email") is not None:
            email = normalize_email(payload.get("email"))
            if not is_valid_email(email):
                errors.append({"field": "email", "message": "Please enter a valid email"})
            changes["email"] = email

        if payload.get("phone") is not None:
            changes["phone"] = str(payload.get("phone")).strip()

        if payload.get("address") is not None:
            address = payload.get("address")
            if not isinstance(address, dict):
                errors.append({"field": "address", "message": "Address must be an object"})
            else:
                changes["address"] = {
                    key: str(value).strip()
                    for key, value in address.items()
                    if key in ("street", "city", "state", "zipCode", "country")
                    and value is not None
                }

        if errors:
            return validation_failed(errors)

        new_email = changes.get("email")
        if new_email and new_email != current_user.get("email"):
            if db.users.find_one({"email": new_email, "_id": {"$ne": current_user["_id"]}}):
                return jsonify({"message": "Email already in use"}), 400

        if changes:
            changes["updated_at"] = datetime.utcnow()
            db.users.update_one({"_id": current_user["_id"]}, {"$set": changes})
            current_user.update(changes)

        return jsonify(
            {"message": "Profile updated successfully", "user": serialize_user_profile(current_user)}
        )

    @app.route("/api/auth/change-password", methods=["PUT"])
    @jwt_required()
    def change_password():
        current_user, error = get_current_user(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        current_password = str(first_value(payload, "currentPassword", "current_password") or "")
        new_password = str(first_value(payload, "newPassword", "new_password") or "")
        errors = []
        if not current_password:
            errors.append(
                {"field": "currentPassword", "message": "Current password is required"}
            )
        if len(new_password) < 6:
            errors.append(
                {
                    "field": "newPassword",
                    "message": "New password must be at least 6 characters long",
                }
            )
        if errors:
            return validation_failed(errors)

        if not check_password(current_password, current_user.get("password")):
            return jsonify({"message": "Current password is incorrect"}), 400

        db.users.update_one(
            {"_id": current_user["_id"]},
            {"$set": {"password": hash_password(new_password), "updated_at": datetime.utcnow()}},
        )
        return jsonify({"message": "Password changed successfully"})

    @app.route("/api/auth/verify", methods=["GET"])
    @jwt_required()
    def verify_token():
        current_user, error = get_current_user(db)
        if error:
            return error
        return jsonify({"valid": True, "user": serialize_user_summary(current_user)})

    @app.route("/api/auth/forgot-password", methods=["POST"])
    def forgot_password():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        if not is_valid_email(email):
            return validation_failed([{"field": "email", "message": "Please enter a valid email"}])

        generic_message = "If an account with that email exists, a password reset link has been sent."
        user_document = db.users.find_one({"email": email})
        if not user_document:
            return jsonify({"message": generic_message})
        if user_document.get("is_active") is False:
            return jsonify({"message": "Account is deactivated"}), 400

        reset_token = secrets.token_hex(32)
        db.users.update_one(
            {"_id": user_document["_id"]},
            {
                "$set": {
                    "reset_password_token": hash_reset_token(reset_token),
                    "reset_password_expire": datetime.utcnow()
                    + timedelta(minutes=app.config["PASSWORD_RESET_EXPIRATION_MINUTES"]),
                }
            },
        )

        reset_url = f"{app.config['FRONTEND_URL'].rstrip('/')}/reset-password/{reset_token}"
        sent, error = send_password_reset_email(email, reset_url, user_document.get("name"))
        if not sent:
            app.logger.error("Password reset email to %s failed: %s", email, error)
            db.users.update_one(
                {"_id": user_document["_id"]},
                {"$unset": {"reset_password_token": "", "reset_password_expire": ""}},
            )
            return jsonify({"message": "Email could not be sent. Please try again later."}), 500

        return jsonify({"message": generic_message})

    @app.route("/api/auth/reset-password", methods=["POST"])
    def reset_password():
        payload = request.get_json(silent=True) or {}
        token = str(payload.get("token") or "").strip()
        new_password = str(first_value(payload, "newPassword", "new_password", "password") or "")
        errors = []
        if not token:
            errors.append({"field": "token", "message": "Reset token is required"})
        if len(new_password) < 6:
            errors.append(
                {"field": "newPassword", "message": "Password must be at least 6 characters long"}
            )
        if errors:
            return validation_failed(errors)

        user_document = db.users.find_one(
            {
                "reset_password_token": hash_reset_token(token),
                "reset_password_expire": {"$gt": datetime.utcnow()},
            }
        )
        if not user_document:
            return jsonify({"message": "Invalid or expired reset token"}), 400
        if user_document.get("is_active") is False:
            return jsonify({"message": "Account is deactivated"}), 400

        db.users.update_one(
            {"_id": user_document["_id"]},
            {
                "$set": {
                    "password": hash_password(new_password),
                    "login_attempts": 0,
                    "updated_at": datetime.utcnow(),
                },
                "$unset": {
                    "reset_password_token": "",
                    "reset_password_expire": "",
                    "lock_until": "",
                },
            },
        )
        return jsonify({"message": "Password reset successful. You can now log in."})

    @app.route("/api/auth/google", methods=["POST"])
    def google_login():
        payload = request.get_json(silent=True) or {}
        id_token = str(first_value(payload, "token", "credential") or "").strip()
        if not id_token:
            return jsonify({"success": False, "message": "Google token is required"}), 400

        try:
            claims = verify_google_token(id_token, app.config.get("GOOGLE_CLIENT_ID") or "")
        except GoogleTokenError as exc:
            app.logger.warning("Google sign-in rejected: %s", exc)
            return jsonify({"success": False, "message": str(exc)}), 401

        email = normalize_email(claims["email"])
        google_profile = {
            "id": claims["sub"],
            "email": email,
            "verified": str(claims.get("email_verified")).lower() == "true",
        }
        user_document = db.users.find_one(
            {"$or": [{"social_logins.google.id": claims["sub"]}, {"email": email}]}
        )
        now = datetime.utcnow()
        if user_document:
            if user_document.get("is_active") is False:
                return jsonify({"success": False, "message": "Account is deactivated"}), 401
            changes = {
                "social_logins.google": google_profile,
                "is_otp_verified": True,
                "is_email_verified": True,
                "last_login": now,
            }
            if claims.get("picture") and not (user_document.get("avatar") or {}).get("url"):
                changes["avatar"] = {"url": claims["picture"]}
            db.users.update_one({"_id": user_document["_id"]}, {"$set": changes})
            user_document = db.users.find_one({"_id": user_document["_id"]})
        else:
            user_document = new_user_document(
                claims.get("name") or email.split("@")[0],
                email,
                hash_password(secrets.token_urlsafe(32)),
            )
            user_document.update(
                {
                    "is_otp_verified": True,
                    "is_email_verified": True,
                    "avatar": {"url": claims.get("picture") or ""},
                    "social_logins": {"google": google_profile},
                    "last_login": now,
                }
            )
            user_document["_id"] = db.users.insert_one(user_document).inserted_id
            create_notification(
                db,
                user_document["_id"],
                "welcome",
                "Welcome aboard!",
                f"Hi {user_document['name']}, your account is ready. Happy shopping!",
                priority="low",
            )

        return jsonify(
            {
                "success": True,
                "token": issue_token(user_document),
                "user": serialize_user_profile(user_document),
            }
        )

    @app.route("/api/auth/google/link", methods=["POST"])
    @jwt_required()
    def link_google_account():
        current_user, error = get_current_user(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        id_token = str(first_value(payload, "token", "credential") or "").strip()
        if not id_token:
            return jsonify({"success": False, "message": "Google token is required"}), 400

        try:
            claims = verify_google_token(id_token, app.config.get("GOOGLE_CLIENT_ID") or "")
        except GoogleTokenError as exc:
            return jsonify({"success": False, "message": str(exc)}), 401

        if db.users.find_one(
            {"social_logins.google.id": claims["sub"], "_id": {"$ne": current_user["_id"]}}
        ):
            return (
                jsonify(
                    {
                        "success": False,
                        "message": "This Google account is already linked to another user",
                    }
                ),
                400,
            )

        google_profile = {
            "id": claims["sub"],
            "email": normalize_email(claims["email"]),
            "verified": str(claims.get("email_verified")).lower() == "true",
        }
        db.users.update_one(
            {"_id": current_user["_id"]}, {"$set": {"social_logins.google": google_profile}}
        )
        current_user.setdefault("social_logins", {})["google"] = google_profile
        return jsonify(
            {
                "success": True,
                "message": "Google account linked successfully",
                "user": serialize_user_profile(current_user),
            }
        )

    @app.route("/api/auth/google/link", methods=["DELETE"])
    @jwt_required()
    def unlink_google_account():
        current_user, error = get_current_user(db)
        if error:
            return error

        if not ((current_user.get("social_logins") or {}).get("google") or {}).get("id"):
            return jsonify({"success": False, "message": "No Google account linked"}), 400

        db.users.update_one({"_id": current_user["_id"]}, {"$unset": {"social_logins.google": ""}})
        current_user["social_logins"].pop("google", None)
        return jsonify(
            {
                "success": True,
                "message": "Google account unlinked successfully",
                "user": serialize_user_profile(current_user),
            }
        )

    @app.route("/api/auth/users", methods=["GET"])
    @jwt_required()
    def list_users():
        _, error = require_admin(db)
        if error:
            return error

        user_docs = db.users.find({}, SECRET_USER_FIELDS).sort("created_at", -1)
        return jsonify({"users": [serialize_user_profile(document) for document in user_docs]})

    @app.route("/api/auth/users/<user_id>", methods=["DELETE"])
    @jwt_required()
    def delete_user(user_id: str):
        current_user, error = require_admin(db)
        if error:
            return error

        object_id = parse_object_id(user_id)
        if object_id == current_user["_id"]:
            return jsonify({"message": "You cannot delete your own account"}), 403

        result = db.users.delete_one({"_id": object_id}) if object_id else None
        if not result or not result.deleted_count:
            return jsonify({"message": "User not found"}), 404

        app.logger.info("User %s deleted by %s", user_id, current_user.get("email"))
        return jsonify({"message": "User deleted successfully"})

    @app.route("/api/auth/users", methods=["DELETE"])
    @jwt_required()
    def delete_all_users():
        current_user, error = require_admin(db)
        if error:
            return error

        result = db.users.delete_many({"_id": {"$ne": current_user["_id"]}})
        if not result.deleted_count:
            return jsonify({"message": "No users to delete"}), 404

        app.logger.warning(
            "%s deleted %s user accounts", current_user.get("email"), result.deleted_count
        )
        return jsonify(
            {"message": "All users deleted successfully", "deletedCount": result.deleted_count}
        )

    @app.route("/api/auth/users/<user_id>/role", methods=["PUT"])
    @jwt_required()
    def update_user_role(user_id: str):
        _, error = require_admin(db)
        if error:
            return error

        payload = request.get_json(silent=True) or {}
        role = str(payload.get("role") or "").strip().lower()
        if role not in ALLOWED_USER_ROLES:
            return validation_failed([{"field": "role", "message": "Invalid role"}])

        object_id = parse_object_id(user_id)
        user_document = db.users.find_one({"_id": object_id}) if object_id else None
        if not user_document:
            return jsonify({"message": "User not found"}), 404

        db.users.update_one(
            {"_id": object_id}, {"$set": {"role": role, "updated_at": datetime.utcnow()}}
        )
        user_document["role"] = role
        return jsonify(
            {
                "message": "User role updated successfully",
                "user": serialize_user_summary(user_document),
            }
        )
