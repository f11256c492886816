import logging
import os
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv
from flask import Flask, jsonify
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_pymongo import PyMongo
from pymongo import ASCENDING, DESCENDING
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from . import auth, cart, notifications, orders, payments, products, wishlist
from .helpers import split_csv


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def load_config(app: Flask) -> None:
    app.config["MONGO_URI"] = os.getenv("MONGO_URI", "mongodb://localhost:27017/storefront")
    app.config["JWT_SECRET_KEY"] = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(days=1)
    app.config["REMEMBER_ME_TOKEN_DAYS"] = _env_int("REMEMBER_ME_TOKEN_DAYS", 30)
    app.config["ALLOWED_ORIGINS"] = os.getenv("ALLOWED_ORIGINS", "")
    app.config["TRUSTED_PROXY_HOPS"] = max(0, _env_int("TRUSTED_PROXY_HOPS", 1))
    app.config["FRONTEND_URL"] = os.getenv("FRONTEND_URL", "http://localhost:3000")
    app.config["RESEND_API_KEY"] = (os.getenv("RESEND_API_KEY") or "").strip()
    app.config["EMAIL_FROM"] = os.getenv("EMAIL_FROM", "Storefront <no-reply@storefront.dev>")
    app.config["DEFAULT_ADMIN_EMAIL"] = (os.getenv("DEFAULT_ADMIN_EMAIL") or "").strip().lower()
    app.config["STRIPE_SECRET_KEY"] = os.getenv("STRIPE_SECRET_KEY", "")
    app.config["STRIPE_PUBLISHABLE_KEY"] = os.getenv("STRIPE_PUBLISHABLE_KEY", "")
    app.config["STRIPE_WEBHOOK_SECRET"] = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    app.config["STRIPE_API_BASE"] = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")
    app.config["STRIPE_CURRENCY"] = os.getenv("STRIPE_CURRENCY", "usd")
    app.config["GOOGLE_CLIENT_ID"] = os.getenv("GOOGLE_CLIENT_ID", "")
    app.config["OTP_EXPIRATION_MINUTES"] = _env_int("OTP_EXPIRATION_MINUTES", 10)
    app.config["PASSWORD_RESET_EXPIRATION_MINUTES"] = _env_int(
        "PASSWORD_RESET_EXPIRATION_MINUTES", 10
    )
    app.config["MAX_FAILED_OTP_ATTEMPTS"] = _env_int("MAX_FAILED_OTP_ATTEMPTS", 5)
    app.config["MAX_LOGIN_ATTEMPTS"] = _env_int("MAX_LOGIN_ATTEMPTS", 5)
    app.config["LOGIN_LOCK_HOURS"] = _env_int("LOGIN_LOCK_HOURS", 2)
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO").upper()


def ensure_indexes(app: Flask, db) -> None:
    index_specs = [
        (db.users, "email", {"unique": True}),
        (db.products, [("category", ASCENDING), ("price", ASCENDING)], {}),
        (db.carts, "user_id", {"unique": True}),
        (db.orders, [("user_id", ASCENDING), ("created_at", DESCENDING)], {}),
        (db.orders, "stripe_payment_intent_id", {}),
        (db.wishlists, "user_id", {}),
        (db.notifications, [("recipient", ASCENDING), ("is_read", ASCENDING)], {}),
        (db.notifications, "expires_at", {"expireAfterSeconds": 0}),
        (db.email_verification_tokens, "expires_at", {"expireAfterSeconds": 0}),
    ]
    for collection, keys, options in index_specs:
        try:
            collection.create_index(keys, **options)
        except Exception as exc:
            app.logger.warning("Unable to ensure index %s on %s: %s", keys, collection.name, exc)


def create_app(test_config: Optional[dict] = None, db=None) -> Flask:
    """Create and configure the Flask application."""
    load_dotenv()

    app = Flask(__name__)
    load_config(app)
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]), logging.INFO))

    # Honor proxy headers so generated links keep the public origin.
    trusted_proxy_hops = app.config["TRUSTED_PROXY_HOPS"]
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    allowed_origins = list(split_csv(app.config["ALLOWED_ORIGINS"]))
    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    JWTManager(app)
    if db is None:
        db = PyMongo(app).db
    app.extensions["storefront_db"] = db

    ensure_indexes(app, db)

    @app.after_request
    def set_security_headers(response):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        return response

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"message": "Route not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(_error):
        return jsonify({"message": "Method not allowed"}), 405

    @app.errorhandler(Exception)
    def unhandled_exception(error):
        if isinstance(error, HTTPException):
            return jsonify({"message": error.description}), error.code
        app.logger.exception("Unhandled error: %s", error)
        return jsonify({"message": "Something went wrong!"}), 500

    @app.route("/", methods=["GET"])
    def index():
        return jsonify({"message": "Storefront API is running"})

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"}), 200

    auth.register_routes(app, db)
    products.register_routes(app, db)
    cart.register_routes(app, db)
    orders.register_routes(app, db)
    payments.register_routes(app, db)
    wishlist.register_routes(app, db)
    notifications.register_routes(app, db)

    return app
