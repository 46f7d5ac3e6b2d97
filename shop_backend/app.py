import os
from datetime import timedelta
from typing import Dict, Optional

from dotenv import load_dotenv
from flask import Flask
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_pymongo import PyMongo
from werkzeug.middleware.proxy_fix import ProxyFix

from .auth import TokenVerifier
from .checkout import CheckoutSessionBuilder, PaymentReconciler
from .coupons import CouponManager
from .errors import register_error_handlers
from .payments import StripeGateway
from .routes import register_routes
from .storage import CouponStore, OrderStore, ProductStore, UserStore, ensure_indexes

load_dotenv()


def create_app(
    config: Optional[Dict] = None,
    *,
    db=None,
    payment_gateway=None,
) -> Flask:
    """Create and configure the Flask application.

    ``db`` and ``payment_gateway`` replace the MongoDB database and the
    Stripe gateway built from configuration.
    """
    app = Flask(__name__)

    # Honor proxy headers so the client-facing origin survives the load balancer.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = (
        os.getenv("JWT_SECRET_KEY")
        or os.getenv("ACCESS_TOKEN_SECRET")
        or "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(minutes=15)
    app.config["JWT_TOKEN_LOCATION"] = ["cookies", "headers"]
    app.config["JWT_ACCESS_COOKIE_NAME"] = "accessToken"
    app.config["JWT_COOKIE_SECURE"] = os.getenv("FLASK_ENV") == "production"
    # Clients send the access cookie without a double-submit CSRF token.
    app.config["JWT_COOKIE_CSRF_PROTECT"] = False
    app.config["MONGO_URI"] = os.getenv("MONGO_URI", "mongodb://localhost:27017/shop")
    app.config["STRIPE_SECRET_KEY"] = os.getenv("STRIPE_SECRET_KEY", "")
    app.config["STRIPE_CURRENCY"] = os.getenv("STRIPE_CURRENCY", "usd")
    app.config["CLIENT_URL"] = os.getenv("CLIENT_URL", "http://localhost:5173")
    if config:
        app.config.update(config)

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:5173",
        "http://localhost:3000",
        app.config["CLIENT_URL"].strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    JWTManager(app)
    if db is None:
        mongo = PyMongo(app)
        db = mongo.db
    ensure_indexes(db)

    if payment_gateway is None:
        if not app.config["STRIPE_SECRET_KEY"]:
            app.logger.warning("STRIPE_SECRET_KEY is not set; checkout calls will fail.")
        payment_gateway = StripeGateway(
            app.config["STRIPE_SECRET_KEY"], currency=app.config["STRIPE_CURRENCY"]
        )

    # --- Services ---
    coupon_manager = CouponManager(CouponStore(db))
    order_store = OrderStore(db)
    builder = CheckoutSessionBuilder(
        payment_gateway,
        coupon_manager,
        client_url=app.config["CLIENT_URL"],
        currency=app.config["STRIPE_CURRENCY"],
    )
    reconciler = PaymentReconciler(
        payment_gateway,
        coupon_manager,
        ProductStore(db),
        order_store,
    )
    app.extensions["shop_backend"] = {"verifier": TokenVerifier(UserStore(db))}

    register_error_handlers(app)
    register_routes(
        app,
        builder=builder,
        reconciler=reconciler,
        coupons=coupon_manager,
        orders=order_store,
    )

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app
