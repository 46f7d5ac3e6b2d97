from datetime import datetime
from typing import Dict, Optional

from flask import jsonify, request

from .auth import admin_route, get_current_user, protect_route
from .checkout import CheckoutSessionBuilder, PaymentReconciler
from .coupons import CouponManager, serialize_coupon
from .errors import APIError, NotFound
from .money import safe_float, safe_positive_int
from .storage import OrderStore


def serialize_order(order_document: Optional[Dict]) -> Optional[Dict]:
    if not order_document:
        return None

    created_at = order_document.get("created_at")
    created_at_iso = None
    if isinstance(created_at, datetime):
        created_at_iso = (
            created_at.isoformat()
            if created_at.tzinfo is not None
            else f"{created_at.isoformat()}Z"
        )

    serialized_items = []
    for entry in order_document.get("items") or []:
        if not isinstance(entry, dict):
            continue
        quantity = safe_positive_int(entry.get("quantity"), 1) or 1
        price_value = round(safe_float(entry.get("price"), 0.0), 2)
        serialized_items.append(
            {
                "productId": str(entry.get("product_id") or ""),
                "name": str(entry.get("name") or "").strip() or "Item",
                "quantity": quantity,
                "price": price_value,
                "lineTotal": round(price_value * quantity, 2),
            }
        )

    return {
        "id": str(order_document.get("_id") or ""),
        "userId": str(order_document.get("user_id") or ""),
        "items": serialized_items,
        "itemCount": sum(item["quantity"] for item in serialized_items),
        "totalAmount": round(safe_float(order_document.get("total_amount"), 0.0), 2),
        "stripeSessionId": str(order_document.get("stripe_session_id") or ""),
        "createdAt": created_at_iso,
    }


def register_routes(
    app,
    *,
    builder: CheckoutSessionBuilder,
    reconciler: PaymentReconciler,
    coupons: CouponManager,
    orders: OrderStore,
):
    # ---- Checkout ----

    @app.route("/checkout/create-session", methods=["POST"])
    @protect_route
    def create_checkout_session():
        payload = request.get_json(silent=True) or {}
        current_user = get_current_user()
        try:
            quote = builder.build(
                payload.get("products"), payload.get("couponCode"), current_user.id
            )
        except APIError as exc:
            if exc.status_code < 500:
                raise
            return (
                jsonify({"message": "Error processing checkout", "error": exc.message}),
                500,
            )
        except Exception as exc:
            app.logger.error("Error processing checkout: %s", exc)
            return (
                jsonify({"message": "Error processing checkout", "error": str(exc)}),
                500,
            )

        return jsonify({"id": quote.session_id, "totalAmount": quote.total_amount}), 200

    @app.route("/checkout/success", methods=["POST"])
    @protect_route
    def checkout_success():
        payload = request.get_json(silent=True) or {}
        try:
            result = reconciler.reconcile(payload.get("sessionId"))
        except APIError as exc:
            if exc.status_code < 500:
                raise
            return (
                jsonify(
                    {
                        "message": "Error processing successful checkout",
                        "error": exc.message,
                    }
                ),
                500,
            )
        except Exception as exc:
            app.logger.error("Error processing successful checkout: %s", exc)
            return (
                jsonify(
                    {
                        "message": "Error processing successful checkout",
                        "error": str(exc),
                    }
                ),
                500,
            )

        if result.already_processed:
            message = "Order already processed."
        else:
            message = "Payment successful, order created, and coupon deactivated if used."
        return (
            jsonify({"success": True, "message": message, "orderId": result.order_id}),
            200,
        )

    # ---- Coupons ----

    @app.route("/coupons", methods=["GET"])
    @protect_route
    def get_my_coupon():
        coupon = coupons.active_coupon_for(get_current_user().id)
        return jsonify(serialize_coupon(coupon))

    @app.route("/coupons/validate", methods=["POST"])
    @protect_route
    def validate_coupon():
        payload = request.get_json(silent=True) or {}
        coupon = coupons.validate(payload.get("code"), get_current_user().id)
        if not coupon:
            raise NotFound("Coupon not found", reason="coupon_not_found")
        if not coupon.get("is_active"):
            raise NotFound("Coupon expired", reason="coupon_expired")

        return jsonify(
            {
                "message": "Coupon is valid",
                "code": coupon.get("code"),
                "discountPercentage": coupon.get("discount_percentage"),
            }
        )

    # ---- Orders ----

    @app.route("/orders", methods=["GET"])
    @protect_route
    def list_my_orders():
        documents = orders.list_for_user(get_current_user().id)
        return jsonify({"orders": [serialize_order(document) for document in documents]})

    @app.route("/admin/orders", methods=["GET"])
    @protect_route
    @admin_route
    def list_all_orders():
        documents = orders.list_all()
        return jsonify({"orders": [serialize_order(document) for document in documents]})
