# Overview: Flask API routes for online payments; gateway order creation, signature verification, refunds.

"""
Payment API Routes

Online checkout is two calls:
1. POST /api/payment/create-order  -> gateway order for the server-side total
2. POST /api/payment/verify-payment -> signature checked, order placed as PAID

verify-payment is idempotent per gateway payment id: a repeated callback
returns the order created the first time with 200 instead of 201.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..errors import StorefrontError
from ..models.auth import ROLE_ADMIN
from ..services import notification_service, payment_service, user_service


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payment")


@payments_bp.post("/create-order")
@require_auth
def create_payment_order():
    """
    Request body: {"items": [...], "coupon_code"?: str}

    Returns:
        200: {"gateway_order": {...}, "key_id": str, "quote": {...}}
        502: Gateway unavailable or not configured
    """
    try:
        data = request.get_json() or {}
        intent = payment_service.create_payment_intent(
            g.current_user.id, data.get("items"), data.get("coupon_code")
        )
        return jsonify(intent)
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create payment order")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/verify-payment")
@require_auth
def verify_payment():
    """
    Request body:
    {
        "razorpay_order_id": str,
        "razorpay_payment_id": str,
        "razorpay_signature": str,
        "items": [...],
        "shipping_address": {...} | "address_id": int,
        "coupon_code"?: str
    }
    """
    try:
        data = request.get_json() or {}
        user = g.current_user

        missing = [
            key for key in ("razorpay_order_id", "razorpay_payment_id", "razorpay_signature")
            if not data.get(key)
        ]
        if missing:
            return jsonify({
                "error": f"Missing payment fields: {', '.join(missing)}",
                "kind": "VALIDATION",
            }), 400

        address = user_service.resolve_shipping_address(
            user, data.get("shipping_address"), data.get("address_id")
        )
        order, created = payment_service.verify_and_place_order(
            user.id,
            gateway_order_id=data["razorpay_order_id"],
            gateway_payment_id=data["razorpay_payment_id"],
            signature=data["razorpay_signature"],
            items=data.get("items"),
            shipping_address=address,
            coupon_code=data.get("coupon_code"),
        )
        if created:
            notification_service.dispatch_after_commit()
        return jsonify({"order": order.to_dict(), "created": created}), 201 if created else 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to verify payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/cod-order")
@require_auth
def cod_order():
    """Same body as POST /api/orders; kept for clients that check out via the payment API."""
    try:
        data = request.get_json() or {}
        user = g.current_user
        address = user_service.resolve_shipping_address(
            user, data.get("shipping_address"), data.get("address_id")
        )
        order = payment_service.place_cod_order(
            user.id, data.get("items"), address, data.get("coupon_code")
        )
        notification_service.dispatch_after_commit()
        return jsonify({"order": order.to_dict()}), 201

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to place COD order")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/refund/<int:order_id>")
@require_auth
@require_role(ROLE_ADMIN)
def refund(order_id: int):
    """Issue a full gateway refund for a paid online order. Body: {"reason"?: str}"""
    try:
        data = request.get_json(silent=True) or {}
        order = payment_service.refund_order(order_id, g.current_user, data.get("reason"))
        notification_service.dispatch_after_commit()
        return jsonify({"order": order.to_dict(include_customer=True)})

    except StorefrontError as e:
        # A failed gateway refund is recorded on the order before raising
        notification_service.dispatch_after_commit()
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to refund order")
        return jsonify({"error": "Internal server error"}), 500
