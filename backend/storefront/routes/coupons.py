# Overview: Flask API routes for coupons; public validation plus admin management.

from __future__ import annotations

from flask import Blueprint, jsonify, request, current_app

from ..decorators import require_auth, require_role
from ..errors import StorefrontError
from ..models.auth import ROLE_ADMIN
from ..services import coupon_service
from ..validation import require_positive_int

coupons_bp = Blueprint("coupons", __name__, url_prefix="/api/coupons")


@coupons_bp.post("/validate")
def validate_coupon():
    """
    Request body: {"code": "WELCOME50", "order_total_paise": 120000}

    Returns:
        200: {"valid": true, "coupon": {...}, "discount_paise": int}
        400/404: {"valid": false, "error": "...", "kind": "..."}
    """
    try:
        data = request.get_json() or {}
        total = data.get("order_total_paise", 0)
        if total != 0:
            total = require_positive_int("order_total_paise", total)

        coupon = coupon_service.validate_coupon(data.get("code"), total)
        return jsonify({
            "valid": True,
            "coupon": coupon.to_dict(),
            "discount_paise": coupon_service.compute_discount(coupon, total),
        })
    except StorefrontError as e:
        body = e.to_dict()
        body["valid"] = False
        return jsonify(body), e.http_status


@coupons_bp.get("/active")
def active_coupons():
    return jsonify({"coupons": [c.to_dict() for c in coupon_service.list_active_coupons()]})


@coupons_bp.get("")
@require_auth
@require_role(ROLE_ADMIN)
def list_coupons():
    return jsonify({"coupons": [c.to_dict() for c in coupon_service.list_coupons()]})


@coupons_bp.post("")
@require_auth
@require_role(ROLE_ADMIN)
def create_coupon():
    try:
        coupon = coupon_service.create_coupon(request.get_json() or {})
        return jsonify({"coupon": coupon.to_dict()}), 201
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create coupon")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.put("/<int:coupon_id>")
@require_auth
@require_role(ROLE_ADMIN)
def update_coupon(coupon_id: int):
    try:
        coupon = coupon_service.update_coupon(coupon_id, request.get_json() or {})
        return jsonify({"coupon": coupon.to_dict()})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update coupon")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.delete("/<int:coupon_id>")
@require_auth
@require_role(ROLE_ADMIN)
def delete_coupon(coupon_id: int):
    try:
        coupon_service.delete_coupon(coupon_id)
        return jsonify({"message": "Coupon deleted"})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
