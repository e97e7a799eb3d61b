# Overview: Flask API routes for user profiles, addresses, wishlist and device tokens.

"""
User API Routes

Every /api/users/profile... route acts on the authenticated user only.
Role management (GET /api/users, PUT /api/users/<id>/role) is admin-only.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request, g, current_app

from ..decorators import require_auth, require_role
from ..errors import StorefrontError
from ..models.auth import ROLE_ADMIN
from ..services import user_service

users_bp = Blueprint("users", __name__, url_prefix="/api/users")


@users_bp.get("/profile")
@require_auth
def get_profile():
    return jsonify({"user": g.current_user.to_dict()})


@users_bp.put("/profile")
@require_auth
def update_profile():
    try:
        user = user_service.update_profile(g.current_user, request.get_json() or {})
        return jsonify({"user": user.to_dict()})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update profile")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ADDRESSES
# =============================================================================

@users_bp.get("/addresses")
@require_auth
def list_addresses():
    return jsonify({"addresses": [a.to_dict() for a in g.current_user.addresses]})


@users_bp.post("/addresses")
@require_auth
def add_address():
    try:
        address = user_service.add_address(g.current_user, request.get_json() or {})
        return jsonify({"address": address.to_dict()}), 201
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to add address")
        return jsonify({"error": "Internal server error"}), 500


@users_bp.put("/addresses/<int:address_id>")
@require_auth
def update_address(address_id: int):
    try:
        address = user_service.update_address(g.current_user, address_id, request.get_json() or {})
        return jsonify({"address": address.to_dict()})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update address")
        return jsonify({"error": "Internal server error"}), 500


@users_bp.put("/addresses/<int:address_id>/default")
@require_auth
def set_default_address(address_id: int):
    try:
        address = user_service.set_default_address(g.current_user, address_id)
        return jsonify({"address": address.to_dict()})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status


@users_bp.delete("/addresses/<int:address_id>")
@require_auth
def delete_address(address_id: int):
    try:
        user_service.delete_address(g.current_user, address_id)
        return jsonify({"addresses": [a.to_dict() for a in g.current_user.addresses]})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete address")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# WISHLIST
# =============================================================================

@users_bp.get("/wishlist")
@require_auth
def list_wishlist():
    products = user_service.list_wishlist(g.current_user)
    return jsonify({
        "wishlist": list(g.current_user.wishlist or []),
        "products": [p.to_dict() for p in products],
    })


@users_bp.post("/wishlist/<int:product_id>")
@require_auth
def add_to_wishlist(product_id: int):
    try:
        return jsonify({"wishlist": user_service.add_to_wishlist(g.current_user, product_id)})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status


@users_bp.delete("/wishlist/<int:product_id>")
@require_auth
def remove_from_wishlist(product_id: int):
    return jsonify({"wishlist": user_service.remove_from_wishlist(g.current_user, product_id)})


# =============================================================================
# DEVICE TOKENS (push notifications)
# =============================================================================

@users_bp.post("/device-tokens")
@require_auth
def register_device_token():
    try:
        data = request.get_json() or {}
        tokens = user_service.register_device_token(g.current_user, data.get("token"))
        return jsonify({"device_token_count": len(tokens)})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status


@users_bp.delete("/device-tokens")
@require_auth
def unregister_device_token():
    data = request.get_json(silent=True) or {}
    tokens = user_service.unregister_device_token(g.current_user, data.get("token"))
    return jsonify({"device_token_count": len(tokens)})


# =============================================================================
# ADMIN
# =============================================================================

@users_bp.get("")
@require_auth
@require_role(ROLE_ADMIN)
def list_users():
    try:
        users = user_service.list_users(request.args.get("role"))
        return jsonify({"users": [u.to_dict() for u in users]})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status


@users_bp.put("/<int:user_id>/role")
@require_auth
@require_role(ROLE_ADMIN)
def set_role(user_id: int):
    try:
        data = request.get_json() or {}
        user = user_service.set_role(user_id, data.get("role"), actor=g.current_user)
        return jsonify({"user": user.to_dict()})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to set role")
        return jsonify({"error": "Internal server error"}), 500
