from __future__ import annotations

from flask import Blueprint, jsonify, request, current_app

from ..decorators import require_auth, require_role
from ..errors import StorefrontError
from ..models.auth import ROLE_ADMIN
from ..services import catalog_service

categories_bp = Blueprint("categories", __name__, url_prefix="/api/categories")


@categories_bp.get("")
def list_categories():
    return jsonify({"categories": catalog_service.list_categories()})


@categories_bp.get("/<int:category_id>")
def get_category(category_id: int):
    try:
        category = catalog_service.get_category(category_id)
        return jsonify({"category": catalog_service.category_dict(category)})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status


@categories_bp.post("")
@require_auth
@require_role(ROLE_ADMIN)
def create_category():
    try:
        category = catalog_service.create_category(request.get_json() or {})
        return jsonify({"category": catalog_service.category_dict(category)}), 201
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create category")
        return jsonify({"error": "Internal server error"}), 500


@categories_bp.put("/<int:category_id>")
@require_auth
@require_role(ROLE_ADMIN)
def update_category(category_id: int):
    try:
        category = catalog_service.update_category(category_id, request.get_json() or {})
        return jsonify({"category": catalog_service.category_dict(category)})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update category")
        return jsonify({"error": "Internal server error"}), 500


@categories_bp.delete("/<int:category_id>")
@require_auth
@require_role(ROLE_ADMIN)
def delete_category(category_id: int):
    try:
        catalog_service.delete_category(category_id)
        return jsonify({"message": "Category deleted"})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete category")
        return jsonify({"error": "Internal server error"}), 500
