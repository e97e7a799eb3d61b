# Overview: Flask API routes for the product catalog; parses input and returns JSON responses.

from __future__ import annotations

from flask import Blueprint, jsonify, request, g, current_app

from ..decorators import optional_auth, require_auth, require_role
from ..errors import StorefrontError
from ..models.auth import ROLE_ADMIN
from ..services import catalog_service

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _limit(default: int = catalog_service.DEFAULT_LIMIT) -> int:
    limit = request.args.get("limit", type=int) or default
    return max(1, min(limit, 100))


@products_bp.get("")
def list_products():
    try:
        products = catalog_service.list_products(
            category=request.args.get("category"),
            search=request.args.get("search") or request.args.get("q"),
            sort=request.args.get("sort"),
            available_only=request.args.get("available", "false").lower() == "true",
            limit=request.args.get("limit", type=int),
            offset=request.args.get("offset", 0, type=int),
        )
        return jsonify({"products": [p.to_dict() for p in products]})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status


@products_bp.get("/trending")
def trending_products():
    return jsonify({"products": [p.to_dict() for p in catalog_service.trending_products(_limit())]})


@products_bp.get("/featured")
def featured_products():
    return jsonify({"products": [p.to_dict() for p in catalog_service.featured_products(_limit())]})


@products_bp.get("/top-rated")
def top_rated_products():
    return jsonify({"products": [p.to_dict() for p in catalog_service.top_rated_products(_limit())]})


@products_bp.get("/recommendations")
@optional_auth
def recommended_products():
    user_id = g.current_user.id if g.current_user else None
    products = catalog_service.recommend_products(user_id, _limit())
    return jsonify({"products": [p.to_dict() for p in products]})


@products_bp.get("/<int:product_id>")
def get_product(product_id: int):
    try:
        return jsonify({"product": catalog_service.get_product(product_id).to_dict()})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status


@products_bp.get("/<int:product_id>/ratings")
def list_ratings(product_id: int):
    try:
        ratings = catalog_service.list_ratings(product_id)
        return jsonify({"ratings": [r.to_dict() for r in ratings]})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status


@products_bp.post("/<int:product_id>/rate")
@require_auth
def rate_product(product_id: int):
    """Request body: {"rating": 1-5, "review"?: str}"""
    try:
        data = request.get_json() or {}
        product = catalog_service.rate_product(
            product_id,
            g.current_user,
            data.get("rating"),
            data.get("review"),
        )
        return jsonify({"product": product.to_dict()})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to rate product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.post("")
@require_auth
@require_role(ROLE_ADMIN)
def create_product():
    try:
        product = catalog_service.create_product(request.get_json() or {})
        return jsonify({"product": product.to_dict()}), 201
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.put("/<int:product_id>")
@require_auth
@require_role(ROLE_ADMIN)
def update_product(product_id: int):
    try:
        product = catalog_service.update_product(product_id, request.get_json() or {})
        return jsonify({"product": product.to_dict()})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.delete("/<int:product_id>")
@require_auth
@require_role(ROLE_ADMIN)
def delete_product(product_id: int):
    try:
        catalog_service.delete_product(product_id)
        return jsonify({"message": "Product deleted"})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete product")
        return jsonify({"error": "Internal server error"}), 500
