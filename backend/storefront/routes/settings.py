from flask import Blueprint, jsonify, request, current_app

from ..decorators import require_auth, require_role
from ..errors import StorefrontError
from ..models.auth import ROLE_ADMIN
from ..services import settings_service

settings_bp = Blueprint("settings", __name__, url_prefix="/api/settings")


@settings_bp.get("")
def get_settings():
    """Store-wide settings (delivery fee, free delivery threshold, contact details). Public."""
    return jsonify({"settings": settings_service.get_settings().to_dict()})


@settings_bp.put("")
@require_auth
@require_role(ROLE_ADMIN)
def update_settings():
    try:
        settings = settings_service.update_settings(request.get_json() or {})
        return jsonify({"settings": settings.to_dict()})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update settings")
        return jsonify({"error": "Internal server error"}), 500
