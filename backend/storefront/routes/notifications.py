# Overview: Flask API routes for the in-app notification inbox of the signed-in user.

from flask import Blueprint, jsonify, request, g

from ..decorators import require_auth
from ..services import notification_service

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
@require_auth
def list_notifications():
    user_id = g.current_user.id
    unread_only = request.args.get("unread", "false").lower() == "true"
    limit = max(1, min(request.args.get("limit", 50, type=int), 200))

    notifications = notification_service.list_notifications(user_id, unread_only=unread_only, limit=limit)
    return jsonify({
        "notifications": [n.to_dict() for n in notifications],
        "unread_count": notification_service.unread_count(user_id),
    })


@notifications_bp.put("/<int:notification_id>/read")
@require_auth
def mark_read(notification_id: int):
    notification = notification_service.mark_read(g.current_user.id, notification_id)
    if notification is None:
        return jsonify({"error": "Notification not found", "kind": "NOT_FOUND"}), 404
    return jsonify({"notification": notification.to_dict()})


@notifications_bp.put("/read-all")
@require_auth
def mark_all_read():
    updated = notification_service.mark_all_read(g.current_user.id)
    return jsonify({"updated": updated})


@notifications_bp.delete("/<int:notification_id>")
@require_auth
def delete_notification(notification_id: int):
    if not notification_service.delete_notification(g.current_user.id, notification_id):
        return jsonify({"error": "Notification not found", "kind": "NOT_FOUND"}), 404
    return jsonify({"message": "Notification deleted"})
