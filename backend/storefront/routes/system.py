# backend/storefront/routes/system.py
"""
System health endpoint.

Liveness plus a database round-trip and a look at the notification outbox
backlog (a growing FAILED count means a transport is down).
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import OutboxEvent, Product, User
from ..models.communications import OUTBOX_STATUS_DISPATCHING, OUTBOX_STATUS_FAILED, OUTBOX_STATUS_PENDING
from storefront.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        user_count = db.session.query(User).count()
        product_count = db.session.query(Product).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"users": user_count, "products": product_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_outbox_health() -> dict:
    start_time = time.time()
    try:
        pending = db.session.query(OutboxEvent).filter_by(status=OUTBOX_STATUS_PENDING).count()
        failed = db.session.query(OutboxEvent).filter_by(status=OUTBOX_STATUS_FAILED).count()
        dispatching = db.session.query(OutboxEvent).filter_by(status=OUTBOX_STATUS_DISPATCHING).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "degraded" if failed else "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"pending": pending, "dispatching": dispatching, "failed": failed},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Outbox health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Outbox error",
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (still serving orders)
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    outbox_health = check_outbox_health()

    all_checks = [database_health, outbox_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "notification_outbox": outbox_health,
        },
    }
    return response, http_status
