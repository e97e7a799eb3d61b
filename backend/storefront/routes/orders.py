# Overview: Flask API routes for the order lifecycle; parses input and returns JSON responses.

"""
Order API Routes

DESIGN:
- Customers place COD orders here; online payments go through
  /api/payment/verify-payment so the order is only created once the
  gateway signature checks out.
- Every transition (cancel, status, return, refund) is a PUT on the order.
- Successful transitions commit first, then queued notifications are
  dispatched. A dispatch failure never changes the response.

SECURITY:
- Customers see and cancel/return only their own orders
- Admin and delivery staff move orders along the delivery track
- Return processing and refund status are admin-only
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..errors import StorefrontError
from ..models.auth import ROLE_ADMIN, ROLE_DELIVERY
from ..models.orders import (
    PAYMENT_METHOD_COD,
    PAYMENT_METHOD_RAZORPAY,
    PAYMENT_STATUS_PAID,
    REFUND_STATUS_PENDING,
)
from ..services import notification_service, order_service, payment_service, user_service


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _include_customer() -> bool:
    return g.current_user.role in (ROLE_ADMIN, ROLE_DELIVERY)


# =============================================================================
# PLACEMENT
# =============================================================================

@orders_bp.post("")
@require_auth
def create_order_route():
    """
    Place a cash-on-delivery order.

    Request body:
    {
        "items": [{"product_id": 1, "quantity": 2, "selected_color": "Red"}],
        "shipping_address": {"label", "full_address", "city", "pincode", "phone"},
        "address_id": 3,          (optional, instead of shipping_address)
        "coupon_code": "WELCOME50" (optional)
    }

    Totals are computed server-side; any totals in the body are ignored.

    Returns:
        201: Order created (status PENDING)
        400: Invalid input, out of stock, invalid coupon
    """
    try:
        data = request.get_json() or {}
        user = g.current_user

        address = user_service.resolve_shipping_address(
            user, data.get("shipping_address"), data.get("address_id")
        )
        order = order_service.place_order(
            user.id,
            data.get("items"),
            address,
            payment_method=data.get("payment_method") or PAYMENT_METHOD_COD,
            coupon_code=data.get("coupon_code"),
        )
        notification_service.dispatch_after_commit()
        return jsonify({"order": order.to_dict()}), 201

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/quote")
@require_auth
def quote_order_route():
    """Price a cart without placing it: {"items", "coupon_code"?}."""
    try:
        data = request.get_json() or {}
        quote = order_service.quote_order(g.current_user.id, data.get("items"), data.get("coupon_code"))
        return jsonify({"quote": quote.to_dict()})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to quote order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# READS
# =============================================================================

@orders_bp.get("/my-orders")
@require_auth
def my_orders_route():
    orders = order_service.list_user_orders(g.current_user.id)
    return jsonify({"orders": [o.to_dict() for o in orders]})


@orders_bp.get("/count")
@require_auth
def my_order_count_route():
    return jsonify({"count": order_service.count_user_orders(g.current_user.id)})


@orders_bp.get("")
@require_auth
@require_role(ROLE_ADMIN)
def list_orders_route():
    try:
        orders = order_service.list_all_orders(request.args.get("status"))
        return jsonify({"orders": [o.to_dict(include_customer=True) for o in orders]})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status


@orders_bp.get("/delivery")
@require_auth
@require_role(ROLE_ADMIN, ROLE_DELIVERY)
def delivery_orders_route():
    orders = order_service.list_active_orders()
    return jsonify({"orders": [o.to_dict(include_customer=True) for o in orders]})


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id, g.current_user)
        return jsonify({"order": order.to_dict(include_customer=_include_customer())})
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status


# =============================================================================
# TRANSITIONS
# =============================================================================

@orders_bp.put("/<int:order_id>/cancel")
@require_auth
def cancel_order_route(order_id: int):
    """
    Cancel a Pending or Processing order (owner or admin).

    Paid online orders are refunded through the gateway right away; if the
    gateway refund fails the cancellation still stands and the order shows
    refund_status FAILED for an admin to retry.
    """
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.cancel_order(order_id, g.current_user, data.get("reason"))

        if (
            order.payment_method == PAYMENT_METHOD_RAZORPAY
            and order.payment_status == PAYMENT_STATUS_PAID
            and order.refund_status == REFUND_STATUS_PENDING
        ):
            try:
                order = payment_service.refund_order(order.id, g.current_user, reason="Order cancelled")
            except StorefrontError as refund_error:
                current_app.logger.warning(
                    "Automatic refund for cancelled order %s failed: %s", order_id, refund_error.message
                )
                order = order_service.get_order(order_id, g.current_user)

        notification_service.dispatch_after_commit()
        return jsonify({"order": order.to_dict(), "message": "Order cancelled"})

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>/status")
@require_auth
@require_role(ROLE_ADMIN, ROLE_DELIVERY)
def update_status_route(order_id: int):
    """Request body: {"status": "SHIPPED"} (display labels such as "Out for Delivery" accepted)."""
    try:
        data = request.get_json() or {}
        if not data.get("status"):
            return jsonify({"error": "status is required", "kind": "VALIDATION"}), 400

        order = order_service.update_status(order_id, g.current_user, data["status"])
        notification_service.dispatch_after_commit()
        return jsonify({"order": order.to_dict(include_customer=True)})

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>/return")
@require_auth
def request_return_route(order_id: int):
    """
    Request a return or replacement on a delivered order.

    Request body:
    {
        "reason": "Colour differs from photo",
        "request_type": "RETURN" | "REPLACEMENT",   (default RETURN)
        "items": [{"product_id": 1, "quantity": 1}]  (optional, default all)
    }
    """
    try:
        data = request.get_json() or {}
        order = order_service.request_return(
            order_id,
            g.current_user,
            reason=data.get("reason"),
            request_type=data.get("request_type") or "RETURN",
            items=data.get("items"),
        )
        notification_service.dispatch_after_commit()
        return jsonify({"order": order.to_dict()})

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to request return")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>/return/process")
@require_auth
@require_role(ROLE_ADMIN)
def process_return_route(order_id: int):
    """
    Request body:
    {
        "action": "approve" | "reject",
        "refund_amount_paise": 120000,   (optional, approve RETURN only)
        "rejection_reason": "..."         (optional, reject only)
    }
    """
    try:
        data = request.get_json() or {}
        order = order_service.process_return(
            order_id,
            g.current_user,
            data.get("action"),
            refund_amount=data.get("refund_amount_paise"),
            rejection_reason=data.get("rejection_reason"),
        )
        notification_service.dispatch_after_commit()
        return jsonify({"order": order.to_dict(include_customer=True)})

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to process return")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>/refund")
@require_auth
@require_role(ROLE_ADMIN)
def update_refund_status_route(order_id: int):
    """Request body: {"refund_status": "PENDING" | "PROCESSING" | "COMPLETED" | "FAILED"}"""
    try:
        data = request.get_json() or {}
        order = order_service.update_refund_status(order_id, g.current_user, data.get("refund_status"))
        notification_service.dispatch_after_commit()
        return jsonify({"order": order.to_dict(include_customer=True)})

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update refund status")
        return jsonify({"error": "Internal server error"}), 500
