# Overview: Order lifecycle workflow; placement, cancellation, status changes, returns and refunds.

"""
Order Lifecycle Service

States:
    PENDING -> PROCESSING -> SHIPPED -> OUT_FOR_DELIVERY -> DELIVERED
Side branches:
    PENDING/PROCESSING --cancel--> CANCELLED
    DELIVERED --request--> RETURN_REQUESTED | REPLACEMENT_REQUESTED
    RETURN_REQUESTED --approve--> RETURNED
    REPLACEMENT_REQUESTED --approve--> PROCESSING
    RETURN/REPLACEMENT_REQUESTED --reject--> DELIVERED
CANCELLED and RETURNED are closed: only the refund status still moves.

TRANSACTION BOUNDARY:
Every operation runs as one unit of work under run_with_retry. The order
row, its items, the stock UPDATEs and the outbox rows announcing the change
commit together or not at all. Orders carry a version_id so two concurrent
transitions on the same order cannot both win.

PRICING:
Totals are computed here from catalog prices, the coupon and the store
delivery settings. Amounts submitted by the client are ignored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.orm import joinedload

from ..errors import ErrorKind, StorefrontError
from ..extensions import db
from ..models import Order, OrderItem, Product, User
from ..models.auth import ROLE_ADMIN, ROLE_DELIVERY
from ..models.orders import (
    ORDER_STATUS_LABELS,
    OrderStatus,
    PAYMENT_METHOD_COD,
    PAYMENT_METHOD_RAZORPAY,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_REFUNDED,
    REFUND_STATUS_COMPLETED,
    REFUND_STATUS_PENDING,
    REQUEST_TYPE_REPLACEMENT,
    REQUEST_TYPE_RETURN,
    VALID_PAYMENT_METHODS,
    VALID_REFUND_STATUSES,
    normalize_status,
)
from ..validation import require_positive_int
from . import catalog_service, coupon_service, notification_service, settings_service, user_service
from .concurrency import lock_for_update, run_with_retry
from storefront.time_utils import normalize_datetime, utcnow


class OrderError(StorefrontError):
    """Raised when an order operation is invalid or not permitted."""
    default_kind = ErrorKind.VALIDATION


ACTIVE_STATUSES = (
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
)
CANCELLABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.PROCESSING)
SETTABLE_STATUSES = ACTIVE_STATUSES + (OrderStatus.DELIVERED,)
CLOSED_STATUSES = (OrderStatus.CANCELLED, OrderStatus.RETURNED)
REQUEST_STATUSES = (OrderStatus.RETURN_REQUESTED, OrderStatus.REPLACEMENT_REQUESTED)
REFUNDABLE_STATUSES = CLOSED_STATUSES

STOCK_POLICY_SWAP = "SWAP"
STOCK_POLICY_RESHIP = "RESHIP"

REQUIRED_ADDRESS_FIELDS = ("full_address", "city", "pincode")


def _label(status: str) -> str:
    return ORDER_STATUS_LABELS.get(status, status)


# =============================================================================
# PRICING
# =============================================================================

@dataclass
class OrderQuote:
    """Server-side price breakdown for a cart."""
    lines: list[dict] = field(default_factory=list)
    subtotal_paise: int = 0
    discount_paise: int = 0
    delivery_fee_paise: int = 0
    total_paise: int = 0
    coupon_code: str | None = None

    def to_dict(self) -> dict:
        return {
            "items": [dict(line) for line in self.lines],
            "subtotal_paise": self.subtotal_paise,
            "discount_paise": self.discount_paise,
            "delivery_fee_paise": self.delivery_fee_paise,
            "total_paise": self.total_paise,
            "coupon_code": self.coupon_code,
        }


def _normalize_items(items) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise OrderError("Order must contain at least one item")

    normalized = []
    for raw in items:
        if not isinstance(raw, dict):
            raise OrderError("Each item must be an object")
        product_id = require_positive_int("product_id", raw.get("product_id"))
        quantity = require_positive_int("quantity", raw.get("quantity"))
        color = raw.get("selected_color")
        normalized.append({
            "product_id": product_id,
            "quantity": quantity,
            "selected_color": str(color).strip() if color else None,
        })
    return normalized


def _price_lines(items: list[dict]) -> list[dict]:
    ids = {item["product_id"] for item in items}
    products = {p.id: p for p in db.session.query(Product).filter(Product.id.in_(ids)).all()}

    lines = []
    for item in items:
        product = products.get(item["product_id"])
        if product is None:
            raise OrderError(
                f"Product {item['product_id']} not found",
                kind=ErrorKind.NOT_FOUND,
                details={"product_id": item["product_id"]},
            )
        if not product.is_available:
            raise OrderError(
                f"{product.name} is not available",
                kind=ErrorKind.OUT_OF_STOCK,
                details={"product_id": product.id, "available": 0},
            )
        lines.append({
            "product_id": product.id,
            "name": product.name,
            "image": product.image,
            "quantity": item["quantity"],
            "unit_price_paise": product.price_paise,
            "line_total_paise": product.price_paise * item["quantity"],
            "selected_color": item["selected_color"],
        })
    return lines


def _delivery_fee(user_id: int, subtotal_paise: int) -> int:
    settings = settings_service.get_settings()
    if settings.first_order_free_delivery and count_user_orders(user_id) == 0:
        return 0
    if subtotal_paise >= settings.free_delivery_threshold_paise:
        return 0
    return settings.delivery_fee_paise


def quote_order(user_id: int, items, coupon_code: str | None = None) -> OrderQuote:
    """
    Price a cart from current catalog prices.

    The coupon is validated against the subtotal; delivery is free on the
    first order or once the subtotal reaches the store threshold.
    """
    lines = _price_lines(_normalize_items(items))
    subtotal = sum(line["line_total_paise"] for line in lines)

    discount = 0
    code = None
    if coupon_code and str(coupon_code).strip():
        coupon = coupon_service.validate_coupon(coupon_code, subtotal)
        discount = coupon_service.compute_discount(coupon, subtotal)
        code = coupon.code

    delivery_fee = _delivery_fee(user_id, subtotal)

    return OrderQuote(
        lines=lines,
        subtotal_paise=subtotal,
        discount_paise=discount,
        delivery_fee_paise=delivery_fee,
        total_paise=subtotal - discount + delivery_fee,
        coupon_code=code,
    )


def _normalize_address(address) -> dict:
    if not isinstance(address, dict):
        raise OrderError("Shipping address is required")
    cleaned = {
        "label": str(address.get("label") or "Home").strip(),
        "full_address": str(address.get("full_address") or "").strip(),
        "city": str(address.get("city") or "").strip(),
        "pincode": str(address.get("pincode") or "").strip(),
        "phone": str(address.get("phone")).strip() if address.get("phone") else None,
    }
    missing = [f for f in REQUIRED_ADDRESS_FIELDS if not cleaned[f]]
    if missing:
        raise OrderError(f"Shipping address is missing: {', '.join(missing)}")
    return cleaned


# =============================================================================
# PLACEMENT
# =============================================================================

def place_order(
    user_id: int,
    items,
    shipping_address,
    payment_method: str = PAYMENT_METHOD_COD,
    coupon_code: str | None = None,
    payment: dict | None = None,
) -> Order:
    """
    Create an order and reserve its stock in one transaction.

    `payment` carries verified gateway ids ({gateway_order_id,
    gateway_payment_id}); when present the order is created PAID.
    Any item short on stock aborts the whole order and no stock moves.
    """
    payment_method = (payment_method or PAYMENT_METHOD_COD).strip().upper()
    if payment_method not in VALID_PAYMENT_METHODS:
        raise OrderError(f"Invalid payment method: {payment_method}")
    if payment_method == PAYMENT_METHOD_RAZORPAY and not payment:
        raise OrderError("Online payments must be verified before the order is placed")

    address = _normalize_address(shipping_address)

    def _op():
        user = db.session.get(User, user_id)
        if user is None:
            raise OrderError("User not found", kind=ErrorKind.NOT_FOUND)

        quote = quote_order(user_id, items, coupon_code)

        order = Order(
            user_id=user_id,
            status=OrderStatus.PENDING,
            subtotal_paise=quote.subtotal_paise,
            discount_paise=quote.discount_paise,
            delivery_fee_paise=quote.delivery_fee_paise,
            total_paise=quote.total_paise,
            coupon_code=quote.coupon_code,
            shipping_address=address,
            payment_method=payment_method,
            payment_status=PAYMENT_STATUS_PAID if payment else PAYMENT_STATUS_PENDING,
            gateway_order_id=(payment or {}).get("gateway_order_id"),
            gateway_payment_id=(payment or {}).get("gateway_payment_id"),
        )

        for line in quote.lines:
            catalog_service.reserve_stock(line["product_id"], line["quantity"])
            order.items.append(OrderItem(**line))

        db.session.add(order)
        db.session.flush()

        user_service.prune_wishlist(user, [line["product_id"] for line in quote.lines])
        notification_service.order_placed(order)

        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info(
        "Order %s placed by user %s (%s, total %s paise)",
        order.id, user_id, payment_method, order.total_paise,
    )
    return order


# =============================================================================
# READS
# =============================================================================

def _is_staff(actor: User) -> bool:
    return actor.role in (ROLE_ADMIN, ROLE_DELIVERY)


def list_user_orders(user_id: int) -> list[Order]:
    return (
        db.session.query(Order)
        .filter(Order.user_id == user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )


def count_user_orders(user_id: int) -> int:
    return db.session.query(Order).filter(Order.user_id == user_id).count()


def list_all_orders(status: str | None = None) -> list[Order]:
    query = db.session.query(Order).options(joinedload(Order.user))
    if status:
        code = normalize_status(status)
        if code not in ORDER_STATUS_LABELS:
            raise OrderError(f"Invalid status: {status}")
        query = query.filter(Order.status == code)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).all()


def list_active_orders() -> list[Order]:
    return (
        db.session.query(Order)
        .options(joinedload(Order.user))
        .filter(Order.status.in_(ACTIVE_STATUSES))
        .order_by(Order.created_at.asc(), Order.id.asc())
        .all()
    )


def _load_order(order_id: int, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter(Order.id == order_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if order is None:
        raise OrderError("Order not found", kind=ErrorKind.NOT_FOUND)
    return order


def get_order(order_id: int, actor: User) -> Order:
    """Read-only: owner, admin or delivery staff."""
    order = _load_order(order_id)
    if order.user_id != actor.id and not _is_staff(actor):
        raise OrderError("Not authorized to view this order", kind=ErrorKind.FORBIDDEN)
    return order


# =============================================================================
# TRANSITIONS
# =============================================================================

def cancel_order(order_id: int, actor: User, reason: str | None = None) -> Order:
    """
    Cancel a PENDING or PROCESSING order (owner or admin).

    Stock comes back and the units leave sales_count (floored at zero).
    A paid online order is flagged refund_status=PENDING; the gateway
    refund itself is a separate step (payment_service.refund_order).
    """
    def _op():
        order = _load_order(order_id, lock=True)
        is_owner = order.user_id == actor.id
        if not is_owner and actor.role != ROLE_ADMIN:
            raise OrderError("Not authorized to cancel this order", kind=ErrorKind.FORBIDDEN)

        if order.status not in CANCELLABLE_STATUSES:
            raise OrderError(
                f"Cannot cancel an order that is {_label(order.status)}",
                kind=ErrorKind.INVALID_TRANSITION,
                details={"status": order.status},
            )

        for item in order.items:
            if not catalog_service.release_stock(item.product_id, item.quantity, reverse_sale=True):
                current_app.logger.warning(
                    "Order %s: product %s no longer exists, %s unit(s) not restocked",
                    order.id, item.product_id, item.quantity,
                )

        now = utcnow()
        order.status = OrderStatus.CANCELLED
        order.cancelled_at = now
        order.cancellation_reason = (reason or "").strip() or (
            "Cancelled by customer" if is_owner else "Cancelled by store"
        )
        if order.payment_method == PAYMENT_METHOD_RAZORPAY and order.payment_status == PAYMENT_STATUS_PAID:
            order.refund_status = REFUND_STATUS_PENDING
            order.refund_amount_paise = order.total_paise

        notification_service.order_cancelled(order, cancelled_by_admin=not is_owner)

        db.session.commit()
        return order

    return run_with_retry(_op)


def update_status(order_id: int, actor: User, status: str) -> Order:
    """
    Move an order along the delivery track (admin or delivery staff).

    Setting the current status again changes nothing on the order but the
    customer is notified again. DELIVERED settles COD payment and stamps
    delivered_at, which starts the return window.
    """
    if not _is_staff(actor):
        raise OrderError("Only admin or delivery staff can update order status", kind=ErrorKind.FORBIDDEN)

    target = normalize_status(status)
    if target not in ORDER_STATUS_LABELS:
        raise OrderError(f"Invalid status: {status}")
    if target not in SETTABLE_STATUSES:
        raise OrderError(
            f"Status {_label(target)} cannot be set directly; use the cancel or return operations",
            kind=ErrorKind.INVALID_TRANSITION,
        )

    def _op():
        order = _load_order(order_id, lock=True)

        if order.status in CLOSED_STATUSES:
            raise OrderError(
                f"Order is {_label(order.status)} and can no longer change status",
                kind=ErrorKind.INVALID_TRANSITION,
                details={"status": order.status},
            )
        if order.status in REQUEST_STATUSES:
            raise OrderError(
                f"Order has a pending {_label(order.status).lower()}; process it first",
                kind=ErrorKind.INVALID_TRANSITION,
                details={"status": order.status},
            )

        if order.status != target:
            previous = order.status
            order.status = target
            if target == OrderStatus.DELIVERED:
                order.delivered_at = utcnow()
            elif previous == OrderStatus.DELIVERED:
                order.delivered_at = None

        if target == OrderStatus.DELIVERED and order.payment_status == PAYMENT_STATUS_PENDING:
            order.payment_status = PAYMENT_STATUS_PAID

        notification_service.order_status_changed(order)

        db.session.commit()
        return order

    return run_with_retry(_op)


def _normalize_return_items(order: Order, items) -> list[dict]:
    ordered: dict[int, int] = {}
    for item in order.items:
        ordered[item.product_id] = ordered.get(item.product_id, 0) + item.quantity

    if items is None:
        return [{"product_id": pid, "quantity": qty} for pid, qty in ordered.items()]

    if not isinstance(items, list) or not items:
        raise OrderError("Select at least one item to return")

    requested: dict[int, int] = {}
    for raw in items:
        if not isinstance(raw, dict):
            raise OrderError("Each return item must be an object")
        product_id = require_positive_int("product_id", raw.get("product_id"))
        quantity = require_positive_int("quantity", raw.get("quantity", ordered.get(product_id)))
        if product_id not in ordered:
            raise OrderError(
                f"Product {product_id} is not part of this order",
                details={"product_id": product_id},
            )
        requested[product_id] = requested.get(product_id, 0) + quantity
        if requested[product_id] > ordered[product_id]:
            raise OrderError(
                f"Cannot return more than {ordered[product_id]} unit(s) of product {product_id}",
                details={"product_id": product_id, "ordered": ordered[product_id]},
            )

    return [{"product_id": pid, "quantity": qty} for pid, qty in requested.items()]


def request_return(
    order_id: int,
    actor: User,
    reason: str,
    request_type: str = REQUEST_TYPE_RETURN,
    items=None,
    now: datetime | None = None,
) -> Order:
    """
    Open a return or replacement request on a DELIVERED order.

    The window is measured from delivered_at; rows delivered before that
    column existed fall back to updated_at.
    """
    request_type = (request_type or REQUEST_TYPE_RETURN).strip().upper()
    if request_type not in (REQUEST_TYPE_RETURN, REQUEST_TYPE_REPLACEMENT):
        raise OrderError("request_type must be RETURN or REPLACEMENT")
    reason = (reason or "").strip()
    if not reason:
        raise OrderError("A reason is required")

    now = normalize_datetime(now) or utcnow()
    window_days = int(current_app.config.get("RETURN_WINDOW_DAYS", 7))

    def _op():
        order = _load_order(order_id, lock=True)
        if order.user_id != actor.id and actor.role != ROLE_ADMIN:
            raise OrderError("Not authorized to return this order", kind=ErrorKind.FORBIDDEN)

        if order.status != OrderStatus.DELIVERED:
            raise OrderError(
                f"Only delivered orders can be returned (order is {_label(order.status)})",
                kind=ErrorKind.INVALID_TRANSITION,
                details={"status": order.status},
            )

        delivered_at = normalize_datetime(order.delivered_at or order.updated_at)
        if delivered_at is None or now - delivered_at > timedelta(days=window_days):
            raise OrderError(
                f"Return window of {window_days} days has expired",
                kind=ErrorKind.RETURN_WINDOW_EXPIRED,
            )

        order.return_items = _normalize_return_items(order, items)
        order.request_type = request_type
        order.return_reason = reason
        order.return_requested_at = now
        order.return_processed_at = None
        order.return_rejected_at = None
        order.return_rejection_reason = None
        order.status = (
            OrderStatus.REPLACEMENT_REQUESTED
            if request_type == REQUEST_TYPE_REPLACEMENT
            else OrderStatus.RETURN_REQUESTED
        )

        notification_service.return_requested(order)

        db.session.commit()
        return order

    return run_with_retry(_op)


def _replacement_policy() -> str:
    policy = str(current_app.config.get("REPLACEMENT_STOCK_POLICY", STOCK_POLICY_SWAP)).strip().upper()
    if policy not in (STOCK_POLICY_SWAP, STOCK_POLICY_RESHIP):
        current_app.logger.warning("Unknown REPLACEMENT_STOCK_POLICY %r, using SWAP", policy)
        return STOCK_POLICY_SWAP
    return policy


def process_return(
    order_id: int,
    actor: User,
    action: str,
    refund_amount=None,
    rejection_reason: str | None = None,
) -> Order:
    """
    Approve or reject a pending return/replacement (admin).

    approve RETURN       -> RETURNED; returned units go back on the shelf
                            (sales_count untouched); refund PENDING for the
                            given amount or the order total.
    approve REPLACEMENT  -> PROCESSING; stock per REPLACEMENT_STOCK_POLICY
                            (SWAP: unchanged, RESHIP: reserve the units).
    reject               -> DELIVERED with the rejection recorded.
    """
    if actor.role != ROLE_ADMIN:
        raise OrderError("Only admins can process returns", kind=ErrorKind.FORBIDDEN)

    action = (action or "").strip().lower()
    if action not in ("approve", "reject"):
        raise OrderError("action must be approve or reject")

    def _op():
        order = _load_order(order_id, lock=True)
        if order.status not in REQUEST_STATUSES:
            raise OrderError(
                f"Order has no pending return or replacement (order is {_label(order.status)})",
                kind=ErrorKind.INVALID_TRANSITION,
                details={"status": order.status},
            )

        request_type = order.request_type or (
            REQUEST_TYPE_REPLACEMENT
            if order.status == OrderStatus.REPLACEMENT_REQUESTED
            else REQUEST_TYPE_RETURN
        )
        return_items = order.return_items or [
            {"product_id": item.product_id, "quantity": item.quantity} for item in order.items
        ]
        now = utcnow()

        if action == "reject":
            order.status = OrderStatus.DELIVERED
            order.return_rejected_at = now
            order.return_processed_at = now
            order.return_rejection_reason = (rejection_reason or "").strip() or "Request rejected"

        elif request_type == REQUEST_TYPE_RETURN:
            if refund_amount is None:
                amount = order.total_paise
            else:
                if isinstance(refund_amount, bool):
                    raise OrderError("refund_amount_paise must be an integer")
                try:
                    amount = int(refund_amount)
                except (TypeError, ValueError):
                    raise OrderError("refund_amount_paise must be an integer")
                if amount < 0 or amount > order.total_paise:
                    raise OrderError(
                        "refund_amount_paise must be between 0 and the order total",
                        details={"total_paise": order.total_paise},
                    )

            for item in return_items:
                if not catalog_service.release_stock(item["product_id"], item["quantity"], reverse_sale=False):
                    current_app.logger.warning(
                        "Order %s: returned product %s no longer exists, not restocked",
                        order.id, item["product_id"],
                    )

            order.status = OrderStatus.RETURNED
            order.refund_amount_paise = amount
            order.refund_status = REFUND_STATUS_PENDING
            order.return_processed_at = now

        else:
            if _replacement_policy() == STOCK_POLICY_RESHIP:
                for item in return_items:
                    catalog_service.reserve_stock(item["product_id"], item["quantity"], record_sale=False)
            order.status = OrderStatus.PROCESSING
            order.delivered_at = None
            order.return_processed_at = now

        notification_service.return_processed(order, approved=action == "approve")

        db.session.commit()
        return order

    return run_with_retry(_op)


def update_refund_status(order_id: int, actor: User, refund_status: str) -> Order:
    """
    Record refund progress on a CANCELLED or RETURNED order (admin).

    COMPLETED stamps refunded_at; money that was collected is then marked
    REFUNDED.
    """
    if actor.role != ROLE_ADMIN:
        raise OrderError("Only admins can update refund status", kind=ErrorKind.FORBIDDEN)

    code = (refund_status or "").strip().upper()
    if code not in VALID_REFUND_STATUSES:
        raise OrderError(f"refund_status must be one of {', '.join(VALID_REFUND_STATUSES)}")

    def _op():
        order = _load_order(order_id, lock=True)
        if order.status not in REFUNDABLE_STATUSES:
            raise OrderError(
                f"Refunds apply only to cancelled or returned orders (order is {_label(order.status)})",
                kind=ErrorKind.INVALID_TRANSITION,
                details={"status": order.status},
            )

        order.refund_status = code
        if order.refund_amount_paise is None:
            order.refund_amount_paise = order.total_paise
        if code == REFUND_STATUS_COMPLETED:
            order.refunded_at = utcnow()
            if order.payment_status == PAYMENT_STATUS_PAID:
                order.payment_status = PAYMENT_STATUS_REFUNDED

        notification_service.refund_status_changed(order)

        db.session.commit()
        return order

    return run_with_retry(_op)
