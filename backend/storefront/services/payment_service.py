# Overview: Service-layer operations for payments; gateway checkout, COD orders and refunds.

"""
Payment Service

GATEWAY CHECKOUT:
1. create_payment_intent: quote the cart server-side and open a gateway
   order for exactly that total.
2. The browser pays the gateway directly and receives
   (gateway_order_id, gateway_payment_id, signature).
3. verify_and_place_order: recompute the signature, confirm the gateway
   order amount matches a fresh quote, then place the order PAID.

A signature mismatch creates nothing and reserves nothing. Verification is
idempotent on gateway_payment_id (unique column): replaying a verified
payment returns the order it already created.

REFUNDS:
Full refunds of total_paise for paid online orders only. The order is
marked refund_status=PROCESSING (committed) before the gateway call so a
second concurrent refund request is refused instead of refunding twice.
"""

from __future__ import annotations

import hashlib
import hmac

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import ErrorKind, StorefrontError
from ..extensions import db
from ..models import Order, User
from ..models.auth import ROLE_ADMIN
from ..models.orders import (
    OrderStatus,
    PAYMENT_METHOD_COD,
    PAYMENT_METHOD_RAZORPAY,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_REFUNDED,
    REFUND_STATUS_COMPLETED,
    REFUND_STATUS_FAILED,
    REFUND_STATUS_PROCESSING,
)
from . import notification_service, order_service
from .concurrency import lock_for_update, run_with_retry
from .gateway import GatewayError, get_gateway
from storefront.time_utils import utcnow


class PaymentError(StorefrontError):
    """Raised when a payment cannot be verified, placed or refunded."""
    default_kind = ErrorKind.VALIDATION


def verify_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    """HMAC-SHA256 of "order_id|payment_id" with the key secret, compared in constant time."""
    if not (order_id and payment_id and signature and secret):
        return False
    expected = hmac.new(
        secret.encode("utf-8"),
        f"{order_id}|{payment_id}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, str(signature))


def create_payment_intent(user_id: int, items, coupon_code: str | None = None) -> dict:
    quote = order_service.quote_order(user_id, items, coupon_code)
    if quote.total_paise <= 0:
        raise PaymentError("Order total must be greater than zero for online payment")

    gateway = get_gateway()
    gateway_order = gateway.create_order(
        quote.total_paise,
        receipt=f"u{user_id}-{int(utcnow().timestamp())}",
        notes={"user_id": str(user_id), "coupon_code": quote.coupon_code or ""},
    )
    return {
        "gateway_order": gateway_order,
        "key_id": gateway.key_id,
        "quote": quote.to_dict(),
    }


def _existing_order(gateway_payment_id: str, user_id: int) -> Order | None:
    order = db.session.query(Order).filter_by(gateway_payment_id=gateway_payment_id).first()
    if order is not None and order.user_id != user_id:
        raise PaymentError(
            "Payment already belongs to another order",
            kind=ErrorKind.CONFLICT,
        )
    return order


def verify_and_place_order(
    user_id: int,
    *,
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: str,
    items,
    shipping_address,
    coupon_code: str | None = None,
) -> tuple[Order, bool]:
    """
    Verify the gateway callback and place the order.

    Returns (order, created). created is False when this payment was
    already turned into an order by an earlier call.
    """
    secret = current_app.config.get("RAZORPAY_KEY_SECRET", "")
    if not verify_signature(gateway_order_id, gateway_payment_id, signature, secret):
        current_app.logger.warning(
            "Payment signature mismatch for gateway order %s (user %s)", gateway_order_id, user_id
        )
        raise PaymentError("Payment verification failed", kind=ErrorKind.PAYMENT_VERIFICATION_FAILED)

    existing = _existing_order(gateway_payment_id, user_id)
    if existing is not None:
        return existing, False

    quote = order_service.quote_order(user_id, items, coupon_code)
    gateway_order = get_gateway().fetch_order(gateway_order_id)
    paid_amount = gateway_order.get("amount")
    if paid_amount is not None and int(paid_amount) != quote.total_paise:
        current_app.logger.warning(
            "Gateway order %s amount %s does not match quote %s",
            gateway_order_id, paid_amount, quote.total_paise,
        )
        raise PaymentError(
            "Paid amount does not match the order total",
            kind=ErrorKind.PAYMENT_VERIFICATION_FAILED,
            details={"paid_paise": int(paid_amount), "total_paise": quote.total_paise},
        )

    try:
        order = order_service.place_order(
            user_id,
            items,
            shipping_address,
            payment_method=PAYMENT_METHOD_RAZORPAY,
            coupon_code=coupon_code,
            payment={
                "gateway_order_id": gateway_order_id,
                "gateway_payment_id": gateway_payment_id,
            },
        )
    except IntegrityError:
        # A concurrent verify for the same payment committed first
        existing = _existing_order(gateway_payment_id, user_id)
        if existing is None:
            raise
        return existing, False

    return order, True


def place_cod_order(user_id: int, items, shipping_address, coupon_code: str | None = None) -> Order:
    return order_service.place_order(
        user_id,
        items,
        shipping_address,
        payment_method=PAYMENT_METHOD_COD,
        coupon_code=coupon_code,
    )


def _claim_refund(order_id: int, actor: User) -> Order:
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise PaymentError("Order not found", kind=ErrorKind.NOT_FOUND)

        is_owner_of_cancelled = order.user_id == actor.id and order.status == OrderStatus.CANCELLED
        if actor.role != ROLE_ADMIN and not is_owner_of_cancelled:
            raise PaymentError("Not authorized to refund this order", kind=ErrorKind.FORBIDDEN)

        if order.payment_method != PAYMENT_METHOD_RAZORPAY or not order.gateway_payment_id:
            raise PaymentError("Only online payments can be refunded through the gateway")
        if order.payment_status == PAYMENT_STATUS_REFUNDED:
            raise PaymentError("Order has already been refunded", kind=ErrorKind.INVALID_TRANSITION)
        if order.payment_status != PAYMENT_STATUS_PAID:
            raise PaymentError("Order has not been paid", kind=ErrorKind.INVALID_TRANSITION)
        if order.refund_status == REFUND_STATUS_PROCESSING:
            raise PaymentError("A refund is already in progress", kind=ErrorKind.CONFLICT)

        order.refund_status = REFUND_STATUS_PROCESSING
        order.refund_amount_paise = order.total_paise
        db.session.commit()
        return order

    return run_with_retry(_op)


def _mark_refund_failed(order_id: int) -> None:
    def _fail():
        failed = db.session.get(Order, order_id)
        failed.refund_status = REFUND_STATUS_FAILED
        notification_service.refund_status_changed(failed)
        db.session.commit()

    run_with_retry(_fail)


def refund_order(order_id: int, actor: User, reason: str | None = None) -> Order:
    """
    Refund a paid online order in full through the gateway.

    Admins may refund any eligible order; a customer's cancel flow may
    refund their own cancelled order. Any failure after the PROCESSING
    claim leaves refund_status FAILED so the refund can be retried.
    """
    order = _claim_refund(order_id, actor)

    try:
        refund = get_gateway().refund(
            order.gateway_payment_id,
            order.total_paise,
            notes={"order_id": str(order.id), "reason": reason or ""},
        )
    except GatewayError as exc:
        current_app.logger.error("Refund for order %s failed: %s", order_id, exc.message)
        _mark_refund_failed(order_id)
        raise PaymentError(exc.message, kind=ErrorKind.GATEWAY_ERROR, details=exc.details)
    except Exception:
        current_app.logger.exception("Refund for order %s failed unexpectedly", order_id)
        _mark_refund_failed(order_id)
        raise

    def _complete():
        done = db.session.get(Order, order_id)
        done.payment_status = PAYMENT_STATUS_REFUNDED
        done.refund_status = REFUND_STATUS_COMPLETED
        done.refunded_at = utcnow()
        done.gateway_refund_id = refund.get("id")
        notification_service.refund_status_changed(done)
        db.session.commit()
        return done

    order = run_with_retry(_complete)
    current_app.logger.info("Order %s refunded (%s paise)", order.id, order.total_paise)
    return order
