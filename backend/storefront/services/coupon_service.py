# Overview: Service-layer operations for coupons; CRUD, validation and discount math.

"""
Coupon Service

A coupon is usable iff:
    is_active AND expiry_date > now AND order_total >= min_order_value

Codes are stored and matched uppercase. Percentage values are basis
points (1000 = 10%) and the discount is rounded half-up to the paisa.
Flat discounts never exceed the order total.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.exc import IntegrityError

from ..errors import ErrorKind, StorefrontError
from ..extensions import db
from ..models import Coupon
from ..models.promotions import DISCOUNT_TYPE_FLAT, DISCOUNT_TYPE_PERCENTAGE, VALID_DISCOUNT_TYPES
from ..validation import ModelValidationPolicy, validate_payload
from storefront.time_utils import normalize_datetime, utcnow


class CouponError(StorefrontError):
    """Raised for coupon validation and CRUD failures."""
    default_kind = ErrorKind.INVALID_COUPON


COUPON_POLICY = ModelValidationPolicy(
    writable_fields={
        "code", "discount_type", "discount_value", "min_order_value_paise",
        "expiry_date", "is_active",
    },
    required_on_create={"code", "discount_type", "discount_value", "expiry_date"},
)

MAX_PERCENTAGE_BPS = 10_000


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def format_rupees(paise: int) -> str:
    """50000 -> '₹500', 49950 -> '₹499.50'."""
    if paise % 100 == 0:
        return f"₹{paise // 100}"
    return f"₹{paise / 100:.2f}"


def _clean(data: dict, *, partial: bool) -> dict:
    data = dict(data or {})
    if "code" in data and data["code"] is not None:
        data["code"] = normalize_code(data["code"])
    if "discount_type" in data and data["discount_type"] is not None:
        data["discount_type"] = str(data["discount_type"]).strip().upper()

    patch = validate_payload(model=Coupon, payload=data, policy=COUPON_POLICY, partial=partial)

    if "discount_type" in patch and patch["discount_type"] not in VALID_DISCOUNT_TYPES:
        raise CouponError(
            f"discount_type must be one of {', '.join(VALID_DISCOUNT_TYPES)}",
            kind=ErrorKind.VALIDATION,
        )
    if "min_order_value_paise" in patch and (patch["min_order_value_paise"] or 0) < 0:
        raise CouponError("min_order_value_paise must be >= 0", kind=ErrorKind.VALIDATION)
    return patch


def _check_value(discount_type: str, discount_value: int) -> None:
    if discount_value is None or discount_value <= 0:
        raise CouponError("discount_value must be > 0", kind=ErrorKind.VALIDATION)
    if discount_type == DISCOUNT_TYPE_PERCENTAGE and discount_value > MAX_PERCENTAGE_BPS:
        raise CouponError(
            "Percentage discount_value is in basis points and cannot exceed 10000",
            kind=ErrorKind.VALIDATION,
        )


def get_coupon(coupon_id: int) -> Coupon:
    coupon = db.session.get(Coupon, coupon_id)
    if not coupon:
        raise CouponError("Coupon not found", kind=ErrorKind.NOT_FOUND)
    return coupon


def create_coupon(data: dict) -> Coupon:
    patch = _clean(data, partial=False)
    _check_value(patch["discount_type"], patch["discount_value"])

    if db.session.query(Coupon).filter_by(code=patch["code"]).first():
        raise CouponError(f"Coupon {patch['code']} already exists", kind=ErrorKind.CONFLICT)

    coupon = Coupon(**patch)
    db.session.add(coupon)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise CouponError(f"Coupon {patch['code']} already exists", kind=ErrorKind.CONFLICT)
    return coupon


def update_coupon(coupon_id: int, data: dict) -> Coupon:
    coupon = get_coupon(coupon_id)
    patch = _clean(data, partial=True)

    if "code" in patch and patch["code"] != coupon.code:
        if db.session.query(Coupon).filter_by(code=patch["code"]).first():
            raise CouponError(f"Coupon {patch['code']} already exists", kind=ErrorKind.CONFLICT)

    _check_value(
        patch.get("discount_type", coupon.discount_type),
        patch.get("discount_value", coupon.discount_value),
    )

    for key, value in patch.items():
        setattr(coupon, key, value)
    db.session.commit()
    return coupon


def delete_coupon(coupon_id: int) -> None:
    coupon = get_coupon(coupon_id)
    db.session.delete(coupon)
    db.session.commit()


def list_coupons() -> list[Coupon]:
    return db.session.query(Coupon).order_by(Coupon.created_at.desc(), Coupon.id.desc()).all()


def list_active_coupons(now: datetime | None = None) -> list[Coupon]:
    now = normalize_datetime(now) or utcnow()
    return (
        db.session.query(Coupon)
        .filter(Coupon.is_active.is_(True), Coupon.expiry_date > now)
        .order_by(Coupon.min_order_value_paise.asc(), Coupon.id.asc())
        .all()
    )


def validate_coupon(code: str, order_total_paise: int, now: datetime | None = None) -> Coupon:
    """
    Return the coupon if it can be applied to an order of this total.

    Checks run in a fixed order so the first failing rule is reported:
    existence, active flag, expiry, minimum order value.
    """
    normalized = normalize_code(code)
    if not normalized:
        raise CouponError("Coupon code is required", kind=ErrorKind.VALIDATION)

    coupon = db.session.query(Coupon).filter_by(code=normalized).first()
    if coupon is None:
        raise CouponError("Invalid coupon code", kind=ErrorKind.NOT_FOUND)

    if not coupon.is_active:
        raise CouponError("Coupon is not active")

    now = normalize_datetime(now) or utcnow()
    expiry = normalize_datetime(coupon.expiry_date)
    if expiry is None or expiry <= now:
        raise CouponError("Coupon has expired")

    if order_total_paise < coupon.min_order_value_paise:
        raise CouponError(
            f"Minimum order amount of {format_rupees(coupon.min_order_value_paise)} required",
            details={"min_order_value_paise": coupon.min_order_value_paise},
        )

    return coupon


def compute_discount(coupon: Coupon, order_total_paise: int) -> int:
    if order_total_paise <= 0:
        return 0
    if coupon.discount_type == DISCOUNT_TYPE_PERCENTAGE:
        # Half-up rounding to the nearest paisa
        return (order_total_paise * coupon.discount_value + MAX_PERCENTAGE_BPS // 2) // MAX_PERCENTAGE_BPS
    if coupon.discount_type == DISCOUNT_TYPE_FLAT:
        return min(coupon.discount_value, order_total_paise)
    raise CouponError(f"Unknown discount type: {coupon.discount_type}", kind=ErrorKind.VALIDATION)
