from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


DISCOUNT_TYPE_PERCENTAGE = "PERCENTAGE"
DISCOUNT_TYPE_FLAT = "FLAT"
VALID_DISCOUNT_TYPES = (DISCOUNT_TYPE_PERCENTAGE, DISCOUNT_TYPE_FLAT)


class Coupon(db.Model):
    """
    Checkout coupon.

    code is always stored uppercase; lookups uppercase the submitted code.
    discount_value is basis points for PERCENTAGE (1000 = 10%) and paise
    for FLAT.
    """
    __tablename__ = "coupons"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False, unique=True, index=True)

    discount_type = db.Column(db.String(16), nullable=False)  # PERCENTAGE, FLAT
    discount_value = db.Column(db.Integer, nullable=False)
    min_order_value_paise = db.Column(db.Integer, nullable=False, default=0)

    expiry_date = db.Column(db.DateTime(timezone=True), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "min_order_value_paise": self.min_order_value_paise,
            "expiry_date": to_utc_z(self.expiry_date),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
