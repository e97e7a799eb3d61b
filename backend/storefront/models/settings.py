from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class StoreSettings(db.Model):
    """
    Store-wide business settings (singleton row).

    Delivery is free on a customer's first order, or when the order
    subtotal reaches free_delivery_threshold_paise.
    """
    __tablename__ = "store_settings"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    store_name = db.Column(db.String(255), nullable=False, default="Saree Storefront")
    delivery_fee_paise = db.Column(db.Integer, nullable=False, default=4000)
    free_delivery_threshold_paise = db.Column(db.Integer, nullable=False, default=49900)
    first_order_free_delivery = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "store_name": self.store_name,
            "delivery_fee_paise": self.delivery_fee_paise,
            "free_delivery_threshold_paise": self.free_delivery_threshold_paise,
            "first_order_free_delivery": self.first_order_free_delivery,
            "version_id": self.version_id,
            "updated_at": to_utc_z(self.updated_at),
        }
