from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class OrderStatus:
    """Order lifecycle states."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURN_REQUESTED = "RETURN_REQUESTED"
    REPLACEMENT_REQUESTED = "REPLACEMENT_REQUESTED"
    RETURNED = "RETURNED"


ORDER_STATUS_LABELS = {
    OrderStatus.PENDING: "Pending",
    OrderStatus.PROCESSING: "Processing",
    OrderStatus.SHIPPED: "Shipped",
    OrderStatus.OUT_FOR_DELIVERY: "Out for Delivery",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELLED: "Cancelled",
    OrderStatus.RETURN_REQUESTED: "Return Requested",
    OrderStatus.REPLACEMENT_REQUESTED: "Replacement Requested",
    OrderStatus.RETURNED: "Returned",
}

PAYMENT_METHOD_COD = "COD"
PAYMENT_METHOD_RAZORPAY = "RAZORPAY"
VALID_PAYMENT_METHODS = (PAYMENT_METHOD_COD, PAYMENT_METHOD_RAZORPAY)

PAYMENT_STATUS_PENDING = "PENDING"
PAYMENT_STATUS_PAID = "PAID"
PAYMENT_STATUS_REFUNDED = "REFUNDED"

REFUND_STATUS_PENDING = "PENDING"
REFUND_STATUS_PROCESSING = "PROCESSING"
REFUND_STATUS_COMPLETED = "COMPLETED"
REFUND_STATUS_FAILED = "FAILED"
VALID_REFUND_STATUSES = (
    REFUND_STATUS_PENDING,
    REFUND_STATUS_PROCESSING,
    REFUND_STATUS_COMPLETED,
    REFUND_STATUS_FAILED,
)

REQUEST_TYPE_RETURN = "RETURN"
REQUEST_TYPE_REPLACEMENT = "REPLACEMENT"


def normalize_status(value: str | None) -> str | None:
    """Accept codes or display labels ("Out for Delivery") in any case."""
    if value is None:
        return None
    code = str(value).strip().upper().replace("-", "_").replace(" ", "_")
    return code or None


class Order(db.Model):
    """
    Customer order.

    WHY two status axes: `status` tracks delivery progress while
    `payment_status` tracks settlement. COD orders become PAID only on
    delivery; a gateway payment can be REFUNDED after delivery.

    Line items are snapshots (see OrderItem) so catalog edits never rewrite
    historical orders.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_user_created", "user_id", "created_at"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, default=OrderStatus.PENDING, index=True)

    # Pricing (all amounts in paise, computed server-side)
    subtotal_paise = db.Column(db.Integer, nullable=False, default=0)
    discount_paise = db.Column(db.Integer, nullable=False, default=0)
    delivery_fee_paise = db.Column(db.Integer, nullable=False, default=0)
    total_paise = db.Column(db.Integer, nullable=False)
    coupon_code = db.Column(db.String(64), nullable=True)

    # Embedded value object: {label, full_address, city, pincode, phone?}
    shipping_address = db.Column(db.JSON, nullable=False)

    # Payment
    payment_method = db.Column(db.String(16), nullable=False, default=PAYMENT_METHOD_COD)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_PENDING, index=True)
    gateway_order_id = db.Column(db.String(64), nullable=True, index=True)
    gateway_payment_id = db.Column(db.String(64), nullable=True, unique=True)
    gateway_refund_id = db.Column(db.String(64), nullable=True)

    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    # Return / replacement workflow
    request_type = db.Column(db.String(16), nullable=True)  # RETURN, REPLACEMENT
    return_reason = db.Column(db.Text, nullable=True)
    return_items = db.Column(db.JSON, nullable=True)  # [{product_id, quantity}]
    return_requested_at = db.Column(db.DateTime(timezone=True), nullable=True)
    return_processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    return_rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    return_rejection_reason = db.Column(db.Text, nullable=True)

    # Refund tracking
    refund_amount_paise = db.Column(db.Integer, nullable=True)
    refund_status = db.Column(db.String(16), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    user = db.relationship("User", backref=db.backref("orders", lazy=True))
    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy="selectin",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} user_id={self.user_id} status={self.status}>"

    @property
    def room(self) -> str:
        return f"order-{self.id}"

    def to_dict(self, include_customer: bool = False) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status,
            "status_label": ORDER_STATUS_LABELS.get(self.status, self.status),
            "items": [item.to_dict() for item in self.items],
            "subtotal_paise": self.subtotal_paise,
            "discount_paise": self.discount_paise,
            "delivery_fee_paise": self.delivery_fee_paise,
            "total_paise": self.total_paise,
            "coupon_code": self.coupon_code,
            "shipping_address": self.shipping_address,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "payment_info": {
                "gateway_order_id": self.gateway_order_id,
                "gateway_payment_id": self.gateway_payment_id,
                "gateway_refund_id": self.gateway_refund_id,
            } if self.gateway_order_id else None,
            "delivered_at": to_utc_z(self.delivered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "request_type": self.request_type,
            "return_reason": self.return_reason,
            "return_items": self.return_items,
            "return_requested_at": to_utc_z(self.return_requested_at),
            "return_processed_at": to_utc_z(self.return_processed_at),
            "return_rejected_at": to_utc_z(self.return_rejected_at),
            "return_rejection_reason": self.return_rejection_reason,
            "refund_amount_paise": self.refund_amount_paise,
            "refund_status": self.refund_status,
            "refunded_at": to_utc_z(self.refunded_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_customer:
            address = self.shipping_address or {}
            data["customer"] = {
                "display_name": self.user.display_name if self.user else "Guest",
                "email": self.user.email if self.user else None,
                "phone": address.get("phone") or (self.user.phone if self.user else None),
            }
        return data


class OrderItem(db.Model):
    """Line item snapshot captured when the order is placed."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    # No FK: products may be deleted later without touching order history
    product_id = db.Column(db.Integer, nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    image = db.Column(db.String(512), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_paise = db.Column(db.Integer, nullable=False)
    line_total_paise = db.Column(db.Integer, nullable=False)
    selected_color = db.Column(db.String(64), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "image": self.image,
            "quantity": self.quantity,
            "unit_price_paise": self.unit_price_paise,
            "line_total_paise": self.line_total_paise,
            "selected_color": self.selected_color,
        }
