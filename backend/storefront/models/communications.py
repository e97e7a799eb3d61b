from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


OUTBOX_STATUS_PENDING = "PENDING"
OUTBOX_STATUS_SENT = "SENT"
OUTBOX_STATUS_FAILED = "FAILED"
OUTBOX_STATUS_DISPATCHING = "DISPATCHING"

CHANNEL_SOCKET = "socket"
CHANNEL_PUSH = "push"
CHANNEL_INBOX = "inbox"
CHANNEL_EMAIL = "email"
VALID_CHANNELS = (CHANNEL_SOCKET, CHANNEL_PUSH, CHANNEL_INBOX, CHANNEL_EMAIL)


class Notification(db.Model):
    """
    Persisted per-user notification (the bell inbox).

    Independent of push delivery: a user without device tokens still sees
    every order update here.
    """
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_user_read", "user_id", "read"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(32), nullable=False, default="order")
    order_id = db.Column(db.Integer, nullable=True, index=True)
    read = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "order_id": self.order_id,
            "read": self.read,
            "created_at": to_utc_z(self.created_at),
        }


class OutboxEvent(db.Model):
    """
    Notification outbox.

    Written in the same DB transaction as the order change it announces,
    then delivered by NotificationDispatcher. Delivery failures never roll
    back business state; they are retried with backoff until
    NOTIFICATION_MAX_ATTEMPTS and then marked FAILED. A dispatcher claims a row
    (status DISPATCHING, next_attempt_at = lease expiry) before delivering it.
    """
    __tablename__ = "outbox_events"
    __table_args__ = (
        db.Index("ix_outbox_events_status_next", "status", "next_attempt_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    event = db.Column(db.String(64), nullable=False)  # newOrder, orderStatusUpdated, ...
    rooms = db.Column(db.JSON, nullable=False, default=list)  # socket rooms; empty = broadcast
    payload = db.Column(db.JSON, nullable=False, default=dict)
    channels = db.Column(db.JSON, nullable=False, default=list)

    # Recipient for push/inbox; email goes to email_to
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    email_to = db.Column(db.String(255), nullable=True)
    title = db.Column(db.String(255), nullable=True)
    message = db.Column(db.Text, nullable=True)
    order_id = db.Column(db.Integer, nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default=OUTBOX_STATUS_PENDING, index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    delivered_channels = db.Column(db.JSON, nullable=False, default=list)
    last_error = db.Column(db.Text, nullable=True)
    next_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event": self.event,
            "rooms": list(self.rooms or []),
            "payload": self.payload,
            "channels": list(self.channels or []),
            "user_id": self.user_id,
            "email_to": self.email_to,
            "title": self.title,
            "message": self.message,
            "order_id": self.order_id,
            "status": self.status,
            "attempts": self.attempts,
            "delivered_channels": list(self.delivered_channels or []),
            "last_error": self.last_error,
            "next_attempt_at": to_utc_z(self.next_attempt_at),
            "sent_at": to_utc_z(self.sent_at),
            "created_at": to_utc_z(self.created_at),
        }
