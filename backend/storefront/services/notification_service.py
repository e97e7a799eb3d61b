# Overview: Notification outbox; queue order announcements, deliver them, manage the inbox.

"""
Notification Service

The order workflow never calls a transport. It appends OutboxEvent rows in
the same DB transaction as the state change (enqueue / order_* helpers);
after commit the route asks the NotificationDispatcher to deliver them.

DELIVERY RULES:
- Events are delivered in id order, one commit per event.
- Each event is claimed first with a conditional UPDATE (status DISPATCHING,
  next_attempt_at = now + NOTIFICATION_CLAIM_SECONDS). A dispatcher whose
  claim matches no row skips the event, so concurrent dispatchers never
  deliver it twice. A claim left behind by a crashed worker becomes due
  again when its lease expires.
- Each event lists its channels (socket, push, inbox, email). Channels that
  succeeded are remembered in delivered_channels, so a retry never repeats
  them (no duplicate inbox rows, no duplicate emails).
- A failing channel stops the event: attempts += 1, last_error recorded,
  next_attempt_at pushed out with exponential backoff. After
  NOTIFICATION_MAX_ATTEMPTS the event is marked FAILED.
- Dispatch errors never touch order state.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import Notification, OutboxEvent, User
from ..models.communications import (
    CHANNEL_EMAIL,
    CHANNEL_INBOX,
    CHANNEL_PUSH,
    CHANNEL_SOCKET,
    OUTBOX_STATUS_DISPATCHING,
    OUTBOX_STATUS_FAILED,
    OUTBOX_STATUS_PENDING,
    OUTBOX_STATUS_SENT,
    VALID_CHANNELS,
)
from ..models.orders import ORDER_STATUS_LABELS, REQUEST_TYPE_REPLACEMENT
from storefront.time_utils import utcnow


ADMIN_ROOM = "admin"

USER_CHANNELS = (CHANNEL_SOCKET, CHANNEL_PUSH, CHANNEL_INBOX, CHANNEL_EMAIL)


# =============================================================================
# TRANSPORT ADAPTERS
# =============================================================================

class LoggingBroadcaster:
    """Socket broadcaster that only logs. Replace with a real socket server adapter."""

    def emit(self, event: str, room: str | None, payload: dict) -> None:
        current_app.logger.info("socket emit %s room=%s", event, room or "*")


class LoggingPushSender:
    """
    Push sender that only logs.

    send() may return the tokens the push service rejected as unregistered;
    the dispatcher removes them from the user.
    """

    def send(self, tokens: list[str], title: str, message: str, data: dict | None = None):
        current_app.logger.info("push to %s device(s): %s", len(tokens), title)
        return []


class LoggingEmailSender:
    def send(self, to: str, subject: str, body: str) -> None:
        current_app.logger.info("email to %s: %s", to, subject)


# =============================================================================
# OUTBOX
# =============================================================================

def enqueue(
    event: str,
    *,
    channels,
    rooms=None,
    payload: dict | None = None,
    user_id: int | None = None,
    email_to: str | None = None,
    title: str | None = None,
    message: str | None = None,
    order_id: int | None = None,
) -> OutboxEvent:
    """Add an outbox row to the current transaction. Caller commits."""
    channels = list(channels)
    unknown = [c for c in channels if c not in VALID_CHANNELS]
    if unknown:
        raise ValueError(f"Unknown notification channel(s): {', '.join(unknown)}")

    outbox = OutboxEvent(
        event=event,
        rooms=list(rooms or []),
        payload=payload or {},
        channels=channels,
        user_id=user_id,
        email_to=email_to,
        title=title,
        message=message,
        order_id=order_id,
        status=OUTBOX_STATUS_PENDING,
        attempts=0,
        delivered_channels=[],
    )
    db.session.add(outbox)
    return outbox


def _admin_email() -> str | None:
    return current_app.config.get("ADMIN_EMAIL") or None


def _order_payload(order) -> dict:
    return {
        "order_id": order.id,
        "user_id": order.user_id,
        "status": order.status,
        "status_label": ORDER_STATUS_LABELS.get(order.status, order.status),
        "payment_status": order.payment_status,
        "total_paise": order.total_paise,
    }


def _rupees(paise: int) -> str:
    return f"₹{paise / 100:,.2f}"


def order_placed(order) -> None:
    enqueue(
        "newOrder",
        channels=(CHANNEL_SOCKET, CHANNEL_PUSH, CHANNEL_INBOX),
        rooms=[ADMIN_ROOM],
        payload=_order_payload(order),
        user_id=order.user_id,
        title="Order Placed",
        message=f"Your order #{order.id} for {_rupees(order.total_paise)} has been placed successfully.",
        order_id=order.id,
    )
    if _admin_email():
        enqueue(
            "adminOrderEmail",
            channels=(CHANNEL_EMAIL,),
            email_to=_admin_email(),
            title=f"New order #{order.id}",
            message=(
                f"Order #{order.id} was placed for {_rupees(order.total_paise)} "
                f"({order.payment_method}, {len(order.items)} item(s))."
            ),
            order_id=order.id,
        )


def order_status_changed(order) -> None:
    label = ORDER_STATUS_LABELS.get(order.status, order.status)
    enqueue(
        "orderStatusUpdated",
        channels=USER_CHANNELS,
        rooms=[order.room, ADMIN_ROOM],
        payload=_order_payload(order),
        user_id=order.user_id,
        email_to=order.user.email if order.user else None,
        title="Order Update",
        message=f"Your order #{order.id} is now {label}.",
        order_id=order.id,
    )


def order_cancelled(order, cancelled_by_admin: bool) -> None:
    payload = _order_payload(order)
    if cancelled_by_admin:
        message = f"Your order #{order.id} has been cancelled by the store."
    else:
        message = f"Your order #{order.id} has been cancelled."
    enqueue(
        "orderCancelled",
        channels=(CHANNEL_SOCKET, CHANNEL_PUSH, CHANNEL_INBOX),
        rooms=[order.room, ADMIN_ROOM],
        payload=payload,
        user_id=order.user_id,
        title="Order Cancelled",
        message=message,
        order_id=order.id,
    )
    enqueue(
        "orderStatusUpdated",
        channels=(CHANNEL_SOCKET,),
        rooms=[order.room, ADMIN_ROOM],
        payload=payload,
        order_id=order.id,
    )
    if _admin_email():
        enqueue(
            "adminOrderEmail",
            channels=(CHANNEL_EMAIL,),
            email_to=_admin_email(),
            title=f"Order #{order.id} cancelled",
            message=f"Order #{order.id} was cancelled. Reason: {order.cancellation_reason or 'not given'}.",
            order_id=order.id,
        )


def return_requested(order) -> None:
    noun = "Replacement" if order.request_type == REQUEST_TYPE_REPLACEMENT else "Return"
    enqueue(
        "returnRequested",
        channels=(CHANNEL_SOCKET,),
        rooms=[ADMIN_ROOM],
        payload={**_order_payload(order), "request_type": order.request_type, "reason": order.return_reason},
        order_id=order.id,
    )
    if _admin_email():
        enqueue(
            "adminOrderEmail",
            channels=(CHANNEL_EMAIL,),
            email_to=_admin_email(),
            title=f"{noun} requested for order #{order.id}",
            message=f"Reason: {order.return_reason}",
            order_id=order.id,
        )


def return_processed(order, approved: bool) -> None:
    noun = "replacement" if order.request_type == REQUEST_TYPE_REPLACEMENT else "return"
    if approved:
        title = f"{noun.capitalize()} Approved"
        message = f"Your {noun} request for order #{order.id} has been approved."
    else:
        title = f"{noun.capitalize()} Rejected"
        message = f"Your {noun} request for order #{order.id} was rejected: {order.return_rejection_reason}"
    enqueue(
        "orderStatusUpdated",
        channels=USER_CHANNELS,
        rooms=[order.room, ADMIN_ROOM],
        payload=_order_payload(order),
        user_id=order.user_id,
        email_to=order.user.email if order.user else None,
        title=title,
        message=message,
        order_id=order.id,
    )


def refund_status_changed(order) -> None:
    enqueue(
        "refundStatusUpdated",
        channels=USER_CHANNELS,
        rooms=[order.room],
        payload={**_order_payload(order), "refund_status": order.refund_status},
        user_id=order.user_id,
        email_to=order.user.email if order.user else None,
        title="Refund Update",
        message=f"Refund for order #{order.id} is {(order.refund_status or '').lower()}.",
        order_id=order.id,
    )


# =============================================================================
# DISPATCH
# =============================================================================

class NotificationDispatcher:
    """Delivers pending outbox events through the injected transports."""

    def __init__(self, broadcaster=None, push_sender=None, email_sender=None, *, backoff_base_seconds: int = 30):
        self.broadcaster = broadcaster or LoggingBroadcaster()
        self.push_sender = push_sender or LoggingPushSender()
        self.email_sender = email_sender or LoggingEmailSender()
        self.backoff_base_seconds = backoff_base_seconds

    def _deliver_channel(self, event: OutboxEvent, channel: str) -> None:
        if channel == CHANNEL_SOCKET:
            for room in (event.rooms or [None]):
                self.broadcaster.emit(event.event, room, event.payload or {})

        elif channel == CHANNEL_PUSH:
            user = db.session.get(User, event.user_id) if event.user_id else None
            tokens = list(user.fcm_tokens or []) if user else []
            if not tokens:
                return
            stale = self.push_sender.send(
                tokens,
                event.title or "",
                event.message or "",
                {"event": event.event, "order_id": event.order_id},
            ) or []
            if stale:
                user.fcm_tokens = [t for t in tokens if t not in set(stale)]

        elif channel == CHANNEL_INBOX:
            if event.user_id:
                db.session.add(Notification(
                    user_id=event.user_id,
                    title=event.title or event.event,
                    message=event.message or "",
                    type="order" if event.order_id else "general",
                    order_id=event.order_id,
                    read=False,
                ))

        elif channel == CHANNEL_EMAIL:
            if event.email_to:
                self.email_sender.send(event.email_to, event.title or event.event, event.message or "")

    def deliver(self, event: OutboxEvent, *, max_attempts: int, now: datetime | None = None) -> bool:
        """Deliver one event; returns True when every channel has gone out."""
        now = now or utcnow()
        delivered = list(event.delivered_channels or [])

        for channel in event.channels or []:
            if channel in delivered:
                continue
            try:
                self._deliver_channel(event, channel)
            except Exception as exc:
                event.delivered_channels = delivered
                event.attempts = (event.attempts or 0) + 1
                event.last_error = f"{channel}: {exc}"
                if event.attempts >= max_attempts:
                    event.status = OUTBOX_STATUS_FAILED
                    event.next_attempt_at = None
                    current_app.logger.error(
                        "Notification %s (%s) failed permanently after %s attempts: %s",
                        event.id, event.event, event.attempts, exc,
                    )
                else:
                    event.status = OUTBOX_STATUS_PENDING
                    delay = self.backoff_base_seconds * (2 ** (event.attempts - 1))
                    event.next_attempt_at = now + timedelta(seconds=delay)
                    current_app.logger.warning(
                        "Notification %s (%s) delivery failed on %s, retry in %ss: %s",
                        event.id, event.event, channel, delay, exc,
                    )
                return False
            delivered.append(channel)

        event.delivered_channels = delivered
        event.status = OUTBOX_STATUS_SENT
        event.sent_at = now
        event.next_attempt_at = None
        event.last_error = None
        return True

    @staticmethod
    def _due(now: datetime):
        return (
            OutboxEvent.status.in_((OUTBOX_STATUS_PENDING, OUTBOX_STATUS_DISPATCHING)),
            (OutboxEvent.next_attempt_at.is_(None)) | (OutboxEvent.next_attempt_at <= now),
        )

    def claim(self, event_id: int, now: datetime, lease_seconds: int) -> bool:
        """Take ownership of a due event. False when another dispatcher got there first."""
        result = db.session.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id, *self._due(now))
            .values(
                status=OUTBOX_STATUS_DISPATCHING,
                next_attempt_at=now + timedelta(seconds=lease_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount == 1

    def dispatch_pending(self, limit: int = 100, now: datetime | None = None) -> dict:
        """Claim and deliver due events in id order. Returns counts per outcome."""
        now = now or utcnow()
        max_attempts = int(current_app.config.get("NOTIFICATION_MAX_ATTEMPTS", 5))
        lease_seconds = int(current_app.config.get("NOTIFICATION_CLAIM_SECONDS", 300))

        event_ids = [
            row.id
            for row in db.session.query(OutboxEvent.id)
            .filter(*self._due(now))
            .order_by(OutboxEvent.id.asc())
            .limit(limit)
            .all()
        ]
        db.session.commit()

        summary = {"sent": 0, "retrying": 0, "failed": 0}
        for event_id in event_ids:
            if not self.claim(event_id, now, lease_seconds):
                continue
            event = db.session.get(OutboxEvent, event_id)
            if event is None:
                continue
            if self.deliver(event, max_attempts=max_attempts, now=now):
                summary["sent"] += 1
            elif event.status == OUTBOX_STATUS_FAILED:
                summary["failed"] += 1
            else:
                summary["retrying"] += 1
            db.session.commit()
        return summary


def get_dispatcher() -> NotificationDispatcher:
    dispatcher = current_app.extensions.get("notification_dispatcher")
    if dispatcher is None:
        dispatcher = NotificationDispatcher()
        current_app.extensions["notification_dispatcher"] = dispatcher
    return dispatcher


def dispatch_after_commit(limit: int = 100) -> None:
    """
    Deliver what the request just queued. Called by routes after a
    successful workflow commit; failures are logged and never change the
    HTTP response (the events stay PENDING for `flask notifications dispatch`).
    """
    try:
        get_dispatcher().dispatch_pending(limit=limit)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Notification dispatch failed")


def purge_sent(older_than_days: int = 30) -> int:
    cutoff = utcnow() - timedelta(days=older_than_days)
    count = db.session.query(OutboxEvent).filter(
        OutboxEvent.status == OUTBOX_STATUS_SENT,
        OutboxEvent.sent_at < cutoff,
    ).delete(synchronize_session=False)
    db.session.commit()
    return count


# =============================================================================
# INBOX
# =============================================================================

def list_notifications(user_id: int, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    query = db.session.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.read.is_(False))
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def unread_count(user_id: int) -> int:
    return db.session.query(Notification).filter(
        Notification.user_id == user_id,
        Notification.read.is_(False),
    ).count()


def _get_own(user_id: int, notification_id: int) -> Notification | None:
    return db.session.query(Notification).filter_by(id=notification_id, user_id=user_id).first()


def mark_read(user_id: int, notification_id: int) -> Notification | None:
    notification = _get_own(user_id, notification_id)
    if notification is None:
        return None
    notification.read = True
    db.session.commit()
    return notification


def mark_all_read(user_id: int) -> int:
    count = db.session.query(Notification).filter(
        Notification.user_id == user_id,
        Notification.read.is_(False),
    ).update({"read": True}, synchronize_session=False)
    db.session.commit()
    return count


def delete_notification(user_id: int, notification_id: int) -> bool:
    notification = _get_own(user_id, notification_id)
    if notification is None:
        return False
    db.session.delete(notification)
    db.session.commit()
    return True
