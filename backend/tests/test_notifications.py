"""
Notification outbox tests.

Verifies:
- Order transitions queue outbox rows in the same transaction
- Dispatch delivers socket/push/inbox/email and marks events SENT
- A failing channel is retried with backoff and never repeats channels
  that already went out; after the attempt limit the event is FAILED
- Stale push tokens are pruned
- Inbox read/unread operations are scoped to the owner
"""

from datetime import timedelta

from storefront.models import Notification, Order, OutboxEvent, User
from storefront.models.communications import OUTBOX_STATUS_FAILED, OUTBOX_STATUS_PENDING, OUTBOX_STATUS_SENT
from storefront.services import notification_service, order_service
from storefront.time_utils import utcnow

from conftest import ADDRESS


def _place(customer, saree):
    return order_service.place_order(
        customer.id, [{"product_id": saree.id, "quantity": 1}], ADDRESS
    )


def _dispatcher():
    return notification_service.get_dispatcher()


class TestDispatch:

    def test_new_order_fan_out(self, db_session, customer, saree, transports):
        customer.fcm_tokens = ["device-1"]
        db_session.commit()
        order = _place(customer, saree)

        summary = _dispatcher().dispatch_pending()

        assert summary == {"sent": 2, "retrying": 0, "failed": 0}
        assert ("newOrder", "admin") in [(e, r) for e, r, _ in transports["socket"].emitted]
        assert transports["push"].sent[0][0] == ["device-1"]
        assert transports["email"].sent[0][0] == "owner@storefront.test"

        inbox = db_session.query(Notification).filter_by(user_id=customer.id).all()
        assert len(inbox) == 1
        assert inbox[0].order_id == order.id
        assert inbox[0].title == "Order Placed"

        statuses = {e.status for e in db_session.query(OutboxEvent).all()}
        assert statuses == {OUTBOX_STATUS_SENT}

    def test_status_update_reaches_order_room(self, db_session, customer, admin, saree, transports):
        order = _place(customer, saree)
        _dispatcher().dispatch_pending()
        transports["socket"].emitted.clear()

        order_service.update_status(order.id, admin, "SHIPPED")
        _dispatcher().dispatch_pending()

        rooms = {room for event, room, _ in transports["socket"].emitted if event == "orderStatusUpdated"}
        assert rooms == {f"order-{order.id}", "admin"}
        payload = transports["socket"].emitted[0][2]
        assert payload["status"] == "SHIPPED"
        assert payload["status_label"] == "Shipped"

    def test_failed_channel_does_not_touch_order(self, db_session, customer, saree, transports):
        transports["socket"].fail = True
        order = _place(customer, saree)

        summary = _dispatcher().dispatch_pending()

        assert summary["retrying"] == 1
        db_session.expire_all()
        assert db_session.get(Order, order.id).status == "PENDING"

    def test_retry_skips_delivered_channels(self, db_session, customer, saree, transports):
        transports["email"].fail = True
        _place(customer, saree)
        dispatcher = _dispatcher()

        now = utcnow()
        dispatcher.dispatch_pending(now=now)
        email_event = db_session.query(OutboxEvent).filter_by(event="adminOrderEmail").one()
        assert email_event.status == OUTBOX_STATUS_PENDING
        assert email_event.attempts == 1
        assert email_event.last_error.startswith("email:")

        # Not due yet: backoff holds it back
        assert dispatcher.dispatch_pending(now=now + timedelta(seconds=10))["retrying"] == 0

        transports["email"].fail = False
        summary = dispatcher.dispatch_pending(now=now + timedelta(seconds=31))
        assert summary["sent"] == 1
        # The inbox row from newOrder was written once
        assert db_session.query(Notification).count() == 1
        assert len(transports["email"].sent) == 1

    def test_backoff_doubles(self, db_session, customer, saree, transports):
        transports["email"].fail = True
        _place(customer, saree)
        dispatcher = _dispatcher()
        now = utcnow()

        dispatcher.dispatch_pending(now=now)
        event = db_session.query(OutboxEvent).filter_by(event="adminOrderEmail").one()
        first_delay = event.next_attempt_at.replace(tzinfo=None) - now.replace(tzinfo=None)

        retry_at = now + timedelta(seconds=31)
        dispatcher.dispatch_pending(now=retry_at)
        db_session.refresh(event)
        second_delay = event.next_attempt_at.replace(tzinfo=None) - retry_at.replace(tzinfo=None)

        assert first_delay == timedelta(seconds=30)
        assert second_delay == timedelta(seconds=60)

    def test_event_fails_after_max_attempts(self, db_session, customer, saree, transports):
        transports["email"].fail = True
        _place(customer, saree)
        dispatcher = _dispatcher()
        now = utcnow()

        results = [dispatcher.dispatch_pending(now=now + timedelta(hours=i)) for i in range(4)]

        event = db_session.query(OutboxEvent).filter_by(event="adminOrderEmail").one()
        assert event.status == OUTBOX_STATUS_FAILED
        assert event.attempts == 3
        assert results[2]["failed"] == 1
        # FAILED events are not picked up again
        assert results[3] == {"sent": 0, "retrying": 0, "failed": 0}

    def test_stale_push_tokens_removed(self, db_session, customer, saree, transports):
        customer.fcm_tokens = ["live", "dead"]
        db_session.commit()
        transports["push"].stale_tokens = ["dead"]

        _place(customer, saree)
        _dispatcher().dispatch_pending()

        db_session.expire_all()
        assert db_session.get(User, customer.id).fcm_tokens == ["live"]

    def test_no_tokens_means_no_push(self, db_session, customer, saree, transports):
        _place(customer, saree)
        _dispatcher().dispatch_pending()
        assert transports["push"].sent == []

    def test_dispatch_after_commit_swallows_errors(self, app, db_session, customer, saree):
        class Broken:
            def dispatch_pending(self, limit=100, now=None):
                raise RuntimeError("dispatcher crashed")

        _place(customer, saree)
        app.extensions["notification_dispatcher"] = Broken()

        notification_service.dispatch_after_commit()

        assert db_session.query(OutboxEvent).filter_by(status=OUTBOX_STATUS_PENDING).count() == 2

    def test_purge_sent(self, db_session, customer, saree):
        _place(customer, saree)
        _dispatcher().dispatch_pending(now=utcnow() - timedelta(days=40))

        assert notification_service.purge_sent(older_than_days=30) == 2
        assert db_session.query(OutboxEvent).count() == 0


class TestInbox:

    def _notify(self, db_session, user, title="Order Update", read=False):
        note = Notification(user_id=user.id, title=title, message="msg", type="order", read=read)
        db_session.add(note)
        db_session.commit()
        return note

    def test_unread_count_and_mark_all(self, db_session, customer):
        self._notify(db_session, customer)
        self._notify(db_session, customer)
        self._notify(db_session, customer, read=True)

        assert notification_service.unread_count(customer.id) == 2
        assert notification_service.mark_all_read(customer.id) == 2
        assert notification_service.unread_count(customer.id) == 0

    def test_unread_only_listing(self, db_session, customer):
        self._notify(db_session, customer, title="old", read=True)
        self._notify(db_session, customer, title="new")
        titles = [n.title for n in notification_service.list_notifications(customer.id, unread_only=True)]
        assert titles == ["new"]

    def test_cannot_touch_another_users_notification(self, db_session, customer, other_customer):
        note = self._notify(db_session, other_customer)
        assert notification_service.mark_read(customer.id, note.id) is None
        assert notification_service.delete_notification(customer.id, note.id) is False
        assert notification_service.delete_notification(other_customer.id, note.id) is True
