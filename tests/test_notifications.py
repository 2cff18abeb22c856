import json
from datetime import datetime, timedelta, timezone

import pytest

from maven.notifications import (
    NOTIFICATIONS_KEY,
    DeliveryOutcome,
    InMemoryStore,
    NotificationDispatcher,
    NotificationStore,
    NotificationType,
    Permission,
    ScheduledNotification,
    StoreError,
)

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


# -- Helpers --

def make_notification(id="n1", at=NOW, title="Period Reminder", type=NotificationType.PERIOD):
    return ScheduledNotification(
        id=id,
        title=title,
        body=f"body of {title}",
        scheduled_date=at,
        type=type,
        created_at=NOW - timedelta(days=10),
    )


class BrokenStore(InMemoryStore):
    def set(self, key, value):
        raise OSError("quota exceeded")


class BrokenActivity:
    def record(self, action, details):
        raise RuntimeError("log sink down")


# -- ScheduledNotification --

class TestScheduledNotification:
    def test_dict_shape(self):
        data = make_notification().to_dict()
        assert set(data) == {"id", "title", "body", "scheduled_date", "type", "created_at", "attempts"}
        assert data["type"] == "period"
        assert data["scheduled_date"] == "2024-03-01T09:00:00+00:00"

    def test_from_dict_defaults_attempts(self):
        data = make_notification().to_dict()
        del data["attempts"]
        assert ScheduledNotification.from_dict(data).attempts == 0


# -- NotificationStore --

class TestNotificationStore:
    def test_empty_store_loads_empty_list(self, kv):
        assert NotificationStore(kv).load() == []

    def test_save_then_load(self, kv):
        store = NotificationStore(kv)
        items = [make_notification("a"), make_notification("b", type=NotificationType.OVULATION)]
        store.save(items)
        assert store.load() == items

    def test_uses_single_key(self, kv):
        NotificationStore(kv).save([make_notification()])
        assert list(kv.data) == [NOTIFICATIONS_KEY]
        assert json.loads(kv.data[NOTIFICATIONS_KEY])[0]["id"] == "n1"

    def test_write_failure_raises_store_error(self):
        with pytest.raises(StoreError):
            NotificationStore(BrokenStore()).save([make_notification()])

    def test_corrupt_payload_raises_store_error(self):
        kv = InMemoryStore({NOTIFICATIONS_KEY: "{not json"})
        with pytest.raises(StoreError):
            NotificationStore(kv).load()


# -- schedule --

class TestSchedule:
    def test_persists_and_returns_true(self, dispatcher):
        assert dispatcher.schedule(make_notification()) is True
        assert [n.id for n in dispatcher.pending()] == ["n1"]

    def test_appends(self, dispatcher):
        dispatcher.schedule(make_notification("a"))
        dispatcher.schedule(make_notification("b"))
        assert [n.id for n in dispatcher.pending()] == ["a", "b"]

    def test_same_id_replaces(self, dispatcher):
        dispatcher.schedule(make_notification("a", title="Old"))
        dispatcher.schedule(make_notification("a", title="New"))
        pending = dispatcher.pending()
        assert len(pending) == 1
        assert pending[0].title == "New"

    def test_denied_still_persists_but_returns_false(self, dispatcher, delivery):
        delivery.permission = Permission.DENIED
        assert dispatcher.schedule(make_notification()) is False
        assert len(dispatcher.pending()) == 1

    def test_sees_revoked_permission(self, dispatcher, delivery):
        assert dispatcher.schedule(make_notification("a")) is True
        delivery.permission = Permission.DENIED
        assert dispatcher.schedule(make_notification("b")) is False
        assert delivery.permission_requests == 2

    def test_permission_request_error_counts_as_denied(self, kv):
        class Unsupported:
            def request_permission(self):
                raise NotImplementedError("no notification support")

            def deliver(self, title, body):
                pass

        dispatcher = NotificationDispatcher(NotificationStore(kv), Unsupported())
        assert dispatcher.schedule(make_notification()) is False

    def test_logs_activity(self, dispatcher, activity):
        dispatcher.schedule(make_notification())
        assert activity.records == [("Notification Scheduled", "period notification scheduled for Mar 1, 2024")]

    def test_activity_failure_ignored(self, kv, delivery):
        dispatcher = NotificationDispatcher(NotificationStore(kv), delivery, activity=BrokenActivity())
        assert dispatcher.schedule(make_notification()) is True

    def test_store_failure_surfaces(self, delivery):
        dispatcher = NotificationDispatcher(NotificationStore(BrokenStore()), delivery)
        with pytest.raises(StoreError):
            dispatcher.schedule(make_notification())


# -- sweep --

class TestSweep:
    def test_not_yet_due_stays_pending(self, dispatcher, delivery):
        dispatcher.schedule(make_notification(at=NOW))
        report = dispatcher.sweep(NOW - timedelta(seconds=1))
        assert delivery.delivered == []
        assert [n.id for n in report.kept] == ["n1"]
        assert len(dispatcher.pending()) == 1

    def test_due_fires_and_is_removed(self, dispatcher, delivery):
        dispatcher.schedule(make_notification(at=NOW))
        report = dispatcher.sweep(NOW + timedelta(seconds=1))
        assert delivery.delivered == [("Period Reminder", "body of Period Reminder")]
        assert report.outcomes == {"n1": DeliveryOutcome.DELIVERED}
        assert dispatcher.pending() == []

    def test_exactly_due_fires(self, dispatcher, delivery):
        dispatcher.schedule(make_notification(at=NOW))
        dispatcher.sweep(NOW)
        assert len(delivery.delivered) == 1

    def test_partitions_due_and_future(self, dispatcher, delivery):
        dispatcher.schedule(make_notification("past", at=NOW - timedelta(days=1)))
        dispatcher.schedule(make_notification("future", at=NOW + timedelta(days=1)))
        dispatcher.sweep(NOW)
        assert [n.id for n in dispatcher.pending()] == ["future"]
        assert len(delivery.delivered) == 1

    def test_no_past_entries_remain(self, dispatcher):
        for i in range(5):
            dispatcher.schedule(make_notification(str(i), at=NOW + timedelta(days=i - 2)))
        dispatcher.sweep(NOW)
        assert all(n.scheduled_date > NOW for n in dispatcher.pending())

    def test_second_sweep_is_noop(self, dispatcher, delivery, kv):
        dispatcher.schedule(make_notification("a", at=NOW - timedelta(hours=1)))
        dispatcher.schedule(make_notification("b", at=NOW + timedelta(hours=1)))
        dispatcher.sweep(NOW)
        state = kv.data[NOTIFICATIONS_KEY]
        delivered = list(delivery.delivered)

        dispatcher.sweep(NOW)
        assert kv.data[NOTIFICATIONS_KEY] == state
        assert delivery.delivered == delivered

    def test_failed_delivery_kept_for_retry(self, dispatcher, delivery):
        delivery.fail_titles = {"Flaky"}
        dispatcher.schedule(make_notification("a", title="Flaky"))
        dispatcher.schedule(make_notification("b", title="Fine"))
        report = dispatcher.sweep(NOW)

        assert report.outcomes == {"a": DeliveryOutcome.FAILED, "b": DeliveryOutcome.DELIVERED}
        pending = dispatcher.pending()
        assert [n.id for n in pending] == ["a"]
        assert pending[0].attempts == 1

    def test_retry_succeeds_later(self, dispatcher, delivery):
        delivery.fail_titles = {"Flaky"}
        dispatcher.schedule(make_notification("a", title="Flaky"))
        dispatcher.sweep(NOW)

        delivery.fail_titles = set()
        dispatcher.sweep(NOW + timedelta(minutes=15))
        assert delivery.delivered == [("Flaky", "body of Flaky")]
        assert dispatcher.pending() == []

    def test_gives_up_after_max_attempts(self, kv, delivery):
        delivery.fail_titles = {"Flaky"}
        dispatcher = NotificationDispatcher(NotificationStore(kv), delivery, max_attempts=2)
        dispatcher.schedule(make_notification("a", title="Flaky"))

        dispatcher.sweep(NOW)
        assert len(dispatcher.pending()) == 1
        report = dispatcher.sweep(NOW)
        assert [n.id for n in report.dropped] == ["a"]
        assert dispatcher.pending() == []

    def test_failure_does_not_stop_other_deliveries(self, dispatcher, delivery):
        delivery.fail_titles = {"First"}
        dispatcher.schedule(make_notification("a", title="First"))
        dispatcher.schedule(make_notification("b", title="Second"))
        dispatcher.schedule(make_notification("c", title="Third"))
        dispatcher.sweep(NOW)
        assert [t for t, _ in delivery.delivered] == ["Second", "Third"]

    def test_permission_revoked_discards_due(self, dispatcher, delivery):
        dispatcher.schedule(make_notification("a"))
        delivery.permission = Permission.DENIED
        report = dispatcher.sweep(NOW)
        assert delivery.delivered == []
        assert [n.id for n in report.dropped] == ["a"]
        assert dispatcher.pending() == []

    def test_logs_sent_activity(self, dispatcher, activity):
        dispatcher.schedule(make_notification())
        dispatcher.sweep(NOW)
        assert activity.records[-1] == ("Notification Sent", "period notification: Period Reminder")

    def test_store_write_failure_surfaces(self, delivery):
        kv = BrokenStore()
        kv.data[NOTIFICATIONS_KEY] = json.dumps([make_notification().to_dict()])
        dispatcher = NotificationDispatcher(NotificationStore(kv), delivery)
        with pytest.raises(StoreError):
            dispatcher.sweep(NOW)

    def test_naive_time_rejected(self, dispatcher):
        dispatcher.schedule(make_notification())
        with pytest.raises(ValueError):
            dispatcher.sweep(NOW.replace(tzinfo=None))
        assert len(dispatcher.pending()) == 1

    def test_keeps_records_scheduled_during_delivery(self, kv):
        class SchedulingDelivery:
            def request_permission(self):
                return Permission.GRANTED

            def deliver(self, title, body):
                dispatcher.schedule(make_notification("new", at=NOW + timedelta(days=10)))

        dispatcher = NotificationDispatcher(NotificationStore(kv), SchedulingDelivery())
        dispatcher.schedule(make_notification("old"))
        report = dispatcher.sweep(NOW)

        assert [n.id for n in report.delivered] == ["old"]
        assert [n.id for n in dispatcher.pending()] == ["new"]

    def test_retry_kept_alongside_record_scheduled_during_delivery(self, kv):
        class FlakyScheduling:
            def request_permission(self):
                return Permission.GRANTED

            def deliver(self, title, body):
                dispatcher.schedule(make_notification("new", at=NOW + timedelta(days=1)))
                raise RuntimeError("timed out")

        dispatcher = NotificationDispatcher(NotificationStore(kv), FlakyScheduling())
        dispatcher.schedule(make_notification("a", title="Flaky"))
        dispatcher.sweep(NOW)

        pending = {n.id: n for n in dispatcher.pending()}
        assert set(pending) == {"a", "new"}
        assert pending["a"].attempts == 1

    def test_nothing_due_skips_write(self, delivery):
        kv = BrokenStore()
        kv.data[NOTIFICATIONS_KEY] = json.dumps([make_notification(at=NOW + timedelta(days=1)).to_dict()])
        dispatcher = NotificationDispatcher(NotificationStore(kv), delivery)
        report = dispatcher.sweep(NOW)
        assert len(report.kept) == 1
