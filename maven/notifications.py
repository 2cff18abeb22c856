"""Pending reminder storage and the dispatcher that fires due reminders.

The pending list lives under a single key of a key-value store and is
rewritten whole on every change. A dispatcher serializes its own writes;
run a single dispatcher per store.
"""

import json
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Protocol

from maven.dates import format_date

logger = logging.getLogger(__name__)

NOTIFICATIONS_KEY = "maven_scheduled_notifications"
DEFAULT_MAX_ATTEMPTS = 3


class StoreError(Exception):
    """The pending-notification list could not be read or written."""


class NotificationType(str, Enum):
    PERIOD = "period"
    FERTILITY = "fertility"
    OVULATION = "ovulation"
    REMINDER = "reminder"
    PRECAUTION = "precaution"


class Permission(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class DeliveryCapability(Protocol):
    def request_permission(self) -> Permission: ...

    def deliver(self, title: str, body: str) -> None: ...


class ActivitySink(Protocol):
    def record(self, action: str, details: str) -> None: ...


class InMemoryStore:
    def __init__(self, data: dict[str, str] | None = None):
        self.data = dict(data or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value


@dataclass(frozen=True)
class ScheduledNotification:
    id: str
    title: str
    body: str
    scheduled_date: datetime
    type: NotificationType
    created_at: datetime
    # Failed delivery attempts so far
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "scheduled_date": self.scheduled_date.isoformat(),
            "type": self.type.value,
            "created_at": self.created_at.isoformat(),
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScheduledNotification":
        return cls(
            id=data["id"],
            title=data["title"],
            body=data["body"],
            scheduled_date=datetime.fromisoformat(data["scheduled_date"]),
            type=NotificationType(data["type"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            attempts=data.get("attempts", 0),
        )


@dataclass
class SweepReport:
    delivered: list[ScheduledNotification] = field(default_factory=list)
    failed: list[ScheduledNotification] = field(default_factory=list)
    dropped: list[ScheduledNotification] = field(default_factory=list)
    kept: list[ScheduledNotification] = field(default_factory=list)

    @property
    def outcomes(self) -> dict[str, DeliveryOutcome]:
        result = {n.id: DeliveryOutcome.DELIVERED for n in self.delivered}
        result.update({n.id: DeliveryOutcome.FAILED for n in self.failed})
        return result


class NotificationStore:
    """The pending list, serialized as JSON under one key."""

    def __init__(self, kv: KeyValueStore, key: str = NOTIFICATIONS_KEY):
        self.kv = kv
        self.key = key

    def load(self) -> list[ScheduledNotification]:
        try:
            raw = self.kv.get(self.key)
        except Exception as e:
            raise StoreError(f"Could not read pending notifications: {e}") from e
        if not raw:
            return []
        try:
            return [ScheduledNotification.from_dict(item) for item in json.loads(raw)]
        except (ValueError, KeyError, TypeError) as e:
            raise StoreError(f"Stored pending notifications are corrupt: {e}") from e

    def save(self, notifications: list[ScheduledNotification]):
        payload = json.dumps([n.to_dict() for n in notifications])
        try:
            self.kv.set(self.key, payload)
        except Exception as e:
            raise StoreError(f"Could not write pending notifications: {e}") from e


class NotificationDispatcher:
    def __init__(
        self,
        store: NotificationStore,
        delivery: DeliveryCapability,
        activity: ActivitySink | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.store = store
        self.delivery = delivery
        self.activity = activity
        self.max_attempts = max_attempts
        self._granted = False
        # Guards load-then-save on the store; never held across a delivery
        self._lock = threading.Lock()

    def _log_activity(self, action: str, details: str):
        if self.activity is None:
            return
        try:
            self.activity.record(action, details)
        except Exception as e:
            logger.warning(f"Activity log write failed ({action}): {e}")

    def ensure_permission(self, refresh: bool = False) -> bool:
        """Ask the delivery capability for permission unless it was already granted."""
        if self._granted and not refresh:
            return True
        try:
            permission = self.delivery.request_permission()
        except Exception as e:
            logger.error(f"Permission request failed: {e}")
            permission = Permission.DENIED
        self._granted = permission == Permission.GRANTED
        return self._granted

    def pending(self) -> list[ScheduledNotification]:
        return self.store.load()

    def schedule(self, notification: ScheduledNotification) -> bool:
        """Persist a reminder. Returns False if it can't currently be delivered.

        The record is stored either way; permission is checked again when
        it falls due.
        """
        granted = self.ensure_permission(refresh=True)

        with self._lock:
            pending = [n for n in self.store.load() if n.id != notification.id]
            pending.append(notification)
            self.store.save(pending)

        self._log_activity(
            "Notification Scheduled",
            f"{notification.type.value} notification scheduled for "
            f"{format_date(notification.scheduled_date)}",
        )
        if not granted:
            logger.info(f"Stored {notification.id} but delivery permission is not granted")
        return granted

    def sweep(self, now: datetime) -> SweepReport:
        """Fire every due reminder and keep the rest.

        Failed deliveries stay pending and are retried on the next sweep,
        up to ``max_attempts``. Reminders scheduled while deliveries are in
        flight are preserved.
        """
        if now.tzinfo is None or now.utcoffset() is None:
            raise ValueError(f"sweep() needs a timezone-aware time, got {now!r}")

        with self._lock:
            pending = self.store.load()
        report = SweepReport()
        due = []
        for notification in pending:
            if notification.scheduled_date <= now:
                due.append(notification)
            else:
                report.kept.append(notification)

        if not due:
            return report

        # Permission may have been revoked since scheduling
        if not self.ensure_permission(refresh=True):
            logger.info(f"Delivery permission denied, discarding {len(due)} due notification(s)")
            report.dropped.extend(due)
        else:
            for notification in due:
                self._fire(notification, report)

        with self._lock:
            report.kept = self._merge_settled(due, report.failed)
            self.store.save(report.kept)
        return report

    def _merge_settled(
        self, due: list[ScheduledNotification], retries: list[ScheduledNotification]
    ) -> list[ScheduledNotification]:
        """Re-read the list and drop or update only the records this sweep settled."""
        settled = set(due)
        retry_by_id = {n.id: n for n in retries}
        kept = []
        for notification in self.store.load():
            if notification not in settled:
                # New, or replaced under the same id while delivering
                kept.append(notification)
            elif notification.id in retry_by_id:
                kept.append(retry_by_id[notification.id])
        return kept

    def _fire(self, notification: ScheduledNotification, report: SweepReport):
        try:
            self.delivery.deliver(notification.title, notification.body)
        except Exception as e:
            attempts = notification.attempts + 1
            if attempts >= self.max_attempts:
                logger.error(
                    f"Giving up on notification {notification.id} after {attempts} attempts: {e}"
                )
                report.dropped.append(notification)
            else:
                logger.warning(
                    f"Delivery of {notification.id} failed (attempt {attempts}), will retry: {e}"
                )
                retry = replace(notification, attempts=attempts)
                report.failed.append(retry)
            return

        report.delivered.append(notification)
        logger.info(f"Sent {notification.type.value} notification {notification.id}")
        self._log_activity(
            "Notification Sent",
            f"{notification.type.value} notification: {notification.title}",
        )
