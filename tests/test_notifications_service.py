from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from pointage.models import Notification
from pointage.services.notifications import (
    KIND_PUNCH,
    NotificationSink,
    list_notifications,
    mark_notifications_read,
    punch_idempotency_key,
)
from tests.helpers import make_session_factory

NOW = datetime(2024, 5, 7, 9, 0, tzinfo=timezone.utc)


class NotificationSinkTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.sink = NotificationSink(self.session_factory)

    def _count(self) -> int:
        with self.session_factory() as db:
            return db.scalar(select(func.count(Notification.id)))

    def test_idempotency_key_blocks_duplicates(self) -> None:
        key = punch_idempotency_key(3, NOW)

        first = self.sink.notify(KIND_PUNCH, "Pointage", "Amel a pointé à 10:00", idempotency_key=key, created_at=NOW)
        second = self.sink.notify(KIND_PUNCH, "Pointage", "Amel a pointé à 10:00", idempotency_key=key, created_at=NOW)

        self.assertTrue(first)
        self.assertFalse(second)
        self.assertEqual(self._count(), 1)
        self.assertEqual(key, f"PUNCH_LOG:3_{int(NOW.timestamp())}")

    def test_write_failure_is_logged_not_raised(self) -> None:
        def broken_factory():
            raise RuntimeError("database unavailable")

        sink = NotificationSink(broken_factory)

        with self.assertLogs("pointage.notifications", level="ERROR") as logs:
            created = sink.notify(KIND_PUNCH, "Pointage", "message")

        self.assertFalse(created)
        self.assertIn("notification_write_failed", logs.output[0])

    def test_purge_older_than_retention(self) -> None:
        self.sink.notify(KIND_PUNCH, "old", "old", created_at=NOW - timedelta(days=40))
        self.sink.notify(KIND_PUNCH, "recent", "recent", created_at=NOW - timedelta(days=2))

        purged = self.sink.purge_older_than(NOW, retention_days=30)

        self.assertEqual(purged, 1)
        with self.session_factory() as db:
            titles = db.scalars(select(Notification.title)).all()
        self.assertEqual(titles, ["recent"])

    def test_list_and_mark_read(self) -> None:
        self.sink.notify(KIND_PUNCH, "a", "a", created_at=NOW - timedelta(minutes=2))
        self.sink.notify(KIND_PUNCH, "b", "b", created_at=NOW - timedelta(minutes=1))

        with self.session_factory() as db:
            listed = list_notifications(db)
            self.assertEqual([item.title for item in listed], ["b", "a"])
            updated = mark_notifications_read(db, [listed[0].id])
            unread = list_notifications(db, unread_only=True)

        self.assertEqual(updated, 1)
        self.assertEqual([item.title for item in unread], ["a"])


if __name__ == "__main__":
    unittest.main()
