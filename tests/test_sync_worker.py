from __future__ import annotations

import json
import logging
import unittest
from datetime import date, timedelta
from unittest.mock import patch

from pointage.clock import FrozenClock
from pointage.logging_utils import JsonFormatter
from pointage.main import run_sync_tick
from tests.helpers import add_employee, add_punches, build_reconciler, local, make_session_factory

TUESDAY = date(2024, 5, 7)


class SyncTickTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.clock = FrozenClock(local(TUESDAY, "10:00"))
        self.reconciler = build_reconciler(self.session_factory, self.clock)
        self.amel = add_employee(self.session_factory, "Amel")

    def test_tick_reconciles_yesterday_and_today(self) -> None:
        add_punches(self.session_factory, self.amel, local(TUESDAY, "07:01"))

        with patch("pointage.main.get_reconciler", return_value=self.reconciler):
            tick = run_sync_tick()

        self.assertEqual(tick["days"], ["2024-05-06", "2024-05-07"])
        self.assertEqual(tick["failed"], 0)
        self.assertEqual(tick["notifications"], 1)

    def test_tick_purges_expired_notifications(self) -> None:
        self.reconciler.notifier.notify(
            "PUNCH_LOG",
            "Pointage",
            "old",
            created_at=self.clock.now() - timedelta(days=45),
        )

        with patch("pointage.main.get_reconciler", return_value=self.reconciler):
            tick = run_sync_tick()

        self.assertEqual(tick["purged_notifications"], 1)

    def test_throttled_tick_does_nothing(self) -> None:
        with patch("pointage.main.get_reconciler", return_value=self.reconciler):
            run_sync_tick()
            tick = run_sync_tick()

        self.assertEqual(tick["days"], [])


class JsonFormatterTests(unittest.TestCase):
    def test_extra_fields_are_merged_into_payload(self) -> None:
        record = logging.LogRecord("pointage.reconciler", logging.INFO, __file__, 1, "ledger_day_reconciled", None, None)
        record.day = "2024-05-06"
        record.processed = 3

        payload = json.loads(JsonFormatter().format(record))

        self.assertEqual(payload["message"], "ledger_day_reconciled")
        self.assertEqual(payload["logger"], "pointage.reconciler")
        self.assertEqual(payload["day"], "2024-05-06")
        self.assertEqual(payload["processed"], 3)
        self.assertNotIn("msg", payload)


if __name__ == "__main__":
    unittest.main()
