from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta, timezone

from pointage.errors import ApiError
from pointage.services.logical_day import (
    PunchRow,
    dedupe_punches,
    logical_date_for,
    logical_day_bounds,
    parse_hhmm,
    parse_period,
    period_days,
    period_for,
)
from tests.helpers import local


class LogicalDayTests(unittest.TestCase):
    def test_punch_before_four_belongs_to_previous_day(self) -> None:
        self.assertEqual(logical_date_for(local(date(2024, 5, 2), "03:59")), date(2024, 5, 1))
        self.assertEqual(logical_date_for(local(date(2024, 5, 2), "04:01")), date(2024, 5, 2))

    def test_naive_timestamps_are_read_as_utc(self) -> None:
        # 02:30 UTC is 03:30 in Tunis.
        self.assertEqual(logical_date_for(datetime(2024, 5, 2, 2, 30)), date(2024, 5, 1))
        self.assertEqual(logical_date_for(datetime(2024, 5, 2, 3, 30)), date(2024, 5, 2))

    def test_logical_day_bounds_are_utc_four_to_four(self) -> None:
        start, end = logical_day_bounds(date(2024, 5, 2))

        self.assertEqual(start, datetime(2024, 5, 2, 3, 0, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2024, 5, 3, 3, 0, tzinfo=timezone.utc))

    def test_custom_start_hour(self) -> None:
        stamp = local(date(2024, 5, 2), "05:30")
        self.assertEqual(logical_date_for(stamp, start_hour=6), date(2024, 5, 1))


class DedupTests(unittest.TestCase):
    def test_punches_within_window_of_last_kept_are_dropped(self) -> None:
        base = datetime(2024, 5, 2, 6, 0, tzinfo=timezone.utc)
        punches = [
            PunchRow(1, base),
            PunchRow(1, base + timedelta(minutes=2)),
            PunchRow(1, base + timedelta(minutes=10)),
        ]

        kept = dedupe_punches(punches, window_minutes=5)

        self.assertEqual([item.ts_utc for item in kept], [base, base + timedelta(minutes=10)])

    def test_window_boundary_is_inclusive(self) -> None:
        base = datetime(2024, 5, 2, 6, 0, tzinfo=timezone.utc)
        kept = dedupe_punches([PunchRow(1, base), PunchRow(1, base + timedelta(minutes=5))], window_minutes=5)
        self.assertEqual(len(kept), 1)

    def test_employees_are_deduplicated_independently(self) -> None:
        base = datetime(2024, 5, 2, 6, 0, tzinfo=timezone.utc)
        punches = [
            PunchRow(2, base + timedelta(minutes=1)),
            PunchRow(1, base),
            PunchRow(1, base + timedelta(minutes=3)),
        ]

        kept = dedupe_punches(punches, window_minutes=5)

        self.assertEqual([(item.employee_id, item.ts_utc) for item in kept], [(1, base), (2, base + timedelta(minutes=1))])

    def test_dropping_uses_last_kept_not_last_seen(self) -> None:
        base = datetime(2024, 5, 2, 6, 0, tzinfo=timezone.utc)
        punches = [PunchRow(1, base + timedelta(minutes=offset)) for offset in (0, 4, 8)]

        kept = dedupe_punches(punches, window_minutes=5)

        self.assertEqual([item.ts_utc for item in kept], [base, base + timedelta(minutes=8)])


class PeriodTests(unittest.TestCase):
    def test_period_for_day(self) -> None:
        self.assertEqual(period_for(date(2025, 3, 9)), "2025_03")

    def test_period_days_handles_leap_february(self) -> None:
        days = period_days("2024_02")
        self.assertEqual(len(days), 29)
        self.assertEqual(days[0], date(2024, 2, 1))
        self.assertEqual(days[-1], date(2024, 2, 29))

    def test_invalid_period_is_rejected(self) -> None:
        for value in ("2024-05", "2024_13", "24_05", ""):
            with self.subTest(value=value):
                with self.assertRaises(ApiError) as ctx:
                    parse_period(value)
                self.assertEqual(ctx.exception.status_code, 422)
                self.assertEqual(ctx.exception.code, "INVALID_PERIOD")

    def test_parse_hhmm(self) -> None:
        self.assertEqual(parse_hhmm("7:05").strftime("%H:%M"), "07:05")
        with self.assertRaises(ApiError):
            parse_hhmm("24:00")


if __name__ == "__main__":
    unittest.main()
