from __future__ import annotations

import unittest
from datetime import date, time
from unittest.mock import patch

from sqlalchemy import select

from pointage.clock import FrozenClock
from pointage.errors import ApiError
from pointage.models import (
    AbsentRecord,
    AdvanceRecord,
    ExtraRecord,
    LedgerRecord,
    Notification,
    Punch,
    RetardRecord,
    SideRecordSource,
)
from pointage.services.adjustments import EXTRAS, RETARDS, add_side_record
from pointage.services.notifications import KIND_LEDGER
from pointage.services.reconciler import Reconciler, extra_bucket, parse_mise_a_pied_days, shifted_time
from tests.helpers import add_employee, add_punches, build_reconciler, local, make_session_factory

MONDAY = date(2024, 5, 6)
FRIDAY = date(2024, 5, 3)
TUESDAY = date(2024, 5, 7)


class _ReconcilerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.clock = FrozenClock(local(TUESDAY, "10:00"))
        self.reconciler = build_reconciler(self.session_factory, self.clock)
        self.amel = add_employee(self.session_factory, "Amel")

    def _row(self, employee_id: int, day: date) -> LedgerRecord:
        with self.session_factory() as db:
            return db.scalar(
                select(LedgerRecord).where(LedgerRecord.employee_id == employee_id, LedgerRecord.day_date == day)
            )

    def _all(self, model, employee_id: int, day: date) -> list:
        with self.session_factory() as db:
            return list(
                db.scalars(select(model).where(model.employee_id == employee_id, model.day_date == day)).all()
            )


class ReconcileDayTests(_ReconcilerTestCase):
    def test_late_day_is_folded_into_ledger(self) -> None:
        add_punches(self.session_factory, self.amel, local(MONDAY, "07:25"), local(MONDAY, "16:00"))

        report = self.reconciler.reconcile_day(MONDAY)

        self.assertEqual(report.processed, [self.amel])
        self.assertEqual(report.failed, {})
        row = self._row(self.amel, MONDAY)
        self.assertEqual(row.period, "2024_05")
        self.assertEqual(row.present, 1.0)
        self.assertEqual(row.retard_minutes, 25)
        self.assertEqual(row.infraction_amount, 30.0)
        self.assertEqual(row.clock_in, time(7, 25))
        self.assertEqual(row.clock_out, time(16, 0))
        self.assertEqual(row.remark, "25 min")
        self.assertFalse(row.manually_edited)

        retards = self._all(RetardRecord, self.amel, MONDAY)
        self.assertEqual([(item.minutes, item.source) for item in retards], [(25, SideRecordSource.AUTO)])

    def test_reconcile_provisions_the_whole_month(self) -> None:
        self.reconciler.reconcile_day(MONDAY)

        with self.session_factory() as db:
            rows = db.scalars(select(LedgerRecord).where(LedgerRecord.employee_id == self.amel)).all()
        self.assertEqual(len(rows), 31)

    def test_absent_day_creates_auto_absence(self) -> None:
        self.reconciler.reconcile_day(MONDAY)

        row = self._row(self.amel, MONDAY)
        self.assertEqual(row.present, 0.0)
        self.assertEqual(row.remark, "Absence injustifiée")
        absences = self._all(AbsentRecord, self.amel, MONDAY)
        self.assertEqual([item.source for item in absences], [SideRecordSource.AUTO])

    def test_late_punch_arrival_clears_auto_absence(self) -> None:
        self.reconciler.reconcile_day(MONDAY)
        add_punches(self.session_factory, self.amel, local(MONDAY, "07:00"), local(MONDAY, "16:00"))

        self.reconciler.reconcile_day(MONDAY)

        row = self._row(self.amel, MONDAY)
        self.assertEqual(row.present, 1.0)
        self.assertIsNone(row.remark)
        self.assertEqual(self._all(AbsentRecord, self.amel, MONDAY), [])

    def test_rest_day_stays_blank(self) -> None:
        sunday = date(2024, 5, 5)
        self.reconciler.reconcile_day(sunday)

        row = self._row(self.amel, sunday)
        self.assertEqual(row.present, 0.0)
        self.assertIsNone(row.remark)
        self.assertEqual(self._all(AbsentRecord, self.amel, sunday), [])

    def test_manually_edited_row_is_never_overwritten(self) -> None:
        add_punches(self.session_factory, self.amel, local(MONDAY, "07:25"), local(MONDAY, "16:00"))
        self.reconciler.reconcile_day(MONDAY)
        with self.session_factory() as db:
            row = db.scalar(select(LedgerRecord).where(LedgerRecord.employee_id == self.amel, LedgerRecord.day_date == MONDAY))
            row.present = 0.5
            row.retard_minutes = 3
            row.remark = "Réglé avec le gérant"
            row.manually_edited = True
            db.commit()
        add_punches(self.session_factory, self.amel, local(MONDAY, "18:00"))

        self.reconciler.reconcile_day(MONDAY)

        row = self._row(self.amel, MONDAY)
        self.assertEqual(row.present, 0.5)
        self.assertEqual(row.retard_minutes, 3)
        self.assertEqual(row.remark, "Réglé avec le gérant")
        self.assertEqual(row.clock_out, time(16, 0))

    def test_one_failing_employee_does_not_block_the_others(self) -> None:
        karim = add_employee(self.session_factory, "Karim")
        add_punches(self.session_factory, self.amel, local(MONDAY, "07:00"), local(MONDAY, "16:00"))
        original = Reconciler._reconcile_employee

        def flaky(reconciler, db, ctx, day, now_utc, buffer=None):
            if ctx.employee_id == karim:
                raise RuntimeError("boom")
            return original(reconciler, db, ctx, day, now_utc, buffer)

        with patch.object(Reconciler, "_reconcile_employee", new=flaky):
            report = self.reconciler.reconcile_day(MONDAY)

        self.assertEqual(report.processed, [self.amel])
        self.assertEqual(report.failed, {karim: "RuntimeError"})
        self.assertEqual(self._row(self.amel, MONDAY).present, 1.0)

    def test_blocked_employees_are_skipped(self) -> None:
        blocked = add_employee(self.session_factory, "Nour", is_blocked=True)

        report = self.reconciler.reconcile_day(MONDAY)

        self.assertNotIn(blocked, report.processed)

    def test_manual_retard_wins_over_derived_lateness(self) -> None:
        add_punches(self.session_factory, self.amel, local(MONDAY, "07:25"), local(MONDAY, "16:00"))
        with self.session_factory() as db:
            add_side_record(
                db,
                self.reconciler,
                RETARDS,
                {"employee_id": self.amel, "day_date": MONDAY, "minutes": 5, "reason": "Bus en retard"},
            )

        row = self._row(self.amel, MONDAY)
        self.assertEqual(row.retard_minutes, 5)
        self.assertEqual(row.infraction_amount, 0.0)
        self.assertEqual(row.remark, "Bus en retard")
        retards = self._all(RetardRecord, self.amel, MONDAY)
        self.assertEqual([item.source for item in retards], [SideRecordSource.MANUAL])

    def test_extra_amount_forces_absence_but_prime_does_not(self) -> None:
        karim = add_employee(self.session_factory, "Karim")
        add_punches(self.session_factory, self.amel, local(MONDAY, "07:00"), local(MONDAY, "16:00"))
        add_punches(self.session_factory, karim, local(MONDAY, "07:00"), local(MONDAY, "16:00"))
        with self.session_factory() as db:
            add_side_record(db, self.reconciler, EXTRAS, {"employee_id": self.amel, "day_date": MONDAY, "amount": 50.0, "motive": "Extra banquet"})
        with self.session_factory() as db:
            add_side_record(db, self.reconciler, EXTRAS, {"employee_id": karim, "day_date": MONDAY, "amount": 20.0, "motive": "Prime Aïd"})

        amel_row = self._row(self.amel, MONDAY)
        karim_row = self._row(karim, MONDAY)
        self.assertEqual((amel_row.present, amel_row.extra_amount), (0.0, 50.0))
        self.assertEqual((karim_row.present, karim_row.prime_amount, karim_row.extra_amount), (1.0, 20.0, 0.0))

    def test_zero_manual_infraction_cancels_auto_penalty(self) -> None:
        add_punches(self.session_factory, self.amel, local(MONDAY, "07:40"), local(MONDAY, "16:00"))
        with self.session_factory() as db:
            add_side_record(db, self.reconciler, EXTRAS, {"employee_id": self.amel, "day_date": MONDAY, "amount": 0.0, "motive": "Infraction"})

        row = self._row(self.amel, MONDAY)
        self.assertEqual(row.retard_minutes, 40)
        self.assertEqual(row.infraction_amount, 0.0)

    def test_mise_a_pied_absence_counts_days_and_forces_absence(self) -> None:
        add_punches(self.session_factory, self.amel, local(MONDAY, "07:00"), local(MONDAY, "16:00"))
        with self.session_factory() as db:
            db.add(AbsentRecord(employee_id=self.amel, day_date=MONDAY, type="Mise à pied", reason="3 jours", source=SideRecordSource.MANUAL))
            db.commit()

        self.reconciler.reconcile_day(MONDAY, self.amel)

        row = self._row(self.amel, MONDAY)
        self.assertEqual(row.present, 0.0)
        self.assertEqual(row.mise_a_pied_days, 3.0)
        self.assertEqual(row.remark, "3 jours")

    def test_open_day_punches_notify_once(self) -> None:
        add_punches(self.session_factory, self.amel, local(TUESDAY, "07:02"))

        first = self.reconciler.reconcile_day(TUESDAY)
        second = self.reconciler.reconcile_day(TUESDAY)

        self.assertEqual(first.notifications, 1)
        self.assertEqual(second.notifications, 0)
        with self.session_factory() as db:
            messages = db.scalars(select(Notification.message)).all()
        self.assertEqual(messages, ["Amel a pointé à 07:02"])

    def test_closed_day_does_not_notify(self) -> None:
        add_punches(self.session_factory, self.amel, local(MONDAY, "07:00"), local(MONDAY, "16:00"))

        report = self.reconciler.reconcile_day(MONDAY)

        self.assertEqual(report.notifications, 0)

    def test_trigger_sync_is_throttled_per_day(self) -> None:
        first = self.reconciler.trigger_sync()
        second = self.reconciler.trigger_sync()
        self.clock.advance(seconds=61)
        third = self.reconciler.trigger_sync()

        self.assertEqual([report.day for report in first], [MONDAY, TUESDAY])
        self.assertEqual(second, [])
        self.assertEqual(len(third), 2)

    def test_sync_employee_month_stops_at_today(self) -> None:
        reports = self.reconciler.sync_employee_month(self.amel, "2024_05")
        self.assertEqual([report.day for report in reports][-1], TUESDAY)
        self.assertEqual(len(reports), 7)


class SplitScheduleTests(_ReconcilerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.sami = add_employee(self.session_factory, "Sami", timetable={"is_coupure": True})

    def test_half_attended_split_day_is_half_present(self) -> None:
        add_punches(self.session_factory, self.sami, local(MONDAY, "08:20"), local(MONDAY, "12:00"))

        self.reconciler.reconcile_day(MONDAY, self.sami)

        row = self._row(self.sami, MONDAY)
        self.assertEqual(row.present, 0.5)
        self.assertEqual(row.retard_minutes, 20)
        self.assertEqual(row.infraction_amount, 30.0)
        self.assertEqual(row.remark, "20 min + P2 Absent")

    def test_pardon_uses_split_day_bounds(self) -> None:
        self.reconciler.reconcile_day(MONDAY, self.sami)

        row = self.reconciler.pardon(self.sami, MONDAY)

        self.assertEqual((row.clock_in, row.clock_out), (time(8, 0), time(18, 0)))
        self.assertEqual(row.present, 1.0)


class PardonTests(_ReconcilerTestCase):
    def test_pardon_absent_day_is_idempotent(self) -> None:
        self.reconciler.reconcile_day(MONDAY)
        self.assertEqual(self._row(self.amel, MONDAY).present, 0.0)

        first = self.reconciler.pardon(self.amel, MONDAY, actor="Gérant")
        second = self.reconciler.pardon(self.amel, MONDAY, actor="Gérant")

        for row in (first, second, self._row(self.amel, MONDAY)):
            self.assertEqual(row.present, 1.0)
            self.assertEqual(row.retard_minutes, 0)
            self.assertEqual(row.infraction_amount, 0.0)
            self.assertEqual(row.remark, "Pardonné")
            self.assertEqual(row.clock_in, time(7, 0))
            self.assertEqual(row.clock_out, time(16, 0))
            self.assertTrue(row.manually_edited)
        self.assertEqual(self._all(AbsentRecord, self.amel, MONDAY), [])

    def test_pardon_clears_lateness_and_infraction_extras(self) -> None:
        add_punches(self.session_factory, self.amel, local(MONDAY, "07:25"), local(MONDAY, "18:30"))
        with self.session_factory() as db:
            db.add(ExtraRecord(employee_id=self.amel, day_date=MONDAY, amount=20.0, motive="Infraction tenue"))
            db.add(ExtraRecord(employee_id=self.amel, day_date=MONDAY, amount=15.0, motive="Prime"))
            db.commit()
        self.reconciler.reconcile_day(MONDAY)

        row = self.reconciler.pardon(self.amel, MONDAY)

        self.assertEqual(row.retard_minutes, 0)
        self.assertEqual(row.clock_in, time(7, 0))
        # A clock-out past the nominal end is kept.
        self.assertEqual(row.clock_out, time(18, 30))
        self.assertEqual(self._all(RetardRecord, self.amel, MONDAY), [])
        motives = [item.motive for item in self._all(ExtraRecord, self.amel, MONDAY)]
        self.assertEqual(motives, ["Prime"])

    def test_pardon_notifies_ledger_feed(self) -> None:
        self.reconciler.pardon(self.amel, MONDAY, actor="Gérant")

        with self.session_factory() as db:
            (item,) = db.scalars(select(Notification)).all()
        self.assertEqual(item.kind, KIND_LEDGER)
        self.assertEqual(item.title, "Pardon")
        self.assertEqual(item.message, "Amel : journée du 06/05/2024 pardonnée")
        self.assertEqual(item.actor_name, "Gérant")
        self.assertEqual(item.employee_id, self.amel)
        self.assertEqual(item.deep_link, f"/ledger/2024_05?employee_id={self.amel}")

    def test_pardon_unknown_employee(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            self.reconciler.pardon(999, MONDAY)
        self.assertEqual(ctx.exception.code, "EMPLOYEE_NOT_FOUND")


class EditLedgerRowTests(_ReconcilerTestCase):
    def setUp(self) -> None:
        super().setUp()
        add_punches(self.session_factory, self.amel, local(FRIDAY, "07:10"), local(FRIDAY, "16:00"))
        add_punches(self.session_factory, self.amel, local(MONDAY, "07:25"), local(MONDAY, "16:00"))
        self.reconciler.reconcile_day(FRIDAY)
        self.reconciler.reconcile_day(MONDAY)
        self.monday_row = self._row(self.amel, MONDAY)

    def _punches(self, day: date) -> list:
        with self.session_factory() as db:
            return list(db.scalars(select(Punch).where(Punch.logical_date == day).order_by(Punch.punched_at)).all())

    def test_retard_edit_moves_clock_in_and_rewrites_first_punch(self) -> None:
        friday_before = self._row(self.amel, FRIDAY)
        friday_punches_before = [item.punched_at for item in self._punches(FRIDAY)]

        row = self.reconciler.edit_ledger_row("2024_05", self.monday_row.id, {"retard_minutes": 45}, actor="Gérant")

        self.assertEqual(row.retard_minutes, 45)
        self.assertEqual(row.clock_in, time(7, 45))
        self.assertTrue(row.manually_edited)
        stored = self._row(self.amel, MONDAY)
        self.assertEqual(stored.clock_in, time(7, 45))
        self.assertEqual(stored.retard_minutes, 45)

        punches = self._punches(MONDAY)
        # 07:45 in Tunis, stored as UTC.
        first_stamp = punches[0].punched_at
        self.assertEqual((first_stamp.hour, first_stamp.minute), (6, 45))
        retards = self._all(RetardRecord, self.amel, MONDAY)
        self.assertEqual([(item.minutes, item.reason, item.source) for item in retards], [(45, "45 min", SideRecordSource.MANUAL)])

        friday_after = self._row(self.amel, FRIDAY)
        self.assertEqual(friday_after.retard_minutes, friday_before.retard_minutes)
        self.assertEqual(friday_after.clock_in, friday_before.clock_in)
        self.assertFalse(friday_after.manually_edited)
        self.assertEqual([item.punched_at for item in self._punches(FRIDAY)], friday_punches_before)

    def test_explicit_clock_in_is_not_overridden(self) -> None:
        row = self.reconciler.edit_ledger_row(
            "2024_05",
            self.monday_row.id,
            {"retard_minutes": 45, "clock_in": time(7, 30)},
        )
        self.assertEqual(row.clock_in, time(7, 30))

    def test_advance_edit_is_back_propagated(self) -> None:
        self.reconciler.edit_ledger_row("2024_05", self.monday_row.id, {"advance_amount": 100.0})

        advances = self._all(AdvanceRecord, self.amel, MONDAY)
        self.assertEqual([(item.amount, item.motive) for item in advances], [(100.0, "Avance sur salaire (Fiche)")])

    def test_presence_edit_creates_manual_absence(self) -> None:
        self.reconciler.edit_ledger_row("2024_05", self.monday_row.id, {"present": 0.0, "remark": "Malade"})

        absences = self._all(AbsentRecord, self.amel, MONDAY)
        self.assertEqual([(item.type, item.reason, item.source) for item in absences], [("Absence", "Malade", SideRecordSource.MANUAL)])
        self.assertEqual(self._row(self.amel, MONDAY).present, 0.0)

    def test_extra_edit_forces_absence(self) -> None:
        row = self.reconciler.edit_ledger_row("2024_05", self.monday_row.id, {"extra_amount": 40.0})

        self.assertEqual(row.present, 0.0)
        self.assertEqual([item.amount for item in self._all(ExtraRecord, self.amel, MONDAY)], [40.0])

    def test_row_outside_period_is_not_found(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            self.reconciler.edit_ledger_row("2024_04", self.monday_row.id, {"retard_minutes": 5})
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.code, "LEDGER_ROW_NOT_FOUND")

    def test_unknown_field_is_rejected(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            self.reconciler.edit_ledger_row("2024_05", self.monday_row.id, {"paid": True})
        self.assertEqual(ctx.exception.status_code, 422)


class PaymentTests(_ReconcilerTestCase):
    def test_pay_marks_month_and_stores_net_on_first_day(self) -> None:
        rows = self.reconciler.pay("2024_05", self.amel, net_salary=850.0)

        self.assertEqual(rows, 31)
        with self.session_factory() as db:
            records = db.scalars(select(LedgerRecord).where(LedgerRecord.employee_id == self.amel).order_by(LedgerRecord.day_date)).all()
        self.assertTrue(all(item.paid for item in records))
        self.assertEqual(records[0].net_salary, 850.0)
        self.assertTrue(all(item.net_salary is None for item in records[1:]))

    def test_unpay_clears_flag_and_net(self) -> None:
        self.reconciler.pay("2024_05", self.amel, net_salary=850.0)
        self.reconciler.unpay("2024_05", self.amel)

        with self.session_factory() as db:
            records = db.scalars(select(LedgerRecord).where(LedgerRecord.employee_id == self.amel)).all()
        self.assertFalse(any(item.paid for item in records))
        self.assertTrue(all(item.net_salary is None for item in records))

    def test_pay_and_unpay_notify_ledger_feed(self) -> None:
        self.reconciler.pay("2024_05", self.amel, net_salary=850.0, actor="Gérant")
        self.reconciler.unpay("2024_05", self.amel)

        with self.session_factory() as db:
            items = db.scalars(select(Notification).order_by(Notification.id)).all()
        self.assertEqual([item.title for item in items], ["Paie", "Paie annulée"])
        self.assertEqual(items[0].message, "Amel : mois 2024_05 marqué payé")
        self.assertEqual([item.actor_name for item in items], ["Gérant", None])


class HelperTests(unittest.TestCase):
    def test_extra_bucket_by_motive_prefix(self) -> None:
        self.assertEqual(extra_bucket("Prime Aïd"), "prime")
        self.assertEqual(extra_bucket("infraction tenue"), "infraction")
        self.assertEqual(extra_bucket("Banquet"), "extra")
        self.assertEqual(extra_bucket(None), "extra")

    def test_mise_a_pied_days_default_to_one(self) -> None:
        self.assertEqual(parse_mise_a_pied_days("2 jours"), 2.0)
        self.assertEqual(parse_mise_a_pied_days("Sanction"), 1.0)

    def test_shifted_time(self) -> None:
        self.assertEqual(shifted_time(time(7, 0), 45), time(7, 45))
        self.assertEqual(shifted_time(time(23, 30), 45), time(0, 15))


if __name__ == "__main__":
    unittest.main()
