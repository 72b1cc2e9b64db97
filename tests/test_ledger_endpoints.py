from __future__ import annotations

import unittest
from datetime import date
from urllib.parse import quote

from fastapi.testclient import TestClient
from sqlalchemy import select

from pointage.clock import FrozenClock
from pointage.db import get_db
from pointage.dependencies import get_reconciler
from pointage.main import app
from pointage.models import AuditLog, LedgerRecord, RetardRecord
from tests.helpers import add_employee, add_punches, build_reconciler, local, make_session_factory, override_get_db

MONDAY = date(2024, 5, 6)
TUESDAY = date(2024, 5, 7)


class _ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.clock = FrozenClock(local(TUESDAY, "10:00"))
        self.reconciler = build_reconciler(self.session_factory, self.clock)
        self.amel = add_employee(self.session_factory, "Amel")
        app.dependency_overrides[get_db] = override_get_db(self.session_factory)
        app.dependency_overrides[get_reconciler] = lambda: self.reconciler
        self.client = TestClient(app)
        self.headers = {"X-Actor": quote("Gérant")}

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def _audit_actions(self) -> list[tuple[str, str]]:
        with self.session_factory() as db:
            return [(item.action, item.actor) for item in db.scalars(select(AuditLog).order_by(AuditLog.id)).all()]

    def _row_id(self, day: date) -> int:
        with self.session_factory() as db:
            return db.scalar(
                select(LedgerRecord.id).where(LedgerRecord.employee_id == self.amel, LedgerRecord.day_date == day)
            )


class PunchEndpointTests(_ApiTestCase):
    def test_batch_ingest_reconciles_touched_days(self) -> None:
        response = self.client.post(
            "/api/punches/batch",
            json={
                "punches": [
                    {"employee_id": self.amel, "ts_local": "2024-05-06T07:25:00"},
                    {"employee_id": self.amel, "ts_utc": "2024-05-06T15:00:00Z"},
                ]
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["inserted"], 2)
        self.assertEqual(body["logical_days"], ["2024-05-06"])
        self.assertEqual(body["reconciled"][0]["processed"], 1)

        ledger = self.client.get("/api/ledger/2024_05", params={"employee_id": self.amel}).json()
        monday = next(item for item in ledger if item["day_date"] == "2024-05-06")
        self.assertEqual(monday["retard_minutes"], 25)
        self.assertEqual(monday["clock_in"], "07:25")
        self.assertEqual(monday["clock_out"], "16:00")
        self.assertEqual(self._audit_actions(), [("PUNCH_BATCH_INGEST", "Gérant")])

    def test_request_log_carries_decoded_actor(self) -> None:
        with self.assertLogs("pointage.request", level="INFO") as logs:
            self.client.get("/api/ledger/2024_05", headers=self.headers)
            self.client.get("/api/ledger/2024_05")

        self.assertEqual([record.actor for record in logs.records], ["Gérant", "Système"])

    def test_batch_rejects_punch_without_timestamp(self) -> None:
        response = self.client.post("/api/punches/batch", json={"punches": [{"employee_id": self.amel}]})

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_batch_rejects_unknown_employee(self) -> None:
        response = self.client.post(
            "/api/punches/batch",
            json={"punches": [{"employee_id": 404, "ts_utc": "2024-05-06T06:00:00Z"}]},
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "EMPLOYEE_NOT_FOUND")


class LedgerEndpointTests(_ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        add_punches(self.session_factory, self.amel, local(MONDAY, "07:25"), local(MONDAY, "16:00"))
        self.reconciler.reconcile_day(MONDAY)

    def test_read_ledger_lists_whole_month(self) -> None:
        response = self.client.get("/api/ledger/2024_05")

        self.assertEqual(response.status_code, 200)
        rows = response.json()
        self.assertEqual(len(rows), 31)
        self.assertEqual(rows[0]["employee_name"], "Amel")

    def test_invalid_period_is_rejected(self) -> None:
        response = self.client.get("/api/ledger/2024-05")

        self.assertEqual(response.status_code, 422)
        error = response.json()["error"]
        self.assertEqual(error["code"], "INVALID_PERIOD")
        self.assertTrue(error["request_id"])

    def test_edit_row_accepts_duration_text(self) -> None:
        response = self.client.patch(
            f"/api/ledger/2024_05/rows/{self._row_id(MONDAY)}",
            json={"retard_minutes": "45 min"},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["retard_minutes"], 45)
        self.assertEqual(body["clock_in"], "07:45")
        self.assertTrue(body["manually_edited"])
        self.assertEqual(self._audit_actions(), [("LEDGER_ROW_EDIT", "Gérant")])

    def test_edit_row_requires_a_field(self) -> None:
        response = self.client.patch(f"/api/ledger/2024_05/rows/{self._row_id(MONDAY)}", json={})
        self.assertEqual(response.status_code, 422)

    def test_edit_row_rejects_null_for_required_columns(self) -> None:
        row_id = self._row_id(MONDAY)
        for field in ("present", "advance_amount", "retard_minutes"):
            with self.subTest(field=field):
                response = self.client.patch(f"/api/ledger/2024_05/rows/{row_id}", json={field: None})

                self.assertEqual(response.status_code, 422, response.text)
                self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")
        self.assertEqual(self._audit_actions(), [])

    def test_edit_row_can_clear_remark_and_clock(self) -> None:
        response = self.client.patch(
            f"/api/ledger/2024_05/rows/{self._row_id(MONDAY)}",
            json={"remark": None, "clock_out": None},
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertIsNone(body["remark"])
        self.assertIsNone(body["clock_out"])
        self.assertEqual(body["clock_in"], "07:25")

    def test_edit_unknown_row(self) -> None:
        response = self.client.patch("/api/ledger/2024_05/rows/99999", json={"present": 1})

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "LEDGER_ROW_NOT_FOUND")

    def test_pardon_endpoint(self) -> None:
        response = self.client.post(
            "/api/ledger/pardon",
            json={"employee_id": self.amel, "day_date": "2024-05-06"},
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["remark"], "Pardonné")
        self.assertEqual(body["retard_minutes"], 0)
        self.assertEqual(self._audit_actions(), [("LEDGER_PARDON", "Système")])

    def test_pay_and_unpay(self) -> None:
        paid = self.client.post("/api/ledger/2024_05/pay", json={"employee_id": self.amel, "net_salary": 870.5})
        self.assertEqual(paid.status_code, 200)
        self.assertEqual(paid.json(), {"period": "2024_05", "employee_id": self.amel, "paid": True, "rows": 31})

        rows = self.client.get("/api/ledger/2024_05").json()
        self.assertTrue(all(item["paid"] for item in rows))
        self.assertEqual(rows[0]["net_salary"], 870.5)

        unpaid = self.client.post("/api/ledger/2024_05/unpay", json={"employee_id": self.amel})
        self.assertEqual(unpaid.json()["paid"], False)
        rows = self.client.get("/api/ledger/2024_05").json()
        self.assertFalse(any(item["paid"] for item in rows))

    def test_provision_endpoint(self) -> None:
        response = self.client.post("/api/ledger/2024_06/provision")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"period": "2024_06", "inserted": 30})

    def test_sync_single_day(self) -> None:
        response = self.client.post("/api/ledger/sync", json={"day_date": "2024-05-06"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["day"] for item in response.json()["reports"]], ["2024-05-06"])

    def test_sync_period_requires_employee(self) -> None:
        response = self.client.post("/api/ledger/sync", json={"period": "2024_05"})
        self.assertEqual(response.status_code, 422)

    def test_day_status(self) -> None:
        response = self.client.get("/api/ledger/status", params={"date": "2024-05-06"})

        self.assertEqual(response.status_code, 200)
        (item,) = response.json()
        self.assertEqual(item["state"], "Retard")
        self.assertEqual(item["retard"], "25 min")
        self.assertEqual(item["clock_in"], "07:25")
        self.assertEqual(item["month_retards"], 1)


class AdjustmentEndpointTests(_ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        add_punches(self.session_factory, self.amel, local(MONDAY, "07:25"), local(MONDAY, "16:00"))

    def test_manual_retard_lifecycle(self) -> None:
        created = self.client.post(
            "/api/retards",
            json={"employee_id": self.amel, "day_date": "2024-05-06", "minutes": "1h 5m", "reason": "Rendez-vous"},
            headers=self.headers,
        )
        self.assertEqual(created.status_code, 201, created.text)
        record = created.json()
        self.assertEqual((record["minutes"], record["source"]), (65, "MANUAL"))

        listed = self.client.get("/api/retards", params={"start": "2024-05-01", "end": "2024-05-31"}).json()
        self.assertEqual([item["id"] for item in listed], [record["id"]])

        ledger = self.client.get("/api/ledger/2024_05", params={"employee_id": self.amel}).json()
        monday = next(item for item in ledger if item["day_date"] == "2024-05-06")
        self.assertEqual(monday["retard_minutes"], 65)

        deleted = self.client.delete(f"/api/retards/{record['id']}", headers=self.headers)
        self.assertEqual(deleted.status_code, 204)
        with self.session_factory() as db:
            retards = db.scalars(select(RetardRecord)).all()
        # The derived lateness comes back once the manual record is gone.
        self.assertEqual([(item.minutes, item.source.value) for item in retards], [(25, "AUTO")])
        self.assertEqual(
            [action for action, _ in self._audit_actions()],
            ["RETARD_CREATE", "RETARD_DELETE"],
        )

    def test_advance_status_change(self) -> None:
        created = self.client.post(
            "/api/advances",
            json={"employee_id": self.amel, "day_date": "2024-05-06", "amount": 120},
        ).json()
        self.assertEqual(created["status"], "Validé")

        refused = self.client.patch(f"/api/advances/{created['id']}/status", json={"status": "Refusé"})
        self.assertEqual(refused.status_code, 200)

        ledger = self.client.get("/api/ledger/2024_05", params={"employee_id": self.amel}).json()
        monday = next(item for item in ledger if item["day_date"] == "2024-05-06")
        self.assertEqual(monday["advance_amount"], 0.0)

    def test_advance_creation_reaches_notification_feed(self) -> None:
        created = self.client.post(
            "/api/advances",
            json={"employee_id": self.amel, "day_date": "2024-05-06", "amount": 50},
            headers=self.headers,
        )
        self.assertEqual(created.status_code, 201, created.text)

        (item,) = self.client.get("/api/notifications").json()
        self.assertEqual(item["kind"], "LEDGER")
        self.assertEqual((item["title"], item["message"]), ("Avance : ajout", "Amel, 06/05/2024"))
        self.assertEqual(item["actor_name"], "Gérant")
        self.assertEqual(item["deep_link"], f"/ledger/2024_05?employee_id={self.amel}")

    def test_update_missing_record(self) -> None:
        response = self.client.patch("/api/extras/999", json={"amount": 10})

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "EXTRA_NOT_FOUND")

    def test_update_rejects_null_amount(self) -> None:
        created = self.client.post(
            "/api/extras",
            json={"employee_id": self.amel, "day_date": "2024-05-06", "amount": 40, "motive": "Inventaire"},
        ).json()

        rejected = self.client.patch(f"/api/extras/{created['id']}", json={"amount": None})
        cleared = self.client.patch(f"/api/extras/{created['id']}", json={"motive": None})

        self.assertEqual(rejected.status_code, 422)
        self.assertEqual(rejected.json()["error"]["code"], "VALIDATION_ERROR")
        self.assertEqual(cleared.status_code, 200, cleared.text)
        self.assertIsNone(cleared.json()["motive"])
        self.assertEqual(cleared.json()["amount"], 40.0)

    def test_list_rejects_inverted_range(self) -> None:
        response = self.client.get("/api/doublages", params={"start": "2024-05-31", "end": "2024-05-01"})
        self.assertEqual(response.status_code, 422)


class NotificationEndpointTests(_ApiTestCase):
    def test_punch_notifications_can_be_read_and_acknowledged(self) -> None:
        self.client.post(
            "/api/punches/batch",
            json={"punches": [{"employee_id": self.amel, "ts_local": "2024-05-07T07:02:00"}]},
        )

        listed = self.client.get("/api/notifications", params={"unread_only": True}).json()
        self.assertEqual([item["message"] for item in listed], ["Amel a pointé à 07:02"])

        marked = self.client.post("/api/notifications/read", json={"ids": [listed[0]["id"]]})
        self.assertEqual(marked.json(), {"updated": 1})
        self.assertEqual(self.client.get("/api/notifications", params={"unread_only": True}).json(), [])


if __name__ == "__main__":
    unittest.main()
