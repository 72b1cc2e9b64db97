from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future

from sqlalchemy import inspect, select, text
from sqlalchemy.engine import Connection
from sqlalchemy.orm import Session

from pointage.models import Employee, LedgerRecord
from pointage.services.logical_day import parse_period, period_days
from pointage.services.upsert import dialect_insert

logger = logging.getLogger("pointage.provisioner")

ADVISORY_LOCK_BASE = 123456789
INSERT_CHUNK_SIZE = 500

# Optional ledger columns added after the first release. Safe to re-apply.
ADDITIVE_LEDGER_COLUMNS: dict[str, str] = {
    "mise_a_pied_days": "FLOAT NOT NULL DEFAULT 0",
    "doublage_amount": "FLOAT NOT NULL DEFAULT 0",
    "prime_amount": "FLOAT NOT NULL DEFAULT 0",
    "infraction_amount": "FLOAT NOT NULL DEFAULT 0",
    "remark": "TEXT",
    "clock_in": "TIME",
    "clock_out": "TIME",
    "manually_edited": "BOOLEAN NOT NULL DEFAULT FALSE",
    "paid": "BOOLEAN NOT NULL DEFAULT FALSE",
    "net_salary": "FLOAT",
}


def ensure_ledger_columns(connection: Connection) -> list[str]:
    existing = {str(item.get("name")) for item in inspect(connection).get_columns(LedgerRecord.__tablename__)}
    if_not_exists = "IF NOT EXISTS " if connection.dialect.name == "postgresql" else ""
    added: list[str] = []
    for name, ddl in ADDITIVE_LEDGER_COLUMNS.items():
        if name in existing:
            continue
        connection.execute(
            text(f"ALTER TABLE {LedgerRecord.__tablename__} ADD COLUMN {if_not_exists}{name} {ddl}")
        )
        added.append(name)
    if added:
        logger.info("ledger_columns_added", extra={"columns": added})
    return added


def advisory_lock_key(period: str) -> int:
    year, month = parse_period(period)
    return ADVISORY_LOCK_BASE + year * 100 + month


class MonthLedgerProvisioner:
    """Creates the ledger rows (employee x day) of a month exactly once per process.

    Concurrent callers for the same period share one in-flight run; across
    processes the PostgreSQL advisory lock serialises the insert.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory
        self._initialized: set[str] = set()
        self._in_flight: dict[str, Future[int]] = {}
        self._lock = threading.Lock()

    def is_initialized(self, period: str) -> bool:
        with self._lock:
            return period in self._initialized

    def ensure(self, period: str, *, force: bool = False) -> int:
        period = period.strip()
        parse_period(period)

        with self._lock:
            if force:
                self._initialized.discard(period)
            if period in self._initialized:
                return 0
            future = self._in_flight.get(period)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[period] = future

        if not owner:
            return future.result()

        try:
            inserted = self._provision(period)
        except Exception as exc:
            future.set_exception(exc)
            logger.exception("month_ledger_provision_failed", extra={"period": period})
            raise
        else:
            future.set_result(inserted)
            with self._lock:
                self._initialized.add(period)
            return inserted
        finally:
            with self._lock:
                self._in_flight.pop(period, None)

    def _provision(self, period: str) -> int:
        days = period_days(period)
        with self._session_factory() as db:
            ensure_ledger_columns(db.connection())
            if db.get_bind().dialect.name == "postgresql":
                db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": advisory_lock_key(period)})

            employee_ids = list(db.scalars(select(Employee.id).order_by(Employee.id)).all())
            rows = [
                {"period": period, "employee_id": employee_id, "day_date": day}
                for employee_id in employee_ids
                for day in days
            ]
            inserted = 0
            for offset in range(0, len(rows), INSERT_CHUNK_SIZE):
                chunk = rows[offset : offset + INSERT_CHUNK_SIZE]
                result = db.execute(
                    dialect_insert(db, LedgerRecord)
                    .values(chunk)
                    .on_conflict_do_nothing(index_elements=[LedgerRecord.employee_id, LedgerRecord.day_date])
                )
                if result.rowcount and result.rowcount > 0:
                    inserted += result.rowcount
            db.commit()

        logger.info(
            "month_ledger_provisioned",
            extra={"period": period, "employees": len(employee_ids), "days": len(days), "inserted": inserted},
        )
        return inserted
