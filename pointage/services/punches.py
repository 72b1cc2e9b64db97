from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta
from typing import Protocol

from sqlalchemy import column, inspect, select, table, update
from sqlalchemy.orm import Session

from pointage.errors import not_found
from pointage.models import Employee, Punch
from pointage.services.logical_day import (
    PunchRow,
    attendance_timezone,
    dedupe_punches,
    local_at,
    logical_date_for,
    logical_day_bounds,
    normalize_ts,
    to_local,
)
from pointage.services.upsert import dialect_insert

logger = logging.getLogger("pointage.punches")


class PartitionNotFoundError(LookupError):
    def __init__(self, partition: str):
        super().__init__(f"Punch partition {partition} does not exist.")
        self.partition = partition


class PunchSource(Protocol):
    def fetch_partition(
        self,
        db: Session,
        calendar_date: date,
        start_utc: datetime,
        end_utc: datetime,
        employee_id: int | None = None,
    ) -> list[PunchRow]: ...

    def rewrite_first_punch(self, db: Session, employee_id: int, day: date, new_time: time) -> bool: ...


class SqlPunchSource:
    """Punches kept in the single ``punches`` table, partitioned logically by ``calendar_date``."""

    def fetch_partition(
        self,
        db: Session,
        calendar_date: date,
        start_utc: datetime,
        end_utc: datetime,
        employee_id: int | None = None,
    ) -> list[PunchRow]:
        stmt = (
            select(Punch.employee_id, Punch.punched_at)
            .where(
                Punch.calendar_date == calendar_date,
                Punch.punched_at >= start_utc,
                Punch.punched_at < end_utc,
            )
            .order_by(Punch.punched_at.asc())
        )
        if employee_id is not None:
            stmt = stmt.where(Punch.employee_id == employee_id)
        return [
            PunchRow(employee_id=int(row_employee_id), ts_utc=normalize_ts(punched_at))
            for row_employee_id, punched_at in db.execute(stmt).all()
        ]

    def rewrite_first_punch(self, db: Session, employee_id: int, day: date, new_time: time) -> bool:
        start_utc, end_utc = logical_day_bounds(day)
        first = db.scalar(
            select(Punch)
            .where(
                Punch.employee_id == employee_id,
                Punch.punched_at >= start_utc,
                Punch.punched_at < end_utc,
            )
            .order_by(Punch.punched_at.asc())
            .limit(1)
        )
        if first is None:
            return False
        new_ts = local_at(day, new_time)
        first.punched_at = new_ts
        first.calendar_date = to_local(new_ts).date()
        first.logical_date = logical_date_for(new_ts)
        db.flush()
        return True


class DailyTablePunchSource:
    """Reads the ``YYYY_MM_DD`` tables written by the clock-sync agent.

    Each table holds ``user_id`` and a local, naive ``device_time``. A table that
    does not exist yet is reported as :class:`PartitionNotFoundError`.
    """

    @staticmethod
    def table_name(calendar_date: date) -> str:
        return calendar_date.strftime("%Y_%m_%d")

    def _table(self, db: Session, calendar_date: date):
        name = self.table_name(calendar_date)
        if not inspect(db.connection()).has_table(name):
            raise PartitionNotFoundError(name)
        return table(name, column("user_id"), column("device_time"))

    def fetch_partition(
        self,
        db: Session,
        calendar_date: date,
        start_utc: datetime,
        end_utc: datetime,
        employee_id: int | None = None,
    ) -> list[PunchRow]:
        daily = self._table(db, calendar_date)
        tz = attendance_timezone()
        start_local = start_utc.astimezone(tz).replace(tzinfo=None)
        end_local = end_utc.astimezone(tz).replace(tzinfo=None)
        stmt = (
            select(daily.c.user_id, daily.c.device_time)
            .where(daily.c.device_time >= start_local, daily.c.device_time < end_local)
            .order_by(daily.c.device_time.asc())
        )
        if employee_id is not None:
            stmt = stmt.where(daily.c.user_id == str(employee_id))
        rows: list[PunchRow] = []
        for user_id, device_time in db.execute(stmt).all():
            try:
                row_employee_id = int(str(user_id).strip())
            except ValueError:
                logger.warning("daily_punch_invalid_user", extra={"partition": daily.name, "user_id": str(user_id)})
                continue
            if isinstance(device_time, str):
                device_time = datetime.fromisoformat(device_time)
            rows.append(PunchRow(employee_id=row_employee_id, ts_utc=normalize_ts(device_time.replace(tzinfo=tz))))
        return rows

    def rewrite_first_punch(self, db: Session, employee_id: int, day: date, new_time: time) -> bool:
        start_utc, end_utc = logical_day_bounds(day)
        punches = fetch_punches(db, self, start_utc, end_utc, employee_id)
        if not punches:
            return False
        first = punches[0]
        tz = attendance_timezone()
        first_local = first.ts_utc.astimezone(tz).replace(tzinfo=None)
        daily = self._table(db, first_local.date())
        new_local = local_at(day, new_time).astimezone(tz).replace(tzinfo=None)
        db.execute(
            update(daily)
            .where(daily.c.user_id == str(employee_id), daily.c.device_time == first_local)
            .values(device_time=new_local)
        )
        return True


def fetch_punches(
    db: Session,
    source: PunchSource,
    start_utc: datetime,
    end_utc: datetime,
    employee_id: int | None = None,
) -> list[PunchRow]:
    """Collect punches in ``[start_utc, end_utc)`` across every calendar partition the window touches."""
    first_day = to_local(start_utc).date()
    last_day = to_local(end_utc).date()
    rows: list[PunchRow] = []
    current = first_day
    while current <= last_day:
        try:
            rows.extend(source.fetch_partition(db, current, start_utc, end_utc, employee_id))
        except PartitionNotFoundError as exc:
            logger.debug("punch_partition_missing", extra={"partition": exc.partition})
        current += timedelta(days=1)
    return sorted(rows, key=lambda item: (item.ts_utc, item.employee_id))


def fetch_day_punches(
    db: Session,
    source: PunchSource,
    day: date,
    employee_id: int | None = None,
    *,
    dedup_minutes: int | None = None,
) -> list[PunchRow]:
    start_utc, end_utc = logical_day_bounds(day)
    return dedupe_punches(
        fetch_punches(db, source, start_utc, end_utc, employee_id),
        window_minutes=dedup_minutes,
    )


def ingest_punches(db: Session, items: Iterable[tuple[int, datetime]], *, source: str = "biometric") -> dict[str, object]:
    """Store punches idempotently on (employee, timestamp). Returns counts and touched logical days."""
    rows: list[dict[str, object]] = []
    seen: set[tuple[int, datetime]] = set()
    for employee_id, ts in items:
        ts_utc = normalize_ts(ts)
        key = (int(employee_id), ts_utc)
        if key in seen:
            continue
        seen.add(key)
        rows.append(
            {
                "employee_id": int(employee_id),
                "punched_at": ts_utc,
                "calendar_date": to_local(ts_utc).date(),
                "logical_date": logical_date_for(ts_utc),
                "source": source,
            }
        )
    if not rows:
        return {"received": 0, "inserted": 0, "logical_days": []}

    employee_ids = {int(row["employee_id"]) for row in rows}
    known_ids = set(db.scalars(select(Employee.id).where(Employee.id.in_(employee_ids))).all())
    missing_ids = sorted(employee_ids - known_ids)
    if missing_ids:
        raise not_found("EMPLOYEE_NOT_FOUND", f"Unknown employee ids: {missing_ids}.")

    stmt = dialect_insert(db, Punch).values(rows).on_conflict_do_nothing(
        index_elements=[Punch.employee_id, Punch.punched_at],
    )
    result = db.execute(stmt)
    db.commit()

    inserted = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(rows)
    logical_days = sorted({row["logical_date"] for row in rows})
    logger.info(
        "punches_ingested",
        extra={
            "received": len(rows),
            "inserted": inserted,
            "logical_days": [item.isoformat() for item in logical_days],
        },
    )
    return {"received": len(rows), "inserted": inserted, "logical_days": logical_days}
