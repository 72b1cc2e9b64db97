from __future__ import annotations

from collections.abc import Generator
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pointage.clock import FrozenClock
from pointage.db import Base
from pointage.models import Employee, EmployeeSchedule, ShiftLabel
from pointage.services.cache import ReadCache
from pointage.services.classifier import ClassifierRules
from pointage.services.notifications import NotificationSink
from pointage.services.provisioner import MonthLedgerProvisioner
from pointage.services.punches import SqlPunchSource, ingest_punches
from pointage.services.reconciler import Reconciler

TUNIS = ZoneInfo("Africa/Tunis")


def local(day: date, hhmm: str, *, next_day: bool = False) -> datetime:
    hours, minutes = (int(part) for part in hhmm.split(":"))
    target = day + timedelta(days=1) if next_day else day
    return datetime.combine(target, time(hours, minutes), tzinfo=TUNIS)


def make_session_factory() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def build_reconciler(session_factory: sessionmaker[Session], clock: FrozenClock) -> Reconciler:
    return Reconciler(
        session_factory=session_factory,
        cache=ReadCache(clock),
        clock=clock,
        provisioner=MonthLedgerProvisioner(session_factory),
        punch_source=SqlPunchSource(),
        notifier=NotificationSink(session_factory),
        rules=ClassifierRules(),
        max_workers=1,
        sync_throttle_seconds=60,
        dedup_minutes=5,
    )


def add_employee(
    session_factory: sessionmaker[Session],
    full_name: str,
    *,
    department: str | None = "Salle",
    week: dict[str, ShiftLabel] | None = None,
    timetable: dict[str, object] | None = None,
    is_blocked: bool = False,
) -> int:
    with session_factory() as db:
        employee = Employee(full_name=full_name, department=department, base_salary=900.0, is_blocked=is_blocked)
        db.add(employee)
        db.flush()
        db.add(EmployeeSchedule(employee_id=employee.id, **(week or {}), **(timetable or {})))
        db.commit()
        return employee.id


def add_punches(session_factory: sessionmaker[Session], employee_id: int, *stamps: datetime) -> None:
    with session_factory() as db:
        ingest_punches(db, [(employee_id, stamp) for stamp in stamps])


def override_get_db(session_factory: sessionmaker[Session]):
    def _override() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    return _override
