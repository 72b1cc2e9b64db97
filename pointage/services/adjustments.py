"""Add, update and delete the side records folded into the ledger.

Each mutation commits its own change, then recomputes the affected day (both
days when a record moves) before returning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pointage.errors import ApiError, invalid, not_found
from pointage.models import (
    AbsentRecord,
    AdvanceRecord,
    AdvanceStatus,
    DoublageRecord,
    Employee,
    ExtraRecord,
    RetardRecord,
    SideRecordSource,
)
from pointage.services.logical_day import period_for
from pointage.services.reconciler import Reconciler

logger = logging.getLogger("pointage.adjustments")


@dataclass(frozen=True, slots=True)
class SideKind:
    name: str
    model: type
    not_found_code: str
    label: str
    fields: frozenset[str]
    manual_source: bool = False


ADVANCES = SideKind(
    name="advance",
    model=AdvanceRecord,
    not_found_code="ADVANCE_NOT_FOUND",
    label="Avance",
    fields=frozenset({"employee_id", "day_date", "amount", "motive", "status"}),
)
RETARDS = SideKind(
    name="retard",
    model=RetardRecord,
    not_found_code="RETARD_NOT_FOUND",
    label="Retard",
    fields=frozenset({"employee_id", "day_date", "minutes", "reason"}),
    manual_source=True,
)
ABSENCES = SideKind(
    name="absence",
    model=AbsentRecord,
    not_found_code="ABSENCE_NOT_FOUND",
    label="Absence",
    fields=frozenset({"employee_id", "day_date", "type", "reason"}),
    manual_source=True,
)
EXTRAS = SideKind(
    name="extra",
    model=ExtraRecord,
    not_found_code="EXTRA_NOT_FOUND",
    label="Extra",
    fields=frozenset({"employee_id", "day_date", "amount", "motive"}),
)
DOUBLAGES = SideKind(
    name="doublage",
    model=DoublageRecord,
    not_found_code="DOUBLAGE_NOT_FOUND",
    label="Doublage",
    fields=frozenset({"employee_id", "day_date", "amount"}),
)


def _require_employee(db: Session, employee_id: int) -> None:
    if db.get(Employee, employee_id) is None:
        raise not_found("EMPLOYEE_NOT_FOUND", f"Employee {employee_id} not found.")


def _get_record(db: Session, kind: SideKind, record_id: int) -> Any:
    record = db.get(kind.model, record_id)
    if record is None:
        raise not_found(kind.not_found_code, f"{kind.name.capitalize()} {record_id} not found.")
    return record


def _check_fields(kind: SideKind, values: dict[str, Any]) -> None:
    unknown = sorted(set(values) - kind.fields)
    if unknown:
        raise invalid("VALIDATION_ERROR", f"Unknown {kind.name} fields: {', '.join(unknown)}.")


def _commit(db: Session, kind: SideKind) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ApiError(
            status_code=409,
            code=f"{kind.name.upper()}_CONFLICT",
            message=f"A manual {kind.name} already exists for that employee and day.",
        ) from exc
    except Exception:
        db.rollback()
        raise


def _recompute(reconciler: Reconciler, employee_id: int, *days: date) -> None:
    for day in sorted(set(days)):
        reconciler.reconcile_day(day, employee_id)


def _notify(
    db: Session,
    reconciler: Reconciler,
    kind: SideKind,
    action: str,
    employee_id: int,
    day: date,
    actor: str | None,
) -> None:
    employee = db.get(Employee, employee_id)
    name = employee.full_name if employee is not None else f"#{employee_id}"
    reconciler.notify_ledger_change(
        f"{kind.label} : {action}",
        f"{name}, {day:%d/%m/%Y}",
        employee_id=employee_id,
        period=period_for(day),
        actor=actor,
    )


def add_side_record(
    db: Session,
    reconciler: Reconciler,
    kind: SideKind,
    values: dict[str, Any],
    *,
    actor: str | None = None,
) -> Any:
    _check_fields(kind, values)
    _require_employee(db, int(values["employee_id"]))

    record = None
    if kind.manual_source:
        # One manual fact per employee and day: a second add replaces the first.
        record = db.scalar(
            select(kind.model).where(
                kind.model.employee_id == values["employee_id"],
                kind.model.day_date == values["day_date"],
                kind.model.source == SideRecordSource.MANUAL,
            )
        )
    if record is None:
        record = kind.model(**values)
        if kind.manual_source:
            record.source = SideRecordSource.MANUAL
        db.add(record)
    else:
        for key, value in values.items():
            setattr(record, key, value)
    _commit(db, kind)
    db.refresh(record)

    logger.info(f"{kind.name}_added", extra={"record_id": record.id, "employee_id": record.employee_id})
    _recompute(reconciler, record.employee_id, record.day_date)
    _notify(db, reconciler, kind, "ajout", record.employee_id, record.day_date, actor)
    return record


def update_side_record(
    db: Session,
    reconciler: Reconciler,
    kind: SideKind,
    record_id: int,
    changes: dict[str, Any],
    *,
    actor: str | None = None,
) -> Any:
    _check_fields(kind, changes)
    record = _get_record(db, kind, record_id)
    old_employee_id, old_day = record.employee_id, record.day_date
    if "employee_id" in changes:
        _require_employee(db, int(changes["employee_id"]))

    for key, value in changes.items():
        setattr(record, key, value)
    if kind.manual_source:
        record.source = SideRecordSource.MANUAL
    _commit(db, kind)
    db.refresh(record)

    logger.info(f"{kind.name}_updated", extra={"record_id": record.id, "fields": sorted(changes)})
    _recompute(reconciler, record.employee_id, record.day_date)
    if (old_employee_id, old_day) != (record.employee_id, record.day_date):
        _recompute(reconciler, old_employee_id, old_day)
    _notify(db, reconciler, kind, "modification", record.employee_id, record.day_date, actor)
    return record


def delete_side_record(
    db: Session,
    reconciler: Reconciler,
    kind: SideKind,
    record_id: int,
    *,
    actor: str | None = None,
) -> None:
    record = _get_record(db, kind, record_id)
    employee_id, day = record.employee_id, record.day_date
    db.delete(record)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"{kind.name}_deleted", extra={"record_id": record_id, "employee_id": employee_id})
    _recompute(reconciler, employee_id, day)
    _notify(db, reconciler, kind, "suppression", employee_id, day, actor)


def set_advance_status(
    db: Session,
    reconciler: Reconciler,
    advance_id: int,
    status: AdvanceStatus,
    *,
    actor: str | None = None,
) -> AdvanceRecord:
    return update_side_record(db, reconciler, ADVANCES, advance_id, {"status": status}, actor=actor)


def list_side_records(
    db: Session,
    kind: SideKind,
    *,
    start: date,
    end: date,
    employee_id: int | None = None,
) -> list[Any]:
    stmt = (
        select(kind.model)
        .where(kind.model.day_date >= start, kind.model.day_date <= end)
        .order_by(kind.model.day_date.asc(), kind.model.id.asc())
    )
    if employee_id is not None:
        stmt = stmt.where(kind.model.employee_id == employee_id)
    return list(db.scalars(stmt).all())
