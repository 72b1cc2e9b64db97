from __future__ import annotations

from collections import defaultdict
from datetime import date
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pointage.models import (
    LEDGER_ADVANCE_STATUSES,
    AbsentRecord,
    AdvanceRecord,
    DoublageRecord,
    Employee,
    EmployeeSchedule,
    ExtraRecord,
    LedgerRecord,
    RetardRecord,
    ShiftLabel,
)
from pointage.schemas import DayStatusItem, LedgerRow
from pointage.services.classifier import classify_day
from pointage.services.logical_day import dedupe_punches, logical_day_bounds, parse_period, period_days, period_for
from pointage.services.punches import fetch_punches
from pointage.services.reconciler import Reconciler, extra_bucket


def _live_totals(db: Session, start: date, end: date, employee_id: int | None) -> dict[tuple[int, date], dict[str, float]]:
    totals: dict[tuple[int, date], dict[str, float]] = defaultdict(
        lambda: {"advance_amount": 0.0, "extra_amount": 0.0, "prime_amount": 0.0, "doublage_amount": 0.0}
    )

    def scoped(stmt, model):
        stmt = stmt.where(model.day_date >= start, model.day_date <= end)
        if employee_id is not None:
            stmt = stmt.where(model.employee_id == employee_id)
        return stmt

    advance_stmt = scoped(
        select(AdvanceRecord.employee_id, AdvanceRecord.day_date, func.sum(AdvanceRecord.amount))
        .where(AdvanceRecord.status.in_(LEDGER_ADVANCE_STATUSES))
        .group_by(AdvanceRecord.employee_id, AdvanceRecord.day_date),
        AdvanceRecord,
    )
    for row_employee_id, day, amount in db.execute(advance_stmt).all():
        totals[(row_employee_id, day)]["advance_amount"] = float(amount or 0)

    doublage_stmt = scoped(
        select(DoublageRecord.employee_id, DoublageRecord.day_date, func.sum(DoublageRecord.amount)).group_by(
            DoublageRecord.employee_id, DoublageRecord.day_date
        ),
        DoublageRecord,
    )
    for row_employee_id, day, amount in db.execute(doublage_stmt).all():
        totals[(row_employee_id, day)]["doublage_amount"] = float(amount or 0)

    for extra in db.scalars(scoped(select(ExtraRecord), ExtraRecord)).all():
        bucket = extra_bucket(extra.motive)
        if bucket == "infraction":
            continue
        totals[(extra.employee_id, extra.day_date)][f"{bucket}_amount"] += float(extra.amount or 0)
    return totals


def get_ledger(db: Session, reconciler: Reconciler, period: str, employee_id: int | None = None) -> list[LedgerRow]:
    """Ledger rows of a month, with live side-record totals overlaid on rows nobody edited by hand."""
    parse_period(period)
    reconciler.provisioner.ensure(period)
    days = period_days(period)

    def compute() -> list[LedgerRow]:
        stmt = (
            select(LedgerRecord, Employee.full_name)
            .join(Employee, Employee.id == LedgerRecord.employee_id)
            .where(LedgerRecord.period == period)
            .order_by(LedgerRecord.employee_id.asc(), LedgerRecord.day_date.asc())
        )
        if employee_id is not None:
            stmt = stmt.where(LedgerRecord.employee_id == employee_id)
        live = _live_totals(db, days[0], days[-1], employee_id)

        rows: list[LedgerRow] = []
        for record, full_name in db.execute(stmt).all():
            item = LedgerRow.model_validate(record)
            item.employee_name = full_name
            overlay = live.get((record.employee_id, record.day_date))
            if not record.manually_edited:
                overlay = overlay or {"advance_amount": 0.0, "extra_amount": 0.0, "prime_amount": 0.0, "doublage_amount": 0.0}
                item = item.model_copy(update=overlay)
            rows.append(item)
        return rows

    return reconciler.cache.get_or_compute(("ledger", period, employee_id), compute, day=days[-1])


def day_status(db: Session, reconciler: Reconciler, day: date) -> list[DayStatusItem]:
    """Live state of every active employee for one logical day."""

    def compute() -> list[DayStatusItem]:
        reconciler.provisioner.ensure(period_for(day))
        now_utc = reconciler.clock.now()
        start_utc, end_utc = logical_day_bounds(day)
        punches = dedupe_punches(
            fetch_punches(db, reconciler.punch_source, start_utc, end_utc),
            window_minutes=reconciler.dedup_minutes,
        )
        punches_by_employee: dict[int, list[Any]] = defaultdict(list)
        for punch in punches:
            punches_by_employee[punch.employee_id].append(punch.ts_utc)

        month_start = day.replace(day=1)
        month_absences = dict(
            db.execute(
                select(AbsentRecord.employee_id, func.count(AbsentRecord.id))
                .where(AbsentRecord.day_date >= month_start, AbsentRecord.day_date <= day)
                .group_by(AbsentRecord.employee_id)
            ).all()
        )
        month_retards = dict(
            db.execute(
                select(RetardRecord.employee_id, func.count(RetardRecord.id))
                .where(RetardRecord.day_date >= month_start, RetardRecord.day_date <= day)
                .group_by(RetardRecord.employee_id)
            ).all()
        )
        ledger_rows = {
            row.employee_id: row
            for row in db.scalars(select(LedgerRecord).where(LedgerRecord.day_date == day)).all()
        }
        manual_infraction_ids = {
            extra.employee_id
            for extra in db.scalars(select(ExtraRecord).where(ExtraRecord.day_date == day)).all()
            if extra_bucket(extra.motive) == "infraction"
        }

        items: list[DayStatusItem] = []
        stmt = (
            select(Employee, EmployeeSchedule)
            .outerjoin(EmployeeSchedule, EmployeeSchedule.employee_id == Employee.id)
            .where(Employee.is_blocked.is_(False))
            .order_by(Employee.id)
        )
        for employee, schedule in db.execute(stmt).all():
            scheduled = schedule.label_for(day) if schedule is not None else ShiftLabel.REPOS
            classification = classify_day(
                punches=punches_by_employee.get(employee.id, []),
                scheduled_shift=scheduled,
                department=employee.department,
                day=day,
                now_utc=now_utc,
                rules=reconciler.rules,
                has_manual_infraction=employee.id in manual_infraction_ids,
                pattern=reconciler.rules.pattern_for(schedule),
            )
            ledger = ledger_rows.get(employee.id)
            state = _state_for(classification, ledger)
            items.append(
                DayStatusItem(
                    employee_id=employee.id,
                    full_name=employee.full_name,
                    department=employee.department,
                    shift=classification.shift_label.value if classification.shift_label else None,
                    clock_in=ledger.clock_in if ledger is not None and ledger.manually_edited else classification.clock_in,
                    clock_out=ledger.clock_out if ledger is not None and ledger.manually_edited else classification.clock_out,
                    retard=classification.retard.humanize() if classification.is_retard else None,
                    state=state,
                    remark=ledger.remark if ledger is not None else classification.reason,
                    manually_edited=bool(ledger.manually_edited) if ledger is not None else False,
                    month_absences=int(month_absences.get(employee.id, 0)),
                    month_retards=int(month_retards.get(employee.id, 0)),
                )
            )
        return items

    return reconciler.cache.get_or_compute(("day_status", day), compute, day=day)


def _state_for(classification, ledger: LedgerRecord | None) -> str:
    if ledger is not None and ledger.manually_edited:
        return "Présent" if float(ledger.present or 0) > 0 else "Absent"
    if classification.is_absent:
        return "Absent"
    if not classification.has_punches:
        return "Repos" if classification.shift_label is None else "En attente"
    if classification.is_retard:
        return "Retard"
    return "Présent"
