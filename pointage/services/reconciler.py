from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session

from pointage.clock import Clock
from pointage.errors import invalid, not_found
from pointage.models import (
    LEDGER_ADVANCE_STATUSES,
    AbsentRecord,
    AdvanceRecord,
    AdvanceStatus,
    DoublageRecord,
    Employee,
    EmployeeSchedule,
    ExtraRecord,
    LedgerRecord,
    RetardRecord,
    ShiftLabel,
    SideRecordSource,
)
from pointage.services.cache import ReadCache
from pointage.services.classifier import (
    STANDARD_PATTERN,
    ClassifierRules,
    DayClassification,
    Duration,
    WorkPattern,
    classify_day,
)
from pointage.services.logical_day import (
    PunchRow,
    logical_date_for,
    parse_period,
    period_days,
    period_for,
    to_local,
)
from pointage.services.notifications import KIND_LEDGER, KIND_PUNCH, NotificationSink, punch_idempotency_key
from pointage.services.provisioner import MonthLedgerProvisioner
from pointage.services.punches import PunchSource, fetch_day_punches
from pointage.services.upsert import dialect_insert

logger = logging.getLogger("pointage.reconciler")

PARDON_REMARK = "Pardonné"
FICHE_ADVANCE_MOTIVE = "Avance sur salaire (Fiche)"
MANUAL_ABSENCE_TYPE = "Absence"

# Columns frozen once a row is manually edited.
GUARDED_COLUMNS = (
    "present",
    "advance_amount",
    "extra_amount",
    "prime_amount",
    "infraction_amount",
    "doublage_amount",
    "mise_a_pied_days",
    "retard_minutes",
    "remark",
    "clock_in",
    "clock_out",
)
EDITABLE_FIELDS = frozenset(GUARDED_COLUMNS)
CLEARABLE_FIELDS = frozenset({"remark", "clock_in", "clock_out"})

PRESENT_TYPES = frozenset({"présent", "present", "justifié", "justifie"})
ABSENT_TYPES = frozenset(
    {
        "absence",
        "absent",
        "injustifié",
        "injustifie",
        "non justifié",
        "non justifie",
        "mise à pied",
        "mise a pied",
        "injustice",
    }
)
# These override presence even when the employee punched.
FORCING_TYPES = frozenset({"mise à pied", "mise a pied", "chômage", "chomage", "accident"})
ABSENT_TYPE_PRIORITY = {"présent": 1, "justifié": 2, "injustifié": 3, "mise à pied": 4}
MISE_A_PIED_DAYS_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*jour", re.IGNORECASE)


def extra_bucket(motive: str | None) -> str:
    normalized = (motive or "").strip().lower()
    if normalized.startswith("prime"):
        return "prime"
    if normalized.startswith("infraction"):
        return "infraction"
    return "extra"


def _absence_type(value: str | None) -> str:
    return (value or "").strip().lower()


def is_mise_a_pied(absent_type: str | None) -> bool:
    return _absence_type(absent_type) in {"mise à pied", "mise a pied"}


def parse_mise_a_pied_days(reason: str | None) -> float:
    match = MISE_A_PIED_DAYS_PATTERN.search(reason or "")
    return float(match.group(1)) if match else 1.0


@dataclass(frozen=True, slots=True)
class EmployeeContext:
    employee_id: int
    full_name: str
    department: str | None
    scheduled_shift: ShiftLabel
    pattern: WorkPattern = STANDARD_PATTERN


@dataclass(frozen=True, slots=True)
class SideFacts:
    advance_amount: float
    extra_amount: float
    prime_amount: float
    infraction_amount: float
    has_manual_infraction: bool
    doublage_amount: float
    mise_a_pied_days: float
    manual_retard: RetardRecord | None
    absent: AbsentRecord | None
    retard_reason: str | None


@dataclass(slots=True)
class ReconcileReport:
    day: date
    processed: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)
    notifications: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "day": self.day.isoformat(),
            "processed": len(self.processed),
            "failed": {str(key): value for key, value in self.failed.items()},
            "notifications": self.notifications,
        }


class _PunchNotificationBuffer:
    """Per-run dedup of punch notifications shared by the employee workers."""

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self._pending: list[tuple[datetime, str, EmployeeContext]] = []
        self._lock = threading.Lock()

    def offer(self, ctx: EmployeeContext, punch: PunchRow) -> None:
        key = punch_idempotency_key(ctx.employee_id, punch.ts_utc)
        with self._lock:
            if key in self._seen:
                return
            self._seen.add(key)
            self._pending.append((punch.ts_utc, key, ctx))

    def drain(self) -> list[tuple[datetime, str, EmployeeContext]]:
        with self._lock:
            pending = sorted(self._pending, key=lambda item: (item[0], item[1]))
            self._pending = []
        return pending


class Reconciler:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        cache: ReadCache,
        clock: Clock,
        provisioner: MonthLedgerProvisioner,
        punch_source: PunchSource,
        notifier: NotificationSink | None,
        rules: ClassifierRules,
        max_workers: int = 8,
        sync_throttle_seconds: int = 60,
        dedup_minutes: int | None = None,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.clock = clock
        self.provisioner = provisioner
        self.punch_source = punch_source
        self.notifier = notifier
        self.rules = rules
        self.max_workers = max(1, max_workers)
        self.sync_throttle = timedelta(seconds=max(0, sync_throttle_seconds))
        self.dedup_minutes = dedup_minutes
        self._last_sync: dict[date, datetime] = {}
        self._sync_lock = threading.Lock()

    # Employee loading

    def _load_contexts(self, db: Session, day: date, employee_id: int | None) -> list[EmployeeContext]:
        stmt = select(Employee, EmployeeSchedule).outerjoin(
            EmployeeSchedule, EmployeeSchedule.employee_id == Employee.id
        )
        if employee_id is not None:
            stmt = stmt.where(Employee.id == employee_id)
        else:
            stmt = stmt.where(Employee.is_blocked.is_(False))
        rows = db.execute(stmt.order_by(Employee.id)).all()
        if employee_id is not None and not rows:
            raise not_found("EMPLOYEE_NOT_FOUND", f"Employee {employee_id} not found.")
        return [
            EmployeeContext(
                employee_id=employee.id,
                full_name=employee.full_name,
                department=employee.department,
                scheduled_shift=schedule.label_for(day) if schedule is not None else ShiftLabel.REPOS,
                pattern=self.rules.pattern_for(schedule),
            )
            for employee, schedule in rows
        ]

    def load_context(self, db: Session, employee_id: int, day: date) -> EmployeeContext:
        return self._load_contexts(db, day, employee_id)[0]

    # Day reconciliation

    def reconcile_day(self, day: date, employee_id: int | None = None) -> ReconcileReport:
        self.provisioner.ensure(period_for(day))
        self.cache.invalidate_all()
        now_utc = self.clock.now()
        with self.session_factory() as db:
            contexts = self._load_contexts(db, day, employee_id)

        report = ReconcileReport(day=day)
        buffer = _PunchNotificationBuffer()
        report_lock = threading.Lock()

        def run_unit(ctx: EmployeeContext) -> None:
            with self.session_factory() as db:
                try:
                    self._reconcile_employee(db, ctx, day, now_utc, buffer)
                    db.commit()
                except Exception as exc:
                    db.rollback()
                    logger.exception(
                        "ledger_reconcile_employee_failed",
                        extra={"employee_id": ctx.employee_id, "day": day.isoformat()},
                    )
                    with report_lock:
                        report.failed[ctx.employee_id] = exc.__class__.__name__
                    return
            with report_lock:
                report.processed.append(ctx.employee_id)

        workers = min(self.max_workers, len(contexts))
        if workers <= 1:
            for ctx in contexts:
                run_unit(ctx)
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile") as executor:
                list(executor.map(run_unit, contexts))

        report.notifications = self._flush_notifications(buffer)
        self.cache.invalidate_all()
        logger.info("ledger_day_reconciled", extra=report.to_dict())
        return report

    def _reconcile_employee(
        self,
        db: Session,
        ctx: EmployeeContext,
        day: date,
        now_utc: datetime,
        buffer: _PunchNotificationBuffer | None = None,
    ) -> DayClassification:
        punches = fetch_day_punches(db, self.punch_source, day, ctx.employee_id, dedup_minutes=self.dedup_minutes)
        extras = list(
            db.scalars(
                select(ExtraRecord).where(ExtraRecord.employee_id == ctx.employee_id, ExtraRecord.day_date == day)
            ).all()
        )
        has_manual_infraction = any(extra_bucket(item.motive) == "infraction" for item in extras)
        classification = classify_day(
            punches=[item.ts_utc for item in punches],
            scheduled_shift=ctx.scheduled_shift,
            department=ctx.department,
            day=day,
            now_utc=now_utc,
            rules=self.rules,
            has_manual_infraction=has_manual_infraction,
            pattern=ctx.pattern,
        )

        manually_edited = db.scalar(
            select(LedgerRecord.manually_edited).where(
                LedgerRecord.employee_id == ctx.employee_id,
                LedgerRecord.day_date == day,
            )
        )
        if not manually_edited:
            self._sync_auto_side_records(db, ctx.employee_id, day, classification, punches)

        facts = self._aggregate(db, ctx.employee_id, day, extras)
        self._conditional_upsert(db, ctx.employee_id, day, self._ledger_values(classification, facts), now_utc)

        if buffer is not None and day == logical_date_for(now_utc):
            for punch in punches:
                buffer.offer(ctx, punch)
        return classification

    def _sync_auto_side_records(
        self,
        db: Session,
        employee_id: int,
        day: date,
        classification: DayClassification,
        punches: list[PunchRow],
    ) -> None:
        def manual_exists(model: type[RetardRecord] | type[AbsentRecord]) -> bool:
            return (
                db.scalar(
                    select(model.id).where(
                        model.employee_id == employee_id,
                        model.day_date == day,
                        model.source == SideRecordSource.MANUAL,
                    )
                )
                is not None
            )

        def drop_auto(model: type[RetardRecord] | type[AbsentRecord]) -> None:
            db.execute(
                delete(model).where(
                    model.employee_id == employee_id,
                    model.day_date == day,
                    model.source == SideRecordSource.AUTO,
                )
            )

        def upsert_auto(model: type[RetardRecord] | type[AbsentRecord], values: dict[str, Any]) -> None:
            stmt = dialect_insert(db, model).values(
                employee_id=employee_id,
                day_date=day,
                source=SideRecordSource.AUTO,
                **values,
            )
            db.execute(
                stmt.on_conflict_do_update(
                    index_elements=[model.employee_id, model.day_date, model.source],
                    set_={key: stmt.excluded[key] for key in values},
                )
            )

        if classification.is_absent:
            drop_auto(RetardRecord)
            if manual_exists(AbsentRecord):
                drop_auto(AbsentRecord)
            else:
                upsert_auto(AbsentRecord, {"type": MANUAL_ABSENCE_TYPE, "reason": classification.reason})
        elif classification.is_retard:
            drop_auto(AbsentRecord)
            if manual_exists(RetardRecord):
                drop_auto(RetardRecord)
            else:
                upsert_auto(
                    RetardRecord,
                    {
                        "minutes": classification.retard_minutes,
                        "reason": classification.reason,
                        "punched_at": punches[0].ts_utc if punches else None,
                    },
                )
        else:
            drop_auto(RetardRecord)
            drop_auto(AbsentRecord)

    def _aggregate(self, db: Session, employee_id: int, day: date, extras: Iterable[ExtraRecord]) -> SideFacts:
        advance_amount = db.scalar(
            select(func.coalesce(func.sum(AdvanceRecord.amount), 0.0)).where(
                AdvanceRecord.employee_id == employee_id,
                AdvanceRecord.day_date == day,
                AdvanceRecord.status.in_(LEDGER_ADVANCE_STATUSES),
            )
        )
        doublage_amount = db.scalar(
            select(func.coalesce(func.sum(DoublageRecord.amount), 0.0)).where(
                DoublageRecord.employee_id == employee_id,
                DoublageRecord.day_date == day,
            )
        )
        buckets = {"extra": 0.0, "prime": 0.0, "infraction": 0.0}
        has_manual_infraction = False
        for item in extras:
            bucket = extra_bucket(item.motive)
            buckets[bucket] += float(item.amount or 0)
            has_manual_infraction = has_manual_infraction or bucket == "infraction"

        absents = list(
            db.scalars(
                select(AbsentRecord)
                .where(AbsentRecord.employee_id == employee_id, AbsentRecord.day_date == day)
                .order_by(AbsentRecord.created_at.asc(), AbsentRecord.id.asc())
            ).all()
        )
        retards = list(
            db.scalars(
                select(RetardRecord).where(RetardRecord.employee_id == employee_id, RetardRecord.day_date == day)
            ).all()
        )
        manual_retard = next((item for item in retards if item.source == SideRecordSource.MANUAL), None)
        any_retard = manual_retard or (retards[0] if retards else None)

        absent = None
        if absents:
            absent = sorted(
                absents,
                key=lambda item: (
                    0 if item.source == SideRecordSource.MANUAL else 1,
                    ABSENT_TYPE_PRIORITY.get(_absence_type(item.type), 5),
                ),
            )[0]

        mise_a_pied = next((item for item in absents if is_mise_a_pied(item.type)), None)
        return SideFacts(
            advance_amount=float(advance_amount or 0),
            extra_amount=buckets["extra"],
            prime_amount=buckets["prime"],
            infraction_amount=buckets["infraction"],
            has_manual_infraction=has_manual_infraction,
            doublage_amount=float(doublage_amount or 0),
            mise_a_pied_days=parse_mise_a_pied_days(mise_a_pied.reason) if mise_a_pied is not None else 0.0,
            manual_retard=manual_retard,
            absent=absent,
            retard_reason=any_retard.reason if any_retard is not None else None,
        )

    def _ledger_values(self, classification: DayClassification, facts: SideFacts) -> dict[str, Any]:
        present = classification.present
        if facts.extra_amount > 0:
            present = 0.0
        if facts.absent is not None:
            absent_type = _absence_type(facts.absent.type)
            if absent_type in ABSENT_TYPES or absent_type in PRESENT_TYPES:
                if not classification.has_punches or absent_type in FORCING_TYPES:
                    present = 0.0 if absent_type in ABSENT_TYPES else 1.0
            elif absent_type in FORCING_TYPES:
                present = 0.0

        retard_minutes = classification.retard_minutes
        if facts.manual_retard is not None:
            retard_minutes = facts.manual_retard.minutes

        if facts.has_manual_infraction:
            infraction = facts.infraction_amount
        elif retard_minutes > self.rules.retard_infraction_threshold_minutes:
            infraction = self.rules.retard_infraction_amount
        else:
            infraction = 0.0

        remark = None
        if facts.absent is not None and facts.absent.source == SideRecordSource.MANUAL:
            remark = facts.absent.reason or facts.absent.type
        elif facts.manual_retard is not None:
            remark = facts.manual_retard.reason or Duration(facts.manual_retard.minutes).humanize()
        elif classification.reason:
            remark = classification.reason
        else:
            remark = facts.retard_reason or (facts.absent.reason if facts.absent is not None else None)

        return {
            "present": present,
            "advance_amount": facts.advance_amount,
            "extra_amount": facts.extra_amount,
            "prime_amount": facts.prime_amount,
            "infraction_amount": max(0.0, infraction),
            "doublage_amount": facts.doublage_amount,
            "mise_a_pied_days": facts.mise_a_pied_days,
            "retard_minutes": retard_minutes,
            "remark": remark,
            "clock_in": classification.clock_in,
            "clock_out": classification.clock_out,
        }

    def _conditional_upsert(
        self,
        db: Session,
        employee_id: int,
        day: date,
        values: dict[str, Any],
        now_utc: datetime,
    ) -> None:
        """One atomic statement: insert the derived row, or overwrite only while the stored row is unedited."""
        table = LedgerRecord.__table__
        stmt = dialect_insert(db, LedgerRecord).values(
            period=period_for(day),
            employee_id=employee_id,
            day_date=day,
            manually_edited=False,
            paid=False,
            updated_at=now_utc,
            **values,
        )
        set_ = {
            name: case((table.c.manually_edited, table.c[name]), else_=stmt.excluded[name])
            for name in GUARDED_COLUMNS
        }
        set_["updated_at"] = now_utc
        db.execute(
            stmt.on_conflict_do_update(
                index_elements=[LedgerRecord.employee_id, LedgerRecord.day_date],
                set_=set_,
            )
        )

    def _flush_notifications(self, buffer: _PunchNotificationBuffer) -> int:
        if self.notifier is None:
            buffer.drain()
            return 0
        created = 0
        for ts_utc, key, ctx in buffer.drain():
            local_label = local_time_label(ts_utc)
            if self.notifier.notify(
                KIND_PUNCH,
                "Pointage",
                f"{ctx.full_name} a pointé à {local_label}",
                employee_id=ctx.employee_id,
                actor_name=ctx.full_name,
                deep_link=f"/attendance?employee_id={ctx.employee_id}",
                idempotency_key=key,
                created_at=ts_utc,
            ):
                created += 1
        return created

    def notify_ledger_change(
        self,
        title: str,
        message: str,
        *,
        employee_id: int,
        period: str,
        actor: str | None = None,
    ) -> bool:
        """Record a manual ledger change for the back office feed."""
        if self.notifier is None:
            return False
        return self.notifier.notify(
            KIND_LEDGER,
            title,
            message,
            employee_id=employee_id,
            actor_name=actor,
            deep_link=f"/ledger/{period}?employee_id={employee_id}",
            created_at=self.clock.now(),
        )

    # Sync entry points

    def trigger_sync(self, day: date | None = None) -> list[ReconcileReport]:
        """Recompute one explicit day, or the open logical day and the one before it (throttled)."""
        if day is not None:
            return [self.reconcile_day(day)]

        now_utc = self.clock.now()
        today = logical_date_for(now_utc)
        reports: list[ReconcileReport] = []
        for candidate in (today - timedelta(days=1), today):
            with self._sync_lock:
                last_run = self._last_sync.get(candidate)
                if last_run is not None and now_utc - last_run < self.sync_throttle:
                    logger.debug("ledger_sync_throttled", extra={"day": candidate.isoformat()})
                    continue
                self._last_sync[candidate] = now_utc
            reports.append(self.reconcile_day(candidate))
        return reports

    def sync_employee_month(self, employee_id: int, period: str) -> list[ReconcileReport]:
        today = logical_date_for(self.clock.now())
        return [self.reconcile_day(day, employee_id) for day in period_days(period) if day <= today]

    def provision_month(self, period: str) -> int:
        inserted = self.provisioner.ensure(period, force=True)
        self.cache.invalidate_all()
        return inserted

    # Manual operations

    def pardon(self, employee_id: int, day: date, *, actor: str | None = None) -> LedgerRecord:
        self.provisioner.ensure(period_for(day))
        now_utc = self.clock.now()
        with self.session_factory() as db:
            try:
                ctx = self.load_context(db, employee_id, day)
                punches = fetch_day_punches(db, self.punch_source, day, employee_id, dedup_minutes=self.dedup_minutes)
                classification = classify_day(
                    punches=[item.ts_utc for item in punches],
                    scheduled_shift=ctx.scheduled_shift,
                    department=ctx.department,
                    day=day,
                    now_utc=now_utc,
                    rules=self.rules,
                    pattern=ctx.pattern,
                )
                row = self._get_or_create_row(db, employee_id, day, now_utc)
                shift = classification.shift_label or ctx.scheduled_shift
                start, end = self.rules.nominal_bounds(shift, ctx.department, ctx.pattern)

                row.present = 1.0
                row.retard_minutes = 0
                row.infraction_amount = 0.0
                row.remark = PARDON_REMARK
                row.manually_edited = True
                row.clock_in = start
                if row.clock_out is None or start <= row.clock_out < end:
                    row.clock_out = end
                row.updated_at = now_utc

                db.execute(delete(RetardRecord).where(RetardRecord.employee_id == employee_id, RetardRecord.day_date == day))
                db.execute(delete(AbsentRecord).where(AbsentRecord.employee_id == employee_id, AbsentRecord.day_date == day))
                db.execute(
                    delete(ExtraRecord).where(
                        ExtraRecord.employee_id == employee_id,
                        ExtraRecord.day_date == day,
                        func.lower(ExtraRecord.motive).like("infraction%"),
                    )
                )
                db.commit()
            except Exception:
                db.rollback()
                logger.exception("ledger_pardon_failed", extra={"employee_id": employee_id, "day": day.isoformat()})
                raise
            db.refresh(row)

        logger.info("ledger_day_pardoned", extra={"employee_id": employee_id, "day": day.isoformat(), "actor": actor})
        self.reconcile_day(day, employee_id)
        self.notify_ledger_change(
            "Pardon",
            f"{ctx.full_name} : journée du {day:%d/%m/%Y} pardonnée",
            employee_id=employee_id,
            period=period_for(day),
            actor=actor,
        )
        return row

    def edit_ledger_row(
        self,
        period: str,
        row_id: int,
        fields: dict[str, Any],
        *,
        actor: str | None = None,
    ) -> LedgerRecord:
        parse_period(period)
        unknown = sorted(set(fields) - EDITABLE_FIELDS)
        if unknown:
            raise invalid("VALIDATION_ERROR", f"Fields not editable: {', '.join(unknown)}.")
        nulls = sorted(name for name, value in fields.items() if value is None and name not in CLEARABLE_FIELDS)
        if nulls:
            raise invalid("VALIDATION_ERROR", f"Fields cannot be null: {', '.join(nulls)}.")

        now_utc = self.clock.now()
        with self.session_factory() as db:
            try:
                row = db.get(LedgerRecord, row_id)
                if row is None or row.period != period:
                    raise not_found("LEDGER_ROW_NOT_FOUND", f"Ledger row {row_id} not found in {period}.")
                employee_id, day = row.employee_id, row.day_date
                previous_retard = row.retard_minutes

                row.manually_edited = True
                db.flush()
                ctx = self.load_context(db, employee_id, day)
                classification = self._reconcile_employee(db, ctx, day, now_utc)
                db.refresh(row)

                for name, value in fields.items():
                    setattr(row, name, value)
                if float(fields.get("extra_amount") or 0) > 0:
                    row.present = 0.0
                row.updated_at = now_utc

                self._back_propagate(db, employee_id, day, fields, row)

                retard_changed = "retard_minutes" in fields and fields["retard_minutes"] != previous_retard
                if retard_changed and "clock_in" not in fields:
                    shift = classification.shift_label or ctx.scheduled_shift
                    start = self.rules.shift_start(shift, ctx.department, ctx.pattern)
                    new_clock_in = shifted_time(start, int(row.retard_minutes or 0))
                    row.clock_in = new_clock_in
                    if self.punch_source.rewrite_first_punch(db, employee_id, day, new_clock_in):
                        logger.info(
                            "punch_rewritten_for_retard",
                            extra={
                                "employee_id": employee_id,
                                "day": day.isoformat(),
                                "clock_in": new_clock_in.strftime("%H:%M"),
                            },
                        )
                db.commit()
            except Exception:
                db.rollback()
                logger.exception("ledger_edit_failed", extra={"row_id": row_id, "period": period})
                raise
            db.refresh(row)

        logger.info(
            "ledger_row_edited",
            extra={"row_id": row_id, "period": period, "fields": sorted(fields), "actor": actor},
        )
        self.reconcile_day(day)
        self.notify_ledger_change(
            "Registre modifié",
            f"{ctx.full_name} : ligne du {day:%d/%m/%Y} modifiée ({', '.join(sorted(fields))})",
            employee_id=employee_id,
            period=period,
            actor=actor,
        )
        return row

    def _back_propagate(
        self,
        db: Session,
        employee_id: int,
        day: date,
        fields: dict[str, Any],
        row: LedgerRecord,
    ) -> None:
        same_day = {"employee_id": employee_id, "day_date": day}

        if "present" in fields:
            if float(row.present or 0) == 0:
                existing = db.scalar(
                    select(AbsentRecord).filter_by(source=SideRecordSource.MANUAL, **same_day)
                )
                if existing is None:
                    db.add(
                        AbsentRecord(
                            type=MANUAL_ABSENCE_TYPE,
                            reason=row.remark,
                            source=SideRecordSource.MANUAL,
                            **same_day,
                        )
                    )
                elif "remark" in fields:
                    existing.reason = row.remark
                db.execute(delete(AbsentRecord).filter_by(source=SideRecordSource.AUTO, **same_day))
            else:
                db.execute(delete(AbsentRecord).filter_by(**same_day))

        if "retard_minutes" in fields:
            minutes = int(row.retard_minutes or 0)
            db.execute(delete(RetardRecord).filter_by(source=SideRecordSource.AUTO, **same_day))
            existing = db.scalar(select(RetardRecord).filter_by(source=SideRecordSource.MANUAL, **same_day))
            if minutes > 0:
                reason = Duration(minutes).humanize()
                if existing is None:
                    db.add(RetardRecord(minutes=minutes, reason=reason, source=SideRecordSource.MANUAL, **same_day))
                else:
                    existing.minutes = minutes
                    existing.reason = reason
            elif existing is not None:
                db.delete(existing)

        for field_name, motive in (("extra_amount", "Extra"), ("prime_amount", "Prime"), ("infraction_amount", "Infraction")):
            if field_name not in fields:
                continue
            amount = float(getattr(row, field_name) or 0)
            bucket = extra_bucket(motive)
            matching = [
                item
                for item in db.scalars(select(ExtraRecord).filter_by(**same_day).order_by(ExtraRecord.id)).all()
                if extra_bucket(item.motive) == bucket
            ]
            # A zero infraction is kept so it still overrides the automatic penalty.
            keep = amount > 0 or bucket == "infraction"
            if matching and keep:
                matching[0].amount = amount
                for extra in matching[1:]:
                    db.delete(extra)
            else:
                for extra in matching:
                    db.delete(extra)
                if keep:
                    db.add(ExtraRecord(amount=amount, motive=motive, **same_day))

        if "advance_amount" in fields:
            amount = float(row.advance_amount or 0)
            advances = list(db.scalars(select(AdvanceRecord).filter_by(**same_day).order_by(AdvanceRecord.id)).all())
            if amount > 0 and advances:
                advances[0].amount = amount
                advances[0].status = AdvanceStatus.VALIDATED
                for advance in advances[1:]:
                    db.delete(advance)
            else:
                for advance in advances:
                    db.delete(advance)
                if amount > 0:
                    db.add(
                        AdvanceRecord(
                            amount=amount,
                            motive=FICHE_ADVANCE_MOTIVE,
                            status=AdvanceStatus.VALIDATED,
                            **same_day,
                        )
                    )

        if "doublage_amount" in fields:
            amount = float(row.doublage_amount or 0)
            doublages = list(db.scalars(select(DoublageRecord).filter_by(**same_day).order_by(DoublageRecord.id)).all())
            if amount > 0 and doublages:
                doublages[0].amount = amount
                for doublage in doublages[1:]:
                    db.delete(doublage)
            else:
                for doublage in doublages:
                    db.delete(doublage)
                if amount > 0:
                    db.add(DoublageRecord(amount=amount, **same_day))

    def _get_or_create_row(self, db: Session, employee_id: int, day: date, now_utc: datetime) -> LedgerRecord:
        row = db.scalar(select(LedgerRecord).where(LedgerRecord.employee_id == employee_id, LedgerRecord.day_date == day))
        if row is None:
            row = LedgerRecord(period=period_for(day), employee_id=employee_id, day_date=day, updated_at=now_utc)
            db.add(row)
            db.flush()
        return row

    # Payment

    def _set_paid(
        self,
        period: str,
        employee_id: int,
        *,
        paid: bool,
        net_salary: float | None,
        actor: str | None,
    ) -> int:
        parse_period(period)
        self.provisioner.ensure(period)
        with self.session_factory() as db:
            employee = db.get(Employee, employee_id)
            if employee is None:
                raise not_found("EMPLOYEE_NOT_FOUND", f"Employee {employee_id} not found.")
            full_name = employee.full_name
            try:
                result = db.execute(
                    update(LedgerRecord)
                    .where(LedgerRecord.period == period, LedgerRecord.employee_id == employee_id)
                    .values(paid=paid, net_salary=None)
                )
                first_day = db.scalar(
                    select(func.min(LedgerRecord.day_date)).where(
                        LedgerRecord.period == period,
                        LedgerRecord.employee_id == employee_id,
                    )
                )
                if paid and net_salary is not None and first_day is not None:
                    db.execute(
                        update(LedgerRecord)
                        .where(LedgerRecord.employee_id == employee_id, LedgerRecord.day_date == first_day)
                        .values(net_salary=net_salary)
                    )
                db.commit()
            except Exception:
                db.rollback()
                raise
        self.cache.invalidate_all()
        logger.info(
            "ledger_month_paid" if paid else "ledger_month_unpaid",
            extra={"period": period, "employee_id": employee_id, "rows": result.rowcount, "net_salary": net_salary},
        )
        self.notify_ledger_change(
            "Paie" if paid else "Paie annulée",
            f"{full_name} : mois {period} " + ("marqué payé" if paid else "remis en attente de paiement"),
            employee_id=employee_id,
            period=period,
            actor=actor,
        )
        return result.rowcount or 0

    def pay(self, period: str, employee_id: int, *, net_salary: float | None = None, actor: str | None = None) -> int:
        return self._set_paid(period, employee_id, paid=True, net_salary=net_salary, actor=actor)

    def unpay(self, period: str, employee_id: int, *, actor: str | None = None) -> int:
        return self._set_paid(period, employee_id, paid=False, net_salary=None, actor=actor)


def shifted_time(start: time, minutes: int) -> time:
    anchor = datetime.combine(date(2000, 1, 1), start) + timedelta(minutes=minutes)
    return anchor.time()


def local_time_label(ts_utc: datetime) -> str:
    return to_local(ts_utc).strftime("%H:%M")
