from datetime import date

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from pointage.audit import log_audit, request_actor
from pointage.db import get_db
from pointage.dependencies import get_reconciler
from pointage.errors import get_request_id
from pointage.schemas import (
    DayStatusItem,
    LedgerRow,
    LedgerRowUpdate,
    PardonRequest,
    PayRequest,
    PayResponse,
    ProvisionResponse,
    ReconcileSummary,
    SyncRequest,
    SyncResponse,
    UnpayRequest,
)
from pointage.services.ledger_reads import day_status, get_ledger
from pointage.services.logical_day import logical_date_for, parse_period
from pointage.services.reconciler import ReconcileReport, Reconciler

router = APIRouter(tags=["ledger"])


def _summary(report: ReconcileReport) -> ReconcileSummary:
    return ReconcileSummary(**report.to_dict())


@router.get("/api/ledger/status", response_model=list[DayStatusItem])
def ledger_day_status(
    day: date | None = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> list[DayStatusItem]:
    target = day or logical_date_for(reconciler.clock.now())
    return day_status(db, reconciler, target)


@router.post("/api/ledger/sync", response_model=SyncResponse)
def trigger_ledger_sync(
    payload: SyncRequest,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> SyncResponse:
    if payload.period is not None and payload.employee_id is not None:
        reports = reconciler.sync_employee_month(payload.employee_id, payload.period)
    elif payload.employee_id is not None:
        target = payload.day_date or logical_date_for(reconciler.clock.now())
        reports = [reconciler.reconcile_day(target, payload.employee_id)]
    else:
        reports = reconciler.trigger_sync(payload.day_date)

    log_audit(
        db,
        actor=request_actor(request),
        action="LEDGER_SYNC",
        success=True,
        entity_type="ledger",
        details={
            "day_date": payload.day_date.isoformat() if payload.day_date else None,
            "employee_id": payload.employee_id,
            "period": payload.period,
            "days": [report.day.isoformat() for report in reports],
        },
        request_id=get_request_id(request),
    )
    return SyncResponse(reports=[_summary(report) for report in reports])


@router.post("/api/ledger/pardon", response_model=LedgerRow)
def pardon_day(
    payload: PardonRequest,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> LedgerRow:
    actor = request_actor(request)
    row = reconciler.pardon(payload.employee_id, payload.day_date, actor=actor)
    log_audit(
        db,
        actor=actor,
        action="LEDGER_PARDON",
        success=True,
        entity_type="ledger_record",
        entity_id=str(row.id),
        details={"employee_id": payload.employee_id, "day_date": payload.day_date.isoformat()},
        request_id=get_request_id(request),
    )
    return LedgerRow.model_validate(row)


@router.get("/api/ledger/{period}", response_model=list[LedgerRow])
def read_ledger(
    period: str,
    employee_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> list[LedgerRow]:
    return get_ledger(db, reconciler, period, employee_id)


@router.patch("/api/ledger/{period}/rows/{row_id}", response_model=LedgerRow)
def edit_ledger_row(
    period: str,
    row_id: int,
    payload: LedgerRowUpdate,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> LedgerRow:
    actor = request_actor(request)
    fields = payload.to_fields()
    row = reconciler.edit_ledger_row(period, row_id, fields, actor=actor)
    log_audit(
        db,
        actor=actor,
        action="LEDGER_ROW_EDIT",
        success=True,
        entity_type="ledger_record",
        entity_id=str(row_id),
        details={"period": period, "fields": sorted(fields)},
        request_id=get_request_id(request),
    )
    return LedgerRow.model_validate(row)


@router.post("/api/ledger/{period}/pay", response_model=PayResponse)
def pay_month(
    period: str,
    payload: PayRequest,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> PayResponse:
    actor = request_actor(request)
    rows = reconciler.pay(period, payload.employee_id, net_salary=payload.net_salary, actor=actor)
    log_audit(
        db,
        actor=actor,
        action="LEDGER_PAY",
        success=True,
        entity_type="employee",
        entity_id=str(payload.employee_id),
        details={"period": period, "net_salary": payload.net_salary, "rows": rows},
        request_id=get_request_id(request),
    )
    return PayResponse(period=period, employee_id=payload.employee_id, paid=True, rows=rows)


@router.post("/api/ledger/{period}/unpay", response_model=PayResponse)
def unpay_month(
    period: str,
    payload: UnpayRequest,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> PayResponse:
    actor = request_actor(request)
    rows = reconciler.unpay(period, payload.employee_id, actor=actor)
    log_audit(
        db,
        actor=actor,
        action="LEDGER_UNPAY",
        success=True,
        entity_type="employee",
        entity_id=str(payload.employee_id),
        details={"period": period, "rows": rows},
        request_id=get_request_id(request),
    )
    return PayResponse(period=period, employee_id=payload.employee_id, paid=False, rows=rows)


@router.post("/api/ledger/{period}/provision", response_model=ProvisionResponse)
def provision_month(
    period: str,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> ProvisionResponse:
    parse_period(period)
    inserted = reconciler.provision_month(period)
    log_audit(
        db,
        actor=request_actor(request),
        action="LEDGER_PROVISION",
        success=True,
        entity_type="ledger",
        entity_id=period,
        details={"inserted": inserted},
        request_id=get_request_id(request),
    )
    return ProvisionResponse(period=period, inserted=inserted)
