from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from pointage.audit import log_audit, request_actor
from pointage.db import get_db
from pointage.dependencies import get_reconciler
from pointage.errors import get_request_id
from pointage.schemas import PunchBatchRequest, PunchBatchResponse, ReconcileSummary
from pointage.services.logical_day import attendance_timezone
from pointage.services.punches import ingest_punches
from pointage.services.reconciler import Reconciler

router = APIRouter(tags=["punches"])


@router.post("/api/punches/batch", response_model=PunchBatchResponse)
def ingest_punch_batch(
    payload: PunchBatchRequest,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> PunchBatchResponse:
    items = []
    for punch in payload.punches:
        if punch.ts_utc is not None:
            items.append((punch.employee_id, punch.ts_utc))
        elif punch.ts_local.tzinfo is None:
            items.append((punch.employee_id, punch.ts_local.replace(tzinfo=attendance_timezone())))
        else:
            items.append((punch.employee_id, punch.ts_local))

    result = ingest_punches(db, items)
    reconciled: list[ReconcileSummary] = []
    if payload.reconcile:
        for day in result["logical_days"]:
            reconciled.append(ReconcileSummary(**reconciler.reconcile_day(day).to_dict()))

    log_audit(
        db,
        actor=request_actor(request),
        action="PUNCH_BATCH_INGEST",
        success=True,
        entity_type="punch",
        details={
            "received": result["received"],
            "inserted": result["inserted"],
            "logical_days": [day.isoformat() for day in result["logical_days"]],
        },
        request_id=get_request_id(request),
    )
    return PunchBatchResponse(
        received=result["received"],
        inserted=result["inserted"],
        logical_days=result["logical_days"],
        reconciled=reconciled,
    )
