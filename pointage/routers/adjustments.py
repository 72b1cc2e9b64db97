from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

from pointage.audit import log_audit, request_actor
from pointage.db import get_db
from pointage.dependencies import get_reconciler
from pointage.errors import get_request_id, invalid
from pointage.schemas import (
    AbsenceCreate,
    AbsenceRead,
    AbsenceUpdate,
    AdvanceCreate,
    AdvanceRead,
    AdvanceStatusUpdate,
    AdvanceUpdate,
    DoublageCreate,
    DoublageRead,
    DoublageUpdate,
    ExtraCreate,
    ExtraRead,
    ExtraUpdate,
    RetardCreate,
    RetardRead,
    RetardUpdate,
)
from pointage.services.adjustments import (
    ABSENCES,
    ADVANCES,
    DOUBLAGES,
    EXTRAS,
    RETARDS,
    SideKind,
    add_side_record,
    delete_side_record,
    list_side_records,
    set_advance_status,
    update_side_record,
)
from pointage.services.reconciler import Reconciler

router = APIRouter(tags=["adjustments"])


def _audit(
    db: Session,
    request: Request,
    *,
    action: str,
    kind: SideKind,
    entity_id: int,
    details: dict[str, Any] | None = None,
) -> None:
    log_audit(
        db,
        actor=request_actor(request),
        action=action,
        success=True,
        entity_type=kind.name,
        entity_id=str(entity_id),
        details=details or {},
        request_id=get_request_id(request),
    )


def _changes(payload) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise invalid("VALIDATION_ERROR", "At least one field must be provided.")
    return changes


def _json_details(values: dict[str, Any]) -> dict[str, Any]:
    return {key: (value.isoformat() if isinstance(value, date) else getattr(value, "value", value)) for key, value in values.items()}


def _date_range(start: date, end: date) -> None:
    if end < start:
        raise invalid("VALIDATION_ERROR", "end must not be before start.")


# Advances


@router.get("/api/advances", response_model=list[AdvanceRead])
def list_advances(
    start: date,
    end: date,
    employee_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> list[AdvanceRead]:
    _date_range(start, end)
    return list_side_records(db, ADVANCES, start=start, end=end, employee_id=employee_id)


@router.post("/api/advances", response_model=AdvanceRead, status_code=status.HTTP_201_CREATED)
def create_advance(
    payload: AdvanceCreate,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> AdvanceRead:
    values = payload.model_dump()
    record = add_side_record(db, reconciler, ADVANCES, values, actor=request_actor(request))
    _audit(db, request, action="ADVANCE_CREATE", kind=ADVANCES, entity_id=record.id, details=_json_details(values))
    return record


@router.patch("/api/advances/{advance_id}", response_model=AdvanceRead)
def update_advance(
    advance_id: int,
    payload: AdvanceUpdate,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> AdvanceRead:
    changes = _changes(payload)
    record = update_side_record(db, reconciler, ADVANCES, advance_id, changes, actor=request_actor(request))
    _audit(db, request, action="ADVANCE_UPDATE", kind=ADVANCES, entity_id=advance_id, details=_json_details(changes))
    return record


@router.patch("/api/advances/{advance_id}/status", response_model=AdvanceRead)
def update_advance_status(
    advance_id: int,
    payload: AdvanceStatusUpdate,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> AdvanceRead:
    record = set_advance_status(db, reconciler, advance_id, payload.status, actor=request_actor(request))
    _audit(
        db,
        request,
        action="ADVANCE_STATUS_UPDATE",
        kind=ADVANCES,
        entity_id=advance_id,
        details={"status": payload.status.value},
    )
    return record


@router.delete("/api/advances/{advance_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_advance(
    advance_id: int,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> Response:
    delete_side_record(db, reconciler, ADVANCES, advance_id, actor=request_actor(request))
    _audit(db, request, action="ADVANCE_DELETE", kind=ADVANCES, entity_id=advance_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Retards


@router.get("/api/retards", response_model=list[RetardRead])
def list_retards(
    start: date,
    end: date,
    employee_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> list[RetardRead]:
    _date_range(start, end)
    return list_side_records(db, RETARDS, start=start, end=end, employee_id=employee_id)


@router.post("/api/retards", response_model=RetardRead, status_code=status.HTTP_201_CREATED)
def create_retard(
    payload: RetardCreate,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> RetardRead:
    values = payload.model_dump()
    record = add_side_record(db, reconciler, RETARDS, values, actor=request_actor(request))
    _audit(db, request, action="RETARD_CREATE", kind=RETARDS, entity_id=record.id, details=_json_details(values))
    return record


@router.patch("/api/retards/{retard_id}", response_model=RetardRead)
def update_retard(
    retard_id: int,
    payload: RetardUpdate,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> RetardRead:
    changes = _changes(payload)
    record = update_side_record(db, reconciler, RETARDS, retard_id, changes, actor=request_actor(request))
    _audit(db, request, action="RETARD_UPDATE", kind=RETARDS, entity_id=retard_id, details=_json_details(changes))
    return record


@router.delete("/api/retards/{retard_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_retard(
    retard_id: int,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> Response:
    delete_side_record(db, reconciler, RETARDS, retard_id, actor=request_actor(request))
    _audit(db, request, action="RETARD_DELETE", kind=RETARDS, entity_id=retard_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Absences


@router.get("/api/absences", response_model=list[AbsenceRead])
def list_absences(
    start: date,
    end: date,
    employee_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> list[AbsenceRead]:
    _date_range(start, end)
    return list_side_records(db, ABSENCES, start=start, end=end, employee_id=employee_id)


@router.post("/api/absences", response_model=AbsenceRead, status_code=status.HTTP_201_CREATED)
def create_absence(
    payload: AbsenceCreate,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> AbsenceRead:
    values = payload.model_dump()
    record = add_side_record(db, reconciler, ABSENCES, values, actor=request_actor(request))
    _audit(db, request, action="ABSENCE_CREATE", kind=ABSENCES, entity_id=record.id, details=_json_details(values))
    return record


@router.patch("/api/absences/{absence_id}", response_model=AbsenceRead)
def update_absence(
    absence_id: int,
    payload: AbsenceUpdate,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> AbsenceRead:
    changes = _changes(payload)
    record = update_side_record(db, reconciler, ABSENCES, absence_id, changes, actor=request_actor(request))
    _audit(db, request, action="ABSENCE_UPDATE", kind=ABSENCES, entity_id=absence_id, details=_json_details(changes))
    return record


@router.delete("/api/absences/{absence_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_absence(
    absence_id: int,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> Response:
    delete_side_record(db, reconciler, ABSENCES, absence_id, actor=request_actor(request))
    _audit(db, request, action="ABSENCE_DELETE", kind=ABSENCES, entity_id=absence_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Extras (prime / infraction / extra, by motive prefix)


@router.get("/api/extras", response_model=list[ExtraRead])
def list_extras(
    start: date,
    end: date,
    employee_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> list[ExtraRead]:
    _date_range(start, end)
    return list_side_records(db, EXTRAS, start=start, end=end, employee_id=employee_id)


@router.post("/api/extras", response_model=ExtraRead, status_code=status.HTTP_201_CREATED)
def create_extra(
    payload: ExtraCreate,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> ExtraRead:
    values = payload.model_dump()
    record = add_side_record(db, reconciler, EXTRAS, values, actor=request_actor(request))
    _audit(db, request, action="EXTRA_CREATE", kind=EXTRAS, entity_id=record.id, details=_json_details(values))
    return record


@router.patch("/api/extras/{extra_id}", response_model=ExtraRead)
def update_extra(
    extra_id: int,
    payload: ExtraUpdate,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> ExtraRead:
    changes = _changes(payload)
    record = update_side_record(db, reconciler, EXTRAS, extra_id, changes, actor=request_actor(request))
    _audit(db, request, action="EXTRA_UPDATE", kind=EXTRAS, entity_id=extra_id, details=_json_details(changes))
    return record


@router.delete("/api/extras/{extra_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_extra(
    extra_id: int,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> Response:
    delete_side_record(db, reconciler, EXTRAS, extra_id, actor=request_actor(request))
    _audit(db, request, action="EXTRA_DELETE", kind=EXTRAS, entity_id=extra_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Doublages


@router.get("/api/doublages", response_model=list[DoublageRead])
def list_doublages(
    start: date,
    end: date,
    employee_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> list[DoublageRead]:
    _date_range(start, end)
    return list_side_records(db, DOUBLAGES, start=start, end=end, employee_id=employee_id)


@router.post("/api/doublages", response_model=DoublageRead, status_code=status.HTTP_201_CREATED)
def create_doublage(
    payload: DoublageCreate,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> DoublageRead:
    values = payload.model_dump()
    record = add_side_record(db, reconciler, DOUBLAGES, values, actor=request_actor(request))
    _audit(db, request, action="DOUBLAGE_CREATE", kind=DOUBLAGES, entity_id=record.id, details=_json_details(values))
    return record


@router.patch("/api/doublages/{doublage_id}", response_model=DoublageRead)
def update_doublage(
    doublage_id: int,
    payload: DoublageUpdate,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> DoublageRead:
    changes = _changes(payload)
    record = update_side_record(db, reconciler, DOUBLAGES, doublage_id, changes, actor=request_actor(request))
    _audit(db, request, action="DOUBLAGE_UPDATE", kind=DOUBLAGES, entity_id=doublage_id, details=_json_details(changes))
    return record


@router.delete("/api/doublages/{doublage_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_doublage(
    doublage_id: int,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
) -> Response:
    delete_side_record(db, reconciler, DOUBLAGES, doublage_id, actor=request_actor(request))
    _audit(db, request, action="DOUBLAGE_DELETE", kind=DOUBLAGES, entity_id=doublage_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
