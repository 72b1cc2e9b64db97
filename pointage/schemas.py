from datetime import date, datetime, time
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_serializer, model_validator

from pointage.models import AdvanceStatus, SideRecordSource
from pointage.services.classifier import Duration
from pointage.services.logical_day import parse_hhmm, parse_period


def _parse_minutes(value: Any) -> Any:
    if value is None or isinstance(value, int):
        return value
    return Duration.parse(str(value)).minutes


def _parse_clock(value: Any) -> Any:
    if value is None or isinstance(value, time):
        return value
    text = str(value).strip()
    if not text:
        return None
    return parse_hhmm(text[:5])


def _format_clock(value: time | None) -> str | None:
    return value.strftime("%H:%M") if value is not None else None


def _reject_nulls(model: BaseModel, nullable: frozenset[str] = frozenset()) -> None:
    # Omitted fields stay untouched; an explicit null may only clear nullable columns.
    nulls = sorted(name for name in model.model_fields_set - nullable if getattr(model, name) is None)
    if nulls:
        raise ValueError(f"Fields cannot be null: {', '.join(nulls)}.")


# Accept "1h 5m" style text wherever minutes are expected.
Minutes = Annotated[int, BeforeValidator(_parse_minutes)]
Clock = Annotated[time, BeforeValidator(_parse_clock)]


class PunchIn(BaseModel):
    employee_id: int = Field(ge=1)
    ts_utc: datetime | None = None
    ts_local: datetime | None = None

    @model_validator(mode="after")
    def validate_timestamp(self) -> "PunchIn":
        if (self.ts_utc is None) == (self.ts_local is None):
            raise ValueError("Exactly one of ts_utc or ts_local is required.")
        return self


class PunchBatchRequest(BaseModel):
    punches: list[PunchIn] = Field(min_length=1, max_length=5000)
    reconcile: bool = True


class ReconcileSummary(BaseModel):
    day: date
    processed: int
    failed: dict[str, str] = Field(default_factory=dict)
    notifications: int = 0


class PunchBatchResponse(BaseModel):
    received: int
    inserted: int
    logical_days: list[date]
    reconciled: list[ReconcileSummary] = Field(default_factory=list)


class LedgerRow(BaseModel):
    id: int
    period: str
    employee_id: int
    employee_name: str | None = None
    day_date: date
    present: float
    advance_amount: float
    extra_amount: float
    prime_amount: float
    infraction_amount: float
    doublage_amount: float
    mise_a_pied_days: float
    retard_minutes: int
    remark: str | None = None
    clock_in: time | None = None
    clock_out: time | None = None
    manually_edited: bool
    paid: bool
    net_salary: float | None = None

    model_config = ConfigDict(from_attributes=True)

    @field_serializer("clock_in", "clock_out")
    def serialize_clock(self, value: time | None) -> str | None:
        return _format_clock(value)


CLEARABLE_LEDGER_FIELDS = frozenset({"remark", "clock_in", "clock_out"})


class LedgerRowUpdate(BaseModel):
    present: float | None = Field(default=None, ge=0, le=1)
    advance_amount: float | None = Field(default=None, ge=0)
    extra_amount: float | None = Field(default=None, ge=0)
    prime_amount: float | None = Field(default=None, ge=0)
    infraction_amount: float | None = Field(default=None, ge=0)
    doublage_amount: float | None = Field(default=None, ge=0)
    mise_a_pied_days: float | None = Field(default=None, ge=0)
    retard_minutes: Minutes | None = Field(default=None, ge=0)
    remark: str | None = Field(default=None, max_length=2000)
    clock_in: Clock | None = None
    clock_out: Clock | None = None

    @model_validator(mode="after")
    def validate_fields(self) -> "LedgerRowUpdate":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided.")
        _reject_nulls(self, CLEARABLE_LEDGER_FIELDS)
        return self

    def to_fields(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}


class PardonRequest(BaseModel):
    employee_id: int = Field(ge=1)
    day_date: date


class PayRequest(BaseModel):
    employee_id: int = Field(ge=1)
    net_salary: float | None = None


class UnpayRequest(BaseModel):
    employee_id: int = Field(ge=1)


class PayResponse(BaseModel):
    period: str
    employee_id: int
    paid: bool
    rows: int


class ProvisionResponse(BaseModel):
    period: str
    inserted: int


class SyncRequest(BaseModel):
    day_date: date | None = None
    employee_id: int | None = Field(default=None, ge=1)
    period: str | None = None

    @model_validator(mode="after")
    def validate_scope(self) -> "SyncRequest":
        if self.period is not None:
            parse_period(self.period)
            if self.employee_id is None:
                raise ValueError("employee_id is required with period.")
            if self.day_date is not None:
                raise ValueError("day_date and period cannot be combined.")
        return self


class SyncResponse(BaseModel):
    reports: list[ReconcileSummary]


class DayStatusItem(BaseModel):
    employee_id: int
    full_name: str
    department: str | None = None
    shift: str | None = None
    clock_in: time | None = None
    clock_out: time | None = None
    retard: str | None = None
    state: str
    remark: str | None = None
    manually_edited: bool = False
    month_absences: int = 0
    month_retards: int = 0

    @field_serializer("clock_in", "clock_out")
    def serialize_clock(self, value: time | None) -> str | None:
        return _format_clock(value)


class AdvanceCreate(BaseModel):
    employee_id: int = Field(ge=1)
    day_date: date
    amount: float = Field(gt=0)
    motive: str | None = Field(default=None, max_length=500)
    status: AdvanceStatus = AdvanceStatus.VALIDATED


class AdvanceUpdate(BaseModel):
    employee_id: int | None = Field(default=None, ge=1)
    day_date: date | None = None
    amount: float | None = Field(default=None, gt=0)
    motive: str | None = Field(default=None, max_length=500)
    status: AdvanceStatus | None = None

    @model_validator(mode="after")
    def validate_fields(self) -> "AdvanceUpdate":
        _reject_nulls(self, frozenset({"motive"}))
        return self


class AdvanceStatusUpdate(BaseModel):
    status: AdvanceStatus


class AdvanceRead(BaseModel):
    id: int
    employee_id: int
    day_date: date
    amount: float
    motive: str | None = None
    status: AdvanceStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RetardCreate(BaseModel):
    employee_id: int = Field(ge=1)
    day_date: date
    minutes: Minutes = Field(ge=0)
    reason: str | None = Field(default=None, max_length=500)


class RetardUpdate(BaseModel):
    employee_id: int | None = Field(default=None, ge=1)
    day_date: date | None = None
    minutes: Minutes | None = Field(default=None, ge=0)
    reason: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def validate_fields(self) -> "RetardUpdate":
        _reject_nulls(self, frozenset({"reason"}))
        return self


class RetardRead(BaseModel):
    id: int
    employee_id: int
    day_date: date
    minutes: int
    reason: str | None = None
    source: SideRecordSource
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AbsenceCreate(BaseModel):
    employee_id: int = Field(ge=1)
    day_date: date
    type: str = Field(default="Absence", min_length=1, max_length=64)
    reason: str | None = Field(default=None, max_length=500)


class AbsenceUpdate(BaseModel):
    employee_id: int | None = Field(default=None, ge=1)
    day_date: date | None = None
    type: str | None = Field(default=None, min_length=1, max_length=64)
    reason: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def validate_fields(self) -> "AbsenceUpdate":
        _reject_nulls(self, frozenset({"reason"}))
        return self


class AbsenceRead(BaseModel):
    id: int
    employee_id: int
    day_date: date
    type: str
    reason: str | None = None
    source: SideRecordSource
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ExtraCreate(BaseModel):
    employee_id: int = Field(ge=1)
    day_date: date
    amount: float = Field(ge=0)
    motive: str | None = Field(default=None, max_length=500)


class ExtraUpdate(BaseModel):
    employee_id: int | None = Field(default=None, ge=1)
    day_date: date | None = None
    amount: float | None = Field(default=None, ge=0)
    motive: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def validate_fields(self) -> "ExtraUpdate":
        _reject_nulls(self, frozenset({"motive"}))
        return self


class ExtraRead(BaseModel):
    id: int
    employee_id: int
    day_date: date
    amount: float
    motive: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DoublageCreate(BaseModel):
    employee_id: int = Field(ge=1)
    day_date: date
    amount: float = Field(gt=0)


class DoublageUpdate(BaseModel):
    employee_id: int | None = Field(default=None, ge=1)
    day_date: date | None = None
    amount: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_fields(self) -> "DoublageUpdate":
        _reject_nulls(self)
        return self


class DoublageRead(BaseModel):
    id: int
    employee_id: int
    day_date: date
    amount: float
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationRead(BaseModel):
    id: int
    kind: str
    title: str
    message: str
    employee_id: int | None = None
    actor_name: str | None = None
    deep_link: str | None = None
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationMarkReadRequest(BaseModel):
    ids: list[int] | None = None


class NotificationMarkReadResponse(BaseModel):
    updated: int
