from __future__ import annotations

import enum
from datetime import date, datetime, time, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pointage.db import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class ShiftLabel(str, enum.Enum):
    REPOS = "Repos"
    MATIN = "Matin"
    SOIR = "Soir"
    DOUBLAGE = "Doublage"


class SideRecordSource(str, enum.Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class AdvanceStatus(str, enum.Enum):
    VALIDATED = "Validé"
    PAID = "Payé"
    PENDING = "En attente"
    REFUSED = "Refusé"


# Advances in these states are owed back and therefore count on the ledger.
LEDGER_ADVANCE_STATUSES = (AdvanceStatus.VALIDATED, AdvanceStatus.PAID, AdvanceStatus.PENDING)


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    department: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    base_salary: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    # Contractual working days; None means "calendar days in the month".
    divisor: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    schedule: Mapped[EmployeeSchedule | None] = relationship(
        back_populates="employee",
        uselist=False,
        cascade="all, delete-orphan",
    )
    ledger_records: Mapped[list[LedgerRecord]] = relationship(
        back_populates="employee",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class EmployeeSchedule(Base):
    __tablename__ = "employee_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    sunday: Mapped[ShiftLabel] = mapped_column(Enum(ShiftLabel, name="shift_label"), nullable=False, default=ShiftLabel.REPOS)
    monday: Mapped[ShiftLabel] = mapped_column(Enum(ShiftLabel, name="shift_label"), nullable=False, default=ShiftLabel.MATIN)
    tuesday: Mapped[ShiftLabel] = mapped_column(Enum(ShiftLabel, name="shift_label"), nullable=False, default=ShiftLabel.MATIN)
    wednesday: Mapped[ShiftLabel] = mapped_column(Enum(ShiftLabel, name="shift_label"), nullable=False, default=ShiftLabel.MATIN)
    thursday: Mapped[ShiftLabel] = mapped_column(Enum(ShiftLabel, name="shift_label"), nullable=False, default=ShiftLabel.MATIN)
    friday: Mapped[ShiftLabel] = mapped_column(Enum(ShiftLabel, name="shift_label"), nullable=False, default=ShiftLabel.MATIN)
    saturday: Mapped[ShiftLabel] = mapped_column(Enum(ShiftLabel, name="shift_label"), nullable=False, default=ShiftLabel.MATIN)

    # Split day ("coupure"): two segments. Fixed hours ("fixe"): one custom window.
    is_coupure: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    is_fixed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    p1_in: Mapped[time | None] = mapped_column(Time, nullable=True)
    p1_out: Mapped[time | None] = mapped_column(Time, nullable=True)
    p2_in: Mapped[time | None] = mapped_column(Time, nullable=True)
    p2_out: Mapped[time | None] = mapped_column(Time, nullable=True)
    fixed_in: Mapped[time | None] = mapped_column(Time, nullable=True)
    fixed_out: Mapped[time | None] = mapped_column(Time, nullable=True)

    employee: Mapped[Employee] = relationship(back_populates="schedule")

    _WEEKDAY_COLUMNS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

    def label_for(self, day: date) -> ShiftLabel:
        value = getattr(self, self._WEEKDAY_COLUMNS[day.weekday()])
        return ShiftLabel(value) if value is not None else ShiftLabel.REPOS


class Punch(Base):
    __tablename__ = "punches"
    __table_args__ = (
        UniqueConstraint("employee_id", "punched_at", name="uq_punches_employee_ts"),
        Index("ix_punches_calendar_date_employee", "calendar_date", "employee_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    punched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    calendar_date: Mapped[date] = mapped_column(Date, nullable=False)
    logical_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="biometric", server_default=text("'biometric'"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class LedgerRecord(Base):
    __tablename__ = "ledger_records"
    __table_args__ = (
        UniqueConstraint("employee_id", "day_date", name="uq_ledger_records_employee_day"),
        Index("ix_ledger_records_period_employee", "period", "employee_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    present: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    advance_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    extra_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    prime_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    infraction_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    doublage_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    mise_a_pied_days: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    retard_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    remark: Mapped[str | None] = mapped_column(Text, nullable=True)
    clock_in: Mapped[time | None] = mapped_column(Time, nullable=True)
    clock_out: Mapped[time | None] = mapped_column(Time, nullable=True)
    manually_edited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    net_salary: Mapped[float | None] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    employee: Mapped[Employee] = relationship(back_populates="ledger_records")


class RetardRecord(Base):
    __tablename__ = "retard_records"
    __table_args__ = (
        UniqueConstraint("employee_id", "day_date", "source", name="uq_retard_records_employee_day_source"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[SideRecordSource] = mapped_column(
        Enum(SideRecordSource, name="side_record_source"),
        nullable=False,
        default=SideRecordSource.MANUAL,
    )
    punched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AbsentRecord(Base):
    __tablename__ = "absent_records"
    __table_args__ = (
        UniqueConstraint("employee_id", "day_date", "source", name="uq_absent_records_employee_day_source"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False, default="Absence")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[SideRecordSource] = mapped_column(
        Enum(SideRecordSource, name="side_record_source"),
        nullable=False,
        default=SideRecordSource.MANUAL,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AdvanceRecord(Base):
    __tablename__ = "advance_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    motive: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[AdvanceStatus] = mapped_column(
        Enum(AdvanceStatus, name="advance_status"),
        nullable=False,
        default=AdvanceStatus.VALIDATED,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class ExtraRecord(Base):
    __tablename__ = "extra_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    motive: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class DoublageRecord(Base):
    __tablename__ = "doublage_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    employee_id: Mapped[int | None] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    actor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    deep_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
