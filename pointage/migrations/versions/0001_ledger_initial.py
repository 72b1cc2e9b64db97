"""Ledger engine initial schema

Revision ID: 0001_ledger_initial
Revises:
Create Date: 2026-10-19 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_ledger_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

shift_label = sa.Enum("REPOS", "MATIN", "SOIR", "DOUBLAGE", name="shift_label")
side_record_source = sa.Enum("AUTO", "MANUAL", name="side_record_source")
advance_status = sa.Enum("VALIDATED", "PAID", "PENDING", "REFUSED", name="advance_status")


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def _side_table(name: str, *columns: sa.Column, constraints: Sequence[sa.Constraint] = ()) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        *columns,
        _created_at(),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        *constraints,
    )
    op.create_index(f"ix_{name}_employee_id", name, ["employee_id"], unique=False)
    op.create_index(f"ix_{name}_day_date", name, ["day_date"], unique=False)


def upgrade() -> None:
    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("department", sa.String(length=100), nullable=True),
        sa.Column("base_salary", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("divisor", sa.Integer(), nullable=True),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
    )
    op.create_index("ix_employees_department", "employees", ["department"], unique=False)

    op.create_table(
        "employee_schedules",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("sunday", shift_label, nullable=False),
        sa.Column("monday", shift_label, nullable=False),
        sa.Column("tuesday", shift_label, nullable=False),
        sa.Column("wednesday", shift_label, nullable=False),
        sa.Column("thursday", shift_label, nullable=False),
        sa.Column("friday", shift_label, nullable=False),
        sa.Column("saturday", shift_label, nullable=False),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", name="uq_employee_schedules_employee_id"),
    )

    op.create_table(
        "punches",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("punched_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("calendar_date", sa.Date(), nullable=False),
        sa.Column("logical_date", sa.Date(), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False, server_default=sa.text("'biometric'")),
        _created_at(),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "punched_at", name="uq_punches_employee_ts"),
    )
    op.create_index("ix_punches_employee_id", "punches", ["employee_id"], unique=False)
    op.create_index("ix_punches_punched_at", "punches", ["punched_at"], unique=False)
    op.create_index("ix_punches_logical_date", "punches", ["logical_date"], unique=False)
    op.create_index("ix_punches_calendar_date_employee", "punches", ["calendar_date", "employee_id"], unique=False)

    op.create_table(
        "ledger_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("period", sa.String(length=7), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("present", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("advance_amount", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("extra_amount", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("prime_amount", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("infraction_amount", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("doublage_amount", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("mise_a_pied_days", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("retard_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("remark", sa.Text(), nullable=True),
        sa.Column("clock_in", sa.Time(), nullable=True),
        sa.Column("clock_out", sa.Time(), nullable=True),
        sa.Column("manually_edited", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("paid", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("net_salary", sa.Float(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "day_date", name="uq_ledger_records_employee_day"),
    )
    op.create_index("ix_ledger_records_day_date", "ledger_records", ["day_date"], unique=False)
    op.create_index("ix_ledger_records_period_employee", "ledger_records", ["period", "employee_id"], unique=False)

    _side_table(
        "retard_records",
        sa.Column("minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("source", side_record_source, nullable=False),
        sa.Column("punched_at", sa.DateTime(timezone=True), nullable=True),
        constraints=[
            sa.UniqueConstraint("employee_id", "day_date", "source", name="uq_retard_records_employee_day_source"),
        ],
    )
    _side_table(
        "absent_records",
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("source", side_record_source, nullable=False),
        constraints=[
            sa.UniqueConstraint("employee_id", "day_date", "source", name="uq_absent_records_employee_day_source"),
        ],
    )
    _side_table(
        "advance_records",
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("motive", sa.Text(), nullable=True),
        sa.Column("status", advance_status, nullable=False),
    )
    _side_table(
        "extra_records",
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("motive", sa.Text(), nullable=True),
    )
    _side_table(
        "doublage_records",
        sa.Column("amount", sa.Float(), nullable=False),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=True),
        sa.Column("actor_name", sa.String(length=255), nullable=True),
        sa.Column("deep_link", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("idempotency_key", name="uq_notifications_idempotency_key"),
    )
    op.create_index("ix_notifications_employee_id", "notifications", ["employee_id"], unique=False)
    op.create_index("ix_notifications_created_at", "notifications", ["created_at"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("actor", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_notifications_created_at", table_name="notifications")
    op.drop_index("ix_notifications_employee_id", table_name="notifications")
    op.drop_table("notifications")
    for name in ("doublage_records", "extra_records", "advance_records", "absent_records", "retard_records"):
        op.drop_index(f"ix_{name}_day_date", table_name=name)
        op.drop_index(f"ix_{name}_employee_id", table_name=name)
        op.drop_table(name)
    op.drop_index("ix_ledger_records_period_employee", table_name="ledger_records")
    op.drop_index("ix_ledger_records_day_date", table_name="ledger_records")
    op.drop_table("ledger_records")
    op.drop_index("ix_punches_calendar_date_employee", table_name="punches")
    op.drop_index("ix_punches_logical_date", table_name="punches")
    op.drop_index("ix_punches_punched_at", table_name="punches")
    op.drop_index("ix_punches_employee_id", table_name="punches")
    op.drop_table("punches")
    op.drop_table("employee_schedules")
    op.drop_index("ix_employees_department", table_name="employees")
    op.drop_table("employees")

    bind = op.get_bind()
    advance_status.drop(bind, checkfirst=True)
    side_record_source.drop(bind, checkfirst=True)
    shift_label.drop(bind, checkfirst=True)
