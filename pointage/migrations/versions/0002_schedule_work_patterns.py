"""Add split-day and fixed-hours work patterns to schedules

Revision ID: 0002_schedule_work_patterns
Revises: 0001_ledger_initial
Create Date: 2026-10-20 10:30:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_schedule_work_patterns"
down_revision: Union[str, None] = "0001_ledger_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_TIME_COLUMNS = ("p1_in", "p1_out", "p2_in", "p2_out", "fixed_in", "fixed_out")


def upgrade() -> None:
    op.add_column(
        "employee_schedules",
        sa.Column("is_coupure", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    op.add_column(
        "employee_schedules",
        sa.Column("is_fixed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    for name in _TIME_COLUMNS:
        op.add_column("employee_schedules", sa.Column(name, sa.Time(), nullable=True))


def downgrade() -> None:
    for name in reversed(_TIME_COLUMNS):
        op.drop_column("employee_schedules", name)
    op.drop_column("employee_schedules", "is_fixed")
    op.drop_column("employee_schedules", "is_coupure")
