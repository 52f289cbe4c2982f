"""add conflict resolution columns

Revision ID: 0002_conflict_resolution
Revises: 0001_admissions_core
Create Date: 2026-10-19 00:30:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0002_conflict_resolution"
down_revision: Union[str, Sequence[str], None] = "0001_admissions_core"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("applications", sa.Column("is_final", sa.Boolean(), nullable=False, server_default=sa.false()))
    op.add_column("applications", sa.Column("resolution_reason", sa.Text(), nullable=True))
    op.add_column("applications", sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True))
    op.create_check_constraint(
        "ck_applications_final_accepted",
        "applications",
        "is_final = false or status = 'accepted'",
    )


def downgrade() -> None:
    op.drop_constraint("ck_applications_final_accepted", "applications", type_="check")
    op.drop_column("applications", "resolved_at")
    op.drop_column("applications", "resolution_reason")
    op.drop_column("applications", "is_final")
