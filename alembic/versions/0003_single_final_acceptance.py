"""allow at most one final acceptance per applicant and cycle

Revision ID: 0003_single_final_acceptance
Revises: 0002_conflict_resolution
Create Date: 2026-10-19 18:10:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0003_single_final_acceptance"
down_revision: Union[str, Sequence[str], None] = "0002_conflict_resolution"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_index(
        "uq_applications_one_final_per_cycle",
        "applications",
        ["applicant_id", "cycle_id"],
        unique=True,
        postgresql_where=sa.text("is_final"),
    )


def downgrade() -> None:
    op.drop_index("uq_applications_one_final_per_cycle", table_name="applications")
