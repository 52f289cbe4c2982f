"""admissions core schema

Revision ID: 0001_admissions_core
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_admissions_core"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "academic_records",
        sa.Column("applicant_id", sa.String(length=80), nullable=False),
        sa.Column("credits", sa.Float(), nullable=True),
        sa.Column("passes", sa.Integer(), nullable=True),
        sa.Column("gpa", sa.Float(), nullable=True),
        sa.Column("subjects_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("credits is null or credits >= 0", name="ck_academic_records_credits"),
        sa.CheckConstraint("passes is null or passes >= 0", name="ck_academic_records_passes"),
        sa.CheckConstraint("gpa is null or gpa >= 0", name="ck_academic_records_gpa"),
        sa.PrimaryKeyConstraint("applicant_id"),
    )

    op.create_table(
        "offering_requirements",
        sa.Column("offering_code", sa.String(length=255), nullable=False),
        sa.Column("institution_id", sa.String(length=80), nullable=False),
        sa.Column("faculty_id", sa.String(length=80), nullable=False),
        sa.Column("course_id", sa.String(length=80), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("min_credits", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("subject_requirements_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("grade_scale", sa.String(length=20), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("min_credits >= 0", name="ck_offering_requirements_min_credits"),
        sa.PrimaryKeyConstraint("offering_code"),
    )
    op.create_index("ix_offering_requirements_institution", "offering_requirements", ["institution_id"], unique=False)

    op.create_table(
        "applications",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("applicant_id", sa.String(length=80), nullable=False),
        sa.Column("institution_id", sa.String(length=80), nullable=False),
        sa.Column("faculty_id", sa.String(length=80), nullable=False),
        sa.Column("course_id", sa.String(length=80), nullable=False),
        sa.Column("cycle_id", sa.String(length=40), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("eligible_at_submission", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint(
            "status in ('pending', 'under_review', 'accepted', 'rejected', 'waitlisted')",
            name="ck_applications_status",
        ),
        sa.UniqueConstraint(
            "applicant_id", "institution_id", "faculty_id", "course_id", "cycle_id",
            name="uq_applications_applicant_offering_cycle",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_applications_cycle_id", "applications", ["cycle_id"], unique=False)
    op.create_index("ix_applications_applicant_id", "applications", ["applicant_id"], unique=False)
    op.create_index("ix_applications_status", "applications", ["status"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("application_id", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=120), nullable=False),
        sa.Column("details_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_application_id", "audit_logs", ["application_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_application_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_applications_status", table_name="applications")
    op.drop_index("ix_applications_applicant_id", table_name="applications")
    op.drop_index("ix_applications_cycle_id", table_name="applications")
    op.drop_table("applications")
    op.drop_index("ix_offering_requirements_institution", table_name="offering_requirements")
    op.drop_table("offering_requirements")
    op.drop_table("academic_records")
