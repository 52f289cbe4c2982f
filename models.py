from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonType = JSON().with_variant(JSONB(), "postgresql")

STATUS_VALUES = ("pending", "under_review", "accepted", "rejected", "waitlisted")


class Base(DeclarativeBase):
    pass


class AcademicRecordRow(Base):
    __tablename__ = "academic_records"

    applicant_id: Mapped[str] = mapped_column(String(80), primary_key=True)
    credits: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    passes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    gpa: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    subjects_json: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("credits is null or credits >= 0", name="ck_academic_records_credits"),
        CheckConstraint("passes is null or passes >= 0", name="ck_academic_records_passes"),
        CheckConstraint("gpa is null or gpa >= 0", name="ck_academic_records_gpa"),
    )


class OfferingRequirementRow(Base):
    __tablename__ = "offering_requirements"

    offering_code: Mapped[str] = mapped_column(String(255), primary_key=True)  # institution/faculty/course
    institution_id: Mapped[str] = mapped_column(String(80), nullable=False)
    faculty_id: Mapped[str] = mapped_column(String(80), nullable=False)
    course_id: Mapped[str] = mapped_column(String(80), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    min_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    subject_requirements_json: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    grade_scale: Mapped[str] = mapped_column(String(20), nullable=False, default="IGCSE")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("min_credits >= 0", name="ck_offering_requirements_min_credits"),
        Index("ix_offering_requirements_institution", "institution_id"),
    )


class ApplicationRow(Base):
    __tablename__ = "applications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    applicant_id: Mapped[str] = mapped_column(String(80), nullable=False)
    institution_id: Mapped[str] = mapped_column(String(80), nullable=False)
    faculty_id: Mapped[str] = mapped_column(String(80), nullable=False)
    course_id: Mapped[str] = mapped_column(String(80), nullable=False)
    cycle_id: Mapped[str] = mapped_column(String(40), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    eligible_at_submission: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    resolution_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status in ('pending', 'under_review', 'accepted', 'rejected', 'waitlisted')",
            name="ck_applications_status",
        ),
        CheckConstraint("is_final = false or status = 'accepted'", name="ck_applications_final_accepted"),
        UniqueConstraint(
            "applicant_id", "institution_id", "faculty_id", "course_id", "cycle_id",
            name="uq_applications_applicant_offering_cycle",
        ),
        Index("ix_applications_cycle_id", "cycle_id"),
        Index("ix_applications_applicant_id", "applicant_id"),
        Index("ix_applications_status", "status"),
        Index(
            "uq_applications_one_final_per_cycle",
            "applicant_id",
            "cycle_id",
            unique=True,
            postgresql_where=text("is_final"),
            sqlite_where=text("is_final"),
        ),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    application_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(120), nullable=False)
    details_json: Mapped[dict] = mapped_column(JsonType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("ix_audit_logs_application_id", "application_id"),)
