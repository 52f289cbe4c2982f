from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from db import db_session, get_session_factory
from errors import (
    ApplicationNotFoundError,
    ConcurrentModificationError,
    DuplicateApplicationError,
    RecordNotFoundError,
)
from models import AcademicRecordRow, ApplicationRow, AuditLog, OfferingRequirementRow
from records import (
    AcademicRecord,
    Application,
    ApplicationStatus,
    OfferingId,
    OfferingRequirement,
    StatusTransition,
)

logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone=True columns.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def application_from_row(row: ApplicationRow) -> Application:
    return Application(
        application_id=row.id,
        applicant_id=row.applicant_id,
        offering_id=OfferingId(row.institution_id, row.faculty_id, row.course_id),
        cycle_id=row.cycle_id,
        submitted_at=_aware(row.submitted_at),
        status=ApplicationStatus(row.status),
        is_final=bool(row.is_final),
        eligible_at_submission=row.eligible_at_submission,
        resolution_reason=row.resolution_reason,
        resolved_at=_aware(row.resolved_at),
    )


def academic_record_from_row(row: AcademicRecordRow) -> AcademicRecord:
    return AcademicRecord.from_mapping(
        {
            "applicant_id": row.applicant_id,
            "credits": row.credits,
            "passes": row.passes,
            "gpa": row.gpa,
            "subjects": row.subjects_json or {},
        }
    )


def offering_requirement_from_row(row: OfferingRequirementRow) -> OfferingRequirement:
    return OfferingRequirement(
        offering_id=OfferingId(row.institution_id, row.faculty_id, row.course_id),
        min_credits=row.min_credits,
        description=row.description or "",
        subject_requirements=dict(row.subject_requirements_json or {}),
        grade_scale=row.grade_scale,
    )


class SqlApplicationStore:
    """Application store backed by the `applications` table.

    Each transition is its own transaction: a guarded UPDATE that only matches
    when the row still has the expected status, plus an audit row. Finalizing
    is refused while another application of the same applicant and cycle is
    final, backed by the partial unique index `uq_applications_one_final_per_cycle`.
    """

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._factory = session_factory or get_session_factory()

    def add_application(self, application: Application) -> Application:
        row = ApplicationRow(
            id=application.application_id,
            applicant_id=application.applicant_id,
            institution_id=application.offering_id.institution_id,
            faculty_id=application.offering_id.faculty_id,
            course_id=application.offering_id.course_id,
            cycle_id=application.cycle_id,
            submitted_at=application.submitted_at,
            status=application.status.value,
            is_final=application.is_final,
            eligible_at_submission=application.eligible_at_submission,
            resolution_reason=application.resolution_reason,
            resolved_at=application.resolved_at,
        )
        try:
            with db_session(self._factory) as db:
                db.add(row)
                db.flush()
                db.add(
                    AuditLog(
                        application_id=application.application_id,
                        action="application_created",
                        details_json={
                            "applicant_id": application.applicant_id,
                            "offering_id": str(application.offering_id),
                            "cycle_id": application.cycle_id,
                            "status": application.status.value,
                        },
                    )
                )
        except IntegrityError as exc:
            raise DuplicateApplicationError(
                f"Applicant {application.applicant_id} already applied to {application.offering_id} "
                f"in cycle {application.cycle_id}"
            ) from exc
        return application

    def list_applications(self, cycle_id: str) -> list[Application]:
        with db_session(self._factory) as db:
            rows = db.scalars(
                select(ApplicationRow)
                .where(ApplicationRow.cycle_id == cycle_id)
                .order_by(ApplicationRow.submitted_at, ApplicationRow.id)
            ).all()
            return [application_from_row(row) for row in rows]

    def get_application(self, application_id: str) -> Application:
        with db_session(self._factory) as db:
            row = db.get(ApplicationRow, application_id)
            if row is None:
                raise ApplicationNotFoundError(f"Application {application_id} not found")
            return application_from_row(row)

    def apply_transition(self, transition: StatusTransition) -> Application:
        try:
            return self._apply_transition(transition)
        except IntegrityError as exc:
            # uq_applications_one_final_per_cycle caught a concurrent finalization.
            raise ConcurrentModificationError(
                f"Application {transition.application_id} cannot become final: "
                "the applicant already holds a final acceptance in this cycle"
            ) from exc

    def _apply_transition(self, transition: StatusTransition) -> Application:
        with db_session(self._factory) as db:
            if transition.new_final and not transition.expected_final:
                self._ensure_no_other_final(db, transition.application_id)
            result = db.execute(
                update(ApplicationRow)
                .where(
                    ApplicationRow.id == transition.application_id,
                    ApplicationRow.status == transition.expected_status.value,
                    ApplicationRow.is_final == transition.expected_final,
                )
                .values(
                    status=transition.new_status.value,
                    is_final=transition.new_final,
                    resolution_reason=transition.reason,
                    resolved_at=transition.at,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                row = db.get(ApplicationRow, transition.application_id)
                if row is None:
                    raise ApplicationNotFoundError(f"Application {transition.application_id} not found")
                raise ConcurrentModificationError(
                    f"Application {transition.application_id} is {row.status}"
                    f"{' (final)' if row.is_final else ''}, expected {transition.expected_status.value}"
                )
            db.add(
                AuditLog(
                    application_id=transition.application_id,
                    action="application_status_transition",
                    details_json={
                        "from_status": transition.expected_status.value,
                        "from_final": transition.expected_final,
                        "to_status": transition.new_status.value,
                        "to_final": transition.new_final,
                        "reason": transition.reason,
                        "at": transition.at.isoformat(),
                    },
                )
            )
            db.flush()
            row = db.get(ApplicationRow, transition.application_id)
            db.refresh(row)
            logger.debug(
                "Application %s: %s -> %s", transition.application_id, transition.expected_status.value, transition.new_status.value
            )
            return application_from_row(row)

    @staticmethod
    def _ensure_no_other_final(db: Session, application_id: str) -> None:
        owner = db.execute(
            select(ApplicationRow.applicant_id, ApplicationRow.cycle_id).where(ApplicationRow.id == application_id)
        ).first()
        if owner is None:
            return
        holder = db.scalar(
            select(ApplicationRow.id)
            .where(
                ApplicationRow.applicant_id == owner.applicant_id,
                ApplicationRow.cycle_id == owner.cycle_id,
                ApplicationRow.is_final.is_(True),
                ApplicationRow.id != application_id,
            )
            .limit(1)
        )
        if holder is not None:
            raise ConcurrentModificationError(
                f"Applicant {owner.applicant_id} already holds a final acceptance ({holder}) "
                f"in cycle {owner.cycle_id}"
            )


class SqlAcademicRecordProvider:
    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._factory = session_factory or get_session_factory()

    def get_academic_record(self, applicant_id: str) -> AcademicRecord:
        with db_session(self._factory) as db:
            row = db.get(AcademicRecordRow, applicant_id)
            if row is None:
                raise RecordNotFoundError(f"No academic record for applicant {applicant_id}")
            return academic_record_from_row(row)

    def list_academic_records(self, applicant_ids: Iterable[str]) -> dict[str, AcademicRecord]:
        ids = sorted(set(applicant_ids))
        if not ids:
            return {}
        with db_session(self._factory) as db:
            rows = db.scalars(select(AcademicRecordRow).where(AcademicRecordRow.applicant_id.in_(ids))).all()
            return {row.applicant_id: academic_record_from_row(row) for row in rows}


class SqlOfferingRequirementProvider:
    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._factory = session_factory or get_session_factory()

    def get_offering_requirement(self, offering_id: OfferingId) -> OfferingRequirement:
        with db_session(self._factory) as db:
            row = db.get(OfferingRequirementRow, str(offering_id))
            if row is None or not row.active:
                raise RecordNotFoundError(f"No active requirement for offering {offering_id}")
            return offering_requirement_from_row(row)

    def list_offering_requirements(self) -> list[OfferingRequirement]:
        with db_session(self._factory) as db:
            rows = db.scalars(
                select(OfferingRequirementRow)
                .where(OfferingRequirementRow.active.is_(True))
                .order_by(OfferingRequirementRow.offering_code)
            ).all()
            return [offering_requirement_from_row(row) for row in rows]
