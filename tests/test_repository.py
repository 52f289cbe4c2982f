import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from builders import FIXED_NOW, accepted, at, offering
from conflicts import ConflictResolver, detect_conflicts
from db import db_session
from errors import (
    ApplicationNotFoundError,
    ConcurrentModificationError,
    DuplicateApplicationError,
    RecordNotFoundError,
)
from models import AcademicRecordRow, ApplicationRow, AuditLog, OfferingRequirementRow
from records import Application, ApplicationStatus, StatusTransition
from repository import SqlAcademicRecordProvider, SqlApplicationStore, SqlOfferingRequirementProvider


def finalize(app_id: str, expected: ApplicationStatus = ApplicationStatus.ACCEPTED) -> StatusTransition:
    return StatusTransition(
        application_id=app_id,
        expected_status=expected,
        expected_final=False,
        new_status=ApplicationStatus.ACCEPTED,
        new_final=True,
        reason="Final acceptance",
        at=FIXED_NOW,
    )


def test_application_round_trip_keeps_timezone_aware_timestamps(session_factory) -> None:
    store = SqlApplicationStore(session_factory)
    store.add_application(accepted("app-1", "stu-x", "inst-1/science/cs", day=3))

    app = store.get_application("app-1")

    assert app.offering_id == offering("inst-1/science/cs")
    assert app.status is ApplicationStatus.ACCEPTED
    assert app.submitted_at == at(3)
    assert app.submitted_at.tzinfo is not None
    assert [a.application_id for a in store.list_applications("2026-main")] == ["app-1"]
    assert store.list_applications("2025-main") == []


def test_duplicate_application_for_same_offering_and_cycle_is_rejected(session_factory) -> None:
    store = SqlApplicationStore(session_factory)
    store.add_application(accepted("app-1", "stu-x", "inst-1/science/cs"))

    with pytest.raises(DuplicateApplicationError):
        store.add_application(accepted("app-2", "stu-x", "inst-1/science/cs"))
    with pytest.raises(DuplicateApplicationError):
        store.add_application(accepted("app-1", "stu-y", "inst-2/business/bcom"))


def test_transition_is_compare_and_swap(session_factory) -> None:
    store = SqlApplicationStore(session_factory)
    store.add_application(accepted("app-1", "stu-x", "inst-1/science/cs"))

    updated = store.apply_transition(finalize("app-1"))

    assert updated.is_final is True
    assert updated.resolution_reason == "Final acceptance"
    assert updated.resolved_at == FIXED_NOW
    with pytest.raises(ConcurrentModificationError):
        store.apply_transition(finalize("app-1"))
    with pytest.raises(ApplicationNotFoundError):
        store.apply_transition(finalize("missing"))
    with pytest.raises(ApplicationNotFoundError):
        store.get_application("missing")


def test_transitions_write_audit_rows(session_factory) -> None:
    store = SqlApplicationStore(session_factory)
    store.add_application(accepted("app-1", "stu-x", "inst-1/science/cs"))
    store.apply_transition(finalize("app-1"))

    with db_session(session_factory) as db:
        actions = db.scalars(
            select(AuditLog.action).where(AuditLog.application_id == "app-1").order_by(AuditLog.created_at)
        ).all()

    assert sorted(actions) == ["application_created", "application_status_transition"]


def test_resolver_over_sql_store(session_factory, clock) -> None:
    store = SqlApplicationStore(session_factory)
    store.add_application(accepted("app-1", "stu-x", "inst-1/science/cs", day=3))
    store.add_application(accepted("app-2", "stu-x", "inst-2/business/bcom", day=1))
    store.add_application(
        Application("app-3", "stu-x", offering("inst-3/arts/ba"), "2026-main", at(2), ApplicationStatus.WAITLISTED)
    )
    conflict = detect_conflicts(store.list_applications("2026-main"))[0]
    resolver = ConflictResolver(store, clock=clock)

    result = resolver.resolve(conflict, "inst-1/science/cs")
    again = resolver.resolve(conflict, "inst-1/science/cs")

    assert result.rejected_application_ids == ("app-2",)
    assert again.already_resolved is True
    assert store.get_application("app-1").is_final is True
    assert store.get_application("app-2").status is ApplicationStatus.REJECTED
    assert store.get_application("app-3").status is ApplicationStatus.WAITLISTED


def test_providers_read_records_and_active_requirements(session_factory) -> None:
    with db_session(session_factory) as db:
        db.add(AcademicRecordRow(applicant_id="stu-x", credits=42, passes=6, gpa=3.5, subjects_json={"Mathematics": "a"}))
        db.add(
            OfferingRequirementRow(
                offering_code="inst-1/science/cs",
                institution_id="inst-1",
                faculty_id="science",
                course_id="cs",
                active=True,
                min_credits=34,
                description="Computer science",
                subject_requirements_json={"Mathematics": "B"},
                grade_scale="IGCSE",
            )
        )
        db.add(
            OfferingRequirementRow(
                offering_code="inst-1/science/old",
                institution_id="inst-1",
                faculty_id="science",
                course_id="old",
                active=False,
                min_credits=20,
            )
        )

    records = SqlAcademicRecordProvider(session_factory)
    requirements = SqlOfferingRequirementProvider(session_factory)

    record = records.get_academic_record("stu-x")
    assert record.credits == 42
    assert record.subjects == {"Mathematics": "A"}
    assert list(records.list_academic_records(["stu-x", "stu-none"])) == ["stu-x"]
    with pytest.raises(RecordNotFoundError):
        records.get_academic_record("stu-none")

    requirement = requirements.get_offering_requirement(offering("inst-1/science/cs"))
    assert requirement.min_credits == 34
    assert requirement.subject_requirements == {"Mathematics": "B"}
    assert [str(r.offering_id) for r in requirements.list_offering_requirements()] == ["inst-1/science/cs"]
    with pytest.raises(RecordNotFoundError):
        requirements.get_offering_requirement(offering("inst-1/science/old"))


def test_second_final_acceptance_for_applicant_is_refused(session_factory) -> None:
    store = SqlApplicationStore(session_factory)
    store.add_application(accepted("app-1", "stu-x", "inst-1/science/cs"))
    store.add_application(accepted("app-2", "stu-x", "inst-2/business/bcom"))
    store.add_application(accepted("app-3", "stu-y", "inst-2/business/bcom"))
    store.apply_transition(finalize("app-1"))

    with pytest.raises(ConcurrentModificationError):
        store.apply_transition(finalize("app-2"))

    assert store.get_application("app-2").is_final is False
    assert store.apply_transition(finalize("app-3")).is_final is True


def test_one_final_row_per_applicant_and_cycle_is_enforced_by_the_schema(session_factory) -> None:
    def final_row(row_id: str, course: str) -> ApplicationRow:
        return ApplicationRow(
            id=row_id,
            applicant_id="stu-x",
            institution_id="inst-1",
            faculty_id="science",
            course_id=course,
            cycle_id="2026-main",
            submitted_at=at(1),
            status="accepted",
            is_final=True,
        )

    with pytest.raises(IntegrityError):
        with db_session(session_factory) as db:
            db.add(final_row("r1", "cs"))
            db.add(final_row("r2", "math"))
