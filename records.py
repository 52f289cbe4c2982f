from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping

from errors import ValidationError

logger = logging.getLogger(__name__)

# Ordinal grade scales, best grade first.
GRADE_SCALES: dict[str, tuple[str, ...]] = {
    "IGCSE": ("A*", "A", "B", "C", "D", "E", "F", "G", "U"),
    "SPM": ("A+", "A", "A-", "B+", "B", "C+", "C", "D", "E", "G"),
}
DEFAULT_GRADE_SCALE = "IGCSE"


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WAITLISTED = "waitlisted"


ALLOWED_TRANSITIONS: dict[ApplicationStatus, frozenset[ApplicationStatus]] = {
    ApplicationStatus.PENDING: frozenset({ApplicationStatus.UNDER_REVIEW}),
    ApplicationStatus.UNDER_REVIEW: frozenset(
        {ApplicationStatus.ACCEPTED, ApplicationStatus.REJECTED, ApplicationStatus.WAITLISTED}
    ),
    # Accepted -> Accepted covers finalizing the winner of a conflict.
    ApplicationStatus.ACCEPTED: frozenset({ApplicationStatus.ACCEPTED, ApplicationStatus.REJECTED}),
    ApplicationStatus.REJECTED: frozenset(),
    ApplicationStatus.WAITLISTED: frozenset(),
}


def can_transition(current: ApplicationStatus, new: ApplicationStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def normalize_grade(grade: Any) -> str:
    if grade is None:
        return ""
    return str(grade).strip().upper()


def check_number(name: str, value: Any, integral: bool = False) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be finite, got {value!r}")
    if value < 0:
        raise ValidationError(f"{name} must be non-negative, got {value!r}")
    if integral and value != int(value):
        raise ValidationError(f"{name} must be a whole number, got {value!r}")


def _parse_number(name: str, value: Any) -> float | int | None:
    """Loose numeric parsing for form/CSV/ORM input; unparseable values become absent."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        logger.warning("Ignoring unparseable %s value %r", name, value)
        return None
    return int(number) if number.is_integer() else number


@dataclass(frozen=True, order=True)
class OfferingId:
    institution_id: str
    faculty_id: str
    course_id: str

    def __str__(self) -> str:
        return f"{self.institution_id}/{self.faculty_id}/{self.course_id}"

    @classmethod
    def parse(cls, text: str) -> OfferingId:
        parts = [part.strip() for part in str(text).split("/")]
        if len(parts) != 3 or not all(parts):
            raise ValidationError(f"Offering id must look like 'institution/faculty/course', got {text!r}")
        return cls(*parts)

    @classmethod
    def coerce(cls, value: OfferingId | str) -> OfferingId:
        if isinstance(value, OfferingId):
            return value
        return cls.parse(value)


@dataclass(frozen=True)
class AcademicRecord:
    applicant_id: str
    credits: float | None = None
    passes: int | None = None
    gpa: float | None = None
    subjects: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        check_number("credits", self.credits)
        check_number("passes", self.passes, integral=True)
        check_number("gpa", self.gpa)
        if not isinstance(self.subjects, Mapping):
            raise ValidationError("subjects must be a mapping of subject name to grade symbol")

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> AcademicRecord:
        applicant_id = str(payload.get("applicant_id") or "").strip()
        if not applicant_id:
            raise ValidationError("applicant_id is required")
        subjects = payload.get("subjects") or {}
        if not isinstance(subjects, Mapping):
            raise ValidationError("subjects must be a mapping of subject name to grade symbol")
        return cls(
            applicant_id=applicant_id,
            credits=_parse_number("credits", payload.get("credits")),
            passes=_parse_number("passes", payload.get("passes")),
            gpa=_parse_number("gpa", payload.get("gpa")),
            subjects={str(name).strip(): normalize_grade(grade) for name, grade in subjects.items() if str(name).strip()},
        )


@dataclass(frozen=True)
class OfferingRequirement:
    offering_id: OfferingId
    min_credits: int
    description: str = ""
    subject_requirements: Mapping[str, str] = field(default_factory=dict)
    grade_scale: str = DEFAULT_GRADE_SCALE

    def __post_init__(self) -> None:
        check_number("min_credits", self.min_credits, integral=True)
        if self.min_credits is None:
            raise ValidationError("min_credits is required")
        scale = GRADE_SCALES.get(self.grade_scale)
        if scale is None:
            raise ValidationError(f"Unknown grade scale {self.grade_scale!r}")
        for subject, grade in self.subject_requirements.items():
            if normalize_grade(grade) not in scale:
                raise ValidationError(
                    f"Required grade {grade!r} for {subject} is not on the {self.grade_scale} scale"
                )


@dataclass(frozen=True)
class EligibilityVerdict:
    is_eligible: bool
    message: str
    missing_requirements: tuple[str, ...] = ()
    passed_requirements: tuple[str, ...] = ()
    total_credits: float = 0
    required_credits: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_eligible": self.is_eligible,
            "message": self.message,
            "missing_requirements": list(self.missing_requirements),
            "passed_requirements": list(self.passed_requirements),
            "total_credits": self.total_credits,
            "required_credits": self.required_credits,
        }


@dataclass(frozen=True)
class Application:
    application_id: str
    applicant_id: str
    offering_id: OfferingId
    cycle_id: str
    submitted_at: datetime
    status: ApplicationStatus = ApplicationStatus.PENDING
    is_final: bool = False
    eligible_at_submission: bool | None = None
    resolution_reason: str | None = None
    resolved_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.submitted_at.tzinfo is None:
            raise ValidationError(f"submitted_at of application {self.application_id} must be timezone-aware")
        if self.is_final and self.status is not ApplicationStatus.ACCEPTED:
            raise ValidationError("Only Accepted applications can be final")

    @property
    def is_accepted(self) -> bool:
        return self.status is ApplicationStatus.ACCEPTED

    def with_changes(self, **changes: Any) -> Application:
        return replace(self, **changes)


@dataclass(frozen=True)
class StatusTransition:
    """Compare-and-swap unit handed to a store: applied only if the row still matches `expected_*`."""

    application_id: str
    expected_status: ApplicationStatus
    expected_final: bool
    new_status: ApplicationStatus
    new_final: bool
    reason: str
    at: datetime


@dataclass(frozen=True)
class ConflictRecord:
    applicant_id: str
    cycle_id: str
    applications: tuple[Application, ...]
    priority_score: float = 0.0

    @property
    def offering_ids(self) -> list[OfferingId]:
        return [app.offering_id for app in self.applications]

    @property
    def application_ids(self) -> list[str]:
        return [app.application_id for app in self.applications]

    def member_for(self, offering_id: OfferingId) -> Application | None:
        for app in self.applications:
            if app.offering_id == offering_id:
                return app
        return None


@dataclass(frozen=True)
class IntegrityWarning:
    applicant_id: str
    cycle_id: str
    offering_id: OfferingId
    application_ids: tuple[str, ...]
    message: str


@dataclass(frozen=True)
class ResolutionResult:
    applicant_id: str
    cycle_id: str
    winning_application_id: str
    winning_offering_id: OfferingId
    rejected_application_ids: tuple[str, ...]
    transitioned_application_ids: tuple[str, ...]
    already_resolved: bool
    resolved_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "applicant_id": self.applicant_id,
            "cycle_id": self.cycle_id,
            "winning_application_id": self.winning_application_id,
            "winning_offering_id": str(self.winning_offering_id),
            "rejected_application_ids": list(self.rejected_application_ids),
            "transitioned_application_ids": list(self.transitioned_application_ids),
            "already_resolved": self.already_resolved,
            "resolved_at": self.resolved_at.isoformat(),
        }
