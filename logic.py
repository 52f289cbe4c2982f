from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from errors import ValidationError
from records import (
    GRADE_SCALES,
    AcademicRecord,
    EligibilityVerdict,
    OfferingId,
    OfferingRequirement,
    check_number,
    normalize_grade,
)

logger = logging.getLogger(__name__)

# IGCSE grade -> credit value used when a profile only carries subject grades.
GRADE_CREDITS = {
    "A*": 12,
    "A": 11,
    "B": 10,
    "C": 9,
    "D": 8,
    "E": 7,
    "F": 6,
    "G": 5,
    "U": 0,
}

MIN_PROFILE_SUBJECTS = 5

PASSES_WEIGHT = 10
GPA_WEIGHT = 100


def _fmt_number(value: float | int) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def _grade_rank(grade: str, scale_name: str) -> int | None:
    scale = GRADE_SCALES.get(scale_name)
    if scale is None:
        raise ValidationError(f"Unknown grade scale {scale_name!r}")
    normalized = normalize_grade(grade)
    if normalized not in scale:
        return None
    return scale.index(normalized)


def grade_meets_requirement(student_grade: str | None, required_grade: str, scale_name: str = "IGCSE") -> bool:
    required_rank = _grade_rank(required_grade, scale_name)
    if required_rank is None:
        raise ValidationError(f"Required grade {required_grade!r} is not on the {scale_name} scale")
    student_rank = _grade_rank(student_grade or "", scale_name)
    if student_rank is None:
        return False
    # Lower index means a better grade.
    return student_rank <= required_rank


def evaluate(record: AcademicRecord, requirement: OfferingRequirement) -> EligibilityVerdict:
    """Decide whether `record` satisfies `requirement`.

    Every unmet condition is reported, credits first, then subject requirements
    in the order the offering declares them. Raises ValidationError for
    malformed input; an ineligible applicant is an ordinary verdict.
    """
    if record.credits is None:
        raise ValidationError(f"Academic record for {record.applicant_id} has no credits")
    check_number("credits", record.credits)
    check_number("min_credits", requirement.min_credits, integral=True)
    if requirement.min_credits is None:
        raise ValidationError(f"Offering {requirement.offering_id} has no minimum credits")

    missing: list[str] = []
    passed: list[str] = []

    credits = record.credits
    min_credits = int(requirement.min_credits)
    credit_ratio = f"({_fmt_number(credits)}/{_fmt_number(min_credits)})"
    credits_ok = credits >= min_credits
    if credits_ok:
        passed.append(f"Minimum credits met {credit_ratio}")
    else:
        missing.append(f"Minimum credits not met {credit_ratio}")

    student_subjects = {str(k).strip().lower(): v for k, v in (record.subjects or {}).items()}
    subjects_ok = True
    for subject, needed in requirement.subject_requirements.items():
        needed_grade = normalize_grade(needed)
        got = normalize_grade(student_subjects.get(subject.strip().lower()))
        if not got:
            subjects_ok = False
            missing.append(f"{subject} grade not provided (requires {needed_grade} or better)")
        elif not grade_meets_requirement(got, needed_grade, requirement.grade_scale):
            subjects_ok = False
            missing.append(f"{subject} grade too low (requires {needed_grade} or better, you have {got})")
        else:
            passed.append(f"{subject} grade requirement met (requires {needed_grade} or better, you have {got})")

    if credits_ok and subjects_ok:
        message = "You meet all requirements for this offering."
    elif not credits_ok and not subjects_ok:
        message = "Insufficient credits and missing required subject grades."
    elif not credits_ok:
        message = "Insufficient credits for this offering."
    else:
        message = "Missing required subject grades."

    return EligibilityVerdict(
        is_eligible=credits_ok and subjects_ok,
        message=message,
        missing_requirements=tuple(missing),
        passed_requirements=tuple(passed),
        total_credits=credits,
        required_credits=min_credits,
    )


def evaluate_catalog(
    record: AcademicRecord, requirements: Iterable[OfferingRequirement]
) -> dict[OfferingId, EligibilityVerdict]:
    return {requirement.offering_id: evaluate(record, requirement) for requirement in requirements}


def _score_term(name: str, value: Any) -> float:
    if value is None:
        return 0.0
    check_number(name, value)
    return float(value)


def score(record: AcademicRecord) -> float:
    """Priority score used only to order conflicts: credits + passes*10 + gpa*100.

    Absent fields contribute 0 to their term.
    """
    credits = _score_term("credits", record.credits)
    passes = _score_term("passes", record.passes)
    gpa = _score_term("gpa", record.gpa)
    return credits + passes * PASSES_WEIGHT + gpa * GPA_WEIGHT


def calculate_credits_from_grades(subjects: Mapping[str, Any] | None) -> int:
    if not subjects:
        return 0
    total = 0
    for subject, grade in subjects.items():
        normalized = normalize_grade(grade)
        if not normalized:
            continue
        value = GRADE_CREDITS.get(normalized)
        if value is None:
            logger.warning("Unknown grade %r for subject %s; not counted", grade, subject)
            continue
        total += value
    return total


def has_complete_academic_profile(record: AcademicRecord | None) -> bool:
    if record is None:
        return False
    subjects = record.subjects or {}
    has_subjects = len(subjects) >= MIN_PROFILE_SUBJECTS
    has_grades = any(normalize_grade(grade) for grade in subjects.values())
    return has_subjects and has_grades


def eligibility_summary(verdict: EligibilityVerdict | None) -> dict[str, Any]:
    if verdict is None:
        return {
            "status": "pending",
            "title": "Checking Eligibility",
            "description": "Eligibility has not been evaluated yet.",
        }

    credits = f"{_fmt_number(verdict.total_credits)}/{_fmt_number(verdict.required_credits)}"
    if verdict.is_eligible:
        return {
            "status": "eligible",
            "title": "Eligible to Apply",
            "description": verdict.message,
            "credits": credits,
            "passed_count": len(verdict.passed_requirements),
        }
    return {
        "status": "ineligible",
        "title": "Not Eligible",
        "description": verdict.message,
        "credits": credits,
        "failed_count": len(verdict.missing_requirements),
        "missing_requirements": list(verdict.missing_requirements),
    }
