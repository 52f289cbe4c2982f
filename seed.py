from __future__ import annotations

import ast
import csv
import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import get_settings
from models import AcademicRecordRow, ApplicationRow, AuditLog, OfferingRequirementRow
from records import AcademicRecord, OfferingId, OfferingRequirement


REQUIRED_OFFERING_COLUMNS = {
    "institution_id",
    "faculty_id",
    "course_id",
    "active",
    "min_credits",
    "description",
    "subject_requirements_json",
    "grade_scale",
}

REQUIRED_RECORD_COLUMNS = {
    "applicant_id",
    "credits",
    "passes",
    "gpa",
    "subjects_json",
}


def _parse_json_or_empty(value: str) -> dict:
    raw = (value or "").strip()
    if not raw:
        return {}
    if raw == "{}":
        return {}

    # Accept both proper JSON and common CSV-escaped variants like {\"k\":\"v\"}.
    for candidate in (
        raw,
        raw.replace('\\"', '"'),
        raw.replace("'", '"'),
    ):
        try:
            parsed = json.loads(candidate)
            return parsed if isinstance(parsed, dict) else {}
        except json.JSONDecodeError:
            continue

    # Last fallback for Python-dict-like payloads.
    try:
        parsed = ast.literal_eval(raw)
        return parsed if isinstance(parsed, dict) else {}
    except (SyntaxError, ValueError):
        raise ValueError(f"Invalid JSON object field: {raw}")


def _parse_int(value: str) -> int | None:
    value = (value or "").strip()
    return int(value) if value else None


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "y"}


def validate_csv_columns(columns: list[str], required: set[str]) -> tuple[bool, list[str]]:
    missing = sorted(required - set(columns))
    return len(missing) == 0, missing


def load_requirements_from_csv(csv_text: str, min_credits_floor: int | None = None) -> list[dict[str, Any]]:
    """Parse an offering catalog CSV into row dicts for `offering_requirements`.

    Offerings below the platform credit floor, or with grades that are not on
    their scale, are rejected with ValueError.
    """
    floor = get_settings().min_credits_floor if min_credits_floor is None else min_credits_floor
    reader = csv.DictReader(csv_text.splitlines())
    valid, missing = validate_csv_columns(reader.fieldnames or [], REQUIRED_OFFERING_COLUMNS)
    if not valid:
        raise ValueError(f"Missing required columns: {missing}")

    rows: list[dict[str, Any]] = []
    for line_no, row in enumerate(reader, start=2):
        offering_id = OfferingId(row["institution_id"].strip(), row["faculty_id"].strip(), row["course_id"].strip())
        min_credits = _parse_int(row["min_credits"])
        if min_credits is None:
            raise ValueError(f"Line {line_no}: min_credits is required for {offering_id}")
        if min_credits < floor:
            raise ValueError(f"Line {line_no}: min_credits {min_credits} for {offering_id} is below the platform floor {floor}")

        grade_scale = (row["grade_scale"] or "").strip().upper() or get_settings().default_grade_scale
        subjects = _parse_json_or_empty(row["subject_requirements_json"])
        # Raises ValidationError (a ValueError) for unknown scales or grades.
        OfferingRequirement(
            offering_id=offering_id,
            min_credits=min_credits,
            description=row["description"] or "",
            subject_requirements=subjects,
            grade_scale=grade_scale,
        )
        rows.append(
            {
                "offering_code": str(offering_id),
                "institution_id": offering_id.institution_id,
                "faculty_id": offering_id.faculty_id,
                "course_id": offering_id.course_id,
                "active": _parse_bool(row["active"]),
                "min_credits": min_credits,
                "description": row["description"] or "",
                "subject_requirements_json": subjects,
                "grade_scale": grade_scale,
            }
        )
    return rows


def load_academic_records_from_csv(csv_text: str) -> list[dict[str, Any]]:
    reader = csv.DictReader(csv_text.splitlines())
    valid, missing = validate_csv_columns(reader.fieldnames or [], REQUIRED_RECORD_COLUMNS)
    if not valid:
        raise ValueError(f"Missing required columns: {missing}")

    rows: list[dict[str, Any]] = []
    for row in reader:
        record = AcademicRecord.from_mapping(
            {
                "applicant_id": row["applicant_id"],
                "credits": row["credits"],
                "passes": row["passes"],
                "gpa": row["gpa"],
                "subjects": _parse_json_or_empty(row["subjects_json"]),
            }
        )
        rows.append(
            {
                "applicant_id": record.applicant_id,
                "credits": record.credits,
                "passes": record.passes,
                "gpa": record.gpa,
                "subjects_json": dict(record.subjects),
            }
        )
    return rows


def preview_diff(db: Session, rows: list[dict[str, Any]]) -> dict[str, int]:
    existing = set(
        db.scalars(
            select(OfferingRequirementRow.offering_code).where(
                OfferingRequirementRow.offering_code.in_([row["offering_code"] for row in rows])
            )
        ).all()
    )
    to_update = sum(1 for row in rows if row["offering_code"] in existing)
    return {"insert": len(rows) - to_update, "update": to_update}


def upsert_offering_requirements(db: Session, rows: list[dict[str, Any]], source: str = "csv") -> dict[str, int]:
    existing_map = {
        r.offering_code: r
        for r in db.scalars(
            select(OfferingRequirementRow).where(
                OfferingRequirementRow.offering_code.in_([row["offering_code"] for row in rows])
            )
        ).all()
    }

    inserted = 0
    updated = 0
    for row in rows:
        existing = existing_map.get(row["offering_code"])
        if existing:
            for key, value in row.items():
                setattr(existing, key, value)
            updated += 1
        else:
            db.add(OfferingRequirementRow(**row))
            inserted += 1

    db.add(
        AuditLog(
            action="offering_requirements_upsert",
            details_json={
                "source": source,
                "inserted": inserted,
                "updated": updated,
                "offering_codes": [r["offering_code"] for r in rows],
            },
        )
    )
    return {"inserted": inserted, "updated": updated}


def upsert_academic_records(db: Session, rows: list[dict[str, Any]], source: str = "csv") -> dict[str, int]:
    inserted = 0
    updated = 0
    for row in rows:
        existing = db.get(AcademicRecordRow, row["applicant_id"])
        if existing:
            for key, value in row.items():
                setattr(existing, key, value)
            updated += 1
        else:
            db.add(AcademicRecordRow(**row))
            inserted += 1

    db.add(
        AuditLog(
            action="academic_records_upsert",
            details_json={"source": source, "inserted": inserted, "updated": updated},
        )
    )
    return {"inserted": inserted, "updated": updated}


def seed_demo_cycle(db: Session, cycle_id: str = "2026-main") -> dict[str, int]:
    """Load the sample catalog and records and, if the cycle is empty, a set of applications with conflicts."""
    offerings = upsert_offering_requirements(db, load_requirements_from_csv(_default_offerings_csv()), source="seed")
    records = upsert_academic_records(db, load_academic_records_from_csv(_default_records_csv()), source="seed")

    total = db.scalar(select(func.count()).select_from(ApplicationRow).where(ApplicationRow.cycle_id == cycle_id)) or 0
    created = 0
    if total == 0:
        for app_id, applicant_id, offering_code, day, status in _demo_applications():
            offering = OfferingId.parse(offering_code)
            db.add(
                ApplicationRow(
                    id=f"{cycle_id}-{app_id}",
                    applicant_id=applicant_id,
                    institution_id=offering.institution_id,
                    faculty_id=offering.faculty_id,
                    course_id=offering.course_id,
                    cycle_id=cycle_id,
                    submitted_at=datetime(2026, 1, day, 9, 0, tzinfo=timezone.utc),
                    status=status,
                    is_final=False,
                    eligible_at_submission=True,
                )
            )
            created += 1

    return {
        "offerings_inserted": offerings["inserted"],
        "records_inserted": records["inserted"],
        "applications_created": created,
    }


def _demo_applications() -> list[tuple[str, str, str, int, str]]:
    return [
        ("a1", "stu-001", "limkokwing/ict/bsc-software-eng", 5, "accepted"),
        ("a2", "stu-001", "nul/science/bsc-computer-science", 3, "accepted"),
        ("a3", "stu-002", "nul/science/bsc-computer-science", 4, "accepted"),
        ("a4", "stu-002", "botho/business/bba-accounting", 4, "accepted"),
        ("a5", "stu-002", "limkokwing/ict/bsc-software-eng", 8, "waitlisted"),
        ("a6", "stu-003", "nul/health/bsc-nursing", 2, "accepted"),
        ("a7", "stu-004", "botho/business/bba-accounting", 6, "under_review"),
    ]


def _default_offerings_csv() -> str:
    return """institution_id,faculty_id,course_id,active,min_credits,description,subject_requirements_json,grade_scale
limkokwing,ict,bsc-software-eng,true,34,"Software engineering degree","{""Mathematics"":""B"",""English"":""C""}",IGCSE
nul,science,bsc-computer-science,true,38,"Computer science degree","{""Mathematics"":""A"",""Physics"":""C""}",IGCSE
nul,health,bsc-nursing,true,36,"Nursing degree","{""Biology"":""B"",""Chemistry"":""C"",""English"":""C""}",IGCSE
botho,business,bba-accounting,true,30,"Accounting degree","{""Mathematics"":""C""}",IGCSE
"""


def _default_records_csv() -> str:
    return """applicant_id,credits,passes,gpa,subjects_json
stu-001,42,6,3.5,"{""Mathematics"":""A"",""English"":""B"",""Physics"":""B"",""Biology"":""C"",""Chemistry"":""C""}"
stu-002,48,7,3.75,"{""Mathematics"":""A*"",""English"":""A"",""Physics"":""B"",""Accounting"":""A"",""Economics"":""B""}"
stu-003,36,5,3.0,"{""Biology"":""B"",""Chemistry"":""C"",""English"":""C"",""Mathematics"":""D"",""History"":""B""}"
stu-004,28,4,2.5,"{""Mathematics"":""C"",""English"":""D"",""Geography"":""C"",""History"":""E"",""French"":""D""}"
"""
