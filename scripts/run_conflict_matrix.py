from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import get_settings
from conflicts import ConflictResolver, scan_conflicts
from errors import AdmissionsError
from logging_config import configure_logging
from logic import evaluate, score
from records import AcademicRecord, Application, ApplicationStatus, OfferingId, OfferingRequirement
from store import InMemoryApplicationStore


def scenario_records() -> list[AcademicRecord]:
    return [
        AcademicRecord("stu-a", credits=120, passes=6, gpa=3.5, subjects={"Mathematics": "A", "English": "B"}),
        AcademicRecord("stu-b", credits=80),
        AcademicRecord("stu-c", credits=95, passes=5, gpa=3.9, subjects={"Mathematics": "C"}),
    ]


def scenario_requirements() -> list[OfferingRequirement]:
    return [
        OfferingRequirement(OfferingId("inst-1", "science", "cs"), min_credits=100, subject_requirements={"Mathematics": "B"}),
        OfferingRequirement(OfferingId("inst-2", "business", "bcom"), min_credits=90),
        OfferingRequirement(OfferingId("inst-3", "arts", "ba"), min_credits=60),
    ]


def scenario_applications(cycle_id: str) -> list[Application]:
    def at(day: int) -> datetime:
        return datetime(2026, 1, day, 9, 0, tzinfo=timezone.utc)

    accepted = ApplicationStatus.ACCEPTED
    return [
        Application("app-1", "stu-a", OfferingId("inst-1", "science", "cs"), cycle_id, at(3), accepted),
        Application("app-2", "stu-a", OfferingId("inst-2", "business", "bcom"), cycle_id, at(1), accepted),
        Application("app-3", "stu-c", OfferingId("inst-2", "business", "bcom"), cycle_id, at(2), accepted),
        Application("app-4", "stu-c", OfferingId("inst-3", "arts", "ba"), cycle_id, at(2), accepted),
        Application("app-5", "stu-b", OfferingId("inst-3", "arts", "ba"), cycle_id, at(4), accepted),
    ]


def main() -> None:
    parser = argparse.ArgumentParser(description="Run eligibility and auto-resolution over sample scenarios.")
    parser.add_argument("--cycle", default="2026-main")
    args = parser.parse_args()

    configure_logging(get_settings().log_level)

    records = {record.applicant_id: record for record in scenario_records()}
    print("=== Eligibility ===")
    for record in records.values():
        for requirement in scenario_requirements():
            verdict = evaluate(record, requirement)
            outcome = "ELIGIBLE" if verdict.is_eligible else "BLOCKED"
            print(f"{record.applicant_id} -> {requirement.offering_id}: {outcome} {list(verdict.missing_requirements)}")

    store = InMemoryApplicationStore(scenario_applications(args.cycle))
    scan = scan_conflicts(store.list_applications(args.cycle), records)
    resolver = ConflictResolver(store)

    print("\n=== Conflicts (auto-resolve) ===")
    for conflict in scan.conflicts:
        print(f"{conflict.applicant_id} priority={score(records[conflict.applicant_id]):g}")
        try:
            result = resolver.auto_resolve(conflict)
        except AdmissionsError as exc:
            print(f"  FAILED: {exc}")
            continue
        print(f"  final: {result.winning_offering_id}; rejected: {', '.join(result.rejected_application_ids)}")


if __name__ == "__main__":
    main()
