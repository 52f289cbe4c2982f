from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from conflicts import ConflictResolver, ConflictScan, scan_conflicts
from errors import RecordNotFoundError
from logic import evaluate
from records import (
    AcademicRecord,
    Application,
    ApplicationStatus,
    ConflictRecord,
    EligibilityVerdict,
    OfferingId,
    ResolutionResult,
)
from store import (
    AcademicRecordProvider,
    ApplicationStore,
    NotificationDispatcher,
    OfferingRequirementProvider,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionOutcome:
    verdict: EligibilityVerdict
    application: Application | None

    @property
    def accepted_for_review(self) -> bool:
        return self.application is not None


class LoggingNotificationDispatcher:
    def dispatch(self, result: ResolutionResult) -> None:
        logger.info(
            "Notify applicant %s: %s is final; rejected %s",
            result.applicant_id,
            result.winning_offering_id,
            ", ".join(result.rejected_application_ids) or "-",
        )


class AdmissionsService:
    """Wires the pure evaluator/detector to the stores and the resolver."""

    def __init__(
        self,
        store: ApplicationStore,
        records: AcademicRecordProvider,
        requirements: OfferingRequirementProvider,
        notifier: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.records = records
        self.requirements = requirements
        self.notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.resolver = ConflictResolver(store, clock=self._clock)

    def check_eligibility(self, applicant_id: str, offering_id: OfferingId | str) -> EligibilityVerdict:
        record = self.records.get_academic_record(applicant_id)
        requirement = self.requirements.get_offering_requirement(OfferingId.coerce(offering_id))
        return evaluate(record, requirement)

    def submit_application(
        self,
        applicant_id: str,
        offering_id: OfferingId | str,
        cycle_id: str,
        application_id: str | None = None,
    ) -> SubmissionOutcome:
        """Gate a submission on eligibility; no row is created for an ineligible applicant."""
        offering = OfferingId.coerce(offering_id)
        verdict = self.check_eligibility(applicant_id, offering)
        if not verdict.is_eligible:
            logger.info(
                "Submission blocked for applicant %s to %s: %s",
                applicant_id,
                offering,
                "; ".join(verdict.missing_requirements),
            )
            return SubmissionOutcome(verdict=verdict, application=None)

        application = self.store.add_application(
            Application(
                application_id=application_id or str(uuid.uuid4()),
                applicant_id=applicant_id,
                offering_id=offering,
                cycle_id=cycle_id,
                submitted_at=self._clock(),
                status=ApplicationStatus.PENDING,
                eligible_at_submission=True,
            )
        )
        return SubmissionOutcome(verdict=verdict, application=application)

    def _records_for(self, applications: list[Application]) -> dict[str, AcademicRecord]:
        applicant_ids = sorted({app.applicant_id for app in applications if app.is_accepted})
        list_records = getattr(self.records, "list_academic_records", None)
        if list_records is not None:
            records = dict(list_records(applicant_ids))
        else:
            records = {}
            for applicant_id in applicant_ids:
                try:
                    records[applicant_id] = self.records.get_academic_record(applicant_id)
                except RecordNotFoundError:
                    continue  # reported below
        for applicant_id in applicant_ids:
            if applicant_id not in records:
                logger.warning("No academic record for applicant %s; priority score defaults to 0", applicant_id)
        return records

    def scan_cycle(self, cycle_id: str) -> ConflictScan:
        applications = self.store.list_applications(cycle_id)
        scan = scan_conflicts(applications, self._records_for(applications))
        for warning in scan.warnings:
            logger.warning("Data integrity: %s", warning.message)
        return scan

    def conflicts_for_cycle(self, cycle_id: str) -> list[ConflictRecord]:
        return self.scan_cycle(cycle_id).conflicts

    def resolve(
        self,
        conflict: ConflictRecord,
        winning_offering_id: OfferingId | str | None = None,
        override: bool = False,
    ) -> ResolutionResult:
        result = self.resolver.resolve(conflict, winning_offering_id, override=override)
        if self.notifier is not None and not result.already_resolved:
            self.notifier.dispatch(result)
        return result
