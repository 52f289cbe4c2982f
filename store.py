from __future__ import annotations

import threading
from typing import Iterable, Protocol

from errors import (
    ApplicationNotFoundError,
    ConcurrentModificationError,
    DuplicateApplicationError,
    RecordNotFoundError,
)
from records import (
    AcademicRecord,
    Application,
    OfferingId,
    OfferingRequirement,
    ResolutionResult,
    StatusTransition,
)


class ApplicationStore(Protocol):
    def list_applications(self, cycle_id: str) -> list[Application]: ...

    def get_application(self, application_id: str) -> Application: ...

    def apply_transition(self, transition: StatusTransition) -> Application:
        """Apply one compare-and-swap status change; raise a StoreError subclass on failure."""
        ...

    def add_application(self, application: Application) -> Application: ...


class AcademicRecordProvider(Protocol):
    def get_academic_record(self, applicant_id: str) -> AcademicRecord: ...


class OfferingRequirementProvider(Protocol):
    def get_offering_requirement(self, offering_id: OfferingId) -> OfferingRequirement: ...


class NotificationDispatcher(Protocol):
    def dispatch(self, result: ResolutionResult) -> None: ...


class InMemoryApplicationStore:
    """Thread-safe application store holding rows in a dict.

    Transitions follow the same compare-and-swap contract as the SQL store,
    including the single-final-acceptance guard per applicant and cycle. Every
    applied transition is appended to `transitions`.
    """

    def __init__(self, applications: Iterable[Application] = ()) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, Application] = {}
        self.transitions: list[StatusTransition] = []
        for app in applications:
            self.add_application(app)

    def add_application(self, application: Application) -> Application:
        with self._lock:
            if application.application_id in self._rows:
                raise DuplicateApplicationError(f"Application {application.application_id} already exists")
            for row in self._rows.values():
                if (
                    row.applicant_id == application.applicant_id
                    and row.offering_id == application.offering_id
                    and row.cycle_id == application.cycle_id
                ):
                    raise DuplicateApplicationError(
                        f"Applicant {application.applicant_id} already applied to "
                        f"{application.offering_id} in cycle {application.cycle_id}"
                    )
            self._rows[application.application_id] = application
            return application

    def list_applications(self, cycle_id: str) -> list[Application]:
        with self._lock:
            return [row for row in self._rows.values() if row.cycle_id == cycle_id]

    def get_application(self, application_id: str) -> Application:
        with self._lock:
            row = self._rows.get(application_id)
        if row is None:
            raise ApplicationNotFoundError(f"Application {application_id} not found")
        return row

    def apply_transition(self, transition: StatusTransition) -> Application:
        with self._lock:
            row = self._rows.get(transition.application_id)
            if row is None:
                raise ApplicationNotFoundError(f"Application {transition.application_id} not found")
            if row.status is not transition.expected_status or row.is_final != transition.expected_final:
                raise ConcurrentModificationError(
                    f"Application {row.application_id} is {row.status.value}"
                    f"{' (final)' if row.is_final else ''}, expected {transition.expected_status.value}"
                    f"{' (final)' if transition.expected_final else ''}"
                )
            if transition.new_final and not row.is_final:
                for other in self._rows.values():
                    if (
                        other.is_final
                        and other.application_id != row.application_id
                        and other.applicant_id == row.applicant_id
                        and other.cycle_id == row.cycle_id
                    ):
                        raise ConcurrentModificationError(
                            f"Applicant {row.applicant_id} already holds a final acceptance "
                            f"({other.application_id}) in cycle {row.cycle_id}"
                        )
            updated = row.with_changes(
                status=transition.new_status,
                is_final=transition.new_final,
                resolution_reason=transition.reason,
                resolved_at=transition.at,
            )
            self._rows[row.application_id] = updated
            self.transitions.append(transition)
            return updated


class InMemoryAcademicRecordProvider:
    def __init__(self, records: Iterable[AcademicRecord] = ()) -> None:
        self._records = {record.applicant_id: record for record in records}

    def get_academic_record(self, applicant_id: str) -> AcademicRecord:
        record = self._records.get(applicant_id)
        if record is None:
            raise RecordNotFoundError(f"No academic record for applicant {applicant_id}")
        return record

    def list_academic_records(self, applicant_ids: Iterable[str]) -> dict[str, AcademicRecord]:
        return {applicant_id: self._records[applicant_id] for applicant_id in applicant_ids if applicant_id in self._records}


class InMemoryOfferingRequirementProvider:
    def __init__(self, requirements: Iterable[OfferingRequirement] = ()) -> None:
        self._requirements = {requirement.offering_id: requirement for requirement in requirements}

    def get_offering_requirement(self, offering_id: OfferingId) -> OfferingRequirement:
        requirement = self._requirements.get(offering_id)
        if requirement is None:
            raise RecordNotFoundError(f"No requirement defined for offering {offering_id}")
        return requirement
