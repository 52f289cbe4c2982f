from __future__ import annotations

from typing import Sequence


class AdmissionsError(Exception):
    """Base class for every error raised by the admissions core."""


class ValidationError(AdmissionsError, ValueError):
    """Malformed input to the evaluator, scorer or a domain record."""


class InvalidSelectionError(AdmissionsError):
    """The chosen winner is not (or no longer) a member of the conflict."""


class AlreadyResolvedError(AdmissionsError):
    def __init__(self, applicant_id: str, final_application_id: str, final_offering: str) -> None:
        self.applicant_id = applicant_id
        self.final_application_id = final_application_id
        self.final_offering = final_offering
        super().__init__(
            f"Conflict for applicant {applicant_id} is already resolved in favour of "
            f"{final_offering} (application {final_application_id}); pass override=True to change it."
        )


class PartialCommitError(AdmissionsError):
    """Some, but not all, status transitions of a resolution were committed.

    `committed` lists application ids whose transition was applied.
    `failed` lists `(application_id, reason)` pairs that were not. Retrying the
    same resolution only re-attempts what is still outstanding.
    """

    def __init__(
        self,
        applicant_id: str,
        committed: Sequence[str],
        failed: Sequence[tuple[str, str]],
    ) -> None:
        self.applicant_id = applicant_id
        self.committed = list(committed)
        self.failed = list(failed)
        failed_ids = ", ".join(app_id for app_id, _ in self.failed)
        super().__init__(
            f"Resolution for applicant {applicant_id} partially committed: "
            f"{len(self.committed)} applied, {len(self.failed)} failed ({failed_ids})."
        )


class StoreError(AdmissionsError):
    """Typed failure reported by an application store."""


class ApplicationNotFoundError(StoreError):
    pass


class ConcurrentModificationError(StoreError):
    """The row no longer holds the state the transition expected."""


class DuplicateApplicationError(StoreError):
    pass


class RecordNotFoundError(StoreError):
    """No academic record or offering requirement exists for the given id."""
