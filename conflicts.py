from __future__ import annotations

import logging
import threading
import weakref
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping

from errors import (
    AlreadyResolvedError,
    ConcurrentModificationError,
    InvalidSelectionError,
    PartialCommitError,
    StoreError,
)
from logic import score
from records import (
    AcademicRecord,
    Application,
    ApplicationStatus,
    ConflictRecord,
    IntegrityWarning,
    OfferingId,
    ResolutionResult,
    StatusTransition,
    can_transition,
)
from store import ApplicationStore

logger = logging.getLogger(__name__)

RESOLVED_REASON = "Conflict resolved in favour of {}"
SUPERSEDED_REASON = "Superseded by override in favour of {}"
FINAL_REASON = "Final acceptance: conflict resolved in favour of {}"


def _member_order(app: Application) -> tuple[datetime, OfferingId, str]:
    return app.submitted_at, app.offering_id, app.application_id


@dataclass(frozen=True)
class ConflictScan:
    conflicts: list[ConflictRecord]
    warnings: list[IntegrityWarning]


def scan_conflicts(
    applications: Iterable[Application],
    records: Mapping[str, AcademicRecord] | None = None,
) -> ConflictScan:
    """Group Accepted applications per (cycle, applicant) into conflicts.

    Duplicate acceptances of one offering count once and are reported as
    integrity warnings. Conflicts are ordered by priority score (highest
    first), then applicant id, then cycle id.
    """
    records = records or {}
    grouped: dict[tuple[str, str], list[Application]] = defaultdict(list)
    for app in applications:
        if app.is_accepted:
            grouped[(app.cycle_id, app.applicant_id)].append(app)

    conflicts: list[ConflictRecord] = []
    warnings: list[IntegrityWarning] = []
    for (cycle_id, applicant_id), accepted in grouped.items():
        by_offering: dict[OfferingId, list[Application]] = defaultdict(list)
        for app in accepted:
            by_offering[app.offering_id].append(app)

        members: list[Application] = []
        for offering_id, apps in by_offering.items():
            apps.sort(key=_member_order)
            if len(apps) > 1:
                warnings.append(
                    IntegrityWarning(
                        applicant_id=applicant_id,
                        cycle_id=cycle_id,
                        offering_id=offering_id,
                        application_ids=tuple(app.application_id for app in apps),
                        message=(
                            f"Applicant {applicant_id} holds {len(apps)} Accepted applications "
                            f"for the same offering {offering_id} in cycle {cycle_id}"
                        ),
                    )
                )
            members.append(apps[0])

        if len(members) < 2:
            continue

        members.sort(key=_member_order)
        record = records.get(applicant_id)
        conflicts.append(
            ConflictRecord(
                applicant_id=applicant_id,
                cycle_id=cycle_id,
                applications=tuple(members),
                priority_score=score(record) if record is not None else 0.0,
            )
        )

    conflicts.sort(key=lambda c: (-c.priority_score, c.applicant_id, c.cycle_id))
    warnings.sort(key=lambda w: (w.applicant_id, w.cycle_id, w.offering_id))
    return ConflictScan(conflicts=conflicts, warnings=warnings)


def detect_conflicts(
    applications: Iterable[Application],
    records: Mapping[str, AcademicRecord] | None = None,
) -> list[ConflictRecord]:
    scan = scan_conflicts(applications, records)
    for warning in scan.warnings:
        logger.warning("Data integrity: %s (applications %s)", warning.message, ", ".join(warning.application_ids))
    return scan.conflicts


def pick_auto_winner(conflict: ConflictRecord) -> Application:
    """Earliest submission wins; equal timestamps fall back to offering id, then application id."""
    if not conflict.applications:
        raise InvalidSelectionError(f"Conflict for applicant {conflict.applicant_id} has no applications")
    return min(conflict.applications, key=_member_order)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def rejected_by_resolution(app: Application) -> bool:
    """True when `app` was rejected by a conflict resolution rather than by the institution."""
    reason = app.resolution_reason or ""
    prefixes = (RESOLVED_REASON.format(""), SUPERSEDED_REASON.format(""))
    return app.status is ApplicationStatus.REJECTED and reason.startswith(prefixes)


class ConflictResolver:
    """Finalizes one acceptance of a conflict and rejects the others.

    Resolutions for the same applicant are serialised in-process. Across
    resolver instances and processes the store refuses a second final
    acceptance for the same applicant and cycle.
    """

    def __init__(self, store: ApplicationStore, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self._clock = clock or _utcnow
        # Entries disappear once no resolution holds the lock.
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, applicant_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(applicant_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[applicant_id] = lock
            return lock

    def resolve(
        self,
        conflict: ConflictRecord,
        winning_offering_id: OfferingId | str | None = None,
        override: bool = False,
    ) -> ResolutionResult:
        if winning_offering_id is None:
            return self.auto_resolve(conflict, override=override)

        offering_id = OfferingId.coerce(winning_offering_id)
        winner = conflict.member_for(offering_id)
        if winner is None:
            offered = ", ".join(str(o) for o in conflict.offering_ids)
            raise InvalidSelectionError(
                f"Offering {offering_id} is not part of the conflict for applicant "
                f"{conflict.applicant_id} (offerings: {offered})"
            )

        lock = self._lock_for(conflict.applicant_id)
        with lock:
            return self._resolve_locked(conflict, winner, override)

    def auto_resolve(self, conflict: ConflictRecord, override: bool = False) -> ResolutionResult:
        winner = pick_auto_winner(conflict)
        return self.resolve(conflict, winner.offering_id, override=override)

    def _resolve_locked(self, conflict: ConflictRecord, winner: Application, override: bool) -> ResolutionResult:
        for attempt in range(2):
            current = {app_id: self.store.get_application(app_id) for app_id in conflict.application_ids}
            transitions, rejected = self._plan(conflict, current, winner, override)

            if not transitions:
                winner_now = current[winner.application_id]
                logger.info(
                    "Conflict for applicant %s already resolved in favour of %s; nothing to do",
                    conflict.applicant_id,
                    winner.offering_id,
                )
                return ResolutionResult(
                    applicant_id=conflict.applicant_id,
                    cycle_id=conflict.cycle_id,
                    winning_application_id=winner.application_id,
                    winning_offering_id=winner.offering_id,
                    rejected_application_ids=tuple(rejected),
                    transitioned_application_ids=(),
                    already_resolved=True,
                    resolved_at=winner_now.resolved_at or self._clock(),
                )

            # Demotions and the winner go first and stop the run on failure;
            # loser rejections after them are attempted independently.
            head = 0
            for index, step in enumerate(transitions):
                if step.application_id == winner.application_id:
                    head = index + 1
                    break

            committed: list[str] = []
            try:
                for step in transitions[:head]:
                    self.store.apply_transition(step)
                    committed.append(step.application_id)
            except StoreError as exc:
                failed_id = transitions[len(committed)].application_id
                if committed:
                    raise PartialCommitError(
                        conflict.applicant_id, committed=committed, failed=[(failed_id, str(exc))]
                    ) from exc
                if isinstance(exc, ConcurrentModificationError) and attempt == 0:
                    logger.warning(
                        "Application %s changed while resolving applicant %s; re-reading",
                        failed_id,
                        conflict.applicant_id,
                    )
                    continue
                raise

            failed: list[tuple[str, str]] = []
            for step in transitions[head:]:
                try:
                    self.store.apply_transition(step)
                except StoreError as exc:
                    logger.warning(
                        "Transition of application %s to %s failed: %s",
                        step.application_id,
                        step.new_status.value,
                        exc,
                    )
                    failed.append((step.application_id, str(exc)))
                else:
                    committed.append(step.application_id)

            if failed:
                raise PartialCommitError(conflict.applicant_id, committed=committed, failed=failed)

            logger.info(
                "Resolved conflict for applicant %s in cycle %s: %s final, rejected %s",
                conflict.applicant_id,
                conflict.cycle_id,
                winner.offering_id,
                ", ".join(rejected) or "-",
            )
            return ResolutionResult(
                applicant_id=conflict.applicant_id,
                cycle_id=conflict.cycle_id,
                winning_application_id=winner.application_id,
                winning_offering_id=winner.offering_id,
                rejected_application_ids=tuple(rejected),
                transitioned_application_ids=tuple(committed),
                already_resolved=False,
                resolved_at=transitions[0].at,
            )

        # Unreachable: the second attempt either returns or raises.
        raise ConcurrentModificationError(f"Applications of applicant {conflict.applicant_id} kept changing")

    def _plan(
        self,
        conflict: ConflictRecord,
        current: dict[str, Application],
        winner: Application,
        override: bool,
    ) -> tuple[list[StatusTransition], list[str]]:
        """Return the outstanding transitions and the ids that end up Rejected.

        Order: demotions of a previous final winner, then the winner, then the
        remaining losers.
        """
        winner_now = current[winner.application_id]
        others = [current[app_id] for app_id in conflict.application_ids if app_id != winner.application_id]
        previous_finals = [app for app in others if app.is_accepted and app.is_final]

        if previous_finals and not override:
            previous = previous_finals[0]
            raise AlreadyResolvedError(conflict.applicant_id, previous.application_id, str(previous.offering_id))
        if not winner_now.is_accepted:
            if not override:
                raise InvalidSelectionError(
                    f"Application {winner_now.application_id} for {winner_now.offering_id} is no longer Accepted "
                    f"(now {winner_now.status.value})"
                )
            if not rejected_by_resolution(winner_now):
                raise InvalidSelectionError(
                    f"Application {winner_now.application_id} for {winner_now.offering_id} is "
                    f"{winner_now.status.value} outside conflict resolution and cannot be revived by an override"
                )

        now = self._clock()
        demotions: list[StatusTransition] = []
        rejections: list[StatusTransition] = []
        rejected: list[str] = []

        for app in others:
            if app.status is ApplicationStatus.REJECTED:
                rejected.append(app.application_id)
                continue
            if app.is_accepted and app.is_final:
                bucket, reason = demotions, SUPERSEDED_REASON.format(winner.offering_id)
            elif app.is_accepted and can_transition(app.status, ApplicationStatus.REJECTED):
                bucket, reason = rejections, RESOLVED_REASON.format(winner.offering_id)
            else:
                logger.warning(
                    "Skipping application %s of applicant %s: status %s is not part of the conflict anymore",
                    app.application_id,
                    conflict.applicant_id,
                    app.status.value,
                )
                continue
            bucket.append(
                StatusTransition(
                    application_id=app.application_id,
                    expected_status=app.status,
                    expected_final=app.is_final,
                    new_status=ApplicationStatus.REJECTED,
                    new_final=False,
                    reason=reason,
                    at=now,
                )
            )
            rejected.append(app.application_id)

        transitions = list(demotions)
        if not (winner_now.is_accepted and winner_now.is_final):
            transitions.append(
                StatusTransition(
                    application_id=winner_now.application_id,
                    expected_status=winner_now.status,
                    expected_final=winner_now.is_final,
                    new_status=ApplicationStatus.ACCEPTED,
                    new_final=True,
                    reason=FINAL_REASON.format(winner.offering_id),
                    at=now,
                )
            )
        transitions.extend(rejections)
        return transitions, rejected
