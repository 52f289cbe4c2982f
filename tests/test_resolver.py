import threading

import pytest

from builders import FIXED_NOW, accepted
from conflicts import ConflictResolver, detect_conflicts
from errors import (
    AlreadyResolvedError,
    ConcurrentModificationError,
    InvalidSelectionError,
    PartialCommitError,
    StoreError,
)
from records import ApplicationStatus, ResolutionResult, StatusTransition
from store import InMemoryApplicationStore

CYCLE = "2026-main"
CS = "inst-1/science/cs"
BCOM = "inst-2/business/bcom"
BA = "inst-3/arts/ba"


class FlakyStore(InMemoryApplicationStore):
    def __init__(self, applications, fail_ids=()) -> None:
        super().__init__(applications)
        self.fail_ids = set(fail_ids)

    def apply_transition(self, transition):
        if transition.application_id in self.fail_ids:
            raise StoreError("database unavailable")
        return super().apply_transition(transition)


def two_offers():
    return [accepted("app-1", "stu-x", CS, day=3), accepted("app-2", "stu-x", BCOM, day=1)]


def three_offers():
    return [
        accepted("a1", "stu-y", CS, day=1),
        accepted("a2", "stu-y", BCOM, day=2),
        accepted("a3", "stu-y", BA, day=3),
    ]


def resolver_case(applications, clock, store_cls=InMemoryApplicationStore, **store_kwargs):
    store = store_cls(applications, **store_kwargs)
    resolver = ConflictResolver(store, clock=clock)
    conflict = detect_conflicts(store.list_applications(CYCLE))[0]
    return store, resolver, conflict


def test_resolve_finalizes_winner_and_rejects_the_rest(clock) -> None:
    store, resolver, conflict = resolver_case(two_offers(), clock)

    result = resolver.resolve(conflict, CS)

    winner = store.get_application("app-1")
    loser = store.get_application("app-2")
    assert winner.status is ApplicationStatus.ACCEPTED and winner.is_final is True
    assert loser.status is ApplicationStatus.REJECTED and loser.is_final is False
    assert loser.resolution_reason == f"Conflict resolved in favour of {CS}"
    assert loser.resolved_at == FIXED_NOW
    assert result.winning_application_id == "app-1"
    assert result.rejected_application_ids == ("app-2",)
    assert result.transitioned_application_ids == ("app-1", "app-2")
    assert result.already_resolved is False
    assert result.resolved_at == FIXED_NOW


def test_resolving_again_with_the_same_winner_is_a_no_op(clock) -> None:
    store, resolver, conflict = resolver_case(two_offers(), clock)
    resolver.resolve(conflict, CS)
    snapshot = store.list_applications(CYCLE)

    result = resolver.resolve(conflict, CS)

    assert result.already_resolved is True
    assert result.transitioned_application_ids == ()
    assert result.rejected_application_ids == ("app-2",)
    assert result.resolved_at == FIXED_NOW
    assert store.list_applications(CYCLE) == snapshot
    assert len(store.transitions) == 2


def test_winner_outside_the_conflict_changes_nothing(clock) -> None:
    store, resolver, conflict = resolver_case(two_offers(), clock)

    with pytest.raises(InvalidSelectionError):
        resolver.resolve(conflict, BA)

    assert store.transitions == []
    assert all(not app.is_final for app in store.list_applications(CYCLE))


def test_different_winner_after_resolution_requires_override(clock) -> None:
    store, resolver, conflict = resolver_case(two_offers(), clock)
    resolver.resolve(conflict, CS)

    with pytest.raises(AlreadyResolvedError) as excinfo:
        resolver.resolve(conflict, BCOM)

    assert excinfo.value.final_application_id == "app-1"
    assert store.get_application("app-1").is_final is True


def test_override_moves_the_final_acceptance(clock) -> None:
    store, resolver, conflict = resolver_case(two_offers(), clock)
    resolver.resolve(conflict, CS)

    result = resolver.resolve(conflict, BCOM, override=True)

    new_winner = store.get_application("app-2")
    old_winner = store.get_application("app-1")
    assert new_winner.status is ApplicationStatus.ACCEPTED and new_winner.is_final is True
    assert old_winner.status is ApplicationStatus.REJECTED and old_winner.is_final is False
    assert old_winner.resolution_reason == f"Superseded by override in favour of {BCOM}"
    assert result.transitioned_application_ids == ("app-1", "app-2")
    assert sum(app.is_final for app in store.list_applications(CYCLE)) == 1


def test_auto_resolve_picks_the_earliest_submission(clock) -> None:
    store, resolver, conflict = resolver_case(two_offers(), clock)

    result = resolver.auto_resolve(conflict)

    assert str(result.winning_offering_id) == BCOM
    assert store.get_application("app-2").is_final is True
    assert store.get_application("app-1").status is ApplicationStatus.REJECTED


def test_resolve_without_winner_falls_back_to_auto_resolve(clock) -> None:
    store, resolver, conflict = resolver_case(two_offers(), clock)

    assert resolver.resolve(conflict).winning_application_id == "app-2"


def test_auto_resolve_breaks_timestamp_ties_by_offering_id(clock) -> None:
    apps = [accepted("t1", "stu-z", "inst-b/science/cs", day=2), accepted("t2", "stu-z", "inst-a/arts/ba", day=2)]
    store, resolver, conflict = resolver_case(apps, clock)

    first = resolver.auto_resolve(conflict)
    second = resolver.auto_resolve(conflict)

    assert first.winning_application_id == "t2"
    assert second.winning_application_id == "t2"
    assert second.already_resolved is True


def test_partial_failure_reports_committed_and_failed_transitions(clock) -> None:
    store, resolver, conflict = resolver_case(three_offers(), clock, store_cls=FlakyStore, fail_ids={"a3"})

    with pytest.raises(PartialCommitError) as excinfo:
        resolver.resolve(conflict, CS)

    assert excinfo.value.committed == ["a1", "a2"]
    assert excinfo.value.failed == [("a3", "database unavailable")]
    assert store.get_application("a3").status is ApplicationStatus.ACCEPTED


def test_retry_after_partial_failure_completes_only_outstanding_work(clock) -> None:
    store, resolver, conflict = resolver_case(three_offers(), clock, store_cls=FlakyStore, fail_ids={"a3"})
    with pytest.raises(PartialCommitError):
        resolver.resolve(conflict, CS)
    store.fail_ids.clear()

    result = resolver.resolve(conflict, CS)

    assert result.already_resolved is False
    assert result.transitioned_application_ids == ("a3",)
    assert result.rejected_application_ids == ("a2", "a3")
    assert store.get_application("a3").status is ApplicationStatus.REJECTED
    assert len(store.transitions) == 3


def test_failure_on_the_winner_commits_nothing(clock) -> None:
    store, resolver, conflict = resolver_case(three_offers(), clock, store_cls=FlakyStore, fail_ids={"a1"})

    with pytest.raises(StoreError, match="database unavailable"):
        resolver.resolve(conflict, CS)

    assert store.transitions == []


def test_winner_that_lost_its_acceptance_is_rejected_as_a_selection(clock) -> None:
    store, resolver, conflict = resolver_case(two_offers(), clock)
    store.apply_transition(
        StatusTransition(
            application_id="app-1",
            expected_status=ApplicationStatus.ACCEPTED,
            expected_final=False,
            new_status=ApplicationStatus.REJECTED,
            new_final=False,
            reason="Offer withdrawn by institution",
            at=FIXED_NOW,
        )
    )

    with pytest.raises(InvalidSelectionError):
        resolver.resolve(conflict, CS)

    assert store.get_application("app-2").status is ApplicationStatus.ACCEPTED
    assert len(store.transitions) == 1


def test_concurrent_resolutions_finalize_exactly_one_offering(clock) -> None:
    store, resolver, conflict = resolver_case(two_offers(), clock)
    barrier = threading.Barrier(2)
    outcomes = []

    def worker(code: str) -> None:
        barrier.wait()
        try:
            outcomes.append(resolver.resolve(conflict, code))
        except AlreadyResolvedError as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=worker, args=(code,)) for code in (CS, BCOM)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(isinstance(outcome, ResolutionResult) for outcome in outcomes) == 1
    assert sum(isinstance(outcome, AlreadyResolvedError) for outcome in outcomes) == 1
    finals = [app for app in store.list_applications(CYCLE) if app.is_final]
    assert len(finals) == 1


class RendezvousStore(InMemoryApplicationStore):
    """Holds each thread's first write until every party has planned its resolution."""

    def __init__(self, applications, parties: int) -> None:
        super().__init__(applications)
        self.barrier = threading.Barrier(parties, timeout=5)
        self._seen = threading.local()

    def apply_transition(self, transition):
        if not getattr(self._seen, "waited", False):
            self._seen.waited = True
            self.barrier.wait()
        return super().apply_transition(transition)


def test_separate_resolvers_sharing_a_store_finalize_exactly_one_offering(clock) -> None:
    store = RendezvousStore(two_offers(), parties=2)
    conflict = detect_conflicts(store.list_applications(CYCLE))[0]
    resolvers = [ConflictResolver(store, clock=clock), ConflictResolver(store, clock=clock)]
    outcomes = []

    def worker(resolver: ConflictResolver, code: str) -> None:
        try:
            outcomes.append(resolver.resolve(conflict, code))
        except AlreadyResolvedError as exc:
            outcomes.append(exc)

    threads = [
        threading.Thread(target=worker, args=(resolver, code)) for resolver, code in zip(resolvers, (CS, BCOM))
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(isinstance(outcome, ResolutionResult) for outcome in outcomes) == 1
    assert sum(isinstance(outcome, AlreadyResolvedError) for outcome in outcomes) == 1
    finals = [app for app in store.list_applications(CYCLE) if app.is_final]
    assert len(finals) == 1
    others = [app for app in store.list_applications(CYCLE) if not app.is_final]
    assert [app.status for app in others] == [ApplicationStatus.REJECTED]


def test_store_refuses_a_second_final_acceptance(clock) -> None:
    store, resolver, conflict = resolver_case(two_offers(), clock)
    resolver.resolve(conflict, CS)
    revive = StatusTransition(
        application_id="app-2",
        expected_status=ApplicationStatus.REJECTED,
        expected_final=False,
        new_status=ApplicationStatus.ACCEPTED,
        new_final=True,
        reason="manual edit",
        at=FIXED_NOW,
    )

    with pytest.raises(ConcurrentModificationError):
        store.apply_transition(revive)

    assert store.get_application("app-2").status is ApplicationStatus.REJECTED


def withdraw(store: InMemoryApplicationStore, app_id: str) -> None:
    store.apply_transition(
        StatusTransition(
            application_id=app_id,
            expected_status=ApplicationStatus.ACCEPTED,
            expected_final=False,
            new_status=ApplicationStatus.REJECTED,
            new_final=False,
            reason="Offer withdrawn by institution",
            at=FIXED_NOW,
        )
    )


def test_override_cannot_revive_an_offer_the_institution_withdrew(clock) -> None:
    store, resolver, conflict = resolver_case(two_offers(), clock)
    withdraw(store, "app-1")

    with pytest.raises(InvalidSelectionError):
        resolver.resolve(conflict, CS, override=True)

    app = store.get_application("app-1")
    assert app.status is ApplicationStatus.REJECTED
    assert app.resolution_reason == "Offer withdrawn by institution"
    assert store.get_application("app-2").is_final is False
    assert len(store.transitions) == 1


def test_override_cannot_finalize_a_waitlisted_winner(clock) -> None:
    store, resolver, conflict = resolver_case(two_offers(), clock)
    store.apply_transition(
        StatusTransition(
            application_id="app-1",
            expected_status=ApplicationStatus.ACCEPTED,
            expected_final=False,
            new_status=ApplicationStatus.WAITLISTED,
            new_final=False,
            reason="Moved to waitlist",
            at=FIXED_NOW,
        )
    )

    with pytest.raises(InvalidSelectionError):
        resolver.resolve(conflict, CS, override=True)

    assert store.get_application("app-1").status is ApplicationStatus.WAITLISTED


def test_retry_after_failed_override_completes_the_switch(clock) -> None:
    store, resolver, conflict = resolver_case(two_offers(), clock, store_cls=FlakyStore)
    resolver.resolve(conflict, CS)
    store.fail_ids.add("app-2")

    with pytest.raises(PartialCommitError) as excinfo:
        resolver.resolve(conflict, BCOM, override=True)

    assert excinfo.value.committed == ["app-1"]
    assert excinfo.value.failed[0][0] == "app-2"
    store.fail_ids.clear()

    result = resolver.resolve(conflict, BCOM, override=True)

    assert result.transitioned_application_ids == ("app-2",)
    assert store.get_application("app-2").is_final is True
    assert store.get_application("app-1").status is ApplicationStatus.REJECTED


def test_resolver_drops_applicant_locks_when_idle(clock) -> None:
    store, resolver, conflict = resolver_case(two_offers(), clock)

    resolver.resolve(conflict, CS)

    assert len(resolver._locks) == 0
