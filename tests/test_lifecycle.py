import pytest

from campusvote.lifecycle import (
    DELETABLE_STATUSES, TRANSITIONS, ElectionStatus, accepts_ballots, can_transition,
    is_editable,
)

S = ElectionStatus


@pytest.mark.parametrize("current,target", [
    (S.DRAFT, S.SCHEDULED),
    (S.DRAFT, S.VOTING_OPEN),
    (S.SCHEDULED, S.DRAFT),
    (S.CAMPAIGN, S.VOTING_OPEN),
    (S.VOTING_OPEN, S.PAUSED),
    (S.PAUSED, S.VOTING_OPEN),
    (S.PAUSED, S.VOTING_CLOSED),
    (S.VOTING_CLOSED, S.RESULTS_PUBLISHED),
])
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize("current,target", [
    (S.DRAFT, S.DRAFT),
    (S.DRAFT, S.VOTING_CLOSED),
    (S.VOTING_OPEN, S.DRAFT),
    (S.VOTING_CLOSED, S.VOTING_OPEN),
    (S.RESULTS_PUBLISHED, S.VOTING_OPEN),
    (S.RESULTS_PUBLISHED, S.DRAFT),
])
def test_rejected_transitions(current, target):
    assert not can_transition(current, target)


def test_every_status_has_a_transition_entry():
    assert set(TRANSITIONS) == set(ElectionStatus)
    assert TRANSITIONS[S.RESULTS_PUBLISHED] == frozenset()


def test_string_statuses_are_accepted():
    assert can_transition("voting_open", S.PAUSED)
    assert accepts_ballots("voting_open")
    assert not accepts_ballots("paused")


def test_editable_and_deletable_statuses():
    assert is_editable(S.PAUSED)
    assert not is_editable(S.VOTING_OPEN)
    assert not is_editable(S.RESULTS_PUBLISHED)
    # once voting has started ballots may exist, so deletion is off the table
    assert S.PAUSED not in DELETABLE_STATUSES
    assert S.VOTING_OPEN not in DELETABLE_STATUSES


def test_only_voting_open_accepts_ballots():
    assert [s for s in ElectionStatus if accepts_ballots(s)] == [S.VOTING_OPEN]
