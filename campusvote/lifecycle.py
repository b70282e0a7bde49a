"""
Election lifecycle state machine.

    draft -> scheduled / campaign -> voting_open <-> paused -> voting_closed
          -> results_published (terminal)
"""
from __future__ import annotations

from enum import Enum


class ElectionStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    CAMPAIGN = "campaign"
    VOTING_OPEN = "voting_open"
    PAUSED = "paused"
    VOTING_CLOSED = "voting_closed"
    RESULTS_PUBLISHED = "results_published"


TRANSITIONS: dict[ElectionStatus, frozenset[ElectionStatus]] = {
    ElectionStatus.DRAFT: frozenset({
        ElectionStatus.SCHEDULED, ElectionStatus.CAMPAIGN, ElectionStatus.VOTING_OPEN,
    }),
    ElectionStatus.SCHEDULED: frozenset({
        ElectionStatus.DRAFT, ElectionStatus.CAMPAIGN, ElectionStatus.VOTING_OPEN,
    }),
    ElectionStatus.CAMPAIGN: frozenset({
        ElectionStatus.SCHEDULED, ElectionStatus.VOTING_OPEN,
    }),
    ElectionStatus.VOTING_OPEN: frozenset({
        ElectionStatus.PAUSED, ElectionStatus.VOTING_CLOSED,
    }),
    ElectionStatus.PAUSED: frozenset({
        ElectionStatus.VOTING_OPEN, ElectionStatus.VOTING_CLOSED,
    }),
    ElectionStatus.VOTING_CLOSED: frozenset({
        ElectionStatus.RESULTS_PUBLISHED,
    }),
    ElectionStatus.RESULTS_PUBLISHED: frozenset(),
}

# Lists and candidates may be edited structurally in these statuses.
EDITABLE_STATUSES = frozenset({
    ElectionStatus.DRAFT,
    ElectionStatus.SCHEDULED,
    ElectionStatus.CAMPAIGN,
    ElectionStatus.PAUSED,
})

# No ballot can exist yet, so the election may still be deleted.
DELETABLE_STATUSES = frozenset({
    ElectionStatus.DRAFT,
    ElectionStatus.SCHEDULED,
    ElectionStatus.CAMPAIGN,
})

RESULTS_VISIBLE_STATUSES = frozenset({
    ElectionStatus.VOTING_OPEN,
    ElectionStatus.PAUSED,
    ElectionStatus.VOTING_CLOSED,
    ElectionStatus.RESULTS_PUBLISHED,
})


def can_transition(current: ElectionStatus, target: ElectionStatus) -> bool:
    return target in TRANSITIONS[ElectionStatus(current)]


def is_editable(status: ElectionStatus) -> bool:
    return ElectionStatus(status) in EDITABLE_STATUSES


def accepts_ballots(status: ElectionStatus) -> bool:
    return ElectionStatus(status) is ElectionStatus.VOTING_OPEN
