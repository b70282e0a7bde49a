"""
Row-level authorization policies.

Every read or write performed by a procedure is checked here first, keyed on
(resource, action) and evaluated against the caller's session and, where
ownership matters, the row itself. These checks apply on top of any
transport-level checks, so a misbehaving client cannot bypass them.

A (resource, action) pair with no entry is denied. Ballots have no UPDATE or
DELETE entry, so once inserted a ballot cannot be changed or removed through
the normal interface.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from typing import Any

from .errors import NotAuthenticated, Unauthorized
from .lifecycle import ElectionStatus
from .security import Role, Session

audit_logger = logging.getLogger("campusvote.audit")


class Resource(str, Enum):
    ELECTION = "election"
    CANDIDATE_LIST = "candidate_list"
    CANDIDATE = "candidate"
    BALLOT = "ballot"


class Action(str, Enum):
    READ = "read"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


Row = Mapping[str, Any]
Rule = Callable[[Session, Row | None], bool]


def _sees_every_ballot(role: Role) -> bool:
    match role:
        case Role.ADMINISTRATOR | Role.ELECTORAL_COMMITTEE:
            return True
        case Role.STUDENT:
            return False


def _manages_elections(role: Role) -> bool:
    match role:
        case Role.ADMINISTRATOR:
            return True
        case Role.ELECTORAL_COMMITTEE | Role.STUDENT:
            return False


def authenticated(session: Session, row: Row | None) -> bool:
    return True


def administrator(session: Session, row: Row | None) -> bool:
    return any(_manages_elections(role) for role in session.roles)


def ballot_reader(session: Session, row: Row | None) -> bool:
    if row is not None and row.get("voter_id") == session.user_id:
        return True
    return any(_sees_every_ballot(role) for role in session.roles)


def ballot_inserter(session: Session, row: Row | None) -> bool:
    """Caller votes as themselves, while voting is open, for a list of that election."""
    if row is None:
        return False
    return (
        row.get("voter_id") == session.user_id
        and row.get("election_status") == ElectionStatus.VOTING_OPEN
        and row.get("list_election_id") is not None
        and row.get("list_election_id") == row.get("election_id")
    )


POLICIES: dict[tuple[Resource, Action], Rule] = {
    (Resource.ELECTION, Action.READ): authenticated,
    (Resource.ELECTION, Action.INSERT): administrator,
    (Resource.ELECTION, Action.UPDATE): administrator,
    (Resource.ELECTION, Action.DELETE): administrator,

    (Resource.CANDIDATE_LIST, Action.READ): authenticated,
    (Resource.CANDIDATE_LIST, Action.INSERT): administrator,
    (Resource.CANDIDATE_LIST, Action.UPDATE): administrator,
    (Resource.CANDIDATE_LIST, Action.DELETE): administrator,

    (Resource.CANDIDATE, Action.READ): authenticated,
    (Resource.CANDIDATE, Action.INSERT): administrator,
    (Resource.CANDIDATE, Action.UPDATE): administrator,
    (Resource.CANDIDATE, Action.DELETE): administrator,

    (Resource.BALLOT, Action.READ): ballot_reader,
    (Resource.BALLOT, Action.INSERT): ballot_inserter,
}


def is_allowed(
    session: Session | None,
    resource: Resource,
    action: Action,
    row: Row | None = None,
) -> bool:
    if session is None:
        return False
    rule = POLICIES.get((resource, action))
    if rule is None:
        return False
    return rule(session, row)


def authorize(
    session: Session | None,
    resource: Resource,
    action: Action,
    row: Row | None = None,
) -> Session:
    """Raise unless the caller may perform ``action`` on ``resource``.

    Returns the session so callers can chain on it.
    """
    if session is None:
        raise NotAuthenticated()
    if not is_allowed(session, resource, action, row):
        audit_logger.warning(
            f"Authorization denied: user={session.user_id} "
            f"roles={sorted(r.value for r in session.roles)} "
            f"action={action.value} resource={resource.value}"
        )
        raise Unauthorized()
    return session


def filter_readable(
    session: Session | None,
    resource: Resource,
    rows: Iterable[Row],
) -> list[Row]:
    """Keep only the rows the caller may read."""
    return [row for row in rows if is_allowed(session, resource, Action.READ, row)]


def require_role(session: Session | None, role: Role) -> Session:
    """Used by procedures that run outside the row policies (bulk tally ops)."""
    if session is None:
        raise NotAuthenticated()
    if not session.has_role(role):
        audit_logger.warning(
            f"Authorization denied: user={session.user_id} lacks role={role.value}"
        )
        raise Unauthorized()
    return session
