"""
Read and administrative operations on the election tallies.

Counters are maintained by the ``ballots_after_insert`` trigger. The operations
here report them (results, consistency audit) or change them in bulk without
ballot rows (simulated distribution, reset). The bulk operations are unsafe
for audit purposes while voting is active; they lock the election row so at
least they never interleave with a cast.

Invariant checked by :func:`check_tally_consistency`::

    election.total_votes     == sum(list.votes_count)
    list.votes_count         == ballots(list) + list.simulated_votes
    election.simulated_votes == sum(list.simulated_votes)
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping

import asyncpg

from . import audit, notifications
from .errors import (
    ElectionLocked, ElectionNotFound, InvalidList, InvalidRequest, ResultsUnavailable,
)
from .lifecycle import RESULTS_VISIBLE_STATUSES, ElectionStatus
from .policies import Action, Resource, authorize, require_role
from .schemas import MAX_COUNTER
from .security import Role, Session

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

def percentage(part: int, whole: int | None) -> float:
    if not whole:
        return 0.0
    return round(part / whole * 100, 2)


def build_results(election: Mapping, lists: list[Mapping], candidates: list[Mapping]) -> dict:
    """Shape stored counters into the public results document.

    Per-candidate votes are the list's votes split evenly across its
    candidates (rounded down). Ballots are cast per list, so this is
    for display only and flagged ``approximate``.
    """
    total = election["total_votes"]
    by_list: dict[uuid.UUID, list[Mapping]] = {}
    for candidate in candidates:
        by_list.setdefault(candidate["list_id"], []).append(candidate)

    results = []
    for row in lists:
        members = by_list.get(row["id"], [])
        share = row["votes_count"] // len(members) if members else 0
        results.append({
            "list_id": row["id"],
            "name": row["name"],
            "color": row["color"],
            "votes": row["votes_count"],
            "percentage": percentage(row["votes_count"], total),
            "candidates": [
                {"candidate_id": c["id"], "name": c["name"], "votes": share, "approximate": True}
                for c in members
            ],
        })
    results.sort(key=lambda r: r["votes"], reverse=True)

    return {
        "election_id": election["id"],
        "title": election["title"],
        "status": ElectionStatus(election["status"]),
        "total_votes": total,
        "eligible_voters": election["eligible_voters"],
        "participation_rate": percentage(total, election["eligible_voters"]),
        "lists": results,
    }


async def get_election_results(
    conn: asyncpg.Connection,
    session: Session | None,
    election_id: uuid.UUID,
) -> dict:
    authorize(session, Resource.ELECTION, Action.READ)
    # one snapshot, so lists and total agree with each other
    async with conn.transaction(isolation="repeatable_read", readonly=True):
        election = await conn.fetchrow(
            """
            SELECT id, title, status, total_votes, eligible_voters
            FROM elections WHERE id = $1
            """,
            election_id,
        )
        if not election:
            raise ElectionNotFound()
        if ElectionStatus(election["status"]) not in RESULTS_VISIBLE_STATUSES:
            raise ResultsUnavailable()

        lists = await conn.fetch(
            """
            SELECT id, name, color, votes_count
            FROM candidate_lists
            WHERE election_id = $1
            ORDER BY votes_count DESC, name
            """,
            election_id,
        )
        candidates = await conn.fetch(
            """
            SELECT c.id, c.list_id, c.name
            FROM candidates c
            JOIN candidate_lists l ON l.id = c.list_id
            WHERE l.election_id = $1
            ORDER BY c.created_at, c.name
            """,
            election_id,
        )

    return build_results(election, lists, candidates)


# ---------------------------------------------------------------------------
# Consistency audit
# ---------------------------------------------------------------------------

def build_tally_report(election: Mapping, lists: list[Mapping]) -> dict:
    per_list = []
    for row in lists:
        expected = row["ballots"] + row["simulated_votes"]
        per_list.append({
            "list_id": row["id"],
            "name": row["name"],
            "votes_count": row["votes_count"],
            "ballots": row["ballots"],
            "simulated_votes": row["simulated_votes"],
            "consistent": row["votes_count"] == expected,
        })

    list_votes_sum = sum(r["votes_count"] for r in lists)
    list_simulated_sum = sum(r["simulated_votes"] for r in lists)
    consistent = (
        election["total_votes"] == list_votes_sum
        and election["simulated_votes"] == list_simulated_sum
        and all(r["consistent"] for r in per_list)
    )
    return {
        "election_id": election["id"],
        "total_votes": election["total_votes"],
        "list_votes_sum": list_votes_sum,
        "ballots": sum(r["ballots"] for r in lists),
        "simulated_votes": election["simulated_votes"],
        "consistent": consistent,
        "lists": per_list,
    }


async def check_tally_consistency(
    conn: asyncpg.Connection,
    session: Session | None,
    election_id: uuid.UUID,
) -> dict:
    """Compare stored counters against the ballot log. Admin and committee only."""
    # counting ballots means reading every ballot of the election
    authorize(session, Resource.BALLOT, Action.READ)
    async with conn.transaction(isolation="repeatable_read", readonly=True):
        election = await conn.fetchrow(
            "SELECT id, total_votes, simulated_votes FROM elections WHERE id = $1",
            election_id,
        )
        if not election:
            raise ElectionNotFound()
        lists = await conn.fetch(
            """
            SELECT l.id, l.name, l.votes_count, l.simulated_votes,
                   count(b.id) AS ballots
            FROM candidate_lists l
            LEFT JOIN ballots b ON b.candidate_list_id = l.id
            WHERE l.election_id = $1
            GROUP BY l.id
            ORDER BY l.name
            """,
            election_id,
        )

    report = build_tally_report(election, lists)
    if not report["consistent"]:
        logger.error(f"Tally drift detected for election {election_id}: {report}")
    return report


# ---------------------------------------------------------------------------
# Bulk administrative operations
# ---------------------------------------------------------------------------

async def _lock_for_bulk_change(conn: asyncpg.Connection, election_id: uuid.UUID):
    election = await conn.fetchrow(
        "SELECT id, status, total_votes FROM elections WHERE id = $1 FOR UPDATE",
        election_id,
    )
    if not election:
        raise ElectionNotFound()
    if ElectionStatus(election["status"]) is ElectionStatus.RESULTS_PUBLISHED:
        raise ElectionLocked("Results are published; tallies can no longer change")
    return election


async def apply_simulated_distribution(
    conn: asyncpg.Connection,
    session: Session | None,
    election_id: uuid.UUID,
    distribution: Mapping[uuid.UUID, int],
) -> dict:
    """Add simulated votes to the given lists. All lists are validated before any write."""
    require_role(session, Role.ADMINISTRATOR)
    if not distribution:
        raise InvalidRequest("Distribution must name at least one list")
    if any(count < 0 for count in distribution.values()):
        raise InvalidRequest("Vote counts must be non-negative")
    added = sum(distribution.values())
    if added > MAX_COUNTER:
        raise InvalidRequest(f"Distribution adds more than {MAX_COUNTER} votes")

    async with conn.transaction():
        election = await _lock_for_bulk_change(conn, election_id)

        rows = await conn.fetch(
            "SELECT id, votes_count FROM candidate_lists WHERE election_id = $1", election_id,
        )
        current = {r["id"]: r["votes_count"] for r in rows}
        unknown = set(distribution) - set(current)
        if unknown:
            raise InvalidList(
                f"Lists do not belong to this election: {', '.join(sorted(map(str, unknown)))}"
            )
        if election["total_votes"] + added > MAX_COUNTER or any(
            current[list_id] + count > MAX_COUNTER for list_id, count in distribution.items()
        ):
            raise InvalidRequest("Distribution would overflow the vote counters")

        for list_id, count in distribution.items():
            if count == 0:
                continue
            await conn.execute(
                """
                UPDATE candidate_lists
                   SET votes_count = votes_count + $2,
                       simulated_votes = simulated_votes + $2
                 WHERE id = $1
                """,
                list_id, count,
            )

        total = await conn.fetchval(
            """
            UPDATE elections
               SET total_votes = total_votes + $2,
                   simulated_votes = simulated_votes + $2,
                   updated_at = now()
             WHERE id = $1
            RETURNING total_votes
            """,
            election_id, added,
        )
        await audit.record(conn, audit.SIMULATION_APPLIED, election_id, session.user_id, {
            "distribution": {str(k): v for k, v in distribution.items()},
            "added": added,
        })
        await notifications.publish(conn, election_id, notifications.AGGREGATE_CHANGED)

    logger.warning(f"Simulated distribution applied to election {election_id}: +{added} votes")
    return {
        "message": f"Applied {added} simulated votes",
        "election_id": election_id,
        "total_votes": total,
    }


async def reset_election_votes(
    conn: asyncpg.Connection,
    session: Session | None,
    election_id: uuid.UUID,
) -> dict:
    """Delete every ballot of the election and zero all of its counters."""
    require_role(session, Role.ADMINISTRATOR)
    async with conn.transaction():
        await _lock_for_bulk_change(conn, election_id)

        # lifts prevent_ballot_delete for this transaction only
        await conn.execute("SET LOCAL campus_vote.allow_ballot_reset = 'on'")
        deleted = await conn.fetchval(
            """
            WITH removed AS (
                DELETE FROM ballots WHERE election_id = $1 RETURNING 1
            )
            SELECT count(*) FROM removed
            """,
            election_id,
        )
        await conn.execute(
            """
            UPDATE candidate_lists
               SET votes_count = 0, simulated_votes = 0
             WHERE election_id = $1
            """,
            election_id,
        )
        await conn.execute(
            """
            UPDATE elections
               SET total_votes = 0, simulated_votes = 0, updated_at = now()
             WHERE id = $1
            """,
            election_id,
        )
        await audit.record(conn, audit.VOTES_RESET, election_id, session.user_id, {
            "ballots_deleted": deleted,
        })
        await notifications.publish(conn, election_id, notifications.AGGREGATE_CHANGED)

    logger.warning(f"Votes reset for election {election_id}: {deleted} ballots removed")
    return {
        "message": f"Reset election votes ({deleted} ballots removed)",
        "election_id": election_id,
        "total_votes": 0,
    }
