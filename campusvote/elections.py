"""
Election management: elections, candidate lists, candidates and the lifecycle.

Every write is administrator-only and runs in one transaction that holds the
election row ``FOR UPDATE``. That lock orders structural edits after any
in-flight cast (casts hold ``FOR KEY SHARE``).
"""
from __future__ import annotations

import logging
import uuid

import asyncpg

from . import audit, notifications
from .errors import (
    ElectionLocked, ElectionNotFound, InvalidRequest, InvalidTransition,
    NotFound, translate_db_error,
)
from .lifecycle import DELETABLE_STATUSES, ElectionStatus, can_transition, is_editable
from .policies import Action, Resource, authorize
from .schemas import (
    CandidateCreate, CandidateListCreate, CandidateListUpdate, CandidateUpdate,
    ElectionCreate, ElectionUpdate,
)
from .security import Session

logger = logging.getLogger(__name__)

ELECTION_COLUMNS = """
    id, title, description, campus, career, status, start_date, end_date,
    total_votes, eligible_voters, created_by, created_at, updated_at
"""
LIST_COLUMNS = "id, election_id, name, color, description, votes_count"
CANDIDATE_COLUMNS = """
    id, list_id, name, position, email, student_id, bio, image_url, proposals
"""

# Columns that may not be set to NULL through a partial update.
REQUIRED_FIELDS = frozenset({"title", "name", "position"})


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------

def _election_dict(row) -> dict:
    out = dict(row)
    out["status"] = ElectionStatus(row["status"])
    out["candidate_lists"] = []
    return out


def _list_dict(row) -> dict:
    return {
        "id": row["id"],
        "election_id": row["election_id"],
        "name": row["name"],
        "color": row["color"],
        "description": row["description"],
        "votes": row["votes_count"],
        "candidates": [],
    }


def _set_clause(fields: dict, first_param: int = 2) -> tuple[str, list]:
    """``col = $n`` pairs for a partial update. Column names come from pydantic models."""
    for name in REQUIRED_FIELDS & fields.keys():
        if fields[name] is None:
            raise InvalidRequest(f"{name} cannot be empty")
    parts = [f"{column} = ${i}" for i, column in enumerate(fields, start=first_param)]
    return ", ".join(parts), list(fields.values())


async def _attach_lists(conn: asyncpg.Connection, elections: list[dict]) -> list[dict]:
    """Fill ``candidate_lists`` (with candidates) on each election dict."""
    if not elections:
        return elections
    by_election = {e["id"]: e for e in elections}

    lists = await conn.fetch(
        f"""
        SELECT {LIST_COLUMNS}
        FROM candidate_lists
        WHERE election_id = ANY($1::uuid[])
        ORDER BY created_at, name
        """,
        list(by_election),
    )
    by_list = {}
    for row in lists:
        item = _list_dict(row)
        by_list[row["id"]] = item
        by_election[row["election_id"]]["candidate_lists"].append(item)

    if by_list:
        candidates = await conn.fetch(
            f"""
            SELECT {CANDIDATE_COLUMNS}
            FROM candidates
            WHERE list_id = ANY($1::uuid[])
            ORDER BY created_at, name
            """,
            list(by_list),
        )
        for row in candidates:
            by_list[row["list_id"]]["candidates"].append(dict(row))

    return elections


async def _lock_election(conn: asyncpg.Connection, election_id: uuid.UUID):
    row = await conn.fetchrow(
        "SELECT id, status FROM elections WHERE id = $1 FOR UPDATE",
        election_id,
    )
    if not row:
        raise ElectionNotFound()
    return row


async def _lock_editable_election(conn: asyncpg.Connection, election_id: uuid.UUID):
    row = await _lock_election(conn, election_id)
    if not is_editable(row["status"]):
        raise ElectionLocked(
            f"Election cannot be edited while {ElectionStatus(row['status']).value}"
        )
    return row


async def _election_of_list(conn: asyncpg.Connection, list_id: uuid.UUID) -> uuid.UUID:
    election_id = await conn.fetchval(
        "SELECT election_id FROM candidate_lists WHERE id = $1", list_id,
    )
    if election_id is None:
        raise NotFound("Candidate list not found")
    return election_id


async def _changed(conn, session: Session, event_type: str, election_id, detail: dict) -> None:
    await audit.record(conn, event_type, election_id, session.user_id, detail)
    await notifications.publish(conn, election_id, notifications.ELECTION_CHANGED)


# ---------------------------------------------------------------------------
# Elections
# ---------------------------------------------------------------------------

async def list_elections(
    conn: asyncpg.Connection,
    session: Session | None,
    status: ElectionStatus | None = None,
) -> list[dict]:
    authorize(session, Resource.ELECTION, Action.READ)
    if status is None:
        rows = await conn.fetch(
            f"SELECT {ELECTION_COLUMNS} FROM elections ORDER BY created_at DESC"
        )
    else:
        rows = await conn.fetch(
            f"""
            SELECT {ELECTION_COLUMNS} FROM elections
            WHERE status = $1
            ORDER BY created_at DESC
            """,
            ElectionStatus(status).value,
        )
    return await _attach_lists(conn, [_election_dict(r) for r in rows])


async def get_election(
    conn: asyncpg.Connection,
    session: Session | None,
    election_id: uuid.UUID,
) -> dict:
    """The election with its lists (and their counts) and candidates."""
    authorize(session, Resource.ELECTION, Action.READ)
    row = await conn.fetchrow(
        f"SELECT {ELECTION_COLUMNS} FROM elections WHERE id = $1", election_id,
    )
    if not row:
        raise ElectionNotFound()
    elections = await _attach_lists(conn, [_election_dict(row)])
    return elections[0]


async def create_election(
    conn: asyncpg.Connection,
    session: Session | None,
    data: ElectionCreate,
) -> dict:
    """Create a draft election together with its lists and candidates."""
    authorize(session, Resource.ELECTION, Action.INSERT)
    async with conn.transaction():
        try:
            election_id = await conn.fetchval(
                """
                INSERT INTO elections
                    (title, description, campus, career, start_date, end_date,
                     eligible_voters, created_by, status)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 'draft')
                RETURNING id
                """,
                data.title, data.description, data.campus, data.career,
                data.start_date, data.end_date, data.eligible_voters, session.user_id,
            )
        except asyncpg.CheckViolationError as e:
            raise translate_db_error(e) or e

        for list_data in data.candidate_lists:
            await _insert_list(conn, election_id, list_data)

        await _changed(conn, session, audit.ELECTION_CREATED, election_id, {
            "title": data.title,
            "lists": len(data.candidate_lists),
        })

    logger.info(f"Election {election_id} created by {session.user_id}")
    return await get_election(conn, session, election_id)


async def update_election(
    conn: asyncpg.Connection,
    session: Session | None,
    election_id: uuid.UUID,
    data: ElectionUpdate,
) -> dict:
    authorize(session, Resource.ELECTION, Action.UPDATE)
    fields = data.model_dump(exclude_unset=True)
    async with conn.transaction():
        await _lock_editable_election(conn, election_id)
        if fields:
            current = await conn.fetchrow(
                "SELECT start_date, end_date FROM elections WHERE id = $1", election_id,
            )
            start = fields.get("start_date", current["start_date"])
            end = fields.get("end_date", current["end_date"])
            if start and end and start >= end:
                raise InvalidRequest("start_date must be before end_date")

            set_clause, values = _set_clause(fields)
            await conn.execute(
                f"UPDATE elections SET {set_clause}, updated_at = now() WHERE id = $1",
                election_id, *values,
            )
            await _changed(conn, session, audit.ELECTION_UPDATED, election_id, {
                "fields": sorted(fields),
            })

    return await get_election(conn, session, election_id)


async def delete_election(
    conn: asyncpg.Connection,
    session: Session | None,
    election_id: uuid.UUID,
) -> None:
    """Delete an election that has not started voting, with its lists and candidates."""
    authorize(session, Resource.ELECTION, Action.DELETE)
    async with conn.transaction():
        row = await _lock_election(conn, election_id)
        status = ElectionStatus(row["status"])
        if status not in DELETABLE_STATUSES:
            raise ElectionLocked(f"Election cannot be deleted while {status.value}")
        await conn.execute("DELETE FROM elections WHERE id = $1", election_id)
        await _changed(conn, session, audit.ELECTION_DELETED, election_id, {})

    logger.info(f"Election {election_id} deleted by {session.user_id}")


async def change_election_status(
    conn: asyncpg.Connection,
    session: Session | None,
    election_id: uuid.UUID,
    new_status: ElectionStatus,
) -> dict:
    """Move the election along the lifecycle. Waits for in-flight casts."""
    authorize(session, Resource.ELECTION, Action.UPDATE)
    target = ElectionStatus(new_status)
    async with conn.transaction():
        row = await _lock_election(conn, election_id)
        current = ElectionStatus(row["status"])
        if not can_transition(current, target):
            raise InvalidTransition(
                f"Cannot change election status from {current.value} to {target.value}"
            )
        await conn.execute(
            "UPDATE elections SET status = $2, updated_at = now() WHERE id = $1",
            election_id, target.value,
        )
        await _changed(conn, session, audit.STATUS_CHANGED, election_id, {
            "from": current.value,
            "to": target.value,
        })

    logger.info(f"Election {election_id}: {current.value} -> {target.value}")
    return await get_election(conn, session, election_id)


# ---------------------------------------------------------------------------
# Candidate lists
# ---------------------------------------------------------------------------

async def _insert_list(conn, election_id: uuid.UUID, data: CandidateListCreate) -> uuid.UUID:
    list_id = await conn.fetchval(
        """
        INSERT INTO candidate_lists (election_id, name, color, description)
        VALUES ($1, $2, $3, $4)
        RETURNING id
        """,
        election_id, data.name, data.color, data.description,
    )
    for candidate in data.candidates:
        await _insert_candidate(conn, list_id, candidate)
    return list_id


async def _fetch_list(conn, list_id: uuid.UUID) -> dict:
    row = await conn.fetchrow(
        f"SELECT {LIST_COLUMNS} FROM candidate_lists WHERE id = $1", list_id,
    )
    if not row:
        raise NotFound("Candidate list not found")
    item = _list_dict(row)
    candidates = await conn.fetch(
        f"SELECT {CANDIDATE_COLUMNS} FROM candidates WHERE list_id = $1 ORDER BY created_at, name",
        list_id,
    )
    item["candidates"] = [dict(c) for c in candidates]
    return item


async def add_candidate_list(
    conn: asyncpg.Connection,
    session: Session | None,
    election_id: uuid.UUID,
    data: CandidateListCreate,
) -> dict:
    authorize(session, Resource.CANDIDATE_LIST, Action.INSERT)
    async with conn.transaction():
        await _lock_editable_election(conn, election_id)
        list_id = await _insert_list(conn, election_id, data)
        await _changed(conn, session, audit.LIST_CHANGED, election_id, {
            "list_id": list_id, "op": "insert",
        })
    return await _fetch_list(conn, list_id)


async def update_candidate_list(
    conn: asyncpg.Connection,
    session: Session | None,
    list_id: uuid.UUID,
    data: CandidateListUpdate,
) -> dict:
    authorize(session, Resource.CANDIDATE_LIST, Action.UPDATE)
    fields = data.model_dump(exclude_unset=True)
    async with conn.transaction():
        election_id = await _election_of_list(conn, list_id)
        await _lock_editable_election(conn, election_id)
        if fields:
            set_clause, values = _set_clause(fields)
            await conn.execute(
                f"UPDATE candidate_lists SET {set_clause} WHERE id = $1",
                list_id, *values,
            )
            await _changed(conn, session, audit.LIST_CHANGED, election_id, {
                "list_id": list_id, "op": "update", "fields": sorted(fields),
            })
    return await _fetch_list(conn, list_id)


async def delete_candidate_list(
    conn: asyncpg.Connection,
    session: Session | None,
    list_id: uuid.UUID,
) -> None:
    """Remove a list and its candidates. Lists that already hold votes stay."""
    authorize(session, Resource.CANDIDATE_LIST, Action.DELETE)
    async with conn.transaction():
        election_id = await _election_of_list(conn, list_id)
        await _lock_editable_election(conn, election_id)
        votes = await conn.fetchval(
            "SELECT votes_count FROM candidate_lists WHERE id = $1", list_id,
        )
        ballots = await conn.fetchval(
            "SELECT count(*) FROM ballots WHERE candidate_list_id = $1", list_id,
        )
        if votes or ballots:
            raise ElectionLocked("A candidate list that already has votes cannot be deleted")
        await conn.execute("DELETE FROM candidate_lists WHERE id = $1", list_id)
        await _changed(conn, session, audit.LIST_CHANGED, election_id, {
            "list_id": list_id, "op": "delete",
        })


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------

async def _insert_candidate(conn, list_id: uuid.UUID, data: CandidateCreate) -> uuid.UUID:
    return await conn.fetchval(
        """
        INSERT INTO candidates
            (list_id, name, position, email, student_id, bio, image_url, proposals)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        RETURNING id
        """,
        list_id, data.name, data.position, data.email, data.student_id,
        data.bio, data.image_url, data.proposals,
    )


async def _fetch_candidate(conn, candidate_id: uuid.UUID) -> dict:
    row = await conn.fetchrow(
        f"SELECT {CANDIDATE_COLUMNS} FROM candidates WHERE id = $1", candidate_id,
    )
    if not row:
        raise NotFound("Candidate not found")
    return dict(row)


async def _election_of_candidate(conn, candidate_id: uuid.UUID) -> uuid.UUID:
    election_id = await conn.fetchval(
        """
        SELECT l.election_id
        FROM candidates c
        JOIN candidate_lists l ON l.id = c.list_id
        WHERE c.id = $1
        """,
        candidate_id,
    )
    if election_id is None:
        raise NotFound("Candidate not found")
    return election_id


async def add_candidate(
    conn: asyncpg.Connection,
    session: Session | None,
    list_id: uuid.UUID,
    data: CandidateCreate,
) -> dict:
    authorize(session, Resource.CANDIDATE, Action.INSERT)
    async with conn.transaction():
        election_id = await _election_of_list(conn, list_id)
        await _lock_editable_election(conn, election_id)
        candidate_id = await _insert_candidate(conn, list_id, data)
        await _changed(conn, session, audit.CANDIDATE_CHANGED, election_id, {
            "candidate_id": candidate_id, "op": "insert",
        })
    return await _fetch_candidate(conn, candidate_id)


async def update_candidate(
    conn: asyncpg.Connection,
    session: Session | None,
    candidate_id: uuid.UUID,
    data: CandidateUpdate,
) -> dict:
    authorize(session, Resource.CANDIDATE, Action.UPDATE)
    fields = data.model_dump(exclude_unset=True)
    async with conn.transaction():
        election_id = await _election_of_candidate(conn, candidate_id)
        await _lock_editable_election(conn, election_id)
        if fields:
            set_clause, values = _set_clause(fields)
            await conn.execute(
                f"UPDATE candidates SET {set_clause} WHERE id = $1",
                candidate_id, *values,
            )
            await _changed(conn, session, audit.CANDIDATE_CHANGED, election_id, {
                "candidate_id": candidate_id, "op": "update", "fields": sorted(fields),
            })
    return await _fetch_candidate(conn, candidate_id)


async def delete_candidate(
    conn: asyncpg.Connection,
    session: Session | None,
    candidate_id: uuid.UUID,
) -> None:
    authorize(session, Resource.CANDIDATE, Action.DELETE)
    async with conn.transaction():
        election_id = await _election_of_candidate(conn, candidate_id)
        await _lock_editable_election(conn, election_id)
        await conn.execute("DELETE FROM candidates WHERE id = $1", candidate_id)
        await _changed(conn, session, audit.CANDIDATE_CHANGED, election_id, {
            "candidate_id": candidate_id, "op": "delete",
        })
