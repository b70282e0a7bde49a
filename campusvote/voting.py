"""
Vote casting procedure and ballot read operations.

The correctness of casting rests on the storage layer:
    - ballots_one_per_voter          UNIQUE (voter_id, election_id)
    - ballots_list_matches_election  FK (candidate_list_id, election_id)
    - ballots_election_open          BEFORE INSERT status gate
    - ballots_after_insert           counter increments in the same transaction

The pre-checks below only exist to fail fast with a precise error. Two
concurrent casts for the same voter can both pass them; the unique index then
lets exactly one insert commit and the other is reported as AlreadyVoted.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

import asyncpg

from . import audit
from .errors import (
    AlreadyVoted, ElectionNotFound, ElectionNotOpen, InvalidList,
    NotAuthenticated, NotFound, translate_db_error,
)
from .lifecycle import ElectionStatus, accepts_ballots
from .policies import Action, Resource, authorize, filter_readable, is_allowed
from .security import Session, generate_receipt_token

logger = logging.getLogger(__name__)

RECEIPT_ATTEMPTS = 3


@dataclass(frozen=True)
class CastVoteResult:
    ballot_id: uuid.UUID
    receipt_token: str
    cast_at: datetime


async def cast_vote(
    conn: asyncpg.Connection,
    session: Session | None,
    election_id: uuid.UUID,
    list_id: uuid.UUID,
) -> CastVoteResult:
    """Record one ballot for the caller, exactly once, with its tally increment."""
    if session is None:
        raise NotAuthenticated()

    async with conn.transaction():
        # KEY SHARE lets concurrent casts proceed together while a status
        # change (FOR UPDATE) waits for them to finish.
        election = await conn.fetchrow(
            "SELECT id, status FROM elections WHERE id = $1 FOR KEY SHARE",
            election_id,
        )
        if not election:
            raise ElectionNotFound()
        if not accepts_ballots(election["status"]):
            raise ElectionNotOpen()

        candidate_list = await conn.fetchrow(
            "SELECT id, election_id FROM candidate_lists WHERE id = $1",
            list_id,
        )
        if not candidate_list or candidate_list["election_id"] != election_id:
            logger.info(f"Rejected ballot for list {list_id} outside election {election_id}")
            raise InvalidList()

        already = await conn.fetchval(
            "SELECT 1 FROM ballots WHERE voter_id = $1 AND election_id = $2",
            session.user_id, election_id,
        )
        if already:
            raise AlreadyVoted()

        authorize(session, Resource.BALLOT, Action.INSERT, {
            "voter_id": session.user_id,
            "election_id": election_id,
            "election_status": ElectionStatus(election["status"]),
            "list_election_id": candidate_list["election_id"],
        })

        row = await _insert_ballot(conn, session.user_id, election_id, list_id)

        await audit.record(
            conn, audit.BALLOT_CAST, election_id, session.user_id,
            {"ballot_id": row["id"]},
        )

    logger.info(f"Ballot {row['id']} recorded for election {election_id}")
    return CastVoteResult(
        ballot_id=row["id"],
        receipt_token=row["receipt_token"],
        cast_at=row["created_at"],
    )


async def _insert_ballot(conn, voter_id, election_id, list_id):
    """Insert the ballot, regenerating the receipt on the (unlikely) collision."""
    for attempt in range(1, RECEIPT_ATTEMPTS + 1):
        try:
            # savepoint: a failed insert must not poison the outer transaction
            async with conn.transaction():
                return await conn.fetchrow(
                    """
                    INSERT INTO ballots
                        (election_id, candidate_list_id, voter_id, receipt_token)
                    VALUES ($1, $2, $3, $4)
                    RETURNING id, receipt_token, created_at
                    """,
                    election_id, list_id, voter_id, generate_receipt_token(),
                )
        except asyncpg.UniqueViolationError as e:
            if getattr(e, "constraint_name", None) == "ballots_receipt_token_key":
                logger.warning(f"Receipt token collision (attempt {attempt}), regenerating")
                continue
            raise _translated(e)
        except asyncpg.IntegrityConstraintViolationError as e:
            raise _translated(e)
    raise RuntimeError("Could not generate a unique receipt token")


def _translated(exc: Exception) -> Exception:
    error = translate_db_error(exc)
    if error is None:
        return exc
    logger.info(f"Ballot rejected by constraint {getattr(exc, 'constraint_name', None)}")
    return error


async def get_vote_status(
    conn: asyncpg.Connection,
    session: Session | None,
    election_id: uuid.UUID,
) -> dict:
    """Whether the caller has voted. Clients check this before retrying a cast."""
    authorize(session, Resource.ELECTION, Action.READ)
    exists = await conn.fetchval("SELECT 1 FROM elections WHERE id = $1", election_id)
    if not exists:
        raise ElectionNotFound()

    row = await conn.fetchrow(
        """
        SELECT voter_id, receipt_token, created_at
        FROM ballots
        WHERE voter_id = $1 AND election_id = $2
        """,
        session.user_id, election_id,
    )
    if row is None:
        return {"election_id": election_id, "has_voted": False}

    authorize(session, Resource.BALLOT, Action.READ, row)
    return {
        "election_id": election_id,
        "has_voted": True,
        "receipt_token": row["receipt_token"],
        "cast_at": row["created_at"],
    }


async def list_my_receipts(conn: asyncpg.Connection, session: Session | None) -> list[dict]:
    """Receipts for every ballot the caller has cast, newest first."""
    authorize(session, Resource.ELECTION, Action.READ)
    rows = await conn.fetch(
        """
        SELECT b.voter_id, b.receipt_token, b.election_id, b.created_at, e.title
        FROM ballots b
        JOIN elections e ON e.id = b.election_id
        WHERE b.voter_id = $1
        ORDER BY b.created_at DESC
        """,
        session.user_id,
    )
    return [
        {
            "receipt_token": r["receipt_token"],
            "election_id": r["election_id"],
            "election_title": r["title"],
            "cast_at": r["created_at"],
        }
        for r in filter_readable(session, Resource.BALLOT, rows)
    ]


async def verify_receipt(
    conn: asyncpg.Connection,
    session: Session | None,
    receipt_token: str,
) -> dict:
    """Confirm a receipt was recorded. Never reveals the chosen list."""
    if session is None:
        raise NotAuthenticated()

    row = await conn.fetchrow(
        """
        SELECT b.voter_id, b.receipt_token, b.election_id, b.created_at, e.title
        FROM ballots b
        JOIN elections e ON e.id = b.election_id
        WHERE b.receipt_token = $1
        """,
        receipt_token,
    )
    # Receipts the caller may not read look exactly like unknown ones.
    if row is None or not is_allowed(session, Resource.BALLOT, Action.READ, row):
        raise NotFound("Receipt not found")

    return {
        "verified": True,
        "receipt_token": row["receipt_token"],
        "election_id": row["election_id"],
        "election_title": row["title"],
        "cast_at": row["created_at"],
    }
