"""
Audit trail helpers.

Rows are written inside the caller's transaction, so an audit entry exists
exactly when the action it describes committed. Entries never record which
candidate list a ballot chose.
"""
from __future__ import annotations

import json
import uuid

import asyncpg

BALLOT_CAST = "ballot_cast"
ELECTION_CREATED = "election_created"
ELECTION_UPDATED = "election_updated"
ELECTION_DELETED = "election_deleted"
STATUS_CHANGED = "status_changed"
LIST_CHANGED = "candidate_list_changed"
CANDIDATE_CHANGED = "candidate_changed"
SIMULATION_APPLIED = "simulation_applied"
VOTES_RESET = "votes_reset"


def _default(value):
    if isinstance(value, uuid.UUID):
        return str(value)
    raise TypeError(f"Cannot serialise {type(value).__name__}")


async def record(
    conn: asyncpg.Connection,
    event_type: str,
    election_id: uuid.UUID | None,
    actor_id: uuid.UUID | None,
    detail: dict | None = None,
) -> None:
    await conn.execute(
        """
        INSERT INTO audit_log (event_type, election_id, actor_id, detail)
        VALUES ($1, $2, $3, $4::jsonb)
        """,
        event_type, election_id, actor_id,
        json.dumps(detail or {}, default=_default),
    )
