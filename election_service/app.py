"""
Election Service - elections, candidate lists, candidates and the lifecycle.

Reads are open to any authenticated caller. Writes are administrator-only
and refused once the election is past the point where edits are allowed
(see campusvote.lifecycle).

Runs on port 5005.
"""
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Response

from campusvote import elections
from campusvote.database import Database, prepare_database
from campusvote.errors import register_error_handlers
from campusvote.lifecycle import ElectionStatus
from campusvote.logging_config import configure_logging
from campusvote.schemas import (
    CandidateCreate, CandidateListCreate, CandidateListOut, CandidateListUpdate,
    CandidateOut, CandidateUpdate, ElectionCreate, ElectionOut, ElectionUpdate,
    HealthResponse, StatusChangeRequest,
)
from campusvote.security import Session, get_session

logger = logging.getLogger("election-service")


@asynccontextmanager
async def lifespan(application: FastAPI):
    configure_logging()
    await prepare_database()
    yield
    await Database.close()


app = FastAPI(
    title="Election Service",
    description="Election creation, candidate data and lifecycle management",
    lifespan=lifespan,
)
register_error_handlers(app)


# ── Health ───────────────────────────────────────────────────────────────────

@app.get("/health", response_model=HealthResponse)
async def health():
    return {"status": "healthy", "service": "election"}


# ── Elections ────────────────────────────────────────────────────────────────

@app.get("/elections", response_model=list[ElectionOut])
async def list_elections(
    status: ElectionStatus | None = None,
    session: Session = Depends(get_session),
):
    async with Database.connection() as conn:
        return await elections.list_elections(conn, session, status)


@app.post("/elections", response_model=ElectionOut, status_code=201)
async def create_election(data: ElectionCreate, session: Session = Depends(get_session)):
    """Create a draft election, optionally with its lists and candidates."""
    async with Database.connection() as conn:
        return await elections.create_election(conn, session, data)


@app.get("/elections/{election_id}", response_model=ElectionOut)
async def get_election(election_id: uuid.UUID, session: Session = Depends(get_session)):
    async with Database.connection() as conn:
        return await elections.get_election(conn, session, election_id)


@app.patch("/elections/{election_id}", response_model=ElectionOut)
async def update_election(
    election_id: uuid.UUID,
    data: ElectionUpdate,
    session: Session = Depends(get_session),
):
    async with Database.connection() as conn:
        return await elections.update_election(conn, session, election_id, data)


@app.delete("/elections/{election_id}", status_code=204)
async def delete_election(election_id: uuid.UUID, session: Session = Depends(get_session)):
    async with Database.connection() as conn:
        await elections.delete_election(conn, session, election_id)
    return Response(status_code=204)


@app.post("/elections/{election_id}/status", response_model=ElectionOut)
async def change_status(
    election_id: uuid.UUID,
    data: StatusChangeRequest,
    session: Session = Depends(get_session),
):
    async with Database.connection() as conn:
        return await elections.change_election_status(conn, session, election_id, data.status)


# ── Candidate lists ──────────────────────────────────────────────────────────

@app.post("/elections/{election_id}/lists", response_model=CandidateListOut, status_code=201)
async def add_list(
    election_id: uuid.UUID,
    data: CandidateListCreate,
    session: Session = Depends(get_session),
):
    async with Database.connection() as conn:
        return await elections.add_candidate_list(conn, session, election_id, data)


@app.patch("/lists/{list_id}", response_model=CandidateListOut)
async def update_list(
    list_id: uuid.UUID,
    data: CandidateListUpdate,
    session: Session = Depends(get_session),
):
    async with Database.connection() as conn:
        return await elections.update_candidate_list(conn, session, list_id, data)


@app.delete("/lists/{list_id}", status_code=204)
async def delete_list(list_id: uuid.UUID, session: Session = Depends(get_session)):
    async with Database.connection() as conn:
        await elections.delete_candidate_list(conn, session, list_id)
    return Response(status_code=204)


# ── Candidates ───────────────────────────────────────────────────────────────

@app.post("/lists/{list_id}/candidates", response_model=CandidateOut, status_code=201)
async def add_candidate(
    list_id: uuid.UUID,
    data: CandidateCreate,
    session: Session = Depends(get_session),
):
    async with Database.connection() as conn:
        return await elections.add_candidate(conn, session, list_id, data)


@app.patch("/candidates/{candidate_id}", response_model=CandidateOut)
async def update_candidate(
    candidate_id: uuid.UUID,
    data: CandidateUpdate,
    session: Session = Depends(get_session),
):
    async with Database.connection() as conn:
        return await elections.update_candidate(conn, session, candidate_id, data)


@app.delete("/candidates/{candidate_id}", status_code=204)
async def delete_candidate(candidate_id: uuid.UUID, session: Session = Depends(get_session)):
    async with Database.connection() as conn:
        await elections.delete_candidate(conn, session, candidate_id)
    return Response(status_code=204)
