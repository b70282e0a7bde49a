"""
Voting Service - ballot casting and receipts.

Endpoints:
    POST /elections/{id}/votes        cast the caller's ballot
    GET  /elections/{id}/vote-status  has the caller voted? (check before retrying)
    GET  /receipts                    the caller's receipts
    GET  /receipts/{token}            verify a receipt (owner, admin or committee)

The voter is always the authenticated caller. The body only names the list.
A cast that fails ambiguously (timeout, dropped connection) is never retried
here; clients re-read vote-status first.

Runs on port 5003.
"""
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from campusvote import voting
from campusvote.database import Database, prepare_database
from campusvote.errors import register_error_handlers
from campusvote.logging_config import configure_logging
from campusvote.schemas import (
    CastVoteRequest, HealthResponse, ReceiptOut, ReceiptVerifyResponse,
    VoteResponse, VoteStatusResponse,
)
from campusvote.security import Session, get_session

logger = logging.getLogger("voting-service")


@asynccontextmanager
async def lifespan(application: FastAPI):
    configure_logging()
    await prepare_database()
    yield
    await Database.close()


app = FastAPI(
    title="Voting Service",
    description="One ballot per voter and election, with an opaque receipt",
    lifespan=lifespan,
)
register_error_handlers(app)


# -- Health -------------------------------------------------------------------

@app.get("/health", response_model=HealthResponse)
async def health():
    return {"status": "healthy", "service": "voting"}


# -- Casting ------------------------------------------------------------------

@app.post("/elections/{election_id}/votes", response_model=VoteResponse, status_code=201)
async def cast_vote(
    election_id: uuid.UUID,
    data: CastVoteRequest,
    session: Session = Depends(get_session),
):
    async with Database.connection() as conn:
        result = await voting.cast_vote(conn, session, election_id, data.candidate_list_id)

    return {
        "message": "Your vote has been recorded",
        "ballot_id": result.ballot_id,
        "receipt_token": result.receipt_token,
        "cast_at": result.cast_at,
    }


@app.get("/elections/{election_id}/vote-status", response_model=VoteStatusResponse)
async def vote_status(election_id: uuid.UUID, session: Session = Depends(get_session)):
    async with Database.connection() as conn:
        return await voting.get_vote_status(conn, session, election_id)


# -- Receipts -----------------------------------------------------------------

@app.get("/receipts", response_model=list[ReceiptOut])
async def my_receipts(session: Session = Depends(get_session)):
    async with Database.connection() as conn:
        return await voting.list_my_receipts(conn, session)


@app.get("/receipts/{receipt_token}", response_model=ReceiptVerifyResponse)
async def verify_receipt(receipt_token: str, session: Session = Depends(get_session)):
    """Confirms the ballot was recorded. The chosen list is never returned."""
    async with Database.connection() as conn:
        return await voting.verify_receipt(conn, session, receipt_token)
