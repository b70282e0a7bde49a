"""
Results Service - tallies, tally audit, bulk tally admin and live updates.

Endpoints:
    GET  /elections/{id}/results            public tallies once voting has started
    GET  /elections/{id}/tally-check        counters vs. ballot log (admin, committee)
    POST /admin/elections/{id}/simulation   add simulated votes (admin)
    POST /admin/elections/{id}/reset        delete ballots, zero counters (admin)
    WS   /ws/elections/{id}?token=...       change notifications

The websocket forwards ``ballot_recorded`` / ``election_changed`` /
``aggregate_changed`` events as they arrive and a ``poll`` hint whenever it has
been quiet for EVENT_POLL_INTERVAL seconds. Clients re-read results on every
message; delivery is best effort.

Runs on port 5004.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager, suppress

from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect, status

from campusvote import notifications, tally
from campusvote.database import Database, prepare_database
from campusvote.errors import (
    ElectionNotFound, NotAuthenticated, VotingError, register_error_handlers,
)
from campusvote.logging_config import configure_logging
from campusvote.notifications import ElectionEventHub
from campusvote.policies import Action, Resource, authorize
from campusvote.schemas import (
    AdminActionResponse, ElectionResults, HealthResponse, SimulationRequest, TallyReport,
)
from campusvote.security import Session, decode_session, get_session

logger = logging.getLogger("results-service")

hub = ElectionEventHub()


@asynccontextmanager
async def lifespan(application: FastAPI):
    configure_logging()
    await prepare_database()
    await hub.start()
    yield
    await hub.stop()
    await Database.close()


app = FastAPI(
    title="Results Service",
    description="Election tallies, tally audit and live change notifications",
    lifespan=lifespan,
)
register_error_handlers(app)


# ── Health ───────────────────────────────────────────────────────────────────

@app.get("/health", response_model=HealthResponse)
async def health():
    return {"status": "healthy", "service": "results"}


# ── Results ──────────────────────────────────────────────────────────────────

@app.get("/elections/{election_id}/results", response_model=ElectionResults)
async def election_results(election_id: uuid.UUID, session: Session = Depends(get_session)):
    async with Database.connection() as conn:
        return await tally.get_election_results(conn, session, election_id)


@app.get("/elections/{election_id}/tally-check", response_model=TallyReport)
async def tally_check(election_id: uuid.UUID, session: Session = Depends(get_session)):
    async with Database.connection() as conn:
        return await tally.check_tally_consistency(conn, session, election_id)


# ── Admin bulk operations ────────────────────────────────────────────────────

@app.post("/admin/elections/{election_id}/simulation", response_model=AdminActionResponse)
async def apply_simulation(
    election_id: uuid.UUID,
    data: SimulationRequest,
    session: Session = Depends(get_session),
):
    async with Database.connection() as conn:
        return await tally.apply_simulated_distribution(
            conn, session, election_id, data.distribution,
        )


@app.post("/admin/elections/{election_id}/reset", response_model=AdminActionResponse)
async def reset_votes(election_id: uuid.UUID, session: Session = Depends(get_session)):
    async with Database.connection() as conn:
        return await tally.reset_election_votes(conn, session, election_id)


# ── Live updates ─────────────────────────────────────────────────────────────

async def _authorize_subscription(token: str | None, election_id: uuid.UUID) -> Session:
    if not token:
        raise NotAuthenticated()
    session = decode_session(token)
    authorize(session, Resource.ELECTION, Action.READ)
    async with Database.connection() as conn:
        exists = await conn.fetchval("SELECT 1 FROM elections WHERE id = $1", election_id)
    if not exists:
        raise ElectionNotFound()
    return session


async def _forward_events(websocket: WebSocket, queue: asyncio.Queue, key: str) -> None:
    # clients load current state on the first message
    await websocket.send_json({"election_id": key, "kind": notifications.RESYNC})
    while True:
        try:
            event = await asyncio.wait_for(queue.get(), timeout=notifications.EVENT_POLL_INTERVAL)
        except asyncio.TimeoutError:
            event = {"election_id": key, "kind": notifications.POLL}
        await websocket.send_json(event)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    """Client messages are ignored; we only watch for the close."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@app.websocket("/ws/elections/{election_id}")
async def election_events(websocket: WebSocket, election_id: uuid.UUID, token: str | None = None):
    try:
        session = await _authorize_subscription(token, election_id)
    except VotingError as e:
        logger.info(f"Rejected subscription to {election_id}: {e.detail}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    logger.info(f"User {session.user_id} subscribed to election {election_id}")
    with hub.subscription(election_id) as queue:
        forwarder = asyncio.create_task(_forward_events(websocket, queue, str(election_id)))
        try:
            await _wait_for_disconnect(websocket)
        finally:
            forwarder.cancel()
            with suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await forwarder
    logger.info(f"User {session.user_id} left election {election_id}")
