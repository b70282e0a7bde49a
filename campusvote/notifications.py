"""
Change notifications: "election X changed" / "a ballot was recorded for X".

Writers call :func:`publish` inside their transaction; PostgreSQL delivers the
NOTIFY only if that transaction commits. The ballot trigger publishes
``ballot_recorded`` on its own.

Readers go through :class:`ElectionEventHub`, an in-process publish/subscribe
with one topic per election. It is fed by a dedicated LISTEN connection.
Delivery is best effort. When the listener reconnects, or a subscriber falls
behind, the hub sends a ``resync`` event and subscribers re-read state.
Consumers must also poll on their own: duplicates and gaps are both possible.
"""
from __future__ import annotations

import os
import json
import uuid
import asyncio
import logging
from collections import defaultdict
from contextlib import contextmanager

import asyncpg

from .database import Database

logger = logging.getLogger(__name__)

# Must match the channel used by the ballots_after_insert trigger in schema.sql.
EVENT_CHANNEL = "campus_vote_events"
EVENT_POLL_INTERVAL = float(os.getenv("EVENT_POLL_INTERVAL", "15"))
EVENT_QUEUE_SIZE = int(os.getenv("EVENT_QUEUE_SIZE", "100"))

BALLOT_RECORDED = "ballot_recorded"
ELECTION_CHANGED = "election_changed"
AGGREGATE_CHANGED = "aggregate_changed"
RESYNC = "resync"
POLL = "poll"


async def publish(conn: asyncpg.Connection, election_id: uuid.UUID, kind: str) -> None:
    """Queue a notification; it is sent when the surrounding transaction commits."""
    payload = json.dumps({"election_id": str(election_id), "kind": kind})
    await conn.execute("SELECT pg_notify($1, $2)", EVENT_CHANNEL, payload)


class ElectionEventHub:
    """Fan-out of election events to in-process subscribers."""

    def __init__(self, queue_size: int = EVENT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._topics: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._listener_task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    # -- subscriptions --------------------------------------------------------

    def subscribe(self, election_id: uuid.UUID | str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._topics[str(election_id)].add(queue)
        return queue

    def unsubscribe(self, election_id: uuid.UUID | str, queue: asyncio.Queue) -> None:
        key = str(election_id)
        subscribers = self._topics.get(key)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._topics[key]

    @contextmanager
    def subscription(self, election_id: uuid.UUID | str):
        queue = self.subscribe(election_id)
        try:
            yield queue
        finally:
            self.unsubscribe(election_id, queue)

    def subscriber_count(self, election_id: uuid.UUID | str) -> int:
        return len(self._topics.get(str(election_id), ()))

    # -- delivery -------------------------------------------------------------

    def dispatch(self, event: dict) -> int:
        """Deliver one event to the election's subscribers. Returns deliveries."""
        key = str(event.get("election_id"))
        delivered = 0
        for queue in list(self._topics.get(key, ())):
            self._offer(queue, event)
            delivered += 1
        return delivered

    def broadcast_resync(self) -> None:
        for key, subscribers in list(self._topics.items()):
            for queue in list(subscribers):
                self._offer(queue, {"election_id": key, "kind": RESYNC})

    @staticmethod
    def _offer(queue: asyncio.Queue, event: dict) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            # Subscriber fell behind: drop its backlog and ask it to re-read.
            while not queue.empty():
                queue.get_nowait()
            queue.put_nowait({"election_id": event.get("election_id"), "kind": RESYNC})

    def handle_notification(self, connection, pid, channel, payload) -> None:
        """asyncpg listener callback."""
        try:
            event = json.loads(payload)
        except (TypeError, ValueError):
            logger.warning(f"Discarding malformed notification on {channel}: {payload!r}")
            return
        if not isinstance(event, dict) or "election_id" not in event:
            logger.warning(f"Discarding notification without election_id: {payload!r}")
            return
        self.dispatch(event)

    # -- LISTEN connection ----------------------------------------------------

    async def start(self, connect=Database.connect_dedicated) -> None:
        if self._listener_task is None:
            self._stopping.clear()
            self._listener_task = asyncio.create_task(self._listen_forever(connect))

    async def stop(self) -> None:
        self._stopping.set()
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None

    async def _listen_forever(self, connect) -> None:
        backoff = 1.0
        first = True
        while not self._stopping.is_set():
            conn = None
            try:
                conn = await connect()
                await conn.add_listener(EVENT_CHANNEL, self.handle_notification)
                logger.info(f"Listening for election events on {EVENT_CHANNEL}")
                if not first:
                    # Anything sent while we were disconnected is lost.
                    self.broadcast_resync()
                first = False
                backoff = 1.0
                while not self._stopping.is_set() and not conn.is_closed():
                    await asyncio.sleep(1.0)
            except asyncio.CancelledError:
                raise
            except (
                OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError,
            ) as e:
                logger.warning(f"Event listener disconnected: {e}; retrying in {backoff:.0f}s")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 30.0)
            finally:
                if conn is not None and not conn.is_closed():
                    await conn.close()
