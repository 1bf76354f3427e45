"""Event stream endpoints (REST + WebSocket).

The REST endpoint returns historical events.
The WebSocket endpoint streams events in real time to the dashboard.

Events are written by the Celery workers, in another process: the
WebSocket polls the events table (see EventCursor).
"""

import asyncio
from collections.abc import Collection
from datetime import datetime, timedelta

import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.models import Event, EventType
from shipyard.models.database import get_db, get_session_factory
from shipyard.schemas.api import EventResponse

logger = structlog.get_logger()
router = APIRouter()

POLL_INTERVAL_SECONDS = 2.0
# How far back each poll re-reads, to catch rows committed late
STREAM_OVERLAP = timedelta(seconds=30)

# Connected WebSocket clients, for logging
connected_clients: set[WebSocket] = set()


@router.get("", response_model=list[EventResponse])
async def list_events(
    limit: int = Query(50, ge=1, le=200),
    run_id: str | None = None,
    event_type: EventType | None = None,
    db: AsyncSession = Depends(get_db),
) -> list[EventResponse]:
    """Get recent events, optionally filtered by run or type."""
    query = select(Event).order_by(Event.created_at.desc()).limit(limit)

    if run_id:
        query = query.where(Event.run_id == run_id)
    if event_type:
        query = query.where(Event.event_type == event_type)

    result = await db.execute(query)
    events = result.scalars().all()

    return [EventResponse.model_validate(e) for e in events]


async def events_since(
    db: AsyncSession,
    since: datetime | None,
    *,
    exclude: Collection[str] = (),
    limit: int = 100,
) -> list[Event]:
    """Events created after ``since``, oldest first, minus the ``exclude`` ids."""
    query = select(Event).order_by(Event.created_at.asc()).limit(limit)
    if since is not None:
        query = query.where(Event.created_at > since)
    if exclude:
        query = query.where(Event.id.not_in(list(exclude)))
    result = await db.execute(query)
    return list(result.scalars().all())


class EventCursor:
    """Position of one stream in the events table.

    created_at is the start time of the writing transaction, not its commit
    time: a worker transaction that started earlier can commit rows older
    than the last event already sent. Each poll therefore reads back
    ``overlap`` before the newest sent event, and skips the ids it has
    already sent within that window.
    """

    def __init__(self, since: datetime | None, overlap: timedelta = STREAM_OVERLAP) -> None:
        self.since = since
        self.overlap = overlap
        self.sent: dict[str, datetime] = {}

    @property
    def lower_bound(self) -> datetime | None:
        if self.since is None:
            return None
        return self.since - self.overlap

    def advance(self, events: list[Event]) -> list[Event]:
        """Record ``events`` as sent and return those not sent before."""
        fresh = [event for event in events if event.id not in self.sent]
        for event in fresh:
            self.sent[event.id] = event.created_at
            if self.since is None or event.created_at > self.since:
                self.since = event.created_at

        # Ids below the window can no longer be read back
        bound = self.lower_bound
        if bound is not None:
            self.sent = {id_: created for id_, created in self.sent.items() if created > bound}
        return fresh

    async def poll(self, db: AsyncSession) -> list[Event]:
        events = await events_since(db, self.lower_bound, exclude=self.sent.keys())
        return self.advance(events)


@router.websocket("/ws")
async def event_websocket(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time event streaming.

    The dashboard connects here and receives live updates as events are
    created (run queued, stage succeeded, image published...). Only events
    created after the connection are sent.
    """
    await websocket.accept()
    connected_clients.add(websocket)
    logger.info("websocket_connected", total_clients=len(connected_clients))

    session_factory = get_session_factory()

    try:
        async with session_factory() as db:
            latest = await db.scalar(select(Event.created_at).order_by(Event.created_at.desc()).limit(1))
            cursor = EventCursor(latest)
            # Everything already in the table counts as sent
            while await cursor.poll(db):
                pass

        while True:
            async with session_factory() as db:
                events = await cursor.poll(db)
            for event in events:
                await websocket.send_text(EventResponse.model_validate(event).model_dump_json())

            try:
                # Clients may send pings; anything received just keeps the loop going
                await asyncio.wait_for(websocket.receive_text(), timeout=POLL_INTERVAL_SECONDS)
            except TimeoutError:
                continue
    except WebSocketDisconnect:
        pass
    finally:
        connected_clients.discard(websocket)
        logger.info("websocket_disconnected", total_clients=len(connected_clients))
