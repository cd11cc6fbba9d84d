"""Iteration event routes."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from iterwork.api.deps import get_iteration_manager, get_store
from iterwork.api.schemas.events import EventResponse, EventsResponse
from iterwork.core.iteration_manager import IterationManager
from iterwork.db.store import SQLiteStore
from iterwork.models.events import EventType

router = APIRouter(prefix="/api/v1/events", tags=["events"])


@router.get("", response_model=EventsResponse)
async def list_events(
    iteration: str | None = None,
    event_type: str | None = None,
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    manager: IterationManager = Depends(get_iteration_manager),
    store: SQLiteStore = Depends(get_store),
) -> EventsResponse:
    parsed_event_type: EventType | None = None
    if event_type is not None:
        try:
            parsed_event_type = EventType(event_type)
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid event_type",
            ) from exc

    context = await manager.init()
    events = await store.list_events(
        project_id=context.project_id,
        iteration=iteration,
        event_type=parsed_event_type,
        since=since,
        until=until,
    )
    return EventsResponse(
        items=[
            EventResponse(
                id=event.id,
                iteration=event.iteration,
                event_type=event.event_type.value,
                payload=event.payload,
                timestamp=event.timestamp,
            )
            for event in events
        ]
    )
