"""Velocity routes: append visitor events and read window counts."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from kestrel_fingerprint.api.deps import get_engine
from kestrel_fingerprint.velocity.index import VisitorEvent

router = APIRouter(tags=["velocity"])


# ---------- Request/Response models ----------

class EventBody(BaseModel):
    visitor_id: str = ""
    ip: str = ""
    timestamp: Optional[datetime] = None
    linked_id: Optional[str] = None
    country: Optional[str] = None
    url: Optional[str] = None
    event_type: Optional[str] = None


class EventAccepted(BaseModel):
    visitor_id: str
    timestamp: datetime


class VelocityResponse(BaseModel):
    visitor_id: str
    windows: list[str]
    counts: dict[str, dict[str, int]]


# ---------- Routes ----------

@router.post("/events", response_model=EventAccepted, status_code=202)
async def record_event(body: EventBody, engine=Depends(get_engine)):
    """Append one visitor event. Missing visitor id or timestamp is a 422."""
    event = VisitorEvent(
        visitor_id=body.visitor_id,
        ip=body.ip,
        timestamp=body.timestamp,
        linked_id=body.linked_id,
        country=body.country,
        url=body.url,
        event_type=body.event_type,
    )
    await engine.record_event(event)
    return EventAccepted(visitor_id=event.visitor_id, timestamp=event.timestamp)


@router.get("/velocity/{visitor_id}", response_model=VelocityResponse)
async def get_velocity(
    visitor_id: str,
    at: Optional[datetime] = Query(None, description="Evaluate windows as of this instant"),
    engine=Depends(get_engine),
):
    """Distinct-value and event counts per window for *visitor_id*."""
    if at is not None and at.tzinfo is None:
        raise HTTPException(status_code=422, detail="at must carry a timezone")
    window_set = await engine.query_velocity(visitor_id, at)
    return VelocityResponse(
        visitor_id=visitor_id,
        windows=list(window_set.windows),
        counts=window_set.to_dict(),
    )
