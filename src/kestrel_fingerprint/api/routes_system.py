"""System routes: health and on-demand compaction."""
from __future__ import annotations

import time
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from kestrel_fingerprint import __version__
from kestrel_fingerprint.api.deps import get_compaction, get_engine, get_settings

router = APIRouter(prefix="/system", tags=["system"])


# ---------- Response models ----------

class HealthResponse(BaseModel):
    version: str
    service: str
    uptime_seconds: float
    record_count: int
    event_count: int


class CompactionResponse(BaseModel):
    events_dropped: int
    events_retained: int
    duration_ms: int
    ran_at: Optional[datetime] = None


# ---------- Routes ----------

@router.get("/health", response_model=HealthResponse)
async def health(
    request: Request,
    engine=Depends(get_engine),
    settings=Depends(get_settings),
):
    """Health check with store and velocity sizes."""
    start_time = getattr(request.app.state, "start_time", time.time())
    uptime = time.time() - start_time
    return HealthResponse(
        version=__version__,
        service=settings.service.name,
        uptime_seconds=round(uptime, 2),
        record_count=await engine.store.count(),
        event_count=await engine.velocity.size(),
    )


@router.post("/compact", response_model=CompactionResponse)
async def compact(scheduler=Depends(get_compaction)):
    """Run a retention compaction now instead of waiting for the next tick."""
    if scheduler is None:
        raise HTTPException(status_code=409, detail="Compaction is not configured")
    result = await scheduler.run_now()
    return CompactionResponse(
        events_dropped=result.events_dropped,
        events_retained=result.events_retained,
        duration_ms=result.duration_ms,
        ran_at=result.ran_at,
    )
