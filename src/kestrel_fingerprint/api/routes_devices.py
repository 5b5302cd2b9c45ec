"""Device routes: inspect and purge stored fingerprint records."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel

from kestrel_fingerprint.api.deps import get_engine

router = APIRouter(prefix="/devices", tags=["devices"])


# ---------- Request/Response models ----------

class ScoreEntry(BaseModel):
    timestamp: datetime
    score: float


class DeviceDetail(BaseModel):
    device_id: str
    schema_version: str
    features: dict[str, str]
    first_seen_at: datetime
    last_seen_at: datetime
    linked_ids: list[str]
    score_history: list[ScoreEntry]


# ---------- Routes ----------

@router.get("/{device_id}", response_model=DeviceDetail)
async def get_device(device_id: str, engine=Depends(get_engine)):
    """Stored record for *device_id*: per-feature hashes, never raw values."""
    record = await engine.get_device(device_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return DeviceDetail(**record.to_dict())


@router.delete("/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_device(device_id: str, engine=Depends(get_engine)):
    """Purge everything stored under *device_id*. Deleting twice is fine."""
    await engine.purge(device_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
