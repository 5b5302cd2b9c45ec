"""Identify route: run the full fingerprint pipeline for one request."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import AwareDatetime, BaseModel, Field

from kestrel_fingerprint.api.deps import get_engine, get_settings
from kestrel_fingerprint.engine import IdentifyRequest, IdentifyResult
from kestrel_fingerprint.network.tls import ClientHello
from kestrel_fingerprint.risk.behavior import ActivitySummary, InteractionCounters
from kestrel_fingerprint.velocity.index import utcnow

router = APIRouter(tags=["identify"])


# ---------- Request/Response models ----------

class ClientHelloBody(BaseModel):
    version: int
    cipher_suites: list[int] = Field(default_factory=list)
    extensions: list[int] = Field(default_factory=list)
    elliptic_curves: list[int] = Field(default_factory=list)
    point_formats: list[int] = Field(default_factory=list)
    server_name: Optional[str] = None
    alpn: list[str] = Field(default_factory=list)

    def to_client_hello(self) -> ClientHello:
        return ClientHello(
            version=self.version,
            cipher_suites=tuple(self.cipher_suites),
            extensions=tuple(self.extensions),
            elliptic_curves=tuple(self.elliptic_curves),
            point_formats=tuple(self.point_formats),
            server_name=self.server_name,
            alpn=tuple(self.alpn),
        )


class InteractionBody(BaseModel):
    kind: Literal["mouse", "keyboard", "touch", "scroll"]
    at: AwareDatetime


class BehaviorBody(BaseModel):
    started_at: AwareDatetime
    interactions: list[InteractionBody] = Field(default_factory=list)

    def summarize(self, now: datetime) -> ActivitySummary:
        counters = InteractionCounters(self.started_at)
        for item in self.interactions:
            counters.record(item.kind, item.at)
        return counters.summarize(now)


class IdentifyBody(BaseModel):
    signals: dict[str, Any] = Field(default_factory=dict)
    ip: Optional[str] = None
    linked_id: Optional[str] = None
    url: Optional[str] = None
    event_type: Optional[str] = None
    client_hello: Optional[ClientHelloBody] = None
    external: dict[str, Any] = Field(default_factory=dict)
    behavior: Optional[BehaviorBody] = None
    timestamp: Optional[AwareDatetime] = None


class RiskBody(BaseModel):
    risk_score: float
    signals: list[str]


class NetworkBody(BaseModel):
    browser: str
    browser_version: str
    bot: bool
    bot_type: Optional[str] = None
    proxy: bool
    proxy_type: str
    ja3_hash: Optional[str] = None


class IdentifyResponse(BaseModel):
    visitor_id: str
    device_id: str
    classification: str
    match_score: float
    confidence: float
    confidence_revision: str
    first_seen_at: datetime
    last_seen_at: datetime
    velocity: dict[str, dict[str, int]]
    risk: RiskBody
    network: NetworkBody
    geo: Optional[dict[str, Any]] = None


def _response(result: IdentifyResult) -> IdentifyResponse:
    network = result.network
    return IdentifyResponse(
        visitor_id=result.visitor_id,
        device_id=result.device_id,
        classification=result.match.classification.value,
        match_score=result.match.score,
        confidence=result.build.confidence.score,
        confidence_revision=result.build.confidence.revision,
        first_seen_at=result.record.first_seen_at,
        last_seen_at=result.record.last_seen_at,
        velocity=result.velocity.to_dict(),
        risk=RiskBody(**result.risk.to_dict()),
        network=NetworkBody(
            browser=network.browser.browser,
            browser_version=network.browser.version,
            bot=network.bot.is_bot or network.ja3_is_bot,
            bot_type=network.bot.bot_type,
            proxy=network.proxy.is_proxy,
            proxy_type=network.proxy.proxy_type,
            ja3_hash=network.ja3_hash,
        ),
        geo=result.geo.to_dict() if result.geo else None,
    )


# ---------- Routes ----------

@router.post("/identify", response_model=IdentifyResponse)
async def identify(
    body: IdentifyBody,
    request: Request,
    engine=Depends(get_engine),
    settings=Depends(get_settings),
):
    """Identify the device behind this request and score its risk.

    The request's own headers feed the network signals; ``ip`` defaults to
    the peer address.
    """
    now = body.timestamp or utcnow()
    peer = request.client.host if request.client else ""
    behavior = body.behavior.summarize(now) if body.behavior else None

    result = await engine.identify(
        IdentifyRequest(
            signals=body.signals,
            ip=body.ip or peer,
            linked_id=body.linked_id,
            url=body.url,
            event_type=body.event_type,
            headers=request.headers.items(),
            client_hello=body.client_hello.to_client_hello() if body.client_hello else None,
            external=body.external,
            behavior=behavior,
            timestamp=now,
        ),
        deadline=settings.collection.deadline_seconds,
    )
    return _response(result)
