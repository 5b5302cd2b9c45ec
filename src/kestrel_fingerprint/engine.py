"""Fingerprint pipeline: canonicalize, identify, match, record, score.

``FingerprintEngine`` exposes each stage on its own and ``identify`` runs
the whole request path:

    signals + headers + TLS -> canonical vector -> identity + confidence
    -> best stored match -> upsert -> velocity append + query -> risk

Geolocation is the only external lookup on that path. It runs alongside
the store work and is abandoned at the caller's deadline, in which case
the event is recorded with an unknown country.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from kestrel_fingerprint.errors import ConfigurationError, MalformedEvent
from kestrel_fingerprint.fingerprint.canonical import CanonicalVector, canonicalize
from kestrel_fingerprint.fingerprint.confidence import Confidence, score_confidence
from kestrel_fingerprint.fingerprint.identity import Identity, derive_identity, secret_bytes, visitor_id
from kestrel_fingerprint.fingerprint.matcher import MatchResult, Thresholds, best_match
from kestrel_fingerprint.fingerprint.schema import SCHEMA_VERSION, SIGNAL_SCHEMA, FeatureWeights
from kestrel_fingerprint.geo.providers import GeoResult
from kestrel_fingerprint.geo.service import GeolocationService, is_datacenter_asn
from kestrel_fingerprint.network.headers import (
    BotVerdict,
    BrowserGuess,
    HeaderItems,
    HeaderSnapshot,
    ProxyHeaders,
    ProxyVerdict,
    detect_bot,
    detect_browser,
    detect_proxy,
)
from kestrel_fingerprint.network.tls import ClientHello, ja3, ja3_from_headers, is_bot_ja3
from kestrel_fingerprint.risk.behavior import ActivitySummary
from kestrel_fingerprint.risk.combiner import RiskAssessment, RiskConfig, combine
from kestrel_fingerprint.store.base import FingerprintRecord, FingerprintStore
from kestrel_fingerprint.velocity.index import (
    VelocityIndex,
    VelocityWindowSet,
    VisitorEvent,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE = 1.5  # seconds


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BuildResult:
    """Canonical vector with its derived identity and confidence."""

    vector: CanonicalVector
    identity: Identity
    confidence: Confidence

    @property
    def device_id(self) -> str:
        return self.identity.device_id

    @property
    def feature_hashes(self) -> dict[str, str]:
        return self.identity.feature_hashes


@dataclass(frozen=True)
class NetworkSignals:
    """What the request itself says about the client."""

    headers: HeaderSnapshot
    proxy: ProxyVerdict
    bot: BotVerdict
    browser: BrowserGuess
    ja3_hash: str | None = None
    client_ip: str | None = None

    @property
    def ja3_is_bot(self) -> bool:
        return self.ja3_hash is not None and is_bot_ja3(self.ja3_hash)


@dataclass(frozen=True)
class IdentifyRequest:
    """Everything ``identify`` needs about one request.

    Parameters
    ----------
    signals:
        Raw signal bag from the client collector.
    ip:
        Peer address as seen by the service.
    headers:
        Request headers in received order.
    client_hello:
        Parsed TLS ClientHello, when a terminating proxy forwards one.
    external:
        Detector results for the risk combiner. Values derived from the
        request only fill keys the caller left out.
    behavior:
        Interaction summary for the caller's session, if tracked.
    """

    signals: Mapping[str, Any] = field(default_factory=dict)
    ip: str = ""
    linked_id: str | None = None
    url: str | None = None
    event_type: str | None = None
    headers: HeaderItems = ()
    client_hello: ClientHello | None = None
    external: Mapping[str, Any] = field(default_factory=dict)
    behavior: ActivitySummary | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class IdentifyResult:
    visitor_id: str
    build: BuildResult
    match: MatchResult
    record: FingerprintRecord
    velocity: VelocityWindowSet
    risk: RiskAssessment
    network: NetworkSignals
    geo: GeoResult | None = None
    timestamp: datetime | None = None

    @property
    def device_id(self) -> str:
        return self.record.device_id


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class FingerprintEngine:
    """Owns the pure pipeline configuration and the two stateful backends.

    Raises ``ConfigurationError`` on construction if the secret is too short
    or a risk rule refers to a window the velocity index does not compute.
    """

    def __init__(
        self,
        *,
        store: FingerprintStore,
        velocity: VelocityIndex,
        secret: str | bytes,
        weights: FeatureWeights | None = None,
        thresholds: Thresholds | None = None,
        risk_config: RiskConfig | None = None,
        geolocation: GeolocationService | None = None,
        schema: tuple[str, ...] = SIGNAL_SCHEMA,
        schema_version: str = SCHEMA_VERSION,
        expected_keys: Iterable[str] | None = None,
        retention: timedelta = timedelta(hours=24),
    ) -> None:
        self._secret = secret_bytes(secret)
        self._store = store
        self._velocity = velocity
        self._weights = weights or FeatureWeights.default()
        self._thresholds = thresholds or Thresholds()
        self._risk_config = risk_config or RiskConfig(thresholds=self._thresholds)
        self._geolocation = geolocation
        self._schema = schema
        self._schema_version = schema_version
        self._expected_keys = tuple(expected_keys) if expected_keys is not None else schema
        self._retention = retention

        self._risk_config.check_windows(velocity.windows)
        if self._risk_config.thresholds != self._thresholds:
            raise ConfigurationError("Risk and matching thresholds must agree")

    @property
    def store(self) -> FingerprintStore:
        return self._store

    @property
    def velocity(self) -> VelocityIndex:
        return self._velocity

    # ------------------------------------------------------------------
    # Pure stages
    # ------------------------------------------------------------------

    def build_canonical_and_identity(self, bag: Mapping[str, Any] | None) -> BuildResult:
        vector = canonicalize(bag, self._schema, self._schema_version)
        identity = derive_identity(vector, self._secret)
        score = score_confidence(vector, self._expected_keys, self._weights)
        return BuildResult(vector=vector, identity=identity, confidence=Confidence(score=score))

    def compute_risk(
        self,
        velocity: VelocityWindowSet,
        match_score: float,
        external: Mapping[str, Any] | None = None,
        *,
        behavior: ActivitySummary | None = None,
    ) -> RiskAssessment:
        return combine(velocity, match_score, external, self._risk_config, behavior=behavior)

    def network_signals(
        self, headers: HeaderItems, client_hello: ClientHello | None = None
    ) -> NetworkSignals:
        items = list(headers.items()) if isinstance(headers, Mapping) else list(headers)
        snapshot = HeaderSnapshot.from_headers(items)
        proxy_headers = ProxyHeaders.from_headers(items)
        ja3_hash = ja3(client_hello).ja3_hash if client_hello is not None else None
        if ja3_hash is None:
            ja3_hash = ja3_from_headers(_header_map(items))
        return NetworkSignals(
            headers=snapshot,
            proxy=detect_proxy(proxy_headers),
            bot=detect_bot(snapshot),
            browser=detect_browser(snapshot),
            ja3_hash=ja3_hash,
            client_ip=proxy_headers.client_ip(),
        )

    # ------------------------------------------------------------------
    # Stateful stages
    # ------------------------------------------------------------------

    async def classify(self, feature_hashes: Mapping[str, str]) -> MatchResult:
        """Best match among stored candidates. ``StoreUnavailable`` propagates."""
        candidates = await self._store.lookup_candidates(feature_hashes)
        return best_match(feature_hashes, candidates, self._weights, self._thresholds)

    async def upsert(
        self,
        build: BuildResult,
        match: MatchResult,
        *,
        now: datetime | None = None,
        linked_id: str | None = None,
    ) -> FingerprintRecord:
        return await self._store.upsert(
            build.device_id,
            build.feature_hashes,
            match,
            now=now or utcnow(),
            linked_id=linked_id,
        )

    async def record_event(self, event: VisitorEvent) -> None:
        await self._velocity.record(event)

    async def query_velocity(
        self,
        visitor: str,
        now: datetime | None = None,
        windows: Mapping[str, timedelta] | None = None,
    ) -> VelocityWindowSet:
        return await self._velocity.query(visitor, windows, now or utcnow())

    async def get_device(self, device_id: str) -> FingerprintRecord | None:
        return await self._store.get(device_id)

    async def purge(self, device_id: str) -> None:
        """Delete everything stored under *device_id*. Idempotent."""
        await self._store.delete(device_id)
        logger.info("Purged device %s", device_id[:12])

    async def compact(self, now: datetime | None = None) -> int:
        return await self._velocity.compact(now or utcnow(), self._retention)

    # ------------------------------------------------------------------
    # Full pipeline
    # ------------------------------------------------------------------

    async def identify(
        self, request: IdentifyRequest, *, deadline: float | None = DEFAULT_DEADLINE
    ) -> IdentifyResult:
        """Run the full request path.

        *deadline* bounds the external lookups, in seconds from the call.
        Store failures propagate as ``StoreUnavailable``; a malformed
        event propagates as ``MalformedEvent``.
        """
        loop = asyncio.get_running_loop()
        deadline_at = loop.time() + deadline if deadline is not None else None
        now = request.timestamp or utcnow()
        if now.tzinfo is None or now.utcoffset() is None:
            raise MalformedEvent("identify timestamp must be timezone-aware", field="timestamp")

        network = self.network_signals(request.headers, request.client_hello)
        ip = request.ip or network.client_ip or ""

        geo_task: asyncio.Task[GeoResult | None] | None = None
        if self._geolocation is not None and ip:
            geo_task = asyncio.create_task(self._geolocation.lookup(ip))

        try:
            bag = merge_network_signals(request.signals, network)
            build = self.build_canonical_and_identity(bag)
            match = await self.classify(build.feature_hashes)
            record = await self.upsert(build, match, now=now, linked_id=request.linked_id)
            geo = await _await_until(geo_task, deadline_at)
        finally:
            if geo_task is not None and not geo_task.done():
                geo_task.cancel()

        visitor = visitor_id(record.device_id)
        await self.record_event(
            VisitorEvent(
                visitor_id=visitor,
                ip=ip,
                timestamp=now,
                linked_id=request.linked_id,
                country=geo.country_code if geo else None,
                url=request.url,
                event_type=request.event_type,
            )
        )
        velocity = await self.query_velocity(visitor, now)

        external = derive_external(request.external, network, geo)
        risk = self.compute_risk(velocity, match.score, external, behavior=request.behavior)

        logger.debug(
            "Identified %s as %s (score=%.3f, risk=%.2f)",
            visitor,
            match.classification.value,
            match.score,
            risk.risk_score,
        )
        return IdentifyResult(
            visitor_id=visitor,
            build=build,
            match=match,
            record=record,
            velocity=velocity,
            risk=risk,
            network=network,
            geo=geo,
            timestamp=now,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _header_map(headers: HeaderItems) -> dict[str, str]:
    pairs = headers.items() if isinstance(headers, Mapping) else headers
    return {str(k).lower(): str(v) for k, v in pairs if v is not None}


def merge_network_signals(
    signals: Mapping[str, Any], network: NetworkSignals
) -> dict[str, Any]:
    """Overlay server-observed network values on the client's signal bag.

    Header-derived keys are only set when the request actually carried
    headers; a client cannot supply its own ``tls_ja3`` or ``header_hash``.
    """
    bag = dict(signals)
    for key in ("user_agent", "accept_language", "header_hash", "tls_ja3"):
        bag.pop(key, None)

    if network.headers.order:
        if network.headers.user_agent:
            bag["user_agent"] = network.headers.user_agent
        if network.headers.accept_language:
            bag["accept_language"] = network.headers.accept_language
        bag["header_hash"] = network.headers.header_hash()
    if network.ja3_hash:
        bag["tls_ja3"] = network.ja3_hash
    return bag


def derive_external(
    external: Mapping[str, Any],
    network: NetworkSignals,
    geo: GeoResult | None,
) -> dict[str, Any]:
    """Fill detector keys the caller left out from what the request shows."""
    merged = dict(external)
    if "proxy" not in merged and network.proxy.is_proxy:
        merged["proxy"] = network.proxy.confidence
    if "bot" not in merged and (network.bot.is_bot or network.ja3_is_bot):
        merged["bot"] = True
    if "vpn" not in merged and geo is not None and (geo.hosting or is_datacenter_asn(geo.asn_name)):
        merged["vpn"] = "low"
    return merged


async def _await_until(
    task: asyncio.Task[GeoResult | None] | None, deadline_at: float | None
) -> GeoResult | None:
    if task is None:
        return None
    try:
        async with asyncio.timeout_at(deadline_at):
            return await task
    except TimeoutError:
        logger.debug("Geolocation abandoned at deadline")
        return None
