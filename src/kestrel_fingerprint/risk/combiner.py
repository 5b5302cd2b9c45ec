"""Fixed-weight rule evaluation over velocity, match score and detector output.

Every rule is independent: when its predicate holds it appends its name
to ``signals`` and adds its weight to an accumulator. The risk score is
the accumulator clamped to [0, 1], however many rules fire.

Rule order, and therefore signal order, is fixed: velocity rules in
configured order, then ``device_variant``, then the external detector
rules, then ``suspicious_activity``.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from kestrel_fingerprint.errors import ConfigurationError
from kestrel_fingerprint.fingerprint.matcher import Classification, Thresholds
from kestrel_fingerprint.risk.behavior import ActivitySummary
from kestrel_fingerprint.velocity.index import DIMENSIONS, VelocityWindowSet

# Derived metric: ip_events / max(1, distinct_ip) in the same window
EVENTS_PER_IP = "events_per_ip"
METRICS: tuple[str, ...] = DIMENSIONS + (EVENTS_PER_IP,)

CONFIDENCE_LEVELS: tuple[str, ...] = ("high", "medium", "low")


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def _check_weight(name: str, weight: float) -> None:
    if isinstance(weight, bool) or math.isnan(weight) or weight < 0.0:
        raise ConfigurationError(f"Weight for {name!r} must be a non-negative number, got {weight!r}")


def _levels(high: float, medium: float, low: float) -> Mapping[str, float]:
    return MappingProxyType({"high": high, "medium": medium, "low": low})


@dataclass(frozen=True)
class VelocityRule:
    """Fires when ``metric`` in ``window`` is strictly greater than ``threshold``."""

    name: str
    metric: str
    window: str
    threshold: float
    weight: float

    def __post_init__(self) -> None:
        if self.metric not in METRICS:
            raise ConfigurationError(f"Rule {self.name!r} uses unknown metric {self.metric!r}")
        _check_weight(self.name, self.weight)

    def value(self, velocity: VelocityWindowSet) -> float | None:
        """Return the metric value, or ``None`` if the window is not in *velocity*."""
        if not velocity.has_window(self.window):
            return None
        if self.metric == EVENTS_PER_IP:
            ip_events = velocity.get("ip_events", self.window) or 0
            distinct = velocity.get("distinct_ip", self.window) or 0
            return ip_events / max(1, distinct)
        return velocity.get(self.metric, self.window)

    def fires(self, velocity: VelocityWindowSet) -> bool:
        value = self.value(velocity)
        return value is not None and value > self.threshold


DEFAULT_VELOCITY_RULES: tuple[VelocityRule, ...] = (
    VelocityRule("rapid_ip_changes", "distinct_ip", "5m", 3, 0.3),
    VelocityRule("high_activity", "events", "5m", 50, 0.2),
    VelocityRule("distributed_activity", "distinct_ip", "1h", 10, 0.4),
    VelocityRule("account_sharing", "distinct_visitor_by_linked_id", "1h", 5, 0.3),
    VelocityRule("ip_sharing", EVENTS_PER_IP, "1h", 20, 0.2),
)


@dataclass(frozen=True)
class ExternalWeights:
    """Weights for detector-driven rules.

    ``vpn`` and ``proxy`` are keyed by detector confidence level.
    ``tampering_factor`` multiplies the reported anomaly score.
    """

    vpn: Mapping[str, float] = field(default_factory=lambda: _levels(0.3, 0.2, 0.1))
    proxy: Mapping[str, float] = field(default_factory=lambda: _levels(0.2, 0.15, 0.05))
    tampering_factor: float = 0.5
    anti_detect_browser: float = 0.3
    bot: float = 0.3
    virtual_machine: float = 0.1
    incognito: float = 0.05
    device_variant: float = 0.1
    suspicious_activity: float = 0.1

    def __post_init__(self) -> None:
        for label, levels in (("vpn", self.vpn), ("proxy", self.proxy)):
            missing = set(CONFIDENCE_LEVELS) - set(levels)
            if missing:
                raise ConfigurationError(f"{label} weights missing levels: {sorted(missing)}")
            for level, weight in levels.items():
                _check_weight(f"{label}.{level}", weight)
        for name in (
            "tampering_factor",
            "anti_detect_browser",
            "bot",
            "virtual_machine",
            "incognito",
            "device_variant",
            "suspicious_activity",
        ):
            _check_weight(name, getattr(self, name))


@dataclass(frozen=True)
class RiskConfig:
    velocity_rules: tuple[VelocityRule, ...] = DEFAULT_VELOCITY_RULES
    external: ExternalWeights = field(default_factory=ExternalWeights)
    thresholds: Thresholds = field(default_factory=Thresholds)

    def check_windows(self, windows: Iterable[str]) -> None:
        """Raise ``ConfigurationError`` if a rule refers to an unconfigured window."""
        configured = set(windows)
        for rule in self.velocity_rules:
            if rule.window not in configured:
                raise ConfigurationError(
                    f"Rule {rule.name!r} uses window {rule.window!r}, "
                    f"configured windows are {sorted(configured)}"
                )


@dataclass(frozen=True)
class RiskAssessment:
    risk_score: float
    signals: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"risk_score": self.risk_score, "signals": list(self.signals)}


# ---------------------------------------------------------------------------
# External detector values
# ---------------------------------------------------------------------------

def _level(value: Any) -> str | None:
    """Map a detector value to a confidence level, or ``None`` if not detected.

    ``True`` without a level counts as ``"low"``.
    """
    if value is True:
        return "low"
    if isinstance(value, str):
        level = value.strip().lower()
        return level if level in CONFIDENCE_LEVELS else None
    return None


def _anomaly(value: Any) -> float:
    if value is True:
        return 1.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if math.isnan(value):
            return 0.0
        return min(1.0, max(0.0, float(value)))
    return 0.0


# ---------------------------------------------------------------------------
# Combiner
# ---------------------------------------------------------------------------

def combine(
    velocity: VelocityWindowSet,
    match_score: float,
    external: Mapping[str, Any] | None = None,
    config: RiskConfig | None = None,
    *,
    behavior: ActivitySummary | None = None,
) -> RiskAssessment:
    """Evaluate every risk rule and return the clamped score with fired signals.

    Parameters
    ----------
    velocity:
        Window counts for the visitor. Rules on windows it lacks never fire.
    match_score:
        Similarity score of the best stored match (0.0 for a new device).
    external:
        Detector results keyed by ``vpn``, ``proxy`` (bool or confidence
        level), ``tampering`` (anomaly score in [0, 1] or bool),
        ``anti_detect_browser``, ``bot``, ``virtual_machine`` and
        ``incognito`` (bool). Unknown keys are ignored.
    config:
        Rule set and weights. Defaults to the built-in policy.
    behavior:
        Session interaction summary, if the caller tracks one.
    """
    config = config or RiskConfig()
    external = external or {}
    weights = config.external

    signals: list[str] = []
    accumulator = 0.0

    def fire(name: str, weight: float) -> None:
        nonlocal accumulator
        signals.append(name)
        accumulator += weight

    for rule in config.velocity_rules:
        if rule.fires(velocity):
            fire(rule.name, rule.weight)

    if config.thresholds.classify(match_score) is Classification.DEVICE_VARIANT:
        fire("device_variant", weights.device_variant)

    vpn = _level(external.get("vpn"))
    if vpn is not None:
        fire("vpn_detected", weights.vpn[vpn])

    proxy = _level(external.get("proxy"))
    if proxy is not None:
        fire("proxy_detected", weights.proxy[proxy])

    anomaly = _anomaly(external.get("tampering"))
    if anomaly > 0.0:
        fire("tampering_detected", anomaly * weights.tampering_factor)

    for key, name, weight in (
        ("anti_detect_browser", "anti_detect_browser", weights.anti_detect_browser),
        ("bot", "bot_detected", weights.bot),
        ("virtual_machine", "virtual_machine", weights.virtual_machine),
        ("incognito", "incognito", weights.incognito),
    ):
        if external.get(key) is True:
            fire(name, weight)

    if behavior is not None and behavior.suspicious:
        fire("suspicious_activity", weights.suspicious_activity)

    return RiskAssessment(risk_score=min(1.0, max(0.0, accumulator)), signals=tuple(signals))
