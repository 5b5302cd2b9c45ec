"""Configuration loader for the Kestrel fingerprint service.

Loads settings from a YAML file with built-in defaults. Supports environment
variable overrides using the KESTREL_ prefix with double-underscore
nesting (e.g., KESTREL_MATCHING__HIGH_THRESHOLD=0.9).

All validation happens here, at startup: a bad weight, threshold, window or
secret raises ``ConfigurationError`` from ``load_settings`` and never
surfaces at request time.
"""

from __future__ import annotations

import logging
import os
import pathlib
from datetime import timedelta
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from kestrel_fingerprint.errors import ConfigurationError
from kestrel_fingerprint.fingerprint.identity import MIN_SECRET_BYTES
from kestrel_fingerprint.fingerprint.matcher import Thresholds
from kestrel_fingerprint.fingerprint.schema import DEFAULT_INDEX_KEYS, SIGNAL_SCHEMA, FeatureWeights
from kestrel_fingerprint.geo.providers import PROVIDER_TYPES
from kestrel_fingerprint.risk.combiner import (
    DEFAULT_VELOCITY_RULES,
    ExternalWeights,
    RiskConfig,
    VelocityRule,
)

logger = logging.getLogger(__name__)

# Placeholder shipped in defaults; fine for tests, warned about in production
DEFAULT_SECRET = "kestrel-development-secret-change-me"


# ---------------------------------------------------------------------------
# Config sub-models
# ---------------------------------------------------------------------------

class ServiceConfig(BaseModel):
    name: str = "Kestrel Fingerprint"
    host: str = "127.0.0.1"
    port: int = 8600
    log_level: str = "INFO"
    data_dir: str = "./data"


class IdentityConfig(BaseModel):
    secret: str = DEFAULT_SECRET


class MatchingConfig(BaseModel):
    high_threshold: float = 0.85
    low_threshold: float = 0.60
    score_history_cap: int = Field(default=50, ge=1)
    index_keys: list[str] = Field(default_factory=lambda: list(DEFAULT_INDEX_KEYS))
    weights: dict[str, float] = Field(default_factory=dict)


class VelocityConfig(BaseModel):
    windows: dict[str, float] = Field(
        default_factory=lambda: {"5m": 300, "1h": 3600, "24h": 86400}
    )
    retention_seconds: float = Field(default=86400, gt=0)
    max_events: int = Field(default=100_000, ge=1)
    compaction_interval_seconds: float = Field(default=3600, ge=0)


class VelocityRuleConfig(BaseModel):
    name: str
    metric: str
    window: str
    threshold: float
    weight: float


class LevelWeightsConfig(BaseModel):
    high: float
    medium: float
    low: float


class ExternalWeightsConfig(BaseModel):
    vpn: LevelWeightsConfig = Field(
        default_factory=lambda: LevelWeightsConfig(high=0.3, medium=0.2, low=0.1)
    )
    proxy: LevelWeightsConfig = Field(
        default_factory=lambda: LevelWeightsConfig(high=0.2, medium=0.15, low=0.05)
    )
    tampering_factor: float = 0.5
    anti_detect_browser: float = 0.3
    bot: float = 0.3
    virtual_machine: float = 0.1
    incognito: float = 0.05
    device_variant: float = 0.1
    suspicious_activity: float = 0.1


class RiskRulesConfig(BaseModel):
    velocity_rules: list[VelocityRuleConfig] = Field(
        default_factory=lambda: [
            VelocityRuleConfig(
                name=r.name,
                metric=r.metric,
                window=r.window,
                threshold=r.threshold,
                weight=r.weight,
            )
            for r in DEFAULT_VELOCITY_RULES
        ]
    )
    external: ExternalWeightsConfig = Field(default_factory=ExternalWeightsConfig)


class GeolocationConfig(BaseModel):
    enabled: bool = False
    providers: list[str] = Field(
        default_factory=lambda: ["ip-api.com", "ipapi.co", "ipinfo.io"]
    )
    timeout_seconds: float = Field(default=2.0, gt=0)
    cache_ttl_seconds: float = Field(default=3600, ge=0)
    api_keys: dict[str, str] = Field(default_factory=dict)


class StoreConfig(BaseModel):
    backend: Literal["memory", "sqlite"] = "memory"
    path: str = "kestrel.db"


class CollectionConfig(BaseModel):
    deadline_seconds: float = Field(default=1.5, gt=0)


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseModel):
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    velocity: VelocityConfig = Field(default_factory=VelocityConfig)
    risk: RiskRulesConfig = Field(default_factory=RiskRulesConfig)
    geolocation: GeolocationConfig = Field(default_factory=GeolocationConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    collection: CollectionConfig = Field(default_factory=CollectionConfig)

    # -- Derived runtime objects ------------------------------------------

    def feature_weights(self) -> FeatureWeights:
        return FeatureWeights.with_overrides(self.matching.weights)

    def thresholds(self) -> Thresholds:
        return Thresholds(high=self.matching.high_threshold, low=self.matching.low_threshold)

    def velocity_windows(self) -> dict[str, timedelta]:
        return {name: timedelta(seconds=secs) for name, secs in self.velocity.windows.items()}

    def risk_config(self) -> RiskConfig:
        ext = self.risk.external
        return RiskConfig(
            velocity_rules=tuple(
                VelocityRule(
                    name=r.name,
                    metric=r.metric,
                    window=r.window,
                    threshold=r.threshold,
                    weight=r.weight,
                )
                for r in self.risk.velocity_rules
            ),
            external=ExternalWeights(
                vpn=ext.vpn.model_dump(),
                proxy=ext.proxy.model_dump(),
                tampering_factor=ext.tampering_factor,
                anti_detect_browser=ext.anti_detect_browser,
                bot=ext.bot,
                virtual_machine=ext.virtual_machine,
                incognito=ext.incognito,
                device_variant=ext.device_variant,
                suspicious_activity=ext.suspicious_activity,
            ),
            thresholds=self.thresholds(),
        )

    def validate_runtime(self) -> None:
        """Cross-field checks. Raises ``ConfigurationError``."""
        if len(self.identity.secret.encode("utf-8")) < MIN_SECRET_BYTES:
            raise ConfigurationError(
                f"identity.secret must be at least {MIN_SECRET_BYTES} bytes"
            )
        if self.identity.secret == DEFAULT_SECRET:
            logger.warning("Using the built-in development identity secret")

        unknown = sorted(set(self.matching.weights) - set(SIGNAL_SCHEMA))
        if unknown:
            raise ConfigurationError(f"matching.weights has keys outside the schema: {unknown}")
        unknown = sorted(set(self.matching.index_keys) - set(SIGNAL_SCHEMA))
        if unknown:
            raise ConfigurationError(f"matching.index_keys outside the schema: {unknown}")

        self.feature_weights()
        windows = self.velocity_windows()
        if not windows:
            raise ConfigurationError("velocity.windows must not be empty")
        for name, span in windows.items():
            if span <= timedelta(0):
                raise ConfigurationError(f"velocity window {name!r} must be positive")

        risk = self.risk_config()
        risk.check_windows(windows)

        unknown = sorted(set(self.geolocation.providers) - set(PROVIDER_TYPES))
        if unknown:
            raise ConfigurationError(f"Unknown geolocation providers: {unknown}")


# ---------------------------------------------------------------------------
# Deep merge helper
# ---------------------------------------------------------------------------

def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *override* into *base*, returning a new dict."""
    merged = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

_ENV_PREFIX = "KESTREL_"


def _coerce(value: str) -> Any:
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def _collect_env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Collect KESTREL_* env vars and build a nested dict.

    Double-underscore separates nesting levels.
    Example: KESTREL_VELOCITY__MAX_EVENTS=5000
    becomes  {"velocity": {"max_events": 5000}}
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for key, value in environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        parts = key[len(_ENV_PREFIX) :].lower().split("__")
        current = overrides
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = _coerce(value)
    return overrides


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_BUILTIN_DEFAULTS_PATH = pathlib.Path(__file__).resolve().parents[3] / "config" / "defaults.yaml"


def load_settings(
    config_path: pathlib.Path | None = None,
    *,
    environ: dict[str, str] | None = None,
) -> Settings:
    """Load settings with layered precedence: defaults < file < env vars.

    Parameters
    ----------
    config_path:
        Path to a YAML config file. If ``None`` the bundled defaults file
        is used when present; a missing file means built-in defaults.
    environ:
        Environment mapping to read overrides from. Defaults to ``os.environ``.

    Raises
    ------
    ConfigurationError:
        If the merged configuration fails validation.
    """
    base: dict[str, Any] = {}

    path = config_path if config_path is not None else _BUILTIN_DEFAULTS_PATH
    if path.exists():
        with open(path) as fh:
            try:
                file_data = yaml.safe_load(fh)
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
        if isinstance(file_data, dict):
            base = _deep_merge(base, file_data)

    env_overrides = _collect_env_overrides(environ)
    if env_overrides:
        base = _deep_merge(base, env_overrides)

    try:
        settings = Settings(**base)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc

    settings.validate_runtime()
    return settings
