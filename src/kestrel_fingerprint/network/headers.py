"""HTTP request header signals.

Turns the raw header list of an incoming request into:

- a ``HeaderSnapshot`` with the header order and the values that vary by
  browser, plus a stable ``header_hash()``
- a proxy verdict from forwarding headers
- a bot verdict from the user agent and missing-header heuristics
- a best-effort browser family guess
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

# Header names that feed the snapshot, lower-case
_SELECTED: tuple[str, ...] = (
    "user-agent",
    "accept",
    "accept-language",
    "accept-encoding",
    "connection",
    "upgrade-insecure-requests",
    "sec-fetch-site",
    "sec-fetch-mode",
    "sec-fetch-user",
    "sec-fetch-dest",
    "sec-ch-ua",
    "sec-ch-ua-mobile",
    "sec-ch-ua-platform",
    "dnt",
    "cache-control",
    "pragma",
    "referer",
    "origin",
)

HeaderItems = Mapping[str, str | list[str] | None] | Iterable[tuple[str, str]]


def _items(headers: HeaderItems) -> list[tuple[str, str]]:
    """Return ``(lower-case name, value)`` pairs in received order."""
    pairs = headers.items() if isinstance(headers, Mapping) else headers
    out: list[tuple[str, str]] = []
    for name, value in pairs:
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        out.append((str(name).lower(), "" if value is None else str(value)))
    return out


@dataclass(frozen=True)
class HeaderSnapshot:
    """Selected request header values and the order headers arrived in."""

    values: Mapping[str, str] = field(default_factory=dict)
    order: tuple[str, ...] = ()

    @classmethod
    def from_headers(cls, headers: HeaderItems) -> HeaderSnapshot:
        values: dict[str, str] = {}
        order: list[str] = []
        for name, value in _items(headers):
            order.append(name)
            if name in _SELECTED and value:
                # Repeated headers fold into one comma-separated value (RFC 9110)
                values[name] = f"{values[name]}, {value}" if name in values else value
        return cls(values=values, order=tuple(order))

    def get(self, name: str) -> str:
        return self.values.get(name.lower(), "")

    @property
    def user_agent(self) -> str:
        return self.get("user-agent")

    @property
    def accept_language(self) -> str:
        return self.get("accept-language")

    @property
    def header_count(self) -> int:
        return len(self.order)

    def header_hash(self) -> str:
        """SHA-256 hex digest of the browser-distinguishing values and header order."""
        canonical = json.dumps(
            {
                "user_agent": self.get("user-agent"),
                "accept": self.get("accept"),
                "accept_language": self.get("accept-language"),
                "accept_encoding": self.get("accept-encoding"),
                "sec_headers": [
                    self.get("sec-ch-ua"),
                    self.get("sec-ch-ua-mobile"),
                    self.get("sec-ch-ua-platform"),
                    self.get("sec-fetch-site"),
                    self.get("sec-fetch-mode"),
                ],
                "header_order": list(self.order),
            },
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Proxy detection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProxyHeaders:
    x_forwarded_for: str | None = None
    x_real_ip: str | None = None
    cf_connecting_ip: str | None = None
    true_client_ip: str | None = None
    x_client_ip: str | None = None
    via: str | None = None
    forwarded: str | None = None
    x_forwarded_proto: str | None = None
    x_forwarded_host: str | None = None
    x_proxy_id: str | None = None

    @classmethod
    def from_headers(cls, headers: HeaderItems) -> ProxyHeaders:
        found = {name: value for name, value in _items(headers) if value}
        return cls(
            x_forwarded_for=found.get("x-forwarded-for"),
            x_real_ip=found.get("x-real-ip"),
            cf_connecting_ip=found.get("cf-connecting-ip"),
            true_client_ip=found.get("true-client-ip"),
            x_client_ip=found.get("x-client-ip"),
            via=found.get("via"),
            forwarded=found.get("forwarded"),
            x_forwarded_proto=found.get("x-forwarded-proto"),
            x_forwarded_host=found.get("x-forwarded-host"),
            x_proxy_id=found.get("x-proxy-id"),
        )

    def client_ip(self) -> str | None:
        """First client address reported by a fronting proxy, if any."""
        for candidate in (self.cf_connecting_ip, self.true_client_ip, self.x_real_ip):
            if candidate:
                return candidate.strip()
        if self.x_forwarded_for:
            first = self.x_forwarded_for.split(",")[0].strip()
            return first or None
        return None


@dataclass(frozen=True)
class ProxyVerdict:
    is_proxy: bool
    proxy_type: str  # transparent | anonymous | elite | none
    indicators: tuple[str, ...] = ()

    @property
    def confidence(self) -> str | None:
        """Detector confidence level consumed by the risk combiner."""
        if not self.is_proxy:
            return None
        return {"transparent": "high", "anonymous": "medium"}.get(self.proxy_type, "low")


def detect_proxy(proxy: ProxyHeaders) -> ProxyVerdict:
    """Classify the request's proxy exposure from forwarding headers.

    Transparent proxies reveal both themselves and the client (Via or
    X-Forwarded-For); anonymous ones announce themselves with X-Proxy-Id;
    anything else that forwarded is elite.
    """
    indicators: list[str] = []
    if proxy.x_forwarded_for:
        indicators.append("X-Forwarded-For present")
    if proxy.via:
        indicators.append("Via header present")
    if proxy.forwarded:
        indicators.append("Forwarded header present")
    if proxy.x_real_ip:
        indicators.append("X-Real-IP present")

    if not indicators:
        return ProxyVerdict(is_proxy=False, proxy_type="none")

    if proxy.via or proxy.x_forwarded_for:
        proxy_type = "transparent"
    elif proxy.x_proxy_id:
        proxy_type = "anonymous"
    else:
        proxy_type = "elite"
    return ProxyVerdict(is_proxy=True, proxy_type=proxy_type, indicators=tuple(indicators))


# ---------------------------------------------------------------------------
# Bot detection
# ---------------------------------------------------------------------------

_BOT_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), name)
    for pattern, name in (
        (r"googlebot", "Googlebot"),
        (r"bingbot", "Bingbot"),
        (r"baiduspider", "Baiduspider"),
        (r"yandexbot", "YandexBot"),
        (r"slurp", "Yahoo Slurp"),
        (r"duckduckbot", "DuckDuckBot"),
        (r"facebookexternalhit", "Facebook"),
        (r"twitterbot", "TwitterBot"),
        (r"linkedinbot", "LinkedInBot"),
        (r"whatsapp", "WhatsApp"),
        (r"telegrambot", "Telegram"),
        (r"curl", "cURL"),
        (r"wget", "wget"),
        (r"python-requests", "Python Requests"),
        (r"python-httpx", "Python httpx"),
        (r"axios", "Axios"),
        (r"node-fetch", "node-fetch"),
        (r"go-http-client", "Go HTTP Client"),
        (r"selenium", "Selenium"),
        (r"puppeteer", "Puppeteer"),
        (r"playwright", "Playwright"),
        (r"phantomjs", "PhantomJS"),
        (r"headlesschrome", "Headless Chrome"),
    )
)

KNOWN_BOT_CONFIDENCE = 0.95
HEURISTIC_BOT_CONFIDENCE = 0.7
HEURISTIC_HUMAN_CONFIDENCE = 0.3
MIN_BROWSER_HEADERS = 5


@dataclass(frozen=True)
class BotVerdict:
    is_bot: bool
    bot_type: str | None
    confidence: float
    indicators: tuple[str, ...] = ()


def detect_bot(snapshot: HeaderSnapshot) -> BotVerdict:
    """Known automation user agents first, then missing-header heuristics."""
    ua = snapshot.user_agent
    for pattern, name in _BOT_PATTERNS:
        if pattern.search(ua):
            return BotVerdict(is_bot=True, bot_type=name, confidence=KNOWN_BOT_CONFIDENCE)

    indicators: list[str] = []
    if not snapshot.get("accept"):
        indicators.append("no-accept")
    if not snapshot.get("accept-language"):
        indicators.append("no-accept-language")
    if not snapshot.get("accept-encoding"):
        indicators.append("no-accept-encoding")
    if snapshot.header_count < MIN_BROWSER_HEADERS:
        indicators.append("few-headers")

    if len(indicators) > 2:
        return BotVerdict(
            is_bot=True,
            bot_type="Unknown Bot",
            confidence=HEURISTIC_BOT_CONFIDENCE,
            indicators=tuple(indicators),
        )
    return BotVerdict(
        is_bot=False,
        bot_type=None,
        confidence=HEURISTIC_HUMAN_CONFIDENCE,
        indicators=tuple(indicators),
    )


# ---------------------------------------------------------------------------
# Browser family
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BrowserGuess:
    browser: str = "Unknown"
    version: str = ""
    confidence: float = 0.5


def detect_browser(snapshot: HeaderSnapshot) -> BrowserGuess:
    """Guess the browser family, preferring client hints over the user agent."""
    hints = snapshot.get("sec-ch-ua")
    ua = snapshot.user_agent

    if hints and re.search(r"chrome", hints, re.IGNORECASE):
        m = re.search(r"Chrome[/\s\"]+(?:;v=\")?([\d.]+)", hints, re.IGNORECASE)
        return BrowserGuess("Chrome", m.group(1) if m else "", 0.95)
    if hints and re.search(r"edge", hints, re.IGNORECASE):
        m = re.search(r"Edge[/\s\"]+(?:;v=\")?([\d.]+)", hints, re.IGNORECASE)
        return BrowserGuess("Edge", m.group(1) if m else "", 0.95)
    if re.search(r"firefox", ua, re.IGNORECASE):
        m = re.search(r"firefox[/\s]+([\d.]+)", ua, re.IGNORECASE)
        return BrowserGuess("Firefox", m.group(1) if m else "", 0.9)
    if re.search(r"safari", ua, re.IGNORECASE) and not re.search(r"chrome", ua, re.IGNORECASE):
        m = re.search(r"version[/\s]+([\d.]+)", ua, re.IGNORECASE)
        return BrowserGuess("Safari", m.group(1) if m else "", 0.85)
    return BrowserGuess()
