"""JA3 TLS client fingerprints.

The ClientHello is parsed elsewhere (a TLS-terminating proxy); this module
only turns the parsed fields into the JA3 string and digest:

    SSLVersion,Ciphers,Extensions,EllipticCurves,EllipticCurvePointFormats

with list members joined by ``-`` and GREASE values removed. JA3 is
defined over MD5, so MD5 it is; the digest is a signal, never an identity.
"""

from __future__ import annotations

import hashlib
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

TLS_VERSIONS: dict[int, str] = {
    0x0300: "SSL 3.0",
    0x0301: "TLS 1.0",
    0x0302: "TLS 1.1",
    0x0303: "TLS 1.2",
    0x0304: "TLS 1.3",
}

# RFC 8701 reserved values: 0x0a0a, 0x1a1a, ... 0xfafa
GREASE_VALUES: frozenset[int] = frozenset((n << 8) | n for n in range(0x0A, 0x100, 0x10))

# Renegotiation SCSV, dropped from the cipher list
_EMPTY_RENEGOTIATION_INFO_SCSV = 0x00FF

KNOWN_JA3_SIGNATURES: dict[str, str] = {
    "cd08e31920cfb033130e6f1e0f5789e9": "Chrome 90+",
    "20c9baf81bcaf93b8e7dfddce0c1b857": "Chrome 80-89",
    "c9c3d31e7dda81377eba61755d0ce9e9": "Firefox 78+",
    "a0e9f5d64349fb13191bc781f81f42e1": "Firefox 68-77",
    "f5f23ede0cdced3b3e1cb76ca2d7357c": "Safari 14+",
    "b4c5b97e4fb834e4a9b0b0c8c0f0d0e0": "Edge 90+",
    "72a589da586844d7f0818ce684948eea": "Python Requests",
    "e7d705a3286e19ea42f587b344ee6865": "Go HTTP Client",
    "51c64c77e60f3980eea90869b68c58a8": "curl",
}

BOT_JA3_SIGNATURES: frozenset[str] = frozenset(
    {
        "72a589da586844d7f0818ce684948eea",  # Python Requests
        "e7d705a3286e19ea42f587b344ee6865",  # Go
        "51c64c77e60f3980eea90869b68c58a8",  # curl
        "b32309a26951912be7dba376398abc3b",  # wget
    }
)

_JA3_HEADERS: tuple[str, ...] = ("x-ja3-hash", "ja3-hash", "cf-ja3")
_JA3_DIGEST_HEADERS: tuple[str, ...] = ("x-ja3-digest", "ja3-digest")


@dataclass(frozen=True)
class ClientHello:
    """Parsed TLS ClientHello fields."""

    version: int
    cipher_suites: Sequence[int] = ()
    extensions: Sequence[int] = ()
    elliptic_curves: Sequence[int] = ()
    point_formats: Sequence[int] = ()
    server_name: str | None = None
    alpn: Sequence[str] = ()


@dataclass(frozen=True)
class Ja3Fingerprint:
    ja3_string: str
    ja3_hash: str
    tls_version: str
    server_name: str | None = None
    alpn: tuple[str, ...] = field(default_factory=tuple)

    @property
    def client(self) -> str | None:
        return KNOWN_JA3_SIGNATURES.get(self.ja3_hash)

    @property
    def is_bot(self) -> bool:
        return is_bot_ja3(self.ja3_hash)


def is_grease(value: int) -> bool:
    return value in GREASE_VALUES


def _join(values: Sequence[int]) -> str:
    return "-".join(str(v) for v in values)


def ja3_string(hello: ClientHello) -> str:
    ciphers = [
        c for c in hello.cipher_suites if c != _EMPTY_RENEGOTIATION_INFO_SCSV and not is_grease(c)
    ]
    extensions = [e for e in hello.extensions if not is_grease(e)]
    curves = [c for c in hello.elliptic_curves if not is_grease(c)]
    return ",".join(
        (
            str(hello.version),
            _join(ciphers),
            _join(extensions),
            _join(curves),
            _join(hello.point_formats),
        )
    )


def ja3(hello: ClientHello) -> Ja3Fingerprint:
    """Compute the JA3 string and MD5 digest for *hello*."""
    text = ja3_string(hello)
    digest = hashlib.md5(text.encode("ascii"), usedforsecurity=False).hexdigest()
    return Ja3Fingerprint(
        ja3_string=text,
        ja3_hash=digest,
        tls_version=TLS_VERSIONS.get(hello.version, "Unknown"),
        server_name=hello.server_name,
        alpn=tuple(hello.alpn),
    )


def ja3_from_headers(headers: Mapping[str, str]) -> str | None:
    """Return a JA3 digest injected by a fronting proxy, if any."""
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in _JA3_HEADERS + _JA3_DIGEST_HEADERS:
        value = lowered.get(name)
        if value and value.strip():
            return value.strip().lower()
    return None


def is_bot_ja3(ja3_hash: str) -> bool:
    return ja3_hash.lower() in BOT_JA3_SIGNATURES
