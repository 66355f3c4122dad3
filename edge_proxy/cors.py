from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from .config import Settings

ALLOW_METHODS = "POST, OPTIONS"
STATIC_ALLOW_HEADERS = "Content-Type, Authorization"

# Upstream headers that would stop the calling frontend from using the response.
STRIPPED_RESPONSE_HEADERS = frozenset({"content-security-policy", "x-content-security-policy"})

# Headers that describe the upstream hop, not the payload we relay.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "content-length",
    }
)


@dataclass(frozen=True)
class OriginPolicy:
    """Cross-origin policy applied to every response.

    `origin=None` is the wildcard policy: `*`, a static preflight header
    list, and never allow-credentials. A concrete origin additionally sets
    allow-credentials and echoes the preflight's requested headers.
    """

    origin: str | None = None

    @classmethod
    def from_settings(cls, s: Settings) -> "OriginPolicy":
        return cls(origin=s.allowed_origin if s.fixed_origin else None)

    @property
    def wildcard(self) -> bool:
        return self.origin is None

    def origin_headers(self) -> dict[str, str]:
        """Base headers carried by every response, errors included."""

        if self.wildcard:
            return {"Access-Control-Allow-Origin": "*"}
        return {
            "Access-Control-Allow-Origin": str(self.origin),
            "Access-Control-Allow-Credentials": "true",
        }

    def preflight_headers(self, request_headers: Mapping[str, str]) -> dict[str, str]:
        headers = self.origin_headers()
        headers["Access-Control-Allow-Methods"] = ALLOW_METHODS
        if self.wildcard:
            headers["Access-Control-Allow-Headers"] = STATIC_ALLOW_HEADERS
        else:
            requested = request_headers.get("access-control-request-headers")
            if requested:
                headers["Access-Control-Allow-Headers"] = requested
        return headers


def sanitize_response_headers(
    upstream_headers: list[tuple[str, str]], policy: OriginPolicy
) -> list[tuple[str, str]]:
    """Rewrite upstream headers for the browser.

    Keeps repeated headers (e.g. several Set-Cookie lines) in order, drops the
    CSP pair and hop-by-hop headers, then applies the origin policy.
    """

    # Upstream's own allow-credentials must not survive next to `*`.
    overridden = {"access-control-allow-origin", "access-control-allow-credentials"}
    out: list[tuple[str, str]] = []
    for name, value in upstream_headers:
        lname = name.lower()
        if lname in STRIPPED_RESPONSE_HEADERS or lname in HOP_BY_HOP_HEADERS or lname in overridden:
            continue
        out.append((name, value))
    out.extend(policy.origin_headers().items())
    return out
