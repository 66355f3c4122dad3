from __future__ import annotations

import json
from typing import Any, AsyncIterator, Mapping

import httpx

from .observability import Timer, log_event
from .otel import record_upstream_metric, span

# Inbound headers copied to the upstream request when the caller sent them.
# Everything else (Cookie, Origin, Host, X-Forwarded-*, ...) stays behind.
FORWARDED_REQUEST_HEADERS = ("User-Agent", "Accept", "Accept-Language", "Accept-Encoding")

UPSTREAM_ERROR = "Failed to connect to the target API"


class UpstreamUnavailable(Exception):
    """The upstream could not be reached (connect, DNS, TLS, timeout...)."""


def _latin1(value: str) -> bytes:
    # ASGI servers decode raw header bytes as latin-1; this round-trips them.
    return value.encode("latin-1")


def build_upstream_headers(inbound: Mapping[str, str], authorization: str) -> list[tuple[bytes, bytes]]:
    headers: list[tuple[bytes, bytes]] = [
        (b"Content-Type", b"application/json"),
        (b"Authorization", _latin1(authorization)),
    ]
    for name in FORWARDED_REQUEST_HEADERS:
        value = inbound.get(name.lower())
        if value:
            headers.append((name.encode("ascii"), _latin1(value)))
    return headers


def serialize_body(body: Any) -> bytes:
    """Compact JSON; key order follows the parsed object, whitespace is not kept."""

    return json.dumps(body, ensure_ascii=False, allow_nan=False, separators=(",", ":")).encode("utf-8")


class UpstreamForwarder:
    """Single-attempt POST to the fixed chat-completion upstream.

    One AsyncClient is shared for connection reuse and created on first use,
    so it binds to whichever event loop is serving requests.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 300.0,
        connect_timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = httpx.Timeout(timeout_s, connect=connect_timeout_s)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def forward(
        self,
        body: Any,
        *,
        authorization: str,
        inbound_headers: Mapping[str, str],
        request_id: str | None = None,
    ) -> httpx.Response:
        """Send the request and return the upstream response with its body unread.

        The caller owns the response and must `aclose()` it once the body has
        been relayed.
        """

        client = self._get_client()
        req = client.build_request(
            "POST",
            self.url,
            headers=build_upstream_headers(inbound_headers, authorization),
            content=serialize_body(body),
        )
        timer = Timer()
        with span("upstream.forward", {"upstream.url": self.url}):
            try:
                resp = await client.send(req, stream=True)
            except httpx.TransportError as e:
                latency_ms = timer.ms()
                record_upstream_metric(latency_ms=latency_ms, status_code=None, outcome="unreachable")
                log_event(
                    "upstream.unreachable",
                    severity="ERROR",
                    request_id=request_id,
                    upstream_url=self.url,
                    error_type=type(e).__name__,
                    error=str(e),
                    latency_ms=round(latency_ms, 2),
                )
                raise UpstreamUnavailable(str(e)) from e

        record_upstream_metric(latency_ms=timer.ms(), status_code=resp.status_code, outcome="ok")
        return resp


async def relay_body(resp: httpx.Response, *, request_id: str | None = None) -> AsyncIterator[bytes]:
    """Yield the upstream body as received (still content-encoded), then close it."""

    try:
        async for chunk in resp.aiter_raw():
            yield chunk
    except httpx.TransportError as e:
        # Headers are already on the wire; all we can do is log and cut the stream.
        log_event(
            "upstream.stream_aborted",
            severity="WARNING",
            request_id=request_id,
            error_type=type(e).__name__,
            error=str(e),
        )
        raise
    finally:
        await resp.aclose()
