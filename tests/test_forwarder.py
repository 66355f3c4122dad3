from __future__ import annotations

import asyncio

import httpx
import pytest

from edge_proxy.forwarder import (
    UpstreamForwarder,
    UpstreamUnavailable,
    build_upstream_headers,
    relay_body,
    serialize_body,
)

UPSTREAM = "https://upstream.test/v1/chat/completions"


def test_only_allow_listed_headers_are_forwarded():
    inbound = {
        "user-agent": "Mozilla/5.0",
        "accept": "text/event-stream",
        "accept-language": "en-US",
        "accept-encoding": "gzip",
        "cookie": "session=secret",
        "origin": "https://chat.example.com",
        "host": "proxy.example.com",
        "content-type": "text/plain",
    }
    headers = dict(build_upstream_headers(inbound, "Bearer sk-test"))

    assert headers == {
        b"Content-Type": b"application/json",
        b"Authorization": b"Bearer sk-test",
        b"User-Agent": b"Mozilla/5.0",
        b"Accept": b"text/event-stream",
        b"Accept-Language": b"en-US",
        b"Accept-Encoding": b"gzip",
    }


def test_body_is_reserialized_compactly():
    assert serialize_body({"model": "gpt-4", "messages": [{"role": "user", "content": "héllo"}]}) == (
        '{"model":"gpt-4","messages":[{"role":"user","content":"héllo"}]}'.encode("utf-8")
    )


def test_forward_posts_once_and_streams_upstream_body():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, stream=httpx.ByteStream(b'{"id":"chatcmpl-1"}'), headers={"Content-Type": "application/json"})

    async def run() -> tuple[int, bytes]:
        fwd = UpstreamForwarder(UPSTREAM, transport=httpx.MockTransport(handler))
        try:
            resp = await fwd.forward(
                {"model": "gpt-4"},
                authorization="Bearer sk-test",
                inbound_headers={"accept": "application/json"},
            )
            chunks = [c async for c in relay_body(resp)]
            assert resp.is_closed
            return resp.status_code, b"".join(chunks)
        finally:
            await fwd.aclose()

    status, body = asyncio.run(run())

    assert status == 200
    assert body == b'{"id":"chatcmpl-1"}'
    assert len(seen) == 1
    req = seen[0]
    assert req.method == "POST"
    assert str(req.url) == UPSTREAM
    assert req.headers["authorization"] == "Bearer sk-test"
    assert req.headers["content-type"] == "application/json"
    assert req.content == b'{"model":"gpt-4"}'


@pytest.mark.parametrize(
    "exc",
    [
        httpx.ConnectError("connection refused"),
        httpx.ConnectTimeout("timed out"),
        httpx.ReadTimeout("timed out"),
    ],
)
def test_transport_failures_become_upstream_unavailable(exc):
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        raise exc

    async def run() -> None:
        fwd = UpstreamForwarder(UPSTREAM, transport=httpx.MockTransport(handler))
        try:
            await fwd.forward({"model": "m"}, authorization="Bearer x", inbound_headers={})
        finally:
            await fwd.aclose()

    with pytest.raises(UpstreamUnavailable):
        asyncio.run(run())
    # No retries.
    assert calls == 1


def test_serialize_body_refuses_non_finite_numbers():
    with pytest.raises(ValueError):
        serialize_body({"model": "m", "t": float("nan")})
