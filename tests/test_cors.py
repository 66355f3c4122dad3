from __future__ import annotations

from edge_proxy.cors import OriginPolicy, sanitize_response_headers


def test_wildcard_preflight_uses_static_header_list():
    policy = OriginPolicy()
    headers = policy.preflight_headers({"access-control-request-headers": "x-custom"})

    assert headers == {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
    }
    assert "Access-Control-Allow-Credentials" not in headers


def test_fixed_preflight_echoes_requested_headers_and_allows_credentials():
    policy = OriginPolicy(origin="https://chat.example.com")
    headers = policy.preflight_headers({"access-control-request-headers": "authorization, content-type, x-trace"})

    assert headers["Access-Control-Allow-Origin"] == "https://chat.example.com"
    assert headers["Access-Control-Allow-Credentials"] == "true"
    assert headers["Access-Control-Allow-Headers"] == "authorization, content-type, x-trace"


def test_fixed_preflight_omits_allow_headers_when_not_requested():
    headers = OriginPolicy(origin="https://chat.example.com").preflight_headers({})
    assert "Access-Control-Allow-Headers" not in headers
    assert headers["Access-Control-Allow-Methods"] == "POST, OPTIONS"


def test_sanitize_strips_csp_and_overrides_origin():
    upstream = [
        ("Content-Type", "application/json"),
        ("Content-Security-Policy", "default-src 'none'"),
        ("X-Content-Security-Policy", "default-src 'none'"),
        ("Access-Control-Allow-Origin", "https://upstream.example"),
        ("Set-Cookie", "a=1"),
        ("Set-Cookie", "b=2"),
        ("Transfer-Encoding", "chunked"),
    ]
    out = sanitize_response_headers(upstream, OriginPolicy())
    names = [k.lower() for k, _ in out]

    assert "content-security-policy" not in names
    assert "x-content-security-policy" not in names
    assert "transfer-encoding" not in names
    assert ("Set-Cookie", "a=1") in out and ("Set-Cookie", "b=2") in out
    assert names.count("access-control-allow-origin") == 1
    assert ("Access-Control-Allow-Origin", "*") in out


def test_sanitize_never_pairs_wildcard_with_credentials():
    upstream = [("Access-Control-Allow-Credentials", "true")]
    out = sanitize_response_headers(upstream, OriginPolicy())
    assert [k for k, _ in out] == ["Access-Control-Allow-Origin"]


def test_sanitize_without_csp_is_noop_apart_from_origin():
    upstream = [("Content-Type", "text/event-stream"), ("X-Upstream", "1")]
    out = sanitize_response_headers(upstream, OriginPolicy(origin="https://a.example"))
    assert out == [
        ("Content-Type", "text/event-stream"),
        ("X-Upstream", "1"),
        ("Access-Control-Allow-Origin", "https://a.example"),
        ("Access-Control-Allow-Credentials", "true"),
    ]
