from __future__ import annotations

import argparse
import json

from .config import settings


def cmd_serve(*, host: str, port: int, reload: bool) -> None:
    import uvicorn

    # Our own JSON access log replaces uvicorn's.
    uvicorn.run(
        "edge_proxy.main:app",
        host=host,
        port=port,
        reload=reload,
        access_log=False,
        # Which peers may set X-Forwarded-For comes from FORWARDED_ALLOW_IPS
        # (uvicorn default: 127.0.0.1 only).
        proxy_headers=settings.trust_forwarded_for,
    )


def cmd_show_config() -> None:
    """Print effective settings. Nothing in Settings is secret."""

    print(
        json.dumps(
            {
                "version": settings.version,
                "origin_policy": settings.origin_policy,
                "allowed_origin": settings.allowed_origin or None,
                "origin_policy_downgraded": settings.origin_policy_downgraded,
                "upstream_url": settings.upstream_url,
                "upstream_timeout_s": settings.upstream_timeout_s,
                "upstream_connect_timeout_s": settings.upstream_connect_timeout_s,
                "proxy_path": settings.proxy_path,
                "rate_limit_enabled": settings.rate_limit_enabled,
                "rate_limit_window_ms": settings.rate_limit_window_ms,
                "rate_limit_max_requests": settings.rate_limit_max_requests,
                "trust_forwarded_for": settings.trust_forwarded_for,
                "otel_enabled": settings.otel_enabled,
            },
            indent=2,
        )
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="chat-edge-proxy")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_serve = sub.add_parser("serve", help="Run the proxy under uvicorn.")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8080)
    p_serve.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development).")

    sub.add_parser("show-config", help="Print the effective configuration as JSON.")

    args = parser.parse_args(argv)

    if args.cmd == "serve":
        cmd_serve(host=args.host, port=int(args.port), reload=bool(args.reload))
    elif args.cmd == "show-config":
        cmd_show_config()


if __name__ == "__main__":
    main()
