from __future__ import annotations

import json
import logging
import os
import time
import uuid
from typing import Any, Mapping, Optional

LOGGER_NAME = "edge_proxy"


def configure_logging() -> None:
    """Configure the proxy's operational log.

    Lines are emitted as JSON so hosted log collectors index the fields
    (request_id, status, latency_ms, ...) without a parsing rule.
    """

    level_name = os.getenv("LOG_LEVEL", "INFO").upper().strip()
    level = getattr(logging, level_name, logging.INFO)

    # Own logger so the ASGI server's logging config does not reformat us.
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))

    # Replace handlers so module reloads don't duplicate output.
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False


def request_id_from_headers(headers: Mapping[str, str]) -> str:
    """X-Request-Id, then X-Correlation-Id, else a fresh UUID4."""

    rid = headers.get("x-request-id") or headers.get("x-correlation-id")
    return (rid.strip() if rid else "") or str(uuid.uuid4())


def log_event(event: str, *, severity: str = "INFO", **fields: Any) -> None:
    """Emit one structured event line on the proxy logger."""

    payload: dict[str, Any] = {"severity": severity, "event": event}
    payload.update({k: v for k, v in fields.items() if v is not None})
    level = getattr(logging, severity.upper(), logging.INFO)
    logging.getLogger(LOGGER_NAME).log(level, json.dumps(payload, ensure_ascii=False, default=str))


def log_http_request(
    *,
    request_id: str,
    method: str,
    path: str,
    status: int,
    latency_ms: float,
    remote_ip: str,
    user_agent: str,
    limited: bool = False,
    error_type: Optional[str] = None,
    severity: str = "INFO",
) -> None:
    """One access-log line per inbound request."""

    payload: dict[str, Any] = {
        "severity": severity,
        "message": "http_request",
        "service": os.getenv("K_SERVICE", "chat-edge-proxy"),
        "request_id": request_id,
        "path": path,
        "limited": limited,
        "latency_ms": round(latency_ms, 2),
        "httpRequest": {
            "requestMethod": method,
            "status": status,
            "latency": f"{latency_ms / 1000.0:.3f}s",
            "remoteIp": remote_ip,
            "userAgent": user_agent,
        },
    }
    if error_type:
        payload["error_type"] = error_type

    level = logging.WARNING if severity == "WARNING" else logging.ERROR if severity == "ERROR" else logging.INFO
    logging.getLogger(LOGGER_NAME).log(level, json.dumps(payload, ensure_ascii=False))


class Timer:
    """Wall-clock stopwatch in milliseconds."""

    def __init__(self) -> None:
        self._t0 = time.perf_counter()

    def ms(self) -> float:
        return (time.perf_counter() - self._t0) * 1000.0
